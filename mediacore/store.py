"""
Manages loading and saving the persisted application state.

One JSON file holds the settings, the job history, and the playback positions.
The store is dumb: it keeps whatever it is handed and rewrites the
whole file on every save. Ordering, capping, and reconciliation of the history
are the orchestrator's business.
"""

import asyncio
import json
import time
import logging
from pathlib import Path
from typing import Dict, List

import aiofiles
import aiofiles.os
from pydantic import BaseModel, Field, ValidationError

from .config import Settings
from .models import Job


class StoreData(BaseModel):
    """Schema of the store file."""
    settings: Settings = Field(default_factory=Settings)
    job_history: List[Job] = Field(default_factory=list)
    playback_positions: Dict[str, float] = Field(default_factory=dict)


class AppStore:
    """Handles loading and saving the store file."""
    def __init__(self, store_path: Path):
        """
        Initializes the AppStore.

        Args:
            store_path: The path to the store file.
        """
        self.store_path = store_path
        self.logger = logging.getLogger(__name__)
        self.data = StoreData()
        self._write_lock = asyncio.Lock()

    def load(self) -> StoreData:
        """
        Loads the store file and validates it.

        If the file doesn't exist, is invalid, or an error occurs, a default
        state is used. Invalid files are backed up.

        Returns:
            The validated StoreData, also kept on `self.data`.
        """
        try:
            self.store_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            self.logger.error(f"Cannot create store directory {self.store_path.parent}: {e}")

        if not self.store_path.exists():
            self.logger.info("Store file not found. Starting with default settings.")
            self.data = StoreData()
            return self.data

        try:
            raw = json.loads(self.store_path.read_text(encoding='utf-8'))
            self.data = StoreData.model_validate(raw)
        except (ValidationError, json.JSONDecodeError, IOError) as e:
            self.logger.error(f"Error loading {self.store_path}: {e}. Backing up and using defaults.")
            try:
                backup_path = self.store_path.with_suffix(f".{int(time.time())}.bak")
                self.store_path.rename(backup_path)
                self.logger.info(f"Backed up corrupted store to {backup_path}")
            except IOError as backup_e:
                self.logger.error(f"Could not back up corrupted store file: {backup_e}")
            self.data = StoreData()
        return self.data

    async def save(self):
        """
        Rewrites the whole store file with the current state.

        Writes go to a sibling temp file first so a crash mid-write never leaves
        a truncated store behind. Failures are logged, never raised.
        """
        async with self._write_lock:
            payload = self.data.model_dump_json(indent=2)
            tmp_path = self.store_path.with_suffix('.tmp')
            try:
                async with aiofiles.open(tmp_path, 'w', encoding='utf-8') as f_out:
                    await f_out.write(payload)
                await aiofiles.os.replace(tmp_path, self.store_path)
            except (IOError, OSError) as e:
                self.logger.error(f"Error saving store file to {self.store_path}: {e}")

    def get_settings(self) -> Settings:
        return self.data.settings

    async def set_settings(self, settings: Settings):
        self.data = self.data.model_copy(update={'settings': settings})
        await self.save()

    def get_job_history(self) -> List[Job]:
        return list(self.data.job_history)

    async def set_job_history(self, jobs: List[Job]):
        self.data = self.data.model_copy(update={'job_history': list(jobs)})
        await self.save()

    def get_playback_position(self, media_id: str) -> float:
        return self.data.playback_positions.get(media_id, 0.0)

    async def set_playback_position(self, media_id: str, position: float):
        positions = dict(self.data.playback_positions)
        positions[media_id] = position
        self.data = self.data.model_copy(update={'playback_positions': positions})
        await self.save()
