"""
Wires the gateway, the runners, and the orchestrator together.

Everything is constructed once here and handed to its users explicitly; no
module keeps a global instance.
"""
import math
import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import ValidationError

from .config import Settings
from .constants import STORE_FILE
from .conversion import ConversionRunner
from .dependencies import ToolPaths, get_version
from .downloads import DownloadRunner
from .exceptions import InvalidRequestError
from .gateway import StreamingGateway
from .models import Job
from .network import HttpStreamProvider, NetworkStreamProvider
from .orchestrator import JobOrchestrator, describe_validation_error
from .prober import MetadataProber
from .store import AppStore
from .transcoder import TranscodeCommandBuilder
from .url_extractor import URLInfoExtractor


class MediaCoreApp:
    """The composition root of the media core."""

    def __init__(self, store: AppStore, tools: ToolPaths, network: Optional[NetworkStreamProvider] = None):
        """
        Builds every component from the loaded store and the resolved engines.

        Args:
            store: A store whose `load()` has already run.
            tools: Engine executables.
            network: Collaborator behind the gateway's `/proxy` route.
        """
        self.store = store
        self.tools = tools
        self.network = network
        self.logger = logging.getLogger(__name__)
        settings = store.get_settings()

        self.prober = MetadataProber(tools.ffprobe)
        self.builder = TranscodeCommandBuilder(tools.ffmpeg, settings.stream_audio_bitrate)
        self.gateway = StreamingGateway(self.prober, self.builder, network)

        self.conversion_runner = ConversionRunner(
            self.builder, self.prober,
            max_concurrent=settings.max_concurrent_conversions,
            stall_timeout=settings.stall_timeout,
        )
        self.download_runner = DownloadRunner(
            URLInfoExtractor(tools.yt_dlp),
            yt_dlp_path=tools.yt_dlp,
            ffmpeg_location=self._ffmpeg_location(tools.ffmpeg),
            stall_timeout=settings.stall_timeout,
        )
        self.orchestrator = JobOrchestrator(store, self.conversion_runner, self.download_runner)

    @classmethod
    def create(cls, store_path: Path = STORE_FILE, network: Optional[NetworkStreamProvider] = None) -> 'MediaCoreApp':
        """Loads the store, discovers the engines, and builds the application."""
        store = AppStore(store_path)
        store.load()
        tools = ToolPaths.discover(store.get_settings())
        return cls(store, tools, network if network is not None else HttpStreamProvider())

    @staticmethod
    def _ffmpeg_location(ffmpeg: str) -> Optional[str]:
        path = Path(ffmpeg)
        return str(path.parent) if path.is_absolute() else None

    async def start(self) -> str:
        """Restores the job history and starts the gateway. Returns the gateway URL."""
        await self.orchestrator.initialize()
        return await self.gateway.start()

    async def stop(self):
        """Cancels active jobs, kills live streams, and closes the gateway."""
        self.logger.info("Application closing.")
        await self.orchestrator.shutdown()
        await self.gateway.stop()
        close = getattr(self.network, 'close', None)
        if close is not None:
            await close()

    # --- Playback ---

    def get_gateway_url(self) -> str:
        return self.gateway.get_url()

    def get_stream_url(self, path: str) -> str:
        return self.gateway.media_url_for(path)

    def get_subtitles_url(self, path: str) -> str:
        return self.gateway.subtitles_url_for(path)

    def get_playback_position(self, media_id: str) -> float:
        return self.store.get_playback_position(media_id)

    async def save_playback_position(self, media_id: str, position: float):
        if not media_id:
            raise InvalidRequestError("A media id is required.")
        if not math.isfinite(position) or position < 0:
            raise InvalidRequestError(f"Invalid playback position: {position}")
        await self.store.set_playback_position(media_id, position)

    # --- Jobs ---

    async def start_conversion(self, request: Dict[str, Any]) -> Job:
        return await self.orchestrator.start_conversion(request)

    async def start_download(self, url: str, mode: str = 'best', output_path: Optional[str] = None) -> Job:
        """
        Queues a download into `output_path`, or into the configured downloads folder.

        The file name is replaced by the remote title once it is known.
        """
        if not output_path:
            output_path = str(self.store.get_settings().downloads_path / 'download')
        return await self.orchestrator.start_download({'url': url, 'mode': mode, 'output_path': output_path})

    async def cancel_job(self, job_id: str) -> bool:
        return await self.orchestrator.cancel_job(job_id)

    def get_all_jobs(self):
        return self.orchestrator.get_all_jobs()

    async def clear_history(self) -> int:
        return await self.orchestrator.clear_history()

    # --- Settings ---

    def get_settings(self) -> Settings:
        return self.store.get_settings()

    async def update_settings(self, changes: Dict[str, Any]) -> Settings:
        """
        Validates and saves new settings.

        Engine paths, the conversion limit, and the stall timeout apply from
        the next start.

        Raises:
            InvalidRequestError: If a field does not validate.
        """
        current = self.store.get_settings()
        try:
            new_settings = Settings.model_validate({**current.model_dump(), **changes})
        except ValidationError as e:
            raise InvalidRequestError(describe_validation_error(e)) from e
        await self.store.set_settings(new_settings)
        if new_settings.log_level != current.log_level:
            for handler in logging.getLogger().handlers:
                handler.setLevel(new_settings.log_level)
        self.logger.info("Settings have been saved.")
        return new_settings

    async def get_engine_versions(self) -> Dict[str, str]:
        """Asynchronously fetches the version line of each engine."""
        names = ('ffmpeg', 'ffprobe', 'yt-dlp')
        paths = (self.tools.ffmpeg, self.tools.ffprobe, self.tools.yt_dlp)
        versions = await asyncio.gather(*(get_version(Path(path)) for path in paths))
        return dict(zip(names, versions))
