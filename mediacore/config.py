"""
Defines the application's configuration schema using Pydantic.

The settings are persisted under the `settings` key of the store file
(see `store.py`); this module only describes and validates them.
"""

from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from .constants import DEFAULT_DOWNLOADS_PATH, DEFAULT_STALL_TIMEOUT


class Settings(BaseModel):
    """
    Defines the application's configuration schema using Pydantic.

    This class provides type hints, default values, and validation logic for all
    configuration settings.
    """
    downloads_path: Path = Field(default=DEFAULT_DOWNLOADS_PATH)
    ffmpeg_path: Optional[Path] = None
    ffprobe_path: Optional[Path] = None
    yt_dlp_path: Optional[Path] = None
    log_level: str = 'INFO'
    max_concurrent_conversions: int = Field(default=2, ge=1, le=16)
    stall_timeout_seconds: Optional[float] = Field(default=DEFAULT_STALL_TIMEOUT, ge=0)
    stream_audio_bitrate: str = '128k'

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Ensures log_level is a valid logging level string."""
        upper_value = value.upper()
        allowed_levels: List[str] = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if upper_value not in allowed_levels:
            raise ValueError(f"'{value}' is not a valid log level. Must be one of {allowed_levels}.")
        return upper_value

    @field_validator('stream_audio_bitrate')
    @classmethod
    def validate_stream_audio_bitrate(cls, value: str) -> str:
        """Accepts ffmpeg bitrate strings such as '128k' or '192000'."""
        value = value.strip().lower()
        digits = value[:-1] if value.endswith('k') else value
        if not digits.isdigit() or int(digits) <= 0:
            raise ValueError(f"'{value}' is not a valid audio bitrate.")
        return value

    @property
    def stall_timeout(self) -> Optional[float]:
        """The watchdog timeout in seconds, or None when disabled."""
        return self.stall_timeout_seconds or None
