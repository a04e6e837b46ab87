"""
Defines the records shared between the gateway, the runners, and the orchestrator.

Jobs and requests are immutable Pydantic models: every change to a job produces a
new record via `model_copy(update=...)`, so a subscriber holding a reference never
observes a half-applied update.
"""

import time
from enum import Enum
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union, Annotated, Literal
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator


class JobType(str, Enum):
    CONVERSION = "conversion"
    DOWNLOAD = "download"


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    PAUSED = "paused"  # Reserved; nothing produces it yet.
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

# Runners report partial job updates through an awaitable callback.
ProgressCallback = Callable[[Dict[str, Any]], Awaitable[None]]


class ConversionRequest(BaseModel):
    """An offline transcode of one local file into an audio format."""
    model_config = ConfigDict(frozen=True)

    kind: Literal['conversion'] = 'conversion'
    input_path: str = Field(min_length=1)
    output_path: str = Field(min_length=1)
    format: Literal['mp3', 'aac', 'flac', 'wav', 'ogg', 'opus', 'webm'] = 'mp3'
    quality: Literal['low', 'medium', 'high'] = 'medium'


class DownloadRequest(BaseModel):
    """
    A fetch-and-transcode of a remote URL.

    `output_path` is a template: its directory is the destination and its file
    name is used verbatim only when no title can be resolved.
    """
    model_config = ConfigDict(frozen=True)

    kind: Literal['download'] = 'download'
    url: str = Field(min_length=1)
    output_path: str = Field(min_length=1)
    mode: Literal['best', 'audio', 'video'] = 'best'

    @field_validator('url')
    @classmethod
    def validate_url(cls, value: str) -> str:
        """Only absolute http(s) URLs can be handed to the fetch engine."""
        value = value.strip()
        parsed = urlparse(value)
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            raise ValueError(f"'{value}' is not an http(s) URL.")
        return value


JobRequest = Annotated[Union[ConversionRequest, DownloadRequest], Field(discriminator='kind')]


class Job(BaseModel):
    """
    A tracked unit of background work.

    Attributes:
        job_id: Opaque identifier, generated at creation and never reused.
        type: Which runner owns the job.
        status: Lifecycle state; see `JobStatus`.
        progress: Percentage in [0, 100].
        message: Human-readable status line.
        title: Display name, resolved lazily for downloads.
        output_file: Final artifact path, set once on completion.
        error: Terminal failure detail.
        created_at: Creation time (epoch seconds), used for ordering and eviction.
        details: The original request.
    """
    model_config = ConfigDict(frozen=True)

    job_id: str
    type: JobType
    status: JobStatus = JobStatus.QUEUED
    progress: float = Field(default=0.0, ge=0, le=100)
    message: str = ''
    title: Optional[str] = None
    output_file: Optional[str] = None
    error: Optional[str] = None
    created_at: float = Field(default_factory=time.time)
    details: JobRequest

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class VideoInfo(BaseModel):
    codec: str = 'unknown'
    width: int = 0
    height: int = 0
    fps: float = 0.0


class AudioInfo(BaseModel):
    codec: str = 'unknown'
    channels: int = 0
    sample_rate: int = 0


class SubtitleTrack(BaseModel):
    index: int
    codec: str = 'unknown'
    language: Optional[str] = None


class MediaMetadata(BaseModel):
    """Result of probing one container file. Derived on demand, never persisted."""
    duration: float = 0.0
    format: str = 'unknown'
    bitrate: int = 0
    size: int = 0
    video: Optional[VideoInfo] = None
    audio: Optional[AudioInfo] = None
    tags: Dict[str, str] = Field(default_factory=dict)
    subtitles: List[SubtitleTrack] = Field(default_factory=list)

    @property
    def has_subtitles(self) -> bool:
        return bool(self.subtitles)


@dataclass(frozen=True)
class ProcessSpec:
    """
    A reusable description of an engine invocation.

    Attributes:
        program: Path or name of the executable.
        args: Arguments passed after the program.
        description: Short label used in log lines.
    """
    program: str
    args: Tuple[str, ...] = field(default_factory=tuple)
    description: str = ''

    @property
    def command(self) -> List[str]:
        return [self.program, *self.args]

    def __str__(self) -> str:
        return ' '.join(self.command)
