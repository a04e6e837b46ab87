"""
Queries container files through ffprobe.

`MetadataProber.probe` is side-effect free: it runs ffprobe once and turns its
JSON report into a `MediaMetadata`. Video, audio, subtitle streams and the
format tags are all optional in the report.
"""

import asyncio
import json
import os
import logging
from typing import Any, Dict, Optional

from .exceptions import ProbeError, ProcessFailedError
from .models import AudioInfo, MediaMetadata, ProcessSpec, SubtitleTrack, VideoInfo
from .processes import ManagedProcess


def parse_frame_rate(value: Optional[str]) -> float:
    """
    Parses an ffprobe rate such as '30000/1001' or '25'.

    Malformed values and a zero denominator resolve to 0.0.
    """
    if not value:
        return 0.0
    try:
        if '/' in value:
            num, den = value.split('/', 1)
            den_value = float(den)
            return float(num) / den_value if den_value else 0.0
        return float(value)
    except (ValueError, TypeError):
        return 0.0


def _to_int(value: Any) -> int:
    try:
        return int(float(value))
    except (ValueError, TypeError):
        return 0


def _to_float(value: Any) -> float:
    try:
        return float(value)
    except (ValueError, TypeError):
        return 0.0


def parse_probe_output(raw_info: Dict[str, Any]) -> MediaMetadata:
    """
    Converts the ffprobe JSON report into a MediaMetadata.

    Args:
        raw_info: The decoded `-show_format -show_streams` output.

    Returns:
        The parsed metadata. The first video and first audio stream win.
    """
    format_info = raw_info.get('format') or {}
    video: Optional[VideoInfo] = None
    audio: Optional[AudioInfo] = None
    subtitles = []

    for stream in raw_info.get('streams') or []:
        codec_type = stream.get('codec_type', '')
        if codec_type == 'video' and video is None:
            # Cover art is reported as a one-frame video stream.
            if (stream.get('disposition') or {}).get('attached_pic'):
                continue
            video = VideoInfo(
                codec=stream.get('codec_name') or 'unknown',
                width=_to_int(stream.get('width')),
                height=_to_int(stream.get('height')),
                fps=parse_frame_rate(stream.get('r_frame_rate')),
            )
        elif codec_type == 'audio' and audio is None:
            audio = AudioInfo(
                codec=stream.get('codec_name') or 'unknown',
                channels=_to_int(stream.get('channels')),
                sample_rate=_to_int(stream.get('sample_rate')),
            )
        elif codec_type == 'subtitle':
            subtitles.append(SubtitleTrack(
                index=_to_int(stream.get('index')),
                codec=stream.get('codec_name') or 'unknown',
                language=(stream.get('tags') or {}).get('language'),
            ))

    tags = {str(k): str(v) for k, v in (format_info.get('tags') or {}).items()}

    return MediaMetadata(
        duration=_to_float(format_info.get('duration')),
        format=format_info.get('format_name') or 'unknown',
        bitrate=_to_int(format_info.get('bit_rate')),
        size=_to_int(format_info.get('size')),
        video=video,
        audio=audio,
        tags=tags,
        subtitles=subtitles,
    )


class MetadataProber:
    """Runs ffprobe against local files."""

    def __init__(self, ffprobe_path: str = 'ffprobe', timeout: float = 30):
        """
        Args:
            ffprobe_path: ffprobe executable.
            timeout: Seconds before a hung probe is killed and reported as failed.
        """
        self.ffprobe_path = ffprobe_path
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)

    def build_spec(self, path: str) -> ProcessSpec:
        return ProcessSpec(
            program=self.ffprobe_path,
            args=(
                '-hide_banner',
                '-loglevel', 'error',
                '-show_format',
                '-show_streams',
                '-print_format', 'json',
                path,
            ),
            description='ffprobe',
        )

    async def probe(self, path: str) -> MediaMetadata:
        """
        Probes one file.

        Raises:
            ProbeError: If the path is unreadable, ffprobe fails, or its output
                cannot be parsed.
        """
        if not path or not os.path.isfile(path) or not os.access(path, os.R_OK):
            raise ProbeError(f"Cannot read file: {path}")

        try:
            async with ManagedProcess(self.build_spec(path)) as proc:
                stdout_bytes = await self._read_all(proc)
                returncode = await proc.wait()
        except ProcessFailedError as e:
            raise ProbeError(str(e)) from e

        if returncode != 0:
            detail = proc.error_detail()
            self.logger.warning(f"ffprobe error (code {returncode}) for {path}: {detail}")
            raise ProbeError(f"ffprobe failed: {detail}")

        try:
            raw_info = json.loads(stdout_bytes.decode('utf-8', 'replace'))
        except json.JSONDecodeError as e:
            self.logger.error(f"Failed to parse ffprobe output for {path}: {e}")
            raise ProbeError(f"Failed to parse ffprobe output: {e}") from e
        if not isinstance(raw_info, dict):
            raise ProbeError("Unexpected ffprobe output")

        metadata = parse_probe_output(raw_info)
        self.logger.debug(f"Probed {path}: {metadata.format}, {metadata.duration:.1f}s")
        return metadata

    async def _read_all(self, proc: ManagedProcess) -> bytes:
        try:
            return await asyncio.wait_for(proc.stdout.read(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            raise ProbeError(f"ffprobe timeout ({self.timeout:.0f}s)")
