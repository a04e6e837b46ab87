"""
Builds ffmpeg invocations.

Nothing here executes anything: every method maps its inputs to a `ProcessSpec`
that the gateway or a runner later starts through `ManagedProcess`.
"""

from typing import List, Optional

from .constants import CONVERSION_PRESETS
from .models import ConversionRequest, ProcessSpec

# Fragmented MP4 can be played while it is still being written.
FRAGMENTED_MP4_FLAGS = 'frag_keyframe+empty_moov+default_base_moof'


class TranscodeCommandBuilder:
    """Builds ffmpeg commands for streaming, subtitle extraction, and conversion."""

    def __init__(self, ffmpeg_path: str = 'ffmpeg', stream_audio_bitrate: str = '128k', loglevel: str = 'error'):
        """
        Args:
            ffmpeg_path: ffmpeg executable.
            stream_audio_bitrate: AAC bitrate used for live streams.
            loglevel: ffmpeg log level; errors land on stderr.
        """
        self.ffmpeg_path = ffmpeg_path
        self.stream_audio_bitrate = stream_audio_bitrate
        self.loglevel = loglevel

    def _base_args(self) -> List[str]:
        return ['-hide_banner', '-loglevel', self.loglevel]

    def build_stream_process(self, path: str, start_offset: float = 0) -> ProcessSpec:
        """
        Remuxes any container into a low-latency fragmented MP4 on stdout.

        Args:
            path: Source file.
            start_offset: Seconds into the source at which the stream starts.
        """
        args = self._base_args()

        # Input-side seek is fast and keyframe-accurate enough for playback.
        if start_offset and start_offset > 0:
            args.extend(['-ss', f'{start_offset:g}'])
        args.extend(['-i', path])

        # Video: H.264 at the fastest preset
        args.extend(['-c:v', 'libx264', '-preset', 'ultrafast', '-tune', 'zerolatency'])

        # Audio: AAC at a fixed bitrate
        args.extend(['-c:a', 'aac', '-b:a', self.stream_audio_bitrate])

        args.extend([
            '-movflags', FRAGMENTED_MP4_FLAGS,
            '-max_muxing_queue_size', '1024',
            '-f', 'mp4',
            'pipe:1',
        ])
        return ProcessSpec(self.ffmpeg_path, tuple(args), description='ffmpeg-stream')

    def build_subtitle_process(self, path: str, track: int = 0) -> ProcessSpec:
        """Extracts one subtitle track as WebVTT on stdout."""
        args = self._base_args()
        args.extend([
            '-i', path,
            '-map', f'0:s:{track}?',
            '-f', 'webvtt',
            'pipe:1',
        ])
        return ProcessSpec(self.ffmpeg_path, tuple(args), description='ffmpeg-subtitles')

    def build_convert_process(self, request: ConversionRequest) -> ProcessSpec:
        """
        Maps a conversion request to an ffmpeg command writing `request.output_path`.

        Progress is reported as `key=value` lines on stdout (`-progress pipe:1`).
        """
        args = self._base_args()
        args.extend(['-y', '-i', request.input_path])
        args.extend(self.get_codec_args(request.format, request.quality))
        args.extend(['-progress', 'pipe:1', '-nostats'])
        args.append(request.output_path)
        return ProcessSpec(self.ffmpeg_path, tuple(args), description='ffmpeg-convert')

    @staticmethod
    def get_bitrate(format_name: str, quality: Optional[str]) -> Optional[int]:
        """The kbps for a (format, quality) pair, or None when the format has none."""
        preset = CONVERSION_PRESETS.get(format_name)
        if preset is None or preset[1] is None:
            return None
        return preset[1].get(quality or 'medium', preset[1]['medium'])

    @classmethod
    def get_codec_args(cls, format_name: str, quality: Optional[str]) -> List[str]:
        """
        Codec and bitrate flags for a conversion.

        Formats in the preset table get an explicit encoder (and a bitrate where
        the table has one); anything else is only a container hint.
        """
        preset = CONVERSION_PRESETS.get(format_name)
        if preset is None:
            return ['-f', format_name]

        codec, _ = preset
        params = ['-vn', '-c:a', codec]
        bitrate = cls.get_bitrate(format_name, quality)
        if bitrate is not None:
            params.extend(['-b:a', f'{bitrate}k'])
        if format_name == 'wav':
            params.extend(['-f', 'wav'])
        return params
