"""Manages the download queue and the yt-dlp processes behind download jobs."""
import asyncio
import re
import logging
from pathlib import Path
from typing import Dict, List, Optional

from .constants import DEFAULT_STALL_TIMEOUT, MIN_VISIBLE_DOWNLOAD_PROGRESS
from .exceptions import JobCancelledError, ProcessFailedError, URLExtractionError
from .models import DownloadRequest, JobStatus, ProcessSpec, ProgressCallback
from .processes import CancelToken, ManagedProcess
from .url_extractor import URLInfoExtractor, safe_filename, sanitize_url
from .work_queue import SerialWorkQueue

# Post-processing steps yt-dlp announces as `[Step] ...`.
STEP_MESSAGES = {
    'merger': 'Merging...',
    'extractaudio': 'Extracting Audio...',
    'embedthumbnail': 'Embedding...',
    'fixupm4a': 'Fixing M4a...',
    'metadata': 'Writing Metadata...',
}
DESTINATION_PATTERNS = (
    re.compile(r'\[download\] Destination: (.*)'),
    re.compile(r'\[ExtractAudio\] Destination: (.*)'),
    re.compile(r'\[Merger\] Merging formats into "(.*)"'),
    re.compile(r'\[download\] (.*) has already been downloaded'),
)
MODE_EXTENSIONS = {'best': '.mp4', 'video': '.mp4', 'audio': '.mp3'}
PARTIAL_SUFFIXES = frozenset({'.part', '.ytdl', '.temp', '.tmp'})


def parse_percentage(line: str) -> Optional[float]:
    """Reads a percentage from a `PROGRESS::` template line or a plain `[download]` line."""
    if line.startswith('PROGRESS::'):
        try:
            return float(line.split('::', 1)[1].strip().rstrip('%'))
        except (IndexError, ValueError):
            return None
    if '[download]' in line and (match := re.search(r'(\d+\.?\d*)%', line)):
        try:
            return float(match.group(1))
        except ValueError:
            return None
    return None


def find_output_file(planned: Path, reported: Optional[Path] = None) -> Optional[Path]:
    """
    Locates the file yt-dlp actually wrote for `planned`.

    The engine may pick a different container than planned, so any finished
    file in the same directory sharing the planned base name counts. The newest
    one wins.
    """
    if planned.is_file():
        return planned
    if reported is not None and reported.is_file():
        return reported
    if not planned.parent.is_dir():
        return None

    candidates: List[Path] = [
        item for item in planned.parent.iterdir()
        if item.is_file() and item.stem == planned.stem and item.suffix.lower() not in PARTIAL_SUFFIXES
    ]
    if not candidates:
        return None
    return max(candidates, key=lambda item: item.stat().st_mtime)


class DownloadRunner:
    """Runs download jobs one at a time through a single-flight queue."""

    def __init__(self, extractor: URLInfoExtractor, yt_dlp_path: str = 'yt-dlp',
                 ffmpeg_location: Optional[str] = None, stall_timeout: Optional[float] = DEFAULT_STALL_TIMEOUT):
        """
        Initializes the DownloadRunner.

        Args:
            extractor: Resolves titles before a download starts.
            yt_dlp_path: The yt-dlp executable.
            ffmpeg_location: Directory holding ffmpeg, passed to yt-dlp when set.
            stall_timeout: Seconds without output before yt-dlp is killed.
        """
        self.extractor = extractor
        self.yt_dlp_path = yt_dlp_path
        self.ffmpeg_location = ffmpeg_location
        self.stall_timeout = stall_timeout
        self.logger = logging.getLogger(__name__)
        self.queue = SerialWorkQueue('downloads')
        self.active_tokens: Dict[str, CancelToken] = {}

    async def run(self, job_id: str, request: DownloadRequest, on_progress: ProgressCallback):
        """
        Queues the download and waits until it has settled.

        Returns silently when the job is cancelled, queued or running.

        Raises:
            ProcessFailedError: If yt-dlp fails or stalls.
        """
        try:
            await self.queue.submit(job_id, lambda: self._run_download(job_id, request, on_progress))
        except JobCancelledError:
            self.logger.info(f"Download {job_id} cancelled before it started.")

    def cancel(self, job_id: str):
        """Withdraws a queued download, or kills the running one. Unknown ids are ignored."""
        if self.queue.cancel(job_id):
            self.logger.info(f"Removed download {job_id} from the queue.")
            return
        token = self.active_tokens.get(job_id)
        if token is None:
            self.logger.debug(f"Cancel ignored, download {job_id} is not active.")
            return
        token.cancel('Cancelled by user')
        self.logger.info(f"Cancelled download {job_id}.")

    async def close(self):
        for token in list(self.active_tokens.values()):
            token.cancel('Shutting down')
        await self.queue.close()

    def build_command(self, url: str, output_template: str, mode: str) -> ProcessSpec:
        """Builds the yt-dlp command for one URL."""
        args: List[str] = [
            '--newline',
            '--progress-template', 'PROGRESS::%(progress._percent_str)s',
            '--no-playlist',
            '--no-mtime',
            '-o', output_template,
        ]
        if self.ffmpeg_location:
            args.extend(['--ffmpeg-location', self.ffmpeg_location])

        if mode == 'audio':
            args.extend(['-f', 'bestaudio/best', '-x', '--audio-format', 'mp3', '--audio-quality', '192K'])
        elif mode == 'video':
            args.extend(['-f', 'bestvideo[ext=mp4]+bestaudio[ext=m4a]/best[ext=mp4]/best',
                         '--merge-output-format', 'mp4'])
        else:
            args.extend(['-f', 'bv*+ba/b'])
        args.append(url)
        return ProcessSpec(self.yt_dlp_path, tuple(args), description='yt-dlp')

    def plan_output_path(self, request: DownloadRequest, title: Optional[str]) -> Path:
        """
        Derives the final output path.

        The template's directory is kept; its file name is replaced by the
        sanitized title when one is known.
        """
        template = Path(request.output_path)
        suffix = MODE_EXTENSIONS[request.mode]
        stem = safe_filename(title) if title else ''
        if not stem:
            stem = safe_filename(template.stem) or 'download'
            suffix = template.suffix or suffix
        return template.parent / f"{stem}{suffix}"

    async def _run_download(self, job_id: str, request: DownloadRequest, on_progress: ProgressCallback):
        token = CancelToken()
        self.active_tokens[job_id] = token
        try:
            await self._download(job_id, request, token, on_progress)
        except JobCancelledError:
            self.logger.info(f"Download {job_id} cancelled.")
        finally:
            self.active_tokens.pop(job_id, None)

    async def _download(self, job_id: str, request: DownloadRequest, token: CancelToken,
                        on_progress: ProgressCallback):
        await on_progress({'status': JobStatus.RUNNING, 'progress': 0, 'message': 'Analyzing...'})

        # 1. Sanitize
        url = sanitize_url(request.url)
        if url != request.url:
            self.logger.info(f"Sanitized URL: {request.url} -> {url}")

        # 2. Resolve a title, best effort
        title: Optional[str] = None
        try:
            title = await self.extractor.get_title(url, token)
        except URLExtractionError as e:
            self.logger.warning(f"Could not resolve a title for {url}: {e}. Continuing without one.")
        if token.cancelled:
            raise JobCancelledError(token.reason or 'cancelled')

        # 3. Plan the output path
        output_path = self.plan_output_path(request, title)
        await on_progress({
            'title': title or output_path.stem,
            'progress': MIN_VISIBLE_DOWNLOAD_PROGRESS,
            'message': 'Starting download...',
        })
        if await asyncio.to_thread(output_path.exists):
            self.logger.info(f"Skipping download, {output_path} already exists.")
            await on_progress({'status': JobStatus.COMPLETED, 'progress': 100,
                               'output_file': str(output_path), 'message': 'Already exists'})
            return
        try:
            await asyncio.to_thread(output_path.parent.mkdir, parents=True, exist_ok=True)
        except OSError as e:
            raise ProcessFailedError(f"Cannot create output directory {output_path.parent}: {e}")

        # 4. Fetch and transcode
        output_template = str(output_path.parent / f"{output_path.stem}.%(ext)s")
        spec = self.build_command(url, output_template, request.mode)
        reported: Optional[Path] = None
        error_message: Optional[str] = None
        last_progress = MIN_VISIBLE_DOWNLOAD_PROGRESS

        async with ManagedProcess(spec, token, new_session=True) as proc:
            async for line in proc.iter_lines(self.stall_timeout):
                if not line:
                    continue
                self.logger.debug(f"[{job_id}] {line}")

                for pattern in DESTINATION_PATTERNS:
                    if dest_match := pattern.search(line):
                        reported = Path(dest_match.group(1).strip())
                        break
                if line.startswith('ERROR:'):
                    error_message = line[6:].strip()
                if status_match := re.match(r'\[(\w+)\]', line):
                    if (step := status_match.group(1).lower()) in STEP_MESSAGES:
                        await on_progress({'message': STEP_MESSAGES[step]})

                percentage = parse_percentage(line)
                if percentage is not None:
                    progress = round(max(MIN_VISIBLE_DOWNLOAD_PROGRESS, min(percentage, 100.0)), 1)
                    if progress > last_progress:
                        last_progress = progress
                        await on_progress({'status': JobStatus.RUNNING, 'progress': progress,
                                           'message': 'Downloading...'})
            returncode = await proc.wait()

        # 6. A kill we sent is a cancellation, not a failure
        if token.cancelled or proc.was_cancelled:
            raise JobCancelledError(token.reason or 'cancelled')
        if returncode != 0:
            detail = error_message or proc.error_detail()
            self.logger.error(f"Download {job_id} failed (code {returncode}): {detail}")
            raise ProcessFailedError(detail, returncode)

        # 5. Reconcile the planned path with what is on disk
        final_path = await asyncio.to_thread(find_output_file, output_path, reported)
        if final_path is None:
            self.logger.warning(f"yt-dlp finished but no output matching {output_path.name} was found.")
            final_path = output_path
        elif final_path != output_path:
            self.logger.info(f"Output for {job_id} landed at {final_path}")

        await on_progress({'status': JobStatus.COMPLETED, 'progress': 100,
                           'output_file': str(final_path), 'message': 'Download complete'})
