"""Runs offline ffmpeg conversions and translates their progress into job updates."""
import asyncio
import logging
from pathlib import Path
from typing import Dict, Optional

from .constants import DEFAULT_STALL_TIMEOUT
from .exceptions import InvalidRequestError, JobCancelledError, ProbeError, ProcessFailedError
from .models import ConversionRequest, JobStatus, ProgressCallback
from .processes import CancelToken, ManagedProcess
from .prober import MetadataProber
from .transcoder import TranscodeCommandBuilder

# Keys ffmpeg's `-progress` report uses for the encoded position. Both are microseconds.
PROGRESS_TIME_KEYS = ('out_time_us', 'out_time_ms')


def parse_progress_seconds(line: str) -> Optional[float]:
    """Returns the encoded position from one `-progress` line, or None."""
    key, sep, value = line.partition('=')
    if not sep or key.strip() not in PROGRESS_TIME_KEYS:
        return None
    try:
        return int(value.strip()) / 1_000_000
    except ValueError:
        return None  # 'N/A' before the first frame


class ConversionRunner:
    """
    Drives one ffmpeg process per conversion job.

    Jobs run in parallel up to `max_concurrent`; the rest wait for a slot and can
    be cancelled while they wait.
    """

    def __init__(self, builder: TranscodeCommandBuilder, prober: MetadataProber,
                 max_concurrent: int = 2, stall_timeout: Optional[float] = DEFAULT_STALL_TIMEOUT):
        self.builder = builder
        self.prober = prober
        self.stall_timeout = stall_timeout
        self.semaphore = asyncio.Semaphore(max_concurrent)
        self.logger = logging.getLogger(__name__)
        # Registered synchronously on entry and removed on exit, so start,
        # finish and cancel never observe a half-registered job.
        self.active_tokens: Dict[str, CancelToken] = {}

    def is_active(self, job_id: str) -> bool:
        return job_id in self.active_tokens

    async def run(self, job_id: str, request: ConversionRequest, on_progress: ProgressCallback):
        """
        Converts `request.input_path` into `request.output_path`.

        Returns silently when the job is cancelled.

        Raises:
            ProcessFailedError: If ffmpeg fails, stalls, or cannot be started.
        """
        if job_id in self.active_tokens:
            raise InvalidRequestError(f"Conversion {job_id} is already running")

        token = CancelToken()
        self.active_tokens[job_id] = token
        try:
            async with self.semaphore:
                await self._convert(job_id, request, token, on_progress)
        except JobCancelledError:
            self.logger.info(f"Conversion {job_id} cancelled before it started.")
        finally:
            self.active_tokens.pop(job_id, None)

    def cancel(self, job_id: str):
        """Kills the job's process if it is still registered; otherwise does nothing."""
        token = self.active_tokens.get(job_id)
        if token is None:
            self.logger.debug(f"Cancel ignored, conversion {job_id} is not active.")
            return
        token.cancel('Cancelled by user')
        self.logger.info(f"Cancelled conversion {job_id}.")

    def cancel_all(self):
        for job_id in list(self.active_tokens):
            self.cancel(job_id)

    async def _convert(self, job_id: str, request: ConversionRequest, token: CancelToken,
                       on_progress: ProgressCallback):
        if token.cancelled:
            raise JobCancelledError(token.reason or 'cancelled')

        await on_progress({'status': JobStatus.RUNNING, 'progress': 0, 'message': 'Starting conversion...'})

        output_dir = Path(request.output_path).parent
        try:
            await asyncio.to_thread(output_dir.mkdir, parents=True, exist_ok=True)
        except OSError as e:
            raise ProcessFailedError(f"Cannot create output directory {output_dir}: {e}")

        duration = await self._get_duration(request.input_path)
        spec = self.builder.build_convert_process(request)
        self.logger.info(f"Converting {request.input_path} -> {request.output_path} "
                         f"({request.format}, {request.quality})")

        last_percent = -1
        async with ManagedProcess(spec, token) as proc:
            async for line in proc.iter_lines(self.stall_timeout):
                seconds = parse_progress_seconds(line)
                if seconds is None or duration <= 0:
                    continue
                percent = min(100, max(0, round(seconds / duration * 100)))
                if percent > last_percent:
                    last_percent = percent
                    await on_progress({'status': JobStatus.RUNNING, 'progress': percent,
                                       'message': 'Converting...'})
            returncode = await proc.wait()

        if token.cancelled or proc.was_cancelled:
            self.logger.info(f"Conversion {job_id} was killed on request.")
            return
        if returncode != 0:
            detail = proc.error_detail()
            self.logger.error(f"Conversion {job_id} failed (code {returncode}): {detail}")
            raise ProcessFailedError(detail, returncode)

        self.logger.info(f"Conversion {job_id} complete: {request.output_path}")
        await on_progress({
            'status': JobStatus.COMPLETED,
            'progress': 100,
            'output_file': request.output_path,
            'message': 'Conversion complete',
        })

    async def _get_duration(self, path: str) -> float:
        """Best effort; without a duration the job simply reports no intermediate progress."""
        try:
            metadata = await self.prober.probe(path)
        except ProbeError as e:
            self.logger.warning(f"Could not probe {path} for duration: {e}")
            return 0.0
        return metadata.duration
