"""
Runs engine processes whose lifetime is bound to an explicit cancellation token.

Every subprocess in the application is started through `ManagedProcess`. Whoever
owns the work (an HTTP response, a job) holds the `CancelToken`; cancelling the
token kills the process immediately, and leaving the `async with` block kills it
too, whatever the reason for leaving.
"""
import asyncio
import os
import sys
import signal
import logging
import subprocess
from collections import deque
from typing import AsyncIterator, Callable, Deque, List, Optional

from .constants import KILL_SIGNAL, SUBPROCESS_CREATION_FLAGS, DISCONNECT_ERROR_MARKERS
from .exceptions import JobCancelledError, ProcessFailedError
from .models import ProcessSpec

logger = logging.getLogger(__name__)


class CancelToken:
    """A one-shot cancellation signal with synchronous callbacks."""

    def __init__(self):
        self._event = asyncio.Event()
        self._callbacks: List[Callable[[], None]] = []
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = 'cancelled'):
        """Fires the token. Later calls are no-ops."""
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Cancel callback failed")

    def add_callback(self, callback: Callable[[], None]):
        """Registers `callback`; runs it right away if the token already fired."""
        if self._event.is_set():
            callback()
        else:
            self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[], None]):
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    async def wait(self):
        await self._event.wait()


class ManagedProcess:
    """
    An engine subprocess tied to a `CancelToken`.

    Usage:
        async with ManagedProcess(spec, token) as proc:
            async for line in proc.iter_lines(stall_timeout=300):
                ...
            returncode = await proc.wait()
    """
    STDERR_TAIL_LINES = 20

    def __init__(self, spec: ProcessSpec, token: Optional[CancelToken] = None, new_session: bool = False):
        """
        Args:
            spec: What to run.
            token: Cancellation token; a private one is created when omitted.
            new_session: Start the process in its own process group and kill the
                whole group. Needed for engines that spawn helpers of their own.
        """
        self.spec = spec
        self.token = token or CancelToken()
        self.new_session = new_session
        self.process: Optional[asyncio.subprocess.Process] = None
        self.kill_requested = False
        self.stderr_tail: Deque[str] = deque(maxlen=self.STDERR_TAIL_LINES)
        self._stderr_task: Optional[asyncio.Task] = None
        self.label = spec.description or os.path.basename(spec.program)

    async def __aenter__(self) -> 'ManagedProcess':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.kill()
        await self.wait()
        self.token.remove_callback(self.kill)

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode if self.process else None

    @property
    def running(self) -> bool:
        return self.process is not None and self.process.returncode is None

    @property
    def stdout(self) -> asyncio.StreamReader:
        assert self.process is not None and self.process.stdout is not None
        return self.process.stdout

    async def start(self):
        """Spawns the process. Raises JobCancelledError if the token already fired."""
        if self.token.cancelled:
            raise JobCancelledError(self.token.reason or 'cancelled')

        kwargs = {}
        if sys.platform == 'win32':
            kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS | (
                subprocess.CREATE_NEW_PROCESS_GROUP if self.new_session else 0)
        elif self.new_session:
            kwargs['start_new_session'] = True

        logger.debug(f"[{self.label}] exec: {self.spec}")
        try:
            self.process = await asyncio.create_subprocess_exec(
                *self.spec.command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **kwargs
            )
        except FileNotFoundError:
            raise ProcessFailedError(f"{self.spec.program} executable not found")
        except OSError as e:
            raise ProcessFailedError(f"Could not start {self.spec.program}: {e}")

        self._stderr_task = asyncio.create_task(self._drain_stderr())
        self.token.add_callback(self.kill)
        logger.debug(f"[{self.label}] started (PID: {self.process.pid})")

    def kill(self):
        """Hard-kills the process (or its group). Safe to call at any time."""
        if not self.running:
            return
        self.kill_requested = True
        try:
            if self.new_session and sys.platform != 'win32':
                os.killpg(os.getpgid(self.process.pid), KILL_SIGNAL)
            else:
                self.process.kill()
            logger.debug(f"[{self.label}] killed (PID: {self.process.pid})")
        except (ProcessLookupError, OSError):
            pass  # Already gone

    async def wait(self) -> Optional[int]:
        """Waits for exit and for stderr to be fully drained."""
        if self.process is None:
            return None
        returncode = await self.process.wait()
        if self._stderr_task is not None:
            await asyncio.gather(self._stderr_task, return_exceptions=True)
        return returncode

    async def iter_lines(self, stall_timeout: Optional[float] = None) -> AsyncIterator[str]:
        """
        Yields decoded stdout lines until EOF.

        Raises:
            ProcessFailedError: If no line arrives within `stall_timeout` seconds;
                the process is killed first.
        """
        while True:
            try:
                if stall_timeout:
                    line_bytes = await asyncio.wait_for(self.stdout.readline(), timeout=stall_timeout)
                else:
                    line_bytes = await self.stdout.readline()
            except asyncio.TimeoutError:
                logger.warning(f"[{self.label}] no output for {stall_timeout:.0f}s, killing")
                self.kill()
                raise ProcessFailedError(f"Engine stalled: no output for {stall_timeout:.0f} seconds")
            if not line_bytes:
                return
            yield line_bytes.decode('utf-8', 'replace').strip()

    @property
    def was_cancelled(self) -> bool:
        """True when the process died from the kill this application sends."""
        if self.returncode is None:
            return False
        return self.kill_requested or self.returncode == -KILL_SIGNAL

    @property
    def lost_reader(self) -> bool:
        """True when the process failed only because its stdout reader went away."""
        return any(marker in line.lower() for line in self.stderr_tail for marker in DISCONNECT_ERROR_MARKERS)

    def error_detail(self) -> str:
        """A concise description of why the process failed."""
        for line in reversed(self.stderr_tail):
            if line.lower().startswith('error'):
                return line.split(':', 1)[-1].strip() or line
        if self.stderr_tail:
            return self.stderr_tail[-1]
        if self.returncode is not None and self.returncode < 0:
            try:
                return f"{self.label} terminated by {signal.Signals(-self.returncode).name}"
            except ValueError:
                pass
        return f"{self.label} exited with code {self.returncode}"

    async def _drain_stderr(self):
        assert self.process is not None and self.process.stderr is not None
        while True:
            try:
                line_bytes = await self.process.stderr.readline()
            except ValueError:
                # Over-long line; drop what is buffered and keep draining.
                await self.process.stderr.read(65536)
                continue
            if not line_bytes:
                break
            line = line_bytes.decode('utf-8', 'replace').strip()
            if line:
                self.stderr_tail.append(line)
                logger.debug(f"[{self.label}] {line}")
