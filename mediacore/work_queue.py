"""
An explicit single-flight work queue.

Items run strictly one after another in submission order. A pending item can be
withdrawn by key; withdrawing it resolves its future with `JobCancelledError`
and never blocks the items behind it.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from .exceptions import JobCancelledError


@dataclass
class WorkItem:
    key: str
    factory: Callable[[], Awaitable[Any]]
    future: asyncio.Future
    withdrawn: bool = False


class SerialWorkQueue:
    """Runs submitted coroutines one at a time on a single worker task."""

    def __init__(self, name: str = 'work'):
        self.name = name
        self.logger = logging.getLogger(__name__)
        self.queue: asyncio.Queue[WorkItem] = asyncio.Queue()
        self.pending: Dict[str, WorkItem] = {}
        self.current_key: Optional[str] = None
        self.worker_task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self.pending)

    def is_pending(self, key: str) -> bool:
        return key in self.pending

    def submit(self, key: str, factory: Callable[[], Awaitable[Any]]) -> asyncio.Future:
        """
        Enqueues `factory` under `key`.

        Args:
            key: Unique while the item is pending or running.
            factory: Called by the worker to create the coroutine to await.

        Returns:
            A future resolved with the coroutine's result or exception.
        """
        if key in self.pending or key == self.current_key:
            raise ValueError(f"'{key}' is already queued in {self.name}")

        future = asyncio.get_running_loop().create_future()
        item = WorkItem(key, factory, future)
        self.pending[key] = item
        self.queue.put_nowait(item)
        self._ensure_worker()
        self.logger.debug(f"[{self.name}] queued {key} ({len(self.pending)} pending)")
        return future

    def cancel(self, key: str) -> bool:
        """Withdraws a pending item. Returns False if it is not pending."""
        item = self.pending.pop(key, None)
        if item is None:
            return False
        item.withdrawn = True
        if not item.future.done():
            item.future.set_exception(JobCancelledError(f"{key} was withdrawn before it started"))
        self.logger.debug(f"[{self.name}] withdrew {key}")
        return True

    async def join(self):
        await self.queue.join()

    async def close(self):
        """Withdraws every pending item and stops the worker."""
        for key in list(self.pending):
            self.cancel(key)
        if self.worker_task is not None:
            self.worker_task.cancel()
            await asyncio.gather(self.worker_task, return_exceptions=True)
            self.worker_task = None

    def _ensure_worker(self):
        if self.worker_task is None or self.worker_task.done():
            self.worker_task = asyncio.create_task(self._worker(), name=f"{self.name}-worker")
            self.worker_task.add_done_callback(self._handle_task_exception)

    def _handle_task_exception(self, task: asyncio.Task) -> None:
        try:
            task.result()
        except asyncio.CancelledError:
            pass  # Expected
        except Exception:
            self.logger.exception(f"Exception in background task {task.get_name()}:")

    async def _worker(self):
        try:
            while True:
                item = await self.queue.get()
                try:
                    if item.withdrawn:
                        continue
                    self.pending.pop(item.key, None)
                    self.current_key = item.key
                    try:
                        result = await item.factory()
                    except asyncio.CancelledError:
                        if not item.future.done():
                            item.future.set_exception(JobCancelledError(f"{item.key} was interrupted"))
                        raise
                    except Exception as e:
                        if not item.future.done():
                            item.future.set_exception(e)
                    else:
                        if not item.future.done():
                            item.future.set_result(result)
                finally:
                    self.current_key = None
                    self.queue.task_done()
        except asyncio.CancelledError:
            self.logger.info(f"[{self.name}] worker cancelled.")
