"""
Defines the JobOrchestrator, the single owner of the job table and its history.

Runners never touch job records. They report partial changes through `update`,
which merges them into a new immutable `Job`, persists the history, and pushes
the full record to every subscriber.
"""
import asyncio
import uuid
import logging
from functools import partial
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set, Union

from pydantic import ValidationError

from .constants import INTERRUPTED_JOB_ERROR, JOB_HISTORY_LIMIT, SUBSCRIBER_QUEUE_SIZE
from .conversion import ConversionRunner
from .downloads import DownloadRunner
from .exceptions import InvalidRequestError, MediaCoreError, UnknownJobError
from .models import ConversionRequest, DownloadRequest, Job, JobStatus, JobType
from .store import AppStore

# Fields a runner may change; identity and the request stay fixed.
UPDATABLE_FIELDS = frozenset({'status', 'progress', 'message', 'title', 'output_file', 'error'})


def describe_validation_error(error: ValidationError) -> str:
    error_details = error.errors()[0]
    field = '.'.join(str(part) for part in error_details['loc']) or 'request'
    return f"Error in field '{field}': {error_details['msg']}"


class JobOrchestrator:
    """The central owner of job state and the dispatcher to the runners."""

    def __init__(self, store: AppStore, conversion_runner: ConversionRunner, download_runner: DownloadRunner,
                 history_limit: int = JOB_HISTORY_LIMIT):
        """
        Initializes the JobOrchestrator.

        Args:
            store: Persistence for the job history.
            conversion_runner: Runs conversion jobs.
            download_runner: Runs download jobs.
            history_limit: Number of most recently created jobs kept in the store.
        """
        self.store = store
        self.conversion_runner = conversion_runner
        self.download_runner = download_runner
        self.history_limit = history_limit
        self.logger = logging.getLogger(__name__)

        self.jobs: Dict[str, Job] = {}
        self.job_tasks: Dict[str, asyncio.Task] = {}
        self.subscribers: Set[asyncio.Queue] = set()
        self._update_lock = asyncio.Lock()

    async def initialize(self):
        """
        Loads the persisted history into the job table.

        No process survives a restart, so any job that was not terminal at
        shutdown is marked failed as interrupted.
        """
        history = self.store.get_job_history()
        reconciled = 0
        for job in history:
            if not job.is_terminal:
                job = job.model_copy(update={
                    'status': JobStatus.FAILED,
                    'error': INTERRUPTED_JOB_ERROR,
                    'message': 'Interrupted',
                })
                reconciled += 1
            self.jobs[job.job_id] = job

        if reconciled:
            self.logger.warning(f"Marked {reconciled} interrupted job(s) from the last session as failed.")
        if reconciled or len(history) > self.history_limit:
            await self._persist()
        self.logger.info(f"Loaded {len(self.jobs)} job(s) from history.")

    # --- Subscriptions ---

    def subscribe(self, maxsize: int = SUBSCRIBER_QUEUE_SIZE) -> asyncio.Queue:
        """
        Returns a queue that receives the full Job record on every change.

        The queue holds at most `maxsize` records. When it is full the oldest
        one is dropped, so a reader that stops reading costs bounded memory.
        Callers that subscribe directly must `unsubscribe`; `events()` does
        that itself.
        """
        subscriber: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.subscribers.add(subscriber)
        return subscriber

    def unsubscribe(self, subscriber: asyncio.Queue):
        self.subscribers.discard(subscriber)

    async def events(self) -> AsyncIterator[Job]:
        """Async iterator over job updates for as long as the caller keeps reading."""
        subscriber = self.subscribe()
        try:
            while True:
                yield await subscriber.get()
        finally:
            self.unsubscribe(subscriber)

    def _broadcast(self, job: Job):
        for subscriber in self.subscribers:
            if subscriber.full():
                subscriber.get_nowait()
                self.logger.debug("Subscriber is behind; dropped its oldest update.")
            subscriber.put_nowait(job)

    # --- Job creation ---

    async def start_conversion(self, request: Union[ConversionRequest, Dict[str, Any]]) -> Job:
        """
        Registers a conversion job and hands it to the conversion runner.

        Raises:
            InvalidRequestError: If the request does not validate.
        """
        try:
            request = ConversionRequest.model_validate(request)
        except ValidationError as e:
            raise InvalidRequestError(describe_validation_error(e)) from e

        job = await self._register(JobType.CONVERSION, request, title=Path(request.input_path).name)
        self._dispatch(job, partial(self.conversion_runner.run, job.job_id, request, partial(self.update, job.job_id)))
        return job

    async def start_download(self, request: Union[DownloadRequest, Dict[str, Any]]) -> Job:
        """
        Registers a download job and queues it on the download runner.

        Raises:
            InvalidRequestError: If the request does not validate.
        """
        try:
            request = DownloadRequest.model_validate(request)
        except ValidationError as e:
            raise InvalidRequestError(describe_validation_error(e)) from e

        job = await self._register(JobType.DOWNLOAD, request)
        self._dispatch(job, partial(self.download_runner.run, job.job_id, request, partial(self.update, job.job_id)))
        return job

    async def _register(self, job_type: JobType, request: Union[ConversionRequest, DownloadRequest],
                        title: Optional[str] = None) -> Job:
        job = Job(
            job_id=str(uuid.uuid4()),
            type=job_type,
            status=JobStatus.QUEUED,
            message='Initializing...',
            title=title,
            details=request,
        )
        async with self._update_lock:
            self.jobs[job.job_id] = job
            await self._persist()
            self._broadcast(job)
        self.logger.info(f"Created {job_type.value} job {job.job_id}")
        return job

    def _dispatch(self, job: Job, runner_call: Callable[[], Awaitable[None]]):
        task = asyncio.create_task(self._run_job(job.job_id, runner_call), name=f"job-{job.job_id}")
        self.job_tasks[job.job_id] = task
        task.add_done_callback(lambda _: self.job_tasks.pop(job.job_id, None))
        task.add_done_callback(self._handle_task_exception)

    def _handle_task_exception(self, task: asyncio.Task) -> None:
        """Callback to log exceptions from fire-and-forget tasks."""
        try:
            task.result()
        except asyncio.CancelledError:
            pass  # Expected
        except Exception:
            self.logger.exception(f"Exception in background task {task.get_name()}:")

    async def _run_job(self, job_id: str, runner_call: Callable[[], Awaitable[None]]):
        """Starts the runner and records how it ended."""
        job = self.jobs.get(job_id)
        # Cancelled between dispatch and the task's first step; the runner never saw it.
        if job is None or job.is_terminal:
            self.logger.info(f"Job {job_id} ended before its runner started.")
            return
        try:
            await runner_call()
        except MediaCoreError as e:
            self.logger.error(f"Job {job_id} failed: {e}")
            await self.update(job_id, {'status': JobStatus.FAILED, 'error': str(e), 'message': str(e)})
        except Exception as e:
            self.logger.exception(f"Unexpected error in job {job_id}")
            await self.update(job_id, {'status': JobStatus.FAILED, 'error': f"Unexpected error: {e}",
                                       'message': 'An unexpected error occurred'})
        else:
            job = self.jobs.get(job_id)
            # A runner that returns without a terminal status was cancelled.
            if job is not None and not job.is_terminal:
                await self.update(job_id, {'status': JobStatus.CANCELLED, 'message': 'Cancelled'})

    # --- Updates ---

    async def update(self, job_id: str, changes: Dict[str, Any]) -> Optional[Job]:
        """
        Merges `changes` into the job, persists, and re-broadcasts the full record.

        Updates to unknown or already terminal jobs are ignored. Progress never
        moves backwards and `output_file` is only ever set once.

        Returns:
            The new record, or None if the update was ignored.
        """
        async with self._update_lock:
            job = self.jobs.get(job_id)
            if job is None:
                self.logger.warning(f"Update for unknown job {job_id} ignored.")
                return None
            if job.is_terminal:
                self.logger.debug(f"Late update for {job.status.value} job {job_id} ignored: {changes}")
                return None

            merged = self._merge(job, changes)
            if merged is None:
                return None
            self.jobs[job_id] = merged
            await self._persist()
            self._broadcast(merged)
            return merged

    def _merge(self, job: Job, changes: Dict[str, Any]) -> Optional[Job]:
        update = {key: value for key, value in changes.items() if key in UPDATABLE_FIELDS}
        ignored = set(changes) - UPDATABLE_FIELDS
        if ignored:
            self.logger.debug(f"Ignoring non-updatable fields for {job.job_id}: {sorted(ignored)}")

        if 'status' in update:
            status = JobStatus(update['status'])
            if status in (JobStatus.QUEUED, JobStatus.PAUSED) and status != job.status:
                self.logger.debug(f"Refusing {job.status.value} -> {status.value} for {job.job_id}")
                status = job.status
            update['status'] = status
            if status == JobStatus.COMPLETED:
                update.setdefault('progress', 100.0)

        if 'progress' in update:
            progress = min(100.0, max(0.0, float(update['progress'])))
            update['progress'] = max(job.progress, progress)

        if job.output_file is not None:
            update.pop('output_file', None)

        if not update:
            return None
        return job.model_copy(update=update)

    async def _persist(self):
        """Writes the newest `history_limit` jobs by creation time to the store."""
        history = sorted(self.jobs.values(), key=lambda job: job.created_at, reverse=True)
        await self.store.set_job_history(history[:self.history_limit])

    # --- Queries and control ---

    def get_job(self, job_id: str) -> Job:
        """
        Raises:
            UnknownJobError: If no job has this id.
        """
        try:
            return self.jobs[job_id]
        except KeyError:
            raise UnknownJobError(f"No job with id {job_id}") from None

    def get_all_jobs(self) -> List[Job]:
        """All known jobs, newest first."""
        return sorted(self.jobs.values(), key=lambda job: job.created_at, reverse=True)

    async def cancel_job(self, job_id: str, message: str = 'Cancelled by user') -> bool:
        """
        Cancels a queued or running job.

        The job is marked cancelled right away; the runner tears its process
        down in the background. Jobs in any other state, and unknown ids, are
        left alone.

        Returns:
            True if the job was cancelled by this call.
        """
        job = self.jobs.get(job_id)
        if job is None:
            self.logger.warning(f"Cancel requested for unknown job {job_id}.")
            return False
        if job.status not in (JobStatus.QUEUED, JobStatus.RUNNING):
            return False

        # Mark first: a runner task that has not started yet sees the terminal
        # status and never runs; one that already registered gets cancelled below.
        cancelled = await self.update(job_id, {'status': JobStatus.CANCELLED, 'message': message})
        if cancelled is None:
            return False
        runner = self.conversion_runner if job.type == JobType.CONVERSION else self.download_runner
        runner.cancel(job_id)
        self.logger.info(f"Job {job_id} cancelled.")
        return True

    async def clear_history(self) -> int:
        """Removes every finished job from the table and the store. Returns the count."""
        async with self._update_lock:
            finished = [job_id for job_id, job in self.jobs.items() if job.is_terminal]
            for job_id in finished:
                del self.jobs[job_id]
            await self._persist()
        self.logger.info(f"Cleared {len(finished)} finished item(s) from the history.")
        return len(finished)

    async def shutdown(self, timeout: float = 10):
        """Cancels every active job and waits for the runners to let go of them."""
        active = [job.job_id for job in self.jobs.values() if not job.is_terminal]
        for job_id in active:
            await self.cancel_job(job_id, message='Cancelled: application shutting down')

        tasks = list(self.job_tasks.values())
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                self.logger.warning(f"{task.get_name()} did not stop in time; cancelling.")
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        await self.download_runner.close()
        self.logger.info("Job orchestrator stopped.")
