"""Manages the download queue, the job state machine, and per-job worker tasks."""
import asyncio
import os
import time
import uuid
import shutil
import logging
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Coroutine, Deque, Dict, List, Optional
from urllib.parse import urlparse

from .acquisition import AcquisitionContext, AcquisitionStrategy, DirectStrategy, replace_file
from .constants import (
    BACKOFF_BASE_MS, BACKOFF_CAP_MS, DEFAULT_MAX_CONCURRENT, DEFAULT_MAX_RETRIES, JOB_TEMP_PREFIX,
    PROGRESS_INTERVAL_SECONDS, default_download_dir,
)
from .dash import DashStrategy
from .exceptions import (
    DownloadCancelledError, DuplicateJobError, FilesystemError, NetworkError, ToolchainError,
    UnsupportedModeError, VidownError,
)
from .ffmpeg import Assembler, FFmpegToolchain
from .hls import HlsStrategy
from .jobs import ConversionSpec, DownloadJob, JobMode, JobState
from .network import HttpFetcher
from .progress import ProgressEstimator, ProgressSnapshot
from .protocol import CanceledEvent, DoneEvent, ErrorEvent, JobStartedEvent, LogEvent, Message, ProgressEvent

EventCallback = Callable[[Message], Coroutine[Any, Any, None]]

RETRYABLE_ERRORS = (NetworkError, ToolchainError)


def backoff_delay_ms(retry_count: int) -> int:
    """Delay before the next attempt, given how many retries the job has already used."""
    return min(BACKOFF_BASE_MS * 2 ** retry_count, BACKOFF_CAP_MS)


def admission_order(pending: Deque[str], job_id: str, retried: bool = False):
    """Fresh jobs join the back of the pending deque; retried jobs go to the front."""
    if retried:
        pending.appendleft(job_id)
    else:
        pending.append(job_id)


def default_filename(url: str, mode: JobMode) -> str:
    name = Path(urlparse(url).path).name
    if mode is JobMode.DIRECT and name:
        return name
    stem = Path(name).stem if name else ''
    return f"{stem or 'video'}.mp4"


def default_strategies() -> Dict[JobMode, AcquisitionStrategy]:
    return {JobMode.DIRECT: DirectStrategy(), JobMode.HLS: HlsStrategy(), JobMode.DASH: DashStrategy()}


@dataclass
class _RunningJob:
    """Runtime handles for a job that holds a concurrency slot."""
    estimator: ProgressEstimator
    resume_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None
    cancel_requested: bool = False
    # The task is only interrupted between these two points.
    started: bool = False
    finishing: bool = False


class _JobSink:
    """Progress sink handed to strategies; routes byte counts back into the manager."""

    def __init__(self, manager: 'QueueManager', job: DownloadJob, runtime: _RunningJob):
        self.manager = manager
        self.job = job
        self.runtime = runtime

    async def report(self, bytes_received: int) -> None:
        await self.manager._record_progress(self.job, self.runtime, bytes_received)

    async def set_total(self, total_bytes: Optional[int]) -> None:
        if total_bytes and total_bytes > 0:
            async with self.manager.lock:
                self.job.expected_total_bytes = total_bytes
                self.runtime.estimator.set_total(total_bytes)


class QueueManager:
    """
    Owns pending and running jobs, enforces the concurrency limit, and drives every
    job through its lifecycle.

    Every job emits ``job-started`` when it takes a slot and exactly one terminal
    event (``done``, ``error`` or ``canceled``). Only this class decides whether a
    failure is retried.
    """

    def __init__(self, event_callback: EventCallback, max_concurrent: int = DEFAULT_MAX_CONCURRENT,
                 max_retries: int = DEFAULT_MAX_RETRIES, download_dir: Optional[Path] = None,
                 fetcher: Optional[HttpFetcher] = None, assembler: Optional[Assembler] = None,
                 strategies: Optional[Dict[JobMode, AcquisitionStrategy]] = None,
                 progress_interval: float = PROGRESS_INTERVAL_SECONDS,
                 sleep: Callable[[float], Coroutine[Any, Any, None]] = asyncio.sleep,
                 clock: Callable[[], float] = time.monotonic):
        """
        Initializes the QueueManager.

        Args:
            event_callback: The async function to call with every job event.
            max_concurrent: How many jobs may hold a slot at once.
            max_retries: Retry budget for retryable failures, per job.
            download_dir: Base directory for relative output targets.
            fetcher: HTTP capability shared by all strategies.
            assembler: ffmpeg-backed assembly capability.
            strategies: Acquisition strategy per mode.
            sleep: Awaited for retry backoff; replaced in tests.
            clock: Monotonic clock for the progress estimator.
        """
        self.event_callback = event_callback
        self.logger = logging.getLogger(__name__)
        self.max_concurrent = max_concurrent
        self.max_retries = max_retries
        self.download_dir = download_dir or default_download_dir()
        self.fetcher = fetcher or HttpFetcher()
        self.assembler = assembler or Assembler(FFmpegToolchain())
        self.strategies = strategies if strategies is not None else default_strategies()
        self.progress_interval = progress_interval
        self.sleep = sleep
        self.clock = clock

        self.lock = asyncio.Lock()
        self.jobs: Dict[str, DownloadJob] = {}
        self.pending: Deque[str] = deque()
        self.running: Dict[str, _RunningJob] = {}
        self.retry_timers: Dict[str, asyncio.Task] = {}
        self.estimators: Dict[str, ProgressEstimator] = {}
        self.shutting_down = False

    async def initialize(self):
        """Performs asynchronous initialization, such as cleaning stale temp dirs."""
        await self.cleanup_temporary_files()

    def set_config(self, max_concurrent: int, max_retries: int):
        """Sets runtime limits; a lower concurrency takes effect as running jobs finish."""
        self.max_concurrent = max_concurrent
        self.max_retries = max_retries

    # --- Collaborator interface ---

    async def enqueue(self, mode: str, url: str, out: str = '', headers: Optional[Dict[str, str]] = None,
                      job_id: Optional[str] = None, expected_total_bytes: Optional[int] = None,
                      conversion: Optional[ConversionSpec] = None, subtitle_url: Optional[str] = None) -> str:
        """
        Registers a job and admits it if a slot is free.

        A mode without an acquisition strategy is rejected here: the job is
        recorded in ``error`` and its ``error`` event is emitted before this
        returns, whether or not a slot is free.

        Raises:
            DuplicateJobError: If ``job_id`` was used before.
        """
        async with self.lock:
            if job_id is None:
                job_id = str(uuid.uuid4())
            elif job_id in self.jobs:
                raise DuplicateJobError(f"Job id {job_id!r} is already in use")
            job = DownloadJob(
                job_id=job_id,
                mode=mode,
                source_url=url,
                output_target=self._resolve_output(out, url, mode),
                request_headers=dict(headers or {}),
                expected_total_bytes=expected_total_bytes,
                conversion=conversion,
                subtitle_url=subtitle_url,
                max_retries=self.max_retries,
            )
            self.jobs[job_id] = job
            rejection = self._check_mode(mode)
            if rejection is None:
                self.estimators[job_id] = ProgressEstimator(
                    expected_total_bytes, min_interval=self.progress_interval, clock=self.clock)
                admission_order(self.pending, job_id)
                self.logger.info(f"[{job_id}] Queued {mode} download of {url} -> {job.output_target}")
                self._admit_locked()
            else:
                job.state = JobState.ERROR
                job.last_error, job.error_code = str(rejection), rejection.code

        if rejection is not None:
            self.logger.error(f"[{job_id}] Rejected: {rejection}")
            await self._emit(ErrorEvent(job_id=job_id, code=rejection.code, msg=str(rejection)))
        return job_id

    async def pause(self, job_id: str) -> bool:
        """Suspends an active job at its next chunk or segment boundary. The job keeps its slot."""
        async with self.lock:
            job = self.jobs.get(job_id)
            runtime = self.running.get(job_id)
            if job is None or job.state is not JobState.ACTIVE or runtime is None or runtime.cancel_requested:
                return False
            job.state = JobState.PAUSED
            runtime.resume_event.clear()
        self.logger.info(f"[{job_id}] Paused")
        return True

    async def resume(self, job_id: str) -> bool:
        async with self.lock:
            job = self.jobs.get(job_id)
            runtime = self.running.get(job_id)
            if job is None or job.state is not JobState.PAUSED or runtime is None:
                return False
            job.state = JobState.ACTIVE
            runtime.resume_event.set()
        self.logger.info(f"[{job_id}] Resumed")
        return True

    async def cancel(self, job_id: str) -> bool:
        """
        Cancels a job in any non-terminal state.

        Queued and retrying jobs are cancelled immediately. Running jobs are
        interrupted; their task cleans up and emits ``canceled`` itself. Asking
        again while that cleanup is in progress is accepted and changes nothing.

        Returns:
            False if the job is unknown or already terminal.
        """
        async with self.lock:
            job = self.jobs.get(job_id)
            if job is None or job.state.is_terminal:
                return False
            if job.state is JobState.QUEUED:
                self.pending.remove(job_id)
                job.state = JobState.CANCELLED
            elif job.state is JobState.RETRYING:
                if timer := self.retry_timers.pop(job_id, None):
                    timer.cancel()
                job.state = JobState.CANCELLED
            else:
                runtime = self.running.get(job_id)
                if runtime is None:
                    return False
                if not runtime.cancel_requested:
                    self._interrupt_locked(runtime)
                    self.logger.info(f"[{job_id}] Cancellation requested")
                return True
        self.logger.info(f"[{job_id}] Cancelled before start")
        await self._emit(CanceledEvent(job_id=job_id))
        return True

    async def list_jobs(self) -> List[Dict[str, Any]]:
        async with self.lock:
            return [job.snapshot() for job in self.jobs.values()]

    async def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        async with self.lock:
            job = self.jobs.get(job_id)
            return job.snapshot() if job else None

    async def shutdown(self):
        """Cancels all running work and closes shared resources."""
        self.logger.info("Shutdown requested. Cancelling running jobs...")
        async with self.lock:
            self.shutting_down = True
            for job_id in list(self.pending) + list(self.retry_timers):
                self.jobs[job_id].state = JobState.CANCELLED
            self.pending.clear()
            for runtime in self.running.values():
                if not runtime.cancel_requested:
                    self._interrupt_locked(runtime)
            tasks = [r.task for r in self.running.values() if r.task is not None]
            timers = list(self.retry_timers.values())
            self.retry_timers.clear()

        for timer in timers:
            timer.cancel()
        if tasks or timers:
            await asyncio.gather(*tasks, *timers, return_exceptions=True)
        await self.fetcher.close()

    # --- Admission and execution ---

    def _check_mode(self, mode: str) -> Optional[UnsupportedModeError]:
        try:
            parsed_mode = JobMode.parse(mode)
        except UnsupportedModeError as e:
            return e
        if parsed_mode not in self.strategies:
            return UnsupportedModeError(f"No acquisition strategy for mode {parsed_mode.value!r}")
        return None

    def _resolve_output(self, out: str, url: str, mode: str) -> Path:
        try:
            parsed_mode = JobMode.parse(mode)
        except UnsupportedModeError:
            parsed_mode = JobMode.DIRECT
        target = Path(out).expanduser() if out else Path(default_filename(url, parsed_mode))
        if not target.is_absolute():
            target = self.download_dir / target
        return target

    def _admit_locked(self):
        """Starts queued jobs while slots are free. Caller holds ``self.lock``."""
        while self.pending and len(self.running) < self.max_concurrent and not self.shutting_down:
            job_id = self.pending.popleft()
            job = self.jobs[job_id]
            job.state = JobState.ACTIVE
            job.reset_progress()
            estimator = self.estimators[job_id]
            estimator.restart()
            runtime = _RunningJob(estimator=estimator)
            runtime.resume_event.set()
            self.running[job_id] = runtime
            runtime.task = asyncio.create_task(self._run_job(job, runtime), name=f"job-{job_id}")
            runtime.task.add_done_callback(self._task_done_callback)

    @staticmethod
    def _interrupt_locked(runtime: _RunningJob):
        """Flags a running attempt as cancelled and interrupts it unless it is already finishing."""
        runtime.cancel_requested = True
        runtime.resume_event.set()
        if runtime.task is not None and runtime.started and not runtime.finishing:
            runtime.task.cancel()

    def _task_done_callback(self, task: asyncio.Task):
        """Logs exceptions that escaped a job task."""
        try:
            task.result()
        except asyncio.CancelledError:
            pass  # Normal cancellation
        except Exception:
            self.logger.exception(f"Exception in background task {task.get_name()}:")

    async def _run_job(self, job: DownloadJob, runtime: _RunningJob):
        """
        One attempt of one job, from slot acquisition to its outcome.

        The slot is released only after the outcome is recorded, and a retry
        timer is armed only after the slot is released.
        """
        runtime.started = True
        outcome: Optional[BaseException] = None
        final_size = 0
        try:
            await self._emit(JobStartedEvent(job_id=job.job_id, out=str(job.output_target)))
            final_size = await self._execute(job, runtime)
        except (asyncio.CancelledError, Exception) as exc:
            outcome = exc
        runtime.finishing = True

        retry_delay_ms: Optional[int] = None
        try:
            if outcome is None:
                await self._complete(job, runtime, final_size)
            else:
                await self._remove_partial(job)
                if runtime.cancel_requested or isinstance(outcome, (asyncio.CancelledError, DownloadCancelledError)):
                    await self._finish_cancelled(job)
                else:
                    retry_delay_ms = await self._handle_failure(job, outcome)
        finally:
            async with self.lock:
                if self.running.get(job.job_id) is runtime:
                    del self.running[job.job_id]
                if retry_delay_ms is not None and job.state is JobState.RETRYING:
                    self._schedule_retry_locked(job, retry_delay_ms)
                self._admit_locked()

    async def _execute(self, job: DownloadJob, runtime: _RunningJob) -> int:
        mode = JobMode.parse(job.mode)
        strategy = self.strategies[mode]
        await self._checkpoint(runtime)
        try:
            await asyncio.to_thread(job.output_target.parent.mkdir, parents=True, exist_ok=True)
        except OSError as e:
            raise FilesystemError(f"Could not create {job.output_target.parent}: {e}") from e

        ctx = AcquisitionContext(
            job_id=job.job_id,
            url=job.source_url,
            part_path=job.part_path,
            fetcher=self.fetcher,
            assembler=self.assembler,
            sink=_JobSink(self, job, runtime),
            headers=job.request_headers,
            conversion=job.conversion,
            expected_total_bytes=job.expected_total_bytes,
            checkpoint=lambda: self._checkpoint(runtime),
        )
        self.logger.info(f"[{job.job_id}] Starting {mode.value} acquisition (attempt {job.retry_count + 1})")
        await strategy.acquire(ctx)
        if job.subtitle_url:
            await self._embed_subtitles(job, ctx)
        await self._checkpoint(runtime)
        return await asyncio.to_thread(self._place_artifact, job)

    async def _checkpoint(self, runtime: _RunningJob):
        """Blocks while the job is paused."""
        await runtime.resume_event.wait()
        if runtime.cancel_requested:
            raise DownloadCancelledError("Job was cancelled")

    async def _embed_subtitles(self, job: DownloadJob, ctx: AcquisitionContext):
        suffix = Path(urlparse(job.subtitle_url).path).suffix or '.vtt'
        with ctx.temp_dir('subs') as tmp:
            subtitles = tmp / f"subtitles{suffix}"
            await self.fetcher.fetch_to_file(job.subtitle_url, subtitles, job.request_headers)
            embedded = tmp / f"embedded{job.output_target.suffix}"
            await self.assembler.embed_subtitles(job.part_path, subtitles, embedded, job.conversion)
            await replace_file(embedded, job.part_path)

    @staticmethod
    def _place_artifact(job: DownloadJob) -> int:
        """Atomically renames the finished ``.part`` file onto the output target."""
        try:
            os.replace(job.part_path, job.output_target)
            return job.output_target.stat().st_size
        except OSError as e:
            raise FilesystemError(f"Could not rename {job.part_path.name} to {job.output_target}: {e}") from e

    async def _remove_partial(self, job: DownloadJob):
        try:
            await asyncio.to_thread(job.part_path.unlink, missing_ok=True)
        except OSError as e:
            self.logger.error(f"[{job.job_id}] Could not remove partial file {job.part_path}: {e}")

    # --- Progress and outcomes ---

    @staticmethod
    def _apply_snapshot(job: DownloadJob, snapshot: ProgressSnapshot) -> ProgressEvent:
        job.bytes_received = snapshot.bytes_received
        job.speed_ema = snapshot.speed_bps
        job.eta_seconds = snapshot.eta_seconds
        job.percent = snapshot.percent
        return ProgressEvent(
            job_id=job.job_id,
            bytes_received=snapshot.bytes_received,
            total_bytes=snapshot.total_bytes,
            speed_bps=int(snapshot.speed_bps),
            eta_sec=snapshot.eta_seconds,
            percent=snapshot.percent,
        )

    async def _record_progress(self, job: DownloadJob, runtime: _RunningJob, bytes_received: int):
        async with self.lock:
            if job.state not in (JobState.ACTIVE, JobState.PAUSED):
                return
            snapshot = runtime.estimator.update(bytes_received)
            job.bytes_received = runtime.estimator.bytes_received
            if snapshot is None:
                return
            event = self._apply_snapshot(job, snapshot)
        await self._emit(event)

    async def _complete(self, job: DownloadJob, runtime: _RunningJob, final_size: int):
        """Marks the job complete, then flushes a last progress event and ``done``."""
        async with self.lock:
            if job.state.is_terminal:
                return
            job.state = JobState.COMPLETE
            if job.expected_total_bytes is None:
                runtime.estimator.set_total(final_size)
            progress = self._apply_snapshot(job, runtime.estimator.update(final_size, flush=True))
        self.logger.info(f"[{job.job_id}] Completed: {job.output_target} ({final_size} bytes)")
        await self._emit(progress)
        await self._emit(DoneEvent(job_id=job.job_id, final=str(job.output_target), bytes_written=final_size))

    async def _finish_cancelled(self, job: DownloadJob):
        async with self.lock:
            if job.state.is_terminal:
                return
            job.state = JobState.CANCELLED
        self.logger.info(f"[{job.job_id}] Cancelled")
        await self._emit(CanceledEvent(job_id=job.job_id))

    async def _handle_failure(self, job: DownloadJob, exc: Exception) -> Optional[int]:
        """
        Classifies a failed attempt: retry later or end the job in ``error``.

        Returns:
            The backoff delay in milliseconds when the job moved to ``retrying``.
        """
        if isinstance(exc, VidownError):
            code = exc.code
            self.logger.error(f"[{job.job_id}] {exc.__class__.__name__}: {exc}")
        else:
            code = 'internal_error'
            self.logger.exception(f"[{job.job_id}] Unexpected error during download")
        message = str(exc) or exc.__class__.__name__

        delay_ms: Optional[int] = None
        async with self.lock:
            if job.state.is_terminal:
                return None
            job.last_error, job.error_code = message, code
            if isinstance(exc, RETRYABLE_ERRORS) and job.retry_count < job.max_retries and not self.shutting_down:
                delay_ms = backoff_delay_ms(job.retry_count)
                job.retry_count += 1
                job.state = JobState.RETRYING
                event: Message = LogEvent(level='info', msg='retrying', job_id=job.job_id,
                                          attempt=job.retry_count, delayMs=delay_ms)
                self.logger.info(f"[{job.job_id}] Retry {job.retry_count}/{job.max_retries} in {delay_ms} ms")
            else:
                job.state = JobState.ERROR
                event = ErrorEvent(job_id=job.job_id, code=code, msg=message)
        await self._emit(event)
        return delay_ms

    def _schedule_retry_locked(self, job: DownloadJob, delay_ms: int):
        """Arms the backoff timer for a retrying job. Caller holds ``self.lock``."""
        if self.shutting_down:
            job.state = JobState.CANCELLED
            return
        timer = asyncio.create_task(self._retry_after(job, delay_ms), name=f"retry-{job.job_id}")
        timer.add_done_callback(self._task_done_callback)
        self.retry_timers[job.job_id] = timer

    async def _retry_after(self, job: DownloadJob, delay_ms: int):
        await self.sleep(delay_ms / 1000)
        async with self.lock:
            self.retry_timers.pop(job.job_id, None)
            if job.state is not JobState.RETRYING:
                return
            job.state = JobState.QUEUED
            admission_order(self.pending, job.job_id, retried=True)
            self._admit_locked()

    async def _emit(self, event: Message):
        try:
            await self.event_callback(event)
        except Exception:
            self.logger.exception(f"Failed to deliver {event.__class__.__name__}")

    async def cleanup_temporary_files(self):
        """Removes per-job temp directories left in the download directory by a crashed run."""
        if not await asyncio.to_thread(self.download_dir.is_dir): return
        items_to_check = await asyncio.to_thread(list, self.download_dir.iterdir())
        count = 0
        for item in items_to_check:
            if item.name.startswith(JOB_TEMP_PREFIX) and item.is_dir():
                try:
                    await asyncio.to_thread(shutil.rmtree, item)
                    count += 1
                except OSError as e:
                    self.logger.error(f"Error deleting temp dir {item.name}: {e}")
        if count > 0: self.logger.info(f"Deleted {count} stale temporary director(ies).")
