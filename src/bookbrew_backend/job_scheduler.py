"""
Job admission, deduplication and dispatch for PDF builds.

The scheduler is the single authority over build jobs:

- Admission: requests are validated, fingerprinted and then, atomically under
  one lock, answered from the result cache, attached to the in-flight job with
  the same fingerprint, or queued as a new job
- Dispatch: a fixed pool of workers drains the queue in FIFO order and calls
  the renderer outside the lock, each job in its own scratch directory
- Retries: transient renderer failures are retried with exponential backoff as
  new job records that inherit the waiters of the failed one
- Fan-out: every job carries a completion event that releases all waiters at
  once when the job reaches a terminal state
- Maintenance: a background timer periodically forgets expired handles and
  jobs and sweeps the artifacts nothing pins any more

Callers only ever hold ``Handle`` objects; a handle is bound to a job (and
rebound to its retry) or resolved directly to a cached artifact.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from threading import Event, Lock, Timer
from typing import TYPE_CHECKING, Callable, Deque, Dict, List, Optional, Set
from uuid import uuid4

from .artifact_store import ArtifactStore
from .configuration import SchedulerSettings, Settings
from .errors import (
    BuildCanceled,
    BuildError,
    BuildTimeout,
    HandleNotFound,
    InvalidRequest,
    NotFound,
    PermanentRenderError,
    QueueSaturated,
    RenderCanceled,
    RenderError,
    TransientRenderError,
)
from .fingerprint import compute_fingerprint
from .models import (
    Artifact,
    BuildKind,
    BuildRequest,
    JobDetail,
    JobEvent,
    JobState,
    JobSummary,
    StatusResponse,
)
from .renderer import RendererAdapter
from .result_cache import CacheEntry, ResultCache, cache_owner

if TYPE_CHECKING:
    from .database import JobLedger

logger = logging.getLogger(__name__)

REQUIRED_TEMPLATES = {
    BuildKind.CONVERT: ("layout",),
    BuildKind.COMPILE_COVER: ("cover",),
    BuildKind.IMPOSE: ("layout", "impose"),
}


def handle_owner(handle_id: str) -> str:
    """Pin owner name used while a handle references an artifact."""
    return f"handle:{handle_id}"


def job_owner(job_id: str) -> str:
    """Pin owner name used between storing an artifact and handing it out."""
    return f"job:{job_id}"


def validate_request(request: BuildRequest) -> None:
    """
    Reject requests that can never build.

    Raises:
        InvalidRequest: Empty content, a missing template for the build kind,
            or a user template without a user id
    """
    if not request.source_content:
        raise InvalidRequest("Source content must not be empty")
    template = request.template
    for category in REQUIRED_TEMPLATES[request.kind]:
        if not getattr(template, category).strip():
            raise InvalidRequest(f"A {category} template is required for {request.kind.value} builds")
        if getattr(template, f"{category}_is_user_template") and not template.user_id:
            raise InvalidRequest(f"The user {category} template requires a user_id")


@dataclass(frozen=True)
class Handle:
    """Opaque reference returned by ``submit``."""

    id: str
    fingerprint: str
    cached: bool = False


@dataclass
class _HandleRecord:
    fingerprint: str
    request: BuildRequest
    created_at: float
    job_id: Optional[str] = None
    artifact: Optional[Artifact] = None


@dataclass(eq=False)
class BuildJob:
    """
    One attempt at building a fingerprint.

    States only move forward (queued → running → terminal). A retry is a new
    ``BuildJob`` whose id is recorded in ``retried_by``.

    Attributes:
        id: ``<fingerprint prefix>-<attempt>-<random suffix>``
        fingerprint: Deduplication and cache key of the request
        request: The immutable request being built
        attempt: 0 for the first try, incremented per retry
        waiters: Ids of the handles bound to this job
        done: Set once the job is terminal; waiters block on it
        cancel_event: Handed to renderers that support cooperative cancellation
    """

    id: str
    fingerprint: str
    request: BuildRequest
    attempt: int
    created_at: datetime
    state: JobState = JobState.QUEUED
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    artifact: Optional[Artifact] = None
    error: Optional[BuildError] = None
    waiters: Set[str] = field(default_factory=set)
    events: List[JobEvent] = field(default_factory=list)
    retried_by: Optional[str] = None
    done: Event = field(default_factory=Event, repr=False)
    cancel_event: Event = field(default_factory=Event, repr=False)

    def log(self, timestamp: datetime, message: str) -> None:
        self.events.append(JobEvent(timestamp=timestamp, message=message))

    def to_summary(self) -> JobSummary:
        return JobSummary(
            id=self.id,
            fingerprint=self.fingerprint,
            kind=self.request.kind,
            state=self.state,
            attempt=self.attempt,
            created_at=self.created_at,
            started_at=self.started_at,
            finished_at=self.finished_at,
            requester_id=self.request.requester_id,
            waiters=len(self.waiters),
            artifact_ref=self.artifact.ref if self.artifact else None,
            error=self.error.message if self.error else None,
            error_kind=self.error.kind.value if self.error else None,
        )

    def to_detail(self) -> JobDetail:
        summary = self.to_summary()
        return JobDetail(
            **summary.model_dump(),
            template=self.request.template,
            events=list(self.events),
            retried_by=self.retried_by,
        )


class JobScheduler:
    """
    Bounded, deduplicating build scheduler.

    Thread Safety:
        One lock guards the fingerprint → active job map, the job table, the
        handle table and the FIFO queue. Renderer calls never run under it.
        Lock order is scheduler → cache → store; the cache and the store
        never call back into the scheduler.

    Attributes:
        renderer: Adapter producing PDF bytes
        store: Artifact storage and scratch workspaces
        cache: Fingerprint → artifact cache
        settings: Worker count, queue bound, retry and retention policy
    """

    def __init__(
        self,
        renderer: RendererAdapter,
        store: ArtifactStore,
        cache: ResultCache,
        settings: SchedulerSettings | None = None,
        ledger: Optional["JobLedger"] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.renderer = renderer
        self.store = store
        self.cache = cache
        self.settings = settings or SchedulerSettings()
        self.ledger = ledger
        self._clock = clock
        self._lock = Lock()
        self._jobs: Dict[str, BuildJob] = {}
        self._active: Dict[str, BuildJob] = {}
        self._handles: Dict[str, _HandleRecord] = {}
        self._queue: Deque[BuildJob] = deque()
        self._backoff: Dict[str, Timer] = {}
        self._cleanup_timer: Optional[Timer] = None
        self._closed = False
        self._executor = ThreadPoolExecutor(
            max_workers=self.settings.worker_count,
            thread_name_prefix="bookbrew-render",
        )

        self.store.purge_scratch()
        if self.ledger is not None:
            interrupted = self.ledger.mark_interrupted()
            if interrupted:
                logger.warning(f"Marked {interrupted} job(s) from a previous run as interrupted")
        logger.info(
            f"Scheduler started with {self.settings.worker_count} worker(s), "
            f"queue limit {self.settings.max_queue_length}, max retries {self.settings.max_retries}"
        )
        self._schedule_cleanup()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        renderer: RendererAdapter,
        ledger: Optional["JobLedger"] = None,
        clock: Callable[[], float] = time.time,
    ) -> "JobScheduler":
        """Build the store and the cache from settings and wire cache evictions to unpinning."""
        store = ArtifactStore(Path(settings.storage.artifact_root))

        def release_cache_pin(entry: CacheEntry) -> None:
            store.unpin(entry.artifact.ref, cache_owner(entry.fingerprint))

        cache = ResultCache(
            ttl_seconds=settings.cache.ttl_seconds,
            max_entries=settings.cache.max_entries,
            max_bytes=settings.cache.max_bytes,
            clock=clock,
            on_evict=release_cache_pin,
        )
        return cls(renderer, store, cache, settings=settings.scheduler, ledger=ledger, clock=clock)

    # Helpers (call with the lock held unless noted)

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    @staticmethod
    def _handle_id(handle: Handle | str) -> str:
        return handle.id if isinstance(handle, Handle) else handle

    def _queued_count(self) -> int:
        return len(self._queue) + len(self._backoff)

    def _new_job(self, fingerprint: str, request: BuildRequest, attempt: int) -> BuildJob:
        job = BuildJob(
            id=f"{fingerprint[:16]}-{attempt}-{uuid4().hex[:8]}",
            fingerprint=fingerprint,
            request=request,
            attempt=attempt,
            created_at=self._now(),
        )
        self._jobs[job.id] = job
        self._active[fingerprint] = job
        return job

    def _release_active(self, job: BuildJob) -> None:
        if self._active.get(job.fingerprint) is job:
            del self._active[job.fingerprint]

    def _pin_for_handle(self, artifact: Artifact, handle_id: str) -> bool:
        try:
            self.store.pin(artifact.ref, handle_owner(handle_id))
        except NotFound:
            logger.warning(f"Artifact {artifact.ref} disappeared from the store")
            return False
        return True

    def _persist(self, detail: Optional[JobDetail]) -> None:
        """Write a job snapshot to the ledger (called without the lock)."""
        if self.ledger is None or detail is None:
            return
        try:
            self.ledger.save_job(detail)
        except sqlite3.Error:
            logger.exception(f"Could not record job {detail.id} in the ledger")

    def _snapshot(self, job: BuildJob) -> Optional[JobDetail]:
        return job.to_detail() if self.ledger is not None else None

    # Admission

    def submit(self, request: BuildRequest) -> Handle:
        """
        Admit a build request.

        Returns:
            A handle resolved to a cached artifact, attached to the in-flight
            job with the same fingerprint, or bound to a newly queued job

        Raises:
            InvalidRequest: The request can never build; no job is created
            QueueSaturated: Too many builds are waiting; nothing is enqueued
        """
        validate_request(request)
        fingerprint = compute_fingerprint(request)
        handle = Handle(id=uuid4().hex, fingerprint=fingerprint)

        with self._lock:
            if self._closed:
                raise QueueSaturated("The scheduler is shutting down")

            artifact = self.cache.get(fingerprint)
            if artifact is not None and self._pin_for_handle(artifact, handle.id):
                self._handles[handle.id] = _HandleRecord(fingerprint, request, self._clock(), artifact=artifact)
                logger.info(f"Cache hit for {fingerprint[:16]} ({request.kind.value})")
                return replace(handle, cached=True)

            job = self._active.get(fingerprint)
            if job is not None:
                job.waiters.add(handle.id)
                job.log(self._now(), f"Joined by handle {handle.id[:8]}.")
                self._handles[handle.id] = _HandleRecord(fingerprint, request, self._clock(), job_id=job.id)
                logger.info(f"Deduplicated {request.kind.value} request onto job {job.id}")
                return handle

            if self._queued_count() >= self.settings.max_queue_length:
                raise QueueSaturated(f"Build queue is full ({self.settings.max_queue_length} queued)")

            job = self._new_job(fingerprint, request, attempt=0)
            job.waiters.add(handle.id)
            job.log(job.created_at, "Job registered and awaiting execution.")
            self._handles[handle.id] = _HandleRecord(fingerprint, request, self._clock(), job_id=job.id)
            self._queue.append(job)
            self._executor.submit(self._drain_one)
            snapshot = self._snapshot(job)

        logger.info(f"Queued {request.kind.value} job {job.id}")
        self._persist(snapshot)
        return handle

    # Observation

    def status(self, handle: Handle | str) -> JobState:
        """Current state of a handle; ``unknown`` for unknown or expired handles."""
        with self._lock:
            record = self._handles.get(self._handle_id(handle))
            if record is None:
                return JobState.UNKNOWN
            if record.artifact is not None:
                return JobState.SUCCEEDED
            job = self._jobs.get(record.job_id or "")
            return job.state if job is not None else JobState.UNKNOWN

    def describe(self, handle: Handle | str) -> StatusResponse:
        """Status plus the job, artifact and error the handle currently points at."""
        handle_id = self._handle_id(handle)
        with self._lock:
            record = self._handles.get(handle_id)
            if record is None:
                return StatusResponse(handle=handle_id, state=JobState.UNKNOWN, progress=JobState.UNKNOWN)
            if record.artifact is not None:
                return StatusResponse(
                    handle=handle_id,
                    state=JobState.SUCCEEDED,
                    progress=JobState.SUCCEEDED,
                    job_id=record.artifact.produced_by_job_id,
                    artifact_ref=record.artifact.ref,
                )
            job = self._jobs.get(record.job_id or "")
            if job is None:
                return StatusResponse(handle=handle_id, state=JobState.UNKNOWN, progress=JobState.UNKNOWN)
            summary = job.to_summary()
        return StatusResponse(
            handle=handle_id,
            state=summary.state,
            progress=summary.state,
            job_id=summary.id,
            attempt=summary.attempt,
            artifact_ref=summary.artifact_ref,
            error=summary.error,
            error_kind=summary.error_kind,
        )

    def wait(self, handle: Handle | str, timeout: Optional[float] = None) -> Artifact:
        """
        Block until the handle's build is terminal, following retries.

        A timeout only abandons this wait; the build keeps running.

        Raises:
            BuildTimeout: ``timeout`` seconds elapsed first
            HandleNotFound: The handle is unknown or expired
            BuildError: The terminal error of a failed or canceled build
        """
        handle_id = self._handle_id(handle)
        deadline = None if timeout is None else time.monotonic() + timeout

        while True:
            with self._lock:
                record = self._handles.get(handle_id)
                if record is None:
                    raise HandleNotFound(f"Handle {handle_id} not found")
                if record.artifact is not None:
                    return record.artifact
                job = self._jobs.get(record.job_id or "")
                if job is None:
                    raise HandleNotFound(f"Handle {handle_id} not found")

            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            if not job.done.wait(remaining):
                raise BuildTimeout(f"Build {job.id} did not finish within {timeout:g}s")

            with self._lock:
                if job.retried_by is not None:
                    continue
                if job.state == JobState.SUCCEEDED and job.artifact is not None:
                    return job.artifact
                error = job.error or PermanentRenderError(f"Build {job.id} ended without a result")
            # Each waiter gets its own exception instance.
            raise type(error)(error.message)

    def request_for(self, handle: Handle | str) -> Optional[BuildRequest]:
        """The request a handle was submitted with, None once the handle expired."""
        with self._lock:
            record = self._handles.get(self._handle_id(handle))
            return record.request if record else None

    def job_detail(self, job_id: str) -> Optional[JobDetail]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.to_detail() if job else None

    def list_jobs(self) -> List[JobSummary]:
        """All retained jobs, newest first."""
        with self._lock:
            jobs = sorted(self._jobs.values(), key=lambda job: job.created_at, reverse=True)
            return [job.to_summary() for job in jobs]

    # Cancellation

    def cancel(self, handle: Handle | str) -> bool:
        """
        Request cancellation of the build behind a handle.

        Queued builds (including retries waiting out their backoff) are
        canceled at once and never reach the renderer. Running builds are only
        signalled when the renderer supports cooperative cancellation.

        Returns:
            Whether cancellation was applied
        """
        snapshot, dequeued = None, False
        with self._lock:
            record = self._handles.get(self._handle_id(handle))
            if record is None or record.artifact is not None:
                return False
            job = self._jobs.get(record.job_id or "")
            if job is None or job.state.is_terminal:
                return False

            if job.state == JobState.QUEUED:
                if job in self._queue:
                    self._queue.remove(job)
                timer = self._backoff.pop(job.id, None)
                if timer is not None:
                    timer.cancel()
                self._mark_terminal(job, JobState.CANCELED, BuildCanceled("Build canceled before it started"))
                snapshot = self._snapshot(job)
                applied = dequeued = True
            elif self.renderer.supports_cancellation:
                job.cancel_event.set()
                job.log(self._now(), "Cancellation requested.")
                applied = True
            else:
                applied = False

        if applied:
            logger.info(f"Cancellation applied to job {job.id} ({job.state.value})")
        if dequeued:
            self._release_waiters(job, snapshot)
        return applied

    # Workers

    def _mark_terminal(self, job: BuildJob, state: JobState, error: Optional[BuildError] = None) -> None:
        job.state = state
        job.error = error
        job.finished_at = self._now()
        job.log(job.finished_at, f"Job {state.value}" + (f": {error.message}" if error else "."))
        self._release_active(job)

    def _release_waiters(self, job: BuildJob, snapshot: Optional[JobDetail]) -> None:
        """Record a terminal transition, then wake the waiters (called without the lock)."""
        self._persist(snapshot)
        job.done.set()

    def _next_job(self) -> Optional[BuildJob]:
        while self._queue:
            job = self._queue.popleft()
            if job.state == JobState.QUEUED:
                return job
        return None

    def _drain_one(self) -> None:
        with self._lock:
            job = self._next_job()
            if job is None:
                return
            job.state = JobState.RUNNING
            job.started_at = self._now()
            job.log(job.started_at, f"Render started (attempt {job.attempt + 1}).")
            snapshot = self._snapshot(job)
        self._persist(snapshot)
        logger.info(f"Rendering job {job.id} ({job.request.kind.value}, attempt {job.attempt + 1})")

        try:
            timeout = self.settings.render_timeout_seconds or None
            with self.store.scratch_directory(job.id) as work_dir:
                data = self.renderer.render(job.request, work_dir, timeout=timeout, cancel_event=job.cancel_event)
            artifact = self.store.store(data, job.id, pin_owner=job_owner(job.id))
        except Exception as exc:
            self._handle_failure(job, self._classify(job, exc))
        else:
            self._complete(job, artifact)

    @staticmethod
    def _classify(job: BuildJob, exc: Exception) -> RenderError:
        if isinstance(exc, RenderError):
            return exc
        if isinstance(exc, OSError):
            return TransientRenderError(f"Storage error: {exc}")
        logger.exception(f"Unexpected renderer failure in job {job.id}")
        return PermanentRenderError(f"Unexpected renderer failure: {exc}")

    def _complete(self, job: BuildJob, artifact: Artifact) -> None:
        with self._lock:
            # The job pin holds the artifact until every waiter and the cache
            # own it; a concurrent clear_cache may evict the entry right away.
            job.artifact = artifact
            for handle_id in job.waiters:
                if handle_id in self._handles:
                    self._pin_for_handle(artifact, handle_id)
            # Publish to the cache before releasing the fingerprint so an
            # identical submit sees either the active job or the cache entry.
            self.store.pin(artifact.ref, cache_owner(job.fingerprint))
            self.cache.put(job.fingerprint, artifact)
            self.store.unpin(artifact.ref, job_owner(job.id))
            self._mark_terminal(job, JobState.SUCCEEDED)
            snapshot = self._snapshot(job)
        logger.info(f"Job {job.id} succeeded ({artifact.size_bytes} bytes, {len(job.waiters)} waiter(s))")
        self._release_waiters(job, snapshot)

    def _handle_failure(self, job: BuildJob, error: RenderError) -> None:
        if isinstance(error, RenderCanceled) or (error.retryable and job.cancel_event.is_set()):
            state, terminal_error = JobState.CANCELED, BuildCanceled(error.message)
        elif error.retryable and job.attempt < self.settings.max_retries and self._schedule_retry(job, error):
            return
        else:
            state, terminal_error = JobState.FAILED, error

        with self._lock:
            self._mark_terminal(job, state, terminal_error)
            snapshot = self._snapshot(job)
        logger.warning(f"Job {job.id} {state.value}: {terminal_error.message}")
        self._release_waiters(job, snapshot)

    def _schedule_retry(self, job: BuildJob, error: RenderError) -> bool:
        """Queue a successor after the backoff; False once the scheduler is closed."""
        delay = self.settings.retry_backoff_seconds * 2 ** job.attempt
        with self._lock:
            if self._closed:
                return False
            successor = self._new_job(job.fingerprint, job.request, attempt=job.attempt + 1)
            successor.waiters = set(job.waiters)
            for handle_id in successor.waiters:
                record = self._handles.get(handle_id)
                if record is not None:
                    record.job_id = successor.id
            successor.log(successor.created_at, f"Retry of {job.id} after transient failure: {error.message}")

            job.retried_by = successor.id
            job.state = JobState.FAILED
            job.error = error
            job.finished_at = self._now()
            job.log(job.finished_at, f"Transient failure, retrying as {successor.id} in {delay:g}s: {error.message}")

            timer = Timer(delay, self._release_retry, args=(successor.id,))
            timer.daemon = True
            self._backoff[successor.id] = timer
            timer.start()
            snapshot, successor_snapshot = self._snapshot(job), self._snapshot(successor)

        logger.warning(f"Job {job.id} failed transiently, retry {successor.id} in {delay:g}s: {error.message}")
        self._persist(successor_snapshot)
        self._release_waiters(job, snapshot)
        return True

    def _release_retry(self, job_id: str) -> None:
        with self._lock:
            # shutdown() empties the backoff table and cancels the pending retries itself.
            if self._backoff.pop(job_id, None) is None:
                return
            job = self._jobs.get(job_id)
            if job is None or job.state != JobState.QUEUED:
                return
            self._queue.append(job)
            self._executor.submit(self._drain_one)

    # Maintenance

    def _handle_expired(self, record: _HandleRecord, cutoff: float) -> bool:
        if record.artifact is not None:
            return record.created_at < cutoff
        job = self._jobs.get(record.job_id or "")
        if job is None:
            return True
        return job.state.is_terminal and job.finished_at is not None and job.finished_at.timestamp() < cutoff

    def cleanup(self) -> Dict[str, int]:
        """
        Expire cache entries, forget old terminal jobs and handles, then sweep
        artifacts nothing references any more.
        """
        expired_entries = self.cache.evict_expired()
        with self._lock:
            cutoff = self._clock() - self.settings.job_retention_seconds
            stale_handles = [
                handle_id for handle_id, record in self._handles.items() if self._handle_expired(record, cutoff)
            ]
            for handle_id in stale_handles:
                record = self._handles.pop(handle_id)
                job = self._jobs.get(record.job_id or "")
                artifact = record.artifact or (job.artifact if job else None)
                if artifact is not None:
                    self.store.unpin(artifact.ref, handle_owner(handle_id))

            bound_jobs = {record.job_id for record in self._handles.values()}
            stale_jobs = [
                job_id
                for job_id, job in self._jobs.items()
                if job.state.is_terminal
                and job_id not in bound_jobs
                and job.finished_at is not None
                and job.finished_at.timestamp() < cutoff
            ]
            for job_id in stale_jobs:
                del self._jobs[job_id]

        swept = self.store.sweep()
        report = {
            "cache_entries": expired_entries,
            "handles": len(stale_handles),
            "jobs": len(stale_jobs),
            "artifacts": swept,
        }
        logger.info(f"Cleanup finished: {report}")
        return report

    def _schedule_cleanup(self) -> None:
        interval = self.settings.cleanup_interval_seconds
        if not interval or interval <= 0:
            return
        with self._lock:
            if self._closed:
                return
            timer = Timer(interval, self._periodic_cleanup)
            timer.daemon = True
            self._cleanup_timer = timer
            timer.start()

    def _periodic_cleanup(self) -> None:
        """Timer callback: run ``cleanup`` and re-arm until shutdown."""
        try:
            self.cleanup()
        except OSError:
            logger.exception("Background cleanup failed")
        self._schedule_cleanup()

    def clear_cache(self) -> Dict[str, int]:
        """Drop every cache entry and delete the artifacts that are no longer referenced."""
        evicted = self.cache.clear()
        deleted = self.store.sweep()
        return {"evicted_entries": evicted, "deleted_artifacts": deleted}

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work, cancel queued builds and signal running ones."""
        canceled = []
        with self._lock:
            if self._closed:
                return
            self._closed = True
            for timer in self._backoff.values():
                timer.cancel()
            self._backoff.clear()
            if self._cleanup_timer is not None:
                self._cleanup_timer.cancel()
            for job in list(self._active.values()):
                if job.state == JobState.QUEUED:
                    self._mark_terminal(job, JobState.CANCELED, BuildCanceled("Scheduler shut down"))
                    canceled.append((job, self._snapshot(job)))
                elif self.renderer.supports_cancellation:
                    job.cancel_event.set()
            self._queue.clear()

        for job, snapshot in canceled:
            self._release_waiters(job, snapshot)
        self._executor.shutdown(wait=wait, cancel_futures=True)
        logger.info("Scheduler stopped")
