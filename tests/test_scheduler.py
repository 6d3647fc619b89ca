"""
Tests for the job scheduler.

Tests cover:
- Validation and admission
- Deduplication of concurrent identical requests
- Result cache hits and TTL expiry
- Cancellation of queued and running builds
- Transient/permanent failure handling and retries
- Backpressure, FIFO ordering and waiting
- Cleanup of expired jobs, handles and artifacts
"""

import threading
import time

import pytest

from bookbrew_backend.errors import (
    BuildCanceled,
    BuildTimeout,
    HandleNotFound,
    InvalidRequest,
    PermanentRenderError,
    QueueSaturated,
    TransientRenderError,
)
from bookbrew_backend.models import BuildKind, JobState


class TestValidation:
    """Requests that can never build are rejected synchronously."""

    def test_convert_without_layout_is_rejected(self, scheduler, renderer, make_request):
        """Empty layout: InvalidRequest, no job, renderer never called."""
        with pytest.raises(InvalidRequest):
            scheduler.submit(make_request(layout=""))

        assert scheduler.list_jobs() == []
        assert renderer.calls == 0

    def test_empty_content_is_rejected(self, scheduler, make_request):
        with pytest.raises(InvalidRequest):
            scheduler.submit(make_request(content=b""))

    def test_cover_requires_cover_template(self, scheduler, make_request):
        with pytest.raises(InvalidRequest):
            scheduler.submit(make_request(BuildKind.COMPILE_COVER, cover=""))

    def test_impose_requires_impose_template(self, scheduler, make_request):
        with pytest.raises(InvalidRequest):
            scheduler.submit(make_request(BuildKind.IMPOSE, impose=""))

    def test_user_template_requires_user_id(self, scheduler, make_request):
        with pytest.raises(InvalidRequest):
            scheduler.submit(make_request(layout_is_user_template=True))


class TestDeduplication:
    """Identical requests share one render."""

    def test_concurrent_identical_submits_render_once(self, make_scheduler, make_renderer, make_request):
        """N concurrent identical submits: one render, one artifact for everyone."""
        renderer = make_renderer(gate=threading.Event())
        scheduler = make_scheduler(renderer)
        barrier = threading.Barrier(8)
        handles = []
        handles_lock = threading.Lock()

        def submit():
            barrier.wait()
            handle = scheduler.submit(make_request())
            with handles_lock:
                handles.append(handle)

        threads = [threading.Thread(target=submit) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        renderer.release()
        artifacts = [scheduler.wait(handle, timeout=5) for handle in handles]

        assert renderer.calls == 1
        assert len({artifact.ref for artifact in artifacts}) == 1
        assert len({handle.id for handle in handles}) == 8
        assert len(scheduler.list_jobs()) == 1

    def test_ten_identical_requests_take_one_render_duration(self, make_settings, make_scheduler, make_renderer, make_request):
        """10 concurrent identical converts with 2 workers complete in about one render."""
        renderer = make_renderer(delay=0.3)
        scheduler = make_scheduler(renderer, run_settings=make_settings(max_concurrent_renders=2))

        started = time.monotonic()
        handles = [scheduler.submit(make_request()) for _ in range(10)]
        artifacts = [scheduler.wait(handle, timeout=5) for handle in handles]
        elapsed = time.monotonic() - started

        assert renderer.calls == 1
        assert len({artifact.ref for artifact in artifacts}) == 1
        assert elapsed < 0.3 * 3

    def test_requester_does_not_split_builds(self, make_scheduler, make_renderer, make_request):
        renderer = make_renderer(gate=threading.Event())
        scheduler = make_scheduler(renderer)

        first = scheduler.submit(make_request(requester_id="alice"))
        second = scheduler.submit(make_request(requester_id="bob"))
        renderer.release()

        assert first.fingerprint == second.fingerprint
        assert scheduler.wait(first, timeout=5).ref == scheduler.wait(second, timeout=5).ref
        assert renderer.calls == 1

    def test_different_requests_render_separately(self, scheduler, renderer, make_request):
        first = scheduler.submit(make_request(content=b"# One"))
        second = scheduler.submit(make_request(content=b"# Two"))

        assert scheduler.wait(first, timeout=5).ref != scheduler.wait(second, timeout=5).ref
        assert renderer.calls == 2


class TestResultCache:
    """Completed builds are reused within the TTL."""

    def test_identical_submit_after_success_is_cache_hit(self, scheduler, renderer, make_request):
        artifact = scheduler.wait(scheduler.submit(make_request()), timeout=5)

        handle = scheduler.submit(make_request())

        assert handle.cached is True
        assert scheduler.status(handle) == JobState.SUCCEEDED
        assert scheduler.wait(handle, timeout=0).ref == artifact.ref
        assert renderer.calls == 1

    def test_submit_after_ttl_expiry_renders_again(self, scheduler, renderer, clock, settings, make_request):
        scheduler.wait(scheduler.submit(make_request()), timeout=5)
        clock.advance(settings.cache.ttl_seconds + 1)

        handle = scheduler.submit(make_request())
        scheduler.wait(handle, timeout=5)

        assert handle.cached is False
        assert renderer.calls == 2


class TestCancellation:
    """Queued builds can always be canceled; running ones only cooperatively."""

    def test_cancel_queued_job_prevents_render(self, make_settings, make_scheduler, make_renderer, make_request):
        renderer = make_renderer(gate=threading.Event())
        scheduler = make_scheduler(renderer, run_settings=make_settings(max_concurrent_renders=1))
        running = scheduler.submit(make_request(content=b"# Running"))
        assert renderer.started.wait(5)
        queued = scheduler.submit(make_request(content=b"# Queued"))

        assert scheduler.cancel(queued) is True
        assert scheduler.status(queued) == JobState.CANCELED
        with pytest.raises(BuildCanceled):
            scheduler.wait(queued, timeout=1)

        renderer.release()
        scheduler.wait(running, timeout=5)
        scheduler.shutdown(wait=True)
        assert renderer.contents == [b"# Running"]

    def test_cancel_running_job_without_cooperative_renderer(self, make_scheduler, make_renderer, make_request):
        """A non-cancellable running build completes normally."""
        renderer = make_renderer(gate=threading.Event())
        scheduler = make_scheduler(renderer)
        handle = scheduler.submit(make_request())
        assert renderer.started.wait(5)

        assert scheduler.cancel(handle) is False

        renderer.release()
        assert scheduler.wait(handle, timeout=5).size_bytes > 0
        assert scheduler.status(handle) == JobState.SUCCEEDED

    def test_cancel_running_job_with_cooperative_renderer(self, make_scheduler, make_renderer, make_request):
        renderer = make_renderer(gate=threading.Event(), cancellable=True)
        scheduler = make_scheduler(renderer)
        handle = scheduler.submit(make_request())
        assert renderer.started.wait(5)

        assert scheduler.cancel(handle) is True

        with pytest.raises(BuildCanceled):
            scheduler.wait(handle, timeout=5)
        assert scheduler.status(handle) == JobState.CANCELED

    def test_cancel_unknown_handle(self, scheduler):
        assert scheduler.cancel("does-not-exist") is False

    def test_cancel_finished_job(self, scheduler, make_request):
        handle = scheduler.submit(make_request())
        scheduler.wait(handle, timeout=5)

        assert scheduler.cancel(handle) is False


class TestFailures:
    """Renderer errors are classified and retried only when transient."""

    def test_permanent_error_is_not_retried(self, make_scheduler, make_renderer, make_request):
        renderer = make_renderer(failures=[PermanentRenderError("Broken template")])
        scheduler = make_scheduler(renderer)

        handle = scheduler.submit(make_request())

        with pytest.raises(PermanentRenderError, match="Broken template"):
            scheduler.wait(handle, timeout=5)
        assert renderer.calls == 1
        assert scheduler.status(handle) == JobState.FAILED

    def test_transient_error_is_retried_up_to_max_retries(self, make_settings, make_scheduler, make_renderer, make_request):
        failures = [TransientRenderError("Out of memory") for _ in range(5)]
        renderer = make_renderer(failures=failures)
        scheduler = make_scheduler(renderer, run_settings=make_settings(max_retries=2))

        handle = scheduler.submit(make_request())

        with pytest.raises(TransientRenderError):
            scheduler.wait(handle, timeout=5)
        assert renderer.calls == 3

    def test_default_single_retry(self, make_scheduler, make_renderer, make_request):
        renderer = make_renderer(failures=[TransientRenderError("busy"), TransientRenderError("busy")])
        scheduler = make_scheduler(renderer)

        handle = scheduler.submit(make_request())

        with pytest.raises(TransientRenderError):
            scheduler.wait(handle, timeout=5)
        assert renderer.calls == 2

    def test_retry_is_invisible_to_callers(self, make_scheduler, make_renderer, make_request):
        renderer = make_renderer(failures=[TransientRenderError("busy")])
        scheduler = make_scheduler(renderer)

        handle = scheduler.submit(make_request())
        artifact = scheduler.wait(handle, timeout=5)

        assert scheduler.status(handle) == JobState.SUCCEEDED
        jobs = scheduler.list_jobs()
        assert len(jobs) == 2
        first = next(job for job in jobs if job.attempt == 0)
        retry = next(job for job in jobs if job.attempt == 1)
        assert first.state == JobState.FAILED
        assert scheduler.job_detail(first.id).retried_by == retry.id
        assert retry.artifact_ref == artifact.ref

    def test_unexpected_exception_is_permanent(self, make_scheduler, make_renderer, make_request):
        renderer = make_renderer(failures=[ValueError("boom")])
        scheduler = make_scheduler(renderer)

        handle = scheduler.submit(make_request())

        with pytest.raises(PermanentRenderError):
            scheduler.wait(handle, timeout=5)
        assert renderer.calls == 1

    def test_late_waiter_receives_terminal_error(self, make_scheduler, make_renderer, make_request):
        renderer = make_renderer(failures=[PermanentRenderError("Broken template")])
        scheduler = make_scheduler(renderer)
        handle = scheduler.submit(make_request())
        with pytest.raises(PermanentRenderError):
            scheduler.wait(handle, timeout=5)

        with pytest.raises(PermanentRenderError):
            scheduler.wait(handle, timeout=0)
        assert scheduler.describe(handle).error_kind == "permanent"

    def test_failed_build_is_not_cached(self, make_scheduler, make_renderer, make_request):
        renderer = make_renderer(failures=[PermanentRenderError("Broken template")])
        scheduler = make_scheduler(renderer)
        with pytest.raises(PermanentRenderError):
            scheduler.wait(scheduler.submit(make_request()), timeout=5)

        artifact = scheduler.wait(scheduler.submit(make_request()), timeout=5)

        assert artifact.size_bytes > 0
        assert renderer.calls == 2


class TestBackpressure:
    """Submissions beyond the queue limit fail fast."""

    def test_queue_saturation(self, make_settings, make_scheduler, make_renderer, make_request):
        renderer = make_renderer(gate=threading.Event())
        scheduler = make_scheduler(
            renderer,
            run_settings=make_settings(max_concurrent_renders=1, max_queue_length=1),
        )
        scheduler.submit(make_request(content=b"# Running"))
        assert renderer.started.wait(5)
        queued = scheduler.submit(make_request(content=b"# Queued"))

        with pytest.raises(QueueSaturated):
            scheduler.submit(make_request(content=b"# Rejected"))

        # Joining an existing job never counts against the limit.
        joined = scheduler.submit(make_request(content=b"# Queued"))
        assert joined.fingerprint == queued.fingerprint
        assert len(scheduler.list_jobs()) == 2

    def test_fifo_order(self, make_settings, make_scheduler, make_renderer, make_request):
        renderer = make_renderer(gate=threading.Event())
        scheduler = make_scheduler(renderer, run_settings=make_settings(max_concurrent_renders=1))
        handles = [scheduler.submit(make_request(content=b"# First"))]
        assert renderer.started.wait(5)
        for name in (b"# Second", b"# Third", b"# Fourth"):
            handles.append(scheduler.submit(make_request(content=name)))

        renderer.release()
        for handle in handles:
            scheduler.wait(handle, timeout=5)

        assert renderer.contents == [b"# First", b"# Second", b"# Third", b"# Fourth"]


class TestWaitAndStatus:
    """Waiting is bounded per caller and never affects the build."""

    def test_wait_timeout_does_not_cancel_build(self, make_scheduler, make_renderer, make_request):
        renderer = make_renderer(gate=threading.Event())
        scheduler = make_scheduler(renderer)
        handle = scheduler.submit(make_request())

        with pytest.raises(BuildTimeout):
            scheduler.wait(handle, timeout=0.05)
        assert scheduler.status(handle) in (JobState.QUEUED, JobState.RUNNING)

        renderer.release()
        assert scheduler.wait(handle, timeout=5).size_bytes > 0

    def test_unknown_handle_status(self, scheduler):
        assert scheduler.status("missing") == JobState.UNKNOWN
        assert scheduler.describe("missing").state == JobState.UNKNOWN

    def test_unknown_handle_wait(self, scheduler):
        with pytest.raises(HandleNotFound):
            scheduler.wait("missing", timeout=0)

    def test_scratch_directories_are_isolated_and_removed(self, scheduler, renderer, make_request):
        handles = [scheduler.submit(make_request(content=f"# Book {i}".encode())) for i in range(4)]
        for handle in handles:
            scheduler.wait(handle, timeout=5)

        assert len(set(renderer.work_dirs)) == 4
        assert not any(work_dir.exists() for work_dir in renderer.work_dirs)

    def test_job_events_are_recorded(self, scheduler, make_request):
        handle = scheduler.submit(make_request())
        artifact = scheduler.wait(handle, timeout=5)

        detail = scheduler.job_detail(artifact.produced_by_job_id)
        messages = [event.message for event in detail.events]
        assert messages[0] == "Job registered and awaiting execution."
        assert any(message.startswith("Render started") for message in messages)
        assert detail.state == JobState.SUCCEEDED


class TestMaintenance:
    """Cleanup forgets old jobs and handles and sweeps unreferenced artifacts."""

    def test_cleanup_after_retention(self, scheduler, clock, settings, make_request):
        handle = scheduler.submit(make_request())
        artifact = scheduler.wait(handle, timeout=5)
        clock.advance(max(settings.cache.ttl_seconds, settings.scheduler.job_retention_seconds) + 1)

        report = scheduler.cleanup()

        assert report["handles"] == 1
        assert report["jobs"] == 1
        assert report["artifacts"] == 1
        assert scheduler.status(handle) == JobState.UNKNOWN
        assert not scheduler.store.exists(artifact.ref)

    def test_clear_cache_keeps_artifacts_of_live_handles(self, scheduler, renderer, make_request):
        handle = scheduler.submit(make_request())
        artifact = scheduler.wait(handle, timeout=5)

        result = scheduler.clear_cache()

        assert result == {"evicted_entries": 1, "deleted_artifacts": 0}
        assert scheduler.store.exists(artifact.ref)
        assert scheduler.wait(handle, timeout=0).ref == artifact.ref
        scheduler.wait(scheduler.submit(make_request()), timeout=5)
        assert renderer.calls == 2

    def test_shutdown_cancels_queued_jobs(self, make_settings, make_scheduler, make_renderer, make_request):
        renderer = make_renderer(gate=threading.Event())
        scheduler = make_scheduler(renderer, run_settings=make_settings(max_concurrent_renders=1))
        scheduler.submit(make_request(content=b"# Running"))
        assert renderer.started.wait(5)
        queued = scheduler.submit(make_request(content=b"# Queued"))

        scheduler.shutdown(wait=False)
        renderer.release()

        assert scheduler.status(queued) == JobState.CANCELED
        with pytest.raises(QueueSaturated):
            scheduler.submit(make_request())

    def test_expired_handles_are_dropped_in_the_background(self, make_settings, make_scheduler, clock, make_request):
        """No admin call is needed for expired handles, jobs and artifacts to go away."""
        run_settings = make_settings(cleanup_interval_seconds=0.05)
        scheduler = make_scheduler(run_settings=run_settings)
        handle = scheduler.submit(make_request())
        artifact = scheduler.wait(handle, timeout=5)

        clock.advance(max(run_settings.cache.ttl_seconds, run_settings.scheduler.job_retention_seconds) + 1)

        deadline = time.monotonic() + 5
        while scheduler.store.exists(artifact.ref) and time.monotonic() < deadline:
            time.sleep(0.02)
        assert scheduler.status(handle) == JobState.UNKNOWN
        assert scheduler.list_jobs() == []
        assert not scheduler.store.exists(artifact.ref)

    def test_background_cleanup_disabled_with_zero_interval(self, make_settings, make_scheduler):
        scheduler = make_scheduler(run_settings=make_settings(cleanup_interval_seconds=0))

        assert scheduler._cleanup_timer is None

    def test_transient_failure_after_shutdown_is_not_retried(self, make_scheduler, make_renderer, make_request):
        """A build failing transiently while the scheduler stops ends instead of waiting for a retry."""
        renderer = make_renderer(gate=threading.Event(), failures=[TransientRenderError("pandoc crashed")])
        scheduler = make_scheduler(renderer)
        handle = scheduler.submit(make_request())
        assert renderer.started.wait(5)

        scheduler.shutdown(wait=False)
        renderer.release()

        with pytest.raises(TransientRenderError, match="pandoc crashed"):
            scheduler.wait(handle, timeout=5)
        assert scheduler.status(handle) == JobState.FAILED
        assert [job.attempt for job in scheduler.list_jobs()] == [0]
        assert renderer.calls == 1

    def test_shutdown_cancels_retry_waiting_out_its_backoff(self, make_settings, make_scheduler, make_renderer, make_request):
        renderer = make_renderer(failures=[TransientRenderError("pdftk crashed")])
        scheduler = make_scheduler(renderer, run_settings=make_settings(**{"scheduler.retry_backoff_seconds": 60}))
        handle = scheduler.submit(make_request())
        deadline = time.monotonic() + 5
        while len(scheduler.list_jobs()) < 2 and time.monotonic() < deadline:
            time.sleep(0.01)

        scheduler.shutdown(wait=True)

        with pytest.raises(BuildCanceled):
            scheduler.wait(handle, timeout=5)
        assert scheduler.status(handle) == JobState.CANCELED
        assert renderer.calls == 1

    def test_artifact_survives_cache_clear_during_completion(self, scheduler, make_request):
        """Clearing the cache right as a build publishes its result keeps the waiters' PDF."""
        publish = scheduler.cache.put

        def put_then_clear(fingerprint, artifact):
            publish(fingerprint, artifact)
            scheduler.cache.clear()
            scheduler.store.sweep()

        scheduler.cache.put = put_then_clear
        handle = scheduler.submit(make_request())

        artifact = scheduler.wait(handle, timeout=5)

        assert scheduler.store.retrieve(artifact.ref).startswith(b"%PDF")
        assert scheduler.store.pin_count(artifact.ref) == 1
