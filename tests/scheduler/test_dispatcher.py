"""
Dispatcher and Worker Tests.

- One claimed job gets exactly one outcome report
- Failures go back through the retry policy
- Cancellation race: in-flight execution completes, report ignored
- Store outages don't kill the worker loop or drop outcome reports
- Stopping mid-batch releases the jobs not yet started
- Pool start/stop lifecycle
"""

import threading
import time
from unittest.mock import MagicMock

import pytest

from dilemma.scheduler import (
    Dispatcher,
    DispatcherState,
    ExecutionResult,
    JobState,
    StoreUnavailableError,
    Worker,
)


def wait_until(predicate, timeout: float = 5.0) -> bool:
    """Poll predicate until true or timeout."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def make_worker(queue_manager, executor, stop_event=None, **kwargs) -> Worker:
    return Worker(
        worker_id="w-test",
        queue_manager=queue_manager,
        executor=executor,
        stop_event=stop_event or threading.Event(),
        **kwargs,
    )


# =============================================================================
# Worker.run_once
# =============================================================================


class TestWorkerRunOnce:

    def test_success_is_reported_once(
        self, queue_manager, inline_executor, controlled_handler, enqueue_job, mock_clock
    ):
        enqueue_job("42", delay_seconds=1)
        mock_clock.tick(1)
        worker = make_worker(queue_manager, inline_executor)

        assert worker.run_once() == 1

        job = queue_manager.get_job("publish-42")
        assert job.state == JobState.COMPLETED
        assert job.attempts == 1
        assert controlled_handler.call_count == 1
        assert worker.run_once() == 0

    def test_failure_is_retried(
        self, queue_manager, inline_executor, controlled_handler, enqueue_job, mock_clock
    ):
        controlled_handler.fail_times = 1
        enqueue_job("42", delay_seconds=1)
        mock_clock.tick(1)
        worker = make_worker(queue_manager, inline_executor)

        worker.run_once()
        job = queue_manager.get_job("publish-42")
        assert job.state == JobState.PENDING
        assert job.last_error == "RuntimeError: boom"

        mock_clock.tick(2)
        worker.run_once()
        assert queue_manager.get_job("publish-42").state == JobState.COMPLETED
        assert controlled_handler.call_count == 2

    def test_batch_processes_several_jobs(
        self, queue_manager, inline_executor, controlled_handler, enqueue_job, mock_clock
    ):
        for i in range(3):
            enqueue_job(f"item-{i}", delay_seconds=1)
        mock_clock.tick(1)
        worker = make_worker(queue_manager, inline_executor, batch_size=5)

        assert worker.run_once() == 3
        assert queue_manager.counts().completed == 3

    def test_removal_during_execution_ignores_report(
        self, queue_manager, inline_executor, controlled_handler, enqueue_job, mock_clock
    ):
        """The handler finishes; the removed job stays removed."""
        controlled_handler.gate = threading.Event()
        enqueue_job("42", delay_seconds=1)
        mock_clock.tick(1)
        worker = make_worker(queue_manager, inline_executor)

        thread = threading.Thread(target=worker.run_once)
        thread.start()
        assert controlled_handler.started.wait(timeout=5)

        assert queue_manager.remove("publish-42") is True
        controlled_handler.gate.set()
        thread.join(timeout=5)

        assert controlled_handler.call_count == 1
        assert queue_manager.get_job("publish-42") is None

    def test_current_job_is_tracked_while_running(
        self, queue_manager, inline_executor, controlled_handler, enqueue_job, mock_clock
    ):
        controlled_handler.gate = threading.Event()
        enqueue_job("42", delay_seconds=1)
        mock_clock.tick(1)
        worker = make_worker(queue_manager, inline_executor)

        thread = threading.Thread(target=worker.run_once)
        thread.start()
        assert controlled_handler.started.wait(timeout=5)

        assert worker.current_job.job_id == "publish-42"

        controlled_handler.gate.set()
        thread.join(timeout=5)
        assert worker.current_job is None

    def test_store_hiccup_mid_batch_still_reports_every_job(
        self, queue_manager, inline_executor, controlled_handler, enqueue_job, mock_clock
    ):
        enqueue_job("a", delay_seconds=1)
        enqueue_job("b", delay_seconds=2)
        mock_clock.tick(2)

        real_complete = queue_manager.complete
        calls = []

        def flaky_complete(job_id, claim_token=None):
            calls.append(job_id)
            if len(calls) == 1:
                raise StoreUnavailableError("database is locked")
            return real_complete(job_id, claim_token=claim_token)

        queue_manager.complete = flaky_complete
        worker = make_worker(queue_manager, inline_executor, batch_size=5, poll_interval=0.01)

        assert worker.run_once() == 2

        assert calls == ["publish-a", "publish-a", "publish-b"]
        assert queue_manager.get_job("publish-a").state == JobState.COMPLETED
        assert queue_manager.get_job("publish-b").state == JobState.COMPLETED
        assert controlled_handler.call_count == 2

    def test_stop_mid_batch_releases_unstarted_jobs(
        self, queue_manager, inline_executor, controlled_handler, enqueue_job, mock_clock
    ):
        for i in range(3):
            enqueue_job(f"item-{i}", delay_seconds=i + 1)
        mock_clock.tick(3)

        stop_event = threading.Event()
        controlled_handler.gate = threading.Event()
        worker = make_worker(queue_manager, inline_executor, stop_event=stop_event, batch_size=5)

        thread = threading.Thread(target=worker.run_once)
        thread.start()
        assert controlled_handler.started.wait(timeout=5)

        stop_event.set()
        controlled_handler.gate.set()
        thread.join(timeout=5)

        assert controlled_handler.call_count == 1
        assert queue_manager.get_job("publish-item-0").state == JobState.COMPLETED
        for item_id in ("publish-item-1", "publish-item-2"):
            job = queue_manager.get_job(item_id)
            assert job.state == JobState.READY
            assert job.attempts == 0
            assert job.claim_token is None


# =============================================================================
# Worker.run loop
# =============================================================================


class TestWorkerLoop:

    def test_store_outage_does_not_stop_loop(self):
        """StoreUnavailableError is logged and retried; the loop keeps polling."""
        stop_event = threading.Event()
        queue_manager = MagicMock()
        calls = []

        def claim_due(limit, worker_id=None):
            calls.append(limit)
            if len(calls) <= 2:
                raise StoreUnavailableError("database is locked")
            if len(calls) >= 4:
                stop_event.set()
            return []

        queue_manager.claim_due.side_effect = claim_due
        worker = make_worker(
            queue_manager, MagicMock(), stop_event=stop_event, poll_interval=0.01
        )

        thread = threading.Thread(target=worker.run)
        thread.start()
        thread.join(timeout=5)

        assert not thread.is_alive()
        assert len(calls) >= 4

    def test_unexpected_error_does_not_stop_loop(self):
        stop_event = threading.Event()
        job = MagicMock(job_id="publish-42", claim_token="t")
        batches = [[job], []]

        def claim_due(limit, worker_id=None):
            if batches:
                return batches.pop(0)
            stop_event.set()
            return []

        queue_manager = MagicMock()
        queue_manager.claim_due.side_effect = claim_due
        queue_manager.complete.side_effect = ValueError("unexpected")

        executor = MagicMock()
        executor.execute.return_value = ExecutionResult.success()

        worker = make_worker(queue_manager, executor, stop_event=stop_event, poll_interval=0.01)

        thread = threading.Thread(target=worker.run)
        thread.start()
        thread.join(timeout=5)

        assert not thread.is_alive()
        executor.execute.assert_called_once_with(job)
        queue_manager.complete.assert_called_once_with("publish-42", claim_token="t")


# =============================================================================
# Dispatcher
# =============================================================================


class TestDispatcher:

    def test_worker_count_must_be_positive(self, queue_manager, inline_executor):
        with pytest.raises(ValueError):
            Dispatcher(queue_manager, inline_executor, worker_count=0)

    def test_start_and_stop(self, queue_manager, inline_executor):
        dispatcher = Dispatcher(queue_manager, inline_executor, worker_count=2, poll_interval=0.01)

        dispatcher.start()
        assert dispatcher.state == DispatcherState.RUNNING
        assert dispatcher.is_running()

        with pytest.raises(RuntimeError):
            dispatcher.start()

        dispatcher.stop(timeout=5)
        assert dispatcher.state == DispatcherState.STOPPED
        assert not dispatcher.is_running()

    def test_stop_when_stopped_is_noop(self, queue_manager, inline_executor):
        dispatcher = Dispatcher(queue_manager, inline_executor)
        dispatcher.stop()
        assert dispatcher.state == DispatcherState.STOPPED

    def test_pool_runs_every_due_job_once(
        self, queue_manager, inline_executor, controlled_handler, enqueue_job, mock_clock
    ):
        for i in range(12):
            enqueue_job(f"item-{i}", delay_seconds=1)
        mock_clock.tick(1)

        dispatcher = Dispatcher(
            queue_manager, inline_executor, worker_count=3, batch_size=2, poll_interval=0.01
        )
        dispatcher.start()
        try:
            assert wait_until(lambda: queue_manager.counts().completed == 12)
        finally:
            dispatcher.stop(timeout=5)

        assert controlled_handler.call_count == 12
        item_ids = sorted(p.item_id for p in controlled_handler.payloads)
        assert item_ids == sorted(f"item-{i}" for i in range(12))

    def test_stop_waits_for_in_flight_job(
        self, queue_manager, inline_executor, controlled_handler, enqueue_job, mock_clock
    ):
        controlled_handler.gate = threading.Event()
        enqueue_job("42", delay_seconds=1)
        mock_clock.tick(1)

        dispatcher = Dispatcher(queue_manager, inline_executor, worker_count=1, poll_interval=0.01)
        dispatcher.start()
        assert controlled_handler.started.wait(timeout=5)
        assert dispatcher.is_busy()

        threading.Timer(0.1, controlled_handler.gate.set).start()
        dispatcher.stop(timeout=5)

        assert queue_manager.get_job("publish-42").state == JobState.COMPLETED

    def test_start_refused_while_previous_workers_finish(
        self, queue_manager, inline_executor, controlled_handler, enqueue_job, mock_clock
    ):
        controlled_handler.gate = threading.Event()
        enqueue_job("42", delay_seconds=1)
        mock_clock.tick(1)

        dispatcher = Dispatcher(queue_manager, inline_executor, worker_count=1, poll_interval=0.01)
        dispatcher.start()
        assert controlled_handler.started.wait(timeout=5)

        dispatcher.stop(timeout=0.05)
        assert dispatcher.state == DispatcherState.STOPPED
        assert dispatcher.is_draining()

        with pytest.raises(RuntimeError):
            dispatcher.start()

        controlled_handler.gate.set()
        assert wait_until(lambda: not dispatcher.is_draining())
        assert queue_manager.get_job("publish-42").state == JobState.COMPLETED

        dispatcher.start()
        dispatcher.stop(timeout=5)
        assert not dispatcher.is_draining()
