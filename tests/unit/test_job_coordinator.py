"""
Tests for the worker pool and the sequential batch processor.
"""

import threading
import time

import pytest

from xml_sync.exceptions import (
    ColumnOverflowError,
    DatabaseConnectionError,
    EmptySourceError,
    JobCancelledError,
)
from xml_sync.processing.batch_runner import SequentialProcessor
from xml_sync.processing.job_coordinator import CancellationToken, JobCoordinator, run_item


def handler(item, token):
    token.raise_if_cancelled(item)
    if item == "empty":
        raise EmptySourceError("source file is empty", item)
    if item == "overflow":
        raise ColumnOverflowError("too long", item, "name", 99)
    return item.upper()


class TestCancellationToken:

    def test_cancel(self):
        token = CancellationToken()
        token.raise_if_cancelled()

        token.cancel()

        assert token.is_cancelled
        with pytest.raises(JobCancelledError):
            token.raise_if_cancelled("import")


class TestRunItem:

    def test_success_and_failure(self):
        assert run_item("a", handler, "a", CancellationToken()).result == "A"

        outcome = run_item("empty", handler, "empty", CancellationToken())
        assert not outcome.ok
        assert outcome.error_type == "EmptySourceError"

    def test_connection_error_propagates(self):
        def broken(item, token):
            raise DatabaseConnectionError("down")

        with pytest.raises(DatabaseConnectionError):
            run_item("a", broken, "a", CancellationToken())


@pytest.fixture(params=["sequential", "pool"])
def processor(request):
    if request.param == "sequential":
        yield SequentialProcessor()
    else:
        coordinator = JobCoordinator(3)
        yield coordinator
        coordinator.shutdown()


class TestRunBatch:

    def test_failures_are_isolated(self, processor):
        result = processor.run_batch("import", ["a", "empty", "b", "overflow"], handler)

        assert sorted(result.succeeded) == ["a", "b"]
        assert result.results["a"] == "A"
        failures = {f["identifier"]: f for f in result.failed_items}
        assert failures["empty"]["error_type"] == "EmptySourceError"
        assert failures["empty"]["retryable"] is False
        assert failures["overflow"]["retryable"] is True
        assert not result.cancelled
        assert result.performance_metrics["worker_count"] >= 1

    def test_cancelled_batch_skips_items(self, processor):
        token = CancellationToken()
        token.cancel()

        result = processor.run_batch("export", ["a", "b"], handler, token=token)

        assert result.succeeded == []
        assert sorted(result.skipped) == ["a", "b"]
        assert result.cancelled

    def test_empty_batch(self, processor):
        result = processor.run_batch("import", [], handler)

        assert result.total == 0
        assert result.failure_count == 0


class TestConnectionLoss:

    def test_sequential_aborts_remaining_items(self):
        calls = []

        def flaky(item, token):
            calls.append(item)
            if item == "b":
                raise DatabaseConnectionError("connection refused")
            return item

        result = SequentialProcessor().run_batch("import", ["a", "b", "c"], flaky)

        assert calls == ["a", "b"]
        assert result.succeeded == ["a"]
        assert result.failed_items[0]["error_type"] == "DatabaseConnectionError"
        assert result.skipped == ["c"]
        assert result.cancelled

    def test_pool_cancels_token(self):
        release = threading.Event()

        def flaky(item, token):
            if item == "bad":
                raise DatabaseConnectionError("connection refused")
            release.wait(2)
            token.raise_if_cancelled(item)
            return item

        with JobCoordinator(2) as coordinator:
            result = coordinator.run_batch("import", ["bad", "slow"], flaky)
            release.set()

        assert result.cancelled
        assert result.failed_items[0]["identifier"] == "bad"
        assert "slow" not in result.succeeded


class TestSubmit:

    def test_submit_passes_token_and_progress(self):
        seen = []

        def job(value, cancel_token=None, progress=None):
            progress(1, 2, "half")
            return value * 2

        with JobCoordinator(1, progress=lambda c, t, label: seen.append((c, t, label))) as coordinator:
            handle = coordinator.submit("double", job, 21)
            assert handle.result(timeout=5) == 42

        assert seen == [(1, 2, "half")]
        assert handle.progress["label"] == "half"
        assert handle.done

    def test_cancel_handle(self):
        started = threading.Event()

        def job(cancel_token=None, progress=None):
            started.set()
            while not cancel_token.is_cancelled:
                time.sleep(0.01)
            cancel_token.raise_if_cancelled("job")

        with JobCoordinator(1) as coordinator:
            handle = coordinator.submit("loop", job)
            started.wait(2)
            handle.cancel()
            with pytest.raises(JobCancelledError):
                handle.result(timeout=5)
