"""
Job Coordinator - background worker pool for long-running sync jobs.

Imports, exports and validations run on a thread pool so the caller stays
responsive. Every job gets a CancellationToken that the engine polls between
batches; callers receive a Future plus progress callbacks.

ARCHITECTURE:
- Worker pool, not a connection pool: each job opens its own connections
  through the DatabaseSession it is given
- Jobs for different tables run concurrently; jobs touching the same
  (table, partition) are serialized by the metadata store lock
- A DatabaseConnectionError aborts the whole batch, every other error only
  fails its own item
"""

import itertools
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..config.processing_defaults import ProcessingDefaults
from ..exceptions import DatabaseConnectionError, JobCancelledError
from ..interfaces import BatchProcessorInterface
from ..models import BatchResult, SyncOutcome, classify_outcome


ProgressCallback = Callable[[int, int, str], None]


class CancellationToken:
    """Cooperative cancellation flag shared between a caller and one or more jobs."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, what: str = "job") -> None:
        """
        Raises:
            JobCancelledError: If cancellation was requested
        """
        if self._event.is_set():
            raise JobCancelledError(f"{what} cancelled")


@dataclass
class JobHandle:
    """A submitted job: its Future plus the token that cancels it."""
    job_id: int
    label: str
    future: Future
    token: CancellationToken
    progress: Dict[str, Any] = field(default_factory=dict)

    def cancel(self) -> None:
        self.token.cancel()
        self.future.cancel()

    def result(self, timeout: Optional[float] = None) -> Any:
        return self.future.result(timeout=timeout)

    @property
    def done(self) -> bool:
        return self.future.done()


def run_item(identifier: str, handler: Callable, item: Any, token: CancellationToken) -> SyncOutcome:
    """
    Run one batch item and classify its outcome.

    DatabaseConnectionError is re-raised so the caller can abort the batch.
    """
    try:
        return SyncOutcome.success(identifier, handler(item, token))
    except DatabaseConnectionError:
        raise
    except Exception as e:
        logging.getLogger(__name__).error(f"{identifier}: {type(e).__name__}: {e}")
        return classify_outcome(e, identifier)


class JobCoordinator(BatchProcessorInterface):
    """
    Thread pool manager for sync jobs.

    Args:
        num_workers: Worker threads; defaults to ProcessingDefaults.WORKERS
        progress: Optional callback receiving (current, total, label) from every job
    """

    def __init__(self, num_workers: Optional[int] = None, progress: Optional[ProgressCallback] = None):
        self.logger = logging.getLogger(__name__)
        self.num_workers = num_workers or ProcessingDefaults.WORKERS
        self.progress_callback = progress
        self.executor = ThreadPoolExecutor(max_workers=self.num_workers, thread_name_prefix="xml_sync")
        self._ids = itertools.count(1)
        self._jobs: Dict[int, JobHandle] = {}
        self._lock = threading.Lock()
        self.logger.info(f"JobCoordinator initialized with {self.num_workers} workers")

    def submit(self, label: str, fn: Callable, *args, token: Optional[CancellationToken] = None,
               **kwargs) -> JobHandle:
        """
        Run ``fn(*args, cancel_token=token, progress=callback, **kwargs)`` on a worker.

        Returns:
            JobHandle whose future resolves to fn's return value
        """
        token = token or CancellationToken()
        job_id = next(self._ids)
        progress_state: Dict[str, Any] = {"current": 0, "total": 0, "label": label}

        def report(current: int, total: int, step_label: str) -> None:
            progress_state.update(current=current, total=total, label=step_label)
            if self.progress_callback is not None:
                self.progress_callback(current, total, step_label)

        future = self.executor.submit(fn, *args, cancel_token=token, progress=report, **kwargs)
        handle = JobHandle(job_id, label, future, token, progress_state)
        with self._lock:
            self._jobs[job_id] = handle
        future.add_done_callback(lambda _: self._forget(job_id))
        self.logger.debug(f"Submitted job {job_id}: {label}")
        return handle

    def _forget(self, job_id: int) -> None:
        with self._lock:
            self._jobs.pop(job_id, None)

    @property
    def active_jobs(self) -> List[JobHandle]:
        with self._lock:
            return list(self._jobs.values())

    def cancel_all(self) -> None:
        for handle in self.active_jobs:
            handle.cancel()

    def run_batch(self, operation: str, items: List[Any], handler: Callable,
                  identify: Callable[[Any], str] = str,
                  token: Optional[CancellationToken] = None) -> BatchResult:
        """
        Run ``handler(item, token)`` for every item on the worker pool.

        Args:
            operation: Batch name used in logs and the result
            items: Work items
            handler: Callable processing one item
            identify: Maps an item to the identifier used in results
            token: Cancels the whole batch

        Returns:
            BatchResult with per-item outcomes and throughput metrics
        """
        token = token or CancellationToken()
        result = BatchResult(operation=operation, total=len(items))
        if not items:
            return result

        start_time = time.time()
        self.logger.info(f"{operation}: starting {len(items)} item(s) with {self.num_workers} workers")

        item_times: List[float] = []

        def timed(item, item_token):
            started = time.time()
            try:
                return handler(item, item_token)
            finally:
                item_times.append(time.time() - started)

        futures = {}
        for item in items:
            identifier = identify(item)
            futures[self.executor.submit(run_item, identifier, timed, item, token)] = identifier

        aborted: Optional[DatabaseConnectionError] = None
        for future in as_completed(futures):
            identifier = futures[future]
            if future.cancelled():
                result.skipped.append(identifier)
                continue
            try:
                outcome = future.result()
            except DatabaseConnectionError as e:
                if aborted is None:
                    aborted = e
                    self.logger.error(f"{operation}: database unavailable, aborting batch: {e}")
                    token.cancel()
                    for pending in futures:
                        pending.cancel()
                result.record(classify_outcome(e, identifier))
                continue
            if isinstance(outcome.error, JobCancelledError):
                result.skipped.append(identifier)
                continue
            result.record(outcome)
            done = result.success_count + result.failure_count
            if self.progress_callback is not None:
                self.progress_callback(done, len(items), operation)
            if done % 5 == 0 or done == len(items):
                self._log_progress(operation, done, len(items), start_time)

        result.cancelled = token.is_cancelled
        result.processing_time_seconds = time.time() - start_time
        result.performance_metrics.update({
            "items_per_minute": (result.total / result.processing_time_seconds * 60)
            if result.processing_time_seconds > 0 else 0,
            "parallel_efficiency": self._calculate_parallel_efficiency(item_times, result.processing_time_seconds),
            "worker_count": self.num_workers,
        })
        self.logger.info(
            f"{operation}: {result.success_count}/{result.total} successful in {result.processing_time_seconds:.2f}s"
        )
        return result

    def _log_progress(self, operation: str, done: int, total: int, start_time: float) -> None:
        elapsed = time.time() - start_time
        rate = done / elapsed * 60 if elapsed > 0 else 0
        self.logger.info(f"{operation} progress: {done}/{total} ({done / total * 100:.1f}%) - {rate:.1f} items/min")

    def _calculate_parallel_efficiency(self, item_times: List[float], total_time: float) -> float:
        """Actual speedup over the sequential sum, relative to the worker count (0.0 to 1.0)."""
        if not item_times or total_time <= 0:
            return 0.0
        speedup = sum(item_times) / total_time
        return min(speedup / self.num_workers, 1.0)

    def shutdown(self, wait: bool = True, cancel_running: bool = False) -> None:
        if cancel_running:
            self.cancel_all()
        self.executor.shutdown(wait=wait)

    def __enter__(self) -> 'JobCoordinator':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown(wait=True, cancel_running=exc_type is not None)
