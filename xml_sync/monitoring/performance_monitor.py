"""
Performance monitoring for sync batches.

Tracks files and rows processed, per-stage timings and process resource
usage (psutil) while a batch runs. Batch drivers attach the summary to
BatchResult.performance_metrics.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Any, Optional

import psutil

from ..interfaces import PerformanceMonitorInterface


STAGES = ("parsing", "inference", "insertion", "export", "validation")


@dataclass
class PerformanceMetrics:
    """Container for performance metrics."""
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    files_processed: int = 0
    files_successful: int = 0
    files_failed: int = 0
    rows_processed: int = 0

    stage_times: Dict[str, float] = field(default_factory=lambda: {s: 0.0 for s in STAGES})

    peak_memory_mb: float = 0.0
    avg_cpu_percent: float = 0.0

    rows_per_minute: float = 0.0
    files_per_minute: float = 0.0

    custom_metrics: Dict[str, Any] = field(default_factory=dict)


class PerformanceMonitor(PerformanceMonitorInterface):
    """
    Samples memory and CPU on a background thread while a batch runs.

    Counters are updated from worker threads, so every mutation goes through
    one lock.
    """

    def __init__(self, sample_interval: float = 0.5):
        self.logger = logging.getLogger(__name__)
        self.sample_interval = sample_interval
        self._metrics = PerformanceMetrics()
        self._is_monitoring = False
        self._monitoring_thread = None
        self._stop_monitoring_flag = threading.Event()
        self._lock = threading.Lock()
        self._memory_samples = []
        self._cpu_samples = []
        self._process = psutil.Process()

    @property
    def is_monitoring(self) -> bool:
        return self._is_monitoring

    def start_monitoring(self) -> None:
        if self._is_monitoring:
            self.logger.warning("Performance monitoring already started")
            return

        self._metrics = PerformanceMetrics(start_time=datetime.now())
        self._memory_samples = []
        self._cpu_samples = []
        self._is_monitoring = True
        self._stop_monitoring_flag.clear()

        self._monitoring_thread = threading.Thread(target=self._monitor_resources, daemon=True)
        self._monitoring_thread.start()
        self.logger.debug("Performance monitoring started")

    def stop_monitoring(self) -> Dict[str, Any]:
        """Stop sampling and return the performance summary."""
        if not self._is_monitoring:
            self.logger.warning("Performance monitoring not started")
            return {}

        self._metrics.end_time = datetime.now()
        self._is_monitoring = False
        self._stop_monitoring_flag.set()
        if self._monitoring_thread and self._monitoring_thread.is_alive():
            self._monitoring_thread.join(timeout=1.0)

        self._calculate_final_metrics()
        summary = self._get_performance_summary()
        self.logger.info(
            f"Processed {self._metrics.files_processed} files / {self._metrics.rows_processed} rows "
            f"in {summary['total_processing_time_seconds']:.2f}s "
            f"({self._metrics.rows_per_minute:.1f} rows/min)"
        )
        return summary

    def record_metric(self, metric_name: str, value: Any) -> None:
        with self._lock:
            self._metrics.custom_metrics[metric_name] = value
        self.logger.debug(f"Recorded metric: {metric_name} = {value}")

    def record_file(self, success: bool, rows: int = 0) -> None:
        """Count one processed file and the rows it carried."""
        with self._lock:
            self._metrics.files_processed += 1
            self._metrics.rows_processed += rows
            if success:
                self._metrics.files_successful += 1
            else:
                self._metrics.files_failed += 1

    def add_stage_time(self, stage_name: str, seconds: float) -> None:
        with self._lock:
            self._metrics.stage_times[stage_name] = self._metrics.stage_times.get(stage_name, 0.0) + seconds

    def get_current_metrics(self) -> Dict[str, Any]:
        if not self._is_monitoring:
            return {}
        elapsed_seconds = (datetime.now() - self._metrics.start_time).total_seconds()
        with self._lock:
            rows = self._metrics.rows_processed
            files = self._metrics.files_processed
            failed = self._metrics.files_failed
            custom = dict(self._metrics.custom_metrics)
        return {
            'elapsed_time_seconds': elapsed_seconds,
            'files_processed': files,
            'files_failed': failed,
            'rows_processed': rows,
            'rows_per_minute': rows / elapsed_seconds * 60 if elapsed_seconds > 0 else 0,
            'current_memory_mb': self._get_current_memory_mb(),
            'peak_memory_mb': self._metrics.peak_memory_mb,
            'avg_cpu_percent': self._get_avg_cpu_percent(),
            'custom_metrics': custom,
        }

    def _monitor_resources(self) -> None:
        """Sample process memory and CPU until stopped."""
        while not self._stop_monitoring_flag.is_set():
            try:
                memory_mb = self._get_current_memory_mb()
                self._memory_samples.append(memory_mb)
                if memory_mb > self._metrics.peak_memory_mb:
                    self._metrics.peak_memory_mb = memory_mb
                self._cpu_samples.append(self._process.cpu_percent(interval=None))
            except psutil.Error as e:
                self.logger.warning(f"Error monitoring resources: {e}")
                break
            self._stop_monitoring_flag.wait(self.sample_interval)

    def _get_current_memory_mb(self) -> float:
        return self._process.memory_info().rss / 1024 / 1024

    def _get_avg_cpu_percent(self) -> float:
        if not self._cpu_samples:
            return 0.0
        return sum(self._cpu_samples) / len(self._cpu_samples)

    def _get_total_processing_time(self) -> float:
        if not self._metrics.start_time or not self._metrics.end_time:
            return 0.0
        return (self._metrics.end_time - self._metrics.start_time).total_seconds()

    def _calculate_final_metrics(self) -> None:
        total_time = self._get_total_processing_time()
        if total_time > 0:
            self._metrics.rows_per_minute = self._metrics.rows_processed / total_time * 60
            self._metrics.files_per_minute = self._metrics.files_processed / total_time * 60
        self._metrics.avg_cpu_percent = self._get_avg_cpu_percent()

    def _get_performance_summary(self) -> Dict[str, Any]:
        total_time = self._get_total_processing_time()
        processed = self._metrics.files_processed
        return {
            'total_processing_time_seconds': total_time,
            'files_processed': processed,
            'files_failed': self._metrics.files_failed,
            'rows_processed': self._metrics.rows_processed,
            'rows_per_minute': self._metrics.rows_per_minute,
            'files_per_minute': self._metrics.files_per_minute,
            'success_rate_percent': (self._metrics.files_successful / processed * 100) if processed else 0.0,
            'stage_timings': {
                f"{stage}_seconds": seconds for stage, seconds in self._metrics.stage_times.items()
            },
            'resource_usage': {
                'peak_memory_mb': self._metrics.peak_memory_mb,
                'avg_cpu_percent': self._metrics.avg_cpu_percent,
                'memory_samples_count': len(self._memory_samples),
                'cpu_samples_count': len(self._cpu_samples),
            },
            'custom_metrics': dict(self._metrics.custom_metrics),
        }

    def format_report(self) -> str:
        """Plain text report of the last completed monitoring window."""
        if not self._metrics.end_time:
            return "Performance monitoring not completed"
        summary = self._get_performance_summary()
        lines = [
            "Performance report",
            f"  total time: {summary['total_processing_time_seconds']:.2f}s",
            f"  files: {summary['files_processed']} ({summary['files_failed']} failed)",
            f"  rows: {summary['rows_processed']} ({summary['rows_per_minute']:.1f} rows/min)",
            f"  peak memory: {summary['resource_usage']['peak_memory_mb']:.1f} MB",
            f"  average CPU: {summary['resource_usage']['avg_cpu_percent']:.1f}%",
        ]
        for stage, seconds in summary['stage_timings'].items():
            if seconds:
                lines.append(f"  {stage}: {seconds:.2f}")
        return "\n".join(lines)
