"""
Tests for the batch performance monitor.
"""

import unittest

from xml_sync.monitoring.performance_monitor import PerformanceMonitor


class TestPerformanceMonitor(unittest.TestCase):

    def setUp(self):
        self.monitor = PerformanceMonitor(sample_interval=0.01)

    def tearDown(self):
        if self.monitor.is_monitoring:
            self.monitor.stop_monitoring()

    def test_stop_without_start(self):
        self.assertEqual(self.monitor.stop_monitoring(), {})
        self.assertEqual(self.monitor.get_current_metrics(), {})
        self.assertEqual(self.monitor.format_report(), "Performance monitoring not completed")

    def test_counts_files_rows_and_stages(self):
        self.monitor.start_monitoring()
        self.monitor.record_file(True, 500)
        self.monitor.record_file(False)
        self.monitor.add_stage_time("insertion", 1.5)
        self.monitor.add_stage_time("insertion", 0.5)
        self.monitor.record_metric("tables", 2)

        current = self.monitor.get_current_metrics()
        self.assertEqual(current["rows_processed"], 500)
        self.assertEqual(current["files_failed"], 1)

        summary = self.monitor.stop_monitoring()

        self.assertFalse(self.monitor.is_monitoring)
        self.assertEqual(summary["files_processed"], 2)
        self.assertEqual(summary["rows_processed"], 500)
        self.assertEqual(summary["success_rate_percent"], 50.0)
        self.assertEqual(summary["stage_timings"]["insertion_seconds"], 2.0)
        self.assertEqual(summary["custom_metrics"], {"tables": 2})
        self.assertIn("peak_memory_mb", summary["resource_usage"])
        self.assertIn("insertion_seconds: 2.00", self.monitor.format_report())

    def test_restart_resets_counters(self):
        self.monitor.start_monitoring()
        self.monitor.record_file(True, 10)
        self.monitor.stop_monitoring()

        self.monitor.start_monitoring()
        summary = self.monitor.stop_monitoring()

        self.assertEqual(summary["files_processed"], 0)
        self.assertEqual(summary["success_rate_percent"], 0.0)
