"""
Monitoring module for the XML synchronization engine.

This module provides performance monitoring and metrics collection
for batch imports, exports and validations.
"""

from .performance_monitor import PerformanceMonitor, PerformanceMetrics

__all__ = [
    'PerformanceMonitor',
    'PerformanceMetrics'
]
