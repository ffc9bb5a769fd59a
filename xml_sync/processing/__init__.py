"""
Processing module for the XML synchronization engine.

Import and export pipelines plus the batch drivers that run them over many
tables, either on a worker pool or sequentially.
"""

from .job_coordinator import CancellationToken, JobCoordinator, JobHandle
from .importer import XmlImporter
from .exporter import XmlExporter, RenderedExport
from .batch_runner import BatchRunner, SequentialProcessor, discover_tables

__all__ = [
    'CancellationToken',
    'JobCoordinator',
    'JobHandle',
    'XmlImporter',
    'XmlExporter',
    'RenderedExport',
    'BatchRunner',
    'SequentialProcessor',
    'discover_tables',
]
