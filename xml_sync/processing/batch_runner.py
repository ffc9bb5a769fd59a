"""
Batch drivers for whole directories of server XML.

BatchRunner maps a directory onto logical tables and hands every table to a
BatchProcessorInterface implementation: the JobCoordinator worker pool in
production, or SequentialProcessor for testing and debugging. One table's
failure never stops the others; a lost database connection stops the batch.

Directory layout:
- ``<dir>/<table>.xml``: single-file table named after the file stem
- ``<dir>/<table>/*.xml``: multi-file table, fragments in name order
"""

import logging
import time
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence, Tuple, Union

from ..exceptions import DatabaseConnectionError, JobCancelledError
from ..interfaces import BatchProcessorInterface
from ..models import BatchResult, classify_outcome
from ..monitoring.performance_monitor import PerformanceMonitor
from .exporter import XmlExporter
from .importer import XmlImporter
from .job_coordinator import CancellationToken, run_item
from ..schema.schema_inferencer import SchemaInferencer


TableSource = Tuple[str, Union[Path, List[Path]]]


def discover_tables(source_dir: Union[str, Path]) -> List[TableSource]:
    """
    Map a directory onto (table name, source) pairs, sorted by table name.

    Returns:
        Pairs whose source is one path (single file) or a list of fragment paths
    """
    base = Path(source_dir)
    tables = []
    for entry in sorted(base.iterdir()):
        if entry.is_file() and entry.suffix.lower() == ".xml":
            tables.append((entry.stem, entry))
        elif entry.is_dir():
            fragments = sorted(p for p in entry.iterdir() if p.is_file() and p.suffix.lower() == ".xml")
            if fragments:
                tables.append((entry.name, fragments))
    return tables


class SequentialProcessor(BatchProcessorInterface):
    """
    Single-threaded batch processor.

    Runs items one at a time in the calling thread with the same outcome
    classification as the JobCoordinator, which keeps stack traces simple
    and gives a baseline for parallel efficiency.
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def run_batch(self, operation: str, items: List[Any], handler: Callable,
                  identify: Callable[[Any], str] = str,
                  token: Optional[CancellationToken] = None) -> BatchResult:
        token = token or CancellationToken()
        result = BatchResult(operation=operation, total=len(items))
        start_time = time.time()

        for index, item in enumerate(items):
            identifier = identify(item)
            if token.is_cancelled:
                result.skipped.extend(identify(rest) for rest in items[index:])
                break
            try:
                outcome = run_item(identifier, handler, item, token)
            except DatabaseConnectionError as e:
                self.logger.error(f"{operation}: database unavailable, aborting batch: {e}")
                result.record(classify_outcome(e, identifier))
                result.skipped.extend(identify(rest) for rest in items[index + 1:])
                token.cancel()
                break
            if isinstance(outcome.error, JobCancelledError):
                result.skipped.append(identifier)
                continue
            result.record(outcome)

        result.cancelled = token.is_cancelled
        result.processing_time_seconds = time.time() - start_time
        result.performance_metrics["worker_count"] = 1
        self.logger.info(result.summary())
        return result


class BatchRunner:
    """
    Imports, exports or infers every table of a directory.

    Args:
        importer: Importer used for every table
        exporter: Exporter used for every table
        inferencer: Used by ``infer_directory``
        processor: Batch strategy; defaults to SequentialProcessor
        monitor: Performance monitor whose summary is attached to each BatchResult
    """

    def __init__(self, importer: XmlImporter, exporter: XmlExporter,
                 inferencer: Optional[SchemaInferencer] = None,
                 processor: Optional[BatchProcessorInterface] = None,
                 monitor: Optional[PerformanceMonitor] = None):
        self.logger = logging.getLogger(__name__)
        self.importer = importer
        self.exporter = exporter
        self.inferencer = inferencer or importer.inferencer
        self.processor = processor or SequentialProcessor()
        self.monitor = monitor or PerformanceMonitor()

    def import_directory(self, source_dir: Union[str, Path], partition_key: str = "",
                         auto_infer: bool = False, token: Optional[CancellationToken] = None) -> BatchResult:
        """
        Import every table found under ``source_dir`` into one partition.

        Returns:
            BatchResult keyed by table name; results hold ImportResult objects
        """
        tables = discover_tables(source_dir)
        self.logger.info(f"Found {len(tables)} table(s) under {source_dir}")

        def handle(item: TableSource, item_token: CancellationToken):
            table_name, source = item
            started = time.time()
            try:
                result = self.importer.import_file(source, table_name, partition_key,
                                                   auto_infer=auto_infer, cancel_token=item_token)
            except Exception:
                self.monitor.record_file(False)
                raise
            self.monitor.add_stage_time("insertion", time.time() - started)
            self.monitor.record_file(result.success, result.rows_imported)
            return result

        return self._run("import", tables, handle, token)

    def export_tables(self, table_names: Sequence[str], destination: Optional[Union[str, Path]] = None,
                      partition_key: str = "", token: Optional[CancellationToken] = None) -> BatchResult:
        """
        Export the given tables, under ``destination`` when given.

        Returns:
            BatchResult keyed by table name; results hold ExportResult objects
        """
        def handle(table_name: str, item_token: CancellationToken):
            target = None
            if destination is not None:
                target = Path(destination) / partition_key / table_name if partition_key \
                    else Path(destination) / table_name
            started = time.time()
            try:
                result = self.exporter.export_table(table_name, partition_key, target, cancel_token=item_token)
            except Exception:
                self.monitor.record_file(False)
                raise
            self.monitor.add_stage_time("export", time.time() - started)
            self.monitor.record_file(result.success, result.rows_exported)
            return result

        return self._run("export", list(table_names), handle, token, identify=str)

    def infer_directory(self, source_dir: Union[str, Path], token: Optional[CancellationToken] = None) -> BatchResult:
        """
        Infer and save a schema contract for every table under ``source_dir``.

        Returns:
            BatchResult keyed by table name; results hold TableSchema objects
        """
        config_manager = self.importer.config_manager
        session = self.importer.session

        def handle(item: TableSource, item_token: CancellationToken):
            item_token.raise_if_cancelled("inference")
            table_name, source = item
            paths = source if isinstance(source, list) else [source]
            started = time.time()
            try:
                schema = self.inferencer.infer_from_files(table_name, paths)
            except Exception:
                self.monitor.record_file(False)
                raise
            ddl = self.inferencer.generate_ddl(schema, session.dialect, session.schema_prefix)
            config_manager.save_table_schema(schema, ddl)
            self.monitor.add_stage_time("inference", time.time() - started)
            self.monitor.record_file(True)
            return schema

        return self._run("infer", discover_tables(source_dir), handle, token)

    def _run(self, operation: str, items: List[Any], handler: Callable, token: Optional[CancellationToken],
             identify: Callable[[Any], str] = lambda item: item[0]) -> BatchResult:
        self.monitor.start_monitoring()
        try:
            result = self.processor.run_batch(operation, items, handler, identify=identify, token=token)
        finally:
            metrics = self.monitor.stop_monitoring()
        result.performance_metrics.update(metrics)
        return result
