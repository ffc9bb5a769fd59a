"""
Command-line interface for the XML synchronization engine.

This module provides the main entry point for running import, export,
validation and catalog maintenance jobs from the command line with
centralized configuration management.

Examples:
    xml_sync infer data/server
    xml_sync import data/server/skill.xml --auto-infer
    xml_sync import data/server --partition 1 --workers 8
    xml_sync export --table skill --dest out/
    xml_sync validate
"""

import sys
import argparse
import logging
from pathlib import Path
from typing import Optional

from .config.config_manager import get_config_manager
from .config.processing_defaults import ProcessingDefaults
from .database.metadata_migration import MetadataBackfillMigration
from .database.metadata_store import EncodingMetadataStore
from .database.session import DatabaseSession
from .exceptions import XMLSyncError
from .monitoring.performance_monitor import PerformanceMonitor
from .processing.batch_runner import BatchRunner, SequentialProcessor
from .processing.exporter import XmlExporter
from .processing.importer import XmlImporter
from .processing.job_coordinator import JobCoordinator
from .schema.schema_inferencer import SchemaInferencer
from .validation.field_filter import FieldCompatibilityFilter
from .validation.round_trip_validator import RoundTripValidator


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="xml_sync",
        description="Synchronize game server XML files with a relational database",
    )
    parser.add_argument("--log-level", default=ProcessingDefaults.LOG_LEVEL,
                        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"],
                        help="Logging level (default: %(default)s)")
    parser.add_argument("--log-file", help="Also write log records to this file")
    parser.add_argument("--config-path", help="Base directory for schemas, rules and output")

    sub = parser.add_subparsers(dest="command", required=True)

    infer = sub.add_parser("infer", help="Infer table schemas and DDL from XML files")
    infer.add_argument("source", help="XML file, fragment directory or data directory")
    infer.add_argument("--table", help="Table name for a single file or fragment directory")

    imp = sub.add_parser("import", help="Import an XML file or a directory of table files")
    imp.add_argument("source", help="XML file, or directory of table files")
    imp.add_argument("--table", help="Target table for a single file (default: file stem)")
    imp.add_argument("--partition", default="", help="Map/region partition key")
    imp.add_argument("--auto-infer", action="store_true", help="Infer missing schemas")
    imp.add_argument("--workers", type=int, default=None, help="Worker threads for directory imports")

    exp = sub.add_parser("export", help="Export tables back to XML")
    exp.add_argument("--table", action="append", help="Table to export (repeatable, default: all)")
    exp.add_argument("--partition", default="", help="Partition to export")
    exp.add_argument("--dest", help="Output directory (default: configured export directory)")
    exp.add_argument("--workers", type=int, default=None, help="Worker threads")

    val = sub.add_parser("validate", help="Round-trip validate imported tables")
    val.add_argument("--table", action="append", help="Table to validate (repeatable, default: all)")
    val.add_argument("--partition", default=None, help="Only this partition of --table")

    backfill = sub.add_parser("backfill", help="Create encoding metadata for tables imported without it")
    backfill.add_argument("source", help="Directory holding the original XML files")
    backfill.add_argument("--table", action="append", help="Table to backfill (repeatable, default: all)")
    backfill.add_argument("--partition", action="append", help="Partition to backfill (repeatable)")
    backfill.add_argument("--redetect", action="store_true",
                          help="Re-detect encodings recorded as ambiguous UTF-16")

    sub.add_parser("cleanup", help="Remove metadata rows whose table no longer exists")
    sub.add_parser("stats", help="Show encoding metadata statistics")
    return parser


def configure_logging(level: str, log_file: Optional[str] = None) -> None:
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=getattr(logging, level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True,
    )


class _Components:
    """Engine objects shared by one CLI invocation."""

    def __init__(self, config_path: Optional[str] = None):
        self.config_manager = get_config_manager(config_path)
        self.session = DatabaseSession.from_config(self.config_manager.database_config)
        self.store = EncodingMetadataStore(self.session)
        self.field_filter = FieldCompatibilityFilter(self.config_manager.load_field_rules())
        self.inferencer = SchemaInferencer(self.config_manager.get_processing_config())
        self.importer = XmlImporter(self.session, self.store, self.config_manager,
                                    self.inferencer, self.field_filter)
        self.exporter = XmlExporter(self.session, self.store, self.config_manager, self.field_filter,
                                    self.importer.detector)

    def runner(self, workers: Optional[int] = None) -> BatchRunner:
        processor = JobCoordinator(workers) if workers and workers > 1 else SequentialProcessor()
        return BatchRunner(self.importer, self.exporter, self.inferencer, processor, PerformanceMonitor())


def _finish_batch(runner: BatchRunner, result) -> int:
    print(result.summary())
    if isinstance(runner.processor, JobCoordinator):
        runner.processor.shutdown()
    return 0 if result.failure_count == 0 and not result.cancelled else 1


def _cmd_infer(components: _Components, args) -> int:
    source = Path(args.source)
    session = components.session
    if source.is_dir() and not args.table:
        runner = components.runner()
        return _finish_batch(runner, runner.infer_directory(source))

    paths = sorted(source.glob("*.xml")) if source.is_dir() else [source]
    table_name = args.table or source.stem
    schema = components.inferencer.infer_from_files(table_name, paths)
    ddl = components.inferencer.generate_ddl(schema, session.dialect, session.schema_prefix)
    contract = components.config_manager.save_table_schema(schema, ddl)
    print(f"{table_name}: <{schema.root_element_tag}>/<{schema.row_element_tag}>, "
          f"{len(schema.columns)} columns -> {contract}")
    print(ddl)
    return 0


def _cmd_import(components: _Components, args) -> int:
    source = Path(args.source)
    if source.is_dir() and not args.table:
        runner = components.runner(args.workers or components.config_manager.processing_params.parallel_workers)
        result = runner.import_directory(source, args.partition, auto_infer=args.auto_infer)
        return _finish_batch(runner, result)

    table_name = args.table or source.stem
    item = sorted(source.glob("*.xml")) if source.is_dir() else source

    def handle(target, token):
        return components.importer.import_file(target, table_name, args.partition,
                                               auto_infer=args.auto_infer, cancel_token=token)

    result = SequentialProcessor().run_batch("import", [item], handle, identify=lambda _: table_name)
    if table_name in result.results:
        print(result.results[table_name].summary())
    print(result.summary())
    return 0 if result.failure_count == 0 and not result.cancelled else 1


def _cmd_export(components: _Components, args) -> int:
    tables = args.table or components.config_manager.list_table_schemas()
    runner = components.runner(args.workers)
    result = runner.export_tables(tables, args.dest, args.partition)
    return _finish_batch(runner, result)


def _cmd_validate(components: _Components, args) -> int:
    validator = RoundTripValidator(components.exporter, components.store, components.config_manager)
    if args.table and args.partition is not None:
        summary = validator.validate_table(args.table[0], args.partition)
    else:
        summary = validator.validate_all(args.table)
    print(summary.summary())
    return 0 if summary.failed == 0 else 1


def _cmd_backfill(components: _Components, args) -> int:
    migration = MetadataBackfillMigration(components.store, components.config_manager,
                                          components.field_filter, components.importer.detector)
    if args.redetect:
        updated = migration.redetect(args.source)
        print(f"Re-detected {updated} catalog row(s)")
        return 0
    result = migration.run(args.source, args.table, args.partition or ("",))
    print(result.summary())
    for failure in result.failed:
        print(f"  FAILED {failure['table']}: {failure['error']}")
    return 0 if not result.failed else 1


def _cmd_cleanup(components: _Components, args) -> int:
    removed = components.store.cleanup_orphans()
    print(f"Removed orphaned metadata for {len(removed)} table(s)")
    for table_name in removed:
        print(f"  {table_name}")
    return 0


def _cmd_stats(components: _Components, args) -> int:
    print(components.store.encoding_statistics().summary())
    return 0


COMMANDS = {
    "infer": _cmd_infer,
    "import": _cmd_import,
    "export": _cmd_export,
    "validate": _cmd_validate,
    "backfill": _cmd_backfill,
    "cleanup": _cmd_cleanup,
    "stats": _cmd_stats,
}


def main(args: Optional[list] = None) -> int:
    """
    Main entry point for the CLI application.

    Args:
        args: Optional command line arguments (defaults to sys.argv)

    Returns:
        Exit code (0 for success, 1 for any failure)
    """
    if args is None:
        args = sys.argv[1:]
    parsed = build_parser().parse_args(args)
    configure_logging(parsed.log_level, parsed.log_file)
    logger = logging.getLogger(__name__)

    components = None
    try:
        components = _Components(parsed.config_path)
        return COMMANDS[parsed.command](components, parsed)
    except XMLSyncError as e:
        logger.error(f"{parsed.command} failed: {type(e).__name__}: {e}")
        print(f"ERROR: {type(e).__name__}: {e}", file=sys.stderr)
        return 1
    finally:
        if components is not None:
            components.session.close()


if __name__ == "__main__":
    sys.exit(main())
