"""
XML Importer

Loads one table file (or the ordered fragment files of a multi-file table)
into its generated table. The partition's existing rows are replaced, rows
are inserted in document order one transaction per batch, and on success the
encoding catalog records how the source was encoded and what its content
hash was.

Processing pipeline for one file:
1. Read raw bytes (missing or empty files fail before anything is touched)
2. Detect encoding and BOM, decode, parse
3. Resolve the TableSchema (optionally inferring it once when missing)
4. Flatten rows into typed records; uncoercible values become NULL row errors
5. Under the (table, partition) lock: delete old rows, insert in batches
6. Record encoding metadata
"""

import logging
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from ..config.config_manager import ConfigManager, get_config_manager
from ..database.metadata_store import EncodingMetadataStore
from ..database.row_writer import OverflowHealer, RowWriter
from ..database.session import DatabaseSession
from ..encoding.content_hasher import ContentHasher
from ..encoding.encoding_detector import EncodingDetector, read_source_bytes
from ..exceptions import ColumnOverflowError, SchemaInferenceError, SchemaNotFoundError, ValueCoercionError
from ..interfaces import ImporterInterface
from ..models import (
    FRAGMENT_COLUMN,
    PARTITION_COLUMN,
    ROW_ID_COLUMN,
    ColumnSource,
    FragmentLayout,
    ImportResult,
    RowError,
    TableSchema,
    TypedRecord,
)
from ..parsing.xml_parser import ParsedDocument, XMLParser, serialize_fragment
from ..schema.schema_inferencer import SchemaInferencer
from ..schema.value_types import to_typed_value
from ..validation.field_filter import FieldCompatibilityFilter


SourceType = Union[str, Path, Sequence[Union[str, Path]]]
RewriteHook = Callable[[Optional[str], str], Optional[str]]

# Creating the same table from two workers at once would race
_DDL_LOCK = threading.Lock()


class XmlImporter(ImporterInterface):
    """
    Imports table files through an explicit DatabaseSession.

    Args:
        session: Database session every statement runs through
        store: Encoding metadata store (also the per-partition lock owner)
        config_manager: Source of schema contracts and processing parameters
        inferencer: Used when ``auto_infer`` remediates a missing schema
        field_filter: Filter whose view of the rows is hashed
        detector: Encoding detector shared with the parser
    """

    def __init__(self, session: DatabaseSession, store: Optional[EncodingMetadataStore] = None,
                 config_manager: Optional[ConfigManager] = None,
                 inferencer: Optional[SchemaInferencer] = None,
                 field_filter: Optional[FieldCompatibilityFilter] = None,
                 detector: Optional[EncodingDetector] = None):
        self.logger = logging.getLogger(__name__)
        self.session = session
        self.store = store or EncodingMetadataStore(session)
        self.config_manager = config_manager or get_config_manager()
        self.config = self.config_manager.get_processing_config()
        self.detector = detector or EncodingDetector()
        self.parser = XMLParser(self.detector)
        self.inferencer = inferencer or SchemaInferencer(self.config, self.parser)
        self.field_filter = field_filter or FieldCompatibilityFilter(self.config_manager.load_field_rules())
        self.hasher = ContentHasher(self.parser, self.field_filter)
        self.writer = RowWriter(session, self.logger)

    def import_file(self, source: SourceType, table_name: str, partition_key: str = "",
                    columns: Optional[Sequence[str]] = None, rewrite_hook: Optional[RewriteHook] = None,
                    auto_infer: bool = False, progress: Optional[Callable[[int, int, str], None]] = None,
                    cancel_token=None) -> ImportResult:
        """
        Import one file, or the ordered fragment files of one logical table.

        Args:
            source: File path, or list of fragment paths in original order
            table_name: Target logical table
            partition_key: Map/region partition, empty for unpartitioned tables
            columns: Columns passed through ``rewrite_hook``; every column when None
            rewrite_hook: ``(raw_value, column_name) -> new_value`` for the selected columns
            auto_infer: Infer and register the schema once when it is missing
            progress: Callback receiving (rows processed, total rows, label)
            cancel_token: CancellationToken polled between batches

        Returns:
            ImportResult; ``cancelled`` is set when the job stopped early

        Raises:
            EmptySourceError: Source missing or zero bytes
            XMLParsingError: Source cannot be decoded or parsed
            SchemaNotFoundError: No schema contract and auto_infer is off
            SchemaInferenceError: Schema cannot be inferred or does not fit the file
            DatabaseConnectionError: Database unreachable
        """
        start_time = time.time()
        partition_key = partition_key or ""
        paths = [Path(p) for p in ([source] if isinstance(source, (str, Path)) else source)]
        label = f"{table_name}[{partition_key}]" if partition_key else table_name

        raws = [read_source_bytes(p) for p in paths]
        documents = [
            self.parser.parse_bytes(raw, fragment_name=p.name, source_identifier=str(p))
            for p, raw in zip(paths, raws)
        ]
        encoding_info = documents[0].encoding_info
        for document in documents[1:]:
            if (document.encoding_info.encoding, document.encoding_info.has_bom) != (
                    encoding_info.encoding, encoding_info.has_bom):
                self.logger.warning(
                    f"{label}: fragment {document.fragment_name} is {document.encoding_info.encoding}, "
                    f"recording {encoding_info.encoding} for the table"
                )

        schema = self._resolve_schema(table_name, documents, auto_infer)
        self._check_shape(schema, documents)
        with _DDL_LOCK:
            self.inferencer.ensure_table(self.session, schema)

        result = ImportResult(
            table_name=table_name,
            partition_key=partition_key,
            source_paths=[str(p) for p in paths],
            encoding=encoding_info.encoding,
            has_bom=encoding_info.has_bom,
        )

        records = self._build_records(schema, documents, partition_key, columns, rewrite_hook, result)
        result.rows_total = len(records)
        result.content_hash = self.hasher.hash_documents(documents, schema)
        self.logger.info(
            f"Importing {label}: {len(records)} rows from {len(paths)} file(s) "
            f"({encoding_info.encoding}, bom={encoding_info.has_bom})"
        )

        insert_columns = [ROW_ID_COLUMN, PARTITION_COLUMN, FRAGMENT_COLUMN] + list(schema.column_names)
        healer = OverflowHealer(schema, self.config.max_widenings_per_file)

        with self.store.serialized(table_name, partition_key):
            deleted = self.session.execute(
                f"DELETE FROM {self.session.qualified(table_name)} WHERE "
                f"{self.session.dialect.quote(PARTITION_COLUMN)} = ?",
                (partition_key,),
            )
            if deleted:
                self.logger.debug(f"Removed {deleted} existing rows of {label}")

            if rewrite_hook is not None:
                self._widen_for_rewrites(table_name, records, healer)

            processed = 0
            for batch_start in range(0, len(records), self.config.batch_size):
                if cancel_token is not None and cancel_token.is_cancelled:
                    result.cancelled = True
                    self.logger.warning(f"{label}: import cancelled after {processed} rows")
                    break
                batch = records[batch_start:batch_start + self.config.batch_size]
                rows = [self._row_tuple(schema, record) for record in batch]
                with self.session.get_connection() as connection:
                    with self.session.transaction(connection) as cursor:
                        inserted, errors = self.writer.insert_batch(
                            cursor, table_name, insert_columns, rows, healer
                        )
                result.rows_imported += inserted
                result.row_errors.extend(errors)
                processed += len(batch)
                if progress is not None:
                    progress(processed, len(records), label)

            result.rows_skipped = result.rows_total - result.rows_imported
            result.widened_columns = dict(healer.widened_columns)
            if healer.widened_columns:
                ddl = self.inferencer.generate_ddl(healer.schema, self.session.dialect, self.session.schema_prefix)
                self.config_manager.save_table_schema(healer.schema, ddl)

            if not result.cancelled:
                fragments = [FragmentLayout(d.fragment_name, d.root_attributes) for d in documents]
                self.store.record_import(
                    table_name, partition_key, encoding_info.encoding, encoding_info.has_bom,
                    result.content_hash, fragments,
                )

        result.elapsed_seconds = time.time() - start_time
        self.logger.info(result.summary())
        return result

    def _resolve_schema(self, table_name: str, documents: List[ParsedDocument], auto_infer: bool) -> TableSchema:
        try:
            return self.config_manager.load_table_schema(table_name)
        except SchemaNotFoundError:
            if not auto_infer:
                raise
        self.logger.info(f"No schema for {table_name}, inferring from the source")
        schema = self.inferencer.infer_parsed(table_name, documents)
        ddl = self.inferencer.generate_ddl(schema, self.session.dialect, self.session.schema_prefix)
        self.config_manager.save_table_schema(schema, ddl)
        return schema

    @staticmethod
    def _check_shape(schema: TableSchema, documents: List[ParsedDocument]) -> None:
        for document in documents:
            if document.root_tag != schema.root_element_tag:
                raise SchemaInferenceError(
                    f"{document.fragment_name}: root <{document.root_tag}> does not match "
                    f"<{schema.root_element_tag}> of table {schema.table_name}", schema.table_name
                )

    def _build_records(self, schema: TableSchema, documents: List[ParsedDocument], partition_key: str,
                       columns: Optional[Sequence[str]], rewrite_hook: Optional[RewriteHook],
                       result: ImportResult) -> List[TypedRecord]:
        selected = set(columns) if columns is not None else None
        unknown_fields = set()
        records = []
        row_index = 0
        for document in documents:
            for row in self.parser.row_elements(document.root, schema.row_element_tag):
                row_index += 1
                record = TypedRecord(row_index=row_index, fragment=document.fragment_name,
                                     partition_key=partition_key)
                for name, flat in self.parser.flatten_row(row).items():
                    column = schema.get_column(name)
                    if column is None:
                        unknown_fields.add(name)
                        continue

                    raw = flat.value
                    if column.source == ColumnSource.FRAGMENT and flat.source != ColumnSource.FRAGMENT:
                        raw = serialize_fragment(flat.elements)
                    elif column.source != ColumnSource.FRAGMENT and flat.source == ColumnSource.FRAGMENT:
                        result.row_errors.append(RowError(
                            row_index, "ValueCoercionError", f"structured content in scalar column {name}", name
                        ))
                        continue

                    if rewrite_hook is not None and (selected is None or name in selected):
                        raw = rewrite_hook(raw, name)
                    try:
                        record.values[name] = to_typed_value(column, raw)
                    except ValueCoercionError as e:
                        self.logger.warning(f"{schema.table_name} row {row_index}: {e}; storing NULL")
                        result.row_errors.append(RowError(row_index, "ValueCoercionError", str(e), name))
                records.append(record)

        if unknown_fields:
            self.logger.warning(
                f"{schema.table_name}: ignoring fields not in the schema: {', '.join(sorted(unknown_fields))}"
            )
        return records

    @staticmethod
    def _row_tuple(schema: TableSchema, record: TypedRecord) -> Tuple:
        values = [record.row_index, record.partition_key, record.fragment]
        values.extend(record.get(name).to_db() for name in schema.column_names)
        return tuple(values)

    def _widen_for_rewrites(self, table_name: str, records: List[TypedRecord], healer: OverflowHealer) -> None:
        """Widen columns whose rewritten values no longer fit, before any row is inserted."""
        longest: Dict[str, str] = {}
        for record in records:
            for name, value in record.values.items():
                text = value.to_db()
                if isinstance(text, str) and len(text) > len(longest.get(name, "")):
                    longest[name] = text
        if not longest:
            return
        with self.session.get_connection() as connection:
            with self.session.transaction(connection) as cursor:
                try:
                    self.writer.widen_for_values(cursor, table_name, longest, healer)
                except ColumnOverflowError as e:
                    self.logger.warning(f"{table_name}: {e}; oversized rewritten rows will be skipped")
