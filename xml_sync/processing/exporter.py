"""
XML Exporter

Rebuilds table files from the database in the exact shape and byte encoding
they were imported with. Rows are read in primary key order, passed through
the Field Compatibility Filter, and written back as attributes, leaf
elements or re-parsed sub-trees. NULL values are omitted.

The encoding and BOM come from the encoding catalog; tables without a
catalog entry fall back to the most common encoding of the table's other
partitions, then to UTF-16LE with BOM.
"""

import logging
import os
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Union

from lxml import etree

from ..config.config_manager import ConfigManager, get_config_manager
from ..database.metadata_store import EncodingMetadataStore
from ..database.session import DatabaseSession
from ..encoding.encoding_detector import EncodingDetector, declaration_name, fallback_encoding
from ..exceptions import ExportIntegrityError
from ..interfaces import ExporterInterface
from ..models import (
    FRAGMENT_COLUMN,
    PARTITION_COLUMN,
    ROW_ID_COLUMN,
    ColumnSource,
    ExportResult,
    FragmentLayout,
    TableSchema,
)
from ..parsing.xml_parser import parse_fragment
from ..schema.value_types import from_db_value
from ..validation.field_filter import FieldCompatibilityFilter


@dataclass
class RenderedExport:
    """In-memory export of one table/partition, one encoded document per fragment."""
    table_name: str
    partition_key: str
    encoding: str
    has_bom: bool
    documents: List[Tuple[str, bytes]] = field(default_factory=list)
    rows_total: int = 0
    rows_exported: int = 0
    fields_dropped: int = 0
    fields_corrected: int = 0
    cancelled: bool = False

    @property
    def is_multi_fragment(self) -> bool:
        return len(self.documents) > 1


class XmlExporter(ExporterInterface):
    """
    Exports generated tables back to server XML files.

    Args:
        session: Database session every query runs through
        store: Encoding metadata store (also the per-partition lock owner)
        config_manager: Source of schema contracts, export directory and batch size
        field_filter: Server compatibility filter applied to every row
        detector: Encoder for the on-disk bytes
    """

    def __init__(self, session: DatabaseSession, store: Optional[EncodingMetadataStore] = None,
                 config_manager: Optional[ConfigManager] = None,
                 field_filter: Optional[FieldCompatibilityFilter] = None,
                 detector: Optional[EncodingDetector] = None):
        self.logger = logging.getLogger(__name__)
        self.session = session
        self.store = store or EncodingMetadataStore(session)
        self.config_manager = config_manager or get_config_manager()
        self.config = self.config_manager.get_processing_config()
        self.field_filter = field_filter or FieldCompatibilityFilter(self.config_manager.load_field_rules())
        self.detector = detector or EncodingDetector()

    def export_table(self, table_name: str, partition_key: str = "",
                     destination: Optional[Union[str, Path]] = None,
                     progress: Optional[Callable[[int, int, str], None]] = None,
                     cancel_token=None) -> ExportResult:
        """
        Export one table/partition to disk and count the export.

        Args:
            table_name: Logical table to export
            partition_key: Partition to export, empty for unpartitioned tables
            destination: Path stem; ``<stem>.xml`` for single-file tables,
                ``<stem>/<fragment>`` for multi-file tables. Defaults to the
                configured export directory.
            progress: Callback receiving (rows serialized, total rows, label)
            cancel_token: CancellationToken polled between pages

        Returns:
            ExportResult with the written paths

        Raises:
            SchemaNotFoundError: If the table has no schema contract
            ExportIntegrityError: If an output file is missing or empty after writing
        """
        start_time = time.time()
        partition_key = partition_key or ""
        stem = Path(destination) if destination is not None else self.default_destination(table_name, partition_key)
        # Reading rows and writing files is one critical section per partition
        with self.store.serialized(table_name, partition_key):
            rendered = self.export_to_bytes(table_name, partition_key, progress=progress,
                                            cancel_token=cancel_token, record_statistics=True)
            if not rendered.cancelled:
                output_paths = [str(p) for p in self.write_documents(rendered, stem)]
                self.store.record_export(table_name, partition_key, rendered.encoding, rendered.has_bom)

        result = ExportResult(
            table_name=table_name,
            partition_key=partition_key,
            rows_total=rendered.rows_total,
            rows_exported=rendered.rows_exported,
            fields_dropped=rendered.fields_dropped,
            fields_corrected=rendered.fields_corrected,
            encoding=rendered.encoding,
            has_bom=rendered.has_bom,
            cancelled=rendered.cancelled,
        )
        if rendered.cancelled:
            self.logger.warning(f"Export of {table_name} cancelled, nothing written")
            result.elapsed_seconds = time.time() - start_time
            return result

        result.output_paths = output_paths
        result.elapsed_seconds = time.time() - start_time
        self.logger.info(result.summary())
        return result

    def default_destination(self, table_name: str, partition_key: str = "") -> Path:
        base = self.config_manager.export_dir
        if partition_key:
            base = base / partition_key
        return base / table_name

    def write_documents(self, rendered: RenderedExport, stem: Path) -> List[Path]:
        """
        Write rendered documents under ``stem`` and verify them.

        Raises:
            ExportIntegrityError: If an output file is missing or empty
        """
        if rendered.is_multi_fragment:
            targets = [(stem / name, data) for name, data in rendered.documents]
        else:
            target = stem if stem.suffix.lower() == ".xml" else stem.with_name(stem.name + ".xml")
            targets = [(target, rendered.documents[0][1])]

        written = []
        for path, data in targets:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_name(path.name + ".tmp")
            with open(tmp_path, "wb") as file:
                file.write(data)
            os.replace(tmp_path, path)
            written.append(path)

        for path in written:
            if not path.is_file() or path.stat().st_size == 0:
                raise ExportIntegrityError(f"Export output missing or empty: {path}", str(path))
        return written

    def export_to_bytes(self, table_name: str, partition_key: str = "",
                        progress: Optional[Callable[[int, int, str], None]] = None,
                        cancel_token=None, record_statistics: bool = False) -> RenderedExport:
        """
        Render a table/partition in memory without touching the export counters.

        Rows are read under the table/partition lock, so a concurrent import of
        the same partition is never seen half done.

        Raises:
            SchemaNotFoundError: If the table has no schema contract
        """
        partition_key = partition_key or ""
        with self.store.serialized(table_name, partition_key):
            return self._render(table_name, partition_key, progress, cancel_token, record_statistics)

    def _render(self, table_name: str, partition_key: str, progress, cancel_token,
                record_statistics: bool) -> RenderedExport:
        label = f"{table_name}[{partition_key}]" if partition_key else table_name
        schema = self.config_manager.load_table_schema(table_name)

        metadata = self.store.get(table_name, partition_key)
        if metadata is not None:
            encoding, has_bom = metadata.original_encoding, metadata.has_bom
            layouts = list(metadata.fragments)
        else:
            info = fallback_encoding(table_name, self.store)
            self.logger.warning(f"No encoding metadata for {label}, falling back to {info.encoding} "
                                f"(bom={info.has_bom}, via {info.detection_source})")
            encoding, has_bom = info.encoding, info.has_bom
            layouts = []

        rendered = RenderedExport(table_name, partition_key, encoding, has_bom)
        total = self._count_rows(table_name, partition_key)
        rendered.rows_total = total

        roots: "OrderedDict[str, object]" = OrderedDict()
        for layout in layouts:
            roots[layout.name] = self._new_root(schema, layout)

        for fragment, row_values in self._iter_rows(schema, partition_key, cancel_token):
            if fragment is None:
                rendered.cancelled = True
                break
            if fragment not in roots:
                if layouts:
                    self.logger.warning(f"{label}: rows reference unknown fragment {fragment!r}")
                roots[fragment] = self._new_root(schema, FragmentLayout(fragment))
            texts = OrderedDict()
            for column, value in zip(schema.columns, row_values):
                typed = from_db_value(column, value)
                if not typed.is_null:
                    texts[column.name] = typed.to_xml_text()
            filtered = self.field_filter.filter_record(table_name, texts, record_statistics=record_statistics)
            rendered.fields_dropped += len(filtered.removed_fields)
            rendered.fields_corrected += len(filtered.corrected_fields)
            self._append_row(roots[fragment], schema, filtered.filtered)
            rendered.rows_exported += 1
            if progress is not None and (rendered.rows_exported % self.config.batch_size == 0
                                         or rendered.rows_exported == total):
                progress(rendered.rows_exported, total, label)

        if rendered.cancelled:
            return rendered

        if not roots:
            roots[f"{table_name}.xml"] = self._new_root(schema, FragmentLayout(f"{table_name}.xml"))
        for name, root in roots.items():
            rendered.documents.append((name, self._encode(root, encoding, has_bom)))
        return rendered

    def _count_rows(self, table_name: str, partition_key: str) -> int:
        rows = self.session.query(
            f"SELECT COUNT(*) FROM {self.session.qualified(table_name)} "
            f"WHERE {self.session.dialect.quote(PARTITION_COLUMN)} = ?",
            (partition_key,),
        )
        return int(rows[0][0]) if rows else 0

    def _iter_rows(self, schema: TableSchema, partition_key: str, cancel_token):
        """Yield (fragment, column values) in row id order, or (None, None) once cancelled."""
        columns = [ROW_ID_COLUMN, FRAGMENT_COLUMN] + list(schema.column_names)
        sql = self.session.dialect.page_sql(self.session.qualified(schema.table_name), columns,
                                            self.config.batch_size)
        last_row_id = 0
        while True:
            if cancel_token is not None and cancel_token.is_cancelled:
                yield None, None
                return
            page = self.session.query(sql, (partition_key, last_row_id))
            if self.logger.isEnabledFor(logging.DEBUG):
                self.logger.debug(f"Fetched {len(page)} rows of {schema.table_name} after row {last_row_id}")
            for row in page:
                yield row[1], row[2:]
            if len(page) < self.config.batch_size:
                return
            last_row_id = page[-1][0]

    @staticmethod
    def _new_root(schema: TableSchema, layout: FragmentLayout):
        root = etree.Element(schema.root_element_tag)
        for key, value in layout.root_attributes.items():
            root.set(key, value)
        return root

    @staticmethod
    def _append_row(root, schema: TableSchema, values: Dict[str, str]) -> None:
        row = etree.SubElement(root, schema.row_element_tag)
        for name, value in values.items():
            column = schema.get_column(name)
            if column.source == ColumnSource.ATTRIBUTE:
                row.set(column.xml_name, value)
            elif column.source == ColumnSource.FRAGMENT:
                for element in parse_fragment(value):
                    row.append(element)
            else:
                etree.SubElement(row, name).text = value

    def _encode(self, root, encoding: str, has_bom: bool) -> bytes:
        body = etree.tostring(root, encoding="unicode", pretty_print=True)
        text = f'<?xml version="1.0" encoding="{declaration_name(encoding)}"?>\n{body}'
        return self.detector.encode(text, encoding, has_bom)
