"""
Schema Inferencer

Derives a relational schema from untyped XML samples. The repeating child
under the root is the row shape; every attribute, simple child and
structured child of the rows becomes a column.

Types are inferred by progressively stricter parse attempts over every
observed value of a field (INTEGER, FLOAT, DATETIME). A single value that
fails a stricter parse demotes the whole field to the next looser type, and
VARCHAR is the universal fallback. An empty value always demotes to VARCHAR
and makes the column nullable. Demotion never runs the other way.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Sequence, Union

from ..encoding.encoding_detector import read_source_bytes
from ..exceptions import SchemaInferenceError, XMLParsingError
from ..interfaces import SchemaInferencerInterface
from ..models import ColumnDef, ColumnSource, DataType, ProcessingConfig, TableSchema
from ..parsing.xml_parser import ParsedDocument, XMLParser
from .value_types import match_datetime_format, parse_datetime, parse_float, parse_integer


def utf16_length(value: str) -> int:
    """Length in UTF-16 code units, which is what NVARCHAR(n) counts."""
    return len(value.encode("utf-16-le")) // 2


@dataclass
class _FieldStats:
    """Running evidence for one field across all sampled rows."""
    name: str
    source: ColumnSource
    rows_present: int = 0
    non_null_values: int = 0
    saw_null: bool = False
    max_length: int = 0
    integer_ok: bool = True
    float_ok: bool = True
    datetime_ok: bool = True
    datetime_format: Optional[str] = None
    text_only: bool = False

    def observe(self, value: Optional[str]) -> None:
        self.rows_present += 1
        if value is None:
            self.saw_null = True
            return
        self.non_null_values += 1
        self.max_length = max(self.max_length, utf16_length(value))
        if value == "":
            self.saw_null = True
        if self.source == ColumnSource.FRAGMENT or value == "":
            self.text_only = True
        if self.text_only:
            return
        if self.integer_ok and parse_integer(value) is None:
            self.integer_ok = False
        if self.float_ok and parse_float(value) is None:
            self.float_ok = False
        if self.datetime_ok:
            if self.datetime_format is None:
                self.datetime_format = match_datetime_format(value)
                if self.datetime_format is None:
                    self.datetime_ok = False
            elif parse_datetime(value, self.datetime_format) is None:
                self.datetime_ok = False

    def inferred_type(self) -> DataType:
        if self.text_only or self.non_null_values == 0:
            return DataType.VARCHAR
        if self.integer_ok:
            return DataType.INTEGER
        if self.float_ok:
            return DataType.FLOAT
        if self.datetime_ok:
            return DataType.DATETIME
        return DataType.VARCHAR


class SchemaInferencer(SchemaInferencerInterface):
    """
    Infers TableSchema and DDL from sample documents.

    Batch callers must catch SchemaInferenceError per file and continue.
    """

    def __init__(self, config: Optional[ProcessingConfig] = None, parser: Optional[XMLParser] = None):
        self.config = config or ProcessingConfig()
        self.parser = parser or XMLParser()
        self.logger = logging.getLogger(__name__)

    def infer(self, table_name: str, documents: Sequence[bytes]) -> TableSchema:
        """
        Infer a schema from raw document bytes.

        Raises:
            SchemaInferenceError: No documents, malformed XML or no row element
        """
        parsed = []
        for index, raw in enumerate(documents):
            try:
                parsed.append(self.parser.parse_bytes(raw, source_identifier=f"{table_name}#{index}"))
            except XMLParsingError as e:
                raise SchemaInferenceError(f"Cannot infer schema for {table_name}: {e}", table_name)
        return self.infer_parsed(table_name, parsed)

    def infer_from_files(self, table_name: str, paths: Sequence[Union[str, Path]]) -> TableSchema:
        """
        Infer from up to ``sample_limit`` files of one logical table.

        Raises:
            EmptySourceError: If a sampled file is missing or empty
            SchemaInferenceError: If no row shape can be found
        """
        sample = list(paths)[: self.config.sample_limit]
        if len(sample) < len(paths):
            self.logger.info(f"Sampling {len(sample)} of {len(paths)} files for {table_name}")
        return self.infer(table_name, [read_source_bytes(p) for p in sample])

    def infer_parsed(self, table_name: str, documents: Sequence[ParsedDocument]) -> TableSchema:
        """Infer from already parsed documents."""
        if not documents:
            raise SchemaInferenceError(f"No sample documents for {table_name}", table_name)

        root_tag = documents[0].root_tag
        row_tag = None
        for document in documents:
            if document.root_tag != root_tag:
                raise SchemaInferenceError(
                    f"Samples for {table_name} disagree on the root element: "
                    f"<{root_tag}> vs <{document.root_tag}>", table_name
                )
            candidate = self.parser.detect_row_tag(document.root)
            if candidate is None:
                continue
            if row_tag is None:
                row_tag = candidate
            elif candidate != row_tag:
                raise SchemaInferenceError(
                    f"Samples for {table_name} disagree on the row element: <{row_tag}> vs <{candidate}>",
                    table_name
                )
        if row_tag is None:
            raise SchemaInferenceError(f"No repeating row element found under <{root_tag}> for {table_name}",
                                       table_name)

        stats: Dict[str, _FieldStats] = {}
        total_rows = 0
        for document in documents:
            for row in self.parser.row_elements(document.root, row_tag):
                total_rows += 1
                for name, flat in self.parser.flatten_row(row).items():
                    field_stats = stats.get(name)
                    if field_stats is None:
                        field_stats = _FieldStats(name, flat.source)
                        stats[name] = field_stats
                    elif flat.source == ColumnSource.FRAGMENT and field_stats.source == ColumnSource.ELEMENT:
                        # Structured somewhere means structured everywhere
                        field_stats.source = ColumnSource.FRAGMENT
                        field_stats.text_only = True
                    field_stats.observe(flat.value)

        columns = [self._column_from_stats(s, total_rows) for s in stats.values()]
        schema = TableSchema(table_name=table_name, root_element_tag=root_tag,
                             row_element_tag=row_tag, columns=columns)
        self.logger.info(
            f"Inferred {table_name}: <{root_tag}>/<{row_tag}> with {len(columns)} columns from {total_rows} rows"
        )
        return schema

    def _column_from_stats(self, stats: _FieldStats, total_rows: int) -> ColumnDef:
        inferred = stats.inferred_type()
        nullable = stats.saw_null or stats.rows_present < total_rows
        max_length = None
        if inferred == DataType.VARCHAR and stats.source != ColumnSource.FRAGMENT:
            max_length = self.varchar_length(stats.max_length)
        return ColumnDef(
            name=stats.name,
            inferred_type=inferred,
            max_length=max_length,
            nullable=nullable,
            source=stats.source,
            datetime_format=stats.datetime_format if inferred == DataType.DATETIME else None,
        )

    def varchar_length(self, observed: int) -> Optional[int]:
        """Observed maximum with headroom; None once it passes the bounded limit."""
        length = max(observed * self.config.varchar_headroom, self.config.min_varchar_length)
        if length > self.config.max_varchar_length:
            return None
        return length

    def generate_ddl(self, schema: TableSchema, dialect, schema_prefix: str = "") -> str:
        return dialect.create_table_ddl(schema, schema_prefix) + ";\n"

    def ensure_table(self, session, schema: TableSchema) -> bool:
        """Create the data table when missing. Returns True when it was created."""
        if session.table_exists(schema.table_name):
            return False
        session.execute(session.dialect.create_table_ddl(schema, session.schema_prefix))
        self.logger.info(f"Created table {schema.table_name}")
        return True
