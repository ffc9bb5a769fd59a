"""
Core data models for the XML synchronization engine.

This module defines the primary data structures used throughout the system:
table schemas inferred from XML, typed row records, encoding metadata,
field compatibility rules and the transient result objects returned by
import, export and validation operations.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import List, Optional, Dict, Any
from enum import Enum

from .exceptions import XMLSyncError


ATTRIBUTE_PREFIX = "_attr_"


def xml_field_name(column_name: str) -> str:
    """Attribute or element name behind a column or flattened field name."""
    if column_name.startswith(ATTRIBUTE_PREFIX):
        return column_name[len(ATTRIBUTE_PREFIX):]
    return column_name

# Bookkeeping columns present in every generated table
ROW_ID_COLUMN = "_sync_row_id"
PARTITION_COLUMN = "_sync_partition"
FRAGMENT_COLUMN = "_sync_fragment"
BOOKKEEPING_COLUMNS = (ROW_ID_COLUMN, PARTITION_COLUMN, FRAGMENT_COLUMN)


class DataType(Enum):
    """Relational types the schema inferencer can assign, strictest first."""
    INTEGER = "integer"
    FLOAT = "float"
    DATETIME = "datetime"
    VARCHAR = "varchar"


class ColumnSource(Enum):
    """Where a column's value lives inside a row element."""
    ELEMENT = "element"
    ATTRIBUTE = "attribute"
    FRAGMENT = "fragment"


@dataclass(frozen=True)
class ColumnDef:
    """
    One column of an inferred table.

    Attributes:
        name: Database column name (attributes carry the ``_attr_`` prefix)
        inferred_type: Relational type chosen by the inferencer
        max_length: Declared VARCHAR length; None means unbounded text
        nullable: Whether rows may omit the field
        source: Element, attribute or serialized sub-tree
        datetime_format: strftime pattern shared by every DATETIME value
    """
    name: str
    inferred_type: DataType
    max_length: Optional[int] = None
    nullable: bool = True
    source: ColumnSource = ColumnSource.ELEMENT
    datetime_format: Optional[str] = None

    def __post_init__(self):
        if not self.name:
            raise ValueError("column name cannot be empty")
        if self.name in BOOKKEEPING_COLUMNS:
            raise ValueError(f"column name {self.name} is reserved")
        if self.inferred_type == DataType.DATETIME and not self.datetime_format:
            raise ValueError(f"DATETIME column {self.name} requires a datetime_format")

    @property
    def xml_name(self) -> str:
        """Element tag or attribute name this column was derived from."""
        if self.source == ColumnSource.ATTRIBUTE and self.name.startswith(ATTRIBUTE_PREFIX):
            return self.name[len(ATTRIBUTE_PREFIX):]
        return self.name

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "inferred_type": self.inferred_type.value,
            "max_length": self.max_length,
            "nullable": self.nullable,
            "source": self.source.value,
            "datetime_format": self.datetime_format,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ColumnDef':
        return cls(
            name=data["name"],
            inferred_type=DataType(data["inferred_type"]),
            max_length=data.get("max_length"),
            nullable=data.get("nullable", True),
            source=ColumnSource(data.get("source", ColumnSource.ELEMENT.value)),
            datetime_format=data.get("datetime_format"),
        )


@dataclass(frozen=True)
class TableSchema:
    """
    Relational shape of one logical XML table.

    Immutable apart from column widening, which produces a new instance via
    ``with_widened_column``.
    """
    table_name: str
    root_element_tag: str
    row_element_tag: str
    columns: tuple = ()
    schema_version: int = 1

    def __post_init__(self):
        if not self.table_name:
            raise ValueError("table_name cannot be empty")
        if not self.root_element_tag or not self.row_element_tag:
            raise ValueError("root and row element tags must be specified")
        # Accept lists from callers but store a tuple
        object.__setattr__(self, "columns", tuple(self.columns))
        names = [c.name for c in self.columns]
        if len(names) != len(set(names)):
            raise ValueError(f"duplicate column names in schema for {self.table_name}")

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]

    def get_column(self, name: str) -> Optional[ColumnDef]:
        for column in self.columns:
            if column.name == name:
                return column
        return None

    def with_widened_column(self, column_name: str, new_length: Optional[int]) -> 'TableSchema':
        """Return a copy whose ``column_name`` is declared ``new_length`` wide."""
        column = self.get_column(column_name)
        if column is None:
            raise KeyError(column_name)
        if column.max_length is not None and new_length is not None and new_length < column.max_length:
            raise ValueError(f"cannot narrow {self.table_name}.{column_name}")
        widened = tuple(
            replace(c, max_length=new_length) if c.name == column_name else c
            for c in self.columns
        )
        return replace(self, columns=widened)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table_name": self.table_name,
            "root_element_tag": self.root_element_tag,
            "row_element_tag": self.row_element_tag,
            "schema_version": self.schema_version,
            "columns": [c.to_dict() for c in self.columns],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TableSchema':
        return cls(
            table_name=data["table_name"],
            root_element_tag=data["root_element_tag"],
            row_element_tag=data["row_element_tag"],
            columns=tuple(ColumnDef.from_dict(c) for c in data.get("columns", [])),
            schema_version=data.get("schema_version", 1),
        )


# ---------------------------------------------------------------------------
# Typed values (tagged union per column)
# ---------------------------------------------------------------------------

class TypedValue:
    """Base class of the per-column tagged union."""

    kind: Optional[DataType] = None

    @property
    def is_null(self) -> bool:
        return False

    def to_db(self) -> Any:
        raise NotImplementedError

    def to_xml_text(self) -> Optional[str]:
        raise NotImplementedError


@dataclass(frozen=True)
class IntegerValue(TypedValue):
    value: int
    kind = DataType.INTEGER

    def to_db(self) -> Any:
        return self.value

    def to_xml_text(self) -> str:
        return str(self.value)


@dataclass(frozen=True)
class FloatValue(TypedValue):
    value: float
    kind = DataType.FLOAT

    def to_db(self) -> Any:
        return self.value

    def to_xml_text(self) -> str:
        return format_float(self.value)


@dataclass(frozen=True)
class TextValue(TypedValue):
    value: str
    kind = DataType.VARCHAR

    def to_db(self) -> Any:
        return self.value

    def to_xml_text(self) -> str:
        return self.value


@dataclass(frozen=True)
class DateTimeValue(TypedValue):
    value: datetime
    fmt: str
    kind = DataType.DATETIME

    def to_db(self) -> Any:
        return self.value

    def to_xml_text(self) -> str:
        return self.value.strftime(self.fmt)


@dataclass(frozen=True)
class NullValue(TypedValue):

    @property
    def is_null(self) -> bool:
        return True

    def to_db(self) -> Any:
        return None

    def to_xml_text(self) -> Optional[str]:
        return None


NULL = NullValue()


def format_float(value: float) -> str:
    """Render a float the way game XML writes it: ``5`` rather than ``5.0``."""
    text = repr(value)
    if text.endswith(".0"):
        text = text[:-2]
    return text


@dataclass
class TypedRecord:
    """One flattened row, keyed by column name, in document order."""
    row_index: int
    values: Dict[str, TypedValue] = field(default_factory=dict)
    fragment: str = ""
    partition_key: str = ""

    def get(self, column_name: str) -> TypedValue:
        return self.values.get(column_name, NULL)

    def to_text_map(self) -> Dict[str, str]:
        """Non-null values rendered as XML text."""
        return {
            name: value.to_xml_text()
            for name, value in self.values.items()
            if not value.is_null
        }


# ---------------------------------------------------------------------------
# Encoding metadata
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EncodingInfo:
    """Result of sniffing a file's raw bytes."""
    encoding: str
    has_bom: bool
    confidence: int = 0
    detection_source: str = "default"
    declared_encoding: Optional[str] = None


class ValidationStatus(Enum):
    """Tri-state stored in ``last_validation_result``."""
    PASS = "PASS"
    FAIL = "FAIL"
    NOT_VALIDATED = "NOT_VALIDATED"


@dataclass
class FragmentLayout:
    """One physical source file of a logical table."""
    name: str
    root_attributes: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "root_attributes": dict(self.root_attributes)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FragmentLayout':
        return cls(name=data["name"], root_attributes=dict(data.get("root_attributes") or {}))


@dataclass
class EncodingMetadata:
    """
    Catalog row for one ``(table_name, partition_key)``.

    Attributes:
        table_name: Logical table name
        partition_key: Map/region id, empty string when unpartitioned
        original_encoding: Encoding detected on the last import
        has_bom: Whether the source carried a byte-order mark
        original_content_hash: Content hash recomputed on every import
        last_validation_result: Outcome of the last round-trip check
        import_count: Successful imports, never decreasing
        export_count: Successful exports, never decreasing
        last_import_time: Timestamp of the last successful import
        last_export_time: Timestamp of the last successful export
        fragments: Source file layout in original order
    """
    table_name: str
    partition_key: str = ""
    original_encoding: str = "UTF-16LE"
    has_bom: bool = True
    original_content_hash: Optional[str] = None
    last_validation_result: ValidationStatus = ValidationStatus.NOT_VALIDATED
    import_count: int = 0
    export_count: int = 0
    last_import_time: Optional[datetime] = None
    last_export_time: Optional[datetime] = None
    fragments: List[FragmentLayout] = field(default_factory=list)

    @property
    def fragment_names(self) -> List[str]:
        return [f.name for f in self.fragments]

    @property
    def is_multi_fragment(self) -> bool:
        return len(self.fragments) > 1


@dataclass
class EncodingStatistics:
    """Aggregate view of the catalog, used by diagnostics."""
    total_entries: int = 0
    with_bom: int = 0
    by_encoding: Dict[str, int] = field(default_factory=dict)
    by_validation: Dict[str, int] = field(default_factory=dict)

    def summary(self) -> str:
        lines = [f"Catalog entries: {self.total_entries} ({self.with_bom} with BOM)"]
        for encoding, count in sorted(self.by_encoding.items(), key=lambda kv: (-kv[1], kv[0])):
            lines.append(f"  {encoding}: {count}")
        for status, count in sorted(self.by_validation.items()):
            lines.append(f"  validation {status}: {count}")
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Field compatibility rules
# ---------------------------------------------------------------------------

class FieldAction(Enum):
    DROP = "drop"
    REWRITE = "rewrite"
    KEEP = "keep"


@dataclass(frozen=True)
class FieldDecision:
    """Outcome of evaluating one field against the ruleset."""
    action: FieldAction
    value: Optional[str] = None
    rule: Optional[Any] = None

    @classmethod
    def keep(cls, value: Optional[str] = None) -> 'FieldDecision':
        return cls(FieldAction.KEEP, value)

    @classmethod
    def drop(cls, rule=None) -> 'FieldDecision':
        return cls(FieldAction.DROP, None, rule)

    @classmethod
    def rewrite(cls, value: str, rule=None) -> 'FieldDecision':
        return cls(FieldAction.REWRITE, value, rule)


@dataclass(frozen=True)
class MatchPredicate:
    """
    Value test for a correction rule.

    kind is one of ``equals``, ``in``, ``regex``, ``greater_than``,
    ``greater_or_equal``, ``less_than``.
    """
    kind: str
    operand: Any


@dataclass(frozen=True)
class BlacklistRule:
    field_name: str
    scope_tag: str = "*"
    reason: Optional[str] = None


@dataclass(frozen=True)
class CorrectionRule:
    field_name: str
    match_predicate: MatchPredicate
    replacement: Any
    scope_tag: str = "*"
    reason: Optional[str] = None


@dataclass(frozen=True)
class FieldRuleSet:
    """Versioned, static collection of blacklist and correction rules."""
    version: str
    rules: tuple = ()
    scopes: Dict[str, tuple] = field(default_factory=dict)
    source: Optional[str] = None

    def scope_patterns(self, scope_tag: str) -> tuple:
        """Table-name patterns a rule scope covers; unknown tags are patterns themselves."""
        return self.scopes.get(scope_tag, (scope_tag,))

    @property
    def blacklist_rules(self) -> List[BlacklistRule]:
        return [r for r in self.rules if isinstance(r, BlacklistRule)]

    @property
    def correction_rules(self) -> List[CorrectionRule]:
        return [r for r in self.rules if isinstance(r, CorrectionRule)]


@dataclass
class FilterResult:
    """Outcome of filtering one row for export."""
    filtered: Dict[str, str]
    removed_fields: List[str] = field(default_factory=list)
    corrected_fields: Dict[str, tuple] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.removed_fields or self.corrected_fields)


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------

@dataclass
class RowError:
    """A per-row failure that did not abort the file."""
    row_index: int
    error_type: str
    message: str
    column_name: Optional[str] = None


@dataclass
class ImportResult:
    """Transient outcome of importing one file (or one fragment set)."""
    table_name: str
    partition_key: str = ""
    source_paths: List[str] = field(default_factory=list)
    rows_total: int = 0
    rows_imported: int = 0
    rows_skipped: int = 0
    row_errors: List[RowError] = field(default_factory=list)
    widened_columns: Dict[str, int] = field(default_factory=dict)
    encoding: Optional[str] = None
    has_bom: bool = False
    content_hash: Optional[str] = None
    elapsed_seconds: float = 0.0
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return not self.cancelled

    def summary(self) -> str:
        text = (f"{self.table_name}: imported {self.rows_imported}/{self.rows_total} rows "
                f"({self.rows_skipped} skipped) in {self.elapsed_seconds:.2f}s")
        if self.widened_columns:
            widened = ", ".join(f"{k}->{v}" for k, v in self.widened_columns.items())
            text += f"; widened {widened}"
        if self.cancelled:
            text += " [cancelled]"
        return text


@dataclass
class ExportResult:
    """Transient outcome of exporting one table/partition."""
    table_name: str
    partition_key: str = ""
    output_paths: List[str] = field(default_factory=list)
    rows_total: int = 0
    rows_exported: int = 0
    fields_dropped: int = 0
    fields_corrected: int = 0
    encoding: Optional[str] = None
    has_bom: bool = False
    elapsed_seconds: float = 0.0
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return not self.cancelled and bool(self.output_paths)

    def summary(self) -> str:
        text = (f"{self.table_name}: exported {self.rows_exported}/{self.rows_total} rows "
                f"to {len(self.output_paths)} file(s) as {self.encoding}"
                f"{' with BOM' if self.has_bom else ''}")
        if self.fields_dropped or self.fields_corrected:
            text += f" ({self.fields_dropped} fields dropped, {self.fields_corrected} corrected)"
        if self.cancelled:
            text += " [cancelled]"
        return text


@dataclass
class ValidationMismatch:
    """Recorded outcome of a failed round-trip comparison. Never raised."""
    table_name: str
    partition_key: str
    expected_hash: Optional[str]
    actual_hash: Optional[str]
    message: str = ""


@dataclass
class TableValidation:
    """Result of validating one table/partition."""
    table_name: str
    partition_key: str
    status: ValidationStatus
    original_hash: Optional[str] = None
    exported_hash: Optional[str] = None
    message: str = ""


@dataclass
class ValidationSummary:
    """Aggregate result of validating one or many tables."""
    results: List[TableValidation] = field(default_factory=list)
    mismatches: List[ValidationMismatch] = field(default_factory=list)

    def _count(self, status: ValidationStatus) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def passed(self) -> int:
        return self._count(ValidationStatus.PASS)

    @property
    def failed(self) -> int:
        return self._count(ValidationStatus.FAIL)

    @property
    def not_validated(self) -> int:
        return self._count(ValidationStatus.NOT_VALIDATED)

    @property
    def failing_tables(self) -> List[str]:
        return [
            f"{r.table_name}[{r.partition_key}]" if r.partition_key else r.table_name
            for r in self.results if r.status == ValidationStatus.FAIL
        ]

    def summary(self) -> str:
        text = (f"Validated {len(self.results)} table(s): {self.passed} passed, "
                f"{self.failed} failed, {self.not_validated} not validated")
        if self.failing_tables:
            text += "\nFailing: " + ", ".join(self.failing_tables)
        return text


class OutcomeKind(Enum):
    SUCCESS = "success"
    RETRYABLE = "retryable"
    TERMINAL = "terminal"


@dataclass
class SyncOutcome:
    """
    Result type used by batch drivers.

    Separates retryable failures (column overflow, missing schema) from
    terminal ones so callers never match on exception text.
    """
    kind: OutcomeKind
    identifier: str
    result: Any = None
    error: Optional[BaseException] = None

    @classmethod
    def success(cls, identifier: str, result: Any) -> 'SyncOutcome':
        return cls(OutcomeKind.SUCCESS, identifier, result=result)

    @classmethod
    def from_exception(cls, identifier: str, error: BaseException) -> 'SyncOutcome':
        retryable = isinstance(error, XMLSyncError) and error.retryable
        kind = OutcomeKind.RETRYABLE if retryable else OutcomeKind.TERMINAL
        return cls(kind, identifier, error=error)

    @property
    def ok(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS

    @property
    def error_type(self) -> Optional[str]:
        return type(self.error).__name__ if self.error is not None else None


def classify_outcome(error: BaseException, identifier: str = "") -> SyncOutcome:
    """Convert an exception raised for ``identifier`` into a SyncOutcome."""
    return SyncOutcome.from_exception(identifier, error)


@dataclass
class BatchResult:
    """
    Results from a batch operation over many files or tables.

    Attributes:
        operation: Name of the batch operation (import, export, infer, ...)
        total: Number of items submitted
        succeeded: Identifiers that completed
        failed_items: Dicts with identifier, error_type and error message
        skipped: Identifiers not attempted (cancelled)
        results: Per-item result objects keyed by identifier
        processing_time_seconds: Wall clock time of the batch
        performance_metrics: Metrics collected by the performance monitor
    """
    operation: str
    total: int = 0
    succeeded: List[str] = field(default_factory=list)
    failed_items: List[Dict[str, Any]] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    results: Dict[str, Any] = field(default_factory=dict)
    processing_time_seconds: float = 0.0
    performance_metrics: Dict[str, Any] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def success_count(self) -> int:
        return len(self.succeeded)

    @property
    def failure_count(self) -> int:
        return len(self.failed_items)

    @property
    def success_rate(self) -> float:
        """Calculate the success rate as a percentage."""
        if self.total == 0:
            return 0.0
        return (self.success_count / self.total) * 100.0

    def record(self, outcome: SyncOutcome) -> None:
        if outcome.ok:
            self.succeeded.append(outcome.identifier)
            self.results[outcome.identifier] = outcome.result
        else:
            self.failed_items.append({
                "identifier": outcome.identifier,
                "error_type": outcome.error_type,
                "error": str(outcome.error),
                "retryable": outcome.kind == OutcomeKind.RETRYABLE,
            })

    def summary(self) -> str:
        lines = [
            f"{self.operation}: {self.success_count}/{self.total} succeeded, "
            f"{self.failure_count} failed, {len(self.skipped)} skipped "
            f"({self.processing_time_seconds:.2f}s)"
        ]
        for item in self.failed_items:
            lines.append(f"  FAILED {item['identifier']}: {item['error_type']}: {item['error']}")
        if self.cancelled:
            lines.append("  batch cancelled before completion")
        return "\n".join(lines)


@dataclass
class MigrationResult:
    """Outcome of back-filling encoding metadata for legacy tables."""
    total_tables: int = 0
    already_present: List[str] = field(default_factory=list)
    migrated: List[str] = field(default_factory=list)
    not_found: List[str] = field(default_factory=list)
    failed: List[Dict[str, str]] = field(default_factory=list)

    def summary(self) -> str:
        return (f"Backfill: {self.total_tables} tables, {len(self.migrated)} migrated, "
                f"{len(self.already_present)} already present, "
                f"{len(self.not_found)} without source file, {len(self.failed)} failed")


@dataclass
class ProcessingConfig:
    """
    Runtime parameters shared by import, export and validation jobs.

    Attributes:
        batch_size: Rows per insert transaction and per export page
        parallel_workers: Background worker threads
        max_widenings_per_file: Cap on overflow self-heal ALTERs per file
        varchar_headroom: Multiplier applied to observed maximum lengths
        max_varchar_length: Lengths above this become unbounded text
        sample_limit: Maximum sample files read for inference
    """
    batch_size: int = 1000
    parallel_workers: int = 4
    max_widenings_per_file: int = 32
    varchar_headroom: int = 2
    min_varchar_length: int = 16
    max_varchar_length: int = 4000
    sample_limit: int = 20

    def __post_init__(self):
        if self.batch_size <= 0:
            raise ValueError("batch_size must be positive")
        if self.parallel_workers <= 0:
            raise ValueError("parallel_workers must be positive")
        if self.max_widenings_per_file < 0:
            raise ValueError("max_widenings_per_file cannot be negative")
        if self.varchar_headroom < 1:
            raise ValueError("varchar_headroom must be at least 1")
