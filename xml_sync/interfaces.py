"""
Abstract interfaces and base classes for the XML synchronization engine.

This module defines the contracts that all system components must implement
to ensure consistent behavior and enable dependency injection (tests swap in
an in-memory database session, mock stores and fake filters).
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Dict, Any, Optional, Sequence, Union

from .models import (
    BatchResult,
    EncodingMetadata,
    ExportResult,
    FieldDecision,
    FilterResult,
    ImportResult,
    ProcessingConfig,
    TableSchema,
    ValidationStatus,
)


class FieldFilterInterface(ABC):
    """Abstract interface for export-time field compatibility filtering."""

    @abstractmethod
    def evaluate(self, field_name: str, scope_tag: str, raw_value: Optional[str]) -> FieldDecision:
        """
        Decide whether one field is dropped, rewritten or kept.

        Args:
            field_name: XML field name
            scope_tag: Structural context (table name) of the row
            raw_value: Stored value as text, None for NULL

        Returns:
            FieldDecision describing the action
        """
        pass

    @abstractmethod
    def filter_record(self, scope_tag: str, fields: Dict[str, str],
                      validate_only: bool = False) -> FilterResult:
        """
        Filter every field of one row.

        Args:
            scope_tag: Table name of the row
            fields: Field name to text value
            validate_only: Report changes without applying them

        Returns:
            FilterResult with filtered fields and change details
        """
        pass


class SchemaInferencerInterface(ABC):
    """Abstract interface for deriving relational schemas from XML samples."""

    @abstractmethod
    def infer(self, table_name: str, documents: Sequence[bytes]) -> TableSchema:
        """
        Infer a table schema from raw sample documents.

        Raises:
            SchemaInferenceError: If no repeating row element is found
        """
        pass

    @abstractmethod
    def generate_ddl(self, schema: TableSchema, dialect: Any) -> str:
        """Render CREATE TABLE DDL for the schema in the given dialect."""
        pass


class MetadataStoreInterface(ABC):
    """Abstract interface for the encoding metadata catalog."""

    @abstractmethod
    def get(self, table_name: str, partition_key: str = "") -> Optional[EncodingMetadata]:
        """Read the catalog row for a table/partition, None when absent."""
        pass

    @abstractmethod
    def record_import(self, table_name: str, partition_key: str, encoding: str, has_bom: bool,
                      content_hash: str, fragments: Optional[List[Any]] = None) -> EncodingMetadata:
        """Upsert after a successful import, incrementing import_count."""
        pass

    @abstractmethod
    def record_export(self, table_name: str, partition_key: str = "") -> EncodingMetadata:
        """Increment export_count after a successful export."""
        pass

    @abstractmethod
    def record_validation(self, table_name: str, partition_key: str,
                          status: ValidationStatus) -> None:
        """Store the outcome of a round-trip validation."""
        pass

    @abstractmethod
    def list_all(self) -> List[EncodingMetadata]:
        """Every catalog row, ordered by table and partition."""
        pass


class ImporterInterface(ABC):
    """Abstract interface for XML to database import."""

    @abstractmethod
    def import_file(self, source: Union[str, Path, Sequence[Union[str, Path]]], table_name: str,
                    partition_key: str = "", **kwargs) -> ImportResult:
        """
        Import one file (or the fragment files of one logical table).

        Raises:
            EmptySourceError: Missing or zero-byte source
            SchemaNotFoundError: No schema exists for the table
        """
        pass


class ExporterInterface(ABC):
    """Abstract interface for database to XML export."""

    @abstractmethod
    def export_table(self, table_name: str, partition_key: str = "",
                     destination: Optional[Union[str, Path]] = None, **kwargs) -> ExportResult:
        """
        Export one table/partition to XML using its recorded encoding.

        Raises:
            ExportIntegrityError: If an output file is missing or empty
        """
        pass


class ConfigurationManagerInterface(ABC):
    """Abstract interface for configuration management."""

    @abstractmethod
    def load_table_schema(self, table_name: str) -> TableSchema:
        """
        Load a persisted table schema contract.

        Raises:
            SchemaNotFoundError: If no contract exists for the table
        """
        pass

    @abstractmethod
    def save_table_schema(self, schema: TableSchema, ddl: Optional[str] = None) -> Path:
        """Persist a table schema contract (and its DDL) and return the contract path."""
        pass

    @abstractmethod
    def get_processing_config(self) -> ProcessingConfig:
        """
        Get processing configuration parameters.

        Returns:
            Processing configuration object
        """
        pass


class PerformanceMonitorInterface(ABC):
    """Abstract interface for performance monitoring components."""

    @abstractmethod
    def start_monitoring(self) -> None:
        """Start performance monitoring."""
        pass

    @abstractmethod
    def stop_monitoring(self) -> Dict[str, Any]:
        """
        Stop monitoring and return results.

        Returns:
            Dictionary of collected performance metrics
        """
        pass

    @abstractmethod
    def record_metric(self, metric_name: str, value: Any) -> None:
        """
        Record a performance metric.

        Args:
            metric_name: Name of the metric
            value: Metric value
        """
        pass

    @abstractmethod
    def get_current_metrics(self) -> Dict[str, Any]:
        """
        Get current performance metrics.

        Returns:
            Dictionary of current metric values
        """
        pass


class BatchProcessorInterface(ABC):
    """
    Abstract interface for batch strategies over many files or tables.

    Allows:
    - Concurrent processing via JobCoordinator (production)
    - Sequential processing for testing and debugging
    - Mock processors for unit testing
    """

    @abstractmethod
    def run_batch(self, operation: str, items: List[Any], handler: Any) -> BatchResult:
        """
        Apply ``handler`` to every item, isolating per-item failures.

        Args:
            operation: Name used in logs and the summary
            items: Work items (paths, table names, ...)
            handler: Callable invoked once per item

        Returns:
            BatchResult with success and failure lists
        """
        pass
