"""
XML Synchronization Engine

Bidirectional, lossless synchronization between game server XML files and
relational database tables: schema inference, encoding-preserving import and
export, server compatibility filtering and round-trip validation.
"""

__version__ = "1.0.0"

# Import core models and interfaces for easy access
from .models import (
    ColumnDef,
    ColumnSource,
    DataType,
    TableSchema,
    EncodingInfo,
    EncodingMetadata,
    ImportResult,
    ExportResult,
    BatchResult,
    SyncOutcome,
    ValidationStatus,
    ValidationSummary,
    ProcessingConfig,
)

from .interfaces import (
    FieldFilterInterface,
    SchemaInferencerInterface,
    MetadataStoreInterface,
    ImporterInterface,
    ExporterInterface,
    ConfigurationManagerInterface,
    PerformanceMonitorInterface,
    BatchProcessorInterface,
)

from .exceptions import (
    XMLSyncError,
    XMLParsingError,
    SchemaInferenceError,
    SchemaNotFoundError,
    ColumnOverflowError,
    EmptySourceError,
    ExportIntegrityError,
    DatabaseConnectionError,
    ConfigurationError,
    RuleDefinitionError,
    JobCancelledError,
    ValueCoercionError,
)

__all__ = [
    # Core models
    "ColumnDef",
    "ColumnSource",
    "DataType",
    "TableSchema",
    "EncodingInfo",
    "EncodingMetadata",
    "ImportResult",
    "ExportResult",
    "BatchResult",
    "SyncOutcome",
    "ValidationStatus",
    "ValidationSummary",
    "ProcessingConfig",

    # Interfaces
    "FieldFilterInterface",
    "SchemaInferencerInterface",
    "MetadataStoreInterface",
    "ImporterInterface",
    "ExporterInterface",
    "ConfigurationManagerInterface",
    "PerformanceMonitorInterface",
    "BatchProcessorInterface",

    # Exceptions
    "XMLSyncError",
    "XMLParsingError",
    "SchemaInferenceError",
    "SchemaNotFoundError",
    "ColumnOverflowError",
    "EmptySourceError",
    "ExportIntegrityError",
    "DatabaseConnectionError",
    "ConfigurationError",
    "RuleDefinitionError",
    "JobCancelledError",
    "ValueCoercionError",
]
