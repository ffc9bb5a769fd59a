"""
Custom exceptions for the XML synchronization engine.

This module defines specific exception types for the error conditions that
can occur while importing XML files into the database, exporting tables back
to XML, and validating round trips.

Every exception carries a ``retryable`` flag so batch drivers can decide
between "remediate and retry once" and "skip and continue" without matching
on message text.
"""


class XMLSyncError(Exception):
    """Base exception for all XML synchronization errors."""

    retryable = False

    def __init__(self, message: str, source_identifier: str = None):
        """
        Initialize XML sync error.

        Args:
            message: Error description
            source_identifier: Optional file path, table name or row id that caused the error
        """
        super().__init__(message)
        self.source_identifier = source_identifier


class XMLParsingError(XMLSyncError):
    """Exception raised when XML parsing fails."""

    def __init__(self, message: str, xml_content: str = None, source_identifier: str = None):
        """
        Initialize XML parsing error.

        Args:
            message: Error description
            xml_content: Optional XML content that failed to parse (truncated for logging)
            source_identifier: Optional identifier of the source file
        """
        super().__init__(message, source_identifier)
        self.xml_content = xml_content[:500] + "..." if xml_content and len(xml_content) > 500 else xml_content


class SchemaInferenceError(XMLSyncError):
    """No repeating row element could be found in the sampled documents."""
    pass


class SchemaNotFoundError(XMLSyncError):
    """Raised when a table has no schema contract or DDL yet."""

    retryable = True

    def __init__(self, message: str, table_name: str = None):
        super().__init__(message, table_name)
        self.table_name = table_name


class ColumnOverflowError(XMLSyncError):
    """Raised when a value does not fit in its column's declared length."""

    retryable = True

    def __init__(self, message: str, table_name: str = None, column_name: str = None,
                 required_length: int = None, source_identifier: str = None):
        """
        Initialize column overflow error.

        Args:
            message: Error description
            table_name: Table being written
            column_name: Column that overflowed, when known
            required_length: Length of the offending value, when known
            source_identifier: Optional row identifier
        """
        super().__init__(message, source_identifier)
        self.table_name = table_name
        self.column_name = column_name
        self.required_length = required_length


class EmptySourceError(XMLSyncError):
    """Raised when a source file is missing or zero bytes long."""
    pass


class ExportIntegrityError(XMLSyncError):
    """Raised when an exported file is missing or empty after writing."""
    pass


class DatabaseConnectionError(XMLSyncError):
    """Exception raised when database connection fails."""
    pass


class ConfigurationError(XMLSyncError):
    """Exception raised when configuration is invalid or missing."""
    pass


class RuleDefinitionError(ConfigurationError):
    """Raised when a field ruleset is malformed or a correction is not idempotent."""
    pass


class JobCancelledError(XMLSyncError):
    """Raised inside a worker when its cancellation token has been set."""
    pass


class ValueCoercionError(XMLSyncError):
    """A value does not fit the type its column was inferred with."""
    pass
