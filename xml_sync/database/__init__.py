"""Database session, dialects, row writing and the encoding metadata catalog."""

from .dialects import SqlDialect, SQLiteDialect, SqlServerDialect, get_dialect
from .session import DatabaseSession
from .metadata_store import EncodingMetadataStore
from .row_writer import OverflowHealer, RowWriter

__all__ = [
    'SqlDialect',
    'SQLiteDialect',
    'SqlServerDialect',
    'get_dialect',
    'DatabaseSession',
    'EncodingMetadataStore',
    'OverflowHealer',
    'RowWriter',
]
