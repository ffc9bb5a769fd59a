"""
Database session threaded explicitly through every engine call.

A session owns a connection factory and a dialect. Production sessions open
a fresh pyodbc connection per unit of work; SQLite sessions (local runs and
tests) can share one in-memory database across worker threads.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Callable, Iterator, List, Optional, Sequence

import pyodbc

from ..exceptions import DatabaseConnectionError
from .dialects import SqlDialect, SQLiteDialect, SqlServerDialect, get_dialect


class DatabaseSession:
    """
    Connection factory plus dialect.

    Attributes:
        dialect: SQL dialect used to render statements
        schema_prefix: Optional schema that qualifies every table name
    """

    def __init__(self, connection_factory: Callable[[], Any], dialect: SqlDialect,
                 schema_prefix: str = "", shared_connection: bool = False):
        """
        Args:
            connection_factory: Zero-argument callable returning a DB-API connection
            dialect: Dialect matching the connections the factory produces
            schema_prefix: Optional schema qualifying table names
            shared_connection: Reuse one connection for the life of the session
        """
        self.logger = logging.getLogger(__name__)
        self.connection_factory = connection_factory
        self.dialect = dialect
        self.schema_prefix = schema_prefix
        self.shared_connection = shared_connection
        self._shared = None
        self._shared_lock = threading.RLock()

    @classmethod
    def from_config(cls, database_config) -> 'DatabaseSession':
        """Build a session from a DatabaseConfig."""
        dialect = get_dialect(database_config.dialect)
        if isinstance(dialect, SQLiteDialect):
            return cls.sqlite(database_config.sqlite_path)

        def connect():
            connection = pyodbc.connect(
                database_config.connection_string,
                autocommit=False,  # Explicit transaction control, one transaction per batch
                timeout=database_config.connection_timeout,
            )
            connection.setdecoding(pyodbc.SQL_CHAR, encoding='utf-8')
            connection.setdecoding(pyodbc.SQL_WCHAR, encoding='utf-16le')
            connection.setencoding(encoding='utf-8')
            return connection

        return cls(connect, SqlServerDialect(), schema_prefix=database_config.schema_prefix)

    @classmethod
    def sqlite(cls, path: str = ":memory:") -> 'DatabaseSession':
        """SQLite session; in-memory databases keep a single shared connection."""
        def connect():
            return sqlite3.connect(path, check_same_thread=False)

        return cls(connect, SQLiteDialect(), shared_connection=(path == ":memory:"))

    def _open(self):
        try:
            return self.connection_factory()
        except self.dialect.error_types as e:
            self.logger.error(f"Database connection failed: {e}")
            raise DatabaseConnectionError(f"Failed to connect to database: {e}")

    @contextmanager
    def get_connection(self) -> Iterator[Any]:
        """
        Context manager for database connections with automatic cleanup.

        Yields:
            Active DB-API connection

        Raises:
            DatabaseConnectionError: If connection cannot be established
        """
        if self.shared_connection:
            # sqlite3 connections are not safe for concurrent use
            with self._shared_lock:
                if self._shared is None:
                    self._shared = self._open()
                yield self._shared
            return

        connection = self._open()
        try:
            yield connection
        finally:
            try:
                connection.close()
            except self.dialect.error_types as e:
                self.logger.debug(f"Ignoring error while closing connection: {e}")

    @contextmanager
    def transaction(self, connection) -> Iterator[Any]:
        """
        Context manager for explicit transaction management.

        Commits on success, rolls back and re-raises on any error.

        Yields:
            Cursor bound to the transaction
        """
        cursor = connection.cursor()
        try:
            yield cursor
            connection.commit()
            self.logger.debug("Transaction committed")
        except Exception as e:
            try:
                connection.rollback()
                self.logger.error(f"Transaction rolled back due to error: {str(e)[:200]}")
            except self.dialect.error_types as rollback_error:
                self.logger.critical(f"ROLLBACK FAILED - Database may be in inconsistent state: {rollback_error}")
            raise
        finally:
            cursor.close()

    def qualified(self, table_name: str) -> str:
        return self.dialect.qualified(table_name, self.schema_prefix)

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run one statement in its own transaction and return the row count."""
        with self.get_connection() as connection:
            with self.transaction(connection) as cursor:
                cursor.execute(sql, tuple(params))
                return cursor.rowcount

    def query(self, sql: str, params: Sequence[Any] = ()) -> List[tuple]:
        with self.get_connection() as connection:
            cursor = connection.cursor()
            try:
                cursor.execute(sql, tuple(params))
                return [tuple(row) for row in cursor.fetchall()]
            finally:
                cursor.close()

    def table_exists(self, table_name: str) -> bool:
        rows = self.query(self.dialect.table_exists_sql(), (table_name,))
        return bool(rows and rows[0][0])

    def column_length(self, cursor, table_name: str, column_name: str) -> Optional[int]:
        """
        Declared character length of a column, None when unbounded or unknown.

        Reads through the caller's cursor so it sees the in-flight transaction.
        """
        sql = self.dialect.column_length_sql()
        if sql is None:
            return None
        cursor.execute(sql, (table_name, column_name))
        row = cursor.fetchone()
        if not row or row[0] is None or row[0] < 0:
            return None
        return int(row[0])

    def close(self) -> None:
        with self._shared_lock:
            if self._shared is not None:
                self._shared.close()
                self._shared = None
