"""
SQL dialects for the two databases the engine runs against.

SQL Server (through pyodbc) is the production target. SQLite (standard
library driver) backs local runs and the test suite; it does not enforce
VARCHAR lengths, so overflow self-healing is a SQL Server-only path.
"""

import re
import sqlite3
from datetime import datetime
from typing import Any, List, Optional

import pyodbc

from ..models import (
    FRAGMENT_COLUMN,
    PARTITION_COLUMN,
    ROW_ID_COLUMN,
    ColumnDef,
    DataType,
    TableSchema,
)


class SqlDialect:
    """Base dialect; subclasses supply type names and catalog queries."""

    name = "generic"
    error_types: tuple = (Exception,)
    enforces_length = True
    max_bounded_length = 4000

    def quote(self, identifier: str) -> str:
        raise NotImplementedError

    def qualified(self, table_name: str, schema_prefix: str = "") -> str:
        if schema_prefix:
            return f"{self.quote(schema_prefix)}.{self.quote(table_name)}"
        return self.quote(table_name)

    def varchar_type(self, length: Optional[int]) -> str:
        raise NotImplementedError

    def column_type(self, column: ColumnDef) -> str:
        if column.inferred_type == DataType.INTEGER:
            return "INTEGER"
        if column.inferred_type == DataType.FLOAT:
            return "FLOAT"
        if column.inferred_type == DataType.DATETIME:
            return self.datetime_type()
        return self.varchar_type(column.max_length)

    def datetime_type(self) -> str:
        return "DATETIME"

    def create_table_ddl(self, schema: TableSchema, schema_prefix: str = "") -> str:
        """CREATE TABLE statement including the bookkeeping columns."""
        lines = [
            f"    {self.quote(ROW_ID_COLUMN)} INTEGER NOT NULL",
            f"    {self.quote(PARTITION_COLUMN)} {self.varchar_type(128)} NOT NULL DEFAULT ''",
            f"    {self.quote(FRAGMENT_COLUMN)} {self.varchar_type(260)} NOT NULL DEFAULT ''",
        ]
        for column in schema.columns:
            null_sql = "NULL" if column.nullable else "NOT NULL"
            lines.append(f"    {self.quote(column.name)} {self.column_type(column)} {null_sql}")
        lines.append(f"    PRIMARY KEY ({self.quote(PARTITION_COLUMN)}, {self.quote(ROW_ID_COLUMN)})")
        body = ",\n".join(lines)
        return f"CREATE TABLE {self.qualified(schema.table_name, schema_prefix)} (\n{body}\n)"

    def insert_sql(self, qualified_table: str, columns: List[str]) -> str:
        column_list = ", ".join(self.quote(c) for c in columns)
        placeholders = ", ".join("?" * len(columns))
        return f"INSERT INTO {qualified_table} ({column_list}) VALUES ({placeholders})"

    def page_sql(self, qualified_table: str, columns: List[str], page_size: int) -> str:
        """Keyset page of one partition: params are (partition, last row id seen)."""
        column_list = ", ".join(self.quote(c) for c in columns)
        return (f"SELECT {column_list} FROM {qualified_table} "
                f"WHERE {self.quote(PARTITION_COLUMN)} = ? AND {self.quote(ROW_ID_COLUMN)} > ? "
                f"ORDER BY {self.quote(ROW_ID_COLUMN)} LIMIT {int(page_size)}")

    def table_exists_sql(self) -> str:
        raise NotImplementedError

    def column_length_sql(self) -> Optional[str]:
        return None

    def alter_column_sql(self, qualified_table: str, column: ColumnDef, new_length: Optional[int]) -> Optional[str]:
        return None

    def widened_length(self, current: Optional[int], required: Optional[int] = None) -> Optional[int]:
        """Double the current length (at least ``required``); None means unbounded."""
        if current is None:
            return None
        target = max(current * 2, required or 0)
        return None if target > self.max_bounded_length else target

    def is_overflow_error(self, error: BaseException) -> bool:
        return False

    def overflow_column(self, error: BaseException) -> Optional[str]:
        return None

    def to_db_param(self, value: Any) -> Any:
        return value

    def catalog_ddl(self, qualified_table: str) -> str:
        raise NotImplementedError


class SqlServerDialect(SqlDialect):
    """Microsoft SQL Server via pyodbc."""

    name = "mssql"
    error_types = (pyodbc.Error,)

    _TRUNCATION = re.compile(r"string or binary data would be truncated", re.IGNORECASE)
    _TRUNCATED_COLUMN = re.compile(r"column '([^']+)'", re.IGNORECASE)

    def quote(self, identifier: str) -> str:
        return "[" + identifier.replace("]", "]]") + "]"

    def varchar_type(self, length: Optional[int]) -> str:
        if length is None or length > self.max_bounded_length:
            return "NVARCHAR(MAX)"
        return f"NVARCHAR({length})"

    def datetime_type(self) -> str:
        return "DATETIME2(0)"

    def page_sql(self, qualified_table: str, columns: List[str], page_size: int) -> str:
        column_list = ", ".join(self.quote(c) for c in columns)
        return (f"SELECT TOP ({int(page_size)}) {column_list} FROM {qualified_table} "
                f"WHERE {self.quote(PARTITION_COLUMN)} = ? AND {self.quote(ROW_ID_COLUMN)} > ? "
                f"ORDER BY {self.quote(ROW_ID_COLUMN)}")

    def table_exists_sql(self) -> str:
        return "SELECT COUNT(*) FROM INFORMATION_SCHEMA.TABLES WHERE TABLE_NAME = ?"

    def column_length_sql(self) -> str:
        return ("SELECT CHARACTER_MAXIMUM_LENGTH FROM INFORMATION_SCHEMA.COLUMNS "
                "WHERE TABLE_NAME = ? AND COLUMN_NAME = ?")

    def alter_column_sql(self, qualified_table: str, column: ColumnDef, new_length: Optional[int]) -> str:
        null_sql = "NULL" if column.nullable else "NOT NULL"
        return (f"ALTER TABLE {qualified_table} ALTER COLUMN {self.quote(column.name)} "
                f"{self.varchar_type(new_length)} {null_sql}")

    def is_overflow_error(self, error: BaseException) -> bool:
        if not isinstance(error, pyodbc.Error):
            return False
        if error.args and error.args[0] == "22001":
            return True
        return bool(self._TRUNCATION.search(str(error)))

    def overflow_column(self, error: BaseException) -> Optional[str]:
        match = self._TRUNCATED_COLUMN.search(str(error))
        return match.group(1) if match else None

    def catalog_ddl(self, qualified_table: str) -> str:
        return (
            f"IF OBJECT_ID(N'{qualified_table}', N'U') IS NULL\n"
            f"CREATE TABLE {qualified_table} (\n"
            "    table_name NVARCHAR(255) NOT NULL,\n"
            "    map_type NVARCHAR(128) NOT NULL DEFAULT '',\n"
            "    original_encoding NVARCHAR(32) NOT NULL,\n"
            "    has_bom BIT NOT NULL DEFAULT 0,\n"
            "    original_file_hash NVARCHAR(64) NULL,\n"
            "    last_validation_result NVARCHAR(16) NULL,\n"
            "    import_count INT NOT NULL DEFAULT 0,\n"
            "    export_count INT NOT NULL DEFAULT 0,\n"
            "    last_import_time DATETIME2(0) NULL,\n"
            "    last_export_time DATETIME2(0) NULL,\n"
            "    fragment_layout NVARCHAR(MAX) NULL,\n"
            "    PRIMARY KEY (table_name, map_type)\n"
            ")"
        )


class SQLiteDialect(SqlDialect):
    """SQLite via the standard library driver."""

    name = "sqlite"
    error_types = (sqlite3.Error,)
    enforces_length = False

    def quote(self, identifier: str) -> str:
        return '"' + identifier.replace('"', '""') + '"'

    def qualified(self, table_name: str, schema_prefix: str = "") -> str:
        # SQLite has no schemas beyond attached databases
        return self.quote(table_name)

    def varchar_type(self, length: Optional[int]) -> str:
        if length is None or length > self.max_bounded_length:
            return "TEXT"
        return f"VARCHAR({length})"

    def column_type(self, column: ColumnDef) -> str:
        if column.inferred_type == DataType.FLOAT:
            return "REAL"
        if column.inferred_type == DataType.DATETIME:
            # Stored as ISO text; the standard datetime adapters are deprecated
            return "TEXT"
        return super().column_type(column)

    def table_exists_sql(self) -> str:
        return "SELECT COUNT(*) FROM sqlite_master WHERE type = 'table' AND name = ?"

    def to_db_param(self, value: Any) -> Any:
        if isinstance(value, datetime):
            return value.isoformat(sep=" ")
        return value

    def catalog_ddl(self, qualified_table: str) -> str:
        return (
            f"CREATE TABLE IF NOT EXISTS {qualified_table} (\n"
            "    table_name VARCHAR(255) NOT NULL,\n"
            "    map_type VARCHAR(128) NOT NULL DEFAULT '',\n"
            "    original_encoding VARCHAR(32) NOT NULL,\n"
            "    has_bom INTEGER NOT NULL DEFAULT 0,\n"
            "    original_file_hash VARCHAR(64),\n"
            "    last_validation_result VARCHAR(16),\n"
            "    import_count INTEGER NOT NULL DEFAULT 0,\n"
            "    export_count INTEGER NOT NULL DEFAULT 0,\n"
            "    last_import_time TEXT,\n"
            "    last_export_time TEXT,\n"
            "    fragment_layout TEXT,\n"
            "    PRIMARY KEY (table_name, map_type)\n"
            ")"
        )


DIALECTS = {
    SqlServerDialect.name: SqlServerDialect,
    SQLiteDialect.name: SQLiteDialect,
}


def get_dialect(name: str) -> SqlDialect:
    try:
        return DIALECTS[name.lower()]()
    except KeyError:
        raise ValueError(f"Unsupported database dialect: {name}")


