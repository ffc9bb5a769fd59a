"""
Row Writer - batched inserts with column overflow self-healing.

Encapsulates the strategy for inserting typed rows with automatic fallback
from executemany to individual inserts. When a single row overflows a
VARCHAR column the writer performs exactly one healing step for that row:
read the declared length, double it, ALTER the column and retry the row. A
second failure only skips that row. The number of ALTERs per file is capped.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..exceptions import ColumnOverflowError
from ..models import PARTITION_COLUMN, DataType, RowError, TableSchema
from .session import DatabaseSession


@dataclass
class OverflowHealer:
    """
    Per-file widening budget and the schema as widened so far.

    Attributes:
        schema: Current table schema, replaced on every widening
        max_widenings: ALTER COLUMN statements allowed for this file
        widenings: ALTER COLUMN statements issued so far
        widened_columns: Column name to its latest declared length (None = unbounded)
    """
    schema: TableSchema
    max_widenings: int
    widenings: int = 0
    widened_columns: Dict[str, Optional[int]] = field(default_factory=dict)

    @property
    def exhausted(self) -> bool:
        return self.widenings >= self.max_widenings


class RowWriter:
    """
    Strategy for inserting flattened rows into a generated table.

    Implements two-tier insertion strategy:
    1. Fast path: executemany per batch
    2. Fallback path: individual executes with per-row overflow healing
    """

    def __init__(self, session: DatabaseSession, logger: logging.Logger = None):
        self.session = session
        self.dialect = session.dialect
        self.logger = logger or logging.getLogger(__name__)

    def insert_batch(self, cursor, table_name: str, columns: List[str], rows: List[Tuple],
                     healer: OverflowHealer) -> Tuple[int, List[RowError]]:
        """
        Insert one batch of rows through an open transaction cursor.

        Args:
            cursor: Cursor of the batch transaction
            table_name: Unqualified table name
            columns: Column names, the first being the row id
            rows: Value tuples in column order
            healer: Per-file overflow state

        Returns:
            (rows inserted, per-row errors)
        """
        if not rows:
            return 0, []

        sql = self.dialect.insert_sql(self.session.qualified(table_name), columns)
        if self.logger.isEnabledFor(logging.DEBUG):
            self.logger.debug(f"SQL: {sql}")
            self.logger.debug(f"Inserting batch of {len(rows)} rows into {table_name}")

        params = [tuple(self.dialect.to_db_param(v) for v in row) for row in rows]

        if len(params) > 1:
            if self._try_fast_insert(cursor, sql, params):
                return len(params), []
            # executemany may have stored a prefix of the batch before failing
            present = self._rows_present(cursor, table_name, columns, params)
            if present:
                self.logger.debug(f"{len(present)} rows of the failed batch are already in {table_name}")
                pending = [values for values in params if values[0] not in present]
                inserted, errors = self._fallback_individual_insert(cursor, sql, table_name, columns,
                                                                    pending, healer)
                return inserted + len(params) - len(pending), errors
        return self._fallback_individual_insert(cursor, sql, table_name, columns, params, healer)

    def _try_fast_insert(self, cursor, sql: str, params: List[Tuple]) -> bool:
        """Returns True when executemany inserted the whole batch."""
        if self.dialect.name == "mssql":
            cursor.fast_executemany = True
        try:
            cursor.executemany(sql, params)
            return True
        except self.dialect.error_types as e:
            self.logger.debug(f"executemany failed, using individual inserts: {e}")
            return False

    def _rows_present(self, cursor, table_name: str, columns: List[str], params: List[Tuple]) -> set:
        """Row ids of this batch already visible to the batch transaction."""
        row_ids = [values[0] for values in params]
        quote = self.dialect.quote
        sql = (f"SELECT {quote(columns[0])} FROM {self.session.qualified(table_name)} "
               f"WHERE {quote(columns[0])} BETWEEN ? AND ?")
        args = [min(row_ids), max(row_ids)]
        if PARTITION_COLUMN in columns:
            sql += f" AND {quote(PARTITION_COLUMN)} = ?"
            args.append(params[0][columns.index(PARTITION_COLUMN)])
        cursor.execute(sql, args)
        return {row[0] for row in cursor.fetchall()} & set(row_ids)

    def _fallback_individual_insert(self, cursor, sql: str, table_name: str, columns: List[str],
                                    params: List[Tuple], healer: OverflowHealer) -> Tuple[int, List[RowError]]:
        inserted = 0
        errors: List[RowError] = []
        for values in params:
            row_id = values[0]
            try:
                cursor.execute(sql, values)
                inserted += 1
                continue
            except self.dialect.error_types as first_error:
                if not self.dialect.is_overflow_error(first_error):
                    self.logger.warning(f"Skipping row {row_id} of {table_name}: {first_error}")
                    errors.append(RowError(row_id, type(first_error).__name__, str(first_error)))
                    continue
                overflow = self._classify_overflow(first_error, table_name, columns, values, healer)

            try:
                self.heal(cursor, table_name, overflow, healer)
            except ColumnOverflowError as e:
                self.logger.warning(f"Skipping row {row_id} of {table_name}: {e}")
                errors.append(RowError(row_id, "ColumnOverflowError", str(e), overflow.column_name))
                continue

            try:
                cursor.execute(sql, values)
                inserted += 1
            except self.dialect.error_types as second_error:
                self.logger.warning(f"Row {row_id} of {table_name} still fails after widening, skipping: {second_error}")
                errors.append(RowError(row_id, "ColumnOverflowError", str(second_error), overflow.column_name))
        return inserted, errors

    def _classify_overflow(self, error: BaseException, table_name: str, columns: List[str],
                           values: Sequence[Any], healer: OverflowHealer) -> ColumnOverflowError:
        """Work out which column overflowed, from the message or by comparing lengths."""
        named = self.dialect.overflow_column(error)
        lengths = {
            name: len(value) for name, value in zip(columns, values)
            if isinstance(value, str)
        }
        if named and named in lengths:
            return ColumnOverflowError(str(error), table_name, named, lengths[named])

        best, best_excess = None, 0
        for name, length in lengths.items():
            column = healer.schema.get_column(name)
            if column is None or column.inferred_type != DataType.VARCHAR or column.max_length is None:
                continue
            excess = length - column.max_length
            if excess > best_excess:
                best, best_excess = name, excess
        return ColumnOverflowError(str(error), table_name, best, lengths.get(best))

    def heal(self, cursor, table_name: str, overflow: ColumnOverflowError, healer: OverflowHealer) -> None:
        """
        Widen the overflowing column once.

        Raises:
            ColumnOverflowError: If the column is unknown or the widening budget is spent
        """
        if overflow.column_name is None:
            raise ColumnOverflowError(f"Cannot tell which column overflowed in {table_name}", table_name)
        if healer.exhausted:
            raise ColumnOverflowError(
                f"Widening budget of {healer.max_widenings} exhausted for {table_name}",
                table_name, overflow.column_name, overflow.required_length
            )

        column = healer.schema.get_column(overflow.column_name)
        if column is None:
            raise ColumnOverflowError(f"Unknown column {overflow.column_name} in {table_name}",
                                      table_name, overflow.column_name)

        current = self.session.column_length(cursor, table_name, column.name)
        if current is None:
            current = column.max_length
        new_length = self.dialect.widened_length(current, overflow.required_length)

        if self.dialect.enforces_length:
            alter_sql = self.dialect.alter_column_sql(self.session.qualified(table_name), column, new_length)
            cursor.execute(alter_sql)
        healer.widenings += 1
        healer.schema = healer.schema.with_widened_column(column.name, new_length)
        healer.widened_columns[column.name] = new_length
        self.logger.info(
            f"Widened {table_name}.{column.name} from {current} to "
            f"{new_length if new_length is not None else 'MAX'}"
        )

    def widen_for_values(self, cursor, table_name: str, values: Dict[str, str], healer: OverflowHealer) -> None:
        """Widen ahead of insertion any VARCHAR column the given values no longer fit."""
        for name, value in values.items():
            column = healer.schema.get_column(name)
            if (value is None or column is None or column.inferred_type != DataType.VARCHAR
                    or column.max_length is None or len(value) <= column.max_length):
                continue
            overflow = ColumnOverflowError(f"Rewritten value exceeds {name}", table_name, name, len(value))
            self.heal(cursor, table_name, overflow, healer)
