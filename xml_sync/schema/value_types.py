"""
Type lattice used by inference and by record construction.

INTEGER -> FLOAT -> DATETIME -> VARCHAR, strictest first. A value only
qualifies for a type when rendering the parsed value reproduces the source
text exactly, so storing typed values never changes what gets exported.
"""

import re
from datetime import datetime
from typing import Any, Optional

from ..exceptions import ValueCoercionError
from ..models import (
    NULL,
    ColumnDef,
    DataType,
    DateTimeValue,
    FloatValue,
    IntegerValue,
    TextValue,
    TypedValue,
    format_float,
)


INT32_MIN = -2 ** 31
INT32_MAX = 2 ** 31 - 1

_INTEGER_PATTERN = re.compile(r'^-?\d+$')
_DECIMAL_PATTERN = re.compile(r'^-?\d+(\.\d+)?$')

DATETIME_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y/%m/%d %H:%M:%S",
    "%Y-%m-%d",
    "%Y/%m/%d",
)


def parse_integer(text: str) -> Optional[int]:
    """Integer value when ``text`` is canonical int32 text, else None."""
    if not _INTEGER_PATTERN.match(text):
        return None
    value = int(text)
    if str(value) != text or not INT32_MIN <= value <= INT32_MAX:
        return None
    return value


def parse_float(text: str) -> Optional[float]:
    """Float value when ``text`` is a plain decimal that renders back identically."""
    if not _DECIMAL_PATTERN.match(text):
        return None
    value = float(text)
    if format_float(value) != text:
        return None
    return value


def parse_datetime(text: str, fmt: str) -> Optional[datetime]:
    try:
        value = datetime.strptime(text, fmt)
    except ValueError:
        return None
    if value.strftime(fmt) != text:
        return None
    return value


def match_datetime_format(text: str) -> Optional[str]:
    for fmt in DATETIME_FORMATS:
        if parse_datetime(text, fmt) is not None:
            return fmt
    return None


def to_typed_value(column: ColumnDef, raw: Optional[str]) -> TypedValue:
    """
    Build the typed value of one field from its XML text.

    Raises:
        ValueCoercionError: If the text does not parse as the column type
    """
    if raw is None:
        return NULL
    kind = column.inferred_type
    if kind == DataType.VARCHAR:
        return TextValue(raw)
    if kind == DataType.INTEGER:
        value = parse_integer(raw)
        if value is not None:
            return IntegerValue(value)
    elif kind == DataType.FLOAT:
        value = parse_float(raw)
        if value is not None:
            return FloatValue(value)
    elif kind == DataType.DATETIME:
        value = parse_datetime(raw, column.datetime_format)
        if value is not None:
            return DateTimeValue(value, column.datetime_format)
    raise ValueCoercionError(f"Value {raw!r} is not a valid {kind.value} for column {column.name}")


def from_db_value(column: ColumnDef, value: Any) -> TypedValue:
    """Typed value of a database result cell."""
    if value is None:
        return NULL
    kind = column.inferred_type
    if kind == DataType.INTEGER:
        return IntegerValue(int(value))
    if kind == DataType.FLOAT:
        return FloatValue(float(value))
    if kind == DataType.DATETIME:
        if isinstance(value, str):
            value = datetime.fromisoformat(value)
        return DateTimeValue(value, column.datetime_format)
    return TextValue(str(value))
