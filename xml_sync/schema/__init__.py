"""Schema inference and per-column value typing."""

from .schema_inferencer import SchemaInferencer
from .value_types import to_typed_value, from_db_value

__all__ = ['SchemaInferencer', 'to_typed_value', 'from_db_value']
