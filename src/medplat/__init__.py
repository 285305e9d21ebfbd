"""medplat kernel utilities."""

from .field_types import FieldDataType, FieldValue, TypedValue, ValueKind
from .property_json import PropertyJsonTypeError, bag_dumps, bag_loads

__all__ = [
    "FieldDataType",
    "FieldValue",
    "PropertyJsonTypeError",
    "TypedValue",
    "ValueKind",
    "bag_dumps",
    "bag_loads",
]
