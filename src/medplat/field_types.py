"""Field data types and the tagged values the record pipeline passes around."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Iterable

UPLOADS_WEB_PREFIX = "/uploads/"


class FieldDataType(str, Enum):
    TEXT = "Text"
    NUMBER = "Number"
    MONEY = "Money"
    DATE = "Date"
    DATETIME = "DateTime"
    BOOLEAN = "Boolean"
    FILE = "File"

    @classmethod
    def parse(cls, value: Any) -> "FieldDataType | None":
        """Accept the enum, its name, its value (any case) or its ordinal."""
        if isinstance(value, cls):
            return value
        if isinstance(value, bool):
            return None
        if isinstance(value, int):
            members = list(cls)
            return members[value] if 0 <= value < len(members) else None
        if not isinstance(value, str):
            return None
        token = value.strip().lower()
        if token.isdigit():
            return cls.parse(int(token))
        for member in cls:
            if token in (member.value.lower(), member.name.lower()):
                return member
        return None


class ValueKind(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    BOOL = "bool"
    DATE = "date"
    DATETIME = "datetime"
    FILE_PATH = "file_path"
    # anything already stored that the pipeline does not interpret
    RAW = "raw"


@dataclass(frozen=True)
class TypedValue:
    kind: ValueKind
    value: Any

    def to_json(self) -> Any:
        if self.kind == ValueKind.NUMBER and isinstance(self.value, Decimal):
            if self.value == self.value.to_integral_value():
                return int(self.value)
            as_float = float(self.value)
            if Decimal(repr(as_float)) == self.value:
                return as_float
            # JSON floats cannot hold it; keep the exact decimal text.
            return str(self.value)
        if self.kind == ValueKind.DATETIME and isinstance(self.value, datetime):
            return self.value.isoformat()
        if self.kind == ValueKind.DATE and isinstance(self.value, date):
            return self.value.isoformat()
        return self.value

    @classmethod
    def from_json(cls, raw: Any) -> "TypedValue":
        if isinstance(raw, bool):
            return cls(ValueKind.BOOL, raw)
        if isinstance(raw, (int, float)):
            return cls(ValueKind.NUMBER, Decimal(str(raw)))
        if isinstance(raw, str):
            if raw.startswith(UPLOADS_WEB_PREFIX):
                return cls(ValueKind.FILE_PATH, raw)
            return cls(ValueKind.TEXT, raw)
        return cls(ValueKind.RAW, raw)


@dataclass(frozen=True)
class FieldValue:
    """Scalar or array of typed values stored under one property key."""

    items: tuple[TypedValue, ...]
    is_array: bool = False

    @classmethod
    def scalar(cls, item: TypedValue) -> "FieldValue":
        return cls((item,), False)

    @classmethod
    def array(cls, items: Iterable[TypedValue]) -> "FieldValue":
        return cls(tuple(items), True)

    @classmethod
    def from_json(cls, raw: Any) -> "FieldValue":
        if isinstance(raw, list):
            return cls.array(TypedValue.from_json(item) for item in raw)
        return cls.scalar(TypedValue.from_json(raw))

    def to_json(self) -> Any:
        if self.is_array:
            return [item.to_json() for item in self.items]
        return self.items[0].to_json() if self.items else None

    def map_items(self, fn: Callable[[TypedValue], TypedValue]) -> "FieldValue":
        return FieldValue(tuple(fn(item) for item in self.items), self.is_array)

    def is_empty(self) -> bool:
        for item in self.items:
            if item.value is None:
                continue
            if isinstance(item.value, str) and not item.value.strip():
                continue
            return False
        return True
