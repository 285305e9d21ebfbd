"""Form value coercion for generic records."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field as dc_field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Iterable

from dateutil import parser as date_parser

from app.attachments import UploadedFile
from app.errors import InvalidFieldValue, issue
from medplat.field_types import FieldDataType, FieldValue, TypedValue, ValueKind

_DECIMAL_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)$")


@dataclass
class FormSubmission:
    """Named scalar values and file attachments; array fields repeat their key."""

    values: dict[str, list[str]] = dc_field(default_factory=dict)
    files: dict[str, list[UploadedFile]] = dc_field(default_factory=dict)

    @classmethod
    def from_pairs(cls, pairs: Iterable[tuple[str, Any]]) -> "FormSubmission":
        form = cls()
        for key, value in pairs:
            if isinstance(value, UploadedFile):
                form.files.setdefault(key, []).append(value)
            else:
                form.values.setdefault(key, []).append("" if value is None else str(value))
        return form

    def uploads(self, key: str) -> list[UploadedFile]:
        return [f for f in self.files.get(key, []) if f.filename]


@dataclass
class CoercionResult:
    values: dict[str, FieldValue] = dc_field(default_factory=dict)
    cleared: set[str] = dc_field(default_factory=set)
    errors: list[dict] = dc_field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def form_key(field: dict) -> str:
    return field.get("system_name") or ""


def field_label(field: dict) -> str:
    return field.get("label") or form_key(field)


def field_data_type(field: dict) -> FieldDataType:
    return FieldDataType.parse(field.get("data_type")) or FieldDataType.TEXT


def _dayfirst() -> bool:
    return os.getenv("MEDPLAT_DATE_DAYFIRST", "1").strip().lower() in ("1", "true", "yes")


def _invalid(field: dict, raw: str, expected: str) -> InvalidFieldValue:
    key = form_key(field)
    return InvalidFieldValue(
        f"Value '{raw}' for field '{field_label(field)}' ({key}) is not a valid {expected}",
        key,
        {"value": raw, "label": field_label(field)},
    )


def _coerce_decimal(field: dict, raw: str) -> TypedValue:
    text = raw.strip().replace(",", ".")
    if not _DECIMAL_RE.match(text):
        raise _invalid(field, raw, "number")
    try:
        return TypedValue(ValueKind.NUMBER, Decimal(text))
    except InvalidOperation as exc:
        raise _invalid(field, raw, "number") from exc


def _parse_datetime(field: dict, raw: str) -> datetime:
    text = raw.strip()
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        pass
    try:
        return date_parser.parse(text, dayfirst=_dayfirst())
    except (ValueError, OverflowError) as exc:
        raise _invalid(field, raw, "date") from exc


def _coerce_date(field: dict, raw: str) -> TypedValue:
    return TypedValue(ValueKind.DATE, _parse_datetime(field, raw).date())


def _coerce_datetime(field: dict, raw: str) -> TypedValue:
    return TypedValue(ValueKind.DATETIME, _parse_datetime(field, raw))


def _coerce_bool(field: dict, raw: str) -> TypedValue:
    return TypedValue(ValueKind.BOOL, "true" in (raw or "").lower())


def _coerce_text(field: dict, raw: str) -> TypedValue:
    return TypedValue(ValueKind.TEXT, raw)


_COERCERS: dict[FieldDataType, Callable[[dict, str], TypedValue]] = {
    FieldDataType.TEXT: _coerce_text,
    FieldDataType.NUMBER: _coerce_decimal,
    FieldDataType.MONEY: _coerce_decimal,
    FieldDataType.DATE: _coerce_date,
    FieldDataType.DATETIME: _coerce_datetime,
    FieldDataType.BOOLEAN: _coerce_bool,
}


def coerce(field: dict, raw: str) -> TypedValue:
    """Convert one raw form value per the field's data type.

    Raises ``InvalidFieldValue`` naming the raw value, label and form key.
    File fields are not coerced here.
    """
    dtype = field_data_type(field)
    if dtype == FieldDataType.FILE:
        raise ValueError("file fields are handled by staging")
    return _COERCERS.get(dtype, _coerce_text)(field, raw)


def coerce_many(field: dict, raws: Iterable[str]) -> list[TypedValue]:
    return [coerce(field, raw) for raw in raws]


def _is_blank(raw: str | None) -> bool:
    return raw is None or not raw.strip()


def missing_required_issue(field: dict) -> dict:
    key = form_key(field)
    return issue(
        "MISSING_REQUIRED_FIELD",
        f"Field '{field_label(field)}' ({key}) is required",
        key,
        {"label": field_label(field)},
    )


def has_stored_value(existing: dict | None, key: str) -> bool:
    if not isinstance(existing, dict) or key not in existing:
        return False
    return not FieldValue.from_json(existing[key]).is_empty()


def coerce_submission(fields: list[dict], form: FormSubmission, existing: dict | None = None) -> CoercionResult:
    """Coerce every non-file field of a submission, accumulating all errors.

    ``existing`` is the stored bag of the record being edited; a required
    field whose key is absent from the form is satisfied by a stored value.
    """
    result = CoercionResult()
    for field in fields:
        dtype = field_data_type(field)
        if dtype == FieldDataType.FILE:
            continue
        key = form_key(field)
        raws = form.values.get(key)
        present = raws is not None
        filled = [r for r in raws or [] if not _is_blank(r)]
        if field.get("is_required") and not filled:
            if not present and has_stored_value(existing, key):
                continue
            result.errors.append(missing_required_issue(field))
            continue
        if not present:
            continue
        if dtype == FieldDataType.BOOLEAN:
            if field.get("is_array"):
                result.values[key] = FieldValue.array(coerce_many(field, raws))
            else:
                result.values[key] = FieldValue.scalar(coerce(field, ",".join(raws)))
            continue
        if not filled:
            result.cleared.add(key)
            continue
        try:
            if field.get("is_array"):
                result.values[key] = FieldValue.array(coerce_many(field, filled))
            else:
                result.values[key] = FieldValue.scalar(coerce(field, filled[0]))
        except InvalidFieldValue as exc:
            result.errors.append(exc.to_issue())
    return result
