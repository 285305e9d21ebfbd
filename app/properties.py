"""Per-record JSON property bag: load, merge with a submission, serialize."""

from __future__ import annotations

from app.records_validation import CoercionResult, form_key
from medplat.property_json import bag_dumps, bag_loads
from medplat.field_types import FieldValue


def load_bag(properties_json: str | None) -> dict:
    return bag_loads(properties_json)


def dump_bag(bag: dict) -> str:
    return bag_dumps(bag)


def decode_bag(properties_json: str | None) -> dict[str, FieldValue]:
    return {key: FieldValue.from_json(raw) for key, raw in load_bag(properties_json).items()}


def merge_bag(existing: dict, fields: list[dict], coerced: CoercionResult) -> dict:
    """Apply supplied and cleared values for the catalog's fields.

    Keys that no current field definition names are carried over as-is.
    """
    merged = dict(existing)
    for field in fields:
        key = form_key(field)
        if key in coerced.values:
            merged[key] = coerced.values[key].to_json()
        elif key in coerced.cleared:
            merged.pop(key, None)
    return merged


def merge_properties(existing_json: str | None, fields: list[dict], coerced: CoercionResult) -> str:
    return dump_bag(merge_bag(load_bag(existing_json), fields, coerced))
