"""JSON helpers for record property bags."""

from __future__ import annotations

import json
import logging
import math
from typing import Any

logger = logging.getLogger("medplat.json")


class PropertyJsonTypeError(TypeError):
    """Raised when a property bag holds something JSON cannot carry."""


def _validate(obj: Any, path: str = "$") -> None:
    if isinstance(obj, dict):
        for key, value in obj.items():
            if not isinstance(key, str):
                raise PropertyJsonTypeError(
                    f"Unsupported key type at {path}: {type(key).__name__}"
                )
            _validate(value, f"{path}.{key}")
        return
    if isinstance(obj, (list, tuple)):
        for idx, item in enumerate(obj):
            _validate(item, f"{path}[{idx}]")
        return
    if obj is None or isinstance(obj, (str, int, bool)):
        return
    if isinstance(obj, float):
        if not math.isfinite(obj):
            raise ValueError(f"Non-finite float at {path}: {obj!r}")
        return
    raise PropertyJsonTypeError(
        f"Unsupported type at {path}: {type(obj).__name__}"
    )


def bag_dumps(bag: dict) -> str:
    """Serialize a record property bag for storage.

    Cyrillic labels and values stay literal characters and the output is
    indented so rows remain readable in a database console.
    """
    _validate(bag)
    return json.dumps(bag, ensure_ascii=False, indent=2, allow_nan=False)


def bag_loads(text: str | None) -> dict:
    """Parse a stored property bag; empty or corrupt input yields ``{}``."""
    if not text or not isinstance(text, str) or not text.strip():
        return {}
    try:
        value = json.loads(text)
    except ValueError as exc:
        logger.warning("property_bag_corrupt error=%s", exc)
        return {}
    if not isinstance(value, dict):
        logger.warning("property_bag_not_object type=%s", type(value).__name__)
        return {}
    return value
