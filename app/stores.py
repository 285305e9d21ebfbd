"""In-memory metadata and generic record stores (USE_DB=0)."""

from __future__ import annotations

import copy
import uuid
from datetime import datetime, timezone
from typing import Dict

from app.errors import ConcurrencyConflict, NotFound


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class MemoryMetadataStore:
    def __init__(self) -> None:
        self._categories: Dict[str, dict] = {}
        self._definitions: Dict[str, dict] = {}
        self._fields: Dict[str, dict] = {}

    # categories

    def count_categories(self) -> int:
        return len(self._categories)

    def list_categories(self) -> list[dict]:
        items = sorted(self._categories.values(), key=lambda c: (c.get("sort_order") or 0, c.get("name") or ""))
        return [copy.deepcopy(c) for c in items]

    def get_category(self, category_id: str) -> dict | None:
        item = self._categories.get(category_id)
        return copy.deepcopy(item) if item else None

    def find_category_by_name(self, name: str) -> dict | None:
        for item in self._categories.values():
            if item.get("name") == name:
                return copy.deepcopy(item)
        return None

    def create_category(self, values: dict) -> dict:
        category = {
            "id": str(uuid.uuid4()),
            "name": values.get("name"),
            "icon": values.get("icon") or "folder",
            "sort_order": int(values.get("sort_order") or 0),
        }
        self._categories[category["id"]] = category
        return copy.deepcopy(category)

    def update_category(self, category_id: str, changes: dict) -> dict | None:
        item = self._categories.get(category_id)
        if item is None:
            return None
        item.update(copy.deepcopy(changes))
        return copy.deepcopy(item)

    def delete_category(self, category_id: str) -> bool:
        if category_id not in self._categories:
            return False
        del self._categories[category_id]
        for definition in self._definitions.values():
            if definition.get("category_id") == category_id:
                definition["category_id"] = None
        return True

    # entity definitions

    def count_definitions(self) -> int:
        return len(self._definitions)

    def list_definitions(self) -> list[dict]:
        items = sorted(self._definitions.values(), key=lambda d: (not d.get("is_system"), d.get("name") or ""))
        return [copy.deepcopy(d) for d in items]

    def get_definition(self, definition_id: str) -> dict | None:
        item = self._definitions.get(definition_id)
        return copy.deepcopy(item) if item else None

    def get_definition_by_code(self, entity_code: str) -> dict | None:
        for item in self._definitions.values():
            if item.get("entity_code") == entity_code:
                return copy.deepcopy(item)
        return None

    def create_definition(self, values: dict) -> dict:
        definition = {
            "id": str(uuid.uuid4()),
            "name": values.get("name"),
            "entity_code": values.get("entity_code"),
            "description": values.get("description"),
            "icon": values.get("icon") or "gear",
            "is_system": bool(values.get("is_system")),
            "category_id": values.get("category_id"),
        }
        self._definitions[definition["id"]] = definition
        return copy.deepcopy(definition)

    def update_definition(self, definition_id: str, changes: dict) -> dict | None:
        item = self._definitions.get(definition_id)
        if item is None:
            return None
        item.update(copy.deepcopy(changes))
        return copy.deepcopy(item)

    def delete_definition(self, definition_id: str) -> bool:
        if definition_id not in self._definitions:
            return False
        del self._definitions[definition_id]
        for field_id in [fid for fid, f in self._fields.items() if f.get("entity_definition_id") == definition_id]:
            del self._fields[field_id]
        return True

    # field definitions

    def list_fields(self, definition_id: str) -> list[dict]:
        items = [f for f in self._fields.values() if f.get("entity_definition_id") == definition_id]
        items.sort(key=lambda f: f.get("sort_order") or 0)
        return [copy.deepcopy(f) for f in items]

    def list_fields_by_code(self, entity_code: str) -> list[dict]:
        definition = self.get_definition_by_code(entity_code)
        if not definition:
            return []
        return self.list_fields(definition["id"])

    def count_fields(self, definition_id: str) -> int:
        return sum(1 for f in self._fields.values() if f.get("entity_definition_id") == definition_id)

    def get_field(self, field_id: str) -> dict | None:
        item = self._fields.get(field_id)
        return copy.deepcopy(item) if item else None

    def create_field(self, values: dict) -> dict:
        field = {
            "id": str(uuid.uuid4()),
            "entity_definition_id": values.get("entity_definition_id"),
            "system_name": values.get("system_name"),
            "label": values.get("label"),
            "data_type": values.get("data_type"),
            "is_required": bool(values.get("is_required")),
            "is_array": bool(values.get("is_array")),
            "sort_order": int(values.get("sort_order") or 0),
        }
        self._fields[field["id"]] = field
        return copy.deepcopy(field)

    def delete_field(self, field_id: str) -> bool:
        if field_id not in self._fields:
            return False
        del self._fields[field_id]
        return True


class MemoryGenericRecordStore:
    def __init__(self) -> None:
        self._records: Dict[str, dict] = {}

    def create(self, entity_code: str, properties_json: str | None) -> dict:
        now = _now()
        record = {
            "id": str(uuid.uuid4()),
            "entity_code": entity_code,
            "created_at": now,
            "updated_at": now,
            "properties_json": properties_json,
            "version": 1,
        }
        self._records[record["id"]] = record
        return copy.deepcopy(record)

    def update(self, record_id: str, properties_json: str | None, expected_version: int | None = None) -> dict:
        record = self._records.get(record_id)
        if record is None:
            raise NotFound("Record not found", "record_id")
        if expected_version is not None and record["version"] != expected_version:
            raise ConcurrencyConflict(
                "Record was changed by another request",
                "record_id",
                {"expected_version": expected_version, "current_version": record["version"]},
            )
        record["properties_json"] = properties_json
        record["updated_at"] = _now()
        record["version"] += 1
        return copy.deepcopy(record)

    def get(self, record_id: str) -> dict | None:
        record = self._records.get(record_id)
        return copy.deepcopy(record) if record else None

    def list(self, entity_code: str) -> list[dict]:
        items = [r for r in reversed(list(self._records.values())) if r.get("entity_code") == entity_code]
        items.sort(key=lambda r: r.get("created_at") or "", reverse=True)
        return [copy.deepcopy(r) for r in items]

    def count(self, entity_code: str) -> int:
        return sum(1 for r in self._records.values() if r.get("entity_code") == entity_code)

    def list_referencing(self, fragment: str) -> list[dict]:
        return [copy.deepcopy(r) for r in self._records.values() if fragment in (r.get("properties_json") or "")]

    def delete(self, record_id: str) -> bool:
        if record_id not in self._records:
            return False
        del self._records[record_id]
        return True
