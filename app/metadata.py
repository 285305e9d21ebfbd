"""Entity definitions, their field catalogs and grouping categories."""

from __future__ import annotations

import logging
import re

from app.errors import (
    DuplicateEntityCode,
    DuplicateField,
    EntityInUse,
    FieldInUse,
    InvalidDefinition,
    NotFound,
    SystemEntityProtected,
)
from app.properties import dump_bag, load_bag
from app.records_validation import has_stored_value
from medplat.field_types import FieldDataType

logger = logging.getLogger("medplat.metadata")

_ENTITY_CODE_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_-]*$")

DEFAULT_CATEGORIES = [
    {"name": "Компания", "icon": "building", "sort_order": 1},
    {"name": "Пациенты", "icon": "people", "sort_order": 2},
    {"name": "Справочники", "icon": "book", "sort_order": 3},
    {"name": "Конструктор", "icon": "tools", "sort_order": 4},
]

SYSTEM_DEFINITIONS = [
    {"name": "Сотрудники", "entity_code": "Employee", "icon": "person-badge", "category": "Компания"},
    {"name": "Пациенты", "entity_code": "Patient", "icon": "person-heart", "category": "Пациенты"},
    {"name": "Должности", "entity_code": "Position", "icon": "briefcase", "category": "Компания"},
    {"name": "Подразделения", "entity_code": "Department", "icon": "diagram-3", "category": "Компания"},
]


def normalize_system_name(value: str | None) -> str:
    return (value or "").strip().lower()


def _clean_text(value) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _sort_order(value) -> int:
    if value is None or value == "":
        return 0
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise InvalidDefinition("Sort order must be an integer", "sort_order", {"value": str(value)}) from exc


class FieldCatalog:
    """Live field definitions of an entity, ordered by ``sort_order``.

    Nothing is cached. An unknown entity code yields an empty list; callers
    check the code against the metadata service themselves.
    """

    def __init__(self, store) -> None:
        self._store = store

    def load_fields(self, entity_code: str) -> list[dict]:
        return self._store.list_fields_by_code(entity_code)


class MetadataService:
    def __init__(self, store, records=None) -> None:
        self._store = store
        self._records = records
        self.catalog = FieldCatalog(store)

    # categories

    def list_categories(self) -> list[dict]:
        return self._store.list_categories()

    def get_category(self, category_id: str) -> dict:
        category = self._store.get_category(category_id)
        if not category:
            raise NotFound("Category not found", "category_id")
        return category

    def create_category(self, values: dict) -> dict:
        name = _clean_text(values.get("name"))
        if not name:
            raise InvalidDefinition("Category name is required", "name")
        category = self._store.create_category(
            {"name": name, "icon": _clean_text(values.get("icon")) or "folder", "sort_order": _sort_order(values.get("sort_order"))}
        )
        logger.info("category_created id=%s name=%s", category["id"], name)
        return category

    def update_category(self, category_id: str, values: dict) -> dict:
        self.get_category(category_id)
        changes: dict = {}
        if "name" in values:
            name = _clean_text(values.get("name"))
            if not name:
                raise InvalidDefinition("Category name is required", "name")
            changes["name"] = name
        if "icon" in values:
            changes["icon"] = _clean_text(values.get("icon")) or "folder"
        if "sort_order" in values:
            changes["sort_order"] = _sort_order(values.get("sort_order"))
        return self._store.update_category(category_id, changes)

    def delete_category(self, category_id: str) -> None:
        if not self._store.delete_category(category_id):
            raise NotFound("Category not found", "category_id")
        logger.info("category_deleted id=%s", category_id)

    # entity definitions

    def _with_details(self, definition: dict, categories: dict | None = None) -> dict:
        item = dict(definition)
        category_id = item.get("category_id")
        if categories is not None:
            item["category"] = categories.get(category_id)
        else:
            item["category"] = self._store.get_category(category_id) if category_id else None
        item["fields"] = self._store.list_fields(item["id"])
        return item

    def list_definitions(self) -> list[dict]:
        categories = {c["id"]: c for c in self._store.list_categories()}
        return [self._with_details(d, categories) for d in self._store.list_definitions()]

    def get_definition(self, definition_id: str) -> dict:
        definition = self._store.get_definition(definition_id)
        if not definition:
            raise NotFound("Entity definition not found", "definition_id")
        return self._with_details(definition)

    def get_definition_by_code(self, entity_code: str) -> dict:
        definition = self._store.get_definition_by_code(entity_code)
        if not definition:
            raise NotFound("Entity definition not found", "entity_code")
        return self._with_details(definition)

    def _check_category(self, category_id) -> str | None:
        category_id = _clean_text(category_id)
        if category_id and not self._store.get_category(category_id):
            raise InvalidDefinition("Category not found", "category_id")
        return category_id

    def create_definition(self, values: dict) -> dict:
        name = _clean_text(values.get("name"))
        entity_code = _clean_text(values.get("entity_code"))
        if not name:
            raise InvalidDefinition("Name is required", "name")
        if not entity_code:
            raise InvalidDefinition("Entity code is required", "entity_code")
        if not _ENTITY_CODE_RE.match(entity_code):
            raise InvalidDefinition(
                "Entity code must start with a letter and contain only letters, digits, '_' or '-'",
                "entity_code",
            )
        if self._store.get_definition_by_code(entity_code):
            raise DuplicateEntityCode("Entity with this code already exists", "entity_code", {"entity_code": entity_code})
        definition = self._store.create_definition(
            {
                "name": name,
                "entity_code": entity_code,
                "description": _clean_text(values.get("description")),
                "icon": _clean_text(values.get("icon")) or "gear",
                "is_system": bool(values.get("is_system")),
                "category_id": self._check_category(values.get("category_id")),
            }
        )
        logger.info("definition_created id=%s entity_code=%s", definition["id"], entity_code)
        return self._with_details(definition)

    def update_definition(self, definition_id: str, values: dict) -> dict:
        self.get_definition(definition_id)
        if "entity_code" in values:
            raise InvalidDefinition("Entity code cannot be changed", "entity_code")
        changes: dict = {}
        if "name" in values:
            name = _clean_text(values.get("name"))
            if not name:
                raise InvalidDefinition("Name is required", "name")
            changes["name"] = name
        if "description" in values:
            changes["description"] = _clean_text(values.get("description"))
        if "icon" in values:
            changes["icon"] = _clean_text(values.get("icon")) or "gear"
        if "category_id" in values:
            changes["category_id"] = self._check_category(values.get("category_id"))
        return self._with_details(self._store.update_definition(definition_id, changes))

    def delete_definition(self, definition_id: str) -> None:
        definition = self.get_definition(definition_id)
        if definition.get("is_system"):
            raise SystemEntityProtected("System entities cannot be deleted", "definition_id")
        if self._records is not None:
            count = self._records.count(definition["entity_code"])
            if count:
                raise EntityInUse(
                    "Entity still has records",
                    "definition_id",
                    {"entity_code": definition["entity_code"], "records": count},
                )
        self._store.delete_definition(definition_id)
        logger.info("definition_deleted id=%s entity_code=%s", definition_id, definition["entity_code"])

    # field definitions

    def list_fields(self, definition_id: str) -> list[dict]:
        self.get_definition(definition_id)
        return self._store.list_fields(definition_id)

    def add_field(self, definition_id: str, values: dict) -> dict:
        definition = self.get_definition(definition_id)
        system_name = normalize_system_name(values.get("system_name"))
        if not system_name:
            raise InvalidDefinition("System name is required", "system_name")
        data_type = FieldDataType.parse(values.get("data_type") if values.get("data_type") is not None else "Text")
        if data_type is None:
            raise InvalidDefinition(
                f"Unknown data type: {values.get('data_type')}",
                "data_type",
                {"allowed": [t.value for t in FieldDataType]},
            )
        if any(f.get("system_name") == system_name for f in definition["fields"]):
            raise DuplicateField("Field with this system name already exists", "system_name", {"system_name": system_name})
        field = self._store.create_field(
            {
                "entity_definition_id": definition_id,
                "system_name": system_name,
                "label": _clean_text(values.get("label")) or system_name,
                "data_type": data_type.value,
                "is_required": bool(values.get("is_required")),
                "is_array": bool(values.get("is_array")),
                "sort_order": self._store.count_fields(definition_id) + 1,
            }
        )
        logger.info(
            "field_added entity_code=%s system_name=%s data_type=%s sort_order=%s",
            definition["entity_code"],
            system_name,
            data_type.value,
            field["sort_order"],
        )
        return field

    def remove_field(self, definition_id: str, field_id: str, purge: bool = False) -> dict:
        """Delete a field definition.

        Refused with ``FieldInUse`` while stored records still hold a value
        for it, unless ``purge`` is set, in which case the key is stripped
        from every record of the entity first.
        """
        definition = self.get_definition(definition_id)
        field = self._store.get_field(field_id)
        if not field or field.get("entity_definition_id") != definition_id:
            raise NotFound("Field not found", "field_id")
        key = field["system_name"]
        holders: list[tuple[dict, dict]] = []
        if self._records is not None:
            for record in self._records.list(definition["entity_code"]):
                bag = load_bag(record.get("properties_json"))
                if key in bag:
                    holders.append((record, bag))
        in_use = [r for r, bag in holders if has_stored_value(bag, key)]
        if in_use and not purge:
            raise FieldInUse(
                "Records still hold values for this field",
                "field_id",
                {"system_name": key, "records": len(in_use)},
            )
        for record, bag in holders:
            bag.pop(key, None)
            self._records.update(record["id"], dump_bag(bag), expected_version=record.get("version"))
        self._store.delete_field(field_id)
        logger.info(
            "field_removed entity_code=%s system_name=%s purged=%s",
            definition["entity_code"],
            key,
            len(holders),
        )
        return {"field_id": field_id, "purged_records": len(holders)}

    # seeding

    def seed_defaults(self) -> dict:
        """Insert starter categories and system entities when missing; safe on every startup."""
        created_categories = 0
        created_definitions = 0
        if self._store.count_categories() == 0:
            for values in DEFAULT_CATEGORIES:
                self._store.create_category(values)
                created_categories += 1
        if self._store.count_definitions() == 0:
            for values in SYSTEM_DEFINITIONS:
                category = self._store.find_category_by_name(values["category"])
                self._store.create_definition(
                    {
                        "name": values["name"],
                        "entity_code": values["entity_code"],
                        "icon": values["icon"],
                        "is_system": True,
                        "category_id": category["id"] if category else None,
                    }
                )
                created_definitions += 1
        if created_categories or created_definitions:
            logger.info("seeded categories=%s definitions=%s", created_categories, created_definitions)
        return {"categories": created_categories, "definitions": created_definitions}
