"""DB-backed metadata and generic record stores (USE_DB=1)."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

import psycopg2.errors

from app.db import execute, fetch_all, fetch_one, get_conn
from app.errors import ConcurrencyConflict, DuplicateEntityCode, DuplicateField, NotFound

logger = logging.getLogger("medplat.db")

_SCHEMA_STATEMENTS = [
    (
        "app_categories.create",
        """
        create table if not exists app_categories (
          id text primary key,
          name text not null,
          icon text not null default 'folder',
          sort_order integer not null default 0
        )
        """,
    ),
    (
        "app_definitions.create",
        """
        create table if not exists app_definitions (
          id text primary key,
          name text not null,
          entity_code text not null unique,
          description text null,
          icon text not null default 'gear',
          is_system boolean not null default false,
          category_id text null references app_categories(id) on delete set null
        )
        """,
    ),
    (
        "app_field_definitions.create",
        """
        create table if not exists app_field_definitions (
          id text primary key,
          entity_definition_id text not null references app_definitions(id) on delete cascade,
          system_name text not null,
          label text not null,
          data_type text not null,
          is_required boolean not null default false,
          is_array boolean not null default false,
          sort_order integer not null default 0,
          unique (entity_definition_id, system_name)
        )
        """,
    ),
    (
        "generic_objects.create",
        """
        create table if not exists generic_objects (
          id text primary key,
          entity_code text not null,
          created_at timestamptz not null,
          updated_at timestamptz not null,
          properties_json text null,
          version integer not null default 1
        )
        """,
    ),
    (
        "generic_objects.ensure_entity_idx",
        "create index if not exists generic_objects_entity_created_idx on generic_objects (entity_code, created_at desc)",
    ),
]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(value):
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    return value


def ensure_schema() -> None:
    with get_conn() as conn:
        for query_name, sql in _SCHEMA_STATEMENTS:
            execute(conn, sql, query_name=query_name)
    logger.info("schema_ensured tables=%s", ["app_categories", "app_definitions", "app_field_definitions", "generic_objects"])


def _record_from_row(row: dict) -> dict:
    return {
        "id": row["id"],
        "entity_code": row["entity_code"],
        "created_at": _to_iso(row.get("created_at")),
        "updated_at": _to_iso(row.get("updated_at")),
        "properties_json": row.get("properties_json"),
        "version": row.get("version"),
    }


_RECORD_COLUMNS = "id, entity_code, created_at, updated_at, properties_json, version"
_DEFINITION_COLUMNS = "id, name, entity_code, description, icon, is_system, category_id"
_FIELD_COLUMNS = "id, entity_definition_id, system_name, label, data_type, is_required, is_array, sort_order"


class DbMetadataStore:
    # categories

    def count_categories(self) -> int:
        with get_conn() as conn:
            row = fetch_one(conn, "select count(*) as n from app_categories", query_name="app_categories.count")
        return int(row["n"]) if row else 0

    def list_categories(self) -> list[dict]:
        with get_conn() as conn:
            return fetch_all(
                conn,
                "select id, name, icon, sort_order from app_categories order by sort_order, name",
                query_name="app_categories.list",
            )

    def get_category(self, category_id: str) -> dict | None:
        with get_conn() as conn:
            return fetch_one(
                conn,
                "select id, name, icon, sort_order from app_categories where id=%s",
                [category_id],
                query_name="app_categories.get",
            )

    def find_category_by_name(self, name: str) -> dict | None:
        with get_conn() as conn:
            return fetch_one(
                conn,
                "select id, name, icon, sort_order from app_categories where name=%s order by sort_order limit 1",
                [name],
                query_name="app_categories.find_by_name",
            )

    def create_category(self, values: dict) -> dict:
        with get_conn() as conn:
            return fetch_one(
                conn,
                """
                insert into app_categories (id, name, icon, sort_order)
                values (%s,%s,%s,%s)
                returning id, name, icon, sort_order
                """,
                [str(uuid.uuid4()), values.get("name"), values.get("icon") or "folder", int(values.get("sort_order") or 0)],
                query_name="app_categories.insert",
            )

    def update_category(self, category_id: str, changes: dict) -> dict | None:
        current = self.get_category(category_id)
        if current is None:
            return None
        current.update(changes)
        with get_conn() as conn:
            return fetch_one(
                conn,
                """
                update app_categories set name=%s, icon=%s, sort_order=%s
                where id=%s
                returning id, name, icon, sort_order
                """,
                [current.get("name"), current.get("icon"), int(current.get("sort_order") or 0), category_id],
                query_name="app_categories.update",
            )

    def delete_category(self, category_id: str) -> bool:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "delete from app_categories where id=%s returning id",
                [category_id],
                query_name="app_categories.delete",
            )
        return bool(row)

    # entity definitions

    def count_definitions(self) -> int:
        with get_conn() as conn:
            row = fetch_one(conn, "select count(*) as n from app_definitions", query_name="app_definitions.count")
        return int(row["n"]) if row else 0

    def list_definitions(self) -> list[dict]:
        with get_conn() as conn:
            return fetch_all(
                conn,
                f"select {_DEFINITION_COLUMNS} from app_definitions order by is_system desc, name",
                query_name="app_definitions.list",
            )

    def get_definition(self, definition_id: str) -> dict | None:
        with get_conn() as conn:
            return fetch_one(
                conn,
                f"select {_DEFINITION_COLUMNS} from app_definitions where id=%s",
                [definition_id],
                query_name="app_definitions.get",
            )

    def get_definition_by_code(self, entity_code: str) -> dict | None:
        with get_conn() as conn:
            return fetch_one(
                conn,
                f"select {_DEFINITION_COLUMNS} from app_definitions where entity_code=%s",
                [entity_code],
                query_name="app_definitions.get_by_code",
            )

    def create_definition(self, values: dict) -> dict:
        try:
            with get_conn() as conn:
                return fetch_one(
                    conn,
                    f"""
                    insert into app_definitions ({_DEFINITION_COLUMNS})
                    values (%s,%s,%s,%s,%s,%s,%s)
                    returning {_DEFINITION_COLUMNS}
                    """,
                    [
                        str(uuid.uuid4()),
                        values.get("name"),
                        values.get("entity_code"),
                        values.get("description"),
                        values.get("icon") or "gear",
                        bool(values.get("is_system")),
                        values.get("category_id"),
                    ],
                    query_name="app_definitions.insert",
                )
        except psycopg2.errors.UniqueViolation as exc:
            raise DuplicateEntityCode("Entity with this code already exists", "entity_code") from exc

    def update_definition(self, definition_id: str, changes: dict) -> dict | None:
        current = self.get_definition(definition_id)
        if current is None:
            return None
        current.update(changes)
        with get_conn() as conn:
            return fetch_one(
                conn,
                f"""
                update app_definitions
                set name=%s, description=%s, icon=%s, category_id=%s
                where id=%s
                returning {_DEFINITION_COLUMNS}
                """,
                [current.get("name"), current.get("description"), current.get("icon"), current.get("category_id"), definition_id],
                query_name="app_definitions.update",
            )

    def delete_definition(self, definition_id: str) -> bool:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "delete from app_definitions where id=%s returning id",
                [definition_id],
                query_name="app_definitions.delete",
            )
        return bool(row)

    # field definitions

    def list_fields(self, definition_id: str) -> list[dict]:
        with get_conn() as conn:
            return fetch_all(
                conn,
                f"select {_FIELD_COLUMNS} from app_field_definitions where entity_definition_id=%s order by sort_order",
                [definition_id],
                query_name="app_field_definitions.list",
            )

    def list_fields_by_code(self, entity_code: str) -> list[dict]:
        with get_conn() as conn:
            return fetch_all(
                conn,
                """
                select f.id, f.entity_definition_id, f.system_name, f.label, f.data_type,
                       f.is_required, f.is_array, f.sort_order
                from app_field_definitions f
                join app_definitions d on d.id = f.entity_definition_id
                where d.entity_code=%s
                order by f.sort_order
                """,
                [entity_code],
                query_name="app_field_definitions.list_by_code",
            )

    def count_fields(self, definition_id: str) -> int:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "select count(*) as n from app_field_definitions where entity_definition_id=%s",
                [definition_id],
                query_name="app_field_definitions.count",
            )
        return int(row["n"]) if row else 0

    def get_field(self, field_id: str) -> dict | None:
        with get_conn() as conn:
            return fetch_one(
                conn,
                f"select {_FIELD_COLUMNS} from app_field_definitions where id=%s",
                [field_id],
                query_name="app_field_definitions.get",
            )

    def create_field(self, values: dict) -> dict:
        try:
            with get_conn() as conn:
                return fetch_one(
                    conn,
                    f"""
                    insert into app_field_definitions ({_FIELD_COLUMNS})
                    values (%s,%s,%s,%s,%s,%s,%s,%s)
                    returning {_FIELD_COLUMNS}
                    """,
                    [
                        str(uuid.uuid4()),
                        values.get("entity_definition_id"),
                        values.get("system_name"),
                        values.get("label"),
                        values.get("data_type"),
                        bool(values.get("is_required")),
                        bool(values.get("is_array")),
                        int(values.get("sort_order") or 0),
                    ],
                    query_name="app_field_definitions.insert",
                )
        except psycopg2.errors.UniqueViolation as exc:
            raise DuplicateField("Field with this system name already exists", "system_name") from exc

    def delete_field(self, field_id: str) -> bool:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "delete from app_field_definitions where id=%s returning id",
                [field_id],
                query_name="app_field_definitions.delete",
            )
        return bool(row)


class DbGenericRecordStore:
    def create(self, entity_code: str, properties_json: str | None) -> dict:
        now = _now()
        with get_conn() as conn:
            row = fetch_one(
                conn,
                f"""
                insert into generic_objects ({_RECORD_COLUMNS})
                values (%s,%s,%s,%s,%s,1)
                returning {_RECORD_COLUMNS}
                """,
                [str(uuid.uuid4()), entity_code, now, now, properties_json],
                query_name="generic_objects.insert",
            )
        return _record_from_row(row)

    def update(self, record_id: str, properties_json: str | None, expected_version: int | None = None) -> dict:
        where = "where id=%s"
        params: list = [properties_json, _now(), record_id]
        if expected_version is not None:
            where += " and version=%s"
            params.append(expected_version)
        with get_conn() as conn:
            row = fetch_one(
                conn,
                f"""
                update generic_objects
                set properties_json=%s, updated_at=%s, version=version + 1
                {where}
                returning {_RECORD_COLUMNS}
                """,
                params,
                query_name="generic_objects.update",
            )
            if row:
                return _record_from_row(row)
            current = fetch_one(
                conn,
                "select version from generic_objects where id=%s",
                [record_id],
                query_name="generic_objects.version",
            )
        if not current:
            raise NotFound("Record not found", "record_id")
        raise ConcurrencyConflict(
            "Record was changed by another request",
            "record_id",
            {"expected_version": expected_version, "current_version": current.get("version")},
        )

    def get(self, record_id: str) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                f"select {_RECORD_COLUMNS} from generic_objects where id=%s",
                [record_id],
                query_name="generic_objects.get",
            )
        return _record_from_row(row) if row else None

    def list(self, entity_code: str) -> list[dict]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                f"select {_RECORD_COLUMNS} from generic_objects where entity_code=%s order by created_at desc",
                [entity_code],
                query_name="generic_objects.list",
            )
        return [_record_from_row(r) for r in rows]

    def count(self, entity_code: str) -> int:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "select count(*) as n from generic_objects where entity_code=%s",
                [entity_code],
                query_name="generic_objects.count",
            )
        return int(row["n"]) if row else 0

    def list_referencing(self, fragment: str) -> list[dict]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                f"select {_RECORD_COLUMNS} from generic_objects where strpos(properties_json, %s) > 0",
                [fragment],
                query_name="generic_objects.list_referencing",
            )
        return [_record_from_row(r) for r in rows]

    def delete(self, record_id: str) -> bool:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "delete from generic_objects where id=%s returning id",
                [record_id],
                query_name="generic_objects.delete",
            )
        return bool(row)
