"""Create, edit and delete generic records of a dynamic entity.

A submission is coerced against the live field catalog, uploads are staged,
the merged property bag is persisted and staged files are finally moved into
the record's own directory.
"""

from __future__ import annotations

import logging
import os

from app.attachments import (
    TEMP_WEB_MARKER,
    delete_record_files,
    discard_files,
    finalize_paths,
    finalize_properties_json,
    finalize_staged,
    relocate_moved_paths,
    stage_files,
    staged_paths,
    staged_value,
    staging_token,
    sweep_staging,
)
from app.errors import AttachmentIOError, ConcurrencyConflict, NotFound, RecordValidationError
from app.properties import dump_bag, load_bag, merge_bag
from app.records_validation import (
    CoercionResult,
    FormSubmission,
    coerce_submission,
    field_data_type,
    field_label,
    form_key,
    has_stored_value,
    missing_required_issue,
)
from medplat.field_types import FieldDataType, FieldValue

logger = logging.getLogger("medplat.records")


def staging_max_age_hours() -> float:
    return float(os.getenv("MEDPLAT_STAGING_MAX_AGE_HOURS", "24"))


def file_field_keys(fields: list[dict]) -> list[str]:
    return [form_key(f) for f in fields if field_data_type(f) == FieldDataType.FILE]


class RecordService:
    def __init__(self, metadata, records) -> None:
        self._metadata = metadata
        self._records = records

    def _fields(self, entity_code: str) -> list[dict]:
        return self._metadata.catalog.load_fields(entity_code)

    def _get_record(self, record_id: str, entity_code: str | None = None) -> dict:
        record = self._records.get(record_id)
        if not record or (entity_code is not None and record.get("entity_code") != entity_code):
            raise NotFound("Record not found", "record_id")
        return record

    def _prepare(self, fields: list[dict], form: FormSubmission, existing: dict | None) -> tuple[CoercionResult, list[str]]:
        coerced = coerce_submission(fields, form, existing)
        staged_all: list[str] = []
        try:
            for field in fields:
                if field_data_type(field) != FieldDataType.FILE:
                    continue
                key = form_key(field)
                uploads = form.uploads(key)
                if not uploads:
                    if field.get("is_required") and not has_stored_value(existing, key):
                        coerced.errors.append(missing_required_issue(field))
                    continue
                # A scalar field keeps one file; staging the rest would orphan them.
                if not field.get("is_array"):
                    uploads = uploads[:1]
                staged, errors = stage_files(field, uploads)
                staged_all.extend(staged)
                coerced.errors.extend(errors)
                value = staged_value(field, staged)
                if value is not None:
                    coerced.values[key] = value
        except AttachmentIOError:
            discard_files(staged_all)
            raise
        if coerced.errors:
            discard_files(staged_all)
            logger.info(
                "record_rejected fields=%s",
                ",".join(sorted({e.get("path") or "" for e in coerced.errors})),
            )
            raise RecordValidationError(coerced.errors)
        return coerced, staged_all

    def create(self, entity_code: str, form: FormSubmission) -> dict:
        self._metadata.get_definition_by_code(entity_code)
        fields = self._fields(entity_code)
        coerced, staged = self._prepare(fields, form, None)
        try:
            record = self._records.create(entity_code, dump_bag(merge_bag({}, fields, coerced)))
        except Exception:
            discard_files(staged)
            raise
        finalized = finalize_properties_json(
            record.get("properties_json"), entity_code, record["id"], file_field_keys(fields)
        )
        if finalized is not None:
            record = self._records.update(record["id"], finalized, expected_version=record["version"])
        logger.info("record_created entity=%s record_id=%s files=%s", entity_code, record["id"], len(staged))
        return self.render(record, fields)

    def update(
        self,
        record_id: str,
        form: FormSubmission,
        expected_version: int | None = None,
        entity_code: str | None = None,
    ) -> dict:
        """Apply an edit submission to a stored record.

        Keys absent from the form keep their stored value. When
        ``expected_version`` is omitted the version read here guards the write,
        so a concurrent edit between read and write still conflicts.
        """
        existing = self._get_record(record_id, entity_code)
        if expected_version is not None and existing.get("version") != expected_version:
            raise ConcurrencyConflict(
                "Record was changed by another request",
                "record_id",
                {"expected_version": expected_version, "current_version": existing.get("version")},
            )
        code = existing["entity_code"]
        fields = self._fields(code)
        stored = load_bag(existing.get("properties_json"))
        coerced, staged = self._prepare(fields, form, stored)
        merged = merge_bag(stored, fields, coerced)
        merged, moves = finalize_staged(merged, code, record_id, file_field_keys(fields))
        # Only this submission's uploads; stored temp paths belong to the stored row.
        submitted = [moves.get(path, path) for path in staged]
        try:
            record = self._records.update(record_id, dump_bag(merged), expected_version=existing["version"])
        except (ConcurrencyConflict, NotFound):
            discard_files(submitted)
            if self._records.get(record_id) is None:
                logger.info("record_vanished entity=%s record_id=%s", code, record_id)
                raise NotFound("Record not found", "record_id")
            logger.info("record_conflict entity=%s record_id=%s", code, record_id)
            raise
        logger.info("record_updated entity=%s record_id=%s version=%s", code, record_id, record.get("version"))
        return self.render(record, fields)

    def delete(self, record_id: str, entity_code: str | None = None) -> None:
        record = self._get_record(record_id, entity_code)
        if not self._records.delete(record_id):
            raise NotFound("Record not found", "record_id")
        delete_record_files(record["entity_code"], record_id)
        logger.info("record_deleted entity=%s record_id=%s", record["entity_code"], record_id)

    def get(self, record_id: str, entity_code: str | None = None) -> dict:
        record = self._get_record(record_id, entity_code)
        return self.render(record, self._fields(record["entity_code"]))

    def list(self, entity_code: str) -> list[dict]:
        self._metadata.get_definition_by_code(entity_code)
        fields = self._fields(entity_code)
        return [self.render(r, fields) for r in self._records.list(entity_code)]

    def render(self, record: dict, fields: list[dict]) -> dict:
        bag = load_bag(record.get("properties_json"))
        values = []
        for field in fields:
            key = form_key(field)
            raw = bag.get(key)
            values.append(
                {
                    "system_name": key,
                    "label": field_label(field),
                    "data_type": field_data_type(field).value,
                    "is_array": bool(field.get("is_array")),
                    "value": FieldValue.from_json(raw).to_json() if key in bag else None,
                }
            )
        return {
            "id": record["id"],
            "entity_code": record["entity_code"],
            "created_at": record.get("created_at"),
            "updated_at": record.get("updated_at"),
            "version": record.get("version"),
            "properties": bag,
            "values": values,
        }

    def reconcile_staged_records(self, max_age_hours: float | None = None) -> dict:
        """Repair records still pointing at staging paths, then sweep stale staging dirs."""
        if max_age_hours is None:
            max_age_hours = staging_max_age_hours()
        repaired = 0
        referenced: set[str] = set()
        keys_by_entity: dict[str, list[str]] = {}
        for record in self._records.list_referencing(TEMP_WEB_MARKER):
            code = record["entity_code"]
            if code not in keys_by_entity:
                keys_by_entity[code] = file_field_keys(self._fields(code))
            keys = keys_by_entity[code]
            bag = load_bag(record.get("properties_json"))
            bag, relocated = relocate_moved_paths(bag, code, record["id"], keys)
            bag, finalized = finalize_paths(bag, code, record["id"], keys)
            if relocated or finalized:
                try:
                    self._records.update(record["id"], dump_bag(bag), expected_version=record.get("version"))
                    repaired += 1
                except (ConcurrencyConflict, NotFound) as exc:
                    logger.warning("reconcile_skipped record_id=%s error=%s", record["id"], exc.message)
            for path in staged_paths(bag):
                token = staging_token(path)
                if token:
                    referenced.add(token)
        swept = sweep_staging(referenced, max_age_hours)
        logger.info("staging_reconciled repaired=%s swept=%s", repaired, swept)
        return {"repaired": repaired, "swept": swept}
