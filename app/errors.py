"""Error types raised by the metadata and record services."""

from __future__ import annotations


def issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> dict:
    return {"code": code, "message": message, "path": path, "detail": detail}


class PlatformError(Exception):
    code = "PLATFORM_ERROR"
    status = 400

    def __init__(self, message: str, path: str | None = None, detail: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.path = path
        self.detail = detail

    def to_issue(self) -> dict:
        return issue(self.code, self.message, self.path, self.detail)


class NotFound(PlatformError):
    code = "NOT_FOUND"
    status = 404


class DuplicateEntityCode(PlatformError):
    code = "DUPLICATE_ENTITY_CODE"
    status = 409


class DuplicateField(PlatformError):
    code = "DUPLICATE_FIELD"
    status = 409


class InvalidDefinition(PlatformError):
    code = "INVALID_DEFINITION"


class FieldInUse(PlatformError):
    code = "FIELD_IN_USE"
    status = 409


class EntityInUse(PlatformError):
    code = "ENTITY_IN_USE"
    status = 409


class SystemEntityProtected(PlatformError):
    code = "SYSTEM_ENTITY_PROTECTED"
    status = 403


class ConcurrencyConflict(PlatformError):
    code = "CONCURRENCY_CONFLICT"
    status = 409


class AttachmentIOError(PlatformError):
    code = "IO_FAILURE"
    status = 500


class RecordValidationError(PlatformError):
    """Every field-level problem of one submission."""

    code = "RECORD_INVALID"

    def __init__(self, errors: list[dict], path: str | None = None) -> None:
        super().__init__(f"{len(errors)} field error(s)", path=path)
        self.errors = list(errors)


class InvalidFieldValue(PlatformError):
    code = "INVALID_FIELD_VALUE"
