"""FastAPI app for the medplat metadata and generic record layer."""

from __future__ import annotations

import os
import sys
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from starlette.datastructures import UploadFile as StarletteUploadFile

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


_load_env_file(ROOT / "app" / ".env")

import logging
import time

from app.attachments import UploadedFile
from app.db import get_db_stats, reset_db_stats
from app.errors import InvalidDefinition, PlatformError, RecordValidationError
from app.metadata import MetadataService
from app.records import RecordService
from app.records_validation import FormSubmission
from app.stores import MemoryGenericRecordStore, MemoryMetadataStore
from app.stores_db import DbGenericRecordStore, DbMetadataStore, ensure_schema


app = FastAPI(title="medplat")
logger = logging.getLogger("medplat")
logging.basicConfig(level=logging.INFO)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


USE_DB = os.getenv("USE_DB", "").strip() == "1"
APP_ENV = os.getenv("APP_ENV", os.getenv("ENV", "dev")).strip().lower() or "dev"
IS_DEV = APP_ENV == "dev"
REQ_SLOW_MS = float(os.getenv("MEDPLAT_REQ_SLOW_MS", "250"))
VERSION_FIELD = "_version"

if USE_DB:
    ensure_schema()
    metadata_store = DbMetadataStore()
    generic_records = DbGenericRecordStore()
else:
    metadata_store = MemoryMetadataStore()
    generic_records = MemoryGenericRecordStore()

metadata_service = MetadataService(metadata_store, generic_records)
record_service = RecordService(metadata_service, generic_records)

if _env_flag("MEDPLAT_SEED_ON_STARTUP", "1"):
    metadata_service.seed_defaults()
if _env_flag("MEDPLAT_RECONCILE_ON_STARTUP", "1"):
    try:
        record_service.reconcile_staged_records()
    except OSError as exc:
        logger.warning("startup_reconcile_failed error=%s", exc)


@app.middleware("http")
async def timing_middleware(request: Request, call_next):
    reset_db_stats()
    start = time.perf_counter()
    response = await call_next(request)
    total_ms = (time.perf_counter() - start) * 1000
    db_stats = get_db_stats()
    route = request.scope.get("route")
    route_name = getattr(route, "name", None) or "unknown"
    logger.info(
        "%s %s %s route=%s total_ms=%.1f db_ms=%.1f db_q=%s",
        request.method,
        request.url.path,
        response.status_code,
        route_name,
        total_ms,
        db_stats.get("total_ms", 0.0),
        db_stats.get("queries", 0),
    )
    if total_ms >= REQ_SLOW_MS:
        logger.warning(
            "slow_request method=%s path=%s route=%s total_ms=%.1f status=%s",
            request.method,
            request.url.path,
            route_name,
            total_ms,
            response.status_code,
        )
    if IS_DEV:
        response.headers["X-Req-MS"] = f"{total_ms:.1f}"
        response.headers["X-Queries"] = str(db_stats.get("queries", 0))
    return response


def _error_response(code: str, message: str, path: str | None = None, detail: dict | None = None, status: int = 400) -> JSONResponse:
    body = {
        "ok": False,
        "errors": [{"code": code, "message": message, "path": path, "detail": detail}],
        "warnings": [],
    }
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _ok_response(payload: dict, warnings: list | None = None, status: int = 200) -> JSONResponse:
    body = {"ok": True, **payload, "errors": [], "warnings": warnings or []}
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _validation_response(errors: list[dict], status: int = 400) -> JSONResponse:
    body = {"ok": False, "errors": errors, "warnings": []}
    return JSONResponse(jsonable_encoder(body), status_code=status)


@app.exception_handler(PlatformError)
async def platform_error_handler(request: Request, exc: PlatformError):
    if isinstance(exc, RecordValidationError):
        return _validation_response(exc.errors, status=exc.status)
    return _error_response(exc.code, exc.message, exc.path, exc.detail, status=exc.status)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error method=%s path=%s", request.method, request.url.path)
    return _error_response("INTERNAL_ERROR", "Unexpected server error", detail={"error": str(exc)}, status=500)


async def _safe_json(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


async def _read_submission(request: Request) -> tuple[FormSubmission, int | None]:
    form = await request.form()
    pairs = []
    version: int | None = None
    for key, value in form.multi_items():
        if key == VERSION_FIELD:
            text = str(value).strip()
            if text:
                try:
                    version = int(text)
                except ValueError as exc:
                    raise InvalidDefinition("Version must be an integer", VERSION_FIELD) from exc
            continue
        if isinstance(value, StarletteUploadFile):
            data = await value.read()
            pairs.append((key, UploadedFile(value.filename or "", data, value.content_type)))
        else:
            pairs.append((key, value))
    return FormSubmission.from_pairs(pairs), version


def _truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes")


@app.get("/health")
async def health() -> dict:
    return {"ok": True}


# ---- Categories ----


@app.get("/categories")
async def list_categories() -> JSONResponse:
    return _ok_response({"categories": metadata_service.list_categories()})


@app.post("/categories")
async def create_category(request: Request) -> JSONResponse:
    body = await _safe_json(request)
    category = metadata_service.create_category(body)
    return _ok_response({"category": category}, status=201)


@app.get("/categories/{category_id}")
async def get_category(category_id: str) -> JSONResponse:
    return _ok_response({"category": metadata_service.get_category(category_id)})


@app.put("/categories/{category_id}")
async def update_category(category_id: str, request: Request) -> JSONResponse:
    body = await _safe_json(request)
    return _ok_response({"category": metadata_service.update_category(category_id, body)})


@app.delete("/categories/{category_id}")
async def delete_category(category_id: str) -> JSONResponse:
    metadata_service.delete_category(category_id)
    return _ok_response({"category_id": category_id})


# ---- Entity definitions ----


@app.get("/definitions")
async def list_definitions() -> JSONResponse:
    return _ok_response({"definitions": metadata_service.list_definitions()})


@app.post("/definitions")
async def create_definition(request: Request) -> JSONResponse:
    body = await _safe_json(request)
    definition = metadata_service.create_definition(body)
    return _ok_response({"definition": definition}, status=201)


@app.get("/definitions/{definition_id}")
async def get_definition(definition_id: str) -> JSONResponse:
    return _ok_response({"definition": metadata_service.get_definition(definition_id)})


@app.put("/definitions/{definition_id}")
async def update_definition(definition_id: str, request: Request) -> JSONResponse:
    body = await _safe_json(request)
    return _ok_response({"definition": metadata_service.update_definition(definition_id, body)})


@app.delete("/definitions/{definition_id}")
async def delete_definition(definition_id: str) -> JSONResponse:
    metadata_service.delete_definition(definition_id)
    return _ok_response({"definition_id": definition_id})


@app.get("/definitions/{definition_id}/fields")
async def list_fields(definition_id: str) -> JSONResponse:
    return _ok_response({"fields": metadata_service.list_fields(definition_id)})


@app.post("/definitions/{definition_id}/fields")
async def add_field(definition_id: str, request: Request) -> JSONResponse:
    body = await _safe_json(request)
    field = metadata_service.add_field(definition_id, body)
    return _ok_response({"field": field}, status=201)


@app.delete("/definitions/{definition_id}/fields/{field_id}")
async def remove_field(definition_id: str, field_id: str, purge: str | None = None) -> JSONResponse:
    result = metadata_service.remove_field(definition_id, field_id, purge=_truthy(purge))
    return _ok_response(result)


# ---- Generic records ----


@app.get("/data/{entity_code}")
async def entity_data(entity_code: str) -> JSONResponse:
    definition = metadata_service.get_definition_by_code(entity_code)
    records = record_service.list(entity_code)
    return _ok_response({"definition": definition, "fields": definition["fields"], "records": records})


@app.post("/records/{entity_code}")
async def create_record(entity_code: str, request: Request) -> JSONResponse:
    form, _ = await _read_submission(request)
    record = record_service.create(entity_code, form)
    return _ok_response({"record": record}, status=201)


@app.get("/records/{entity_code}/{record_id}")
async def get_record(entity_code: str, record_id: str) -> JSONResponse:
    return _ok_response({"record": record_service.get(record_id, entity_code=entity_code)})


@app.put("/records/{entity_code}/{record_id}")
async def update_record(entity_code: str, record_id: str, request: Request) -> JSONResponse:
    form, version = await _read_submission(request)
    record = record_service.update(record_id, form, expected_version=version, entity_code=entity_code)
    return _ok_response({"record": record})


@app.delete("/records/{entity_code}/{record_id}")
async def delete_record(entity_code: str, record_id: str) -> JSONResponse:
    record_service.delete(record_id, entity_code=entity_code)
    return _ok_response({"record_id": record_id})


# ---- Ops ----


@app.post("/ops/uploads/reconcile")
async def reconcile_uploads(request: Request) -> JSONResponse:
    body = await _safe_json(request)
    max_age = body.get("max_age_hours")
    try:
        max_age_hours = float(max_age) if max_age is not None else None
    except (TypeError, ValueError):
        return _error_response("INVALID_MAX_AGE", "max_age_hours must be a number", "max_age_hours")
    return _ok_response(record_service.reconcile_staged_records(max_age_hours))
