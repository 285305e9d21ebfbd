"""Two-phase storage for file-valued record fields.

Uploads are first staged under ``uploads/temp/<uuid>/`` and, once the
owning record has an id, moved to ``uploads/<entity_code>/<record_id>/``.
Paths handed to callers are web-relative (``/uploads/...``).
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import time
import uuid
from dataclasses import dataclass
from pathlib import Path, PureWindowsPath
from typing import Any, Iterable

from app.errors import AttachmentIOError, issue
from medplat.property_json import bag_dumps, bag_loads
from medplat.field_types import FieldValue, TypedValue, ValueKind

logger = logging.getLogger("medplat.attachments")

MAX_UPLOAD_BYTES = 20 * 1024 * 1024
UPLOADS_DIR = "uploads"
TEMP_DIR = "temp"
TEMP_WEB_MARKER = f"/{UPLOADS_DIR}/{TEMP_DIR}/"
_STAGED_PATH_RE = re.compile(rf"^/{UPLOADS_DIR}/{TEMP_DIR}/([0-9a-f]{{32}})/([^/\\]+)$")


@dataclass
class UploadedFile:
    filename: str
    data: bytes
    content_type: str | None = None

    @property
    def size(self) -> int:
        return len(self.data)


def _web_root() -> Path:
    root = os.getenv("MEDPLAT_WEB_ROOT", "wwwroot")
    return Path(root)


def uploads_root() -> Path:
    return _web_root() / UPLOADS_DIR


def safe_filename(filename: str | None) -> str:
    # Browsers on Windows may send the full client path.
    name = PureWindowsPath(filename or "").name
    name = Path(name).name.strip()
    if name in ("", ".", ".."):
        return "file"
    return name


def web_to_disk(web_path: str) -> Path:
    """Map a ``/uploads/...`` web path to disk, refusing anything outside the uploads root."""
    parts = web_path.lstrip("/").split("/")
    if len(parts) < 2 or parts[0] != UPLOADS_DIR:
        raise ValueError(f"not an uploads path: {web_path}")
    if any(part in ("", ".", "..") or "\\" in part for part in parts[1:]):
        raise ValueError(f"unsafe uploads path: {web_path}")
    disk = _web_root().joinpath(*parts)
    root = uploads_root().resolve()
    if root not in disk.resolve().parents:
        raise ValueError(f"path escapes uploads root: {web_path}")
    return disk


def is_staged_path(value: Any) -> bool:
    """True only for paths shaped like the ones ``stage_files`` hands out."""
    return staging_token(value) is not None


def record_dir(entity_code: str, record_id: str) -> Path:
    return uploads_root() / entity_code / str(record_id)


def _field_label(field: dict) -> str:
    return field.get("label") or field.get("system_name") or ""


def _write_staged(upload: UploadedFile) -> str:
    token = uuid.uuid4().hex
    folder = uploads_root() / TEMP_DIR / token
    filename = safe_filename(upload.filename)
    folder.mkdir(parents=True, exist_ok=True)
    (folder / filename).write_bytes(upload.data)
    return f"/{UPLOADS_DIR}/{TEMP_DIR}/{token}/{filename}"


def stage_files(field: dict, uploads: Iterable[UploadedFile]) -> tuple[list[str], list[dict]]:
    """Phase 1: store each upload in its own staging directory.

    Oversized files produce a ``FILE_TOO_LARGE`` issue and are skipped while
    the rest of the batch is still staged. Any other I/O failure is fatal:
    files staged so far are discarded and ``AttachmentIOError`` is raised.
    """
    staged: list[str] = []
    errors: list[dict] = []
    key = field.get("system_name")
    for upload in uploads:
        if upload.size > MAX_UPLOAD_BYTES:
            errors.append(
                issue(
                    "FILE_TOO_LARGE",
                    f"File '{upload.filename}' for field '{_field_label(field)}' exceeds {MAX_UPLOAD_BYTES // (1024 * 1024)} MB",
                    key,
                    {"filename": upload.filename, "size": upload.size, "limit": MAX_UPLOAD_BYTES},
                )
            )
            continue
        try:
            staged.append(_write_staged(upload))
        except OSError as exc:
            discard_files(staged)
            logger.error("staging_failed field=%s filename=%s error=%s", key, upload.filename, exc)
            raise AttachmentIOError(f"Could not store '{upload.filename}'", key, {"error": str(exc)}) from exc
    if staged:
        logger.info("files_staged field=%s count=%s", key, len(staged))
    return staged, errors


def staged_value(field: dict, staged: list[str]) -> FieldValue | None:
    if not staged:
        return None
    items = [TypedValue(ValueKind.FILE_PATH, path) for path in staged]
    if field.get("is_array"):
        return FieldValue.array(items)
    return FieldValue.scalar(items[0])


def _remove_dir_if_empty(folder: Path) -> None:
    try:
        if folder.is_dir() and not any(folder.iterdir()):
            folder.rmdir()
    except OSError as exc:
        logger.info("staging_dir_cleanup_skipped dir=%s error=%s", folder, exc)


def discard_files(paths: Iterable[str]) -> None:
    """Best-effort removal of uploaded files that no record will reference."""
    for web_path in paths:
        try:
            disk = web_to_disk(web_path)
            if disk.exists():
                disk.unlink()
            _remove_dir_if_empty(disk.parent)
        except (OSError, ValueError) as exc:
            logger.warning("file_discard_failed path=%s error=%s", web_path, exc)


def _unique_destination(folder: Path, filename: str) -> Path:
    target = folder / filename
    if not target.exists():
        return target
    stem, ext = os.path.splitext(filename)
    while True:
        candidate = folder / f"{stem}_{uuid.uuid4().hex[:4]}{ext}"
        if not candidate.exists():
            return candidate


def _finalize_one(web_path: str, entity_code: str, record_id: str) -> str:
    source = web_to_disk(web_path)
    folder = record_dir(entity_code, record_id)
    folder.mkdir(parents=True, exist_ok=True)
    target = _unique_destination(folder, source.name)
    shutil.move(str(source), str(target))
    _remove_dir_if_empty(source.parent)
    return f"/{UPLOADS_DIR}/{entity_code}/{record_id}/{target.name}"


def _finalize_item(item: TypedValue, entity_code: str, record_id: str) -> TypedValue:
    if not is_staged_path(item.value):
        return item
    try:
        final_path = _finalize_one(item.value, entity_code, record_id)
    except (OSError, ValueError) as exc:
        logger.warning(
            "finalize_failed entity=%s record_id=%s path=%s error=%s",
            entity_code,
            record_id,
            item.value,
            exc,
        )
        return item
    return TypedValue(ValueKind.FILE_PATH, final_path)


def _selected(bag: dict, keys: Iterable[str] | None) -> list[str]:
    if keys is None:
        return list(bag)
    wanted = set(keys)
    return [key for key in bag if key in wanted]


def finalize_staged(
    bag: dict, entity_code: str, record_id: str, keys: Iterable[str] | None = None
) -> tuple[dict, dict[str, str]]:
    """Phase 2: move staged files into the record's permanent directory.

    Only values under ``keys`` (all keys when None) are considered. Returns
    the (possibly rewritten) bag and a mapping of staged path to final path
    for every file moved. A file that cannot be moved keeps its staged path;
    the rest are still processed.
    """
    record_id = str(record_id)
    updated = dict(bag)
    moves: dict[str, str] = {}

    def _move(item: TypedValue) -> TypedValue:
        moved = _finalize_item(item, entity_code, record_id)
        if moved is not item:
            moves[item.value] = moved.value
        return moved

    for key in _selected(bag, keys):
        value = FieldValue.from_json(bag[key])
        if not any(is_staged_path(item.value) for item in value.items):
            continue
        moved = value.map_items(_move)
        if moved != value:
            updated[key] = moved.to_json()
    if moves:
        logger.info("files_finalized entity=%s record_id=%s count=%s", entity_code, record_id, len(moves))
        return updated, moves
    return bag, moves


def finalize_paths(
    bag: dict, entity_code: str, record_id: str, keys: Iterable[str] | None = None
) -> tuple[dict, bool]:
    """Like ``finalize_staged`` but only reports whether any path changed."""
    updated, moves = finalize_staged(bag, entity_code, record_id, keys)
    return updated, bool(moves)


def finalize_properties_json(
    properties_json: str | None, entity_code: str, record_id: str, keys: Iterable[str] | None = None
) -> str | None:
    """Finalize the staged paths of a serialized bag; None when nothing moved."""
    bag = bag_loads(properties_json)
    if not bag:
        return None
    updated, changed = finalize_paths(bag, entity_code, record_id, keys)
    if not changed:
        return None
    return bag_dumps(updated)


def relocate_moved_path(web_path: str, entity_code: str, record_id: str) -> str | None:
    """Find where a staged file ended up if a previous finalize already moved it."""
    if not is_staged_path(web_path):
        return None
    try:
        if web_to_disk(web_path).exists():
            return None
    except ValueError:
        return None
    name = web_path.rsplit("/", 1)[-1]
    candidate = record_dir(entity_code, record_id) / name
    if candidate.exists():
        return f"/{UPLOADS_DIR}/{entity_code}/{record_id}/{name}"
    return None


def relocate_moved_paths(
    bag: dict, entity_code: str, record_id: str, keys: Iterable[str] | None = None
) -> tuple[dict, bool]:
    """Rewrite staged paths whose file is already in the record directory."""

    def _relocate(item: TypedValue) -> TypedValue:
        moved = relocate_moved_path(item.value, entity_code, str(record_id))
        return TypedValue(ValueKind.FILE_PATH, moved) if moved else item

    updated = dict(bag)
    changed = False
    for key in _selected(bag, keys):
        value = FieldValue.from_json(bag[key])
        relocated = value.map_items(_relocate)
        if relocated != value:
            updated[key] = relocated.to_json()
            changed = True
    return (updated if changed else bag), changed


def staging_token(web_path: str) -> str | None:
    """Name of the staging directory a temp path lives in."""
    match = _STAGED_PATH_RE.match(web_path) if isinstance(web_path, str) else None
    if not match or match.group(2) in (".", ".."):
        return None
    return match.group(1)


def staged_paths(bag: dict, keys: Iterable[str] | None = None) -> list[str]:
    paths: list[str] = []
    for key in _selected(bag, keys):
        for item in FieldValue.from_json(bag[key]).items:
            if is_staged_path(item.value):
                paths.append(item.value)
    return paths


def delete_record_files(entity_code: str, record_id: str) -> bool:
    folder = record_dir(entity_code, record_id)
    if not folder.exists():
        return True
    try:
        shutil.rmtree(folder)
        logger.info("record_files_deleted entity=%s record_id=%s", entity_code, record_id)
        return True
    except OSError as exc:
        logger.warning("record_files_delete_failed entity=%s record_id=%s error=%s", entity_code, record_id, exc)
        return False


def sweep_staging(referenced: set[str], max_age_hours: float) -> int:
    """Remove staging directories older than the threshold that no record references."""
    temp_root = uploads_root() / TEMP_DIR
    if not temp_root.is_dir():
        return 0
    cutoff = time.time() - max_age_hours * 3600
    removed = 0
    for folder in temp_root.iterdir():
        if not folder.is_dir() or folder.name in referenced:
            continue
        try:
            if folder.stat().st_mtime > cutoff:
                continue
            shutil.rmtree(folder)
            removed += 1
        except OSError as exc:
            logger.warning("staging_sweep_failed dir=%s error=%s", folder, exc)
    if removed:
        logger.info("staging_swept removed=%s", removed)
    return removed
