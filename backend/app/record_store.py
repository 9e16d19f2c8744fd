from __future__ import annotations

import json
import re
import shutil
import sqlite3
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from .config import get_db_path, get_storage_root
from .errors import ValidationError

CONTENT_COLLECTIONS = (
    "profile",
    "experience",
    "projects",
    "education",
    "skills",
    "certifications",
    "posts",
    "talks",
    "awards",
)
RECORD_VISIBILITIES = {"public", "unlisted", "private"}
ENVELOPE_FIELDS = {"id", "visibility", "is_draft", "sort_order", "created_at", "updated_at"}
DEMO_PREFIX = "demo_"
DEMO_MODE_FLAG = "demo_mode"
SAFE_FIELD_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,63}$")

CREATE_RECORDS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS records (
    id TEXT PRIMARY KEY,
    collection TEXT NOT NULL,
    data_json TEXT NOT NULL DEFAULT '{}',
    visibility TEXT NOT NULL DEFAULT 'private',
    is_draft INTEGER NOT NULL DEFAULT 0,
    sort_order INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
"""

CREATE_SITE_FLAGS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS site_flags (
    name TEXT PRIMARY KEY,
    value TEXT NOT NULL DEFAULT '',
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
"""

CREATE_INDEX_SQLS = [
    """
    CREATE INDEX IF NOT EXISTS idx_records_collection_order
    ON records (collection, sort_order ASC, created_at ASC);
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_records_collection_visibility
    ON records (collection, visibility, is_draft);
    """,
]


def connect() -> sqlite3.Connection:
    db_path = get_db_path()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=10)
    conn.row_factory = sqlite3.Row
    return conn


def _ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(CREATE_RECORDS_TABLE_SQL)
    conn.execute(CREATE_SITE_FLAGS_TABLE_SQL)
    for sql in CREATE_INDEX_SQLS:
        conn.execute(sql)


def new_record_id() -> str:
    return uuid.uuid4().hex


def json_loads(value: str | None, *, fallback: Any) -> Any:
    if not value:
        return fallback
    try:
        return json.loads(value)
    except (TypeError, json.JSONDecodeError):
        return fallback


def _row_to_record(row: sqlite3.Row) -> dict[str, Any]:
    data = json_loads(row["data_json"], fallback={})
    if not isinstance(data, dict):
        data = {}
    record: dict[str, Any] = {"id": str(row["id"])}
    record.update({key: value for key, value in data.items() if key not in ENVELOPE_FIELDS})
    record["visibility"] = str(row["visibility"])
    record["is_draft"] = bool(row["is_draft"])
    record["sort_order"] = int(row["sort_order"])
    record["created_at"] = str(row["created_at"])
    record["updated_at"] = str(row["updated_at"])
    return record


def _split_envelope(data: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    envelope: dict[str, Any] = {}
    payload: dict[str, Any] = {}
    for key, value in data.items():
        if key in ENVELOPE_FIELDS:
            envelope[key] = value
        else:
            payload[key] = value
    return envelope, payload


def _normalize_visibility(value: Any, *, default: str = "private") -> str:
    visibility = str(value or default).strip().lower()
    if visibility not in RECORD_VISIBILITIES:
        raise ValidationError(f"visibility: must be one of {', '.join(sorted(RECORD_VISIBILITIES))}")
    return visibility


def insert_record(collection: str, data: dict[str, Any]) -> dict[str, Any]:
    envelope, payload = _split_envelope(data)
    record_id = str(envelope.get("id") or new_record_id())
    visibility = _normalize_visibility(envelope.get("visibility"))

    with connect() as conn:
        _ensure_schema(conn)
        conn.execute(
            """
            INSERT INTO records (id, collection, data_json, visibility, is_draft, sort_order)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                record_id,
                collection,
                json.dumps(payload, ensure_ascii=False),
                visibility,
                1 if envelope.get("is_draft") else 0,
                int(envelope.get("sort_order") or 0),
            ),
        )
        conn.commit()

    created = fetch_record(collection, record_id)
    if created is None:
        raise RuntimeError("record insert failed")
    return created


def update_record(collection: str, record_id: str, changes: dict[str, Any]) -> dict[str, Any] | None:
    envelope, payload = _split_envelope(changes)

    with connect() as conn:
        _ensure_schema(conn)
        row = conn.execute(
            "SELECT * FROM records WHERE collection = ? AND id = ? LIMIT 1",
            (collection, record_id),
        ).fetchone()
        if row is None:
            return None

        data = json_loads(row["data_json"], fallback={})
        for key, value in payload.items():
            if value is None:
                data.pop(key, None)
            else:
                data[key] = value

        visibility = row["visibility"]
        if "visibility" in envelope:
            visibility = _normalize_visibility(envelope["visibility"])
        is_draft = int(row["is_draft"])
        if "is_draft" in envelope:
            is_draft = 1 if envelope["is_draft"] else 0
        sort_order = int(row["sort_order"])
        if "sort_order" in envelope:
            sort_order = int(envelope["sort_order"] or 0)

        conn.execute(
            """
            UPDATE records
            SET data_json = ?,
                visibility = ?,
                is_draft = ?,
                sort_order = ?,
                updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
            WHERE collection = ? AND id = ?
            """,
            (json.dumps(data, ensure_ascii=False), visibility, is_draft, sort_order, collection, record_id),
        )
        conn.commit()

    return fetch_record(collection, record_id)


def fetch_record(collection: str, record_id: str) -> dict[str, Any] | None:
    with connect() as conn:
        _ensure_schema(conn)
        row = conn.execute(
            "SELECT * FROM records WHERE collection = ? AND id = ? LIMIT 1",
            (collection, record_id),
        ).fetchone()
    return _row_to_record(row) if row is not None else None


def fetch_records_by_ids(collection: str, record_ids: Iterable[str]) -> list[dict[str, Any]]:
    """Fetch records in one query, returned in the order of ``record_ids``."""
    ordered_ids = [str(item) for item in record_ids if item]
    if not ordered_ids:
        return []

    placeholders = ", ".join("?" for _ in ordered_ids)
    with connect() as conn:
        _ensure_schema(conn)
        rows = conn.execute(
            f"SELECT * FROM records WHERE collection = ? AND id IN ({placeholders})",
            (collection, *ordered_ids),
        ).fetchall()

    by_id = {str(row["id"]): _row_to_record(row) for row in rows}
    return [by_id[record_id] for record_id in ordered_ids if record_id in by_id]


def find_visible_records(collection: str, *, limit: int = 100) -> list[dict[str, Any]]:
    with connect() as conn:
        _ensure_schema(conn)
        rows = conn.execute(
            """
            SELECT * FROM records
            WHERE collection = ? AND visibility != 'private' AND is_draft = 0
            ORDER BY sort_order ASC, created_at ASC
            LIMIT ?
            """,
            (collection, limit),
        ).fetchall()
    return [_row_to_record(row) for row in rows]


def list_records(collection: str, *, limit: int = 100, offset: int = 0) -> list[dict[str, Any]]:
    with connect() as conn:
        _ensure_schema(conn)
        rows = conn.execute(
            """
            SELECT * FROM records
            WHERE collection = ?
            ORDER BY sort_order ASC, created_at ASC
            LIMIT ? OFFSET ?
            """,
            (collection, limit, offset),
        ).fetchall()
    return [_row_to_record(row) for row in rows]


def find_records_by_fields(collection: str, fields: dict[str, str]) -> list[dict[str, Any]]:
    """Case-insensitive equality match on payload fields."""
    clauses = ["collection = ?"]
    params: list[Any] = [collection]
    for name, value in fields.items():
        if not SAFE_FIELD_PATTERN.match(name):
            raise ValueError(f"invalid field name: {name}")
        clauses.append(f"lower(trim(coalesce(json_extract(data_json, '$.{name}'), ''))) = ?")
        params.append(str(value or "").strip().lower())

    with connect() as conn:
        _ensure_schema(conn)
        rows = conn.execute(
            f"SELECT * FROM records WHERE {' AND '.join(clauses)} ORDER BY created_at ASC",
            params,
        ).fetchall()
    return [_row_to_record(row) for row in rows]


def delete_record(collection: str, record_id: str) -> bool:
    with connect() as conn:
        _ensure_schema(conn)
        cursor = conn.execute(
            "DELETE FROM records WHERE collection = ? AND id = ?",
            (collection, record_id),
        )
        conn.commit()
        deleted = cursor.rowcount > 0

    if deleted:
        shutil.rmtree(record_storage_dir(collection, record_id), ignore_errors=True)
    return deleted


def _safe_segment(value: str, *, label: str) -> str:
    segment = str(value or "").strip()
    if not segment or segment in {".", ".."} or Path(segment).name != segment or segment.startswith("."):
        raise ValidationError(f"{label}: invalid")
    return segment


def record_storage_dir(collection: str, record_id: str) -> Path:
    return (
        get_storage_root()
        / _safe_segment(collection, label="collection")
        / _safe_segment(record_id, label="record id")
    )


def record_file_path(collection: str, record_id: str, filename: str) -> Path:
    return record_storage_dir(collection, record_id) / _safe_segment(filename, label="filename")


def save_record_file(collection: str, record_id: str, filename: str, content: bytes) -> Path:
    path = record_file_path(collection, record_id, filename)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    return path


def delete_record_file(collection: str, record_id: str, filename: str) -> bool:
    path = record_file_path(collection, record_id, filename)
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True


def clear_file_field(collection: str, record_id: str, field_name: str) -> dict[str, Any] | None:
    record = fetch_record(collection, record_id)
    if record is None:
        return None

    filename = record.get(field_name)
    if isinstance(filename, str) and filename:
        delete_record_file(collection, record_id, filename)
    return update_record(collection, record_id, {field_name: None})


def get_site_flag(name: str, default: str = "") -> str:
    with connect() as conn:
        _ensure_schema(conn)
        row = conn.execute("SELECT value FROM site_flags WHERE name = ? LIMIT 1", (name,)).fetchone()
    return str(row["value"]) if row is not None else default


def set_site_flag(name: str, value: str) -> None:
    with connect() as conn:
        _ensure_schema(conn)
        conn.execute(
            """
            INSERT INTO site_flags (name, value) VALUES (?, ?)
            ON CONFLICT(name) DO UPDATE SET
                value = excluded.value,
                updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
            """,
            (name, value),
        )
        conn.commit()


def is_demo_mode() -> bool:
    return get_site_flag(DEMO_MODE_FLAG, "false") == "true"


@dataclass(frozen=True)
class StoreView:
    """Selects the live or the ``demo_*`` shadow collections for one request."""

    demo: bool = False

    def read_collection(self, name: str) -> str:
        return f"{DEMO_PREFIX}{name}" if self.demo else name

    def write_collection(self, name: str) -> str:
        return f"{DEMO_PREFIX}{name}" if self.demo else name


LIVE_STORE = StoreView(demo=False)


def resolve_store_view() -> StoreView:
    return StoreView(demo=is_demo_mode())
