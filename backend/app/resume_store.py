from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from .record_store import connect, delete_record_file, json_loads, record_storage_dir

logger = logging.getLogger("meyaml.resume")

EXPORTS_COLLECTION = "view_exports"
EXPORT_FORMATS = ("pdf", "docx")
DEFAULT_EXPORT_LIST_LIMIT = 50

CREATE_VIEW_EXPORTS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS view_exports (
    id TEXT PRIMARY KEY,
    view_id TEXT NOT NULL,
    format TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    ai_provider_id TEXT,
    generation_config_json TEXT NOT NULL DEFAULT '{}',
    file TEXT NOT NULL DEFAULT '',
    error_message TEXT,
    generated_at TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
"""

CREATE_RESUME_IMPORTS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS resume_imports (
    id TEXT PRIMARY KEY,
    file_hash TEXT NOT NULL UNIQUE,
    filename TEXT NOT NULL DEFAULT '',
    imported_records_json TEXT NOT NULL DEFAULT '{}',
    counts_json TEXT NOT NULL DEFAULT '{}',
    warnings_json TEXT NOT NULL DEFAULT '[]',
    confidence TEXT NOT NULL DEFAULT '',
    ai_provider_id TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
"""

CREATE_INDEX_SQLS = [
    """
    CREATE INDEX IF NOT EXISTS idx_view_exports_view
    ON view_exports (view_id, generated_at DESC, created_at DESC);
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_view_exports_status
    ON view_exports (status, created_at);
    """,
]


def _ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(CREATE_VIEW_EXPORTS_TABLE_SQL)
    conn.execute(CREATE_RESUME_IMPORTS_TABLE_SQL)
    for sql in CREATE_INDEX_SQLS:
        conn.execute(sql)


def _row_to_export(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "id": str(row["id"]),
        "view_id": str(row["view_id"]),
        "format": str(row["format"]),
        "status": str(row["status"]),
        "ai_provider_id": row["ai_provider_id"],
        "generation_config": json_loads(row["generation_config_json"], fallback={}),
        "file": str(row["file"] or ""),
        "error_message": row["error_message"],
        "generated_at": row["generated_at"],
        "created_at": str(row["created_at"]),
        "updated_at": str(row["updated_at"]),
    }


def _row_to_import(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "id": str(row["id"]),
        "file_hash": str(row["file_hash"]),
        "filename": str(row["filename"]),
        "imported_records": json_loads(row["imported_records_json"], fallback={}),
        "counts": json_loads(row["counts_json"], fallback={}),
        "warnings": json_loads(row["warnings_json"], fallback=[]),
        "confidence": str(row["confidence"]),
        "ai_provider_id": row["ai_provider_id"],
        "created_at": str(row["created_at"]),
    }


def create_export(
    *,
    view_id: str,
    export_format: str,
    ai_provider_id: str | None,
    generation_config: dict[str, Any],
    status: str = "processing",
) -> dict[str, Any]:
    export_id = uuid.uuid4().hex
    with connect() as conn:
        _ensure_schema(conn)
        conn.execute(
            """
            INSERT INTO view_exports (id, view_id, format, status, ai_provider_id, generation_config_json)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                export_id,
                view_id,
                export_format,
                status,
                ai_provider_id,
                json.dumps(generation_config, ensure_ascii=False),
            ),
        )
        conn.commit()

    created = fetch_export(export_id)
    if created is None:
        raise RuntimeError("export insert failed")
    return created


def mark_export_completed(export_id: str, *, filename: str) -> dict[str, Any] | None:
    with connect() as conn:
        _ensure_schema(conn)
        conn.execute(
            """
            UPDATE view_exports
            SET status = 'completed',
                file = ?,
                error_message = NULL,
                generated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now'),
                updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
            WHERE id = ?
            """,
            (filename, export_id),
        )
        conn.commit()
    return fetch_export(export_id)


def mark_export_failed(export_id: str, *, error_message: str) -> dict[str, Any] | None:
    with connect() as conn:
        _ensure_schema(conn)
        conn.execute(
            """
            UPDATE view_exports
            SET status = 'failed',
                error_message = ?,
                updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
            WHERE id = ?
            """,
            (error_message[:2000], export_id),
        )
        conn.commit()
    return fetch_export(export_id)


def fetch_export(export_id: str) -> dict[str, Any] | None:
    with connect() as conn:
        _ensure_schema(conn)
        row = conn.execute("SELECT * FROM view_exports WHERE id = ? LIMIT 1", (export_id,)).fetchone()
    return _row_to_export(row) if row is not None else None


def list_exports(*, view_id: str, limit: int = DEFAULT_EXPORT_LIST_LIMIT) -> list[dict[str, Any]]:
    with connect() as conn:
        _ensure_schema(conn)
        rows = conn.execute(
            """
            SELECT * FROM view_exports
            WHERE view_id = ?
            ORDER BY COALESCE(generated_at, created_at) DESC, created_at DESC
            LIMIT ?
            """,
            (view_id, limit),
        ).fetchall()
    return [_row_to_export(row) for row in rows]


def delete_export(export_id: str) -> bool:
    export = fetch_export(export_id)
    if export is None:
        return False

    if export["file"]:
        delete_record_file(EXPORTS_COLLECTION, export_id, export["file"])
    with connect() as conn:
        _ensure_schema(conn)
        conn.execute("DELETE FROM view_exports WHERE id = ?", (export_id,))
        conn.commit()

    storage_dir = record_storage_dir(EXPORTS_COLLECTION, export_id)
    if storage_dir.is_dir() and not any(storage_dir.iterdir()):
        storage_dir.rmdir()
    return True


def collect_expired_exports(*, retention_days: int, now: datetime | None = None) -> int:
    """Delete failed exports and exports older than the retention window."""
    current = now or datetime.now(timezone.utc)
    cutoff = (current - timedelta(days=retention_days)).strftime("%Y-%m-%dT%H:%M:%S.000Z")
    with connect() as conn:
        _ensure_schema(conn)
        rows = conn.execute(
            "SELECT id FROM view_exports WHERE status = 'failed' OR created_at < ?",
            (cutoff,),
        ).fetchall()

    removed = 0
    for row in rows:
        if delete_export(str(row["id"])):
            removed += 1
    return removed


def fetch_import_by_hash(file_hash: str) -> dict[str, Any] | None:
    with connect() as conn:
        _ensure_schema(conn)
        row = conn.execute(
            "SELECT * FROM resume_imports WHERE file_hash = ? LIMIT 1",
            (file_hash,),
        ).fetchone()
    return _row_to_import(row) if row is not None else None


def create_import(
    *,
    file_hash: str,
    filename: str,
    ai_provider_id: str | None,
) -> dict[str, Any] | None:
    """Claim ``file_hash``; returns None when another import already holds it."""
    import_id = uuid.uuid4().hex
    with connect() as conn:
        _ensure_schema(conn)
        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO resume_imports (id, file_hash, filename, ai_provider_id)
            VALUES (?, ?, ?, ?)
            """,
            (import_id, file_hash, filename, ai_provider_id),
        )
        conn.commit()
        if cursor.rowcount == 0:
            return None
    return fetch_import(import_id)


def finalize_import(
    import_id: str,
    *,
    imported_records: dict[str, list[str]],
    counts: dict[str, int],
    warnings: list[str],
    confidence: str,
) -> dict[str, Any] | None:
    with connect() as conn:
        _ensure_schema(conn)
        conn.execute(
            """
            UPDATE resume_imports
            SET imported_records_json = ?,
                counts_json = ?,
                warnings_json = ?,
                confidence = ?
            WHERE id = ?
            """,
            (
                json.dumps(imported_records, ensure_ascii=False),
                json.dumps(counts, ensure_ascii=False),
                json.dumps(warnings, ensure_ascii=False),
                confidence,
                import_id,
            ),
        )
        conn.commit()
    return fetch_import(import_id)


def delete_import(import_id: str) -> bool:
    with connect() as conn:
        _ensure_schema(conn)
        cursor = conn.execute("DELETE FROM resume_imports WHERE id = ?", (import_id,))
        conn.commit()
    return cursor.rowcount > 0


def fetch_import(import_id: str) -> dict[str, Any] | None:
    with connect() as conn:
        _ensure_schema(conn)
        row = conn.execute("SELECT * FROM resume_imports WHERE id = ? LIMIT 1", (import_id,)).fetchone()
    return _row_to_import(row) if row is not None else None


def count_imports() -> int:
    with connect() as conn:
        _ensure_schema(conn)
        row = conn.execute("SELECT COUNT(*) AS total FROM resume_imports").fetchone()
    return int(row["total"]) if row is not None else 0


class ExportCollector:
    """Background sweep of failed and expired exports."""

    def __init__(self, *, retention_days: int, interval_seconds: float) -> None:
        self.retention_days = retention_days
        self.interval_seconds = interval_seconds
        self._stop_event: threading.Event | None = None
        self._thread: threading.Thread | None = None

    def run_once(self) -> int:
        removed = collect_expired_exports(retention_days=self.retention_days)
        if removed:
            logger.info(json.dumps({"event": "exports.gc", "removed": removed}, ensure_ascii=False))
        return removed

    def start(self) -> None:
        if self.interval_seconds <= 0 or (self._thread is not None and self._thread.is_alive()):
            return
        stop_event = threading.Event()

        def run() -> None:
            while not stop_event.wait(self.interval_seconds):
                try:
                    self.run_once()
                except sqlite3.Error:
                    logger.exception(json.dumps({"event": "exports.gc_failed"}))

        self._stop_event = stop_event
        self._thread = threading.Thread(target=run, name="export-gc", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=2)
        self._stop_event = None
        self._thread = None
