from __future__ import annotations

import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from .crypto_vault import CryptoVault
from .errors import NotFoundError, ValidationError
from .record_store import connect
from .view_store import fetch_view

TOKEN_BYTES = 32
TOKEN_PREFIX_LENGTH = 12
PREFIX_CANDIDATE_LIMIT = 10
LEGACY_CANDIDATE_LIMIT = 100
INVALID_TOKEN_ERROR = "invalid token"
EXPIRES_AT_FORMATS = ("%Y-%m-%dT%H:%M", "%Y-%m-%dT%H:%M:%S")

CREATE_SHARE_TOKENS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS share_tokens (
    id TEXT PRIMARY KEY,
    view_id TEXT NOT NULL,
    token_hmac TEXT NOT NULL,
    name TEXT NOT NULL DEFAULT '',
    is_active INTEGER NOT NULL DEFAULT 1,
    expires_at TEXT,
    max_uses INTEGER,
    use_count INTEGER NOT NULL DEFAULT 0,
    last_used_at TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
"""

OPTIONAL_COLUMNS: dict[str, str] = {
    "token_prefix": "TEXT",
}

CREATE_INDEX_SQLS = [
    """
    CREATE INDEX IF NOT EXISTS idx_share_tokens_prefix
    ON share_tokens (token_prefix, is_active);
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_share_tokens_view
    ON share_tokens (view_id, created_at DESC);
    """,
]


def _ensure_optional_columns(conn: sqlite3.Connection) -> None:
    rows = conn.execute("PRAGMA table_info(share_tokens)").fetchall()
    existing = {str(row["name"]) for row in rows}
    for column, ddl in OPTIONAL_COLUMNS.items():
        if column in existing:
            continue
        conn.execute(f"ALTER TABLE share_tokens ADD COLUMN {column} {ddl}")


def _ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(CREATE_SHARE_TOKENS_TABLE_SQL)
    _ensure_optional_columns(conn)
    for sql in CREATE_INDEX_SQLS:
        conn.execute(sql)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _format_utc(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat()


def _parse_utc(value: str | None) -> datetime | None:
    raw = (value or "").strip()
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_expires_at(value: str | None) -> datetime | None:
    raw = (value or "").strip()
    if not raw:
        return None

    for fmt in EXPIRES_AT_FORMATS:
        try:
            return datetime.strptime(raw, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue

    parsed = _parse_utc(raw)
    if parsed is None:
        raise ValidationError("invalid expiration date format")
    return parsed


def token_prefix(raw: str) -> str:
    return raw[:TOKEN_PREFIX_LENGTH]


@dataclass
class ShareValidation:
    valid: bool
    view_id: str | None = None
    view_slug: str | None = None
    token_id: str | None = None
    expires_at: datetime | None = None
    error: str | None = None

    def to_payload(self) -> dict[str, Any]:
        if not self.valid:
            return {"valid": False, "error": self.error or INVALID_TOKEN_ERROR}
        return {"valid": True, "view_id": self.view_id, "view_slug": self.view_slug}


INVALID = ShareValidation(valid=False, error=INVALID_TOKEN_ERROR)


def _row_to_token(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "id": str(row["id"]),
        "view_id": str(row["view_id"]),
        "name": str(row["name"] or ""),
        "token_prefix": str(row["token_prefix"] or ""),
        "is_active": bool(row["is_active"]),
        "expires_at": row["expires_at"],
        "max_uses": row["max_uses"],
        "use_count": int(row["use_count"]),
        "last_used_at": row["last_used_at"],
        "created_at": str(row["created_at"]),
    }


def generate_share_token(
    vault: CryptoVault,
    *,
    view_id: str,
    name: str = "",
    expires_at: str | None = None,
    max_uses: int | None = None,
) -> dict[str, Any]:
    if fetch_view(view_id) is None:
        raise NotFoundError("view not found")

    expires = parse_expires_at(expires_at)
    raw = vault.random_token(TOKEN_BYTES)
    token_id = uuid.uuid4().hex
    safe_name = (name or "").strip()

    with connect() as conn:
        _ensure_schema(conn)
        conn.execute(
            """
            INSERT INTO share_tokens (
                id, view_id, token_hmac, token_prefix, name, is_active, expires_at, max_uses, use_count
            )
            VALUES (?, ?, ?, ?, ?, 1, ?, ?, 0)
            """,
            (
                token_id,
                view_id,
                vault.hmac_token(raw),
                token_prefix(raw),
                safe_name,
                _format_utc(expires) if expires else None,
                int(max_uses) if max_uses and max_uses > 0 else None,
            ),
        )
        conn.commit()

    return {"id": token_id, "token": raw, "name": safe_name}


def find_share_token(vault: CryptoVault, raw: str) -> sqlite3.Row | None:
    prefix = token_prefix(raw)
    with connect() as conn:
        _ensure_schema(conn)
        candidates = conn.execute(
            """
            SELECT * FROM share_tokens
            WHERE token_prefix = ? AND is_active = 1
            ORDER BY created_at DESC
            LIMIT ?
            """,
            (prefix, PREFIX_CANDIDATE_LIMIT),
        ).fetchall()
        if not candidates:
            candidates = conn.execute(
                """
                SELECT * FROM share_tokens
                WHERE (token_prefix IS NULL OR token_prefix = '') AND is_active = 1
                ORDER BY created_at DESC
                LIMIT ?
                """,
                (LEGACY_CANDIDATE_LIMIT,),
            ).fetchall()

    for row in candidates:
        if vault.verify_token(raw, str(row["token_hmac"])):
            return row
    return None


def _consume_use(token_id: str) -> bool:
    with connect() as conn:
        _ensure_schema(conn)
        cursor = conn.execute(
            """
            UPDATE share_tokens
            SET use_count = use_count + 1,
                last_used_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
            WHERE id = ?
              AND is_active = 1
              AND (max_uses IS NULL OR use_count < max_uses)
            """,
            (token_id,),
        )
        conn.commit()
    return cursor.rowcount > 0


def validate_share_token(
    vault: CryptoVault,
    raw: str,
    *,
    view_id: str | None = None,
    count_use: bool = True,
) -> ShareValidation:
    safe_raw = (raw or "").strip()
    if not safe_raw:
        return INVALID

    row = find_share_token(vault, safe_raw)
    if row is None:
        return INVALID

    expires_at = _parse_utc(row["expires_at"])
    if expires_at is not None and expires_at <= _utc_now():
        return INVALID

    max_uses = row["max_uses"]
    if max_uses is not None and int(max_uses) > 0 and int(row["use_count"]) >= int(max_uses):
        return INVALID

    view = fetch_view(str(row["view_id"]))
    if view is None or not view["is_active"]:
        return INVALID
    if view_id and view["id"] != view_id:
        return INVALID

    if count_use and not _consume_use(str(row["id"])):
        return INVALID

    return ShareValidation(
        valid=True,
        view_id=view["id"],
        view_slug=view["slug"],
        token_id=str(row["id"]),
        expires_at=expires_at,
    )


def revoke_share_token(token_id: str) -> bool:
    with connect() as conn:
        _ensure_schema(conn)
        cursor = conn.execute("UPDATE share_tokens SET is_active = 0 WHERE id = ?", (token_id,))
        conn.commit()
    return cursor.rowcount > 0


def list_share_tokens(*, view_id: str | None = None) -> list[dict[str, Any]]:
    sql = "SELECT * FROM share_tokens"
    params: tuple[Any, ...] = ()
    if view_id:
        sql += " WHERE view_id = ?"
        params = (view_id,)
    with connect() as conn:
        _ensure_schema(conn)
        rows = conn.execute(f"{sql} ORDER BY created_at DESC", params).fetchall()
    return [_row_to_token(row) for row in rows]
