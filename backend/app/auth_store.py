from __future__ import annotations

import sqlite3
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from .crypto_vault import CryptoVault
from .record_store import connect

CREATE_OWNERS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS owner_accounts (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    password_hash TEXT NOT NULL DEFAULT '',
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
"""

CREATE_AUTH_SESSIONS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS owner_sessions (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    token_hmac TEXT NOT NULL UNIQUE,
    is_revoked INTEGER NOT NULL DEFAULT 0,
    expires_at TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    FOREIGN KEY(owner_id) REFERENCES owner_accounts(id)
);
"""

CREATE_INDEX_SQLS = [
    """
    CREATE INDEX IF NOT EXISTS idx_owner_sessions_owner
    ON owner_sessions (owner_id, created_at DESC);
    """,
]

SESSION_TOKEN_BYTES = 48
MIN_PASSWORD_LENGTH = 8

VERIFY_REASON_NOT_ALLOWED = "NOT_ALLOWED"
VERIFY_REASON_NOT_FOUND = "NOT_FOUND"
VERIFY_REASON_ACCOUNT_INACTIVE = "ACCOUNT_INACTIVE"
VERIFY_REASON_INVALID_PASSWORD = "INVALID_PASSWORD"


def _ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(CREATE_OWNERS_TABLE_SQL)
    conn.execute(CREATE_AUTH_SESSIONS_TABLE_SQL)
    for sql in CREATE_INDEX_SQLS:
        conn.execute(sql)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _format_utc(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat()


def _parse_utc(value: str) -> datetime | None:
    raw = (value or "").strip()
    if not raw:
        return None
    try:
        if raw.endswith("Z"):
            return datetime.fromisoformat(raw.replace("Z", "+00:00"))
        return datetime.fromisoformat(raw)
    except ValueError:
        return None


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def upsert_owner_account(*, email: str, password: str) -> dict[str, Any]:
    safe_email = _normalize_email(email)
    if not safe_email:
        raise ValueError("email is required")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValueError("password too short")

    password_hash = CryptoVault.hash_password(password)
    with connect() as conn:
        _ensure_schema(conn)
        existing = conn.execute(
            "SELECT id FROM owner_accounts WHERE email = ? LIMIT 1",
            (safe_email,),
        ).fetchone()
        if existing is None:
            owner_id = uuid.uuid4().hex
            conn.execute(
                """
                INSERT INTO owner_accounts (id, email, password_hash, is_active)
                VALUES (?, ?, ?, 1)
                """,
                (owner_id, safe_email, password_hash),
            )
        else:
            owner_id = str(existing["id"])
            conn.execute(
                """
                UPDATE owner_accounts
                SET password_hash = ?,
                    is_active = 1,
                    updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
                WHERE id = ?
                """,
                (password_hash, owner_id),
            )
        conn.commit()

    return {"id": owner_id, "email": safe_email}


def ensure_owner_account(*, admin_emails: list[str], admin_password: str) -> dict[str, Any] | None:
    """Create the first allowlisted owner from ADMIN_PASSWORD when no owner exists yet."""
    if not admin_emails or not admin_password:
        return None

    with connect() as conn:
        _ensure_schema(conn)
        row = conn.execute("SELECT id, email FROM owner_accounts ORDER BY created_at ASC LIMIT 1").fetchone()
        if row is not None:
            return {"id": str(row["id"]), "email": str(row["email"])}

    return upsert_owner_account(email=admin_emails[0], password=admin_password)


def verify_owner_with_reason(
    *,
    email: str,
    password: str,
    admin_emails: list[str],
) -> tuple[dict[str, Any] | None, str | None]:
    safe_email = _normalize_email(email)
    if safe_email not in admin_emails:
        return None, VERIFY_REASON_NOT_ALLOWED
    if not password:
        return None, VERIFY_REASON_INVALID_PASSWORD

    with connect() as conn:
        _ensure_schema(conn)
        row = conn.execute(
            """
            SELECT id, email, password_hash, is_active
            FROM owner_accounts
            WHERE email = ?
            LIMIT 1
            """,
            (safe_email,),
        ).fetchone()

    if row is None:
        return None, VERIFY_REASON_NOT_FOUND
    if int(row["is_active"]) != 1:
        return None, VERIFY_REASON_ACCOUNT_INACTIVE
    if not CryptoVault.check_password(password, str(row["password_hash"])):
        return None, VERIFY_REASON_INVALID_PASSWORD

    return {"id": str(row["id"]), "email": str(row["email"])}, None


def create_owner_session(vault: CryptoVault, *, owner_id: str, ttl_seconds: int) -> dict[str, Any]:
    safe_ttl = max(300, int(ttl_seconds))
    expires_at = _utc_now() + timedelta(seconds=safe_ttl)
    raw_token = vault.random_token(SESSION_TOKEN_BYTES)

    with connect() as conn:
        _ensure_schema(conn)
        conn.execute(
            """
            INSERT INTO owner_sessions (id, owner_id, token_hmac, is_revoked, expires_at)
            VALUES (?, ?, ?, 0, ?)
            """,
            (uuid.uuid4().hex, owner_id, vault.hmac_token(raw_token), _format_utc(expires_at)),
        )
        conn.commit()

    return {
        "token": raw_token,
        "expires_at": _format_utc(expires_at),
        "ttl_seconds": safe_ttl,
    }


def validate_owner_session(vault: CryptoVault, *, token: str) -> dict[str, Any] | None:
    safe_token = token.strip()
    if not safe_token:
        return None

    with connect() as conn:
        _ensure_schema(conn)
        row = conn.execute(
            """
            SELECT s.id, s.owner_id, s.is_revoked, s.expires_at, o.email, o.is_active
            FROM owner_sessions s
            JOIN owner_accounts o ON o.id = s.owner_id
            WHERE s.token_hmac = ?
            LIMIT 1
            """,
            (vault.hmac_token(safe_token),),
        ).fetchone()

    if row is None:
        return None
    if int(row["is_revoked"]) == 1 or int(row["is_active"]) != 1:
        return None

    expires_at_raw = str(row["expires_at"])
    expires_at = _parse_utc(expires_at_raw)
    if expires_at is None or expires_at <= _utc_now():
        return None

    return {
        "session_id": str(row["id"]),
        "id": str(row["owner_id"]),
        "email": str(row["email"]),
        "expires_at": expires_at_raw,
    }


def revoke_owner_session(vault: CryptoVault, *, token: str) -> bool:
    safe_token = token.strip()
    if not safe_token:
        return False

    with connect() as conn:
        _ensure_schema(conn)
        affected = conn.execute(
            """
            UPDATE owner_sessions
            SET is_revoked = 1,
                updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
            WHERE token_hmac = ? AND is_revoked = 0
            """,
            (vault.hmac_token(safe_token),),
        ).rowcount
        conn.commit()

    return bool(affected)
