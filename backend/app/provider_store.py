from __future__ import annotations

import json
import logging
import os
import sqlite3
import uuid
from typing import Any

from .crypto_vault import CryptoVault
from .errors import ValidationError
from .record_store import connect

logger = logging.getLogger("meyaml.providers")

PROVIDER_TYPES = ("openai", "anthropic", "ollama", "custom")
API_KEY_SENTINEL = "********"

CREATE_PROVIDERS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS ai_providers (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL DEFAULT '',
    type TEXT NOT NULL,
    api_key_encrypted TEXT NOT NULL DEFAULT '',
    base_url TEXT NOT NULL DEFAULT '',
    model TEXT NOT NULL DEFAULT '',
    is_active INTEGER NOT NULL DEFAULT 1,
    is_default INTEGER NOT NULL DEFAULT 0,
    test_status TEXT,
    last_test TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
"""


def _ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(CREATE_PROVIDERS_TABLE_SQL)


def _row_to_provider(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "id": str(row["id"]),
        "name": str(row["name"]),
        "type": str(row["type"]),
        "api_key_encrypted": str(row["api_key_encrypted"] or ""),
        "base_url": str(row["base_url"] or ""),
        "model": str(row["model"] or ""),
        "is_active": bool(row["is_active"]),
        "is_default": bool(row["is_default"]),
        "test_status": row["test_status"],
        "last_test": row["last_test"],
        "created_at": str(row["created_at"]),
        "updated_at": str(row["updated_at"]),
    }


def public_provider(provider: dict[str, Any]) -> dict[str, Any]:
    payload = {key: value for key, value in provider.items() if key != "api_key_encrypted"}
    payload["has_api_key"] = bool(provider.get("api_key_encrypted"))
    return payload


def _encrypted_key_for(vault: CryptoVault, api_key: str | None, *, current: str) -> str:
    if api_key is None:
        return current
    value = api_key.strip()
    if not value or value == API_KEY_SENTINEL:
        return current
    return vault.encrypt(value)


def _normalize_type(value: Any) -> str:
    provider_type = str(value or "").strip().lower()
    if provider_type not in PROVIDER_TYPES:
        raise ValidationError(f"type: must be one of {', '.join(PROVIDER_TYPES)}")
    return provider_type


def _clear_other_defaults(conn: sqlite3.Connection, keep_id: str) -> None:
    conn.execute("UPDATE ai_providers SET is_default = 0 WHERE is_default = 1 AND id != ?", (keep_id,))


def create_provider(vault: CryptoVault, fields: dict[str, Any]) -> dict[str, Any]:
    provider_id = uuid.uuid4().hex
    provider_type = _normalize_type(fields.get("type"))
    is_default = bool(fields.get("is_default"))

    with connect() as conn:
        _ensure_schema(conn)
        if is_default:
            _clear_other_defaults(conn, provider_id)
        conn.execute(
            """
            INSERT INTO ai_providers (id, name, type, api_key_encrypted, base_url, model, is_active, is_default)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                provider_id,
                str(fields.get("name") or provider_type).strip(),
                provider_type,
                _encrypted_key_for(vault, fields.get("api_key"), current=""),
                str(fields.get("base_url") or "").strip().rstrip("/"),
                str(fields.get("model") or "").strip(),
                0 if fields.get("is_active") is False else 1,
                1 if is_default else 0,
            ),
        )
        conn.commit()

    created = fetch_provider(provider_id)
    if created is None:
        raise RuntimeError("provider insert failed")
    return created


def update_provider(vault: CryptoVault, provider_id: str, changes: dict[str, Any]) -> dict[str, Any] | None:
    current = fetch_provider(provider_id)
    if current is None:
        return None

    merged = dict(current)
    if changes.get("name") is not None:
        merged["name"] = str(changes["name"]).strip()
    if changes.get("type") is not None:
        merged["type"] = _normalize_type(changes["type"])
    if changes.get("base_url") is not None:
        merged["base_url"] = str(changes["base_url"]).strip().rstrip("/")
    if changes.get("model") is not None:
        merged["model"] = str(changes["model"]).strip()
    for flag in ("is_active", "is_default"):
        if changes.get(flag) is not None:
            merged[flag] = bool(changes[flag])
    merged["api_key_encrypted"] = _encrypted_key_for(
        vault, changes.get("api_key"), current=current["api_key_encrypted"]
    )

    with connect() as conn:
        _ensure_schema(conn)
        if merged["is_default"]:
            _clear_other_defaults(conn, provider_id)
        conn.execute(
            """
            UPDATE ai_providers
            SET name = ?,
                type = ?,
                api_key_encrypted = ?,
                base_url = ?,
                model = ?,
                is_active = ?,
                is_default = ?,
                updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
            WHERE id = ?
            """,
            (
                merged["name"],
                merged["type"],
                merged["api_key_encrypted"],
                merged["base_url"],
                merged["model"],
                1 if merged["is_active"] else 0,
                1 if merged["is_default"] else 0,
                provider_id,
            ),
        )
        conn.commit()

    return fetch_provider(provider_id)


def record_test_result(provider_id: str, *, success: bool) -> None:
    with connect() as conn:
        _ensure_schema(conn)
        conn.execute(
            """
            UPDATE ai_providers
            SET test_status = ?,
                last_test = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
            WHERE id = ?
            """,
            ("success" if success else "error", provider_id),
        )
        conn.commit()


def fetch_provider(provider_id: str) -> dict[str, Any] | None:
    with connect() as conn:
        _ensure_schema(conn)
        row = conn.execute("SELECT * FROM ai_providers WHERE id = ? LIMIT 1", (provider_id,)).fetchone()
    return _row_to_provider(row) if row is not None else None


def list_providers() -> list[dict[str, Any]]:
    with connect() as conn:
        _ensure_schema(conn)
        rows = conn.execute("SELECT * FROM ai_providers ORDER BY created_at ASC, id ASC").fetchall()
    return [_row_to_provider(row) for row in rows]


def delete_provider(provider_id: str) -> bool:
    with connect() as conn:
        _ensure_schema(conn)
        cursor = conn.execute("DELETE FROM ai_providers WHERE id = ?", (provider_id,))
        conn.commit()
    return cursor.rowcount > 0


def resolve_active_provider(provider_id: str | None = None) -> dict[str, Any]:
    """Pick a provider by id, else the default active one, else any active one."""
    if provider_id:
        provider = fetch_provider(provider_id)
        if provider is None:
            raise ValidationError("provider not found")
        if not provider["is_active"]:
            raise ValidationError("provider is not active")
        return provider

    active = [provider for provider in list_providers() if provider["is_active"]]
    for provider in active:
        if provider["is_default"]:
            return provider
    if active:
        return active[0]
    raise ValidationError("no AI provider configured. Add one in Settings > AI Providers")


ENV_PROVIDERS = (
    ("ANTHROPIC_API_KEY", "anthropic", "Anthropic", "claude-sonnet-4-20250514"),
    ("OPENAI_API_KEY", "openai", "OpenAI", "gpt-4o"),
)


def auto_configure_from_env(vault: CryptoVault) -> list[dict[str, Any]]:
    """Seed providers from environment keys when none are configured yet."""
    if list_providers():
        return []

    created: list[dict[str, Any]] = []
    for env_name, provider_type, name, model in ENV_PROVIDERS:
        api_key = os.getenv(env_name, "").strip()
        if not api_key:
            continue
        created.append(
            create_provider(
                vault,
                {
                    "name": name,
                    "type": provider_type,
                    "api_key": api_key,
                    "model": model,
                    "is_default": not created,
                },
            )
        )

    ollama_url = os.getenv("OLLAMA_BASE_URL", "").strip()
    if ollama_url:
        created.append(
            create_provider(
                vault,
                {
                    "name": "Ollama",
                    "type": "ollama",
                    "base_url": ollama_url,
                    "model": os.getenv("OLLAMA_MODEL", "").strip() or "llama3.2",
                    "is_default": not created,
                },
            )
        )

    if created:
        logger.info(
            json.dumps(
                {"event": "providers.auto_configured", "types": [item["type"] for item in created]},
                ensure_ascii=False,
            )
        )
    return created
