from __future__ import annotations

import json
import re
import sqlite3
import uuid
from dataclasses import dataclass, field as dataclass_field
from typing import Any

from .crypto_vault import CryptoVault
from .errors import ValidationError
from .record_store import connect, json_loads

RESERVED_SLUGS = frozenset(
    {
        "admin",
        "api",
        "s",
        "v",
        "_app",
        "_",
        "assets",
        "static",
        "favicon.ico",
        "robots.txt",
        "sitemap.xml",
        "health",
        "healthz",
        "ready",
        "login",
        "logout",
        "auth",
        "oauth",
        "callback",
        "home",
        "index",
        "default",
        "profile",
    }
)
SLUG_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,99}$")
VIEW_VISIBILITIES = ("public", "unlisted", "password", "private")

SECTION_COLLECTIONS = {
    "experience": "experience",
    "projects": "projects",
    "education": "education",
    "certifications": "certifications",
    "skills": "skills",
    "posts": "posts",
    "talks": "talks",
}

VIEW_TEXT_FIELDS = ("name", "hero_headline", "hero_summary", "cta_text", "cta_url", "accent_color")

CREATE_VIEWS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS views (
    id TEXT PRIMARY KEY,
    slug TEXT NOT NULL UNIQUE COLLATE NOCASE,
    name TEXT NOT NULL DEFAULT '',
    visibility TEXT NOT NULL DEFAULT 'private',
    password_hash TEXT NOT NULL DEFAULT '',
    hero_headline TEXT NOT NULL DEFAULT '',
    hero_summary TEXT NOT NULL DEFAULT '',
    cta_text TEXT NOT NULL DEFAULT '',
    cta_url TEXT NOT NULL DEFAULT '',
    accent_color TEXT NOT NULL DEFAULT '',
    sections_json TEXT NOT NULL DEFAULT '[]',
    is_active INTEGER NOT NULL DEFAULT 1,
    is_default INTEGER NOT NULL DEFAULT 0,
    view_count INTEGER NOT NULL DEFAULT 0,
    last_viewed_at TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
"""

CREATE_INDEX_SQLS = [
    """
    CREATE INDEX IF NOT EXISTS idx_views_default
    ON views (is_default, is_active, visibility);
    """,
]


def _ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(CREATE_VIEWS_TABLE_SQL)
    for sql in CREATE_INDEX_SQLS:
        conn.execute(sql)


def is_reserved_slug(slug: str) -> bool:
    return (slug or "").strip().lower() in RESERVED_SLUGS


def is_valid_slug(slug: str) -> bool:
    value = slug or ""
    return bool(SLUG_PATTERN.match(value)) and not is_reserved_slug(value)


@dataclass
class SectionConfig:
    section: str
    enabled: bool = True
    items: list[str] = dataclass_field(default_factory=list)
    item_config: dict[str, dict[str, Any]] = dataclass_field(default_factory=dict)
    layout: str = ""
    width: str = ""

    @property
    def collection(self) -> str | None:
        return SECTION_COLLECTIONS.get(self.section)

    def overrides_for(self, record_id: str) -> dict[str, Any]:
        config = self.item_config.get(record_id)
        if not isinstance(config, dict):
            return {}
        nested = config.get("overrides")
        if isinstance(nested, dict):
            return nested
        return config

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"section": self.section, "enabled": self.enabled}
        if self.items:
            payload["items"] = list(self.items)
        if self.item_config:
            payload["itemConfig"] = dict(self.item_config)
        if self.layout:
            payload["layout"] = self.layout
        if self.width:
            payload["width"] = self.width
        return payload


def parse_sections(raw: Any) -> list[SectionConfig]:
    if isinstance(raw, str):
        raw = json_loads(raw, fallback=[])
    if not isinstance(raw, list):
        return []

    sections: list[SectionConfig] = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        name = str(entry.get("section") or entry.get("section_name") or "").strip()
        if not name:
            continue
        items = entry.get("items") or []
        item_config = entry.get("itemConfig") or entry.get("item_config") or {}
        sections.append(
            SectionConfig(
                section=name,
                enabled=bool(entry.get("enabled", True)),
                items=[str(item) for item in items if item] if isinstance(items, list) else [],
                item_config=dict(item_config) if isinstance(item_config, dict) else {},
                layout=str(entry.get("layout") or ""),
                width=str(entry.get("width") or ""),
            )
        )
    return sections


def _row_to_view(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "id": str(row["id"]),
        "slug": str(row["slug"]),
        "name": str(row["name"]),
        "visibility": str(row["visibility"]),
        "password_hash": str(row["password_hash"] or ""),
        "hero_headline": str(row["hero_headline"] or ""),
        "hero_summary": str(row["hero_summary"] or ""),
        "cta_text": str(row["cta_text"] or ""),
        "cta_url": str(row["cta_url"] or ""),
        "accent_color": str(row["accent_color"] or ""),
        "sections": [section.to_dict() for section in parse_sections(row["sections_json"])],
        "is_active": bool(row["is_active"]),
        "is_default": bool(row["is_default"]),
        "view_count": int(row["view_count"]),
        "last_viewed_at": row["last_viewed_at"],
        "created_at": str(row["created_at"]),
        "updated_at": str(row["updated_at"]),
    }


def public_view(view: dict[str, Any]) -> dict[str, Any]:
    payload = {key: value for key, value in view.items() if key != "password_hash"}
    payload["has_password"] = bool(view.get("password_hash"))
    return payload


def _validate_view_state(state: dict[str, Any]) -> None:
    slug = str(state.get("slug") or "")
    if not SLUG_PATTERN.match(slug):
        raise ValidationError("slug: must be 1-100 characters of letters, digits, '-' or '_'")
    if is_reserved_slug(slug):
        raise ValidationError("slug: reserved slug cannot be used")

    visibility = state.get("visibility")
    if visibility not in VIEW_VISIBILITIES:
        raise ValidationError(f"visibility: must be one of {', '.join(VIEW_VISIBILITIES)}")
    if visibility == "password" and not state.get("password_hash"):
        raise ValidationError("password: required for password-protected views")
    if state.get("is_default") and visibility != "public":
        raise ValidationError("is_default: only public views can be the default view")


def _apply_changes(state: dict[str, Any], changes: dict[str, Any]) -> dict[str, Any]:
    merged = dict(state)
    for key in VIEW_TEXT_FIELDS:
        if key in changes and changes[key] is not None:
            merged[key] = str(changes[key]).strip()
    if changes.get("slug") is not None:
        merged["slug"] = str(changes["slug"]).strip()
    if changes.get("visibility") is not None:
        merged["visibility"] = str(changes["visibility"]).strip().lower()
    if changes.get("sections") is not None:
        merged["sections"] = [section.to_dict() for section in parse_sections(changes["sections"])]
    for flag in ("is_active", "is_default"):
        if changes.get(flag) is not None:
            merged[flag] = bool(changes[flag])

    password = changes.get("password")
    if isinstance(password, str) and password:
        merged["password_hash"] = CryptoVault.hash_password(password)
    elif changes.get("password_hash"):
        merged["password_hash"] = str(changes["password_hash"])
    return merged


def _clear_other_defaults(conn: sqlite3.Connection, keep_id: str) -> None:
    conn.execute(
        """
        UPDATE views
        SET is_default = 0,
            updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
        WHERE is_default = 1 AND id != ?
        """,
        (keep_id,),
    )


def _is_duplicate_slug(exc: sqlite3.IntegrityError) -> bool:
    return "views.slug" in str(exc)


def create_view(fields: dict[str, Any]) -> dict[str, Any]:
    state = _apply_changes(
        {
            "id": uuid.uuid4().hex,
            "slug": "",
            "name": "",
            "visibility": "private",
            "password_hash": "",
            "hero_headline": "",
            "hero_summary": "",
            "cta_text": "",
            "cta_url": "",
            "accent_color": "",
            "sections": [],
            "is_active": True,
            "is_default": False,
        },
        fields,
    )
    _validate_view_state(state)

    with connect() as conn:
        _ensure_schema(conn)
        if state["is_default"]:
            _clear_other_defaults(conn, state["id"])
        try:
            conn.execute(
                """
                INSERT INTO views (
                    id, slug, name, visibility, password_hash, hero_headline, hero_summary,
                    cta_text, cta_url, accent_color, sections_json, is_active, is_default
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    state["id"],
                    state["slug"],
                    state["name"],
                    state["visibility"],
                    state["password_hash"],
                    state["hero_headline"],
                    state["hero_summary"],
                    state["cta_text"],
                    state["cta_url"],
                    state["accent_color"],
                    json.dumps(state["sections"], ensure_ascii=False),
                    1 if state["is_active"] else 0,
                    1 if state["is_default"] else 0,
                ),
            )
        except sqlite3.IntegrityError as exc:
            conn.rollback()
            if _is_duplicate_slug(exc):
                raise ValidationError("slug: already in use") from exc
            raise
        conn.commit()

    created = fetch_view(state["id"])
    if created is None:
        raise RuntimeError("view insert failed")
    return created


def update_view(view_id: str, changes: dict[str, Any]) -> dict[str, Any] | None:
    current = fetch_view(view_id)
    if current is None:
        return None

    state = _apply_changes(current, changes)
    _validate_view_state(state)

    with connect() as conn:
        _ensure_schema(conn)
        if state["is_default"]:
            _clear_other_defaults(conn, view_id)
        try:
            conn.execute(
                """
                UPDATE views
                SET slug = ?,
                    name = ?,
                    visibility = ?,
                    password_hash = ?,
                    hero_headline = ?,
                    hero_summary = ?,
                    cta_text = ?,
                    cta_url = ?,
                    accent_color = ?,
                    sections_json = ?,
                    is_active = ?,
                    is_default = ?,
                    updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
                WHERE id = ?
                """,
                (
                    state["slug"],
                    state["name"],
                    state["visibility"],
                    state["password_hash"],
                    state["hero_headline"],
                    state["hero_summary"],
                    state["cta_text"],
                    state["cta_url"],
                    state["accent_color"],
                    json.dumps(state["sections"], ensure_ascii=False),
                    1 if state["is_active"] else 0,
                    1 if state["is_default"] else 0,
                    view_id,
                ),
            )
        except sqlite3.IntegrityError as exc:
            conn.rollback()
            if _is_duplicate_slug(exc):
                raise ValidationError("slug: already in use") from exc
            raise
        conn.commit()

    return fetch_view(view_id)


def set_view_password(view_id: str, password: str) -> dict[str, Any] | None:
    if not password:
        raise ValidationError("password: required")
    return update_view(view_id, {"password": password, "visibility": "password", "is_default": False})


def fetch_view(view_id: str) -> dict[str, Any] | None:
    with connect() as conn:
        _ensure_schema(conn)
        row = conn.execute("SELECT * FROM views WHERE id = ? LIMIT 1", (view_id,)).fetchone()
    return _row_to_view(row) if row is not None else None


def fetch_view_by_slug(slug: str, *, active_only: bool = True) -> dict[str, Any] | None:
    if not SLUG_PATTERN.match(slug or "") or is_reserved_slug(slug):
        return None

    sql = "SELECT * FROM views WHERE slug = ?"
    if active_only:
        sql += " AND is_active = 1"
    with connect() as conn:
        _ensure_schema(conn)
        row = conn.execute(f"{sql} LIMIT 1", (slug,)).fetchone()
    return _row_to_view(row) if row is not None else None


def list_views() -> list[dict[str, Any]]:
    with connect() as conn:
        _ensure_schema(conn)
        rows = conn.execute("SELECT * FROM views ORDER BY created_at ASC, id ASC").fetchall()
    return [_row_to_view(row) for row in rows]


def delete_view(view_id: str) -> bool:
    with connect() as conn:
        _ensure_schema(conn)
        cursor = conn.execute("DELETE FROM views WHERE id = ?", (view_id,))
        conn.commit()
    return cursor.rowcount > 0


def resolve_default_view() -> dict[str, Any] | None:
    with connect() as conn:
        _ensure_schema(conn)
        row = conn.execute(
            """
            SELECT * FROM views
            WHERE is_default = 1 AND is_active = 1 AND visibility = 'public'
            LIMIT 1
            """
        ).fetchone()
        if row is None:
            row = conn.execute(
                """
                SELECT * FROM views
                WHERE is_active = 1 AND visibility = 'public'
                ORDER BY created_at ASC, id ASC
                LIMIT 1
                """
            ).fetchone()
    return _row_to_view(row) if row is not None else None


def record_view_hit(view_id: str) -> None:
    with connect() as conn:
        _ensure_schema(conn)
        conn.execute(
            """
            UPDATE views
            SET view_count = view_count + 1,
                last_viewed_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
            WHERE id = ?
            """,
            (view_id,),
        )
        conn.commit()
