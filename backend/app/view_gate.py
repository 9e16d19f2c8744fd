from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from .crypto_vault import CryptoVault
from .record_store import LIVE_STORE, StoreView, fetch_records_by_ids, find_visible_records
from .share_store import validate_share_token
from .view_store import SectionConfig, parse_sections

AccessOutcome = Literal["granted", "password_prompt", "not_found"]

OVERRIDABLE_FIELDS: dict[str, frozenset[str]] = {
    "experience": frozenset({"title", "description", "bullets"}),
    "projects": frozenset({"title", "summary", "description"}),
    "education": frozenset({"degree", "field", "description"}),
    "talks": frozenset({"title", "description"}),
}

DEFAULT_SECTION_LAYOUTS = {
    "experience": "default",
    "projects": "grid-3",
    "education": "default",
    "certifications": "grouped",
    "skills": "grouped",
    "posts": "grid-3",
    "talks": "default",
}

HIDDEN_RECORD_FIELDS = frozenset({"password_hash"})
PROFILE_FIELDS = (
    "name",
    "headline",
    "location",
    "summary",
    "contact_email",
    "contact_links",
    "avatar",
    "accent_color",
)
HERO_FIELDS = ("hero_headline", "hero_summary", "cta_text", "cta_url", "accent_color")
SECTION_FETCH_LIMIT = 100


@dataclass(frozen=True)
class Principal:
    is_owner: bool = False
    share_view_id: str | None = None
    password_view_id: str | None = None


def resolve_principal(
    *,
    view: dict[str, Any],
    vault: CryptoVault,
    is_owner: bool,
    share_token: str = "",
    password_token: str = "",
    count_use: bool = True,
) -> Principal:
    """Validate only the credentials that can change the outcome for this view.

    With ``count_use`` a share token is counted as one use when it unlocks an unlisted view.
    """
    if is_owner:
        return Principal(is_owner=True)

    visibility = view["visibility"]
    password_view_id = None
    share_view_id = None

    if visibility in {"password", "unlisted"} and password_token:
        password_view_id = vault.read_view_access_token(password_token)

    if visibility == "unlisted" and share_token and password_view_id != view["id"]:
        result = validate_share_token(vault, share_token, view_id=view["id"], count_use=count_use)
        if result.valid:
            share_view_id = result.view_id

    return Principal(share_view_id=share_view_id, password_view_id=password_view_id)


def decide_access(view: dict[str, Any], principal: Principal) -> AccessOutcome:
    if principal.is_owner:
        return "granted"

    view_id = view["id"]
    visibility = view["visibility"]
    if visibility == "public":
        return "granted"
    if visibility == "unlisted":
        if view_id in {principal.share_view_id, principal.password_view_id}:
            return "granted"
        return "not_found"
    if visibility == "password":
        if principal.password_view_id == view_id:
            return "granted"
        return "password_prompt"
    return "not_found"


def build_access_payload(view: dict[str, Any]) -> dict[str, Any]:
    visibility = view["visibility"]
    return {
        "id": view["id"],
        "slug": view["slug"],
        "visibility": visibility,
        "requires_password": visibility == "password",
        "requires_token": visibility == "unlisted",
    }


def build_password_prompt(view: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": view["id"],
        "slug": view["slug"],
        "name": view["name"],
        "visibility": view["visibility"],
        "requires_password": True,
    }


def is_visible_record(record: dict[str, Any], *, view_id: str | None = None) -> bool:
    if record.get("visibility") == "private" or record.get("is_draft"):
        return False
    if view_id:
        per_view = record.get("view_visibility")
        if isinstance(per_view, dict) and per_view.get(view_id) is False:
            return False
    return True


def serialize_record(record: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in record.items() if key not in HIDDEN_RECORD_FIELDS}


def _is_empty_override(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, list, dict)) and not value:
        return True
    return False


def apply_overrides(record: dict[str, Any], section: SectionConfig) -> dict[str, Any]:
    item = serialize_record(record)
    allowed = OVERRIDABLE_FIELDS.get(section.section, frozenset())
    if not allowed:
        return item

    for field_name, value in section.overrides_for(item["id"]).items():
        if field_name == "id" or field_name not in allowed or _is_empty_override(value):
            continue
        item[field_name] = value
    return item


def collect_section_items(
    section: SectionConfig,
    *,
    view_id: str,
    store: StoreView = LIVE_STORE,
) -> list[dict[str, Any]] | None:
    collection = section.collection
    if collection is None:
        return None

    read_collection = store.read_collection(collection)
    if section.items:
        records = fetch_records_by_ids(read_collection, section.items)
    else:
        records = find_visible_records(read_collection, limit=SECTION_FETCH_LIMIT)

    return [apply_overrides(record, section) for record in records if is_visible_record(record, view_id=view_id)]


def collect_profile(*, store: StoreView = LIVE_STORE) -> dict[str, Any] | None:
    profiles = find_visible_records(store.read_collection("profile"), limit=1)
    if not profiles:
        return None
    profile = profiles[0]
    payload: dict[str, Any] = {"id": profile["id"], "visibility": profile["visibility"]}
    for field_name in PROFILE_FIELDS:
        payload[field_name] = profile.get(field_name, "" if field_name != "contact_links" else [])
    return payload


def build_view_payload(view: dict[str, Any], *, store: StoreView = LIVE_STORE) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": view["id"],
        "slug": view["slug"],
        "name": view["name"],
        "visibility": view["visibility"],
    }
    for field_name in HERO_FIELDS:
        value = view.get(field_name)
        if value:
            payload[field_name] = value

    sections: dict[str, list[dict[str, Any]]] = {}
    section_order: list[str] = []
    section_layouts: dict[str, str] = {}
    section_widths: dict[str, str] = {}

    for section in parse_sections(view.get("sections")):
        if not section.enabled:
            continue
        items = collect_section_items(section, view_id=view["id"], store=store)
        if items is None:
            continue
        section_order.append(section.section)
        section_layouts[section.section] = section.layout or DEFAULT_SECTION_LAYOUTS.get(section.section, "default")
        section_widths[section.section] = section.width or "full"
        sections[section.section] = items

    payload["sections"] = sections
    payload["section_order"] = section_order
    payload["section_layouts"] = section_layouts
    payload["section_widths"] = section_widths

    profile = collect_profile(store=store)
    if profile is not None:
        payload["profile"] = profile
    return payload
