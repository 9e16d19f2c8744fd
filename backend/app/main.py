from __future__ import annotations

import asyncio
import json
import logging
import os
import sqlite3
import threading
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import PurePath
from typing import Any, Callable

from fastapi import APIRouter, Body, Depends, FastAPI, File, Form, Query, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, RedirectResponse, Response
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from .auth_store import (
    create_owner_session,
    ensure_owner_account,
    revoke_owner_session,
    validate_owner_session,
    verify_owner_with_reason,
)
from .config import AppConfig, check_startup_security, load_config
from .crypto_vault import VIEW_ACCESS_TTL_SECONDS, CryptoVault
from .errors import (
    AppError,
    ForbiddenError,
    NotFoundError,
    ProcessingError,
    RateLimitedError,
    UnauthorizedError,
    ValidationError,
)
from .provider_store import (
    auto_configure_from_env,
    create_provider,
    delete_provider,
    fetch_provider,
    list_providers,
    public_provider,
    record_test_result,
    resolve_active_provider,
    update_provider,
)
from .providers import ProviderAdapter
from .rate_limit import RateLimiter, SlidingWindowLimiter
from .record_store import (
    CONTENT_COLLECTIONS,
    DEMO_MODE_FLAG,
    LIVE_STORE,
    SAFE_FIELD_PATTERN,
    StoreView,
    clear_file_field,
    delete_record,
    fetch_record,
    insert_record,
    is_demo_mode,
    list_records,
    record_file_path,
    resolve_store_view,
    save_record_file,
    set_site_flag,
    update_record,
)
from .resume_ingest import MAX_UPLOAD_BYTES, ResumeIngestor, validate_upload
from .resume_pipeline import (
    DEFAULT_FORMAT,
    DEFAULT_LENGTH,
    DEFAULT_STYLE,
    GenerationConfig,
    PandocConverter,
    ResumeGenerator,
    build_download_url,
)
from .resume_store import (
    EXPORT_FORMATS,
    EXPORTS_COLLECTION,
    ExportCollector,
    delete_export,
    fetch_export,
    list_exports,
)
from .share_store import (
    ShareValidation,
    generate_share_token,
    list_share_tokens,
    revoke_share_token,
    validate_share_token,
)
from .view_gate import (
    build_access_payload,
    build_password_prompt,
    build_view_payload,
    decide_access,
    resolve_principal,
)
from .view_store import (
    create_view,
    delete_view,
    fetch_view,
    fetch_view_by_slug,
    is_reserved_slug,
    is_valid_slug,
    list_views,
    public_view,
    record_view_hit,
    resolve_default_view,
    set_view_password,
    update_view,
)

AUTH_COOKIE = "me_auth"
SHARE_COOKIE = "me_share_token"
SHARE_COOKIE_DEFAULT_MAX_AGE = 30 * 24 * 3600
MAX_RECORD_FILE_BYTES = 10 * 1024 * 1024
MAX_TEXT_LENGTH = 20_000
DISCONNECT_POLL_SECONDS = 0.5

ERROR_CODE_BY_STATUS = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    429: "TOO_MANY_REQUESTS",
    500: "INTERNAL_ERROR",
}

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper(), format="%(message)s")
logger = logging.getLogger("meyaml.api")


class AuthLoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=1, max_length=256)


class SectionPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    section: str | None = None
    section_name: str | None = None
    enabled: bool = True
    items: list[str] | None = None
    itemConfig: dict[str, Any] | None = None
    item_config: dict[str, Any] | None = None
    layout: str | None = None
    width: str | None = None


class ViewCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    slug: str = Field(min_length=1, max_length=100)
    name: str = Field(min_length=1, max_length=200)
    visibility: str = "private"
    password: str | None = Field(default=None, max_length=256)
    hero_headline: str | None = Field(default=None, max_length=MAX_TEXT_LENGTH)
    hero_summary: str | None = Field(default=None, max_length=MAX_TEXT_LENGTH)
    cta_text: str | None = Field(default=None, max_length=200)
    cta_url: str | None = Field(default=None, max_length=2048)
    accent_color: str | None = Field(default=None, max_length=32)
    sections: list[SectionPayload] | None = None
    is_active: bool | None = None
    is_default: bool | None = None


class ViewUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    slug: str | None = Field(default=None, min_length=1, max_length=100)
    name: str | None = Field(default=None, min_length=1, max_length=200)
    visibility: str | None = None
    password: str | None = Field(default=None, max_length=256)
    hero_headline: str | None = Field(default=None, max_length=MAX_TEXT_LENGTH)
    hero_summary: str | None = Field(default=None, max_length=MAX_TEXT_LENGTH)
    cta_text: str | None = Field(default=None, max_length=200)
    cta_url: str | None = Field(default=None, max_length=2048)
    accent_color: str | None = Field(default=None, max_length=32)
    sections: list[SectionPayload] | None = None
    is_active: bool | None = None
    is_default: bool | None = None


class ShareValidateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    token: str = Field(default="", max_length=512)
    view_id: str | None = None


class ShareGenerateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    view_id: str = Field(min_length=1)
    name: str = Field(default="", max_length=200)
    expires_at: str | None = None
    max_uses: int | None = None


class PasswordCheckRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    view_id: str = Field(min_length=1)
    password: str = Field(default="", max_length=256)


class PasswordSetRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    view_id: str = Field(min_length=1)
    password: str = Field(min_length=1, max_length=256)


class ProviderCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=200)
    type: str
    api_key: str | None = Field(default=None, max_length=1024)
    base_url: str | None = Field(default=None, max_length=2048)
    model: str | None = Field(default=None, max_length=200)
    is_active: bool = True
    is_default: bool = False


class ProviderUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1, max_length=200)
    type: str | None = None
    api_key: str | None = Field(default=None, max_length=1024)
    base_url: str | None = Field(default=None, max_length=2048)
    model: str | None = Field(default=None, max_length=200)
    is_active: bool | None = None
    is_default: bool | None = None


class GenerateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    format: str = DEFAULT_FORMAT
    provider_id: str | None = None
    target_role: str = Field(default="", max_length=200)
    style: str = DEFAULT_STYLE
    length: str = DEFAULT_LENGTH
    emphasis: list[str] = Field(default_factory=list, max_length=20)


def get_request_id(request: Request) -> str:
    return getattr(request.state, "request_id", str(uuid.uuid4()))


def set_error_context(request: Request, *, error_code: str, exception_type: str) -> None:
    request.state.error_code = error_code
    request.state.exception_type = exception_type


def log_request_event(
    *,
    path: str,
    method: str,
    status: int,
    duration_ms: int,
    request_id: str,
    client_ip: str,
    error_code: str | None,
    exception_type: str | None,
) -> None:
    logger.info(
        json.dumps(
            {
                "path": path,
                "method": method,
                "status": status,
                "duration_ms": duration_ms,
                "requestId": request_id,
                "client_ip": client_ip,
                "error_code": error_code,
                "exception_type": exception_type,
            },
            ensure_ascii=False,
        )
    )


def parse_owner_session_token(request: Request) -> str:
    header_token = request.headers.get("x-session-token", "").strip()
    if header_token:
        return header_token
    return request.cookies.get(AUTH_COOKIE, "").strip()


def parse_share_token(request: Request) -> str:
    for candidate in (
        request.cookies.get(SHARE_COOKIE, ""),
        request.headers.get("x-share-token", ""),
        request.query_params.get("token", ""),
    ):
        if candidate.strip():
            return candidate.strip()
    return ""


def parse_password_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "").strip()
    if auth_header.lower().startswith("bearer "):
        return auth_header[7:].strip()
    return request.headers.get("x-password-token", "").strip()


def get_optional_owner(request: Request) -> dict[str, Any] | None:
    if not hasattr(request.state, "owner"):
        token = parse_owner_session_token(request)
        owner = validate_owner_session(request.app.state.vault, token=token) if token else None
        request.state.owner = owner
    return request.state.owner


def require_owner(request: Request) -> dict[str, Any]:
    owner = get_optional_owner(request)
    if owner is None:
        raise UnauthorizedError("authentication required")
    return owner


def rate_limited(tier: str) -> Callable[[Request], None]:
    def dependency(request: Request) -> None:
        limiter: RateLimiter = request.app.state.rate_limiter
        info = limiter.allow_with_info(request, tier)
        request.state.rate_limit = {
            key: value for key, value in info.headers().items() if key.startswith("X-RateLimit-")
        }
        if not info.allowed:
            raise RateLimitedError(info.retry_after_s)

    return dependency


def ensure_content_collection(collection: str) -> None:
    if collection not in CONTENT_COLLECTIONS:
        raise NotFoundError("collection not found")


def share_cookie_max_age(result: ShareValidation) -> int:
    if result.expires_at is None:
        return SHARE_COOKIE_DEFAULT_MAX_AGE
    remaining = int((result.expires_at - datetime.now(timezone.utc)).total_seconds())
    return max(1, remaining)


def redirect_with_share_cookie(request: Request, result: ShareValidation, token: str) -> RedirectResponse:
    config: AppConfig = request.app.state.config
    response = RedirectResponse(url=f"/{result.view_slug}", status_code=302)
    response.set_cookie(
        SHARE_COOKIE,
        token,
        max_age=share_cookie_max_age(result),
        path="/",
        httponly=True,
        samesite="lax",
        secure=config.secure_cookies,
    )
    return response


def format_export_item(export: dict[str, Any]) -> dict[str, Any]:
    item: dict[str, Any] = {
        "id": export["id"],
        "view_id": export["view_id"],
        "format": export["format"],
        "status": export["status"],
        "config": export["generation_config"],
        "created_at": export["created_at"],
        "generated_at": export["generated_at"],
    }
    if export["status"] == "completed" and export["file"]:
        item["download_url"] = build_download_url(export["id"], export["file"])
    if export["status"] == "failed":
        item["error_message"] = export["error_message"]
    return item


router = APIRouter()


@router.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/api/auth/login", dependencies=[Depends(rate_limited("strict"))])
def auth_login(payload: AuthLoginRequest, request: Request, response: Response) -> dict[str, Any]:
    config: AppConfig = request.app.state.config
    owner, reason = verify_owner_with_reason(
        email=payload.email,
        password=payload.password,
        admin_emails=config.admin_emails,
    )
    if owner is None:
        logger.info(json.dumps({"event": "auth.login_failed", "reason": reason}, ensure_ascii=False))
        raise UnauthorizedError("invalid email or password")

    session = create_owner_session(
        request.app.state.vault,
        owner_id=owner["id"],
        ttl_seconds=config.session_ttl_seconds,
    )
    response.set_cookie(
        AUTH_COOKIE,
        session["token"],
        httponly=True,
        samesite="lax",
        secure=config.secure_cookies,
        max_age=int(session["ttl_seconds"]),
    )
    return {"owner": owner, "token": session["token"], "expires_at": session["expires_at"]}


@router.get("/api/auth/me")
def auth_me(owner: dict[str, Any] = Depends(require_owner)) -> dict[str, Any]:
    return {
        "owner": {"id": owner["id"], "email": owner["email"]},
        "expires_at": owner["expires_at"],
    }


@router.post("/api/auth/logout")
def auth_logout(request: Request, response: Response) -> dict[str, bool]:
    token = parse_owner_session_token(request)
    revoked = revoke_owner_session(request.app.state.vault, token=token) if token else False
    response.delete_cookie(AUTH_COOKIE)
    return {"success": revoked}


@router.get("/api/views")
def views_list(_: dict[str, Any] = Depends(require_owner)) -> dict[str, Any]:
    views = [public_view(view) for view in list_views()]
    return {"views": views, "count": len(views)}


@router.post("/api/views", status_code=201)
def views_create(payload: ViewCreateRequest, _: dict[str, Any] = Depends(require_owner)) -> dict[str, Any]:
    return public_view(create_view(payload.model_dump(exclude_none=True)))


@router.get("/api/views/{view_id}")
def views_detail(view_id: str, _: dict[str, Any] = Depends(require_owner)) -> dict[str, Any]:
    view = fetch_view(view_id)
    if view is None:
        raise NotFoundError("view not found")
    return public_view(view)


@router.patch("/api/views/{view_id}")
def views_update(
    view_id: str,
    payload: ViewUpdateRequest,
    _: dict[str, Any] = Depends(require_owner),
) -> dict[str, Any]:
    view = update_view(view_id, payload.model_dump(exclude_none=True))
    if view is None:
        raise NotFoundError("view not found")
    return public_view(view)


@router.delete("/api/views/{view_id}")
def views_delete(view_id: str, _: dict[str, Any] = Depends(require_owner)) -> dict[str, bool]:
    if not delete_view(view_id):
        raise NotFoundError("view not found")
    return {"success": True}


@router.get("/api/view/{slug}/access", dependencies=[Depends(rate_limited("normal"))])
def view_access(slug: str, request: Request) -> dict[str, Any]:
    owner = get_optional_owner(request)
    view = fetch_view_by_slug(slug, active_only=owner is None)
    if view is None:
        raise NotFoundError("view not found")

    principal = resolve_principal(
        view=view,
        vault=request.app.state.vault,
        is_owner=owner is not None,
        share_token=parse_share_token(request),
        password_token=parse_password_token(request),
        count_use=False,
    )
    if decide_access(view, principal) == "not_found":
        raise NotFoundError("view not found")
    return build_access_payload(view)


@router.get("/api/view/{slug}/data", dependencies=[Depends(rate_limited("normal"))])
def view_data(slug: str, request: Request) -> dict[str, Any]:
    owner = get_optional_owner(request)
    view = fetch_view_by_slug(slug, active_only=owner is None)
    if view is None:
        raise NotFoundError("view not found")

    principal = resolve_principal(
        view=view,
        vault=request.app.state.vault,
        is_owner=owner is not None,
        share_token=parse_share_token(request),
        password_token=parse_password_token(request),
    )
    outcome = decide_access(view, principal)
    if outcome == "not_found":
        raise NotFoundError("view not found")
    if outcome == "password_prompt":
        return build_password_prompt(view)

    payload = build_view_payload(view, store=resolve_store_view())
    if owner is None:
        try:
            record_view_hit(view["id"])
        except sqlite3.Error:
            logger.warning(json.dumps({"event": "view.hit_failed", "view_id": view["id"]}, ensure_ascii=False))
    return payload


@router.get("/api/default-view", dependencies=[Depends(rate_limited("normal"))])
def default_view() -> dict[str, Any]:
    view = resolve_default_view()
    if view is None:
        return {"has_default": False, "fallback": "homepage"}
    return {"has_default": True, "slug": view["slug"], "view_id": view["id"], "name": view["name"]}


@router.post("/api/share/validate", dependencies=[Depends(rate_limited("moderate"))])
def share_validate(payload: ShareValidateRequest, request: Request) -> dict[str, Any]:
    token = payload.token.strip()
    if not token:
        raise ValidationError("token: required")
    result = validate_share_token(request.app.state.vault, token, view_id=payload.view_id or None)
    return result.to_payload()


@router.post("/api/share/generate", status_code=201)
def share_generate(
    payload: ShareGenerateRequest,
    request: Request,
    _: dict[str, Any] = Depends(require_owner),
) -> dict[str, Any]:
    return generate_share_token(
        request.app.state.vault,
        view_id=payload.view_id,
        name=payload.name,
        expires_at=payload.expires_at,
        max_uses=payload.max_uses,
    )


@router.post("/api/share/revoke/{token_id}")
def share_revoke(token_id: str, _: dict[str, Any] = Depends(require_owner)) -> dict[str, bool]:
    if not revoke_share_token(token_id):
        raise NotFoundError("share token not found")
    return {"success": True}


@router.get("/api/share/tokens")
def share_tokens(
    view_id: str | None = Query(default=None),
    _: dict[str, Any] = Depends(require_owner),
) -> dict[str, Any]:
    tokens = list_share_tokens(view_id=view_id)
    return {"tokens": tokens, "count": len(tokens)}


@router.post("/api/password/check", dependencies=[Depends(rate_limited("strict"))])
def password_check(payload: PasswordCheckRequest, request: Request) -> dict[str, Any]:
    view = fetch_view(payload.view_id)
    if view is None or not view["is_active"]:
        raise NotFoundError("view not found")
    if view["visibility"] != "password":
        raise ValidationError("view is not password protected")
    if not CryptoVault.check_password(payload.password, view["password_hash"]):
        raise UnauthorizedError("incorrect password")

    token, _ = request.app.state.vault.issue_view_access_token(view["id"])
    return {"access_token": token, "expires_in": VIEW_ACCESS_TTL_SECONDS}


@router.post("/api/password/set")
def password_set(payload: PasswordSetRequest, _: dict[str, Any] = Depends(require_owner)) -> dict[str, Any]:
    view = set_view_password(payload.view_id, payload.password)
    if view is None:
        raise NotFoundError("view not found")
    return public_view(view)


@router.get("/api/ai/providers")
def providers_list(_: dict[str, Any] = Depends(require_owner)) -> dict[str, Any]:
    providers = [public_provider(provider) for provider in list_providers()]
    return {"providers": providers, "count": len(providers)}


@router.post("/api/ai/providers", status_code=201)
def providers_create(
    payload: ProviderCreateRequest,
    request: Request,
    _: dict[str, Any] = Depends(require_owner),
) -> dict[str, Any]:
    return public_provider(create_provider(request.app.state.vault, payload.model_dump()))


@router.patch("/api/ai/providers/{provider_id}")
def providers_update(
    provider_id: str,
    payload: ProviderUpdateRequest,
    request: Request,
    _: dict[str, Any] = Depends(require_owner),
) -> dict[str, Any]:
    provider = update_provider(request.app.state.vault, provider_id, payload.model_dump(exclude_none=True))
    if provider is None:
        raise NotFoundError("provider not found")
    return public_provider(provider)


@router.delete("/api/ai/providers/{provider_id}")
def providers_delete(provider_id: str, _: dict[str, Any] = Depends(require_owner)) -> dict[str, bool]:
    if not delete_provider(provider_id):
        raise NotFoundError("provider not found")
    return {"success": True}


@router.post("/api/ai/test/{provider_id}")
def providers_test(provider_id: str, request: Request, _: dict[str, Any] = Depends(require_owner)) -> dict[str, Any]:
    provider = fetch_provider(provider_id)
    if provider is None:
        raise NotFoundError("provider not found")

    ok, error = request.app.state.adapter.test_connection(provider)
    record_test_result(provider_id, success=ok)
    if ok:
        return {"success": True}
    return {"success": False, "error": error}


@router.get("/api/ai/status")
def ai_status(request: Request) -> dict[str, Any]:
    auto_configure_from_env(request.app.state.vault)
    active = [provider for provider in list_providers() if provider["is_active"]]
    default = next((provider for provider in active if provider["is_default"]), active[0] if active else None)
    return {
        "available": bool(active),
        "provider_count": len(active),
        "default_provider": (
            {"id": default["id"], "name": default["name"], "type": default["type"], "model": default["model"]}
            if default
            else None
        ),
    }


@router.get("/api/ai-print/status")
def ai_print_status(request: Request) -> dict[str, Any]:
    pandoc_installed = request.app.state.converter.is_available()
    ai_configured = any(provider["is_active"] for provider in list_providers())
    return {
        "available": pandoc_installed and ai_configured,
        "pandoc_installed": pandoc_installed,
        "ai_configured": ai_configured,
        "supported_formats": list(EXPORT_FORMATS),
    }


def run_generation(
    slug: str,
    payload: GenerateRequest,
    request: Request,
    cancel_event: threading.Event,
) -> dict[str, Any]:
    state = request.app.state
    owner = get_optional_owner(request)
    if owner is None:
        decision = state.generation_limiter.consume(key=state.rate_limiter.client_ip(request))
        if not decision.allowed:
            raise RateLimitedError(decision.reset_seconds, decision.message or "too many requests")

    view = fetch_view_by_slug(slug, active_only=owner is None)
    if view is None:
        raise NotFoundError("view not found")
    if owner is None and view["visibility"] not in {"public", "unlisted"}:
        raise ForbiddenError("resume generation is not available for this view")

    export_format = (payload.format or DEFAULT_FORMAT).strip().lower()
    if export_format not in EXPORT_FORMATS:
        raise ValidationError("format: must be pdf or docx")
    if not state.converter.is_available():
        raise ProcessingError(
            "unavailable",
            "PDF generation is not available. Pandoc is not installed.",
            user_action="Install pandoc on the server and try again.",
        )

    provider = resolve_active_provider(payload.provider_id)
    config = GenerationConfig(
        target_role=payload.target_role.strip(),
        style=payload.style.strip() or DEFAULT_STYLE,
        length=payload.length.strip() or DEFAULT_LENGTH,
        emphasis=[item.strip() for item in payload.emphasis if item.strip()],
    )
    export = state.generator.generate(
        view=view,
        provider=provider,
        export_format=export_format,
        config=config,
        store=resolve_store_view(),
        cancel_event=cancel_event,
    )
    return {
        "export_id": export["id"],
        "status": export["status"],
        "format": export["format"],
        "download_url": export["download_url"],
        "generated_at": export["generated_at"],
    }


async def run_until_disconnect(
    request: Request,
    cancel_event: threading.Event,
    func: Callable[..., Any],
    *args: Any,
) -> Any:
    """Runs ``func`` in the threadpool and sets ``cancel_event`` once the client goes away."""
    job = asyncio.ensure_future(run_in_threadpool(func, *args))
    try:
        while True:
            done, _ = await asyncio.wait({job}, timeout=DISCONNECT_POLL_SECONDS)
            if done:
                return job.result()
            if not cancel_event.is_set() and await request.is_disconnected():
                logger.info(json.dumps({"event": "request.disconnected", "requestId": get_request_id(request)}))
                cancel_event.set()
    except asyncio.CancelledError:
        cancel_event.set()
        raise


@router.post("/api/view/{slug}/generate")
async def generate_resume(slug: str, payload: GenerateRequest, request: Request) -> dict[str, Any]:
    cancel_event = threading.Event()
    return await run_until_disconnect(request, cancel_event, run_generation, slug, payload, request, cancel_event)


@router.get("/api/view/{slug}/exports")
def exports_list(slug: str, _: dict[str, Any] = Depends(require_owner)) -> dict[str, Any]:
    view = fetch_view_by_slug(slug, active_only=False)
    if view is None:
        raise NotFoundError("view not found")
    exports = [format_export_item(export) for export in list_exports(view_id=view["id"])]
    return {"exports": exports, "count": len(exports)}


@router.delete("/api/view/{slug}/exports/{export_id}")
def exports_delete(slug: str, export_id: str, _: dict[str, Any] = Depends(require_owner)) -> dict[str, bool]:
    view = fetch_view_by_slug(slug, active_only=False)
    if view is None:
        raise NotFoundError("view not found")
    export = fetch_export(export_id)
    if export is None or export["view_id"] != view["id"]:
        raise NotFoundError("export not found")
    delete_export(export_id)
    return {"success": True}


@router.get("/api/files/{collection}/{record_id}/{filename}")
def serve_file(collection: str, record_id: str, filename: str, request: Request) -> FileResponse:
    if collection == EXPORTS_COLLECTION:
        export = fetch_export(record_id)
        if export is None or export["file"] != filename:
            raise NotFoundError("file not found")
        storage_collection = EXPORTS_COLLECTION
    else:
        ensure_content_collection(collection)
        store = resolve_store_view()
        storage_collection = store.read_collection(collection)
        record = fetch_record(storage_collection, record_id)
        if record is None or filename not in {value for value in record.values() if isinstance(value, str)}:
            raise NotFoundError("file not found")
        if record["visibility"] == "private" and get_optional_owner(request) is None:
            raise NotFoundError("file not found")

    path = record_file_path(storage_collection, record_id, filename)
    if not path.is_file():
        raise NotFoundError("file not found")
    return FileResponse(path, filename=filename)


@router.post("/api/resume/upload")
def resume_upload(
    request: Request,
    file: UploadFile = File(...),
    provider_id: str | None = Form(default=None),
    _: dict[str, Any] = Depends(require_owner),
) -> dict[str, Any]:
    content = file.file.read(MAX_UPLOAD_BYTES + 1)
    filename = PurePath(file.filename or "resume").name
    validate_upload(content, filename=filename, content_type=file.content_type)
    provider = resolve_active_provider(provider_id or None)
    return request.app.state.ingestor.ingest(
        content=content,
        filename=filename,
        content_type=file.content_type,
        provider=provider,
        store=LIVE_STORE,
    )


@router.get("/api/collections/{collection}/records")
def records_list(
    collection: str,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    _: dict[str, Any] = Depends(require_owner),
) -> dict[str, Any]:
    ensure_content_collection(collection)
    items = list_records(resolve_store_view().read_collection(collection), limit=limit, offset=offset)
    return {"items": items, "count": len(items)}


@router.post("/api/collections/{collection}/records", status_code=201)
def records_create(
    collection: str,
    payload: dict[str, Any] = Body(...),
    _: dict[str, Any] = Depends(require_owner),
) -> dict[str, Any]:
    ensure_content_collection(collection)
    return insert_record(resolve_store_view().write_collection(collection), payload)


def _fetch_owned_record(store: StoreView, collection: str, record_id: str) -> dict[str, Any]:
    ensure_content_collection(collection)
    record = fetch_record(store.read_collection(collection), record_id)
    if record is None:
        raise NotFoundError("record not found")
    return record


@router.get("/api/collections/{collection}/records/{record_id}")
def records_detail(collection: str, record_id: str, _: dict[str, Any] = Depends(require_owner)) -> dict[str, Any]:
    return _fetch_owned_record(resolve_store_view(), collection, record_id)


@router.patch("/api/collections/{collection}/records/{record_id}")
def records_update(
    collection: str,
    record_id: str,
    payload: dict[str, Any] = Body(...),
    _: dict[str, Any] = Depends(require_owner),
) -> dict[str, Any]:
    ensure_content_collection(collection)
    record = update_record(resolve_store_view().write_collection(collection), record_id, payload)
    if record is None:
        raise NotFoundError("record not found")
    return record


@router.delete("/api/collections/{collection}/records/{record_id}")
def records_delete(collection: str, record_id: str, _: dict[str, Any] = Depends(require_owner)) -> dict[str, bool]:
    ensure_content_collection(collection)
    if not delete_record(resolve_store_view().write_collection(collection), record_id):
        raise NotFoundError("record not found")
    return {"success": True}


@router.post("/api/collections/{collection}/records/{record_id}/files/{field_name}")
def records_file_upload(
    collection: str,
    record_id: str,
    field_name: str,
    file: UploadFile = File(...),
    _: dict[str, Any] = Depends(require_owner),
) -> dict[str, Any]:
    store = resolve_store_view()
    _fetch_owned_record(store, collection, record_id)
    if not SAFE_FIELD_PATTERN.match(field_name):
        raise ValidationError("field: invalid")

    content = file.file.read(MAX_RECORD_FILE_BYTES + 1)
    if len(content) > MAX_RECORD_FILE_BYTES:
        raise ValidationError("file: too large (maximum 10 MB)")
    filename = PurePath(file.filename or "").name
    target = store.write_collection(collection)
    save_record_file(target, record_id, filename, content)
    updated = update_record(target, record_id, {field_name: filename})
    if updated is None:
        raise NotFoundError("record not found")
    return updated


@router.delete("/api/collections/{collection}/records/{record_id}/files/{field_name}")
def records_file_delete(
    collection: str,
    record_id: str,
    field_name: str,
    _: dict[str, Any] = Depends(require_owner),
) -> dict[str, Any]:
    ensure_content_collection(collection)
    record = clear_file_field(resolve_store_view().write_collection(collection), record_id, field_name)
    if record is None:
        raise NotFoundError("record not found")
    return record


@router.get("/api/demo/status")
def demo_status() -> dict[str, bool]:
    return {"demo_mode": is_demo_mode()}


@router.post("/api/demo/enable")
def demo_enable(_: dict[str, Any] = Depends(require_owner)) -> dict[str, bool]:
    set_site_flag(DEMO_MODE_FLAG, "true")
    return {"demo_mode": True}


@router.post("/api/demo/disable")
def demo_disable(_: dict[str, Any] = Depends(require_owner)) -> dict[str, bool]:
    set_site_flag(DEMO_MODE_FLAG, "false")
    return {"demo_mode": False}


@router.get("/s/{token}", dependencies=[Depends(rate_limited("moderate"))])
def share_link(token: str, request: Request) -> RedirectResponse:
    result = validate_share_token(request.app.state.vault, token)
    if not result.valid:
        raise NotFoundError("not found")
    return redirect_with_share_cookie(request, result, token)


@router.get("/v/{slug}")
def legacy_view_link(slug: str) -> RedirectResponse:
    if not is_valid_slug(slug) or is_reserved_slug(slug):
        raise NotFoundError("not found")
    return RedirectResponse(url=f"/{slug}", status_code=301)


@router.get("/{slug}", dependencies=[Depends(rate_limited("normal"))])
def slug_entry(slug: str, request: Request, t: str | None = Query(default=None)) -> Any:
    if not is_valid_slug(slug) or is_reserved_slug(slug):
        raise NotFoundError("not found")

    if t:
        view = fetch_view_by_slug(slug)
        result = validate_share_token(request.app.state.vault, t, view_id=view["id"] if view else None)
        if view is None or not result.valid:
            raise NotFoundError("not found")
        return redirect_with_share_cookie(request, result, t)

    return {"slug": slug, "view_path": f"/api/view/{slug}/data"}


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    set_error_context(request, error_code=exc.code, exception_type=type(exc).__name__)
    if exc.status_code >= 500:
        logger.warning(
            json.dumps(
                {
                    "event": "request.failed",
                    "requestId": get_request_id(request),
                    "error_code": exc.code,
                    "message": exc.message,
                    "detail": exc.developer_detail,
                },
                ensure_ascii=False,
            )
        )
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload(), headers=exc.headers())


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = ERROR_CODE_BY_STATUS.get(exc.status_code, "REQUEST_ERROR")
    message = "request failed"
    if isinstance(exc.detail, str):
        message = exc.detail
    elif isinstance(exc.detail, dict):
        code = str(exc.detail.get("code") or code)
        message = str(exc.detail.get("message") or message)

    set_error_context(request, error_code=code, exception_type="HTTPException")
    return JSONResponse(status_code=exc.status_code, content={"error": message}, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    message = "request validation failed"
    if errors:
        first_error = errors[0]
        location = [str(part) for part in first_error.get("loc", ()) if part not in {"body", "query", "path", "form"}]
        field_name = ".".join(location) or "body"
        message = f"{field_name}: {first_error.get('msg', 'invalid value')}"
    set_error_context(request, error_code="VALIDATION_ERROR", exception_type="RequestValidationError")
    return JSONResponse(status_code=400, content={"error": message})


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    set_error_context(request, error_code="INTERNAL_ERROR", exception_type=type(exc).__name__)
    logger.exception(
        json.dumps({"event": "request.crashed", "requestId": get_request_id(request)}, ensure_ascii=False),
        exc_info=exc,
    )
    return JSONResponse(
        status_code=500,
        content={"error": "internal error"},
        headers={"x-request-id": get_request_id(request)},
    )


def create_app(config: AppConfig | None = None) -> FastAPI:
    app_config = config or load_config()
    vault = CryptoVault(app_config.encryption_key)
    rate_limiter = RateLimiter(trust_proxy=app_config.trust_proxy)
    adapter = ProviderAdapter(vault, timeout_seconds=app_config.provider_timeout_seconds)
    converter = PandocConverter(app_config.pandoc_bin)
    generator = ResumeGenerator(adapter, converter, timeout_seconds=app_config.generation_timeout_seconds)
    export_collector = ExportCollector(
        retention_days=app_config.export_retention_days,
        interval_seconds=app_config.export_gc_interval_seconds,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        check_startup_security(app_config)
        if app_config.seed_data:
            logger.info(json.dumps({"event": "seed.skipped", "message": "SEED_DATA is set; seeding is not built in"}))
        ensure_owner_account(admin_emails=app_config.admin_emails, admin_password=app_config.admin_password)
        rate_limiter.start_sweeper(app_config.rate_limit_sweep_seconds)
        export_collector.start()
        try:
            yield
        finally:
            export_collector.stop()
            generator.close()
            rate_limiter.stop_sweeper()
            adapter.close()

    app = FastAPI(title="me.yaml API", version="0.1.0", lifespan=lifespan)
    app.state.config = app_config
    app.state.vault = vault
    app.state.rate_limiter = rate_limiter
    generation_limiter = SlidingWindowLimiter(limit=app_config.generation_limit_per_hour, window_seconds=3600)
    rate_limiter.register(generation_limiter)
    app.state.generation_limiter = generation_limiter
    app.state.adapter = adapter
    app.state.converter = converter
    app.state.generator = generator
    app.state.ingestor = ResumeIngestor(adapter)
    app.state.export_collector = export_collector

    allowed_origins = [url.rstrip("/") for url in (app_config.app_url, app_config.public_app_url) if url]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        request.state.error_code = None
        request.state.exception_type = None
        started_at = time.perf_counter()

        def finalize(response: Response) -> Response:
            duration_ms = int((time.perf_counter() - started_at) * 1000)

            rate_limit_headers = getattr(request.state, "rate_limit", None)
            if isinstance(rate_limit_headers, dict):
                for key, value in rate_limit_headers.items():
                    response.headers[key] = value
            response.headers["x-request-id"] = request_id

            log_request_event(
                path=request.url.path,
                method=request.method,
                status=response.status_code,
                duration_ms=duration_ms,
                request_id=request_id,
                client_ip=rate_limiter.client_ip(request),
                error_code=getattr(request.state, "error_code", None),
                exception_type=getattr(request.state, "exception_type", None),
            )
            return response

        response = await call_next(request)
        return finalize(response)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
    app.include_router(router)
    return app


app = create_app()
