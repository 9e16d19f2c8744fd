from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field as dataclass_field
from pathlib import Path

logger = logging.getLogger("meyaml.api")

BACKEND_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_DATA_DIR = BACKEND_ROOT / "data"
DB_FILENAME = "meyaml.sqlite3"

DEV_ENCRYPTION_KEY = "meyaml-dev-encryption-key-do-not-use-in-production"
DEV_APP_URLS = {"http://localhost:8080", "http://localhost:5173", "http://127.0.0.1:8080"}


def get_env_int(name: str, default: int, *, min_value: int | None = None, max_value: int | None = None) -> int:
    raw = os.getenv(name, "").strip()
    try:
        value = int(raw) if raw else int(default)
    except (TypeError, ValueError):
        value = int(default)

    if min_value is not None:
        value = max(min_value, value)
    if max_value is not None:
        value = min(max_value, value)
    return value


def get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "y", "on"}


def get_env_str(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _resolve_path(raw: str) -> Path:
    path = Path(raw)
    if not path.is_absolute():
        path = (BACKEND_ROOT / path).resolve()
    return path


def get_data_dir() -> Path:
    configured = get_env_str("MEYAML_DATA_DIR")
    if configured:
        return _resolve_path(configured)
    return DEFAULT_DATA_DIR


def get_db_path() -> Path:
    configured = get_env_str("MEYAML_DB_PATH")
    if configured:
        return _resolve_path(configured)
    return get_data_dir() / DB_FILENAME


def get_storage_root() -> Path:
    return get_data_dir() / "storage"


@dataclass
class AppConfig:
    encryption_key: str
    encryption_key_is_dev: bool
    admin_emails: list[str]
    admin_password: str
    trust_proxy: bool
    app_url: str
    public_app_url: str
    dev_mode: bool
    seed_data: bool
    oauth_providers: list[str] = dataclass_field(default_factory=list)
    session_ttl_seconds: int = 7 * 24 * 3600
    pandoc_bin: str = "pandoc"
    generation_timeout_seconds: int = 120
    provider_timeout_seconds: int = 60
    generation_limit_per_hour: int = 5
    rate_limit_sweep_seconds: int = 300
    export_retention_days: int = 30
    export_gc_interval_seconds: int = 0

    @property
    def secure_cookies(self) -> bool:
        return self.app_url.lower().startswith("https://")


def parse_admin_emails(raw: str) -> list[str]:
    emails: list[str] = []
    for item in raw.split(","):
        email = item.strip().lower()
        if email and email not in emails:
            emails.append(email)
    return emails


def load_config() -> AppConfig:
    encryption_key = get_env_str("ENCRYPTION_KEY")
    is_dev_key = not encryption_key
    if is_dev_key:
        encryption_key = DEV_ENCRYPTION_KEY

    oauth_providers = [
        name
        for name, prefix in (("google", "GOOGLE"), ("github", "GITHUB"))
        if get_env_str(f"{prefix}_CLIENT_ID") and get_env_str(f"{prefix}_CLIENT_SECRET")
    ]

    return AppConfig(
        encryption_key=encryption_key,
        encryption_key_is_dev=is_dev_key,
        admin_emails=parse_admin_emails(get_env_str("ADMIN_EMAILS")),
        admin_password=get_env_str("ADMIN_PASSWORD"),
        trust_proxy=get_env_str("TRUST_PROXY").lower() == "true",
        app_url=get_env_str("APP_URL"),
        public_app_url=get_env_str("PUBLIC_APP_URL"),
        dev_mode=get_env_bool("DEV_MODE", False),
        seed_data=get_env_bool("SEED_DATA", False),
        oauth_providers=oauth_providers,
        session_ttl_seconds=get_env_int(
            "MEYAML_SESSION_TTL_SECONDS", 7 * 24 * 3600, min_value=300, max_value=30 * 24 * 3600
        ),
        pandoc_bin=get_env_str("PANDOC_BIN", "pandoc") or "pandoc",
        generation_timeout_seconds=get_env_int("RESUME_GENERATION_TIMEOUT_SECONDS", 120, min_value=1, max_value=600),
        provider_timeout_seconds=get_env_int("PROVIDER_TIMEOUT_SECONDS", 60, min_value=1, max_value=600),
        generation_limit_per_hour=get_env_int("RESUME_GENERATION_LIMIT_PER_HOUR", 5, min_value=1, max_value=1000),
        rate_limit_sweep_seconds=get_env_int("RATE_LIMIT_SWEEP_SECONDS", 300, min_value=1),
        export_retention_days=get_env_int("EXPORT_RETENTION_DAYS", 30, min_value=1),
        export_gc_interval_seconds=get_env_int("EXPORT_GC_INTERVAL_SECONDS", 0, min_value=0),
    )


def _log_event(level: int, event: str, **fields: object) -> None:
    logger.log(level, json.dumps({"event": event, **fields}, ensure_ascii=False))


def is_dev_environment(config: AppConfig) -> bool:
    if config.dev_mode:
        return True
    return not config.app_url or config.app_url.rstrip("/") in DEV_APP_URLS


def check_startup_security(config: AppConfig) -> None:
    if config.encryption_key_is_dev:
        _log_event(
            logging.WARNING,
            "crypto.dev_key",
            message="ENCRYPTION_KEY not set; using development fallback key",
        )
    elif len(config.encryption_key) < 32:
        _log_event(
            logging.WARNING,
            "crypto.short_key",
            message="ENCRYPTION_KEY is shorter than 32 characters",
        )

    if is_dev_environment(config):
        _log_event(logging.INFO, "security.dev_mode", message="development mode, HTTPS check skipped")
        return

    urls = [url for url in (config.app_url, config.public_app_url) if url]
    if any(url.lower().startswith("https://") for url in urls):
        _log_event(logging.INFO, "security.https_ok", message="HTTPS detected, connection security: OK")
        return

    _log_event(
        logging.WARNING,
        "security.https_missing",
        message="APP_URL does not use HTTPS; cookies and share tokens travel in clear text",
        app_url=config.app_url,
    )
