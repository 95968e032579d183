import os
import re
from dataclasses import dataclass, field

_PARTNER_SECRET_RE = re.compile(r"^PASS_PARTNER_(.+)_SECRET$")


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str

    pass_signing_secret: str
    partner_signing_secrets: dict[str, str] = field(default_factory=dict)

    webhook_timeout_seconds: int = 10
    webhook_max_retries: int = 3


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer (got {raw!r}).")


def _partner_secrets_from_env() -> dict[str, str]:
    """Collect PASS_PARTNER_<id>_SECRET variables keyed by partner id."""
    out: dict[str, str] = {}
    for key, value in os.environ.items():
        m = _PARTNER_SECRET_RE.match(key)
        if m and (value or "").strip():
            out[m.group(1)] = value.strip()
    return out


def _database_url() -> str:
    url = _getenv("DATABASE_URL", "sqlite:///eventpass.db")
    # Managed Postgres hands out postgres:// URLs; SQLAlchemy 2 only accepts postgresql://
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_database_url(),
        pass_signing_secret=_getenv("PASS_SIGNING_SECRET", ""),
        partner_signing_secrets=_partner_secrets_from_env(),
        webhook_timeout_seconds=_getenv_int("WEBHOOK_TIMEOUT_SECONDS", 10),
        webhook_max_retries=_getenv_int("WEBHOOK_MAX_RETRIES", 3),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "PASS_SIGNING_SECRET": s.pass_signing_secret,
        "PASS_PARTNER_SECRETS": dict(s.partner_signing_secrets),
        "WEBHOOK_TIMEOUT_SECONDS": s.webhook_timeout_seconds,
        "WEBHOOK_MAX_RETRIES": s.webhook_max_retries,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        # JSON bodies only; guest imports stay small
        "MAX_CONTENT_LENGTH": 2 * 1024 * 1024,
    }
