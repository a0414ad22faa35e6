import os
import secrets
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

DB_PATH = os.environ.get("PANACEA_DB_PATH", "panacea.db")
SECRET_KEY_PATH = Path(".app_secret_key")
SESSION_TTL_SECONDS = 60 * 60 * 24 * 7
SESSION_COOKIE_NAME = "panacea_session"
CSRF_COOKIE_NAME = "csrf_token"

VAPID_PUBLIC_KEY = os.environ.get("VAPID_PUBLIC_KEY", "").strip()
VAPID_PRIVATE_KEY = os.environ.get("VAPID_PRIVATE_KEY", "").strip()
VAPID_EMAIL = os.environ.get("VAPID_EMAIL", "mailto:dev@panacea.app").strip()
PUSH_TIMEOUT_SECONDS = float(os.environ.get("PUSH_TIMEOUT_SECONDS", "10"))

SCHEDULER_ENABLED = os.environ.get("SCHEDULER_ENABLED", "1").lower() in {"1", "true", "yes", "on"}
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

_current_user_id: ContextVar[Optional[int]] = ContextVar("_current_user_id", default=None)

PUBLIC_PATHS = {
    "/api/health",
    "/api/auth/register",
    "/api/auth/login",
    "/api/auth/logout",
    "/api/notifications/vapid-key",
}

MAX_TIMINGS = 6
LOW_STOCK_PCT = 20


def _now_local() -> datetime:
    """Server-local wall clock; all dose dates and HH:MM slots use it."""
    return datetime.now()


def _today_str(now: Optional[datetime] = None) -> str:
    return (now or _now_local()).date().isoformat()


def _hhmm(now: Optional[datetime] = None) -> str:
    return (now or _now_local()).strftime("%H:%M")


def _to_utc_storage(dt_local: Optional[datetime] = None) -> str:
    """Convert a server-local naive datetime to the UTC storage format."""
    dt_local = dt_local or _now_local()
    server_tz = datetime.now().astimezone().tzinfo
    dt_utc = dt_local.replace(tzinfo=server_tz).astimezone(timezone.utc).replace(tzinfo=None)
    return dt_utc.strftime("%Y-%m-%d %H:%M:%S")


def _load_secret_key() -> str:
    env_key = os.environ.get("APP_SECRET_KEY", "").strip()
    if env_key:
        return env_key
    if SECRET_KEY_PATH.exists():
        return SECRET_KEY_PATH.read_text(encoding="utf-8").strip()
    key = secrets.token_hex(32)
    SECRET_KEY_PATH.write_text(key, encoding="utf-8")
    return key


SECRET_KEY = _load_secret_key()
