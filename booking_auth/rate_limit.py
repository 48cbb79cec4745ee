# booking_auth/rate_limit.py
"""
Per-IP request limits on the unauthenticated auth endpoints (slowapi, in-memory).

These sit in front of the audit-derived abuse checks and only bound raw request
volume; for multi-instance deployments point ``storage_uri`` at Redis.

The decorators are bound at import, so the limit strings are read through
callables from the settings the application was created with.
"""
from slowapi import Limiter
from starlette.requests import Request

from booking_auth.auth.utils import client_context
from booking_auth.config import Settings, settings

_active_settings: Settings = settings


def get_client_ip(request: Request) -> str:
    return client_context(request).ip or "unknown"


limiter = Limiter(key_func=get_client_ip, enabled=settings.RATE_LIMIT_ENABLED)


def configure_rate_limits(cfg: Settings) -> None:
    """Called by the app factory; switches the shared limiter to ``cfg``."""
    global _active_settings
    _active_settings = cfg
    limiter.enabled = cfg.RATE_LIMIT_ENABLED


def _configured(name: str):
    return lambda: getattr(_active_settings, name)


register_limit = limiter.limit(_configured("RATE_LIMIT_REGISTER"))
login_limit = limiter.limit(_configured("RATE_LIMIT_LOGIN"))
password_reset_limit = limiter.limit(_configured("RATE_LIMIT_PASSWORD_RESET"))
verification_limit = limiter.limit(_configured("RATE_LIMIT_VERIFICATION"))
refresh_limit = limiter.limit(_configured("RATE_LIMIT_REFRESH"))
