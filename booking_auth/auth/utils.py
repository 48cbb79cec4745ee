# booking_auth/auth/utils.py
import hashlib
import secrets

from starlette.requests import Request

from booking_auth.auth.context import ClientContext

UNKNOWN_USER_AGENT = "unknown"


def extract_client_context(request: Request, trust_proxy_headers: bool = False) -> ClientContext:
    """
    Returns the (ip, user_agent) pair a request came from.
    X-Forwarded-For is only honoured when the deployment says a proxy rewrites it;
    otherwise any client could pick its own address.
    """
    ip = None
    if trust_proxy_headers:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            ip = forwarded.split(",")[0].strip() or None
    if ip is None and request.client:
        ip = request.client.host
    ua = (request.headers.get("user-agent") or "").strip() or UNKNOWN_USER_AGENT
    return ClientContext(ip=ip, user_agent=ua)


def client_context(request: Request) -> ClientContext:
    """Context attached by ClientContextMiddleware, computed on the spot if it is missing."""
    ctx = getattr(request.state, "client", None)
    if ctx is None:
        settings = getattr(request.app.state, "settings", None)
        ctx = extract_client_context(request, bool(settings and settings.TRUST_PROXY_HEADERS))
    return ctx


def generate_secure_token(nbytes: int = 32) -> str:
    """URL-safe random token; refresh tokens use 64 bytes."""
    return secrets.token_urlsafe(nbytes)


def digest_token(token: str) -> str:
    """Opaque tokens are persisted only as their SHA-256 hex digest."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def normalize_email(email: str) -> str:
    return email.strip().lower()


def token_preview(token: str | None, length: int = 10) -> str | None:
    if not token:
        return None
    return f"{token[:length]}..."


def extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]
