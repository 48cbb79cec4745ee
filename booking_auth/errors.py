# booking_auth/errors.py
import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

logger = logging.getLogger(__name__)


class AuthServiceError(Exception):
    """Base for failures that map onto a client-facing status code and safe message."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def headers(self) -> dict[str, str] | None:
        return None

    def body(self) -> dict:
        return {"error": self.message, "code": self.code}


class ValidationError(AuthServiceError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "validation_error"


class AuthenticationError(AuthServiceError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "authentication_failed"

    def headers(self):
        return {"WWW-Authenticate": "Bearer"}


class SessionHijackSuspected(AuthenticationError):
    """Token presented from a different IP/user-agent than it was issued to."""

    code = "reauthenticate"


class AuthorizationError(AuthServiceError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "forbidden"


class AccountLockedError(AuthorizationError):
    code = "account_locked"


class RateLimitError(AuthServiceError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    code = "rate_limited"

    def __init__(self, message: str, retry_after: int = 900):
        super().__init__(message)
        self.retry_after = retry_after

    def headers(self):
        return {"Retry-After": str(self.retry_after)}

    def body(self):
        return {**super().body(), "retryAfter": self.retry_after}


class NotFoundError(AuthServiceError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class ExternalServiceDegraded(AuthServiceError):
    """Raised inside integrations; callers log it and carry on."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "external_service_degraded"


class InternalError(AuthServiceError):
    pass


async def auth_error_handler(request: Request, exc: AuthServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
        return JSONResponse({"error": "Internal server error", "code": "internal_error"}, status_code=500)
    return JSONResponse(exc.body(), status_code=exc.status_code, headers=exc.headers())


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    messages = []
    for err in exc.errors():
        field = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        messages.append(f"{field}: {err.get('msg')}" if field else err.get("msg"))
    return JSONResponse(
        {"error": "; ".join(messages) or "Invalid request", "code": ValidationError.code},
        status_code=status.HTTP_400_BAD_REQUEST,
    )


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning("Rate limit exceeded on %s: %s", request.url.path, exc.detail)
    error = RateLimitError(f"Too many requests ({exc.detail}). Please try again later.")
    return JSONResponse(error.body(), status_code=error.status_code, headers=error.headers())


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse({"error": "Internal server error", "code": "internal_error"}, status_code=500)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AuthServiceError, auth_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
