# booking_auth/main.py
import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from booking_auth.auth.abuse import AbuseTracker
from booking_auth.auth.audit import AuditLog
from booking_auth.auth.breach import BreachChecker
from booking_auth.auth.email import EmailSender
from booking_auth.auth.guard import SessionGuard
from booking_auth.auth.passwords import PasswordHasher
from booking_auth.auth.routes import router as auth_router
from booking_auth.auth.services import AuthService
from booking_auth.auth.tokens import TokenService
from booking_auth.config import Settings, settings
from booking_auth.database import create_engine, create_session_factory, init_models
from booking_auth.errors import register_exception_handlers
from booking_auth.logging_config import setup_logging
from booking_auth.middleware import ClientContextMiddleware
from booking_auth.rate_limit import configure_rate_limits, limiter
from booking_auth.security.routes import router as security_router

logger = logging.getLogger(__name__)


def create_app(
    cfg: Settings | None = None,
    *,
    email_sender: EmailSender | None = None,
    breach_checker: BreachChecker | None = None,
) -> FastAPI:
    """
    Builds the application and its collaborators once; components receive each
    other by reference and live on ``app.state`` for the request handlers.
    """
    cfg = cfg or settings
    setup_logging(cfg.LOG_LEVEL)

    engine = create_engine(cfg)
    session_factory = create_session_factory(engine)
    tokens = TokenService.from_settings(cfg)
    hasher = PasswordHasher.from_settings(cfg)
    audit = AuditLog(session_factory)
    abuse = AbuseTracker(audit, session_factory, tokens)
    breach = breach_checker or BreachChecker(
        httpx.AsyncClient(),
        url=cfg.BREACH_CHECK_URL,
        timeout=cfg.BREACH_CHECK_TIMEOUT_SECONDS,
        threshold=cfg.BREACH_THRESHOLD,
        enabled=cfg.BREACH_CHECK_ENABLED,
        fail_open=cfg.BREACH_FAIL_OPEN,
    )
    email = email_sender or EmailSender.from_settings(cfg)
    guard = SessionGuard(tokens, audit)
    auth_service = AuthService(cfg, tokens, audit, abuse, breach, email, hasher)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await init_models(engine)
        await hasher.warm_up()
        logger.info("Auth service started (environment=%s)", cfg.ENVIRONMENT)
        yield
        await breach.aclose()
        await engine.dispose()

    app = FastAPI(title="Appointment Booking Auth", lifespan=lifespan)

    app.state.settings = cfg
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.tokens = tokens
    app.state.hasher = hasher
    app.state.audit = audit
    app.state.abuse = abuse
    app.state.breach = breach
    app.state.email = email
    app.state.guard = guard
    app.state.auth_service = auth_service
    app.state.limiter = limiter
    configure_rate_limits(cfg)

    app.add_middleware(ClientContextMiddleware, trust_proxy_headers=cfg.TRUST_PROXY_HEADERS)
    register_exception_handlers(app)

    app.include_router(auth_router, prefix=f"{cfg.API_PREFIX}/auth", tags=["Auth"])
    app.include_router(security_router, prefix=f"{cfg.API_PREFIX}/security", tags=["Security"])

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_app()
