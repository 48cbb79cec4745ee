# booking_auth/auth/guard.py
import logging

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from booking_auth.auth.audit import AuditLog
from booking_auth.auth.context import AuthContext, ClientContext
from booking_auth.auth.tokens import TokenService
from booking_auth.auth.utils import client_context, extract_bearer_token, token_preview
from booking_auth.database import get_db
from booking_auth.errors import AuthenticationError, AuthorizationError, NotFoundError, SessionHijackSuspected
from booking_auth.models import Account, EventType, Role, Severity

logger = logging.getLogger(__name__)


class SessionGuard:
    """
    Per-request gate in front of every protected route.

    Nothing is kept between calls: the access token is verified on its own, then
    its embedded (ip, user agent) binding is compared with what this request
    shows. A changed binding is treated as a hijack signal and reported
    separately from an ordinary expired or malformed token.
    """

    def __init__(self, tokens: TokenService, audit: AuditLog):
        self.tokens = tokens
        self.audit = audit

    async def authenticate(
        self, db: AsyncSession, authorization: str | None, client: ClientContext
    ) -> AuthContext:
        token = extract_bearer_token(authorization)
        if token is None:
            raise AuthenticationError("Authentication required")

        verification = self.tokens.verify_access_token_with_context(token, client.ip, client.user_agent)
        if not verification.valid:
            if verification.mismatch is not None:
                claims = verification.claims
                logger.warning("Session context mismatch for account %s", claims.account_id)
                await self.audit.record(
                    EventType.SUSPICIOUS_ACTIVITY,
                    Severity.HIGH,
                    account_id=claims.account_id,
                    email=claims.email,
                    ip=client.ip,
                    user_agent=client.user_agent,
                    details={"activity": "Session hijacking attempt detected", **verification.mismatch.as_details()},
                )
                raise SessionHijackSuspected("Session hijacking detected. Please log in again.")

            await self._validation_failed("Invalid or expired JWT", token, client)
            raise AuthenticationError("Invalid or expired token")

        account = await db.get(Account, verification.claims.account_id)
        if account is None:
            await self._validation_failed("User not found for token", token, client)
            raise NotFoundError("User not found")
        return AuthContext(account=account, client=client)

    async def _validation_failed(self, reason: str, token: str, client: ClientContext) -> None:
        await self.audit.record(
            EventType.TOKEN_VALIDATION_FAILED,
            Severity.MEDIUM,
            ip=client.ip,
            user_agent=client.user_agent,
            details={"reason": reason, "tokenPreview": token_preview(token, 20)},
        )


async def get_auth_context(request: Request, db: AsyncSession = Depends(get_db)) -> AuthContext:
    guard: SessionGuard = request.app.state.guard
    return await guard.authenticate(db, request.headers.get("authorization"), client_context(request))


async def require_admin(ctx: AuthContext = Depends(get_auth_context)) -> AuthContext:
    if ctx.role != Role.ADMIN.value:
        raise AuthorizationError("Admin access required")
    return ctx
