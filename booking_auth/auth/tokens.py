# booking_auth/auth/tokens.py
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt
from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from booking_auth.auth.utils import digest_token, generate_secure_token
from booking_auth.config import Settings
from booking_auth.models import RefreshToken, as_utc, utcnow

logger = logging.getLogger(__name__)

REFRESH_TOKEN_BYTES = 64  # 512 bits


@dataclass(frozen=True)
class AccessTokenClaims:
    account_id: str
    email: str
    role: str
    ip: str | None
    user_agent: str | None
    issued_at: datetime
    expires_at: datetime

    @property
    def has_context(self) -> bool:
        return self.ip is not None or self.user_agent is not None


@dataclass(frozen=True)
class ContextMismatch:
    ip_changed: bool
    user_agent_changed: bool
    original_ip: str | None
    current_ip: str | None
    original_user_agent: str | None
    current_user_agent: str | None

    def as_details(self) -> dict:
        return {
            "ipChanged": self.ip_changed,
            "userAgentChanged": self.user_agent_changed,
            "originalIp": self.original_ip,
            "currentIp": self.current_ip,
            "originalUserAgent": self.original_user_agent,
            "currentUserAgent": self.current_user_agent,
        }


@dataclass(frozen=True)
class ContextVerification:
    valid: bool
    claims: AccessTokenClaims | None
    mismatch: ContextMismatch | None = None


@dataclass(frozen=True)
class IssuedRefreshToken:
    token: str  # raw value, only ever handed to the client
    expires_at: datetime
    record: RefreshToken


class TokenService:
    """Signed access tokens (JWT) and persisted, rotating opaque refresh tokens."""

    def __init__(
        self,
        secret: str,
        algorithm: str = "HS256",
        issuer: str = "appointment-booking-api",
        audience: str = "appointment-booking-web",
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
    ):
        if not secret:
            raise ValueError("access token signing secret is not configured")
        self.secret = secret
        self.algorithm = algorithm
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    @classmethod
    def from_settings(cls, cfg: Settings) -> "TokenService":
        return cls(
            secret=cfg.JWT_SECRET,
            algorithm=cfg.JWT_ALGORITHM,
            issuer=cfg.JWT_ISSUER,
            audience=cfg.JWT_AUDIENCE,
            access_ttl=timedelta(minutes=cfg.ACCESS_TOKEN_EXPIRE_MINUTES),
            refresh_ttl=timedelta(days=cfg.REFRESH_TOKEN_EXPIRE_DAYS),
        )

    # -------- access tokens --------
    def issue_access_token(
        self,
        account_id: str,
        email: str,
        role: str,
        client_ip: str | None,
        client_user_agent: str | None,
        now: datetime | None = None,
    ) -> str:
        now = now or utcnow()
        payload = {
            "sub": str(account_id),
            "email": email,
            "role": role,
            "ip": client_ip,
            "ua": client_user_agent,
            "typ": "access",
            "jti": str(uuid.uuid4()),
            "iss": self.issuer,
            "aud": self.audience,
            "iat": int(now.timestamp()),
            "exp": int((now + self.access_ttl).timestamp()),
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def verify_access_token(self, token: str) -> AccessTokenClaims | None:
        """Signature, expiry, issuer and audience; any failure yields None."""
        try:
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                audience=self.audience,
                issuer=self.issuer,
                options={"require": ["exp", "iat", "sub", "iss", "aud"]},
            )
        except jwt.PyJWTError as exc:
            logger.debug("Access token rejected: %s", exc)
            return None
        if payload.get("typ") != "access":
            return None
        return AccessTokenClaims(
            account_id=payload["sub"],
            email=payload.get("email", ""),
            role=payload.get("role", ""),
            ip=payload.get("ip"),
            user_agent=payload.get("ua"),
            issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )

    def verify_access_token_with_context(
        self, token: str, current_ip: str | None, current_user_agent: str | None
    ) -> ContextVerification:
        claims = self.verify_access_token(token)
        if claims is None:
            return ContextVerification(valid=False, claims=None)

        # tokens minted without a binding are accepted as-is
        if not claims.has_context:
            return ContextVerification(valid=True, claims=claims)

        ip_changed = claims.ip is not None and claims.ip != current_ip
        ua_changed = claims.user_agent is not None and claims.user_agent != current_user_agent
        if ip_changed or ua_changed:
            mismatch = ContextMismatch(
                ip_changed=ip_changed,
                user_agent_changed=ua_changed,
                original_ip=claims.ip,
                current_ip=current_ip,
                original_user_agent=claims.user_agent,
                current_user_agent=current_user_agent,
            )
            return ContextVerification(valid=False, claims=claims, mismatch=mismatch)
        return ContextVerification(valid=True, claims=claims)

    # -------- refresh tokens --------
    def _new_refresh_record(
        self, account_id: str, client_ip: str | None, client_user_agent: str | None
    ) -> tuple[str, RefreshToken]:
        raw = generate_secure_token(REFRESH_TOKEN_BYTES)
        record = RefreshToken(
            account_id=account_id,
            token_hash=digest_token(raw),
            expires_at=utcnow() + self.refresh_ttl,
            revoked=False,
            ip_address=client_ip,
            user_agent=client_user_agent,
        )
        return raw, record

    async def issue_refresh_token(
        self, db: AsyncSession, account_id: str, client_ip: str | None, client_user_agent: str | None
    ) -> IssuedRefreshToken:
        """Adds the record to the caller's transaction; the caller commits."""
        raw, record = self._new_refresh_record(account_id, client_ip, client_user_agent)
        db.add(record)
        await db.flush()
        return IssuedRefreshToken(token=raw, expires_at=record.expires_at, record=record)

    async def find_valid_refresh_token(self, db: AsyncSession, token: str) -> RefreshToken | None:
        result = await db.execute(
            select(RefreshToken).where(
                RefreshToken.token_hash == digest_token(token),
                RefreshToken.revoked.is_(False),
                RefreshToken.expires_at > utcnow(),
            )
        )
        return result.scalar_one_or_none()

    async def rotate_refresh_token(
        self,
        db: AsyncSession,
        old_token: str,
        account_id: str,
        client_ip: str | None,
        client_user_agent: str | None,
    ) -> IssuedRefreshToken | None:
        """
        Revoke-if-still-valid, then mint the successor in the same transaction.
        Of several concurrent rotations of one token only the first UPDATE matches;
        the others get None and must not hand out anything.
        """
        now = utcnow()
        result = await db.execute(
            update(RefreshToken)
            .where(
                RefreshToken.token_hash == digest_token(old_token),
                RefreshToken.account_id == account_id,
                RefreshToken.revoked.is_(False),
                RefreshToken.expires_at > now,
            )
            .values(revoked=True, revoked_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        return await self.issue_refresh_token(db, account_id, client_ip, client_user_agent)

    async def revoke_refresh_token(self, db: AsyncSession, token: str) -> bool:
        now = utcnow()
        result = await db.execute(
            update(RefreshToken)
            .where(RefreshToken.token_hash == digest_token(token), RefreshToken.revoked.is_(False))
            .values(revoked=True, revoked_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def revoke_all_for_account(self, db: AsyncSession, account_id: str) -> int:
        now = utcnow()
        result = await db.execute(
            update(RefreshToken)
            .where(RefreshToken.account_id == account_id, RefreshToken.revoked.is_(False))
            .values(revoked=True, revoked_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def revoke_all_except(
        self, db: AsyncSession, account_id: str, client_ip: str | None, client_user_agent: str | None
    ) -> int:
        """Revokes every active token not bound to exactly this (ip, user agent) pair."""
        now = utcnow()
        stmt = update(RefreshToken).where(
            RefreshToken.account_id == account_id,
            RefreshToken.revoked.is_(False),
            RefreshToken.expires_at > now,
        )
        if client_ip and client_user_agent:
            stmt = stmt.where(
                or_(
                    RefreshToken.ip_address.is_distinct_from(client_ip),
                    RefreshToken.user_agent.is_distinct_from(client_user_agent),
                )
            )
        result = await db.execute(
            stmt.values(revoked=True, revoked_at=now).execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def revoke_by_id_for_account(self, db: AsyncSession, token_id: str, account_id: str) -> bool:
        now = utcnow()
        result = await db.execute(
            update(RefreshToken)
            .where(
                RefreshToken.id == token_id,
                RefreshToken.account_id == account_id,
                RefreshToken.revoked.is_(False),
            )
            .values(revoked=True, revoked_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def active_tokens_for_account(self, db: AsyncSession, account_id: str) -> list[RefreshToken]:
        result = await db.execute(
            select(RefreshToken)
            .where(
                RefreshToken.account_id == account_id,
                RefreshToken.revoked.is_(False),
                RefreshToken.expires_at > utcnow(),
            )
            .order_by(RefreshToken.created_at.desc())
        )
        return list(result.scalars().all())

    async def purge_expired(self, db: AsyncSession) -> int:
        result = await db.execute(delete(RefreshToken).where(RefreshToken.expires_at < utcnow()))
        return result.rowcount


def is_expired(expires_at: datetime | None, now: datetime | None = None) -> bool:
    if expires_at is None:
        return True
    return as_utc(expires_at) <= (now or utcnow())
