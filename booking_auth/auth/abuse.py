# booking_auth/auth/abuse.py
"""
Failed-login and password-reset abuse detection.

Counters are never stored: each decision re-counts audit entries over a sliding
window, per email and per source IP independently. That keeps several server
instances consistent without any shared in-memory state.
"""
import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from booking_auth.auth.audit import AuditLog
from booking_auth.auth.context import ClientContext
from booking_auth.auth.tokens import TokenService
from booking_auth.models import Account, AuditLogEntry, EventType, Severity, as_utc, utcnow

logger = logging.getLogger(__name__)

SHORT_WINDOW_MINUTES = 15
LONG_WINDOW_MINUTES = 24 * 60
RESET_WINDOW_MINUTES = 60

MAX_EMAIL_FAILURES = 5
MAX_IP_FAILURES = 10
LOCKOUT_FAILURES = 10

MAX_EMAIL_RESETS = 3
MAX_IP_RESETS = 5

LOCK_REASON = (
    "Account locked after 10 failed login attempts in 24 hours. "
    "Please reset your password to unlock."
)


@dataclass(frozen=True)
class LoginDecision:
    blocked: bool
    account_locked: bool = False
    attempts_remaining: int | None = None
    email_attempts: int = 0
    ip_attempts: int = 0
    severity: Severity = Severity.LOW


@dataclass(frozen=True)
class ResetDecision:
    blocked: bool
    reason: str | None = None
    email_requests: int = 0
    ip_requests: int = 0
    severity: Severity = Severity.LOW


def classify_login_failure(email_attempts: int, ip_attempts: int) -> Severity:
    if email_attempts >= MAX_EMAIL_FAILURES or ip_attempts >= MAX_IP_FAILURES:
        return Severity.CRITICAL
    if email_attempts >= 3 or ip_attempts >= 5:
        return Severity.HIGH
    if email_attempts >= 2:
        return Severity.MEDIUM
    return Severity.LOW


def classify_reset_request(email_requests: int, ip_requests: int) -> Severity:
    if email_requests >= MAX_EMAIL_RESETS or ip_requests >= MAX_IP_RESETS:
        return Severity.CRITICAL
    if email_requests >= 2 or ip_requests >= 3:
        return Severity.HIGH
    return Severity.LOW


class AbuseTracker:
    def __init__(
        self,
        audit: AuditLog,
        session_factory: async_sessionmaker[AsyncSession],
        tokens: TokenService,
    ):
        self.audit = audit
        self.session_factory = session_factory
        self.tokens = tokens

    async def _failures(
        self,
        window: int,
        *,
        email: str | None = None,
        ip: str | None = None,
        after: datetime | None = None,
    ) -> int:
        criteria = [AuditLogEntry.timestamp > as_utc(after)] if after is not None else []
        return await self.audit.count_since(window, *criteria, event_type=EventType.LOGIN_FAILED, email=email, ip=ip)

    async def check_login_allowed(
        self, email: str, client: ClientContext, cleared_at: datetime | None = None
    ) -> LoginDecision:
        """
        Soft-block gate evaluated before any password comparison.
        A rejection here is recorded as LOGIN_BLOCKED, never as another failure.
        Email-scoped counts start after ``cleared_at``, the account's last reset or unlock.
        """
        email_attempts = await self._failures(SHORT_WINDOW_MINUTES, email=email, after=cleared_at)
        ip_attempts = await self._failures(SHORT_WINDOW_MINUTES, ip=client.ip) if client.ip else 0
        if email_attempts < MAX_EMAIL_FAILURES and ip_attempts < MAX_IP_FAILURES:
            return LoginDecision(blocked=False, email_attempts=email_attempts, ip_attempts=ip_attempts)

        await self.audit.record(
            EventType.LOGIN_BLOCKED,
            Severity.CRITICAL,
            email=email,
            ip=client.ip,
            user_agent=client.user_agent,
            details={
                "reason": "Too many failed attempts",
                "emailAttempts": email_attempts,
                "ipAttempts": ip_attempts,
            },
        )
        return LoginDecision(
            blocked=True,
            email_attempts=email_attempts,
            ip_attempts=ip_attempts,
            severity=Severity.CRITICAL,
        )

    async def track_failed_login(
        self,
        email: str,
        client: ClientContext,
        reason: str = "Invalid credentials",
        account_id: str | None = None,
        cleared_at: datetime | None = None,
    ) -> LoginDecision:
        # counts include the attempt being recorded now
        email_attempts = await self._failures(SHORT_WINDOW_MINUTES, email=email, after=cleared_at) + 1
        daily_attempts = await self._failures(LONG_WINDOW_MINUTES, email=email, after=cleared_at) + 1
        ip_attempts = (await self._failures(SHORT_WINDOW_MINUTES, ip=client.ip) if client.ip else 0) + 1
        severity = classify_login_failure(email_attempts, ip_attempts)

        await self.audit.record(
            EventType.LOGIN_FAILED,
            severity,
            account_id=account_id,
            email=email,
            ip=client.ip,
            user_agent=client.user_agent,
            details={
                "reason": reason,
                "emailAttempts": email_attempts,
                "ipAttempts": ip_attempts,
                "dailyAttempts": daily_attempts,
            },
        )

        if account_id and daily_attempts >= LOCKOUT_FAILURES:
            newly_locked = await self.lock_account(account_id, LOCK_REASON)
            if newly_locked:
                await self.audit.record(
                    EventType.ACCOUNT_LOCKED,
                    Severity.CRITICAL,
                    account_id=account_id,
                    email=email,
                    ip=client.ip,
                    user_agent=client.user_agent,
                    details={
                        "reason": "Too many failed login attempts",
                        "attemptsIn24Hours": daily_attempts,
                    },
                )
            return LoginDecision(
                blocked=True,
                account_locked=True,
                email_attempts=email_attempts,
                ip_attempts=ip_attempts,
                severity=severity,
            )

        if email_attempts >= MAX_EMAIL_FAILURES or ip_attempts >= MAX_IP_FAILURES:
            await self.audit.record(
                EventType.LOGIN_BLOCKED,
                Severity.CRITICAL,
                account_id=account_id,
                email=email,
                ip=client.ip,
                user_agent=client.user_agent,
                details={
                    "reason": "Too many failed attempts",
                    "emailAttempts": email_attempts,
                    "ipAttempts": ip_attempts,
                },
            )
            return LoginDecision(
                blocked=True,
                email_attempts=email_attempts,
                ip_attempts=ip_attempts,
                severity=severity,
            )

        return LoginDecision(
            blocked=False,
            attempts_remaining=max(0, MAX_EMAIL_FAILURES - email_attempts),
            email_attempts=email_attempts,
            ip_attempts=ip_attempts,
            severity=severity,
        )

    async def lock_account(self, account_id: str, reason: str) -> bool:
        """
        Compare-and-set on the lock flag; also revokes every refresh token of the
        account. Returns False when the account was already locked (or is gone).
        """
        now = utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                update(Account)
                .where(Account.id == account_id, Account.locked.is_(False))
                .values(locked=True, lock_reason=reason, locked_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                return False
            revoked = await self.tokens.revoke_all_for_account(session, account_id)
            await session.commit()
        logger.warning("Locked account %s, revoked %d refresh tokens", account_id, revoked)
        return True

    async def track_reset_request(self, email: str, client: ClientContext, account_exists: bool) -> ResetDecision:
        email_requests = await self.audit.count_since(
            RESET_WINDOW_MINUTES, event_type=EventType.PASSWORD_RESET_REQUESTED, email=email
        ) + 1
        ip_requests = (
            await self.audit.count_since(
                RESET_WINDOW_MINUTES, event_type=EventType.PASSWORD_RESET_REQUESTED, ip=client.ip
            ) if client.ip else 0
        ) + 1
        severity = classify_reset_request(email_requests, ip_requests)
        counts = {"emailResets": email_requests, "ipResets": ip_requests}

        await self.audit.record(
            EventType.PASSWORD_RESET_REQUESTED,
            severity,
            email=email,
            ip=client.ip,
            user_agent=client.user_agent,
            details={"userExists": account_exists, **counts},
        )

        if email_requests > MAX_EMAIL_RESETS or ip_requests > MAX_IP_RESETS:
            if email_requests > MAX_EMAIL_RESETS:
                reason = "Too many password reset requests for this email. Please try again in 1 hour."
            else:
                reason = "Too many password reset requests from this location. Please try again in 1 hour."
            await self.audit.record(
                EventType.SUSPICIOUS_ACTIVITY,
                Severity.CRITICAL,
                email=email,
                ip=client.ip,
                user_agent=client.user_agent,
                details={"activity": "Password reset flooding detected", "blocked": True, **counts},
            )
            return ResetDecision(blocked=True, reason=reason, severity=severity, email_requests=email_requests, ip_requests=ip_requests)

        if email_requests >= MAX_EMAIL_RESETS or ip_requests >= MAX_IP_RESETS:
            await self.audit.record(
                EventType.SUSPICIOUS_ACTIVITY,
                Severity.HIGH,
                email=email,
                ip=client.ip,
                user_agent=client.user_agent,
                details={"activity": "Multiple password reset requests", **counts},
            )
        return ResetDecision(blocked=False, severity=severity, email_requests=email_requests, ip_requests=ip_requests)
