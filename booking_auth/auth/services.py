# booking_auth/auth/services.py
import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from booking_auth.auth.abuse import LOCK_REASON, RESET_WINDOW_MINUTES, SHORT_WINDOW_MINUTES, AbuseTracker
from booking_auth.auth.audit import AuditLog
from booking_auth.auth.breach import BreachChecker
from booking_auth.auth.context import AuthContext, ClientContext
from booking_auth.auth.email import EmailSender
from booking_auth.auth.passwords import PasswordHasher, check_password_strength
from booking_auth.auth.tokens import TokenService, is_expired
from booking_auth.auth.utils import digest_token, generate_secure_token, normalize_email, token_preview
from booking_auth.config import Settings
from booking_auth.errors import (
    AccountLockedError,
    AuthenticationError,
    NotFoundError,
    RateLimitError,
    ValidationError,
)
from booking_auth.models import Account, EventType, PasswordResetToken, RefreshToken, Role, Severity, utcnow

logger = logging.getLogger(__name__)

RESET_REQUESTED_MESSAGE = "If an account exists with this email, a password reset link has been sent"
VERIFICATION_SENT_MESSAGE = "If an account exists with this email, a verification link has been sent"
INVALID_CREDENTIALS = "Invalid email or password"
TOO_MANY_ATTEMPTS = "Too many failed login attempts. Please try again later."


@dataclass
class AuthResult:
    account: Account
    access_token: str
    refresh_token: str


@dataclass
class TokenPairResult:
    access_token: str
    refresh_token: str


class AuthService:
    """
    Orchestrates the auth flows on top of the credential store, token service,
    audit log and abuse tracker.

    Audit entries are written through the audit log's own sessions. They are
    recorded either before the request session has pending writes or after it
    committed, so a single-writer store such as SQLite never waits on itself.
    """

    def __init__(
        self,
        cfg: Settings,
        tokens: TokenService,
        audit: AuditLog,
        abuse: AbuseTracker,
        breach: BreachChecker,
        email: EmailSender,
        hasher: PasswordHasher,
    ):
        self.cfg = cfg
        self.tokens = tokens
        self.audit = audit
        self.abuse = abuse
        self.breach = breach
        self.email = email
        self.hasher = hasher

    async def _record(self, event: EventType, severity: Severity, client: ClientContext | None, **fields):
        return await self.audit.record(
            event,
            severity,
            ip=client.ip if client else None,
            user_agent=client.user_agent if client else None,
            **fields,
        )

    async def _get_by_email(self, db: AsyncSession, email: str) -> Account | None:
        result = await db.execute(select(Account).where(Account.email == email))
        return result.scalar_one_or_none()

    async def _password_policy_error(self, password: str) -> str | None:
        strength = check_password_strength(password)
        if not strength.valid:
            return ", ".join(strength.errors)
        return await self.breach.validate_not_breached(password)

    def _mint_access_token(self, account: Account, client: ClientContext) -> str:
        return self.tokens.issue_access_token(
            account.id, account.email, account.role, client.ip, client.user_agent
        )

    def _new_verification_token(self, account: Account) -> str:
        raw = generate_secure_token(32)
        account.verification_token_hash = digest_token(raw)
        account.verification_expires_at = utcnow() + timedelta(hours=self.cfg.EMAIL_VERIFICATION_EXPIRE_HOURS)
        return raw

    # ---------- registration ----------
    async def register(
        self, db: AsyncSession, email: str, full_name: str, password: str, client: ClientContext
    ) -> AuthResult:
        email = normalize_email(email)

        async def reject(reason: str, message: str):
            await self._record(EventType.REGISTRATION_FAILED, Severity.MEDIUM, client, email=email,
                               details={"reason": reason})
            raise ValidationError(message)

        policy_error = await self._password_policy_error(password)
        if policy_error:
            await reject(policy_error, policy_error)
        if await self._get_by_email(db, email) is not None:
            await reject("Email already exists", "An account with this email already exists")

        password_hash = await self.hasher.hash_async(password)
        account = Account(
            email=email,
            full_name=full_name.strip(),
            password_hash=password_hash,
            role=Role.CUSTOMER.value,
            email_verified=False,
        )
        verification_token = self._new_verification_token(account)
        db.add(account)
        try:
            await db.flush()
            issued = await self.tokens.issue_refresh_token(db, account.id, client.ip, client.user_agent)
            await db.commit()
        except IntegrityError:
            # lost a race against a concurrent registration of the same email
            await db.rollback()
            await reject("Email already exists", "An account with this email already exists")

        await self._record(EventType.REGISTRATION_SUCCESS, Severity.LOW, client,
                           account_id=account.id, email=email)
        await self.email.send_verification_email(account.email, account.full_name, verification_token)
        logger.info("Registered account %s", account.id)
        return AuthResult(account=account, access_token=self._mint_access_token(account, client),
                          refresh_token=issued.token)

    # ---------- login ----------
    async def login(self, db: AsyncSession, email: str, password: str, client: ClientContext) -> AuthResult:
        email = normalize_email(email)
        account = await self._get_by_email(db, email)

        # locked accounts short-circuit before any hash comparison
        if account is not None and account.locked:
            lock_reason = account.lock_reason or "Account locked due to security concerns"
            await self._record(EventType.SUSPICIOUS_ACTIVITY, Severity.HIGH, client,
                               account_id=account.id, email=email,
                               details={"activity": "Login attempt on locked account", "lockReason": lock_reason})
            raise AccountLockedError(f"Account is locked. {lock_reason}")

        # failures from before the last lock clear (reset or unlock) no longer count against the email
        cleared_at = account.lock_cleared_at if account is not None else None
        gate = await self.abuse.check_login_allowed(email, client, cleared_at=cleared_at)
        if gate.blocked:
            raise RateLimitError(TOO_MANY_ATTEMPTS, retry_after=SHORT_WINDOW_MINUTES * 60)

        if account is None:
            # same argon2 cost as a wrong password, so response time does not reveal unknown emails
            verified = await self.hasher.verify_dummy(password)
        else:
            verified = await self.hasher.verify_async(password, account.password_hash)

        if not verified:
            decision = await self.abuse.track_failed_login(
                email,
                client,
                reason="User not found" if account is None else "Invalid password",
                account_id=account.id if account is not None else None,
                cleared_at=cleared_at,
            )
            if decision.account_locked:
                raise AccountLockedError(f"Account is locked. {LOCK_REASON}")
            if decision.blocked:
                raise RateLimitError(TOO_MANY_ATTEMPTS, retry_after=SHORT_WINDOW_MINUTES * 60)
            raise ValidationError(INVALID_CREDENTIALS)

        await self._record(EventType.LOGIN_SUCCESS, Severity.LOW, client, account_id=account.id, email=email)

        account.last_login = utcnow()
        if self.hasher.needs_rehash(account.password_hash):
            account.password_hash = await self.hasher.hash_async(password)
            logger.info("Upgraded password hash parameters for account %s", account.id)
        issued = await self.tokens.issue_refresh_token(db, account.id, client.ip, client.user_agent)
        await db.commit()
        return AuthResult(account=account, access_token=self._mint_access_token(account, client),
                          refresh_token=issued.token)

    # ---------- refresh / logout ----------
    async def refresh(self, db: AsyncSession, refresh_token: str, client: ClientContext) -> TokenPairResult:
        async def reject():
            await self._record(EventType.SUSPICIOUS_ACTIVITY, Severity.HIGH, client,
                               details={"activity": "Invalid refresh token used",
                                        "tokenPreview": token_preview(refresh_token, 20)})
            raise AuthenticationError("Invalid or expired refresh token")

        stored = await self.tokens.find_valid_refresh_token(db, refresh_token)
        if stored is None:
            await reject()

        account = await db.get(Account, stored.account_id)
        if account is None:
            raise NotFoundError("User not found")
        if account.locked:
            raise AccountLockedError("Account is locked")

        issued = await self.tokens.rotate_refresh_token(db, refresh_token, account.id, client.ip, client.user_agent)
        if issued is None:
            # a concurrent request rotated this token first
            await db.rollback()
            await reject()
        await db.commit()
        return TokenPairResult(access_token=self._mint_access_token(account, client), refresh_token=issued.token)

    async def logout(self, db: AsyncSession, refresh_token: str) -> bool:
        revoked = await self.tokens.revoke_refresh_token(db, refresh_token)
        await db.commit()
        return revoked

    async def logout_all(self, db: AsyncSession, ctx: AuthContext) -> int:
        count = await self.tokens.revoke_all_for_account(db, ctx.account_id)
        await db.commit()
        logger.info("Revoked %d refresh tokens for account %s", count, ctx.account_id)
        return count

    async def logout_others(self, db: AsyncSession, ctx: AuthContext) -> int:
        count = await self.tokens.revoke_all_except(db, ctx.account_id, ctx.client.ip, ctx.client.user_agent)
        await db.commit()
        return count

    async def list_sessions(self, db: AsyncSession, ctx: AuthContext) -> list[RefreshToken]:
        return await self.tokens.active_tokens_for_account(db, ctx.account_id)

    async def revoke_session(self, db: AsyncSession, ctx: AuthContext, session_id: str) -> None:
        if not await self.tokens.revoke_by_id_for_account(db, session_id, ctx.account_id):
            await db.rollback()
            raise NotFoundError("Session not found")
        await db.commit()

    # ---------- password reset ----------
    async def forgot_password(self, db: AsyncSession, email: str, client: ClientContext) -> str:
        email = normalize_email(email)
        account = await self._get_by_email(db, email)

        decision = await self.abuse.track_reset_request(email, client, account_exists=account is not None)
        if decision.blocked:
            raise RateLimitError(decision.reason, retry_after=RESET_WINDOW_MINUTES * 60)

        # identical answer either way; only real accounts get mail
        if account is not None:
            raw = generate_secure_token(32)
            db.add(PasswordResetToken(
                account_id=account.id,
                token_hash=digest_token(raw),
                expires_at=utcnow() + timedelta(minutes=self.cfg.PASSWORD_RESET_EXPIRE_MINUTES),
                used=False,
            ))
            await db.commit()
            await self.email.send_password_reset_email(account.email, account.full_name, raw)
        return RESET_REQUESTED_MESSAGE

    async def reset_password(self, db: AsyncSession, token: str, password: str, client: ClientContext) -> None:
        policy_error = await self._password_policy_error(password)
        if policy_error:
            raise ValidationError(policy_error)

        result = await db.execute(
            select(PasswordResetToken).where(
                PasswordResetToken.token_hash == digest_token(token),
                PasswordResetToken.used.is_(False),
            )
        )
        reset = result.scalar_one_or_none()
        if reset is None:
            await self._record(EventType.PASSWORD_RESET_FAILED, Severity.HIGH, client,
                               details={"reason": "Invalid or expired token"})
            raise ValidationError("Invalid or expired reset token")
        if is_expired(reset.expires_at):
            await self._record(EventType.PASSWORD_RESET_FAILED, Severity.HIGH, client,
                               account_id=reset.account_id, details={"reason": "Token expired"})
            raise ValidationError("Reset token has expired")

        account = await db.get(Account, reset.account_id)
        if account is None:
            raise ValidationError("Invalid or expired reset token")
        password_hash = await self.hasher.hash_async(password)
        was_locked = bool(account.locked)

        # single use even under concurrent submissions of the same token
        consumed = await db.execute(
            update(PasswordResetToken)
            .where(PasswordResetToken.id == reset.id, PasswordResetToken.used.is_(False))
            .values(used=True)
            .execution_options(synchronize_session=False)
        )
        if consumed.rowcount != 1:
            await db.rollback()
            await self._record(EventType.PASSWORD_RESET_FAILED, Severity.HIGH, client,
                               account_id=reset.account_id, details={"reason": "Token already used"})
            raise ValidationError("Invalid or expired reset token")

        account.password_hash = password_hash
        account.locked = False
        account.lock_reason = None
        account.locked_at = None
        account.lock_cleared_at = utcnow()
        revoked = await self.tokens.revoke_all_for_account(db, account.id)
        await db.commit()

        await self._record(EventType.PASSWORD_RESET_SUCCESS, Severity.MEDIUM, client,
                           account_id=account.id, email=account.email,
                           details={"unlocked": was_locked, "refreshTokensRevoked": revoked})

    # ---------- email verification ----------
    async def verify_email(self, db: AsyncSession, token: str) -> None:
        result = await db.execute(select(Account).where(Account.verification_token_hash == digest_token(token)))
        account = result.scalar_one_or_none()
        if account is None or is_expired(account.verification_expires_at):
            raise ValidationError("Invalid or expired verification token")
        account.email_verified = True
        account.verification_token_hash = None
        account.verification_expires_at = None
        await db.commit()

    async def resend_verification(self, db: AsyncSession, email: str) -> str:
        account = await self._get_by_email(db, normalize_email(email))
        if account is not None and not account.email_verified:
            raw = self._new_verification_token(account)
            await db.commit()
            await self.email.send_verification_email(account.email, account.full_name, raw)
        return VERIFICATION_SENT_MESSAGE

    # ---------- authenticated account operations ----------
    async def change_password(self, db: AsyncSession, ctx: AuthContext, current: str, new: str) -> None:
        account = ctx.account
        if not await self.hasher.verify_async(current, account.password_hash):
            await self._record(EventType.SUSPICIOUS_ACTIVITY, Severity.HIGH, ctx.client,
                               account_id=account.id, email=account.email,
                               details={"activity": "Incorrect current password on password change"})
            raise ValidationError("Current password is incorrect")

        policy_error = await self._password_policy_error(new)
        if policy_error:
            raise ValidationError(policy_error)
        if await self.hasher.verify_async(new, account.password_hash):
            raise ValidationError("New password must be different from the current password")

        account.password_hash = await self.hasher.hash_async(new)
        await db.commit()
        await self._record(EventType.PASSWORD_CHANGED, Severity.MEDIUM, ctx.client,
                           account_id=account.id, email=account.email)

    async def unlock(self, db: AsyncSession, account_id: str, admin: AuthContext) -> Account:
        account = await db.get(Account, account_id)
        if account is None:
            raise NotFoundError("User not found")
        if not account.locked:
            return account
        account.locked = False
        account.lock_reason = None
        account.locked_at = None
        account.lock_cleared_at = utcnow()
        await db.commit()
        await self._record(EventType.ACCOUNT_UNLOCKED, Severity.MEDIUM, admin.client,
                           account_id=account.id, email=account.email,
                           details={"unlockedBy": admin.account_id})
        return account
