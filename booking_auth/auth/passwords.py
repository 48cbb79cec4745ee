# booking_auth/auth/passwords.py
import re
import secrets
from dataclasses import dataclass, field

from passlib.context import CryptContext
from starlette.concurrency import run_in_threadpool

from booking_auth.config import Settings

MIN_PASSWORD_LENGTH = 8


def build_crypt_context(cfg: Settings) -> CryptContext:
    return CryptContext(
        schemes=["argon2"],
        deprecated="auto",
        argon2__time_cost=cfg.ARGON2_TIME_COST,
        argon2__memory_cost=cfg.ARGON2_MEMORY_COST,
        argon2__parallelism=cfg.ARGON2_PARALLELISM,
    )


class PasswordHasher:
    """
    argon2 hashing with the cost parameters of one application's settings.
    The async variants run in the threadpool so a hash never blocks the event loop.
    """

    def __init__(self, context: CryptContext):
        self.context = context
        self._dummy_hash: str | None = None

    @classmethod
    def from_settings(cls, cfg: Settings) -> "PasswordHasher":
        return cls(build_crypt_context(cfg))

    def hash(self, password: str) -> str:
        return self.context.hash(password)

    def verify(self, plain_password: str, hashed_password: str) -> bool:
        try:
            return self.context.verify(plain_password, hashed_password)
        except (ValueError, TypeError):
            # unknown or corrupted hash format
            return False

    def needs_rehash(self, hashed_password: str) -> bool:
        try:
            return self.context.needs_update(hashed_password)
        except (ValueError, TypeError):
            return True

    async def hash_async(self, password: str) -> str:
        return await run_in_threadpool(self.hash, password)

    async def verify_async(self, plain_password: str, hashed_password: str) -> bool:
        return await run_in_threadpool(self.verify, plain_password, hashed_password)

    async def warm_up(self) -> None:
        if self._dummy_hash is None:
            self._dummy_hash = await self.hash_async(secrets.token_urlsafe(16))

    async def verify_dummy(self, plain_password: str) -> bool:
        """
        Spends one full verification on a throwaway hash and returns False, so a
        login for an unknown email takes as long as one with a wrong password.
        """
        await self.warm_up()
        await self.verify_async(plain_password, self._dummy_hash)
        return False


@dataclass
class PasswordStrength:
    valid: bool
    errors: list[str] = field(default_factory=list)


_RULES = [
    (lambda p: len(p) >= MIN_PASSWORD_LENGTH, f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"),
    (lambda p: re.search(r"[A-Z]", p) is not None, "Password must contain at least one uppercase letter"),
    (lambda p: re.search(r"[a-z]", p) is not None, "Password must contain at least one lowercase letter"),
    (lambda p: re.search(r"[0-9]", p) is not None, "Password must contain at least one number"),
    (lambda p: re.search(r"[^A-Za-z0-9]", p) is not None, "Password must contain at least one special character"),
]


def check_password_strength(password: str) -> PasswordStrength:
    """Evaluates every rule so the caller can report all problems at once."""
    errors = [message for rule, message in _RULES if not rule(password)]
    return PasswordStrength(valid=not errors, errors=errors)
