# booking_auth/auth/context.py
from dataclasses import dataclass

from booking_auth.models import Account


@dataclass(frozen=True)
class ClientContext:
    """Network origin of a request, as observed by this service."""

    ip: str | None
    user_agent: str


@dataclass(frozen=True)
class AuthContext:
    """Identity resolved by the session guard for one request."""

    account: Account
    client: ClientContext

    @property
    def account_id(self) -> str:
        return self.account.id

    @property
    def email(self) -> str:
        return self.account.email

    @property
    def role(self) -> str:
        return self.account.role
