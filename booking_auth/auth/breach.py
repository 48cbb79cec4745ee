# booking_auth/auth/breach.py
"""
Compromised-password lookup against a k-anonymity range API (Have I Been Pwned).

Only the first five hex characters of the password's SHA-1 digest leave the
process; the service answers with every suffix sharing that prefix and the
match happens locally.
"""
import hashlib
import logging
from dataclasses import dataclass

import httpx

from booking_auth.errors import ExternalServiceDegraded

logger = logging.getLogger(__name__)

PREFIX_LENGTH = 5


@dataclass
class BreachResult:
    breached: bool
    count: int = 0
    error: str | None = None


def sha1_hex(password: str) -> str:
    return hashlib.sha1(password.encode("utf-8")).hexdigest().upper()


def match_suffix(body: str, suffix: str) -> int:
    """Exposure count of ``suffix`` in a range response; padding rows carry a count of 0."""
    for line in body.splitlines():
        candidate, _, count = line.strip().partition(":")
        if candidate.upper() == suffix:
            try:
                return int(count.strip())
            except ValueError:
                return 0
    return 0


class BreachChecker:
    def __init__(
        self,
        client: httpx.AsyncClient,
        url: str = "https://api.pwnedpasswords.com/range/",
        timeout: float = 2.5,
        threshold: int = 1,
        enabled: bool = True,
        fail_open: bool = True,
    ):
        self.client = client
        self.url = url if url.endswith("/") else url + "/"
        self.timeout = timeout
        self.threshold = max(1, threshold)
        self.enabled = enabled
        self.fail_open = fail_open

    async def _fetch_range(self, prefix: str) -> str:
        try:
            response = await self.client.get(
                f"{self.url}{prefix}",
                headers={"User-Agent": "Appointment-Booking-Auth", "Add-Padding": "true"},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ExternalServiceDegraded(f"breach lookup failed: {type(exc).__name__}") from exc
        return response.text

    async def is_breached(self, password: str) -> BreachResult:
        if not self.enabled:
            return BreachResult(breached=False)
        digest = sha1_hex(password)
        prefix, suffix = digest[:PREFIX_LENGTH], digest[PREFIX_LENGTH:]
        try:
            body = await self._fetch_range(prefix)
        except ExternalServiceDegraded as exc:
            logger.warning("Password breach check unavailable, failing %s: %s",
                           "open" if self.fail_open else "closed", exc.message)
            return BreachResult(breached=not self.fail_open, error=exc.message)

        count = match_suffix(body, suffix)
        if count > 0:
            logger.warning("Password found in breach corpus (count=%d)", count)
        return BreachResult(breached=count > 0, count=count)

    async def validate_not_breached(self, password: str) -> str | None:
        """Returns a user-facing rejection message, or None when the password may be used."""
        result = await self.is_breached(password)
        if result.error is not None:
            if result.breached:
                return "Unable to verify password safety right now. Please try again later."
            return None
        if result.breached and result.count >= self.threshold:
            plural = "es" if result.count > 1 else ""
            return (
                f"This password has been exposed in {result.count:,} data breach{plural}. "
                "Please choose a different password."
            )
        return None

    async def aclose(self) -> None:
        await self.client.aclose()
