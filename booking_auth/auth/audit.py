# booking_auth/auth/audit.py
"""
Append-only security audit trail.

Every write goes through its own short-lived session and is committed at once,
so the entry survives even when the request that produced it is rolled back.
A store failure is reported on the ``booking_auth.audit`` logger and swallowed:
losing an audit row must never turn a login into a 500.
"""
import logging
from datetime import timedelta
from typing import Any, Iterable

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from booking_auth.models import AuditLogEntry, EventType, Severity, utcnow

audit_logger = logging.getLogger("booking_auth.audit")

SUSPICIOUS_SEVERITIES = (Severity.HIGH.value, Severity.CRITICAL.value)
PRUNABLE_SEVERITIES = (Severity.LOW.value, Severity.MEDIUM.value)


def _value(item: Any) -> Any:
    return getattr(item, "value", item)


class AuditLog:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def record(
        self,
        event_type: EventType,
        severity: Severity,
        *,
        account_id: str | None = None,
        email: str | None = None,
        ip: str | None = None,
        user_agent: str | None = None,
        details: dict | None = None,
    ) -> AuditLogEntry | None:
        entry = AuditLogEntry(
            event_type=_value(event_type),
            severity=_value(severity),
            account_id=account_id,
            email=email.lower() if email else None,
            ip_address=ip,
            user_agent=user_agent,
            details=details or {},
            timestamp=utcnow(),
            resolved=False,
        )
        level = logging.ERROR if entry.severity in SUSPICIOUS_SEVERITIES else logging.WARNING
        audit_logger.log(
            level,
            "Security event %s severity=%s account=%s ip=%s",
            entry.event_type, entry.severity, account_id, ip,
        )
        try:
            async with self.session_factory() as session:
                session.add(entry)
                await session.commit()
        except (SQLAlchemyError, OSError):
            audit_logger.exception("Failed to persist audit log entry %s", entry.event_type)
            return None
        return entry

    async def count_since(
        self,
        window_minutes: float,
        *criteria,
        event_type: EventType | Iterable[EventType] | None = None,
        email: str | None = None,
        ip: str | None = None,
    ) -> int:
        """Entries at or after now - window matching every given filter."""
        since = utcnow() - timedelta(minutes=window_minutes)
        stmt = select(func.count()).select_from(AuditLogEntry).where(AuditLogEntry.timestamp >= since, *criteria)
        if event_type is not None:
            if isinstance(event_type, (str, EventType)):
                stmt = stmt.where(AuditLogEntry.event_type == _value(event_type))
            else:
                stmt = stmt.where(AuditLogEntry.event_type.in_([_value(e) for e in event_type]))
        if email is not None:
            stmt = stmt.where(AuditLogEntry.email == email.lower())
        if ip is not None:
            stmt = stmt.where(AuditLogEntry.ip_address == ip)
        async with self.session_factory() as session:
            return (await session.execute(stmt)).scalar_one()

    async def recent_suspicious(self, limit: int = 50) -> list[AuditLogEntry]:
        stmt = (
            select(AuditLogEntry)
            .where(AuditLogEntry.severity.in_(SUSPICIOUS_SEVERITIES), AuditLogEntry.resolved.is_(False))
            .order_by(AuditLogEntry.timestamp.desc())
            .limit(limit)
        )
        return await self._fetch(stmt)

    async def for_account(self, account_id: str, limit: int = 50) -> list[AuditLogEntry]:
        stmt = (
            select(AuditLogEntry)
            .where(AuditLogEntry.account_id == account_id)
            .order_by(AuditLogEntry.timestamp.desc())
            .limit(limit)
        )
        return await self._fetch(stmt)

    async def by_type(self, event_type: EventType, limit: int = 100) -> list[AuditLogEntry]:
        stmt = (
            select(AuditLogEntry)
            .where(AuditLogEntry.event_type == _value(event_type))
            .order_by(AuditLogEntry.timestamp.desc())
            .limit(limit)
        )
        return await self._fetch(stmt)

    async def resolve(self, entry_id: str) -> bool:
        """Idempotent; returns whether this call flipped the flag."""
        async with self.session_factory() as session:
            result = await session.execute(
                update(AuditLogEntry)
                .where(AuditLogEntry.id == entry_id, AuditLogEntry.resolved.is_(False))
                .values(resolved=True)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount > 0

    async def prune(self, retention_days: int) -> int:
        cutoff = utcnow() - timedelta(days=retention_days)
        async with self.session_factory() as session:
            result = await session.execute(
                delete(AuditLogEntry).where(
                    AuditLogEntry.timestamp < cutoff,
                    AuditLogEntry.severity.in_(PRUNABLE_SEVERITIES),
                )
            )
            await session.commit()
        audit_logger.info("Pruned %d audit entries older than %d days", result.rowcount, retention_days)
        return result.rowcount

    async def metrics(self, hours: int = 24, recent: int = 20) -> dict:
        since = utcnow() - timedelta(hours=hours)

        def counted(*criteria):
            return select(func.count()).select_from(AuditLogEntry).where(AuditLogEntry.timestamp >= since, *criteria)

        queries = {
            "totalEvents": counted(),
            "failedLogins": counted(AuditLogEntry.event_type == EventType.LOGIN_FAILED.value),
            "successfulLogins": counted(AuditLogEntry.event_type == EventType.LOGIN_SUCCESS.value),
            "passwordResets": counted(AuditLogEntry.event_type.in_([
                EventType.PASSWORD_RESET_REQUESTED.value, EventType.PASSWORD_RESET_SUCCESS.value,
            ])),
            "suspiciousActivities": counted(AuditLogEntry.event_type == EventType.SUSPICIOUS_ACTIVITY.value),
            "blockedAttempts": counted(AuditLogEntry.event_type == EventType.LOGIN_BLOCKED.value),
        }
        out: dict[str, Any] = {}
        async with self.session_factory() as session:
            for name, stmt in queries.items():
                out[name] = (await session.execute(stmt)).scalar_one()
            result = await session.execute(
                select(AuditLogEntry)
                .where(AuditLogEntry.timestamp >= since)
                .order_by(AuditLogEntry.timestamp.desc())
                .limit(recent)
            )
            out["recentEvents"] = list(result.scalars().all())
        return out

    async def _fetch(self, stmt) -> list[AuditLogEntry]:
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())
