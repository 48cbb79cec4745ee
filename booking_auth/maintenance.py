# booking_auth/maintenance.py
"""
Periodic cleanup, meant for cron or a scheduled job:

    python -m booking_auth.maintenance --retention-days 90

Prunes low/medium audit entries past the retention horizon (high and critical
entries are kept), and deletes expired refresh and password-reset tokens.
"""
import argparse
import asyncio
import logging

from sqlalchemy import delete

from booking_auth.auth.audit import AuditLog
from booking_auth.auth.tokens import TokenService
from booking_auth.config import Settings, settings
from booking_auth.database import create_engine, create_session_factory, init_models
from booking_auth.logging_config import setup_logging
from booking_auth.models import PasswordResetToken, utcnow

logger = logging.getLogger(__name__)


async def run_maintenance(cfg: Settings, retention_days: int) -> dict[str, int]:
    engine = create_engine(cfg)
    try:
        await init_models(engine)
        session_factory = create_session_factory(engine)
        audit = AuditLog(session_factory)
        tokens = TokenService.from_settings(cfg)

        pruned = await audit.prune(retention_days)
        async with session_factory() as session:
            refresh_deleted = await tokens.purge_expired(session)
            result = await session.execute(
                delete(PasswordResetToken).where(PasswordResetToken.expires_at < utcnow())
            )
            await session.commit()
    finally:
        await engine.dispose()

    counts = {
        "auditEntriesPruned": pruned,
        "refreshTokensDeleted": refresh_deleted,
        "resetTokensDeleted": result.rowcount,
    }
    logger.info("Maintenance finished: %s", counts)
    return counts


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Prune the audit log and expired tokens.")
    parser.add_argument(
        "--retention-days",
        type=int,
        default=settings.AUDIT_RETENTION_DAYS,
        help="keep low/medium audit entries for this many days (default: %(default)s)",
    )
    args = parser.parse_args(argv)
    if args.retention_days < 1:
        parser.error("--retention-days must be at least 1")

    setup_logging(settings.LOG_LEVEL)
    asyncio.run(run_maintenance(settings, args.retention_days))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
