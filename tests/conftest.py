import asyncio
import os
import tempfile

# keeps the module-level app in booking_auth.main away from ./auth.db
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{tempfile.gettempdir()}/booking-auth-import.db")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from booking_auth.auth.audit import AuditLog
from booking_auth.auth.passwords import PasswordHasher
from booking_auth.auth.tokens import TokenService
from booking_auth.config import Settings
from booking_auth.database import create_engine, create_session_factory, init_models
from booking_auth.main import create_app
from booking_auth.models import Account, AuditLogEntry, Role
from helpers import STRONG_PASSWORD, RecordingEmailSender


# --------------------------
# Settings / database
# --------------------------
@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'auth.db'}",
        RATE_LIMIT_ENABLED=False,
        BREACH_CHECK_ENABLED=False,
        # cheap argon2 so hashing does not dominate the suite
        ARGON2_TIME_COST=1,
        ARGON2_MEMORY_COST=512,
        ARGON2_PARALLELISM=1,
    )


@pytest.fixture
async def session_factory(test_settings):
    engine = create_engine(test_settings)
    await init_models(engine)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def audit(session_factory):
    return AuditLog(session_factory)


@pytest.fixture
def tokens(test_settings):
    return TokenService.from_settings(test_settings)


@pytest.fixture
def hasher(test_settings):
    return PasswordHasher.from_settings(test_settings)


@pytest.fixture
def make_account(session_factory, hasher):
    async def _make(email="bob@example.com", password=STRONG_PASSWORD, role=Role.CUSTOMER.value, **fields):
        async with session_factory() as session:
            account = Account(
                email=email,
                full_name=fields.pop("full_name", "Bob Builder"),
                password_hash=hasher.hash(password),
                role=role,
                **fields,
            )
            session.add(account)
            await session.commit()
            return account

    return _make


# --------------------------
# Application
# --------------------------
@pytest.fixture
def email_sender():
    return RecordingEmailSender()


@pytest.fixture
def app(test_settings, email_sender):
    return create_app(test_settings, email_sender=email_sender)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def run_db(test_settings):
    """
    Runs ``fn(session)`` against the test database from synchronous tests,
    on a private engine so it never shares connections with the app.
    """

    def _run(fn):
        async def _go():
            engine = create_engine(test_settings)
            try:
                async with create_session_factory(engine)() as session:
                    return await fn(session)
            finally:
                await engine.dispose()

        return asyncio.run(_go())

    return _run


@pytest.fixture
def audit_entries(run_db):
    def _entries(event_type=None):
        async def _query(session):
            stmt = select(AuditLogEntry).order_by(AuditLogEntry.timestamp)
            if event_type is not None:
                stmt = stmt.where(AuditLogEntry.event_type == getattr(event_type, "value", event_type))
            return list((await session.execute(stmt)).scalars().all())

        return run_db(_query)

    return _entries

