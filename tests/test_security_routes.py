from datetime import timedelta

import pytest
from sqlalchemy import update

from booking_auth.models import Account, AuditLogEntry, EventType, Role, Severity, utcnow
from helpers import bearer, login, register


@pytest.fixture
def admin_headers(client, run_db):
    token = register(client, email="admin@example.com").json()["token"]

    async def promote(session):
        await session.execute(
            update(Account).where(Account.email == "admin@example.com").values(role=Role.ADMIN.value)
        )
        await session.commit()

    run_db(promote)
    # the guard reads the role from the account, so the existing token is now an admin token
    return bearer(token)


@pytest.fixture
def customer(client):
    return register(client).json()


# --------------------------
# Access control
# --------------------------
@pytest.mark.parametrize("path", ["/metrics", "/suspicious", "/events/LOGIN_FAILED"])
def test_customer_is_forbidden(client, customer, path):
    response = client.get(f"/v1/security{path}", headers=bearer(customer["token"]))
    assert response.status_code == 403
    assert response.json() == {"error": "Admin access required", "code": "forbidden"}


def test_anonymous_is_unauthorized(client):
    assert client.get("/v1/security/metrics").status_code == 401


# --------------------------
# Dashboard queries
# --------------------------
def test_metrics(client, admin_headers, customer):
    login(client, password="Wr0ng!Password")
    login(client)

    response = client.get("/v1/security/metrics", headers=admin_headers)
    assert response.status_code == 200
    body = response.json()
    assert body["failedLogins"] == 1
    assert body["successfulLogins"] == 1
    assert body["totalEvents"] >= 4  # two registrations plus the two logins
    assert body["recentEvents"][0]["eventType"] == EventType.LOGIN_SUCCESS.value


def test_metrics_rejects_bad_window(client, admin_headers):
    assert client.get("/v1/security/metrics?hours=0", headers=admin_headers).status_code == 400


def test_suspicious_and_resolve(client, admin_headers, customer):
    for _ in range(3):
        login(client, password="Wr0ng!Password")

    suspicious = client.get("/v1/security/suspicious", headers=admin_headers).json()
    assert [e["severity"] for e in suspicious] == ["high"]
    entry_id = suspicious[0]["id"]

    resolved = client.post(f"/v1/security/resolve/{entry_id}", headers=admin_headers)
    assert resolved.json() == {"id": entry_id, "resolved": True}
    again = client.post(f"/v1/security/resolve/{entry_id}", headers=admin_headers)
    assert again.status_code == 200

    assert client.get("/v1/security/suspicious", headers=admin_headers).json() == []
    assert client.post("/v1/security/resolve/missing", headers=admin_headers).status_code == 404


def test_account_trail(client, admin_headers, customer):
    login(client)
    response = client.get(f"/v1/security/user/{customer['user']['id']}", headers=admin_headers)
    assert [e["eventType"] for e in response.json()] == ["LOGIN_SUCCESS", "REGISTRATION_SUCCESS"]


def test_events_by_type(client, admin_headers, customer):
    login(client, password="Wr0ng!Password")
    response = client.get("/v1/security/events/login_failed", headers=admin_headers)
    assert response.status_code == 200
    assert len(response.json()) == 1
    assert response.json()[0]["email"] == "alice@example.com"

    unknown = client.get("/v1/security/events/NOT_A_TYPE", headers=admin_headers)
    assert unknown.status_code == 400
    assert unknown.json()["code"] == "validation_error"


# --------------------------
# Unlock
# --------------------------
def test_unlock_account(client, admin_headers, customer, run_db, audit_entries):
    async def lock(session):
        await session.execute(
            update(Account).where(Account.email == "alice@example.com").values(locked=True, lock_reason="test")
        )
        await session.commit()

    run_db(lock)
    assert login(client).status_code == 403

    account_id = customer["user"]["id"]
    response = client.post(f"/v1/security/unlock/{account_id}", headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["locked"] is False
    assert login(client).status_code == 200

    # unlocking an unlocked account changes nothing and records nothing
    client.post(f"/v1/security/unlock/{account_id}", headers=admin_headers)
    unlocked = audit_entries(EventType.ACCOUNT_UNLOCKED)
    assert len(unlocked) == 1
    assert unlocked[0].details["unlockedBy"] != account_id


def test_unlock_unknown_account(client, admin_headers):
    assert client.post("/v1/security/unlock/no-such-id", headers=admin_headers).status_code == 404


def test_typo_after_admin_unlock_does_not_relock(client, admin_headers, customer, run_db):
    async def seed(session):
        for _ in range(9):
            session.add(AuditLogEntry(
                event_type=EventType.LOGIN_FAILED.value,
                severity=Severity.LOW.value,
                email="alice@example.com",
                ip_address="198.51.100.50",
                details={},
                timestamp=utcnow() - timedelta(hours=2),
            ))
        await session.commit()

    run_db(seed)
    assert login(client, password="Wr0ng!Password").status_code == 403

    account_id = customer["user"]["id"]
    assert client.post(f"/v1/security/unlock/{account_id}", headers=admin_headers).json()["locked"] is False

    assert login(client, password="Wr0ng!Password").status_code == 400
    assert login(client).status_code == 200
