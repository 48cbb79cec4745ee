import asyncio
from datetime import timedelta

import jwt
import pytest
from sqlalchemy import select

from booking_auth.auth.tokens import TokenService, is_expired
from booking_auth.auth.utils import digest_token
from booking_auth.models import RefreshToken, utcnow

IP, UA = "203.0.113.7", "Mozilla/5.0 (X11; Linux x86_64)"


# --------------------------
# Access tokens
# --------------------------
def test_access_token_roundtrip(tokens):
    token = tokens.issue_access_token("acc-1", "alice@example.com", "customer", IP, UA)
    claims = tokens.verify_access_token(token)
    assert claims.account_id == "acc-1"
    assert claims.email == "alice@example.com"
    assert claims.role == "customer"
    assert (claims.ip, claims.user_agent) == (IP, UA)
    assert claims.expires_at - claims.issued_at == timedelta(minutes=15)


def test_access_token_expires_after_fifteen_minutes(tokens):
    now = utcnow()
    expired = tokens.issue_access_token("acc-1", "a@example.com", "customer", IP, UA,
                                        now=now - timedelta(minutes=15, seconds=1))
    still_valid = tokens.issue_access_token("acc-1", "a@example.com", "customer", IP, UA,
                                            now=now - timedelta(minutes=14))
    assert tokens.verify_access_token(expired) is None
    assert tokens.verify_access_token(still_valid) is not None


@pytest.mark.parametrize("token", ["", "garbage", "a.b.c"])
def test_malformed_tokens_are_invalid_not_errors(tokens, token):
    assert tokens.verify_access_token(token) is None


def test_wrong_secret_issuer_or_audience_rejected(tokens):
    token = tokens.issue_access_token("acc-1", "a@example.com", "customer", IP, UA)
    for other in (
        TokenService(secret="another-secret"),
        TokenService(secret=tokens.secret, issuer="someone-else"),
        TokenService(secret=tokens.secret, audience="other-client"),
    ):
        assert other.verify_access_token(token) is None


def test_unsigned_token_rejected(tokens):
    payload = {"sub": "acc-1", "iss": tokens.issuer, "aud": tokens.audience, "typ": "access",
               "iat": int(utcnow().timestamp()), "exp": int((utcnow() + timedelta(minutes=5)).timestamp())}
    forged = jwt.encode(payload, key=None, algorithm="none")
    assert tokens.verify_access_token(forged) is None


def test_missing_secret_is_a_startup_error():
    with pytest.raises(ValueError):
        TokenService(secret="")


# --------------------------
# Context binding
# --------------------------
def test_context_match_accepted(tokens):
    token = tokens.issue_access_token("acc-1", "a@example.com", "customer", IP, UA)
    result = tokens.verify_access_token_with_context(token, IP, UA)
    assert result.valid and result.mismatch is None


def test_ip_change_rejected_with_detail(tokens):
    token = tokens.issue_access_token("acc-1", "a@example.com", "customer", IP, UA)
    result = tokens.verify_access_token_with_context(token, "198.51.100.1", UA)
    assert not result.valid
    assert result.mismatch.ip_changed and not result.mismatch.user_agent_changed
    assert result.mismatch.original_ip == IP
    assert result.mismatch.current_ip == "198.51.100.1"


def test_user_agent_change_rejected_with_detail(tokens):
    token = tokens.issue_access_token("acc-1", "a@example.com", "customer", IP, UA)
    result = tokens.verify_access_token_with_context(token, IP, "curl/8.0")
    assert not result.valid
    assert result.mismatch.user_agent_changed and not result.mismatch.ip_changed
    details = result.mismatch.as_details()
    assert details["originalUserAgent"] == UA
    assert details["currentUserAgent"] == "curl/8.0"


def test_tokens_without_binding_are_accepted(tokens):
    token = tokens.issue_access_token("acc-1", "a@example.com", "customer", None, None)
    result = tokens.verify_access_token_with_context(token, "198.51.100.1", "anything")
    assert result.valid


def test_expired_token_has_no_mismatch(tokens):
    token = tokens.issue_access_token("acc-1", "a@example.com", "customer", IP, UA,
                                      now=utcnow() - timedelta(hours=1))
    result = tokens.verify_access_token_with_context(token, "198.51.100.1", UA)
    assert not result.valid
    assert result.claims is None and result.mismatch is None


# --------------------------
# Refresh tokens
# --------------------------
async def test_refresh_token_is_stored_as_digest(tokens, db, make_account):
    account = await make_account()
    issued = await tokens.issue_refresh_token(db, account.id, IP, UA)
    await db.commit()

    assert len(issued.token) >= 64
    row = (await db.execute(select(RefreshToken))).scalar_one()
    assert row.token_hash == digest_token(issued.token)
    assert row.token_hash != issued.token
    assert (row.ip_address, row.user_agent) == (IP, UA)
    assert not is_expired(row.expires_at)
    assert await tokens.find_valid_refresh_token(db, issued.token) is not None


async def test_rotation_chain(tokens, db, make_account):
    account = await make_account()
    first = await tokens.issue_refresh_token(db, account.id, IP, UA)
    await db.commit()

    chain = [first.token]
    for _ in range(5):
        issued = await tokens.rotate_refresh_token(db, chain[-1], account.id, IP, UA)
        await db.commit()
        assert issued is not None
        chain.append(issued.token)

    assert len(set(chain)) == 6
    for old in chain[:-1]:
        assert await tokens.find_valid_refresh_token(db, old) is None
    assert await tokens.find_valid_refresh_token(db, chain[-1]) is not None


async def test_rotating_a_dead_token_issues_nothing(tokens, db, make_account):
    account = await make_account()
    issued = await tokens.issue_refresh_token(db, account.id, IP, UA)
    await db.commit()
    assert await tokens.rotate_refresh_token(db, issued.token, account.id, IP, UA) is not None
    await db.commit()

    assert await tokens.rotate_refresh_token(db, issued.token, account.id, IP, UA) is None
    await db.rollback()
    assert await tokens.rotate_refresh_token(db, "never-issued", account.id, IP, UA) is None
    await db.rollback()
    count = len((await db.execute(select(RefreshToken))).scalars().all())
    assert count == 2


async def test_expired_refresh_token_cannot_rotate(tokens, db, make_account):
    account = await make_account()
    issued = await tokens.issue_refresh_token(db, account.id, IP, UA)
    issued.record.expires_at = utcnow() - timedelta(seconds=1)
    await db.commit()
    assert await tokens.find_valid_refresh_token(db, issued.token) is None
    assert await tokens.rotate_refresh_token(db, issued.token, account.id, IP, UA) is None


async def test_concurrent_rotation_has_exactly_one_winner(tokens, session_factory, make_account):
    account = await make_account()
    async with session_factory() as session:
        issued = await tokens.issue_refresh_token(session, account.id, IP, UA)
        await session.commit()

    async def attempt():
        async with session_factory() as session:
            result = await tokens.rotate_refresh_token(session, issued.token, account.id, IP, UA)
            await session.commit()
            return result

    results = await asyncio.gather(*(attempt() for _ in range(5)))
    winners = [r for r in results if r is not None]
    assert len(winners) == 1

    async with session_factory() as session:
        assert await tokens.find_valid_refresh_token(session, issued.token) is None
        assert await tokens.find_valid_refresh_token(session, winners[0].token) is not None


async def test_revoke_all_except_keeps_current_device(tokens, db, make_account):
    account = await make_account()
    here = await tokens.issue_refresh_token(db, account.id, IP, UA)
    phone = await tokens.issue_refresh_token(db, account.id, "198.51.100.9", "MobileSafari")
    laptop = await tokens.issue_refresh_token(db, account.id, IP, "Firefox")
    await db.commit()

    assert await tokens.revoke_all_except(db, account.id, IP, UA) == 2
    await db.commit()
    assert await tokens.find_valid_refresh_token(db, here.token) is not None
    assert await tokens.find_valid_refresh_token(db, phone.token) is None
    assert await tokens.find_valid_refresh_token(db, laptop.token) is None


async def test_revoke_by_id_only_for_owner(tokens, db, make_account):
    alice = await make_account(email="alice@example.com")
    bob = await make_account(email="bob@example.com")
    issued = await tokens.issue_refresh_token(db, alice.id, IP, UA)
    await db.commit()

    assert not await tokens.revoke_by_id_for_account(db, issued.record.id, bob.id)
    assert await tokens.revoke_by_id_for_account(db, issued.record.id, alice.id)
    assert not await tokens.revoke_by_id_for_account(db, issued.record.id, alice.id)
    await db.commit()


async def test_purge_expired(tokens, db, make_account):
    account = await make_account()
    old = await tokens.issue_refresh_token(db, account.id, IP, UA)
    old.record.expires_at = utcnow() - timedelta(days=1)
    await tokens.issue_refresh_token(db, account.id, IP, UA)
    await db.commit()

    assert await tokens.purge_expired(db) == 1
    await db.commit()
    assert len(await tokens.active_tokens_for_account(db, account.id)) == 1
