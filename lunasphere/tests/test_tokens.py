"""
Tests for password hashing, token issuing and the refresh token store.
"""
import asyncio
from datetime import timedelta

import bcrypt
import jwt
import pytest

from lunasphere.auth.jwt import TokenIssuer
from lunasphere.auth.passwords import PasswordHasher
from lunasphere.auth.tokens import TokenStore
from lunasphere.base_service import utcnow
from lunasphere.errors import ExpiredToken, InvalidToken
from lunasphere.locks import KeyedLock
from lunasphere.storage.memory import MemoryStorage
from lunasphere.storage.models import UserRecord


@pytest.fixture
def hasher():
    return PasswordHasher(rounds=4)


@pytest.fixture
def issuer():
    return TokenIssuer(access_secret="access-key", refresh_secret="refresh-key")


@pytest.fixture
def user():
    now = utcnow()
    return UserRecord(
        username="alice",
        password_hash="x",
        roles=["member", "user"],
        registered_at=now,
        role_assigned_at=now,
    )


def test_hash_and_verify(hasher):
    hashed = hasher.hash_sync("correct horse")
    assert hashed != "correct horse"
    assert hashed.startswith("$2")
    assert hasher.verify_sync("correct horse", hashed)
    assert not hasher.verify_sync("wrong horse", hashed)


def test_hashes_are_salted(hasher):
    assert hasher.hash_sync("same") != hasher.hash_sync("same")


def test_only_first_72_bytes_count(hasher):
    base = "a" * 72
    hashed = hasher.hash_sync(base + "tail-one")
    assert hasher.verify_sync(base + "tail-two", hashed)


def test_verify_malformed_hash_is_false(hasher):
    assert hasher.verify_sync("anything", "not-a-bcrypt-hash") is False


def test_cost_factor_is_applied():
    hashed = PasswordHasher(rounds=5).hash_sync("pw")
    assert hashed.split("$")[2] == "05"


@pytest.mark.asyncio
async def test_async_hash_and_dummy_verify(hasher):
    hashed = await hasher.hash("pw-123")
    assert await hasher.verify("pw-123", hashed)
    assert await hasher.dummy_verify("pw-123") is False


def test_issue_and_verify_access(issuer, user):
    pair = issuer.issue(user)
    claims = issuer.verify_access(pair.access_token)
    assert claims.username == "alice"
    assert claims.roles == ["member", "user"]
    assert claims.account_status == "active"
    assert pair.expires_in == "15m"
    assert pair.refresh_expires_at - utcnow() > timedelta(days=29)


def test_tokens_are_not_interchangeable(issuer, user):
    pair = issuer.issue(user)
    with pytest.raises(InvalidToken):
        issuer.verify_access(pair.refresh_token)
    with pytest.raises(InvalidToken):
        issuer.verify_refresh(pair.access_token)
    assert issuer.verify_refresh(pair.refresh_token).username == "alice"


def test_successive_pairs_differ(issuer, user):
    first = issuer.issue(user)
    second = issuer.issue(user)
    assert first.refresh_token != second.refresh_token
    assert first.access_token != second.access_token


def test_token_signed_with_wrong_key_is_rejected(issuer):
    forged = jwt.encode(
        {"sub": "alice", "type": "access", "exp": utcnow() + timedelta(minutes=5)},
        "some-other-key",
        algorithm="HS256",
    )
    with pytest.raises(InvalidToken):
        issuer.verify_access(forged)


def test_expired_access_token(user):
    issuer = TokenIssuer(access_secret="a", refresh_secret="b", access_minutes=1)
    issuer.access_ttl = timedelta(seconds=-1)
    pair = issuer.issue(user)
    with pytest.raises(ExpiredToken):
        issuer.verify_access(pair.access_token)


def test_missing_claims_are_rejected(issuer):
    token = jwt.encode({"sub": "alice", "type": "access"}, "access-key", algorithm="HS256")
    with pytest.raises(InvalidToken):
        issuer.verify_access(token)


def test_equal_secrets_are_refused():
    with pytest.raises(ValueError):
        TokenIssuer(access_secret="same", refresh_secret="same")


def test_random_secrets_when_unconfigured(user, caplog):
    issuer = TokenIssuer()
    assert "JWT secrets not configured" in caplog.text
    pair = issuer.issue(user)
    assert issuer.verify_access(pair.access_token).username == "alice"


@pytest.mark.asyncio
async def test_token_store_lifecycle():
    store = TokenStore(MemoryStorage().tokens)
    expires = utcnow() + timedelta(days=30)
    await store.remember("t1", "alice", expires)
    await store.remember("t2", "Alice", expires)
    await store.remember("t3", "bob", expires)

    assert await store.is_valid("t1")
    assert await store.revoke("t1") is True
    assert await store.revoke("t1") is False
    assert not await store.is_valid("t1")

    assert await store.revoke_all("ALICE") == 1
    assert not await store.is_valid("t2")
    assert await store.is_valid("t3")


@pytest.mark.asyncio
async def test_token_store_purges_expired():
    store = TokenStore(MemoryStorage().tokens)
    await store.remember("old", "alice", utcnow() - timedelta(seconds=1))
    await store.remember("new", "alice", utcnow() + timedelta(days=1))
    assert await store.purge_expired() == 1
    assert not await store.is_valid("old")
    assert await store.is_valid("new")


@pytest.mark.asyncio
async def test_keyed_lock_serialises_same_key_and_cleans_up():
    locks = KeyedLock()
    order = []

    async def worker(name, key):
        async with locks.hold(key):
            order.append(f"{name}-in")
            await asyncio.sleep(0.01)
            order.append(f"{name}-out")

    await asyncio.gather(worker("a", "Alice"), worker("b", "alice"))
    assert order in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_keyed_lock_ignores_surrounding_whitespace():
    locks = KeyedLock()
    async with locks.hold(" alice "):
        assert len(locks) == 1
        second = asyncio.create_task(_enter(locks, "ALICE"))
        await asyncio.sleep(0.01)
        # Same record, same lock: the second holder is still waiting.
        assert not second.done()
        assert len(locks) == 1
    await second
    assert len(locks) == 0


async def _enter(locks, key):
    async with locks.hold(key):
        pass


def test_bcrypt_hash_format_is_standard(hasher):
    hashed = hasher.hash_sync("pw")
    assert bcrypt.checkpw(b"pw", hashed.encode("utf-8"))
