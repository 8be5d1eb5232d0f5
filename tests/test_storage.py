"""Tests for the directory and record backends.

Redis tests run only when a server answers at REDIS_URL
(default redis://localhost:6379/15).
"""

import os
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from redis.exceptions import RedisError

from turnstile.service.hashing import CredentialHasher
from turnstile.service.otp import OTPError, OTPFailure, OTPManager
from turnstile.storage.errors import ConstraintViolation
from turnstile.storage.memory import MemoryRecordStore, MemoryStore
from turnstile.storage.models import (
    OneTimeCodeRecord,
    OTPPurpose,
    RefreshRecord,
    Role,
    VerificationStatus,
)
from turnstile.storage.redis_store import RedisRecordStore

NOW = datetime(2030, 1, 1, tzinfo=timezone.utc)


def _refresh(subject_id="user-1", current="hash-a", **kwargs):
    return RefreshRecord(
        subject_id=subject_id,
        current_hash=current,
        expires_at=kwargs.pop("expires_at", datetime.now(timezone.utc) + timedelta(hours=1)),
        **kwargs,
    )


def _code(subject_id="user-1", purpose=OTPPurpose.EMAIL_VERIFY, code_hash="code-a", expires_at=None):
    issued = datetime.now(timezone.utc)
    return OneTimeCodeRecord(
        subject_id=subject_id,
        purpose=purpose,
        code_hash=code_hash,
        issued_at=issued,
        expires_at=expires_at or issued + timedelta(minutes=10),
    )


class TestMemoryDirectory:
    """Tests for the in-memory principal directory."""

    def test_email_is_unique_and_case_insensitive(self):
        store = MemoryStore()
        store.create_principal("Person@Example.com", Role.END_USER)

        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_principal("person@example.com", Role.ORG_ADMIN)
        assert excinfo.value.constraint == "principal_email"
        assert store.find_principal_by_identifier("PERSON@example.com") is not None

    def test_returned_principals_are_copies(self):
        store = MemoryStore()
        principal = store.create_principal("person@example.com", Role.END_USER)

        principal.email_verified = True

        assert store.find_principal_by_id(principal.id).email_verified is False

    def test_organization_status_transitions(self):
        store = MemoryStore()
        owner = store.create_principal("owner@acme.test", Role.ORG_ADMIN)
        store.create_organization(owner.id, "Acme")

        rejected = store.set_organization_status(owner.id, VerificationStatus.REJECTED, "no docs")
        verified = store.set_organization_status(owner.id, VerificationStatus.VERIFIED, "ignored")

        assert rejected.rejection_reason == "no docs"
        assert verified.status is VerificationStatus.VERIFIED
        assert verified.rejection_reason is None

    def test_unknown_organization(self):
        store = MemoryStore()

        assert store.find_organization_status("missing") is None
        assert store.set_organization_status("missing", VerificationStatus.VERIFIED) is None


class TestMemoryRecords:
    """Tests for the in-memory record store."""

    async def test_replace_bumps_version(self):
        store = MemoryRecordStore()

        first = await store.replace_refresh(_refresh())
        second = await store.replace_refresh(_refresh(current="hash-b"))

        assert (first.version, second.version) == (1, 2)

    async def test_compare_and_set_detects_stale_version(self):
        store = MemoryRecordStore()
        stored = await store.replace_refresh(_refresh())

        assert await store.compare_and_set_refresh(_refresh(current="hash-b"), stored.version) is True
        assert await store.compare_and_set_refresh(_refresh(current="hash-c"), stored.version) is False
        assert (await store.get_refresh("user-1")).current_hash == "hash-b"

    async def test_consume_only_matching_code(self):
        store = MemoryRecordStore()
        await store.put_otp(_code())

        assert await store.consume_otp("user-1", OTPPurpose.EMAIL_VERIFY, "other") is False
        assert await store.consume_otp("user-1", OTPPurpose.EMAIL_VERIFY, "code-a") is True
        assert await store.consume_otp("user-1", OTPPurpose.EMAIL_VERIFY, "code-a") is False

    async def test_purge_expired(self):
        store = MemoryRecordStore()
        await store.put_otp(_code(expires_at=NOW - timedelta(seconds=1)))
        await store.put_otp(_code(purpose=OTPPurpose.PASSWORD_RESET, expires_at=NOW + timedelta(minutes=5)))
        await store.replace_refresh(_refresh(expires_at=NOW - timedelta(days=1)))

        assert await store.purge_expired(NOW) == 2
        assert await store.get_otp("user-1", OTPPurpose.PASSWORD_RESET) is not None


@pytest.fixture
def redis_store():
    url = os.environ.get("REDIS_URL", "redis://localhost:6379/15")
    store = RedisRecordStore(url, prefix=f"turnstile-test-{uuid.uuid4().hex[:8]}", socket_timeout=1.0)
    try:
        store.verify_connection()
    except (RedisError, OSError):
        pytest.skip("Redis not available")
    return store


class TestRedisRecords:
    """Tests for the Redis record store against a live server."""

    async def test_refresh_round_trip_and_cas(self, redis_store):
        try:
            stored = await redis_store.replace_refresh(_refresh())
            fetched = await redis_store.get_refresh("user-1")

            assert fetched.current_hash == "hash-a"
            assert fetched.version == stored.version == 1
            assert await redis_store.compare_and_set_refresh(_refresh(current="hash-b"), 1) is True
            assert await redis_store.compare_and_set_refresh(_refresh(current="hash-c"), 1) is False
            assert (await redis_store.get_refresh("user-1")).version == 2
            assert await redis_store.delete_refresh("user-1") is True
        finally:
            await redis_store.delete_refresh("user-1")
            await redis_store.close()

    async def test_code_consumed_once(self, redis_store):
        try:
            await redis_store.put_otp(_code())

            assert await redis_store.consume_otp("user-1", OTPPurpose.EMAIL_VERIFY, "other") is False
            assert await redis_store.consume_otp("user-1", OTPPurpose.EMAIL_VERIFY, "code-a") is True
            assert await redis_store.get_otp("user-1", OTPPurpose.EMAIL_VERIFY) is None
        finally:
            await redis_store.close()

    async def test_expired_code_is_kept_until_reported(self, redis_store):
        issued = datetime.now(timezone.utc) - timedelta(minutes=15)
        record = OneTimeCodeRecord(
            subject_id="user-1",
            purpose=OTPPurpose.EMAIL_VERIFY,
            code_hash="code-a",
            issued_at=issued,
            expires_at=issued + timedelta(minutes=10),
        )
        otp = OTPManager(redis_store, CredentialHasher(), ttl_seconds=600)
        try:
            await redis_store.put_otp(record)

            assert await redis_store.get_otp("user-1", OTPPurpose.EMAIL_VERIFY) is not None
            with pytest.raises(OTPError) as excinfo:
                await otp.verify("user-1", OTPPurpose.EMAIL_VERIFY, "123456")
            assert excinfo.value.failure is OTPFailure.EXPIRED
        finally:
            await redis_store.close()

    async def test_ping(self, redis_store):
        try:
            assert await redis_store.ping() is True
        finally:
            await redis_store.close()
