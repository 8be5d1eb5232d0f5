"""Record-store contract shared by the memory and Redis backends."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Protocol

from turnstile.storage.models import OneTimeCodeRecord, OTPPurpose, RefreshRecord


class RecordStore(Protocol):
    """Persistence for refresh and one-time-code records.

    Writes that race with each other are settled by the backend:
    ``compare_and_set_refresh`` only succeeds against the version the caller
    read, and ``consume_otp`` deletes a code at most once.
    """

    async def get_refresh(self, subject_id: str) -> Optional[RefreshRecord]: ...

    async def replace_refresh(self, record: RefreshRecord) -> RefreshRecord: ...

    async def compare_and_set_refresh(
        self, record: RefreshRecord, expected_version: int
    ) -> bool: ...

    async def delete_refresh(self, subject_id: str) -> bool: ...

    async def put_otp(self, record: OneTimeCodeRecord) -> None: ...

    async def get_otp(
        self, subject_id: str, purpose: OTPPurpose
    ) -> Optional[OneTimeCodeRecord]: ...

    async def consume_otp(
        self, subject_id: str, purpose: OTPPurpose, code_hash: str
    ) -> bool: ...

    async def purge_expired(self, now: datetime) -> int: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


def ttl_millis(expires_at: datetime, now: datetime) -> int:
    """Milliseconds until ``expires_at``, clamped to at least 1.

    Naive timestamps are treated as UTC.
    """
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return max(1, int((expires_at - now).total_seconds() * 1000))
