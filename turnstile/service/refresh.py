"""Server-side refresh records and the rotation protocol.

Per subject the store keeps one current hash and, for ``grace_seconds``
after a rotation, the previous hash. Presenting:

* the current token rotates: a new token becomes current, the old current
  moves to previous;
* the previous token inside the grace window replays: the caller gets the
  already-rotated current token back, no new generation is minted;
* anything else with a valid signature is treated as reuse: the subject's
  record is wiped and every session must log in again.

Writes are compare-and-set on the record version, so of two concurrent
rotations of the same token exactly one mints; the loser re-reads and lands
on the replay path.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from cryptography.fernet import Fernet, InvalidToken

from turnstile.logging import get_logger
from turnstile.service.errors import AuthenticationError
from turnstile.service.hashing import CredentialHasher
from turnstile.service.tokens import IssuedToken, SecretKind, TokenCodec, TokenError
from turnstile.storage.common import RecordStore
from turnstile.storage.models import RefreshRecord, utcnow

logger = get_logger(__name__)

MAX_ROTATION_ATTEMPTS = 3
_GENERIC_FAILURE = "invalid or expired token"


@dataclass(frozen=True)
class RotationResult:
    subject_id: str
    refresh: IssuedToken
    replayed: bool = False


def derive_seal_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(
        hashlib.sha256(f"refresh-seal:{key_material}".encode()).digest()
    )


class RefreshTokenStore:
    def __init__(
        self,
        records: RecordStore,
        codec: TokenCodec,
        hasher: CredentialHasher,
        *,
        seal_key: bytes,
        grace_seconds: int = 120,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.records = records
        self.codec = codec
        self.hasher = hasher
        self.grace = timedelta(seconds=grace_seconds)
        self._cipher = Fernet(seal_key)
        self._clock = clock

    async def issue(self, subject_id: str) -> IssuedToken:
        """Start a fresh generation for ``subject_id``, replacing any record."""
        issued = self.codec.issue_refresh(subject_id)
        await self.records.replace_refresh(
            RefreshRecord(
                subject_id=subject_id,
                current_hash=self.hasher.hash_fast(issued.token),
                expires_at=issued.expires_at,
                sealed_current=self._seal(issued.token),
            )
        )
        logger.info("refresh_token_issued", subject_id=subject_id)
        return issued

    async def rotate(self, presented: str) -> RotationResult:
        subject_id = self._verified_subject(presented)
        presented_hash = self.hasher.hash_fast(presented)

        for _ in range(MAX_ROTATION_ATTEMPTS):
            record = await self.records.get_refresh(subject_id)
            if record is None:
                logger.warning("refresh_record_missing", subject_id=subject_id)
                raise AuthenticationError(_GENERIC_FAILURE)
            now = self._clock()

            if _same(presented_hash, record.current_hash):
                issued = self.codec.issue_refresh(subject_id)
                rotated = RefreshRecord(
                    subject_id=subject_id,
                    current_hash=self.hasher.hash_fast(issued.token),
                    expires_at=issued.expires_at,
                    previous_hash=record.current_hash,
                    rotated_at=now,
                    sealed_current=self._seal(issued.token),
                )
                if await self.records.compare_and_set_refresh(rotated, record.version):
                    logger.info("refresh_token_rotated", subject_id=subject_id)
                    return RotationResult(subject_id, issued)
                logger.info("refresh_rotation_conflict", subject_id=subject_id)
                continue

            if _same(presented_hash, record.previous_hash) and self._in_grace(record, now):
                token = self._unseal(record.sealed_current)
                if token is None:
                    raise AuthenticationError(_GENERIC_FAILURE)
                logger.info("refresh_token_replayed", subject_id=subject_id)
                return RotationResult(
                    subject_id, IssuedToken(token, record.expires_at), replayed=True
                )

            await self.records.delete_refresh(subject_id)
            logger.warning(
                "refresh_token_reuse_detected",
                subject_id=subject_id,
                matched_previous=_same(presented_hash, record.previous_hash),
            )
            raise AuthenticationError(_GENERIC_FAILURE)

        logger.error("refresh_rotation_contention", subject_id=subject_id)
        raise AuthenticationError(_GENERIC_FAILURE)

    async def revoke(self, presented: str) -> bool:
        """Drop the subject's record if ``presented`` is its current or in-grace token.

        Never raises for bad tokens; returns whether anything was removed.
        """
        try:
            claims = self.codec.verify(presented, SecretKind.REFRESH)
        except TokenError:
            return False
        record = await self.records.get_refresh(claims.subject_id)
        if record is None:
            return False
        presented_hash = self.hasher.hash_fast(presented)
        live = _same(presented_hash, record.current_hash) or (
            _same(presented_hash, record.previous_hash) and self._in_grace(record, self._clock())
        )
        if not live:
            return False
        removed = await self.records.delete_refresh(claims.subject_id)
        logger.info("refresh_token_revoked", subject_id=claims.subject_id)
        return removed

    async def revoke_all(self, subject_id: str) -> None:
        if await self.records.delete_refresh(subject_id):
            logger.info("refresh_tokens_revoked_for_subject", subject_id=subject_id)

    def _verified_subject(self, presented: str) -> str:
        try:
            return self.codec.verify(presented, SecretKind.REFRESH).subject_id
        except TokenError as exc:
            logger.info("refresh_token_rejected", reason=exc.reason.value)
            raise AuthenticationError(_GENERIC_FAILURE) from None

    def _in_grace(self, record: RefreshRecord, now: datetime) -> bool:
        return record.rotated_at is not None and now <= record.rotated_at + self.grace

    def _seal(self, token: str) -> str:
        return self._cipher.encrypt(token.encode()).decode()

    def _unseal(self, sealed: Optional[str]) -> Optional[str]:
        if not sealed:
            return None
        try:
            return self._cipher.decrypt(sealed.encode()).decode()
        except InvalidToken:
            logger.error("refresh_seal_unreadable")
            return None


def _same(digest: str, stored: Optional[str]) -> bool:
    return bool(stored) and hmac.compare_digest(digest, stored)
