"""Time-boxed numeric codes per (subject, purpose).

Each pair moves NONE -> ISSUED -> CONSUMED | EXPIRED. Issuing again replaces
the active code. Only ``hash_fast(code)`` is stored; the plaintext goes back
to the caller for delivery and nowhere else.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, NoReturn

from turnstile.logging import get_logger
from turnstile.service.errors import ValidationError
from turnstile.service.hashing import CredentialHasher
from turnstile.storage.common import RecordStore
from turnstile.storage.models import OneTimeCodeRecord, OTPPurpose, utcnow

logger = get_logger(__name__)

CODE_LENGTH = 6


class OTPFailure(str, Enum):
    NO_ACTIVE_CODE = "NO_ACTIVE_CODE"
    EXPIRED = "EXPIRED"
    MISMATCH = "MISMATCH"


_FAILURE_MESSAGES = {
    OTPFailure.NO_ACTIVE_CODE: "no active code; request a new one",
    OTPFailure.EXPIRED: "code has expired; request a new one",
    OTPFailure.MISMATCH: "invalid code",
}


class OTPError(ValidationError):
    def __init__(self, failure: OTPFailure) -> None:
        super().__init__(_FAILURE_MESSAGES[failure], detail={"reason": failure.value})
        self.failure = failure


class OTPManager:
    def __init__(
        self,
        records: RecordStore,
        hasher: CredentialHasher,
        *,
        ttl_seconds: int = 600,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.records = records
        self.hasher = hasher
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock

    @staticmethod
    def generate_code() -> str:
        return f"{secrets.randbelow(10 ** CODE_LENGTH):0{CODE_LENGTH}d}"

    async def issue(self, subject_id: str, purpose: OTPPurpose) -> str:
        purpose = OTPPurpose(purpose)
        code = self.generate_code()
        now = self._clock()
        await self.records.put_otp(
            OneTimeCodeRecord(
                subject_id=subject_id,
                purpose=purpose,
                code_hash=self.hasher.hash_fast(code),
                issued_at=now,
                expires_at=now + self.ttl,
            )
        )
        logger.info("otp_issued", subject_id=subject_id, purpose=purpose.value)
        return code

    async def resend(self, subject_id: str, purpose: OTPPurpose) -> str:
        # Same as issue; callers gate resends with their own rate limit
        return await self.issue(subject_id, purpose)

    async def verify(self, subject_id: str, purpose: OTPPurpose, candidate: str) -> None:
        """Consume the active code if ``candidate`` matches; raise OTPError otherwise.

        A mismatch leaves the code in place for another try within its expiry.
        """
        purpose = OTPPurpose(purpose)
        record = await self.records.get_otp(subject_id, purpose)
        if record is None:
            self._fail(subject_id, purpose, OTPFailure.NO_ACTIVE_CODE)

        if self._clock() > record.expires_at:
            # Compare-and-delete so a code issued meanwhile survives
            await self.records.consume_otp(subject_id, purpose, record.code_hash)
            self._fail(subject_id, purpose, OTPFailure.EXPIRED)

        if not self.hasher.matches_fast(str(candidate), record.code_hash):
            self._fail(subject_id, purpose, OTPFailure.MISMATCH)

        if not await self.records.consume_otp(subject_id, purpose, record.code_hash):
            # Consumed or replaced by a concurrent request
            self._fail(subject_id, purpose, OTPFailure.NO_ACTIVE_CODE)
        logger.info("otp_consumed", subject_id=subject_id, purpose=purpose.value)

    @staticmethod
    def _fail(subject_id: str, purpose: OTPPurpose, failure: OTPFailure) -> NoReturn:
        logger.warning("otp_verification_failed", subject_id=subject_id, purpose=purpose.value, reason=failure.value)
        raise OTPError(failure)
