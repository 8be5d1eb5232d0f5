"""Tests for one-time codes and the sliding-window rate limiter."""

import asyncio

import pytest

from turnstile.service.hashing import CredentialHasher
from turnstile.service.otp import CODE_LENGTH, OTPError, OTPFailure, OTPManager
from turnstile.service.rate_limit import SlidingWindowRateLimiter
from turnstile.storage.models import OTPPurpose


@pytest.fixture
def otp(records, clock):
    return OTPManager(records, CredentialHasher(), ttl_seconds=600, clock=clock)


async def _expect_failure(manager, subject_id, purpose, code, failure):
    with pytest.raises(OTPError) as excinfo:
        await manager.verify(subject_id, purpose, code)
    assert excinfo.value.failure is failure
    assert excinfo.value.reason == failure.value


class TestOTPManager:
    """Tests for code issue and verification."""

    def test_generated_codes_are_six_digits(self):
        for _ in range(50):
            code = OTPManager.generate_code()
            assert len(code) == CODE_LENGTH
            assert code.isdigit()

    async def test_code_verifies_once(self, otp):
        code = await otp.issue("user-1", OTPPurpose.EMAIL_VERIFY)

        await otp.verify("user-1", OTPPurpose.EMAIL_VERIFY, code)
        await _expect_failure(otp, "user-1", OTPPurpose.EMAIL_VERIFY, code, OTPFailure.NO_ACTIVE_CODE)

    async def test_only_hash_is_stored(self, otp, records):
        code = await otp.issue("user-1", OTPPurpose.EMAIL_VERIFY)

        stored = await records.get_otp("user-1", OTPPurpose.EMAIL_VERIFY)
        assert stored.code_hash == CredentialHasher.hash_fast(code)
        assert code not in stored.to_dict().values()

    async def test_reissue_invalidates_previous_code(self, otp):
        first = await otp.issue("user-1", OTPPurpose.EMAIL_VERIFY)
        second = await otp.issue("user-1", OTPPurpose.EMAIL_VERIFY)
        if first == second:
            pytest.skip("identical codes drawn")

        await _expect_failure(otp, "user-1", OTPPurpose.EMAIL_VERIFY, first, OTPFailure.MISMATCH)
        await otp.verify("user-1", OTPPurpose.EMAIL_VERIFY, second)

    async def test_mismatch_keeps_code_active(self, otp):
        code = await otp.issue("user-1", OTPPurpose.PASSWORD_RESET)
        wrong = "000000" if code != "000000" else "111111"

        await _expect_failure(otp, "user-1", OTPPurpose.PASSWORD_RESET, wrong, OTPFailure.MISMATCH)
        await otp.verify("user-1", OTPPurpose.PASSWORD_RESET, code)

    async def test_purposes_are_independent(self, otp):
        verify_code = await otp.issue("user-1", OTPPurpose.EMAIL_VERIFY)
        reset_code = await otp.issue("user-1", OTPPurpose.PASSWORD_RESET)

        await otp.verify("user-1", OTPPurpose.PASSWORD_RESET, reset_code)
        await otp.verify("user-1", OTPPurpose.EMAIL_VERIFY, verify_code)

    async def test_valid_until_expiry_instant(self, otp, clock):
        code = await otp.issue("user-1", OTPPurpose.EMAIL_VERIFY)

        clock.advance(600)
        await otp.verify("user-1", OTPPurpose.EMAIL_VERIFY, code)

    async def test_expired_code_is_rejected_and_removed(self, otp, clock, records):
        code = await otp.issue("user-1", OTPPurpose.EMAIL_VERIFY)

        clock.advance(601)
        await _expect_failure(otp, "user-1", OTPPurpose.EMAIL_VERIFY, code, OTPFailure.EXPIRED)
        assert await records.get_otp("user-1", OTPPurpose.EMAIL_VERIFY) is None

    async def test_without_code_is_no_active_code(self, otp):
        await _expect_failure(otp, "nobody", OTPPurpose.EMAIL_VERIFY, "123456", OTPFailure.NO_ACTIVE_CODE)

    async def test_concurrent_verifications_consume_once(self, otp):
        code = await otp.issue("user-1", OTPPurpose.EMAIL_VERIFY)

        results = await asyncio.gather(
            *(otp.verify("user-1", OTPPurpose.EMAIL_VERIFY, code) for _ in range(5)),
            return_exceptions=True,
        )

        assert sum(1 for result in results if result is None) == 1
        assert all(
            isinstance(result, OTPError) and result.failure is OTPFailure.NO_ACTIVE_CODE
            for result in results
            if result is not None
        )


class TestSlidingWindowRateLimiter:
    """Tests for the attempt counter."""

    def test_allows_up_to_limit(self, clock):
        limiter = SlidingWindowRateLimiter(clock=clock)

        assert [limiter.allow("login:a", 5, 900) for _ in range(6)] == [True] * 5 + [False]

    def test_refusal_reports_retry_after(self, clock):
        limiter = SlidingWindowRateLimiter(clock=clock)
        for _ in range(3):
            limiter.check("reset:a", 3, 3600)

        clock.advance(600)
        decision = limiter.check("reset:a", 3, 3600)

        assert decision.allowed is False
        assert decision.remaining == 0
        assert decision.retry_after == 3000

    def test_refused_attempts_are_not_counted(self, clock):
        limiter = SlidingWindowRateLimiter(clock=clock)
        limiter.check("k", 1, 60)
        clock.advance(30)
        limiter.check("k", 1, 60)

        clock.advance(30)
        assert limiter.allow("k", 1, 60) is True

    def test_window_slides(self, clock):
        limiter = SlidingWindowRateLimiter(clock=clock)
        limiter.check("k", 2, 60)
        clock.advance(30)
        limiter.check("k", 2, 60)

        clock.advance(29)
        assert limiter.allow("k", 2, 60) is False
        clock.advance(1)
        assert limiter.allow("k", 2, 60) is True
        assert limiter.allow("k", 2, 60) is False

    def test_keys_are_independent(self, clock):
        limiter = SlidingWindowRateLimiter(clock=clock)
        limiter.check("login:a", 1, 60)

        assert limiter.allow("login:b", 1, 60) is True
        assert limiter.allow("login:a", 1, 60) is False

    def test_reset_clears_key(self, clock):
        limiter = SlidingWindowRateLimiter(clock=clock)
        limiter.check("k", 1, 60)

        limiter.reset("k")
        assert limiter.allow("k", 1, 60) is True

    def test_sweep_drops_idle_keys(self, clock):
        limiter = SlidingWindowRateLimiter(clock=clock)
        limiter.check("old", 5, 60)
        clock.advance(45)
        limiter.check("recent", 5, 60)

        clock.advance(20)
        assert limiter.sweep() == 1
        assert len(limiter) == 1

    def test_rejects_nonpositive_rules(self, clock):
        limiter = SlidingWindowRateLimiter(clock=clock)

        with pytest.raises(ValueError):
            limiter.check("k", 0, 60)
