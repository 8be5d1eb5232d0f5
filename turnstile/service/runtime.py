from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from turnstile.config import Settings, get_settings
from turnstile.logging import get_logger
from turnstile.service.authorization import Authorizer
from turnstile.service.collaborators import CodeDelivery, PrincipalDirectory
from turnstile.service.email import EmailService
from turnstile.service.hashing import CredentialHasher
from turnstile.service.otp import OTPManager
from turnstile.service.rate_limit import SlidingWindowRateLimiter
from turnstile.service.refresh import RefreshTokenStore, derive_seal_key
from turnstile.service.session import SessionService
from turnstile.service.tokens import TokenCodec
from turnstile.storage.common import RecordStore
from turnstile.storage.memory import MemoryRecordStore, MemoryStore
from turnstile.storage.models import utcnow
from turnstile.storage.redis_store import RedisRecordStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with '***' for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Wires the session core together.

    Built once at process start and handed to the app; tests build their
    own isolated instances. Collaborators default to the in-memory
    directory and SMTP delivery.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        directory: Optional[PrincipalDirectory] = None,
        delivery: Optional[CodeDelivery] = None,
        records: Optional[RecordStore] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock
        self.directory = directory if directory is not None else MemoryStore()
        self.delivery = delivery if delivery is not None else self._build_email()
        self.records = records if records is not None else self._build_records()

        self.hasher = CredentialHasher()
        self.codec = TokenCodec(self.settings, self.hasher, clock=clock)
        self.rate_limiter = SlidingWindowRateLimiter(clock=clock)
        self.otp = OTPManager(
            self.records, self.hasher, ttl_seconds=self.settings.otp_ttl_seconds, clock=clock
        )
        self.refresh = RefreshTokenStore(
            self.records,
            self.codec,
            self.hasher,
            seal_key=derive_seal_key(self.settings.jwt_refresh_secret),
            grace_seconds=self.settings.refresh_grace_seconds,
            clock=clock,
        )
        self.sessions = SessionService(
            self.settings,
            directory=self.directory,
            delivery=self.delivery,
            hasher=self.hasher,
            codec=self.codec,
            otp=self.otp,
            refresh=self.refresh,
        )
        self.authorizer = Authorizer(
            self.codec, self.directory, timeout=self.settings.collaborator_timeout_seconds
        )
        logger.info(
            "runtime_initialized",
            record_backend=type(self.records).__name__,
            directory=type(self.directory).__name__,
            delivery=type(self.delivery).__name__,
            test_mode=self.settings.test_mode,
        )

    def _build_email(self) -> EmailService:
        return EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            code_ttl_minutes=max(1, self.settings.otp_ttl_seconds // 60),
            timeout=self.settings.collaborator_timeout_seconds,
        )

    def _build_records(self) -> RecordStore:
        if not self.settings.redis_url:
            return MemoryRecordStore()
        store = RedisRecordStore(
            self.settings.redis_url, socket_timeout=self.settings.collaborator_timeout_seconds
        )
        try:
            store.verify_connection()
        except (RedisError, OSError) as exc:
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(exc),
                message="Refresh and code records are process-local",
            )
            return MemoryRecordStore()
        return store

    async def close(self) -> None:
        await self.records.close()
