"""Compact HS256 tokens for access, refresh and password-reset credentials.

Each kind is signed with its own secret and carries a ``typ`` claim, so a
token of one kind never verifies as another.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, NamedTuple, Optional

from turnstile.config import Settings
from turnstile.logging import get_logger
from turnstile.service.hashing import CredentialHasher
from turnstile.storage.models import Role, VerificationStatus, utcnow

logger = get_logger(__name__)


class SecretKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    RESET = "reset"


class TokenFailure(str, Enum):
    EXPIRED = "EXPIRED"
    MALFORMED = "MALFORMED"
    BAD_SIGNATURE = "BAD_SIGNATURE"


class TokenError(Exception):
    """Verification failure; callers translate it to AuthenticationError."""

    def __init__(self, reason: TokenFailure) -> None:
        super().__init__(reason.value)
        self.reason = reason


class IssuedToken(NamedTuple):
    token: str
    expires_at: datetime


@dataclass(frozen=True)
class TokenClaims:
    subject_id: str
    kind: SecretKind
    issued_at: datetime
    expires_at: datetime
    jti: str
    role: Optional[Role] = None
    org_status: Optional[VerificationStatus] = None
    fingerprint: Optional[str] = None


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _from_ts(value: int) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


class TokenCodec:
    """Signs and verifies tokens. Pure computation; no locking needed."""

    _HEADER = {"alg": "HS256", "typ": "JWT"}

    def __init__(
        self,
        settings: Settings,
        hasher: CredentialHasher,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.hasher = hasher
        self._clock = clock
        self._secrets = {
            SecretKind.ACCESS: settings.jwt_access_secret.encode(),
            SecretKind.REFRESH: settings.jwt_refresh_secret.encode(),
            SecretKind.RESET: settings.jwt_reset_secret.encode(),
        }
        self._ttls = {
            SecretKind.ACCESS: settings.access_token_ttl_seconds,
            SecretKind.REFRESH: settings.refresh_token_ttl_seconds,
            SecretKind.RESET: settings.reset_token_ttl_seconds,
        }
        self._leeway = settings.clock_skew_seconds

    def issue_access(
        self,
        subject_id: str,
        role: Role,
        status_snapshot: Optional[VerificationStatus] = None,
    ) -> IssuedToken:
        claims: dict[str, Any] = {"sub": subject_id, "role": Role(role).value}
        if status_snapshot is not None:
            # Informational only; authorization re-reads the live status
            claims["org_status"] = VerificationStatus(status_snapshot).value
        return self._issue(SecretKind.ACCESS, claims)

    def issue_refresh(self, subject_id: str) -> IssuedToken:
        return self._issue(SecretKind.REFRESH, {"sub": subject_id})

    def issue_reset(self, subject_id: str, secret_hash: Optional[str]) -> IssuedToken:
        return self._issue(
            SecretKind.RESET,
            {"sub": subject_id, "fp": self.secret_fingerprint(secret_hash)},
        )

    def secret_fingerprint(self, secret_hash: Optional[str]) -> str:
        """Short digest of the stored secret hash; changes whenever the secret does."""
        return self.hasher.hash_fast(secret_hash or "")[:24]

    def verify(self, token: str, kind: SecretKind) -> TokenClaims:
        payload = self._decode(token, kind)
        try:
            subject_id = payload["sub"]
            issued_at = _from_ts(int(payload["iat"]))
            exp = int(payload["exp"])
            expires_at = _from_ts(exp)
            jti = str(payload["jti"])
        except (KeyError, TypeError, ValueError, OverflowError, OSError):
            raise TokenError(TokenFailure.MALFORMED) from None
        if not isinstance(subject_id, str) or not subject_id:
            raise TokenError(TokenFailure.MALFORMED)
        if payload.get("typ") != kind.value:
            raise TokenError(TokenFailure.MALFORMED)
        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenError(TokenFailure.MALFORMED)
        if payload.get("aud") != self.settings.jwt_audience:
            raise TokenError(TokenFailure.MALFORMED)

        now = self._clock().timestamp()
        # Valid up to and including the expiry instant
        if now > exp + self._leeway:
            raise TokenError(TokenFailure.EXPIRED)

        role = org_status = None
        if kind is SecretKind.ACCESS:
            try:
                role = Role(payload.get("role"))
                if payload.get("org_status") is not None:
                    org_status = VerificationStatus(payload["org_status"])
            except ValueError:
                raise TokenError(TokenFailure.MALFORMED) from None
        return TokenClaims(
            subject_id=subject_id,
            kind=kind,
            issued_at=issued_at,
            expires_at=expires_at,
            jti=jti,
            role=role,
            org_status=org_status,
            fingerprint=payload.get("fp"),
        )

    def _issue(self, kind: SecretKind, claims: dict[str, Any]) -> IssuedToken:
        iat = int(self._clock().timestamp())
        exp = iat + self._ttls[kind]
        payload = {
            **claims,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "typ": kind.value,
            # Random nonce keeps two same-second issuances distinct
            "jti": secrets.token_urlsafe(16),
            "iat": iat,
            "exp": exp,
        }
        return IssuedToken(self._encode(payload, kind), _from_ts(exp))

    def _sign(self, signing_input: str, kind: SecretKind) -> bytes:
        return hmac.new(self._secrets[kind], signing_input.encode(), hashlib.sha256).digest()

    def _encode(self, payload: dict[str, Any], kind: SecretKind) -> str:
        header_enc = _encode_segment(json.dumps(self._HEADER, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{_encode_segment(self._sign(signing_input, kind))}"

    def _decode(self, token: str, kind: SecretKind) -> dict[str, Any]:
        if not isinstance(token, str):
            raise TokenError(TokenFailure.MALFORMED)
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenError(TokenFailure.MALFORMED) from None

        # Pin the algorithm to rule out alg confusion
        try:
            header = json.loads(_decode_segment(header_b64))
        except ValueError:
            raise TokenError(TokenFailure.MALFORMED) from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", kind=kind.value)
            raise TokenError(TokenFailure.MALFORMED)

        expected_sig = _encode_segment(self._sign(f"{header_b64}.{payload_b64}", kind))
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8", "replace")):
            raise TokenError(TokenFailure.BAD_SIGNATURE)
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except ValueError:
            raise TokenError(TokenFailure.MALFORMED) from None
        if not isinstance(payload, dict):
            raise TokenError(TokenFailure.MALFORMED)
        return payload

