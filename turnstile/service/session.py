from __future__ import annotations

import asyncio
import hmac
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from turnstile.config import Settings
from turnstile.logging import get_logger, redact_email
from turnstile.service.collaborators import (
    CodeDelivery,
    PrincipalDirectory,
    call_collaborator,
)
from turnstile.service.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    ValidationError,
)
from turnstile.service.hashing import CredentialHasher
from turnstile.service.otp import OTPError, OTPFailure, OTPManager
from turnstile.service.refresh import RefreshTokenStore
from turnstile.service.tokens import IssuedToken, SecretKind, TokenCodec, TokenError
from turnstile.storage.errors import ConstraintViolation, StorageError
from turnstile.storage.models import OTPPurpose, Principal, Role, VerificationStatus

logger = get_logger(__name__)

GENERIC_RESET_ACK = "If the account exists, a code has been sent."
GENERIC_RESEND_ACK = "If a code is pending for this account, a new one has been sent."


@dataclass
class RegistrationDraft:
    email: str
    secret: str
    role: Role = Role.END_USER
    name: Optional[str] = None
    organization_name: Optional[str] = None


@dataclass
class SessionTokens:
    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime
    principal: Principal

    def as_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "access_expires_at": self.access_expires_at.isoformat(),
            "refresh_token": self.refresh_token,
            "refresh_expires_at": self.refresh_expires_at.isoformat(),
            "token_type": "bearer",
            "principal": self.principal.summary(),
        }


@dataclass
class Acknowledgement:
    """Outcome of operations whose result must not reveal account existence."""

    message: str
    subject_id: Optional[str] = None
    # Populated only when codes may be echoed (test/dev settings)
    debug_code: Optional[str] = field(default=None, repr=False)


class SessionService:
    """Login, registration, refresh and reset flows.

    Every directory lookup and code delivery goes through
    ``call_collaborator`` with the configured timeout; no internal lock is
    held across those awaits.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        directory: PrincipalDirectory,
        delivery: CodeDelivery,
        hasher: CredentialHasher,
        codec: TokenCodec,
        otp: OTPManager,
        refresh: RefreshTokenStore,
    ) -> None:
        self.settings = settings
        self.directory = directory
        self.delivery = delivery
        self.hasher = hasher
        self.codec = codec
        self.otp = otp
        self.refresh_store = refresh
        self._timeout = settings.collaborator_timeout_seconds

    async def login(self, identifier: str, secret: str) -> SessionTokens:
        principal = await self._find_by_identifier(identifier)
        secret_hash = (
            await self._collab("get_secret_hash", self.directory.get_secret_hash, principal.id)
            if principal
            else None
        )
        valid = await asyncio.to_thread(self.hasher.verify_password, secret, secret_hash)
        if not principal or not valid:
            logger.warning("login_failed", email_redacted=redact_email(identifier))
            raise AuthenticationError("invalid credentials")
        if not principal.is_active:
            logger.warning("login_disabled_account", subject_id=principal.id)
            raise AuthorizationError("account is disabled", reason="ACCOUNT_DISABLED")
        if not principal.email_verified:
            code = await self._issue_and_deliver(principal, OTPPurpose.EMAIL_VERIFY)
            detail = {"debug_code": code} if self.settings.expose_codes_in_responses else None
            logger.info("login_email_not_verified", subject_id=principal.id)
            raise AuthorizationError(
                "email not verified; a new verification code has been sent",
                reason="EMAIL_NOT_VERIFIED",
                detail=detail,
            )
        if self.hasher.needs_rehash(secret_hash):
            # Moves hashes made with other parameters onto the current work factor
            new_hash = await asyncio.to_thread(self.hasher.hash_password, secret)
            await self._collab("set_secret_hash", self.directory.set_secret_hash, principal.id, new_hash)
            logger.info("password_rehashed", subject_id=principal.id)
        tokens = await self._start_session(principal)
        logger.info("login_succeeded", subject_id=principal.id, role=principal.role.value)
        return tokens

    async def complete_registration(self, draft: RegistrationDraft) -> Acknowledgement:
        """Create an unverified principal and send its email code.

        No token is issued here; ``verify_email`` is the only way in.
        """
        try:
            role = Role(draft.role)
        except ValueError:
            raise ValidationError("unknown role", detail={"role": str(draft.role)}) from None
        if not role.self_registrable:
            raise ValidationError("role is not open for registration", detail={"role": role.value})

        secret_hash = await asyncio.to_thread(self.hasher.hash_password, draft.secret)
        existing = await self._find_by_identifier(draft.email)
        if existing is not None:
            if existing.email_verified:
                raise ConflictError("email already registered")
            if existing.role is not role:
                raise ConflictError("email already registered with a different role")
            # Unverified re-registration: refresh profile and secret, re-send code
            principal = existing
            await self._collab("update_principal_name", self.directory.update_principal_name, principal.id, draft.name)
        else:
            try:
                principal = await self._collab(
                    "create_principal",
                    self.directory.create_principal,
                    draft.email,
                    role,
                    name=draft.name,
                )
            except ConstraintViolation as exc:
                raise ConflictError("email already registered") from exc
            if role is Role.ORG_ADMIN and draft.organization_name:
                await self._collab(
                    "create_organization",
                    self.directory.create_organization,
                    principal.id,
                    draft.organization_name,
                )
        await self._collab("set_secret_hash", self.directory.set_secret_hash, principal.id, secret_hash)

        code = await self._issue_and_deliver(principal, OTPPurpose.EMAIL_VERIFY)
        logger.info("registration_pending", subject_id=principal.id, role=role.value)
        return Acknowledgement(
            message="Registration received; check your email for a verification code.",
            subject_id=principal.id,
            debug_code=self._echo(code),
        )

    async def verify_email(self, identifier: str, code: str) -> SessionTokens:
        principal = await self._find_by_identifier(identifier)
        if principal is None or principal.email_verified:
            raise OTPError(OTPFailure.NO_ACTIVE_CODE)
        await self.otp.verify(principal.id, OTPPurpose.EMAIL_VERIFY, code)
        await self._collab("set_email_verified", self.directory.set_email_verified, principal.id)
        principal.email_verified = True
        logger.info("email_verified", subject_id=principal.id)
        return await self._start_session(principal)

    async def refresh(self, refresh_token: str) -> SessionTokens:
        rotation = await self.refresh_store.rotate(refresh_token)
        principal = await self._collab(
            "find_principal_by_id", self.directory.find_principal_by_id, rotation.subject_id
        )
        if principal is None or not principal.is_active:
            await self.refresh_store.revoke_all(rotation.subject_id)
            raise AuthenticationError("invalid or expired token")
        access = await self._issue_access(principal)
        return SessionTokens(
            access_token=access.token,
            access_expires_at=access.expires_at,
            refresh_token=rotation.refresh.token,
            refresh_expires_at=rotation.refresh.expires_at,
            principal=principal,
        )

    async def logout(self, refresh_token: Optional[str]) -> None:
        if not refresh_token:
            return
        try:
            await self.refresh_store.revoke(refresh_token)
        except StorageError as exc:
            logger.warning("logout_revoke_failed", error=exc.message)

    async def request_password_reset(self, identifier: str) -> Acknowledgement:
        principal = await self._find_by_identifier(identifier)
        code = None
        if principal is not None and principal.is_active:
            code = await self._issue_and_deliver(principal, OTPPurpose.PASSWORD_RESET)
        else:
            logger.info("password_reset_unknown_identifier", email_redacted=redact_email(identifier))
        return Acknowledgement(message=GENERIC_RESET_ACK, debug_code=self._echo(code))

    async def complete_password_reset(self, identifier: str, code: str, new_secret: str) -> None:
        principal = await self._find_by_identifier(identifier)
        if principal is None:
            raise OTPError(OTPFailure.NO_ACTIVE_CODE)
        await self.otp.verify(principal.id, OTPPurpose.PASSWORD_RESET, code)
        await self._replace_secret(principal, new_secret)

    async def exchange_reset_code(self, identifier: str, code: str) -> IssuedToken:
        """Trade a PASSWORD_RESET code for a short-lived reset token."""
        principal = await self._find_by_identifier(identifier)
        if principal is None:
            raise OTPError(OTPFailure.NO_ACTIVE_CODE)
        await self.otp.verify(principal.id, OTPPurpose.PASSWORD_RESET, code)
        secret_hash = await self._collab("get_secret_hash", self.directory.get_secret_hash, principal.id)
        logger.info("reset_token_issued", subject_id=principal.id)
        return self.codec.issue_reset(principal.id, secret_hash)

    async def complete_password_reset_with_token(self, reset_token: str, new_secret: str) -> None:
        try:
            claims = self.codec.verify(reset_token, SecretKind.RESET)
        except TokenError as exc:
            logger.info("reset_token_rejected", reason=exc.reason.value)
            raise AuthenticationError("invalid or expired token") from None
        principal = await self._collab(
            "find_principal_by_id", self.directory.find_principal_by_id, claims.subject_id
        )
        secret_hash = (
            await self._collab("get_secret_hash", self.directory.get_secret_hash, principal.id)
            if principal
            else None
        )
        expected = self.codec.secret_fingerprint(secret_hash)
        # Fingerprint changes with the secret, which makes the token single-use
        if principal is None or not hmac.compare_digest(expected, claims.fingerprint or ""):
            logger.warning("reset_token_stale", subject_id=claims.subject_id)
            raise AuthenticationError("invalid or expired token")
        await self._replace_secret(principal, new_secret)

    async def resend_code(self, identifier: str, purpose: OTPPurpose) -> Acknowledgement:
        purpose = OTPPurpose(purpose)
        principal = await self._find_by_identifier(identifier)
        eligible = principal is not None and principal.is_active and (
            not principal.email_verified if purpose is OTPPurpose.EMAIL_VERIFY else True
        )
        code = None
        if eligible:
            code = await self._issue_and_deliver(principal, purpose, resend=True)
        return Acknowledgement(message=GENERIC_RESEND_ACK, debug_code=self._echo(code))

    async def current_principal(self, subject_id: str) -> Principal:
        principal = await self._collab(
            "find_principal_by_id", self.directory.find_principal_by_id, subject_id
        )
        if principal is None or not principal.is_active:
            raise AuthenticationError("invalid or expired token")
        return principal

    async def _replace_secret(self, principal: Principal, new_secret: str) -> None:
        new_hash = await asyncio.to_thread(self.hasher.hash_password, new_secret)
        await self._collab("set_secret_hash", self.directory.set_secret_hash, principal.id, new_hash)
        await self.refresh_store.revoke_all(principal.id)
        logger.info("password_reset_completed", subject_id=principal.id)

    async def _start_session(self, principal: Principal) -> SessionTokens:
        access = await self._issue_access(principal)
        refresh = await self.refresh_store.issue(principal.id)
        return SessionTokens(
            access_token=access.token,
            access_expires_at=access.expires_at,
            refresh_token=refresh.token,
            refresh_expires_at=refresh.expires_at,
            principal=principal,
        )

    async def _issue_access(self, principal: Principal) -> IssuedToken:
        snapshot: Optional[VerificationStatus] = None
        if principal.role.requires_org_verification:
            state = await self._collab(
                "find_organization_status", self.directory.find_organization_status, principal.id
            )
            snapshot = state.status if state else None
        return self.codec.issue_access(principal.id, principal.role, snapshot)

    async def _issue_and_deliver(
        self, principal: Principal, purpose: OTPPurpose, *, resend: bool = False
    ) -> str:
        issue = self.otp.resend if resend else self.otp.issue
        code = await issue(principal.id, purpose)
        delivered = await self._collab(
            "deliver_code", self.delivery.deliver_code, principal.email, purpose, code
        )
        if delivered is False:
            logger.error("code_delivery_failed", subject_id=principal.id, purpose=purpose.value)
        return code

    async def _find_by_identifier(self, identifier: str) -> Optional[Principal]:
        return await self._collab(
            "find_principal_by_identifier", self.directory.find_principal_by_identifier, identifier
        )

    async def _collab(self, operation: str, func, *args, **kwargs):
        return await call_collaborator(operation, func, *args, timeout=self._timeout, **kwargs)

    def _echo(self, code: Optional[str]) -> Optional[str]:
        return code if code and self.settings.expose_codes_in_responses else None
