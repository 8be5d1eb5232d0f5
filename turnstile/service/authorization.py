"""Per-request gate: access token, role, then live organization status."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, NoReturn, Optional

from turnstile.logging import get_logger
from turnstile.service.collaborators import PrincipalDirectory, call_collaborator
from turnstile.service.errors import AuthenticationError, AuthorizationError, ServerError
from turnstile.service.tokens import SecretKind, TokenClaims, TokenCodec, TokenError
from turnstile.storage.models import OrganizationState, Role, VerificationStatus

logger = get_logger(__name__)


@dataclass
class AuthContext:
    subject_id: str
    role: Role
    claims: TokenClaims
    # Live state, set only after a VERIFIED check
    organization: Optional[OrganizationState] = None


class Authorizer:
    def __init__(
        self,
        codec: TokenCodec,
        directory: PrincipalDirectory,
        *,
        timeout: float,
    ) -> None:
        self.codec = codec
        self.directory = directory
        self._timeout = timeout

    def authenticate(self, token: Optional[str]) -> AuthContext:
        if not token:
            raise AuthenticationError("authentication required")
        try:
            claims = self.codec.verify(token, SecretKind.ACCESS)
        except TokenError as exc:
            logger.info("access_token_rejected", reason=exc.reason.value)
            raise AuthenticationError("invalid or expired token") from None
        return AuthContext(subject_id=claims.subject_id, role=claims.role, claims=claims)

    async def authorize(
        self,
        token: Optional[str],
        allowed_roles: Optional[Iterable[Role]] = None,
        *,
        require_verified_org: bool = True,
    ) -> AuthContext:
        """Authenticate ``token`` and apply role and organization checks.

        ``allowed_roles`` of None admits every role. Organization admins are
        checked against the directory on every call; the status claim carried
        in the token is never consulted.
        """
        context = self.authenticate(token)
        await self._check_principal(context.subject_id)
        if allowed_roles is not None:
            allowed = {Role(role) for role in allowed_roles}
            if context.role not in allowed:
                logger.warning(
                    "authorization_role_denied",
                    subject_id=context.subject_id,
                    role=context.role.value,
                    allowed=sorted(role.value for role in allowed),
                )
                raise AuthorizationError(
                    "access denied for this role",
                    reason="ROLE_DENIED",
                    detail={"required_roles": sorted(role.value for role in allowed)},
                )

        if context.role is Role.SYSTEM_ADMIN or context.role is Role.END_USER:
            return context
        elif context.role is Role.ORG_ADMIN:
            if require_verified_org:
                context.organization = await self._check_organization(context.subject_id)
            return context
        raise ServerError(f"unhandled role {context.role!r}")

    async def _check_principal(self, subject_id: str) -> None:
        principal = await call_collaborator(
            "find_principal_by_id",
            self.directory.find_principal_by_id,
            subject_id,
            timeout=self._timeout,
        )
        if principal is None:
            logger.warning("authorization_unknown_subject", subject_id=subject_id)
            raise AuthenticationError("invalid or expired token")
        if not principal.is_active:
            logger.warning("authorization_account_disabled", subject_id=subject_id)
            raise AuthorizationError("account is disabled", reason="ACCOUNT_DISABLED")

    async def _check_organization(self, subject_id: str) -> OrganizationState:
        state = await call_collaborator(
            "find_organization_status",
            self.directory.find_organization_status,
            subject_id,
            timeout=self._timeout,
        )
        if state is None:
            self._deny(
                subject_id,
                "organization not registered; complete onboarding first",
                "ORG_NOT_REGISTERED",
            )
        if state.status is VerificationStatus.PENDING:
            self._deny(subject_id, "organization is awaiting verification", "ORG_PENDING")
        elif state.status is VerificationStatus.REJECTED:
            self._deny(
                subject_id,
                "organization verification was rejected; contact support",
                "ORG_REJECTED",
                rejection_reason=state.rejection_reason,
            )
        elif state.status is VerificationStatus.VERIFIED:
            return state
        raise ServerError(f"unhandled verification status {state.status!r}")

    @staticmethod
    def _deny(subject_id: str, message: str, reason: str, **detail) -> NoReturn:
        logger.warning("authorization_org_denied", subject_id=subject_id, reason=reason)
        raise AuthorizationError(message, reason=reason, detail=detail or None)
