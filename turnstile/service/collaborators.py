"""Interfaces to the systems this core reads from and delivers through."""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional, Protocol, TypeVar

from turnstile.logging import get_logger
from turnstile.service.errors import CollaboratorTimeoutError
from turnstile.storage.models import (
    Organization,
    OrganizationState,
    OTPPurpose,
    Principal,
    Role,
    VerificationStatus,
)

logger = get_logger(__name__)

T = TypeVar("T")


class PrincipalDirectory(Protocol):
    """User and organization records owned outside the core."""

    def create_principal(
        self,
        email: str,
        role: Role,
        *,
        name: Optional[str] = None,
        email_verified: bool = False,
    ) -> Principal: ...

    def find_principal_by_identifier(self, identifier: str) -> Optional[Principal]: ...

    def find_principal_by_id(self, principal_id: str) -> Optional[Principal]: ...

    def update_principal_name(self, principal_id: str, name: Optional[str]) -> None: ...

    def set_email_verified(self, principal_id: str) -> None: ...

    def set_secret_hash(self, principal_id: str, secret_hash: str) -> None: ...

    def get_secret_hash(self, principal_id: str) -> Optional[str]: ...

    def create_organization(self, owner_id: str, name: str) -> Organization: ...

    def find_organization_status(self, principal_id: str) -> Optional[OrganizationState]: ...

    def set_organization_status(
        self,
        principal_id: str,
        status: VerificationStatus,
        rejection_reason: Optional[str] = None,
    ) -> Optional[OrganizationState]: ...


class CodeDelivery(Protocol):
    def deliver_code(self, destination: str, purpose: OTPPurpose, code: str) -> bool: ...


async def call_collaborator(
    operation: str,
    func: Callable[..., T],
    *args: Any,
    timeout: float,
    **kwargs: Any,
) -> T:
    """Run a blocking collaborator call off the event loop with a deadline.

    Callers must not hold any internal lock across this await.
    """
    try:
        return await asyncio.wait_for(asyncio.to_thread(func, *args, **kwargs), timeout)
    except asyncio.TimeoutError:
        logger.error("collaborator_timeout", operation=operation, timeout=timeout)
        raise CollaboratorTimeoutError(
            "upstream service did not respond in time", detail={"operation": operation}
        ) from None
