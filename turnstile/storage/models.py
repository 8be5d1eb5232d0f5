from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    """Timezone-aware UTC now; the default clock for every component."""
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Closed set of principal roles; every role branch matches over this type."""

    SYSTEM_ADMIN = "SYSTEM_ADMIN"
    ORG_ADMIN = "ORG_ADMIN"
    END_USER = "END_USER"

    @property
    def self_registrable(self) -> bool:
        return self in (Role.ORG_ADMIN, Role.END_USER)

    @property
    def requires_org_verification(self) -> bool:
        return self is Role.ORG_ADMIN


class VerificationStatus(str, Enum):
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"


class OTPPurpose(str, Enum):
    EMAIL_VERIFY = "EMAIL_VERIFY"
    PASSWORD_RESET = "PASSWORD_RESET"


@dataclass
class Principal:
    id: str
    email: str
    role: Role
    email_verified: bool = False
    name: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)

    def summary(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "role": self.role.value,
            "email_verified": self.email_verified,
            "name": self.name,
        }


@dataclass
class Organization:
    id: str
    owner_id: str
    name: str
    status: VerificationStatus = VerificationStatus.PENDING
    rejection_reason: Optional[str] = None
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, owner_id: str, name: str) -> "Organization":
        return cls(id=str(uuid.uuid4()), owner_id=owner_id, name=name)


@dataclass
class OrganizationState:
    """Read-only view of an organization's approval state."""

    status: VerificationStatus
    rejection_reason: Optional[str] = None
    organization_id: Optional[str] = None


@dataclass
class RefreshRecord:
    """Server-side half of a subject's refresh credential.

    ``previous_hash`` is only meaningful within the grace window after
    ``rotated_at``. ``sealed_current`` is the encrypted current token kept so
    a grace-window replay can hand back the same generation.
    """

    subject_id: str
    current_hash: str
    expires_at: datetime
    previous_hash: Optional[str] = None
    rotated_at: Optional[datetime] = None
    sealed_current: Optional[str] = None
    version: int = 1

    def to_dict(self) -> dict:
        return {
            "subject_id": self.subject_id,
            "current_hash": self.current_hash,
            "expires_at": self.expires_at.isoformat(),
            "previous_hash": self.previous_hash,
            "rotated_at": self.rotated_at.isoformat() if self.rotated_at else None,
            "sealed_current": self.sealed_current,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RefreshRecord":
        rotated = data.get("rotated_at")
        return cls(
            subject_id=data["subject_id"],
            current_hash=data["current_hash"],
            expires_at=datetime.fromisoformat(data["expires_at"]),
            previous_hash=data.get("previous_hash"),
            rotated_at=datetime.fromisoformat(rotated) if rotated else None,
            sealed_current=data.get("sealed_current"),
            version=int(data.get("version", 1)),
        )


@dataclass
class OneTimeCodeRecord:
    subject_id: str
    purpose: OTPPurpose
    code_hash: str
    issued_at: datetime
    expires_at: datetime

    def to_dict(self) -> dict:
        return {
            "subject_id": self.subject_id,
            "purpose": self.purpose.value,
            "code_hash": self.code_hash,
            "issued_at": self.issued_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "OneTimeCodeRecord":
        return cls(
            subject_id=data["subject_id"],
            purpose=OTPPurpose(data["purpose"]),
            code_hash=data["code_hash"],
            issued_at=datetime.fromisoformat(data["issued_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
        )
