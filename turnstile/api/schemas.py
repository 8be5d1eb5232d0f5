from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from turnstile.storage.models import OTPPurpose, Principal, Role, VerificationStatus

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "collaborator_timeout",
    "service_unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after stripping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)} | {
        chr(c) for c in range(0x2066, 0x206A)
    }
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_CODE_PATTERN = re.compile(r"^\d{6}$")
PASSWORD_SPECIALS = "!@#$%^&*"


def validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def validate_password_strength(value: str) -> str:
    """8-128 characters with upper, lower, digit and one of ``!@#$%^&*``."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    missing = []
    if not any(c.isupper() for c in value):
        missing.append("an uppercase letter")
    if not any(c.islower() for c in value):
        missing.append("a lowercase letter")
    if not any(c.isdigit() for c in value):
        missing.append("a digit")
    if not any(c in PASSWORD_SPECIALS for c in value):
        missing.append(f"one of {PASSWORD_SPECIALS}")
    if missing:
        raise ValueError("password must contain " + ", ".join(missing))
    return value


def _validate_code(value: str) -> str:
    value = value.strip()
    if not _CODE_PATTERN.match(value):
        raise ValueError("code must be exactly 6 digits")
    return value


class _EmailModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        return validate_email(value)


class RegisterRequest(_EmailModel):
    password: str
    role: Role = Role.END_USER
    name: Optional[str] = Field(default=None, max_length=120)
    organization_name: Optional[str] = Field(default=None, min_length=2, max_length=200)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return validate_password_strength(value)

    @field_validator("role")
    @classmethod
    def _validate_role(cls, value: Role) -> Role:
        if not value.self_registrable:
            raise ValueError("role must be ORG_ADMIN or END_USER")
        return value

    @model_validator(mode="after")
    def _organization_only_for_org_admin(self):
        if self.organization_name and self.role is not Role.ORG_ADMIN:
            raise ValueError("organization_name is only accepted for ORG_ADMIN")
        return self


class VerifyCodeRequest(_EmailModel):
    code: str

    @field_validator("code")
    @classmethod
    def _validate_code(cls, value: str) -> str:
        return _validate_code(value)


class LoginRequest(_EmailModel):
    password: str = Field(..., min_length=1, max_length=128)


class RefreshRequest(BaseModel):
    # Optional in the body; the refresh cookie is used when absent
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class LogoutRequest(RefreshRequest):
    pass


class PasswordResetRequest(_EmailModel):
    pass


class PasswordResetConfirm(VerifyCodeRequest):
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return validate_password_strength(value)


class ResetTokenExchange(VerifyCodeRequest):
    pass


class PasswordResetWithToken(BaseModel):
    reset_token: str = Field(..., max_length=4096)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return validate_password_strength(value)


class ResendCodeRequest(_EmailModel):
    purpose: OTPPurpose = OTPPurpose.EMAIL_VERIFY


class OrganizationDecision(BaseModel):
    status: VerificationStatus
    rejection_reason: Optional[str] = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def _reason_for_rejection(self):
        if self.status is VerificationStatus.REJECTED and not self.rejection_reason:
            raise ValueError("rejection_reason is required when rejecting")
        return self


class PrincipalResponse(BaseModel):
    id: str
    email: str
    role: Role
    email_verified: bool
    name: Optional[str] = None

    @classmethod
    def from_principal(cls, principal: Principal) -> "PrincipalResponse":
        return cls(**principal.summary())


class TokenPairResponse(BaseModel):
    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime
    token_type: str = "bearer"
    principal: PrincipalResponse


class AckResponse(BaseModel):
    message: str
    subject_id: Optional[str] = None
    debug_code: Optional[str] = None


class ResetTokenResponse(BaseModel):
    reset_token: str
    expires_at: datetime


class OrganizationStatusResponse(BaseModel):
    status: VerificationStatus
    rejection_reason: Optional[str] = None
    organization_id: Optional[str] = None
