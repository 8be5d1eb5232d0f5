from __future__ import annotations

import dataclasses
import threading
import uuid
from datetime import datetime
from typing import Dict, Optional, Tuple

from turnstile.logging import get_logger, redact_email
from turnstile.storage.errors import ConstraintViolation
from turnstile.storage.models import (
    OneTimeCodeRecord,
    Organization,
    OrganizationState,
    OTPPurpose,
    Principal,
    RefreshRecord,
    Role,
    VerificationStatus,
    utcnow,
)


def _normalize_identifier(identifier: str) -> str:
    return identifier.strip().lower()


class MemoryStore:
    """In-memory principal and organization directory.

    Stands in for the external user-record collaborator in development and
    tests. Returned objects are copies; mutate through the methods.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.principals: Dict[str, Principal] = {}
        self._by_email: Dict[str, str] = {}
        self.secret_hashes: Dict[str, str] = {}
        self.organizations: Dict[str, Organization] = {}
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()

    def create_principal(
        self,
        email: str,
        role: Role,
        *,
        name: Optional[str] = None,
        email_verified: bool = False,
    ) -> Principal:
        key = _normalize_identifier(email)
        with self._data_lock:
            if key in self._by_email:
                raise ConstraintViolation(
                    "email already registered", constraint="principal_email"
                )
            principal = Principal(
                id=str(uuid.uuid4()),
                email=key,
                role=Role(role),
                email_verified=email_verified,
                name=name,
            )
            self.principals[principal.id] = principal
            self._by_email[key] = principal.id
        self.logger.info(
            "principal_created", principal_id=principal.id, email_redacted=redact_email(key), role=principal.role.value
        )
        return dataclasses.replace(principal)

    def find_principal_by_identifier(self, identifier: str) -> Optional[Principal]:
        with self._data_lock:
            principal_id = self._by_email.get(_normalize_identifier(identifier))
            principal = self.principals.get(principal_id) if principal_id else None
            return dataclasses.replace(principal) if principal else None

    def find_principal_by_id(self, principal_id: str) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            return dataclasses.replace(principal) if principal else None

    def update_principal_name(self, principal_id: str, name: Optional[str]) -> None:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if principal:
                principal.name = name

    def set_email_verified(self, principal_id: str) -> None:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if principal:
                principal.email_verified = True

    def set_active(self, principal_id: str, active: bool) -> None:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if principal:
                principal.is_active = active

    def set_secret_hash(self, principal_id: str, secret_hash: str) -> None:
        with self._data_lock:
            self.secret_hashes[principal_id] = secret_hash

    def get_secret_hash(self, principal_id: str) -> Optional[str]:
        with self._data_lock:
            return self.secret_hashes.get(principal_id)

    def create_organization(self, owner_id: str, name: str) -> Organization:
        with self._data_lock:
            if owner_id in self.organizations:
                raise ConstraintViolation(
                    "organization already registered", constraint="organization_owner"
                )
            organization = Organization.new(owner_id, name)
            self.organizations[owner_id] = organization
            return dataclasses.replace(organization)

    def find_organization_status(self, principal_id: str) -> Optional[OrganizationState]:
        with self._data_lock:
            organization = self.organizations.get(principal_id)
            if not organization:
                return None
            return OrganizationState(
                status=organization.status,
                rejection_reason=organization.rejection_reason,
                organization_id=organization.id,
            )

    def set_organization_status(
        self,
        principal_id: str,
        status: VerificationStatus,
        rejection_reason: Optional[str] = None,
    ) -> Optional[OrganizationState]:
        with self._data_lock:
            organization = self.organizations.get(principal_id)
            if not organization:
                return None
            organization.status = VerificationStatus(status)
            organization.rejection_reason = (
                rejection_reason if organization.status is VerificationStatus.REJECTED else None
            )
            organization.updated_at = utcnow()
        self.logger.info(
            "organization_status_changed", principal_id=principal_id, status=organization.status.value
        )
        return self.find_organization_status(principal_id)


class MemoryRecordStore:
    """Process-local refresh and one-time-code records.

    Every operation completes under ``_data_lock`` without awaiting, so the
    compare-and-set and consume operations are atomic across threads and
    tasks alike.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.refresh: Dict[str, RefreshRecord] = {}
        self.otps: Dict[Tuple[str, OTPPurpose], OneTimeCodeRecord] = {}
        self._data_lock = threading.RLock()

    async def get_refresh(self, subject_id: str) -> Optional[RefreshRecord]:
        with self._data_lock:
            record = self.refresh.get(subject_id)
            return dataclasses.replace(record) if record else None

    async def replace_refresh(self, record: RefreshRecord) -> RefreshRecord:
        with self._data_lock:
            existing = self.refresh.get(record.subject_id)
            stored = dataclasses.replace(record, version=(existing.version + 1) if existing else 1)
            self.refresh[record.subject_id] = stored
            return dataclasses.replace(stored)

    async def compare_and_set_refresh(self, record: RefreshRecord, expected_version: int) -> bool:
        with self._data_lock:
            existing = self.refresh.get(record.subject_id)
            current_version = existing.version if existing else 0
            if current_version != expected_version:
                return False
            self.refresh[record.subject_id] = dataclasses.replace(
                record, version=expected_version + 1
            )
            return True

    async def delete_refresh(self, subject_id: str) -> bool:
        with self._data_lock:
            return self.refresh.pop(subject_id, None) is not None

    async def put_otp(self, record: OneTimeCodeRecord) -> None:
        with self._data_lock:
            self.otps[(record.subject_id, record.purpose)] = dataclasses.replace(record)

    async def get_otp(self, subject_id: str, purpose: OTPPurpose) -> Optional[OneTimeCodeRecord]:
        with self._data_lock:
            record = self.otps.get((subject_id, OTPPurpose(purpose)))
            return dataclasses.replace(record) if record else None

    async def consume_otp(self, subject_id: str, purpose: OTPPurpose, code_hash: str) -> bool:
        key = (subject_id, OTPPurpose(purpose))
        with self._data_lock:
            record = self.otps.get(key)
            if record is None or record.code_hash != code_hash:
                return False
            del self.otps[key]
            return True

    async def purge_expired(self, now: datetime) -> int:
        """Drop codes and refresh records that can no longer verify."""
        with self._data_lock:
            stale_codes = [key for key, rec in self.otps.items() if rec.expires_at < now]
            for key in stale_codes:
                del self.otps[key]
            stale_refresh = [sid for sid, rec in self.refresh.items() if rec.expires_at < now]
            for sid in stale_refresh:
                del self.refresh[sid]
        removed = len(stale_codes) + len(stale_refresh)
        if removed:
            self.logger.debug("expired_records_purged", otp=len(stale_codes), refresh=len(stale_refresh))
        return removed

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None
