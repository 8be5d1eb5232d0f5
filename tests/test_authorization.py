"""Tests for the per-request authorization gate."""

import time

import pytest

from turnstile.service.authorization import Authorizer
from turnstile.service.errors import (
    AuthenticationError,
    AuthorizationError,
    CollaboratorTimeoutError,
)
from turnstile.storage.models import Role, VerificationStatus


@pytest.fixture
def org_admin(directory):
    principal = directory.create_principal("owner@acme.test", Role.ORG_ADMIN, email_verified=True)
    directory.create_organization(principal.id, "Acme")
    return principal


def _access(runtime, principal, snapshot=None):
    return runtime.codec.issue_access(principal.id, principal.role, snapshot).token


class SlowDirectory:
    """Directory whose organization lookup outlives the collaborator timeout."""

    def __init__(self, inner, delay):
        self.inner = inner
        self.delay = delay

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def find_organization_status(self, principal_id):
        time.sleep(self.delay)
        return self.inner.find_organization_status(principal_id)


class TestAuthentication:
    def test_missing_token(self, runtime):
        with pytest.raises(AuthenticationError) as excinfo:
            runtime.authorizer.authenticate(None)
        assert excinfo.value.message == "authentication required"

    def test_refresh_token_is_not_an_access_token(self, runtime):
        refresh = runtime.codec.issue_refresh("user-1").token

        with pytest.raises(AuthenticationError):
            runtime.authorizer.authenticate(refresh)

    def test_expired_access_token(self, runtime, directory, clock, settings):
        principal = directory.create_principal("user@example.com", Role.END_USER)
        token = _access(runtime, principal)

        clock.advance(settings.access_token_ttl_seconds + 1)
        with pytest.raises(AuthenticationError):
            runtime.authorizer.authenticate(token)


class TestRoleChecks:
    """Tests for role gating."""

    async def test_role_allowed(self, runtime, directory):
        principal = directory.create_principal("admin@example.com", Role.SYSTEM_ADMIN)

        context = await runtime.authorizer.authorize(_access(runtime, principal), [Role.SYSTEM_ADMIN])

        assert context.subject_id == principal.id
        assert context.role is Role.SYSTEM_ADMIN

    async def test_role_denied(self, runtime, directory):
        principal = directory.create_principal("user@example.com", Role.END_USER)

        with pytest.raises(AuthorizationError) as excinfo:
            await runtime.authorizer.authorize(_access(runtime, principal), [Role.SYSTEM_ADMIN])
        assert excinfo.value.reason == "ROLE_DENIED"

    async def test_end_user_needs_no_organization(self, runtime, directory):
        principal = directory.create_principal("user@example.com", Role.END_USER)

        context = await runtime.authorizer.authorize(_access(runtime, principal))

        assert context.organization is None

    async def test_disabled_principal_is_refused(self, runtime, directory):
        principal = directory.create_principal("user@example.com", Role.END_USER)
        token = _access(runtime, principal)
        directory.set_active(principal.id, False)

        with pytest.raises(AuthorizationError) as excinfo:
            await runtime.authorizer.authorize(token)
        assert excinfo.value.reason == "ACCOUNT_DISABLED"

    async def test_unknown_subject_is_unauthenticated(self, runtime):
        token = runtime.codec.issue_access("ghost", Role.END_USER).token

        with pytest.raises(AuthenticationError):
            await runtime.authorizer.authorize(token)


class TestOrganizationVerification:
    """Tests for the live organization status check."""

    async def test_pending_is_denied(self, runtime, org_admin):
        with pytest.raises(AuthorizationError) as excinfo:
            await runtime.authorizer.authorize(_access(runtime, org_admin), [Role.ORG_ADMIN])

        assert excinfo.value.reason == "ORG_PENDING"
        assert "awaiting verification" in excinfo.value.message

    async def test_rejected_carries_reason(self, runtime, directory, org_admin):
        directory.set_organization_status(org_admin.id, VerificationStatus.REJECTED, "bad documents")

        with pytest.raises(AuthorizationError) as excinfo:
            await runtime.authorizer.authorize(_access(runtime, org_admin), [Role.ORG_ADMIN])

        assert excinfo.value.reason == "ORG_REJECTED"
        assert excinfo.value.detail["rejection_reason"] == "bad documents"

    async def test_missing_organization(self, runtime, directory):
        principal = directory.create_principal("solo@acme.test", Role.ORG_ADMIN, email_verified=True)

        with pytest.raises(AuthorizationError) as excinfo:
            await runtime.authorizer.authorize(_access(runtime, principal))
        assert excinfo.value.reason == "ORG_NOT_REGISTERED"

    async def test_status_change_applies_to_existing_token(self, runtime, directory, org_admin):
        token = _access(runtime, org_admin, VerificationStatus.PENDING)

        directory.set_organization_status(org_admin.id, VerificationStatus.VERIFIED)
        context = await runtime.authorizer.authorize(token, [Role.ORG_ADMIN])
        assert context.organization.status is VerificationStatus.VERIFIED

        directory.set_organization_status(org_admin.id, VerificationStatus.REJECTED, "revoked")
        with pytest.raises(AuthorizationError):
            await runtime.authorizer.authorize(token, [Role.ORG_ADMIN])

    async def test_verified_check_can_be_skipped(self, runtime, org_admin):
        context = await runtime.authorizer.authorize(
            _access(runtime, org_admin), require_verified_org=False
        )

        assert context.role is Role.ORG_ADMIN
        assert context.organization is None

    async def test_slow_directory_times_out(self, runtime, directory, org_admin):
        authorizer = Authorizer(runtime.codec, SlowDirectory(directory, 0.5), timeout=0.05)

        with pytest.raises(CollaboratorTimeoutError):
            await authorizer.authorize(_access(runtime, org_admin))
