"""Tests for the credential provisioning service."""

import asyncio
import uuid
from datetime import timedelta
from urllib.parse import parse_qs, urlsplit

import pytest

from m365_assessment.api.services.provisioning_service import (
    MANUAL_SETUP_INSTRUCTIONS,
    ProvisioningService,
    app_display_name,
)
from m365_assessment.core.consent import callback_params_from_url, parse_consent_callback
from m365_assessment.core.credentials import (
    ERROR_DURING_CREATION,
    MANUAL_SETUP_REQUIRED,
    PENDING_PREFIX,
    Active,
    CredentialRecord,
    InlineSecret,
    ManualSetupSecret,
    PendingManualSetup,
    Provisioning,
    ProvisioningErrorSecret,
    ProvisioningFailed,
    TenantAccount,
    TenantStatus,
    VaultedSecret,
    is_placeholder,
)
from m365_assessment.core.exceptions import (
    CredentialsNotReady,
    DirectoryApiRejected,
    MissingTenantIdentifier,
    TenantConflict,
    TenantNotFound,
    UnknownFeatureGroup,
)
from m365_assessment.core.permissions import BASELINE_PERMISSIONS, FEATURE_GROUPS
from m365_assessment.schemas.tenant import ProvisioningRequest
from tests.fixtures.fakes import FIXED_NOW, FakeDirectory, HangingDirectory

GUID = "72f988bf-86f1-41af-91ab-2d7cd011db47"


def make_request(**overrides) -> ProvisioningRequest:
    values = {"tenantName": "Contoso Ltd", "tenantDomain": "contoso.onmicrosoft.com"}
    values.update(overrides)
    return ProvisioningRequest(**values)


def save_in_progress(store, started_at) -> TenantAccount:
    """Store a tenant whose provisioning attempt never wrote an outcome."""
    account = store.create_tenant_account(TenantAccount(
        id=str(uuid.uuid4()),
        tenant_identifier="contoso.onmicrosoft.com",
        display_name="Contoso Ltd",
    ))
    placeholder = f"{PENDING_PREFIX}{uuid.uuid4()}"
    store.save_credential_record(CredentialRecord(
        tenant_account_id=account.id,
        tenant_identifier=account.tenant_identifier,
        application_id=placeholder,
        client_id=placeholder,
        service_principal_id=placeholder,
        secret_location=None,
        provisioning_state=Provisioning(started_at=started_at),
        updated_at=started_at,
    ))
    return account


@pytest.fixture
def service(store, directory, custody, settings, clock):
    return ProvisioningService(store, directory, custody, settings, clock=clock)


class TestProvisionNewTenant:
    """Fresh provisioning: Provisioning -> Active | Error."""

    @pytest.mark.asyncio
    async def test_vaulted_active_record(self, service, directory, vault):
        """A successful registration yields an Active, vaulted record."""
        outcome = await service.provision(make_request())
        record = outcome.record

        assert outcome.created
        assert outcome.error is None
        assert isinstance(record.provisioning_state, Active)
        assert not is_placeholder(record.client_id)
        assert isinstance(record.secret_location, VaultedSecret)
        assert record.granted_permissions == BASELINE_PERMISSIONS | FEATURE_GROUPS["core"].permissions
        assert record.secret_expires_at - record.secret_issued_at == timedelta(days=730)
        assert record.version == 2
        assert list(vault.secrets.values()) == ["secret-1"]

        tenant_identifier, display_name, permissions = directory.created[0]
        assert tenant_identifier == "contoso.onmicrosoft.com"
        assert display_name == "M365-Security-Assessment-Contoso-Ltd"
        assert permissions == record.granted_permissions

    @pytest.mark.asyncio
    async def test_inline_without_vault(self, store, directory, inline_custody, settings, clock):
        """Without a vault the secret is kept inline and provisioning still succeeds."""
        service = ProvisioningService(store, directory, inline_custody, settings, clock=clock)

        outcome = await service.provision(make_request())

        assert outcome.record.is_active
        assert outcome.record.secret_location == InlineSecret("secret-1")

    @pytest.mark.asyncio
    async def test_consent_url_carries_state(self, service):
        outcome = await service.provision(make_request())
        url = outcome.record.consent_url

        assert "/contoso.onmicrosoft.com/adminconsent?" in url
        assert parse_qs(urlsplit(url).query)["client_id"] == [outcome.record.client_id]

        callback = parse_consent_callback(callback_params_from_url(url))
        assert callback.state.customer_id == outcome.account.id
        assert callback.state.tenant_identifier == "contoso.onmicrosoft.com"

    @pytest.mark.asyncio
    async def test_custom_domain_resolved_to_guid(self, store, custody, settings, clock):
        """A directory-resolved GUID becomes the authority."""
        directory = FakeDirectory(resolved_authority=GUID)
        service = ProvisioningService(store, directory, custody, settings, clock=clock)

        outcome = await service.provision(make_request(tenantDomain="contoso.com"))

        assert outcome.record.authority_hint == GUID
        assert outcome.account.authority_hint == GUID
        assert f"/{GUID}/adminconsent" in outcome.record.consent_url

    @pytest.mark.asyncio
    async def test_unresolved_custom_domain_uses_common(self, service):
        outcome = await service.provision(make_request(tenantDomain="contoso.com"))
        assert outcome.record.authority_hint == "common"

    @pytest.mark.asyncio
    async def test_directory_rejection_records_error(self, store, custody, settings, clock):
        """A rejected registration ends in Error with troubleshooting detail."""
        directory = FakeDirectory(fail_with=DirectoryApiRejected(
            "insufficient permissions",
            status_code=403,
            error_code="Authorization_RequestDenied",
            remediation=["Ensure the calling identity has Application.ReadWrite.All"],
        ))
        service = ProvisioningService(store, directory, custody, settings, clock=clock)

        outcome = await service.provision(make_request())
        record = outcome.record

        assert isinstance(outcome.error, DirectoryApiRejected)
        assert isinstance(record.provisioning_state, ProvisioningFailed)
        assert record.state_name == "Error"
        assert record.client_id == ERROR_DURING_CREATION
        assert record.application_id == ERROR_DURING_CREATION
        assert record.secret_location == ProvisioningErrorSecret("insufficient permissions")
        assert record.troubleshooting["errorKind"] == "DirectoryApiRejected"
        assert "Application.ReadWrite.All" in record.troubleshooting["remediation"][0]
        assert store.get_credential_record(outcome.account.id) == record

    @pytest.mark.asyncio
    async def test_missing_automation_identity_records_error(
        self, store, directory, custody, unconfigured_settings, clock
    ):
        service = ProvisioningService(store, directory, custody, unconfigured_settings, clock=clock)

        outcome = await service.provision(make_request())

        assert outcome.record.state_name == "Error"
        assert outcome.record.troubleshooting["errorKind"] == "ConfigurationError"
        assert outcome.record.troubleshooting["remediation"]
        assert directory.created == []

    @pytest.mark.asyncio
    async def test_unexpected_error_still_recorded(self, store, custody, settings, clock):
        directory = FakeDirectory(fail_with=RuntimeError("boom"))
        service = ProvisioningService(store, directory, custody, settings, clock=clock)

        outcome = await service.provision(make_request())

        assert outcome.record.state_name == "Error"
        assert outcome.record.troubleshooting["remediation"]

    @pytest.mark.asyncio
    async def test_error_state_can_be_provisioned_again(self, store, custody, settings, clock):
        """An operator can re-submit after fixing the cause."""
        directory = FakeDirectory(fail_with=DirectoryApiRejected("denied", status_code=403))
        service = ProvisioningService(store, directory, custody, settings, clock=clock)
        first = await service.provision(make_request())

        directory.fail_with = None
        second = await service.provision(make_request())

        assert first.record.state_name == "Error"
        assert second.record.is_active
        assert second.account.id == first.account.id
        assert not second.created

    @pytest.mark.asyncio
    async def test_cancelled_attempt_records_error(self, store, custody, settings, clock):
        """A cancelled attempt ends in Error and can be provisioned again."""
        hanging = HangingDirectory()
        service = ProvisioningService(store, hanging, custody, settings, clock=clock)

        task = asyncio.create_task(service.provision(make_request()))
        await hanging.entered.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        account = store.find_tenant_account("contoso.onmicrosoft.com")
        record = store.get_credential_record(account.id)
        assert record.state_name == "Error"
        assert record.client_id == ERROR_DURING_CREATION
        assert record.troubleshooting["errorKind"] == "ProvisioningInterrupted"

        service.directory = FakeDirectory()
        retry = await service.provision(make_request())

        assert retry.record.is_active
        assert retry.account.id == account.id

    @pytest.mark.asyncio
    async def test_abandoned_provisioning_record_is_reclaimed(self, service, store):
        """A Provisioning record left by a dead worker does not block the tenant forever."""
        account = save_in_progress(store, started_at=FIXED_NOW - timedelta(hours=1))

        outcome = await service.provision(make_request())

        assert outcome.account.id == account.id
        assert outcome.record.is_active

    @pytest.mark.asyncio
    async def test_recent_provisioning_record_conflicts(self, service, store, directory):
        save_in_progress(store, started_at=FIXED_NOW)

        with pytest.raises(TenantConflict) as exc_info:
            await service.provision(make_request())

        assert "Retry in" in exc_info.value.remediation[0]
        assert directory.created == []

    @pytest.mark.asyncio
    async def test_missing_identifier(self, service):
        with pytest.raises(MissingTenantIdentifier):
            await service.provision(ProvisioningRequest(tenantName="Nobody"))


class TestRotation:
    """Active -> Active rotation."""

    @pytest.mark.asyncio
    async def test_reprovision_rotates_in_place(self, service, store, directory):
        first = await service.provision(make_request())
        second = await service.provision(make_request(tenantDomain="CONTOSO.onmicrosoft.com"))

        assert second.rotated
        assert not second.created
        assert second.account.id == first.account.id
        assert second.record.client_id != first.record.client_id
        assert second.record.consent_url != first.record.consent_url
        assert second.record.version == first.record.version + 1
        assert len(directory.created) == 2
        assert store.get_credential_record(first.account.id) == second.record

    @pytest.mark.asyncio
    async def test_failed_rotation_keeps_active_credentials(self, service, directory):
        first = await service.provision(make_request())
        directory.fail_with = DirectoryApiRejected("throttled forever", status_code=403)

        second = await service.provision(make_request())

        assert second.error is not None
        assert not second.rotated
        assert second.record.is_active
        assert second.record.client_id == first.record.client_id
        assert second.record.last_error["errorKind"] == "DirectoryApiRejected"

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_account(self, service, store, directory):
        """Concurrent submissions for one tenant serialize on the tenant lock."""
        first, second = await asyncio.gather(
            service.provision(make_request()),
            service.provision(make_request()),
        )

        assert first.account.id == second.account.id
        assert [first.created, second.created].count(True) == 1
        assert len(directory.created) == 2
        assert store.get_credential_record(first.account.id).version == 3

    @pytest.mark.asyncio
    async def test_rotation_keeps_granted_permissions(self, service):
        first = await service.provision(make_request())
        await service.update_permissions(first.account.id, {"privilegedRoles"})

        rotated = await service.provision(make_request())

        assert "RoleManagement.Read.Directory" in rotated.record.granted_permissions


class TestManualSetup:
    """skipAutoAppRegistration -> PendingManualSetup."""

    @pytest.mark.asyncio
    async def test_manual_setup_makes_no_directory_calls(self, service, directory):
        outcome = await service.provision(make_request(skipAutoAppRegistration=True))
        record = outcome.record

        assert isinstance(record.provisioning_state, PendingManualSetup)
        assert record.client_id == MANUAL_SETUP_REQUIRED
        assert record.secret_location == ManualSetupSecret(MANUAL_SETUP_INSTRUCTIONS)
        assert directory.created == []

    @pytest.mark.asyncio
    async def test_manual_setup_repeat_is_noop(self, service):
        first = await service.provision(make_request(skipAutoAppRegistration=True))
        second = await service.provision(make_request(skipAutoAppRegistration=True))
        assert second.record.version == first.record.version

    @pytest.mark.asyncio
    async def test_manual_setup_on_active_tenant_conflicts(self, service):
        await service.provision(make_request())
        with pytest.raises(TenantConflict):
            await service.provision(make_request(skipAutoAppRegistration=True))

    @pytest.mark.asyncio
    async def test_manual_setup_tenant_cannot_be_assessed(self, service, custody):
        outcome = await service.provision(make_request(skipAutoAppRegistration=True))
        with pytest.raises(CredentialsNotReady):
            await custody.retrieve(outcome.record)


class TestUpdatePermissions:
    """Incremental permission updates."""

    @pytest.mark.asyncio
    async def test_new_group_requires_consent(self, service, directory):
        first = await service.provision(make_request())

        outcome = await service.update_permissions(first.account.id, {"privilegedRoles"})

        assert outcome.composition.newly_added == frozenset({"RoleManagement.Read.Directory"})
        assert outcome.composition.consent_required
        assert outcome.record.consent_url != first.record.consent_url
        assert "RoleManagement.Read.Directory" in outcome.record.granted_permissions
        assert directory.updates[-1][0] == first.record.client_id

    @pytest.mark.asyncio
    async def test_already_granted_keeps_consent_url(self, service):
        first = await service.provision(make_request())

        outcome = await service.update_permissions(first.account.id, {"policies"})

        assert not outcome.composition.consent_required
        assert outcome.record.consent_url == first.record.consent_url

    @pytest.mark.asyncio
    async def test_unknown_group_rejected_before_directory_call(self, service, directory):
        first = await service.provision(make_request())
        with pytest.raises(UnknownFeatureGroup):
            await service.update_permissions(first.account.id, {"nope"})
        assert directory.updates == []

    @pytest.mark.asyncio
    async def test_requires_active_credentials(self, service):
        outcome = await service.provision(make_request(skipAutoAppRegistration=True))
        with pytest.raises(CredentialsNotReady):
            await service.update_permissions(outcome.account.id, {"policies"})

    @pytest.mark.asyncio
    async def test_unknown_tenant(self, service):
        with pytest.raises(TenantNotFound):
            await service.update_permissions("missing", {"policies"})

    @pytest.mark.asyncio
    async def test_feature_analysis(self, service):
        first = await service.provision(make_request())
        analysis = service.analyze_features(first.account.id)
        assert "core" in analysis.enabled
        assert "privilegedRoles" in analysis.missing


class TestConsent:
    """Admin consent callback handling."""

    @pytest.mark.asyncio
    async def test_successful_consent_activates_tenant(self, service):
        first = await service.provision(make_request())
        params = callback_params_from_url(first.record.consent_url)
        params["admin_consent"] = "True"

        account = service.record_consent(parse_consent_callback(params))

        assert account.status == TenantStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_declined_consent_leaves_status(self, service):
        first = await service.provision(make_request())
        params = callback_params_from_url(first.record.consent_url)
        params["error"] = "access_denied"

        account = service.record_consent(parse_consent_callback(params))

        assert account.status == TenantStatus.PENDING

    @pytest.mark.asyncio
    async def test_consent_from_other_directory_ignored(self, store, custody, settings, clock):
        """A callback naming a different directory GUID does not activate the tenant."""
        directory = FakeDirectory(resolved_authority=GUID)
        service = ProvisioningService(store, directory, custody, settings, clock=clock)
        first = await service.provision(make_request(tenantDomain="contoso.com"))
        params = callback_params_from_url(first.record.consent_url)
        params["admin_consent"] = "True"
        params["tenant"] = "0b4d2a6e-1f3c-4e5d-9a8b-7c6d5e4f3a2b"

        assert service.record_consent(parse_consent_callback(params)) is None
        assert store.get_tenant_account(first.account.id).status == TenantStatus.PENDING

        params["tenant"] = GUID.upper()
        account = service.record_consent(parse_consent_callback(params))
        assert account.status == TenantStatus.ACTIVE

    def test_callback_without_state_ignored(self, service):
        assert service.record_consent(parse_consent_callback({"admin_consent": "True"})) is None

    def test_credential_status_for_unknown_tenant(self, service):
        with pytest.raises(TenantNotFound):
            service.get_credential_status("missing")


def test_app_display_name():
    assert app_display_name("M365-Security-Assessment", " Contoso Ltd ") == "M365-Security-Assessment-Contoso-Ltd"
