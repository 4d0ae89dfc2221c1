"""Tests for credential record invariants."""

from datetime import UTC, datetime, timedelta

import pytest

from m365_assessment.core.credentials import (
    ERROR_DURING_CREATION,
    MANUAL_SETUP_REQUIRED,
    Active,
    CredentialRecord,
    InlineSecret,
    ManualSetupSecret,
    PendingManualSetup,
    Provisioning,
    ProvisioningErrorSecret,
    ProvisioningFailed,
    VaultedSecret,
    is_placeholder,
    provisioning_state_name,
    secret_location_kind,
)

NOW = datetime(2024, 6, 1, tzinfo=UTC)


def make_record(**overrides) -> CredentialRecord:
    values = {
        "tenant_account_id": "acct-1",
        "tenant_identifier": "contoso.onmicrosoft.com",
        "application_id": "app-object-1",
        "client_id": "client-1",
        "service_principal_id": "sp-1",
        "secret_location": InlineSecret("s3cret"),
        "provisioning_state": Active(activated_at=NOW),
    }
    values.update(overrides)
    return CredentialRecord(**values)


class TestPlaceholders:
    """Tests for placeholder detection."""

    @pytest.mark.parametrize(
        "value", ["pending-123", MANUAL_SETUP_REQUIRED, ERROR_DURING_CREATION, "", None]
    )
    def test_placeholders(self, value):
        assert is_placeholder(value)

    def test_real_id_is_not_placeholder(self):
        assert not is_placeholder("9a3f1c2e-0000-4000-8000-000000000001")


class TestCredentialRecordInvariants:
    """Construction rejects records that break the state invariants."""

    def test_active_inline_record_valid(self):
        record = make_record()
        assert record.is_active
        assert record.state_name == "Active"

    def test_active_vaulted_record_valid(self):
        record = make_record(secret_location=VaultedSecret("https://v.vault.azure.net/secrets/x/1"))
        assert record.is_active

    @pytest.mark.parametrize(
        "location",
        [None, ManualSetupSecret(), ProvisioningErrorSecret("boom")],
    )
    def test_active_requires_usable_secret(self, location):
        with pytest.raises(ValueError):
            make_record(secret_location=location)

    @pytest.mark.parametrize("field", ["client_id", "application_id"])
    def test_active_rejects_placeholder_ids(self, field):
        with pytest.raises(ValueError):
            make_record(**{field: "pending-abc"})

    def test_timestamps_set_together(self):
        with pytest.raises(ValueError):
            make_record(secret_issued_at=NOW)
        record = make_record(secret_issued_at=NOW, secret_expires_at=NOW + timedelta(days=730))
        assert record.secret_expires_at - record.secret_issued_at == timedelta(days=730)

    def test_error_record_with_sentinels_allowed(self):
        record = make_record(
            application_id=ERROR_DURING_CREATION,
            client_id=ERROR_DURING_CREATION,
            service_principal_id=ERROR_DURING_CREATION,
            secret_location=ProvisioningErrorSecret("Insufficient privileges"),
            provisioning_state=ProvisioningFailed(
                message="Insufficient privileges",
                error_kind="DirectoryApiRejected",
                remediation=("Ensure Application.ReadWrite.All",),
                occurred_at=NOW,
            ),
        )
        assert record.state_name == "Error"
        assert record.troubleshooting["errorKind"] == "DirectoryApiRejected"
        assert record.troubleshooting["remediation"] == ["Ensure Application.ReadWrite.All"]

    def test_granted_permissions_deduplicated(self):
        record = make_record(granted_permissions=["User.Read.All", "User.Read.All"])
        assert record.granted_permissions == frozenset({"User.Read.All"})


class TestVariantNames:
    def test_state_names(self):
        assert provisioning_state_name(PendingManualSetup()) == "PendingManualSetup"
        assert provisioning_state_name(Provisioning(started_at=NOW)) == "Provisioning"

    def test_secret_kinds(self):
        assert secret_location_kind(None) == "NotIssued"
        assert secret_location_kind(ManualSetupSecret()) == "RequiresManualSetup"

    def test_unknown_variant_rejected(self):
        with pytest.raises(TypeError):
            provisioning_state_name("Active")
