"""Credential and tenant account domain records.

Provisioning state and secret location are closed variant types rather
than magic strings inside ID fields. Branch on them with ``isinstance``
and finish every chain with ``unreachable``.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import NoReturn, Union

PENDING_PREFIX = "pending-"
MANUAL_SETUP_REQUIRED = "MANUAL_SETUP_REQUIRED"
ERROR_DURING_CREATION = "ERROR_DURING_CREATION"


def is_placeholder(value: str | None) -> bool:
    """Check whether an application identifier is a non-functional placeholder."""
    return (
        not value
        or value.startswith(PENDING_PREFIX)
        or value in (MANUAL_SETUP_REQUIRED, ERROR_DURING_CREATION)
    )


def unreachable(value: object) -> NoReturn:
    raise TypeError(f"Unhandled variant: {value!r}")


# =============================================================================
# Secret location
# =============================================================================


@dataclass(frozen=True)
class InlineSecret:
    """Secret stored on the credential record itself (vault fallback)."""

    secret_value: str = field(repr=False)


@dataclass(frozen=True)
class VaultedSecret:
    """Secret stored in Key Vault; only the reference is kept."""

    vault_reference: str


@dataclass(frozen=True)
class ManualSetupSecret:
    """No secret issued; the customer registers the app themselves."""

    instructions: tuple[str, ...] = ()


@dataclass(frozen=True)
class ProvisioningErrorSecret:
    """No secret issued because provisioning failed."""

    detail: str


SecretLocation = Union[InlineSecret, VaultedSecret, ManualSetupSecret, ProvisioningErrorSecret]


def secret_location_kind(location: SecretLocation | None) -> str:
    if location is None:
        return "NotIssued"
    if isinstance(location, InlineSecret):
        return "Inline"
    if isinstance(location, VaultedSecret):
        return "Vaulted"
    if isinstance(location, ManualSetupSecret):
        return "RequiresManualSetup"
    if isinstance(location, ProvisioningErrorSecret):
        return "ProvisioningError"
    unreachable(location)


# =============================================================================
# Provisioning state
# =============================================================================


@dataclass(frozen=True)
class PendingManualSetup:
    instructions: tuple[str, ...] = ()


@dataclass(frozen=True)
class Provisioning:
    started_at: datetime


@dataclass(frozen=True)
class Active:
    activated_at: datetime


@dataclass(frozen=True)
class ProvisioningFailed:
    """Provisioning attempt ended in error; kept for operator diagnosis."""

    message: str
    error_kind: str
    remediation: tuple[str, ...] = ()
    occurred_at: datetime | None = None

    @property
    def troubleshooting(self) -> dict:
        return {
            "error": self.message,
            "errorKind": self.error_kind,
            "remediation": list(self.remediation),
            "occurredAt": self.occurred_at.isoformat() if self.occurred_at else None,
        }


ProvisioningState = Union[PendingManualSetup, Provisioning, Active, ProvisioningFailed]


def provisioning_state_name(state: ProvisioningState) -> str:
    if isinstance(state, PendingManualSetup):
        return "PendingManualSetup"
    if isinstance(state, Provisioning):
        return "Provisioning"
    if isinstance(state, Active):
        return "Active"
    if isinstance(state, ProvisioningFailed):
        return "Error"
    unreachable(state)


# =============================================================================
# Records
# =============================================================================


class TenantStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    INACTIVE = "inactive"


@dataclass
class TenantAccount:
    """One onboarded customer organization."""

    id: str
    tenant_identifier: str
    display_name: str
    domain: str | None = None
    contact_email: str | None = None
    notes: str | None = None
    status: TenantStatus = TenantStatus.PENDING
    authority_hint: str | None = None
    total_assessments: int = 0
    last_assessment_date: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class CredentialRecord:
    """Current app registration credentials for a tenant account.

    Construction enforces the state invariants, so an invalid record
    can never reach the store.
    """

    tenant_account_id: str
    tenant_identifier: str
    application_id: str
    client_id: str
    service_principal_id: str
    # None while provisioning has not issued a secret yet
    secret_location: SecretLocation | None
    provisioning_state: ProvisioningState
    granted_permissions: frozenset[str] = frozenset()
    consent_url: str | None = None
    redirect_uri: str | None = None
    authority_hint: str | None = None
    secret_issued_at: datetime | None = None
    secret_expires_at: datetime | None = None
    version: int = 0
    updated_at: datetime | None = None
    # Annotation left by a failed rotation; the prior state stays in force
    last_error: dict | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "granted_permissions", frozenset(self.granted_permissions))

        if (self.secret_issued_at is None) != (self.secret_expires_at is None):
            raise ValueError("secret_issued_at and secret_expires_at must be set together")

        if isinstance(self.provisioning_state, Active):
            if not isinstance(self.secret_location, (InlineSecret, VaultedSecret)):
                raise ValueError(
                    f"Active credentials need an Inline or Vaulted secret, "
                    f"got {secret_location_kind(self.secret_location)}"
                )
            if is_placeholder(self.client_id) or is_placeholder(self.application_id):
                raise ValueError("Active credentials cannot carry placeholder identifiers")

    @property
    def state_name(self) -> str:
        return provisioning_state_name(self.provisioning_state)

    @property
    def is_active(self) -> bool:
        return isinstance(self.provisioning_state, Active)

    @property
    def troubleshooting(self) -> dict | None:
        if isinstance(self.provisioning_state, ProvisioningFailed):
            return self.provisioning_state.troubleshooting
        return None
