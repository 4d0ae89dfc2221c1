"""Tenant onboarding Pydantic schemas.

Field aliases are the camelCase names used by the customer portal.
"""

import re
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from m365_assessment.core.credentials import (
    CredentialRecord,
    PendingManualSetup,
    TenantAccount,
    secret_location_kind,
)


class ProvisioningRequest(BaseModel):
    """Request to onboard a customer tenant.

    Either ``tenantId`` or ``tenantDomain`` identifies the tenant; when
    both are given the ID wins. A request naming neither is rejected by
    the resolver with ``MissingTenantIdentifier``.
    """

    model_config = ConfigDict(populate_by_name=True)

    tenant_name: str = Field(..., alias="tenantName", min_length=1, max_length=255)
    tenant_domain: str | None = Field(None, alias="tenantDomain", max_length=255)
    tenant_id: str | None = Field(None, alias="tenantId", max_length=255)
    contact_email: str | None = Field(
        None, alias="contactEmail", max_length=320, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
    )
    notes: str | None = Field(None, max_length=2000)
    skip_auto_app_registration: bool = Field(False, alias="skipAutoAppRegistration")

    @field_validator("tenant_domain")
    @classmethod
    def validate_domain(cls, v: str | None) -> str | None:
        if v is None or not v.strip():
            return None
        if not re.match(r"^[^\s/@]+$", v.strip()):
            raise ValueError("tenantDomain must be a domain name such as contoso.onmicrosoft.com")
        return v.strip()


class PermissionUpdateRequest(BaseModel):
    """Enable feature groups or individual permissions for a tenant."""

    model_config = ConfigDict(populate_by_name=True)

    feature_groups: list[str] = Field(default_factory=list, alias="featureGroups")
    additional_permissions: list[str] = Field(default_factory=list, alias="additionalPermissions")
    replace_all: bool = Field(False, alias="replaceAll")


class TenantAccountResponse(BaseModel):
    """Schema for tenant account response."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_identifier: str
    display_name: str
    domain: str | None = None
    contact_email: str | None = None
    status: str
    authority_hint: str | None = None
    total_assessments: int = 0
    last_assessment_date: datetime | None = None
    created_at: datetime | None = None


class CredentialStatusResponse(BaseModel):
    """Credential record as shown to operators. Never carries the secret."""

    tenant_account_id: str
    tenant_identifier: str
    provisioning_state: str
    application_id: str
    client_id: str
    service_principal_id: str
    secret_location: str
    granted_permissions: list[str]
    consent_url: str | None = None
    redirect_uri: str | None = None
    authority_hint: str | None = None
    secret_issued_at: datetime | None = None
    secret_expires_at: datetime | None = None
    setup_instructions: list[str] = Field(default_factory=list)
    troubleshooting: dict | None = None
    last_error: dict | None = None


class ProvisioningResponse(BaseModel):
    tenant: TenantAccountResponse
    credentials: CredentialStatusResponse
    created: bool
    rotated: bool = False


class PermissionUpdateResponse(BaseModel):
    credentials: CredentialStatusResponse
    newly_added: list[str]
    consent_required: bool


class FeatureAnalysisResponse(BaseModel):
    enabled: list[str]
    partial: list[str]
    missing: list[str]


def tenant_account_response(account: TenantAccount) -> TenantAccountResponse:
    return TenantAccountResponse(
        id=account.id,
        tenant_identifier=account.tenant_identifier,
        display_name=account.display_name,
        domain=account.domain,
        contact_email=account.contact_email,
        status=account.status.value,
        authority_hint=account.authority_hint,
        total_assessments=account.total_assessments,
        last_assessment_date=account.last_assessment_date,
        created_at=account.created_at,
    )


def credential_status_response(record: CredentialRecord) -> CredentialStatusResponse:
    """Render a credential record without its secret value."""
    state = record.provisioning_state
    return CredentialStatusResponse(
        tenant_account_id=record.tenant_account_id,
        tenant_identifier=record.tenant_identifier,
        provisioning_state=record.state_name,
        application_id=record.application_id,
        client_id=record.client_id,
        service_principal_id=record.service_principal_id,
        secret_location=secret_location_kind(record.secret_location),
        granted_permissions=sorted(record.granted_permissions),
        consent_url=record.consent_url,
        redirect_uri=record.redirect_uri,
        authority_hint=record.authority_hint,
        secret_issued_at=record.secret_issued_at,
        secret_expires_at=record.secret_expires_at,
        setup_instructions=list(state.instructions) if isinstance(state, PendingManualSetup) else [],
        troubleshooting=record.troubleshooting,
        last_error=record.last_error,
    )
