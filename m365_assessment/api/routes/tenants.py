"""Tenant onboarding API routes.

Platform errors raised by the services are rendered by the application's
exception handlers, so handlers here only translate between schemas and
domain records.
"""

from fastapi import APIRouter, Depends, Response, status

from m365_assessment.api.dependencies import get_provisioning_service, get_store
from m365_assessment.api.services.provisioning_service import ProvisioningService
from m365_assessment.api.services.store import SqlAlchemyStore
from m365_assessment.core.exceptions import TenantNotFound
from m365_assessment.schemas.tenant import (
    CredentialStatusResponse,
    FeatureAnalysisResponse,
    PermissionUpdateRequest,
    PermissionUpdateResponse,
    ProvisioningRequest,
    ProvisioningResponse,
    TenantAccountResponse,
    credential_status_response,
    tenant_account_response,
)

router = APIRouter(
    prefix="/api/v1/tenants",
    tags=["tenants"],
)


@router.post("", response_model=ProvisioningResponse)
async def provision_tenant(
    request: ProvisioningRequest,
    response: Response,
    service: ProvisioningService = Depends(get_provisioning_service),
):
    """Onboard a tenant, or rotate the credentials of an active one.

    A failed app registration is not an HTTP error: the tenant is
    recorded in the Error state with troubleshooting details.
    """
    outcome = await service.provision(request)
    if outcome.created:
        response.status_code = status.HTTP_201_CREATED
    return ProvisioningResponse(
        tenant=tenant_account_response(outcome.account),
        credentials=credential_status_response(outcome.record),
        created=outcome.created,
        rotated=outcome.rotated,
    )


@router.get("/{tenant_account_id}", response_model=TenantAccountResponse)
async def get_tenant(
    tenant_account_id: str,
    store: SqlAlchemyStore = Depends(get_store),
):
    """Get a tenant account."""
    account = store.get_tenant_account(tenant_account_id)
    if account is None:
        raise TenantNotFound(f"Tenant account {tenant_account_id} not found")
    return tenant_account_response(account)


@router.get("/{tenant_account_id}/credentials", response_model=CredentialStatusResponse)
async def get_credential_status(
    tenant_account_id: str,
    service: ProvisioningService = Depends(get_provisioning_service),
):
    """Get provisioning and consent status. The client secret is never returned."""
    return credential_status_response(service.get_credential_status(tenant_account_id))


@router.post("/{tenant_account_id}/permissions", response_model=PermissionUpdateResponse)
async def update_permissions(
    tenant_account_id: str,
    request: PermissionUpdateRequest,
    service: ProvisioningService = Depends(get_provisioning_service),
):
    """Enable feature groups; returns a fresh consent URL when consent is needed."""
    outcome = await service.update_permissions(
        tenant_account_id,
        frozenset(request.feature_groups),
        frozenset(request.additional_permissions),
        replace_all=request.replace_all,
    )
    return PermissionUpdateResponse(
        credentials=credential_status_response(outcome.record),
        newly_added=sorted(outcome.composition.newly_added),
        consent_required=outcome.composition.consent_required,
    )


@router.get("/{tenant_account_id}/features", response_model=FeatureAnalysisResponse)
async def get_feature_analysis(
    tenant_account_id: str,
    service: ProvisioningService = Depends(get_provisioning_service),
):
    """Report which feature groups the granted permissions enable."""
    analysis = service.analyze_features(tenant_account_id)
    return FeatureAnalysisResponse(
        enabled=analysis.enabled,
        partial=analysis.partial,
        missing=analysis.missing,
    )
