"""Pydantic schemas for API request/response validation."""

from m365_assessment.schemas.assessment import (
    AssessmentCreate,
    AssessmentResponse,
    CategoryResultResponse,
    assessment_response,
)
from m365_assessment.schemas.consent import ConsentCallbackResponse
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

__all__ = [
    "AssessmentCreate",
    "AssessmentResponse",
    "CategoryResultResponse",
    "ConsentCallbackResponse",
    "CredentialStatusResponse",
    "FeatureAnalysisResponse",
    "PermissionUpdateRequest",
    "PermissionUpdateResponse",
    "ProvisioningRequest",
    "ProvisioningResponse",
    "TenantAccountResponse",
    "assessment_response",
    "credential_status_response",
    "tenant_account_response",
]
