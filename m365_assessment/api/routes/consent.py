"""Admin consent callback route.

The consent redirect lands here after a customer administrator grants
(or refuses) tenant-wide consent for the assessment application.
"""

from fastapi import APIRouter, Depends, Request

from m365_assessment.api.dependencies import get_provisioning_service
from m365_assessment.api.services.provisioning_service import ProvisioningService
from m365_assessment.core.consent import parse_consent_callback
from m365_assessment.schemas.consent import ConsentCallbackResponse

router = APIRouter(
    prefix="/api/v1/consent",
    tags=["consent"],
)

CONSENT_REMEDIATION = {
    "access_denied": [
        "Ask a Global Administrator or Privileged Role Administrator to grant consent",
        "Open the tenant's consent URL again once an administrator is available",
    ],
    "invalid_request": [
        "Check that the redirect URI registered on the application matches CONSENT_REDIRECT_URI",
    ],
}


@router.get("/callback", response_model=ConsentCallbackResponse)
async def consent_callback(
    request: Request,
    service: ProvisioningService = Depends(get_provisioning_service),
):
    """Record the outcome of an admin consent redirect."""
    callback = parse_consent_callback(dict(request.query_params))
    account = service.record_consent(callback)

    remediation: list[str] = []
    if not callback.success:
        remediation = CONSENT_REMEDIATION.get(
            callback.error or "",
            ["Retry admin consent using the tenant's consent URL"],
        )

    return ConsentCallbackResponse(
        success=callback.success,
        tenant_account_id=account.id if account else None,
        tenant=callback.tenant,
        tenant_status=account.status.value if account else None,
        error=callback.error,
        error_description=callback.error_description,
        remediation=remediation,
    )
