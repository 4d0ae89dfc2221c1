"""API routes module."""

from m365_assessment.api.routes.assessments import router as assessments_router
from m365_assessment.api.routes.consent import router as consent_router
from m365_assessment.api.routes.tenants import router as tenants_router

__all__ = [
    "tenants_router",
    "assessments_router",
    "consent_router",
]
