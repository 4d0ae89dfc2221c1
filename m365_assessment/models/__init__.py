"""Database models module."""

from m365_assessment.models.assessment import AssessmentResultRow
from m365_assessment.models.credential import CredentialRecordRow
from m365_assessment.models.tenant import TenantAccountRow

__all__ = [
    "TenantAccountRow",
    "CredentialRecordRow",
    "AssessmentResultRow",
]
