"""Assessment Pydantic schemas."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from m365_assessment.core.assessments import AssessmentResult, category_result_to_dict


class AssessmentCreate(BaseModel):
    """Inbound assessment request."""

    model_config = ConfigDict(populate_by_name=True)

    customer_id: str = Field(..., alias="customerId", min_length=1)
    tenant_id: str | None = Field(None, alias="tenantId")
    requested_categories: list[str] = Field(..., alias="requestedCategories", min_length=1)
    deadline_seconds: float | None = Field(None, alias="deadlineSeconds", gt=0)

    @field_validator("requested_categories")
    @classmethod
    def dedupe_categories(cls, v: list[str]) -> list[str]:
        categories = [c.strip() for c in v if c and c.strip()]
        if not categories:
            raise ValueError("requestedCategories must name at least one category")
        return list(dict.fromkeys(categories))


class CategoryResultResponse(BaseModel):
    status: str
    payload: dict[str, Any] | None = None
    reason: str | None = None


class AssessmentResponse(BaseModel):
    id: str
    tenant_account_id: str
    tenant_identifier: str
    requested_categories: list[str]
    category_results: dict[str, CategoryResultResponse]
    overall_status: str
    overall_score: int
    score_source: str | None = None
    recommendations: list[str] = Field(default_factory=list)
    started_at: datetime
    completed_at: datetime


def assessment_response(result: AssessmentResult) -> AssessmentResponse:
    return AssessmentResponse(
        id=result.id,
        tenant_account_id=result.tenant_account_id,
        tenant_identifier=result.tenant_identifier,
        requested_categories=sorted(result.requested_categories),
        category_results={
            name: CategoryResultResponse(**category_result_to_dict(value))
            for name, value in sorted(result.category_results.items())
        },
        overall_status=result.overall_status.value,
        overall_score=result.overall_score,
        score_source=result.score_source,
        recommendations=list(result.recommendations),
        started_at=result.started_at,
        completed_at=result.completed_at,
    )
