"""Assessment API routes."""

from fastapi import APIRouter, Depends, status

from m365_assessment.api.dependencies import get_assessment_collector, get_store
from m365_assessment.api.services.assessment_collector import AssessmentCollector
from m365_assessment.api.services.store import SqlAlchemyStore
from m365_assessment.core.assessments import AssessmentRequest
from m365_assessment.core.exceptions import AssessmentNotFound
from m365_assessment.schemas.assessment import (
    AssessmentCreate,
    AssessmentResponse,
    assessment_response,
)

router = APIRouter(
    prefix="/api/v1/assessments",
    tags=["assessments"],
)


@router.post("", response_model=AssessmentResponse, status_code=status.HTTP_201_CREATED)
async def create_assessment(
    request: AssessmentCreate,
    collector: AssessmentCollector = Depends(get_assessment_collector),
):
    """Collect an assessment with the tenant's own credentials.

    Categories that cannot be collected are reported as unavailable in
    the result rather than failing the request.
    """
    result = await collector.collect(
        AssessmentRequest(
            tenant_account_id=request.customer_id,
            requested_categories=frozenset(request.requested_categories),
            tenant_identifier=request.tenant_id,
        ),
        deadline=request.deadline_seconds,
    )
    return assessment_response(result)


@router.get("/{assessment_id}", response_model=AssessmentResponse)
async def get_assessment(
    assessment_id: str,
    store: SqlAlchemyStore = Depends(get_store),
):
    """Get a stored assessment result."""
    result = store.get_assessment_result(assessment_id)
    if result is None:
        raise AssessmentNotFound(f"Assessment {assessment_id} not found")
    return assessment_response(result)


@router.get("", response_model=list[AssessmentResponse])
async def list_assessments(
    customer_id: str,
    store: SqlAlchemyStore = Depends(get_store),
):
    """List a tenant's assessments, newest first."""
    return [assessment_response(r) for r in store.list_assessment_results(customer_id)]
