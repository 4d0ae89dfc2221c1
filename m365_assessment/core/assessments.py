"""Assessment request and result records."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Union

from m365_assessment.core.credentials import unreachable


class AssessmentStatus(str, Enum):
    COMPLETED = "Completed"
    COMPLETED_DEGRADED = "CompletedDegraded"


@dataclass(frozen=True)
class CategorySuccess:
    payload: dict[str, Any]


@dataclass(frozen=True)
class CategoryUnavailableResult:
    reason: str


CategoryResult = Union[CategorySuccess, CategoryUnavailableResult]


def category_result_to_dict(result: CategoryResult) -> dict[str, Any]:
    if isinstance(result, CategorySuccess):
        return {"status": "success", "payload": result.payload}
    if isinstance(result, CategoryUnavailableResult):
        return {"status": "unavailable", "reason": result.reason}
    unreachable(result)


def category_result_from_dict(data: dict[str, Any]) -> CategoryResult:
    if data.get("status") == "success":
        return CategorySuccess(payload=data.get("payload") or {})
    return CategoryUnavailableResult(reason=data.get("reason") or "unknown")


@dataclass(frozen=True)
class AssessmentRequest:
    tenant_account_id: str
    requested_categories: frozenset[str]
    tenant_identifier: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "requested_categories", frozenset(self.requested_categories))
        if not self.requested_categories:
            raise ValueError("At least one assessment category must be requested")


@dataclass(frozen=True)
class AssessmentResult:
    """Immutable outcome of one assessment run."""

    id: str
    tenant_account_id: str
    tenant_identifier: str
    requested_categories: frozenset[str]
    category_results: dict[str, CategoryResult]
    overall_status: AssessmentStatus
    overall_score: int
    started_at: datetime
    completed_at: datetime
    score_source: str | None = None
    recommendations: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if set(self.category_results) != set(self.requested_categories):
            raise ValueError("Every requested category needs exactly one result")

    @property
    def successes(self) -> dict[str, dict[str, Any]]:
        return {
            name: result.payload
            for name, result in self.category_results.items()
            if isinstance(result, CategorySuccess)
        }

    @property
    def unavailable(self) -> dict[str, str]:
        return {
            name: result.reason
            for name, result in self.category_results.items()
            if isinstance(result, CategoryUnavailableResult)
        }
