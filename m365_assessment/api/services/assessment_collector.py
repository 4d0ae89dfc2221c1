"""Resilient multi-category assessment collector.

Each requested category is fetched in its own task behind the shared
retry executor. A failing or slow category becomes ``Unavailable`` in the
result and never aborts the others; every run is persisted, including
runs where nothing could be collected.
"""

import asyncio
import logging
import uuid
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any

from m365_assessment.api.services.data_sources import CategoryDataSource
from m365_assessment.api.services.secret_custody import SecretCustodyManager
from m365_assessment.api.services.store import SqlAlchemyStore
from m365_assessment.core.assessments import (
    AssessmentRequest,
    AssessmentResult,
    AssessmentStatus,
    CategoryResult,
    CategorySuccess,
    CategoryUnavailableResult,
)
from m365_assessment.core.exceptions import (
    AssessmentPlatformError,
    CategoryUnavailable,
    CredentialsNotReady,
    TenantNotFound,
)
from m365_assessment.core.retry import CATEGORY_FETCH_POLICY, RetryPolicy, execute_with_retry
from m365_assessment.core.scoring import ScoringPolicy, build_recommendations, derive_overall_score

logger = logging.getLogger(__name__)

TIMEOUT_REASON = "timeout"
UNSUPPORTED_CATEGORY_REASON = "unsupported category"


def _now() -> datetime:
    return datetime.now(UTC)


def unavailable_reason(error: BaseException) -> str:
    """Short, operator-readable reason for a failed category."""
    if isinstance(error, CategoryUnavailable):
        return error.reason
    if isinstance(error, AssessmentPlatformError):
        return error.message
    if isinstance(error, TimeoutError):
        return TIMEOUT_REASON
    return str(error) or type(error).__name__


class AssessmentCollector:
    """Collects assessment categories with a tenant's own credentials."""

    def __init__(
        self,
        store: SqlAlchemyStore,
        custody: SecretCustodyManager,
        sources: Mapping[str, CategoryDataSource],
        scoring_policy: ScoringPolicy | None = None,
        policy: RetryPolicy = CATEGORY_FETCH_POLICY,
        deadline_seconds: float | None = None,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self.store = store
        self.custody = custody
        self.sources = dict(sources)
        self.scoring_policy = scoring_policy or ScoringPolicy()
        self.policy = policy
        self.deadline_seconds = deadline_seconds
        self.clock = clock

    async def collect(
        self, request: AssessmentRequest, deadline: float | None = None
    ) -> AssessmentResult:
        """Run an assessment and persist its result.

        Args:
            request: Tenant account and requested categories
            deadline: Seconds before unfinished categories are cancelled;
                defaults to the collector's configured deadline

        Returns:
            The persisted AssessmentResult, with one entry per requested
            category

        Raises:
            TenantNotFound: If the tenant account does not exist
            CredentialsNotReady: If the tenant has no Active credentials or
                the client secret cannot be read
        """
        account = self.store.get_tenant_account(request.tenant_account_id)
        if account is None:
            raise TenantNotFound(f"Tenant account {request.tenant_account_id} not found")

        if request.tenant_identifier and request.tenant_identifier != account.tenant_identifier:
            raise CredentialsNotReady(
                f"Tenant {request.tenant_identifier} does not belong to customer {account.id}",
                remediation=["Check the tenantId sent with the assessment request"],
            )

        record = self.store.get_credential_record(account.id)
        if record is None or not record.is_active:
            state = record.state_name if record else "not provisioned"
            raise CredentialsNotReady(
                f"Tenant {account.tenant_identifier} credentials are not active ({state})"
            )
        client_secret = await self.custody.retrieve(record)

        started_at = self.clock()
        results = await self._collect_categories(
            request.requested_categories,
            account.tenant_identifier,
            record.client_id,
            client_secret,
            deadline if deadline is not None else self.deadline_seconds,
        )
        completed_at = self.clock()

        result = self._assemble(request, account.tenant_identifier, results, started_at, completed_at)
        self.store.save_assessment_result(result)
        self.store.record_assessment_completed(account.id, completed_at)

        logger.info(
            f"Assessment {result.id} for tenant {account.tenant_identifier}: "
            f"{result.overall_status.value}, score {result.overall_score}, "
            f"{len(result.successes)}/{len(results)} categories collected"
        )
        return result

    async def _fetch(
        self,
        source: CategoryDataSource,
        category: str,
        tenant_identifier: str,
        client_id: str,
        client_secret: str,
    ) -> dict[str, Any]:
        return await execute_with_retry(
            lambda: source.fetch(tenant_identifier, client_id, client_secret),
            policy=self.policy,
            description=f"fetch {category} for {tenant_identifier}",
        )

    async def _collect_categories(
        self,
        categories: frozenset[str],
        tenant_identifier: str,
        client_id: str,
        client_secret: str,
        deadline: float | None,
    ) -> dict[str, CategoryResult]:
        results: dict[str, CategoryResult] = {}
        tasks: dict[asyncio.Task, str] = {}

        for category in sorted(categories):
            source = self.sources.get(category)
            if source is None:
                logger.warning(f"Category {category} has no data source; marking unavailable")
                results[category] = CategoryUnavailableResult(reason=UNSUPPORTED_CATEGORY_REASON)
                continue
            task = asyncio.create_task(
                self._fetch(source, category, tenant_identifier, client_id, client_secret),
                name=f"assessment-{category}",
            )
            tasks[task] = category

        if not tasks:
            return results

        try:
            _, pending = await asyncio.wait(tasks, timeout=deadline)
        finally:
            # Also reached when the caller is cancelled mid-wait
            unfinished = [task for task in tasks if not task.done()]
            for task in unfinished:
                task.cancel()
            if unfinished:
                await asyncio.gather(*unfinished, return_exceptions=True)

        for task, category in tasks.items():
            if task in pending or task.cancelled():
                logger.warning(f"Category {category} did not finish before the deadline")
                results[category] = CategoryUnavailableResult(reason=TIMEOUT_REASON)
                continue

            error = task.exception()
            if error is not None:
                unavailable = CategoryUnavailable(category, unavailable_reason(error))
                logger.warning(f"{unavailable.message} ({type(error).__name__})")
                results[category] = CategoryUnavailableResult(reason=unavailable.reason)
                continue

            results[category] = CategorySuccess(payload=task.result())

        return results

    def _assemble(
        self,
        request: AssessmentRequest,
        tenant_identifier: str,
        results: dict[str, CategoryResult],
        started_at: datetime,
        completed_at: datetime,
    ) -> AssessmentResult:
        successes = {
            name: result.payload
            for name, result in results.items()
            if isinstance(result, CategorySuccess)
        }
        unavailable = {
            name: result.reason
            for name, result in results.items()
            if isinstance(result, CategoryUnavailableResult)
        }

        derivation = derive_overall_score(successes, self.scoring_policy)
        status = AssessmentStatus.COMPLETED if successes else AssessmentStatus.COMPLETED_DEGRADED
        if status is AssessmentStatus.COMPLETED_DEGRADED:
            logger.warning(
                f"No categories could be collected for tenant {tenant_identifier}; "
                f"recording degraded assessment"
            )

        return AssessmentResult(
            id=str(uuid.uuid4()),
            tenant_account_id=request.tenant_account_id,
            tenant_identifier=tenant_identifier,
            requested_categories=request.requested_categories,
            category_results=results,
            overall_status=status,
            overall_score=derivation.score,
            started_at=started_at,
            completed_at=completed_at,
            score_source=derivation.source,
            recommendations=build_recommendations(successes, unavailable),
        )
