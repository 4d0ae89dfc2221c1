"""Component graph and FastAPI dependency providers.

The graph is built once per application instance from ``Settings`` and
kept on ``app.state``; tests replace individual providers through
``app.dependency_overrides``.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta

from fastapi import Depends, Request
from sqlalchemy.orm import sessionmaker

from m365_assessment.api.services.assessment_collector import AssessmentCollector
from m365_assessment.api.services.data_sources import CategoryDataSource, default_data_sources
from m365_assessment.api.services.directory_client import DirectoryClient
from m365_assessment.api.services.key_vault import KeyVaultSecretStore
from m365_assessment.api.services.provisioning_service import ProvisioningService
from m365_assessment.api.services.secret_custody import SecretCustodyManager, SecretVault
from m365_assessment.api.services.store import SqlAlchemyStore
from m365_assessment.core.config import Settings, get_settings
from m365_assessment.core.database import SessionLocal
from m365_assessment.core.retry import CATEGORY_FETCH_POLICY, RetryPolicy
from m365_assessment.core.scoring import ScoringPolicy

logger = logging.getLogger(__name__)


@dataclass
class Components:
    settings: Settings
    store: SqlAlchemyStore
    directory: DirectoryClient
    custody: SecretCustodyManager
    provisioning: ProvisioningService
    collector: AssessmentCollector


def build_components(
    settings: Settings,
    session_factory: sessionmaker = SessionLocal,
    vault: SecretVault | None = None,
    sources: dict[str, CategoryDataSource] | None = None,
) -> Components:
    """Wire the services for one application instance."""
    store = SqlAlchemyStore(session_factory)

    if vault is None and settings.vault_configured:
        vault = KeyVaultSecretStore(settings.key_vault_url)
    if vault is None:
        logger.warning("KEY_VAULT_URL not set; client secrets will be stored inline")

    directory = DirectoryClient(settings, policy=RetryPolicy.from_settings(settings))
    custody = SecretCustodyManager(
        vault,
        validity=timedelta(days=settings.secret_validity_days),
    )
    provisioning = ProvisioningService(store, directory, custody, settings)
    collector = AssessmentCollector(
        store,
        custody,
        sources if sources is not None else default_data_sources(settings.external_call_timeout_seconds),
        scoring_policy=ScoringPolicy.from_settings(settings),
        policy=RetryPolicy.from_settings(settings, max_delay=CATEGORY_FETCH_POLICY.max_delay),
        deadline_seconds=settings.assessment_deadline_seconds,
    )
    return Components(
        settings=settings,
        store=store,
        directory=directory,
        custody=custody,
        provisioning=provisioning,
        collector=collector,
    )


def get_components(request: Request) -> Components:
    components = getattr(request.app.state, "components", None)
    if components is None:
        components = build_components(get_settings())
        request.app.state.components = components
    return components


def get_store(components: Components = Depends(get_components)) -> SqlAlchemyStore:
    return components.store


def get_provisioning_service(
    components: Components = Depends(get_components),
) -> ProvisioningService:
    return components.provisioning


def get_assessment_collector(
    components: Components = Depends(get_components),
) -> AssessmentCollector:
    return components.collector
