"""API services module."""

from m365_assessment.api.services.assessment_collector import AssessmentCollector
from m365_assessment.api.services.directory_client import DirectoryApplication, DirectoryClient
from m365_assessment.api.services.graph_client import GraphClient
from m365_assessment.api.services.key_vault import KeyVaultSecretStore
from m365_assessment.api.services.provisioning_service import (
    PermissionUpdateOutcome,
    ProvisioningOutcome,
    ProvisioningService,
)
from m365_assessment.api.services.secret_custody import SecretCustodyManager
from m365_assessment.api.services.store import SqlAlchemyStore

__all__ = [
    "AssessmentCollector",
    "DirectoryApplication",
    "DirectoryClient",
    "GraphClient",
    "KeyVaultSecretStore",
    "PermissionUpdateOutcome",
    "ProvisioningOutcome",
    "ProvisioningService",
    "SecretCustodyManager",
    "SqlAlchemyStore",
]
