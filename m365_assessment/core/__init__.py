"""Core module initialization."""

from m365_assessment.core.config import Settings, get_settings
from m365_assessment.core.database import (
    Base,
    get_db,
    init_db,
    session_scope,
)
from m365_assessment.core.exceptions import (
    AssessmentNotFound,
    AssessmentPlatformError,
    CategoryUnavailable,
    ConfigurationError,
    CredentialsNotReady,
    DirectoryApiError,
    DirectoryApiRejected,
    DirectoryApiTransient,
    MissingTenantIdentifier,
    ProvisioningInterrupted,
    StaleRecordError,
    TenantConflict,
    TenantNotFound,
    UnknownFeatureGroup,
    UnknownPermission,
    VaultUnavailable,
)
from m365_assessment.core.retry import (
    RetryPolicy,
    execute_with_retry,
    is_retryable_error,
    retry_with_backoff,
)

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Database
    "Base",
    "get_db",
    "init_db",
    "session_scope",
    # Errors
    "AssessmentNotFound",
    "AssessmentPlatformError",
    "CategoryUnavailable",
    "ConfigurationError",
    "CredentialsNotReady",
    "DirectoryApiError",
    "DirectoryApiRejected",
    "DirectoryApiTransient",
    "MissingTenantIdentifier",
    "ProvisioningInterrupted",
    "StaleRecordError",
    "TenantConflict",
    "TenantNotFound",
    "UnknownFeatureGroup",
    "UnknownPermission",
    "VaultUnavailable",
    # Retry
    "RetryPolicy",
    "execute_with_retry",
    "is_retryable_error",
    "retry_with_backoff",
]
