"""Error taxonomy for tenant onboarding and assessment collection.

Every error names its likely cause and carries at least one remediation
step so API responses are actionable for operators.
"""


class AssessmentPlatformError(Exception):
    """Base class for platform errors."""

    default_remediation: tuple[str, ...] = ()

    def __init__(
        self,
        message: str,
        *,
        cause: str | None = None,
        remediation: list[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause or message
        self.remediation = list(remediation or self.default_remediation)

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict:
        return {
            "error": self.kind,
            "detail": self.message,
            "cause": self.cause,
            "remediation": self.remediation,
        }


# =============================================================================
# Caller / configuration errors (fail fast, never retried)
# =============================================================================


class MissingTenantIdentifier(AssessmentPlatformError):
    """Neither a tenant ID nor a tenant domain was supplied."""

    default_remediation = (
        "Provide tenantId (directory GUID) or tenantDomain (e.g. contoso.onmicrosoft.com)",
    )


class UnknownFeatureGroup(AssessmentPlatformError):
    """A requested feature group key is not in the permission table."""

    def __init__(self, group_key: str, known: list[str] | None = None) -> None:
        self.group_key = group_key
        super().__init__(
            f"Unknown feature group: {group_key}",
            remediation=[f"Use one of the known feature groups: {', '.join(known or [])}"],
        )


class UnknownPermission(AssessmentPlatformError):
    """A permission name or ID has no entry in the permission table."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(
            f"Unknown permission: {name}",
            remediation=[
                f"Check that permission {name} is spelled correctly",
                "Add the permission to the permission table before requesting it",
            ],
        )


class ConfigurationError(AssessmentPlatformError):
    """Platform automation identity is not configured."""

    default_remediation = (
        "Set AZURE_TENANT_ID, AZURE_CLIENT_ID and AZURE_CLIENT_SECRET for the platform automation identity",
        "Grant the automation identity Application.ReadWrite.All with admin consent",
    )


# =============================================================================
# Directory API errors
# =============================================================================


class DirectoryApiError(AssessmentPlatformError):
    """Base class for errors returned by the directory API."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        error_code: str | None = None,
        cause: str | None = None,
        remediation: list[str] | None = None,
    ) -> None:
        super().__init__(message, cause=cause, remediation=remediation)
        self.status_code = status_code
        self.error_code = error_code


class DirectoryApiTransient(DirectoryApiError):
    """Network failure, timeout, throttling or server error. Retryable."""

    default_remediation = (
        "Retry the request later; the directory service is temporarily unavailable",
    )


class DirectoryApiRejected(DirectoryApiError):
    """The directory API refused the request. Not retryable."""

    default_remediation = (
        "Review the error detail and fix the request or the granted permissions",
    )


# =============================================================================
# Credential / assessment errors
# =============================================================================


class CredentialsNotReady(AssessmentPlatformError):
    """The tenant has no usable (Active, retrievable) credentials."""

    default_remediation = (
        "Complete app registration provisioning for this tenant",
        "Grant admin consent using the tenant's consent URL",
    )


class CategoryUnavailable(AssessmentPlatformError):
    """A single assessment category could not be collected."""

    def __init__(self, category: str, reason: str) -> None:
        self.category = category
        self.reason = reason
        super().__init__(f"Category {category} unavailable: {reason}")


class VaultUnavailable(AssessmentPlatformError):
    """The secret vault is not configured, unreachable or refused a request."""

    default_remediation = (
        "Set KEY_VAULT_URL and grant the platform identity secret set/get access",
    )


class ProvisioningInterrupted(AssessmentPlatformError):
    """A provisioning attempt was cancelled before it wrote its outcome."""

    default_remediation = (
        "Submit the provisioning request again",
        "Remove any half-created app registration tagged with the tenant in Entra ID",
    )


class StaleRecordError(AssessmentPlatformError):
    """A credential record changed underneath a writer."""

    default_remediation = ("Re-read the tenant record and submit the request again",)


class TenantConflict(AssessmentPlatformError):
    """A tenant account already exists for the resolved identifier."""

    default_remediation = (
        "Use the existing tenant account, or delete it before onboarding again",
    )


class TenantNotFound(AssessmentPlatformError):
    """No tenant account exists for the given ID."""

    default_remediation = ("Check the tenant account ID, or onboard the tenant first",)


class AssessmentNotFound(AssessmentPlatformError):
    """No stored assessment result has the given ID."""

    default_remediation = ("Check the assessment ID returned when the assessment was created",)
