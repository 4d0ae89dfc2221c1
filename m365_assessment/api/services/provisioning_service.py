"""Credential provisioning service.

Drives a tenant's credential record through its provisioning states:

    (new) ──skip──────────────► PendingManualSetup
    (new) ──► Provisioning ──► Active | Error
    Active ──────────────────► Active          (secret rotation)

Each transition performs exactly one credential write, and all writes
for one tenant identifier are serialized by an in-process lock plus the
store's version check.
"""

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime

from m365_assessment.api.services.directory_client import DirectoryApplication, DirectoryClient
from m365_assessment.api.services.secret_custody import SecretCustodyManager
from m365_assessment.api.services.store import SqlAlchemyStore
from m365_assessment.core.config import Settings
from m365_assessment.core.consent import (
    ConsentCallbackResult,
    build_consent_url,
    new_consent_state,
)
from m365_assessment.core.credentials import (
    ERROR_DURING_CREATION,
    MANUAL_SETUP_REQUIRED,
    PENDING_PREFIX,
    Active,
    CredentialRecord,
    ManualSetupSecret,
    PendingManualSetup,
    Provisioning,
    ProvisioningErrorSecret,
    ProvisioningFailed,
    TenantAccount,
    TenantStatus,
)
from m365_assessment.core.exceptions import (
    AssessmentPlatformError,
    ConfigurationError,
    CredentialsNotReady,
    ProvisioningInterrupted,
    TenantConflict,
    TenantNotFound,
)
from m365_assessment.core.locks import KeyedLocks
from m365_assessment.core.permissions import (
    BASELINE_PERMISSIONS,
    CompositionResult,
    FeatureAnalysis,
    analyze_enabled_features,
    build_resource_access,
    compose,
    permission_names_from_ids,
)
from m365_assessment.core.tenant_identity import (
    ResolvedTenant,
    finalize_authority,
    is_guid,
    resolve,
)
from m365_assessment.schemas.tenant import ProvisioningRequest

logger = logging.getLogger(__name__)

MANUAL_SETUP_INSTRUCTIONS = (
    "Register a multi-tenant application in the customer's Entra ID tenant",
    "Add the Microsoft Graph application permissions listed for the core feature group",
    "Grant tenant-wide admin consent for the application",
    "Create a client secret and submit the application ID and secret to the platform",
)


@dataclass(frozen=True)
class ProvisioningOutcome:
    """Result of a provisioning request.

    ``error`` is set when the attempt failed; the failure is already
    recorded on ``record`` (Error state, or a ``last_error`` annotation
    on a rotation that kept the prior Active credentials).
    """

    account: TenantAccount
    record: CredentialRecord
    created: bool
    rotated: bool = False
    error: AssessmentPlatformError | None = None


@dataclass(frozen=True)
class PermissionUpdateOutcome:
    record: CredentialRecord
    composition: CompositionResult


def _now() -> datetime:
    return datetime.now(UTC)


def app_display_name(prefix: str, tenant_name: str) -> str:
    return f"{prefix}-{tenant_name.strip().replace(' ', '-')}"


def _error_annotation(error: AssessmentPlatformError, occurred_at: datetime) -> dict:
    return {
        "error": error.message,
        "errorKind": error.kind,
        "remediation": error.remediation,
        "occurredAt": occurred_at.isoformat(),
    }


def _as_platform_error(error: Exception) -> AssessmentPlatformError:
    if isinstance(error, AssessmentPlatformError):
        return error
    return AssessmentPlatformError(
        f"Unexpected provisioning failure: {error}",
        cause=type(error).__name__,
        remediation=["Check the platform logs for the full traceback, then retry provisioning"],
    )


def _directory_guid(account: TenantAccount) -> str | None:
    """The account's directory GUID, when it is known."""
    for candidate in (account.tenant_identifier, account.authority_hint):
        if candidate and is_guid(candidate):
            return candidate.lower()
    return None


class ProvisioningService:
    """Provisioning and consent operations for customer tenants."""

    def __init__(
        self,
        store: SqlAlchemyStore,
        directory: DirectoryClient,
        custody: SecretCustodyManager,
        settings: Settings,
        locks: KeyedLocks | None = None,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self.store = store
        self.directory = directory
        self.custody = custody
        self.settings = settings
        self.locks = locks or KeyedLocks("provisioning")
        self.clock = clock

    # =========================================================================
    # Provisioning
    # =========================================================================

    async def provision(self, request: ProvisioningRequest) -> ProvisioningOutcome:
        """Onboard a tenant, or rotate its credentials if already Active.

        Raises:
            MissingTenantIdentifier: If the request names no tenant
            TenantConflict: If the tenant is mid-provisioning, or is Active
                and manual setup was requested
        """
        resolved = resolve(request.tenant_id, request.tenant_domain)

        async with self.locks.hold(resolved.tenant_identifier):
            account = self.store.find_tenant_account(resolved.tenant_identifier)
            created = account is None
            existing = None
            if account is None:
                account = self._create_account(request, resolved)
            else:
                existing = self.store.get_credential_record(account.id)

            if request.skip_auto_app_registration:
                return self._require_manual_setup(account, existing, resolved, created)

            if existing is not None and existing.is_active:
                return await self._rotate(request, account, existing, resolved)

            if existing is not None and isinstance(existing.provisioning_state, Provisioning):
                self._reclaim_abandoned(existing)

            return await self._provision_new(request, account, existing, resolved, created)

    def _reclaim_abandoned(self, existing: CredentialRecord) -> None:
        """Allow a new attempt over a Provisioning record nobody is finishing.

        Attempts in this process hold the tenant lock for their whole run,
        so a Provisioning record seen here belongs to another worker or to
        one that died. It is taken over once it is older than
        ``provisioning_stale_after_seconds``.
        """
        started_at = existing.provisioning_state.started_at
        stale_after = self.settings.provisioning_stale_after_seconds
        if started_at is not None:
            age = (self.clock() - started_at).total_seconds()
            if age < stale_after:
                raise TenantConflict(
                    f"Provisioning for tenant {existing.tenant_identifier} is already in progress",
                    remediation=[
                        f"Retry in {int(stale_after - age) + 1}s if the running attempt has not finished",
                    ],
                )
        logger.warning(
            f"Reclaiming abandoned provisioning attempt for tenant {existing.tenant_identifier} "
            f"(started {started_at.isoformat() if started_at else 'at an unknown time'})"
        )

    def _create_account(self, request: ProvisioningRequest, resolved: ResolvedTenant) -> TenantAccount:
        domain = request.tenant_domain or (None if resolved.is_guid else resolved.tenant_identifier)
        account = TenantAccount(
            id=str(uuid.uuid4()),
            tenant_identifier=resolved.tenant_identifier,
            display_name=request.tenant_name,
            domain=domain.lower() if domain else None,
            contact_email=str(request.contact_email) if request.contact_email else None,
            notes=request.notes,
            status=TenantStatus.PENDING,
            authority_hint=resolved.authority_hint,
        )
        logger.info(f"Creating tenant account {account.id} for {resolved.tenant_identifier}")
        return self.store.create_tenant_account(account)

    def _require_manual_setup(
        self,
        account: TenantAccount,
        existing: CredentialRecord | None,
        resolved: ResolvedTenant,
        created: bool,
    ) -> ProvisioningOutcome:
        if existing is not None:
            if isinstance(existing.provisioning_state, PendingManualSetup):
                return ProvisioningOutcome(account=account, record=existing, created=created)
            if existing.is_active:
                raise TenantConflict(
                    f"Tenant {resolved.tenant_identifier} already has active credentials",
                    remediation=["Re-run provisioning without skipAutoAppRegistration to rotate the secret"],
                )

        record = CredentialRecord(
            tenant_account_id=account.id,
            tenant_identifier=resolved.tenant_identifier,
            application_id=MANUAL_SETUP_REQUIRED,
            client_id=MANUAL_SETUP_REQUIRED,
            service_principal_id=MANUAL_SETUP_REQUIRED,
            secret_location=ManualSetupSecret(instructions=MANUAL_SETUP_INSTRUCTIONS),
            provisioning_state=PendingManualSetup(instructions=MANUAL_SETUP_INSTRUCTIONS),
            redirect_uri=self.settings.consent_redirect_uri,
            authority_hint=resolved.authority_hint,
            version=existing.version if existing else 0,
            updated_at=self.clock(),
        )
        record = self.store.save_credential_record(record)
        logger.info(f"Tenant {resolved.tenant_identifier} awaits manual app registration setup")
        return ProvisioningOutcome(account=account, record=record, created=created)

    async def _provision_new(
        self,
        request: ProvisioningRequest,
        account: TenantAccount,
        existing: CredentialRecord | None,
        resolved: ResolvedTenant,
        created: bool,
    ) -> ProvisioningOutcome:
        started_at = self.clock()
        placeholder = f"{PENDING_PREFIX}{uuid.uuid4()}"
        in_progress = self.store.save_credential_record(CredentialRecord(
            tenant_account_id=account.id,
            tenant_identifier=resolved.tenant_identifier,
            application_id=placeholder,
            client_id=placeholder,
            service_principal_id=placeholder,
            secret_location=None,
            provisioning_state=Provisioning(started_at=started_at),
            redirect_uri=self.settings.consent_redirect_uri,
            authority_hint=resolved.authority_hint,
            version=existing.version if existing else 0,
            updated_at=started_at,
        ))

        try:
            record = await self._issue_credentials(request, account, in_progress, resolved)
        except asyncio.CancelledError:
            # The store write is synchronous, so it completes before the
            # cancellation propagates
            logger.warning(f"Provisioning for tenant {resolved.tenant_identifier} was cancelled")
            self._record_failure(in_progress, ProvisioningInterrupted(
                f"Provisioning for tenant {resolved.tenant_identifier} was interrupted before it finished",
            ))
            raise
        except Exception as e:
            error = _as_platform_error(e)
            logger.error(
                f"Provisioning failed for tenant {resolved.tenant_identifier}: {error.message}",
                exc_info=not isinstance(e, AssessmentPlatformError),
            )
            record = self._record_failure(in_progress, error)
            return ProvisioningOutcome(account=account, record=record, created=created, error=error)

        account = self.store.update_tenant_status(
            account.id, account.status, authority_hint=record.authority_hint
        ) or account
        logger.info(
            f"Tenant {resolved.tenant_identifier} provisioned with application {record.client_id} "
            f"({len(record.granted_permissions)} permissions)"
        )
        return ProvisioningOutcome(account=account, record=record, created=created)

    def _record_failure(
        self, in_progress: CredentialRecord, error: AssessmentPlatformError
    ) -> CredentialRecord:
        occurred_at = self.clock()
        return self.store.save_credential_record(replace(
            in_progress,
            application_id=ERROR_DURING_CREATION,
            client_id=ERROR_DURING_CREATION,
            service_principal_id=ERROR_DURING_CREATION,
            secret_location=ProvisioningErrorSecret(detail=error.message),
            provisioning_state=ProvisioningFailed(
                message=error.message,
                error_kind=error.kind,
                remediation=tuple(error.remediation) or (
                    "Review the error detail and retry provisioning",
                ),
                occurred_at=occurred_at,
            ),
            updated_at=occurred_at,
        ))

    async def _issue_credentials(
        self,
        request: ProvisioningRequest,
        account: TenantAccount,
        base: CredentialRecord,
        resolved: ResolvedTenant,
        granted: frozenset[str] = frozenset(),
    ) -> CredentialRecord:
        """Create the application, store its secret and write the Active record."""
        if not self.settings.is_configured:
            raise ConfigurationError(
                "Platform automation identity is not configured",
                cause="AZURE_TENANT_ID, AZURE_CLIENT_ID or AZURE_CLIENT_SECRET is missing",
            )

        composition = compose(frozenset(), granted, extra=BASELINE_PERMISSIONS)
        issued_at = self.clock()
        expires_at = self.custody.expiry_for(issued_at)

        application: DirectoryApplication = await self.directory.create_application_and_service_principal(
            resolved.tenant_identifier,
            app_display_name(self.settings.app_registration_prefix, request.tenant_name),
            composition.final_set,
            secret_expires_at=expires_at,
        )

        location = await self.custody.store(
            account.id,
            application.client_secret,
            tenant_identifier=resolved.tenant_identifier,
            issued_at=issued_at,
        )

        authority = finalize_authority(resolved, application.resolved_authority)
        redirect_uri = self.settings.consent_redirect_uri
        consent_url = build_consent_url(
            authority,
            application.client_id,
            redirect_uri,
            new_consent_state(account.id, resolved.tenant_identifier),
        )

        activated_at = self.clock()
        return self.store.save_credential_record(replace(
            base,
            application_id=application.application_id,
            client_id=application.client_id,
            service_principal_id=application.service_principal_id,
            secret_location=location,
            provisioning_state=Active(activated_at=activated_at),
            granted_permissions=composition.final_set,
            consent_url=consent_url,
            redirect_uri=redirect_uri,
            authority_hint=authority,
            secret_issued_at=issued_at,
            secret_expires_at=expires_at,
            updated_at=activated_at,
            last_error=None,
        ))

    async def _rotate(
        self,
        request: ProvisioningRequest,
        account: TenantAccount,
        existing: CredentialRecord,
        resolved: ResolvedTenant,
    ) -> ProvisioningOutcome:
        logger.info(f"Rotating credentials for active tenant {resolved.tenant_identifier}")
        try:
            record = await self._issue_credentials(
                request, account, existing, resolved, granted=existing.granted_permissions
            )
        except Exception as e:
            error = _as_platform_error(e)
            logger.error(
                f"Credential rotation failed for tenant {resolved.tenant_identifier}; "
                f"keeping current credentials: {error.message}",
                exc_info=not isinstance(e, AssessmentPlatformError),
            )
            occurred_at = self.clock()
            record = self.store.save_credential_record(replace(
                existing,
                last_error=_error_annotation(error, occurred_at),
                updated_at=occurred_at,
            ))
            return ProvisioningOutcome(
                account=account, record=record, created=False, rotated=False, error=error
            )

        return ProvisioningOutcome(account=account, record=record, created=False, rotated=True)

    # =========================================================================
    # Permissions
    # =========================================================================

    async def update_permissions(
        self,
        tenant_account_id: str,
        feature_groups: set[str] | frozenset[str] = frozenset(),
        extra: set[str] | frozenset[str] = frozenset(),
        replace_all: bool = False,
    ) -> PermissionUpdateOutcome:
        """Enable feature groups on a tenant's existing application.

        New permissions need fresh admin consent, so a new consent URL is
        issued whenever the composition adds anything.

        Raises:
            UnknownFeatureGroup: If a group key is not known
            UnknownPermission: If a permission has no mapped ID
            TenantNotFound: If the tenant account does not exist
            CredentialsNotReady: If the tenant has no Active application
        """
        # Validate names before any directory traffic
        compose(feature_groups, frozenset(), extra=extra, replace_all=replace_all)

        account = self.store.get_tenant_account(tenant_account_id)
        if account is None:
            raise TenantNotFound(f"Tenant account {tenant_account_id} not found")

        async with self.locks.hold(account.tenant_identifier):
            record = self.store.get_credential_record(account.id)
            if record is None or not record.is_active:
                raise CredentialsNotReady(
                    f"Tenant {account.tenant_identifier} has no active app registration"
                )

            current_ids = await self.directory.get_current_granted_permissions(record.client_id)
            current = permission_names_from_ids(current_ids)
            composition = compose(feature_groups, current, extra=extra, replace_all=replace_all)

            await self.directory.update_required_permissions(
                record.client_id, build_resource_access(composition.final_set)
            )

            consent_url = record.consent_url
            if composition.consent_required:
                consent_url = build_consent_url(
                    record.authority_hint or account.tenant_identifier,
                    record.client_id,
                    record.redirect_uri or self.settings.consent_redirect_uri,
                    new_consent_state(account.id, account.tenant_identifier),
                )

            record = self.store.save_credential_record(replace(
                record,
                granted_permissions=composition.final_set,
                consent_url=consent_url,
                updated_at=self.clock(),
            ))

        logger.info(
            f"Updated permissions for tenant {account.tenant_identifier}: "
            f"{len(composition.final_set)} total, {len(composition.newly_added)} new"
        )
        return PermissionUpdateOutcome(record=record, composition=composition)

    def analyze_features(self, tenant_account_id: str) -> FeatureAnalysis:
        record = self.store.get_credential_record(tenant_account_id)
        if record is None:
            if self.store.get_tenant_account(tenant_account_id) is None:
                raise TenantNotFound(f"Tenant account {tenant_account_id} not found")
            return analyze_enabled_features(frozenset())
        return analyze_enabled_features(record.granted_permissions)

    # =========================================================================
    # Consent and status
    # =========================================================================

    def record_consent(self, callback: ConsentCallbackResult) -> TenantAccount | None:
        """Apply an admin consent callback to the tenant account.

        Returns the updated account, the unchanged account when consent
        failed, or None when the callback carries no usable state or names
        a different directory than the account.
        """
        if callback.state is None:
            logger.warning("Consent callback without a usable state; nothing to record")
            return None

        account = self.store.get_tenant_account(callback.state.customer_id)
        if account is None:
            raise TenantNotFound(f"Tenant account {callback.state.customer_id} not found")

        if account.tenant_identifier != callback.state.tenant_identifier:
            logger.warning(
                f"Consent state for {callback.state.tenant_identifier} does not match "
                f"tenant account {account.id} ({account.tenant_identifier}); ignoring"
            )
            return None

        if not callback.success:
            logger.warning(
                f"Admin consent failed for tenant {account.tenant_identifier}: "
                f"{callback.error} {callback.error_description or ''}".rstrip()
            )
            return account

        expected = _directory_guid(account)
        if expected and callback.tenant and is_guid(callback.tenant) \
                and callback.tenant.lower() != expected:
            logger.warning(
                f"Consent callback for directory {callback.tenant} does not match "
                f"tenant account {account.id} ({expected}); ignoring"
            )
            return None

        logger.info(f"Admin consent granted for tenant {account.tenant_identifier}")
        return self.store.update_tenant_status(account.id, TenantStatus.ACTIVE) or account

    def get_credential_status(self, tenant_account_id: str) -> CredentialRecord:
        record = self.store.get_credential_record(tenant_account_id)
        if record is None:
            if self.store.get_tenant_account(tenant_account_id) is None:
                raise TenantNotFound(f"Tenant account {tenant_account_id} not found")
            raise CredentialsNotReady("No credentials have been provisioned for this tenant")
        return record
