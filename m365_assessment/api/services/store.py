"""SQLAlchemy-backed store for tenant accounts, credentials and assessments.

Lookups return ``None`` for absent rows and never raise for absence.
Credential writes carry the version the writer read; a mismatch raises
``StaleRecordError`` instead of overwriting a concurrent change.
"""

import logging
from datetime import UTC, datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from m365_assessment.core.assessments import (
    AssessmentResult,
    AssessmentStatus,
    category_result_from_dict,
    category_result_to_dict,
)
from m365_assessment.core.credentials import (
    Active,
    CredentialRecord,
    InlineSecret,
    ManualSetupSecret,
    PendingManualSetup,
    Provisioning,
    ProvisioningErrorSecret,
    ProvisioningFailed,
    ProvisioningState,
    SecretLocation,
    TenantAccount,
    TenantStatus,
    VaultedSecret,
    provisioning_state_name,
    secret_location_kind,
    unreachable,
)
from m365_assessment.core.database import SessionLocal, session_scope
from m365_assessment.core.exceptions import StaleRecordError, TenantConflict
from m365_assessment.models import AssessmentResultRow, CredentialRecordRow, TenantAccountRow

logger = logging.getLogger(__name__)


# =============================================================================
# Variant (de)serialization
# =============================================================================


def _naive(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def _aware(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _from_iso(value: str | None) -> datetime | None:
    return _aware(datetime.fromisoformat(value)) if value else None


def dump_secret_location(location: SecretLocation | None) -> tuple[str, dict]:
    kind = secret_location_kind(location)
    if location is None:
        return kind, {}
    if isinstance(location, InlineSecret):
        return kind, {"secretValue": location.secret_value}
    if isinstance(location, VaultedSecret):
        return kind, {"vaultReference": location.vault_reference}
    if isinstance(location, ManualSetupSecret):
        return kind, {"instructions": list(location.instructions)}
    if isinstance(location, ProvisioningErrorSecret):
        return kind, {"detail": location.detail}
    unreachable(location)


def load_secret_location(kind: str, payload: dict) -> SecretLocation | None:
    payload = payload or {}
    if kind == "NotIssued":
        return None
    if kind == "Inline":
        return InlineSecret(secret_value=payload["secretValue"])
    if kind == "Vaulted":
        return VaultedSecret(vault_reference=payload["vaultReference"])
    if kind == "RequiresManualSetup":
        return ManualSetupSecret(instructions=tuple(payload.get("instructions", ())))
    if kind == "ProvisioningError":
        return ProvisioningErrorSecret(detail=payload.get("detail", ""))
    raise ValueError(f"Unknown secret location kind: {kind}")


def dump_provisioning_state(state: ProvisioningState) -> tuple[str, dict]:
    kind = provisioning_state_name(state)
    if isinstance(state, PendingManualSetup):
        return kind, {"instructions": list(state.instructions)}
    if isinstance(state, Provisioning):
        return kind, {"startedAt": _iso(state.started_at)}
    if isinstance(state, Active):
        return kind, {"activatedAt": _iso(state.activated_at)}
    if isinstance(state, ProvisioningFailed):
        return kind, {
            "message": state.message,
            "errorKind": state.error_kind,
            "remediation": list(state.remediation),
            "occurredAt": _iso(state.occurred_at),
        }
    unreachable(state)


def load_provisioning_state(kind: str, payload: dict) -> ProvisioningState:
    payload = payload or {}
    if kind == "PendingManualSetup":
        return PendingManualSetup(instructions=tuple(payload.get("instructions", ())))
    if kind == "Provisioning":
        return Provisioning(started_at=_from_iso(payload.get("startedAt")))
    if kind == "Active":
        return Active(activated_at=_from_iso(payload.get("activatedAt")))
    if kind == "Error":
        return ProvisioningFailed(
            message=payload.get("message", ""),
            error_kind=payload.get("errorKind", ""),
            remediation=tuple(payload.get("remediation", ())),
            occurred_at=_from_iso(payload.get("occurredAt")),
        )
    raise ValueError(f"Unknown provisioning state: {kind}")


# =============================================================================
# Row mapping
# =============================================================================


def _tenant_from_row(row: TenantAccountRow) -> TenantAccount:
    return TenantAccount(
        id=row.id,
        tenant_identifier=row.tenant_identifier,
        display_name=row.display_name,
        domain=row.domain,
        contact_email=row.contact_email,
        notes=row.notes,
        status=TenantStatus(row.status),
        authority_hint=row.authority_hint,
        total_assessments=row.total_assessments or 0,
        last_assessment_date=_aware(row.last_assessment_date),
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


def _credential_from_row(row: CredentialRecordRow) -> CredentialRecord:
    return CredentialRecord(
        tenant_account_id=row.tenant_account_id,
        tenant_identifier=row.tenant_identifier,
        application_id=row.application_id,
        client_id=row.client_id,
        service_principal_id=row.service_principal_id,
        secret_location=load_secret_location(row.secret_kind, row.secret_payload),
        provisioning_state=load_provisioning_state(row.state_kind, row.state_payload),
        granted_permissions=frozenset(row.granted_permissions or []),
        consent_url=row.consent_url,
        redirect_uri=row.redirect_uri,
        authority_hint=row.authority_hint,
        secret_issued_at=_aware(row.secret_issued_at),
        secret_expires_at=_aware(row.secret_expires_at),
        version=row.version,
        updated_at=_aware(row.updated_at),
        last_error=row.last_error,
    )


def _credential_values(record: CredentialRecord) -> dict:
    secret_kind, secret_payload = dump_secret_location(record.secret_location)
    state_kind, state_payload = dump_provisioning_state(record.provisioning_state)
    return {
        "tenant_identifier": record.tenant_identifier,
        "application_id": record.application_id,
        "client_id": record.client_id,
        "service_principal_id": record.service_principal_id,
        "secret_kind": secret_kind,
        "secret_payload": secret_payload,
        "state_kind": state_kind,
        "state_payload": state_payload,
        "granted_permissions": sorted(record.granted_permissions),
        "consent_url": record.consent_url,
        "redirect_uri": record.redirect_uri,
        "authority_hint": record.authority_hint,
        "secret_issued_at": _naive(record.secret_issued_at),
        "secret_expires_at": _naive(record.secret_expires_at),
        "last_error": record.last_error,
    }


def _assessment_from_row(row: AssessmentResultRow) -> AssessmentResult:
    return AssessmentResult(
        id=row.id,
        tenant_account_id=row.tenant_account_id,
        tenant_identifier=row.tenant_identifier,
        requested_categories=frozenset(row.requested_categories),
        category_results={
            name: category_result_from_dict(data) for name, data in row.category_results.items()
        },
        overall_status=AssessmentStatus(row.overall_status),
        overall_score=row.overall_score,
        started_at=_aware(row.started_at),
        completed_at=_aware(row.completed_at),
        score_source=row.score_source,
        recommendations=list(row.recommendations or []),
    )


# =============================================================================
# Store
# =============================================================================


class SqlAlchemyStore:
    """Persistent store for the onboarding and assessment records."""

    def __init__(self, session_factory: sessionmaker = SessionLocal) -> None:
        self._session_factory = session_factory

    # ---- tenant accounts -------------------------------------------------

    def get_tenant_account(self, tenant_account_id: str) -> TenantAccount | None:
        with session_scope(self._session_factory) as db:
            row = db.get(TenantAccountRow, tenant_account_id)
            return _tenant_from_row(row) if row else None

    def find_tenant_account(self, tenant_identifier: str) -> TenantAccount | None:
        with session_scope(self._session_factory) as db:
            row = db.execute(
                select(TenantAccountRow).where(
                    TenantAccountRow.tenant_identifier == tenant_identifier
                )
            ).scalar_one_or_none()
            return _tenant_from_row(row) if row else None

    def create_tenant_account(self, account: TenantAccount) -> TenantAccount:
        try:
            with session_scope(self._session_factory) as db:
                row = TenantAccountRow(
                    id=account.id,
                    tenant_identifier=account.tenant_identifier,
                    display_name=account.display_name,
                    domain=account.domain,
                    contact_email=account.contact_email,
                    notes=account.notes,
                    status=account.status.value,
                    authority_hint=account.authority_hint,
                    total_assessments=account.total_assessments,
                )
                db.add(row)
                db.flush()
                return _tenant_from_row(row)
        except IntegrityError as e:
            raise TenantConflict(
                f"Tenant {account.tenant_identifier} is already onboarded",
                cause=str(e.orig),
            ) from e

    def update_tenant_status(
        self, tenant_account_id: str, status: TenantStatus, authority_hint: str | None = None
    ) -> TenantAccount | None:
        with session_scope(self._session_factory) as db:
            row = db.get(TenantAccountRow, tenant_account_id)
            if row is None:
                return None
            row.status = status.value
            if authority_hint is not None:
                row.authority_hint = authority_hint
            db.flush()
            return _tenant_from_row(row)

    def record_assessment_completed(
        self, tenant_account_id: str, completed_at: datetime
    ) -> TenantAccount | None:
        with session_scope(self._session_factory) as db:
            db.execute(
                update(TenantAccountRow)
                .where(TenantAccountRow.id == tenant_account_id)
                .values(
                    total_assessments=TenantAccountRow.total_assessments + 1,
                    last_assessment_date=_naive(completed_at),
                )
            )
            row = db.get(TenantAccountRow, tenant_account_id)
            return _tenant_from_row(row) if row else None

    # ---- credential records ----------------------------------------------

    def get_credential_record(self, tenant_account_id: str) -> CredentialRecord | None:
        with session_scope(self._session_factory) as db:
            row = db.get(CredentialRecordRow, tenant_account_id)
            return _credential_from_row(row) if row else None

    def save_credential_record(self, record: CredentialRecord) -> CredentialRecord:
        """Insert or replace the current credential record.

        ``record.version`` must equal the stored version (0 for a first
        write). The returned record carries the new version.
        """
        values = _credential_values(record)
        with session_scope(self._session_factory) as db:
            if record.version == 0:
                if db.get(CredentialRecordRow, record.tenant_account_id) is not None:
                    raise StaleRecordError(
                        f"Credential record for {record.tenant_identifier} already exists"
                    )
                row = CredentialRecordRow(
                    tenant_account_id=record.tenant_account_id, version=1, **values
                )
                db.add(row)
            else:
                result = db.execute(
                    update(CredentialRecordRow)
                    .where(
                        CredentialRecordRow.tenant_account_id == record.tenant_account_id,
                        CredentialRecordRow.version == record.version,
                    )
                    .values(version=record.version + 1, **values)
                )
                if result.rowcount != 1:
                    raise StaleRecordError(
                        f"Credential record for {record.tenant_identifier} changed concurrently"
                    )
            db.flush()
            row = db.get(CredentialRecordRow, record.tenant_account_id)
            db.refresh(row)
            logger.debug(
                f"Saved credential record for {record.tenant_identifier} "
                f"(state={row.state_kind}, version={row.version})"
            )
            return _credential_from_row(row)

    # ---- assessment results ----------------------------------------------

    def save_assessment_result(self, result: AssessmentResult) -> AssessmentResult:
        with session_scope(self._session_factory) as db:
            db.add(AssessmentResultRow(
                id=result.id,
                tenant_account_id=result.tenant_account_id,
                tenant_identifier=result.tenant_identifier,
                requested_categories=sorted(result.requested_categories),
                category_results={
                    name: category_result_to_dict(value)
                    for name, value in result.category_results.items()
                },
                overall_status=result.overall_status.value,
                overall_score=result.overall_score,
                score_source=result.score_source,
                recommendations=list(result.recommendations),
                started_at=_naive(result.started_at),
                completed_at=_naive(result.completed_at),
            ))
        return result

    def get_assessment_result(self, assessment_id: str) -> AssessmentResult | None:
        with session_scope(self._session_factory) as db:
            row = db.get(AssessmentResultRow, assessment_id)
            return _assessment_from_row(row) if row else None

    def list_assessment_results(self, tenant_account_id: str) -> list[AssessmentResult]:
        with session_scope(self._session_factory) as db:
            rows = db.execute(
                select(AssessmentResultRow)
                .where(AssessmentResultRow.tenant_account_id == tenant_account_id)
                .order_by(AssessmentResultRow.completed_at.desc())
            ).scalars().all()
            return [_assessment_from_row(row) for row in rows]
