"""Credential record model.

Secret location and provisioning state are stored as a kind column plus
a JSON payload for the variant's fields.
"""

from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, relationship

from m365_assessment.core.database import Base
from m365_assessment.models.base import utcnow


class CredentialRecordRow(Base):
    """Current app registration credentials for a tenant account (1:1)."""

    __tablename__ = "credential_records"

    tenant_account_id: Mapped[str] = Column(
        String(36), ForeignKey("tenant_accounts.id", ondelete="CASCADE"), primary_key=True
    )
    tenant_identifier: Mapped[str] = Column(String(255), nullable=False, index=True)
    application_id: Mapped[str] = Column(String(64), nullable=False)
    client_id: Mapped[str] = Column(String(64), nullable=False)
    service_principal_id: Mapped[str] = Column(String(64), nullable=False)

    secret_kind: Mapped[str] = Column(String(32), nullable=False)
    secret_payload: Mapped[dict] = Column(JSON, default=dict)
    state_kind: Mapped[str] = Column(String(32), nullable=False)
    state_payload: Mapped[dict] = Column(JSON, default=dict)

    granted_permissions: Mapped[list] = Column(JSON, default=list)
    consent_url: Mapped[str | None] = Column(Text)
    redirect_uri: Mapped[str | None] = Column(String(500))
    authority_hint: Mapped[str | None] = Column(String(255))
    secret_issued_at: Mapped[datetime | None] = Column(DateTime)
    secret_expires_at: Mapped[datetime | None] = Column(DateTime)

    last_error: Mapped[dict | None] = Column(JSON)

    version: Mapped[int] = Column(Integer, nullable=False, default=1)
    updated_at: Mapped[datetime] = Column(DateTime, default=utcnow, onupdate=utcnow)

    tenant_account: Mapped["TenantAccountRow"] = relationship(
        "TenantAccountRow", back_populates="credential"
    )

    def __repr__(self) -> str:
        return f"<CredentialRecord {self.tenant_identifier} state={self.state_kind}>"
