"""Tenant account model."""

from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, relationship

from m365_assessment.core.database import Base
from m365_assessment.models.base import utcnow


class TenantAccountRow(Base):
    """Onboarded customer tenant."""

    __tablename__ = "tenant_accounts"

    id: Mapped[str] = Column(String(36), primary_key=True)
    # Directory GUID or lower-cased domain; immutable once stored
    tenant_identifier: Mapped[str] = Column(String(255), unique=True, nullable=False, index=True)
    display_name: Mapped[str] = Column(String(255), nullable=False)
    domain: Mapped[str | None] = Column(String(255))
    contact_email: Mapped[str | None] = Column(String(320))
    notes: Mapped[str | None] = Column(Text)
    status: Mapped[str] = Column(String(20), default="pending", nullable=False)
    authority_hint: Mapped[str | None] = Column(String(255))
    total_assessments: Mapped[int] = Column(Integer, default=0, nullable=False)
    last_assessment_date: Mapped[datetime | None] = Column(DateTime)
    created_at: Mapped[datetime] = Column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = Column(DateTime, default=utcnow, onupdate=utcnow)

    credential: Mapped["CredentialRecordRow"] = relationship(
        "CredentialRecordRow", back_populates="tenant_account", uselist=False,
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<TenantAccount {self.display_name} ({self.tenant_identifier})>"
