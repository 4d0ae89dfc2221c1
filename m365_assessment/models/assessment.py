"""Assessment result model."""

from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped

from m365_assessment.core.database import Base
from m365_assessment.models.base import utcnow


class AssessmentResultRow(Base):
    """One assessment run; rows are never updated after insert."""

    __tablename__ = "assessment_results"

    id: Mapped[str] = Column(String(36), primary_key=True)
    tenant_account_id: Mapped[str] = Column(
        String(36), ForeignKey("tenant_accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    tenant_identifier: Mapped[str] = Column(String(255), nullable=False)
    requested_categories: Mapped[list] = Column(JSON, nullable=False)
    # {category: {"status": "success"|"unavailable", "payload"|"reason": ...}}
    category_results: Mapped[dict] = Column(JSON, nullable=False)
    overall_status: Mapped[str] = Column(String(32), nullable=False)
    overall_score: Mapped[int] = Column(Integer, nullable=False)
    score_source: Mapped[str | None] = Column(String(32))
    recommendations: Mapped[list] = Column(JSON, default=list)
    started_at: Mapped[datetime] = Column(DateTime, nullable=False)
    completed_at: Mapped[datetime] = Column(DateTime, default=utcnow)

    def __repr__(self) -> str:
        return f"<AssessmentResult {self.id} {self.overall_status} score={self.overall_score}>"
