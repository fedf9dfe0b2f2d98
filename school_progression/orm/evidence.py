"""
school_progression/orm/evidence.py
Evidence - submissions a school makes toward stage requirements
"""
from enum import Enum

from sqlalchemy import Column, String, Integer, DateTime, Text, ForeignKey, Index, CheckConstraint

from school_progression.orm.base import Base, new_uuid, utcnow, enum_column_type
from school_progression.orm.evidence_requirement import ProgramStage


class EvidenceStatus(str, Enum):
    """Review status: PENDING → APPROVED | REJECTED"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class EvidenceVisibility(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"


class Evidence(Base):
    """
    One evidence submission.

    round_number is stamped by the intake from the school's round at
    submission time and never changes afterwards. Evidence from an earlier
    round stays approved but only counts toward its own round.
    """
    __tablename__ = "evidence"

    id = Column(String(36), primary_key=True, default=new_uuid)
    school_id = Column(
        String(36),
        ForeignKey("schools.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    submitted_by = Column(String(36), nullable=False)
    requirement_id = Column(
        String(36),
        ForeignKey("evidence_requirements.id", ondelete="RESTRICT"),
        nullable=True,
        index=True
    )

    stage = Column(enum_column_type(ProgramStage, "evidence_stage"), nullable=False)
    round_number = Column(Integer, nullable=False, default=1)
    status = Column(
        enum_column_type(EvidenceStatus, "evidence_status"),
        nullable=False,
        default=EvidenceStatus.PENDING
    )
    visibility = Column(
        enum_column_type(EvidenceVisibility, "evidence_visibility"),
        nullable=False,
        default=EvidenceVisibility.PRIVATE
    )

    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    # Review metadata
    reviewed_by = Column(String(36), nullable=True)
    reviewed_at = Column(DateTime, nullable=True)
    review_notes = Column(Text, nullable=True)

    submitted_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("round_number >= 1", name="ck_evidence_round_positive"),
        Index('idx_evidence_school_round_stage', 'school_id', 'round_number', 'stage', 'status'),
    )

    def __repr__(self):
        return (
            f"<Evidence(id={self.id}, school={self.school_id}, stage={self.stage}, "
            f"round={self.round_number}, status={self.status})>"
        )

    @property
    def is_approved(self) -> bool:
        return self.status == EvidenceStatus.APPROVED

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "school_id": self.school_id,
            "submitted_by": self.submitted_by,
            "requirement_id": self.requirement_id,
            "stage": self.stage.value if self.stage else None,
            "round_number": self.round_number,
            "status": self.status.value if self.status else None,
            "visibility": self.visibility.value if self.visibility else None,
            "title": self.title,
            "description": self.description,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
            "review_notes": self.review_notes,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
        }
