"""
school_progression/orm/evidence_override.py
AdminEvidenceOverride - admin exemption standing in for evidence
"""
from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Index, UniqueConstraint

from school_progression.orm.base import Base, new_uuid, utcnow, enum_column_type
from school_progression.orm.evidence_requirement import ProgramStage


class AdminEvidenceOverride(Base):
    """
    Marks one requirement satisfied for one school in one round.

    Rows are only ever inserted or deleted by the toggle; the unique
    constraint on (school, requirement, round) is what keeps concurrent
    toggles from producing duplicates.
    """
    __tablename__ = "admin_evidence_overrides"

    id = Column(String(36), primary_key=True, default=new_uuid)
    school_id = Column(
        String(36),
        ForeignKey("schools.id", ondelete="CASCADE"),
        nullable=False
    )
    requirement_id = Column(
        String(36),
        ForeignKey("evidence_requirements.id", ondelete="CASCADE"),
        nullable=False
    )
    round_number = Column(Integer, nullable=False)

    # Denormalized from the requirement for per-stage queries
    stage = Column(enum_column_type(ProgramStage, "override_stage"), nullable=False)
    marked_by = Column(String(36), nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint('school_id', 'requirement_id', 'round_number', name='uq_override_school_requirement_round'),
        Index('idx_overrides_school_round', 'school_id', 'round_number'),
    )

    def __repr__(self):
        return (
            f"<AdminEvidenceOverride(school={self.school_id}, requirement={self.requirement_id}, "
            f"round={self.round_number})>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "school_id": self.school_id,
            "requirement_id": self.requirement_id,
            "round_number": self.round_number,
            "stage": self.stage.value if self.stage else None,
            "marked_by": self.marked_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
