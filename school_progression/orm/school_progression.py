"""
school_progression/orm/school_progression.py
SchoolProgression - cached progression state for a school's current round
"""
from sqlalchemy import Column, String, Integer, Boolean, DateTime, ForeignKey, CheckConstraint

from school_progression.orm.base import Base, utcnow, enum_column_type
from school_progression.orm.evidence_requirement import ProgramStage


class SchoolProgression(Base):
    """
    Derived progression record, 1:1 with School.

    Always re-derivable from evidence, requirements and overrides; the
    coordinator is the only writer.
    """
    __tablename__ = "school_progression"

    school_id = Column(
        String(36),
        ForeignKey("schools.id", ondelete="CASCADE"),
        primary_key=True
    )
    current_stage = Column(
        enum_column_type(ProgramStage, "progression_stage"),
        nullable=False,
        default=ProgramStage.INSPIRE
    )
    current_round = Column(Integer, nullable=False, default=1)

    inspire_completed = Column(Boolean, nullable=False, default=False)
    investigate_completed = Column(Boolean, nullable=False, default=False)
    act_completed = Column(Boolean, nullable=False, default=False)
    award_completed = Column(Boolean, nullable=False, default=False)

    progress_percentage = Column(Integer, nullable=False, default=0)
    rounds_completed = Column(Integer, nullable=False, default=0)

    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "progress_percentage >= 0 AND progress_percentage <= 100",
            name="ck_progression_percentage_range"
        ),
    )

    def stage_completed(self, stage: ProgramStage) -> bool:
        return bool(getattr(self, f"{stage.value}_completed"))

    def __repr__(self):
        return (
            f"<SchoolProgression(school={self.school_id}, round={self.current_round}, "
            f"stage={self.current_stage}, progress={self.progress_percentage})>"
        )

    def to_dict(self) -> dict:
        return {
            "school_id": self.school_id,
            "current_stage": self.current_stage.value if self.current_stage else None,
            "current_round": self.current_round,
            "inspire_completed": self.inspire_completed,
            "investigate_completed": self.investigate_completed,
            "act_completed": self.act_completed,
            "award_completed": self.award_completed,
            "progress_percentage": self.progress_percentage,
            "rounds_completed": self.rounds_completed,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
