"""
school_progression/orm/progression_signal.py
ProgressionSignalRecord - outbox of completion signals awaiting delivery
"""
from enum import Enum

from sqlalchemy import Column, String, Integer, DateTime, Text, ForeignKey, Index

from school_progression.orm.base import Base, new_uuid, utcnow, enum_column_type
from school_progression.orm.evidence_requirement import ProgramStage


class SignalType(str, Enum):
    STAGE_COMPLETED = "stage_completed"
    AWARD_COMPLETED = "award_completed"


class ProgressionSignalRecord(Base):
    """
    One signal written in the same transaction as the progression change.

    dispatched_at stays NULL until a publish succeeds, so a crash between
    commit and publish leaves the row behind for redelivery.
    """
    __tablename__ = "progression_signals"

    id = Column(String(36), primary_key=True, default=new_uuid)
    school_id = Column(
        String(36),
        ForeignKey("schools.id", ondelete="CASCADE"),
        nullable=False
    )
    signal_type = Column(enum_column_type(SignalType, "signal_type"), nullable=False)
    stage = Column(enum_column_type(ProgramStage, "signal_stage"), nullable=True)
    round_number = Column(Integer, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    dispatched_at = Column(DateTime, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    __table_args__ = (
        Index('idx_progression_signals_pending', 'dispatched_at', 'school_id'),
    )

    def __repr__(self):
        return (
            f"<ProgressionSignalRecord(type={self.signal_type}, school={self.school_id}, "
            f"stage={self.stage}, round={self.round_number})>"
        )
