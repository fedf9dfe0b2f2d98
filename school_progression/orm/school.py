"""
school_progression/orm/school.py
School - the unit of progression; owns the round counter
"""
from sqlalchemy import Column, String, Integer, DateTime, CheckConstraint

from school_progression.orm.base import Base, new_uuid, utcnow


class School(Base):
    """
    A participating school.

    current_round is external domain state: round advancement writes it,
    the progression engine only reads it.
    """
    __tablename__ = "schools"

    id = Column(String(36), primary_key=True, default=new_uuid)
    name = Column(String(255), nullable=False)
    country = Column(String(100), nullable=True)
    current_round = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("current_round >= 1", name="ck_school_round_positive"),
    )

    def __repr__(self):
        return f"<School(id={self.id}, name={self.name}, round={self.current_round})>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "country": self.country,
            "current_round": self.current_round,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
