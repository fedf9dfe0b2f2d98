"""
school_progression/orm/evidence_requirement.py
EvidenceRequirement - ordered criteria a stage's evidence must satisfy
"""
from enum import Enum

from sqlalchemy import Column, String, Integer, DateTime, JSON, Index

from school_progression.orm.base import Base, new_uuid, utcnow, enum_column_type


class ProgramStage(str, Enum):
    """Curriculum stages, in the order a school works through them"""
    INSPIRE = "inspire"
    INVESTIGATE = "investigate"
    ACT = "act"


STAGE_ORDER = (ProgramStage.INSPIRE, ProgramStage.INVESTIGATE, ProgramStage.ACT)


class EvidenceRequirement(Base):
    """
    One requirement inside a stage.

    Only the fields progression needs are modelled here; titles,
    translations and resource links belong to the administration UI.
    resource_refs is an opaque list of resource identifiers.
    """
    __tablename__ = "evidence_requirements"

    id = Column(String(36), primary_key=True, default=new_uuid)
    stage = Column(enum_column_type(ProgramStage, "program_stage"), nullable=False)
    order_index = Column(Integer, nullable=False, default=0)
    resource_refs = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index('idx_evidence_requirements_stage_order', 'stage', 'order_index'),
    )

    def __repr__(self):
        return f"<EvidenceRequirement(id={self.id}, stage={self.stage}, order={self.order_index})>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "stage": self.stage.value if self.stage else None,
            "order_index": self.order_index,
            "resource_refs": list(self.resource_refs or []),
        }
