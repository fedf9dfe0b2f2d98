"""
school_progression/schemas/progression.py
Pydantic schemas for progression signals and operation results

Signals are consumed by certificate issuance and notification services:
{
    "signal_type": "stage_completed" | "award_completed",
    "school_id": str,
    "stage": str (stage_completed only),
    "round_number": int
}
"""
from typing import Optional, List, Literal, Union

from pydantic import BaseModel, Field

from school_progression.orm.evidence_requirement import ProgramStage


# ================= SIGNALS =================

class StageCompleted(BaseModel):
    """Emitted when a stage flips from incomplete to complete for a round."""
    signal_type: Literal["stage_completed"] = "stage_completed"
    school_id: str
    stage: ProgramStage
    round_number: int = Field(..., ge=1)
    signal_id: Optional[str] = Field(None, description="Outbox row id, stable across redeliveries")


class AwardCompleted(BaseModel):
    """Emitted when all three stages become complete for a round."""
    signal_type: Literal["award_completed"] = "award_completed"
    school_id: str
    round_number: int = Field(..., ge=1)
    signal_id: Optional[str] = Field(None, description="Outbox row id, stable across redeliveries")


ProgressionSignal = Union[StageCompleted, AwardCompleted]


# ================= RESULTS =================

class ToggleResult(BaseModel):
    created: bool
    school_id: str
    requirement_id: str
    round_number: int


class FailedItem(BaseModel):
    id: str
    reason: str


class BulkOperationResult(BaseModel):
    """
    Outcome of a bulk review or delete.

    Items that could not be processed are listed in failed; they never
    abort the rest of the batch.
    """
    success: List[str] = Field(default_factory=list)
    failed: List[FailedItem] = Field(default_factory=list)
    recomputed: List[str] = Field(
        default_factory=list,
        description="'<school_id>:<round>' pairs whose progression was recomputed"
    )

    @property
    def message(self) -> str:
        return f"{len(self.success)} successful, {len(self.failed)} failed."


class RecomputeOutcome(BaseModel):
    school_id: str
    round_number: int
    changed: bool
    signals: List[ProgressionSignal] = Field(default_factory=list)
    round_mismatch: bool = False
