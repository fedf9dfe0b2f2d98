"""
school_progression/services/progression_calculator.py
Progression Calculator

Derives stage completion, award status and progress percentage for one
school in one round. Pure functions over plain inputs: no database, no
clock, no side effects. Identical inputs always give identical output.

Rules:
- A requirement is satisfied by one approved evidence item in the round
  or by an admin override for the round. Extra evidence changes nothing.
- A stage is complete when all of its requirements are satisfied. A stage
  without requirements is complete.
- The award needs all three stages complete in the same round.
- Progress is 0, 33, 67 or 100: one third per complete stage.
"""
from dataclasses import dataclass, field
from typing import AbstractSet, Dict, Mapping, Optional, Sequence, Tuple

from school_progression.orm.evidence_requirement import ProgramStage, STAGE_ORDER
from school_progression.state_machines.progression_state import (
    derive_current_stage,
    rounds_completed_for,
)


@dataclass(frozen=True)
class StageResult:
    """Completion of a single stage in a single round."""
    stage: ProgramStage
    round_number: int
    complete: bool
    requirement_ids: Tuple[str, ...] = ()
    satisfied_ids: Tuple[str, ...] = ()
    missing_ids: Tuple[str, ...] = ()
    override_ids: Tuple[str, ...] = ()
    vacuous: bool = False

    @property
    def satisfied_count(self) -> int:
        return len(self.satisfied_ids)

    @property
    def required_count(self) -> int:
        return len(self.requirement_ids)

    def to_dict(self) -> dict:
        return {
            "stage": self.stage.value,
            "round_number": self.round_number,
            "complete": self.complete,
            "required": self.required_count,
            "satisfied": self.satisfied_count,
            "missing_requirement_ids": list(self.missing_ids),
            "override_requirement_ids": list(self.override_ids),
            "vacuous": self.vacuous,
        }


@dataclass(frozen=True)
class ProgressionResult:
    """Everything the coordinator persists for a school's round."""
    round_number: int
    stages: Tuple[StageResult, ...] = field(default_factory=tuple)
    award_completed: bool = False
    progress_percentage: int = 0
    current_stage: ProgramStage = ProgramStage.INSPIRE
    rounds_completed: int = 0

    def stage(self, stage: ProgramStage) -> StageResult:
        for result in self.stages:
            if result.stage == stage:
                return result
        raise KeyError(stage)

    @property
    def completed(self) -> Dict[ProgramStage, bool]:
        return {result.stage: result.complete for result in self.stages}

    @property
    def inspire_completed(self) -> bool:
        return self.stage(ProgramStage.INSPIRE).complete

    @property
    def investigate_completed(self) -> bool:
        return self.stage(ProgramStage.INVESTIGATE).complete

    @property
    def act_completed(self) -> bool:
        return self.stage(ProgramStage.ACT).complete

    def to_dict(self) -> dict:
        return {
            "round_number": self.round_number,
            "current_stage": self.current_stage.value,
            "inspire_completed": self.inspire_completed,
            "investigate_completed": self.investigate_completed,
            "act_completed": self.act_completed,
            "award_completed": self.award_completed,
            "progress_percentage": self.progress_percentage,
            "rounds_completed": self.rounds_completed,
            "stages": [result.to_dict() for result in self.stages],
        }


def is_requirement_satisfied(
    requirement_id: str,
    approved_counts: Mapping[str, int],
    override_ids: AbstractSet[str]
) -> bool:
    return approved_counts.get(requirement_id, 0) >= 1 or requirement_id in override_ids


def progress_percentage(complete_stages: int) -> int:
    complete_stages = max(0, min(len(STAGE_ORDER), complete_stages))
    return int(round(100 * complete_stages / len(STAGE_ORDER)))


def calculate_stage(
    stage: ProgramStage,
    round_number: int,
    requirement_ids: Sequence[str],
    approved_counts: Mapping[str, int],
    override_ids: AbstractSet[str],
    has_approved: bool = False,
    require_evidence_for_empty: bool = False
) -> StageResult:
    """
    Evaluate one stage.

    requirement_ids keeps catalog order so missing_ids reads in the order
    a school would work through them.
    """
    requirement_ids = tuple(requirement_ids)

    if not requirement_ids:
        complete = has_approved if require_evidence_for_empty else True
        return StageResult(
            stage=stage,
            round_number=round_number,
            complete=complete,
            vacuous=True,
        )

    satisfied = []
    missing = []
    via_override = []
    for requirement_id in requirement_ids:
        if is_requirement_satisfied(requirement_id, approved_counts, override_ids):
            satisfied.append(requirement_id)
            if requirement_id in override_ids:
                via_override.append(requirement_id)
        else:
            missing.append(requirement_id)

    return StageResult(
        stage=stage,
        round_number=round_number,
        complete=not missing,
        requirement_ids=requirement_ids,
        satisfied_ids=tuple(satisfied),
        missing_ids=tuple(missing),
        override_ids=tuple(via_override),
    )


def calculate_progression(
    round_number: int,
    requirements: Mapping[ProgramStage, Sequence[str]],
    approved_counts: Mapping[ProgramStage, Mapping[str, int]],
    override_ids: AbstractSet[str],
    has_approved: Optional[Mapping[ProgramStage, bool]] = None,
    require_evidence_for_empty: bool = False
) -> ProgressionResult:
    """
    Evaluate all three stages for one round.

    Args:
        round_number: The school's current round
        requirements: Requirement ids per stage, in catalog order
        approved_counts: Per stage, approved evidence count per requirement id
            (only evidence stamped with round_number)
        override_ids: Requirement ids overridden for round_number
        has_approved: Per stage, whether any approved evidence exists in the
            round; only consulted for stages without requirements
        require_evidence_for_empty: Treat requirement-less stages as needing
            one approved item instead of being vacuously complete

    Returns:
        ProgressionResult for the round
    """
    has_approved = has_approved or {}

    stages = tuple(
        calculate_stage(
            stage=stage,
            round_number=round_number,
            requirement_ids=requirements.get(stage, ()),
            approved_counts=approved_counts.get(stage, {}),
            override_ids=override_ids,
            has_approved=has_approved.get(stage, False),
            require_evidence_for_empty=require_evidence_for_empty,
        )
        for stage in STAGE_ORDER
    )

    completed = {result.stage: result.complete for result in stages}
    complete_count = sum(1 for done in completed.values() if done)
    award_completed = complete_count == len(STAGE_ORDER)

    return ProgressionResult(
        round_number=round_number,
        stages=stages,
        award_completed=award_completed,
        progress_percentage=progress_percentage(complete_count),
        current_stage=derive_current_stage(completed),
        rounds_completed=rounds_completed_for(round_number, award_completed),
    )
