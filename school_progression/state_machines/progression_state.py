"""
Progression State Machine
Evidence review transitions and curriculum stage ordering.
"""
from typing import Dict, List, Mapping, Optional

from school_progression.orm.evidence import EvidenceStatus
from school_progression.orm.evidence_requirement import ProgramStage, STAGE_ORDER


class EvidenceReviewStateMachine:
    """
    Transition rules for evidence status.

    Reviewers may only decide pending evidence. Admins editing evidence
    directly may move it between any two statuses.
    """

    # Valid review transitions: {current_status: [allowed_next_statuses]}
    REVIEW_TRANSITIONS: Dict[EvidenceStatus, List[EvidenceStatus]] = {
        EvidenceStatus.PENDING: [
            EvidenceStatus.APPROVED,
            EvidenceStatus.REJECTED
        ],
        EvidenceStatus.APPROVED: [],
        EvidenceStatus.REJECTED: []
    }

    ADMIN_TRANSITIONS: Dict[EvidenceStatus, List[EvidenceStatus]] = {
        EvidenceStatus.PENDING: [
            EvidenceStatus.APPROVED,
            EvidenceStatus.REJECTED
        ],
        EvidenceStatus.APPROVED: [
            EvidenceStatus.PENDING,
            EvidenceStatus.REJECTED
        ],
        EvidenceStatus.REJECTED: [
            EvidenceStatus.PENDING,
            EvidenceStatus.APPROVED
        ]
    }

    @classmethod
    def can_review(cls, from_status: EvidenceStatus, to_status: EvidenceStatus) -> bool:
        return to_status in cls.REVIEW_TRANSITIONS.get(from_status, [])

    @classmethod
    def can_admin_edit(cls, from_status: EvidenceStatus, to_status: EvidenceStatus) -> bool:
        return to_status in cls.ADMIN_TRANSITIONS.get(from_status, [])

    @staticmethod
    def affects_progression(from_status: Optional[EvidenceStatus], to_status: Optional[EvidenceStatus]) -> bool:
        """True when the change moves evidence into or out of APPROVED."""
        return (from_status == EvidenceStatus.APPROVED) != (to_status == EvidenceStatus.APPROVED)


def derive_current_stage(completed: Mapping[ProgramStage, bool]) -> ProgramStage:
    """First incomplete stage in curriculum order; ACT once every stage is done."""
    for stage in STAGE_ORDER:
        if not completed.get(stage, False):
            return stage
    return ProgramStage.ACT


def rounds_completed_for(current_round: int, award_completed: bool) -> int:
    """
    Completed rounds implied by the round counter.

    A school can only advance after an award, so every round before the
    current one was completed.
    """
    return max(0, current_round - 1) + (1 if award_completed else 0)
