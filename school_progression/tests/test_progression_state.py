"""
Unit Tests for Progression State Machine
"""
import pytest

from school_progression.orm.evidence import EvidenceStatus
from school_progression.orm.evidence_requirement import ProgramStage
from school_progression.state_machines.progression_state import (
    EvidenceReviewStateMachine,
    derive_current_stage,
    rounds_completed_for,
)


class TestReviewTransitions:

    @pytest.mark.parametrize("to_status", [EvidenceStatus.APPROVED, EvidenceStatus.REJECTED])
    def test_pending_can_be_decided(self, to_status):
        assert EvidenceReviewStateMachine.can_review(EvidenceStatus.PENDING, to_status)

    @pytest.mark.parametrize("from_status", [EvidenceStatus.APPROVED, EvidenceStatus.REJECTED])
    def test_decided_evidence_cannot_be_reviewed(self, from_status):
        for to_status in EvidenceStatus:
            assert not EvidenceReviewStateMachine.can_review(from_status, to_status)

    def test_pending_to_pending_is_not_a_review(self):
        assert not EvidenceReviewStateMachine.can_review(EvidenceStatus.PENDING, EvidenceStatus.PENDING)

    def test_admin_can_move_between_any_statuses(self):
        for from_status in EvidenceStatus:
            for to_status in EvidenceStatus:
                if from_status != to_status:
                    assert EvidenceReviewStateMachine.can_admin_edit(from_status, to_status)

    def test_affects_progression_only_across_approved(self):
        affects = EvidenceReviewStateMachine.affects_progression
        assert affects(EvidenceStatus.PENDING, EvidenceStatus.APPROVED)
        assert affects(EvidenceStatus.APPROVED, EvidenceStatus.REJECTED)
        assert affects(EvidenceStatus.APPROVED, EvidenceStatus.PENDING)
        assert not affects(EvidenceStatus.PENDING, EvidenceStatus.REJECTED)
        assert not affects(EvidenceStatus.REJECTED, EvidenceStatus.PENDING)


class TestStageOrdering:

    def test_first_incomplete_stage(self):
        completed = {ProgramStage.INSPIRE: True, ProgramStage.INVESTIGATE: False, ProgramStage.ACT: True}
        assert derive_current_stage(completed) == ProgramStage.INVESTIGATE

    def test_all_complete_stays_on_act(self):
        assert derive_current_stage({stage: True for stage in ProgramStage}) == ProgramStage.ACT

    @pytest.mark.parametrize("current_round,award,expected", [
        (1, False, 0),
        (1, True, 1),
        (2, False, 1),
        (4, True, 4),
    ])
    def test_rounds_completed(self, current_round, award, expected):
        assert rounds_completed_for(current_round, award) == expected
