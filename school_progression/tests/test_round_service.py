"""
Round Advancement and Audit Tests

- Worked example: two inspire requirements through award and into round 2
- Round isolation of approved evidence
- Advancement refused before the award
- Audit classification and repair
"""
import pytest
from sqlalchemy import select

from school_progression.exceptions import RoundNotComplete
from school_progression.orm.evidence import EvidenceStatus
from school_progression.orm.evidence_requirement import ProgramStage
from school_progression.orm.school import School
from school_progression.orm.school_progression import SchoolProgression
from school_progression.services import evidence_ledger, override_registry, round_service
from school_progression.services.round_service import (
    STATUS_EXCESSIVE_PROGRESS,
    STATUS_LOGICAL,
    STATUS_ROUND_MISMATCH,
    audit_school,
)


async def _progression(db, school_id):
    return await db.get(SchoolProgression, school_id, populate_existing=True)


async def _award_round_one(db, school, inspire_requirements):
    req_a, req_b = inspire_requirements
    first = await evidence_ledger.submit_evidence(
        db, school.id, "teacher-1", ProgramStage.INSPIRE, 1, "Requirement A", requirement_id=req_a.id,
    )
    second = await evidence_ledger.submit_evidence(
        db, school.id, "teacher-1", ProgramStage.INSPIRE, 1, "Requirement B", requirement_id=req_b.id,
    )
    await evidence_ledger.review_evidence(db, first.id, EvidenceStatus.APPROVED, "reviewer-1")
    await evidence_ledger.review_evidence(db, second.id, EvidenceStatus.APPROVED, "reviewer-1")


@pytest.mark.asyncio
class TestWorkedExamples:

    async def test_first_approval_leaves_inspire_incomplete(self, db, school, inspire_requirements, coordinator):
        req_a, _ = inspire_requirements
        evidence = await evidence_ledger.submit_evidence(
            db, school.id, "teacher-1", ProgramStage.INSPIRE, 1, "Requirement A", requirement_id=req_a.id,
        )

        await evidence_ledger.review_evidence(db, evidence.id, EvidenceStatus.APPROVED, "reviewer-1")

        record = await _progression(db, school.id)
        assert record.inspire_completed is False
        assert record.award_completed is False

    async def test_second_approval_awards_round(self, db, school, inspire_requirements, coordinator):
        await _award_round_one(db, school, inspire_requirements)

        record = await _progression(db, school.id)
        assert record.inspire_completed is True
        assert record.investigate_completed is True
        assert record.act_completed is True
        assert record.award_completed is True
        assert record.progress_percentage == 100
        assert record.rounds_completed == 1

    async def test_new_round_starts_incomplete(self, db, school, inspire_requirements, coordinator):
        await _award_round_one(db, school, inspire_requirements)

        outcome = await round_service.start_new_round(db, school.id)

        assert outcome.round_number == 2
        record = await _progression(db, school.id)
        assert record.current_round == 2
        assert record.inspire_completed is False
        assert record.award_completed is False
        assert record.current_stage == ProgramStage.INSPIRE
        assert record.rounds_completed == 1
        assert record.progress_percentage == 67

        # Round-1 evidence is still approved, it just does not count any more
        round_one = await evidence_ledger.list_school_evidence(db, school.id, round_number=1)
        assert all(e.status == EvidenceStatus.APPROVED for e in round_one)

    async def test_new_round_signals_vacuous_stages_again(self, db, school, inspire_requirements, coordinator, received_signals):
        await _award_round_one(db, school, inspire_requirements)
        received_signals.clear()

        await round_service.start_new_round(db, school.id)

        assert {(s.stage, s.round_number) for s in received_signals} == {
            (ProgramStage.INVESTIGATE, 2),
            (ProgramStage.ACT, 2),
        }

    async def test_override_in_round_two(self, db, school, inspire_requirements, coordinator):
        req_a, _ = inspire_requirements
        await _award_round_one(db, school, inspire_requirements)
        await round_service.start_new_round(db, school.id)

        await override_registry.toggle(db, school.id, req_a.id, 2, "admin-1")
        result = await coordinator.describe(db, school.id)
        assert req_a.id in result.stage(ProgramStage.INSPIRE).satisfied_ids

        await override_registry.toggle(db, school.id, req_a.id, 2, "admin-1")
        result = await coordinator.describe(db, school.id)
        assert req_a.id in result.stage(ProgramStage.INSPIRE).missing_ids

    async def test_cannot_advance_without_award(self, db, school, inspire_requirements, coordinator):
        school_id = school.id

        with pytest.raises(RoundNotComplete):
            await round_service.start_new_round(db, school_id)

        current_round = await db.scalar(select(School.current_round).where(School.id == school_id))
        assert current_round == 1


@pytest.mark.asyncio
class TestRoundAudit:

    async def test_consistent_school_is_logical(self, db, school, coordinator):
        await coordinator.recompute(db, school.id)

        audits, summary = await round_service.audit_all(db)

        assert [a.status for a in audits] == [STATUS_LOGICAL]
        assert summary.logical_schools == 1
        assert summary.by_round[1]["avg_progress"] == 100

    async def test_missing_and_stale_records_flagged(self, db, make_school, inspire_requirements, coordinator):
        never_computed = await make_school("Never computed")
        advanced = await make_school("Advanced by hand")
        await coordinator.recompute(db, advanced.id)

        # Round moved without going through start_new_round
        school_row = await db.get(School, advanced.id)
        school_row.current_round = 2
        await db.commit()

        audits, summary = await round_service.audit_all(db)

        by_id = {a.school_id: a for a in audits}
        assert by_id[never_computed.id].status == STATUS_ROUND_MISMATCH
        assert by_id[advanced.id].status == STATUS_ROUND_MISMATCH
        assert summary.illogical_schools == 2
        assert summary.by_issue_type[STATUS_ROUND_MISMATCH] == 2

    async def test_repair_recomputes_flagged_schools(self, db, make_school, inspire_requirements, coordinator):
        school = await make_school(current_round=2)

        dry = await round_service.repair_all(db, dry_run=True)
        assert dry["illogical"] == 1
        assert dry["fixed"] == []

        report = await round_service.repair_all(db)

        assert report["fixed"] == [school.id]
        record = await _progression(db, school.id)
        assert record.current_round == 2
        assert record.rounds_completed == 1
        audits, _ = await round_service.audit_all(db)
        assert all(a.status == STATUS_LOGICAL for a in audits)


class TestAuditClassification:

    def test_audit_flags_rounds_completed_drift(self):
        school = School(id="s-1", name="Drift", current_round=3)
        record = SchoolProgression(
            school_id="s-1", current_round=3, rounds_completed=5,
            award_completed=False, progress_percentage=0,
        )

        assert audit_school(school, record).status == STATUS_ROUND_MISMATCH

    def test_audit_flags_excessive_progress(self):
        school = School(id="s-1", name="Migrated", current_round=2)
        record = SchoolProgression(
            school_id="s-1", current_round=2, rounds_completed=1,
            award_completed=False, progress_percentage=153,
        )

        result = audit_school(school, record)
        assert result.status == STATUS_EXCESSIVE_PROGRESS
        assert "153" in result.issue
