"""
Bulk Operation Tests

Bulk review recomputes once per distinct (school, round), on the fully
applied state, and reports per-item failures without aborting.
"""
import pytest
from sqlalchemy import select

from school_progression.orm.evidence import Evidence, EvidenceStatus
from school_progression.orm.evidence_requirement import ProgramStage
from school_progression.orm.school_progression import SchoolProgression
from school_progression.services import evidence_ledger


@pytest.mark.asyncio
class TestBulkReview:

    async def test_ten_items_three_schools_three_recomputations(self, db, make_school, make_requirement, coordinator):
        requirements = [await make_requirement(ProgramStage.ACT, index) for index in range(4)]
        schools = [await make_school(f"School {n}") for n in range(3)]

        evidence_ids = []
        for school, count in zip(schools, (4, 3, 3)):
            for index in range(count):
                evidence = await evidence_ledger.submit_evidence(
                    db, school.id, "teacher-1", ProgramStage.ACT, 1, f"Item {index}",
                    requirement_id=requirements[index].id,
                )
                evidence_ids.append(evidence.id)
        assert len(evidence_ids) == 10
        before = coordinator.recompute_count

        result = await evidence_ledger.bulk_review(db, evidence_ids, EvidenceStatus.APPROVED, "reviewer-1")

        assert coordinator.recompute_count - before == 3
        assert len(result.success) == 10
        assert result.failed == []
        assert sorted(result.recomputed) == sorted(f"{school.id}:1" for school in schools)

        records = {
            record.school_id: record
            for record in (await db.execute(
                select(SchoolProgression).execution_options(populate_existing=True)
            )).scalars().all()
        }
        assert records[schools[0].id].act_completed is True
        assert records[schools[0].id].award_completed is True
        assert records[schools[1].id].act_completed is False
        assert records[schools[2].id].act_completed is False

    async def test_failures_do_not_abort_batch(self, db, school, inspire_requirements, coordinator):
        req_a, req_b = inspire_requirements
        approved = await evidence_ledger.submit_evidence(
            db, school.id, "admin-1", ProgramStage.INSPIRE, 1, "Done", requirement_id=req_a.id,
            submitted_by_admin=True,
        )
        pending = await evidence_ledger.submit_evidence(
            db, school.id, "teacher-1", ProgramStage.INSPIRE, 1, "New", requirement_id=req_b.id,
        )

        result = await evidence_ledger.bulk_review(
            db, [approved.id, pending.id, "missing"], EvidenceStatus.APPROVED, "reviewer-1"
        )

        assert result.success == [pending.id]
        assert {item.id for item in result.failed} == {approved.id, "missing"}
        assert result.message == "1 successful, 2 failed."
        record = await db.get(SchoolProgression, school.id, populate_existing=True)
        assert record.award_completed is True

    async def test_bulk_rejection_of_pending_does_not_recompute(self, db, school, inspire_requirements, coordinator):
        first = await evidence_ledger.submit_evidence(
            db, school.id, "teacher-1", ProgramStage.INSPIRE, 1, "A", requirement_id=inspire_requirements[0].id,
        )
        second = await evidence_ledger.submit_evidence(
            db, school.id, "teacher-1", ProgramStage.INSPIRE, 1, "B", requirement_id=inspire_requirements[1].id,
        )

        result = await evidence_ledger.bulk_review(
            db, [first.id, second.id], EvidenceStatus.REJECTED, "reviewer-1", notes="Blurry photos"
        )

        assert len(result.success) == 2
        assert result.recomputed == []
        assert coordinator.recompute_count == 0

    async def test_rounds_recomputed_separately(self, db, make_school, make_requirement, coordinator):
        requirement = await make_requirement(ProgramStage.ACT)
        school = await make_school(current_round=2)
        old = await evidence_ledger.submit_evidence(
            db, school.id, "teacher-1", ProgramStage.ACT, 1, "Round 1 leftover", requirement_id=requirement.id,
        )
        new = await evidence_ledger.submit_evidence(
            db, school.id, "teacher-1", ProgramStage.ACT, 2, "Round 2", requirement_id=requirement.id,
        )

        result = await evidence_ledger.bulk_review(db, [old.id, new.id], EvidenceStatus.APPROVED, "reviewer-1")

        assert sorted(result.recomputed) == [f"{school.id}:1", f"{school.id}:2"]
        record = await db.get(SchoolProgression, school.id, populate_existing=True)
        assert record.current_round == 2
        assert record.act_completed is True

    async def test_duplicate_ids_processed_once(self, db, school, inspire_requirements, coordinator):
        evidence = await evidence_ledger.submit_evidence(
            db, school.id, "teacher-1", ProgramStage.INSPIRE, 1, "A", requirement_id=inspire_requirements[0].id,
        )

        result = await evidence_ledger.bulk_review(
            db, [evidence.id, evidence.id], EvidenceStatus.APPROVED, "reviewer-1"
        )

        assert result.success == [evidence.id]
        assert result.failed == []


@pytest.mark.asyncio
class TestBulkDelete:

    async def test_only_pending_deleted(self, db, school, coordinator):
        pending = await evidence_ledger.submit_evidence(db, school.id, "teacher-1", ProgramStage.ACT, 1, "Draft")
        approved = await evidence_ledger.submit_evidence(
            db, school.id, "admin-1", ProgramStage.ACT, 1, "Final", submitted_by_admin=True,
        )
        before = coordinator.recompute_count

        result = await evidence_ledger.bulk_delete(db, [pending.id, approved.id, "missing"])

        assert result.success == [pending.id]
        assert {item.id for item in result.failed} == {approved.id, "missing"}
        assert coordinator.recompute_count == before
        remaining = (await db.execute(select(Evidence.id))).scalars().all()
        assert remaining == [approved.id]
