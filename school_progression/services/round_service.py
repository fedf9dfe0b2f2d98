"""
school_progression/services/round_service.py
Round Advancement and Round Audit

Round advancement moves an awarded school into its next round and lets the
coordinator reset the progression record for it.

The audit looks for cached progression records that no longer agree with
the school's round counter (typically after imports or manual database
edits) and repairs them by recomputing from evidence.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from school_progression.exceptions import ProgressionException, RoundNotComplete, SchoolNotFound
from school_progression.orm.school import School
from school_progression.orm.school_progression import SchoolProgression
from school_progression.schemas.progression import RecomputeOutcome
from school_progression.state_machines.progression_state import rounds_completed_for

logger = logging.getLogger(__name__)

STATUS_LOGICAL = "logical"
STATUS_ROUND_MISMATCH = "round_mismatch"
STATUS_EXCESSIVE_PROGRESS = "excessive_progress"


# =============================================================================
# Round advancement
# =============================================================================

async def start_new_round(db: AsyncSession, school_id: str, coordinator=None) -> RecomputeOutcome:
    """
    Move an awarded school into its next round.

    Round-1 evidence stays approved but counts only toward round 1, so the
    new round starts with every stage that has requirements incomplete.

    Raises:
        SchoolNotFound: Unknown school
        RoundNotComplete: The current round's award is not completed
    """
    if coordinator is None:
        from school_progression.services.progression_coordinator import get_coordinator
        coordinator = get_coordinator()

    async with coordinator.transaction(db, [school_id]) as tx:
        # Settle the current round first so the award check sees fresh state
        current = await tx.recompute(school_id, trigger="round_check")

        record = await db.get(SchoolProgression, school_id)
        if record is None or not record.award_completed:
            raise RoundNotComplete(school_id, current.round_number)

        school = await db.get(School, school_id)
        if school is None:
            raise SchoolNotFound(school_id)
        school.current_round = current.round_number + 1
        await db.flush()

        outcome = await tx.recompute(school_id, school.current_round, trigger="round_advanced")

    logger.info(f"School {school_id} advanced to round {outcome.round_number}")
    return outcome


# =============================================================================
# Audit
# =============================================================================

@dataclass
class SchoolAuditResult:
    school_id: str
    name: str
    school_round: int
    record_round: Optional[int]
    rounds_completed: Optional[int]
    progress_percentage: Optional[int]
    status: str = STATUS_LOGICAL
    issue: Optional[str] = None

    @property
    def is_logical(self) -> bool:
        return self.status == STATUS_LOGICAL

    def to_dict(self) -> dict:
        return {
            "school_id": self.school_id,
            "name": self.name,
            "school_round": self.school_round,
            "record_round": self.record_round,
            "rounds_completed": self.rounds_completed,
            "progress_percentage": self.progress_percentage,
            "status": self.status,
            "issue": self.issue,
        }


@dataclass
class AuditSummary:
    total_schools: int = 0
    logical_schools: int = 0
    illogical_schools: int = 0
    by_issue_type: Dict[str, int] = field(default_factory=lambda: {
        STATUS_ROUND_MISMATCH: 0,
        STATUS_EXCESSIVE_PROGRESS: 0,
    })
    by_round: Dict[int, dict] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "total_schools": self.total_schools,
            "logical_schools": self.logical_schools,
            "illogical_schools": self.illogical_schools,
            "by_issue_type": dict(self.by_issue_type),
            "by_round": {round_number: dict(stats) for round_number, stats in sorted(self.by_round.items())},
        }


def audit_school(school: School, record: Optional[SchoolProgression]) -> SchoolAuditResult:
    """
    Classify one school's cached progression.

    - round_mismatch: no record, the record is for another round, or
      rounds_completed disagrees with the round counter
    - excessive_progress: percentage outside 0-100
    """
    result = SchoolAuditResult(
        school_id=school.id,
        name=school.name,
        school_round=school.current_round,
        record_round=record.current_round if record else None,
        rounds_completed=record.rounds_completed if record else None,
        progress_percentage=record.progress_percentage if record else None,
    )

    if record is None:
        result.status = STATUS_ROUND_MISMATCH
        result.issue = "No progression record"
        return result

    if record.current_round != school.current_round:
        result.status = STATUS_ROUND_MISMATCH
        result.issue = (
            f"Round mismatch: school is in round {school.current_round} "
            f"but progression is for round {record.current_round}"
        )
        return result

    expected_completed = rounds_completed_for(school.current_round, record.award_completed)
    if record.rounds_completed != expected_completed:
        result.status = STATUS_ROUND_MISMATCH
        result.issue = (
            f"Round mismatch: rounds_completed={record.rounds_completed} "
            f"(expected {expected_completed} in round {school.current_round})"
        )
        return result

    if record.progress_percentage > 100 or record.progress_percentage < 0:
        result.status = STATUS_EXCESSIVE_PROGRESS
        result.issue = f"Progress {record.progress_percentage}% in round {school.current_round} (should be 0-100%)"
        return result

    return result


async def audit_all(db: AsyncSession):
    """
    Audit every school.

    Returns:
        (list of SchoolAuditResult, AuditSummary)
    """
    result = await db.execute(
        select(School, SchoolProgression)
        .outerjoin(SchoolProgression, SchoolProgression.school_id == School.id)
        .order_by(School.id)
    )
    rows = result.all()
    logger.info(f"Auditing {len(rows)} schools")

    audits: List[SchoolAuditResult] = []
    summary = AuditSummary(total_schools=len(rows))

    for school, record in rows:
        audit = audit_school(school, record)
        audits.append(audit)

        stats = summary.by_round.setdefault(
            school.current_round,
            {"total": 0, "logical": 0, "illogical": 0, "avg_progress": 0.0},
        )
        stats["total"] += 1
        stats["avg_progress"] += record.progress_percentage if record else 0

        if audit.is_logical:
            summary.logical_schools += 1
            stats["logical"] += 1
        else:
            summary.illogical_schools += 1
            stats["illogical"] += 1
            summary.by_issue_type[audit.status] += 1

    for stats in summary.by_round.values():
        stats["avg_progress"] = stats["avg_progress"] / stats["total"] if stats["total"] else 0.0

    logger.info(
        f"Audit complete: {summary.logical_schools} logical, "
        f"{summary.illogical_schools} illogical of {summary.total_schools}"
    )
    return audits, summary


async def repair_all(db: AsyncSession, coordinator=None, dry_run: bool = False) -> dict:
    """
    Recompute every school the audit flags.

    Evidence, overrides and the round counter are left alone; only the
    derived record is rewritten.
    """
    if coordinator is None:
        from school_progression.services.progression_coordinator import get_coordinator
        coordinator = get_coordinator()

    audits, _ = await audit_all(db)
    to_fix = [audit for audit in audits if not audit.is_logical]

    report = {"checked": len(audits), "illogical": len(to_fix), "fixed": [], "failed": []}
    if dry_run:
        return report

    for audit in to_fix:
        try:
            await coordinator.recompute(db, audit.school_id, trigger="round_repair")
        except ProgressionException as e:
            logger.error(f"Could not repair school {audit.school_id}: {e.message}")
            report["failed"].append(audit.school_id)
            continue
        report["fixed"].append(audit.school_id)

    logger.info(f"Repaired {len(report['fixed'])} of {len(to_fix)} illogical schools")
    return report
