"""
school_progression/services/evidence_ledger.py
Evidence Ledger

Evidence submissions and their review lifecycle, plus the counting queries
the progression calculator is fed from.

Every change that moves evidence into or out of APPROVED recomputes the
school's progression inside the same transaction, under the school lock.
If the progression write fails, the evidence change is rolled back with it.
"""
import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import select, func, exists
from sqlalchemy.ext.asyncio import AsyncSession

from school_progression.config.feature_flags import feature_flags
from school_progression.exceptions import (
    EvidenceNotDeletable,
    EvidenceNotFound,
    EvidenceValidationError,
    InvalidReviewTransition,
    ProgressionException,
    SchoolNotFound,
)
from school_progression.orm.evidence import Evidence, EvidenceStatus, EvidenceVisibility
from school_progression.orm.evidence_requirement import ProgramStage
from school_progression.orm.school import School
from school_progression.schemas.progression import BulkOperationResult, FailedItem
from school_progression.services.requirement_catalog import get_requirement
from school_progression.state_machines.progression_state import EvidenceReviewStateMachine

logger = logging.getLogger(__name__)

_UNSET = object()


def _coordinator_or_default(coordinator):
    if coordinator is not None:
        return coordinator
    from school_progression.services.progression_coordinator import get_coordinator
    return get_coordinator()


# =============================================================================
# Counting queries
# =============================================================================

async def count_approved_by_requirement(
    db: AsyncSession,
    school_id: str,
    stage: ProgramStage,
    round_number: int
) -> Dict[str, int]:
    """
    Approved evidence per requirement for one school, stage and round.

    Evidence from any other round never counts, even when still approved.
    Evidence without a requirement link is left out.
    """
    result = await db.execute(
        select(Evidence.requirement_id, func.count(Evidence.id))
        .where(
            Evidence.school_id == school_id,
            Evidence.stage == ProgramStage(stage),
            Evidence.round_number == round_number,
            Evidence.status == EvidenceStatus.APPROVED,
            Evidence.requirement_id.is_not(None),
        )
        .group_by(Evidence.requirement_id)
    )
    return {requirement_id: count for requirement_id, count in result.all()}


async def has_any_approved(
    db: AsyncSession,
    school_id: str,
    stage: ProgramStage,
    round_number: int
) -> bool:
    """Whether any approved evidence exists for the stage in the round, linked or not."""
    return bool(await db.scalar(
        select(exists().where(
            Evidence.school_id == school_id,
            Evidence.stage == ProgramStage(stage),
            Evidence.round_number == round_number,
            Evidence.status == EvidenceStatus.APPROVED,
        ))
    ))


async def get_evidence(db: AsyncSession, evidence_id: str, for_update: bool = False) -> Evidence:
    query = select(Evidence).where(Evidence.id == evidence_id)
    if for_update:
        query = query.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(query)
    evidence = result.scalar_one_or_none()
    if evidence is None:
        raise EvidenceNotFound(evidence_id)
    return evidence


async def list_school_evidence(
    db: AsyncSession,
    school_id: str,
    round_number: Optional[int] = None,
    stage: Optional[ProgramStage] = None,
    status: Optional[EvidenceStatus] = None
) -> List[Evidence]:
    query = select(Evidence).where(Evidence.school_id == school_id)
    if round_number is not None:
        query = query.where(Evidence.round_number == round_number)
    if stage is not None:
        query = query.where(Evidence.stage == ProgramStage(stage))
    if status is not None:
        query = query.where(Evidence.status == EvidenceStatus(status))
    result = await db.execute(query.order_by(Evidence.submitted_at, Evidence.id))
    return list(result.scalars().all())


async def _school_id_for(db: AsyncSession, evidence_id: str) -> str:
    school_id = await db.scalar(select(Evidence.school_id).where(Evidence.id == evidence_id))
    if school_id is None:
        raise EvidenceNotFound(evidence_id)
    return school_id


async def _validate_requirement(db: AsyncSession, requirement_id: Optional[str], stage: ProgramStage) -> None:
    if requirement_id is None:
        return
    requirement = await get_requirement(db, requirement_id, for_share=True)
    if requirement.stage != stage:
        raise EvidenceValidationError(
            f"Requirement {requirement_id} belongs to {requirement.stage.value}, not {stage.value}"
        )


# =============================================================================
# Submission
# =============================================================================

async def submit_evidence(
    db: AsyncSession,
    school_id: str,
    submitted_by: str,
    stage: ProgramStage,
    round_number: int,
    title: str,
    requirement_id: Optional[str] = None,
    description: Optional[str] = None,
    visibility: EvidenceVisibility = EvidenceVisibility.PRIVATE,
    submitted_by_admin: bool = False,
    coordinator=None
) -> Evidence:
    """
    Record a new submission.

    round_number is stamped by the intake from the school's round at
    submission time and stored as given. Admin submissions are approved
    immediately (FEATURE_AUTO_APPROVE_ADMIN_EVIDENCE) and recompute
    progression before returning.

    Raises:
        SchoolNotFound: Unknown school
        RequirementNotFound: Unknown requirement
        EvidenceValidationError: Round below 1 or requirement from another stage
    """
    stage = ProgramStage(stage)
    if round_number is None or round_number < 1:
        raise EvidenceValidationError(f"Round number must be 1 or greater, got {round_number}")

    auto_approve = submitted_by_admin and feature_flags.FEATURE_AUTO_APPROVE_ADMIN_EVIDENCE
    coordinator = _coordinator_or_default(coordinator)

    async with coordinator.transaction(db, [school_id]) as tx:
        school = await db.get(School, school_id)
        if school is None:
            raise SchoolNotFound(school_id)

        await _validate_requirement(db, requirement_id, stage)

        evidence = Evidence(
            school_id=school_id,
            submitted_by=submitted_by,
            requirement_id=requirement_id,
            stage=stage,
            round_number=round_number,
            status=EvidenceStatus.APPROVED if auto_approve else EvidenceStatus.PENDING,
            visibility=EvidenceVisibility(visibility),
            title=title,
            description=description,
        )
        if auto_approve:
            evidence.reviewed_by = submitted_by
            evidence.reviewed_at = datetime.utcnow()

        db.add(evidence)
        await db.flush()

        if auto_approve:
            await tx.recompute(school_id, round_number, trigger="admin_submission")

    logger.info(
        f"Evidence {evidence.id} submitted for school {school_id} "
        f"({stage.value}, round {round_number}, {evidence.status.value})"
    )
    return evidence


# =============================================================================
# Review
# =============================================================================

def _apply_status(evidence: Evidence, status: EvidenceStatus, actor_id: str, notes: Optional[str]) -> None:
    evidence.status = status
    evidence.reviewed_by = actor_id
    evidence.reviewed_at = datetime.utcnow()
    if notes is not None:
        evidence.review_notes = notes


async def review_evidence(
    db: AsyncSession,
    evidence_id: str,
    status: EvidenceStatus,
    reviewer_id: str,
    notes: Optional[str] = None,
    coordinator=None
) -> Evidence:
    """
    Approve or reject pending evidence.

    Raises:
        EvidenceNotFound: Unknown evidence
        InvalidReviewTransition: Evidence is not pending, or status is not a decision
        PersistenceFailure: Progression could not be written; nothing was changed
    """
    status = EvidenceStatus(status)
    coordinator = _coordinator_or_default(coordinator)
    school_id = await _school_id_for(db, evidence_id)

    async with coordinator.transaction(db, [school_id]) as tx:
        evidence = await get_evidence(db, evidence_id, for_update=True)
        previous = evidence.status

        if not EvidenceReviewStateMachine.can_review(previous, status):
            raise InvalidReviewTransition(evidence_id, previous.value, status.value)

        _apply_status(evidence, status, reviewer_id, notes)
        await db.flush()

        if EvidenceReviewStateMachine.affects_progression(previous, status):
            await tx.recompute(school_id, evidence.round_number, trigger="review")

    logger.info(f"Evidence {evidence_id} reviewed: {previous.value} → {status.value} by {reviewer_id}")
    return evidence


async def admin_set_status(
    db: AsyncSession,
    evidence_id: str,
    status: EvidenceStatus,
    admin_id: str,
    notes: Optional[str] = None,
    coordinator=None
) -> Evidence:
    """Direct admin edit: any status to any other status."""
    status = EvidenceStatus(status)
    coordinator = _coordinator_or_default(coordinator)
    school_id = await _school_id_for(db, evidence_id)

    async with coordinator.transaction(db, [school_id]) as tx:
        evidence = await get_evidence(db, evidence_id, for_update=True)
        previous = evidence.status

        if previous == status:
            return evidence
        if not EvidenceReviewStateMachine.can_admin_edit(previous, status):
            raise InvalidReviewTransition(evidence_id, previous.value, status.value)

        _apply_status(evidence, status, admin_id, notes)
        await db.flush()

        if EvidenceReviewStateMachine.affects_progression(previous, status):
            await tx.recompute(school_id, evidence.round_number, trigger="admin_edit")

    logger.info(f"Evidence {evidence_id} set {previous.value} → {status.value} by admin {admin_id}")
    return evidence


async def update_evidence_details(
    db: AsyncSession,
    evidence_id: str,
    stage: Optional[ProgramStage] = None,
    requirement_id=_UNSET,
    visibility: Optional[EvidenceVisibility] = None,
    title: Optional[str] = None,
    description: Optional[str] = None,
    coordinator=None
) -> Evidence:
    """
    Admin edit of everything except status and round.

    Pass requirement_id=None to unlink the requirement. Approved evidence
    whose stage or requirement changes recomputes progression.
    """
    coordinator = _coordinator_or_default(coordinator)
    school_id = await _school_id_for(db, evidence_id)

    async with coordinator.transaction(db, [school_id]) as tx:
        evidence = await get_evidence(db, evidence_id, for_update=True)

        new_stage = ProgramStage(stage) if stage is not None else evidence.stage
        new_requirement_id = evidence.requirement_id if requirement_id is _UNSET else requirement_id

        if new_requirement_id != evidence.requirement_id or new_stage != evidence.stage:
            await _validate_requirement(db, new_requirement_id, new_stage)

        links_changed = new_stage != evidence.stage or new_requirement_id != evidence.requirement_id

        evidence.stage = new_stage
        evidence.requirement_id = new_requirement_id
        if visibility is not None:
            evidence.visibility = EvidenceVisibility(visibility)
        if title is not None:
            evidence.title = title
        if description is not None:
            evidence.description = description
        await db.flush()

        if links_changed and evidence.is_approved:
            await tx.recompute(school_id, evidence.round_number, trigger="admin_edit")

    return evidence


async def delete_evidence(db: AsyncSession, evidence_id: str, coordinator=None) -> None:
    """
    Delete pending evidence.

    Pending evidence never counts toward progression, so nothing is
    recomputed.
    """
    coordinator = _coordinator_or_default(coordinator)
    school_id = await _school_id_for(db, evidence_id)

    async with coordinator.transaction(db, [school_id]):
        evidence = await get_evidence(db, evidence_id, for_update=True)
        if evidence.status != EvidenceStatus.PENDING:
            raise EvidenceNotDeletable(evidence_id, evidence.status.value)
        await db.delete(evidence)

    logger.info(f"Deleted pending evidence {evidence_id} of school {school_id}")


# =============================================================================
# Bulk operations
# =============================================================================

async def _school_ids_for(db: AsyncSession, evidence_ids: List[str]) -> Dict[str, str]:
    if not evidence_ids:
        return {}
    result = await db.execute(
        select(Evidence.id, Evidence.school_id).where(Evidence.id.in_(evidence_ids))
    )
    return {evidence_id: school_id for evidence_id, school_id in result.all()}


async def bulk_review(
    db: AsyncSession,
    evidence_ids: List[str],
    status: EvidenceStatus,
    reviewer_id: str,
    notes: Optional[str] = None,
    coordinator=None
) -> BulkOperationResult:
    """
    Review many items in one transaction.

    All status changes are applied first; progression is then recomputed
    once per distinct (school, round) on the fully applied state. Items
    that are missing or not pending are reported in failed.
    """
    status = EvidenceStatus(status)
    coordinator = _coordinator_or_default(coordinator)
    evidence_ids = list(dict.fromkeys(evidence_ids))
    result = BulkOperationResult()

    owners = await _school_ids_for(db, evidence_ids)

    async with coordinator.transaction(db, owners.values()) as tx:
        affected = set()

        for evidence_id in evidence_ids:
            if evidence_id not in owners:
                result.failed.append(FailedItem(id=evidence_id, reason="Evidence not found"))
                continue
            try:
                evidence = await get_evidence(db, evidence_id, for_update=True)
            except EvidenceNotFound as e:
                result.failed.append(FailedItem(id=evidence_id, reason=e.message))
                continue

            previous = evidence.status
            if not EvidenceReviewStateMachine.can_review(previous, status):
                result.failed.append(FailedItem(
                    id=evidence_id,
                    reason=InvalidReviewTransition(evidence_id, previous.value, status.value).message,
                ))
                continue

            _apply_status(evidence, status, reviewer_id, notes)
            result.success.append(evidence_id)
            if EvidenceReviewStateMachine.affects_progression(previous, status):
                affected.add((evidence.school_id, evidence.round_number))

        await db.flush()

        for school_id, round_number in sorted(affected):
            await tx.recompute(school_id, round_number, trigger="bulk_review")
            result.recomputed.append(f"{school_id}:{round_number}")

    logger.info(
        f"Bulk review to {status.value} by {reviewer_id}: {result.message} "
        f"{len(result.recomputed)} recomputation(s)"
    )
    return result


async def bulk_delete(db: AsyncSession, evidence_ids: List[str], coordinator=None) -> BulkOperationResult:
    """Delete many pending items; anything else is reported in failed."""
    coordinator = _coordinator_or_default(coordinator)
    evidence_ids = list(dict.fromkeys(evidence_ids))
    result = BulkOperationResult()

    owners = await _school_ids_for(db, evidence_ids)

    async with coordinator.transaction(db, owners.values()):
        for evidence_id in evidence_ids:
            try:
                evidence = await get_evidence(db, evidence_id, for_update=True)
                if evidence.status != EvidenceStatus.PENDING:
                    raise EvidenceNotDeletable(evidence_id, evidence.status.value)
            except ProgressionException as e:
                result.failed.append(FailedItem(id=evidence_id, reason=e.message))
                continue

            await db.delete(evidence)
            result.success.append(evidence_id)

    logger.info(f"Bulk delete: {result.message}")
    return result
