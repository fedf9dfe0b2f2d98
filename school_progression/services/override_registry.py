"""
school_progression/services/override_registry.py
Override Registry

Admin exemptions that stand in for evidence on one (school, requirement,
round). The toggle is the only write path: insert, and if the unique
constraint says the override already exists, delete it instead.
"""
import logging
from typing import List, Optional, Set

from sqlalchemy import select, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from school_progression.config.feature_flags import feature_flags
from school_progression.exceptions import (
    ConcurrentOverrideConflict,
    EvidenceValidationError,
    PersistenceFailure,
    SchoolNotFound,
)
from school_progression.orm.evidence_override import AdminEvidenceOverride
from school_progression.orm.evidence_requirement import ProgramStage
from school_progression.orm.school import School
from school_progression.schemas.progression import ToggleResult
from school_progression.services.requirement_catalog import get_requirement

logger = logging.getLogger(__name__)


# =============================================================================
# Queries
# =============================================================================

async def overrides_for(db: AsyncSession, school_id: str, round_number: int) -> Set[str]:
    """Requirement ids satisfied by override for the school in the round."""
    result = await db.execute(
        select(AdminEvidenceOverride.requirement_id).where(
            AdminEvidenceOverride.school_id == school_id,
            AdminEvidenceOverride.round_number == round_number,
        )
    )
    return set(result.scalars().all())


async def overrides_for_stage(
    db: AsyncSession,
    school_id: str,
    stage: ProgramStage,
    round_number: int
) -> Set[str]:
    result = await db.execute(
        select(AdminEvidenceOverride.requirement_id).where(
            AdminEvidenceOverride.school_id == school_id,
            AdminEvidenceOverride.stage == ProgramStage(stage),
            AdminEvidenceOverride.round_number == round_number,
        )
    )
    return set(result.scalars().all())


async def list_overrides(
    db: AsyncSession,
    school_id: str,
    round_number: Optional[int] = None
) -> List[AdminEvidenceOverride]:
    query = select(AdminEvidenceOverride).where(AdminEvidenceOverride.school_id == school_id)
    if round_number is not None:
        query = query.where(AdminEvidenceOverride.round_number == round_number)
    result = await db.execute(
        query.order_by(AdminEvidenceOverride.round_number, AdminEvidenceOverride.created_at)
    )
    return list(result.scalars().all())


# =============================================================================
# Toggle
# =============================================================================

async def _toggle_once(
    db: AsyncSession,
    school_id: str,
    requirement_id: str,
    round_number: int,
    stage: ProgramStage,
    marked_by: str
) -> bool:
    """
    One insert-or-delete attempt. Returns True when the override was created.

    The insert runs in a SAVEPOINT so a unique violation only discards
    the insert, not the enclosing transaction.
    """
    try:
        async with db.begin_nested():
            db.add(AdminEvidenceOverride(
                school_id=school_id,
                requirement_id=requirement_id,
                round_number=round_number,
                stage=stage,
                marked_by=marked_by,
            ))
        return True
    except IntegrityError:
        pass

    # Exists: remove it
    result = await db.execute(
        delete(AdminEvidenceOverride).where(
            AdminEvidenceOverride.school_id == school_id,
            AdminEvidenceOverride.requirement_id == requirement_id,
            AdminEvidenceOverride.round_number == round_number,
        )
    )
    if result.rowcount == 0:
        raise ConcurrentOverrideConflict(school_id, requirement_id, round_number)
    return False


async def toggle(
    db: AsyncSession,
    school_id: str,
    requirement_id: str,
    round_number: int,
    marked_by: str,
    coordinator=None
) -> ToggleResult:
    """
    Create the override if absent, delete it if present, then recompute.

    Concurrent toggles never produce duplicate rows: the unique constraint
    decides which branch runs. A delete that finds the row already gone
    is retried as an insert.

    Raises:
        SchoolNotFound / RequirementNotFound: Unknown ids
        EvidenceValidationError: Round below 1
        PersistenceFailure: Retries exhausted or progression write failed
    """
    if round_number is None or round_number < 1:
        raise EvidenceValidationError(f"Round number must be 1 or greater, got {round_number}")

    if coordinator is None:
        from school_progression.services.progression_coordinator import get_coordinator
        coordinator = get_coordinator()

    max_attempts = max(1, feature_flags.OVERRIDE_TOGGLE_MAX_ATTEMPTS)

    async with coordinator.transaction(db, [school_id]) as tx:
        if await db.get(School, school_id) is None:
            raise SchoolNotFound(school_id)
        requirement = await get_requirement(db, requirement_id, for_share=True)

        created = None
        for attempt in range(1, max_attempts + 1):
            try:
                created = await _toggle_once(
                    db, school_id, requirement_id, round_number, requirement.stage, marked_by
                )
                break
            except ConcurrentOverrideConflict as e:
                logger.warning(f"{e.message} (attempt {attempt}/{max_attempts})")

        if created is None:
            raise PersistenceFailure(
                f"Override toggle for school {school_id}, requirement {requirement_id} "
                f"did not settle after {max_attempts} attempts",
                school_id=school_id,
            )

        await tx.recompute(school_id, round_number, trigger="override_toggle")

    logger.info(
        f"Override {'created' if created else 'removed'} for school {school_id}, "
        f"requirement {requirement_id}, round {round_number} by {marked_by}"
    )
    return ToggleResult(
        created=created,
        school_id=school_id,
        requirement_id=requirement_id,
        round_number=round_number,
    )
