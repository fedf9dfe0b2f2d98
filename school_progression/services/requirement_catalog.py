"""
Requirement Catalog Service

Ordered evidence requirements per stage. Read on every recompute;
written only by administration.

A requirement referenced by any evidence or override cannot be deleted.
The check is an explicit query against both tables, never a database
cascade: cascading would silently remove history from every school that
relied on the requirement.
"""
import logging
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from school_progression.exceptions import RequirementInUse, RequirementNotFound, EvidenceValidationError
from school_progression.orm.evidence import Evidence
from school_progression.orm.evidence_override import AdminEvidenceOverride
from school_progression.orm.evidence_requirement import EvidenceRequirement, ProgramStage, STAGE_ORDER

logger = logging.getLogger(__name__)


# =============================================================================
# Reads
# =============================================================================

async def get_requirement(
    db: AsyncSession,
    requirement_id: str,
    for_share: bool = False
) -> EvidenceRequirement:
    """
    Load a requirement or raise RequirementNotFound.

    for_share takes a shared row lock so a concurrent delete waits until the
    referencing row (evidence or override) is committed.
    """
    query = select(EvidenceRequirement).where(EvidenceRequirement.id == requirement_id)
    if for_share:
        query = query.with_for_update(read=True)
    result = await db.execute(query)
    requirement = result.scalar_one_or_none()
    if requirement is None:
        raise RequirementNotFound(requirement_id)
    return requirement


async def requirements_for_stage(db: AsyncSession, stage: ProgramStage) -> List[EvidenceRequirement]:
    """Requirements of one stage in display order."""
    result = await db.execute(
        select(EvidenceRequirement)
        .where(EvidenceRequirement.stage == ProgramStage(stage))
        .order_by(EvidenceRequirement.order_index, EvidenceRequirement.id)
    )
    return list(result.scalars().all())


async def requirements_by_stage(db: AsyncSession) -> Dict[ProgramStage, List[EvidenceRequirement]]:
    """All requirements grouped by stage, each list in display order."""
    result = await db.execute(
        select(EvidenceRequirement)
        .order_by(EvidenceRequirement.stage, EvidenceRequirement.order_index, EvidenceRequirement.id)
    )
    grouped: Dict[ProgramStage, List[EvidenceRequirement]] = {stage: [] for stage in STAGE_ORDER}
    for requirement in result.scalars().all():
        grouped[requirement.stage].append(requirement)
    return grouped


async def requirement_ids_by_stage(db: AsyncSession) -> Dict[ProgramStage, List[str]]:
    grouped = await requirements_by_stage(db)
    return {stage: [r.id for r in requirements] for stage, requirements in grouped.items()}


async def count_references(db: AsyncSession, requirement_id: str) -> Tuple[int, int]:
    """Return (evidence_count, override_count) referencing the requirement."""
    evidence_count = await db.scalar(
        select(func.count(Evidence.id)).where(Evidence.requirement_id == requirement_id)
    )
    override_count = await db.scalar(
        select(func.count(AdminEvidenceOverride.id)).where(AdminEvidenceOverride.requirement_id == requirement_id)
    )
    return int(evidence_count or 0), int(override_count or 0)


# =============================================================================
# Administration
# =============================================================================

async def create_requirement(
    db: AsyncSession,
    stage: ProgramStage,
    order_index: Optional[int] = None,
    resource_refs: Optional[Iterable[str]] = None,
    requirement_id: Optional[str] = None
) -> EvidenceRequirement:
    """
    Add a requirement to a stage.

    Without an explicit order_index the requirement goes to the end of
    the stage. Note that existing schools only pick up the new requirement
    on their next recompute.
    """
    stage = ProgramStage(stage)
    if order_index is None:
        current_max = await db.scalar(
            select(func.max(EvidenceRequirement.order_index)).where(EvidenceRequirement.stage == stage)
        )
        order_index = 0 if current_max is None else current_max + 1

    requirement = EvidenceRequirement(
        stage=stage,
        order_index=order_index,
        resource_refs=list(resource_refs or []),
    )
    if requirement_id:
        requirement.id = requirement_id

    db.add(requirement)
    await db.commit()
    await db.refresh(requirement)

    logger.info(f"Created {stage.value} requirement {requirement.id} at position {order_index}")
    return requirement


async def update_requirement(
    db: AsyncSession,
    requirement_id: str,
    stage: Optional[ProgramStage] = None,
    order_index: Optional[int] = None,
    resource_refs: Optional[Iterable[str]] = None
) -> EvidenceRequirement:
    """
    Update a requirement's position, resources or stage.

    Moving a referenced requirement to another stage is refused: the
    evidence and overrides pointing at it were recorded for the old stage.
    """
    requirement = await get_requirement(db, requirement_id)

    if stage is not None and ProgramStage(stage) != requirement.stage:
        evidence_count, override_count = await count_references(db, requirement_id)
        if evidence_count or override_count:
            raise RequirementInUse(requirement_id, evidence_count, override_count)
        requirement.stage = ProgramStage(stage)

    if order_index is not None:
        requirement.order_index = order_index
    if resource_refs is not None:
        requirement.resource_refs = list(resource_refs)

    await db.commit()
    await db.refresh(requirement)
    return requirement


async def reorder_requirements(
    db: AsyncSession,
    stage: ProgramStage,
    ordered_ids: List[str]
) -> List[EvidenceRequirement]:
    """Rewrite order_index for a stage so requirements follow ordered_ids."""
    stage = ProgramStage(stage)
    current = await requirements_for_stage(db, stage)
    by_id = {requirement.id: requirement for requirement in current}

    if len(set(ordered_ids)) != len(ordered_ids) or set(ordered_ids) != set(by_id):
        raise EvidenceValidationError(
            f"Reorder for {stage.value} must list each of its {len(by_id)} requirements exactly once"
        )

    for index, requirement_id in enumerate(ordered_ids):
        by_id[requirement_id].order_index = index

    await db.commit()
    return [by_id[requirement_id] for requirement_id in ordered_ids]


async def delete_requirement(db: AsyncSession, requirement_id: str) -> None:
    """
    Delete an unreferenced requirement.

    Raises:
        RequirementNotFound: Unknown id
        RequirementInUse: Evidence or overrides still reference it
    """
    try:
        # Exclusive row lock: writers referencing the requirement take a shared lock on it
        result = await db.execute(
            select(EvidenceRequirement)
            .where(EvidenceRequirement.id == requirement_id)
            .with_for_update()
        )
        requirement = result.scalar_one_or_none()
        if requirement is None:
            raise RequirementNotFound(requirement_id)

        evidence_count, override_count = await count_references(db, requirement_id)
        if evidence_count or override_count:
            raise RequirementInUse(requirement_id, evidence_count, override_count)

        await db.delete(requirement)
        await db.commit()
    except IntegrityError:
        # Evidence FK is RESTRICT: a reference committed after our count
        await db.rollback()
        evidence_count, override_count = await count_references(db, requirement_id)
        raise RequirementInUse(requirement_id, evidence_count, override_count)
    except (RequirementNotFound, RequirementInUse):
        await db.rollback()
        raise

    logger.info(f"Deleted requirement {requirement_id}")
