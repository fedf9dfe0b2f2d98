"""
school_progression/services/progression_coordinator.py
Progression Coordinator

Serialized, transactional recomputation of the SchoolProgression record.

Every trigger (evidence review, override toggle, round advancement,
explicit recompute) runs the same sequence for one school:

    lock school → read round → gather inputs → calculate → compare
    → write if changed → append signals to the outbox

inside the transaction of the triggering write. Signals are published
only after that transaction has committed.

Locking:
- In process: one asyncio.Lock per school, acquired in sorted order when a
  batch touches several schools
- Across processes: SELECT ... FOR UPDATE on the school row (PostgreSQL);
  SQLite serializes writers with BEGIN IMMEDIATE
"""
import asyncio
import logging
from contextlib import asynccontextmanager, AsyncExitStack
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from school_progression.config.feature_flags import feature_flags
from school_progression.exceptions import (
    InvalidRoundTransition,
    PersistenceFailure,
    ProgressionException,
    SchoolNotFound,
    UnflushedChanges,
)
from school_progression.orm.evidence_requirement import STAGE_ORDER
from school_progression.orm.school import School
from school_progression.orm.school_progression import SchoolProgression
from school_progression.schemas.progression import AwardCompleted, RecomputeOutcome, StageCompleted
from school_progression.services.evidence_ledger import count_approved_by_requirement, has_any_approved
from school_progression.services.override_registry import overrides_for
from school_progression.services.progression_calculator import ProgressionResult, calculate_progression
from school_progression.services.progression_signals import SignalDispatcher, record_signal
from school_progression.services.requirement_catalog import requirement_ids_by_stage

logger = logging.getLogger(__name__)


class ProgressionTransaction:
    """Handle yielded by ProgressionCoordinator.transaction()."""

    def __init__(self, coordinator: "ProgressionCoordinator", db: AsyncSession):
        self.coordinator = coordinator
        self.db = db
        self.outcomes: List[RecomputeOutcome] = []

    async def recompute(
        self,
        school_id: str,
        round_number: Optional[int] = None,
        trigger: Optional[str] = None
    ) -> RecomputeOutcome:
        outcome = await self.coordinator.recompute_locked(
            self.db, school_id, round_number=round_number, trigger=trigger
        )
        self.outcomes.append(outcome)
        return outcome

    @property
    def has_signals(self) -> bool:
        return any(outcome.signals for outcome in self.outcomes)


class ProgressionCoordinator:
    """
    Owns the per-school lock registry and the recompute sequence.

    Usage:
        coordinator = get_coordinator()

        async with coordinator.transaction(db, [school_id]) as tx:
            evidence.status = EvidenceStatus.APPROVED
            await db.flush()
            await tx.recompute(school_id, evidence.round_number, trigger="review")
    """

    def __init__(self, dispatcher: Optional[SignalDispatcher] = None):
        self._school_locks: Dict[str, asyncio.Lock] = {}
        self._lock_lock = asyncio.Lock()  # Lock for creating school locks
        self.dispatcher = dispatcher or SignalDispatcher()
        self.recompute_count = 0

    # =========================================================================
    # Locks
    # =========================================================================

    async def school_lock(self, school_id: str) -> asyncio.Lock:
        """Get or create the lock for a specific school."""
        async with self._lock_lock:
            if school_id not in self._school_locks:
                self._school_locks[school_id] = asyncio.Lock()
            return self._school_locks[school_id]

    @asynccontextmanager
    async def school_locks(self, school_ids: Iterable[str]):
        """Hold the locks of several schools, taken in sorted order."""
        async with AsyncExitStack() as stack:
            for school_id in sorted(set(school_ids)):
                await stack.enter_async_context(await self.school_lock(school_id))
            yield

    # =========================================================================
    # Transactions
    # =========================================================================

    @asynccontextmanager
    async def transaction(self, db: AsyncSession, school_ids: Iterable[str]):
        """
        Run a write and its recomputations as one unit.

        Commits on success and dispatches any recorded signals afterwards.
        On failure everything is rolled back; database errors surface as
        PersistenceFailure.

        The session must not hold pending writes when this is entered.
        """
        school_ids = sorted(set(school_ids))

        pending = len(db.new) + len(db.dirty) + len(db.deleted)
        if pending:
            raise UnflushedChanges(pending)

        # Release whatever a read-only preamble left open before waiting on locks
        if db.in_transaction():
            await db.commit()

        async with self.school_locks(school_ids):
            tx = ProgressionTransaction(self, db)
            try:
                yield tx
                await db.commit()
            except ProgressionException:
                await db.rollback()
                raise
            except SQLAlchemyError as e:
                await db.rollback()
                logger.error(f"Progression transaction failed for schools {school_ids}: {e}")
                raise PersistenceFailure(
                    f"Could not persist progression change: {e}",
                    school_id=school_ids[0] if len(school_ids) == 1 else None,
                ) from e
            except Exception:
                await db.rollback()
                raise

        if tx.has_signals and feature_flags.FEATURE_SIGNAL_DISPATCH:
            await self.dispatcher.dispatch_pending(db, school_ids=school_ids)

    # =========================================================================
    # Recompute
    # =========================================================================

    async def _lock_school(self, db: AsyncSession, school_id: str) -> School:
        result = await db.execute(
            select(School)
            .where(School.id == school_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        school = result.scalar_one_or_none()
        if school is None:
            raise SchoolNotFound(school_id)
        return school

    @staticmethod
    def _check_round(school: School, requested_round: Optional[int]) -> None:
        if requested_round is not None and requested_round > school.current_round:
            raise InvalidRoundTransition(school.id, requested_round, school.current_round)

    async def calculate(self, db: AsyncSession, school_id: str, round_number: int) -> ProgressionResult:
        """Gather calculator inputs for one school and round, then calculate."""
        requirements = await requirement_ids_by_stage(db)

        approved_counts = {}
        has_approved = {}
        for stage in STAGE_ORDER:
            approved_counts[stage] = await count_approved_by_requirement(db, school_id, stage, round_number)
            if not requirements[stage] and feature_flags.FEATURE_REQUIRE_EVIDENCE_FOR_EMPTY_STAGES:
                has_approved[stage] = await has_any_approved(db, school_id, stage, round_number)

        override_ids = await overrides_for(db, school_id, round_number)

        return calculate_progression(
            round_number=round_number,
            requirements=requirements,
            approved_counts=approved_counts,
            override_ids=override_ids,
            has_approved=has_approved,
            require_evidence_for_empty=feature_flags.FEATURE_REQUIRE_EVIDENCE_FOR_EMPTY_STAGES,
        )

    async def recompute_locked(
        self,
        db: AsyncSession,
        school_id: str,
        round_number: Optional[int] = None,
        trigger: Optional[str] = None
    ) -> RecomputeOutcome:
        """
        Recompute inside the caller's transaction.

        The caller holds the school lock and commits. round_number is the
        round the trigger concerned; the school's current round is always
        the one evaluated.
        """
        school = await self._lock_school(db, school_id)
        current_round = school.current_round

        round_mismatch = False
        try:
            self._check_round(school, round_number)
        except InvalidRoundTransition as e:
            logger.warning(f"{e.message}; evaluating round {current_round}")
            round_mismatch = True

        if round_number is not None and round_number < current_round:
            logger.debug(
                f"Stale trigger for school {school_id} (round {round_number}), "
                f"school is in round {current_round}"
            )

        result = await self.calculate(db, school_id, current_round)
        self.recompute_count += 1

        record = await db.get(SchoolProgression, school_id, populate_existing=True)

        if record is not None and record.current_round == current_round:
            previous = {stage: record.stage_completed(stage) for stage in STAGE_ORDER}
            previous_award = record.award_completed
        else:
            # New round (or first record): nothing has been signalled for it yet
            previous = {stage: False for stage in STAGE_ORDER}
            previous_award = False

        changed = record is None or _record_differs(record, result)

        signals = []
        if changed:
            if record is None:
                record = SchoolProgression(school_id=school_id)
                db.add(record)
            _apply_result(record, result)

            for stage in STAGE_ORDER:
                if result.stage(stage).complete and not previous[stage]:
                    signals.append(StageCompleted(school_id=school_id, stage=stage, round_number=current_round))
            if result.award_completed and not previous_award:
                signals.append(AwardCompleted(school_id=school_id, round_number=current_round))

            recorded = [record_signal(db, signal) for signal in signals]

            try:
                await db.flush()
            except SQLAlchemyError as e:
                logger.error(f"Failed to write progression for school {school_id}: {e}")
                raise PersistenceFailure(
                    f"Could not write progression for school {school_id}: {e}",
                    school_id=school_id,
                ) from e

            signals = [
                signal.model_copy(update={"signal_id": row.id})
                for signal, row in zip(signals, recorded)
            ]

            logger.info(
                f"Progression updated for school {school_id} round {current_round}: "
                f"{result.progress_percentage}% stage={result.current_stage.value} "
                f"award={result.award_completed} trigger={trigger or 'explicit'}"
            )

        return RecomputeOutcome(
            school_id=school_id,
            round_number=current_round,
            changed=changed,
            signals=signals,
            round_mismatch=round_mismatch,
        )

    async def recompute(
        self,
        db: AsyncSession,
        school_id: str,
        round_number: Optional[int] = None,
        trigger: Optional[str] = None
    ) -> RecomputeOutcome:
        """Standalone recompute: lock, recompute, commit, dispatch."""
        async with self.transaction(db, [school_id]) as tx:
            outcome = await tx.recompute(school_id, round_number=round_number, trigger=trigger)
        return outcome

    async def describe(self, db: AsyncSession, school_id: str) -> ProgressionResult:
        """Calculator output for the school's current round. Writes nothing."""
        school = await db.get(School, school_id)
        if school is None:
            raise SchoolNotFound(school_id)
        return await self.calculate(db, school_id, school.current_round)

    async def recalculate_all(self, db: AsyncSession) -> dict:
        """
        Recompute every school, one transaction each.

        A failure for one school is logged and counted; the sweep goes on.
        """
        result = await db.execute(select(School.id).order_by(School.id))
        school_ids = [row[0] for row in result.all()]

        summary = {"total": len(school_ids), "changed": 0, "failed": []}
        for school_id in school_ids:
            try:
                outcome = await self.recompute(db, school_id, trigger="recalculate_all")
            except ProgressionException as e:
                logger.error(f"Recalculation failed for school {school_id}: {e.message}")
                summary["failed"].append(school_id)
                continue
            if outcome.changed:
                summary["changed"] += 1

        logger.info(
            f"Recalculated {summary['total']} schools: {summary['changed']} changed, "
            f"{len(summary['failed'])} failed"
        )
        return summary


def _record_differs(record: SchoolProgression, result: ProgressionResult) -> bool:
    return (
        record.current_round != result.round_number
        or record.current_stage != result.current_stage
        or record.inspire_completed != result.inspire_completed
        or record.investigate_completed != result.investigate_completed
        or record.act_completed != result.act_completed
        or record.award_completed != result.award_completed
        or record.progress_percentage != result.progress_percentage
        or record.rounds_completed != result.rounds_completed
    )


def _apply_result(record: SchoolProgression, result: ProgressionResult) -> None:
    record.current_round = result.round_number
    record.current_stage = result.current_stage
    record.inspire_completed = result.inspire_completed
    record.investigate_completed = result.investigate_completed
    record.act_completed = result.act_completed
    record.award_completed = result.award_completed
    record.progress_percentage = result.progress_percentage
    record.rounds_completed = result.rounds_completed


# =============================================================================
# Singleton
# =============================================================================

_coordinator: Optional[ProgressionCoordinator] = None


def get_coordinator() -> ProgressionCoordinator:
    global _coordinator
    if _coordinator is None:
        _coordinator = ProgressionCoordinator()
    return _coordinator


def set_coordinator(coordinator: Optional[ProgressionCoordinator]) -> None:
    """Replace the process-wide coordinator (None resets it)."""
    global _coordinator
    _coordinator = coordinator
