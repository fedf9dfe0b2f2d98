"""
Progression Signals

Delivery of StageCompleted / AwardCompleted signals to downstream
collaborators (certificate issuance, notifications).

Signals are first written to the progression_signals outbox in the same
transaction as the progression change, then published once the commit has
succeeded. A row stays undelivered until a publish goes through, which
makes delivery at-least-once: subscribers should key on signal_id.

Usage:
    from school_progression.services.progression_signals import get_signal_bus

    bus = get_signal_bus()
    await bus.subscribe(issue_certificate)
"""
import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from school_progression.config.feature_flags import feature_flags
from school_progression.orm.progression_signal import ProgressionSignalRecord, SignalType
from school_progression.schemas.progression import AwardCompleted, ProgressionSignal, StageCompleted

logger = logging.getLogger(__name__)

SignalCallback = Callable[[ProgressionSignal], Any]


class SignalDeliveryError(Exception):
    """Raised by a bus when at least one subscriber failed to handle a signal."""
    def __init__(self, signal: ProgressionSignal, failures: List[str]):
        self.signal = signal
        self.failures = failures
        super().__init__(
            f"{len(failures)} subscriber(s) failed for {signal.signal_type}: {'; '.join(failures)}"
        )


# =============================================================================
# Signal Bus Interface
# =============================================================================

class SignalBus(ABC):
    """
    Abstract base class for signal buses.

    Implementations must support:
    - publish: Deliver a signal to every subscriber
    - subscribe: Register a callback
    - unsubscribe: Remove a callback registration
    - has_subscribers: Whether a publish would reach anyone
    """

    @abstractmethod
    async def publish(self, signal: ProgressionSignal) -> None:
        pass

    @abstractmethod
    async def subscribe(self, callback: SignalCallback) -> None:
        pass

    @abstractmethod
    async def unsubscribe(self, callback: SignalCallback) -> None:
        pass

    @abstractmethod
    def has_subscribers(self) -> bool:
        pass


class LocalSignalBus(SignalBus):
    """
    In-process signal bus.

    Every subscriber is called even when an earlier one fails; failures are
    collected and reported together so the outbox row is retried.
    Callbacks may be plain functions or coroutines.
    """

    def __init__(self):
        self._subscribers: List[SignalCallback] = []
        self._lock = asyncio.Lock()

    async def publish(self, signal: ProgressionSignal) -> None:
        async with self._lock:
            subscribers = list(self._subscribers)

        failures = []
        for callback in subscribers:
            try:
                result = callback(signal)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                name = getattr(callback, "__name__", repr(callback))
                logger.warning(f"Signal subscriber {name} failed on {signal.signal_type}: {e}")
                failures.append(f"{name}: {e}")

        if failures:
            raise SignalDeliveryError(signal, failures)

    async def subscribe(self, callback: SignalCallback) -> None:
        async with self._lock:
            if callback not in self._subscribers:
                self._subscribers.append(callback)

    async def unsubscribe(self, callback: SignalCallback) -> None:
        async with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def has_subscribers(self) -> bool:
        return bool(self._subscribers)

    def get_subscriber_count(self) -> int:
        return len(self._subscribers)


# =============================================================================
# Bus Manager (Singleton)
# =============================================================================

class SignalBusManager:
    """
    Singleton holder for the process-wide signal bus.

    Usage:
        bus = SignalBusManager.get_bus()
        SignalBusManager.set_bus(custom_bus)
    """

    _instance: Optional[SignalBus] = None

    @classmethod
    def get_bus(cls) -> SignalBus:
        if cls._instance is None:
            cls._instance = LocalSignalBus()
        return cls._instance

    @classmethod
    def set_bus(cls, bus: SignalBus) -> None:
        cls._instance = bus

    @classmethod
    def reset(cls) -> None:
        """Reset to a fresh local bus (useful for testing)."""
        cls._instance = LocalSignalBus()


def get_signal_bus() -> SignalBus:
    return SignalBusManager.get_bus()


# =============================================================================
# Outbox
# =============================================================================

def record_signal(db: AsyncSession, signal: ProgressionSignal) -> ProgressionSignalRecord:
    """Add an outbox row for signal to the current transaction."""
    if isinstance(signal, StageCompleted):
        record = ProgressionSignalRecord(
            school_id=signal.school_id,
            signal_type=SignalType.STAGE_COMPLETED,
            stage=signal.stage,
            round_number=signal.round_number,
        )
    else:
        record = ProgressionSignalRecord(
            school_id=signal.school_id,
            signal_type=SignalType.AWARD_COMPLETED,
            stage=None,
            round_number=signal.round_number,
        )
    db.add(record)
    return record


def signal_from_record(record: ProgressionSignalRecord) -> ProgressionSignal:
    if record.signal_type == SignalType.STAGE_COMPLETED:
        return StageCompleted(
            school_id=record.school_id,
            stage=record.stage,
            round_number=record.round_number,
            signal_id=record.id,
        )
    return AwardCompleted(
        school_id=record.school_id,
        round_number=record.round_number,
        signal_id=record.id,
    )


class SignalDispatcher:
    """Publishes undelivered outbox rows and marks them dispatched."""

    def __init__(self, bus: Optional[SignalBus] = None, max_attempts: Optional[int] = None):
        self._bus = bus
        self.max_attempts = max_attempts or feature_flags.SIGNAL_DISPATCH_MAX_ATTEMPTS

    @property
    def bus(self) -> SignalBus:
        return self._bus or get_signal_bus()

    async def pending(
        self,
        db: AsyncSession,
        school_ids: Optional[Iterable[str]] = None,
        limit: int = 100
    ) -> List[ProgressionSignalRecord]:
        query = select(ProgressionSignalRecord).where(
            ProgressionSignalRecord.dispatched_at.is_(None),
            ProgressionSignalRecord.attempts < self.max_attempts,
        )
        if school_ids is not None:
            query = query.where(ProgressionSignalRecord.school_id.in_(list(school_ids)))
        query = query.order_by(ProgressionSignalRecord.created_at, ProgressionSignalRecord.id).limit(limit)
        result = await db.execute(query)
        return list(result.scalars().all())

    async def dispatch_pending(
        self,
        db: AsyncSession,
        school_ids: Optional[Iterable[str]] = None,
        limit: int = 100
    ) -> int:
        """
        Publish pending signals in creation order.

        Never raises: delivery problems are recorded on the row and logged,
        since progression has already been committed. With nobody subscribed
        the rows are left untouched, attempts included, for a later run.

        Returns:
            Number of signals delivered
        """
        if not self.bus.has_subscribers():
            logger.warning("No progression signal subscribers registered, outbox left pending")
            return 0

        try:
            records = await self.pending(db, school_ids=school_ids, limit=limit)
        except SQLAlchemyError as e:
            logger.error(f"Could not load pending progression signals: {e}")
            await db.rollback()
            return 0

        delivered = 0
        for record in records:
            record.attempts += 1
            try:
                await self.bus.publish(signal_from_record(record))
            except Exception as e:
                record.last_error = str(e)[:2000]
                logger.warning(
                    f"Signal {record.id} ({record.signal_type.value}) for school {record.school_id} "
                    f"not delivered, attempt {record.attempts}/{self.max_attempts}"
                )
                continue
            record.dispatched_at = datetime.utcnow()
            record.last_error = None
            delivered += 1

        try:
            await db.commit()
        except SQLAlchemyError as e:
            # Rows stay pending and will be published again
            logger.error(f"Could not mark progression signals dispatched: {e}")
            await db.rollback()

        return delivered
