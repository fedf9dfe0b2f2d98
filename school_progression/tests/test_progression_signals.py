"""
Signal Bus and Outbox Tests
"""
import pytest
from sqlalchemy import select

from school_progression.orm.evidence_requirement import ProgramStage
from school_progression.orm.progression_signal import ProgressionSignalRecord, SignalType
from school_progression.schemas.progression import AwardCompleted, StageCompleted
from school_progression.services.progression_signals import (
    LocalSignalBus,
    SignalDeliveryError,
    SignalDispatcher,
    record_signal,
    signal_from_record,
)


@pytest.mark.asyncio
class TestLocalSignalBus:

    async def test_sync_and_async_subscribers(self):
        bus = LocalSignalBus()
        seen = []

        async def async_subscriber(signal):
            seen.append(("async", signal.round_number))

        await bus.subscribe(lambda signal: seen.append(("sync", signal.round_number)))
        await bus.subscribe(async_subscriber)

        await bus.publish(AwardCompleted(school_id="s-1", round_number=2))

        assert sorted(seen) == [("async", 2), ("sync", 2)]
        assert bus.get_subscriber_count() == 2

    async def test_failing_subscriber_does_not_starve_others(self):
        bus = LocalSignalBus()
        seen = []

        def broken(signal):
            raise ValueError("no template")

        await bus.subscribe(broken)
        await bus.subscribe(seen.append)

        with pytest.raises(SignalDeliveryError) as exc_info:
            await bus.publish(StageCompleted(school_id="s-1", stage=ProgramStage.ACT, round_number=1))

        assert len(seen) == 1
        assert "no template" in str(exc_info.value)

    async def test_unsubscribe(self):
        bus = LocalSignalBus()
        seen = []
        await bus.subscribe(seen.append)
        await bus.unsubscribe(seen.append)

        await bus.publish(AwardCompleted(school_id="s-1", round_number=1))

        assert seen == []


@pytest.mark.asyncio
class TestOutbox:

    async def test_record_round_trip(self, db, school):
        record = record_signal(db, StageCompleted(school_id=school.id, stage=ProgramStage.INVESTIGATE, round_number=1))
        await db.commit()

        signal = signal_from_record(record)

        assert record.signal_type == SignalType.STAGE_COMPLETED
        assert isinstance(signal, StageCompleted)
        assert signal.stage == ProgramStage.INVESTIGATE
        assert signal.signal_id == record.id

    async def test_dispatch_gives_up_after_max_attempts(self, db, school):
        bus = LocalSignalBus()

        def broken(signal):
            raise RuntimeError("down")

        await bus.subscribe(broken)
        record_signal(db, AwardCompleted(school_id=school.id, round_number=1))
        await db.commit()

        dispatcher = SignalDispatcher(bus=bus, max_attempts=2)
        assert await dispatcher.dispatch_pending(db) == 0
        assert await dispatcher.dispatch_pending(db) == 0
        assert await dispatcher.dispatch_pending(db) == 0

        row = (await db.execute(select(ProgressionSignalRecord))).scalar_one()
        assert row.attempts == 2
        assert row.dispatched_at is None
        assert await dispatcher.pending(db) == []

    async def test_no_subscribers_leaves_rows_untouched(self, db, school):
        record_signal(db, AwardCompleted(school_id=school.id, round_number=1))
        await db.commit()

        assert await SignalDispatcher(bus=LocalSignalBus()).dispatch_pending(db) == 0

        row = (await db.execute(select(ProgressionSignalRecord))).scalar_one()
        assert row.dispatched_at is None
        assert row.attempts == 0

    async def test_dispatch_filters_by_school(self, db, make_school):
        first = await make_school("First")
        second = await make_school("Second")
        record_signal(db, AwardCompleted(school_id=first.id, round_number=1))
        record_signal(db, AwardCompleted(school_id=second.id, round_number=1))
        await db.commit()

        bus = LocalSignalBus()
        seen = []
        await bus.subscribe(seen.append)

        delivered = await SignalDispatcher(bus=bus).dispatch_pending(db, school_ids=[first.id])

        assert delivered == 1
        assert [s.school_id for s in seen] == [first.id]
