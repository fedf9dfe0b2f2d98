"""
Progression maintenance commands

recalculate, audit, repair and redeliver. None of these run in the request
path; they exist for operators after imports, catalog edits or outages of
a signal subscriber.
"""
import asyncio
import importlib
import json
from typing import List, Optional

from school_progression.database import AsyncSessionLocal, build_engine, init_db
from school_progression.services.progression_coordinator import get_coordinator
from school_progression.services.progression_signals import SignalDispatcher, get_signal_bus


def load_subscriber(path: str):
    """Resolve a "package.module:callable" path to a signal subscriber."""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Subscriber must look like package.module:callable, got {path!r}")
    subscriber = getattr(importlib.import_module(module_name), attr)
    if not callable(subscriber):
        raise ValueError(f"Subscriber {path} is not callable")
    return subscriber


class ProgressionCommand:
    """Progression CLI command handler."""

    def __init__(self, dry_run: bool = False, database_url: str = None, subscribers: Optional[List[str]] = None):
        self.dry_run = dry_run
        self.database_url = database_url
        self.subscribers = subscribers or []

    def execute(self, args) -> int:
        """Execute progression command."""
        handlers = {
            "recalculate": self._recalculate,
            "audit": self._audit,
            "repair": self._repair,
            "redeliver": self._redeliver,
        }
        handler = handlers.get(args.command)
        if handler is None:
            print(f"Error: Unknown command {args.command}")
            return 1

        try:
            return asyncio.run(self._with_session(handler, args))
        except Exception as e:
            print(f"Error: {e}")
            return 1

    async def _with_session(self, handler, args) -> int:
        bus = get_signal_bus()
        for path in self.subscribers:
            await bus.subscribe(load_subscriber(path))

        if not self.database_url:
            async with AsyncSessionLocal() as session:
                return await handler(session, args)

        from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

        engine = build_engine(self.database_url)
        try:
            await init_db(engine)
            session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            async with session_factory() as session:
                return await handler(session, args)
        finally:
            await engine.dispose()

    @staticmethod
    def _note_undelivered() -> None:
        if not get_signal_bus().has_subscribers():
            print("  No signal subscribers configured: new signals stay in the outbox for redeliver")

    async def _recalculate(self, session, args) -> int:
        print("=== Recalculate School Progression ===")

        if self.dry_run:
            print("[DRY RUN] Would recompute progression for every school")
            return 0

        summary = await get_coordinator().recalculate_all(session)
        print(f"✓ {summary['total']} schools checked, {summary['changed']} updated")
        self._note_undelivered()
        if summary["failed"]:
            print(f"✗ {len(summary['failed'])} failed: {', '.join(summary['failed'])}")
            return 1
        return 0

    async def _audit(self, session, args) -> int:
        from school_progression.services.round_service import audit_all

        audits, summary = await audit_all(session)

        if args.format == "json":
            print(json.dumps({
                "summary": summary.to_dict(),
                "schools": [audit.to_dict() for audit in audits if args.all or not audit.is_logical],
            }, indent=2))
            return 0

        print("=== Round Audit ===")
        print(f"  Total schools: {summary.total_schools}")
        print(f"  Logical: {summary.logical_schools}")
        print(f"  Illogical: {summary.illogical_schools}")
        for status, count in summary.by_issue_type.items():
            print(f"    {status}: {count}")
        for round_number, stats in sorted(summary.by_round.items()):
            print(
                f"  Round {round_number}: {stats['total']} schools, {stats['illogical']} illogical, "
                f"avg progress {stats['avg_progress']:.1f}%"
            )
        for audit in audits:
            if args.all or not audit.is_logical:
                print(f"  - {audit.school_id} ({audit.name}): {audit.status} {audit.issue or ''}")
        return 0

    async def _repair(self, session, args) -> int:
        from school_progression.services.round_service import repair_all

        print("=== Repair Round State ===")
        report = await repair_all(session, get_coordinator(), dry_run=self.dry_run)

        if self.dry_run:
            print(f"[DRY RUN] Would recompute {report['illogical']} of {report['checked']} schools")
            return 0

        print(f"✓ Repaired {len(report['fixed'])} of {report['illogical']} illogical schools")
        self._note_undelivered()
        if report["failed"]:
            print(f"✗ Failed: {', '.join(report['failed'])}")
            return 1
        return 0

    async def _redeliver(self, session, args) -> int:
        print("=== Redeliver Progression Signals ===")
        dispatcher = SignalDispatcher()

        if self.dry_run:
            pending = await dispatcher.pending(session, limit=args.limit)
            print(f"[DRY RUN] {len(pending)} signal(s) pending delivery")
            return 0

        if not dispatcher.bus.has_subscribers():
            pending = await dispatcher.pending(session, limit=args.limit)
            print(f"✗ No signal subscribers configured, {len(pending)} signal(s) left pending")
            print("  Pass --subscriber package.module:callable or set PROGRESSION_SIGNAL_SUBSCRIBERS")
            return 1

        delivered = await dispatcher.dispatch_pending(session, limit=args.limit)
        print(f"✓ Delivered {delivered} signal(s)")
        return 0
