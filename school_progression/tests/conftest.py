"""
Shared fixtures for progression tests.

Each test gets its own file-backed SQLite database so concurrent sessions
use separate connections, a fresh coordinator and a fresh signal bus.
"""
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from school_progression.config.feature_flags import FeatureFlags
from school_progression.database import build_engine, init_db
from school_progression.orm.evidence_requirement import EvidenceRequirement, ProgramStage
from school_progression.orm.school import School
from school_progression.services.progression_coordinator import ProgressionCoordinator, set_coordinator
from school_progression.services.progression_signals import SignalBusManager, SignalDispatcher


@pytest_asyncio.fixture
async def engine(tmp_path):
    test_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'progression_test.db'}")
    await init_db(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def received_signals():
    """Signals delivered to a subscriber on the process bus."""
    SignalBusManager.reset()
    received = []
    await SignalBusManager.get_bus().subscribe(received.append)
    yield received
    SignalBusManager.reset()


@pytest.fixture
def coordinator(received_signals):
    instance = ProgressionCoordinator(dispatcher=SignalDispatcher())
    set_coordinator(instance)
    yield instance
    set_coordinator(None)


@pytest.fixture(autouse=True)
def default_flags(monkeypatch):
    monkeypatch.setattr(FeatureFlags, "FEATURE_AUTO_APPROVE_ADMIN_EVIDENCE", True)
    monkeypatch.setattr(FeatureFlags, "FEATURE_REQUIRE_EVIDENCE_FOR_EMPTY_STAGES", False)
    monkeypatch.setattr(FeatureFlags, "FEATURE_SIGNAL_DISPATCH", True)
    monkeypatch.setattr(FeatureFlags, "OVERRIDE_TOGGLE_MAX_ATTEMPTS", 3)


@pytest.fixture
def make_school(db):
    async def _make(name: str = "Green Valley School", current_round: int = 1) -> School:
        school = School(name=name, country="PT", current_round=current_round)
        db.add(school)
        await db.commit()
        return school
    return _make


@pytest.fixture
def make_requirement(db):
    async def _make(stage: ProgramStage, order_index: int = 0) -> EvidenceRequirement:
        requirement = EvidenceRequirement(stage=stage, order_index=order_index, resource_refs=[])
        db.add(requirement)
        await db.commit()
        return requirement
    return _make


@pytest_asyncio.fixture
async def school(make_school):
    return await make_school()


@pytest_asyncio.fixture
async def inspire_requirements(make_requirement):
    """Two inspire requirements, none for investigate or act."""
    first = await make_requirement(ProgramStage.INSPIRE, 0)
    second = await make_requirement(ProgramStage.INSPIRE, 1)
    return first, second
