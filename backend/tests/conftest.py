"""Shared fixtures: a temporary SQLite database per test and the planner services wired to a fake model."""

import os
import sys
import tempfile
from types import SimpleNamespace

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(__file__))))

# Must be set before backend.database / backend.main are imported
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(tempfile.mkdtemp(), 'routes.db')}"
os.environ["PLAN_WORKER_ENABLED"] = "0"
os.environ["LLM_RETRY_DELAY_SECONDS"] = "0"
os.environ["RATE_LIMIT_PER_MINUTE"] = "10000"
os.environ["RATE_LIMIT_AI_PER_MINUTE"] = "10000"
os.environ["RATE_LIMIT_AUTH_PER_MINUTE"] = "10000"

from backend.ai.generators import MeteredModel, PlanGenerator
from backend.conversation.models import ConversationKey, PlannerMode
from backend.conversation.orchestrator import PlannerEngine
from backend.conversation.session_store import SQLiteSessionStore
from backend.database import create_session_factory, init_db
from backend.services.credits import CreditLedger
from backend.services.itinerary_store import ItineraryStore
from backend.services.jobs import JobExecutor
from backend.services.memory import TravellerMemoryStore
from backend.services.plan_applier import PlanApplier
from backend.tests.fakes import FakeLLM
from planning.conflicts import ConflictPolicy


@pytest.fixture
def session_factory(tmp_path):
    engine, factory = create_session_factory(f"sqlite:///{tmp_path / 'planner.db'}")
    init_db(bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def services(session_factory, fake_llm):
    """Every planner collaborator over one database, as main.wire_services builds them."""
    ledger = CreditLedger(session_factory, initial_credits=20, monthly_quota=20)
    itinerary = ItineraryStore(session_factory)
    memory = TravellerMemoryStore(session_factory)
    metered = MeteredModel(fake_llm, ledger, retry_delay=0)
    generator = PlanGenerator(metered, memory)
    applier = PlanApplier(itinerary)
    jobs = JobExecutor(
        generator, applier, itinerary, session_factory,
        conflict_policy=ConflictPolicy(), recent_window_hours=24, poll_seconds=0,
    )
    store = SQLiteSessionStore(session_factory)
    engine = PlannerEngine(
        store=store,
        ledger=ledger,
        metered=metered,
        generator=generator,
        applier=applier,
        itinerary=itinerary,
        jobs=jobs,
        memory=memory,
        conflict_policy=ConflictPolicy(),
    )
    return SimpleNamespace(
        llm=fake_llm,
        ledger=ledger,
        itinerary=itinerary,
        memory=memory,
        metered=metered,
        generator=generator,
        applier=applier,
        jobs=jobs,
        store=store,
        engine=engine,
        session_factory=session_factory,
    )


@pytest.fixture
def create_key():
    return ConversationKey(user_id="user-1", trip_id=None, mode=PlannerMode.CREATE)
