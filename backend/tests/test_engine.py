"""
Tests for the conversation engine.

Validates:
1. Phase transitions for the direct and the two-phase (structure, then background job) paths
2. A turn the user cannot pay for changes nothing but the user's own message
3. Failed turns restore the previous phase and record last_error
4. Resent messages are not duplicated; concurrent turns are rejected
5. Conflicts against an existing trip are reported, then skipped on request
6. Restoring a conversation resumes at a stable phase and picks up finished jobs
7. Packing list and budget category agents write into the trip
"""

import asyncio
from datetime import date

import pytest
from sqlalchemy.exc import OperationalError

from backend.conversation.agents import PlannerTask
from backend.conversation.models import (
    ConversationKey,
    ConversationPhase,
    Message,
    PlannerMode,
    StartConversationRequest,
)
from backend.conversation.orchestrator import (
    ALLOWED_TRANSITIONS,
    MAX_TRANSCRIPT_MESSAGES,
    build_transcript,
)
from backend.errors import (
    InsufficientCreditsError,
    InvalidPhaseError,
    NotFoundError,
    PartialApplicationError,
    PlanValidationError,
    TransientUpstreamError,
    TurnInProgressError,
)
from backend.services.credits import CreditOperation
from backend.services.jobs import JobStatus
from backend.tests.fakes import conversation_reply, plan_reply, structure_reply
from planning.plan import PlanActivity, PlanBudgetCategory, PlanTrip, parse_plan
from planning.progress import ProgressStep

P = ConversationPhase

START = StartConversationRequest(
    destination="Switzerland",
    start_date=date(2026, 6, 1),
    end_date=date(2026, 6, 5),
    travelers_count=2,
)


def _existing_trip(itinerary, owner="user-1", activities=()):
    with itinerary.transaction() as db:
        trip_id = itinerary.create_trip(
            db, owner, PlanTrip(name="Zurich", destination="Zurich",
                                start_date=date(2026, 6, 1), end_date=date(2026, 6, 5)), "CHF",
        )
        for day, title in activities:
            day_id, _ = itinerary.get_or_create_day(db, trip_id, day)
            itinerary.add_activity(db, trip_id, day_id, PlanActivity(title=title), "CHF")
    return trip_id


async def _conversing(services, key):
    await services.engine.start_conversation(key, START)
    return await services.engine.send_message(key, "We love mountains and trains")


class TestStartAndMessages:
    """Test opening a conversation and exchanging turns."""

    async def test_start_greets_and_charges(self, services, create_key):
        session = await services.engine.start_conversation(create_key, START)
        assert session.phase == P.CONVERSING
        assert [m.role for m in session.messages] == ["user", "assistant"]
        assert "Switzerland" in session.messages[0].content
        assert session.messages[1].credits_cost == 1
        assert session.credits_balance_snapshot == 19

    async def test_start_twice_rejected(self, services, create_key):
        await services.engine.start_conversation(create_key, START)
        with pytest.raises(InvalidPhaseError):
            await services.engine.start_conversation(create_key, START)

    async def test_message_appends_reply_with_metadata(self, services, create_key):
        session = await _conversing(services, create_key)
        assert [m.role for m in session.messages] == ["user", "assistant", "user", "assistant"]
        assert session.last_metadata.ready_to_plan is True
        assert "<metadata>" not in session.messages[-1].content
        assert session.credits_balance_snapshot == 18

    async def test_message_before_start_rejected(self, services, create_key):
        with pytest.raises(InvalidPhaseError):
            await services.engine.send_message(create_key, "Hello?")

    async def test_zero_credit_message(self, services, create_key):
        """No credits: the turn is refused, phase and balance stay, no reply is appended."""
        await services.engine.start_conversation(create_key, START)
        balance = services.ledger.get_balance(create_key.user_id)
        services.ledger.charge(create_key.user_id, balance, CreditOperation.CONVERSATION)
        calls = len(services.llm.calls)

        with pytest.raises(InsufficientCreditsError):
            await services.engine.send_message(create_key, "Add a day in Bern")

        session = await services.store.get(create_key)
        assert session.phase == P.CONVERSING
        assert [m.role for m in session.messages] == ["user", "assistant", "user"]
        assert session.messages[-1].content == "Add a day in Bern"
        assert session.last_error.kind == "insufficient_credits"
        assert services.ledger.get_balance(create_key.user_id) == 0
        assert len(services.llm.calls) == calls

    async def test_transient_failure_restores_phase(self, services, create_key):
        await services.engine.start_conversation(create_key, START)
        services.llm.script(
            PlannerTask.CONVERSATION, TransientUpstreamError("busy"), TransientUpstreamError("busy"),
        )
        with pytest.raises(TransientUpstreamError):
            await services.engine.send_message(create_key, "Hello again")

        session = await services.store.get(create_key)
        assert session.phase == P.CONVERSING
        assert session.last_error.retryable is True
        assert services.ledger.get_balance(create_key.user_id) == 19

    async def test_resend_after_failure_does_not_duplicate(self, services, create_key):
        await services.engine.start_conversation(create_key, START)
        services.llm.script(
            PlannerTask.CONVERSATION, TransientUpstreamError("busy"), TransientUpstreamError("busy"),
        )
        with pytest.raises(TransientUpstreamError):
            await services.engine.send_message(create_key, "Hello again", client_message_id="m-1")

        session = await services.engine.send_message(create_key, "Hello again", client_message_id="m-1")
        assert [m.role for m in session.messages] == ["user", "assistant", "user", "assistant"]
        assert session.messages[2].id == "m-1"
        assert session.last_error is None

    async def test_replayed_message_returns_without_new_turn(self, services, create_key):
        await services.engine.start_conversation(create_key, START)
        await services.engine.send_message(create_key, "Trains please", client_message_id="m-2")
        calls = len(services.llm.calls)
        session = await services.engine.send_message(create_key, "Trains please", client_message_id="m-2")
        assert len(session.messages) == 4
        assert len(services.llm.calls) == calls

    async def test_concurrent_turn_rejected(self, services, create_key):
        await services.engine.start_conversation(create_key, START)
        services.llm.delay = 0.05
        results = await asyncio.gather(
            services.engine.send_message(create_key, "First"),
            services.engine.send_message(create_key, "Second"),
            return_exceptions=True,
        )
        assert sum(isinstance(r, TurnInProgressError) for r in results) == 1
        session = await services.store.get(create_key)
        assert [m.role for m in session.messages] == ["user", "assistant", "user", "assistant"]

    async def test_turn_locks_released(self, services, create_key):
        other = ConversationKey(user_id="user-2", trip_id=None, mode=PlannerMode.CREATE)
        await _conversing(services, create_key)
        await services.engine.start_conversation(other, START)
        assert services.engine._locks == {}

    async def test_memory_update_saved_and_hidden(self, services, create_key):
        services.llm.script(
            PlannerTask.CONVERSATION,
            conversation_reply("Noted! <memory_update>Vegetarian</memory_update>"),
        )
        session = await services.engine.start_conversation(create_key, START)
        assert "memory_update" not in session.messages[-1].content
        assert services.memory.get(create_key.user_id) == "Vegetarian"


class TestDirectPlanPath:
    """Test generate, preview, adjust and confirm of a full plan."""

    async def test_generate_requires_ready_to_plan(self, services, create_key):
        services.llm.script(PlannerTask.CONVERSATION, conversation_reply(ready=False), conversation_reply(ready=False))
        await _conversing(services, create_key)
        with pytest.raises(InvalidPhaseError):
            await services.engine.generate_plan(create_key)

    async def test_generate_preview_confirm(self, services, create_key):
        await _conversing(services, create_key)
        session = await services.engine.generate_plan(create_key)
        assert session.phase == P.PREVIEWING_PLAN
        assert session.plan.activity_count == 3

        session = await services.engine.confirm_plan(create_key)
        assert session.phase == P.COMPLETED
        assert session.execution_result.days_created == 2
        assert session.execution_result.activities_created == 3
        assert services.itinerary.get_trip(session.execution_result.trip_id)["owner_id"] == create_key.user_id

    async def test_reject_then_adjust(self, services, create_key):
        await _conversing(services, create_key)
        await services.engine.generate_plan(create_key)
        session = await services.engine.reject_plan(create_key)
        assert session.phase == P.PLAN_REVIEW
        assert session.plan is not None

        services.llm.script(PlannerTask.PLAN_GENERATION, plan_reply(days={"2026-06-01": ["Zoo"]}))
        session = await services.engine.adjust_plan(create_key, "Just the zoo")
        assert session.phase == P.PREVIEWING_PLAN
        assert [a.title for _, a in session.plan.iter_activities()] == ["Zoo"]

    async def test_hide_and_show_preview(self, services, create_key):
        await _conversing(services, create_key)
        await services.engine.generate_plan(create_key)
        assert (await services.engine.hide_preview(create_key)).phase == P.PLAN_REVIEW
        assert (await services.engine.show_preview(create_key)).phase == P.PREVIEWING_PLAN

    async def test_invalid_plan_restores_phase(self, services, create_key):
        await _conversing(services, create_key)
        services.llm.script(PlannerTask.PLAN_GENERATION, "nope", "still nope")
        with pytest.raises(PlanValidationError):
            await services.engine.generate_plan(create_key)
        session = await services.store.get(create_key)
        assert session.phase == P.CONVERSING
        assert session.last_error.kind == "validation"

    async def test_confirm_retry_after_partial_failure(self, services, create_key, monkeypatch):
        """A retry writes into the partly created trip without flagging its own activities."""
        await _conversing(services, create_key)
        await services.engine.generate_plan(create_key)

        def broken_stop(*args, **kwargs):
            raise OperationalError("INSERT INTO stops", {}, Exception("disk I/O error"))

        monkeypatch.setattr(services.itinerary, "add_stop", broken_stop)
        with pytest.raises(PartialApplicationError):
            await services.engine.confirm_plan(create_key)
        session = await services.store.get(create_key)
        assert session.phase == P.PREVIEWING_PLAN
        trip_id = session.execution_result.trip_id
        assert trip_id

        monkeypatch.undo()
        session = await services.engine.confirm_plan(create_key)
        assert session.phase == P.COMPLETED
        assert session.pending_conflicts is None
        assert session.execution_result.trip_id == trip_id
        assert session.execution_result.stops_created == 1
        titles = sorted(a.title for a in services.itinerary.list_activities(trip_id))
        assert titles == ["Fondue Dinner", "Lake Cruise", "Old Town Tour"]

    async def test_confirm_outside_preview_rejected(self, services, create_key):
        await _conversing(services, create_key)
        with pytest.raises(InvalidPhaseError):
            await services.engine.confirm_plan(create_key)


class TestStructurePath:
    """Test structure first, then activities in the background or in the foreground."""

    async def test_structure_then_background_job(self, services, create_key):
        await _conversing(services, create_key)
        session = await services.engine.generate_structure(create_key)
        assert session.phase == P.STRUCTURE_OVERVIEW
        assert session.structure.day_count == 5

        session = await services.engine.generate_all_via_server(create_key)
        assert session.phase == P.GENERATING_PLAN
        job = services.jobs.get_job(session.active_job_id, create_key.user_id)
        assert job.status == JobStatus.PENDING
        assert job.progress_step == ProgressStep.STRUCTURE

        # Client disconnects here; the worker finishes on its own
        finished = await services.jobs.run_once()
        assert finished.status == JobStatus.DONE
        assert finished.progress_step == ProgressStep.DONE
        assert finished.result.days_created == 5

        restored = await services.engine.load(create_key)
        assert restored.restored is True
        assert restored.phase == P.COMPLETED
        assert restored.execution_result.days_created == 5
        assert restored.active_job_id is None

        recent = services.jobs.get_recent_completed_job(create_key.user_id, PlannerMode.CREATE)
        assert recent.id == finished.id
        assert services.jobs.get_recent_completed_job(create_key.user_id, PlannerMode.CREATE) is None

    async def test_generate_all_twice_reuses_job(self, services, create_key):
        await _conversing(services, create_key)
        await services.engine.generate_structure(create_key)
        first = await services.engine.generate_all_via_server(create_key)
        with pytest.raises(InvalidPhaseError):
            await services.engine.generate_all_via_server(create_key)
        assert services.jobs.get_active_job(create_key).id == first.active_job_id

    async def test_generate_all_needs_credits_for_every_batch(self, services, create_key):
        await _conversing(services, create_key)
        await services.engine.generate_structure(create_key)
        balance = services.ledger.get_balance(create_key.user_id)
        services.ledger.charge(create_key.user_id, balance, CreditOperation.CONVERSATION)
        with pytest.raises(InsufficientCreditsError):
            await services.engine.generate_all_via_server(create_key)
        session = await services.store.get(create_key)
        assert session.phase == P.STRUCTURE_OVERVIEW
        assert services.jobs.get_active_job(create_key) is None

    async def test_client_side_activities_need_credits_for_every_batch(self, services, create_key):
        await _conversing(services, create_key)
        services.llm.script(PlannerTask.PLAN_STRUCTURE, structure_reply(days=8))
        await services.engine.generate_structure(create_key)
        balance = services.ledger.get_balance(create_key.user_id)
        services.ledger.charge(create_key.user_id, balance - 1, CreditOperation.CONVERSATION)

        with pytest.raises(InsufficientCreditsError) as exc:
            await services.engine.generate_activities_client_side(create_key)
        assert exc.value.required == 2
        assert services.ledger.get_balance(create_key.user_id) == 1
        assert services.llm.calls_for(PlannerTask.PLAN_ACTIVITIES) == 0

        session = await services.store.get(create_key)
        assert session.phase == P.STRUCTURE_OVERVIEW
        assert session.structure.day_count == 8
        assert session.plan is None
        assert session.last_error.kind == "insufficient_credits"

    async def test_failed_job_returns_to_structure_overview(self, services, create_key):
        await _conversing(services, create_key)
        await services.engine.generate_structure(create_key)
        await services.engine.generate_all_via_server(create_key)
        services.llm.script(PlannerTask.PLAN_ACTIVITIES, "garbage")
        await services.jobs.run_once()

        session = await services.engine.load(create_key)
        assert session.phase == P.STRUCTURE_OVERVIEW
        assert session.last_error.kind == "validation"

    async def test_client_side_activities(self, services, create_key):
        await _conversing(services, create_key)
        await services.engine.generate_structure(create_key)
        session = await services.engine.generate_activities_client_side(create_key)
        assert session.phase == P.PREVIEWING_PLAN
        assert session.plan.activity_count == 10
        assert session.structure is None

    async def test_structure_regenerated_from_overview(self, services, create_key):
        await _conversing(services, create_key)
        await services.engine.generate_structure(create_key)
        session = await services.engine.generate_structure(create_key)
        assert session.phase == P.STRUCTURE_OVERVIEW


class TestConflicts:
    """Test duplicate detection when enhancing an existing trip."""

    async def test_city_walking_tour(self, services):
        trip_id = _existing_trip(services.itinerary, activities=[(date(2026, 6, 2), "City Walking Tour")])
        key = ConversationKey(user_id="user-1", trip_id=trip_id, mode=PlannerMode.ENHANCE)
        await _conversing(services, key)
        services.llm.script(PlannerTask.PLAN_GENERATION, plan_reply(
            days={"2026-06-02": ["City Walking Tour", "Lake Cruise"], "2026-06-03": ["Fondue Dinner"]},
            trip=False,
        ))
        await services.engine.generate_plan(key)

        session = await services.engine.confirm_plan(key)
        assert session.phase == P.PREVIEWING_PLAN
        assert session.pending_conflicts == ["City Walking Tour"]

        session = await services.engine.confirm_with_conflicts(key)
        assert session.phase == P.COMPLETED
        assert session.execution_result.trip_id == trip_id
        assert session.execution_result.activities_created == 2
        assert session.execution_result.activities_skipped == 1
        titles = [a.title for a in services.itinerary.list_activities(trip_id)]
        assert titles.count("City Walking Tour") == 1

    async def test_repeated_confirm_reports_same_conflicts(self, services):
        trip_id = _existing_trip(services.itinerary, activities=[
            (date(2026, 6, 1), "Lake Cruise"), (date(2026, 6, 2), "Old Town Tour"),
        ])
        key = ConversationKey(user_id="user-1", trip_id=trip_id, mode=PlannerMode.ENHANCE)
        await _conversing(services, key)
        services.llm.script(PlannerTask.PLAN_GENERATION, plan_reply(trip=False))
        await services.engine.generate_plan(key)

        first = (await services.engine.confirm_plan(key)).pending_conflicts
        second = (await services.engine.confirm_plan(key)).pending_conflicts
        assert first == second == ["Old Town Tour", "Lake Cruise"]
        assert len(services.itinerary.list_activities(trip_id)) == 2

    async def test_dismiss_conflicts(self, services):
        trip_id = _existing_trip(services.itinerary, activities=[(date(2026, 6, 1), "Lake Cruise")])
        key = ConversationKey(user_id="user-1", trip_id=trip_id, mode=PlannerMode.ENHANCE)
        await _conversing(services, key)
        services.llm.script(PlannerTask.PLAN_GENERATION, plan_reply(trip=False))
        await services.engine.generate_plan(key)
        await services.engine.confirm_plan(key)

        session = await services.engine.dismiss_conflicts(key)
        assert session.pending_conflicts is None
        assert session.phase == P.PREVIEWING_PLAN

    async def test_enhance_start_loads_trip(self, services):
        trip_id = _existing_trip(services.itinerary, activities=[(date(2026, 6, 1), "Museum")])
        key = ConversationKey(user_id="user-1", trip_id=trip_id, mode=PlannerMode.ENHANCE)
        session = await services.engine.start_conversation(key, StartConversationRequest())
        assert session.context.destination == "Zurich"
        assert [a.title for a in session.context.existing_data.activities] == ["Museum"]
        assert "extend" in session.messages[0].content

    async def test_enhance_someone_elses_trip(self, services):
        trip_id = _existing_trip(services.itinerary, owner="user-2")
        key = ConversationKey(user_id="user-1", trip_id=trip_id, mode=PlannerMode.ENHANCE)
        with pytest.raises(NotFoundError):
            await services.engine.start_conversation(key, StartConversationRequest())


class TestRestoreAndReset:
    """Test resuming persisted conversations."""

    @pytest.mark.parametrize("stored, plan, expected", [
        (P.GENERATING_STRUCTURE, False, P.CONVERSING),
        (P.GENERATING_PLAN, False, P.CONVERSING),
        (P.GENERATING_PLAN, True, P.PLAN_REVIEW),
        (P.EXECUTING_PLAN, True, P.PREVIEWING_PLAN),
        (P.PLAN_REVIEW, True, P.PLAN_REVIEW),
    ])
    async def test_transient_phase_normalised(self, services, create_key, stored, plan, expected):
        session = await services.store.get_or_create(create_key)
        session.messages = [Message(role="user", content="Hi"), Message(role="assistant", content="Hello")]
        session.phase = stored
        if plan:
            session.plan = parse_plan(plan_reply())
        await services.store.save(session)

        loaded = await services.engine.load(create_key)
        assert loaded.phase == expected
        assert loaded.restored is True

    async def test_fresh_conversation_not_restored(self, services, create_key):
        session = await services.engine.load(create_key)
        assert session.phase == P.IDLE
        assert session.restored is False
        assert session.credits_balance_snapshot == 20

    async def test_reset_archives_messages(self, services, create_key):
        await _conversing(services, create_key)
        session = await services.engine.reset(create_key)
        assert session.phase == P.IDLE
        assert session.messages == []
        assert len(session.archived_messages) == 4
        again = await services.engine.start_conversation(create_key, START)
        assert again.phase == P.CONVERSING

    async def test_save_now(self, services, create_key):
        await _conversing(services, create_key)
        session = await services.engine.save_now(create_key)
        assert len(session.messages) == 4


class TestAgents:
    """Test the packing list and budget category agents."""

    async def test_agents_need_a_trip(self, services, create_key):
        await _conversing(services, create_key)
        with pytest.raises(InvalidPhaseError):
            await services.engine.generate_packing_list(create_key)

    async def test_packing_list_after_create(self, services, create_key):
        await _conversing(services, create_key)
        await services.engine.generate_plan(create_key)
        done = await services.engine.confirm_plan(create_key)

        response = await services.engine.generate_packing_list(create_key)
        assert response.trip_id == done.execution_result.trip_id
        assert response.items_created == 3
        again = await services.engine.generate_packing_list(create_key)
        assert again.items_created == 0

    async def test_budget_categories_skip_existing(self, services):
        trip_id = _existing_trip(services.itinerary)
        with services.itinerary.transaction() as db:
            services.itinerary.add_budget_category(db, trip_id, PlanBudgetCategory(name="Food"))
        key = ConversationKey(user_id="user-1", trip_id=trip_id, mode=PlannerMode.ENHANCE)
        await _conversing(services, key)

        response = await services.engine.generate_budget_categories(key)
        assert [c.name for c in response.categories] == ["Activities", "Souvenirs"]
        assert response.categories_created == 2
        assert sorted(services.itinerary.list_budget_category_names(trip_id)) == ["Activities", "Food", "Souvenirs"]


class TestTranscript:
    """Test what the conversation model is shown."""

    def test_long_history_trimmed(self):
        messages = [Message(role="user" if i % 2 == 0 else "assistant", content=f"m{i}") for i in range(30)]
        transcript = build_transcript(messages)
        assert len(transcript) == MAX_TRANSCRIPT_MESSAGES
        assert transcript[0]["content"] == "m0"
        assert transcript[-1]["content"] == "m29"

    def test_consecutive_roles_merged(self):
        messages = [Message(role="user", content="a"), Message(role="user", content="b")]
        assert build_transcript(messages) == [{"role": "user", "content": "a\n\nb"}]

    def test_completed_is_terminal(self):
        assert ALLOWED_TRANSITIONS[P.COMPLETED] == set()
