import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from backend.ai import prompts
from backend.ai.generators import MeteredModel, PlanGenerator, build_preferences
from backend.conversation.agents import PlannerTask
from backend.conversation.models import (
    BudgetCategoriesResponse,
    ConversationKey,
    ConversationPhase,
    ConversationSession,
    ErrorInfo,
    ExecutionResult,
    Message,
    PackingListResponse,
    PlannerMode,
    StartConversationRequest,
    TripContext,
)
from backend.conversation.turn_parser import parse_assistant_reply
from backend.errors import (
    InsufficientCreditsError,
    InvalidPhaseError,
    NotFoundError,
    PartialApplicationError,
    PlannerError,
    TurnInProgressError,
)
from backend.services.credits import CreditLedger, CreditOperation, credit_cost
from backend.services.itinerary_store import ItineraryStore
from backend.services.jobs import JobExecutor, JobStatus
from backend.services.memory import TravellerMemoryStore
from backend.services.plan_applier import PlanApplier
from planning.conflicts import ConflictPolicy, find_conflicts
from planning.plan import merge_structure

logger = logging.getLogger(__name__)

P = ConversationPhase

ALLOWED_TRANSITIONS: dict[ConversationPhase, set[ConversationPhase]] = {
    P.IDLE: {P.CONVERSING},
    P.CONVERSING: {P.CONVERSING, P.GENERATING_PLAN, P.GENERATING_STRUCTURE},
    P.PLAN_REVIEW: {P.CONVERSING, P.GENERATING_PLAN, P.PREVIEWING_PLAN},
    P.GENERATING_STRUCTURE: {P.STRUCTURE_OVERVIEW},
    P.STRUCTURE_OVERVIEW: {P.GENERATING_PLAN, P.GENERATING_STRUCTURE},
    P.GENERATING_PLAN: {P.PREVIEWING_PLAN, P.COMPLETED},
    P.PREVIEWING_PLAN: {P.EXECUTING_PLAN, P.PLAN_REVIEW},
    P.EXECUTING_PLAN: {P.COMPLETED},
    P.COMPLETED: set(),
}

# Transcript limits for the conversation model
MAX_TRANSCRIPT_MESSAGES = 12
CHARS_PER_TOKEN = 3.8
TOKEN_WARNING_THRESHOLD = 15000


def estimate_tokens(messages: list[Message]) -> int:
    return int(sum(len(m.content) for m in messages) / CHARS_PER_TOKEN)


def build_transcript(messages: list[Message]) -> list[dict]:
    """First message plus the most recent ones, with consecutive same-role turns merged."""
    if len(messages) > MAX_TRANSCRIPT_MESSAGES:
        messages = messages[:1] + messages[-(MAX_TRANSCRIPT_MESSAGES - 1):]
    transcript: list[dict] = []
    for message in messages:
        if transcript and transcript[-1]["role"] == message.role:
            transcript[-1]["content"] += "\n\n" + message.content
        else:
            transcript.append({"role": message.role, "content": message.content})
    return transcript


class PlannerEngine:
    """Drives one conversation per (user, trip, mode) through the planning phases.

    Every public operation takes the conversation key explicitly, runs under
    that key's turn lock and persists the session before returning. Failed
    operations restore the phase they started from and record ``last_error``.
    """

    def __init__(
        self,
        store,
        ledger: CreditLedger,
        metered: MeteredModel,
        generator: PlanGenerator,
        applier: PlanApplier,
        itinerary: ItineraryStore,
        jobs: JobExecutor,
        memory: TravellerMemoryStore,
        conflict_policy: Optional[ConflictPolicy] = None,
    ):
        self.store = store
        self.ledger = ledger
        self.metered = metered
        self.generator = generator
        self.applier = applier
        self.itinerary = itinerary
        self.jobs = jobs
        self.memory = memory
        self.conflict_policy = conflict_policy or ConflictPolicy.from_env()
        self._locks: dict[tuple[str, str, str], asyncio.Lock] = {}

    # --- Plumbing ---

    @asynccontextmanager
    async def _turn(self, key: ConversationKey):
        """Serialize operations per conversation; a concurrent one is rejected, not queued."""
        lock_key = key.as_tuple()
        lock = self._locks.setdefault(lock_key, asyncio.Lock())
        if lock.locked():
            raise TurnInProgressError()
        try:
            async with lock:
                yield
        finally:
            if not lock.locked() and self._locks.get(lock_key) is lock:
                del self._locks[lock_key]

    def _is_busy(self, key: ConversationKey) -> bool:
        lock = self._locks.get(key.as_tuple())
        return lock is not None and lock.locked()

    def _transition(self, session: ConversationSession, target: ConversationPhase) -> None:
        if target not in ALLOWED_TRANSITIONS[session.phase]:
            raise InvalidPhaseError(f"Cannot go from '{session.phase.value}' to '{target.value}'.")
        logger.info(f"Conversation {session.id}: {session.phase.value} -> {target.value}")
        session.phase = target

    def _require(self, session: ConversationSession, *phases: ConversationPhase) -> None:
        if session.phase not in phases:
            allowed = ", ".join(p.value for p in phases)
            raise InvalidPhaseError(f"Not possible in phase '{session.phase.value}' (needs {allowed}).")

    async def _fail(self, session: ConversationSession, phase: ConversationPhase, error: PlannerError) -> None:
        session.phase = phase
        details = error.to_dict()
        session.last_error = ErrorInfo(
            kind=error.kind,
            message=error.message,
            retryable=error.retryable,
            details={k: v for k, v in details.items() if k not in ("kind", "message", "retryable")},
        )
        await self.store.save(session)

    async def _finish(self, session: ConversationSession) -> ConversationSession:
        session.last_error = None
        session.credits_balance_snapshot = self.ledger.get_balance(session.user_id)
        await self.store.save(session)
        return session

    def _target_trip_id(self, session: ConversationSession) -> Optional[str]:
        """The trip to write into: the keyed trip, or the one this conversation created."""
        if session.trip_id:
            return session.trip_id
        if session.execution_result and session.execution_result.trip_id:
            return session.execution_result.trip_id
        return None

    def _generation_context(self, session: ConversationSession) -> TripContext:
        context = session.context.model_copy(deep=True)
        context.preferences = build_preferences(context, session.messages, session.last_metadata)
        if session.last_metadata and session.last_metadata.trip_type:
            context.trip_type = session.last_metadata.trip_type
        return context

    # --- Load / restore ---

    async def load(self, key: ConversationKey) -> ConversationSession:
        """Load or open the conversation for ``key`` and reconcile it with its job."""
        session = await self.store.get_or_create(key)
        session.restored = bool(session.messages)
        if not self._is_busy(key):
            self._sync_job(session)
            self._normalise_phase(session)
        session.credits_balance_snapshot = self.ledger.get_balance(key.user_id)
        await self.store.save(session)
        return session

    def _sync_job(self, session: ConversationSession) -> None:
        if not session.active_job_id:
            return
        try:
            job = self.jobs.get_job(session.active_job_id, session.user_id)
        except NotFoundError:
            session.active_job_id = None
            return
        if job.status == JobStatus.DONE:
            session.phase = P.COMPLETED
            session.execution_result = job.result
            session.active_job_id = None
            session.last_error = None
        elif job.status == JobStatus.ERROR:
            session.phase = P.STRUCTURE_OVERVIEW if session.structure else P.CONVERSING
            session.last_error = ErrorInfo(kind=job.error_kind or "internal", message=job.error or "")
            if job.result:
                session.execution_result = job.result
            session.active_job_id = None

    def _normalise_phase(self, session: ConversationSession) -> None:
        """A transient foreground phase outlived its request; resume at the last stable phase."""
        if session.phase == P.GENERATING_STRUCTURE:
            session.phase = P.CONVERSING
        elif session.phase == P.GENERATING_PLAN and not session.active_job_id:
            if session.plan:
                session.phase = P.PLAN_REVIEW
            elif session.structure:
                session.phase = P.STRUCTURE_OVERVIEW
            else:
                session.phase = P.CONVERSING
        elif session.phase == P.EXECUTING_PLAN:
            session.phase = P.PREVIEWING_PLAN

    async def save_now(self, key: ConversationKey) -> ConversationSession:
        session = await self.store.get(key)
        if session is None:
            return await self.load(key)
        await self.store.save(session)
        return session

    # --- Conversation turns ---

    async def _assistant_turn(self, session: ConversationSession, operation: CreditOperation) -> None:
        """Ask the model for the next reply and append it. Raises before any append on failure."""
        system = prompts.build_conversation_system(session.context, self.memory.get(session.user_id))
        transcript = prompts.build_conversation_messages(build_transcript(session.messages))
        result = await self.metered.call(
            session.user_id, operation, PlannerTask.CONVERSATION, system, transcript, session.trip_id,
        )
        reply = parse_assistant_reply(result.completion.text)
        if reply.memory_update:
            self.memory.save(session.user_id, reply.memory_update)

        session.messages.append(Message(
            role="assistant",
            content=reply.text,
            credits_cost=result.credits,
            credits_after=result.balance,
        ))
        session.last_metadata = reply.metadata
        if reply.metadata.trip_type:
            session.context.trip_type = reply.metadata.trip_type
        session.token_warning = estimate_tokens(session.messages) > TOKEN_WARNING_THRESHOLD

    async def start_conversation(self, key: ConversationKey, request: StartConversationRequest) -> ConversationSession:
        async with self._turn(key):
            session = await self.store.get_or_create(key)
            self._require(session, P.IDLE)

            context = TripContext(**request.model_dump(), mode=key.mode, trip_id=key.trip_id)
            if key.mode == PlannerMode.ENHANCE:
                trip = self.itinerary.get_trip(key.trip_id) if key.trip_id else None
                if trip is None or trip["owner_id"] != key.user_id:
                    raise NotFoundError("Trip not found.")
                context.destination = context.destination or trip["destination"]
                context.start_date = context.start_date or trip["start_date"]
                context.end_date = context.end_date or trip["end_date"]
                context.trip_name = context.trip_name or trip["name"]
                context.currency = trip["currency"] or context.currency
                context.existing_data = self.itinerary.summarize(key.trip_id)
            session.context = context

            if not session.messages:
                session.messages.append(Message(role="user", content=prompts.build_greeting(context)))
            await self.store.save(session)

            try:
                await self._assistant_turn(session, CreditOperation.GREETING)
            except PlannerError as e:
                await self._fail(session, P.IDLE, e)
                raise
            self._transition(session, P.CONVERSING)
            return await self._finish(session)

    async def send_message(
        self,
        key: ConversationKey,
        content: str,
        client_message_id: Optional[str] = None,
    ) -> ConversationSession:
        async with self._turn(key):
            session = await self.store.get_or_create(key)
            self._require(session, P.CONVERSING, P.PLAN_REVIEW)
            prior = session.phase

            if not self._append_user_message(session, content, client_message_id):
                # Replay of a turn that already has its reply
                return session
            await self.store.save(session)

            try:
                await self._assistant_turn(session, CreditOperation.CONVERSATION)
            except PlannerError as e:
                await self._fail(session, prior, e)
                raise
            self._transition(session, P.CONVERSING)
            return await self._finish(session)

    def _append_user_message(
        self,
        session: ConversationSession,
        content: str,
        client_message_id: Optional[str],
    ) -> bool:
        """Append the user's message unless this is a resend. False if the turn already completed."""
        if client_message_id:
            for index, message in enumerate(session.messages):
                if message.id == client_message_id:
                    answered = any(m.role == "assistant" for m in session.messages[index + 1:])
                    return not answered
        last = session.messages[-1] if session.messages else None
        if last and last.role == "user" and last.content == content:
            return True
        message = Message(role="user", content=content)
        if client_message_id:
            message.id = client_message_id
        session.messages.append(message)
        return True

    # --- Generation ---

    async def generate_structure(self, key: ConversationKey) -> ConversationSession:
        async with self._turn(key):
            session = await self.store.get_or_create(key)
            prior = session.phase
            self._transition(session, P.GENERATING_STRUCTURE)
            await self.store.save(session)

            try:
                context = self._generation_context(session)
                generated = await self.generator.generate_structure(session.user_id, context, context.preferences)
            except PlannerError as e:
                await self._fail(session, prior, e)
                raise
            session.structure = generated.value
            session.plan = None
            self._transition(session, P.STRUCTURE_OVERVIEW)
            return await self._finish(session)

    async def _require_activity_credits(self, session: ConversationSession) -> None:
        """Every activity batch must be affordable before the first one is charged."""
        required = credit_cost(CreditOperation.PLAN_ACTIVITIES) * len(session.structure.day_batches())
        balance = self.ledger.get_balance(session.user_id)
        if balance < required:
            error = InsufficientCreditsError(required=required, balance=balance)
            await self._fail(session, session.phase, error)
            raise error

    async def generate_all_via_server(self, key: ConversationKey) -> ConversationSession:
        """Hand activity generation and application to the background worker."""
        async with self._turn(key):
            session = await self.store.get_or_create(key)
            self._require(session, P.STRUCTURE_OVERVIEW)
            if session.structure is None:
                raise InvalidPhaseError("Generate the trip structure first.")

            await self._require_activity_credits(session)
            job = self.jobs.create_job(key, self._generation_context(session), session.messages, session.structure)
            session.active_job_id = job.id
            self._transition(session, P.GENERATING_PLAN)
            return await self._finish(session)

    async def generate_activities_client_side(self, key: ConversationKey) -> ConversationSession:
        """Foreground activity generation; the caller waits for the whole plan."""
        async with self._turn(key):
            session = await self.store.get_or_create(key)
            self._require(session, P.STRUCTURE_OVERVIEW)
            if session.structure is None:
                raise InvalidPhaseError("Generate the trip structure first.")
            await self._require_activity_credits(session)
            prior = session.phase
            self._transition(session, P.GENERATING_PLAN)
            await self.store.save(session)

            try:
                context = self._generation_context(session)
                generated = await self.generator.generate_activities(
                    session.user_id, context, context.preferences, session.structure,
                )
            except PlannerError as e:
                await self._fail(session, prior, e)
                raise
            session.plan = merge_structure(session.structure, generated.value)
            session.structure = None
            session.pending_conflicts = None
            self._transition(session, P.PREVIEWING_PLAN)
            return await self._finish(session)

    async def generate_plan(self, key: ConversationKey) -> ConversationSession:
        """Direct path: skip the structure stage and generate the full plan in one call."""
        async with self._turn(key):
            session = await self.store.get_or_create(key)
            self._require(session, P.CONVERSING, P.PLAN_REVIEW)
            if session.phase == P.CONVERSING and not (session.last_metadata and session.last_metadata.ready_to_plan):
                raise InvalidPhaseError("The conversation is not ready for planning yet.")
            prior = session.phase
            self._transition(session, P.GENERATING_PLAN)
            await self.store.save(session)

            try:
                context = self._generation_context(session)
                generated = await self.generator.generate_plan(session.user_id, context, context.preferences)
            except PlannerError as e:
                await self._fail(session, prior, e)
                raise
            session.plan = generated.value
            session.structure = None
            session.pending_conflicts = None
            self._transition(session, P.PREVIEWING_PLAN)
            return await self._finish(session)

    async def adjust_plan(self, key: ConversationKey, instructions: str) -> ConversationSession:
        async with self._turn(key):
            session = await self.store.get_or_create(key)
            self._require(session, P.PLAN_REVIEW)
            if session.plan is None:
                raise InvalidPhaseError("There is no plan to adjust.")
            prior = session.phase
            self._transition(session, P.GENERATING_PLAN)
            await self.store.save(session)

            try:
                context = self._generation_context(session)
                generated = await self.generator.adjust_plan(
                    session.user_id, context, context.preferences, session.plan, instructions,
                )
            except PlannerError as e:
                await self._fail(session, prior, e)
                raise
            session.plan = generated.value
            session.pending_conflicts = None
            self._transition(session, P.PREVIEWING_PLAN)
            return await self._finish(session)

    # --- Preview, conflicts, execution ---

    def _current_conflicts(self, session: ConversationSession) -> list[str]:
        # Only the keyed trip predates this plan. A trip left behind by a
        # partial apply holds this plan's own activities; the applier dedupes those.
        if not session.trip_id or session.plan is None:
            return []
        return find_conflicts(session.plan, self.itinerary.list_activities(session.trip_id), self.conflict_policy)

    async def confirm_plan(self, key: ConversationKey) -> ConversationSession:
        """Execute the plan, or stop with pending_conflicts for the user to decide."""
        async with self._turn(key):
            session = await self.store.get_or_create(key)
            self._require(session, P.PREVIEWING_PLAN)
            if session.plan is None:
                raise InvalidPhaseError("There is no plan to confirm.")

            conflicts = self._current_conflicts(session)
            if conflicts:
                logger.info(f"Conversation {session.id}: {len(conflicts)} conflicting activities, awaiting decision")
                session.pending_conflicts = conflicts
                return await self._finish(session)
            return await self._execute(session, skip_titles=[])

    async def confirm_with_conflicts(self, key: ConversationKey) -> ConversationSession:
        """Execute while skipping every activity that duplicates one on the trip."""
        async with self._turn(key):
            session = await self.store.get_or_create(key)
            self._require(session, P.PREVIEWING_PLAN)
            if session.plan is None:
                raise InvalidPhaseError("There is no plan to confirm.")
            return await self._execute(session, skip_titles=self._current_conflicts(session))

    async def dismiss_conflicts(self, key: ConversationKey) -> ConversationSession:
        async with self._turn(key):
            session = await self.store.get_or_create(key)
            self._require(session, P.PREVIEWING_PLAN)
            session.pending_conflicts = None
            return await self._finish(session)

    async def _execute(self, session: ConversationSession, skip_titles: list[str]) -> ConversationSession:
        prior = session.phase
        self._transition(session, P.EXECUTING_PLAN)
        session.pending_conflicts = None
        await self.store.save(session)

        try:
            result = self.applier.apply(
                session.plan,
                owner_id=session.user_id,
                trip_id=self._target_trip_id(session),
                currency=session.context.currency,
                skip_titles=skip_titles,
            )
        except PartialApplicationError as e:
            # Keep the partial trip id so a retry writes into the same trip
            session.execution_result = ExecutionResult(**e.partial_result)
            await self._fail(session, prior, e)
            raise
        except PlannerError as e:
            await self._fail(session, prior, e)
            raise
        session.execution_result = result
        self._transition(session, P.COMPLETED)
        return await self._finish(session)

    async def reject_plan(self, key: ConversationKey) -> ConversationSession:
        """Leave the preview; the plan is kept for re-entry or adjustment."""
        async with self._turn(key):
            session = await self.store.get_or_create(key)
            self._require(session, P.PREVIEWING_PLAN)
            session.pending_conflicts = None
            self._transition(session, P.PLAN_REVIEW)
            return await self._finish(session)

    hide_preview = reject_plan

    async def show_preview(self, key: ConversationKey) -> ConversationSession:
        async with self._turn(key):
            session = await self.store.get_or_create(key)
            self._require(session, P.PLAN_REVIEW)
            if session.plan is None:
                raise InvalidPhaseError("There is no plan to show.")
            self._transition(session, P.PREVIEWING_PLAN)
            return await self._finish(session)

    async def reset(self, key: ConversationKey) -> ConversationSession:
        """Return to idle, keeping the old messages archived. A running job is not cancelled."""
        async with self._turn(key):
            session = await self.store.get_or_create(key)
            session.archived_messages.extend(session.messages)
            session.messages = []
            session.phase = P.IDLE
            session.last_metadata = None
            session.context = TripContext(mode=key.mode, trip_id=key.trip_id)
            session.structure = None
            session.plan = None
            session.pending_conflicts = None
            session.execution_result = None
            session.active_job_id = None
            session.token_warning = False
            session.restored = False
            logger.info(f"Conversation {session.id} reset")
            return await self._finish(session)

    # --- Agent artifacts ---

    def _agent_trip(self, session: ConversationSession) -> str:
        trip_id = self._target_trip_id(session)
        if not trip_id:
            raise InvalidPhaseError("This needs a trip; create the trip first.")
        return trip_id

    async def generate_packing_list(self, key: ConversationKey) -> PackingListResponse:
        async with self._turn(key):
            session = await self.store.get_or_create(key)
            trip_id = self._agent_trip(session)
            context = session.context.model_copy(update={"trip_id": trip_id})
            context.existing_data = self.itinerary.summarize(trip_id)

            try:
                generated = await self.generator.generate_packing_list(session.user_id, context)
            except PlannerError as e:
                await self._fail(session, session.phase, e)
                raise
            created = self.itinerary.add_packing_items(trip_id, generated.value)
            await self._finish(session)
            return PackingListResponse(
                trip_id=trip_id,
                items=generated.value,
                items_created=created,
                credits_balance=session.credits_balance_snapshot,
            )

    async def generate_budget_categories(self, key: ConversationKey) -> BudgetCategoriesResponse:
        async with self._turn(key):
            session = await self.store.get_or_create(key)
            trip_id = self._agent_trip(session)
            context = session.context.model_copy(update={"trip_id": trip_id})
            existing = self.itinerary.list_budget_category_names(trip_id)

            try:
                generated = await self.generator.generate_budget_categories(session.user_id, context, existing)
            except PlannerError as e:
                await self._fail(session, session.phase, e)
                raise

            created = 0
            with self.itinerary.transaction() as db:
                for category in generated.value:
                    if not self.itinerary.budget_category_exists(db, trip_id, category.name):
                        self.itinerary.add_budget_category(db, trip_id, category)
                        created += 1
            await self._finish(session)
            return BudgetCategoriesResponse(
                trip_id=trip_id,
                categories=generated.value,
                categories_created=created,
                credits_balance=session.credits_balance_snapshot,
            )
