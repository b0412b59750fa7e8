"""Metered model calls and the plan structure / detail generators.

Every call is charged before it is made. A call that fails upstream is
retried once after a short delay without charging again; if it still fails
the charge is refunded. Output that fails validation is not refunded since
the model did the work.
"""

import logging
import os
from dataclasses import dataclass
from typing import Callable, Generic, Iterable, Optional, TypeVar

from pydantic import ValidationError
from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_fixed

from backend.ai import prompts
from backend.ai.llm import Completion, LLMClient
from backend.conversation.agents import AGENT_CONFIGS, PlannerTask
from backend.conversation.models import (
    Message,
    PackingListItem,
    PlannerMode,
    TripContext,
    TurnMetadata,
)
from backend.errors import LLMNotConfiguredError, PlanValidationError, TransientUpstreamError, UpstreamError
from backend.services.credits import CreditLedger, CreditOperation, credit_cost
from backend.services.memory import TravellerMemoryStore
from planning.plan import (
    Plan,
    PlanBudgetCategory,
    PlanDay,
    PlanFormatError,
    PlanStructure,
    dedupe_budget_categories,
    extract_json,
    parse_activity_batch,
    parse_plan,
    parse_structure,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class MeteredCompletion:
    completion: Completion
    credits: int
    balance: Optional[int]


@dataclass
class Generated(Generic[T]):
    value: T
    credits: int
    balance: Optional[int]


class MeteredModel:
    def __init__(self, llm: LLMClient, ledger: CreditLedger, retry_delay: Optional[float] = None):
        self.llm = llm
        self.ledger = ledger
        self.retry_delay = retry_delay if retry_delay is not None else float(os.getenv("LLM_RETRY_DELAY_SECONDS", "2"))

    async def call(
        self,
        user_id: str,
        operation: CreditOperation,
        task: PlannerTask,
        system: str,
        messages: list[dict],
        trip_id: Optional[str] = None,
        amount: Optional[int] = None,
    ) -> MeteredCompletion:
        """Charge ``amount`` (default: the operation's cost), call the model, refund on failure."""
        cost = credit_cost(operation) if amount is None else amount
        balance = self.ledger.charge(user_id, cost, operation, trip_id) if cost > 0 else None

        try:
            completion = await self._complete_with_retry(task, system, messages)
        except (TransientUpstreamError, UpstreamError, LLMNotConfiguredError):
            if cost > 0:
                self.ledger.refund(user_id, cost, operation, trip_id)
            raise

        self.ledger.record_model_usage(
            user_id,
            operation,
            completion.model,
            completion.usage.input_tokens,
            completion.usage.output_tokens,
            completion.duration_ms,
            trip_id,
        )
        return MeteredCompletion(completion=completion, credits=cost, balance=balance)

    async def _complete_with_retry(self, task: PlannerTask, system: str, messages: list[dict]) -> Completion:
        config = AGENT_CONFIGS[task]
        retrying = AsyncRetrying(
            stop=stop_after_attempt(2),
            wait=wait_fixed(self.retry_delay),
            retry=retry_if_exception_type(TransientUpstreamError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self.llm.complete(system, messages, config.model, config.max_tokens, config.temperature)


def build_preferences(
    context: TripContext,
    messages: Iterable[Message],
    metadata: Optional[TurnMetadata] = None,
) -> dict:
    """Everything the traveller told us, as handed to the generation prompts."""
    preferences = dict(context.preferences or {})
    preferences.update({
        "destination": context.destination,
        "start_date": context.start_date.isoformat() if context.start_date else None,
        "end_date": context.end_date.isoformat() if context.end_date else None,
        "currency": context.currency,
        "travelers_count": context.travelers_count,
        "group_type": context.group_type,
        "trip_type": (metadata.trip_type if metadata and metadata.trip_type else context.trip_type),
        "conversation_summary": [m.content for m in messages if m.role == "user"],
    })
    if metadata:
        preferences["preferences_gathered"] = metadata.preferences_gathered
    return preferences


class PlanGenerator:
    def __init__(self, metered: MeteredModel, memory: TravellerMemoryStore):
        self.metered = metered
        self.memory = memory

    def _require_trip(self, context: TripContext) -> bool:
        return context.mode == PlannerMode.CREATE

    def _existing_budget_names(self, context: TripContext) -> list[str]:
        if not context.existing_data:
            return []
        return [b.name for b in context.existing_data.budget_categories]

    async def generate_structure(self, user_id: str, context: TripContext, preferences: dict) -> Generated[PlanStructure]:
        system, messages = prompts.build_structure_messages(context, preferences, self.memory.get(user_id))
        result = await self.metered.call(
            user_id, CreditOperation.PLAN_STRUCTURE, PlannerTask.PLAN_STRUCTURE, system, messages, context.trip_id,
        )
        try:
            structure = parse_structure(
                result.completion.text,
                existing_budget_names=self._existing_budget_names(context),
                require_trip=self._require_trip(context),
            )
        except PlanFormatError as e:
            raise PlanValidationError(f"The trip structure could not be generated: {e}") from e
        logger.info(f"Generated structure for user={user_id}: {structure.day_count} days, {len(structure.stops)} stops")
        return Generated(structure, result.credits, result.balance)

    async def generate_activities(
        self,
        user_id: str,
        context: TripContext,
        preferences: dict,
        structure: PlanStructure,
        on_batch: Optional[Callable[[list[PlanDay]], None]] = None,
    ) -> Generated[list[PlanDay]]:
        """Generate activities batch by batch; each batch is charged separately."""
        memory = self.memory.get(user_id)
        days: list[PlanDay] = []
        credits = 0
        balance = None
        for batch in structure.day_batches():
            system, messages = prompts.build_activities_messages(context, preferences, structure, batch, memory)
            result = await self.metered.call(
                user_id, CreditOperation.PLAN_ACTIVITIES, PlannerTask.PLAN_ACTIVITIES, system, messages, context.trip_id,
            )
            credits += result.credits
            balance = result.balance if result.balance is not None else balance
            try:
                batch_days = parse_activity_batch(result.completion.text, batch)
            except PlanFormatError as e:
                raise PlanValidationError(
                    f"Activities for {batch[0].isoformat()} to {batch[-1].isoformat()} could not be generated: {e}"
                ) from e
            days.extend(batch_days)
            if on_batch:
                on_batch(batch_days)
        return Generated(days, credits, balance)

    async def generate_plan(self, user_id: str, context: TripContext, preferences: dict) -> Generated[Plan]:
        """Direct path: the whole plan in one call, with one free re-ask on unparseable JSON."""
        system, messages = prompts.build_plan_messages(context, preferences, self.memory.get(user_id))
        result = await self.metered.call(
            user_id, CreditOperation.PLAN_GENERATION, PlannerTask.PLAN_GENERATION, system, messages, context.trip_id,
        )
        text = result.completion.text
        try:
            extract_json(text)
        except PlanFormatError:
            logger.warning(f"Plan reply for user={user_id} was not JSON, asking once more")
            reask = messages + [
                {"role": "assistant", "content": text},
                {"role": "user", "content": prompts.JSON_REASK_MESSAGE},
            ]
            retry = await self.metered.call(
                user_id, CreditOperation.PLAN_GENERATION, PlannerTask.PLAN_GENERATION, system, reask,
                context.trip_id, amount=0,
            )
            text = retry.completion.text
        plan = self._parse_plan(text, context)
        return Generated(plan, result.credits, result.balance)

    async def adjust_plan(
        self,
        user_id: str,
        context: TripContext,
        preferences: dict,
        plan: Plan,
        instructions: str,
    ) -> Generated[Plan]:
        system, messages = prompts.build_adjust_messages(context, preferences, plan, instructions, self.memory.get(user_id))
        result = await self.metered.call(
            user_id, CreditOperation.PLAN_GENERATION, PlannerTask.PLAN_GENERATION, system, messages, context.trip_id,
        )
        return Generated(self._parse_plan(result.completion.text, context), result.credits, result.balance)

    def _parse_plan(self, text: str, context: TripContext) -> Plan:
        try:
            return parse_plan(
                text,
                existing_budget_names=self._existing_budget_names(context),
                require_trip=self._require_trip(context),
            )
        except PlanFormatError as e:
            raise PlanValidationError(f"The plan could not be generated: {e}") from e

    async def generate_packing_list(self, user_id: str, context: TripContext) -> Generated[list[PackingListItem]]:
        system, messages = prompts.build_packing_messages(context, self.memory.get(user_id))
        result = await self.metered.call(
            user_id, CreditOperation.AGENT_PACKING, PlannerTask.PACKING_LIST, system, messages, context.trip_id,
        )
        try:
            raw_items = extract_json(result.completion.text).get("items")
        except PlanFormatError as e:
            raise PlanValidationError(f"The packing list could not be generated: {e}") from e
        if not isinstance(raw_items, list):
            raise PlanValidationError("The packing list could not be generated: no 'items' list")

        items = []
        for raw in raw_items:
            try:
                items.append(PackingListItem.model_validate(raw))
            except ValidationError:
                logger.warning(f"Skipping malformed packing item: {raw!r}")
        if not items:
            raise PlanValidationError("The packing list could not be generated: no usable items")
        return Generated(items, result.credits, result.balance)

    async def generate_budget_categories(
        self,
        user_id: str,
        context: TripContext,
        existing_names: Iterable[str],
    ) -> Generated[list[PlanBudgetCategory]]:
        existing_names = list(existing_names)
        system, messages = prompts.build_budget_messages(context, existing_names, self.memory.get(user_id))
        result = await self.metered.call(
            user_id, CreditOperation.AGENT_BUDGET, PlannerTask.BUDGET_CATEGORIES, system, messages, context.trip_id,
        )
        try:
            raw = extract_json(result.completion.text).get("budget_categories")
            if not isinstance(raw, list):
                raise PlanFormatError("no 'budget_categories' list")
            categories = [PlanBudgetCategory.model_validate(c) for c in raw]
        except (PlanFormatError, ValidationError) as e:
            raise PlanValidationError(f"The budget categories could not be generated: {e}") from e
        return Generated(dedupe_budget_categories(categories, existing_names), result.credits, result.balance)
