"""Planner routes — one conversation per (user, trip, mode)."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from backend.auth import current_user_id
from backend.conversation.models import (
    AdjustPlanRequest,
    BudgetCategoriesResponse,
    ConversationKey,
    ConversationState,
    ConversationSummary,
    PackingListResponse,
    PlannerMode,
    SendMessageRequest,
    StartConversationRequest,
)
from backend.conversation.orchestrator import PlannerEngine
from backend.middleware.credit_check import require_credits
from backend.services.credits import CreditOperation

router = APIRouter()


def _engine(request: Request) -> PlannerEngine:
    return request.app.state.engine


def conversation_key(
    mode: PlannerMode,
    trip_id: Optional[str] = Query(None, max_length=100),
    user_id: str = Depends(current_user_id),
) -> ConversationKey:
    """Build the conversation identity from the path, query and authenticated user."""
    if mode == PlannerMode.ENHANCE and not trip_id:
        raise HTTPException(status_code=422, detail="trip_id is required in enhance mode")
    return ConversationKey(
        user_id=user_id,
        trip_id=trip_id if mode == PlannerMode.ENHANCE else None,
        mode=mode,
    )


@router.get("/planner", response_model=list[ConversationSummary])
async def list_conversations(request: Request, user_id: str = Depends(current_user_id)):
    """List the user's conversations, most recently updated first."""
    sessions = await _engine(request).store.list_for_user(user_id)
    return [
        ConversationSummary(
            id=s.id,
            trip_id=s.trip_id,
            mode=s.mode,
            phase=s.phase,
            message_count=len(s.messages),
            destination=s.context.destination,
            created_at=s.created_at,
            updated_at=s.updated_at,
        )
        for s in sessions
    ]


@router.get("/planner/{mode}", response_model=ConversationState)
async def load_conversation(request: Request, key: ConversationKey = Depends(conversation_key)):
    """Load (or open) the conversation and resume where it left off."""
    return ConversationState.from_session(await _engine(request).load(key))


@router.post(
    "/planner/{mode}/start",
    response_model=ConversationState,
    dependencies=[Depends(require_credits(CreditOperation.GREETING))],
)
async def start_conversation(
    body: StartConversationRequest,
    request: Request,
    key: ConversationKey = Depends(conversation_key),
):
    return ConversationState.from_session(await _engine(request).start_conversation(key, body))


@router.post("/planner/{mode}/messages", response_model=ConversationState)
async def send_message(
    body: SendMessageRequest,
    request: Request,
    key: ConversationKey = Depends(conversation_key),
):
    """Send the user's next message. Resending after a failure does not duplicate it."""
    session = await _engine(request).send_message(key, body.content, body.client_message_id)
    return ConversationState.from_session(session)


@router.post(
    "/planner/{mode}/plan",
    response_model=ConversationState,
    dependencies=[Depends(require_credits(CreditOperation.PLAN_GENERATION))],
)
async def generate_plan(request: Request, key: ConversationKey = Depends(conversation_key)):
    return ConversationState.from_session(await _engine(request).generate_plan(key))


@router.post(
    "/planner/{mode}/structure",
    response_model=ConversationState,
    dependencies=[Depends(require_credits(CreditOperation.PLAN_STRUCTURE))],
)
async def generate_structure(request: Request, key: ConversationKey = Depends(conversation_key)):
    return ConversationState.from_session(await _engine(request).generate_structure(key))


@router.post("/planner/{mode}/structure/generate-all", response_model=ConversationState)
async def generate_all_via_server(request: Request, key: ConversationKey = Depends(conversation_key)):
    """Queue background generation; poll /api/jobs/{active_job_id} for progress."""
    return ConversationState.from_session(await _engine(request).generate_all_via_server(key))


@router.post("/planner/{mode}/structure/generate-activities", response_model=ConversationState)
async def generate_activities(request: Request, key: ConversationKey = Depends(conversation_key)):
    """Foreground activity generation; every batch must be affordable up front."""
    return ConversationState.from_session(await _engine(request).generate_activities_client_side(key))


@router.post("/planner/{mode}/plan/confirm", response_model=ConversationState)
async def confirm_plan(request: Request, key: ConversationKey = Depends(conversation_key)):
    """Apply the plan, or return pending_conflicts when it duplicates existing activities."""
    return ConversationState.from_session(await _engine(request).confirm_plan(key))


@router.post("/planner/{mode}/plan/confirm-with-conflicts", response_model=ConversationState)
async def confirm_with_conflicts(request: Request, key: ConversationKey = Depends(conversation_key)):
    return ConversationState.from_session(await _engine(request).confirm_with_conflicts(key))


@router.post("/planner/{mode}/plan/dismiss-conflicts", response_model=ConversationState)
async def dismiss_conflicts(request: Request, key: ConversationKey = Depends(conversation_key)):
    return ConversationState.from_session(await _engine(request).dismiss_conflicts(key))


@router.post("/planner/{mode}/plan/reject", response_model=ConversationState)
async def reject_plan(request: Request, key: ConversationKey = Depends(conversation_key)):
    return ConversationState.from_session(await _engine(request).reject_plan(key))


@router.post("/planner/{mode}/plan/hide", response_model=ConversationState)
async def hide_preview(request: Request, key: ConversationKey = Depends(conversation_key)):
    return ConversationState.from_session(await _engine(request).hide_preview(key))


@router.post("/planner/{mode}/plan/show", response_model=ConversationState)
async def show_preview(request: Request, key: ConversationKey = Depends(conversation_key)):
    return ConversationState.from_session(await _engine(request).show_preview(key))


@router.post(
    "/planner/{mode}/plan/adjust",
    response_model=ConversationState,
    dependencies=[Depends(require_credits(CreditOperation.PLAN_GENERATION))],
)
async def adjust_plan(
    body: AdjustPlanRequest,
    request: Request,
    key: ConversationKey = Depends(conversation_key),
):
    return ConversationState.from_session(await _engine(request).adjust_plan(key, body.instructions))


@router.post("/planner/{mode}/reset", response_model=ConversationState)
async def reset_conversation(request: Request, key: ConversationKey = Depends(conversation_key)):
    return ConversationState.from_session(await _engine(request).reset(key))


@router.post("/planner/{mode}/save", response_model=ConversationState)
async def save_conversation(request: Request, key: ConversationKey = Depends(conversation_key)):
    """Explicit durability flush, e.g. when the client goes to the background."""
    return ConversationState.from_session(await _engine(request).save_now(key))


@router.post(
    "/planner/{mode}/agent/packing-list",
    response_model=PackingListResponse,
    dependencies=[Depends(require_credits(CreditOperation.AGENT_PACKING))],
)
async def generate_packing_list(request: Request, key: ConversationKey = Depends(conversation_key)):
    return await _engine(request).generate_packing_list(key)


@router.post(
    "/planner/{mode}/agent/budget-categories",
    response_model=BudgetCategoriesResponse,
    dependencies=[Depends(require_credits(CreditOperation.AGENT_BUDGET))],
)
async def generate_budget_categories(request: Request, key: ConversationKey = Depends(conversation_key)):
    return await _engine(request).generate_budget_categories(key)
