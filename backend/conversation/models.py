from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Optional
from datetime import date, datetime, timezone
from pydantic import BaseModel, Field
import uuid

from planning.plan import Plan, PlanBudgetCategory, PlanStructure


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationPhase(str, Enum):
    IDLE = "idle"
    CONVERSING = "conversing"
    PLAN_REVIEW = "plan_review"
    GENERATING_STRUCTURE = "generating_structure"
    STRUCTURE_OVERVIEW = "structure_overview"
    GENERATING_PLAN = "generating_plan"
    PREVIEWING_PLAN = "previewing_plan"
    EXECUTING_PLAN = "executing_plan"
    COMPLETED = "completed"


class PlannerMode(str, Enum):
    CREATE = "create"
    ENHANCE = "enhance"


class AgentAction(str, Enum):
    PACKING_LIST = "packing_list"
    BUDGET_CATEGORIES = "budget_categories"


@dataclass(frozen=True)
class ConversationKey:
    """Conversation identity: one live conversation per (user, trip, mode)."""
    user_id: str
    trip_id: Optional[str]
    mode: PlannerMode

    @property
    def trip_key(self) -> str:
        return self.trip_id or ""

    def as_tuple(self) -> tuple[str, str, str]:
        return (self.user_id, self.trip_key, self.mode.value)


class Message(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    role: str  # "user", "assistant"
    content: str
    created_at: datetime = Field(default_factory=_utcnow)
    credits_cost: Optional[int] = None
    credits_after: Optional[int] = None


class FormOption(BaseModel):
    label: str = Field(..., min_length=1)


class TurnMetadata(BaseModel):
    """Structured hints parsed out of an assistant reply."""
    ready_to_plan: bool = False
    suggested_questions: list[str] = Field(default_factory=list)
    form_options: list[FormOption] = Field(default_factory=list)
    agent_action: Optional[AgentAction] = None
    preferences_gathered: list[str] = Field(default_factory=list)
    trip_type: Optional[str] = None


# --- Trip context ---

class ExistingActivitySummary(BaseModel):
    title: str
    category: str = "other"
    day: Optional[date] = None
    start_time: Optional[str] = None


class ExistingStopSummary(BaseModel):
    name: str
    type: str = "waypoint"


class ExistingBudgetCategorySummary(BaseModel):
    name: str
    color: Optional[str] = None


class ExistingTripData(BaseModel):
    """What the trip already contains (enhance mode), so the model avoids duplicates."""
    activities: list[ExistingActivitySummary] = Field(default_factory=list)
    stops: list[ExistingStopSummary] = Field(default_factory=list)
    budget_categories: list[ExistingBudgetCategorySummary] = Field(default_factory=list)


class TripContext(BaseModel):
    destination: Optional[str] = None
    destination_lat: Optional[float] = None
    destination_lng: Optional[float] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    currency: str = "CHF"
    trip_name: Optional[str] = None
    notes: Optional[str] = None
    travelers_count: Optional[int] = Field(None, ge=1)
    group_type: Optional[str] = None
    trip_type: Optional[str] = None
    mode: PlannerMode = PlannerMode.CREATE
    trip_id: Optional[str] = None
    existing_data: Optional[ExistingTripData] = None
    preferences: Optional[dict] = None


# --- Results ---

class ExecutionResult(BaseModel):
    trip_id: str = ""
    days_created: int = 0
    activities_created: int = 0
    stops_created: int = 0
    budget_categories_created: int = 0
    activities_skipped: int = 0


class ErrorInfo(BaseModel):
    kind: str
    message: str
    retryable: bool = False
    details: dict = Field(default_factory=dict)


class PackingListItem(BaseModel):
    name: str = Field(..., min_length=1)
    category: str = "other"
    quantity: int = Field(1, ge=1)


# --- Session ---

class ConversationSession(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    trip_id: Optional[str] = None
    mode: PlannerMode = PlannerMode.CREATE
    phase: ConversationPhase = ConversationPhase.IDLE
    messages: list[Message] = Field(default_factory=list)
    archived_messages: list[Message] = Field(default_factory=list)
    last_metadata: Optional[TurnMetadata] = None
    context: TripContext = Field(default_factory=TripContext)
    structure: Optional[PlanStructure] = None
    plan: Optional[Plan] = None
    pending_conflicts: Optional[list[str]] = None
    execution_result: Optional[ExecutionResult] = None
    last_error: Optional[ErrorInfo] = None
    active_job_id: Optional[str] = None
    token_warning: bool = False
    credits_balance_snapshot: Optional[int] = None
    restored: bool = False
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def key(self) -> ConversationKey:
        return ConversationKey(user_id=self.user_id, trip_id=self.trip_id, mode=self.mode)

    @classmethod
    def for_key(cls, key: ConversationKey) -> "ConversationSession":
        return cls(user_id=key.user_id, trip_id=key.trip_id, mode=key.mode)


# --- Requests / responses ---

class StartConversationRequest(BaseModel):
    destination: Optional[str] = Field(None, max_length=255)
    destination_lat: Optional[float] = None
    destination_lng: Optional[float] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    currency: str = Field("CHF", min_length=3, max_length=3)
    trip_name: Optional[str] = Field(None, max_length=255)
    notes: Optional[str] = Field(None, max_length=5000)
    travelers_count: Optional[int] = Field(None, ge=1, le=50)
    group_type: Optional[str] = None
    trip_type: Optional[str] = None


class SendMessageRequest(BaseModel):
    content: str = Field(..., min_length=1, max_length=50000)
    client_message_id: Optional[str] = Field(None, max_length=100)


class AdjustPlanRequest(BaseModel):
    instructions: str = Field(..., min_length=1, max_length=10000)


class PackingListResponse(BaseModel):
    trip_id: str
    items: list[PackingListItem]
    items_created: int
    credits_balance: Optional[int] = None


class BudgetCategoriesResponse(BaseModel):
    trip_id: str
    categories: list[PlanBudgetCategory]
    categories_created: int
    credits_balance: Optional[int] = None


class ConversationState(BaseModel):
    """What every planner route returns."""
    id: str
    trip_id: Optional[str] = None
    mode: PlannerMode
    phase: ConversationPhase
    messages: list[Message]
    last_metadata: Optional[TurnMetadata] = None
    structure: Optional[PlanStructure] = None
    plan: Optional[Plan] = None
    pending_conflicts: Optional[list[str]] = None
    execution_result: Optional[ExecutionResult] = None
    active_job_id: Optional[str] = None
    token_warning: bool = False
    restored: bool = False
    credits_balance: Optional[int] = None
    last_error: Optional[ErrorInfo] = None

    @classmethod
    def from_session(cls, session: ConversationSession) -> "ConversationState":
        return cls(
            id=session.id,
            trip_id=session.trip_id,
            mode=session.mode,
            phase=session.phase,
            messages=session.messages,
            last_metadata=session.last_metadata,
            structure=session.structure,
            plan=session.plan,
            pending_conflicts=session.pending_conflicts,
            execution_result=session.execution_result,
            active_job_id=session.active_job_id,
            token_warning=session.token_warning,
            restored=session.restored,
            credits_balance=session.credits_balance_snapshot,
            last_error=session.last_error,
        )


class ConversationSummary(BaseModel):
    id: str
    trip_id: Optional[str] = None
    mode: PlannerMode
    phase: ConversationPhase
    message_count: int
    destination: Optional[str] = None
    created_at: datetime
    updated_at: datetime
