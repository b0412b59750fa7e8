"""SQLAlchemy ORM models."""
import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    Boolean, Column, Date, DateTime, Float, ForeignKey, Index, Integer, String, Text,
    UniqueConstraint, text,
)
from backend.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=_uuid)
    email = Column(String, unique=True, nullable=False, index=True)
    password_hash = Column(String, nullable=False)
    name = Column(String, nullable=False, default="")
    created_at = Column(DateTime, nullable=False, default=_now)
    updated_at = Column(DateTime, nullable=False, default=_now, onupdate=_now)


# --- Credits ---

class CreditAccount(Base):
    __tablename__ = "credit_accounts"

    user_id = Column(String, primary_key=True)
    balance = Column(Integer, nullable=False, default=0)
    monthly_quota = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=False, default=_now, onupdate=_now)


class CreditUsageLog(Base):
    __tablename__ = "credit_usage_logs"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False)
    trip_id = Column(String, nullable=True)
    operation = Column(String, nullable=False)
    credits = Column(Integer, nullable=False)
    model = Column(String, nullable=True)
    input_tokens = Column(Integer, nullable=True)
    output_tokens = Column(Integer, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_now)

    __table_args__ = (
        Index("ix_credit_usage_logs_user_id", "user_id"),
    )


# --- Conversations and jobs ---

class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False)
    # trip_id or "" in create mode; part of the conversation identity
    trip_key = Column(String, nullable=False, default="")
    mode = Column(String, nullable=False)
    phase = Column(String, nullable=False, default="idle")
    messages_json = Column(Text, nullable=False, default="[]")
    archived_messages_json = Column(Text, nullable=False, default="[]")
    metadata_json = Column(Text, nullable=True)
    context_json = Column(Text, nullable=False, default="{}")
    structure_json = Column(Text, nullable=True)
    plan_json = Column(Text, nullable=True)
    pending_conflicts_json = Column(Text, nullable=True)
    execution_result_json = Column(Text, nullable=True)
    last_error_json = Column(Text, nullable=True)
    active_job_id = Column(String, nullable=True)
    token_warning = Column(Boolean, nullable=False, default=False)
    credits_balance_snapshot = Column(Integer, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_now)
    updated_at = Column(DateTime, nullable=False, default=_now, onupdate=_now)

    __table_args__ = (
        UniqueConstraint("user_id", "trip_key", "mode", name="uq_conversations_identity"),
    )


class PlanJob(Base):
    __tablename__ = "plan_jobs"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False)
    trip_key = Column(String, nullable=False, default="")
    mode = Column(String, nullable=False)
    status = Column(String, nullable=False, default="pending")
    progress_step = Column(String, nullable=False, default="structure")
    context_json = Column(Text, nullable=False, default="{}")
    messages_json = Column(Text, nullable=False, default="[]")
    structure_json = Column(Text, nullable=True)
    plan_json = Column(Text, nullable=True)
    result_json = Column(Text, nullable=True)
    error = Column(Text, nullable=True)
    error_kind = Column(String, nullable=True)
    credits_charged = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=_now)
    updated_at = Column(DateTime, nullable=False, default=_now, onupdate=_now)
    completed_at = Column(DateTime, nullable=True)
    acknowledged_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_plan_jobs_user_id", "user_id"),
        Index("ix_plan_jobs_status_created", "status", "created_at"),
        # At most one in-flight job per conversation identity
        Index(
            "uq_plan_jobs_active",
            "user_id", "trip_key", "mode",
            unique=True,
            sqlite_where=text("status IN ('pending', 'running')"),
            postgresql_where=text("status IN ('pending', 'running')"),
        ),
    )


class TravellerMemory(Base):
    __tablename__ = "traveller_memories"

    user_id = Column(String, primary_key=True)
    content = Column(Text, nullable=False, default="")
    updated_at = Column(DateTime, nullable=False, default=_now, onupdate=_now)


# --- Itinerary store ---

class Trip(Base):
    __tablename__ = "trips"

    id = Column(String, primary_key=True, default=_uuid)
    owner_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    destination = Column(String, nullable=False, default="")
    destination_lat = Column(Float, nullable=True)
    destination_lng = Column(Float, nullable=True)
    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)
    currency = Column(String, nullable=False, default="CHF")
    status = Column(String, nullable=False, default="planning")
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_now)

    __table_args__ = (
        Index("ix_trips_owner_id", "owner_id"),
    )


class TripDay(Base):
    __tablename__ = "trip_days"

    id = Column(String, primary_key=True, default=_uuid)
    trip_id = Column(String, ForeignKey("trips.id"), nullable=False)
    date = Column(Date, nullable=False)

    __table_args__ = (
        UniqueConstraint("trip_id", "date", name="uq_trip_days_date"),
    )


class Activity(Base):
    __tablename__ = "activities"

    id = Column(String, primary_key=True, default=_uuid)
    trip_id = Column(String, ForeignKey("trips.id"), nullable=False)
    day_id = Column(String, ForeignKey("trip_days.id"), nullable=False)
    title = Column(String, nullable=False)
    title_key = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String, nullable=False, default="other")
    start_time = Column(String, nullable=True)
    end_time = Column(String, nullable=True)
    location_name = Column(String, nullable=True)
    location_lat = Column(Float, nullable=True)
    location_lng = Column(Float, nullable=True)
    location_address = Column(String, nullable=True)
    cost = Column(Float, nullable=True)
    currency = Column(String, nullable=True)
    sort_order = Column(Integer, nullable=False, default=0)
    check_in_date = Column(Date, nullable=True)
    check_out_date = Column(Date, nullable=True)
    category_data_json = Column(Text, nullable=False, default="{}")

    __table_args__ = (
        Index("ix_activities_trip_id", "trip_id"),
        Index("ix_activities_day_title", "day_id", "title_key"),
    )


class Stop(Base):
    __tablename__ = "stops"

    id = Column(String, primary_key=True, default=_uuid)
    trip_id = Column(String, ForeignKey("trips.id"), nullable=False)
    name = Column(String, nullable=False)
    name_key = Column(String, nullable=False)
    lat = Column(Float, nullable=True)
    lng = Column(Float, nullable=True)
    address = Column(String, nullable=True)
    type = Column(String, nullable=False, default="waypoint")
    nights = Column(Integer, nullable=True)
    arrival_date = Column(Date, nullable=True)
    departure_date = Column(Date, nullable=True)
    sort_order = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("ix_stops_trip_name", "trip_id", "name_key"),
    )


class BudgetCategory(Base):
    __tablename__ = "budget_categories"

    id = Column(String, primary_key=True, default=_uuid)
    trip_id = Column(String, ForeignKey("trips.id"), nullable=False)
    name = Column(String, nullable=False)
    name_key = Column(String, nullable=False)
    color = Column(String, nullable=False)
    budget_limit = Column(Float, nullable=True)
    scope = Column(String, nullable=False, default="group")

    __table_args__ = (
        Index("ix_budget_categories_trip_name", "trip_id", "name_key"),
    )


class PackingItem(Base):
    __tablename__ = "packing_items"

    id = Column(String, primary_key=True, default=_uuid)
    trip_id = Column(String, ForeignKey("trips.id"), nullable=False)
    name = Column(String, nullable=False)
    name_key = Column(String, nullable=False)
    category = Column(String, nullable=False, default="other")
    quantity = Column(Integer, nullable=False, default=1)
    packed = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("ix_packing_items_trip_name", "trip_id", "name_key"),
    )
