"""Itinerary store — trips, days, activities, stops, budget categories, packing items.

Writes take an open session so callers can group them into one transaction
per section. Every entity has a natural key (day date, lowercased title or
name) so re-applying a plan after a partial failure does not duplicate rows.
"""

import json
from contextlib import contextmanager
from datetime import date
from typing import Iterator, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.conversation.models import (
    ExistingActivitySummary,
    ExistingBudgetCategorySummary,
    ExistingStopSummary,
    ExistingTripData,
    PackingListItem,
)
from backend.models_db import Activity, BudgetCategory, PackingItem, Stop, Trip, TripDay
from planning.conflicts import ExistingActivity
from planning.plan import PlanActivity, PlanBudgetCategory, PlanStop, PlanTrip, natural_key


class ItineraryStore:
    def __init__(self, session_factory=None):
        if session_factory is None:
            from backend.database import SessionLocal
            session_factory = SessionLocal
        self._session_factory = session_factory

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Session that commits on success and rolls back on any exception."""
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # --- Trips ---

    def create_trip(self, db: Session, owner_id: str, trip: PlanTrip, currency: str) -> str:
        row = Trip(
            owner_id=owner_id,
            name=trip.name,
            destination=trip.destination,
            destination_lat=trip.destination_lat,
            destination_lng=trip.destination_lng,
            start_date=trip.start_date,
            end_date=trip.end_date,
            currency=trip.currency or currency,
            notes=trip.notes,
        )
        db.add(row)
        db.flush()
        return row.id

    def get_trip(self, trip_id: str) -> Optional[dict]:
        db = self._session_factory()
        try:
            row = db.get(Trip, trip_id)
            if not row:
                return None
            return {
                "id": row.id,
                "owner_id": row.owner_id,
                "name": row.name,
                "destination": row.destination,
                "start_date": row.start_date,
                "end_date": row.end_date,
                "currency": row.currency,
            }
        finally:
            db.close()

    # --- Days and activities ---

    def get_or_create_day(self, db: Session, trip_id: str, day: date) -> tuple[str, bool]:
        row = db.execute(
            select(TripDay).where(TripDay.trip_id == trip_id, TripDay.date == day)
        ).scalar_one_or_none()
        if row:
            return row.id, False
        row = TripDay(trip_id=trip_id, date=day)
        db.add(row)
        db.flush()
        return row.id, True

    def activity_exists(self, db: Session, day_id: str, title: str) -> bool:
        return db.execute(
            select(Activity.id).where(Activity.day_id == day_id, Activity.title_key == natural_key(title))
        ).first() is not None

    def add_activity(self, db: Session, trip_id: str, day_id: str, activity: PlanActivity, currency: str) -> str:
        row = Activity(
            trip_id=trip_id,
            day_id=day_id,
            title=activity.title,
            title_key=natural_key(activity.title),
            description=activity.description,
            category=activity.category.value,
            start_time=activity.start_time,
            end_time=activity.end_time,
            location_name=activity.location_name,
            location_lat=activity.location_lat,
            location_lng=activity.location_lng,
            location_address=activity.location_address,
            cost=activity.cost,
            currency=currency,
            sort_order=activity.sort_order,
            check_in_date=activity.check_in_date,
            check_out_date=activity.check_out_date,
            category_data_json=json.dumps(activity.category_data),
        )
        db.add(row)
        db.flush()
        return row.id

    def list_activities(self, trip_id: str) -> list[ExistingActivity]:
        db = self._session_factory()
        try:
            rows = db.execute(
                select(Activity.title, TripDay.date)
                .join(TripDay, Activity.day_id == TripDay.id)
                .where(Activity.trip_id == trip_id)
                .order_by(TripDay.date, Activity.sort_order)
            ).all()
            return [ExistingActivity(title=title, day=day) for title, day in rows]
        finally:
            db.close()

    # --- Stops ---

    def stop_exists(self, db: Session, trip_id: str, name: str) -> bool:
        return db.execute(
            select(Stop.id).where(Stop.trip_id == trip_id, Stop.name_key == natural_key(name))
        ).first() is not None

    def add_stop(self, db: Session, trip_id: str, stop: PlanStop) -> str:
        row = Stop(
            trip_id=trip_id,
            name=stop.name,
            name_key=natural_key(stop.name),
            lat=stop.lat,
            lng=stop.lng,
            address=stop.address,
            type=stop.type.value,
            nights=stop.nights,
            arrival_date=stop.arrival_date,
            departure_date=stop.departure_date,
            sort_order=stop.sort_order,
        )
        db.add(row)
        db.flush()
        return row.id

    # --- Budget categories ---

    def budget_category_exists(self, db: Session, trip_id: str, name: str) -> bool:
        return db.execute(
            select(BudgetCategory.id).where(
                BudgetCategory.trip_id == trip_id,
                BudgetCategory.name_key == natural_key(name),
            )
        ).first() is not None

    def add_budget_category(self, db: Session, trip_id: str, category: PlanBudgetCategory) -> str:
        row = BudgetCategory(
            trip_id=trip_id,
            name=category.name,
            name_key=natural_key(category.name),
            color=category.color,
            budget_limit=category.budget_limit,
        )
        db.add(row)
        db.flush()
        return row.id

    def list_budget_category_names(self, trip_id: str) -> list[str]:
        db = self._session_factory()
        try:
            return list(db.execute(
                select(BudgetCategory.name).where(BudgetCategory.trip_id == trip_id)
            ).scalars())
        finally:
            db.close()

    # --- Packing ---

    def add_packing_items(self, trip_id: str, items: list[PackingListItem]) -> int:
        """Store packing items, skipping names already on the trip's list."""
        created = 0
        with self.transaction() as db:
            existing = set(db.execute(
                select(PackingItem.name_key).where(PackingItem.trip_id == trip_id)
            ).scalars())
            for item in items:
                key = natural_key(item.name)
                if key in existing:
                    continue
                existing.add(key)
                db.add(PackingItem(
                    trip_id=trip_id,
                    name=item.name,
                    name_key=key,
                    category=item.category,
                    quantity=item.quantity,
                ))
                created += 1
        return created

    # --- Summary for prompts ---

    def summarize(self, trip_id: str) -> ExistingTripData:
        """Existing trip content handed to the model in enhance mode."""
        db = self._session_factory()
        try:
            activities = db.execute(
                select(Activity.title, Activity.category, Activity.start_time, TripDay.date)
                .join(TripDay, Activity.day_id == TripDay.id)
                .where(Activity.trip_id == trip_id)
                .order_by(TripDay.date, Activity.sort_order)
            ).all()
            stops = db.execute(
                select(Stop.name, Stop.type).where(Stop.trip_id == trip_id).order_by(Stop.sort_order)
            ).all()
            categories = db.execute(
                select(BudgetCategory.name, BudgetCategory.color).where(BudgetCategory.trip_id == trip_id)
            ).all()
        finally:
            db.close()

        return ExistingTripData(
            activities=[
                ExistingActivitySummary(title=t, category=c, start_time=s, day=d)
                for t, c, s, d in activities
            ],
            stops=[ExistingStopSummary(name=n, type=t) for n, t in stops],
            budget_categories=[ExistingBudgetCategorySummary(name=n, color=c) for n, c in categories],
        )
