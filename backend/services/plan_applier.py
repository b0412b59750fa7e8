"""Plan applier — writes an approved plan into the itinerary store.

Sections are written in progress order (trip, days, activities per day,
stops, budget categories), each in its own transaction. A failure leaves
earlier sections in place and raises PartialApplicationError with the
counts so far; re-applying the same plan is safe because every write is
preceded by an existence check on the entity's natural key.
"""

import logging
from typing import Callable, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError

from backend.conversation.models import ExecutionResult
from backend.errors import PartialApplicationError, PlanValidationError
from backend.services.itinerary_store import ItineraryStore
from planning.conflicts import conflict_keys
from planning.plan import Plan, natural_key
from planning.progress import ProgressStep

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressStep], None]


class PlanApplier:
    def __init__(self, store: ItineraryStore):
        self.store = store

    def apply(
        self,
        plan: Plan,
        owner_id: str,
        trip_id: Optional[str] = None,
        currency: str = "CHF",
        skip_titles: Iterable[str] = (),
        on_progress: Optional[ProgressCallback] = None,
    ) -> ExecutionResult:
        """Write ``plan`` and return what was created.

        Without ``trip_id`` the plan must carry a trip header and a new trip
        is created. ``skip_titles`` holds titles (any casing) of activities
        the user chose not to duplicate.
        """
        skip = conflict_keys(skip_titles)
        result = ExecutionResult(trip_id=trip_id or "")
        report = on_progress or (lambda step: None)

        if not trip_id and plan.trip is None:
            raise PlanValidationError("Plan has no trip header and no trip to add it to.")

        try:
            report(ProgressStep.TRIP)
            if not trip_id:
                with self.store.transaction() as db:
                    result.trip_id = self.store.create_trip(db, owner_id, plan.trip, currency)
                logger.info(f"Created trip {result.trip_id} for user={owner_id}")
            currency = plan.trip.currency if plan.trip and plan.trip.currency else currency

            report(ProgressStep.DAYS)
            day_ids = {}
            with self.store.transaction() as db:
                for day in plan.days:
                    day_id, created = self.store.get_or_create_day(db, result.trip_id, day.date)
                    day_ids[day.date] = day_id
                    if created:
                        result.days_created += 1

            report(ProgressStep.ACTIVITIES)
            for day in plan.days:
                day_id = day_ids[day.date]
                with self.store.transaction() as db:
                    created = skipped = 0
                    for activity in day.activities:
                        if natural_key(activity.title) in skip or self.store.activity_exists(db, day_id, activity.title):
                            skipped += 1
                            continue
                        self.store.add_activity(db, result.trip_id, day_id, activity, currency)
                        created += 1
                # Counted only once the day's transaction has committed
                result.activities_created += created
                result.activities_skipped += skipped

            report(ProgressStep.STOPS)
            with self.store.transaction() as db:
                created = 0
                for stop in plan.stops:
                    if self.store.stop_exists(db, result.trip_id, stop.name):
                        continue
                    self.store.add_stop(db, result.trip_id, stop)
                    created += 1
            result.stops_created += created

            report(ProgressStep.BUDGET)
            with self.store.transaction() as db:
                created = 0
                for category in plan.budget_categories:
                    if self.store.budget_category_exists(db, result.trip_id, category.name):
                        continue
                    self.store.add_budget_category(db, result.trip_id, category)
                    created += 1
            result.budget_categories_created += created

        except SQLAlchemyError as e:
            logger.error(f"Plan application failed for trip {result.trip_id or '(new)'}: {e}")
            raise PartialApplicationError(
                "The plan was only partly saved. Retrying is safe; existing entries are not duplicated.",
                partial_result=result.model_dump(),
            ) from e

        logger.info(
            f"Applied plan to trip {result.trip_id}: {result.days_created} days, "
            f"{result.activities_created} activities ({result.activities_skipped} skipped), "
            f"{result.stops_created} stops, {result.budget_categories_created} budget categories"
        )
        return result
