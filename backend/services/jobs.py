"""Durable background plan generation.

A PlanJob row is the whole contract between the requesting client and the
worker: the client creates it and polls it; the worker claims it with a
conditional ``pending -> running`` UPDATE, generates activities for the
structure, applies the plan and stores the result. Nothing lives only in
the request that created the job, so generation survives disconnects.

``progress_step`` is written with a conditional UPDATE that only moves it
forward, so any poller observes a non-decreasing sequence.
"""

import asyncio
import json
import logging
import os
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from backend.conversation.models import (
    ConversationKey,
    ExecutionResult,
    Message,
    PlannerMode,
    TripContext,
)
from backend.errors import JobNotFoundError, PartialApplicationError, PlannerError
from backend.models_db import PlanJob
from planning.conflicts import ConflictPolicy, find_conflicts
from planning.plan import Plan, PlanStructure, merge_structure
from planning.progress import PROGRESS_ORDER, ProgressStep

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ("pending", "running")


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


class PlanJobView(BaseModel):
    id: str
    user_id: str
    trip_id: Optional[str] = None
    mode: PlannerMode
    status: JobStatus
    progress_step: ProgressStep
    result: Optional[ExecutionResult] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    credits_charged: int = 0
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    acknowledged_at: Optional[datetime] = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _steps_before(step: ProgressStep) -> list[str]:
    return [s.value for s in PROGRESS_ORDER[:PROGRESS_ORDER.index(step)]]


class JobExecutor:
    def __init__(
        self,
        generator,
        applier,
        itinerary,
        session_factory=None,
        conflict_policy: Optional[ConflictPolicy] = None,
        recent_window_hours: Optional[float] = None,
        poll_seconds: Optional[float] = None,
    ):
        if session_factory is None:
            from backend.database import SessionLocal
            session_factory = SessionLocal
        self._session_factory = session_factory
        self.generator = generator
        self.applier = applier
        self.itinerary = itinerary
        self.conflict_policy = conflict_policy or ConflictPolicy.from_env()
        self.recent_window = timedelta(hours=recent_window_hours if recent_window_hours is not None
                                       else float(os.getenv("RECENT_JOB_WINDOW_HOURS", "24")))
        self.poll_seconds = poll_seconds if poll_seconds is not None else float(os.getenv("PLAN_WORKER_POLL_SECONDS", "2"))

    # --- Views ---

    def _to_view(self, row: PlanJob) -> PlanJobView:
        return PlanJobView(
            id=row.id,
            user_id=row.user_id,
            trip_id=row.trip_key or None,
            mode=row.mode,
            status=row.status,
            progress_step=row.progress_step,
            result=ExecutionResult.model_validate_json(row.result_json) if row.result_json else None,
            error=row.error,
            error_kind=row.error_kind,
            credits_charged=row.credits_charged,
            created_at=row.created_at,
            updated_at=row.updated_at,
            completed_at=row.completed_at,
            acknowledged_at=row.acknowledged_at,
        )

    def _active_row(self, db, key: ConversationKey) -> Optional[PlanJob]:
        return db.execute(
            select(PlanJob).where(
                PlanJob.user_id == key.user_id,
                PlanJob.trip_key == key.trip_key,
                PlanJob.mode == key.mode.value,
                PlanJob.status.in_(ACTIVE_STATUSES),
            )
        ).scalars().first()

    # --- Client side ---

    def create_job(
        self,
        key: ConversationKey,
        context: TripContext,
        messages: list[Message],
        structure: Optional[PlanStructure] = None,
    ) -> PlanJobView:
        """Insert a pending job, or return the one already in flight for this key."""
        db = self._session_factory()
        try:
            existing = self._active_row(db, key)
            if existing:
                logger.info(f"Job {existing.id} already active for {key.as_tuple()}, not creating another")
                return self._to_view(existing)

            row = PlanJob(
                user_id=key.user_id,
                trip_key=key.trip_key,
                mode=key.mode.value,
                status=JobStatus.PENDING.value,
                progress_step=ProgressStep.STRUCTURE.value,
                context_json=context.model_dump_json(),
                messages_json=json.dumps([m.model_dump(mode="json") for m in messages]),
                structure_json=structure.model_dump_json() if structure else None,
            )
            db.add(row)
            try:
                db.commit()
            except IntegrityError:
                # Lost the race against a concurrent create for the same key
                db.rollback()
                existing = self._active_row(db, key)
                if existing is None:
                    raise
                return self._to_view(existing)
            logger.info(f"Created plan job {row.id} for {key.as_tuple()}")
            return self._to_view(row)
        finally:
            db.close()

    def get_job(self, job_id: str, user_id: Optional[str] = None) -> PlanJobView:
        db = self._session_factory()
        try:
            row = db.get(PlanJob, job_id)
            if row is None or (user_id is not None and row.user_id != user_id):
                raise JobNotFoundError(f"Job {job_id} not found")
            return self._to_view(row)
        finally:
            db.close()

    def get_active_job(self, key: ConversationKey) -> Optional[PlanJobView]:
        db = self._session_factory()
        try:
            row = self._active_row(db, key)
            return self._to_view(row) if row else None
        finally:
            db.close()

    def get_recent_completed_job(
        self,
        user_id: str,
        mode: PlannerMode = PlannerMode.CREATE,
    ) -> Optional[PlanJobView]:
        """Most recent unacknowledged completed job within the window, acknowledged on return.

        The acknowledgement is a conditional UPDATE, so concurrent callers
        cannot both receive the same completion.
        """
        cutoff = _now() - self.recent_window
        db = self._session_factory()
        try:
            while True:
                row = db.execute(
                    select(PlanJob)
                    .where(
                        PlanJob.user_id == user_id,
                        PlanJob.mode == mode.value,
                        PlanJob.status == JobStatus.DONE.value,
                        PlanJob.acknowledged_at.is_(None),
                        PlanJob.created_at >= cutoff,
                    )
                    .order_by(PlanJob.completed_at.desc())
                ).scalars().first()
                if row is None:
                    return None
                acknowledged = db.execute(
                    update(PlanJob)
                    .where(PlanJob.id == row.id, PlanJob.acknowledged_at.is_(None))
                    .values(acknowledged_at=_now())
                )
                db.commit()
                if acknowledged.rowcount == 1:
                    db.refresh(row)
                    return self._to_view(row)
        finally:
            db.close()

    # --- Worker side ---

    def claim_next(self, user_id: Optional[str] = None) -> Optional[PlanJobView]:
        """Atomically move the oldest pending job to running; None if there is none."""
        db = self._session_factory()
        try:
            while True:
                query = select(PlanJob.id).where(PlanJob.status == JobStatus.PENDING.value)
                if user_id is not None:
                    query = query.where(PlanJob.user_id == user_id)
                job_id = db.execute(query.order_by(PlanJob.created_at).limit(1)).scalar()
                if job_id is None:
                    return None
                claimed = db.execute(
                    update(PlanJob)
                    .where(PlanJob.id == job_id, PlanJob.status == JobStatus.PENDING.value)
                    .values(status=JobStatus.RUNNING.value, updated_at=_now())
                )
                db.commit()
                if claimed.rowcount == 1:
                    logger.info(f"Claimed plan job {job_id}")
                    return self._to_view(db.get(PlanJob, job_id))
        finally:
            db.close()

    def advance(self, job_id: str, step: ProgressStep) -> bool:
        """Move progress_step forward to ``step``; never moves it back."""
        db = self._session_factory()
        try:
            moved = db.execute(
                update(PlanJob)
                .where(PlanJob.id == job_id, PlanJob.progress_step.in_(_steps_before(step)))
                .values(progress_step=step.value, updated_at=_now())
            )
            db.commit()
            return moved.rowcount == 1
        finally:
            db.close()

    def _update(self, job_id: str, **values) -> None:
        db = self._session_factory()
        try:
            db.execute(update(PlanJob).where(PlanJob.id == job_id).values(updated_at=_now(), **values))
            db.commit()
        finally:
            db.close()

    def _load_inputs(self, job_id: str) -> tuple[TripContext, Optional[PlanStructure]]:
        db = self._session_factory()
        try:
            row = db.get(PlanJob, job_id)
            context = TripContext.model_validate_json(row.context_json)
            structure = PlanStructure.model_validate_json(row.structure_json) if row.structure_json else None
            return context, structure
        finally:
            db.close()

    async def run_job(self, job: PlanJobView) -> PlanJobView:
        """Generate, apply and record one claimed job. Never raises for job-level failures."""
        credits = 0
        plan: Optional[Plan] = None
        try:
            context, structure = self._load_inputs(job.id)
            preferences = context.preferences or {}

            if structure is None:
                generated = await self.generator.generate_structure(job.user_id, context, preferences)
                structure = generated.value
                credits += generated.credits
                self._update(job.id, structure_json=structure.model_dump_json(), credits_charged=credits)

            generated_days = await self.generator.generate_activities(job.user_id, context, preferences, structure)
            credits += generated_days.credits
            plan = merge_structure(structure, generated_days.value)
            self._update(job.id, plan_json=plan.model_dump_json(), credits_charged=credits)

            skip_titles: list[str] = []
            if context.trip_id:
                skip_titles = find_conflicts(plan, self.itinerary.list_activities(context.trip_id), self.conflict_policy)
                if skip_titles:
                    logger.info(f"Job {job.id}: skipping {len(skip_titles)} activities already on the trip")

            result = await asyncio.to_thread(
                self.applier.apply,
                plan,
                job.user_id,
                context.trip_id,
                context.currency,
                skip_titles,
                lambda step: self.advance(job.id, step),
            )
        except PlannerError as e:
            partial = e.partial_result if isinstance(e, PartialApplicationError) else None
            logger.warning(f"Plan job {job.id} failed ({e.kind}): {e.message}")
            self._update(
                job.id,
                status=JobStatus.ERROR.value,
                error=e.message,
                error_kind=e.kind,
                result_json=json.dumps(partial) if partial else None,
                credits_charged=credits,
                completed_at=_now(),
            )
            return self.get_job(job.id)
        except Exception as e:
            logger.error(f"Plan job {job.id} crashed: {e}", exc_info=True)
            self._update(
                job.id,
                status=JobStatus.ERROR.value,
                error="Plan generation failed unexpectedly.",
                error_kind="internal",
                credits_charged=credits,
                completed_at=_now(),
            )
            return self.get_job(job.id)

        self.advance(job.id, ProgressStep.DONE)
        self._update(
            job.id,
            status=JobStatus.DONE.value,
            result_json=result.model_dump_json(),
            credits_charged=credits,
            completed_at=_now(),
        )
        logger.info(f"Plan job {job.id} done: trip {result.trip_id}, {result.activities_created} activities")
        return self.get_job(job.id)

    def recover_interrupted(self) -> int:
        """Fail jobs left running by a previous process so their key is free again."""
        db = self._session_factory()
        try:
            recovered = db.execute(
                update(PlanJob)
                .where(PlanJob.status == JobStatus.RUNNING.value)
                .values(
                    status=JobStatus.ERROR.value,
                    error="Plan generation was interrupted by a server restart. Please start it again.",
                    error_kind="interrupted",
                    completed_at=_now(),
                    updated_at=_now(),
                )
            )
            db.commit()
            count = recovered.rowcount
        finally:
            db.close()
        if count:
            logger.warning(f"Marked {count} interrupted plan job(s) as failed")
        return count

    async def run_once(self) -> Optional[PlanJobView]:
        job = self.claim_next()
        if job is None:
            return None
        return await self.run_job(job)

    async def run_forever(self, stop: Optional[asyncio.Event] = None) -> None:
        logger.info(f"Plan worker started (poll every {self.poll_seconds}s)")
        while stop is None or not stop.is_set():
            try:
                job = await self.run_once()
            except Exception as e:
                logger.error(f"Plan worker iteration failed: {e}", exc_info=True)
                job = None
            if job is None:
                await asyncio.sleep(self.poll_seconds)
        logger.info("Plan worker stopped")
