import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError

from backend.conversation.models import (
    ConversationKey,
    ConversationSession,
    ErrorInfo,
    ExecutionResult,
    Message,
    TripContext,
    TurnMetadata,
)
from planning.plan import Plan, PlanStructure


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemorySessionStore:
    def __init__(self, ttl_hours: int = 24):
        self._sessions: dict[tuple[str, str, str], ConversationSession] = {}
        self._lock = asyncio.Lock()
        self._ttl = timedelta(hours=ttl_hours)

    async def get(self, key: ConversationKey) -> Optional[ConversationSession]:
        async with self._lock:
            session = self._sessions.get(key.as_tuple())
            return session.model_copy(deep=True) if session else None

    async def get_or_create(self, key: ConversationKey) -> ConversationSession:
        async with self._lock:
            session = self._sessions.get(key.as_tuple())
            if session is None:
                session = ConversationSession.for_key(key)
                self._sessions[key.as_tuple()] = session
            return session.model_copy(deep=True)

    async def save(self, session: ConversationSession) -> None:
        session.updated_at = _utcnow()
        async with self._lock:
            self._sessions[session.key.as_tuple()] = session.model_copy(deep=True)

    async def delete(self, key: ConversationKey) -> bool:
        async with self._lock:
            return self._sessions.pop(key.as_tuple(), None) is not None

    async def list_for_user(self, user_id: str) -> list[ConversationSession]:
        async with self._lock:
            sessions = [s for s in self._sessions.values() if s.user_id == user_id]
        return sorted(sessions, key=lambda s: s.updated_at, reverse=True)

    async def cleanup_expired(self) -> int:
        now = _utcnow()
        async with self._lock:
            expired = [k for k, s in self._sessions.items() if now - s.updated_at > self._ttl]
            for k in expired:
                del self._sessions[k]
            return len(expired)


def _dump_list(items) -> str:
    return json.dumps([i.model_dump(mode="json") for i in items])


def _dump(model) -> Optional[str]:
    return model.model_dump_json() if model is not None else None


def _load(model_cls, raw: Optional[str]):
    return model_cls.model_validate_json(raw) if raw else None


class SQLiteSessionStore:
    """Persistent conversation store backed by SQLAlchemy; one row per (user, trip, mode)."""

    def __init__(self, session_factory=None):
        if session_factory is None:
            from backend.database import SessionLocal
            session_factory = SessionLocal
        self._session_factory = session_factory

    def _to_pydantic(self, row) -> ConversationSession:
        """Convert ORM Conversation row to Pydantic ConversationSession."""
        return ConversationSession(
            id=row.id,
            user_id=row.user_id,
            trip_id=row.trip_key or None,
            mode=row.mode,
            phase=row.phase,
            messages=[Message(**m) for m in json.loads(row.messages_json or "[]")],
            archived_messages=[Message(**m) for m in json.loads(row.archived_messages_json or "[]")],
            last_metadata=_load(TurnMetadata, row.metadata_json),
            context=_load(TripContext, row.context_json) or TripContext(),
            structure=_load(PlanStructure, row.structure_json),
            plan=_load(Plan, row.plan_json),
            pending_conflicts=json.loads(row.pending_conflicts_json) if row.pending_conflicts_json else None,
            execution_result=_load(ExecutionResult, row.execution_result_json),
            last_error=_load(ErrorInfo, row.last_error_json),
            active_job_id=row.active_job_id,
            token_warning=row.token_warning,
            credits_balance_snapshot=row.credits_balance_snapshot,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def _fill_row(self, row, session: ConversationSession) -> None:
        row.phase = session.phase.value
        row.messages_json = _dump_list(session.messages)
        row.archived_messages_json = _dump_list(session.archived_messages)
        row.metadata_json = _dump(session.last_metadata)
        row.context_json = session.context.model_dump_json()
        # Computed fields are re-derived on load
        row.structure_json = (
            session.structure.model_dump_json(exclude={"day_count", "budget_category_count", "estimated_seconds"})
            if session.structure else None
        )
        row.plan_json = _dump(session.plan)
        row.pending_conflicts_json = json.dumps(session.pending_conflicts) if session.pending_conflicts is not None else None
        row.execution_result_json = _dump(session.execution_result)
        row.last_error_json = _dump(session.last_error)
        row.active_job_id = session.active_job_id
        row.token_warning = session.token_warning
        row.credits_balance_snapshot = session.credits_balance_snapshot
        row.updated_at = _utcnow()

    def _query(self, db, key: ConversationKey):
        from backend.models_db import Conversation
        return db.query(Conversation).filter(
            Conversation.user_id == key.user_id,
            Conversation.trip_key == key.trip_key,
            Conversation.mode == key.mode.value,
        )

    async def get(self, key: ConversationKey) -> Optional[ConversationSession]:
        db = self._session_factory()
        try:
            row = self._query(db, key).first()
            return self._to_pydantic(row) if row else None
        finally:
            db.close()

    async def get_or_create(self, key: ConversationKey) -> ConversationSession:
        from backend.models_db import Conversation
        existing = await self.get(key)
        if existing:
            return existing

        session = ConversationSession.for_key(key)
        db = self._session_factory()
        try:
            row = Conversation(
                id=session.id,
                user_id=key.user_id,
                trip_key=key.trip_key,
                mode=key.mode.value,
            )
            self._fill_row(row, session)
            db.add(row)
            db.commit()
        except IntegrityError:
            # Created concurrently by another request for the same key
            db.rollback()
            return await self.get(key)
        finally:
            db.close()
        return session

    async def save(self, session: ConversationSession) -> None:
        from backend.models_db import Conversation
        db = self._session_factory()
        try:
            row = self._query(db, session.key).first()
            if not row:
                row = Conversation(
                    id=session.id,
                    user_id=session.user_id,
                    trip_key=session.key.trip_key,
                    mode=session.mode.value,
                )
                db.add(row)
            self._fill_row(row, session)
            db.commit()
            session.updated_at = row.updated_at
        finally:
            db.close()

    async def delete(self, key: ConversationKey) -> bool:
        db = self._session_factory()
        try:
            row = self._query(db, key).first()
            if not row:
                return False
            db.delete(row)
            db.commit()
            return True
        finally:
            db.close()

    async def list_for_user(self, user_id: str) -> list[ConversationSession]:
        from backend.models_db import Conversation
        db = self._session_factory()
        try:
            rows = (
                db.query(Conversation)
                .filter(Conversation.user_id == user_id)
                .order_by(Conversation.updated_at.desc())
                .all()
            )
            return [self._to_pydantic(r) for r in rows]
        finally:
            db.close()
