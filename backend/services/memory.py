"""Traveller memory: a short free-text note of a user's travel preferences."""

import logging
from typing import Optional

from backend.models_db import TravellerMemory

logger = logging.getLogger(__name__)

MAX_MEMORY_CHARS = 200


class TravellerMemoryStore:
    def __init__(self, session_factory=None):
        if session_factory is None:
            from backend.database import SessionLocal
            session_factory = SessionLocal
        self._session_factory = session_factory

    def get(self, user_id: str) -> Optional[str]:
        db = self._session_factory()
        try:
            row = db.get(TravellerMemory, user_id)
            return row.content if row and row.content else None
        finally:
            db.close()

    def save(self, user_id: str, content: str) -> None:
        """Replace the memory; the assistant always sends the merged version."""
        content = content.strip()[:MAX_MEMORY_CHARS]
        if not content:
            return
        db = self._session_factory()
        try:
            row = db.get(TravellerMemory, user_id)
            if row:
                row.content = content
            else:
                db.add(TravellerMemory(user_id=user_id, content=content))
            db.commit()
        finally:
            db.close()
        logger.info(f"Updated traveller memory for user={user_id}")
