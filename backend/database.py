"""Database setup via SQLAlchemy.

SQLite by default. The request handlers and the background plan worker
share one file, so every connection waits on locks instead of failing.
"""
import os

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase

# Default database lives in data/ (gitignored)
_DATA_DIR = os.path.join(os.path.dirname(os.path.dirname(__file__)), "data")
DATABASE_URL = os.getenv("DATABASE_URL") or f"sqlite:///{os.path.join(_DATA_DIR, 'travelplanner.db')}"
SQLITE_BUSY_TIMEOUT_MS = int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000"))


def _configure_sqlite(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute(f"PRAGMA busy_timeout = {SQLITE_BUSY_TIMEOUT_MS}")
    cursor.close()


def create_session_factory(url: str) -> tuple[Engine, sessionmaker]:
    """Engine and session factory for ``url``; tests pass a temporary file."""
    is_sqlite = url.startswith("sqlite")
    db_engine = create_engine(url, connect_args={"check_same_thread": False} if is_sqlite else {})
    if is_sqlite:
        event.listen(db_engine, "connect", _configure_sqlite)
    return db_engine, sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


if DATABASE_URL.startswith(f"sqlite:///{_DATA_DIR}"):
    os.makedirs(_DATA_DIR, exist_ok=True)
engine, SessionLocal = create_session_factory(DATABASE_URL)


class Base(DeclarativeBase):
    pass


def get_db():
    """FastAPI dependency for DB session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    """Create every planner table on ``bind`` (the default engine otherwise)."""
    import backend.models_db  # noqa: F401
    Base.metadata.create_all(bind=bind or engine)
