"""Database layer: SQLite/SQLCipher engine, base models, session management."""

from orgbrain.db.base import Base, TimestampMixin, as_utc, utcnow
from orgbrain.db.engine import SessionLocal, create_db_engine, get_db, get_engine

__all__ = [
    "Base",
    "TimestampMixin",
    "as_utc",
    "utcnow",
    "create_db_engine",
    "get_engine",
    "SessionLocal",
    "get_db",
]
