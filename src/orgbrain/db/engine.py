"""SQLite engine factory with optional SQLCipher key injection.

Creates a SQLAlchemy engine over the configured database file. When an
encryption key is configured the pysqlcipher dialect is used, otherwise plain
SQLite. Every connection receives the same performance PRAGMAs.
"""

from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from orgbrain.config import Settings, get_settings


def create_db_engine(settings: Settings | None = None) -> Engine:
    """Create the application SQLAlchemy engine.

    - SQLCipher URL when db_encryption_key is set, plain SQLite otherwise
    - Event listener sets WAL mode, foreign keys, and busy timeout on each connection
    - Creates parent directory of db_path if it doesn't exist
    """
    settings = settings or get_settings()
    db_path = settings.db_path

    Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    if settings.db_encryption_key is not None:
        key = settings.db_encryption_key.get_secret_value()
        url = f"sqlite+pysqlcipher://:{key}@/{db_path}"
    else:
        url = f"sqlite:///{db_path}"

    engine = create_engine(
        url,
        pool_pre_ping=True,
        echo=settings.debug,
    )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragmas(dbapi_connection, connection_record):
        """Set SQLite PRAGMAs on every new connection."""
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    return engine


_engine: Engine | None = None
_session_factory: sessionmaker | None = None


def get_engine() -> Engine:
    """Return the process-wide engine, creating it on first use."""
    global _engine
    if _engine is None:
        _engine = create_db_engine()
    return _engine


def SessionLocal() -> Session:
    """Open a new session bound to the process-wide engine."""
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(bind=get_engine(), expire_on_commit=False)
    return _session_factory()


@contextmanager
def get_db() -> Generator[Session, None, None]:
    """Context manager yielding a database session.

    Usage:
        with get_db() as db:
            kb = db.get(KnowledgeBase, kb_id)
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
