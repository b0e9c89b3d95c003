"""Test fixtures for OrgBrain integration tests.

Uses a plain SQLite temp database (the production engine pattern without the
SQLCipher key). Each test runs inside an outer transaction that is rolled
back, so session.commit() inside services never reaches the file.
"""

import hashlib
import os
import tempfile
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session

from orgbrain.db.base import Base
from orgbrain.knowledge.models import (  # noqa: F401 -- ensure models registered
    EventAuditLog,
    KnowledgeBase,
    KnowledgeBaseSnapshot,
    LearningEvent,
    LearningEventType,
)
from orgbrain.knowledge.schemas import KnowledgeBaseUpsert
from orgbrain.knowledge.service import KnowledgeBaseService
from orgbrain.learning.events import compute_dedupe_key
from orgbrain.learning.recorder import LearningRecorder

EMBEDDING_TEST_DIM = 16


@pytest.fixture(scope="session")
def test_engine():
    """Create a temp-file SQLite engine with all tables.

    Uses a temp file on ext4 at /tmp to match production constraints.
    """
    tmpfile = tempfile.NamedTemporaryFile(
        suffix=".db", dir="/tmp", delete=False, prefix="orgbrain_test_"
    )
    db_path = tmpfile.name
    tmpfile.close()

    engine = create_engine(f"sqlite:///{db_path}", echo=False)

    @event.listens_for(engine, "connect")
    def set_pragmas(dbapi_conn, conn_rec):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    Base.metadata.create_all(engine)

    yield engine

    Base.metadata.drop_all(engine)
    engine.dispose()
    try:
        os.unlink(db_path)
        for ext in ("-wal", "-shm"):
            wal_path = db_path + ext
            if os.path.exists(wal_path):
                os.unlink(wal_path)
    except OSError:
        pass


@pytest.fixture
def db_connection(test_engine):
    """Connection holding the outer transaction for one test."""
    connection = test_engine.connect()
    transaction = connection.begin()

    yield connection

    transaction.rollback()
    connection.close()


@pytest.fixture
def db_session(db_connection):
    """Create a database session for each test.

    Rolls back all changes after each test to maintain isolation.
    """
    session = Session(bind=db_connection)

    yield session

    session.close()


@pytest.fixture
def recorder(db_connection):
    """LearningRecorder whose sessions join the test's outer transaction."""
    return LearningRecorder(session_factory=lambda: Session(bind=db_connection))


@pytest.fixture
def sample_kb(db_session):
    """Knowledge base for Acme Logistics with a bottleneck and a small tool stack."""
    data = KnowledgeBaseUpsert(
        business_name="Acme Logistics",
        industry="Freight forwarding",
        biggest_bottleneck="Manual invoicing",
        tool_stack=["Slack", "Asana"],
    )
    return KnowledgeBaseService.upsert_for_organization(db_session, "org-acme", data)


@pytest.fixture
def empty_kb(db_session):
    """Knowledge base with no fields filled in."""
    return KnowledgeBaseService.upsert_for_organization(db_session, "org-empty")


def _make_event(
    db_session,
    kb_id: int,
    insight: str,
    category: str = "business_context",
    confidence: int = 85,
    event_type: LearningEventType = LearningEventType.INSIGHT_GENERATED,
    metadata: dict | None = None,
    age_days: float = 0,
    embedding: list | None = None,
    source_type: str = "AI_ENRICHMENT",
    applied: bool = False,
) -> LearningEvent:
    """Persist a LearningEvent directly, bypassing creation-time dedupe."""
    event = LearningEvent(
        knowledge_base_id=kb_id,
        event_type=event_type,
        category=category,
        insight=insight,
        confidence=confidence,
        metadata_=metadata,
        embedding=embedding,
        source_type=source_type,
        source_ids=["test-source"],
        applied=applied,
        applied_to_fields=[],
        created_at=(datetime.now(timezone.utc) - timedelta(days=age_days)).replace(tzinfo=None),
        dedupe_key=compute_dedupe_key(kb_id, category, insight, "test-source"),
    )
    db_session.add(event)
    db_session.flush()
    return event


def _fake_vector(text: str) -> list[float]:
    """Deterministic unit vector seeded from the text."""
    seed = int(hashlib.md5(text.encode("utf-8")).hexdigest()[:8], 16)
    vec = np.random.default_rng(seed).standard_normal(EMBEDDING_TEST_DIM)
    return (vec / np.linalg.norm(vec)).tolist()


@pytest.fixture
def fake_vector():
    """Deterministic text -> unit vector function used by the fake embedders."""
    return _fake_vector


@pytest.fixture
def fake_embed():
    """Async single-text embedder returning fake_vector()."""

    async def _embed(text: str) -> list[float]:
        return _fake_vector(text)

    return _embed


@pytest.fixture
def fake_embed_batch():
    """Async batch embedder returning fake_vector() per text, None for empty."""

    async def _embed_batch(texts: list[str]) -> list:
        return [_fake_vector(t) if t else None for t in texts]

    return _embed_batch


@pytest.fixture
def make_event(db_session):
    """Factory persisting LearningEvent rows: make_event(kb_id, insight, **fields)."""

    def _factory(kb_id: int, insight: str, **kwargs) -> LearningEvent:
        return _make_event(db_session, kb_id, insight, **kwargs)

    return _factory
