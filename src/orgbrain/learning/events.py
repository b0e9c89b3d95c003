"""Learning event creation: validate, deduplicate, persist.

Turns a batch of extracted insights into unapplied LearningEvent rows.
Duplicates of recent events (same knowledge base and category, inside the
duplicate window) and of earlier insights in the same batch are dropped.

Insertion is a single INSERT .. ON CONFLICT DO NOTHING on dedupe_key with
RETURNING. The key includes the source id, so re-processing one source (or two
concurrent callers submitting it) yields one row, while the same fact seen again
in a different source after the duplicate window is recorded afresh.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from orgbrain.db.base import as_utc, utcnow
from orgbrain.knowledge.models import KnowledgeBase, LearningEvent
from orgbrain.knowledge.schemas import (
    CreateLearningEventsParams,
    CreateLearningEventsResult,
    ExtractedInsight,
)
from orgbrain.learning.metrics import (
    ExtractionMetrics,
    record_event_audit,
    record_extraction_metrics,
)
from orgbrain.learning.recorder import LearningRecorder
from orgbrain.learning.similarity import SimilarityService, normalize_text
from orgbrain.learning.thresholds import DEFAULT_LEARNING_CONFIG, LearningConfig
from orgbrain.semantic import embeddings

logger = logging.getLogger(__name__)

EmbedBatchFn = Callable[[list[str]], Awaitable[Sequence[Optional[list[float]]]]]
EmbedFn = Callable[[str], Awaitable[list[float]]]


@dataclass
class _PendingInsight:
    """An accepted insight of the current batch, comparable like a stored event."""

    id: int
    insight: str
    category: str
    confidence: int
    embedding: Optional[list[float]]
    source: ExtractedInsight


def compute_dedupe_key(
    knowledge_base_id: int, category: str, insight: str, source_id: str
) -> str:
    """sha256 over knowledge base, source, category and normalized insight text."""
    raw = (
        f"{knowledge_base_id}:{source_id}:{category.strip().lower()}:"
        f"{normalize_text(insight)}"
    )
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def store_embedding_backfill(
    db: Session, event_id: int, vector: list[float], model: str
) -> None:
    """Persist an on-demand embedding for an older event (recorder item)."""
    db.execute(
        update(LearningEvent)
        .where(LearningEvent.id == event_id, LearningEvent.embedding.is_(None))
        .values(embedding=vector, embedding_model=model)
        .execution_options(synchronize_session=False)
    )


def _missing_fields(item: ExtractedInsight) -> list[str]:
    missing = []
    if not item.insight or not item.insight.strip():
        missing.append("insight")
    if not item.category or not item.category.strip():
        missing.append("category")
    if item.event_type is None:
        missing.append("event_type")
    return missing


def _duplicate_message(method: str, text: str, against: str, existing: int, new: int) -> str:
    return (
        f'Skipping duplicate insight ({method}): "{text[:50]}..." '
        f"(similar to {against}, confidence: existing={existing}, new={new})"
    )


async def _embed_all(
    texts: list[str], embed_batch_fn: EmbedBatchFn
) -> tuple[list[Optional[list[float]]], bool]:
    """One batch embedding call. Returns (vectors, failed)."""
    try:
        vectors = list(await embed_batch_fn(texts))
    except Exception as e:
        logger.warning("Batch embedding failed, falling back to string similarity: %s", e)
        return [None] * len(texts), True
    if len(vectors) != len(texts):
        logger.warning(
            "Batch embedding returned %d vectors for %d texts, ignoring them",
            len(vectors),
            len(texts),
        )
        return [None] * len(texts), True
    return vectors, False


async def create_learning_events(
    db: Session,
    params: CreateLearningEventsParams,
    *,
    config: LearningConfig = DEFAULT_LEARNING_CONFIG,
    recorder: Optional[LearningRecorder] = None,
    embed_batch_fn: Optional[EmbedBatchFn] = None,
    embed_fn: Optional[EmbedFn] = None,
    embedding_model: str = embeddings.EMBEDDING_MODEL,
    now: Optional[datetime] = None,
) -> CreateLearningEventsResult:
    """Create unapplied learning events from extracted insights.

    Args:
        db: Database session.
        params: Target knowledge base, source and insights.
        config: Thresholds, default confidence and duplicate window.
        recorder: Receives creation audits, extraction metrics and
            embedding backfills. None skips them.
        embed_batch_fn: Batch embedder; defaults to the BGE-M3 service.
        embed_fn: Single-text embedder for stored events without a vector.
        embedding_model: Identifier stored next to each vector.
        now: Reference time, injectable for tests.

    Returns:
        CreateLearningEventsResult. Never raises for input or store failures.
    """
    if not params.knowledge_base_id or not params.source_id or not params.insights:
        return CreateLearningEventsResult(
            success=False,
            errors=["Missing required parameters: knowledge_base_id, source_id, or insights"],
        )

    kb_id = params.knowledge_base_id
    if db.get(KnowledgeBase, kb_id) is None:
        return CreateLearningEventsResult(
            success=False, errors=[f"Knowledge base {kb_id} not found"]
        )

    embed_batch_fn = embed_batch_fn or embeddings.embed_batch
    embed_fn = embed_fn or embeddings.embed
    now = as_utc(now) if now is not None else utcnow()
    source_type = params.source_type.value
    errors: list[str] = []

    # Recent events in the batch's categories form the duplicate window
    categories = sorted({i.category for i in params.insights if i.category})
    window_start = (now - timedelta(days=config.duplicate_window_days)).replace(tzinfo=None)
    recent_events = list(
        db.scalars(
            select(LearningEvent).where(
                LearningEvent.knowledge_base_id == kb_id,
                LearningEvent.category.in_(categories),
                LearningEvent.created_at >= window_start,
            )
        )
    )

    texts = [item.insight or "" for item in params.insights]
    vectors, embeddings_failed = await _embed_all(texts, embed_batch_fn)

    on_backfill = None
    if recorder is not None:

        def on_backfill(event_id: int, vector: list[float]) -> None:
            recorder.submit(
                "embedding_backfill",
                lambda s: store_embedding_backfill(s, event_id, vector, embedding_model),
            )

    similarity = SimilarityService(
        config,
        embed_fn=None if embeddings_failed else embed_fn,
        on_backfill=on_backfill,
    )
    batch_similarity = SimilarityService(config)

    accepted: list[_PendingInsight] = []
    duplicate_count = 0
    invalid_count = 0

    for index, item in enumerate(params.insights):
        missing = _missing_fields(item)
        if missing:
            invalid_count += 1
            errors.append(
                f"Skipping invalid insight at index {index}: missing required fields "
                f"({', '.join(missing)})"
            )
            continue

        confidence = item.confidence if item.confidence is not None else config.default_confidence
        confidence = max(1, min(100, confidence))
        vector = vectors[index]

        category_events = [e for e in recent_events if e.category == item.category]
        match = await similarity.find_duplicate(category_events, item.insight, vector)
        if match is not None:
            existing, check = match
            duplicate_count += 1
            errors.append(
                _duplicate_message(
                    check.method,
                    item.insight,
                    f"existing event {existing.id}",
                    existing.confidence,
                    confidence,
                )
            )
            continue

        same_category = [p for p in accepted if p.category == item.category]
        match = await batch_similarity.find_duplicate(same_category, item.insight, vector)
        if match is not None:
            earlier, check = match
            duplicate_count += 1
            errors.append(
                _duplicate_message(
                    check.method,
                    item.insight,
                    f"insight at index {-earlier.id - 1} in this batch",
                    earlier.confidence,
                    confidence,
                )
            )
            continue

        accepted.append(
            _PendingInsight(
                id=-(index + 1),
                insight=item.insight,
                category=item.category,
                confidence=confidence,
                embedding=vector,
                source=item,
            )
        )

    if not accepted:
        return CreateLearningEventsResult(
            success=False,
            errors=errors or ["No valid insights to create"],
        )

    created_at = now.replace(tzinfo=None)
    rows = []
    for pending in accepted:
        item = pending.source
        rows.append(
            {
                "knowledge_base_id": kb_id,
                "event_type": item.event_type,
                "category": pending.category,
                "insight": pending.insight,
                "confidence": pending.confidence,
                "metadata": item.metadata,
                "embedding": pending.embedding,
                "embedding_model": embedding_model if pending.embedding else None,
                "source_type": source_type,
                "source_ids": [params.source_id],
                "triggered_by": params.triggered_by,
                "applied": False,
                "applied_at": None,
                "applied_to_fields": [],
                "created_at": created_at,
                "dedupe_key": compute_dedupe_key(
                    kb_id, pending.category, pending.insight, params.source_id
                ),
            }
        )

    table = LearningEvent.__table__
    stmt = (
        sqlite_insert(table)
        .values(rows)
        .on_conflict_do_nothing(index_elements=["dedupe_key"])
        .returning(table.c.id, table.c.dedupe_key)
    )
    try:
        inserted = db.execute(stmt).all()
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error("Failed to create learning events for knowledge base %d: %s", kb_id, e)
        return CreateLearningEventsResult(success=False, errors=errors + [str(e)])

    created_keys = {row.dedupe_key: row.id for row in inserted}
    event_ids = sorted(created_keys.values())
    already_recorded = len(rows) - len(event_ids)
    if already_recorded:
        errors.append(f"{already_recorded} insight(s) already recorded, skipped")

    logger.info(
        "Created %d learning events for knowledge base %d from %s (%d duplicates, %d invalid)",
        len(event_ids),
        kb_id,
        source_type,
        duplicate_count,
        invalid_count,
    )

    if recorder is not None and event_ids:
        reason = f"Created from {source_type}"
        for event_id in event_ids:
            recorder.submit(
                "created_audit",
                lambda s, event_id=event_id: record_event_audit(
                    s, kb_id, event_id, "created", reason=reason
                ),
            )

        created_rows = [row for row in rows if row["dedupe_key"] in created_keys]
        by_category: dict[str, int] = {}
        for row in created_rows:
            by_category[row["category"]] = by_category.get(row["category"], 0) + 1
        metrics = ExtractionMetrics(
            source_type=source_type,
            source_id=params.source_id,
            insights_extracted=len(params.insights),
            insights_created=len(event_ids),
            insights_by_category=by_category,
            average_confidence=round(
                sum(row["confidence"] for row in created_rows) / len(created_rows), 2
            ),
            duplicate_count=duplicate_count + already_recorded,
            invalid_count=invalid_count,
        )
        recorder.submit(
            "extraction_metrics",
            lambda s: record_extraction_metrics(
                s, kb_id, metrics, config.metrics_history_limit
            ),
        )

    return CreateLearningEventsResult(
        success=bool(event_ids),
        events_created=len(event_ids),
        event_ids=event_ids,
        errors=errors or None,
    )
