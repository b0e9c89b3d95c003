"""Tests for learning event creation: validation, dedupe and persistence."""

import asyncio
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select

from orgbrain.knowledge.models import LearningEvent, LearningEventType, SourceType
from orgbrain.knowledge.schemas import CreateLearningEventsParams, ExtractedInsight
from orgbrain.learning.events import compute_dedupe_key, create_learning_events
from orgbrain.learning.metrics import get_metrics, list_audit_entries


def _run(coro):
    """Run an async coroutine synchronously for testing."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _insight(
    text,
    category="business_context",
    confidence=85,
    metadata=None,
    event_type=LearningEventType.INSIGHT_GENERATED,
):
    return ExtractedInsight(
        insight=text,
        category=category,
        event_type=event_type,
        confidence=confidence,
        metadata=metadata,
    )


def _params(kb_id, insights, source_type=SourceType.JOB_DESCRIPTION, source_id="jd-42"):
    return CreateLearningEventsParams(
        knowledge_base_id=kb_id,
        source_type=source_type,
        source_id=source_id,
        insights=insights,
    )


def _count_events(db_session, kb_id):
    return db_session.scalar(
        select(func.count(LearningEvent.id)).where(LearningEvent.knowledge_base_id == kb_id)
    )


class TestInputValidation:
    def test_missing_source_id(self, db_session, sample_kb, fake_embed_batch):
        params = CreateLearningEventsParams(
            knowledge_base_id=sample_kb.id, insights=[_insight("Invoices are manual")]
        )

        result = _run(create_learning_events(db_session, params, embed_batch_fn=fake_embed_batch))

        assert result.success is False
        assert result.errors == [
            "Missing required parameters: knowledge_base_id, source_id, or insights"
        ]

    def test_empty_insights(self, db_session, sample_kb, fake_embed_batch):
        result = _run(
            create_learning_events(
                db_session, _params(sample_kb.id, []), embed_batch_fn=fake_embed_batch
            )
        )

        assert result.success is False
        assert result.events_created == 0

    def test_unknown_knowledge_base(self, db_session, fake_embed_batch):
        result = _run(
            create_learning_events(
                db_session,
                _params(999_999, [_insight("Invoices are manual")]),
                embed_batch_fn=fake_embed_batch,
            )
        )

        assert result.success is False
        assert result.errors == ["Knowledge base 999999 not found"]

    def test_invalid_insight_skipped(self, db_session, sample_kb, fake_embed_batch):
        insights = [
            _insight("Invoices are produced by hand"),
            ExtractedInsight(insight="No category here", event_type="PATTERN_DETECTED"),
            ExtractedInsight(insight="   ", category="business_context"),
        ]

        result = _run(
            create_learning_events(
                db_session, _params(sample_kb.id, insights), embed_batch_fn=fake_embed_batch
            )
        )

        assert result.success is True
        assert result.events_created == 1
        assert result.errors == [
            "Skipping invalid insight at index 1: missing required fields (category)",
            "Skipping invalid insight at index 2: missing required fields (insight, event_type)",
        ]

    def test_all_invalid_fails(self, db_session, sample_kb, fake_embed_batch):
        result = _run(
            create_learning_events(
                db_session,
                _params(sample_kb.id, [ExtractedInsight(insight="orphan")]),
                embed_batch_fn=fake_embed_batch,
            )
        )

        assert result.success is False
        assert result.events_created == 0
        assert _count_events(db_session, sample_kb.id) == 0


class TestCreation:
    def test_persists_unapplied_events(
        self, db_session, sample_kb, fake_embed_batch, fake_vector
    ):
        insights = [
            _insight("Invoices are produced by hand", metadata={"evidence": "duties"}),
            _insight("Dispatch runs on WhatsApp groups", category="workflow_patterns"),
        ]

        result = _run(
            create_learning_events(
                db_session,
                _params(sample_kb.id, insights),
                embed_batch_fn=fake_embed_batch,
                embedding_model="test-model",
            )
        )

        assert result.success is True
        assert result.events_created == 2
        assert result.errors is None
        assert len(result.event_ids) == 2

        event = db_session.get(LearningEvent, result.event_ids[0])
        assert event.insight == "Invoices are produced by hand"
        assert event.applied is False
        assert event.applied_to_fields == []
        assert event.source_type == "JOB_DESCRIPTION"
        assert event.source_ids == ["jd-42"]
        assert event.metadata_ == {"evidence": "duties"}
        assert event.embedding == fake_vector("Invoices are produced by hand")
        assert event.embedding_model == "test-model"
        assert event.dedupe_key == compute_dedupe_key(
            sample_kb.id, "business_context", "Invoices are produced by hand", "jd-42"
        )

    def test_confidence_clamped_and_defaulted(self, db_session, sample_kb, fake_embed_batch):
        insights = [
            _insight("Owner signs every contract", confidence=150),
            _insight("Quotes go out by fax", confidence=0),
            _insight("Team works four-day weeks", confidence=None),
        ]

        result = _run(
            create_learning_events(
                db_session, _params(sample_kb.id, insights), embed_batch_fn=fake_embed_batch
            )
        )

        confidences = [db_session.get(LearningEvent, i).confidence for i in result.event_ids]
        assert confidences == [100, 1, 70]

    def test_embedding_failure_still_creates(self, db_session, sample_kb):
        async def broken_batch(texts):
            raise RuntimeError("model not loaded")

        result = _run(
            create_learning_events(
                db_session,
                _params(sample_kb.id, [_insight("Invoices are produced by hand")]),
                embed_batch_fn=broken_batch,
            )
        )

        assert result.success is True
        event = db_session.get(LearningEvent, result.event_ids[0])
        assert event.embedding is None
        assert event.embedding_model is None

    def test_wrong_vector_count_ignored(self, db_session, sample_kb, fake_vector):
        async def short_batch(texts):
            return [fake_vector("x")]

        result = _run(
            create_learning_events(
                db_session,
                _params(
                    sample_kb.id, [_insight("Invoices are manual"), _insight("Hiring is slow")]
                ),
                embed_batch_fn=short_batch,
            )
        )

        assert result.events_created == 2
        assert all(
            db_session.get(LearningEvent, i).embedding is None for i in result.event_ids
        )


class TestDeduplication:
    def test_semantic_duplicate_in_window(
        self, db_session, sample_kb, make_event, fake_embed_batch, fake_vector
    ):
        existing = make_event(
            sample_kb.id,
            "Billing is done manually every Friday",
            confidence=80,
            embedding=fake_vector("Invoices are produced by hand"),
        )

        result = _run(
            create_learning_events(
                db_session,
                _params(sample_kb.id, [_insight("Invoices are produced by hand", confidence=88)]),
                embed_batch_fn=fake_embed_batch,
            )
        )

        assert result.success is False
        assert result.events_created == 0
        assert len(result.errors) == 1
        assert result.errors[0].startswith("Skipping duplicate insight (semantic)")
        assert f"existing event {existing.id}" in result.errors[0]
        assert "confidence: existing=80, new=88" in result.errors[0]

    def test_string_fallback_when_embeddings_fail(self, db_session, sample_kb, make_event):
        make_event(sample_kb.id, "Invoices are produced by hand")

        async def broken_batch(texts):
            raise RuntimeError("model not loaded")

        result = _run(
            create_learning_events(
                db_session,
                _params(sample_kb.id, [_insight("Invoices are produced by hand!")]),
                embed_batch_fn=broken_batch,
            )
        )

        assert result.events_created == 0
        assert result.errors[0].startswith("Skipping duplicate insight (string)")

    def test_other_category_is_not_a_duplicate(
        self, db_session, sample_kb, make_event, fake_embed_batch, fake_vector
    ):
        make_event(
            sample_kb.id,
            "Invoices are produced by hand",
            category="risk_management",
            embedding=fake_vector("Invoices are produced by hand"),
        )

        result = _run(
            create_learning_events(
                db_session,
                _params(sample_kb.id, [_insight("Invoices are produced by hand")]),
                embed_batch_fn=fake_embed_batch,
            )
        )

        assert result.events_created == 1

    def test_events_outside_window_ignored(
        self, db_session, sample_kb, make_event, fake_embed_batch
    ):
        make_event(sample_kb.id, "Invoices are produced by hand daily", age_days=45)

        result = _run(
            create_learning_events(
                db_session,
                _params(sample_kb.id, [_insight("Invoices are produced by hand")]),
                embed_batch_fn=fake_embed_batch,
            )
        )

        assert result.events_created == 1

    def test_in_batch_duplicate(self, db_session, sample_kb, fake_embed_batch):
        insights = [
            _insight("Invoices are produced by hand", confidence=82),
            _insight("Invoices are produced by hand.", confidence=90),
        ]

        result = _run(
            create_learning_events(
                db_session, _params(sample_kb.id, insights), embed_batch_fn=fake_embed_batch
            )
        )

        assert result.events_created == 1
        assert len(result.errors) == 1
        assert "insight at index 0 in this batch" in result.errors[0]
        assert "confidence: existing=82, new=90" in result.errors[0]

    def test_same_fact_from_new_source_after_window_is_created(
        self, db_session, sample_kb, fake_embed_batch
    ):
        first_seen = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

        first = _run(
            create_learning_events(
                db_session,
                _params(sample_kb.id, [_insight("Invoices are produced by hand")], source_id="s1"),
                embed_batch_fn=fake_embed_batch,
                now=first_seen,
            )
        )
        second = _run(
            create_learning_events(
                db_session,
                _params(
                    sample_kb.id,
                    [_insight("Invoices are produced by hand", confidence=92)],
                    source_id="s2",
                ),
                embed_batch_fn=fake_embed_batch,
                now=first_seen + timedelta(days=45),
            )
        )

        assert first.events_created == 1
        assert second.success is True
        assert second.events_created == 1
        assert second.errors is None
        assert _count_events(db_session, sample_kb.id) == 2
        confirmed = db_session.get(LearningEvent, second.event_ids[0])
        assert confirmed.source_ids == ["s2"]
        assert confirmed.confidence == 92

    def test_reprocessed_source_is_reported_as_already_recorded(
        self, db_session, sample_kb, fake_embed_batch
    ):
        first_seen = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
        params = _params(sample_kb.id, [_insight("Invoices are produced by hand")])

        _run(
            create_learning_events(
                db_session, params, embed_batch_fn=fake_embed_batch, now=first_seen
            )
        )
        # Outside the window the similarity check no longer sees the first row
        result = _run(
            create_learning_events(
                db_session,
                params,
                embed_batch_fn=fake_embed_batch,
                now=first_seen + timedelta(days=45),
            )
        )

        assert result.success is False
        assert result.events_created == 0
        assert result.errors == ["1 insight(s) already recorded, skipped"]
        assert _count_events(db_session, sample_kb.id) == 1


class TestRecorderSideEffects:
    def test_created_audits_and_extraction_metrics(
        self, db_session, sample_kb, recorder, fake_embed_batch
    ):
        insights = [
            _insight("Invoices are produced by hand", confidence=80),
            _insight(
                "Dispatch runs on WhatsApp groups", category="workflow_patterns", confidence=90
            ),
            ExtractedInsight(insight="missing everything"),
        ]

        result = _run(
            create_learning_events(
                db_session,
                _params(sample_kb.id, insights),
                recorder=recorder,
                embed_batch_fn=fake_embed_batch,
            )
        )
        _run(recorder.flush())
        db_session.expire_all()

        audits = list_audit_entries(db_session, sample_kb.id)
        assert sorted(a.event_id for a in audits) == sorted(result.event_ids)
        assert {a.action for a in audits} == {"created"}
        assert {a.reason for a in audits} == {"Created from JOB_DESCRIPTION"}

        extraction = get_metrics(db_session, sample_kb.id)["extraction"]
        assert len(extraction) == 1
        record = extraction[0]
        assert record["source_type"] == "JOB_DESCRIPTION"
        assert record["source_id"] == "jd-42"
        assert record["insights_extracted"] == 3
        assert record["insights_created"] == 2
        assert record["insights_by_category"] == {"business_context": 1, "workflow_patterns": 1}
        assert record["average_confidence"] == 85.0
        assert record["invalid_count"] == 1
        assert record["duplicate_count"] == 0
        assert recorder.failed == 0

    def test_embedding_backfill_submitted(
        self,
        db_session,
        sample_kb,
        make_event,
        recorder,
        fake_embed,
        fake_embed_batch,
        fake_vector,
    ):
        old = make_event(sample_kb.id, "Billing is done manually every Friday")

        _run(
            create_learning_events(
                db_session,
                _params(sample_kb.id, [_insight("Drivers log hours on paper")]),
                recorder=recorder,
                embed_batch_fn=fake_embed_batch,
                embed_fn=fake_embed,
                embedding_model="test-model",
            )
        )
        _run(recorder.flush())
        db_session.expire_all()

        refreshed = db_session.get(LearningEvent, old.id)
        assert refreshed.embedding == fake_vector("Billing is done manually every Friday")
        assert refreshed.embedding_model == "test-model"

    def test_no_recorder_items_when_nothing_created(
        self, db_session, sample_kb, recorder, fake_embed_batch
    ):
        _run(
            create_learning_events(
                db_session,
                _params(sample_kb.id, [ExtractedInsight(insight="orphan")]),
                recorder=recorder,
                embed_batch_fn=fake_embed_batch,
            )
        )

        assert recorder.pending == 0
