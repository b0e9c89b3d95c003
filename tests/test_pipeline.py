"""Tests for the extract -> create -> apply pipeline."""

import asyncio

from orgbrain.knowledge.models import LearningEventType, SourceType
from orgbrain.knowledge.schemas import ExtractedInsight
from orgbrain.learning.pipeline import InsightExtractor, LearningPipeline


def _run(coro):
    """Run an async coroutine synchronously for testing."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


class FakeExtractor(InsightExtractor):
    """Returns canned insights and records what it was asked to read."""

    def __init__(self, insights=None, error=None):
        self.insights = insights or []
        self.error = error
        self.calls = []

    async def extract(self, source_type, payload):
        self.calls.append((source_type, payload))
        if self.error is not None:
            raise self.error
        return list(self.insights)


def _insight(text, confidence, category="business_context", metadata=None):
    return ExtractedInsight(
        insight=text,
        category=category,
        event_type=LearningEventType.PATTERN_DETECTED,
        confidence=confidence,
        metadata=metadata,
    )


class TestLearningPipeline:
    def test_learn_creates_and_applies_confident_events(
        self, db_session, sample_kb, fake_embed, fake_embed_batch
    ):
        extractor = FakeExtractor(
            [
                _insight(
                    "Orders are keyed into two systems",
                    88,
                    "process_optimization",
                    {"pain_point": "Double entry"},
                ),
                _insight("Might be expanding to rail", 65),
            ]
        )
        pipeline = LearningPipeline(
            extractor, embed_batch_fn=fake_embed_batch, embed_fn=fake_embed
        )

        outcome = _run(
            pipeline.learn(
                db_session,
                sample_kb.id,
                SourceType.SOP_GENERATION,
                "sop-1",
                "SOP text",
                triggered_by="user-7",
            )
        )

        assert extractor.calls == [(SourceType.SOP_GENERATION, "SOP text")]
        assert outcome.creation.success is True
        assert outcome.creation.events_created == 2
        assert outcome.application.success is True
        assert outcome.application.events_applied == 1
        assert sample_kb.extracted_knowledge["pain_points"] == ["Double entry"]

    def test_auto_apply_off(self, db_session, sample_kb, fake_embed, fake_embed_batch):
        pipeline = LearningPipeline(
            FakeExtractor([_insight("Owner approves every invoice", 92)]),
            embed_batch_fn=fake_embed_batch,
            embed_fn=fake_embed,
        )

        outcome = _run(
            pipeline.learn(
                db_session,
                sample_kb.id,
                SourceType.CHAT_CONVERSATION,
                "chat-1",
                "...",
                auto_apply=False,
            )
        )

        assert outcome.creation.events_created == 1
        assert outcome.application is None
        assert sample_kb.enrichment_version == 0

    def test_extractor_failure_reported(self, db_session, sample_kb, fake_embed_batch):
        pipeline = LearningPipeline(
            FakeExtractor(error=RuntimeError("LLM timeout")), embed_batch_fn=fake_embed_batch
        )

        outcome = _run(
            pipeline.learn(db_session, sample_kb.id, SourceType.FILE_UPLOAD, "f-1", b"...")
        )

        assert outcome.creation.success is False
        assert outcome.creation.errors == ["Insight extraction failed: LLM timeout"]
        assert outcome.application is None

    def test_nothing_extracted_skips_application(self, db_session, sample_kb, fake_embed_batch):
        pipeline = LearningPipeline(FakeExtractor([]), embed_batch_fn=fake_embed_batch)

        outcome = _run(
            pipeline.learn(db_session, sample_kb.id, SourceType.JOB_DESCRIPTION, "jd-1", "JD")
        )

        assert outcome.creation.success is False
        assert outcome.application is None
