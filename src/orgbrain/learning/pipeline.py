"""Extract -> create -> apply, as one call.

The text-to-insights extractor (normally an LLM prompt) is an external
collaborator; implementations subclass InsightExtractor.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.orm import Session

from orgbrain.knowledge.models import SourceType
from orgbrain.knowledge.schemas import (
    ApplyLearningEventsResult,
    CreateLearningEventsParams,
    CreateLearningEventsResult,
    ExtractedInsight,
)
from orgbrain.learning.applicator import apply_learning_events_to_kb
from orgbrain.learning.events import EmbedBatchFn, EmbedFn, create_learning_events
from orgbrain.learning.recorder import LearningRecorder
from orgbrain.learning.thresholds import DEFAULT_LEARNING_CONFIG, LearningConfig

logger = logging.getLogger(__name__)


class InsightExtractor(ABC):
    """Turns source material into candidate insights."""

    @abstractmethod
    async def extract(self, source_type: SourceType, payload: Any) -> list[ExtractedInsight]:
        """Return the insights found in payload. May return an empty list."""


@dataclass
class LearningOutcome:
    creation: CreateLearningEventsResult
    application: Optional[ApplyLearningEventsResult] = None


class LearningPipeline:
    """Runs an extractor and feeds its insights through creation and application."""

    def __init__(
        self,
        extractor: InsightExtractor,
        config: LearningConfig = DEFAULT_LEARNING_CONFIG,
        recorder: Optional[LearningRecorder] = None,
        embed_batch_fn: Optional[EmbedBatchFn] = None,
        embed_fn: Optional[EmbedFn] = None,
    ) -> None:
        self.extractor = extractor
        self.config = config
        self.recorder = recorder
        self.embed_batch_fn = embed_batch_fn
        self.embed_fn = embed_fn

    async def learn(
        self,
        db: Session,
        knowledge_base_id: int,
        source_type: SourceType,
        source_id: str,
        payload: Any,
        triggered_by: Optional[str] = None,
        auto_apply: bool = True,
    ) -> LearningOutcome:
        """Extract insights from payload, record them, and apply the confident ones.

        Extractor failures are reported in the creation result rather than
        raised. Application runs at the high confidence tier and only when
        at least one event was created.
        """
        try:
            insights = await self.extractor.extract(source_type, payload)
        except Exception as e:
            logger.error("Insight extraction failed for %s %s: %s", source_type.value, source_id, e)
            return LearningOutcome(
                creation=CreateLearningEventsResult(
                    success=False, errors=[f"Insight extraction failed: {e}"]
                )
            )

        creation = await create_learning_events(
            db,
            CreateLearningEventsParams(
                knowledge_base_id=knowledge_base_id,
                source_type=source_type,
                source_id=source_id,
                insights=insights,
                triggered_by=triggered_by,
            ),
            config=self.config,
            recorder=self.recorder,
            embed_batch_fn=self.embed_batch_fn,
            embed_fn=self.embed_fn,
        )
        outcome = LearningOutcome(creation=creation)
        if not auto_apply or not creation.success:
            return outcome

        outcome.application = await apply_learning_events_to_kb(
            db,
            knowledge_base_id,
            min_confidence=self.config.thresholds.high,
            config=self.config,
            recorder=self.recorder,
        )
        if not outcome.application.success:
            logger.warning(
                "Learning events created but application failed for knowledge base %d: %s",
                knowledge_base_id,
                outcome.application.errors,
            )
        return outcome
