"""Application engine: apply unapplied learning events to a knowledge base.

One run walks the knowledge base's unapplied events page by page through an
explicit state machine:

    FETCH_PAGE -> FILTER -> RESOLVE -> WRITE -> RELOAD -> FETCH_PAGE | FINALIZE -> DONE
                                         ^          |
                                         +----------+  (version conflict, bounded retries)

Each page is written with a single version-checked UPDATE that also bumps
enrichment_version, and the page's applied events are marked in the same
transaction. Only the extracted_knowledge keys a page changed (buckets,
field_history) are patched into the stored document, so metrics the recorder
writes between pages, or from another process, survive the page write.

Runs for the same knowledge base are serialized by an in-process asyncio.Lock;
the version check guards against writers in other processes.
"""

from __future__ import annotations

import asyncio
import copy
import time
import weakref
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

import structlog
from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from orgbrain.db.base import utcnow
from orgbrain.exceptions import ConcurrentUpdateError
from orgbrain.knowledge.models import KnowledgeBase, LearningEvent
from orgbrain.knowledge.schemas import ApplyLearningEventsResult
from orgbrain.knowledge.service import extracted_knowledge_patch
from orgbrain.learning.conflict import (
    ResolutionStrategy,
    merge_array_field,
    merge_values,
    track_field_history,
)
from orgbrain.learning.decay import DecayConfig, get_decay_info, meets_confidence_threshold
from orgbrain.learning.mapping import (
    FieldMapping,
    FieldTargetKind,
    map_insight_to_kb_field,
    merge_tool_names,
)
from orgbrain.learning.metrics import (
    ApplicationMetrics,
    QualityMetrics,
    SourceEffectiveness,
    create_kb_state_snapshot,
    record_application_metrics,
    record_event_audit,
    update_quality_metrics,
)
from orgbrain.learning.priority import sort_events_by_priority
from orgbrain.learning.recorder import LearningRecorder
from orgbrain.learning.thresholds import DEFAULT_LEARNING_CONFIG, LearningConfig

logger = structlog.get_logger(__name__)


class ApplyPhase(str, Enum):
    FETCH_PAGE = "fetch_page"
    FILTER = "filter"
    RESOLVE = "resolve"
    WRITE = "write"
    RELOAD = "reload"
    FINALIZE = "finalize"
    DONE = "done"


# Per-loop registry: asyncio.Lock objects must not be shared across event loops
_locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, dict[int, asyncio.Lock]]" = (
    weakref.WeakKeyDictionary()
)


def knowledge_base_lock(knowledge_base_id: int) -> asyncio.Lock:
    """The lock serializing application runs for one knowledge base."""
    loop = asyncio.get_running_loop()
    per_loop = _locks.setdefault(loop, {})
    lock = per_loop.get(knowledge_base_id)
    if lock is None:
        lock = per_loop[knowledge_base_id] = asyncio.Lock()
    return lock


_OUTCOME_BY_STRATEGY = {
    ResolutionStrategy.REPLACE: "replaced",
    ResolutionStrategy.MERGE: "merged",
    ResolutionStrategy.KEEP: "kept",
    ResolutionStrategy.APPEND: "appended",
}


@dataclass
class AppliedChange:
    """What one event contributed, for its 'applied' audit."""

    event_id: int
    confidence: int
    source_type: Optional[str]
    fields: list[str]
    reason: str
    previous_value: Optional[dict] = None
    new_value: Optional[dict] = None
    resulting_kb_version: Optional[int] = None


@dataclass
class PagePlan:
    """Resolved outcome of one page, ready to be written."""

    expected_version: int
    updates: dict[str, Any] = field(default_factory=dict)
    document_updates: dict[str, Any] = field(default_factory=dict)
    changes: dict[int, AppliedChange] = field(default_factory=dict)
    skipped: list[tuple[LearningEvent, str]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    outcomes: Counter = field(default_factory=Counter)
    fields_changed: set[str] = field(default_factory=set)

    @property
    def has_kb_changes(self) -> bool:
        return bool(self.updates or self.document_updates)


class _ApplicationRun:
    """State for one apply_learning_events_to_kb call.

    Each phase method is synchronous and returns the next phase; run() is the
    only coroutine and yields to the loop between pages.
    """

    def __init__(
        self,
        db: Session,
        knowledge_base_id: int,
        *,
        min_confidence: int,
        batch_size: int,
        decay_config: DecayConfig,
        config: LearningConfig,
        recorder: Optional[LearningRecorder],
        deadline: Optional[float],
        now: Optional[datetime] = None,
    ) -> None:
        self.db = db
        self.knowledge_base_id = knowledge_base_id
        self.min_confidence = min_confidence
        self.batch_size = batch_size
        self.decay_config = decay_config
        self.config = config
        self.recorder = recorder
        self.deadline = deadline
        self.now = now

        self.phase = ApplyPhase.FETCH_PAGE
        self.kb: Optional[KnowledgeBase] = None
        self.cursor: Optional[tuple[datetime, int]] = None
        self.page: list[LearningEvent] = []
        self.survivors: list[LearningEvent] = []
        self.plan: Optional[PagePlan] = None
        self.conflict = False
        self.attempts = 0
        self.pages_written = 0

        self.processed = 0
        self.skipped = 0
        self.decayed = 0
        self.errors: list[str] = []
        self.fields_updated: set[str] = set()
        self.applied: list[AppliedChange] = []
        self.outcomes: Counter = Counter()
        self._started = time.monotonic()

    # -- Phases ---------------------------------------------------------------

    def fetch_page(self) -> ApplyPhase:
        """Next keyset page of unapplied events ordered by (created_at, id)."""
        stmt = select(LearningEvent).where(
            LearningEvent.knowledge_base_id == self.knowledge_base_id,
            LearningEvent.applied.is_(False),
            LearningEvent.confidence >= self.min_confidence,
        )
        if self.cursor is not None:
            created_at, event_id = self.cursor
            stmt = stmt.where(
                or_(
                    LearningEvent.created_at > created_at,
                    and_(LearningEvent.created_at == created_at, LearningEvent.id > event_id),
                )
            )
        stmt = stmt.order_by(LearningEvent.created_at, LearningEvent.id).limit(self.batch_size)
        self.page = list(self.db.scalars(stmt))
        if not self.page:
            return ApplyPhase.FINALIZE
        last = self.page[-1]
        self.cursor = (last.created_at, last.id)
        self.processed += len(self.page)
        return ApplyPhase.FILTER

    def filter_decayed(self) -> ApplyPhase:
        """Drop events whose age-adjusted confidence no longer qualifies."""
        self.survivors = []
        for event in self.page:
            if meets_confidence_threshold(
                event.confidence, event.created_at, self.min_confidence, self.decay_config, self.now
            ):
                self.survivors.append(event)
                continue
            info = get_decay_info(event.confidence, event.created_at, self.decay_config, self.now)
            self.skipped += 1
            self.decayed += 1
            reason = (
                f"Confidence decayed from {info.original_confidence} to "
                f"{info.adjusted_confidence} after {info.age_in_days} days, "
                f"below minimum {self.min_confidence}"
            )
            self._submit_audit(
                event.id,
                "skipped",
                reason=reason,
                details={
                    "original_confidence": info.original_confidence,
                    "adjusted_confidence": info.adjusted_confidence,
                    "age_in_days": info.age_in_days,
                    "decay_factor": info.decay_factor,
                    "decay_percentage": info.decay_percentage,
                },
            )
        return ApplyPhase.RESOLVE

    def resolve(self) -> ApplyPhase:
        """Map survivors onto the knowledge base and build the page's write."""
        kb = self.kb
        plan = PagePlan(expected_version=kb.version)
        events = sort_events_by_priority(self.survivors)

        tool_events: list[tuple[LearningEvent, FieldMapping]] = []
        bucket_events: dict[str, list[tuple[LearningEvent, FieldMapping]]] = {}
        named_events: dict[str, list[tuple[LearningEvent, FieldMapping]]] = {}

        for event in events:
            try:
                mapping = map_insight_to_kb_field(event, kb, self.config)
            except Exception as e:
                plan.errors.append(f"Error mapping event {event.id}: {e}")
                plan.skipped.append((event, f"Mapping failed: {e}"))
                continue
            if mapping is None:
                plan.skipped.append((event, "No knowledge base field for this event"))
                continue
            if not mapping.should_apply:
                plan.outcomes["kept"] += 1
                reason = mapping.resolution.reason if mapping.resolution else "Not applicable"
                plan.skipped.append((event, reason))
                continue
            if mapping.kind == FieldTargetKind.TOOL_STACK:
                tool_events.append((event, mapping))
            elif mapping.kind == FieldTargetKind.BUCKET:
                bucket_events.setdefault(mapping.bucket, []).append((event, mapping))
            else:
                named_events.setdefault(mapping.field, []).append((event, mapping))

        document = copy.deepcopy(kb.extracted_knowledge or {})
        original_document = copy.deepcopy(document)

        if tool_events:
            self._resolve_tool_stack(plan, tool_events)
        for bucket, contributions in bucket_events.items():
            self._resolve_bucket(plan, document, bucket, contributions)
        for field_name, contributions in named_events.items():
            self._resolve_named(plan, document, field_name, contributions)

        for key, value in document.items():
            if value != original_document.get(key):
                plan.document_updates[key] = value

        self.plan = plan
        return ApplyPhase.WRITE

    def _resolve_tool_stack(self, plan: PagePlan, contributions: list) -> None:
        current = list(self.kb.tool_stack or [])
        tools: list[str] = []
        for _, mapping in contributions:
            tools.extend(mapping.value)
        merged = merge_tool_names(current, tools)
        if merged != current:
            plan.updates["tool_stack"] = merged
            plan.fields_changed.add("tool_stack")
        for event, mapping in contributions:
            plan.outcomes["merged"] += 1
            plan.changes[event.id] = self._change(
                event,
                ["tool_stack"],
                "Merged tools into tool stack",
                previous={"tool_stack": current},
                new={"tool_stack": mapping.value},
            )

    def _resolve_bucket(
        self, plan: PagePlan, document: dict, bucket: str, contributions: list
    ) -> None:
        target = contributions[0][1].target
        try:
            current = document.get(bucket)
            if current is not None and not isinstance(current, list):
                raise TypeError(f"extracted_knowledge.{bucket} is not a list")
            items: list = []
            for _, mapping in contributions:
                items.extend(mapping.value)
            merged = merge_array_field(current, items)
        except Exception as e:
            self._skip_all(plan, contributions, f"Error processing field {target}: {e}")
            return
        if merged != (current or []):
            document[bucket] = merged
            plan.fields_changed.add(target)
        for event, mapping in contributions:
            plan.outcomes["appended"] += 1
            plan.changes[event.id] = self._change(
                event, [target], f"Appended to {target}", new={bucket: mapping.value}
            )

    def _resolve_named(
        self, plan: PagePlan, document: dict, field_name: str, contributions: list
    ) -> None:
        kb = self.kb
        try:
            current = getattr(kb, field_name)
            # Highest confidence wins; max() keeps the earliest on ties (priority order)
            winner_event, winner = max(contributions, key=lambda pair: pair[0].confidence)
            value = merge_values(current, winner.value, winner.resolution)
            if winner.resolution.track_history:
                track_field_history(
                    document,
                    field_name,
                    current,
                    value,
                    winner_event.id,
                    self.config.field_history_limit,
                )
        except Exception as e:
            self._skip_all(plan, contributions, f"Error processing field {field_name}: {e}")
            return
        if value != current:
            plan.updates[field_name] = value
            plan.fields_changed.add(field_name)
        outcome = _OUTCOME_BY_STRATEGY[winner.resolution.strategy]
        for event, mapping in contributions:
            plan.outcomes[outcome] += 1
            reason = mapping.resolution.reason
            if event is not winner_event:
                reason = f"Superseded by event {winner_event.id} for {field_name}"
            plan.changes[event.id] = self._change(
                event,
                [field_name],
                reason,
                previous={field_name: current},
                new={field_name: mapping.value},
            )

    def write(self) -> ApplyPhase:
        """Version-checked page write plus apply-state marking, one transaction."""
        plan = self.plan
        now = utcnow()
        self.conflict = False
        try:
            if plan.has_kb_changes:
                values = dict(plan.updates)
                if plan.document_updates:
                    values["extracted_knowledge"] = extracted_knowledge_patch(
                        plan.document_updates
                    )
                result = self.db.execute(
                    update(KnowledgeBase)
                    .where(
                        KnowledgeBase.id == self.knowledge_base_id,
                        KnowledgeBase.version == plan.expected_version,
                    )
                    .values(
                        **values,
                        version=KnowledgeBase.version + 1,
                        enrichment_version=KnowledgeBase.enrichment_version + 1,
                        last_enriched_at=now,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    self.conflict = True
                    return ApplyPhase.RELOAD

            if plan.changes:
                self.db.execute(
                    update(LearningEvent),
                    [
                        {
                            "id": event_id,
                            "applied": True,
                            "applied_at": now,
                            "applied_to_fields": change.fields,
                        }
                        for event_id, change in plan.changes.items()
                    ],
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        resulting_version = (
            plan.expected_version + 1 if plan.has_kb_changes else plan.expected_version
        )
        for change in plan.changes.values():
            change.resulting_kb_version = resulting_version
            self.applied.append(change)
        for event, reason in plan.skipped:
            self.skipped += 1
            self._submit_audit(event.id, "skipped", reason=reason)
        self.errors.extend(plan.errors)
        self.outcomes.update(plan.outcomes)
        self.fields_updated.update(plan.fields_changed)
        for event in self.survivors:
            self.db.expire(event)
        self.pages_written += 1
        self.attempts = 0
        logger.info(
            "learning_page_written",
            knowledge_base_id=self.knowledge_base_id,
            events_applied=len(plan.changes),
            events_skipped=len(plan.skipped),
            fields=sorted(plan.fields_changed),
            version=resulting_version,
        )
        return ApplyPhase.RELOAD

    def reload(self) -> ApplyPhase:
        """Refresh the knowledge base; re-resolve after a conflict, else move on."""
        self.db.refresh(self.kb)
        if self.conflict:
            self.attempts += 1
            logger.warning(
                "learning_version_conflict",
                knowledge_base_id=self.knowledge_base_id,
                attempt=self.attempts,
                expected_version=self.plan.expected_version,
                current_version=self.kb.version,
            )
            if self.attempts > self.config.apply_write_retries:
                raise ConcurrentUpdateError(
                    detail=(
                        f"knowledge_base_id={self.knowledge_base_id} "
                        f"retries={self.config.apply_write_retries}"
                    )
                )
            return ApplyPhase.RESOLVE
        if len(self.page) < self.batch_size:
            return ApplyPhase.FINALIZE
        return ApplyPhase.FETCH_PAGE

    def finalize(self) -> ApplyPhase:
        """Submit audits, metrics and the snapshot for everything this run applied."""
        if self.recorder is None:
            return ApplyPhase.DONE
        kb_id = self.knowledge_base_id

        for change in self.applied:
            self._submit_audit(
                change.event_id,
                "applied",
                reason=change.reason,
                resulting_kb_version=change.resulting_kb_version,
                fields_affected=change.fields,
                previous_value=change.previous_value,
                new_value=change.new_value,
            )

        application = ApplicationMetrics(
            knowledge_base_id=kb_id,
            events_processed=self.processed,
            events_applied=len(self.applied),
            events_skipped=self.skipped,
            events_decayed=self.decayed,
            fields_updated=sorted(self.fields_updated),
            average_confidence=(
                round(sum(c.confidence for c in self.applied) / len(self.applied), 2)
                if self.applied
                else 0.0
            ),
            processing_time_ms=round((time.monotonic() - self._started) * 1000, 2),
            enrichment_version=self.kb.enrichment_version if self.kb else None,
        )
        limit = self.config.metrics_history_limit
        self.recorder.submit(
            "application_metrics",
            lambda s: record_application_metrics(s, kb_id, application, limit),
        )

        quality = QualityMetrics(knowledge_base_id=kb_id)
        for outcome, count in self.outcomes.items():
            setattr(
                quality.conflict_resolution_outcomes,
                outcome,
                getattr(quality.conflict_resolution_outcomes, outcome) + count,
            )
        for change in self.applied:
            quality.confidence_distribution.add(change.confidence)
            source = change.source_type or "unknown"
            quality.source_type_effectiveness.setdefault(source, SourceEffectiveness()).applied += 1
        self.recorder.submit("quality_metrics", lambda s: update_quality_metrics(s, kb_id, quality))

        if self.applied:
            applied_ids = [c.event_id for c in self.applied]
            self.recorder.submit(
                "kb_snapshot", lambda s: create_kb_state_snapshot(s, kb_id, applied_ids)
            )
        return ApplyPhase.DONE

    # -- Driver ---------------------------------------------------------------

    async def run(self) -> ApplyLearningEventsResult:
        self._started = time.monotonic()
        self.kb = self.db.get(KnowledgeBase, self.knowledge_base_id)
        if self.kb is None:
            return ApplyLearningEventsResult(
                success=False,
                errors=[f"Knowledge base {self.knowledge_base_id} not found"],
            )
        self.db.refresh(self.kb)

        try:
            while self.phase != ApplyPhase.DONE:
                if self.phase == ApplyPhase.FETCH_PAGE:
                    if self.pages_written:
                        await asyncio.sleep(0)
                        if self._deadline_exceeded():
                            self.phase = ApplyPhase.FINALIZE
                            continue
                    self.phase = self.fetch_page()
                elif self.phase == ApplyPhase.FILTER:
                    self.phase = self.filter_decayed()
                elif self.phase == ApplyPhase.RESOLVE:
                    self.phase = self.resolve()
                elif self.phase == ApplyPhase.WRITE:
                    self.phase = self.write()
                elif self.phase == ApplyPhase.RELOAD:
                    self.phase = self.reload()
                elif self.phase == ApplyPhase.FINALIZE:
                    self.phase = self.finalize()
        except Exception as e:
            logger.exception(
                "learning_apply_failed",
                knowledge_base_id=self.knowledge_base_id,
                phase=self.phase.value,
            )
            self.errors.append(str(e))
            if self.phase != ApplyPhase.FINALIZE:
                self.finalize()
            return self._result(success=False)

        logger.info(
            "learning_apply_completed",
            knowledge_base_id=self.knowledge_base_id,
            events_applied=len(self.applied),
            events_skipped=self.skipped,
            events_decayed=self.decayed,
            enrichment_version=self.kb.enrichment_version,
        )
        return self._result(success=True)

    # -- Helpers --------------------------------------------------------------

    def _deadline_exceeded(self) -> bool:
        if self.deadline is None:
            return False
        elapsed = time.monotonic() - self._started
        if elapsed < self.deadline:
            return False
        self.errors.append(
            f"Deadline of {self.deadline}s exceeded after {self.pages_written} page(s); "
            "remaining events left unapplied"
        )
        logger.warning(
            "learning_apply_deadline_exceeded",
            knowledge_base_id=self.knowledge_base_id,
            pages_written=self.pages_written,
        )
        return True

    def _change(
        self,
        event: LearningEvent,
        fields: list[str],
        reason: str,
        previous: Optional[dict] = None,
        new: Optional[dict] = None,
    ) -> AppliedChange:
        return AppliedChange(
            event_id=event.id,
            confidence=event.confidence,
            source_type=event.source_type,
            fields=fields,
            reason=reason,
            previous_value=previous,
            new_value=new,
        )

    def _skip_all(self, plan: PagePlan, contributions: list, message: str) -> None:
        plan.errors.append(message)
        for event, _ in contributions:
            plan.changes.pop(event.id, None)
            plan.skipped.append((event, message))

    def _submit_audit(self, event_id: int, action: str, **kwargs: Any) -> None:
        if self.recorder is None:
            return
        kb_id = self.knowledge_base_id
        self.recorder.submit(
            f"{action}_audit",
            lambda s: record_event_audit(s, kb_id, event_id, action, **kwargs),
        )

    def _result(self, success: bool) -> ApplyLearningEventsResult:
        return ApplyLearningEventsResult(
            success=success,
            events_applied=len(self.applied),
            events_skipped=self.skipped,
            events_decayed=self.decayed,
            fields_updated=sorted(self.fields_updated),
            enrichment_version=self.kb.enrichment_version if self.kb else 0,
            errors=self.errors or None,
        )


async def apply_learning_events_to_kb(
    db: Session,
    knowledge_base_id: int,
    *,
    min_confidence: Optional[int] = None,
    batch_size: Optional[int] = None,
    decay_config: Optional[DecayConfig] = None,
    config: LearningConfig = DEFAULT_LEARNING_CONFIG,
    recorder: Optional[LearningRecorder] = None,
    deadline: Optional[float] = None,
    now: Optional[datetime] = None,
) -> ApplyLearningEventsResult:
    """Apply a knowledge base's unapplied learning events.

    Args:
        db: Database session.
        knowledge_base_id: Target knowledge base.
        min_confidence: Minimum (decayed) confidence; defaults to the high tier.
        batch_size: Page size; defaults to config.apply_batch_size.
        decay_config: Decay curve; defaults to config.decay.
        config: Learning configuration.
        recorder: Receives audits, metrics and the snapshot. None skips them.
        deadline: Seconds after which no further page is started.
        now: Reference time for decay, injectable for tests.

    Returns:
        ApplyLearningEventsResult. success is False only when the knowledge
        base is missing or the run failed; counts are partial in that case.
    """
    run = _ApplicationRun(
        db,
        knowledge_base_id,
        min_confidence=min_confidence if min_confidence is not None else config.thresholds.high,
        batch_size=batch_size or config.apply_batch_size,
        decay_config=decay_config or config.decay,
        config=config,
        recorder=recorder,
        deadline=deadline,
        now=now,
    )
    async with knowledge_base_lock(knowledge_base_id):
        return await run.run()
