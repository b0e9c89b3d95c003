"""Learning metrics, audit rows and knowledge base snapshots.

Metric series live inside the knowledge base document:

    extracted_knowledge["metrics"] = {
        "extraction": [...],    # one record per create_learning_events call
        "application": [...],   # one record per apply run
        "quality": {...},       # latest snapshot only
    }

Series are capped at metrics_history_limit, oldest evicted. Appenders patch
only the metrics section in SQL, never the rest of the document, and do not
bump the knowledge base version. The caller (normally the background
recorder) commits.
"""

from __future__ import annotations

import copy
import logging
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from orgbrain.db.base import utcnow
from orgbrain.knowledge.models import EventAuditLog, KnowledgeBase, KnowledgeBaseSnapshot
from orgbrain.knowledge.service import extracted_knowledge_patch, knowledge_base_snapshot

logger = logging.getLogger(__name__)

METRICS_KEY = "metrics"


class ExtractionMetrics(BaseModel):
    """Outcome of one event-creation call."""

    source_type: str
    source_id: Optional[str] = None
    insights_extracted: int
    insights_created: int
    insights_by_category: dict[str, int] = Field(default_factory=dict)
    average_confidence: float = 0.0
    duplicate_count: int = 0
    invalid_count: int = 0
    timestamp: datetime = Field(default_factory=utcnow)


class ApplicationMetrics(BaseModel):
    """Outcome of one application run."""

    knowledge_base_id: int
    events_processed: int
    events_applied: int
    events_skipped: int
    events_decayed: int
    fields_updated: list[str] = Field(default_factory=list)
    average_confidence: float = 0.0
    processing_time_ms: float = 0.0
    enrichment_version: Optional[int] = None
    timestamp: datetime = Field(default_factory=utcnow)


class ConflictOutcomes(BaseModel):
    replaced: int = 0
    merged: int = 0
    kept: int = 0
    appended: int = 0


class ConfidenceDistribution(BaseModel):
    """Applied events by original confidence: high >= 90, medium 80-89, low < 80."""

    high: int = 0
    medium: int = 0
    low: int = 0

    def add(self, confidence: int) -> None:
        if confidence >= 90:
            self.high += 1
        elif confidence >= 80:
            self.medium += 1
        else:
            self.low += 1


class SourceEffectiveness(BaseModel):
    extracted: int = 0
    applied: int = 0
    application_rate: float = 0.0


class QualityMetrics(BaseModel):
    """Latest quality snapshot for a knowledge base.

    The application engine fills conflict outcomes, the confidence histogram
    and applied counts per source; duplicate_detection_rate and the extracted
    side of source_type_effectiveness are derived from the stored extraction
    series when the snapshot is written.
    """

    knowledge_base_id: int
    duplicate_detection_rate: float = 0.0
    conflict_resolution_outcomes: ConflictOutcomes = Field(default_factory=ConflictOutcomes)
    confidence_distribution: ConfidenceDistribution = Field(
        default_factory=ConfidenceDistribution
    )
    source_type_effectiveness: dict[str, SourceEffectiveness] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


# -- Helpers ------------------------------------------------------------------


def _empty_metrics() -> dict[str, Any]:
    return {"extraction": [], "application": [], "quality": None}


def _load_kb(db: Session, knowledge_base_id: int) -> Optional[KnowledgeBase]:
    kb = db.get(KnowledgeBase, knowledge_base_id)
    if kb is None:
        logger.warning("Knowledge base %s not found, metrics not recorded", knowledge_base_id)
    return kb


def _current_metrics(kb: KnowledgeBase) -> dict:
    """Deep copy of the metrics section, created empty if missing."""
    return copy.deepcopy((kb.extracted_knowledge or {}).get(METRICS_KEY) or _empty_metrics())


def _store_metrics(db: Session, kb: KnowledgeBase, metrics: dict) -> None:
    """Write back only extracted_knowledge["metrics"]; other sections are left as stored."""
    db.execute(
        update(KnowledgeBase)
        .where(KnowledgeBase.id == kb.id)
        .values(extracted_knowledge=extracted_knowledge_patch({METRICS_KEY: metrics}))
        .execution_options(synchronize_session=False)
    )
    db.expire(kb, ["extracted_knowledge"])


def _append_capped(metrics: dict, series: str, record: dict, limit: int) -> None:
    entries = list(metrics.get(series) or [])
    entries.append(record)
    metrics[series] = entries[-limit:]


# -- Appenders ----------------------------------------------------------------


def record_extraction_metrics(
    db: Session, knowledge_base_id: int, metrics: ExtractionMetrics, limit: int = 100
) -> None:
    kb = _load_kb(db, knowledge_base_id)
    if kb is None:
        return
    series = _current_metrics(kb)
    _append_capped(series, "extraction", metrics.model_dump(mode="json"), limit)
    _store_metrics(db, kb, series)


def record_application_metrics(
    db: Session, knowledge_base_id: int, metrics: ApplicationMetrics, limit: int = 100
) -> None:
    kb = _load_kb(db, knowledge_base_id)
    if kb is None:
        return
    series = _current_metrics(kb)
    _append_capped(series, "application", metrics.model_dump(mode="json"), limit)
    _store_metrics(db, kb, series)


def update_quality_metrics(
    db: Session, knowledge_base_id: int, quality: QualityMetrics
) -> None:
    """Replace the quality snapshot, deriving the extraction-side figures first."""
    kb = _load_kb(db, knowledge_base_id)
    if kb is None:
        return
    series = _current_metrics(kb)

    extracted_total = 0
    duplicates_total = 0
    for record in series.get("extraction") or []:
        extracted_total += record.get("insights_extracted", 0)
        duplicates_total += record.get("duplicate_count", 0)
        source = record.get("source_type") or "unknown"
        effectiveness = quality.source_type_effectiveness.setdefault(
            source, SourceEffectiveness()
        )
        effectiveness.extracted += record.get("insights_created", 0)

    if extracted_total:
        quality.duplicate_detection_rate = round(duplicates_total / extracted_total, 4)
    for effectiveness in quality.source_type_effectiveness.values():
        if effectiveness.extracted:
            effectiveness.application_rate = round(
                effectiveness.applied / effectiveness.extracted, 4
            )

    series["quality"] = quality.model_dump(mode="json")
    _store_metrics(db, kb, series)


def record_event_audit(
    db: Session,
    knowledge_base_id: int,
    event_id: int,
    action: str,
    reason: Optional[str] = None,
    resulting_kb_version: Optional[int] = None,
    fields_affected: Optional[list[str]] = None,
    previous_value: Optional[dict] = None,
    new_value: Optional[dict] = None,
    details: Optional[dict] = None,
) -> EventAuditLog:
    entry = EventAuditLog(
        knowledge_base_id=knowledge_base_id,
        event_id=event_id,
        action=action,
        reason=reason,
        resulting_kb_version=resulting_kb_version,
        fields_affected=fields_affected,
        previous_value=previous_value,
        new_value=new_value,
        details=details,
    )
    db.add(entry)
    return entry


def create_kb_state_snapshot(
    db: Session, knowledge_base_id: int, applied_event_ids: list[int]
) -> Optional[KnowledgeBaseSnapshot]:
    """Point-in-time copy of the knowledge base after an application run."""
    kb = db.get(KnowledgeBase, knowledge_base_id)
    if kb is None:
        return None
    snapshot = KnowledgeBaseSnapshot(
        knowledge_base_id=knowledge_base_id,
        enrichment_version=kb.enrichment_version,
        applied_event_ids=list(applied_event_ids),
        snapshot=knowledge_base_snapshot(kb),
    )
    db.add(snapshot)
    return snapshot


# -- Reads --------------------------------------------------------------------


def get_metrics(db: Session, knowledge_base_id: int) -> Optional[dict[str, Any]]:
    """The three metric series for a knowledge base, or None if it does not exist."""
    kb = db.get(KnowledgeBase, knowledge_base_id)
    if kb is None:
        return None
    metrics = (kb.extracted_knowledge or {}).get(METRICS_KEY) or _empty_metrics()
    return {
        "extraction": list(metrics.get("extraction") or []),
        "application": list(metrics.get("application") or []),
        "quality": metrics.get("quality"),
    }


def list_audit_entries(
    db: Session, knowledge_base_id: int, event_id: Optional[int] = None
) -> list[EventAuditLog]:
    stmt = select(EventAuditLog).where(EventAuditLog.knowledge_base_id == knowledge_base_id)
    if event_id is not None:
        stmt = stmt.where(EventAuditLog.event_id == event_id)
    return list(db.scalars(stmt.order_by(EventAuditLog.id)))
