"""Processing priority for learning events.

The application engine sorts each page with sort_events_by_priority before
resolving field conflicts, so the outcome for a given set of events is
reproducible. Ordering key, ascending:

    (priority tier, -confidence, created_at, id)

i.e. CRITICAL before LOW, then higher confidence first, then older first,
then lower id first.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Optional, Protocol, Sequence, TypeVar

from orgbrain.db.base import as_utc
from orgbrain.knowledge.models import LearningEventType, SourceType


class EventPriority(IntEnum):
    """Lower value is processed first."""

    CRITICAL = 1  # bottlenecks, risks, fixed inconsistencies at >= 90
    HIGH = 2
    MEDIUM = 3
    LOW = 4


class PrioritizedEvent(Protocol):
    id: Optional[int]
    confidence: int
    category: str
    event_type: Any
    metadata_: Optional[dict]
    created_at: Optional[datetime]


E = TypeVar("E", bound=PrioritizedEvent)

_IMPORTANT_CATEGORIES = {"business_context", "process_optimization", "risk_management"}
_IMPORTANT_EVENT_TYPES = {
    LearningEventType.INSIGHT_GENERATED,
    LearningEventType.OPTIMIZATION_FOUND,
}
_HIGH_VALUE_SOURCES = {SourceType.JOB_DESCRIPTION.value, SourceType.CHAT_CONVERSATION.value}

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _as_event_type(value: Any) -> Any:
    try:
        return LearningEventType(value)
    except ValueError:
        return value


def calculate_event_priority(
    confidence: int,
    category: str,
    event_type: Any,
    source_type: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> EventPriority:
    """Priority tier from confidence, category, event type and source."""
    event_type = _as_event_type(event_type)
    metadata = metadata or {}

    if confidence >= 90:
        if (
            category == "risk_management"
            or (category == "business_context" and metadata.get("bottleneck"))
            or event_type == LearningEventType.INCONSISTENCY_FIXED
        ):
            return EventPriority.CRITICAL
        if getattr(source_type, "value", source_type) in _HIGH_VALUE_SOURCES:
            return EventPriority.HIGH

    if confidence >= 85:
        if category in _IMPORTANT_CATEGORIES or event_type in _IMPORTANT_EVENT_TYPES:
            return EventPriority.HIGH

    if confidence >= 80:
        return EventPriority.MEDIUM

    return EventPriority.LOW


def _priority_of(event: PrioritizedEvent, source_type: Optional[str]) -> EventPriority:
    return calculate_event_priority(
        event.confidence,
        event.category,
        event.event_type,
        source_type or getattr(event, "source_type", None),
        event.metadata_,
    )


def priority_key(event: PrioritizedEvent, source_type: Optional[str] = None) -> tuple:
    """Sort key documented in the module docstring."""
    created_at = as_utc(event.created_at) if event.created_at else _EPOCH
    return (
        _priority_of(event, source_type),
        -event.confidence,
        created_at,
        event.id if event.id is not None else 0,
    )


def sort_events_by_priority(
    events: Sequence[E], source_type: Optional[str] = None
) -> list[E]:
    """Return a new list ordered by priority_key."""
    return sorted(events, key=lambda event: priority_key(event, source_type))


def group_events_by_priority(
    events: Sequence[E], source_type: Optional[str] = None
) -> dict[EventPriority, list[E]]:
    """Bucket events by tier, preserving input order inside each tier."""
    grouped: dict[EventPriority, list[E]] = defaultdict(list)
    for event in events:
        grouped[_priority_of(event, source_type)].append(event)
    return dict(grouped)


def is_critical_event(
    confidence: int,
    category: str,
    event_type: Any,
    source_type: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> bool:
    return (
        calculate_event_priority(confidence, category, event_type, source_type, metadata)
        == EventPriority.CRITICAL
    )
