"""Tests for learning event priority calculation and ordering."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from orgbrain.knowledge.models import LearningEventType, SourceType
from orgbrain.learning.priority import (
    EventPriority,
    calculate_event_priority,
    group_events_by_priority,
    is_critical_event,
    sort_events_by_priority,
)

BASE_TIME = datetime(2026, 5, 1, tzinfo=timezone.utc)


@dataclass
class _Event:
    id: int
    confidence: int
    category: str = "workflow_patterns"
    event_type: Any = LearningEventType.PATTERN_DETECTED
    metadata_: Optional[dict] = field(default_factory=dict)
    created_at: Optional[datetime] = BASE_TIME
    source_type: Optional[str] = None


class TestCalculateEventPriority:
    def test_risk_at_90_is_critical(self):
        priority = calculate_event_priority(
            92, "risk_management", LearningEventType.PATTERN_DETECTED
        )
        assert priority == EventPriority.CRITICAL

    def test_bottleneck_at_90_is_critical(self):
        priority = calculate_event_priority(
            90,
            "business_context",
            LearningEventType.INSIGHT_GENERATED,
            metadata={"bottleneck": "Slow approvals"},
        )
        assert priority == EventPriority.CRITICAL

    def test_business_context_without_bottleneck_is_high(self):
        priority = calculate_event_priority(
            90, "business_context", LearningEventType.PATTERN_DETECTED
        )
        assert priority == EventPriority.HIGH

    def test_inconsistency_fixed_at_95_is_critical(self):
        assert (
            calculate_event_priority(95, "other", "INCONSISTENCY_FIXED")
            == EventPriority.CRITICAL
        )

    def test_job_description_source_at_90_is_high(self):
        priority = calculate_event_priority(
            90,
            "skill_requirements",
            LearningEventType.PATTERN_DETECTED,
            SourceType.JOB_DESCRIPTION,
        )
        assert priority == EventPriority.HIGH

    def test_source_type_accepts_plain_string(self):
        priority = calculate_event_priority(
            91, "skill_requirements", LearningEventType.PATTERN_DETECTED, "CHAT_CONVERSATION"
        )
        assert priority == EventPriority.HIGH

    def test_optimization_at_85_is_high(self):
        priority = calculate_event_priority(
            85, "skill_requirements", LearningEventType.OPTIMIZATION_FOUND
        )
        assert priority == EventPriority.HIGH

    def test_plain_80_is_medium(self):
        priority = calculate_event_priority(
            80, "skill_requirements", LearningEventType.PATTERN_DETECTED
        )
        assert priority == EventPriority.MEDIUM

    def test_below_80_is_low(self):
        priority = calculate_event_priority(
            79, "risk_management", LearningEventType.INCONSISTENCY_FIXED
        )
        assert priority == EventPriority.LOW

    def test_is_critical_event(self):
        assert is_critical_event(95, "risk_management", LearningEventType.PATTERN_DETECTED)
        assert not is_critical_event(70, "risk_management", LearningEventType.PATTERN_DETECTED)


class TestSortEventsByPriority:
    def test_tier_then_confidence(self):
        low = _Event(id=1, confidence=70)
        critical = _Event(id=2, confidence=95, category="risk_management")
        medium = _Event(id=3, confidence=82)
        medium_higher = _Event(id=4, confidence=84)

        ordered = sort_events_by_priority([low, critical, medium, medium_higher])

        assert [e.id for e in ordered] == [2, 4, 3, 1]

    def test_older_first_on_equal_confidence(self):
        newer = _Event(id=1, confidence=82, created_at=BASE_TIME + timedelta(hours=1))
        older = _Event(id=2, confidence=82, created_at=BASE_TIME)

        ordered = sort_events_by_priority([newer, older])

        assert [e.id for e in ordered] == [2, 1]

    def test_lower_id_breaks_full_ties(self):
        events = [_Event(id=9, confidence=82), _Event(id=3, confidence=82)]
        assert [e.id for e in sort_events_by_priority(events)] == [3, 9]

    def test_mixed_naive_and_aware_timestamps(self):
        naive = _Event(id=1, confidence=82, created_at=datetime(2026, 5, 2))
        aware = _Event(id=2, confidence=82, created_at=BASE_TIME)

        ordered = sort_events_by_priority([naive, aware])

        assert [e.id for e in ordered] == [2, 1]

    def test_event_source_type_used_when_not_given(self):
        from_chat = _Event(
            id=5, confidence=90, category="hiring_patterns", source_type="CHAT_CONVERSATION"
        )
        plain = _Event(id=1, confidence=90, category="hiring_patterns")

        ordered = sort_events_by_priority([plain, from_chat])

        assert [e.id for e in ordered] == [5, 1]

    def test_input_not_mutated(self):
        events = [_Event(id=2, confidence=70), _Event(id=1, confidence=95)]
        sort_events_by_priority(events)
        assert [e.id for e in events] == [2, 1]


def test_group_events_by_priority():
    events = [
        _Event(id=1, confidence=95, category="risk_management"),
        _Event(id=2, confidence=70),
        _Event(id=3, confidence=81),
        _Event(id=4, confidence=60),
    ]

    grouped = group_events_by_priority(events)

    assert [e.id for e in grouped[EventPriority.CRITICAL]] == [1]
    assert [e.id for e in grouped[EventPriority.MEDIUM]] == [3]
    assert [e.id for e in grouped[EventPriority.LOW]] == [2, 4]
    assert EventPriority.HIGH not in grouped
