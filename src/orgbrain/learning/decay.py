"""Time-based confidence decay for learning events.

Stored confidence never changes; the effective confidence is recomputed at
read time from the event's age so stale, low-confidence claims stop
qualifying for auto-application.

Linear decay: full confidence during a short grace window, then a straight
line down to `min_confidence_ratio` of the original at `max_age_days`, flat
afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from orgbrain.db.base import as_utc, utcnow

_SECONDS_PER_DAY = 60 * 60 * 24


@dataclass(frozen=True)
class DecayConfig:
    """Decay curve parameters.

    half_life_days is not used by the linear curve; it is carried as a tuning
    parameter and reported alongside decay stats.
    """

    half_life_days: float = 90
    min_confidence_ratio: float = 0.5
    max_age_days: float = 180
    grace_days: float = 7

    @property
    def is_zero_rate(self) -> bool:
        return self.min_confidence_ratio >= 1.0


DEFAULT_DECAY_CONFIG = DecayConfig()


@dataclass(frozen=True)
class DecayInfo:
    """Quantitative justification for a decay decision (used in skip audits)."""

    original_confidence: int
    adjusted_confidence: int
    age_in_days: float
    decay_factor: float
    decay_percentage: float


def age_in_days(created_at: datetime, now: Optional[datetime] = None) -> float:
    """Fractional days elapsed since created_at. Naive datetimes are UTC."""
    now = as_utc(now) if now is not None else utcnow()
    return (now - as_utc(created_at)).total_seconds() / _SECONDS_PER_DAY


def adjust_confidence_by_age(
    confidence: int,
    created_at: datetime,
    config: Optional[DecayConfig] = None,
    now: Optional[datetime] = None,
) -> int:
    """Return the age-adjusted confidence (1-100) for an event.

    Args:
        confidence: Original confidence score (1-100).
        created_at: When the event was created.
        config: Decay curve; defaults to DEFAULT_DECAY_CONFIG.
        now: Reference time, injectable for tests.

    Returns:
        Adjusted confidence, never above the original.
    """
    config = config or DEFAULT_DECAY_CONFIG
    age = age_in_days(created_at, now)

    if age < config.grace_days or config.is_zero_rate:
        return confidence

    decay_factor = max(
        config.min_confidence_ratio,
        1 - ((1 - config.min_confidence_ratio) * age) / config.max_age_days,
    )
    adjusted = round(confidence * decay_factor)
    return max(1, min(100, adjusted, confidence))


def meets_confidence_threshold(
    confidence: int,
    created_at: datetime,
    min_confidence: int,
    config: Optional[DecayConfig] = None,
    now: Optional[datetime] = None,
) -> bool:
    """True when the decayed confidence still clears min_confidence."""
    return adjust_confidence_by_age(confidence, created_at, config, now) >= min_confidence


def get_decay_info(
    confidence: int,
    created_at: datetime,
    config: Optional[DecayConfig] = None,
    now: Optional[datetime] = None,
) -> DecayInfo:
    """Decay statistics for logging and skip audits."""
    adjusted = adjust_confidence_by_age(confidence, created_at, config, now)
    age = age_in_days(created_at, now)
    factor = adjusted / confidence if confidence else 1.0
    return DecayInfo(
        original_confidence=confidence,
        adjusted_confidence=adjusted,
        age_in_days=round(age, 1),
        decay_factor=round(factor, 2),
        decay_percentage=round((1 - factor) * 100, 1),
    )
