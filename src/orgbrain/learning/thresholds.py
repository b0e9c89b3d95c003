"""Learning configuration passed into every pipeline component.

Components never read module-level constants for thresholds; they receive a
LearningConfig at call time, built from Settings in production and
constructed directly in tests.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from orgbrain.config import Settings
from orgbrain.learning.decay import DecayConfig


@dataclass(frozen=True)
class ConfidenceThresholds:
    """Named confidence tiers on the 1-100 scale.

    high: default auto-apply minimum.
    medium: lower bound for events worth keeping as suggestions.
    override: minimum confidence to replace an existing, differing string value.
    """

    high: int = 80
    medium: int = 60
    override: int = 90


@dataclass(frozen=True)
class LearningConfig:
    """All tunables of the extraction -> dedupe -> apply pipeline."""

    thresholds: ConfidenceThresholds = field(default_factory=ConfidenceThresholds)
    decay: DecayConfig = field(default_factory=DecayConfig)
    default_confidence: int = 70
    semantic_similarity_threshold: float = 0.9
    lexical_similarity_threshold: float = 0.85
    duplicate_window_days: int = 30
    apply_batch_size: int = 100
    apply_write_retries: int = 3
    field_history_limit: int = 10
    metrics_history_limit: int = 100

    @classmethod
    def from_settings(cls, settings: Settings) -> "LearningConfig":
        """Build a LearningConfig from application settings."""
        return cls(
            thresholds=ConfidenceThresholds(
                high=settings.high_confidence,
                medium=settings.medium_confidence,
                override=settings.override_confidence,
            ),
            decay=DecayConfig(
                half_life_days=settings.decay_half_life_days,
                min_confidence_ratio=settings.decay_min_confidence_ratio,
                max_age_days=settings.decay_max_age_days,
                grace_days=settings.decay_grace_days,
            ),
            default_confidence=settings.default_confidence,
            semantic_similarity_threshold=settings.semantic_similarity_threshold,
            lexical_similarity_threshold=settings.lexical_similarity_threshold,
            duplicate_window_days=settings.duplicate_window_days,
            apply_batch_size=settings.apply_batch_size,
            apply_write_retries=settings.apply_write_retries,
            field_history_limit=settings.field_history_limit,
            metrics_history_limit=settings.metrics_history_limit,
        )


DEFAULT_LEARNING_CONFIG = LearningConfig()
