"""Duplicate detection between insight strings.

Semantic path: cosine similarity over embeddings (numpy), threshold 0.9.
Lexical fallback: normalized Levenshtein similarity (rapidfuzz), threshold 0.85.

Stored events that predate embedding support get an embedding on demand;
the new vector is handed to a backfill callback (normally the background
recorder) so persisting it never blocks the current decision.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Optional, Protocol, Sequence

import numpy as np
from rapidfuzz.distance import Levenshtein

from orgbrain.learning.thresholds import DEFAULT_LEARNING_CONFIG, LearningConfig

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")
_PUNCTUATION = re.compile(r"[^\w\s]")

EmbedFn = Callable[[str], Awaitable[list[float]]]
BackfillFn = Callable[[int, list[float]], None]


class ComparableInsight(Protocol):
    """Anything with an id, insight text and optional stored embedding."""

    id: int
    insight: str
    embedding: Optional[list]


# -- Lexical ------------------------------------------------------------------


def normalize_text(text: str) -> str:
    """Lowercase, trim, collapse whitespace, strip punctuation."""
    text = _WHITESPACE.sub(" ", text.lower().strip())
    return _PUNCTUATION.sub("", text)


def similarity_score(first: str, second: str) -> float:
    """1 - edit_distance / longest_length, case-insensitive. 0.0 if either is empty."""
    if first == second:
        return 1.0
    if not first or not second:
        return 0.0
    return Levenshtein.normalized_similarity(first.lower(), second.lower())


def is_similar(first: str, second: str, threshold: float = 0.85) -> bool:
    """True when the normalized strings are equal or close enough."""
    normalized_first = normalize_text(first)
    normalized_second = normalize_text(second)
    if normalized_first == normalized_second:
        return True
    return similarity_score(normalized_first, normalized_second) >= threshold


def find_best_match(
    target: str, candidates: Iterable[str], threshold: float = 0.85
) -> Optional[tuple[str, float]]:
    """Return (candidate, score) for the closest candidate above threshold, else None."""
    best_match: Optional[str] = None
    best_score = 0.0
    normalized_target = normalize_text(target)
    for candidate in candidates:
        score = similarity_score(normalized_target, normalize_text(candidate))
        if score > best_score:
            best_score = score
            best_match = candidate
    if best_match is not None and best_score >= threshold:
        return best_match, best_score
    return None


# -- Semantic -----------------------------------------------------------------


def cosine_similarity(first: Sequence[float], second: Sequence[float]) -> float:
    """Cosine similarity of two vectors. Raises ValueError on dimension mismatch."""
    a = np.asarray(first, dtype=np.float64)
    b = np.asarray(second, dtype=np.float64)
    if a.shape != b.shape:
        raise ValueError(f"Embedding dimension mismatch: {a.shape[0]} vs {b.shape[0]}")
    if a.size == 0:
        return 0.0
    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(a, b) / (norm_a * norm_b))


@dataclass(frozen=True)
class DuplicateCheck:
    """Result of comparing a candidate insight against one stored event."""

    is_duplicate: bool
    method: str  # "semantic" | "string"
    score: float = 0.0


class SimilarityService:
    """Decides whether two insights denote the same fact.

    Args:
        config: Learning configuration (thresholds).
        embed_fn: Async single-text embedder used to backfill stored events
            that have no vector. None disables on-demand backfill.
        on_backfill: Called with (event_id, vector) after a backfill. Must not
            block; failures are logged and ignored.
    """

    def __init__(
        self,
        config: LearningConfig = DEFAULT_LEARNING_CONFIG,
        embed_fn: Optional[EmbedFn] = None,
        on_backfill: Optional[BackfillFn] = None,
    ) -> None:
        self._config = config
        self._embed_fn = embed_fn
        self._on_backfill = on_backfill
        self._backfilled: dict[int, Optional[list[float]]] = {}

    async def embedding_for(self, existing: ComparableInsight) -> Optional[list[float]]:
        """Stored embedding of an event, computing and backfilling it if missing."""
        if existing.embedding:
            return list(existing.embedding)
        if existing.id in self._backfilled:
            return self._backfilled[existing.id]
        if self._embed_fn is None:
            return None

        try:
            vector = await self._embed_fn(existing.insight)
        except Exception as e:
            logger.warning(
                "Embedding backfill failed for event %s, using string similarity: %s",
                existing.id,
                e,
            )
            self._backfilled[existing.id] = None
            return None

        self._backfilled[existing.id] = vector
        if self._on_backfill is not None:
            try:
                self._on_backfill(existing.id, vector)
            except Exception:
                logger.exception("Failed to schedule embedding backfill for event %s", existing.id)
        return vector

    async def is_duplicate(
        self,
        existing: ComparableInsight,
        candidate_text: str,
        candidate_embedding: Optional[Sequence[float]] = None,
    ) -> DuplicateCheck:
        """Compare one stored event with a candidate insight.

        Semantic comparison when the candidate has an embedding and one is
        available (or computable) for the stored event; lexical otherwise.
        """
        if candidate_embedding:
            existing_embedding = await self.embedding_for(existing)
            if existing_embedding:
                try:
                    score = cosine_similarity(candidate_embedding, existing_embedding)
                except ValueError as e:
                    logger.warning("Cosine similarity unavailable for event %s: %s", existing.id, e)
                else:
                    if score >= self._config.semantic_similarity_threshold:
                        return DuplicateCheck(True, "semantic", score)

        score = similarity_score(
            normalize_text(existing.insight), normalize_text(candidate_text)
        )
        return DuplicateCheck(
            score >= self._config.lexical_similarity_threshold, "string", score
        )

    async def find_duplicate(
        self,
        existing_events: Sequence[ComparableInsight],
        candidate_text: str,
        candidate_embedding: Optional[Sequence[float]] = None,
    ) -> Optional[tuple[ComparableInsight, DuplicateCheck]]:
        """First stored event that duplicates the candidate, or None.

        All semantic comparisons run before any lexical one so a close
        paraphrase wins over a coincidental string match.
        """
        if candidate_embedding:
            for existing in existing_events:
                existing_embedding = await self.embedding_for(existing)
                if not existing_embedding:
                    continue
                try:
                    score = cosine_similarity(candidate_embedding, existing_embedding)
                except ValueError as e:
                    logger.warning("Cosine similarity unavailable for event %s: %s", existing.id, e)
                    continue
                if score >= self._config.semantic_similarity_threshold:
                    return existing, DuplicateCheck(True, "semantic", score)

        threshold = self._config.lexical_similarity_threshold
        for existing in existing_events:
            if is_similar(existing.insight, candidate_text, threshold):
                score = similarity_score(
                    normalize_text(existing.insight), normalize_text(candidate_text)
                )
                return existing, DuplicateCheck(True, "string", score)
        return None
