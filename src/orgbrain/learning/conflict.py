"""Conflict resolution between a knowledge base value and a learned candidate.

Decision table, first match wins:

1. current empty (None, "", whitespace, [], {})   -> replace, apply
2. both lists                                      -> merge, apply
3. both strings, equal ignoring case/whitespace    -> keep, skip
   both strings, confidence >= override            -> replace, apply, track history
   both strings otherwise                          -> keep, skip
4. both dicts                                      -> merge, apply
5. anything else                                   -> keep, skip

Only the string replace is tracked in field history: it is the one outcome
that silently discards a prior (often human-entered) value.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from orgbrain.db.base import utcnow

logger = logging.getLogger(__name__)


class ResolutionStrategy(str, Enum):
    REPLACE = "replace"
    MERGE = "merge"
    KEEP = "keep"
    APPEND = "append"


@dataclass(frozen=True)
class ConflictResolution:
    should_apply: bool
    strategy: ResolutionStrategy
    reason: str
    track_history: bool = False


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, dict)):
        return len(value) == 0
    return False


def resolve_conflict(
    current_value: Any,
    new_value: Any,
    confidence: int,
    field_name: Optional[str] = None,
    *,
    override_confidence: int = 90,
) -> ConflictResolution:
    """Decide whether new_value may overwrite, merge with, or be discarded against current_value."""
    if _is_empty(current_value):
        return ConflictResolution(
            should_apply=True,
            strategy=ResolutionStrategy.REPLACE,
            reason="Field is empty, applying new value",
        )

    if isinstance(current_value, list) and isinstance(new_value, list):
        return ConflictResolution(
            should_apply=True,
            strategy=ResolutionStrategy.MERGE,
            reason="Both values are arrays, merging with deduplication",
        )

    if isinstance(current_value, str) and isinstance(new_value, str):
        if current_value.strip().lower() == new_value.strip().lower():
            return ConflictResolution(
                should_apply=False,
                strategy=ResolutionStrategy.KEEP,
                reason="New value is identical to current value",
            )
        if confidence >= override_confidence:
            logger.debug("Overriding %s at confidence %d", field_name or "field", confidence)
            return ConflictResolution(
                should_apply=True,
                strategy=ResolutionStrategy.REPLACE,
                reason=f"High confidence ({confidence}%) override, replacing existing value",
                track_history=True,
            )
        return ConflictResolution(
            should_apply=False,
            strategy=ResolutionStrategy.KEEP,
            reason=(
                f"Confidence ({confidence}%) below threshold "
                f"({override_confidence}%), keeping existing value"
            ),
        )

    if isinstance(current_value, dict) and isinstance(new_value, dict):
        return ConflictResolution(
            should_apply=True,
            strategy=ResolutionStrategy.MERGE,
            reason="Both values are objects, merging properties",
        )

    return ConflictResolution(
        should_apply=False,
        strategy=ResolutionStrategy.KEEP,
        reason=f"Confidence ({confidence}%) not sufficient to override existing value",
    )


# -- Merge helpers ------------------------------------------------------------


def _item_key(item: Any) -> Any:
    if isinstance(item, str):
        return ("str", item.lower())
    if isinstance(item, (dict, list)):
        return ("json", json.dumps(item, sort_keys=True, default=str))
    return ("raw", item)


def merge_array_field(current: Optional[list], new_items: list) -> list:
    """Append new items not already present.

    Strings compare case-insensitively, dicts/lists by deep equality.
    """
    merged = list(current or [])
    seen = {_item_key(item) for item in merged}
    for item in new_items:
        key = _item_key(item)
        if key in seen:
            continue
        merged.append(item)
        seen.add(key)
    return merged


def merge_unique_strings(current: Optional[list[str]], new_items: list[str]) -> list[str]:
    """Union of two string lists keeping the first spelling seen of each value."""
    result: list[str] = []
    seen: set[str] = set()
    for item in list(current or []) + list(new_items):
        normalized = item.strip().lower()
        if not normalized or normalized in seen:
            continue
        result.append(item)
        seen.add(normalized)
    return result


def merge_values(current: Any, new_value: Any, resolution: ConflictResolution) -> Any:
    """Value to write for a named field given its resolution."""
    if resolution.strategy != ResolutionStrategy.MERGE:
        return new_value
    if isinstance(current, list):
        return merge_array_field(current, new_value)
    if isinstance(current, dict):
        return {**current, **new_value}
    return new_value


def track_field_history(
    extracted_knowledge: dict,
    field_name: str,
    previous_value: Any,
    new_value: Any,
    event_id: int,
    limit: int = 10,
) -> None:
    """Append a prior->new transition to extracted_knowledge["field_history"].

    Keeps the last `limit` transitions per field.
    """
    history = extracted_knowledge.setdefault("field_history", {})
    entries = list(history.get(field_name) or [])
    entries.append(
        {
            "previous_value": previous_value,
            "new_value": new_value,
            "changed_at": utcnow().isoformat(),
            "event_id": event_id,
        }
    )
    history[field_name] = entries[-limit:]
