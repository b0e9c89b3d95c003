"""Field mapping policy: which part of a knowledge base a learning event targets.

Three kinds of target:

- NAMED: a scalar column on KnowledgeBase, written through conflict resolution.
- TOOL_STACK: the tool_stack list, always merged.
- BUCKET: a list under extracted_knowledge[<bucket>], always appended with
  item-level dedup.

Category handlers look at metadata hints first and fall back to a generic
insight item. Metadata keys are accepted in snake_case or camelCase since
extractors are not consistent about either.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from orgbrain.knowledge.models import NAMED_SCALAR_FIELDS, KnowledgeBase, LearningEvent
from orgbrain.learning.conflict import ConflictResolution, resolve_conflict
from orgbrain.learning.thresholds import DEFAULT_LEARNING_CONFIG, LearningConfig

logger = logging.getLogger(__name__)


class InsightCategory(str, Enum):
    """Categories with dedicated mapping rules. Any other string is accepted."""

    BUSINESS_CONTEXT = "business_context"
    WORKFLOW_PATTERNS = "workflow_patterns"
    PROCESS_OPTIMIZATION = "process_optimization"
    SERVICE_PATTERNS = "service_patterns"
    SERVICE_PREFERENCES = "service_preferences"
    RISK_MANAGEMENT = "risk_management"
    SKILL_REQUIREMENTS = "skill_requirements"
    HIRING_PATTERNS = "hiring_patterns"
    WORKFLOW_NEEDS = "workflow_needs"


class FieldTargetKind(str, Enum):
    NAMED = "named"
    TOOL_STACK = "tool_stack"
    BUCKET = "bucket"


@dataclass(frozen=True)
class FieldMapping:
    """Where one event goes and what it contributes.

    value is the candidate scalar for NAMED, a list of tool names for
    TOOL_STACK, and a list of items for BUCKET.
    """

    kind: FieldTargetKind
    field: str
    value: Any
    should_apply: bool = True
    resolution: Optional[ConflictResolution] = None
    bucket: Optional[str] = None

    @property
    def target(self) -> str:
        """Field path recorded in applied_to_fields and fields_updated."""
        if self.kind == FieldTargetKind.BUCKET:
            return f"extracted_knowledge.{self.bucket}"
        return self.field


# -- Metadata access ----------------------------------------------------------


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def _snake(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def meta_value(metadata: Optional[dict], key: str) -> Any:
    """metadata[key] under its snake_case or camelCase spelling, else None."""
    if not metadata:
        return None
    value = metadata.get(key)
    if value is None:
        value = metadata.get(_camel(key))
    return value


# -- Tool names ---------------------------------------------------------------

_TOOL_PATTERN = re.compile(
    r"\b([A-Z][a-zA-Z0-9]+(?:\.[a-zA-Z0-9]+)?(?:\s+[A-Z][a-zA-Z0-9]+)*)\b"
)
_TLD_SUFFIX = re.compile(r"\.(com|io|co|app|dev|net|org)$", re.IGNORECASE)
_NON_WORD = re.compile(r"[^\w\s]")
_SPACES = re.compile(r"\s+")
_HAS_LETTER = re.compile(r"[a-zA-Z]")

_TOOL_STOP_WORDS = frozenset(
    {
        "the", "this", "that", "these", "those", "company", "business",
        "organization", "we", "they", "our", "your", "their", "using",
        "with", "through", "via",
    }
)


def normalize_tool_name(name: str) -> str:
    """'Slack.com ' -> 'slack'. Case, trailing TLD, punctuation and spacing removed."""
    name = _TLD_SUFFIX.sub("", name.lower().strip())
    name = _NON_WORD.sub("", name)
    return _SPACES.sub(" ", name).strip()


def is_valid_tool_name(name: str) -> bool:
    trimmed = name.strip()
    if not 2 <= len(trimmed) <= 50:
        return False
    if trimmed.lower() in _TOOL_STOP_WORDS:
        return False
    return bool(_HAS_LETTER.search(trimmed))


def find_matching_tool(name: str, existing_tools: list[str]) -> Optional[str]:
    """Existing stack entry naming the same tool, in its stored spelling."""
    normalized = normalize_tool_name(name)
    for existing in existing_tools:
        if normalize_tool_name(existing) == normalized:
            return existing
    return None


def merge_tool_names(current: list[str], new_tools: list[str]) -> list[str]:
    """Append tools not already named in current, comparing normalized names."""
    merged = list(current)
    for tool in new_tools:
        if find_matching_tool(tool, merged) is None:
            merged.append(tool)
    return merged


def extract_tools_from_insight(
    insight: str, metadata: Optional[dict], existing_tools: Optional[list[str]] = None
) -> list[str]:
    """Tool names mentioned by an event.

    Explicit metadata (new_tool, tools) wins; capitalized token runs in the
    insight text are only scanned when metadata names nothing.
    """
    existing_tools = list(existing_tools or [])
    tools: list[str] = []

    def add(name: str, require_word_start: bool = False) -> None:
        name = name.strip()
        if not is_valid_tool_name(name):
            return
        matching = find_matching_tool(name, existing_tools)
        if matching is None:
            if require_word_start and (len(name) < 3 or not name[0].isalpha()):
                return
            matching = name
        if find_matching_tool(matching, tools) is None:
            tools.append(matching)

    new_tool = meta_value(metadata, "new_tool")
    if new_tool:
        add(str(new_tool))

    listed = meta_value(metadata, "tools")
    if listed:
        for tool in listed if isinstance(listed, list) else [listed]:
            add(str(tool))

    if not tools and insight:
        for match in _TOOL_PATTERN.findall(insight):
            add(match, require_word_start=True)

    return tools


# -- Category handlers --------------------------------------------------------


def _insight_item(event: LearningEvent, metadata: dict) -> dict:
    return {
        "insight": event.insight,
        "evidence": meta_value(metadata, "evidence"),
        "source_section": meta_value(metadata, "source_section"),
        "confidence": event.confidence,
    }


def _bucket(name: str, items: list) -> FieldMapping:
    return FieldMapping(
        kind=FieldTargetKind.BUCKET,
        field="extracted_knowledge",
        value=items,
        bucket=name,
    )


def _named(
    field: str, value: Any, event: LearningEvent, kb: KnowledgeBase, config: LearningConfig
) -> FieldMapping:
    resolution = resolve_conflict(
        getattr(kb, field),
        value,
        event.confidence,
        field,
        override_confidence=config.thresholds.override,
    )
    return FieldMapping(
        kind=FieldTargetKind.NAMED,
        field=field,
        value=value,
        should_apply=resolution.should_apply,
        resolution=resolution,
    )


def _map_business_context(event, kb, metadata, config) -> FieldMapping:
    bottleneck = meta_value(metadata, "bottleneck")
    if bottleneck:
        return _named("biggest_bottleneck", bottleneck, event, kb, config)

    for key, bucket in (
        ("company_stage", "company_stages"),
        ("growth_indicators", "growth_indicators"),
        ("hidden_complexity", "hidden_complexities"),
    ):
        value = meta_value(metadata, key)
        if value:
            return _bucket(bucket, [value])

    return _bucket("business_context_insights", [_insight_item(event, metadata)])


def _map_workflow_patterns(event, kb, metadata, config) -> FieldMapping:
    tools = extract_tools_from_insight(event.insight, metadata, kb.tool_stack or [])
    if tools:
        return FieldMapping(kind=FieldTargetKind.TOOL_STACK, field="tool_stack", value=tools)

    implicit_need = meta_value(metadata, "implicit_need")
    if implicit_need:
        return _bucket("implicit_needs", [implicit_need])

    cluster_name = meta_value(metadata, "cluster_name")
    if cluster_name:
        return _bucket(
            "task_clusters",
            [
                {
                    "name": cluster_name,
                    "workflow_type": meta_value(metadata, "workflow_type"),
                    "complexity_score": meta_value(metadata, "complexity_score"),
                }
            ],
        )

    return _bucket("workflow_patterns", [_insight_item(event, metadata)])


def _map_process_optimization(event, kb, metadata, config) -> FieldMapping:
    for key, bucket in (
        ("pain_point", "pain_points"),
        ("documentation_gap", "documentation_gaps"),
        ("process_complexity", "process_complexities"),
    ):
        value = meta_value(metadata, key)
        if value:
            return _bucket(bucket, [value])

    return _bucket("process_optimizations", [_insight_item(event, metadata)])


def _map_service_patterns(event, kb, metadata, config) -> FieldMapping:
    service_type = meta_value(metadata, "recommended_service") or meta_value(
        metadata, "service_type"
    )
    if service_type:
        return _bucket(
            "service_patterns",
            [
                {
                    "service_type": service_type,
                    "confidence": meta_value(metadata, "confidence"),
                    "decision_logic": meta_value(metadata, "decision_logic"),
                }
            ],
        )
    return _bucket("service_patterns", [_insight_item(event, metadata)])


def _map_risk_management(event, kb, metadata, config) -> FieldMapping:
    risk = meta_value(metadata, "risk")
    if risk:
        return _bucket(
            "identified_risks",
            [
                {
                    "risk": risk,
                    "category": meta_value(metadata, "category"),
                    "severity": meta_value(metadata, "severity"),
                }
            ],
        )
    return _bucket("identified_risks", [_insight_item(event, metadata)])


def _insight_bucket_handler(bucket: str) -> Callable[..., FieldMapping]:
    def handler(event, kb, metadata, config) -> FieldMapping:
        return _bucket(bucket, [_insight_item(event, metadata)])

    return handler


_CATEGORY_HANDLERS: dict[InsightCategory, Callable[..., FieldMapping]] = {
    InsightCategory.BUSINESS_CONTEXT: _map_business_context,
    InsightCategory.WORKFLOW_PATTERNS: _map_workflow_patterns,
    InsightCategory.PROCESS_OPTIMIZATION: _map_process_optimization,
    InsightCategory.SERVICE_PATTERNS: _map_service_patterns,
    InsightCategory.SERVICE_PREFERENCES: _map_service_patterns,
    InsightCategory.RISK_MANAGEMENT: _map_risk_management,
    InsightCategory.SKILL_REQUIREMENTS: _insight_bucket_handler("skill_requirements"),
    InsightCategory.HIRING_PATTERNS: _insight_bucket_handler("hiring_patterns"),
    InsightCategory.WORKFLOW_NEEDS: _insight_bucket_handler("workflow_needs"),
}


def _suggested_field(metadata: dict) -> Optional[str]:
    field = meta_value(metadata, "suggested_field")
    if not isinstance(field, str):
        return None
    field = _snake(field.strip())
    return field if field in NAMED_SCALAR_FIELDS else None


def map_insight_to_kb_field(
    event: LearningEvent,
    kb: KnowledgeBase,
    config: LearningConfig = DEFAULT_LEARNING_CONFIG,
) -> Optional[FieldMapping]:
    """Map one event onto the knowledge base.

    Returns None only when neither a suggested field nor a category is present.
    """
    metadata = event.metadata_ or {}

    suggested = _suggested_field(metadata)
    if suggested:
        value = meta_value(metadata, "suggested_value") or event.insight
        return _named(suggested, value, event, kb, config)

    category = (event.category or "").strip()
    if not category:
        logger.debug("Event %s has no category, nothing to map", event.id)
        return None

    try:
        handler = _CATEGORY_HANDLERS[InsightCategory(category)]
    except ValueError:
        return _bucket(f"{category}_insights", [_insight_item(event, metadata)])
    return handler(event, kb, metadata, config)
