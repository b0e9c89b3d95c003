"""Pydantic schemas for knowledge base and learning event models.

Provides validation for input (Create/Upsert) and serialization for output (Response).
Insight-level fields are optional on purpose: malformed insights are dropped
one by one by the event creation service instead of failing the whole batch.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from orgbrain.knowledge.models import LearningEventType, SourceType


class ExtractedInsight(BaseModel):
    """One candidate fact as produced by the text-to-insights extractor."""

    insight: Optional[str] = None
    category: Optional[str] = None
    event_type: Optional[LearningEventType] = None
    confidence: Optional[int] = None
    metadata: Optional[dict[str, Any]] = None


class CreateLearningEventsParams(BaseModel):
    """Input to create_learning_events."""

    knowledge_base_id: Optional[int] = None
    source_type: SourceType = SourceType.AI_ENRICHMENT
    source_id: Optional[str] = None
    insights: list[ExtractedInsight] = Field(default_factory=list)
    triggered_by: Optional[str] = None


class CreateLearningEventsResult(BaseModel):
    """Outcome of create_learning_events."""

    success: bool
    events_created: int = 0
    event_ids: list[int] = Field(default_factory=list)
    errors: Optional[list[str]] = None


class ApplyLearningEventsRequest(BaseModel):
    """Body of the apply endpoint; every field falls back to configuration."""

    min_confidence: Optional[int] = Field(None, ge=1, le=100)
    batch_size: Optional[int] = Field(None, ge=1, le=1000)
    decay_half_life_days: Optional[float] = None
    decay_min_confidence_ratio: Optional[float] = Field(None, ge=0, le=1)
    decay_max_age_days: Optional[float] = Field(None, gt=0)
    deadline_seconds: Optional[float] = Field(None, gt=0)


class ApplyLearningEventsResult(BaseModel):
    """Outcome of apply_learning_events_to_kb."""

    success: bool
    events_applied: int = 0
    events_skipped: int = 0
    events_decayed: int = 0
    fields_updated: list[str] = Field(default_factory=list)
    enrichment_version: int = 0
    errors: Optional[list[str]] = None


class KnowledgeBaseUpsert(BaseModel):
    """Schema for creating or partially updating a knowledge base. All fields optional."""

    business_name: Optional[str] = None
    website: Optional[str] = None
    industry: Optional[str] = None
    what_you_sell: Optional[str] = None
    monthly_revenue: Optional[str] = None
    team_size: Optional[str] = None
    primary_goal: Optional[str] = None
    biggest_bottleneck: Optional[str] = None
    ideal_customer: Optional[str] = None
    top_objection: Optional[str] = None
    core_offer: Optional[str] = None
    customer_journey: Optional[str] = None
    tool_stack: Optional[list[str]] = None
    primary_crm: Optional[str] = None
    default_time_zone: Optional[str] = None
    brand_voice_style: Optional[str] = None
    risk_boldness: Optional[str] = None
    is_regulated: Optional[bool] = None
    regulated_industry: Optional[str] = None
    forbidden_words: Optional[str] = None
    disclaimers: Optional[str] = None
    proof_assets: Optional[str] = None


class KnowledgeBaseResponse(BaseModel):
    """Full knowledge base response."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    organization_id: str
    business_name: Optional[str] = None
    website: Optional[str] = None
    industry: Optional[str] = None
    what_you_sell: Optional[str] = None
    biggest_bottleneck: Optional[str] = None
    primary_goal: Optional[str] = None
    ideal_customer: Optional[str] = None
    core_offer: Optional[str] = None
    primary_crm: Optional[str] = None
    tool_stack: list[str] = Field(default_factory=list)
    extracted_knowledge: Optional[dict] = None
    version: int
    enrichment_version: int
    last_enriched_at: Optional[datetime] = None


class LearningEventResponse(BaseModel):
    """Learning event response (embedding omitted)."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    knowledge_base_id: int
    event_type: LearningEventType
    category: str
    insight: str
    confidence: int
    metadata_: Optional[dict] = Field(None, serialization_alias="metadata")
    source_type: Optional[str] = None
    source_ids: list[str] = Field(default_factory=list)
    triggered_by: Optional[str] = None
    applied: bool
    applied_at: Optional[datetime] = None
    applied_to_fields: list[str] = Field(default_factory=list)
    created_at: datetime
