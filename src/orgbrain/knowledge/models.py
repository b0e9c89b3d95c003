"""KnowledgeBase, LearningEvent, EventAuditLog, KnowledgeBaseSnapshot ORM models.

All models inherit from Base. No cross-organization ORM relationships exist --
isolation is enforced at the service layer by always filtering on
knowledge_base_id.
"""

from datetime import datetime
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from orgbrain.db.base import Base, TimestampMixin, utcnow


class LearningEventType(str, PyEnum):
    """Extraction origin of a learning event."""

    PATTERN_DETECTED = "PATTERN_DETECTED"
    OPTIMIZATION_FOUND = "OPTIMIZATION_FOUND"
    INSIGHT_GENERATED = "INSIGHT_GENERATED"
    INCONSISTENCY_FIXED = "INCONSISTENCY_FIXED"
    KNOWLEDGE_EXPANDED = "KNOWLEDGE_EXPANDED"


class SourceType(str, PyEnum):
    """Where the text behind a batch of insights came from."""

    JOB_DESCRIPTION = "JOB_DESCRIPTION"
    SOP_GENERATION = "SOP_GENERATION"
    CHAT_CONVERSATION = "CHAT_CONVERSATION"
    INITIAL_ONBOARDING = "INITIAL_ONBOARDING"
    MANUAL_UPDATE = "MANUAL_UPDATE"
    FILE_UPLOAD = "FILE_UPLOAD"
    AI_ENRICHMENT = "AI_ENRICHMENT"


# Named scalar fields that learning events may write through conflict resolution
NAMED_SCALAR_FIELDS: tuple[str, ...] = (
    "business_name",
    "website",
    "industry",
    "what_you_sell",
    "monthly_revenue",
    "team_size",
    "primary_goal",
    "biggest_bottleneck",
    "ideal_customer",
    "top_objection",
    "core_offer",
    "customer_journey",
    "primary_crm",
    "default_time_zone",
    "brand_voice_style",
    "risk_boldness",
    "regulated_industry",
    "forbidden_words",
    "disclaimers",
    "proof_assets",
)


class KnowledgeBase(TimestampMixin, Base):
    """Per-organization profile record that learning events enrich over time."""

    __tablename__ = "knowledge_bases"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    organization_id: Mapped[str] = mapped_column(String, unique=True, nullable=False)

    # Business identity
    business_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    website: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    industry: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    what_you_sell: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Operations
    monthly_revenue: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    team_size: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    primary_goal: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    biggest_bottleneck: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    primary_crm: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    default_time_zone: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    tool_stack: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    # Customer / market
    ideal_customer: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    top_objection: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    core_offer: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    customer_journey: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Brand / voice
    brand_voice_style: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    risk_boldness: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    # Compliance
    is_regulated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    regulated_industry: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    forbidden_words: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    disclaimers: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Proof
    proof_assets: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Open-ended learned knowledge: category buckets, field_history, metrics
    extracted_knowledge: Mapped[Optional[dict]] = mapped_column(
        JSON(none_as_null=True), nullable=True
    )

    # Versioning
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    enrichment_version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_enriched_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_edited_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    contributors: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    learning_events: Mapped[list["LearningEvent"]] = relationship(
        "LearningEvent", back_populates="knowledge_base"
    )


class LearningEvent(Base):
    """One extracted candidate fact.

    Immutable once created except for the apply-state fields (applied,
    applied_at, applied_to_fields) and a best-effort embedding backfill.
    """

    __tablename__ = "learning_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    knowledge_base_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("knowledge_bases.id", ondelete="CASCADE"), nullable=False
    )
    event_type: Mapped[LearningEventType] = mapped_column(
        Enum(LearningEventType), nullable=False
    )
    category: Mapped[str] = mapped_column(String, nullable=False)
    insight: Mapped[str] = mapped_column(Text, nullable=False)
    confidence: Mapped[int] = mapped_column(Integer, nullable=False)
    metadata_: Mapped[Optional[dict]] = mapped_column(
        "metadata", JSON(none_as_null=True), nullable=True
    )

    embedding: Mapped[Optional[list]] = mapped_column(
        JSON(none_as_null=True), nullable=True
    )
    embedding_model: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    source_type: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    source_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    triggered_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    applied: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    applied_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    applied_to_fields: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    # Sole basis for confidence decay
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )

    # sha256(knowledge_base_id, category, normalized insight) -- absorbs insert races
    dedupe_key: Mapped[str] = mapped_column(String, unique=True, nullable=False)

    knowledge_base: Mapped["KnowledgeBase"] = relationship(
        "KnowledgeBase", back_populates="learning_events"
    )

    __table_args__ = (
        Index("ix_learning_events_kb_applied", "knowledge_base_id", "applied"),
        Index("ix_learning_events_kb_category", "knowledge_base_id", "category"),
        Index("ix_learning_events_created_at", "created_at"),
    )


class EventAuditLog(Base):
    """Append-only audit trail of what happened to each learning event."""

    __tablename__ = "learning_event_audit"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    knowledge_base_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("knowledge_bases.id", ondelete="CASCADE"), nullable=False
    )
    event_id: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[str] = mapped_column(String, nullable=False)  # created/applied/skipped
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resulting_kb_version: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    fields_affected: Mapped[Optional[list]] = mapped_column(
        JSON(none_as_null=True), nullable=True
    )
    previous_value: Mapped[Optional[dict]] = mapped_column(
        JSON(none_as_null=True), nullable=True
    )
    new_value: Mapped[Optional[dict]] = mapped_column(
        JSON(none_as_null=True), nullable=True
    )
    details: Mapped[Optional[dict]] = mapped_column(
        JSON(none_as_null=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )

    __table_args__ = (
        Index("ix_learning_event_audit_event", "event_id"),
        Index("ix_learning_event_audit_kb_action", "knowledge_base_id", "action"),
    )


class KnowledgeBaseSnapshot(Base):
    """Point-in-time copy of the structured side of a knowledge base."""

    __tablename__ = "knowledge_base_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    knowledge_base_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("knowledge_bases.id", ondelete="CASCADE"), nullable=False
    )
    enrichment_version: Mapped[int] = mapped_column(Integer, nullable=False)
    applied_event_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    snapshot: Mapped[dict] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )
