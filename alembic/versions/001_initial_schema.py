"""Initial schema: knowledge bases and the learning pipeline tables.

Revision ID: 001
Revises: None
Create Date: 2026-10-18

Creates: knowledge_bases, learning_events, learning_event_audit,
         knowledge_base_snapshots
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

LEARNING_EVENT_TYPES = (
    "PATTERN_DETECTED",
    "OPTIMIZATION_FOUND",
    "INSIGHT_GENERATED",
    "INCONSISTENCY_FIXED",
    "KNOWLEDGE_EXPANDED",
)


def upgrade() -> None:
    """Create all learning tables."""

    # -- knowledge_bases --
    op.create_table(
        "knowledge_bases",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("organization_id", sa.String, nullable=False, unique=True),
        sa.Column("business_name", sa.String, nullable=True),
        sa.Column("website", sa.String, nullable=True),
        sa.Column("industry", sa.String, nullable=True),
        sa.Column("what_you_sell", sa.Text, nullable=True),
        sa.Column("monthly_revenue", sa.String, nullable=True),
        sa.Column("team_size", sa.String, nullable=True),
        sa.Column("primary_goal", sa.Text, nullable=True),
        sa.Column("biggest_bottleneck", sa.Text, nullable=True),
        sa.Column("primary_crm", sa.String, nullable=True),
        sa.Column("default_time_zone", sa.String, nullable=True),
        sa.Column("tool_stack", sa.JSON, nullable=False),
        sa.Column("ideal_customer", sa.Text, nullable=True),
        sa.Column("top_objection", sa.Text, nullable=True),
        sa.Column("core_offer", sa.Text, nullable=True),
        sa.Column("customer_journey", sa.Text, nullable=True),
        sa.Column("brand_voice_style", sa.String, nullable=True),
        sa.Column("risk_boldness", sa.String, nullable=True),
        sa.Column("is_regulated", sa.Boolean, nullable=False, server_default="0"),
        sa.Column("regulated_industry", sa.String, nullable=True),
        sa.Column("forbidden_words", sa.Text, nullable=True),
        sa.Column("disclaimers", sa.Text, nullable=True),
        sa.Column("proof_assets", sa.Text, nullable=True),
        sa.Column("extracted_knowledge", sa.JSON, nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("enrichment_version", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_enriched_at", sa.DateTime, nullable=True),
        sa.Column("last_edited_by", sa.String, nullable=True),
        sa.Column("contributors", sa.JSON, nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime,
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime,
            nullable=False,
            server_default=sa.func.now(),
        ),
    )

    # -- learning_events --
    op.create_table(
        "learning_events",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column(
            "knowledge_base_id",
            sa.Integer,
            sa.ForeignKey("knowledge_bases.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "event_type",
            sa.Enum(*LEARNING_EVENT_TYPES, name="learningeventtype"),
            nullable=False,
        ),
        sa.Column("category", sa.String, nullable=False),
        sa.Column("insight", sa.Text, nullable=False),
        sa.Column("confidence", sa.Integer, nullable=False),
        sa.Column("metadata", sa.JSON, nullable=True),
        sa.Column("embedding", sa.JSON, nullable=True),
        sa.Column("embedding_model", sa.String, nullable=True),
        sa.Column("source_type", sa.String, nullable=True),
        sa.Column("source_ids", sa.JSON, nullable=False),
        sa.Column("triggered_by", sa.String, nullable=True),
        sa.Column("applied", sa.Boolean, nullable=False, server_default="0"),
        sa.Column("applied_at", sa.DateTime, nullable=True),
        sa.Column("applied_to_fields", sa.JSON, nullable=False),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("dedupe_key", sa.String, nullable=False, unique=True),
    )
    op.create_index(
        "ix_learning_events_kb_applied", "learning_events", ["knowledge_base_id", "applied"]
    )
    op.create_index(
        "ix_learning_events_kb_category", "learning_events", ["knowledge_base_id", "category"]
    )
    op.create_index("ix_learning_events_created_at", "learning_events", ["created_at"])

    # -- learning_event_audit --
    op.create_table(
        "learning_event_audit",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column(
            "knowledge_base_id",
            sa.Integer,
            sa.ForeignKey("knowledge_bases.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("event_id", sa.Integer, nullable=False),
        sa.Column("action", sa.String, nullable=False),
        sa.Column("reason", sa.Text, nullable=True),
        sa.Column("resulting_kb_version", sa.Integer, nullable=True),
        sa.Column("fields_affected", sa.JSON, nullable=True),
        sa.Column("previous_value", sa.JSON, nullable=True),
        sa.Column("new_value", sa.JSON, nullable=True),
        sa.Column("details", sa.JSON, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_learning_event_audit_event", "learning_event_audit", ["event_id"])
    op.create_index(
        "ix_learning_event_audit_kb_action",
        "learning_event_audit",
        ["knowledge_base_id", "action"],
    )

    # -- knowledge_base_snapshots --
    op.create_table(
        "knowledge_base_snapshots",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column(
            "knowledge_base_id",
            sa.Integer,
            sa.ForeignKey("knowledge_bases.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("enrichment_version", sa.Integer, nullable=False),
        sa.Column("applied_event_ids", sa.JSON, nullable=False),
        sa.Column("snapshot", sa.JSON, nullable=False),
        sa.Column("created_at", sa.DateTime, nullable=False),
    )


def downgrade() -> None:
    """Drop all learning tables in reverse dependency order."""
    op.drop_table("knowledge_base_snapshots")
    op.drop_index("ix_learning_event_audit_kb_action", table_name="learning_event_audit")
    op.drop_index("ix_learning_event_audit_event", table_name="learning_event_audit")
    op.drop_table("learning_event_audit")
    op.drop_index("ix_learning_events_created_at", table_name="learning_events")
    op.drop_index("ix_learning_events_kb_category", table_name="learning_events")
    op.drop_index("ix_learning_events_kb_applied", table_name="learning_events")
    op.drop_table("learning_events")
    op.drop_table("knowledge_bases")
