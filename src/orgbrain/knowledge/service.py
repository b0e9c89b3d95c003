"""Knowledge base service: upsert, lookup, manual edits, event listing.

All methods take a Session as first argument (dependency injection).
All queries that touch learning events include a knowledge_base_id filter.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from sqlalchemy import ColumnElement, func, literal_column
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from orgbrain.exceptions import DatabaseError, KnowledgeBaseNotFoundError
from orgbrain.knowledge.models import (
    NAMED_SCALAR_FIELDS,
    KnowledgeBase,
    LearningEvent,
)
from orgbrain.knowledge.schemas import KnowledgeBaseUpsert

logger = logging.getLogger(__name__)


def extracted_knowledge_patch(updates: dict[str, Any]) -> ColumnElement:
    """SQL expression replacing top-level keys of extracted_knowledge in place.

    Keys not named in updates keep whatever the row holds when the UPDATE
    runs, so the applicator (buckets, field_history) and the metrics recorder
    (metrics) never overwrite each other's sections.
    """
    document = func.coalesce(KnowledgeBase.extracted_knowledge, literal_column("'{}'"))
    for key, value in updates.items():
        document = func.json_set(document, f'$."{key}"', func.json(json.dumps(value)))
    return document



def knowledge_base_snapshot(kb: KnowledgeBase) -> dict:
    """Create a JSON-serializable snapshot of the structured side of a knowledge base."""
    snapshot = {name: getattr(kb, name) for name in NAMED_SCALAR_FIELDS}
    snapshot.update(
        {
            "id": kb.id,
            "organization_id": kb.organization_id,
            "is_regulated": kb.is_regulated,
            "tool_stack": list(kb.tool_stack or []),
            "version": kb.version,
            "enrichment_version": kb.enrichment_version,
            "last_enriched_at": (
                kb.last_enriched_at.isoformat() if kb.last_enriched_at else None
            ),
        }
    )
    return snapshot


class KnowledgeBaseService:
    """Knowledge base upsert, lookup, and manual edits."""

    @staticmethod
    def get_knowledge_base(db: Session, knowledge_base_id: int) -> KnowledgeBase:
        """Get a knowledge base by ID. Raises KnowledgeBaseNotFoundError if not found."""
        kb = db.get(KnowledgeBase, knowledge_base_id)
        if kb is None:
            raise KnowledgeBaseNotFoundError(
                message=f"Knowledge base with id {knowledge_base_id} not found",
                detail=f"knowledge_base_id={knowledge_base_id}",
            )
        return kb

    @staticmethod
    def get_for_organization(
        db: Session, organization_id: str
    ) -> Optional[KnowledgeBase]:
        """Return the organization's knowledge base, or None."""
        return (
            db.query(KnowledgeBase)
            .filter(KnowledgeBase.organization_id == organization_id)
            .first()
        )

    @staticmethod
    def upsert_for_organization(
        db: Session,
        organization_id: str,
        data: KnowledgeBaseUpsert | None = None,
        actor: str = "operator",
    ) -> KnowledgeBase:
        """Create the organization's knowledge base on first write, update it afterwards.

        Only fields explicitly set on `data` are written. Any write after
        creation bumps `version` and records the actor as a contributor.
        """
        kb = KnowledgeBaseService.get_for_organization(db, organization_id)
        created = kb is None
        if created:
            kb = KnowledgeBase(
                organization_id=organization_id,
                tool_stack=[],
                contributors=[],
                extracted_knowledge={},
                version=1,
                enrichment_version=0,
            )
            db.add(kb)

        changed = False
        if data is not None:
            for field_name, new_value in data.model_dump(exclude_unset=True).items():
                if getattr(kb, field_name) == new_value:
                    continue
                setattr(kb, field_name, new_value)
                changed = True

        if changed or created:
            kb.last_edited_by = actor
            contributors = list(kb.contributors or [])
            if actor not in contributors:
                contributors.append(actor)
                kb.contributors = contributors
        if changed and not created:
            kb.version = (kb.version or 1) + 1

        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(
                "Failed to save knowledge base for organization %s: %s", organization_id, e
            )
            raise DatabaseError(
                message=f"Could not save knowledge base for organization {organization_id}",
                detail=str(e),
            ) from e
        db.refresh(kb)

        logger.info(
            "%s knowledge base %d for organization %s",
            "Created" if created else "Updated",
            kb.id,
            organization_id,
        )
        return kb

    @staticmethod
    def list_learning_events(
        db: Session,
        knowledge_base_id: int,
        applied: Optional[bool] = None,
        category: Optional[str] = None,
        limit: int = 100,
    ) -> list[LearningEvent]:
        """List learning events newest first, optionally filtered by apply state and category."""
        KnowledgeBaseService.get_knowledge_base(db, knowledge_base_id)
        query = db.query(LearningEvent).filter(
            LearningEvent.knowledge_base_id == knowledge_base_id
        )
        if applied is not None:
            query = query.filter(LearningEvent.applied == applied)
        if category is not None:
            query = query.filter(LearningEvent.category == category)
        return (
            query.order_by(LearningEvent.created_at.desc(), LearningEvent.id.desc())
            .limit(limit)
            .all()
        )

    @staticmethod
    def get_field_history(
        db: Session, knowledge_base_id: int, field_name: str
    ) -> list[dict]:
        """Return the capped prior->new transitions recorded for a field."""
        kb = KnowledgeBaseService.get_knowledge_base(db, knowledge_base_id)
        history = (kb.extracted_knowledge or {}).get("field_history") or {}
        return list(history.get(field_name) or [])

