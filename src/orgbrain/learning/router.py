"""FastAPI endpoints for the learning pipeline.

Exposes event creation and application for a knowledge base, plus read
access to events, metrics and field history. Unauthenticated: access control
belongs to the surrounding application.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from orgbrain.exceptions import DatabaseError, KnowledgeBaseNotFoundError, OrgBrainError
from orgbrain.knowledge.schemas import (
    ApplyLearningEventsRequest,
    ApplyLearningEventsResult,
    CreateLearningEventsParams,
    CreateLearningEventsResult,
    KnowledgeBaseResponse,
    KnowledgeBaseUpsert,
    LearningEventResponse,
)
from orgbrain.knowledge.service import KnowledgeBaseService
from orgbrain.learning.applicator import apply_learning_events_to_kb
from orgbrain.learning.events import create_learning_events
from orgbrain.learning.metrics import get_metrics
from orgbrain.learning.recorder import LearningRecorder, learning_recorder
from orgbrain.learning.thresholds import LearningConfig

learning_router = APIRouter(prefix="/api/knowledge-base", tags=["learning"])


# -- Dependencies -------------------------------------------------------------


def _get_db():
    """Yield a SQLAlchemy session. Lazy-imports engine to keep imports cheap."""
    from orgbrain.db.engine import get_db

    with get_db() as db:
        yield db


def get_recorder() -> LearningRecorder:
    return learning_recorder


def get_learning_config() -> LearningConfig:
    from orgbrain.config import get_settings

    return LearningConfig.from_settings(get_settings())


def _require_kb(db: Session, kb_id: int) -> None:
    try:
        KnowledgeBaseService.get_knowledge_base(db, kb_id)
    except KnowledgeBaseNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


# -- Endpoints ----------------------------------------------------------------


@learning_router.post("/{kb_id}/learning-events")
async def create_events_endpoint(
    kb_id: int,
    params: CreateLearningEventsParams,
    db: Session = Depends(_get_db),
    recorder: LearningRecorder = Depends(get_recorder),
    config: LearningConfig = Depends(get_learning_config),
) -> CreateLearningEventsResult:
    """Record extracted insights as unapplied learning events."""
    _require_kb(db, kb_id)
    params = params.model_copy(update={"knowledge_base_id": kb_id})
    return await create_learning_events(db, params, config=config, recorder=recorder)


@learning_router.post("/{kb_id}/apply")
async def apply_events_endpoint(
    kb_id: int,
    request: ApplyLearningEventsRequest = ApplyLearningEventsRequest(),
    db: Session = Depends(_get_db),
    recorder: LearningRecorder = Depends(get_recorder),
    config: LearningConfig = Depends(get_learning_config),
) -> ApplyLearningEventsResult:
    """Apply qualifying unapplied events to the knowledge base."""
    _require_kb(db, kb_id)
    decay_overrides = {
        name: value
        for name, value in (
            ("half_life_days", request.decay_half_life_days),
            ("min_confidence_ratio", request.decay_min_confidence_ratio),
            ("max_age_days", request.decay_max_age_days),
        )
        if value is not None
    }
    return await apply_learning_events_to_kb(
        db,
        kb_id,
        min_confidence=request.min_confidence,
        batch_size=request.batch_size,
        decay_config=replace(config.decay, **decay_overrides),
        config=config,
        recorder=recorder,
        deadline=request.deadline_seconds,
    )


@learning_router.get("/{kb_id}/learning-events", response_model=list[LearningEventResponse])
def list_events_endpoint(
    kb_id: int,
    applied: Optional[bool] = Query(None, description="Filter by apply state"),
    category: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(_get_db),
):
    """List learning events, newest first."""
    try:
        return KnowledgeBaseService.list_learning_events(
            db, kb_id, applied=applied, category=category, limit=limit
        )
    except KnowledgeBaseNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@learning_router.get("/{kb_id}/metrics")
def metrics_endpoint(kb_id: int, db: Session = Depends(_get_db)) -> dict:
    """Extraction, application and quality metrics."""
    metrics = get_metrics(db, kb_id)
    if metrics is None:
        raise HTTPException(status_code=404, detail=f"Knowledge base {kb_id} not found")
    return metrics


@learning_router.get("/{kb_id}/field-history/{field_name}")
def field_history_endpoint(
    kb_id: int, field_name: str, db: Session = Depends(_get_db)
) -> list[dict]:
    """Recorded overrides of a named field, oldest first."""
    try:
        return KnowledgeBaseService.get_field_history(db, kb_id, field_name)
    except KnowledgeBaseNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@learning_router.put("/organization/{organization_id}", response_model=KnowledgeBaseResponse)
def upsert_knowledge_base_endpoint(
    organization_id: str,
    data: KnowledgeBaseUpsert,
    db: Session = Depends(_get_db),
):
    """Create the organization's knowledge base or update its fields."""
    try:
        return KnowledgeBaseService.upsert_for_organization(
            db, organization_id, data, actor="operator:web"
        )
    except DatabaseError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except OrgBrainError as e:
        raise HTTPException(status_code=400, detail=str(e))
