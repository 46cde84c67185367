"""
Pipelines Router - Leader popup deal pipeline

Provides:
- POST /pipelines: Open a pipeline from a leader proposal
- GET /pipelines: List pipelines
- GET /pipelines/metrics: Funnel and revenue dashboard (cached)
- GET /pipelines/{pipeline_id}: Current snapshot
- GET /pipelines/{pipeline_id}/actions: Actions the caller may take now
- POST /pipelines/{pipeline_id}/actions: Apply an action
- POST /pipelines/{pipeline_id}/messages: Post a message between parties
- POST /pipelines/{pipeline_id}/documents: Attach a document
"""
import logging
from typing import List, Literal, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from popup_engine.db.repository import pipeline_repository
from popup_engine.dependencies import (
    get_actor_id, get_actor_role, get_cache, get_db, verify_api_key,
)
from popup_engine.schemas.common import Role, utcnow
from popup_engine.schemas.pipeline import (
    ActionRequest, ActionResult, Pipeline, PipelineMetrics, ProposalDraft,
)
from popup_engine.services.cache_service import Cache
from popup_engine.services.pipeline_metrics_service import pipeline_metrics_service
from popup_engine.services.pipeline_service import pipeline_service

logger = logging.getLogger(__name__)
router = APIRouter()


# ============================================================
# REQUEST MODELS
# ============================================================

class CreatePipelineRequest(BaseModel):
    leader_id: Optional[str] = Field(None, description="Defaults to X-Actor-Id")
    popup_id: Optional[str] = None
    proposal: ProposalDraft = ProposalDraft()


class MessageRequest(BaseModel):
    recipient: Role
    subject: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    attachments: List[str] = []


class DocumentRequest(BaseModel):
    name: str = Field(..., min_length=1)
    url: str = Field(..., min_length=1)
    type: Literal["proposal", "contract", "invoice", "report", "other"] = "other"
    size: int = Field(0, ge=0)


class AvailableActionsResponse(BaseModel):
    pipeline_id: str
    stage: str
    role: Role
    actions: List[str]


# ============================================================
# ENDPOINTS
# ============================================================

@router.post("", response_model=Pipeline, status_code=status.HTTP_201_CREATED)
async def create_pipeline(
    request: CreatePipelineRequest,
    role: Role = Depends(get_actor_role),
    actor_id: Optional[str] = Depends(get_actor_id),
    db: Session = Depends(get_db)
):
    """Open a pipeline in the proposal stage with a draft proposal"""
    if role != "leader":
        raise HTTPException(status_code=403, detail="Only leaders can open a pipeline")
    leader_id = request.leader_id or actor_id
    if not leader_id:
        raise HTTPException(status_code=400, detail="leader_id or X-Actor-Id is required")

    return pipeline_service.create(
        db, leader_id, request.proposal, utcnow(), popup_id=request.popup_id
    )


@router.get("", response_model=List[Pipeline])
async def list_pipelines(
    stage: Optional[str] = Query(None, description="Filter by current stage"),
    leader_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db)
):
    return pipeline_repository.list(db, stage=stage, leader_id=leader_id, limit=limit)


@router.get("/metrics", response_model=PipelineMetrics)
async def get_pipeline_metrics(
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_cache)
):
    """
    Dashboard metrics across all pipelines.

    Served from cache when fresh; recomputed on a miss and periodically by
    the worker.
    """
    return pipeline_metrics_service.get_metrics(db, cache)


@router.post("/metrics/refresh", response_model=PipelineMetrics)
async def refresh_pipeline_metrics(
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_cache),
    api_key: str = Depends(verify_api_key)
):
    return pipeline_metrics_service.refresh(db, cache)


@router.get("/{pipeline_id}", response_model=Pipeline)
async def get_pipeline(pipeline_id: str, db: Session = Depends(get_db)):
    return pipeline_repository.get(db, pipeline_id)


@router.get("/{pipeline_id}/actions", response_model=AvailableActionsResponse)
async def available_actions(
    pipeline_id: str,
    role: Role = Depends(get_actor_role),
    db: Session = Depends(get_db)
):
    pipeline = pipeline_repository.get(db, pipeline_id)
    return AvailableActionsResponse(
        pipeline_id=pipeline.id,
        stage=pipeline.stage,
        role=role,
        actions=pipeline_service.available_actions(pipeline, role)
    )


@router.post("/{pipeline_id}/actions", response_model=ActionResult)
async def perform_action(
    pipeline_id: str,
    request: ActionRequest,
    role: Role = Depends(get_actor_role),
    actor_id: Optional[str] = Depends(get_actor_id),
    db: Session = Depends(get_db)
):
    """
    Apply a pipeline action as the calling role.

    A rejected action responds 409 with the violated rule; repeating a
    `request_id` that was already applied is rejected as
    `duplicate_request` without changing the pipeline.
    """
    result = pipeline_service.perform(db, pipeline_id, request, role, utcnow(), actor_id)
    return result.raise_for_rejection()


@router.post("/{pipeline_id}/messages", response_model=Pipeline)
async def post_message(
    pipeline_id: str,
    request: MessageRequest,
    role: Role = Depends(get_actor_role),
    db: Session = Depends(get_db)
):
    return pipeline_service.post_message(
        db, pipeline_id,
        sender=role,
        recipient=request.recipient,
        subject=request.subject,
        content=request.content,
        now=utcnow(),
        attachments=request.attachments
    )


@router.post("/{pipeline_id}/documents", response_model=Pipeline)
async def attach_document(
    pipeline_id: str,
    request: DocumentRequest,
    role: Role = Depends(get_actor_role),
    db: Session = Depends(get_db)
):
    return pipeline_service.attach_document(
        db, pipeline_id,
        uploaded_by=role,
        name=request.name,
        url=request.url,
        now=utcnow(),
        doc_type=request.type,
        size=request.size
    )
