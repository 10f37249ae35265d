#=======================================================================================
# mediaops/routes.py
# Public orchestrator API under /api/*.
#
# Callers are already authenticated upstream; identity arrives as
# X-Actor-Id / X-Actor-Type headers and is resolved to an Actor here.
# Domain errors (OrchestratorError) are mapped to JSON in main_app.py.
#=======================================================================================

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from mediaops.context import Actor
from mediaops.lifecycle import intake
from mediaops.services import Services

logger = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/api", tags=["Orchestrator API"])

ACTOR_TYPES = {"system", "staff", "capture", "editor", "reviewer", "processor", "admin"}


# ---------------------------
# Dependencies
# ---------------------------

def get_services(request: Request) -> Services:
    return request.app.state.services


def get_actor(
    x_actor_id: Optional[str] = Header(None),
    x_actor_type: Optional[str] = Header(None),
) -> Actor:
    atype = (x_actor_type or "staff").strip().lower()
    if atype not in ACTOR_TYPES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"unknown actor type {atype!r}")
    return Actor(atype, (x_actor_id or "").strip() or None)


def _require_id(actor: Actor) -> str:
    if not actor.id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="X-Actor-Id header is required")
    return actor.id


# ---------------------------
# Request bodies
# ---------------------------

class OrderCreate(BaseModel):
    address: Optional[str] = None
    is_rush: bool = False
    scheduled_at: Optional[datetime] = None
    agent_id: Optional[str] = None
    agent_name: Optional[str] = None
    agent_email: Optional[str] = None
    agent_phone: Optional[str] = None


class TransitionBody(BaseModel):
    target_status: str
    idempotency_key: Optional[str] = None


class AssetIn(BaseModel):
    ref: str
    category: Optional[str] = None


class BatchBody(BaseModel):
    assets: List[AssetIn]
    batch_id: Optional[str] = None


class SubmitProcessingBody(BaseModel):
    asset_ids: List[str]
    options: Dict[str, Any] = Field(default_factory=dict)


class EditBody(BaseModel):
    asset_id: str
    edited_url: str


class ReviewBody(BaseModel):
    outcome: str
    rejected_asset_ids: List[str] = Field(default_factory=list)
    notes: Optional[str] = None


# ---------------------------
# Orders
# ---------------------------

@router.post("/orders", status_code=201)
async def create_order(body: OrderCreate, svc: Services = Depends(get_services), actor: Actor = Depends(get_actor)):
    return await intake.create_order(svc.ctx, actor=actor, **body.model_dump())


@router.get("/orders/{order_id}")
async def get_order(order_id: str, svc: Services = Depends(get_services)):
    return await intake.get_order(svc.ctx, order_id)


@router.get("/orders/{order_id}/events")
async def order_events(order_id: str, svc: Services = Depends(get_services)):
    return {"order_id": order_id, "events": await intake.order_history(svc.ctx, order_id)}


@router.post("/orders/{order_id}/transitions")
async def transition_order(
    order_id: str,
    body: TransitionBody,
    svc: Services = Depends(get_services),
    actor: Actor = Depends(get_actor),
    idempotency_key: Optional[str] = Header(None),
):
    key = body.idempotency_key or idempotency_key
    return await svc.state_machine.transition(order_id, body.target_status, actor, idempotency_key=key)


@router.get("/transitions")
async def transition_table(svc: Services = Depends(get_services)):
    return {"edges": svc.ctx.transitions.as_list()}


@router.post("/orders/{order_id}/batches", status_code=201)
async def register_batch(
    order_id: str,
    body: BatchBody,
    svc: Services = Depends(get_services),
    actor: Actor = Depends(get_actor),
):
    assets = [a.model_dump() for a in body.assets]
    return await intake.register_capture_assets(svc.ctx, order_id, assets, batch_id=body.batch_id, actor=actor)


# ---------------------------
# Processing
# ---------------------------

@router.post("/orders/{order_id}/processing", status_code=202)
async def submit_processing(
    order_id: str,
    body: SubmitProcessingBody,
    svc: Services = Depends(get_services),
    actor: Actor = Depends(get_actor),
):
    return await svc.tracker.submit(order_id, body.asset_ids, actor, options=body.options or None)


@router.get("/orders/{order_id}/processing")
async def order_jobs(order_id: str, svc: Services = Depends(get_services)):
    return {"order_id": order_id, "jobs": await svc.tracker.list_jobs(order_id=order_id)}


@router.get("/processing/jobs/{job_id}")
async def get_job(job_id: str, svc: Services = Depends(get_services)):
    return await svc.tracker.get_job(job_id)


@router.post("/processing/jobs/{job_id}/poll")
async def poll_job(job_id: str, svc: Services = Depends(get_services)):
    return await svc.tracker.poll(job_id)


# ---------------------------
# Editing
# ---------------------------

@router.get("/editing/queue")
async def editing_queue(limit: Optional[int] = Query(None, ge=1, le=500), svc: Services = Depends(get_services)):
    return {"assignments": await svc.queue.list_queue(limit)}


@router.get("/editing/editors/{editor_id}/assignments")
async def editor_assignments(editor_id: str, svc: Services = Depends(get_services)):
    return {
        "editor_id": editor_id,
        "in_progress": await svc.queue.workload(editor_id),
        "assignments": await svc.queue.list_for_editor(editor_id),
    }


@router.get("/editing/assignments/{assignment_id}")
async def get_assignment(assignment_id: str, svc: Services = Depends(get_services)):
    return await svc.queue.get(assignment_id)


@router.post("/editing/assignments/{assignment_id}/claim")
async def claim_assignment(assignment_id: str, svc: Services = Depends(get_services), actor: Actor = Depends(get_actor)):
    return await svc.queue.claim(assignment_id, _require_id(actor))


@router.post("/editing/assignments/{assignment_id}/edits", status_code=201)
async def record_edit(
    assignment_id: str,
    body: EditBody,
    svc: Services = Depends(get_services),
    actor: Actor = Depends(get_actor),
):
    return await svc.queue.record_edit(assignment_id, body.asset_id, body.edited_url, _require_id(actor))


@router.post("/editing/assignments/{assignment_id}/submit")
async def submit_assignment(assignment_id: str, svc: Services = Depends(get_services), actor: Actor = Depends(get_actor)):
    return await svc.queue.submit(assignment_id, _require_id(actor))


# ---------------------------
# QC
# ---------------------------

@router.post("/qc/assignments/{assignment_id}/start")
async def start_review(assignment_id: str, svc: Services = Depends(get_services), actor: Actor = Depends(get_actor)):
    return await svc.qc.start_review(assignment_id, _require_id(actor))


@router.post("/qc/assignments/{assignment_id}/review")
async def review_assignment(
    assignment_id: str,
    body: ReviewBody,
    svc: Services = Depends(get_services),
    actor: Actor = Depends(get_actor),
):
    return await svc.qc.review(
        assignment_id,
        body.outcome,
        body.rejected_asset_ids,
        notes=body.notes,
        reviewer_id=_require_id(actor),
    )


@router.get("/qc/assignments/{assignment_id}/reviews")
async def assignment_reviews(assignment_id: str, svc: Services = Depends(get_services)):
    return {"assignment_id": assignment_id, "reviews": await svc.qc.list_reviews(assignment_id)}


@router.get("/qc/escalations")
async def escalations(svc: Services = Depends(get_services)):
    return {"assignments": await svc.qc.list_escalations()}
