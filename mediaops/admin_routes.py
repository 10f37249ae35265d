#=======================================================================================
# mediaops/admin_routes.py
# Admin endpoints. Protected via Basic Auth in main_app.py and mounted under
# /admin, so final paths are /admin/api/*.
#
# Notification rule management, manual sweeps and the workload-cap override
# for claims live here; everything else is in mediaops.routes.
#=======================================================================================

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from mediaops.db import utcnow
from mediaops.routes import get_services
from mediaops.services import Services
from mediaops.workers import jobs_worker

logger = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/api", tags=["Admin API"])


class RuleCreate(BaseModel):
    name: str
    trigger_type: str
    trigger_conditions: Dict[str, Any] = Field(default_factory=dict)
    channels: List[str]
    template_id: Optional[str] = None
    description: Optional[str] = None
    audience: str = "agent"
    is_active: bool = True


class RuleUpdate(BaseModel):
    name: Optional[str] = None
    trigger_type: Optional[str] = None
    trigger_conditions: Optional[Dict[str, Any]] = None
    channels: Optional[List[str]] = None
    template_id: Optional[str] = None
    description: Optional[str] = None
    audience: Optional[str] = None
    is_active: Optional[bool] = None


class OverrideClaim(BaseModel):
    editor_id: str


class SweepBody(BaseModel):
    # optional clock override for replaying a sweep "as of" a moment
    now: Optional[datetime] = None


def _naive_utc(dt: Optional[datetime]) -> datetime:
    if dt is None:
        return utcnow()
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


# ---------------------------
# Health
# ---------------------------

@router.get("/health")
async def admin_health(svc: Services = Depends(get_services)):
    s = svc.ctx.settings
    return {
        "ok": True,
        "worker_running": jobs_worker.is_running(),
        "queued_jobs": jobs_worker.pending_jobs(),
        "provider_configured": bool(s.PROCESSING_API_URL),
        "messaging_configured": bool(s.MESSAGING_API_URL),
        "processing_timeout_minutes": s.processing_timeout_minutes,
    }


# ---------------------------
# Notification rules
# ---------------------------

@router.get("/rules")
async def list_rules(
    active: Optional[bool] = Query(None),
    trigger_type: Optional[str] = Query(None),
    svc: Services = Depends(get_services),
):
    return {"rules": await svc.rules.list_rules(active=active, trigger_type=trigger_type)}


@router.get("/rules/stats")
async def rule_stats(svc: Services = Depends(get_services)):
    return {"by_trigger_type": await svc.rules.rule_stats()}


@router.post("/rules", status_code=201)
async def create_rule(body: RuleCreate, svc: Services = Depends(get_services)):
    return await svc.rules.create_rule(**body.model_dump())


@router.get("/rules/{rule_id}")
async def get_rule(rule_id: str, svc: Services = Depends(get_services)):
    return await svc.rules.get_rule(rule_id)


@router.patch("/rules/{rule_id}")
async def update_rule(rule_id: str, body: RuleUpdate, svc: Services = Depends(get_services)):
    return await svc.rules.update_rule(rule_id, **body.model_dump(exclude_unset=True))


@router.post("/rules/{rule_id}/activate")
async def activate_rule(rule_id: str, svc: Services = Depends(get_services)):
    return await svc.rules.update_rule(rule_id, is_active=True)


@router.post("/rules/{rule_id}/deactivate")
async def deactivate_rule(rule_id: str, svc: Services = Depends(get_services)):
    return await svc.rules.update_rule(rule_id, is_active=False)


# ---------------------------
# Sweeps (normally run by the sweeper loop)
# ---------------------------

@router.post("/sweeps/processing-timeouts")
async def sweep_timeouts(body: Optional[SweepBody] = None, svc: Services = Depends(get_services)):
    failed = await svc.tracker.sweep_timeouts(_naive_utc(body.now if body else None))
    return {"ok": True, "timed_out_jobs": failed}


@router.post("/sweeps/time-delays")
async def sweep_time_delays(body: Optional[SweepBody] = None, svc: Services = Depends(get_services)):
    fired = await svc.rules.sweep_time_delays(_naive_utc(body.now if body else None))
    return {"ok": True, "fired": fired}


# ---------------------------
# Editing overrides
# ---------------------------

@router.post("/editing/assignments/{assignment_id}/claim")
async def override_claim(assignment_id: str, body: OverrideClaim, svc: Services = Depends(get_services)):
    """Claim on an editor's behalf, ignoring the workload cap."""
    logger.info("[ADMIN] override claim assignment=%s for editor=%s", assignment_id, body.editor_id)
    return await svc.queue.claim(assignment_id, body.editor_id, override=True)
