# mediaops/lifecycle/intake.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select

from mediaops.context import Actor, OrchestratorContext, SYSTEM
from mediaops.errors import BatchLocked, NotFound, UnknownAssets
from mediaops.lifecycle.event_log import UnitOfWork, list_events
from mediaops.lifecycle.state_machine import load_order
from mediaops.models.events import EventType
from mediaops.models.orders import ASSET_CATEGORIES, CaptureAsset, CaptureBatch, Order, OrderStatus

logger = logging.getLogger("uvicorn.error")


async def create_order(
    ctx: OrchestratorContext,
    *,
    address: str | None = None,
    is_rush: bool = False,
    scheduled_at: datetime | None = None,
    agent_id: str | None = None,
    agent_name: str | None = None,
    agent_email: str | None = None,
    agent_phone: str | None = None,
    actor: Actor = SYSTEM,
) -> Dict[str, Any]:
    """Intake: every order starts life as `pending`."""
    async with UnitOfWork(ctx) as uow:
        order = Order(
            status=OrderStatus.PENDING,
            address=address,
            is_rush=is_rush,
            scheduled_at=scheduled_at,
            agent_id=agent_id,
            agent_name=agent_name,
            agent_email=agent_email,
            agent_phone=agent_phone,
        )
        uow.session.add(order)
        await uow.session.flush()
        await uow.append(order.id, EventType.ORDER_CREATED, {"is_rush": is_rush, "address": address}, actor)
        snap = order.snapshot()
    logger.info("[INTAKE] order=%s created (rush=%s)", snap["id"], is_rush)
    return snap


async def get_order(ctx: OrchestratorContext, order_id: str) -> Dict[str, Any]:
    async with ctx.sessionmaker() as session:
        order = await load_order(session, order_id)
        return order.snapshot()


async def order_history(ctx: OrchestratorContext, order_id: str) -> List[Dict[str, Any]]:
    async with ctx.sessionmaker() as session:
        await load_order(session, order_id)
        return [ev.snapshot() for ev in await list_events(session, order_id)]


def _normalize_asset(raw: Dict[str, Any]) -> Dict[str, str]:
    ref = str(raw.get("ref") or raw.get("storage_path") or "").strip()
    if not ref:
        raise UnknownAssets("capture asset without a ref")
    category = str(raw.get("category") or "other").strip().lower()
    if category not in ASSET_CATEGORIES:
        category = "other"
    return {"ref": ref, "category": category}


async def register_capture_assets(
    ctx: OrchestratorContext,
    order_id: str,
    assets: Sequence[Dict[str, Any]],
    *,
    batch_id: Optional[str] = None,
    actor: Actor = SYSTEM,
) -> Dict[str, Any]:
    """
    Register raw capture assets for an order. Without batch_id a new batch is
    opened; with batch_id assets are appended unless a processing job has
    already locked that batch.
    """
    normalized = [_normalize_asset(a) for a in assets]
    if not normalized:
        raise UnknownAssets("no capture assets given", order_id=order_id)

    async with UnitOfWork(ctx) as uow:
        session = uow.session
        await load_order(session, order_id)

        if batch_id:
            batch = await session.get(CaptureBatch, batch_id)
            if batch is None or batch.order_id != order_id:
                raise NotFound(f"batch {batch_id} not found for order {order_id}")
            if batch.locked_at is not None:
                raise BatchLocked(f"batch {batch_id} is being processed; register a new batch", batch_id=batch_id)
            res = await session.execute(select(CaptureAsset).where(CaptureAsset.batch_id == batch_id))
            start = len(res.scalars().all())
        else:
            batch = CaptureBatch(order_id=order_id)
            session.add(batch)
            await session.flush()
            start = 0

        for i, a in enumerate(normalized):
            session.add(CaptureAsset(
                batch_id=batch.id,
                order_id=order_id,
                ref=a["ref"],
                category=a["category"],
                position=start + i,
            ))
        await session.flush()
        await uow.append(order_id, EventType.BATCH_REGISTERED, {"batch_id": batch.id, "count": len(normalized)}, actor)

        res = await session.execute(
            select(CaptureAsset).where(CaptureAsset.batch_id == batch.id).order_by(CaptureAsset.position)
        )
        snap = {
            "id": batch.id,
            "order_id": order_id,
            "locked": batch.locked_at is not None,
            "assets": [x.snapshot() for x in res.scalars()],
        }
    logger.info("[INTAKE] order=%s batch=%s +%d asset(s)", order_id, snap["id"], len(normalized))
    return snap
