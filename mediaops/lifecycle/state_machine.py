#===========================================================================
# mediaops/lifecycle/state_machine.py
# Single writer of Order.status.
#
# Every accepted transition:
#   1) is validated against the status read immediately before the write
#   2) is written with a compare-and-set on that status
#   3) appends a status_changed event in the same unit of work
# Rules see the event only after the unit of work commits (see event_log.py).
#===========================================================================

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy import select, update

from mediaops.context import Actor, OrchestratorContext, SYSTEM
from mediaops.db import utcnow
from mediaops.errors import ConcurrentModification, InvalidTransition, NotFound
from mediaops.lifecycle.event_log import UnitOfWork
from mediaops.models.events import EventType, TransitionRequest
from mediaops.models.orders import Order, OrderStatus

logger = logging.getLogger("uvicorn.error")

_MAX_CAS_ATTEMPTS = 3


async def load_order(session, order_id: str) -> Order:
    order = await session.get(Order, order_id, populate_existing=True)
    if order is None:
        raise NotFound(f"order {order_id} not found", order_id=order_id)
    return order


class StatusStateMachine:
    def __init__(self, ctx: OrchestratorContext):
        self.ctx = ctx
        self.table = ctx.transitions

    async def transition(
        self,
        order_id: str,
        target_status: str,
        actor: Actor = SYSTEM,
        *,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Public entry point: one transition, one unit of work. Returns the order snapshot."""
        async with UnitOfWork(self.ctx) as uow:
            order = await self.apply(uow, order_id, target_status, actor, idempotency_key=idempotency_key)
            snap = order.snapshot()
        return snap

    async def apply(
        self,
        uow: UnitOfWork,
        order_id: str,
        target_status: str,
        actor: Actor = SYSTEM,
        *,
        revision: bool = False,
        idempotency_key: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Order:
        """
        Apply a transition inside an existing unit of work so that callers
        (tracker, QC loop) can bundle it with their own writes.
        `revision=True` is reserved for the QC revision loop.
        """
        session = uow.session
        if target_status not in OrderStatus.ALL:
            raise InvalidTransition(order_id, "?", target_status)

        if idempotency_key and await self._already_applied(session, order_id, target_status, idempotency_key):
            logger.info("[STATE] order=%s -> %s already applied (key=%s)", order_id, target_status, idempotency_key)
            return await load_order(session, order_id)

        for attempt in range(1, _MAX_CAS_ATTEMPTS + 1):
            order = await load_order(session, order_id)
            current = order.status

            if not self.table.can_transition(current, target_status, revision=revision):
                # a concurrent duplicate of this same request may have won the race
                if (
                    idempotency_key
                    and current == target_status
                    and await self._already_applied(session, order_id, target_status, idempotency_key)
                ):
                    return order
                raise InvalidTransition(order_id, current, target_status)

            now = utcnow()
            values: Dict[str, Any] = {"status": target_status, "status_entered_at": now, "updated_at": now}
            if target_status == OrderStatus.DELIVERED:
                values["delivered_at"] = now

            res = await session.execute(
                update(Order)
                .where(Order.id == order_id, Order.status == current)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount == 1:
                break
            logger.warning(
                "[STATE] order=%s lost status race (%s -> %s), attempt %d",
                order_id, current, target_status, attempt,
            )
        else:
            raise ConcurrentModification(f"order {order_id} kept changing; retry", order_id=order_id)

        order = await load_order(session, order_id)
        payload: Dict[str, Any] = {"from_status": current, "to_status": target_status}
        if revision:
            payload["revision"] = True
        if reason:
            payload["reason"] = reason
        if idempotency_key:
            payload["idempotency_key"] = idempotency_key
        ev = await uow.append(order_id, EventType.STATUS_CHANGED, payload, actor)

        if idempotency_key:
            session.add(TransitionRequest(
                order_id=order_id,
                target_status=target_status,
                idempotency_key=idempotency_key,
                event_id=ev.id,
            ))
            await session.flush()

        logger.info("[STATE] order=%s %s -> %s by %s:%s", order_id, current, target_status, actor.type, actor.id)
        return order

    def can_transition(self, from_status: str, to_status: str, *, revision: bool = False) -> bool:
        return self.table.can_transition(from_status, to_status, revision=revision)

    async def _already_applied(self, session, order_id: str, target_status: str, key: str) -> bool:
        res = await session.execute(
            select(TransitionRequest.id).where(
                TransitionRequest.order_id == order_id,
                TransitionRequest.target_status == target_status,
                TransitionRequest.idempotency_key == key,
            )
        )
        return res.first() is not None
