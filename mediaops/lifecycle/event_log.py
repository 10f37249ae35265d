#===========================================================================
# mediaops/lifecycle/event_log.py
# Append-only event log + the unit of work every component writes through.
#
# Ordering contract: events are appended inside the transaction, the
# transaction commits, and only then are the committed events published
# to the rule engine. A failed append or commit aborts the whole unit.
#===========================================================================

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from mediaops.context import Actor, OrchestratorContext, SYSTEM
from mediaops.errors import EventLogWriteError
from mediaops.models.events import Event

logger = logging.getLogger("uvicorn.error")


async def append_event(
    session: AsyncSession,
    order_id: str,
    event_type: str,
    payload: Optional[Dict[str, Any]] = None,
    actor: Actor = SYSTEM,
) -> Event:
    ev = Event(
        order_id=order_id,
        event_type=event_type,
        payload=dict(payload or {}),
        actor_type=actor.type,
        actor_id=actor.id,
    )
    session.add(ev)
    try:
        await session.flush()
    except SQLAlchemyError as e:
        logger.error("[EVENTS] append failed order=%s type=%s: %s", order_id, event_type, e)
        raise EventLogWriteError(f"could not append {event_type} for order {order_id}", cause=e) from e
    return ev


async def list_events(session: AsyncSession, order_id: str, event_type: str | None = None) -> List[Event]:
    stmt = select(Event).where(Event.order_id == order_id)
    if event_type:
        stmt = stmt.where(Event.event_type == event_type)
    res = await session.execute(stmt.order_by(Event.id))
    return list(res.scalars())


class UnitOfWork:
    """
    async with UnitOfWork(ctx) as uow:
        ... uow.session ...
        await uow.append(order_id, "status_changed", {...}, actor)
    # committed here, then uow.events are published
    """

    def __init__(self, ctx: OrchestratorContext, *, publish: bool = True):
        self.ctx = ctx
        self.session: AsyncSession = ctx.sessionmaker()
        self.events: List[Event] = []
        self._publish = publish

    async def __aenter__(self) -> "UnitOfWork":
        await self.session.begin()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        try:
            if exc_type is not None:
                await self.session.rollback()
                return False
            try:
                await self.session.commit()
            except SQLAlchemyError as e:
                await self.session.rollback()
                if self.events:
                    raise EventLogWriteError("commit failed; unit of work aborted", cause=e) from e
                raise
        finally:
            await self.session.close()

        if self._publish and self.events:
            await publish_events(self.ctx, [ev.snapshot() for ev in self.events])
        return False

    async def append(
        self,
        order_id: str,
        event_type: str,
        payload: Optional[Dict[str, Any]] = None,
        actor: Actor = SYSTEM,
    ) -> Event:
        ev = await append_event(self.session, order_id, event_type, payload, actor)
        self.events.append(ev)
        return ev


async def publish_events(ctx: OrchestratorContext, events: List[Dict[str, Any]]) -> None:
    """Hand committed events to the rule engine. Never fails the caller."""
    try:
        await ctx.publish(events)
    except Exception:
        logger.exception("[EVENTS] publishing %d committed event(s) failed", len(events))
