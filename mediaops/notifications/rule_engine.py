#===========================================================================
# mediaops/notifications/rule_engine.py
# Notification Rule Engine.
#
# Sees committed events only (published by the unit of work after commit)
# plus a periodic time-delay sweep. Every firing is claimed by inserting a
# RuleFiring marker first; a unique violation means someone already fired
# it, so replays and overlapping sweeps never dispatch twice.
# Dispatch is best-effort and happens after the marker commits.
#===========================================================================

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from mediaops.context import OrchestratorContext
from mediaops.db import utcnow
from mediaops.errors import DispatchFailed, InvalidRule, NotFound
from mediaops.models.events import EventType
from mediaops.models.notifications import NotificationRule, RuleFiring
from mediaops.models.orders import Order, OrderStatus
from mediaops.notifications.triggers import (
    AUDIENCES,
    CHANNELS,
    TRIGGER_TYPES,
    TimeDelayTrigger,
    dump_trigger,
    parse_trigger,
)

logger = logging.getLogger("uvicorn.error")

# event types any event-driven trigger can match
_EVENT_TRIGGERS = {
    EventType.STATUS_CHANGED: ("status_change",),
    EventType.PROCESSING_COMPLETED: ("integration_complete",),
    EventType.PROCESSING_FAILED: ("integration_failed",),
    EventType.QC_ESCALATED: ("escalation",),
}


def _normalize_channels(channels: Iterable[str]) -> List[str]:
    out = list(dict.fromkeys(str(c).strip().lower() for c in (channels or []) if str(c).strip()))
    if not out:
        raise InvalidRule("a rule needs at least one channel")
    bad = [c for c in out if c not in CHANNELS]
    if bad:
        raise InvalidRule(f"unsupported channel(s): {', '.join(bad)}", channels=bad)
    return out


def _normalize_audience(audience: Optional[str]) -> str:
    a = (audience or "agent").strip().lower()
    if a not in AUDIENCES:
        raise InvalidRule(f"unsupported audience {a!r}")
    return a


class NotificationRuleEngine:
    def __init__(self, ctx: OrchestratorContext):
        self.ctx = ctx

    # ---------------------------
    # Rule admin
    # ---------------------------

    async def list_rules(self, *, active: Optional[bool] = None, trigger_type: Optional[str] = None) -> List[Dict[str, Any]]:
        stmt = select(NotificationRule).order_by(NotificationRule.created_at)
        if active is not None:
            stmt = stmt.where(NotificationRule.is_active.is_(active))
        if trigger_type:
            stmt = stmt.where(NotificationRule.trigger_type == trigger_type)
        async with self.ctx.sessionmaker() as session:
            res = await session.execute(stmt)
            return [r.snapshot() for r in res.scalars()]

    async def get_rule(self, rule_id: str) -> Dict[str, Any]:
        async with self.ctx.sessionmaker() as session:
            rule = await session.get(NotificationRule, rule_id)
            if rule is None:
                raise NotFound(f"rule {rule_id} not found", rule_id=rule_id)
            return rule.snapshot()

    async def create_rule(
        self,
        *,
        name: str,
        trigger_type: str,
        channels: Iterable[str],
        trigger_conditions: Optional[Dict[str, Any]] = None,
        template_id: Optional[str] = None,
        description: Optional[str] = None,
        audience: str = "agent",
        is_active: bool = True,
    ) -> Dict[str, Any]:
        if not (name or "").strip():
            raise InvalidRule("a rule needs a name")
        if trigger_type not in TRIGGER_TYPES:
            raise InvalidRule(f"unknown trigger_type {trigger_type!r}")
        trigger = parse_trigger(trigger_type, trigger_conditions)
        rule = NotificationRule(
            name=name.strip(),
            description=description,
            trigger_type=trigger_type,
            trigger_conditions=dump_trigger(trigger),
            channels=_normalize_channels(channels),
            template_id=template_id,
            audience=_normalize_audience(audience),
            is_active=bool(is_active),
        )
        async with self.ctx.sessionmaker() as session, session.begin():
            session.add(rule)
        logger.info("[RULES] rule=%s created (%s, %s)", rule.id, rule.name, trigger_type)
        return rule.snapshot()

    async def update_rule(self, rule_id: str, **changes: Any) -> Dict[str, Any]:
        """Partial update; trigger_type/trigger_conditions are re-validated together."""
        async with self.ctx.sessionmaker() as session, session.begin():
            rule = await session.get(NotificationRule, rule_id)
            if rule is None:
                raise NotFound(f"rule {rule_id} not found", rule_id=rule_id)

            if "trigger_type" in changes or "trigger_conditions" in changes:
                trigger_type = changes.get("trigger_type") or rule.trigger_type
                if trigger_type not in TRIGGER_TYPES:
                    raise InvalidRule(f"unknown trigger_type {trigger_type!r}")
                if "trigger_conditions" in changes:
                    conditions = changes.get("trigger_conditions")
                else:
                    conditions = {k: v for k, v in (rule.trigger_conditions or {}).items() if k != "trigger_type"}
                rule.trigger_type = trigger_type
                rule.trigger_conditions = dump_trigger(parse_trigger(trigger_type, conditions))
            if "name" in changes:
                if not (changes["name"] or "").strip():
                    raise InvalidRule("a rule needs a name")
                rule.name = changes["name"].strip()
            if "description" in changes:
                rule.description = changes["description"]
            if "channels" in changes:
                rule.channels = _normalize_channels(changes["channels"])
            if "template_id" in changes:
                rule.template_id = changes["template_id"]
            if "audience" in changes:
                rule.audience = _normalize_audience(changes["audience"])
            if "is_active" in changes:
                rule.is_active = bool(changes["is_active"])
            rule.updated_at = utcnow()
            await session.flush()
            snap = rule.snapshot()
        logger.info("[RULES] rule=%s updated (%s)", rule_id, ", ".join(sorted(changes)))
        return snap

    async def rule_stats(self) -> Dict[str, Dict[str, int]]:
        """Per trigger type: rule counts and how often they fired."""
        stats = {t: {"rules": 0, "active": 0, "firings": 0, "dispatched": 0, "failed": 0} for t in TRIGGER_TYPES}
        async with self.ctx.sessionmaker() as session:
            res = await session.execute(
                select(NotificationRule.trigger_type, NotificationRule.is_active, func.count(NotificationRule.id))
                .group_by(NotificationRule.trigger_type, NotificationRule.is_active)
            )
            for trigger_type, is_active, n in res.all():
                row = stats.setdefault(trigger_type, {"rules": 0, "active": 0, "firings": 0, "dispatched": 0, "failed": 0})
                row["rules"] += n
                if is_active:
                    row["active"] += n
            res = await session.execute(
                select(
                    NotificationRule.trigger_type,
                    func.count(RuleFiring.id),
                    func.coalesce(func.sum(RuleFiring.dispatched), 0),
                    func.coalesce(func.sum(RuleFiring.failed), 0),
                )
                .join(RuleFiring, RuleFiring.rule_id == NotificationRule.id)
                .group_by(NotificationRule.trigger_type)
            )
            for trigger_type, firings, dispatched, failed in res.all():
                row = stats[trigger_type]
                row["firings"] = int(firings)
                row["dispatched"] = int(dispatched)
                row["failed"] = int(failed)
        return stats

    # ---------------------------
    # Event evaluation
    # ---------------------------

    async def evaluate_events(self, events: Iterable[Dict[str, Any]]) -> int:
        fired = 0
        for ev in events:
            fired += await self.evaluate_event(ev)
        return fired

    async def evaluate_event(self, event: Dict[str, Any]) -> int:
        """Returns how many rules fired for this event (0 on replay)."""
        trigger_types = _EVENT_TRIGGERS.get(event.get("event_type"))
        if not trigger_types:
            return 0

        rules = await self._active_rules(trigger_types)
        matched = [(rule, trig) for rule, trig in rules if trig.matches(event)]
        if not matched:
            return 0

        order = await self._order(event["order_id"])
        if order is None:
            return 0
        if order["status"] == OrderStatus.CANCELLED and not self._is_cancellation(event):
            logger.info("[RULES] order=%s is cancelled; %s ignored", order["id"], event.get("event_type"))
            return 0

        fired = 0
        for rule, _trig in matched:
            variables = self._variables(rule, order, event)
            if await self._fire(rule, f"event:{event['id']}", order, event.get("id"), variables):
                fired += 1
        return fired

    @staticmethod
    def _is_cancellation(event: Dict[str, Any]) -> bool:
        return (
            event.get("event_type") == EventType.STATUS_CHANGED
            and (event.get("payload") or {}).get("to_status") == OrderStatus.CANCELLED
        )

    # ---------------------------
    # Time-delay sweep
    # ---------------------------

    async def sweep_time_delays(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        rules = await self._active_rules(("time_delay",))
        fired = 0
        for rule, trig in rules:
            for order in await self._due_orders(rule["id"], trig, now):
                entered = order["status_entered_at"]
                key = f"entry:{order['id']}:{order['status']}:{entered}"
                variables = self._variables(rule, order, None)
                variables["delay_minutes"] = trig.delay_minutes
                if await self._fire(rule, key, order, None, variables):
                    fired += 1
        if fired:
            logger.info("[RULES] time-delay sweep fired %d rule(s)", fired)
        return fired

    async def _due_orders(self, rule_id: str, trig: TimeDelayTrigger, now: datetime) -> List[Dict[str, Any]]:
        cutoff = now - timedelta(minutes=trig.delay_minutes)
        already = (
            select(RuleFiring.id)
            .where(
                RuleFiring.rule_id == rule_id,
                RuleFiring.order_id == Order.id,
                RuleFiring.created_at >= Order.status_entered_at,
            )
            .exists()
        )
        stmt = select(Order).where(Order.status_entered_at <= cutoff, ~already)
        if trig.status:
            stmt = stmt.where(Order.status == trig.status)
        else:
            stmt = stmt.where(Order.status != OrderStatus.CANCELLED)
        async with self.ctx.sessionmaker() as session:
            res = await session.execute(stmt)
            return [self._order_view(o) for o in res.scalars()]

    # ---------------------------
    # Firing + dispatch
    # ---------------------------

    async def _fire(
        self,
        rule: Dict[str, Any],
        dedupe_key: str,
        order: Dict[str, Any],
        event_id: Optional[int],
        variables: Dict[str, Any],
    ) -> bool:
        async with self.ctx.sessionmaker() as session:
            firing = RuleFiring(rule_id=rule["id"], dedupe_key=dedupe_key, order_id=order["id"], event_id=event_id)
            try:
                async with session.begin():
                    session.add(firing)
            except IntegrityError:
                logger.debug("[RULES] rule=%s already fired for %s", rule["id"], dedupe_key)
                return False
            firing_id = firing.id

        dispatched, failed, last_error = await self._dispatch(rule, order, variables)

        async with self.ctx.sessionmaker() as session, session.begin():
            await session.execute(
                update(RuleFiring)
                .where(RuleFiring.id == firing_id)
                .values(dispatched=dispatched, failed=failed, last_error=last_error)
            )
        logger.info(
            "[RULES] rule=%s fired for order=%s (%s): %d sent, %d failed",
            rule["id"], order["id"], dedupe_key, dispatched, failed,
        )
        return True

    async def _dispatch(self, rule: Dict[str, Any], order: Dict[str, Any], variables: Dict[str, Any]) -> Tuple[int, int, Optional[str]]:
        dispatched, failed, last_error = 0, 0, None
        if self.ctx.messenger is None:
            logger.warning("[RULES] no messenger configured; rule=%s not delivered", rule["id"])
            return 0, len(rule["channels"]), "no messenger configured"

        template_id = rule.get("template_id") or rule["trigger_type"]
        for channel in rule["channels"]:
            recipient = self._recipient(rule.get("audience") or "agent", channel, order)
            if not recipient:
                logger.warning("[RULES] rule=%s order=%s: no %s recipient, skipped", rule["id"], order["id"], channel)
                continue
            try:
                await self.ctx.messenger.dispatch(channel, recipient, template_id, variables)
                dispatched += 1
            except DispatchFailed as e:
                failed += 1
                last_error = e.detail
                logger.error("[RULES] rule=%s %s dispatch failed: %s", rule["id"], channel, e.detail)
        return dispatched, failed, last_error

    def _recipient(self, audience: str, channel: str, order: Dict[str, Any]) -> Optional[str]:
        if audience == "operations":
            return self.ctx.settings.OPS_EMAIL if channel == "email" else self.ctx.settings.OPS_PHONE
        return order.get("agent_email") if channel == "email" else order.get("agent_phone")

    @staticmethod
    def _variables(rule: Dict[str, Any], order: Dict[str, Any], event: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "rule_name": rule["name"],
            "order_id": order["id"],
            "address": order.get("address"),
            "agent_name": order.get("agent_name"),
            "status": order["status"],
            "is_rush": order.get("is_rush"),
        }
        if event is not None:
            out["event_type"] = event.get("event_type")
            out.update({k: v for k, v in (event.get("payload") or {}).items() if k not in out})
        return out

    # ---------------------------
    # Loading
    # ---------------------------

    async def _active_rules(self, trigger_types: Iterable[str]) -> List[Tuple[Dict[str, Any], Any]]:
        async with self.ctx.sessionmaker() as session:
            res = await session.execute(
                select(NotificationRule)
                .where(NotificationRule.is_active.is_(True), NotificationRule.trigger_type.in_(list(trigger_types)))
                .order_by(NotificationRule.created_at)
            )
            rows = list(res.scalars())

        out = []
        for r in rows:
            snap = r.snapshot()
            try:
                trig = parse_trigger(r.trigger_type, snap["trigger_conditions"])
            except InvalidRule as e:
                logger.error("[RULES] rule=%s has invalid conditions, skipped: %s", r.id, e.context)
                continue
            out.append((snap, trig))
        return out

    async def _order(self, order_id: str) -> Optional[Dict[str, Any]]:
        async with self.ctx.sessionmaker() as session:
            order = await session.get(Order, order_id)
            return self._order_view(order) if order is not None else None

    @staticmethod
    def _order_view(order: Order) -> Dict[str, Any]:
        return {
            "id": order.id,
            "status": order.status,
            "status_entered_at": order.status_entered_at.isoformat() if order.status_entered_at else None,
            "address": order.address,
            "is_rush": bool(order.is_rush),
            "agent_name": order.agent_name,
            "agent_email": order.agent_email,
            "agent_phone": order.agent_phone,
        }
