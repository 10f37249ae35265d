# mediaops/models/notifications.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy import String, Integer, DateTime, Boolean, Text, JSON, UniqueConstraint, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column

from mediaops.db import Base, utcnow
from mediaops.models.orders import new_id, _iso


class NotificationRule(Base):
    __tablename__ = "notification_rules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    trigger_type: Mapped[str] = mapped_column(String(32), index=True)
    # stored as the tagged payload (trigger_type included); see notifications/triggers.py
    trigger_conditions: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    channels: Mapped[List[str]] = mapped_column(JSON, default=list)
    template_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    audience: Mapped[str] = mapped_column(String(32), default="agent")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    def snapshot(self) -> Dict[str, Any]:
        conditions = {k: v for k, v in (self.trigger_conditions or {}).items() if k != "trigger_type"}
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "trigger_type": self.trigger_type,
            "trigger_conditions": conditions,
            "channels": list(self.channels or []),
            "template_id": self.template_id,
            "audience": self.audience,
            "is_active": bool(self.is_active),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class RuleFiring(Base):
    """
    Dedupe marker. The insert is the claim: whoever inserts (rule_id, dedupe_key)
    first is the only one allowed to dispatch.
      event rules:      dedupe_key = "event:<event_id>"
      time-delay rules: dedupe_key = "entry:<order_id>:<status>:<status_entered_at>"
    """

    __tablename__ = "rule_firings"
    __table_args__ = (UniqueConstraint("rule_id", "dedupe_key", name="uq_rule_firing"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    rule_id: Mapped[str] = mapped_column(ForeignKey("notification_rules.id"), index=True)
    dedupe_key: Mapped[str] = mapped_column(String(255))
    order_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    event_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    dispatched: Mapped[int] = mapped_column(Integer, default=0)
    failed: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
