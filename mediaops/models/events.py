# mediaops/models/events.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict

from sqlalchemy import String, Integer, DateTime, ForeignKey, JSON, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from mediaops.db import Base, utcnow
from mediaops.models.orders import _iso


class EventType:
    ORDER_CREATED = "order.created"
    STATUS_CHANGED = "status_changed"
    BATCH_REGISTERED = "batch.registered"
    PROCESSING_QUEUED = "processing.queued"
    PROCESSING_STARTED = "processing.started"
    PROCESSING_PROGRESS = "processing.progress"
    PROCESSING_COMPLETED = "processing.completed"
    PROCESSING_FAILED = "processing.failed"
    ASSIGNMENT_CREATED = "assignment.created"
    ASSIGNMENT_CLAIMED = "assignment.claimed"
    ASSIGNMENT_SUBMITTED = "assignment.submitted"
    QC_APPROVED = "qc.approved"
    QC_REJECTED = "qc.rejected"
    QC_ESCALATED = "qc.escalated"


class Event(Base):
    """Append-only. Rows are inserted, never updated or deleted."""

    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), index=True)
    event_type: Mapped[str] = mapped_column(String(64), index=True)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    actor_type: Mapped[str] = mapped_column(String(32), default="system")
    actor_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "event_type": self.event_type,
            "payload": dict(self.payload or {}),
            "actor_type": self.actor_type,
            "actor_id": self.actor_id,
            "created_at": _iso(self.created_at),
        }


class TransitionRequest(Base):
    """Idempotency record for status transitions re-submitted by callers."""

    __tablename__ = "transition_requests"
    __table_args__ = (
        UniqueConstraint("order_id", "target_status", "idempotency_key", name="uq_transition_request"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"))
    target_status: Mapped[str] = mapped_column(String(32))
    idempotency_key: Mapped[str] = mapped_column(String(128))
    event_id: Mapped[int | None] = mapped_column(ForeignKey("events.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
