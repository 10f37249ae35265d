# mediaops/models/orders.py
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy import String, Integer, DateTime, Boolean, ForeignKey, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from mediaops.db import Base, utcnow


def new_id() -> str:
    return str(uuid.uuid4())


class OrderStatus:
    PENDING = "pending"
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    STAGED = "staged"
    PROCESSING = "processing"
    READY_FOR_QC = "ready_for_qc"
    IN_QC = "in_qc"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    ALL = (PENDING, SCHEDULED, IN_PROGRESS, STAGED, PROCESSING, READY_FOR_QC, IN_QC, DELIVERED, CANCELLED)
    TERMINAL = frozenset({DELIVERED, CANCELLED})


class AssetQCStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    READY_FOR_QC = "ready_for_qc"
    APPROVED = "approved"
    NEEDS_EDIT = "needs_edit"


ASSET_CATEGORIES = ("exterior", "interior", "drone", "twilight", "detail", "other")


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    status: Mapped[str] = mapped_column(String(32), default=OrderStatus.PENDING, index=True)
    status_entered_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_rush: Mapped[bool] = mapped_column(Boolean, default=False)
    scheduled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # owning agent + contact snapshot used as notification recipient
    agent_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    agent_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    agent_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    agent_phone: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status,
            "status_entered_at": _iso(self.status_entered_at),
            "address": self.address,
            "is_rush": bool(self.is_rush),
            "scheduled_at": _iso(self.scheduled_at),
            "delivered_at": _iso(self.delivered_at),
            "agent_id": self.agent_id,
        }


class CaptureBatch(Base):
    __tablename__ = "capture_batches"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), index=True)
    # set when a processing job starts; the asset set is frozen from then on
    locked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    assets: Mapped[List["CaptureAsset"]] = relationship(
        back_populates="batch", order_by="CaptureAsset.position", lazy="selectin",
    )

    def snapshot(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "locked": self.locked_at is not None,
            "assets": [a.snapshot() for a in self.assets],
        }


class CaptureAsset(Base):
    __tablename__ = "capture_assets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    batch_id: Mapped[str] = mapped_column(ForeignKey("capture_batches.id"), index=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), index=True)
    ref: Mapped[str] = mapped_column(Text)  # storage key / url of the raw file
    category: Mapped[str] = mapped_column(String(32), default="other")
    position: Mapped[int] = mapped_column(Integer, default=0)
    qc_status: Mapped[str] = mapped_column(String(32), default=AssetQCStatus.PENDING)

    batch: Mapped[CaptureBatch] = relationship(back_populates="assets")

    def snapshot(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "ref": self.ref,
            "category": self.category,
            "position": self.position,
            "qc_status": self.qc_status,
        }


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None
