# mediaops/models/editing.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy import String, Integer, DateTime, Boolean, ForeignKey, Text, JSON
from sqlalchemy.orm import Mapped, mapped_column

from mediaops.db import Base, utcnow
from mediaops.models.orders import new_id, _iso


class AssignmentStatus:
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    PENDING_QC = "pending_qc"
    COMPLETED = "completed"
    NEEDS_ESCALATION = "needs_escalation"

    # still owed work before the order can be delivered
    OPEN = frozenset({PENDING, IN_PROGRESS, PENDING_QC, NEEDS_ESCALATION})


class QCOutcome:
    APPROVED = "approved"
    REJECTED = "rejected"

    ALL = (APPROVED, REJECTED)


class EditingAssignment(Base):
    __tablename__ = "editing_assignments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), index=True)
    job_id: Mapped[str] = mapped_column(ForeignKey("processing_jobs.id"), unique=True)
    batch_id: Mapped[str] = mapped_column(ForeignKey("capture_batches.id"))

    editor_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(32), default=AssignmentStatus.PENDING, index=True)
    is_rush: Mapped[bool] = mapped_column(Boolean, default=False)

    # asset ids that need an edited counterpart before submit
    required_asset_ids: Mapped[List[str]] = mapped_column(JSON, default=list)

    revision_count: Mapped[int] = mapped_column(Integer, default=0)
    max_revisions: Mapped[int] = mapped_column(Integer, default=3)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "job_id": self.job_id,
            "editor_id": self.editor_id,
            "status": self.status,
            "is_rush": bool(self.is_rush),
            "required_asset_ids": list(self.required_asset_ids or []),
            "revision_count": self.revision_count,
            "max_revisions": self.max_revisions,
            "created_at": _iso(self.created_at),
            "claimed_at": _iso(self.claimed_at),
            "submitted_at": _iso(self.submitted_at),
            "completed_at": _iso(self.completed_at),
            "archived": self.archived_at is not None,
        }


class EditedAsset(Base):
    __tablename__ = "edited_assets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    assignment_id: Mapped[str] = mapped_column(ForeignKey("editing_assignments.id"), index=True)
    asset_id: Mapped[str] = mapped_column(String(64))
    edited_url: Mapped[str] = mapped_column(Text)
    revision: Mapped[int] = mapped_column(Integer, default=0)
    superseded: Mapped[bool] = mapped_column(Boolean, default=False)
    editor_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class QCReview(Base):
    __tablename__ = "qc_reviews"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    assignment_id: Mapped[str] = mapped_column(ForeignKey("editing_assignments.id"), index=True)
    outcome: Mapped[str] = mapped_column(String(16))
    rejected_asset_ids: Mapped[List[str]] = mapped_column(JSON, default=list)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewer_id: Mapped[str] = mapped_column(String(64))
    revision: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "assignment_id": self.assignment_id,
            "outcome": self.outcome,
            "rejected_asset_ids": list(self.rejected_asset_ids or []),
            "notes": self.notes,
            "reviewer_id": self.reviewer_id,
            "revision": self.revision,
            "created_at": _iso(self.created_at),
        }
