# mediaops/models/processing.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy import String, Integer, DateTime, Float, ForeignKey, Text, JSON, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from mediaops.db import Base, utcnow
from mediaops.models.orders import new_id, _iso


class JobStatus:
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    TERMINAL = frozenset({COMPLETED, FAILED})
    IN_FLIGHT = frozenset({QUEUED, RUNNING})


class ProcessingJob(Base):
    __tablename__ = "processing_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), index=True)
    batch_id: Mapped[str] = mapped_column(ForeignKey("capture_batches.id"), index=True)
    provider_job_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(32), default=JobStatus.QUEUED, index=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    asset_ids: Mapped[List[str]] = mapped_column(JSON, default=list)
    bracket_count: Mapped[int] = mapped_column(Integer, default=0)

    progress_stage: Mapped[str] = mapped_column(String(32), default="queued")
    progress_percent: Mapped[float] = mapped_column(Float, default=0.0)
    metrics: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)

    queued_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    processing_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    webhook_received_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    def snapshot(self) -> Dict[str, Any]:
        from mediaops.processing.progress import overall_progress

        return {
            "id": self.id,
            "order_id": self.order_id,
            "batch_id": self.batch_id,
            "provider_job_id": self.provider_job_id,
            "status": self.status,
            "error_message": self.error_message,
            "asset_ids": list(self.asset_ids or []),
            "bracket_count": self.bracket_count,
            "progress": {
                "stage": self.progress_stage,
                "percent": self.progress_percent,
                "overall": overall_progress(self.status, self.progress_stage, self.progress_percent),
            },
            "queued_at": _iso(self.queued_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "processing_time_ms": self.processing_time_ms,
        }


class ProcessingOutput(Base):
    __tablename__ = "processing_outputs"
    __table_args__ = (UniqueConstraint("job_id", "asset_id", name="uq_processing_output_asset"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(ForeignKey("processing_jobs.id"), index=True)
    asset_id: Mapped[str] = mapped_column(String(64))
    processed_url: Mapped[str] = mapped_column(Text)
    thumbnail_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "asset_id": self.asset_id,
            "processed_url": self.processed_url,
            "thumbnail_url": self.thumbnail_url,
        }
