#===========================================================================
# mediaops/processing/callbacks.py
# Provider callback handling as a pure function:
#
#   (current job state, incoming payload) -> (new state, events, intents)
#
# No I/O happens here; tracker.py applies the outcome inside a unit of
# work. Keeping it pure makes idempotence and ordering testable without
# a live provider.
#===========================================================================

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from mediaops.models.events import EventType
from mediaops.models.processing import JobStatus
from mediaops.webhooks.processing_models import ProviderCallback

# side-effect intents the tracker knows how to carry out
OPEN_EDITING_ASSIGNMENT = "open_editing_assignment"
RELEASE_ASSETS = "release_assets"


@dataclass(frozen=True)
class JobState:
    id: str
    order_id: str
    batch_id: str
    status: str
    asset_ids: Tuple[str, ...] = ()
    provider_job_id: Optional[str] = None
    queued_at: Optional[datetime] = None
    started_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, job) -> "JobState":
        return cls(
            id=job.id,
            order_id=job.order_id,
            batch_id=job.batch_id,
            status=job.status,
            asset_ids=tuple(job.asset_ids or ()),
            provider_job_id=job.provider_job_id,
            queued_at=job.queued_at,
            started_at=job.started_at,
        )


@dataclass
class CallbackOutcome:
    duplicate: bool
    status: str
    error_message: Optional[str] = None
    outputs: List[Dict[str, Any]] = field(default_factory=list)
    events: List[Tuple[str, Dict[str, Any]]] = field(default_factory=list)
    intents: List[str] = field(default_factory=list)
    processing_time_ms: Optional[int] = None
    metrics: Dict[str, Any] = field(default_factory=dict)


def reduce_callback(
    job: JobState,
    callback: ProviderCallback,
    *,
    now: datetime,
    integration_type: str = "hdr",
) -> CallbackOutcome:
    # Duplicate detection is by job id + terminal status, never by payload:
    # providers resend identical payloads and late ones after a timeout.
    if job.status in JobStatus.TERMINAL:
        return CallbackOutcome(duplicate=True, status=job.status)

    started = job.started_at or job.queued_at
    elapsed_ms = int((now - started).total_seconds() * 1000) if started else None
    base = {
        "job_id": job.id,
        "batch_id": job.batch_id,
        "provider_job_id": job.provider_job_id,
        "integration_type": integration_type,
    }

    if callback.status == JobStatus.COMPLETED:
        outputs: List[Dict[str, Any]] = []
        seen = set()
        for r in callback.results:
            if r.asset_id in seen:
                continue
            seen.add(r.asset_id)
            outputs.append({
                "asset_id": r.asset_id,
                "processed_url": r.processed_url,
                "thumbnail_url": r.thumbnail_url,
            })
        payload = dict(base, output_count=len(outputs), processing_time_ms=elapsed_ms)
        return CallbackOutcome(
            duplicate=False,
            status=JobStatus.COMPLETED,
            outputs=outputs,
            events=[(EventType.PROCESSING_COMPLETED, payload)],
            intents=[OPEN_EDITING_ASSIGNMENT],
            processing_time_ms=elapsed_ms,
            metrics=dict(callback.metrics or {}),
        )

    error = (callback.error or "").strip() or "provider reported failure"
    payload = dict(base, error_message=error)
    return CallbackOutcome(
        duplicate=False,
        status=JobStatus.FAILED,
        error_message=error,
        events=[(EventType.PROCESSING_FAILED, payload)],
        intents=[RELEASE_ASSETS],
        processing_time_ms=elapsed_ms,
        metrics=dict(callback.metrics or {}),
    )
