#===========================================================================
# mediaops/processing/tracker.py
# Processing Job Tracker: one external HDR-merge job per capture batch.
#
# submit() is the only path a caller waits on. It runs in three short units
# of work so no transaction is held open across the provider call:
#   1) validate + create the job `queued` + lock the batch
#   2) provider call (outside any transaction)
#   3) `queued -> running` (CAS) + order -> processing
# Callbacks may land between 1) and 3); they are matched by our job id.
#===========================================================================

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Union

from sqlalchemy import func, select, update

from mediaops.context import Actor, OrchestratorContext, PROCESSOR, SYSTEM
from mediaops.db import utcnow
from mediaops.editing.claim_queue import open_assignment, release_for_qc
from mediaops.errors import (
    BatchLocked,
    InsufficientAssets,
    InvalidTransition,
    NotFound,
    ProcessingSubmissionFailed,
    ProviderError,
    UnknownAssets,
)
from mediaops.lifecycle.event_log import UnitOfWork
from mediaops.lifecycle.state_machine import StatusStateMachine, load_order
from mediaops.models.events import EventType
from mediaops.models.orders import AssetQCStatus, CaptureAsset, CaptureBatch, OrderStatus
from mediaops.models.processing import JobStatus, ProcessingJob, ProcessingOutput
from mediaops.processing.callbacks import (
    OPEN_EDITING_ASSIGNMENT,
    RELEASE_ASSETS,
    JobState,
    reduce_callback,
)
from mediaops.processing.progress import STAGE_LABELS, advance_progress, overall_progress
from mediaops.webhooks.processing_models import ProviderCallback

logger = logging.getLogger("uvicorn.error")

_MAX_PROGRESS_ATTEMPTS = 3

# a batch with one of these jobs cannot be submitted again
_LOCKING_STATUSES = (JobStatus.QUEUED, JobStatus.RUNNING, JobStatus.COMPLETED)


async def _find_job(session, job_id: str) -> ProcessingJob:
    job = await session.get(ProcessingJob, job_id, populate_existing=True)
    if job is None:
        res = await session.execute(
            select(ProcessingJob)
            .where(ProcessingJob.provider_job_id == job_id)
            .execution_options(populate_existing=True)
        )
        job = res.scalars().first()
    if job is None:
        raise NotFound(f"processing job {job_id} not found", job_id=job_id)
    return job


async def _set_asset_status(session, asset_ids: Sequence[str], qc_status: str) -> None:
    if not asset_ids:
        return
    await session.execute(
        update(CaptureAsset)
        .where(CaptureAsset.id.in_(list(asset_ids)))
        .values(qc_status=qc_status)
        .execution_options(synchronize_session=False)
    )


class ProcessingTracker:
    def __init__(self, ctx: OrchestratorContext):
        self.ctx = ctx
        self.state_machine = StatusStateMachine(ctx)

    @property
    def integration_type(self) -> str:
        return self.ctx.settings.PROCESSING_INTEGRATION_TYPE

    # ---------------------------
    # Reads
    # ---------------------------

    async def get_job(self, job_id: str) -> Dict[str, Any]:
        async with self.ctx.sessionmaker() as session:
            job = await _find_job(session, job_id)
            res = await session.execute(
                select(ProcessingOutput).where(ProcessingOutput.job_id == job.id).order_by(ProcessingOutput.id)
            )
            snap = job.snapshot()
            snap["metrics"] = dict(job.metrics or {})
            snap["webhook_received_at"] = job.webhook_received_at.isoformat() if job.webhook_received_at else None
            snap["outputs"] = [o.snapshot() for o in res.scalars()]
            return snap

    async def list_jobs(self, *, order_id: Optional[str] = None, status: Optional[str] = None) -> List[Dict[str, Any]]:
        stmt = select(ProcessingJob).order_by(ProcessingJob.queued_at.desc())
        if order_id:
            stmt = stmt.where(ProcessingJob.order_id == order_id)
        if status:
            stmt = stmt.where(ProcessingJob.status == status)
        async with self.ctx.sessionmaker() as session:
            res = await session.execute(stmt)
            return [j.snapshot() for j in res.scalars()]

    # ---------------------------
    # Submit
    # ---------------------------

    async def submit(
        self,
        order_id: str,
        asset_ids: Sequence[str],
        actor: Actor = SYSTEM,
        options: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        ids = list(dict.fromkeys(str(a) for a in (asset_ids or [])))
        if len(ids) < 2:
            raise InsufficientAssets(
                f"an HDR merge needs at least 2 bracket assets, got {len(ids)}",
                order_id=order_id, count=len(ids),
            )

        job_id, provider_assets = await self._create_job(order_id, ids, actor)

        try:
            if self.ctx.provider is None:
                raise ProviderError("no processing provider configured")
            accepted = await self.ctx.provider.submit(job_id, provider_assets, options)
        except ProviderError as e:
            reason = e.detail
            logger.error("[TRACKER] job=%s submission failed: %s", job_id, reason)
            await self._fail_job(job_id, reason, actor, stage="submission")
            raise ProcessingSubmissionFailed(job_id, reason) from e

        return await self._mark_accepted(order_id, job_id, accepted.provider_job_id, actor)

    async def _create_job(self, order_id: str, ids: List[str], actor: Actor):
        async with UnitOfWork(self.ctx) as uow:
            session = uow.session
            order = await load_order(session, order_id)

            res = await session.execute(select(CaptureAsset).where(CaptureAsset.id.in_(ids)))
            found = {a.id: a for a in res.scalars()}
            missing = [x for x in ids if x not in found or found[x].order_id != order_id]
            if missing:
                raise UnknownAssets(f"{len(missing)} asset(s) do not belong to order {order_id}", asset_ids=missing)
            batch_ids = {a.batch_id for a in found.values()}
            if len(batch_ids) != 1:
                raise UnknownAssets("assets must come from a single capture batch", batch_ids=sorted(batch_ids))
            batch_id = batch_ids.pop()

            res = await session.execute(
                select(func.count(ProcessingJob.id)).where(
                    ProcessingJob.batch_id == batch_id,
                    ProcessingJob.status.in_(_LOCKING_STATUSES),
                )
            )
            if int(res.scalar_one()):
                raise BatchLocked(f"batch {batch_id} already has a processing job", batch_id=batch_id)

            if order.status != OrderStatus.PROCESSING and not self.state_machine.can_transition(
                order.status, OrderStatus.PROCESSING
            ):
                raise InvalidTransition(order_id, order.status, OrderStatus.PROCESSING)

            # keep capture order for the provider
            assets = sorted(found.values(), key=lambda a: a.position)
            job = ProcessingJob(
                order_id=order_id,
                batch_id=batch_id,
                status=JobStatus.QUEUED,
                asset_ids=[a.id for a in assets],
                bracket_count=len(assets),
            )
            session.add(job)

            batch = await session.get(CaptureBatch, batch_id)
            if batch.locked_at is None:
                batch.locked_at = utcnow()
            await _set_asset_status(session, job.asset_ids, AssetQCStatus.PROCESSING)
            await session.flush()

            await uow.append(order_id, EventType.PROCESSING_QUEUED, {
                "job_id": job.id,
                "batch_id": batch_id,
                "bracket_count": job.bracket_count,
                "integration_type": self.integration_type,
            }, actor)
            job_id = job.id
            provider_assets = [{"asset_id": a.id, "ref": a.ref} for a in assets]

        logger.info("[TRACKER] job=%s queued for order=%s (%d bracket(s))", job_id, order_id, len(provider_assets))
        return job_id, provider_assets

    async def _mark_accepted(self, order_id: str, job_id: str, provider_job_id: str, actor: Actor) -> Dict[str, Any]:
        async with UnitOfWork(self.ctx) as uow:
            session = uow.session
            now = utcnow()
            res = await session.execute(
                update(ProcessingJob)
                .where(ProcessingJob.id == job_id, ProcessingJob.status == JobStatus.QUEUED)
                .values(status=JobStatus.RUNNING, started_at=now, provider_job_id=provider_job_id, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount == 1:
                job = await _find_job(session, job_id)
                await uow.append(order_id, EventType.PROCESSING_STARTED, {
                    "job_id": job_id,
                    "provider_job_id": provider_job_id,
                    "integration_type": self.integration_type,
                }, actor)
            else:
                # the callback (or the timeout sweep) got here first
                job = await _find_job(session, job_id)
                if not job.provider_job_id:
                    job.provider_job_id = provider_job_id
                logger.info("[TRACKER] job=%s already %s when provider accepted it", job_id, job.status)

            if job.status == JobStatus.FAILED:
                logger.warning("[TRACKER] job=%s failed before acceptance; order=%s left as is", job_id, order_id)
            else:
                await self._drive_order_to_processing(uow, order_id, actor)
            snap = job.snapshot()

        logger.info("[TRACKER] job=%s accepted (provider=%s)", job_id, provider_job_id)
        return snap

    async def _drive_order_to_processing(self, uow: UnitOfWork, order_id: str, actor: Actor) -> None:
        order = await load_order(uow.session, order_id)
        if order.status == OrderStatus.PROCESSING:
            return
        try:
            await self.state_machine.apply(uow, order_id, OrderStatus.PROCESSING, actor, reason="processing_submitted")
        except InvalidTransition as e:
            # order moved on (e.g. cancelled) while the provider call was in flight
            logger.warning("[TRACKER] order=%s not moved to processing: %s", order_id, e.detail)

    async def _fail_job(self, job_id: str, reason: str, actor: Actor, *, stage: str) -> bool:
        async with UnitOfWork(self.ctx) as uow:
            session = uow.session
            now = utcnow()
            res = await session.execute(
                update(ProcessingJob)
                .where(ProcessingJob.id == job_id, ProcessingJob.status.in_(list(JobStatus.IN_FLIGHT)))
                .values(status=JobStatus.FAILED, error_message=reason, completed_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                return False
            job = await _find_job(session, job_id)
            await _set_asset_status(session, job.asset_ids, AssetQCStatus.PENDING)
            await uow.append(job.order_id, EventType.PROCESSING_FAILED, {
                "job_id": job.id,
                "batch_id": job.batch_id,
                "provider_job_id": job.provider_job_id,
                "integration_type": self.integration_type,
                "error_message": reason,
                "stage": stage,
            }, actor)
            # work already waiting for QC may have been held back by this job
            await release_for_qc(
                uow, self.state_machine, job.order_id, actor, reason="processing_failed", require_pending_qc=True,
            )
        return True

    # ---------------------------
    # Callbacks
    # ---------------------------

    async def on_callback(self, payload: Union[ProviderCallback, Dict[str, Any]]) -> Dict[str, Any]:
        """
        Apply a provider callback. Returns {"duplicate": bool, "job": snapshot}.
        A callback for a job that is already completed/failed changes nothing.
        """
        cb = payload if isinstance(payload, ProviderCallback) else ProviderCallback.model_validate(payload)

        async with UnitOfWork(self.ctx) as uow:
            session = uow.session
            job = await _find_job(session, cb.job_id)
            now = utcnow()
            outcome = reduce_callback(JobState.from_row(job), cb, now=now, integration_type=self.integration_type)
            if outcome.duplicate:
                logger.info("[TRACKER] job=%s duplicate %s callback ignored (already %s)", job.id, cb.status, job.status)
                return {"duplicate": True, "job": job.snapshot()}

            values: Dict[str, Any] = {
                "status": outcome.status,
                "error_message": outcome.error_message,
                "completed_at": now,
                "webhook_received_at": now,
                "processing_time_ms": outcome.processing_time_ms,
                "metrics": dict(job.metrics or {}, **outcome.metrics),
                "updated_at": now,
            }
            if outcome.status == JobStatus.COMPLETED:
                values["progress_stage"] = "exporting"
                values["progress_percent"] = 100.0

            res = await session.execute(
                update(ProcessingJob)
                .where(ProcessingJob.id == job.id, ProcessingJob.status.in_(list(JobStatus.IN_FLIGHT)))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                job = await _find_job(session, job.id)
                logger.info("[TRACKER] job=%s lost callback race (now %s)", job.id, job.status)
                return {"duplicate": True, "job": job.snapshot()}

            job = await _find_job(session, job.id)
            for o in outcome.outputs:
                session.add(ProcessingOutput(job_id=job.id, **o))
            await session.flush()

            for event_type, event_payload in outcome.events:
                await uow.append(job.order_id, event_type, event_payload, PROCESSOR)

            for intent in outcome.intents:
                if intent == OPEN_EDITING_ASSIGNMENT:
                    required = [o["asset_id"] for o in outcome.outputs] or list(job.asset_ids or [])
                    await open_assignment(uow, self.ctx, job, required)
                elif intent == RELEASE_ASSETS:
                    await _set_asset_status(session, job.asset_ids, AssetQCStatus.PENDING)

            if outcome.status == JobStatus.FAILED:
                await release_for_qc(
                    uow, self.state_machine, job.order_id, PROCESSOR, reason="processing_failed", require_pending_qc=True,
                )

            snap = job.snapshot()

        logger.info("[TRACKER] job=%s %s via callback", snap["id"], snap["status"])
        return {"duplicate": False, "job": snap}

    # ---------------------------
    # Progress
    # ---------------------------

    async def apply_progress(self, job_id: str, stage: str, percent: float) -> Optional[Dict[str, Any]]:
        """Returns the job snapshot if the update was applied, None if it was dropped."""
        for attempt in range(1, _MAX_PROGRESS_ATTEMPTS + 1):
            async with UnitOfWork(self.ctx) as uow:
                session = uow.session
                job = await _find_job(session, job_id)
                if job.status in JobStatus.TERMINAL:
                    logger.debug("[TRACKER] job=%s progress after %s dropped", job.id, job.status)
                    return None
                nxt = advance_progress(job.progress_stage, job.progress_percent, stage, percent)
                if nxt is None:
                    logger.debug("[TRACKER] job=%s stale progress %s/%s dropped", job.id, stage, percent)
                    return None

                old_stage, old_pct = job.progress_stage, job.progress_percent
                res = await session.execute(
                    update(ProcessingJob)
                    .where(
                        ProcessingJob.id == job.id,
                        ProcessingJob.status.in_(list(JobStatus.IN_FLIGHT)),
                        ProcessingJob.progress_stage == old_stage,
                        ProcessingJob.progress_percent == old_pct,
                    )
                    .values(progress_stage=nxt[0], progress_percent=nxt[1], updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                if res.rowcount == 1:
                    job = await _find_job(session, job.id)
                    if nxt[0] != old_stage:
                        await uow.append(job.order_id, EventType.PROCESSING_PROGRESS, {
                            "job_id": job.id,
                            "stage": nxt[0],
                            "label": STAGE_LABELS.get(nxt[0]),
                            "percent": nxt[1],
                            "overall": overall_progress(job.status, nxt[0], nxt[1]),
                        }, PROCESSOR)
                    return job.snapshot()
            logger.debug("[TRACKER] job=%s progress race, attempt %d", job_id, attempt)
        return None

    # ---------------------------
    # Poll + timeout sweep
    # ---------------------------

    async def poll(self, job_id: str) -> Dict[str, Any]:
        """Ask the provider for the job state and feed it through the callback/progress paths."""
        async with self.ctx.sessionmaker() as session:
            job = await _find_job(session, job_id)
            our_id, provider_job_id, status = job.id, job.provider_job_id, job.status

        if status in JobStatus.TERMINAL or not provider_job_id:
            return await self.get_job(our_id)
        if self.ctx.provider is None:
            raise ProviderError("no processing provider configured")

        data = await self.ctx.provider.fetch_status(provider_job_id)
        if data["status"] in (JobStatus.COMPLETED, JobStatus.FAILED):
            await self.on_callback(ProviderCallback(
                job_id=our_id,
                status=data["status"],
                results=data.get("results") or [],
                error=data.get("error"),
                metrics=data.get("metrics") or None,
            ))
        elif data.get("stage"):
            await self.apply_progress(our_id, data["stage"], data.get("percent") or 0)
        return await self.get_job(our_id)

    async def sweep_timeouts(self, now: Optional[datetime] = None) -> List[str]:
        """Fail jobs still in flight past PROCESSING_SLA_MINUTES x PROCESSING_TIMEOUT_FACTOR."""
        now = now or utcnow()
        ceiling = now - timedelta(minutes=self.ctx.settings.processing_timeout_minutes)
        async with self.ctx.sessionmaker() as session:
            res = await session.execute(
                select(ProcessingJob.id).where(
                    ProcessingJob.status.in_(list(JobStatus.IN_FLIGHT)),
                    func.coalesce(ProcessingJob.started_at, ProcessingJob.queued_at) < ceiling,
                )
            )
            candidates = list(res.scalars())

        failed = []
        for job_id in candidates:
            if await self._fail_job(job_id, "timeout", SYSTEM, stage="timeout"):
                failed.append(job_id)
        if failed:
            logger.warning("[TRACKER] timeout sweep failed %d job(s): %s", len(failed), ", ".join(failed))
        return failed
