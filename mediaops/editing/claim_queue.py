#===========================================================================
# mediaops/editing/claim_queue.py
# Editor claim queue.
#
# claim() is the one place in the system that needs real mutual exclusion:
# a single conditional UPDATE flips (status, editor_id) from
# (pending, NULL) to (in_progress, editor). Whoever gets rowcount == 1 owns
# the assignment; everyone else gets AlreadyClaimed.
#===========================================================================

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import and_, func, or_, select, update

from mediaops.context import Actor, OrchestratorContext
from mediaops.db import utcnow
from mediaops.errors import (
    AlreadyClaimed,
    IncompleteEdit,
    InvalidAssignmentState,
    NotFound,
    UnknownAssets,
    WorkloadExceeded,
)
from mediaops.lifecycle.event_log import UnitOfWork
from mediaops.lifecycle.state_machine import StatusStateMachine, load_order
from mediaops.models.editing import AssignmentStatus, EditedAsset, EditingAssignment
from mediaops.models.events import EventType
from mediaops.models.orders import AssetQCStatus, CaptureAsset, OrderStatus
from mediaops.models.processing import JobStatus, ProcessingJob

logger = logging.getLogger("uvicorn.error")


async def load_assignment(session, assignment_id: str) -> EditingAssignment:
    a = await session.get(EditingAssignment, assignment_id, populate_existing=True)
    if a is None:
        raise NotFound(f"assignment {assignment_id} not found", assignment_id=assignment_id)
    return a


async def open_assignment(
    uow: UnitOfWork,
    ctx: OrchestratorContext,
    job: ProcessingJob,
    required_asset_ids: Sequence[str],
) -> EditingAssignment:
    """Called by the processing tracker when a job completes."""
    session = uow.session
    order = await load_order(session, job.order_id)
    a = EditingAssignment(
        order_id=job.order_id,
        job_id=job.id,
        batch_id=job.batch_id,
        status=AssignmentStatus.PENDING,
        is_rush=bool(order.is_rush),
        required_asset_ids=list(required_asset_ids),
        revision_count=0,
        max_revisions=ctx.settings.QC_MAX_REVISIONS,
    )
    session.add(a)
    await session.flush()
    await uow.append(job.order_id, EventType.ASSIGNMENT_CREATED, {
        "assignment_id": a.id,
        "job_id": job.id,
        "asset_count": len(a.required_asset_ids),
        "is_rush": a.is_rush,
    })
    logger.info("[QUEUE] assignment=%s opened for order=%s (%d asset(s))", a.id, job.order_id, len(a.required_asset_ids))
    return a


async def release_for_qc(
    uow: UnitOfWork,
    state_machine: StatusStateMachine,
    order_id: str,
    actor: Actor,
    *,
    reason: str,
    require_pending_qc: bool = False,
) -> bool:
    """processing -> ready_for_qc once no editing or processing work is left for the order."""
    session = uow.session
    order = await load_order(session, order_id)
    if order.status != OrderStatus.PROCESSING:
        return False

    if require_pending_qc:
        res = await session.execute(
            select(func.count(EditingAssignment.id)).where(
                EditingAssignment.order_id == order_id,
                EditingAssignment.status == AssignmentStatus.PENDING_QC,
            )
        )
        if not int(res.scalar_one()):
            return False

    res = await session.execute(
        select(func.count(EditingAssignment.id)).where(
            EditingAssignment.order_id == order_id,
            EditingAssignment.status.in_([AssignmentStatus.PENDING, AssignmentStatus.IN_PROGRESS]),
        )
    )
    open_edits = int(res.scalar_one())
    res = await session.execute(
        select(func.count(ProcessingJob.id)).where(
            and_(ProcessingJob.order_id == order_id, ProcessingJob.status.in_(list(JobStatus.IN_FLIGHT)))
        )
    )
    in_flight = int(res.scalar_one())
    if open_edits or in_flight:
        logger.info(
            "[QUEUE] order=%s stays in processing (%d open edit(s), %d job(s) in flight)",
            order_id, open_edits, in_flight,
        )
        return False
    await state_machine.apply(uow, order_id, OrderStatus.READY_FOR_QC, actor, reason=reason)
    return True


class EditorClaimQueue:
    def __init__(self, ctx: OrchestratorContext):
        self.ctx = ctx
        self.state_machine = StatusStateMachine(ctx)

    # ---------------------------
    # Reads
    # ---------------------------

    async def get(self, assignment_id: str) -> Dict[str, Any]:
        async with self.ctx.sessionmaker() as session:
            return (await load_assignment(session, assignment_id)).snapshot()

    async def list_queue(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Unclaimed work: rush first, then oldest first."""
        stmt = (
            select(EditingAssignment)
            .where(
                EditingAssignment.status == AssignmentStatus.PENDING,
                EditingAssignment.editor_id.is_(None),
            )
            .order_by(EditingAssignment.is_rush.desc(), EditingAssignment.created_at.asc(), EditingAssignment.id)
        )
        if limit:
            stmt = stmt.limit(limit)
        async with self.ctx.sessionmaker() as session:
            res = await session.execute(stmt)
            return [a.snapshot() for a in res.scalars()]

    async def list_for_editor(self, editor_id: str) -> List[Dict[str, Any]]:
        """Claimed work plus revisions pre-assigned back to this editor."""
        stmt = (
            select(EditingAssignment)
            .where(
                EditingAssignment.editor_id == editor_id,
                EditingAssignment.status.in_([AssignmentStatus.PENDING, AssignmentStatus.IN_PROGRESS]),
            )
            .order_by(EditingAssignment.is_rush.desc(), EditingAssignment.created_at.asc())
        )
        async with self.ctx.sessionmaker() as session:
            res = await session.execute(stmt)
            return [a.snapshot() for a in res.scalars()]

    async def workload(self, editor_id: str) -> int:
        async with self.ctx.sessionmaker() as session:
            return await self._count_in_progress(session, editor_id)

    # ---------------------------
    # Claim
    # ---------------------------

    async def claim(self, assignment_id: str, editor_id: str, *, override: bool = False) -> Dict[str, Any]:
        """
        Raises AlreadyClaimed if someone else holds (or just won) the row and
        WorkloadExceeded if the editor is at the cap. `override` is for
        administrators and skips the workload cap only.
        """
        actor = Actor("editor", editor_id)
        async with UnitOfWork(self.ctx) as uow:
            session = uow.session
            a = await load_assignment(session, assignment_id)
            if a.status != AssignmentStatus.PENDING or (a.editor_id and a.editor_id != editor_id):
                raise AlreadyClaimed(
                    f"assignment {assignment_id} is not claimable ({a.status}, editor={a.editor_id})",
                    assignment_id=assignment_id,
                )

            cap = self.ctx.settings.EDITOR_WORKLOAD_CAP
            if not override:
                held = await self._count_in_progress(session, editor_id)
                if held >= cap:
                    raise WorkloadExceeded(
                        f"editor {editor_id} already holds {held} assignment(s) (cap {cap})",
                        editor_id=editor_id, held=held, cap=cap,
                    )

            res = await session.execute(
                update(EditingAssignment)
                .where(
                    EditingAssignment.id == assignment_id,
                    EditingAssignment.status == AssignmentStatus.PENDING,
                    # revisions come back pre-assigned; only that editor may take them
                    or_(EditingAssignment.editor_id.is_(None), EditingAssignment.editor_id == editor_id),
                )
                .values(status=AssignmentStatus.IN_PROGRESS, editor_id=editor_id, claimed_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                raise AlreadyClaimed(f"assignment {assignment_id} was claimed concurrently", assignment_id=assignment_id)

            a = await load_assignment(session, assignment_id)
            await uow.append(a.order_id, EventType.ASSIGNMENT_CLAIMED, {
                "assignment_id": a.id,
                "editor_id": editor_id,
                "revision": a.revision_count,
                "override": override,
            }, actor)
            snap = a.snapshot()
        logger.info("[QUEUE] assignment=%s claimed by %s%s", assignment_id, editor_id, " (override)" if override else "")
        return snap

    # ---------------------------
    # Edits + submit
    # ---------------------------

    async def record_edit(self, assignment_id: str, asset_id: str, edited_url: str, editor_id: str) -> Dict[str, Any]:
        async with self.ctx.sessionmaker() as session, session.begin():
            a = await load_assignment(session, assignment_id)
            self._require_owner(a, editor_id)
            if asset_id not in (a.required_asset_ids or []):
                raise UnknownAssets(f"asset {asset_id} is not part of assignment {assignment_id}", asset_id=asset_id)

            await session.execute(
                update(EditedAsset)
                .where(
                    EditedAsset.assignment_id == assignment_id,
                    EditedAsset.asset_id == asset_id,
                    EditedAsset.superseded.is_(False),
                )
                .values(superseded=True)
                .execution_options(synchronize_session=False)
            )
            session.add(EditedAsset(
                assignment_id=assignment_id,
                asset_id=asset_id,
                edited_url=edited_url,
                revision=a.revision_count,
                editor_id=editor_id,
            ))
        return {"assignment_id": assignment_id, "asset_id": asset_id, "edited_url": edited_url, "revision": a.revision_count}

    async def submit(self, assignment_id: str, editor_id: str) -> Dict[str, Any]:
        actor = Actor("editor", editor_id)
        async with UnitOfWork(self.ctx) as uow:
            session = uow.session
            a = await load_assignment(session, assignment_id)
            self._require_owner(a, editor_id)

            res = await session.execute(
                select(EditedAsset.asset_id).where(
                    EditedAsset.assignment_id == assignment_id,
                    EditedAsset.superseded.is_(False),
                )
            )
            edited = set(res.scalars())
            missing = [x for x in (a.required_asset_ids or []) if x not in edited]
            if missing:
                raise IncompleteEdit(
                    f"assignment {assignment_id} is missing {len(missing)} edited asset(s)",
                    missing_asset_ids=missing,
                )

            res = await session.execute(
                update(EditingAssignment)
                .where(EditingAssignment.id == assignment_id, EditingAssignment.status == AssignmentStatus.IN_PROGRESS)
                .values(status=AssignmentStatus.PENDING_QC, submitted_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                raise InvalidAssignmentState(f"assignment {assignment_id} changed while submitting")

            await session.execute(
                update(CaptureAsset)
                .where(CaptureAsset.id.in_(list(a.required_asset_ids or [])))
                .values(qc_status=AssetQCStatus.READY_FOR_QC)
                .execution_options(synchronize_session=False)
            )

            a = await load_assignment(session, assignment_id)
            await uow.append(a.order_id, EventType.ASSIGNMENT_SUBMITTED, {
                "assignment_id": a.id,
                "editor_id": editor_id,
                "revision": a.revision_count,
            }, actor)
            await release_for_qc(uow, self.state_machine, a.order_id, actor, reason="editing_submitted")
            snap = a.snapshot()
        logger.info("[QUEUE] assignment=%s submitted for QC by %s", assignment_id, editor_id)
        return snap

    # ---------------------------
    # Helpers
    # ---------------------------

    def _require_owner(self, a: EditingAssignment, editor_id: str) -> None:
        if a.status != AssignmentStatus.IN_PROGRESS:
            raise InvalidAssignmentState(f"assignment {a.id} is {a.status}, not in_progress", assignment_id=a.id)
        if a.editor_id != editor_id:
            raise InvalidAssignmentState(f"assignment {a.id} is held by another editor", assignment_id=a.id)

    async def _count_in_progress(self, session, editor_id: str) -> int:
        res = await session.execute(
            select(func.count(EditingAssignment.id)).where(
                EditingAssignment.editor_id == editor_id,
                EditingAssignment.status == AssignmentStatus.IN_PROGRESS,
            )
        )
        return int(res.scalar_one())
