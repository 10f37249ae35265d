#===========================================================================
# mediaops/editing/qc_review.py
# QC review + bounded revision loop.
#
#   approved  -> assignment completed; last open assignment delivers the order
#   rejected  -> revision_count += 1
#                < max_revisions : back to the same editor as `pending`,
#                                  order steps in_qc -> processing
#                >= max_revisions: needs_escalation (never requeued)
#===========================================================================

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import func, select, update

from mediaops.context import Actor, OrchestratorContext
from mediaops.db import utcnow
from mediaops.editing.claim_queue import load_assignment
from mediaops.errors import InvalidAssignmentState, InvalidReview, InvalidTransition, UnknownAssets
from mediaops.lifecycle.event_log import UnitOfWork
from mediaops.lifecycle.state_machine import StatusStateMachine, load_order
from mediaops.models.editing import AssignmentStatus, EditedAsset, EditingAssignment, QCOutcome, QCReview
from mediaops.models.events import EventType
from mediaops.models.orders import AssetQCStatus, CaptureAsset, OrderStatus
from mediaops.models.processing import JobStatus, ProcessingJob

logger = logging.getLogger("uvicorn.error")


async def _set_asset_status(session, asset_ids: Sequence[str], qc_status: str) -> None:
    if not asset_ids:
        return
    await session.execute(
        update(CaptureAsset)
        .where(CaptureAsset.id.in_(list(asset_ids)))
        .values(qc_status=qc_status)
        .execution_options(synchronize_session=False)
    )


class QCReviewLoop:
    def __init__(self, ctx: OrchestratorContext):
        self.ctx = ctx
        self.state_machine = StatusStateMachine(ctx)

    async def start_review(self, assignment_id: str, reviewer_id: str) -> Dict[str, Any]:
        """Reviewer picks up a pending_qc assignment; order ready_for_qc -> in_qc."""
        actor = Actor("reviewer", reviewer_id)
        async with UnitOfWork(self.ctx) as uow:
            a = await load_assignment(uow.session, assignment_id)
            if a.status != AssignmentStatus.PENDING_QC:
                raise InvalidAssignmentState(f"assignment {assignment_id} is {a.status}, not pending_qc")
            order = await load_order(uow.session, a.order_id)
            if order.status == OrderStatus.READY_FOR_QC:
                order = await self.state_machine.apply(uow, a.order_id, OrderStatus.IN_QC, actor, reason="qc_started")
            elif order.status != OrderStatus.IN_QC:
                raise InvalidTransition(a.order_id, order.status, OrderStatus.IN_QC)
            snap = order.snapshot()
        return snap

    async def review(
        self,
        assignment_id: str,
        outcome: str,
        rejected_asset_ids: Optional[Sequence[str]] = None,
        notes: Optional[str] = None,
        reviewer_id: str = "",
    ) -> Dict[str, Any]:
        outcome = (outcome or "").strip().lower()
        if outcome not in QCOutcome.ALL:
            raise InvalidReview(f"unknown review outcome {outcome!r}")
        rejected = list(dict.fromkeys(str(x) for x in (rejected_asset_ids or [])))
        if outcome == QCOutcome.APPROVED and rejected:
            raise InvalidReview("an approval cannot reject assets", rejected_asset_ids=rejected)
        if outcome == QCOutcome.REJECTED and not rejected:
            raise InvalidReview("a rejection must name at least one asset")
        if not reviewer_id:
            raise InvalidReview("reviewer_id is required")

        actor = Actor("reviewer", reviewer_id)
        async with UnitOfWork(self.ctx) as uow:
            session = uow.session
            a = await load_assignment(session, assignment_id)
            if a.status != AssignmentStatus.PENDING_QC:
                raise InvalidAssignmentState(
                    f"assignment {assignment_id} is {a.status}, not pending_qc", assignment_id=assignment_id,
                )
            unknown = [x for x in rejected if x not in (a.required_asset_ids or [])]
            if unknown:
                raise UnknownAssets(f"{len(unknown)} rejected asset(s) are not part of the assignment", asset_ids=unknown)

            order = await load_order(session, a.order_id)
            if order.status == OrderStatus.READY_FOR_QC:
                await self.state_machine.apply(uow, a.order_id, OrderStatus.IN_QC, actor, reason="qc_started")

            review = QCReview(
                assignment_id=a.id,
                outcome=outcome,
                rejected_asset_ids=rejected,
                notes=notes,
                reviewer_id=reviewer_id,
                revision=a.revision_count,
            )
            session.add(review)
            await session.flush()

            if outcome == QCOutcome.APPROVED:
                await self._approve(uow, a, review, actor)
            else:
                await self._reject(uow, a, review, actor)

            a = await load_assignment(session, assignment_id)
            order = await load_order(session, a.order_id)
            result = {"assignment": a.snapshot(), "review": review.snapshot(), "order_status": order.status}

        logger.info(
            "[QC] assignment=%s %s by %s -> %s (revision %d/%d)",
            assignment_id, outcome, reviewer_id, result["assignment"]["status"],
            result["assignment"]["revision_count"], result["assignment"]["max_revisions"],
        )
        return result

    async def _transition_assignment(self, session, a: EditingAssignment, **values) -> None:
        res = await session.execute(
            update(EditingAssignment)
            .where(EditingAssignment.id == a.id, EditingAssignment.status == AssignmentStatus.PENDING_QC)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            raise InvalidAssignmentState(f"assignment {a.id} was reviewed concurrently", assignment_id=a.id)

    async def _approve(self, uow: UnitOfWork, a: EditingAssignment, review: QCReview, actor: Actor) -> None:
        session = uow.session
        now = utcnow()
        await self._transition_assignment(session, a, status=AssignmentStatus.COMPLETED, completed_at=now)
        await _set_asset_status(session, a.required_asset_ids, AssetQCStatus.APPROVED)
        await uow.append(a.order_id, EventType.QC_APPROVED, {
            "assignment_id": a.id,
            "review_id": review.id,
            "reviewer_id": review.reviewer_id,
            "revision": review.revision,
        }, actor)

        res = await session.execute(
            select(func.count(EditingAssignment.id)).where(
                EditingAssignment.order_id == a.order_id,
                EditingAssignment.id != a.id,
                EditingAssignment.status.in_(list(AssignmentStatus.OPEN)),
            )
        )
        remaining = int(res.scalar_one())
        if remaining:
            logger.info("[QC] order=%s has %d open assignment(s); not delivered yet", a.order_id, remaining)
            return

        order = await load_order(session, a.order_id)
        if order.status in (OrderStatus.PROCESSING, OrderStatus.READY_FOR_QC):
            order = await self._catch_up_to_qc(uow, order, actor)
        if order.status != OrderStatus.IN_QC:
            logger.warning("[QC] order=%s is %s; delivery skipped", a.order_id, order.status)
            return
        await self.state_machine.apply(uow, a.order_id, OrderStatus.DELIVERED, actor, reason="qc_approved")
        await session.execute(
            update(EditingAssignment)
            .where(EditingAssignment.order_id == a.order_id, EditingAssignment.archived_at.is_(None))
            .values(archived_at=now)
            .execution_options(synchronize_session=False)
        )

    async def _catch_up_to_qc(self, uow: UnitOfWork, order, actor: Actor):
        """
        The order never reached QC, e.g. a sibling job failed after this
        assignment was submitted. Step it through ready_for_qc -> in_qc unless
        processing work is still in flight.
        """
        res = await uow.session.execute(
            select(func.count(ProcessingJob.id)).where(
                ProcessingJob.order_id == order.id,
                ProcessingJob.status.in_(list(JobStatus.IN_FLIGHT)),
            )
        )
        if int(res.scalar_one()):
            logger.info("[QC] order=%s still has processing in flight; not delivered yet", order.id)
            return order
        if order.status == OrderStatus.PROCESSING:
            order = await self.state_machine.apply(uow, order.id, OrderStatus.READY_FOR_QC, actor, reason="qc_approved")
        return await self.state_machine.apply(uow, order.id, OrderStatus.IN_QC, actor, reason="qc_started")

    async def _reject(self, uow: UnitOfWork, a: EditingAssignment, review: QCReview, actor: Actor) -> None:
        session = uow.session
        count = a.revision_count + 1
        rejected = list(review.rejected_asset_ids or [])
        await _set_asset_status(session, rejected, AssetQCStatus.NEEDS_EDIT)

        if count >= a.max_revisions:
            await self._transition_assignment(
                session, a, status=AssignmentStatus.NEEDS_ESCALATION, revision_count=count,
            )
            await uow.append(a.order_id, EventType.QC_ESCALATED, {
                "assignment_id": a.id,
                "review_id": review.id,
                "editor_id": a.editor_id,
                "reviewer_id": review.reviewer_id,
                "rejected_asset_ids": rejected,
                "revision_count": count,
                "max_revisions": a.max_revisions,
            }, actor)
            logger.warning("[QC] assignment=%s exhausted %d revision(s); needs escalation", a.id, count)
            return

        # same editor keeps the work
        await self._transition_assignment(
            session, a,
            status=AssignmentStatus.PENDING, revision_count=count, claimed_at=None, submitted_at=None,
        )
        await session.execute(
            update(EditedAsset)
            .where(
                EditedAsset.assignment_id == a.id,
                EditedAsset.asset_id.in_(rejected),
                EditedAsset.superseded.is_(False),
            )
            .values(superseded=True)
            .execution_options(synchronize_session=False)
        )
        await uow.append(a.order_id, EventType.QC_REJECTED, {
            "assignment_id": a.id,
            "review_id": review.id,
            "editor_id": a.editor_id,
            "reviewer_id": review.reviewer_id,
            "rejected_asset_ids": rejected,
            "revision_count": count,
            "notes": review.notes,
        }, actor)

        order = await load_order(session, a.order_id)
        if order.status == OrderStatus.IN_QC:
            await self.state_machine.apply(
                uow, a.order_id, OrderStatus.PROCESSING, actor, revision=True, reason="qc_rejected",
            )

    # ---------------------------
    # Reads
    # ---------------------------

    async def list_escalations(self) -> List[Dict[str, Any]]:
        async with self.ctx.sessionmaker() as session:
            res = await session.execute(
                select(EditingAssignment)
                .where(EditingAssignment.status == AssignmentStatus.NEEDS_ESCALATION)
                .order_by(EditingAssignment.created_at.asc())
            )
            return [a.snapshot() for a in res.scalars()]

    async def list_reviews(self, assignment_id: str) -> List[Dict[str, Any]]:
        async with self.ctx.sessionmaker() as session:
            await load_assignment(session, assignment_id)
            res = await session.execute(
                select(QCReview).where(QCReview.assignment_id == assignment_id).order_by(QCReview.created_at, QCReview.revision)
            )
            return [r.snapshot() for r in res.scalars()]
