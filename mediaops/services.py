#=================================================================
# mediaops/services.py
# Wires one OrchestratorContext into the components the HTTP layer
# and the background worker call.
#=================================================================

from dataclasses import dataclass
from typing import Any, Dict, List

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mediaops.config import Settings
from mediaops.context import OrchestratorContext, build_context
from mediaops.editing.claim_queue import EditorClaimQueue
from mediaops.editing.qc_review import QCReviewLoop
from mediaops.lifecycle.state_machine import StatusStateMachine
from mediaops.notifications.rule_engine import NotificationRuleEngine
from mediaops.processing.tracker import ProcessingTracker


@dataclass
class Services:
    ctx: OrchestratorContext
    state_machine: StatusStateMachine
    tracker: ProcessingTracker
    queue: EditorClaimQueue
    qc: QCReviewLoop
    rules: NotificationRuleEngine


def build_services(
    settings: Settings,
    sessionmaker: async_sessionmaker[AsyncSession],
    *,
    provider: Any = None,
    messenger: Any = None,
) -> Services:
    """
    Committed events go through the jobs worker: queued when it is running,
    evaluated inline otherwise.
    """
    from mediaops.workers.jobs_worker import enqueue_job

    ctx = build_context(settings, sessionmaker, provider=provider, messenger=messenger)
    services = Services(
        ctx=ctx,
        state_machine=StatusStateMachine(ctx),
        tracker=ProcessingTracker(ctx),
        queue=EditorClaimQueue(ctx),
        qc=QCReviewLoop(ctx),
        rules=NotificationRuleEngine(ctx),
    )

    async def publish(events: List[Dict[str, Any]]) -> None:
        await enqueue_job(services, {"type": "events.committed", "events": events})

    ctx.publish = publish
    return services
