#=================================================================
# mediaops/context.py
# Explicit dependencies handed to every orchestrator component.
# Nothing here is process-global; the app builds one context at startup
# and tests build their own.
#=================================================================

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mediaops.config import Settings
from mediaops.lifecycle.transitions import TransitionTable

logger = logging.getLogger("uvicorn.error")

EventPublisher = Callable[[List[Dict[str, Any]]], Awaitable[None]]


@dataclass(frozen=True)
class Actor:
    """Already-authenticated caller identity (auth is resolved upstream)."""
    type: str = "system"
    id: Optional[str] = None


SYSTEM = Actor("system")
PROCESSOR = Actor("processor")


async def _drop_events(events: List[Dict[str, Any]]) -> None:
    logger.debug("[CONTEXT] no publisher configured; %d event(s) not published", len(events))


@dataclass
class OrchestratorContext:
    settings: Settings
    sessionmaker: async_sessionmaker[AsyncSession]
    transitions: TransitionTable
    provider: Any = None   # mediaops.processing.provider.ProcessingProvider
    messenger: Any = None  # mediaops.notifications.dispatcher.Messenger
    publish: EventPublisher = field(default=_drop_events)


def build_context(
    settings: Settings,
    sessionmaker: async_sessionmaker[AsyncSession],
    *,
    provider: Any = None,
    messenger: Any = None,
    publish: EventPublisher | None = None,
) -> OrchestratorContext:
    transitions = TransitionTable.load(settings.STATUS_TRANSITIONS_PATH or None)
    return OrchestratorContext(
        settings=settings,
        sessionmaker=sessionmaker,
        transitions=transitions,
        provider=provider,
        messenger=messenger,
        publish=publish or _drop_events,
    )
