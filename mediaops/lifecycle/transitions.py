#===========================================================================
# mediaops/lifecycle/transitions.py
# Status transition table. The allowed flows are configuration data
# (status_transitions.json); the state machine only consults this table.
#===========================================================================

import json
import logging
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Mapping

from mediaops.models.orders import OrderStatus

logger = logging.getLogger("uvicorn.error")

DEFAULT_TABLE_PATH = Path(__file__).with_name("status_transitions.json")


class TransitionTableError(ValueError):
    pass


class TransitionTable:
    """
    Edges are {from, to[], revision?[]}. `to` holds forward moves (and cancelled);
    `revision` holds the regressions only the revision loop may request.
    A status with no outgoing edges is terminal.
    """

    def __init__(self, edges: List[Mapping[str, Any]]):
        self._forward: Dict[str, FrozenSet[str]] = {}
        self._revision: Dict[str, FrozenSet[str]] = {}
        self.order: List[str] = []
        for edge in edges:
            src = edge.get("from")
            if src not in OrderStatus.ALL:
                raise TransitionTableError(f"unknown status in table: {src!r}")
            targets = list(edge.get("to") or [])
            revisions = list(edge.get("revision") or [])
            for t in targets + revisions:
                if t not in OrderStatus.ALL:
                    raise TransitionTableError(f"unknown target status {t!r} (from {src!r})")
            self._forward[src] = frozenset(targets)
            self._revision[src] = frozenset(revisions)
            self.order.append(src)

        missing = [s for s in OrderStatus.ALL if s not in self._forward]
        if missing:
            raise TransitionTableError(f"statuses missing from table: {missing}")

    def allowed(self, from_status: str) -> FrozenSet[str]:
        return self._forward.get(from_status, frozenset())

    def revision_targets(self, from_status: str) -> FrozenSet[str]:
        return self._revision.get(from_status, frozenset())

    def is_terminal(self, status: str) -> bool:
        return not self.allowed(status) and not self.revision_targets(status)

    def can_transition(self, from_status: str, to_status: str, *, revision: bool = False) -> bool:
        if revision:
            return to_status in self.revision_targets(from_status)
        return to_status in self.allowed(from_status)

    def as_list(self) -> List[Dict[str, Any]]:
        out = []
        for src in self.order:
            edge: Dict[str, Any] = {"from": src, "to": sorted(self._forward[src])}
            if self._revision[src]:
                edge["revision"] = sorted(self._revision[src])
            out.append(edge)
        return out

    @classmethod
    def load(cls, path: str | Path | None = None) -> "TransitionTable":
        p = Path(path) if path else DEFAULT_TABLE_PATH
        with open(p, "r", encoding="utf-8") as f:
            edges = json.load(f)
        if not isinstance(edges, list):
            raise TransitionTableError(f"{p}: expected a list of edges")
        logger.info("[STATE] loaded %d transition edges from %s", len(edges), p)
        return cls(edges)
