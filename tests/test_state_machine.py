import asyncio
import json

import pytest

from mediaops.context import Actor
from mediaops.errors import EventLogWriteError, InvalidTransition, NotFound
from mediaops.lifecycle import event_log
from mediaops.lifecycle.transitions import TransitionTable, TransitionTableError

STAFF = Actor("staff", "u-17")


def test_forward_transitions_append_one_event_each(harness):
    async def scenario():
        async with harness() as h:
            order_id = await h.order(status="pending")
            snap = await h.svc.state_machine.transition(order_id, "scheduled", STAFF)
            assert snap["status"] == "scheduled"
            await h.svc.state_machine.transition(order_id, "in_progress", STAFF)

            changes = await h.events(order_id, "status_changed")
            assert [(e["payload"]["from_status"], e["payload"]["to_status"]) for e in changes] == [
                ("pending", "scheduled"),
                ("scheduled", "in_progress"),
            ]
            assert changes[-1]["actor_type"] == "staff"
            assert changes[-1]["actor_id"] == "u-17"
            assert await h.status(order_id) == "in_progress"

    asyncio.run(scenario())


def test_skipping_and_regressing_are_rejected(harness):
    async def scenario():
        async with harness() as h:
            order_id = await h.order(status="pending")
            with pytest.raises(InvalidTransition):
                await h.svc.state_machine.transition(order_id, "delivered")

            await h.svc.state_machine.transition(order_id, "scheduled")
            with pytest.raises(InvalidTransition) as ei:
                await h.svc.state_machine.transition(order_id, "pending")
            assert ei.value.context["from_status"] == "scheduled"
            assert ei.value.status_code == 409

            assert await h.status(order_id) == "scheduled"
            assert len(await h.events(order_id, "status_changed")) == 1

    asyncio.run(scenario())


def test_qc_regression_is_reserved_for_the_revision_loop(harness):
    async def scenario():
        async with harness() as h:
            order_id = await h.order(status="staged")
            for st in ("processing", "ready_for_qc", "in_qc"):
                await h.svc.state_machine.transition(order_id, st)

            with pytest.raises(InvalidTransition):
                await h.svc.state_machine.transition(order_id, "processing")
            assert h.svc.state_machine.can_transition("in_qc", "processing", revision=True)
            assert not h.svc.state_machine.can_transition("in_qc", "processing")

    asyncio.run(scenario())


def test_cancel_from_any_open_status_and_terminal_is_final(harness):
    async def scenario():
        async with harness() as h:
            for start in ("pending", "scheduled", "staged"):
                order_id = await h.order(status=start)
                await h.svc.state_machine.transition(order_id, "cancelled")
                assert await h.status(order_id) == "cancelled"
                with pytest.raises(InvalidTransition):
                    await h.svc.state_machine.transition(order_id, "scheduled")
                with pytest.raises(InvalidTransition):
                    await h.svc.state_machine.transition(order_id, "cancelled")

    asyncio.run(scenario())


def test_idempotent_resubmission_returns_snapshot_without_new_event(harness):
    async def scenario():
        async with harness() as h:
            order_id = await h.order(status="pending")
            first = await h.svc.state_machine.transition(order_id, "scheduled", idempotency_key="req-1")
            again = await h.svc.state_machine.transition(order_id, "scheduled", idempotency_key="req-1")
            assert again["status"] == first["status"] == "scheduled"
            assert len(await h.events(order_id, "status_changed")) == 1

            # a different key is a new request and is validated normally
            with pytest.raises(InvalidTransition):
                await h.svc.state_machine.transition(order_id, "scheduled", idempotency_key="req-2")

    asyncio.run(scenario())


def test_event_log_failure_aborts_the_status_write(harness, monkeypatch):
    async def scenario():
        async with harness() as h:
            order_id = await h.order(status="pending")

            async def broken_append(*args, **kwargs):
                raise EventLogWriteError("disk full")

            monkeypatch.setattr(event_log, "append_event", broken_append)
            with pytest.raises(EventLogWriteError):
                await h.svc.state_machine.transition(order_id, "scheduled")
            monkeypatch.undo()

            assert await h.status(order_id) == "pending"
            assert await h.events(order_id, "status_changed") == []

    asyncio.run(scenario())


def test_status_always_matches_last_recorded_transition(harness):
    async def scenario():
        async with harness() as h:
            order_id = await h.order(status="pending")
            attempts = ["scheduled", "staged", "in_progress", "pending", "staged", "ready_for_qc", "cancelled", "staged"]
            for target in attempts:
                try:
                    await h.svc.state_machine.transition(order_id, target)
                except InvalidTransition:
                    pass
            changes = await h.events(order_id, "status_changed")
            assert changes[-1]["payload"]["to_status"] == await h.status(order_id) == "cancelled"
            # each accepted transition started where the previous one ended
            for prev, cur in zip(changes, changes[1:]):
                assert cur["payload"]["from_status"] == prev["payload"]["to_status"]

    asyncio.run(scenario())


def test_unknown_order_is_not_found(harness):
    async def scenario():
        async with harness() as h:
            with pytest.raises(NotFound):
                await h.svc.state_machine.transition("nope", "scheduled")

    asyncio.run(scenario())


def test_custom_transition_table_changes_allowed_flows(harness, tmp_path):
    edges = TransitionTable.load().as_list()
    for edge in edges:
        if edge["from"] == "pending":
            edge["to"] = ["in_progress", "cancelled"]  # no scheduling step
        if edge["from"] == "in_progress":
            edge["to"] = ["processing", "staged", "cancelled"]
    path = tmp_path / "flows.json"
    path.write_text(json.dumps(edges), encoding="utf-8")

    async def scenario():
        async with harness(STATUS_TRANSITIONS_PATH=str(path)) as h:
            order_id = await h.order(status="pending")
            await h.svc.state_machine.transition(order_id, "in_progress")
            with pytest.raises(InvalidTransition):
                await h.svc.state_machine.transition(order_id, "scheduled")

    asyncio.run(scenario())


def test_transition_table_rejects_unknown_statuses():
    with pytest.raises(TransitionTableError):
        TransitionTable([{"from": "pending", "to": ["teleported"]}])
    table = TransitionTable.load()
    assert table.is_terminal("delivered")
    assert table.is_terminal("cancelled")
    assert "cancelled" in table.allowed("in_qc")
