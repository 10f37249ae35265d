import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from mediaops.db import utcnow
from mediaops.errors import InvalidRule, NotFound, ProcessingSubmissionFailed
from mediaops.models import notifications
from mediaops.notifications.triggers import (
    EscalationTrigger,
    ScheduleTrigger,
    StatusChangeTrigger,
    TimeDelayTrigger,
    dump_trigger,
    parse_trigger,
)


async def _rule(h, trigger_type, conditions=None, channels=("email",), **kw):
    return await h.svc.rules.create_rule(
        name=kw.pop("name", f"{trigger_type} rule"),
        trigger_type=trigger_type,
        trigger_conditions=conditions or {},
        channels=list(channels),
        **kw,
    )


# ---------------------------
# Trigger parsing
# ---------------------------

def test_trigger_conditions_parse_into_variants():
    t = parse_trigger("status_change", {"from": "staged", "to": "processing"})
    assert isinstance(t, StatusChangeTrigger)
    assert (t.from_status, t.to_status) == ("staged", "processing")
    assert dump_trigger(t) == {"trigger_type": "status_change", "from_status": "staged", "to_status": "processing"}

    assert parse_trigger("status_change", {}).matches({
        "event_type": "status_changed", "payload": {"from_status": "a", "to_status": "b"},
    })
    assert isinstance(parse_trigger("time_delay", {"delay_minutes": 30}), TimeDelayTrigger)
    assert isinstance(parse_trigger("schedule", {"cadence": "Daily"}), ScheduleTrigger)
    assert isinstance(parse_trigger("escalation"), EscalationTrigger)

    sched = parse_trigger("schedule", {})
    assert not sched.matches({"event_type": "status_changed", "payload": {}})


@pytest.mark.parametrize("trigger_type,conditions", [
    ("status_change", {"to": "teleported"}),
    ("status_change", {"to": "delivered", "colour": "red"}),
    ("time_delay", {}),
    ("time_delay", {"delay_minutes": 0}),
    ("schedule", {"cadence": "fortnightly"}),
    ("integration_complete", {"integration_type": "hdr", "retries": 3}),
])
def test_bad_trigger_conditions_are_rejected(trigger_type, conditions):
    with pytest.raises(InvalidRule) as ei:
        parse_trigger(trigger_type, conditions)
    assert ei.value.context["errors"]


def test_rule_admin_validation_and_updates(harness):
    async def scenario():
        async with harness() as h:
            rules = h.svc.rules
            with pytest.raises(InvalidRule):
                await _rule(h, "carrier_pigeon")
            with pytest.raises(InvalidRule):
                await _rule(h, "escalation", channels=("pigeon",))
            with pytest.raises(InvalidRule):
                await _rule(h, "escalation", channels=())
            with pytest.raises(InvalidRule):
                await _rule(h, "escalation", audience="everyone")
            with pytest.raises(InvalidRule):
                await _rule(h, "escalation", name="  ")

            r = await _rule(h, "status_change", {"to": "delivered"}, channels=("EMAIL", "sms", "email"))
            assert r["channels"] == ["email", "sms"]
            assert r["trigger_conditions"] == {"to_status": "delivered"}

            r = await rules.update_rule(r["id"], trigger_conditions={"from": "in_qc", "to": "delivered"}, is_active=False)
            assert r["trigger_conditions"] == {"from_status": "in_qc", "to_status": "delivered"}
            assert r["is_active"] is False

            with pytest.raises(InvalidRule):
                await rules.update_rule(r["id"], trigger_type="time_delay")
            assert (await rules.get_rule(r["id"]))["trigger_type"] == "status_change"

            assert [x["id"] for x in await rules.list_rules(active=False)] == [r["id"]]
            assert await rules.list_rules(trigger_type="escalation") == []
            with pytest.raises(NotFound):
                await rules.get_rule("missing")

    asyncio.run(scenario())


# ---------------------------
# Event-driven rules
# ---------------------------

def test_status_change_rule_dispatches_per_channel(harness):
    async def scenario():
        async with harness() as h:
            rule = await _rule(h, "status_change", {"to": "scheduled"}, channels=("email", "sms"), template_id="shoot-booked")
            order_id = await h.order(status="pending", address="1 Beach Rd")
            await h.svc.state_machine.transition(order_id, "scheduled")
            await h.svc.state_machine.transition(order_id, "in_progress")

            assert [(m["channel"], m["recipient"]) for m in h.messenger.sent] == [
                ("email", "agent@example.com"),
                ("sms", "+15550100"),
            ]
            v = h.messenger.sent[0]["variables"]
            assert h.messenger.sent[0]["template_id"] == "shoot-booked"
            assert v["rule_name"] == rule["name"]
            assert v["order_id"] == order_id
            assert v["address"] == "1 Beach Rd"
            assert (v["from_status"], v["to_status"]) == ("pending", "scheduled")

            firings = await h.count(notifications.RuleFiring, notifications.RuleFiring.rule_id == rule["id"])
            assert firings == 1

    asyncio.run(scenario())


def test_replayed_event_fires_once(harness):
    async def scenario():
        async with harness() as h:
            await _rule(h, "status_change", {"to": "scheduled"})
            order_id = await h.order(status="scheduled")
            (ev,) = await h.events(order_id, "status_changed")
            assert len(h.messenger.sent) == 1

            assert await h.svc.rules.evaluate_event(ev) == 0
            assert await h.svc.rules.evaluate_events([ev, ev]) == 0
            assert len(h.messenger.sent) == 1

    asyncio.run(scenario())


def test_integration_rules_filter_on_integration_type(harness):
    async def scenario():
        async with harness() as h:
            hdr = await _rule(h, "integration_complete", {"integration_type": "hdr"}, name="hdr done")
            await _rule(h, "integration_complete", {"integration_type": "video"}, name="video done")
            failed = await _rule(h, "integration_failed", {}, name="anything failed", audience="operations")

            order_id, asset_ids, job = await h.submitted(2)
            await h.complete(job["id"], asset_ids)
            assert [m["variables"]["rule_name"] for m in h.messenger.sent] == ["hdr done"]
            assert h.messenger.sent[0]["variables"]["job_id"] == job["id"]

            other = await h.order()
            ids = await h.batch(other, 2)
            h.provider.fail = "provider down"
            with pytest.raises(ProcessingSubmissionFailed):
                await h.svc.tracker.submit(other, ids)

            last = h.messenger.sent[-1]
            assert last["variables"]["rule_name"] == failed["name"]
            assert last["recipient"] == "ops@example.com"
            assert last["variables"]["error_message"] == "provider down"

            stats = await h.svc.rules.rule_stats()
            assert stats["integration_complete"]["rules"] == 2
            assert stats["integration_complete"]["firings"] == 1
            assert stats["integration_failed"]["dispatched"] == 1
            assert hdr["id"] != failed["id"]

    asyncio.run(scenario())


def test_escalation_rule_notifies_operations(harness):
    async def scenario():
        async with harness(QC_MAX_REVISIONS=1) as h:
            await _rule(h, "escalation", channels=("email", "sms"), audience="operations")
            order_id, asset_ids, aid = await h.ready_for_qc("editor-a")
            await h.svc.qc.review(aid, "rejected", [asset_ids[0]], reviewer_id="rev-1")

            assert [(m["channel"], m["recipient"]) for m in h.messenger.sent] == [
                ("email", "ops@example.com"),
                ("sms", "+15550199"),
            ]
            assert h.messenger.sent[0]["variables"]["assignment_id"] == aid
            assert h.messenger.sent[0]["template_id"] == "escalation"

    asyncio.run(scenario())


def test_cancelled_orders_only_notify_about_the_cancellation(harness):
    async def scenario():
        async with harness() as h:
            await _rule(h, "status_change", {"to": "cancelled"}, name="cancelled")
            await _rule(h, "integration_complete", {}, name="done")

            order_id, asset_ids, job = await h.submitted(2)
            await h.svc.state_machine.transition(order_id, "cancelled")
            await h.complete(job["id"], asset_ids)

            assert [m["variables"]["rule_name"] for m in h.messenger.sent] == ["cancelled"]

    asyncio.run(scenario())


def test_inactive_rules_do_not_fire_until_activated(harness):
    async def scenario():
        async with harness() as h:
            rule = await _rule(h, "status_change", {}, is_active=False)
            order_id = await h.order(status="scheduled")
            assert h.messenger.sent == []

            await h.svc.rules.update_rule(rule["id"], is_active=True)
            await h.svc.state_machine.transition(order_id, "in_progress")
            assert len(h.messenger.sent) == 1

    asyncio.run(scenario())


def test_dispatch_failures_are_counted_not_raised(harness):
    async def scenario():
        async with harness() as h:
            h.messenger.fail_channels = {"sms"}
            await _rule(h, "status_change", {"to": "scheduled"}, channels=("email", "sms"))
            order_id = await h.order(status="scheduled")

            assert await h.status(order_id) == "scheduled"
            assert [m["channel"] for m in h.messenger.sent] == ["email"]

            async with h.sessionmaker() as session:
                res = await session.execute(select(notifications.RuleFiring))
                (firing,) = res.scalars().all()
            assert (firing.dispatched, firing.failed) == (1, 1)
            assert "sms gateway down" in firing.last_error

            stats = await h.svc.rules.rule_stats()
            assert stats["status_change"]["failed"] == 1

    asyncio.run(scenario())


def test_missing_recipient_is_skipped(harness):
    async def scenario():
        async with harness() as h:
            await _rule(h, "status_change", {"to": "scheduled"}, channels=("email", "sms"))
            await h.order(status="scheduled", agent_phone=None)
            assert [m["channel"] for m in h.messenger.sent] == ["email"]

    asyncio.run(scenario())


# ---------------------------
# Time-delay sweep
# ---------------------------

def test_time_delay_fires_once_per_status_entry(harness):
    async def scenario():
        async with harness() as h:
            await _rule(h, "time_delay", {"delay_minutes": 60}, name="stuck")
            order_id = await h.order(status="pending")
            rules = h.svc.rules

            assert await rules.sweep_time_delays(utcnow() + timedelta(minutes=30)) == 0
            assert await rules.sweep_time_delays(utcnow() + timedelta(minutes=61)) == 1
            assert await rules.sweep_time_delays(utcnow() + timedelta(minutes=120)) == 0
            assert h.messenger.sent[0]["variables"]["delay_minutes"] == 60
            assert h.messenger.sent[0]["variables"]["status"] == "pending"

            # a new status entry starts a new clock
            await h.svc.state_machine.transition(order_id, "scheduled")
            assert await rules.sweep_time_delays(utcnow() + timedelta(minutes=61)) == 1
            assert [m["variables"]["status"] for m in h.messenger.sent] == ["pending", "scheduled"]

    asyncio.run(scenario())


def test_time_delay_status_filter_and_cancelled_orders(harness):
    async def scenario():
        async with harness() as h:
            await _rule(h, "time_delay", {"delay_minutes": 15, "status": "staged"}, name="staged too long")
            await _rule(h, "time_delay", {"delay_minutes": 15, "status": "cancelled"}, name="cancel follow-up")
            await _rule(h, "time_delay", {"delay_minutes": 15}, name="any status")

            staged = await h.order(status="staged")
            cancelled = await h.order(status="scheduled")
            await h.svc.state_machine.transition(cancelled, "cancelled")

            assert await h.svc.rules.sweep_time_delays(utcnow() + timedelta(minutes=20)) == 3
            fired = sorted((m["variables"]["rule_name"], m["variables"]["order_id"]) for m in h.messenger.sent)
            assert fired == sorted([
                ("staged too long", staged),
                ("cancel follow-up", cancelled),
                ("any status", staged),
            ])

    asyncio.run(scenario())
