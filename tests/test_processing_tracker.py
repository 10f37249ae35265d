import asyncio
from datetime import timedelta

import pytest

from mediaops.db import utcnow
from mediaops.errors import (
    BatchLocked,
    InsufficientAssets,
    InvalidTransition,
    NotFound,
    ProcessingSubmissionFailed,
    UnknownAssets,
)
from mediaops.lifecycle import intake
from mediaops.models import editing, orders, processing


def test_fewer_than_two_assets_is_rejected_before_any_write(harness):
    async def scenario():
        async with harness() as h:
            order_id = await h.order()
            asset_ids = await h.batch(order_id, 3)

            with pytest.raises(InsufficientAssets):
                await h.svc.tracker.submit(order_id, [asset_ids[0]])
            with pytest.raises(InsufficientAssets):
                await h.svc.tracker.submit(order_id, [asset_ids[0], asset_ids[0]])

            assert await h.count(processing.ProcessingJob) == 0
            assert h.provider.submitted == []
            assert await h.status(order_id) == "staged"

    asyncio.run(scenario())


def test_submit_queues_job_and_moves_order_to_processing(harness):
    async def scenario():
        async with harness() as h:
            order_id, asset_ids, job = await h.submitted(3)

            assert job["status"] == "running"
            assert job["provider_job_id"] == "prov-1"
            assert job["asset_ids"] == asset_ids
            assert job["bracket_count"] == 3
            assert await h.status(order_id) == "processing"

            sent = h.provider.submitted[0]
            assert sent["job_id"] == job["id"]
            assert [a["asset_id"] for a in sent["assets"]] == asset_ids

            types = [e["event_type"] for e in await h.events(order_id)]
            assert types.index("processing.queued") < types.index("processing.started")
            assert await h.count(orders.CaptureAsset, orders.CaptureAsset.qc_status == "processing") == 3

    asyncio.run(scenario())


def test_provider_rejection_fails_job_and_allows_resubmission(harness):
    async def scenario():
        async with harness() as h:
            order_id = await h.order()
            asset_ids = await h.batch(order_id, 3)
            h.provider.fail = "503 Service Unavailable"

            with pytest.raises(ProcessingSubmissionFailed) as ei:
                await h.svc.tracker.submit(order_id, asset_ids)
            failed_id = ei.value.job_id

            failed = await h.svc.tracker.get_job(failed_id)
            assert failed["status"] == "failed"
            assert "503" in failed["error_message"]
            assert await h.status(order_id) == "staged"
            assert await h.count(orders.CaptureAsset, orders.CaptureAsset.qc_status == "pending") == 3

            (ev,) = await h.events(order_id, "processing.failed")
            assert ev["payload"]["stage"] == "submission"

            h.provider.fail = None
            job = await h.svc.tracker.submit(order_id, asset_ids)
            assert job["id"] != failed_id
            assert job["status"] == "running"
            assert await h.status(order_id) == "processing"

    asyncio.run(scenario())


def test_batch_with_live_job_is_locked(harness):
    async def scenario():
        async with harness() as h:
            order_id, asset_ids, job = await h.submitted(3)

            with pytest.raises(BatchLocked):
                await h.svc.tracker.submit(order_id, asset_ids[:2])
            with pytest.raises(BatchLocked):
                await intake.register_capture_assets(
                    h.ctx, order_id, [{"ref": "s3://raw/late.dng"}], batch_id=job["batch_id"],
                )
            assert await h.count(processing.ProcessingJob) == 1

    asyncio.run(scenario())


def test_assets_must_belong_to_order_and_one_batch(harness):
    async def scenario():
        async with harness() as h:
            order_id = await h.order()
            other_order = await h.order()
            first = await h.batch(order_id, 2)
            second = await h.batch(order_id, 2)
            foreign = await h.batch(other_order, 2)

            with pytest.raises(UnknownAssets) as ei:
                await h.svc.tracker.submit(order_id, [first[0], foreign[0]])
            assert ei.value.context["asset_ids"] == [foreign[0]]

            with pytest.raises(UnknownAssets):
                await h.svc.tracker.submit(order_id, [first[0], second[0]])
            with pytest.raises(UnknownAssets):
                await h.svc.tracker.submit(order_id, ["missing-1", "missing-2"])

            assert await h.count(processing.ProcessingJob) == 0

    asyncio.run(scenario())


def test_order_not_ready_for_processing(harness):
    async def scenario():
        async with harness() as h:
            order_id = await h.order(status="pending")
            asset_ids = await h.batch(order_id, 2)
            with pytest.raises(InvalidTransition):
                await h.svc.tracker.submit(order_id, asset_ids)
            assert await h.count(processing.ProcessingJob) == 0

    asyncio.run(scenario())


def test_completed_callback_stores_outputs_and_opens_assignment(harness):
    async def scenario():
        async with harness() as h:
            order_id, asset_ids, job = await h.submitted(3, is_rush=True)

            result = await h.complete(job["id"], asset_ids)
            assert result["duplicate"] is False
            assert result["job"]["status"] == "completed"
            assert result["job"]["progress"]["overall"] == 100.0

            full = await h.svc.tracker.get_job(job["id"])
            assert [o["asset_id"] for o in full["outputs"]] == asset_ids
            assert full["webhook_received_at"] is not None

            a = await h.assignment_for(job["id"])
            assert a["status"] == "pending"
            assert a["editor_id"] is None
            assert a["is_rush"] is True
            assert a["required_asset_ids"] == asset_ids
            assert a["max_revisions"] == 3

    asyncio.run(scenario())


def test_duplicate_callback_changes_nothing(harness):
    async def scenario():
        async with harness() as h:
            order_id, asset_ids, job = await h.submitted(2)
            await h.complete(job["id"], asset_ids)

            again = await h.complete(job["id"], asset_ids)
            assert again["duplicate"] is True
            # a late failure for a completed job is a duplicate too
            late = await h.svc.tracker.on_callback({"job_id": job["id"], "status": "failed", "error": "late"})
            assert late["duplicate"] is True
            assert late["job"]["status"] == "completed"

            assert await h.count(processing.ProcessingOutput) == 2
            assert await h.count(editing.EditingAssignment) == 1
            assert len(await h.events(order_id, "processing.completed")) == 1
            assert await h.events(order_id, "processing.failed") == []

    asyncio.run(scenario())


def test_callback_by_provider_job_id(harness):
    async def scenario():
        async with harness() as h:
            order_id, asset_ids, job = await h.submitted(2)
            result = await h.complete(job["provider_job_id"], asset_ids)
            assert result["job"]["id"] == job["id"]
            assert result["job"]["status"] == "completed"

            with pytest.raises(NotFound):
                await h.svc.tracker.on_callback({"job_id": "nobody", "status": "completed"})

    asyncio.run(scenario())


def test_failed_callback_releases_assets_without_assignment(harness):
    async def scenario():
        async with harness() as h:
            order_id, asset_ids, job = await h.submitted(3)
            result = await h.svc.tracker.on_callback({
                "job_id": job["id"], "status": "failed", "error": "misaligned brackets",
            })
            assert result["job"]["status"] == "failed"
            assert result["job"]["error_message"] == "misaligned brackets"
            assert await h.count(editing.EditingAssignment) == 0
            assert await h.count(orders.CaptureAsset, orders.CaptureAsset.qc_status == "pending") == 3

            # a failed job frees the batch for another attempt
            retry = await h.svc.tracker.submit(order_id, asset_ids)
            assert retry["status"] == "running"

    asyncio.run(scenario())


def test_callback_arriving_before_acceptance_is_kept(harness):
    async def scenario():
        async with harness() as h:
            order_id = await h.order()
            asset_ids = await h.batch(order_id, 2)

            async def provider_calls_back_first(job_id):
                await h.complete(job_id, asset_ids)

            h.provider.on_submit = provider_calls_back_first
            job = await h.svc.tracker.submit(order_id, asset_ids)

            assert job["status"] == "completed"
            assert job["provider_job_id"] == "prov-1"
            assert await h.status(order_id) == "processing"
            assert await h.events(order_id, "processing.started") == []
            assert await h.assignment_for(job["id"]) is not None

    asyncio.run(scenario())


def test_progress_is_monotonic_and_logged_per_stage(harness):
    async def scenario():
        async with harness() as h:
            order_id, asset_ids, job = await h.submitted(2)
            tracker = h.svc.tracker

            snap = await tracker.apply_progress(job["id"], "aligning", 20)
            assert snap["progress"]["stage"] == "aligning"
            assert await tracker.apply_progress(job["id"], "aligning", 60) is not None
            assert await tracker.apply_progress(job["id"], "aligning", 30) is None
            assert await tracker.apply_progress(job["id"], "queued", 99) is None
            assert await tracker.apply_progress(job["provider_job_id"], "fusing", 10) is not None

            current = await tracker.get_job(job["id"])
            assert current["progress"]["stage"] == "fusing"
            assert current["progress"]["percent"] == 10.0

            stages = [e["payload"]["stage"] for e in await h.events(order_id, "processing.progress")]
            assert stages == ["aligning", "fusing"]

            await h.complete(job["id"], asset_ids)
            assert await tracker.apply_progress(job["id"], "exporting", 100) is None

    asyncio.run(scenario())


def test_timeout_sweep_fails_stale_jobs_and_late_callback_is_ignored(harness):
    async def scenario():
        async with harness(PROCESSING_SLA_MINUTES=10.0, PROCESSING_TIMEOUT_FACTOR=3.0) as h:
            order_id, asset_ids, job = await h.submitted(2)

            assert await h.svc.tracker.sweep_timeouts(utcnow() + timedelta(minutes=29)) == []
            timed_out = await h.svc.tracker.sweep_timeouts(utcnow() + timedelta(minutes=31))
            assert timed_out == [job["id"]]

            snap = await h.svc.tracker.get_job(job["id"])
            assert snap["status"] == "failed"
            assert snap["error_message"] == "timeout"
            (ev,) = await h.events(order_id, "processing.failed")
            assert ev["payload"]["stage"] == "timeout"

            late = await h.complete(job["id"], asset_ids)
            assert late["duplicate"] is True
            assert late["job"]["status"] == "failed"
            assert await h.count(editing.EditingAssignment) == 0

            # second sweep finds nothing
            assert await h.svc.tracker.sweep_timeouts(utcnow() + timedelta(minutes=90)) == []

    asyncio.run(scenario())


def test_poll_feeds_provider_state_through_callback_path(harness):
    async def scenario():
        async with harness() as h:
            order_id, asset_ids, job = await h.submitted(2)
            pid = job["provider_job_id"]

            h.provider.statuses[pid] = {"status": "processing", "stage": "segmenting", "percent": 40}
            snap = await h.svc.tracker.poll(job["id"])
            assert snap["status"] == "running"
            assert snap["progress"]["stage"] == "segmenting"

            h.provider.statuses[pid] = {
                "status": "completed",
                "results": [{"asset_id": a, "processed_url": f"s3://hdr/{a}.jpg"} for a in asset_ids],
                "metrics": {"credits": 2},
            }
            snap = await h.svc.tracker.poll(job["id"])
            assert snap["status"] == "completed"
            assert snap["metrics"] == {"credits": 2}
            assert len(snap["outputs"]) == 2
            assert await h.assignment_for(job["id"]) is not None

    asyncio.run(scenario())
