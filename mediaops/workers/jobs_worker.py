# ---------------------------
# mediaops/workers/jobs_worker.py
# ---------------------------
#
# In-process job queue + two background loops:
#   worker_loop   drains jobs (committed events, provider callbacks/progress)
#   sweeper_loop  runs the processing timeout sweep and the time-delay
#                 notification sweep every SWEEP_INTERVAL_SECONDS
#
# When the worker is not running (RUN_BACKGROUND_WORKERS=false, tests, CLI
# scripts) enqueue_job() handles the job inline instead of dropping it.

import asyncio
import logging
from typing import Any, Dict, Optional

logger = logging.getLogger("uvicorn.error")

_QUEUE: "Optional[asyncio.Queue[dict]]" = None
_RUNNING = False


def reset_queue(maxsize: int = 10000) -> None:
    """New queue bound to the running event loop (called on app startup)."""
    global _QUEUE
    _QUEUE = asyncio.Queue(maxsize=maxsize)


def is_running() -> bool:
    return _RUNNING


def pending_jobs() -> int:
    return _QUEUE.qsize() if _QUEUE is not None else 0


async def enqueue_job(services, job: Dict[str, Any]) -> None:
    if _RUNNING and _QUEUE is not None:
        try:
            _QUEUE.put_nowait(job)
            return
        except asyncio.QueueFull:
            logger.error("[WORKER] job queue full; handling type=%s inline", job.get("type"))
    await handle_job(services, job)


async def handle_job(services, job: Dict[str, Any]) -> Any:
    jtype = (job.get("type") or "").strip()
    if jtype == "events.committed":
        events = job.get("events") or []
        fired = await services.rules.evaluate_events(events)
        if fired:
            logger.info("[WORKER] %d event(s) fired %d rule(s)", len(events), fired)
        return fired
    if jtype == "processing.callback":
        result = await services.tracker.on_callback(job["payload"])
        logger.info(
            "[WORKER] callback job=%s -> %s%s",
            result["job"]["id"], result["job"]["status"], " (duplicate)" if result["duplicate"] else "",
        )
        return result
    if jtype == "processing.progress":
        p = job["payload"]
        return await services.tracker.apply_progress(p["job_id"], p["stage"], p["percent"])
    logger.info("[WORKER] unknown job type=%s", jtype)
    return None


async def worker_loop(services, stop_event: asyncio.Event) -> None:
    global _RUNNING
    if _QUEUE is None:
        reset_queue()
    _RUNNING = True
    logger.info("[WORKER] started")

    try:
        while not stop_event.is_set():
            try:
                job = await asyncio.wait_for(_QUEUE.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue

            try:
                await handle_job(services, job)
            except Exception:
                logger.exception("[WORKER] failed job type=%s", job.get("type"))
            finally:
                _QUEUE.task_done()
    finally:
        _RUNNING = False
        await _drain(services)
        logger.info("[WORKER] stopped")


async def _drain(services) -> None:
    """Handle whatever was queued before shutdown."""
    while _QUEUE is not None and not _QUEUE.empty():
        job = _QUEUE.get_nowait()
        try:
            await handle_job(services, job)
        except Exception:
            logger.exception("[WORKER] failed job type=%s during drain", job.get("type"))
        finally:
            _QUEUE.task_done()


async def run_sweeps(services) -> Dict[str, Any]:
    timed_out = await services.tracker.sweep_timeouts()
    fired = await services.rules.sweep_time_delays()
    return {"timed_out_jobs": timed_out, "time_delay_firings": fired}


async def sweeper_loop(services, stop_event: asyncio.Event) -> None:
    interval = max(1.0, float(services.ctx.settings.SWEEP_INTERVAL_SECONDS))
    logger.info("[SWEEPER] started (every %.0fs)", interval)
    while not stop_event.is_set():
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
            break
        except asyncio.TimeoutError:
            pass
        try:
            result = await run_sweeps(services)
            if result["timed_out_jobs"] or result["time_delay_firings"]:
                logger.info("[SWEEPER] %s", result)
        except Exception:
            logger.exception("[SWEEPER] sweep failed")
    logger.info("[SWEEPER] stopped")
