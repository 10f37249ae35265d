# mediaops/webhooks/processing.py
import base64, hmac, hashlib, logging
from typing import Tuple

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from mediaops.webhooks.archive import archive_callback
from mediaops.webhooks.processing_models import ProgressUpdate, ProviderCallback
from mediaops.workers.jobs_worker import enqueue_job

logger = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/webhooks/processing", tags=["Processing Webhooks"])

SIGNATURE_HEADER = "X-Processing-Signature"


def _b64_hmac_sha256(secret: str, body: bytes) -> str:
    mac = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(mac).decode("utf-8")


def _verify_signature(request: Request, body: bytes, secret: str) -> Tuple[bool, str]:
    """
    Returns (ok, reason). Without a configured secret callbacks are accepted unsigned.
    """
    if not secret:
        return True, "unsigned"
    received = request.headers.get(SIGNATURE_HEADER) or ""
    if not received:
        return False, "missing_signature"
    expected = _b64_hmac_sha256(secret, body)
    if not hmac.compare_digest(received, expected):
        return False, "invalid_signature"
    return True, "signed"


async def _read_verified(request: Request, kind: str):
    """Read the body once, archive it, check the signature. Returns (body, error_response)."""
    services = request.app.state.services
    settings = services.ctx.settings
    body = await request.body()

    if settings.ARCHIVE_CALLBACKS:
        try:
            archive_callback(kind, dict(request.headers), body)
        except OSError as e:
            # archival is best-effort; never fail the hook for this
            logger.warning("[PROC-HOOK] archiving %s callback failed: %s", kind, e)

    ok, reason = _verify_signature(request, body, settings.PROCESSING_WEBHOOK_SECRET)
    if not ok:
        logger.warning("[PROC-HOOK] %s rejected: %s", kind, reason)
        return body, JSONResponse(status_code=401, content={"ok": False, "reason": reason})
    return body, None


@router.post("")
@router.post("/")
async def processing_callback(request: Request) -> Response:
    body, rejected = await _read_verified(request, "callback")
    if rejected is not None:
        return rejected

    try:
        payload = ProviderCallback.model_validate_json(body)
    except ValidationError as e:
        errors = e.errors(include_url=False, include_context=False, include_input=False)
        logger.warning("[PROC-HOOK] callback validation error: %s", errors)
        return JSONResponse(
            status_code=422,
            content={"ok": False, "reason": "invalid_payload", "error": errors},
        )

    logger.info("[PROC-HOOK] callback job=%s status=%s results=%d", payload.job_id, payload.status, len(payload.results))
    await enqueue_job(request.app.state.services, {
        "type": "processing.callback",
        "job_id": payload.job_id,
        "payload": payload.model_dump(),
    })
    return JSONResponse({"ok": True, "job_id": payload.job_id, "status": payload.status})


@router.post("/progress")
async def processing_progress(request: Request) -> Response:
    body, rejected = await _read_verified(request, "progress")
    if rejected is not None:
        return rejected

    try:
        payload = ProgressUpdate.model_validate_json(body)
    except ValidationError as e:
        errors = e.errors(include_url=False, include_context=False, include_input=False)
        return JSONResponse(
            status_code=422,
            content={"ok": False, "reason": "invalid_payload", "error": errors},
        )

    await enqueue_job(request.app.state.services, {
        "type": "processing.progress",
        "job_id": payload.job_id,
        "payload": payload.model_dump(),
    })
    return JSONResponse({"ok": True, "job_id": payload.job_id, "stage": payload.stage})
