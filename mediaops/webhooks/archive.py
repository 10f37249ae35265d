# mediaops/webhooks/archive.py
from __future__ import annotations
import base64, json, time
from pathlib import Path
from typing import Mapping, Any

from mediaops.config import settings

_SECRET_HEADERS = {"x-processing-signature", "authorization"}


def _redact(headers: Mapping[str, str]) -> dict[str, str]:
    return {k: ("<redacted>" if k.lower() in _SECRET_HEADERS else v) for k, v in headers.items()}


def _base_dir() -> Path:
    return Path(settings.CALLBACK_ARCHIVE_DIR or "/code/data/inbox/processing_raw")


def archive_callback(kind: str, headers: Mapping[str, str], body: bytes, *,
                     job_id: str | None = None, base_dir: Path | None = None) -> str:
    """
    Persist a raw provider callback (headers + body) for replay/inspection.
    Files are named <yymmdd>-<kind>-<job_id>-<seq>.json. Returns the path written.
    """
    base = base_dir or _base_dir()
    base.mkdir(parents=True, exist_ok=True)

    if job_id is None and body:
        try:
            payload = json.loads(body)
        except ValueError:
            payload = None
        if isinstance(payload, dict) and payload.get("job_id") is not None:
            job_id = str(payload["job_id"])

    stem = f"{time.strftime('%y%m%d', time.gmtime())}-{kind}-{job_id or 'noid'}"
    seq = 1
    for f in base.glob(f"{stem}-*.json"):
        tail = f.stem.rsplit("-", 1)[-1]
        if tail.isdigit():
            seq = max(seq, int(tail) + 1)

    path = base / f"{stem}-{seq}.json"
    doc: dict[str, Any] = {
        "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "kind": kind,
        "job_id": job_id,
        "headers": _redact(dict(headers)),
        "body_len": len(body or b""),
        "body_preview": (body[:256].decode("utf-8", "ignore") if body else ""),
        "body_b64": base64.b64encode(body or b"").decode("ascii"),
    }
    path.write_text(json.dumps(doc, ensure_ascii=False, indent=2), encoding="utf-8")
    return str(path)
