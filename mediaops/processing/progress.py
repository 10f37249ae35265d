# mediaops/processing/progress.py
# Provider progress is a (stage, percent) pair that may only move forward.

from typing import Optional, Tuple

STAGES = ("queued", "aligning", "segmenting", "fusing", "exporting")

# share of the overall bar each stage covers
STAGE_WEIGHTS = {
    "queued": (0.0, 5.0),
    "aligning": (5.0, 25.0),
    "segmenting": (25.0, 55.0),
    "fusing": (55.0, 85.0),
    "exporting": (85.0, 100.0),
}

STAGE_LABELS = {
    "queued": "Waiting in queue",
    "aligning": "Aligning brackets",
    "segmenting": "Detecting windows/sky",
    "fusing": "Fusing HDR",
    "exporting": "Finalizing",
}


def normalize_stage(stage: str | None) -> Optional[str]:
    s = (stage or "").strip().lower()
    return s if s in STAGE_WEIGHTS else None


def _clamp(percent: float) -> float:
    try:
        p = float(percent)
    except (TypeError, ValueError):
        return 0.0
    return max(0.0, min(100.0, p))


def advance_progress(
    current_stage: str,
    current_percent: float,
    stage: str | None,
    percent: float,
) -> Optional[Tuple[str, float]]:
    """
    Returns the new (stage, percent) if the update moves progress forward,
    None if it is unknown, equal or regressing (such updates are dropped).
    """
    new_stage = normalize_stage(stage)
    if new_stage is None:
        return None
    cur_stage = normalize_stage(current_stage) or STAGES[0]
    new_key = (STAGES.index(new_stage), _clamp(percent))
    cur_key = (STAGES.index(cur_stage), _clamp(current_percent))
    if new_key <= cur_key:
        return None
    return new_stage, new_key[1]


def overall_progress(status: str, stage: str | None, percent: float) -> float:
    if status == "completed":
        return 100.0
    s = normalize_stage(stage) or STAGES[0]
    start, end = STAGE_WEIGHTS[s]
    return round(start + (end - start) * _clamp(percent) / 100.0, 1)
