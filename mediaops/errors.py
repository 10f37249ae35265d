#=================================================================
# mediaops/errors.py
# Exception taxonomy for the orchestrator.
#
#   caller errors  -> non-retryable, surfaced to the request immediately
#   upstream       -> provider failures, retried only by explicit re-submission
#   fatal          -> event log write failure, aborts the unit of work
#=================================================================

from typing import Any, Dict, Optional


class OrchestratorError(Exception):
    status_code: int = 400
    code: str = "orchestrator_error"
    retryable: bool = False

    def __init__(self, detail: str = "", **context: Any):
        super().__init__(detail or self.code)
        self.detail = detail or self.code
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"ok": False, "code": self.code, "detail": self.detail}
        if self.context:
            out["context"] = self.context
        return out


# ---------------------------
# Caller errors
# ---------------------------

class CallerError(OrchestratorError):
    pass


class NotFound(CallerError):
    status_code = 404
    code = "not_found"


class InvalidTransition(CallerError):
    status_code = 409
    code = "invalid_transition"

    def __init__(self, order_id: str, from_status: str, to_status: str):
        super().__init__(
            f"order {order_id}: {from_status} -> {to_status} is not allowed",
            order_id=order_id, from_status=from_status, to_status=to_status,
        )


class InsufficientAssets(CallerError):
    status_code = 422
    code = "insufficient_assets"


class UnknownAssets(CallerError):
    status_code = 422
    code = "unknown_assets"


class BatchLocked(CallerError):
    status_code = 409
    code = "batch_locked"


class AlreadyClaimed(CallerError):
    status_code = 409
    code = "already_claimed"


class WorkloadExceeded(CallerError):
    status_code = 429
    code = "workload_exceeded"


class IncompleteEdit(CallerError):
    status_code = 422
    code = "incomplete_edit"


class InvalidAssignmentState(CallerError):
    status_code = 409
    code = "invalid_assignment_state"


class InvalidReview(CallerError):
    status_code = 422
    code = "invalid_review"


class InvalidRule(CallerError):
    status_code = 422
    code = "invalid_rule"


class ConcurrentModification(CallerError):
    """Compare-and-set kept losing to other writers; safe to re-submit."""
    status_code = 409
    code = "concurrent_modification"
    retryable = True


# ---------------------------
# Upstream failures
# ---------------------------

class UpstreamError(OrchestratorError):
    status_code = 502
    code = "upstream_error"
    retryable = True


class ProcessingSubmissionFailed(UpstreamError):
    code = "processing_submission_failed"

    def __init__(self, job_id: str, reason: str):
        super().__init__(f"processing job {job_id} was not accepted: {reason}", job_id=job_id)
        self.job_id = job_id


class ProviderError(UpstreamError):
    """Raised by the provider client for transport or non-2xx responses."""
    code = "provider_error"


class DispatchFailed(UpstreamError):
    """Messaging collaborator rejected or never received a notification."""
    code = "dispatch_failed"


# ---------------------------
# Fatal / operational
# ---------------------------

class EventLogWriteError(OrchestratorError):
    status_code = 500
    code = "event_log_write_failed"

    def __init__(self, detail: str, cause: Optional[BaseException] = None):
        super().__init__(detail)
        self.cause = cause
