#===========================================================================
# mediaops/notifications/triggers.py
# Trigger conditions as a tagged union keyed by `trigger_type`.
# Each variant carries only its own fields; absent filters are wildcards.
#===========================================================================

from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from mediaops.errors import InvalidRule
from mediaops.models.events import EventType
from mediaops.models.orders import OrderStatus

TRIGGER_TYPES = (
    "status_change",
    "time_delay",
    "schedule",
    "integration_complete",
    "integration_failed",
    "escalation",
)

CHANNELS = ("email", "sms")
AUDIENCES = ("agent", "operations")

SCHEDULE_CADENCES = ("hourly", "daily", "weekly", "monthly")


def _check_status(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    v = str(v).strip().lower()
    if v not in OrderStatus.ALL:
        raise ValueError(f"unknown order status {v!r}")
    return v


class _Trigger(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    def matches(self, event: Dict[str, Any]) -> bool:
        return False


class StatusChangeTrigger(_Trigger):
    trigger_type: Literal["status_change"] = "status_change"
    from_status: Optional[str] = Field(None, validation_alias=AliasChoices("from_status", "from"))
    to_status: Optional[str] = Field(None, validation_alias=AliasChoices("to_status", "to"))

    @field_validator("from_status", "to_status")
    @classmethod
    def known_status(cls, v):
        return _check_status(v)

    def matches(self, event: Dict[str, Any]) -> bool:
        if event.get("event_type") != EventType.STATUS_CHANGED:
            return False
        p = event.get("payload") or {}
        if self.from_status is not None and p.get("from_status") != self.from_status:
            return False
        if self.to_status is not None and p.get("to_status") != self.to_status:
            return False
        return True


class TimeDelayTrigger(_Trigger):
    """Evaluated by the sweep only; never matches an event."""
    trigger_type: Literal["time_delay"] = "time_delay"
    delay_minutes: int = Field(..., ge=1)
    status: Optional[str] = None

    @field_validator("status")
    @classmethod
    def known_status(cls, v):
        return _check_status(v)


class ScheduleTrigger(_Trigger):
    # fired by an external scheduler, nothing per-order
    trigger_type: Literal["schedule"] = "schedule"
    cadence: Optional[str] = None

    @field_validator("cadence")
    @classmethod
    def known_cadence(cls, v):
        if v is not None and str(v).strip().lower() not in SCHEDULE_CADENCES:
            raise ValueError(f"cadence must be one of {', '.join(SCHEDULE_CADENCES)}")
        return v.strip().lower() if v is not None else v


class _IntegrationTrigger(_Trigger):
    integration_type: Optional[str] = None

    def _matches(self, event: Dict[str, Any], event_type: str) -> bool:
        if event.get("event_type") != event_type:
            return False
        if self.integration_type is None:
            return True
        return (event.get("payload") or {}).get("integration_type") == self.integration_type


class IntegrationCompleteTrigger(_IntegrationTrigger):
    trigger_type: Literal["integration_complete"] = "integration_complete"

    def matches(self, event: Dict[str, Any]) -> bool:
        return self._matches(event, EventType.PROCESSING_COMPLETED)


class IntegrationFailedTrigger(_IntegrationTrigger):
    trigger_type: Literal["integration_failed"] = "integration_failed"

    def matches(self, event: Dict[str, Any]) -> bool:
        return self._matches(event, EventType.PROCESSING_FAILED)


class EscalationTrigger(_Trigger):
    trigger_type: Literal["escalation"] = "escalation"

    def matches(self, event: Dict[str, Any]) -> bool:
        return event.get("event_type") == EventType.QC_ESCALATED


Trigger = Annotated[
    Union[
        StatusChangeTrigger,
        TimeDelayTrigger,
        ScheduleTrigger,
        IntegrationCompleteTrigger,
        IntegrationFailedTrigger,
        EscalationTrigger,
    ],
    Field(discriminator="trigger_type"),
]

_adapter = TypeAdapter(Trigger)


def parse_trigger(trigger_type: str, conditions: Optional[Dict[str, Any]] = None):
    """Validate (trigger_type, conditions) into one trigger variant; InvalidRule on bad input."""
    data = dict(conditions or {})
    data["trigger_type"] = trigger_type
    try:
        return _adapter.validate_python(data)
    except ValidationError as e:
        errors = [
            {"loc": ".".join(str(x) for x in err.get("loc", ())), "msg": err.get("msg")}
            for err in e.errors()
        ]
        raise InvalidRule(f"invalid trigger conditions for {trigger_type!r}", errors=errors) from e


def dump_trigger(trigger) -> Dict[str, Any]:
    return trigger.model_dump(exclude_none=True)
