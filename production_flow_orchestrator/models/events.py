"""
Domain events published by the step execution model.

Events are placed on the internal event bus and consumed by the automation
rule engine and by webhook subscriptions keyed on ``event_type``.
"""

from datetime import datetime
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field

from .unit import utcnow
from .automation import TriggerEvent


@dataclass
class DomainEvent:
    """Base class for step-level domain events."""

    event_type = "domain_event"

    unit_id: str
    serial_number: str

    def _payload_fields(self) -> Dict[str, Any]:
        return {}

    def to_payload(self) -> Dict[str, Any]:
        payload = {
            "unit_id": self.unit_id,
            "serial_number": self.serial_number,
            "timestamp": self.timestamp.isoformat()
        }
        payload.update(self._payload_fields())
        return payload

    def to_trigger_event(self) -> TriggerEvent:
        """Wrap the event for the rule engine; domain events are their own trigger source."""
        return TriggerEvent(
            source_id=self.event_type,
            event_type=self.event_type,
            payload=self.to_payload()
        )


@dataclass
class StepCompleted(DomainEvent):
    event_type = "step_completed"

    step_number: int
    validation_status: Optional[str] = None
    measurement_values: Dict[str, Any] = field(default_factory=dict)
    value_recorded: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    def _payload_fields(self) -> Dict[str, Any]:
        return {
            "step_number": self.step_number,
            "validation_status": self.validation_status,
            "measurement_values": self.measurement_values,
            "value_recorded": self.value_recorded
        }


@dataclass
class StepBlocked(DomainEvent):
    event_type = "step_blocked"

    step_number: int
    retry_count: int = 0
    validation_message: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    def _payload_fields(self) -> Dict[str, Any]:
        return {
            "step_number": self.step_number,
            "retry_count": self.retry_count,
            "validation_message": self.validation_message
        }


@dataclass
class StepSkipped(DomainEvent):
    event_type = "step_skipped"

    step_number: int
    reason: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    def _payload_fields(self) -> Dict[str, Any]:
        return {"step_number": self.step_number, "reason": self.reason}


@dataclass
class UnitRestarted(DomainEvent):
    event_type = "unit_restarted"

    failed_step: int
    restart_step: int
    superseded: List[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=utcnow)

    def _payload_fields(self) -> Dict[str, Any]:
        return {
            "failed_step": self.failed_step,
            "restart_step": self.restart_step,
            "superseded": self.superseded
        }


@dataclass
class UnitCompleted(DomainEvent):
    event_type = "unit_completed"

    work_order_id: str
    product_type: str
    final_step: int
    timestamp: datetime = field(default_factory=utcnow)

    def _payload_fields(self) -> Dict[str, Any]:
        return {
            "work_order_id": self.work_order_id,
            "product_type": self.product_type,
            "final_step": self.final_step
        }


EVENT_TYPES = {
    cls.event_type: cls
    for cls in (StepCompleted, StepBlocked, StepSkipped, UnitRestarted, UnitCompleted)
}
