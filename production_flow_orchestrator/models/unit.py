"""
Production unit data models for Production Flow Orchestrator

Defines work orders, the units ("work order items") they contain, and the
step executions that record each unit's progress through its step graph.
"""

from enum import Enum
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class UnitStatus(Enum):
    """Production unit status enumeration."""
    PLANNED = "planned"
    IN_PROGRESS = "in_progress"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class WorkOrderStatus(Enum):
    """Work order status enumeration."""
    PLANNED = "planned"
    IN_PROGRESS = "in_progress"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ExecutionStatus(Enum):
    """Step execution status enumeration."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"


class ValidationStatus(Enum):
    """Outcome of validating a recorded step result."""
    PASSED = "passed"
    FAILED = "failed"


@dataclass
class WorkOrder:
    """A batch of units of one product type."""

    work_order_id: str
    wo_number: str
    product_type: str
    batch_size: int = 1
    status: WorkOrderStatus = WorkOrderStatus.PLANNED
    notes: Optional[str] = None
    scheduled_date: Optional[str] = None
    created_by: str = "system"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert work order to dictionary for serialization."""
        return {
            "work_order_id": self.work_order_id,
            "wo_number": self.wo_number,
            "product_type": self.product_type,
            "batch_size": self.batch_size,
            "status": self.status.value,
            "notes": self.notes,
            "scheduled_date": self.scheduled_date,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkOrder":
        """Create work order from dictionary."""
        data = dict(data)
        for field_name in ["created_at", "updated_at"]:
            if data.get(field_name):
                data[field_name] = _parse_datetime(data[field_name])
        if "status" in data:
            data["status"] = WorkOrderStatus(data["status"])
        return cls(**data)


@dataclass
class ProductionUnit:
    """One physical item being manufactured, tracked by serial number."""

    # Primary identification
    unit_id: str
    serial_number: str
    work_order_id: str
    product_type: str
    position_in_batch: int = 1

    # Progress pointer, written only by the progression controller
    current_step: int = 1
    status: UnitStatus = UnitStatus.PLANNED

    batch_number: Optional[str] = None
    operator_initials: Optional[str] = None

    # Downstream flags
    label_printed: bool = False
    certificate_generated: bool = False
    quality_approved: bool = False

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert unit to dictionary for serialization."""
        return {
            "unit_id": self.unit_id,
            "serial_number": self.serial_number,
            "work_order_id": self.work_order_id,
            "product_type": self.product_type,
            "position_in_batch": self.position_in_batch,
            "current_step": self.current_step,
            "status": self.status.value,
            "batch_number": self.batch_number,
            "operator_initials": self.operator_initials,
            "label_printed": self.label_printed,
            "certificate_generated": self.certificate_generated,
            "quality_approved": self.quality_approved,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProductionUnit":
        """Create unit from dictionary."""
        data = dict(data)
        for field_name in ["created_at", "updated_at"]:
            if data.get(field_name):
                data[field_name] = _parse_datetime(data[field_name])
        if "status" in data:
            data["status"] = UnitStatus(data["status"])
        return cls(**data)

    def is_finished(self) -> bool:
        return self.status in (UnitStatus.COMPLETED, UnitStatus.CANCELLED)


@dataclass
class StepExecution:
    """One attempt record of a unit at a step."""

    execution_id: str
    unit_id: str
    step_number: int
    status: ExecutionStatus = ExecutionStatus.PENDING

    # Append order within the unit, assigned by the store
    sequence: int = 0
    retry_count: int = 0

    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    # Recorded result
    value_recorded: Optional[str] = None
    measurement_values: Dict[str, Any] = field(default_factory=dict)
    validation_status: Optional[ValidationStatus] = None
    validation_message: Optional[str] = None
    barcode_scanned: Optional[str] = None
    batch_number: Optional[str] = None
    notes: Optional[str] = None
    operator_initials: Optional[str] = None

    # Audit
    skip_reason: Optional[str] = None
    superseded_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_EXECUTION_STATUSES

    @property
    def is_superseded(self) -> bool:
        return self.superseded_by is not None

    @property
    def passed(self) -> bool:
        return self.status == ExecutionStatus.COMPLETED and self.validation_status != ValidationStatus.FAILED

    def to_dict(self) -> Dict[str, Any]:
        """Convert execution to dictionary for serialization."""
        return {
            "execution_id": self.execution_id,
            "unit_id": self.unit_id,
            "step_number": self.step_number,
            "status": self.status.value,
            "sequence": self.sequence,
            "retry_count": self.retry_count,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "value_recorded": self.value_recorded,
            "measurement_values": self.measurement_values,
            "validation_status": self.validation_status.value if self.validation_status else None,
            "validation_message": self.validation_message,
            "barcode_scanned": self.barcode_scanned,
            "batch_number": self.batch_number,
            "notes": self.notes,
            "operator_initials": self.operator_initials,
            "skip_reason": self.skip_reason,
            "superseded_by": self.superseded_by,
            "created_at": _iso(self.created_at)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepExecution":
        """Create execution from dictionary."""
        data = dict(data)
        for field_name in ["started_at", "completed_at", "created_at"]:
            if data.get(field_name):
                data[field_name] = _parse_datetime(data[field_name])
        if "status" in data:
            data["status"] = ExecutionStatus(data["status"])
        if data.get("validation_status"):
            data["validation_status"] = ValidationStatus(data["validation_status"])
        data["measurement_values"] = data.get("measurement_values") or {}
        return cls(**data)


TERMINAL_EXECUTION_STATUSES = (ExecutionStatus.COMPLETED, ExecutionStatus.SKIPPED)


# Execution status transition rules
EXECUTION_STATUS_TRANSITIONS = {
    ExecutionStatus.PENDING: [ExecutionStatus.IN_PROGRESS, ExecutionStatus.SKIPPED],
    ExecutionStatus.IN_PROGRESS: [ExecutionStatus.COMPLETED, ExecutionStatus.SKIPPED],
    ExecutionStatus.COMPLETED: [],  # Terminal state
    ExecutionStatus.SKIPPED: []  # Terminal state
}

# Unit status transition rules
UNIT_STATUS_TRANSITIONS = {
    UnitStatus.PLANNED: [UnitStatus.IN_PROGRESS, UnitStatus.ON_HOLD, UnitStatus.COMPLETED, UnitStatus.CANCELLED],
    UnitStatus.IN_PROGRESS: [UnitStatus.ON_HOLD, UnitStatus.COMPLETED, UnitStatus.CANCELLED],
    UnitStatus.ON_HOLD: [UnitStatus.IN_PROGRESS, UnitStatus.COMPLETED, UnitStatus.CANCELLED],
    UnitStatus.COMPLETED: [],  # Terminal state
    UnitStatus.CANCELLED: []  # Terminal state
}


def can_transition_to(current_status: ExecutionStatus, target_status: ExecutionStatus) -> bool:
    """Check if an execution can transition from current status to target status."""
    return target_status in EXECUTION_STATUS_TRANSITIONS.get(current_status, [])


def get_valid_transitions(current_status: ExecutionStatus) -> List[ExecutionStatus]:
    """Get list of valid status transitions from current status."""
    return EXECUTION_STATUS_TRANSITIONS.get(current_status, [])


def can_unit_transition_to(current_status: UnitStatus, target_status: UnitStatus) -> bool:
    """Check if a unit can transition from current status to target status."""
    return current_status == target_status or target_status in UNIT_STATUS_TRANSITIONS.get(current_status, [])
