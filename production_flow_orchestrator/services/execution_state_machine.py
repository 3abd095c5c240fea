"""
ExecutionStateMachine service for Production Flow Orchestrator

Owns the lifecycle of one step attempt for one unit:
pending -> in_progress -> completed | skipped.

Recorded results are checked for required input first (a problem there is
reported to the operator and nothing is persisted), then evaluated against
the step's validation rules. A failed result on a blocking step keeps the
execution open, bumps its retry count and puts the unit on hold.
"""

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from ..models.steps import StepDefinition, MeasurementType
from ..models.unit import (
    ProductionUnit, StepExecution, ExecutionStatus, ValidationStatus, UnitStatus,
    can_transition_to, utcnow
)
from ..models.events import StepCompleted, StepBlocked, StepSkipped
from ..utils.store import ProductionStore
from ..utils.logger import get_logger, set_log_context
from ..utils.metrics import STEP_TRANSITIONS
from ..core.exceptions import StepValidationError, InvalidTransitionError
from .event_bus import EventBus

PASS_VALUES = {"pass", "passed", "ok", "true", "yes", "1"}
FAIL_VALUES = {"fail", "failed", "nok", "false", "no", "0"}


@dataclass
class ValidationOutcome:
    """Result of evaluating a recorded result against validation rules."""

    passed: bool
    failures: List[str] = field(default_factory=list)

    @property
    def status(self) -> ValidationStatus:
        return ValidationStatus.PASSED if self.passed else ValidationStatus.FAILED

    @property
    def message(self) -> Optional[str]:
        return "; ".join(self.failures) if self.failures else None


@dataclass
class RecordOutcome:
    """What ``record_result`` did with a recorded result."""

    execution: StepExecution
    validation: ValidationOutcome
    blocked: bool = False


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _parse_number(name: str, value: Any) -> float:
    if isinstance(value, bool):
        raise StepValidationError(name, "must be numeric", value)
    try:
        return float(value)
    except (TypeError, ValueError):
        raise StepValidationError(name, "must be numeric", value)


def _parse_pass_fail(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in PASS_VALUES:
        return True
    if text in FAIL_VALUES:
        return False
    raise StepValidationError(name, "must be pass or fail", value)


def check_required_inputs(step: StepDefinition,
                          value_recorded: Optional[str] = None,
                          measurement_values: Optional[Dict[str, Any]] = None,
                          barcode_scanned: Optional[str] = None,
                          batch_number: Optional[str] = None) -> Dict[str, Any]:
    """
    Check operator input against the step's input flags and measurement fields.

    Returns the measurement values with numeric and pass/fail fields
    normalized. Raises ``StepValidationError`` for missing or malformed input.
    """
    measurements = dict(measurement_values or {})

    if step.requires_barcode_scan and _is_blank(barcode_scanned):
        raise StepValidationError("barcode_scanned", f"step {step.step_number} requires a barcode scan")

    if step.requires_batch_number and _is_blank(batch_number):
        raise StepValidationError("batch_number", f"step {step.step_number} requires a batch number")

    if step.requires_value_input and _is_blank(value_recorded) and not step.measurement_fields:
        raise StepValidationError("value_recorded", f"step {step.step_number} requires a recorded value")

    for measurement in step.measurement_fields:
        value = measurements.get(measurement.name)
        if _is_blank(value):
            raise StepValidationError(measurement.name, "measurement is required")
        if measurement.type == MeasurementType.NUMBER:
            measurements[measurement.name] = _parse_number(measurement.name, value)
        elif measurement.type == MeasurementType.PASS_FAIL:
            measurements[measurement.name] = _parse_pass_fail(measurement.name, value)

    # Range rules with no numeric field to apply to are checked against the recorded value
    numeric_fields = [m for m in step.measurement_fields if m.type == MeasurementType.NUMBER]
    if not step.validation_rules.bounds.is_empty and not numeric_fields:
        if _is_blank(value_recorded):
            raise StepValidationError("value_recorded", f"step {step.step_number} requires a numeric value")
        _parse_number("value_recorded", value_recorded)

    return measurements


def validate_result(step: StepDefinition,
                    value_recorded: Optional[str] = None,
                    measurement_values: Optional[Dict[str, Any]] = None,
                    barcode_scanned: Optional[str] = None,
                    batch_number: Optional[str] = None) -> ValidationOutcome:
    """Evaluate a normalized result against the step's validation rules."""
    rules = step.validation_rules
    measurements = measurement_values or {}
    failures: List[str] = []

    # Numeric range over every numeric measurement, or the recorded value
    if not rules.bounds.is_empty:
        numeric_fields = [m.name for m in step.measurement_fields if m.type == MeasurementType.NUMBER]
        if numeric_fields:
            targets = [(name, measurements[name]) for name in numeric_fields if name in measurements]
        else:
            targets = [("value", float(value_recorded))]
        for name, value in targets:
            problem = rules.bounds.check(value)
            if problem:
                failures.append(f"{name}={value:g} {problem}")

    for name, rule in rules.field_rules.items():
        if name not in measurements or _is_blank(measurements[name]):
            failures.append(f"{name} is missing")
            continue
        try:
            value = float(measurements[name])
        except (TypeError, ValueError):
            failures.append(f"{name} is not numeric")
            continue
        problem = rule.check(value)
        if problem:
            failures.append(f"{name}={value:g} {problem}")

    present = {
        "value_recorded": value_recorded,
        "barcode_scanned": barcode_scanned,
        "batch_number": batch_number,
    }
    for name in rules.required:
        value = present[name] if name in present else measurements.get(name)
        if _is_blank(value):
            failures.append(f"{name} is required")

    if rules.barcode_pattern:
        if _is_blank(barcode_scanned):
            failures.append("barcode is required")
        elif not rules.barcode_regex.fullmatch(barcode_scanned.strip()):
            failures.append(f"barcode {barcode_scanned!r} does not match {rules.barcode_pattern}")

    if rules.pass_fail:
        pass_fail_fields = [m.name for m in step.measurement_fields if m.type == MeasurementType.PASS_FAIL]
        if pass_fail_fields:
            for name in pass_fail_fields:
                if measurements.get(name) is not True:
                    failures.append(f"{name} failed")
        elif _is_blank(value_recorded) or str(value_recorded).strip().lower() not in PASS_VALUES:
            failures.append("test failed")

    return ValidationOutcome(passed=not failures, failures=failures)


class ExecutionStateMachine:
    """
    Drives step executions through their states.

    Holds no per-unit state; the store's active-execution uniqueness is the
    concurrency guard for ``begin``.
    """

    def __init__(self, store: ProductionStore, event_bus: Optional[EventBus] = None):
        """
        Initialize ExecutionStateMachine.

        Args:
            store: Persistence for units and executions
            event_bus: Channel for StepCompleted/StepBlocked/StepSkipped events
        """
        self.store = store
        self.event_bus = event_bus

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="execution_state_machine")

    def _transition(self, execution: StepExecution, target: ExecutionStatus):
        if not can_transition_to(execution.status, target):
            raise InvalidTransitionError(execution.execution_id, execution.status.value, target.value)
        execution.status = target

    async def _publish(self, event):
        if self.event_bus is not None:
            await self.event_bus.publish(event)

    async def begin(self, unit: ProductionUnit, step: StepDefinition,
                    execution_id: Optional[str] = None) -> StepExecution:
        """
        Create an execution for (unit, step) and move it to in_progress.

        Raises:
            AlreadyActiveError: a non-terminal execution already exists
        """
        execution = StepExecution(
            execution_id=execution_id or str(uuid.uuid4()),
            unit_id=unit.unit_id,
            step_number=step.step_number
        )
        self._transition(execution, ExecutionStatus.IN_PROGRESS)
        execution.started_at = utcnow()

        execution = await self.store.insert_execution(execution)

        if unit.status == UnitStatus.PLANNED:
            unit.status = UnitStatus.IN_PROGRESS
            await self.store.update_unit(unit)

        STEP_TRANSITIONS.labels(unit.product_type, ExecutionStatus.IN_PROGRESS.value).inc()
        self.logger.info("Step execution started", extra={
            "unit_id": unit.unit_id,
            "serial_number": unit.serial_number,
            "step_number": step.step_number,
            "execution_id": execution.execution_id
        })
        return execution

    async def record_result(self, unit: ProductionUnit, execution: StepExecution, step: StepDefinition,
                            value_recorded: Optional[str] = None,
                            measurement_values: Optional[Dict[str, Any]] = None,
                            barcode_scanned: Optional[str] = None,
                            batch_number: Optional[str] = None,
                            notes: Optional[str] = None,
                            operator_initials: Optional[str] = None) -> RecordOutcome:
        """
        Record an operator result on an open execution.

        Raises:
            InvalidTransitionError: the execution is already terminal
            StepValidationError: required input is missing or malformed
        """
        if execution.is_terminal:
            raise InvalidTransitionError(
                execution.execution_id, execution.status.value, ExecutionStatus.COMPLETED.value
            )
        if execution.step_number != step.step_number:
            raise StepValidationError(
                "step_number", f"execution is for step {execution.step_number}", step.step_number
            )

        measurements = check_required_inputs(
            step, value_recorded, measurement_values, barcode_scanned, batch_number
        )
        outcome = validate_result(step, value_recorded, measurements, barcode_scanned, batch_number)

        execution.value_recorded = str(value_recorded) if value_recorded is not None else None
        execution.measurement_values = measurements
        execution.barcode_scanned = barcode_scanned
        execution.batch_number = batch_number
        execution.notes = notes
        execution.operator_initials = operator_initials
        execution.validation_status = outcome.status
        execution.validation_message = outcome.message

        if not outcome.passed and step.blocks_on_failure:
            return await self._block(unit, execution, step, outcome)

        self._transition(execution, ExecutionStatus.COMPLETED)
        execution.completed_at = utcnow()
        await self.store.update_execution(execution)

        unit_changed = False
        if batch_number and step.requires_batch_number:
            unit.batch_number = batch_number
            unit_changed = True
        if operator_initials:
            unit.operator_initials = operator_initials
            unit_changed = True
        if unit.status in (UnitStatus.PLANNED, UnitStatus.ON_HOLD):
            unit.status = UnitStatus.IN_PROGRESS
            unit_changed = True
        if unit_changed:
            await self.store.update_unit(unit)

        STEP_TRANSITIONS.labels(unit.product_type, ExecutionStatus.COMPLETED.value).inc()
        self.logger.info("Step execution completed", extra={
            "unit_id": unit.unit_id,
            "step_number": step.step_number,
            "execution_id": execution.execution_id,
            "validation_status": outcome.status.value,
            "validation_message": outcome.message
        })

        await self._publish(StepCompleted(
            unit_id=unit.unit_id,
            serial_number=unit.serial_number,
            step_number=step.step_number,
            validation_status=outcome.status.value,
            measurement_values=measurements,
            value_recorded=execution.value_recorded
        ))
        return RecordOutcome(execution=execution, validation=outcome)

    async def _block(self, unit: ProductionUnit, execution: StepExecution, step: StepDefinition,
                     outcome: ValidationOutcome) -> RecordOutcome:
        execution.retry_count += 1
        await self.store.update_execution(execution)

        unit.status = UnitStatus.ON_HOLD
        await self.store.update_unit(unit)

        STEP_TRANSITIONS.labels(unit.product_type, "blocked").inc()
        self.logger.warning("Step failed validation, unit on hold", extra={
            "unit_id": unit.unit_id,
            "step_number": step.step_number,
            "execution_id": execution.execution_id,
            "retry_count": execution.retry_count,
            "validation_message": outcome.message
        })

        await self._publish(StepBlocked(
            unit_id=unit.unit_id,
            serial_number=unit.serial_number,
            step_number=step.step_number,
            retry_count=execution.retry_count,
            validation_message=outcome.message
        ))
        return RecordOutcome(execution=execution, validation=outcome, blocked=True)

    async def skip(self, unit: ProductionUnit, step: StepDefinition, reason: str) -> StepExecution:
        """Record ``step`` as skipped for ``unit`` without it ever entering in_progress."""
        execution = StepExecution(
            execution_id=str(uuid.uuid4()),
            unit_id=unit.unit_id,
            step_number=step.step_number,
            skip_reason=reason
        )
        self._transition(execution, ExecutionStatus.SKIPPED)
        execution.completed_at = utcnow()
        execution = await self.store.insert_execution(execution)

        STEP_TRANSITIONS.labels(unit.product_type, ExecutionStatus.SKIPPED.value).inc()
        self.logger.info("Step skipped", extra={
            "unit_id": unit.unit_id,
            "step_number": step.step_number,
            "reason": reason
        })

        await self._publish(StepSkipped(
            unit_id=unit.unit_id,
            serial_number=unit.serial_number,
            step_number=step.step_number,
            reason=reason
        ))
        return execution

    async def bypass(self, unit: ProductionUnit, execution: StepExecution, reason: str) -> StepExecution:
        """Close an open execution as skipped on explicit operator request."""
        self._transition(execution, ExecutionStatus.SKIPPED)
        execution.skip_reason = reason
        execution.completed_at = utcnow()
        await self.store.update_execution(execution)

        if unit.status == UnitStatus.ON_HOLD:
            unit.status = UnitStatus.IN_PROGRESS
            await self.store.update_unit(unit)

        STEP_TRANSITIONS.labels(unit.product_type, ExecutionStatus.SKIPPED.value).inc()
        self.logger.info("Step bypassed", extra={
            "unit_id": unit.unit_id,
            "step_number": execution.step_number,
            "execution_id": execution.execution_id,
            "reason": reason
        })

        await self._publish(StepSkipped(
            unit_id=unit.unit_id,
            serial_number=unit.serial_number,
            step_number=execution.step_number,
            reason=reason
        ))
        return execution

    async def supersede(self, executions: Sequence[StepExecution], replaced_by: str) -> List[StepExecution]:
        """
        Mark executions as superseded by a rewind.

        Open executions are closed first (in_progress as a failed completion,
        pending as skipped) so no superseded row stays non-terminal. Rows are
        kept for audit, never deleted.
        """
        superseded = []
        for execution in executions:
            if execution.is_superseded:
                continue
            if execution.status == ExecutionStatus.IN_PROGRESS:
                self._transition(execution, ExecutionStatus.COMPLETED)
                execution.completed_at = utcnow()
                if execution.validation_status is None:
                    execution.validation_status = ValidationStatus.FAILED
            elif execution.status == ExecutionStatus.PENDING:
                self._transition(execution, ExecutionStatus.SKIPPED)
                execution.completed_at = utcnow()
                execution.skip_reason = "superseded"
            execution.superseded_by = replaced_by
            await self.store.update_execution(execution)
            superseded.append(execution)

        if superseded:
            self.logger.info("Executions superseded", extra={
                "unit_id": superseded[0].unit_id,
                "replaced_by": replaced_by,
                "execution_ids": [e.execution_id for e in superseded]
            })
        return superseded
