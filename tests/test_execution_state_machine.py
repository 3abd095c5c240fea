"""
Tests for step result validation and execution transitions.
"""

import pytest

from production_flow_orchestrator.core.exceptions import (
    AlreadyActiveError, InvalidTransitionError, StepValidationError
)
from production_flow_orchestrator.models.steps import FieldRule, StepDefinition
from production_flow_orchestrator.models.unit import (
    ExecutionStatus, UnitStatus, ValidationStatus, can_transition_to
)
from production_flow_orchestrator.services.execution_state_machine import (
    ExecutionStateMachine, check_required_inputs, validate_result
)


def _step(**overrides):
    data = {"product_type": "SENSOR", "step_number": 1}
    data.update(overrides)
    return StepDefinition.from_dict(data)


class TestFieldRule:
    def test_max_alone_is_exclusive(self):
        rule = FieldRule.from_dict({"max": 5})
        assert rule.check(4.9) is None
        assert rule.check(5) is not None

    def test_range_is_inclusive(self):
        rule = FieldRule.from_dict({"min": 1, "max": 5})
        assert rule.check(1) is None
        assert rule.check(5) is None
        assert rule.check(5.1) is not None

    def test_exclusive_flag(self):
        rule = FieldRule.from_dict({"min": 1, "max": 3.5, "exclusive": True})
        assert rule.check(1) is not None
        assert rule.check(3.5) is not None
        assert rule.check(2) is None

    def test_operator_form(self):
        rule = FieldRule.from_dict({"min_value": 0, "operator": ">"})
        assert rule.check(0) is not None
        assert rule.check(0.1) is None


class TestRequiredInputs:
    def test_missing_barcode(self):
        with pytest.raises(StepValidationError) as exc:
            check_required_inputs(_step(requires_barcode_scan=True))
        assert exc.value.details["field"] == "barcode_scanned"

    def test_missing_batch_number(self):
        with pytest.raises(StepValidationError):
            check_required_inputs(_step(requires_batch_number=True), batch_number="  ")

    def test_missing_measurement(self):
        step = _step(measurement_fields=[{"name": "torque", "type": "number"}])
        with pytest.raises(StepValidationError):
            check_required_inputs(step, measurement_values={})

    def test_non_numeric_measurement(self):
        step = _step(measurement_fields=[{"name": "torque", "type": "number"}])
        with pytest.raises(StepValidationError):
            check_required_inputs(step, measurement_values={"torque": "tight"})

    def test_measurements_are_normalized(self):
        step = _step(measurement_fields=[
            {"name": "torque", "type": "number"},
            {"name": "seal", "type": "boolean"},
        ])
        values = check_required_inputs(step, measurement_values={"torque": "4.5", "seal": "pass"})
        assert values == {"torque": 4.5, "seal": True}


class TestValidateResult:
    def test_no_rules_passes(self):
        assert validate_result(_step()).passed

    def test_bounds_apply_to_recorded_value_without_numeric_fields(self):
        step = _step(validation_rules={"min": 10, "max": 20})
        assert validate_result(step, value_recorded="15").passed
        outcome = validate_result(step, value_recorded="25")
        assert not outcome.passed
        assert outcome.status == ValidationStatus.FAILED

    def test_bounds_apply_to_every_numeric_field(self):
        step = _step(
            measurement_fields=[{"name": "a"}, {"name": "b"}],
            validation_rules={"min": 0, "max": 1},
        )
        outcome = validate_result(step, measurement_values={"a": 0.5, "b": 3.0})
        assert not outcome.passed
        assert "b=3" in outcome.message

    def test_field_rules(self):
        step = _step(
            measurement_fields=[{"name": "gap"}],
            validation_rules={"fields": {"gap": {"max": 0.2}}},
        )
        assert validate_result(step, measurement_values={"gap": 0.1}).passed
        assert not validate_result(step, measurement_values={"gap": 0.2}).passed

    def test_pass_fail_on_recorded_value(self):
        step = _step(validation_rules={"pass_fail": True})
        assert validate_result(step, value_recorded="PASS").passed
        assert not validate_result(step, value_recorded="fail").passed

    def test_barcode_pattern(self):
        step = _step(validation_rules={"barcode_pattern": r"Q-\d{4}"})
        assert validate_result(step, barcode_scanned="Q-1234").passed
        assert not validate_result(step, barcode_scanned="X-1").passed

    def test_required_list_reports_failures(self):
        step = _step(validation_rules={"required": ["batch_number"]})
        outcome = validate_result(step)
        assert not outcome.passed
        assert outcome.message == "batch_number is required"


def test_execution_transition_table():
    assert can_transition_to(ExecutionStatus.PENDING, ExecutionStatus.IN_PROGRESS)
    assert can_transition_to(ExecutionStatus.IN_PROGRESS, ExecutionStatus.COMPLETED)
    assert not can_transition_to(ExecutionStatus.COMPLETED, ExecutionStatus.IN_PROGRESS)
    assert not can_transition_to(ExecutionStatus.SKIPPED, ExecutionStatus.COMPLETED)


@pytest.mark.asyncio
async def test_begin_twice_raises_already_active(store, graphs, make_unit):
    machine = ExecutionStateMachine(store)
    unit = await make_unit()
    step = graphs["SENSOR"].get(1)

    first = await machine.begin(unit, step)
    assert first.status == ExecutionStatus.IN_PROGRESS
    assert first.started_at is not None

    with pytest.raises(AlreadyActiveError):
        await machine.begin(unit, step)


@pytest.mark.asyncio
async def test_record_on_terminal_execution_raises(store, graphs, make_unit):
    machine = ExecutionStateMachine(store)
    unit = await make_unit()
    step = graphs["SENSOR"].get(1)

    execution = await machine.begin(unit, step)
    await machine.record_result(unit, execution, step)

    with pytest.raises(InvalidTransitionError):
        await machine.record_result(unit, execution, step)


@pytest.mark.asyncio
async def test_invalid_input_leaves_execution_untouched(store, graphs, make_unit):
    machine = ExecutionStateMachine(store)
    unit = await make_unit("MLA")
    step = graphs["MLA"].get(4)

    execution = await machine.begin(unit, step)
    with pytest.raises(StepValidationError):
        await machine.record_result(unit, execution, step)

    stored = await store.get_execution(execution.execution_id)
    assert stored.status == ExecutionStatus.IN_PROGRESS
    assert stored.validation_status is None


@pytest.mark.asyncio
async def test_blocking_failure_keeps_execution_open(store, graphs, make_unit):
    machine = ExecutionStateMachine(store)
    unit = await make_unit()
    step = graphs["SENSOR"].get(5)

    execution = await machine.begin(unit, step)
    outcome = await machine.record_result(unit, execution, step, measurement_values={"pressure": 30})

    assert outcome.blocked
    stored = await store.get_execution(execution.execution_id)
    assert stored.status == ExecutionStatus.IN_PROGRESS
    assert stored.validation_status == ValidationStatus.FAILED
    assert stored.retry_count == 1
    assert (await store.get_unit(unit.unit_id)).status == UnitStatus.ON_HOLD


@pytest.mark.asyncio
async def test_skip_never_enters_in_progress(store, graphs, make_unit):
    machine = ExecutionStateMachine(store)
    unit = await make_unit()

    execution = await machine.skip(unit, graphs["SENSOR"].get(3), reason="condition not met")

    assert execution.status == ExecutionStatus.SKIPPED
    assert execution.started_at is None
    assert await store.get_active_execution(unit.unit_id, 3) is None
