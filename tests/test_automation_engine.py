"""
Tests for automation rule evaluation, field mapping and action execution.
"""

import asyncio

import pytest
import pytest_asyncio

from production_flow_orchestrator.core.config import AutomationConfig
from production_flow_orchestrator.core.exceptions import RuleEvaluationError
from production_flow_orchestrator.models.automation import ActionType, AutomationRule, TriggerEvent
from production_flow_orchestrator.models.unit import UnitStatus, WorkOrder
from production_flow_orchestrator.services.automation_engine import (
    AutomationRuleEngine, evaluate_condition, resolve_mapping
)
from production_flow_orchestrator.services.execution_state_machine import ExecutionStateMachine
from production_flow_orchestrator.services.step_resolver import StepGraphResolver
from production_flow_orchestrator.services.unit_progression import UnitProgressionController
from production_flow_orchestrator.utils.memory_store import InMemoryDatabase


def _rule(name, action_type="log_activity", source_id="erp", **overrides):
    data = {
        "name": name,
        "source_id": source_id,
        "action_type": action_type,
    }
    data.update(overrides)
    return AutomationRule.from_dict(data)


class FakeDispatcher:
    def __init__(self):
        self.enqueued = []
        self.dispatched = []

    async def enqueue(self, config, event_type, payload):
        self.enqueued.append((config.webhook_id, event_type, payload))
        return "delivery-1"

    async def dispatch_event(self, event_type, payload):
        self.dispatched.append((event_type, payload))
        return ["delivery-2", "delivery-3"]


@pytest_asyncio.fixture
async def engine(store, controller):
    return AutomationRuleEngine(store, progression=controller, config=AutomationConfig())


class TestEvaluateCondition:
    payload = {"order": {"status": "approved", "qty": "12", "tags": ["rush", "export"]}, "flag": True}

    def test_empty_conditions_match(self):
        assert evaluate_condition(None, self.payload)
        assert evaluate_condition({}, self.payload)

    def test_loose_equality(self):
        assert evaluate_condition({"field": "order.qty", "operator": "==", "value": 12}, self.payload)
        assert evaluate_condition({"field": "flag", "operator": "equals", "value": "TRUE"}, self.payload)

    def test_numeric_comparison(self):
        assert evaluate_condition({"field": "order.qty", "operator": "gt", "value": 10}, self.payload)
        assert not evaluate_condition({"field": "order.qty", "operator": "<", "value": "5"}, self.payload)

    def test_boolean_composition(self):
        node = {"all": [
            {"field": "order.status", "value": "approved"},
            {"any": [
                {"field": "order.tags", "operator": "contains", "value": "rush"},
                {"field": "order.priority", "operator": "exists"},
            ]},
            {"not": {"field": "order.status", "operator": "in", "value": ["cancelled", "void"]}},
        ]}
        assert evaluate_condition(node, self.payload)

    def test_missing_field(self):
        assert not evaluate_condition({"field": "order.missing", "value": "x"}, self.payload)
        assert evaluate_condition({"field": "order.missing", "operator": "not_equals", "value": "x"}, self.payload)
        assert evaluate_condition({"field": "order.missing", "operator": "not_in", "value": ["x"]}, self.payload)

    def test_disabled_leaf_matches(self):
        assert evaluate_condition({"field": "order.status", "value": "void", "enabled": False}, self.payload)

    @pytest.mark.parametrize("node", [
        {"field": "order.status", "operator": "matches", "value": "a"},
        {"field": "order.status", "operator": "in", "value": "approved"},
        {"operator": "equals", "value": "a"},
        "order.status",
    ])
    def test_malformed_conditions_raise(self, node):
        with pytest.raises(RuleEvaluationError):
            evaluate_condition(node, self.payload)


class TestResolveMapping:
    event = TriggerEvent(
        source_id="erp",
        event_type="order_created",
        payload={"order": {"number": "SO-7", "qty": 3, "lines": [{"sku": "ABC"}]}},
        idempotency_key="k-1"
    )

    def test_whole_template_keeps_type(self):
        assert resolve_mapping("{{event.order.qty}}", self.event) == 3

    def test_embedded_template_interpolates(self):
        assert resolve_mapping("Order {{order.number}} x{{order.qty}}", self.event) == "Order SO-7 x3"

    def test_reference_and_index(self):
        assert resolve_mapping("$.order.lines[0].sku", self.event) == "ABC"

    def test_trigger_envelope(self):
        assert resolve_mapping("{{trigger.source_id}}", self.event) == "erp"
        assert resolve_mapping("{{trigger.idempotency_key}}", self.event) == "k-1"

    def test_default_for_missing_path(self):
        assert resolve_mapping({"path": "order.notes", "default": "none"}, self.event) == "none"

    def test_literal(self):
        assert resolve_mapping("SENSOR", self.event) == "SENSOR"
        assert resolve_mapping(5, self.event) == 5

    def test_missing_path_raises(self):
        with pytest.raises(RuleEvaluationError):
            resolve_mapping("{{order.customer}}", self.event)


@pytest.mark.asyncio
async def test_all_matching_rules_run_in_sort_order(engine, store):
    await store.upsert_rule(_rule("second", sort_order=20, field_mappings={"action": "second"}))
    await store.upsert_rule(_rule("first", sort_order=10, field_mappings={"action": "first"}))
    await store.upsert_rule(_rule("other source", source_id="mes"))

    report = await engine.process(TriggerEvent(source_id="erp", event_type="order_created"))

    assert report.rules_evaluated == 2
    assert [r.action.rule_name for r in report.executed] == ["first", "second"]
    assert [entry["action"] for entry in store.activity_logs] == ["first", "second"]
    assert not report.has_errors


@pytest.mark.asyncio
async def test_non_matching_and_disabled_rules_do_not_run(engine, store):
    await store.upsert_rule(_rule("gated", conditions={"field": "status", "value": "approved"}))
    await store.upsert_rule(_rule("off", enabled=False))

    report = await engine.process(TriggerEvent(source_id="erp", event_type="x", payload={"status": "draft"}))

    assert report.executed == []
    assert report.skipped_rules == ["gated"]
    assert store.activity_logs == []


@pytest.mark.asyncio
async def test_malformed_rule_is_isolated(engine, store):
    await store.upsert_rule(_rule("broken", sort_order=1, conditions={"field": "a", "operator": "~=", "value": 1}))
    await store.upsert_rule(_rule("healthy", sort_order=2))

    report = await engine.process(TriggerEvent(source_id="erp", event_type="x", payload={"a": 1}))

    assert [r.action.rule_name for r in report.succeeded] == ["healthy"]
    assert report.errors[0]["rule"] == "broken"


@pytest.mark.asyncio
async def test_action_failure_reports_partial_failure(engine, store):
    await store.upsert_rule(_rule("log", sort_order=1))
    await store.upsert_rule(_rule(
        "close order", action_type="update_work_order_status", sort_order=2,
        field_mappings={"wo_number": "WO-404", "status": "completed"}
    ))

    report = await engine.process(TriggerEvent(source_id="erp", event_type="x"))

    assert report.partial_failure
    assert "WO-404" in report.errors[0]["error"]
    assert report.errors[0]["action_type"] == "update_work_order_status"


@pytest.mark.asyncio
async def test_create_work_order_from_mapped_fields(engine, store):
    await store.upsert_rule(_rule(
        "new order", action_type="create_work_order",
        field_mappings={
            "wo_number": "{{event.order.number}}",
            "product_type": "MLA",
            "batch_size": "$.order.qty",
        }
    ))

    report = await engine.process(TriggerEvent(
        source_id="erp", event_type="order_created", payload={"order": {"number": "WO-77", "qty": 2}}
    ))

    result = report.executed[0]
    assert result.success, result.error
    work_order = await store.get_work_order_by_number("WO-77")
    assert work_order.batch_size == 2
    assert work_order.created_by == "automation:new order"
    units = await store.list_units(work_order.work_order_id)
    assert len(units) == 2
    assert all(u.serial_number.startswith("W-") for u in units)
    assert result.result["serial_numbers"] == [u.serial_number for u in units]


@pytest.mark.asyncio
async def test_create_work_order_for_unknown_product_writes_nothing(engine, store):
    await store.upsert_rule(_rule(
        "bad type", action_type="create_work_order",
        field_mappings={"wo_number": "WO-1", "product_type": "UNKNOWN"}
    ))

    report = await engine.process(TriggerEvent(source_id="erp", event_type="x"))

    assert not report.executed[0].success
    assert await store.get_work_order_by_number("WO-1") is None


@pytest.mark.asyncio
async def test_update_item_status_cannot_set_current_step(engine, store, make_unit):
    unit = await make_unit()
    await store.upsert_rule(_rule(
        "jump", action_type="update_item_status",
        field_mappings={"serial_number": unit.serial_number, "current_step": 5}
    ))

    report = await engine.process(TriggerEvent(source_id="erp", event_type="x"))

    assert not report.executed[0].success
    assert "current_step" in report.executed[0].error
    assert (await store.get_unit(unit.unit_id)).current_step == 1


@pytest.mark.asyncio
async def test_update_item_status_sets_flags(engine, store, make_unit):
    unit = await make_unit()
    await store.upsert_rule(_rule(
        "hold", action_type="update_item_status",
        field_mappings={"serial_number": "{{serial}}", "status": "on_hold", "label_printed": True}
    ))

    report = await engine.process(TriggerEvent(
        source_id="erp", event_type="x", payload={"serial": unit.serial_number}
    ))

    assert report.executed[0].success, report.executed[0].error
    stored = await store.get_unit(unit.unit_id)
    assert stored.status == UnitStatus.ON_HOLD
    assert stored.label_printed is True


class RoundTripStore(InMemoryDatabase):
    """In-memory store whose unit reads yield to the event loop like a database round trip."""

    async def get_unit(self, unit_id):
        await asyncio.sleep(0)
        return await super().get_unit(unit_id)

    async def get_unit_by_serial(self, serial_number):
        await asyncio.sleep(0)
        return await super().get_unit_by_serial(serial_number)


@pytest.mark.asyncio
async def test_update_item_status_concurrent_with_advance(graphs):
    store = RoundTripStore()
    await store.initialize()
    controller = UnitProgressionController(store, StepGraphResolver(graphs), ExecutionStateMachine(store))
    engine = AutomationRuleEngine(store, progression=controller)

    work_order = WorkOrder(work_order_id="wo-concurrent", wo_number="WO-C", product_type="SENSOR", batch_size=1)
    await store.insert_work_order(work_order)
    unit = (await controller.create_units_for_work_order(work_order, "Q"))[0]
    await store.upsert_rule(_rule(
        "print label", action_type="update_item_status",
        field_mappings={"serial_number": unit.serial_number, "label_printed": True}
    ))

    report, outcome = await asyncio.gather(
        engine.process(TriggerEvent(source_id="erp", event_type="x")),
        controller.record_and_advance(unit.unit_id),
    )

    assert report.executed[0].success, report.executed[0].error
    assert outcome.advance.unit.current_step == 2
    stored = await store.get_unit(unit.unit_id)
    assert stored.current_step == 2
    assert stored.label_printed is True
    assert await controller.check_invariant(unit.unit_id)
    await store.close()


@pytest.mark.asyncio
async def test_update_item_status_rejects_invalid_transition(engine, store, controller, make_unit):
    unit = await make_unit()
    await controller.update_unit_state(unit.unit_id, status=UnitStatus.CANCELLED)
    await store.upsert_rule(_rule(
        "resume", action_type="update_item_status",
        field_mappings={"serial_number": unit.serial_number, "status": "in_progress"}
    ))

    report = await engine.process(TriggerEvent(source_id="erp", event_type="x"))

    assert not report.executed[0].success
    assert "cancelled" in report.executed[0].error
    assert (await store.get_unit(unit.unit_id)).status == UnitStatus.CANCELLED


@pytest.mark.asyncio
async def test_trigger_outgoing_webhook(store, controller, make_webhook):
    dispatcher = FakeDispatcher()
    engine = AutomationRuleEngine(store, progression=controller, dispatcher=dispatcher)
    webhook = await make_webhook()
    await store.upsert_rule(_rule(
        "forward", action_type="trigger_outgoing_webhook", sort_order=1,
        field_mappings={"webhook_id": webhook.webhook_id, "data": {"order": "{{order}}"}}
    ))
    await store.upsert_rule(_rule("broadcast", action_type="trigger_outgoing_webhook", sort_order=2))

    report = await engine.process(TriggerEvent(
        source_id="erp", event_type="order_created", payload={"order": "SO-1"}
    ))

    assert [r.success for r in report.executed] == [True, True]
    assert dispatcher.enqueued == [(webhook.webhook_id, "order_created", {"order": "SO-1"})]
    assert dispatcher.dispatched == [("order_created", {"order": "SO-1"})]
    assert report.executed[1].result["delivery_ids"] == ["delivery-2", "delivery-3"]
    assert report.broadcasted("order_created")
    assert report.executed[0].result["broadcast"] is False


@pytest.mark.asyncio
async def test_evaluate_returns_actions_without_executing(engine, store):
    await store.upsert_rule(_rule("log", field_mappings={"entity_id": "{{id}}"}))

    actions = await engine.evaluate(TriggerEvent(source_id="erp", event_type="x", payload={"id": "42"}))

    assert len(actions) == 1
    assert actions[0].action_type == ActionType.LOG_ACTIVITY
    assert actions[0].parameters == {"entity_id": "42"}
    assert store.activity_logs == []


@pytest.mark.asyncio
async def test_simulate_reports_without_side_effects(store):
    engine = AutomationRuleEngine(store)
    rules = [
        _rule("match", sort_order=1, conditions={"field": "qty", "operator": ">=", "value": 5},
              field_mappings={"amount": "{{qty}}"}),
        _rule("no match", sort_order=2, conditions={"field": "qty", "operator": "lt", "value": 5}),
        _rule("broken", sort_order=3, field_mappings={"x": "{{missing}}"}),
    ]

    results = engine.simulate(rules, {"qty": 7})

    assert [r.rule_name for r in results] == ["match", "no match", "broken"]
    assert results[0].would_execute and results[0].extracted_values == {"amount": 7}
    assert not results[1].would_execute and not results[1].condition_met
    assert not results[2].would_execute and results[2].error
