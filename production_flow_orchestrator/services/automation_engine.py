"""
AutomationRuleEngine service for Production Flow Orchestrator

Evaluates trigger events against the enabled rules of their source, projects
event fields into action parameters, and executes every matching action.
This is not a first-match dispatcher: all matching rules fire, in ascending
``sort_order``, and one rule's failure never stops its siblings.
"""

import asyncio
import re
import time
import uuid
from typing import Any, Dict, List, Optional, Sequence

from ..models.automation import (
    AutomationRule, ActionType, TriggerEvent, Action, ActionResult, EvaluationReport, RuleSimulation
)
from ..models.unit import WorkOrder, WorkOrderStatus, UnitStatus
from ..utils.store import ProductionStore
from ..utils.paths import get_value_by_path, PathNotFoundError
from ..utils.logger import get_logger, set_log_context
from ..utils.metrics import RULE_ACTIONS, RULE_ERRORS
from ..core.config import AutomationConfig
from ..core.exceptions import (
    ProductionFlowError, RuleEvaluationError, ActionExecutionError, WebhookNotFoundError, error_registry
)

_TEMPLATE = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")

_OPERATOR_ALIASES = {
    "==": "equals", "eq": "equals",
    "!=": "not_equals", "ne": "not_equals",
    ">": "gt", ">=": "gte", "<": "lt", "<=": "lte",
}

_MISSING = object()


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _equals(actual: Any, expected: Any) -> bool:
    if actual == expected:
        return True
    left, right = _as_number(actual), _as_number(expected)
    if left is not None and right is not None:
        return left == right
    if isinstance(actual, bool) or isinstance(expected, bool):
        return str(actual).lower() == str(expected).lower()
    return str(actual) == str(expected)


def _compare(operator: str, actual: Any, expected: Any) -> bool:
    left, right = _as_number(actual), _as_number(expected)
    if left is None or right is None:
        return False
    if operator == "gt":
        return left > right
    if operator == "gte":
        return left >= right
    if operator == "lt":
        return left < right
    return left <= right


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str):
        return str(expected) in actual
    if isinstance(actual, dict):
        return expected in actual
    if isinstance(actual, (list, tuple, set)):
        return any(_equals(item, expected) for item in actual)
    return False


def evaluate_condition(node: Any, payload: Dict[str, Any], rule_name: str = "<rule>") -> bool:
    """
    Evaluate a condition tree against an event payload.

    Nodes are ``{"all": [...]}``, ``{"any": [...]}``, ``{"not": node}`` or a
    leaf ``{"field", "operator", "value"}``. An empty tree, or a leaf with
    ``enabled: false``, matches unconditionally.
    """
    if node is None or node == {} or node == []:
        return True

    if isinstance(node, list):
        return all(evaluate_condition(child, payload, rule_name) for child in node)

    if not isinstance(node, dict):
        raise RuleEvaluationError(rule_name, f"condition node must be an object, got {type(node).__name__}")

    if "all" in node:
        children = node["all"]
        if not isinstance(children, list):
            raise RuleEvaluationError(rule_name, "'all' expects a list")
        return all(evaluate_condition(child, payload, rule_name) for child in children)

    if "any" in node:
        children = node["any"]
        if not isinstance(children, list):
            raise RuleEvaluationError(rule_name, "'any' expects a list")
        return any(evaluate_condition(child, payload, rule_name) for child in children)

    if "not" in node:
        return not evaluate_condition(node["not"], payload, rule_name)

    if node.get("enabled") is False:
        return True

    field_path = node.get("field")
    if not field_path or not isinstance(field_path, str):
        raise RuleEvaluationError(rule_name, f"condition leaf has no field: {node!r}")

    operator = node.get("operator", "equals")
    operator = _OPERATOR_ALIASES.get(operator, operator)
    expected = node.get("value")

    try:
        actual = get_value_by_path(payload, field_path)
    except PathNotFoundError:
        actual = _MISSING
    except ValueError as e:
        raise RuleEvaluationError(rule_name, str(e))

    if operator == "exists":
        exists = actual is not _MISSING and actual is not None
        return exists if expected is None or expected is True else not exists

    if operator in ("in", "not_in"):
        if not isinstance(expected, list):
            raise RuleEvaluationError(rule_name, f"'{operator}' expects a list value")
        found = actual is not _MISSING and any(_equals(actual, item) for item in expected)
        return found if operator == "in" else not found

    if operator == "equals":
        return actual is not _MISSING and _equals(actual, expected)
    if operator == "not_equals":
        return actual is _MISSING or not _equals(actual, expected)
    if operator in ("gt", "gte", "lt", "lte"):
        return actual is not _MISSING and _compare(operator, actual, expected)
    if operator == "contains":
        return actual is not _MISSING and _contains(actual, expected)

    raise RuleEvaluationError(rule_name, f"unknown operator {operator!r}")


def _lookup(reference: str, event: TriggerEvent, rule_name: str) -> Any:
    if reference.startswith("trigger."):
        envelope = {
            "source_id": event.source_id,
            "event_type": event.event_type,
            "idempotency_key": event.idempotency_key,
            "received_at": event.received_at.isoformat(),
        }
        key = reference[len("trigger."):]
        if key not in envelope:
            raise RuleEvaluationError(rule_name, f"unknown trigger field {reference!r}")
        return envelope[key]

    path = reference[len("event."):] if reference.startswith("event.") else reference
    try:
        return get_value_by_path(event.payload, path)
    except PathNotFoundError:
        raise RuleEvaluationError(rule_name, f"mapped field '{reference}' not found in event payload")
    except ValueError as e:
        raise RuleEvaluationError(rule_name, str(e))


def resolve_mapping(mapping: Any, event: TriggerEvent, rule_name: str = "<rule>") -> Any:
    """
    Resolve one field mapping value.

    Strings may be a whole ``{{path}}`` template (raw value), text with
    embedded templates (interpolated), or a ``$.path`` reference. A
    ``{"path": ..., "default": ...}`` object looks a path up with a fallback.
    Anything else is a literal.
    """
    if isinstance(mapping, str):
        whole = _TEMPLATE.fullmatch(mapping.strip())
        if whole:
            return _lookup(whole.group(1), event, rule_name)
        if _TEMPLATE.search(mapping):
            return _TEMPLATE.sub(lambda m: str(_lookup(m.group(1), event, rule_name)), mapping)
        if mapping.startswith("$."):
            return _lookup(mapping, event, rule_name)
        return mapping

    if isinstance(mapping, dict):
        if "path" in mapping and set(mapping) <= {"path", "default"}:
            try:
                value = get_value_by_path(event.payload, mapping["path"])
            except PathNotFoundError:
                if "default" in mapping:
                    return mapping["default"]
                raise RuleEvaluationError(rule_name, f"mapped field '{mapping['path']}' not found in event payload")
            return mapping.get("default") if value is None else value
        return {key: resolve_mapping(value, event, rule_name) for key, value in mapping.items()}

    if isinstance(mapping, list):
        return [resolve_mapping(item, event, rule_name) for item in mapping]

    return mapping


def project_field_mappings(mappings: Dict[str, Any], event: TriggerEvent, rule_name: str = "<rule>") -> Dict[str, Any]:
    """Project event fields into action parameters."""
    return {key: resolve_mapping(mapping, event, rule_name) for key, mapping in (mappings or {}).items()}


class AutomationRuleEngine:
    """
    Evaluates and executes automation rules.

    Store-writing actions run in ascending sort order through a bounded pool
    (``max_concurrent_actions``; 1 keeps them strictly ordered), each under a
    timeout. Webhook actions are handed to the dispatcher queue.
    """

    def __init__(self, store: ProductionStore, progression=None, dispatcher=None,
                 config: Optional[AutomationConfig] = None):
        """
        Initialize AutomationRuleEngine.

        Args:
            store: Persistence for rules, work orders, units and activity logs
            progression: UnitProgressionController used to create units
            dispatcher: WebhookDispatcher for trigger_outgoing_webhook actions
            config: Automation settings
        """
        self.store = store
        self.progression = progression
        self.dispatcher = dispatcher
        self.config = config or AutomationConfig()

        self._handlers = {
            ActionType.CREATE_WORK_ORDER: self._create_work_order,
            ActionType.UPDATE_WORK_ORDER_STATUS: self._update_work_order_status,
            ActionType.UPDATE_ITEM_STATUS: self._update_item_status,
            ActionType.LOG_ACTIVITY: self._log_activity,
            ActionType.TRIGGER_OUTGOING_WEBHOOK: self._trigger_outgoing_webhook,
        }

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="automation_engine")

    # Evaluation

    async def evaluate(self, event: TriggerEvent) -> List[Action]:
        """Return the actions of every enabled rule of the event's source that matches."""
        report = EvaluationReport(event=event)
        return await self._evaluate(event, report)

    async def _evaluate(self, event: TriggerEvent, report: EvaluationReport) -> List[Action]:
        rules = await self.store.get_rules_for_source(event.source_id, enabled_only=True)
        rules = sorted((r for r in rules if r.enabled), key=lambda r: r.sort_order)
        report.rules_evaluated = len(rules)

        actions = []
        for rule in rules:
            try:
                if not evaluate_condition(rule.conditions, event.payload, rule.name):
                    report.skipped_rules.append(rule.name)
                    continue
                parameters = project_field_mappings(rule.field_mappings, event, rule.name)
            except RuleEvaluationError as e:
                error_registry.record_error(e)
                RULE_ERRORS.labels(event.source_id).inc()
                report.add_error(rule.name, e.message, rule.action_type.value)
                self.logger.warning("Rule evaluation failed", extra={
                    "rule": rule.name,
                    "source_id": event.source_id,
                    "error": e.message
                })
                continue

            actions.append(Action(
                rule_id=rule.rule_id,
                rule_name=rule.name,
                action_type=rule.action_type,
                sort_order=rule.sort_order,
                parameters=parameters
            ))

        self.logger.debug("Rules evaluated", extra={
            "source_id": event.source_id,
            "event_type": event.event_type,
            "rules": len(rules),
            "matched": len(actions)
        })
        return actions

    async def process(self, event: TriggerEvent) -> EvaluationReport:
        """Evaluate an event and execute every matching action."""
        report = EvaluationReport(event=event)
        actions = await self._evaluate(event, report)
        if not actions:
            return report

        semaphore = asyncio.Semaphore(self.config.max_concurrent_actions)

        async def run(action: Action) -> ActionResult:
            async with semaphore:
                return await self._execute(action, event)

        if self.config.max_concurrent_actions == 1:
            results = [await self._execute(action, event) for action in actions]
        else:
            results = await asyncio.gather(*(run(action) for action in actions))

        for result in results:
            report.executed.append(result)
            if not result.success:
                report.add_error(result.action.rule_name, result.error, result.action.action_type.value)

        self.logger.info("Trigger event processed", extra={
            "source_id": event.source_id,
            "event_type": event.event_type,
            "actions_executed": len(report.succeeded),
            "errors": len(report.errors)
        })
        return report

    async def _execute(self, action: Action, event: TriggerEvent) -> ActionResult:
        handler = self._handlers[action.action_type]
        try:
            result = await asyncio.wait_for(
                handler(action, event), timeout=self.config.action_timeout_seconds
            )
        except asyncio.TimeoutError:
            return self._failed(action, f"timed out after {self.config.action_timeout_seconds}s")
        except ProductionFlowError as e:
            error_registry.record_error(e)
            return self._failed(action, e.message)
        except Exception as e:
            self.logger.error("Unexpected action failure", exc_info=True, extra={
                "rule": action.rule_name,
                "action_type": action.action_type.value
            })
            return self._failed(action, str(e))

        RULE_ACTIONS.labels(action.action_type.value, "success").inc()
        return ActionResult(action=action, success=True, result=result)

    def _failed(self, action: Action, message: str) -> ActionResult:
        RULE_ACTIONS.labels(action.action_type.value, "error").inc()
        self.logger.warning("Rule action failed", extra={
            "rule": action.rule_name,
            "action_type": action.action_type.value,
            "error": message
        })
        return ActionResult(action=action, success=False, error=message)

    # Dry run

    def simulate(self, rules: Sequence[AutomationRule], payload: Dict[str, Any],
                 source_id: str = "simulation", event_type: str = "test") -> List[RuleSimulation]:
        """Report, without side effects, what each rule would do for ``payload``."""
        event = TriggerEvent(source_id=source_id, event_type=event_type, payload=payload)
        simulations = []
        for rule in sorted(rules, key=lambda r: r.sort_order):
            condition_met = False
            extracted: Dict[str, Any] = {}
            error = None
            try:
                condition_met = evaluate_condition(rule.conditions, payload, rule.name)
                extracted = project_field_mappings(rule.field_mappings, event, rule.name)
            except RuleEvaluationError as e:
                error = e.message
            simulations.append(RuleSimulation(
                rule_name=rule.name,
                action_type=rule.action_type.value,
                would_execute=rule.enabled and condition_met and error is None,
                condition_met=condition_met,
                extracted_values=extracted,
                error=error
            ))
        return simulations

    # Action handlers

    @staticmethod
    def _require(action: Action, name: str) -> Any:
        value = action.parameters.get(name)
        if value is None or value == "":
            raise ActionExecutionError(action.rule_name, action.action_type.value, f"missing {name}")
        return value

    async def _create_work_order(self, action: Action, event: TriggerEvent) -> Dict[str, Any]:
        params = action.parameters
        product_type = params.get("product_type") or self.config.default_product_type
        try:
            batch_size = int(params.get("batch_size") or 1)
        except (TypeError, ValueError):
            raise ActionExecutionError(action.rule_name, action.action_type.value,
                                       f"batch_size must be an integer, got {params.get('batch_size')!r}")
        if batch_size < 1:
            raise ActionExecutionError(action.rule_name, action.action_type.value, "batch_size must be positive")

        if self.progression is None:
            raise ActionExecutionError(action.rule_name, action.action_type.value, "no progression controller")
        # Fails before any write when the product type has no step graph
        self.progression.resolver.get_graph(product_type)

        work_order = WorkOrder(
            work_order_id=str(uuid.uuid4()),
            wo_number=str(params.get("wo_number") or f"WO-{int(time.time() * 1000)}"),
            product_type=product_type,
            batch_size=batch_size,
            notes=params.get("notes"),
            scheduled_date=params.get("scheduled_date"),
            created_by=f"automation:{action.rule_name}"
        )
        await self.store.insert_work_order(work_order)
        units = await self.progression.create_units_for_work_order(
            work_order, self.config.serial_prefix_for(product_type)
        )
        return {
            "work_order_id": work_order.work_order_id,
            "wo_number": work_order.wo_number,
            "product_type": product_type,
            "serial_numbers": [u.serial_number for u in units]
        }

    async def _update_work_order_status(self, action: Action, event: TriggerEvent) -> Dict[str, Any]:
        wo_number = str(self._require(action, "wo_number"))
        raw_status = self._require(action, "status")
        try:
            status = WorkOrderStatus(raw_status)
        except ValueError:
            raise ActionExecutionError(action.rule_name, action.action_type.value,
                                       f"invalid work order status {raw_status!r}")

        work_order = await self.store.update_work_order_status(wo_number, status)
        if work_order is None:
            raise ActionExecutionError(action.rule_name, action.action_type.value,
                                       f"work order {wo_number} not found")
        return {"wo_number": wo_number, "status": status.value}

    async def _update_item_status(self, action: Action, event: TriggerEvent) -> Dict[str, Any]:
        if "current_step" in action.parameters:
            raise ActionExecutionError(action.rule_name, action.action_type.value,
                                       "current_step is managed by unit progression and cannot be mapped")

        if self.progression is None:
            raise ActionExecutionError(action.rule_name, action.action_type.value, "no progression controller")

        serial_number = str(self._require(action, "serial_number"))
        unit = await self.store.get_unit_by_serial(serial_number)
        if unit is None:
            raise ActionExecutionError(action.rule_name, action.action_type.value,
                                       f"unit {serial_number} not found")

        status = None
        raw_status = action.parameters.get("status")
        if raw_status:
            try:
                status = UnitStatus(raw_status)
            except ValueError:
                raise ActionExecutionError(action.rule_name, action.action_type.value,
                                           f"invalid unit status {raw_status!r}")

        flags = {
            flag: bool(action.parameters[flag])
            for flag in ("label_printed", "certificate_generated", "quality_approved")
            if flag in action.parameters
        }
        if status is None and not flags:
            raise ActionExecutionError(action.rule_name, action.action_type.value, "no updatable fields mapped")

        # Status and flags only; the controller owns current_step
        await self.progression.update_unit_state(unit.unit_id, status=status, flags=flags)

        updates: Dict[str, Any] = dict(flags)
        if status is not None:
            updates["status"] = status.value
        return {"serial_number": serial_number, "updates": updates}

    async def _log_activity(self, action: Action, event: TriggerEvent) -> Dict[str, Any]:
        params = action.parameters
        entry = await self.store.insert_activity_log(
            action=params.get("action") or "webhook_triggered",
            entity_type=params.get("entity_type") or "webhook",
            entity_id=params.get("entity_id"),
            details=params.get("details") or {"source_id": event.source_id, "payload": event.payload},
            user_id=params.get("user_id")
        )
        return {"activity_id": entry["id"], "action": entry["action"]}

    async def _trigger_outgoing_webhook(self, action: Action, event: TriggerEvent) -> Dict[str, Any]:
        if self.dispatcher is None:
            raise ActionExecutionError(action.rule_name, action.action_type.value, "no webhook dispatcher")

        params = action.parameters
        data = params.get("data")
        if data is None:
            data = event.payload
        event_type = params.get("event_type") or event.event_type

        webhook_id = params.get("webhook_id")
        if webhook_id:
            config = await self.store.get_webhook(webhook_id)
            if config is None:
                raise WebhookNotFoundError(webhook_id)
            delivery_ids = [await self.dispatcher.enqueue(config, event_type, data)]
        else:
            delivery_ids = await self.dispatcher.dispatch_event(event_type, data)

        return {"event_type": event_type, "delivery_ids": delivery_ids, "broadcast": not webhook_id}
