"""
In-memory store for Production Flow Orchestrator

Implements the ``ProductionStore`` protocol with plain dictionaries for tests,
the CLI and embedded use. Objects are copied on the way in and out so callers
never mutate stored state without an explicit update.
"""

import asyncio
import copy
import uuid
from typing import Dict, List, Optional, Any, Tuple

from ..models.steps import StepDefinition
from ..models.unit import (
    WorkOrder, WorkOrderStatus, ProductionUnit, StepExecution, UnitStatus, utcnow
)
from ..models.automation import AutomationRule
from ..models.webhook import OutgoingWebhookConfig, DeliveryLogEntry
from ..core.exceptions import AlreadyActiveError, DatabaseError


class InMemoryDatabase:
    """Dictionary-backed implementation of ``ProductionStore``."""

    def __init__(self):
        self._steps: Dict[str, List[StepDefinition]] = {}
        self._work_orders: Dict[str, WorkOrder] = {}
        self._units: Dict[str, ProductionUnit] = {}
        self._executions: Dict[str, StepExecution] = {}
        self._active: Dict[Tuple[str, int], str] = {}
        self._sequence: Dict[str, int] = {}
        self._rules: Dict[str, AutomationRule] = {}
        self._webhooks: Dict[str, OutgoingWebhookConfig] = {}
        self._delivery_logs: List[DeliveryLogEntry] = []
        self.activity_logs: List[Dict[str, Any]] = []
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def is_healthy(self) -> bool:
        return True

    # Step definitions
    async def upsert_step_definitions(self, product_type: str, definitions: List[StepDefinition]) -> None:
        self._steps[product_type] = list(definitions)

    async def get_step_definitions(self, product_type: str) -> List[StepDefinition]:
        return list(self._steps.get(product_type, []))

    async def get_product_types(self) -> List[str]:
        return sorted(self._steps)

    # Work orders and units
    async def insert_work_order(self, work_order: WorkOrder) -> WorkOrder:
        async with self._lock:
            if any(wo.wo_number == work_order.wo_number for wo in self._work_orders.values()):
                raise DatabaseError("insert_work_order", f"duplicate wo_number {work_order.wo_number}", "work_orders")
            self._work_orders[work_order.work_order_id] = copy.deepcopy(work_order)
        return work_order

    async def get_work_order(self, work_order_id: str) -> Optional[WorkOrder]:
        return copy.deepcopy(self._work_orders.get(work_order_id))

    async def get_work_order_by_number(self, wo_number: str) -> Optional[WorkOrder]:
        for work_order in self._work_orders.values():
            if work_order.wo_number == wo_number:
                return copy.deepcopy(work_order)
        return None

    async def update_work_order_status(self, wo_number: str, status: WorkOrderStatus) -> Optional[WorkOrder]:
        for work_order in self._work_orders.values():
            if work_order.wo_number == wo_number:
                work_order.status = status
                work_order.updated_at = utcnow()
                return copy.deepcopy(work_order)
        return None

    async def insert_unit(self, unit: ProductionUnit) -> ProductionUnit:
        async with self._lock:
            if any(u.serial_number == unit.serial_number for u in self._units.values()):
                raise DatabaseError("insert_unit", f"duplicate serial_number {unit.serial_number}", "work_order_items")
            self._units[unit.unit_id] = copy.deepcopy(unit)
        return unit

    async def get_unit(self, unit_id: str) -> Optional[ProductionUnit]:
        return copy.deepcopy(self._units.get(unit_id))

    async def get_unit_by_serial(self, serial_number: str) -> Optional[ProductionUnit]:
        for unit in self._units.values():
            if unit.serial_number == serial_number:
                return copy.deepcopy(unit)
        return None

    async def update_unit(self, unit: ProductionUnit) -> ProductionUnit:
        if unit.unit_id not in self._units:
            raise DatabaseError("update_unit", f"unit {unit.unit_id} does not exist", "work_order_items")
        unit.updated_at = utcnow()
        self._units[unit.unit_id] = copy.deepcopy(unit)
        return unit

    async def update_unit_state(self, unit_id: str, status: Optional[UnitStatus] = None,
                                flags: Optional[Dict[str, bool]] = None) -> ProductionUnit:
        stored = self._units.get(unit_id)
        if stored is None:
            raise DatabaseError("update_unit_state", f"unit {unit_id} does not exist", "work_order_items")
        if status is not None:
            stored.status = status
        for flag, value in (flags or {}).items():
            setattr(stored, flag, bool(value))
        stored.updated_at = utcnow()
        return copy.deepcopy(stored)

    async def list_units(self, work_order_id: str) -> List[ProductionUnit]:
        units = [copy.deepcopy(u) for u in self._units.values() if u.work_order_id == work_order_id]
        return sorted(units, key=lambda u: u.position_in_batch)

    # Step executions
    async def insert_execution(self, execution: StepExecution) -> StepExecution:
        async with self._lock:
            key = (execution.unit_id, execution.step_number)
            if not execution.is_terminal and key in self._active:
                raise AlreadyActiveError(execution.unit_id, execution.step_number, self._active[key])

            sequence = self._sequence.get(execution.unit_id, 0) + 1
            self._sequence[execution.unit_id] = sequence
            execution.sequence = sequence

            self._executions[execution.execution_id] = copy.deepcopy(execution)
            if not execution.is_terminal:
                self._active[key] = execution.execution_id
        return execution

    async def update_execution(self, execution: StepExecution) -> StepExecution:
        async with self._lock:
            if execution.execution_id not in self._executions:
                raise DatabaseError("update_execution", f"execution {execution.execution_id} does not exist",
                                    "step_executions")
            key = (execution.unit_id, execution.step_number)
            if execution.is_terminal and self._active.get(key) == execution.execution_id:
                del self._active[key]
            self._executions[execution.execution_id] = copy.deepcopy(execution)
        return execution

    async def get_execution(self, execution_id: str) -> Optional[StepExecution]:
        return copy.deepcopy(self._executions.get(execution_id))

    async def get_active_execution(self, unit_id: str, step_number: int) -> Optional[StepExecution]:
        execution_id = self._active.get((unit_id, step_number))
        if execution_id is None:
            return None
        return copy.deepcopy(self._executions[execution_id])

    async def list_executions(self, unit_id: str) -> List[StepExecution]:
        executions = [copy.deepcopy(e) for e in self._executions.values() if e.unit_id == unit_id]
        return sorted(executions, key=lambda e: e.sequence)

    # Automation rules
    async def upsert_rule(self, rule: AutomationRule) -> AutomationRule:
        self._rules[rule.rule_id] = copy.deepcopy(rule)
        return rule

    async def get_rules_for_source(self, source_id: str, enabled_only: bool = True) -> List[AutomationRule]:
        rules = [
            copy.deepcopy(r) for r in self._rules.values()
            if r.source_id == source_id and (r.enabled or not enabled_only)
        ]
        return sorted(rules, key=lambda r: (r.sort_order, r.created_at))

    # Outgoing webhooks
    async def upsert_webhook(self, config: OutgoingWebhookConfig) -> OutgoingWebhookConfig:
        config.updated_at = utcnow()
        self._webhooks[config.webhook_id] = copy.deepcopy(config)
        return config

    async def get_webhook(self, webhook_id: str) -> Optional[OutgoingWebhookConfig]:
        return copy.deepcopy(self._webhooks.get(webhook_id))

    async def list_webhooks(self, event_type: Optional[str] = None,
                            enabled_only: bool = False) -> List[OutgoingWebhookConfig]:
        return [
            copy.deepcopy(w) for w in self._webhooks.values()
            if (event_type is None or w.event_type == event_type) and (w.enabled or not enabled_only)
        ]

    async def update_webhook_health(self, webhook_id: str, enabled: bool, consecutive_failures: int,
                                    disabled_reason: Optional[str]) -> None:
        config = self._webhooks.get(webhook_id)
        if config is None:
            raise DatabaseError("update_webhook_health", f"webhook {webhook_id} does not exist", "outgoing_webhooks")
        config.enabled = enabled
        config.consecutive_failures = consecutive_failures
        config.disabled_reason = disabled_reason
        config.updated_at = utcnow()

    async def insert_delivery_log(self, entry: DeliveryLogEntry) -> DeliveryLogEntry:
        self._delivery_logs.append(entry)
        return entry

    async def list_delivery_logs(self, webhook_id: Optional[str] = None, limit: int = 100) -> List[DeliveryLogEntry]:
        entries = [e for e in self._delivery_logs if webhook_id is None or e.webhook_id == webhook_id]
        return list(reversed(entries))[:limit]

    # Activity log
    async def insert_activity_log(self, action: str, entity_type: str, entity_id: Optional[str],
                                  details: Dict[str, Any], user_id: Optional[str] = None) -> Dict[str, Any]:
        entry = {
            "id": str(uuid.uuid4()),
            "action": action,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "details": details,
            "user_id": user_id,
            "created_at": utcnow().isoformat()
        }
        self.activity_logs.append(entry)
        return entry
