"""
Automation rule data models for Production Flow Orchestrator

Defines rules bound to a trigger source, the trigger events they are
evaluated against, and the actions and reports evaluation produces.
"""

import uuid
from enum import Enum
from datetime import datetime
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field

from .unit import utcnow


class ActionType(Enum):
    """Automation action type enumeration."""
    CREATE_WORK_ORDER = "create_work_order"
    UPDATE_WORK_ORDER_STATUS = "update_work_order_status"
    UPDATE_ITEM_STATUS = "update_item_status"
    LOG_ACTIVITY = "log_activity"
    TRIGGER_OUTGOING_WEBHOOK = "trigger_outgoing_webhook"


@dataclass
class AutomationRule:
    """A condition/action pair owned by one trigger source."""

    rule_id: str
    name: str
    source_id: str
    action_type: ActionType
    conditions: Optional[Dict[str, Any]] = None
    field_mappings: Dict[str, Any] = field(default_factory=dict)
    sort_order: int = 0
    enabled: bool = True
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "name": self.name,
            "source_id": self.source_id,
            "action_type": self.action_type.value,
            "conditions": self.conditions,
            "field_mappings": self.field_mappings,
            "sort_order": self.sort_order,
            "enabled": self.enabled,
            "created_at": self.created_at.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AutomationRule":
        data = dict(data)
        data.setdefault("rule_id", str(uuid.uuid4()))
        data["action_type"] = ActionType(data["action_type"])
        data["field_mappings"] = data.get("field_mappings") or {}
        if isinstance(data.get("created_at"), str):
            data["created_at"] = datetime.fromisoformat(data["created_at"])
        return cls(**data)


@dataclass
class TriggerEvent:
    """A structured notification consumed by the rule engine."""

    source_id: str
    event_type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    idempotency_key: Optional[str] = None
    received_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_id": self.source_id,
            "event_type": self.event_type,
            "payload": self.payload,
            "idempotency_key": self.idempotency_key,
            "received_at": self.received_at.isoformat()
        }


@dataclass
class Action:
    """An effect produced by a matched rule, with its projected parameters."""

    rule_id: str
    rule_name: str
    action_type: ActionType
    sort_order: int
    parameters: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "action_type": self.action_type.value,
            "sort_order": self.sort_order,
            "parameters": self.parameters
        }


@dataclass
class ActionResult:
    """Outcome of executing one action."""

    action: Action
    success: bool
    result: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule": self.action.rule_name,
            "action_type": self.action.action_type.value,
            "success": self.success,
            "result": self.result,
            "error": self.error
        }


@dataclass
class EvaluationReport:
    """Aggregate report of evaluating and executing one trigger event."""

    event: TriggerEvent
    rules_evaluated: int = 0
    executed: List[ActionResult] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    skipped_rules: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> List[ActionResult]:
        return [r for r in self.executed if r.success]

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    @property
    def partial_failure(self) -> bool:
        return bool(self.errors) and bool(self.succeeded)

    def add_error(self, rule_name: str, message: str, action_type: Optional[str] = None):
        self.errors.append({"rule": rule_name, "action_type": action_type, "error": message})

    def broadcasted(self, event_type: str) -> bool:
        """Whether a successful action already sent ``event_type`` to every subscribed webhook."""
        return any(
            r.success and r.result.get("broadcast") and r.result.get("event_type") == event_type
            for r in self.executed
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_id": self.event.source_id,
            "event_type": self.event.event_type,
            "rules_evaluated": self.rules_evaluated,
            "actions_executed": len(self.succeeded),
            "executed": [r.to_dict() for r in self.executed],
            "errors": self.errors,
            "skipped_rules": self.skipped_rules
        }


@dataclass
class RuleSimulation:
    """Dry-run outcome of one rule against a sample payload."""

    rule_name: str
    action_type: str
    would_execute: bool
    condition_met: bool
    extracted_values: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_name": self.rule_name,
            "action_type": self.action_type,
            "would_execute": self.would_execute,
            "condition_met": self.condition_met,
            "extracted_values": self.extracted_values,
            "error": self.error
        }
