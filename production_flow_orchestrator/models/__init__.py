"""
Data models for Production Flow Orchestrator

This module contains all the data models used throughout the system,
including step definitions, units and executions, automation rules,
outgoing webhooks and domain events.
"""

# Step models
from .steps import (
    StepDefinition,
    StepGraph,
    ValidationRules,
    FieldRule,
    MeasurementField,
    MeasurementType
)

# Unit models
from .unit import (
    WorkOrder,
    WorkOrderStatus,
    ProductionUnit,
    UnitStatus,
    StepExecution,
    ExecutionStatus,
    ValidationStatus,
    EXECUTION_STATUS_TRANSITIONS,
    UNIT_STATUS_TRANSITIONS,
    TERMINAL_EXECUTION_STATUSES,
    can_transition_to,
    can_unit_transition_to,
    get_valid_transitions
)

# Automation models
from .automation import (
    AutomationRule,
    ActionType,
    TriggerEvent,
    Action,
    ActionResult,
    EvaluationReport,
    RuleSimulation
)

# Webhook models
from .webhook import (
    OutgoingWebhookConfig,
    DeliveryLogEntry,
    DeliveryOutcome,
    DeliveryResult,
    DISABLED_HEALTH_DEGRADED
)

# Domain events
from .events import (
    DomainEvent,
    StepCompleted,
    StepBlocked,
    StepSkipped,
    UnitRestarted,
    UnitCompleted,
    EVENT_TYPES
)

__all__ = [
    # Step models
    "StepDefinition",
    "StepGraph",
    "ValidationRules",
    "FieldRule",
    "MeasurementField",
    "MeasurementType",

    # Unit models
    "WorkOrder",
    "WorkOrderStatus",
    "ProductionUnit",
    "UnitStatus",
    "StepExecution",
    "ExecutionStatus",
    "ValidationStatus",
    "EXECUTION_STATUS_TRANSITIONS",
    "UNIT_STATUS_TRANSITIONS",
    "TERMINAL_EXECUTION_STATUSES",
    "can_transition_to",
    "can_unit_transition_to",
    "get_valid_transitions",

    # Automation models
    "AutomationRule",
    "ActionType",
    "TriggerEvent",
    "Action",
    "ActionResult",
    "EvaluationReport",
    "RuleSimulation",

    # Webhook models
    "OutgoingWebhookConfig",
    "DeliveryLogEntry",
    "DeliveryOutcome",
    "DeliveryResult",
    "DISABLED_HEALTH_DEGRADED",

    # Domain events
    "DomainEvent",
    "StepCompleted",
    "StepBlocked",
    "StepSkipped",
    "UnitRestarted",
    "UnitCompleted",
    "EVENT_TYPES"
]
