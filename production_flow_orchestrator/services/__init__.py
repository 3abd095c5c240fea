"""
Services package for Production Flow Orchestrator

Contains the step resolver, execution state machine, unit progression,
automation rule engine and outgoing webhook dispatcher.
"""

from .step_resolver import StepGraphResolver, StepOutcome, NextStep, Restart, BlockedFailure, Terminal
from .execution_state_machine import ExecutionStateMachine, ValidationOutcome, RecordOutcome
from .unit_progression import UnitProgressionController, AdvanceAction, AdvanceResult
from .automation_engine import AutomationRuleEngine
from .webhook_dispatcher import WebhookDispatcher
from .fault_tolerance import RetryPolicy, HealthTracker
from .event_bus import EventBus

__all__ = [
    "StepGraphResolver",
    "StepOutcome",
    "NextStep",
    "Restart",
    "BlockedFailure",
    "Terminal",
    "ExecutionStateMachine",
    "ValidationOutcome",
    "RecordOutcome",
    "UnitProgressionController",
    "AdvanceAction",
    "AdvanceResult",
    "AutomationRuleEngine",
    "WebhookDispatcher",
    "RetryPolicy",
    "HealthTracker",
    "EventBus"
]
