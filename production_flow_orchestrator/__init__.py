"""
Production Flow Orchestrator

Tracks production units through ordered, conditionally-branching sequences
of manufacturing steps and propagates step-level events to external systems
through automation rules and signed outgoing webhooks.

Key Features:
- Step graphs as data: conditional skips, blocking failures and restarts
- Per-unit execution history with an append-only audit trail
- Automation rules that fire every matching action in sort order
- Outgoing webhooks with HMAC signing, retry/backoff and health auto-disable
- PostgreSQL (asyncpg) or in-memory persistence
- Structured logging, Prometheus metrics and a CLI

Usage:
    from production_flow_orchestrator import ProductionOrchestrator, load_config
    from production_flow_orchestrator.utils import DatabaseManager

    config = load_config("pfo.yaml")
    store = DatabaseManager(config.database_url)

    orchestrator = ProductionOrchestrator(store, config)
    await orchestrator.start()

    work_order, units = await orchestrator.create_work_order("WO-1001", "SENSOR", batch_size=4)
    await orchestrator.advance_unit(units[0].serial_number)
    result = await orchestrator.record_step_result(units[0].serial_number, value_recorded="pass")
    print(result.advance.to_dict())
"""

__version__ = "1.0.0"
__author__ = "Production Flow Orchestrator Team"
__license__ = "MIT"

# Core orchestrator
from .core.orchestrator import ProductionOrchestrator, PermissionChecker
from .core.config import OrchestratorConfig, load_config, load_step_catalog

# Data models
from .models.steps import StepDefinition, StepGraph, ValidationRules
from .models.unit import WorkOrder, ProductionUnit, StepExecution, UnitStatus, ExecutionStatus
from .models.automation import AutomationRule, ActionType, TriggerEvent
from .models.webhook import OutgoingWebhookConfig, DeliveryOutcome

# Services (for advanced usage)
from .services.step_resolver import StepGraphResolver
from .services.execution_state_machine import ExecutionStateMachine
from .services.unit_progression import UnitProgressionController
from .services.automation_engine import AutomationRuleEngine
from .services.webhook_dispatcher import WebhookDispatcher
from .services.fault_tolerance import HealthTracker, RetryPolicy

# Utilities
from .utils.database import DatabaseManager
from .utils.memory_store import InMemoryDatabase
from .utils.logger import setup_logger, get_logger

# Exceptions
from .core.exceptions import (
    ProductionFlowError,
    ConfigurationError,
    UnitNotFoundError,
    StepValidationError,
    AlreadyActiveError,
    InvalidTransitionError,
    RuleEvaluationError,
    HealthDegradedError,
    DatabaseError,
    PermissionDeniedError
)

__all__ = [
    # Core
    "ProductionOrchestrator",
    "PermissionChecker",
    "OrchestratorConfig",
    "load_config",
    "load_step_catalog",

    # Models
    "StepDefinition",
    "StepGraph",
    "ValidationRules",
    "WorkOrder",
    "ProductionUnit",
    "StepExecution",
    "UnitStatus",
    "ExecutionStatus",
    "AutomationRule",
    "ActionType",
    "TriggerEvent",
    "OutgoingWebhookConfig",
    "DeliveryOutcome",

    # Services (for advanced usage)
    "StepGraphResolver",
    "ExecutionStateMachine",
    "UnitProgressionController",
    "AutomationRuleEngine",
    "WebhookDispatcher",
    "HealthTracker",
    "RetryPolicy",

    # Utilities
    "DatabaseManager",
    "InMemoryDatabase",
    "setup_logger",
    "get_logger",

    # Exceptions
    "ProductionFlowError",
    "ConfigurationError",
    "UnitNotFoundError",
    "StepValidationError",
    "AlreadyActiveError",
    "InvalidTransitionError",
    "RuleEvaluationError",
    "HealthDegradedError",
    "DatabaseError",
    "PermissionDeniedError",

    # Package metadata
    "__version__",
    "__author__",
    "__license__"
]

# Package-level configuration
import logging
logging.getLogger(__name__).addHandler(logging.NullHandler())


def quick_start(database_url: str = "postgresql://localhost/production_flow",
                step_catalog: str = None) -> ProductionOrchestrator:
    """
    Quick start helper for simple use cases.

    Args:
        database_url: PostgreSQL connection URL
        step_catalog: Optional path to a YAML step catalogue

    Returns:
        Configured ProductionOrchestrator instance; call ``start()`` on it
    """
    config = OrchestratorConfig(database_url=database_url, step_catalog=step_catalog)
    return ProductionOrchestrator(DatabaseManager(database_url), config)
