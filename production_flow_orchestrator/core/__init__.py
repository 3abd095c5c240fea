"""
Core package for Production Flow Orchestrator

Contains the orchestrator facade, configuration and the exception hierarchy.
"""

from .exceptions import (
    ProductionFlowError,
    ConfigurationError,
    StepNotFoundError,
    UnitNotFoundError,
    ExecutionNotFoundError,
    WebhookNotFoundError,
    StepValidationError,
    AlreadyActiveError,
    InvalidTransitionError,
    RuleEvaluationError,
    ActionExecutionError,
    DeliveryError,
    TransientDeliveryError,
    PermanentDeliveryError,
    HealthDegradedError,
    DatabaseError,
    PermissionDeniedError,
    OrchestratorError,
    error_registry
)
from .config import (
    OrchestratorConfig,
    DispatcherConfig,
    AutomationConfig,
    load_config,
    load_step_catalog,
    parse_step_catalog
)
from .orchestrator import ProductionOrchestrator, PermissionChecker

__all__ = [
    "ProductionOrchestrator",
    "PermissionChecker",
    "OrchestratorConfig",
    "DispatcherConfig",
    "AutomationConfig",
    "load_config",
    "load_step_catalog",
    "parse_step_catalog",
    "ProductionFlowError",
    "ConfigurationError",
    "StepNotFoundError",
    "UnitNotFoundError",
    "ExecutionNotFoundError",
    "WebhookNotFoundError",
    "StepValidationError",
    "AlreadyActiveError",
    "InvalidTransitionError",
    "RuleEvaluationError",
    "ActionExecutionError",
    "DeliveryError",
    "TransientDeliveryError",
    "PermanentDeliveryError",
    "HealthDegradedError",
    "DatabaseError",
    "PermissionDeniedError",
    "OrchestratorError",
    "error_registry"
]
