"""
Exception classes for Production Flow Orchestrator

Provides the hierarchy of exceptions raised by the step execution model,
the automation rule engine and the outgoing webhook dispatcher.
"""

import threading
from typing import Optional, Dict, Any


class ProductionFlowError(Exception):
    """Base exception for all production flow errors."""

    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON serialization."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details
        }


class ConfigurationError(ProductionFlowError):
    """Raised when configuration or seeded step data is invalid."""

    def __init__(self, config_key: str, message: str):
        super().__init__(
            f"Configuration error for {config_key}: {message}",
            error_code="CONFIGURATION_ERROR",
            details={"config_key": config_key}
        )


class StepNotFoundError(ProductionFlowError):
    """Raised when a step number does not belong to a product type."""

    def __init__(self, product_type: str, step_number: Any):
        super().__init__(
            f"Step {step_number} is not defined for product type {product_type}",
            error_code="STEP_NOT_FOUND",
            details={"product_type": product_type, "step_number": step_number}
        )


class UnitNotFoundError(ProductionFlowError):
    """Raised when a production unit cannot be found."""

    def __init__(self, unit_ref: str):
        super().__init__(
            f"Production unit {unit_ref} not found",
            error_code="UNIT_NOT_FOUND",
            details={"unit": unit_ref}
        )


class ExecutionNotFoundError(ProductionFlowError):
    """Raised when a step execution cannot be found."""

    def __init__(self, execution_id: str):
        super().__init__(
            f"Step execution {execution_id} not found",
            error_code="EXECUTION_NOT_FOUND",
            details={"execution_id": execution_id}
        )


class WebhookNotFoundError(ProductionFlowError):
    """Raised when an outgoing webhook configuration cannot be found."""

    def __init__(self, webhook_id: str):
        super().__init__(
            f"Outgoing webhook {webhook_id} not found",
            error_code="WEBHOOK_NOT_FOUND",
            details={"webhook_id": webhook_id}
        )


class StepValidationError(ProductionFlowError):
    """Raised when a recorded result is missing required input or is malformed.

    The unit and execution are left untouched; the operator corrects the
    input and records again.
    """

    def __init__(self, field: str, message: str, value: Any = None):
        super().__init__(
            f"Validation error for {field}: {message}",
            error_code="STEP_VALIDATION_ERROR",
            details={"field": field, "value": str(value) if value is not None else None}
        )


class AlreadyActiveError(ProductionFlowError):
    """Raised when a non-terminal execution already exists for (unit, step)."""

    def __init__(self, unit_id: str, step_number: int, execution_id: Optional[str] = None):
        super().__init__(
            f"Unit {unit_id} already has an active execution for step {step_number}",
            error_code="ALREADY_ACTIVE",
            details={"unit_id": unit_id, "step_number": step_number, "execution_id": execution_id}
        )


class InvalidTransitionError(ProductionFlowError):
    """Raised when an execution is asked to move to a state it cannot reach."""

    def __init__(self, execution_id: str, current_status: str, target_status: str):
        super().__init__(
            f"Execution {execution_id} cannot transition from {current_status} to {target_status}",
            error_code="INVALID_TRANSITION",
            details={
                "execution_id": execution_id,
                "current_status": current_status,
                "target_status": target_status
            }
        )


class RuleEvaluationError(ProductionFlowError):
    """Raised when a rule has a malformed condition or references a missing field."""

    def __init__(self, rule_name: str, message: str):
        super().__init__(
            f"Rule {rule_name}: {message}",
            error_code="RULE_EVALUATION_ERROR",
            details={"rule": rule_name}
        )


class ActionExecutionError(ProductionFlowError):
    """Raised when a matched rule action fails against the backing store."""

    def __init__(self, rule_name: str, action_type: str, message: str):
        super().__init__(
            f"Rule {rule_name}: {action_type} failed: {message}",
            error_code="ACTION_EXECUTION_ERROR",
            details={"rule": rule_name, "action_type": action_type}
        )


class DeliveryError(ProductionFlowError):
    """Base class for outgoing webhook delivery failures."""

    retryable = False

    def __init__(self, message: str, status_code: Optional[int] = None,
                 retry_after: Optional[float] = None, response_body: Optional[str] = None):
        super().__init__(
            message,
            error_code="DELIVERY_ERROR",
            details={"status_code": status_code}
        )
        self.status_code = status_code
        self.retry_after = retry_after
        self.response_body = response_body


class TransientDeliveryError(DeliveryError):
    """Timeout, network error, 5xx or 429: retried per policy."""

    retryable = True


class PermanentDeliveryError(DeliveryError):
    """4xx other than 429 or a malformed URL: never retried."""

    retryable = False


class HealthDegradedError(ProductionFlowError):
    """Raised when a webhook was auto-disabled after repeated failures."""

    def __init__(self, webhook_id: str, consecutive_failures: int):
        super().__init__(
            f"Outgoing webhook {webhook_id} is disabled after {consecutive_failures} consecutive failures",
            error_code="HEALTH_DEGRADED",
            details={"webhook_id": webhook_id, "consecutive_failures": consecutive_failures}
        )


class DatabaseError(ProductionFlowError):
    """Raised when database operations fail."""

    def __init__(self, operation: str, message: str, table: Optional[str] = None):
        super().__init__(
            f"Database operation '{operation}' failed: {message}",
            error_code="DATABASE_ERROR",
            details={"operation": operation, "table": table}
        )


class PermissionDeniedError(ProductionFlowError):
    """Raised when the permission collaborator rejects an operator action."""

    def __init__(self, user: str, action: str):
        super().__init__(
            f"User {user} is not allowed to perform {action}",
            error_code="PERMISSION_DENIED",
            details={"user": user, "action": action}
        )


class OrchestratorError(ProductionFlowError):
    """Raised when orchestrator-level operations fail."""

    def __init__(self, message: str):
        super().__init__(
            f"Orchestrator error: {message}",
            error_code="ORCHESTRATOR_ERROR"
        )


# Global error registry for tracking patterns
class ErrorRegistry:
    """Registry for tracking and analyzing errors."""

    def __init__(self):
        self.error_counts: Dict[str, int] = {}
        self._lock = threading.Lock()

    def record_error(self, error: ProductionFlowError):
        """Record an error for analysis."""
        error_type = error.__class__.__name__
        with self._lock:
            self.error_counts[error_type] = self.error_counts.get(error_type, 0) + 1

    def get_error_statistics(self) -> Dict[str, Any]:
        """Get error statistics for monitoring."""
        with self._lock:
            counts = dict(self.error_counts)
        return {
            "total_errors": sum(counts.values()),
            "error_counts": counts,
            "most_common_error": max(counts.items(), key=lambda x: x[1])[0] if counts else None
        }

    def reset(self):
        with self._lock:
            self.error_counts.clear()


# Global error registry instance
error_registry = ErrorRegistry()
