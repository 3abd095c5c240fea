"""
Outgoing webhook data models for Production Flow Orchestrator

Defines endpoint configurations, the append-only delivery log and the
result handed back to delivery callers.
"""

import uuid
from enum import Enum
from datetime import datetime
from typing import Optional, Dict, Any
from dataclasses import dataclass, field

from .unit import utcnow

DISABLED_HEALTH_DEGRADED = "health_degraded"


class DeliveryOutcome(Enum):
    """Final outcome of one delivery attempt set."""
    SUCCESS = "success"
    FAILED = "failed"                  # transient failures exhausted the retry budget
    PERMANENT_FAILURE = "permanent_failure"
    DROPPED = "dropped"                # config disabled before the delivery started


@dataclass
class OutgoingWebhookConfig:
    """An external endpoint subscribed to one event type."""

    webhook_id: str
    name: str
    url: str
    event_type: str
    enabled: bool = True
    secret: Optional[str] = None
    retry_attempts: int = 3
    headers: Dict[str, str] = field(default_factory=dict)
    timeout_seconds: float = 10.0

    # Health state, persisted so auto-disable survives restarts
    consecutive_failures: int = 0
    disabled_reason: Optional[str] = None

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def health_degraded(self) -> bool:
        return not self.enabled and self.disabled_reason == DISABLED_HEALTH_DEGRADED

    def to_dict(self, include_secret: bool = False) -> Dict[str, Any]:
        data = {
            "webhook_id": self.webhook_id,
            "name": self.name,
            "url": self.url,
            "event_type": self.event_type,
            "enabled": self.enabled,
            "has_secret": bool(self.secret),
            "retry_attempts": self.retry_attempts,
            "headers": self.headers,
            "timeout_seconds": self.timeout_seconds,
            "consecutive_failures": self.consecutive_failures,
            "disabled_reason": self.disabled_reason,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat()
        }
        if include_secret:
            data["secret"] = self.secret
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OutgoingWebhookConfig":
        data = dict(data)
        data.pop("has_secret", None)
        data.setdefault("webhook_id", str(uuid.uuid4()))
        data["headers"] = data.get("headers") or {}
        for field_name in ["created_at", "updated_at"]:
            if isinstance(data.get(field_name), str):
                data[field_name] = datetime.fromisoformat(data[field_name])
        return cls(**data)


@dataclass(frozen=True)
class DeliveryLogEntry:
    """Immutable record of one delivery attempt set."""

    log_id: str
    webhook_id: str
    event_type: str
    payload: Dict[str, Any]
    delivery_id: str
    outcome: DeliveryOutcome
    attempts: int
    response_status: Optional[int] = None
    response_body: Optional[str] = None
    response_time_ms: Optional[int] = None
    error_message: Optional[str] = None
    is_test: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @property
    def success(self) -> bool:
        return self.outcome == DeliveryOutcome.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "log_id": self.log_id,
            "webhook_id": self.webhook_id,
            "event_type": self.event_type,
            "payload": self.payload,
            "delivery_id": self.delivery_id,
            "outcome": self.outcome.value,
            "attempts": self.attempts,
            "response_status": self.response_status,
            "response_body": self.response_body,
            "response_time_ms": self.response_time_ms,
            "error_message": self.error_message,
            "is_test": self.is_test,
            "created_at": self.created_at.isoformat()
        }


@dataclass
class DeliveryResult:
    """Result of a delivery returned to the caller."""

    delivery_id: str
    webhook_id: str
    success: bool
    outcome: DeliveryOutcome
    attempts: int
    status_code: Optional[int] = None
    response_time_ms: Optional[int] = None
    error: Optional[str] = None
    log_entry: Optional[DeliveryLogEntry] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "delivery_id": self.delivery_id,
            "webhook_id": self.webhook_id,
            "success": self.success,
            "outcome": self.outcome.value,
            "attempts": self.attempts,
            "status_code": self.status_code,
            "response_time_ms": self.response_time_ms,
            "error": self.error
        }
