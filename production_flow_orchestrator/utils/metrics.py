"""
Prometheus metrics for Production Flow Orchestrator
"""

from prometheus_client import Counter, Histogram, Gauge

STEP_TRANSITIONS = Counter(
    "pfo_step_transitions_total",
    "Step execution state transitions",
    ["product_type", "status"]
)

UNITS_COMPLETED = Counter(
    "pfo_units_completed_total",
    "Units that reached the end of their step graph",
    ["product_type"]
)

RULE_ACTIONS = Counter(
    "pfo_rule_actions_total",
    "Automation rule actions executed",
    ["action_type", "result"]
)

RULE_ERRORS = Counter(
    "pfo_rule_errors_total",
    "Automation rule evaluation errors",
    ["source_id"]
)

WEBHOOK_DELIVERIES = Counter(
    "pfo_webhook_deliveries_total",
    "Outgoing webhook deliveries by final outcome",
    ["event_type", "outcome"]
)

WEBHOOK_ATTEMPTS = Counter(
    "pfo_webhook_attempts_total",
    "Individual outgoing webhook HTTP attempts",
    ["event_type"]
)

WEBHOOK_LATENCY = Histogram(
    "pfo_webhook_delivery_seconds",
    "Wall time of a delivery attempt set including backoff",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, 120)
)

WEBHOOK_QUEUE_DEPTH = Gauge(
    "pfo_webhook_queue_depth",
    "Deliveries waiting for a dispatcher worker"
)

WEBHOOKS_DISABLED = Counter(
    "pfo_webhooks_auto_disabled_total",
    "Webhook configurations disabled by health tracking"
)
