"""
Main ProductionOrchestrator class that coordinates all services

Provides the primary interface for work order creation, unit progression,
automation rules and outgoing webhooks, and wires the services together
over the event bus.
"""

import asyncio
import uuid
from collections import OrderedDict
from typing import Dict, List, Optional, Any, Mapping, Protocol, Tuple, runtime_checkable

import httpx

from ..models.steps import StepGraph
from ..models.unit import WorkOrder, ProductionUnit
from ..models.automation import AutomationRule, TriggerEvent, EvaluationReport, RuleSimulation
from ..models.webhook import OutgoingWebhookConfig, DeliveryResult, DeliveryLogEntry
from ..models.events import DomainEvent
from ..services.step_resolver import StepGraphResolver
from ..services.execution_state_machine import ExecutionStateMachine
from ..services.unit_progression import UnitProgressionController, AdvanceResult, RecordAndAdvanceResult
from ..services.automation_engine import AutomationRuleEngine
from ..services.webhook_dispatcher import WebhookDispatcher
from ..services.fault_tolerance import HealthTracker
from ..services.event_bus import EventBus
from ..utils.store import ProductionStore
from ..utils.url_validation import validate_webhook_url
from ..utils.logger import get_logger, set_log_context
from .config import OrchestratorConfig, load_step_catalog
from .exceptions import (
    ConfigurationError, OrchestratorError, PermissionDeniedError, ProductionFlowError, error_registry
)


@runtime_checkable
class PermissionChecker(Protocol):
    """Authorisation hook consulted by operator-facing methods."""

    def can_perform(self, user: str, action: str) -> bool:
        ...


class ProductionOrchestrator:
    """
    Main orchestrator class that coordinates all services.

    Provides a unified interface for:
    - Work order creation and unit progression
    - Step result recording, bypass and status queries
    - Automation rule registration, evaluation and simulation
    - Outgoing webhook registration, test sends and re-enabling
    - System health reporting
    """

    def __init__(
        self,
        store: ProductionStore,
        config: Optional[OrchestratorConfig] = None,
        graphs: Optional[Mapping[str, StepGraph]] = None,
        permission_checker: Optional[PermissionChecker] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep=asyncio.sleep
    ):
        """
        Initialize the ProductionOrchestrator.

        Args:
            store: Persistence backend (DatabaseManager or InMemoryDatabase)
            config: Orchestrator configuration
            graphs: Step graphs by product type; loaded from the configured
                catalogue and the store on start when omitted
            permission_checker: Optional authorisation hook
            http_client: HTTP client for outgoing webhooks
            sleep: Coroutine used between delivery attempts
        """
        self.store = store
        self.config = config or OrchestratorConfig()
        self.permission_checker = permission_checker

        self.event_bus = EventBus(maxsize=self.config.event_queue_size)
        self.resolver = StepGraphResolver(graphs)
        self.state_machine = ExecutionStateMachine(store, self.event_bus)
        self.progression = UnitProgressionController(store, self.resolver, self.state_machine, self.event_bus)

        self.health_tracker = HealthTracker(self.config.dispatcher.health_failure_threshold)
        self.dispatcher = WebhookDispatcher(
            store, self.health_tracker, self.config.dispatcher, client=http_client, sleep=sleep
        )
        self.rule_engine = AutomationRuleEngine(
            store, progression=self.progression, dispatcher=self.dispatcher, config=self.config.automation
        )

        self.event_bus.subscribe(self._on_domain_event)

        # Recently seen idempotency keys, oldest first
        self._seen_keys: "OrderedDict[str, None]" = OrderedDict()
        self._duplicates = 0

        self._is_running = False

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="orchestrator")

    async def start(self):
        """Start the orchestrator and all services."""
        self.logger.info("Starting ProductionOrchestrator", extra={
            "step_catalog": self.config.step_catalog,
            "dispatcher_workers": self.config.dispatcher.workers
        })

        try:
            await self.store.initialize()
            await self._load_graphs()
            await self.dispatcher.load_health()
            await self.dispatcher.start()
            await self.event_bus.start()

            self._is_running = True
            self.logger.info("ProductionOrchestrator started successfully", extra={
                "product_types": self.resolver.product_types
            })

        except ProductionFlowError:
            self.logger.error("Failed to start ProductionOrchestrator", exc_info=True)
            await self.stop()
            raise
        except Exception as e:
            self.logger.error("Failed to start ProductionOrchestrator", exc_info=True)
            await self.stop()
            raise OrchestratorError(f"Failed to start orchestrator: {str(e)}")

    async def _load_graphs(self):
        if self.config.step_catalog:
            for product_type, graph in load_step_catalog(self.config.step_catalog).items():
                self.resolver.register(graph)
                await self.store.upsert_step_definitions(product_type, list(graph.definitions))

        known = set(self.resolver.product_types)
        for product_type in await self.store.get_product_types():
            if product_type not in known:
                definitions = await self.store.get_step_definitions(product_type)
                self.resolver.register(StepGraph.from_definitions(product_type, definitions))

    async def stop(self):
        """Stop the orchestrator, draining queued events and deliveries."""
        self.logger.info("Stopping ProductionOrchestrator")

        await self.event_bus.stop(drain=self._is_running)
        await self.dispatcher.stop(drain=self._is_running)
        await self.store.close()

        self._is_running = False
        self.logger.info("ProductionOrchestrator stopped")

    def register_graph(self, graph: StepGraph):
        """Make a step graph available to the resolver."""
        self.resolver.register(graph)

    def _authorize(self, user: Optional[str], action: str):
        if self.permission_checker is None:
            return
        if not user or not self.permission_checker.can_perform(user, action):
            raise PermissionDeniedError(user or "<anonymous>", action)

    # Event routing

    async def _on_domain_event(self, event: DomainEvent):
        report = await self.handle_trigger_event(event.to_trigger_event())
        if report is not None and report.broadcasted(event.event_type):
            # A rule already fanned this event out to the subscribers
            return
        await self.dispatcher.dispatch_event(event.event_type, event.to_payload())

    def _is_duplicate(self, key: Optional[str]) -> bool:
        if not key or self.config.idempotency_cache_size == 0:
            return False
        if key in self._seen_keys:
            self._seen_keys.move_to_end(key)
            return True
        self._seen_keys[key] = None
        while len(self._seen_keys) > self.config.idempotency_cache_size:
            self._seen_keys.popitem(last=False)
        return False

    async def handle_trigger_event(self, event: TriggerEvent) -> Optional[EvaluationReport]:
        """
        Evaluate a trigger event against its source's rules and run the actions.

        Returns ``None`` when the idempotency key was already processed.
        """
        if self._is_duplicate(event.idempotency_key):
            self._duplicates += 1
            self.logger.info("Duplicate trigger event ignored", extra={
                "source_id": event.source_id,
                "idempotency_key": event.idempotency_key
            })
            return None
        return await self.rule_engine.process(event)

    # Work orders and units

    async def create_work_order(self, wo_number: str, product_type: str, batch_size: int = 1,
                                notes: Optional[str] = None, scheduled_date: Optional[str] = None,
                                user: Optional[str] = None) -> Tuple[WorkOrder, List[ProductionUnit]]:
        """Create a work order and its units."""
        self._authorize(user, "create_work_order")
        self.resolver.get_graph(product_type)
        if batch_size < 1:
            raise ConfigurationError("batch_size", "batch_size must be positive")

        work_order = WorkOrder(
            work_order_id=str(uuid.uuid4()),
            wo_number=wo_number,
            product_type=product_type,
            batch_size=batch_size,
            notes=notes,
            scheduled_date=scheduled_date,
            created_by=user or "system"
        )
        await self.store.insert_work_order(work_order)
        units = await self.progression.create_units_for_work_order(
            work_order, self.config.automation.serial_prefix_for(product_type)
        )

        self.logger.info("Work order created", extra={
            "work_order_id": work_order.work_order_id,
            "wo_number": wo_number,
            "product_type": product_type,
            "units": len(units)
        })
        return work_order, units

    async def advance_unit(self, unit_ref: str, user: Optional[str] = None) -> AdvanceResult:
        """Advance a unit (by id or serial number) to its next step."""
        self._authorize(user, "advance_unit")
        unit = await self.progression.get_unit(unit_ref)
        return await self.progression.advance(unit.unit_id)

    async def record_step_result(self, unit_ref: str, value_recorded: Optional[str] = None,
                                 measurement_values: Optional[Dict[str, Any]] = None,
                                 barcode_scanned: Optional[str] = None,
                                 batch_number: Optional[str] = None,
                                 notes: Optional[str] = None,
                                 operator_initials: Optional[str] = None,
                                 user: Optional[str] = None) -> RecordAndAdvanceResult:
        """Record the result of the unit's current step and advance it."""
        self._authorize(user, "record_step_result")
        unit = await self.progression.get_unit(unit_ref)
        return await self.progression.record_and_advance(
            unit.unit_id,
            value_recorded=value_recorded,
            measurement_values=measurement_values,
            barcode_scanned=barcode_scanned,
            batch_number=batch_number,
            notes=notes,
            operator_initials=operator_initials
        )

    async def bypass_step(self, unit_ref: str, reason: str, user: Optional[str] = None) -> AdvanceResult:
        """Skip the unit's open step on operator instruction."""
        self._authorize(user, "bypass_step")
        unit = await self.progression.get_unit(unit_ref)
        return await self.progression.bypass_step(unit.unit_id, reason)

    async def get_unit_status(self, unit_ref: str) -> Dict[str, Any]:
        """Unit state with its execution history."""
        return await self.progression.get_unit_status(unit_ref)

    # Automation rules

    async def register_rule(self, rule: AutomationRule, user: Optional[str] = None) -> AutomationRule:
        """Create or replace an automation rule."""
        self._authorize(user, "manage_rules")
        return await self.store.upsert_rule(rule)

    async def simulate_rules(self, source_id: str, payload: Dict[str, Any],
                             event_type: str = "test") -> List[RuleSimulation]:
        """Dry-run every rule of a source against a sample payload."""
        rules = await self.store.get_rules_for_source(source_id, enabled_only=False)
        return self.rule_engine.simulate(rules, payload, source_id=source_id, event_type=event_type)

    # Outgoing webhooks

    async def register_webhook(self, webhook: OutgoingWebhookConfig,
                               user: Optional[str] = None) -> OutgoingWebhookConfig:
        """Create or replace an outgoing webhook after validating its URL."""
        self._authorize(user, "manage_webhooks")
        valid, reason = validate_webhook_url(webhook.url, allow_private=self.config.dispatcher.allow_private_urls)
        if not valid:
            raise ConfigurationError("url", f"Invalid webhook URL: {reason}")
        return await self.store.upsert_webhook(webhook)

    async def send_test_webhook(self, webhook_id: str, user: Optional[str] = None) -> DeliveryResult:
        """Send a test notification to a webhook."""
        self._authorize(user, "manage_webhooks")
        return await self.dispatcher.send_test(webhook_id)

    async def enable_webhook(self, webhook_id: str, user: Optional[str] = None) -> OutgoingWebhookConfig:
        """Re-enable a webhook and reset its failure count."""
        self._authorize(user, "manage_webhooks")
        return await self.dispatcher.enable(webhook_id)

    async def get_delivery_logs(self, webhook_id: Optional[str] = None, limit: int = 100) -> List[DeliveryLogEntry]:
        """Most recent delivery log entries first."""
        return await self.store.list_delivery_logs(webhook_id, limit)

    # Monitoring

    async def get_system_health(self) -> Dict[str, Any]:
        """
        Get system health information.

        Returns:
            System health dictionary
        """
        try:
            database_healthy = await self.store.is_healthy()
            webhooks = await self.store.list_webhooks()
        except ProductionFlowError as e:
            self.logger.error("Error getting system health", exc_info=True)
            return {
                "overall_status": "unknown",
                "error": e.message
            }

        degraded = [w.webhook_id for w in webhooks if w.health_degraded]
        if not database_healthy or not self._is_running:
            overall = "critical"
        elif degraded:
            overall = "degraded"
        else:
            overall = "healthy"

        return {
            "overall_status": overall,
            "running": self._is_running,
            "database_healthy": database_healthy,
            "product_types": self.resolver.product_types,
            "event_bus": self.event_bus.get_statistics(),
            "dispatcher": self.dispatcher.get_statistics(),
            "webhooks": {
                "total": len(webhooks),
                "enabled": sum(1 for w in webhooks if w.enabled),
                "health_degraded": degraded
            },
            "duplicate_trigger_events": self._duplicates,
            "errors": error_registry.get_error_statistics()
        }

    # Utility Methods
    def is_running(self) -> bool:
        """Check if orchestrator is running."""
        return self._is_running

    async def wait_until_idle(self):
        """Wait until queued domain events and webhook deliveries are processed."""
        await self.event_bus.join()
        await self.dispatcher.join()

    async def health_check(self) -> bool:
        """
        Perform a health check.

        Returns:
            True if system is healthy
        """
        if not self._is_running:
            return False
        health = await self.get_system_health()
        return health.get("overall_status") not in ["critical", "unknown"]
