"""
Persistence contract for Production Flow Orchestrator

Both the PostgreSQL ``DatabaseManager`` and the ``InMemoryDatabase`` satisfy
this protocol. Services depend on the protocol only.
"""

from typing import Protocol, Optional, List, Dict, Any, runtime_checkable

from ..models.steps import StepDefinition
from ..models.unit import (
    WorkOrder, WorkOrderStatus, ProductionUnit, StepExecution, UnitStatus
)
from ..models.automation import AutomationRule
from ..models.webhook import OutgoingWebhookConfig, DeliveryLogEntry


@runtime_checkable
class ProductionStore(Protocol):
    """Transactional row store accessed by primary key and a few indexed lookups.

    Implementations raise ``DatabaseError`` for storage failures and
    ``AlreadyActiveError`` from ``insert_execution`` when a non-terminal
    execution already exists for the same (unit, step).
    """

    async def initialize(self) -> None: ...

    async def close(self) -> None: ...

    async def is_healthy(self) -> bool: ...

    # Step definitions
    async def upsert_step_definitions(self, product_type: str, definitions: List[StepDefinition]) -> None: ...

    async def get_step_definitions(self, product_type: str) -> List[StepDefinition]: ...

    async def get_product_types(self) -> List[str]: ...

    # Work orders and units
    async def insert_work_order(self, work_order: WorkOrder) -> WorkOrder: ...

    async def get_work_order(self, work_order_id: str) -> Optional[WorkOrder]: ...

    async def get_work_order_by_number(self, wo_number: str) -> Optional[WorkOrder]: ...

    async def update_work_order_status(self, wo_number: str, status: WorkOrderStatus) -> Optional[WorkOrder]: ...

    async def insert_unit(self, unit: ProductionUnit) -> ProductionUnit: ...

    async def get_unit(self, unit_id: str) -> Optional[ProductionUnit]: ...

    async def get_unit_by_serial(self, serial_number: str) -> Optional[ProductionUnit]: ...

    async def update_unit(self, unit: ProductionUnit) -> ProductionUnit: ...

    async def update_unit_state(self, unit_id: str, status: Optional[UnitStatus] = None,
                                flags: Optional[Dict[str, bool]] = None) -> ProductionUnit: ...

    async def list_units(self, work_order_id: str) -> List[ProductionUnit]: ...

    # Step executions
    async def insert_execution(self, execution: StepExecution) -> StepExecution: ...

    async def update_execution(self, execution: StepExecution) -> StepExecution: ...

    async def get_execution(self, execution_id: str) -> Optional[StepExecution]: ...

    async def get_active_execution(self, unit_id: str, step_number: int) -> Optional[StepExecution]: ...

    async def list_executions(self, unit_id: str) -> List[StepExecution]: ...

    # Automation rules
    async def upsert_rule(self, rule: AutomationRule) -> AutomationRule: ...

    async def get_rules_for_source(self, source_id: str, enabled_only: bool = True) -> List[AutomationRule]: ...

    # Outgoing webhooks
    async def upsert_webhook(self, config: OutgoingWebhookConfig) -> OutgoingWebhookConfig: ...

    async def get_webhook(self, webhook_id: str) -> Optional[OutgoingWebhookConfig]: ...

    async def list_webhooks(self, event_type: Optional[str] = None,
                            enabled_only: bool = False) -> List[OutgoingWebhookConfig]: ...

    async def update_webhook_health(self, webhook_id: str, enabled: bool, consecutive_failures: int,
                                    disabled_reason: Optional[str]) -> None: ...

    async def insert_delivery_log(self, entry: DeliveryLogEntry) -> DeliveryLogEntry: ...

    async def list_delivery_logs(self, webhook_id: Optional[str] = None, limit: int = 100) -> List[DeliveryLogEntry]: ...

    # Activity log
    async def insert_activity_log(self, action: str, entity_type: str, entity_id: Optional[str],
                                  details: Dict[str, Any], user_id: Optional[str] = None) -> Dict[str, Any]: ...
