"""
Database utilities for Production Flow Orchestrator

Provides database connection management, query execution, and state persistence
for step definitions, units, executions, automation rules and outgoing webhooks.
"""

import json
import uuid
import asyncpg
from pathlib import Path
from typing import Dict, List, Optional, Any
from contextlib import asynccontextmanager

from ..models.steps import StepDefinition
from ..models.unit import (
    WorkOrder, WorkOrderStatus, ProductionUnit, StepExecution, ExecutionStatus, UnitStatus, utcnow
)
from ..models.automation import AutomationRule
from ..models.webhook import OutgoingWebhookConfig, DeliveryLogEntry, DeliveryOutcome
from ..core.exceptions import DatabaseError, AlreadyActiveError

SCHEMA_PATH = Path(__file__).resolve().parent.parent / "sql" / "schema.sql"

_EXECUTION_COLUMNS = """
    execution_id, unit_id, step_number, status, sequence, retry_count,
    started_at, completed_at, value_recorded, measurement_values,
    validation_status, validation_message, barcode_scanned, batch_number,
    notes, operator_initials, skip_reason, superseded_by, created_at
"""

_UNIT_COLUMNS = """
    unit_id, serial_number, work_order_id, product_type, position_in_batch,
    current_step, status, batch_number, operator_initials, label_printed,
    certificate_generated, quality_approved, created_at, updated_at
"""

_WORK_ORDER_COLUMNS = """
    work_order_id, wo_number, product_type, batch_size, status, notes,
    scheduled_date, created_by, created_at, updated_at
"""

_WEBHOOK_COLUMNS = """
    webhook_id, name, url, event_type, enabled, secret, retry_attempts, headers,
    timeout_seconds, consecutive_failures, disabled_reason, created_at, updated_at
"""


def _load_json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def _execution_from_row(row) -> StepExecution:
    data = dict(row)
    data["measurement_values"] = _load_json(data["measurement_values"])
    return StepExecution.from_dict(data)


def _webhook_from_row(row) -> OutgoingWebhookConfig:
    data = dict(row)
    data["headers"] = _load_json(data["headers"])
    return OutgoingWebhookConfig.from_dict(data)


def _rule_from_row(row) -> AutomationRule:
    data = dict(row)
    data["conditions"] = _load_json(data["conditions"])
    data["field_mappings"] = _load_json(data["field_mappings"])
    return AutomationRule.from_dict(data)


def _delivery_log_from_row(row) -> DeliveryLogEntry:
    data = dict(row)
    data["payload"] = _load_json(data["payload"])
    data["outcome"] = DeliveryOutcome(data["outcome"])
    return DeliveryLogEntry(**data)


class DatabaseManager:
    """
    Manages database connections and operations for the production flow orchestrator.

    Implements the ``ProductionStore`` protocol on PostgreSQL with connection
    pooling. The partial unique index on ``step_executions`` is the source of
    truth for "one non-terminal execution per (unit, step)".
    """

    def __init__(self, connection_string: str, pool_size: int = 10, max_overflow: int = 20):
        """
        Initialize database manager.

        Args:
            connection_string: PostgreSQL connection string
            pool_size: Base connection pool size
            max_overflow: Maximum additional connections
        """
        self.connection_string = connection_string
        self.pool_size = pool_size
        self.max_overflow = max_overflow
        self.pool: Optional[asyncpg.Pool] = None

    async def initialize(self) -> None:
        """Initialize database connection pool."""
        try:
            self.pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=1,
                max_size=self.pool_size + self.max_overflow,
                command_timeout=60
            )
        except Exception as e:
            raise DatabaseError("initialization", f"Failed to create connection pool: {str(e)}")

    async def create_schema(self) -> None:
        """Apply the bundled schema; every statement is idempotent."""
        try:
            async with self.get_connection() as conn:
                await conn.execute(SCHEMA_PATH.read_text(encoding="utf-8"))
        except Exception as e:
            raise DatabaseError("create_schema", str(e))

    async def close(self) -> None:
        """Close database connection pool."""
        if self.pool:
            await self.pool.close()

    async def is_healthy(self) -> bool:
        """Check database connectivity."""
        if not self.pool:
            return False
        try:
            async with self.pool.acquire() as connection:
                await connection.execute("SELECT 1")
                return True
        except (asyncpg.PostgresError, OSError):
            return False

    @asynccontextmanager
    async def get_connection(self):
        """Get a database connection from the pool."""
        if not self.pool:
            raise DatabaseError("connection", "Database pool not initialized")

        async with self.pool.acquire() as connection:
            yield connection

    # Step Definition Methods
    async def upsert_step_definitions(self, product_type: str, definitions: List[StepDefinition]) -> None:
        """Replace the step table for a product type."""
        try:
            async with self.get_connection() as conn:
                async with conn.transaction():
                    await conn.execute("DELETE FROM production_steps WHERE product_type = $1", product_type)
                    await conn.executemany(
                        """
                        INSERT INTO production_steps (product_type, step_number, sort_order, definition)
                        VALUES ($1, $2, $3, $4::jsonb)
                        """,
                        [
                            (product_type, d.step_number, d.sort_order, json.dumps(d.to_dict()))
                            for d in definitions
                        ]
                    )
        except Exception as e:
            raise DatabaseError("upsert_step_definitions", str(e), "production_steps")

    async def get_step_definitions(self, product_type: str) -> List[StepDefinition]:
        """Get the step table for a product type in sort order."""
        try:
            async with self.get_connection() as conn:
                rows = await conn.fetch(
                    """
                    SELECT definition FROM production_steps
                    WHERE product_type = $1 ORDER BY sort_order, step_number
                    """,
                    product_type
                )
                return [StepDefinition.from_dict(_load_json(row["definition"])) for row in rows]
        except Exception as e:
            raise DatabaseError("get_step_definitions", str(e), "production_steps")

    async def get_product_types(self) -> List[str]:
        try:
            async with self.get_connection() as conn:
                rows = await conn.fetch("SELECT DISTINCT product_type FROM production_steps ORDER BY product_type")
                return [row["product_type"] for row in rows]
        except Exception as e:
            raise DatabaseError("get_product_types", str(e), "production_steps")

    # Work Order Methods
    async def insert_work_order(self, work_order: WorkOrder) -> WorkOrder:
        """Insert a work order."""
        try:
            async with self.get_connection() as conn:
                await conn.execute(
                    """
                    INSERT INTO work_orders (
                        work_order_id, wo_number, product_type, batch_size, status,
                        notes, scheduled_date, created_by, created_at, updated_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                    """,
                    work_order.work_order_id, work_order.wo_number, work_order.product_type,
                    work_order.batch_size, work_order.status.value, work_order.notes,
                    work_order.scheduled_date, work_order.created_by,
                    work_order.created_at, work_order.updated_at
                )
            return work_order
        except Exception as e:
            raise DatabaseError("insert_work_order", str(e), "work_orders")

    async def get_work_order(self, work_order_id: str) -> Optional[WorkOrder]:
        try:
            async with self.get_connection() as conn:
                row = await conn.fetchrow(
                    f"SELECT {_WORK_ORDER_COLUMNS} FROM work_orders WHERE work_order_id = $1", work_order_id
                )
                return WorkOrder.from_dict(dict(row)) if row else None
        except Exception as e:
            raise DatabaseError("get_work_order", str(e), "work_orders")

    async def get_work_order_by_number(self, wo_number: str) -> Optional[WorkOrder]:
        try:
            async with self.get_connection() as conn:
                row = await conn.fetchrow(
                    f"SELECT {_WORK_ORDER_COLUMNS} FROM work_orders WHERE wo_number = $1", wo_number
                )
                return WorkOrder.from_dict(dict(row)) if row else None
        except Exception as e:
            raise DatabaseError("get_work_order_by_number", str(e), "work_orders")

    async def update_work_order_status(self, wo_number: str, status: WorkOrderStatus) -> Optional[WorkOrder]:
        try:
            async with self.get_connection() as conn:
                row = await conn.fetchrow(
                    f"""
                    UPDATE work_orders SET status = $1, updated_at = $2
                    WHERE wo_number = $3
                    RETURNING {_WORK_ORDER_COLUMNS}
                    """,
                    status.value, utcnow(), wo_number
                )
                return WorkOrder.from_dict(dict(row)) if row else None
        except Exception as e:
            raise DatabaseError("update_work_order_status", str(e), "work_orders")

    # Unit Methods
    async def insert_unit(self, unit: ProductionUnit) -> ProductionUnit:
        """Insert a production unit."""
        try:
            async with self.get_connection() as conn:
                await conn.execute(
                    f"""
                    INSERT INTO work_order_items ({_UNIT_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
                    """,
                    unit.unit_id, unit.serial_number, unit.work_order_id, unit.product_type,
                    unit.position_in_batch, unit.current_step, unit.status.value,
                    unit.batch_number, unit.operator_initials, unit.label_printed,
                    unit.certificate_generated, unit.quality_approved,
                    unit.created_at, unit.updated_at
                )
            return unit
        except Exception as e:
            raise DatabaseError("insert_unit", str(e), "work_order_items")

    async def get_unit(self, unit_id: str) -> Optional[ProductionUnit]:
        try:
            async with self.get_connection() as conn:
                row = await conn.fetchrow(
                    f"SELECT {_UNIT_COLUMNS} FROM work_order_items WHERE unit_id = $1", unit_id
                )
                return ProductionUnit.from_dict(dict(row)) if row else None
        except Exception as e:
            raise DatabaseError("get_unit", str(e), "work_order_items")

    async def get_unit_by_serial(self, serial_number: str) -> Optional[ProductionUnit]:
        try:
            async with self.get_connection() as conn:
                row = await conn.fetchrow(
                    f"SELECT {_UNIT_COLUMNS} FROM work_order_items WHERE serial_number = $1", serial_number
                )
                return ProductionUnit.from_dict(dict(row)) if row else None
        except Exception as e:
            raise DatabaseError("get_unit_by_serial", str(e), "work_order_items")

    async def update_unit(self, unit: ProductionUnit) -> ProductionUnit:
        """Persist the mutable state of a unit."""
        unit.updated_at = utcnow()
        try:
            async with self.get_connection() as conn:
                result = await conn.execute(
                    """
                    UPDATE work_order_items SET
                        current_step = $2, status = $3, batch_number = $4,
                        operator_initials = $5, label_printed = $6,
                        certificate_generated = $7, quality_approved = $8, updated_at = $9
                    WHERE unit_id = $1
                    """,
                    unit.unit_id, unit.current_step, unit.status.value, unit.batch_number,
                    unit.operator_initials, unit.label_printed, unit.certificate_generated,
                    unit.quality_approved, unit.updated_at
                )
        except Exception as e:
            raise DatabaseError("update_unit", str(e), "work_order_items")
        if result == "UPDATE 0":
            raise DatabaseError("update_unit", f"unit {unit.unit_id} does not exist", "work_order_items")
        return unit

    async def update_unit_state(self, unit_id: str, status: Optional[UnitStatus] = None,
                                flags: Optional[Dict[str, bool]] = None) -> ProductionUnit:
        """Update status and downstream flags only; ``current_step`` is never written here."""
        flags = flags or {}
        try:
            async with self.get_connection() as conn:
                row = await conn.fetchrow(
                    f"""
                    UPDATE work_order_items SET
                        status = COALESCE($2, status),
                        label_printed = COALESCE($3, label_printed),
                        certificate_generated = COALESCE($4, certificate_generated),
                        quality_approved = COALESCE($5, quality_approved),
                        updated_at = $6
                    WHERE unit_id = $1
                    RETURNING {_UNIT_COLUMNS}
                    """,
                    unit_id, status.value if status is not None else None,
                    flags.get("label_printed"), flags.get("certificate_generated"),
                    flags.get("quality_approved"), utcnow()
                )
        except Exception as e:
            raise DatabaseError("update_unit_state", str(e), "work_order_items")
        if row is None:
            raise DatabaseError("update_unit_state", f"unit {unit_id} does not exist", "work_order_items")
        return ProductionUnit.from_dict(dict(row))

    async def list_units(self, work_order_id: str) -> List[ProductionUnit]:
        try:
            async with self.get_connection() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT {_UNIT_COLUMNS} FROM work_order_items
                    WHERE work_order_id = $1 ORDER BY position_in_batch
                    """,
                    work_order_id
                )
                return [ProductionUnit.from_dict(dict(row)) for row in rows]
        except Exception as e:
            raise DatabaseError("list_units", str(e), "work_order_items")

    # Step Execution Methods
    async def insert_execution(self, execution: StepExecution) -> StepExecution:
        """Insert an execution; the partial unique index rejects a second active one."""
        try:
            async with self.get_connection() as conn:
                execution.sequence = await conn.fetchval(
                    """
                    INSERT INTO step_executions (
                        execution_id, unit_id, step_number, status, retry_count,
                        started_at, completed_at, value_recorded, measurement_values,
                        validation_status, validation_message, barcode_scanned,
                        batch_number, notes, operator_initials, skip_reason,
                        superseded_by, created_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb, $10, $11, $12, $13, $14, $15, $16, $17, $18)
                    RETURNING sequence
                    """,
                    execution.execution_id, execution.unit_id, execution.step_number,
                    execution.status.value, execution.retry_count, execution.started_at,
                    execution.completed_at, execution.value_recorded,
                    json.dumps(execution.measurement_values),
                    execution.validation_status.value if execution.validation_status else None,
                    execution.validation_message, execution.barcode_scanned,
                    execution.batch_number, execution.notes, execution.operator_initials,
                    execution.skip_reason, execution.superseded_by, execution.created_at
                )
            return execution
        except asyncpg.UniqueViolationError:
            raise AlreadyActiveError(execution.unit_id, execution.step_number)
        except Exception as e:
            raise DatabaseError("insert_execution", str(e), "step_executions")

    async def update_execution(self, execution: StepExecution) -> StepExecution:
        try:
            async with self.get_connection() as conn:
                result = await conn.execute(
                    """
                    UPDATE step_executions SET
                        status = $2, retry_count = $3, started_at = $4, completed_at = $5,
                        value_recorded = $6, measurement_values = $7::jsonb,
                        validation_status = $8, validation_message = $9,
                        barcode_scanned = $10, batch_number = $11, notes = $12,
                        operator_initials = $13, skip_reason = $14, superseded_by = $15
                    WHERE execution_id = $1
                    """,
                    execution.execution_id, execution.status.value, execution.retry_count,
                    execution.started_at, execution.completed_at, execution.value_recorded,
                    json.dumps(execution.measurement_values),
                    execution.validation_status.value if execution.validation_status else None,
                    execution.validation_message, execution.barcode_scanned,
                    execution.batch_number, execution.notes, execution.operator_initials,
                    execution.skip_reason, execution.superseded_by
                )
        except Exception as e:
            raise DatabaseError("update_execution", str(e), "step_executions")
        if result == "UPDATE 0":
            raise DatabaseError("update_execution", f"execution {execution.execution_id} does not exist",
                                "step_executions")
        return execution

    async def get_execution(self, execution_id: str) -> Optional[StepExecution]:
        try:
            async with self.get_connection() as conn:
                row = await conn.fetchrow(
                    f"SELECT {_EXECUTION_COLUMNS} FROM step_executions WHERE execution_id = $1", execution_id
                )
                return _execution_from_row(row) if row else None
        except Exception as e:
            raise DatabaseError("get_execution", str(e), "step_executions")

    async def get_active_execution(self, unit_id: str, step_number: int) -> Optional[StepExecution]:
        try:
            async with self.get_connection() as conn:
                row = await conn.fetchrow(
                    f"""
                    SELECT {_EXECUTION_COLUMNS} FROM step_executions
                    WHERE unit_id = $1 AND step_number = $2 AND status = ANY($3::text[])
                    """,
                    unit_id, step_number,
                    [ExecutionStatus.PENDING.value, ExecutionStatus.IN_PROGRESS.value]
                )
                return _execution_from_row(row) if row else None
        except Exception as e:
            raise DatabaseError("get_active_execution", str(e), "step_executions")

    async def list_executions(self, unit_id: str) -> List[StepExecution]:
        try:
            async with self.get_connection() as conn:
                rows = await conn.fetch(
                    f"SELECT {_EXECUTION_COLUMNS} FROM step_executions WHERE unit_id = $1 ORDER BY sequence",
                    unit_id
                )
                return [_execution_from_row(row) for row in rows]
        except Exception as e:
            raise DatabaseError("list_executions", str(e), "step_executions")

    # Automation Rule Methods
    async def upsert_rule(self, rule: AutomationRule) -> AutomationRule:
        try:
            async with self.get_connection() as conn:
                await conn.execute(
                    """
                    INSERT INTO automation_rules (
                        rule_id, name, source_id, action_type, conditions,
                        field_mappings, sort_order, enabled, created_at
                    ) VALUES ($1, $2, $3, $4, $5::jsonb, $6::jsonb, $7, $8, $9)
                    ON CONFLICT (rule_id) DO UPDATE SET
                        name = EXCLUDED.name,
                        source_id = EXCLUDED.source_id,
                        action_type = EXCLUDED.action_type,
                        conditions = EXCLUDED.conditions,
                        field_mappings = EXCLUDED.field_mappings,
                        sort_order = EXCLUDED.sort_order,
                        enabled = EXCLUDED.enabled
                    """,
                    rule.rule_id, rule.name, rule.source_id, rule.action_type.value,
                    json.dumps(rule.conditions) if rule.conditions is not None else None,
                    json.dumps(rule.field_mappings), rule.sort_order, rule.enabled, rule.created_at
                )
            return rule
        except Exception as e:
            raise DatabaseError("upsert_rule", str(e), "automation_rules")

    async def get_rules_for_source(self, source_id: str, enabled_only: bool = True) -> List[AutomationRule]:
        try:
            async with self.get_connection() as conn:
                rows = await conn.fetch(
                    """
                    SELECT rule_id, name, source_id, action_type, conditions,
                           field_mappings, sort_order, enabled, created_at
                    FROM automation_rules
                    WHERE source_id = $1 AND (enabled OR NOT $2)
                    ORDER BY sort_order, created_at
                    """,
                    source_id, enabled_only
                )
                return [_rule_from_row(row) for row in rows]
        except Exception as e:
            raise DatabaseError("get_rules_for_source", str(e), "automation_rules")

    # Outgoing Webhook Methods
    async def upsert_webhook(self, config: OutgoingWebhookConfig) -> OutgoingWebhookConfig:
        config.updated_at = utcnow()
        try:
            async with self.get_connection() as conn:
                await conn.execute(
                    f"""
                    INSERT INTO outgoing_webhooks ({_WEBHOOK_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9, $10, $11, $12, $13)
                    ON CONFLICT (webhook_id) DO UPDATE SET
                        name = EXCLUDED.name,
                        url = EXCLUDED.url,
                        event_type = EXCLUDED.event_type,
                        enabled = EXCLUDED.enabled,
                        secret = EXCLUDED.secret,
                        retry_attempts = EXCLUDED.retry_attempts,
                        headers = EXCLUDED.headers,
                        timeout_seconds = EXCLUDED.timeout_seconds,
                        consecutive_failures = EXCLUDED.consecutive_failures,
                        disabled_reason = EXCLUDED.disabled_reason,
                        updated_at = EXCLUDED.updated_at
                    """,
                    config.webhook_id, config.name, config.url, config.event_type,
                    config.enabled, config.secret, config.retry_attempts,
                    json.dumps(config.headers), config.timeout_seconds,
                    config.consecutive_failures, config.disabled_reason,
                    config.created_at, config.updated_at
                )
            return config
        except Exception as e:
            raise DatabaseError("upsert_webhook", str(e), "outgoing_webhooks")

    async def get_webhook(self, webhook_id: str) -> Optional[OutgoingWebhookConfig]:
        try:
            async with self.get_connection() as conn:
                row = await conn.fetchrow(
                    f"SELECT {_WEBHOOK_COLUMNS} FROM outgoing_webhooks WHERE webhook_id = $1", webhook_id
                )
                return _webhook_from_row(row) if row else None
        except Exception as e:
            raise DatabaseError("get_webhook", str(e), "outgoing_webhooks")

    async def list_webhooks(self, event_type: Optional[str] = None,
                            enabled_only: bool = False) -> List[OutgoingWebhookConfig]:
        try:
            async with self.get_connection() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT {_WEBHOOK_COLUMNS} FROM outgoing_webhooks
                    WHERE ($1::text IS NULL OR event_type = $1) AND (enabled OR NOT $2)
                    ORDER BY created_at
                    """,
                    event_type, enabled_only
                )
                return [_webhook_from_row(row) for row in rows]
        except Exception as e:
            raise DatabaseError("list_webhooks", str(e), "outgoing_webhooks")

    async def update_webhook_health(self, webhook_id: str, enabled: bool, consecutive_failures: int,
                                    disabled_reason: Optional[str]) -> None:
        try:
            async with self.get_connection() as conn:
                result = await conn.execute(
                    """
                    UPDATE outgoing_webhooks SET
                        enabled = $2, consecutive_failures = $3,
                        disabled_reason = $4, updated_at = $5
                    WHERE webhook_id = $1
                    """,
                    webhook_id, enabled, consecutive_failures, disabled_reason, utcnow()
                )
        except Exception as e:
            raise DatabaseError("update_webhook_health", str(e), "outgoing_webhooks")
        if result == "UPDATE 0":
            raise DatabaseError("update_webhook_health", f"webhook {webhook_id} does not exist", "outgoing_webhooks")

    async def insert_delivery_log(self, entry: DeliveryLogEntry) -> DeliveryLogEntry:
        try:
            async with self.get_connection() as conn:
                await conn.execute(
                    """
                    INSERT INTO outgoing_webhook_logs (
                        log_id, webhook_id, event_type, payload, delivery_id, outcome,
                        attempts, response_status, response_body, response_time_ms,
                        error_message, is_test, created_at
                    ) VALUES ($1, $2, $3, $4::jsonb, $5, $6, $7, $8, $9, $10, $11, $12, $13)
                    """,
                    entry.log_id, entry.webhook_id, entry.event_type, json.dumps(entry.payload, default=str),
                    entry.delivery_id, entry.outcome.value, entry.attempts, entry.response_status,
                    entry.response_body, entry.response_time_ms, entry.error_message,
                    entry.is_test, entry.created_at
                )
            return entry
        except Exception as e:
            raise DatabaseError("insert_delivery_log", str(e), "outgoing_webhook_logs")

    async def list_delivery_logs(self, webhook_id: Optional[str] = None, limit: int = 100) -> List[DeliveryLogEntry]:
        try:
            async with self.get_connection() as conn:
                rows = await conn.fetch(
                    """
                    SELECT log_id, webhook_id, event_type, payload, delivery_id, outcome,
                           attempts, response_status, response_body, response_time_ms,
                           error_message, is_test, created_at
                    FROM outgoing_webhook_logs
                    WHERE ($1::text IS NULL OR webhook_id = $1)
                    ORDER BY created_at DESC
                    LIMIT $2
                    """,
                    webhook_id, limit
                )
                return [_delivery_log_from_row(row) for row in rows]
        except Exception as e:
            raise DatabaseError("list_delivery_logs", str(e), "outgoing_webhook_logs")

    # Activity Log Methods
    async def insert_activity_log(self, action: str, entity_type: str, entity_id: Optional[str],
                                  details: Dict[str, Any], user_id: Optional[str] = None) -> Dict[str, Any]:
        entry = {
            "id": str(uuid.uuid4()),
            "action": action,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "details": details,
            "user_id": user_id,
            "created_at": utcnow()
        }
        try:
            async with self.get_connection() as conn:
                await conn.execute(
                    """
                    INSERT INTO activity_logs (id, action, entity_type, entity_id, details, user_id, created_at)
                    VALUES ($1, $2, $3, $4, $5::jsonb, $6, $7)
                    """,
                    entry["id"], action, entity_type, entity_id,
                    json.dumps(details, default=str), user_id, entry["created_at"]
                )
        except Exception as e:
            raise DatabaseError("insert_activity_log", str(e), "activity_logs")
        entry["created_at"] = entry["created_at"].isoformat()
        return entry
