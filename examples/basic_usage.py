"""
Basic usage example for Production Flow Orchestrator

Runs a SENSOR unit through its step sequence against the in-memory store,
with an automation rule and an outgoing webhook wired to the step events.
Swap ``InMemoryDatabase`` for ``DatabaseManager`` to run against PostgreSQL.
"""

import asyncio
from pathlib import Path

from production_flow_orchestrator import (
    ProductionOrchestrator,
    OrchestratorConfig,
    AutomationRule,
    OutgoingWebhookConfig,
    InMemoryDatabase,
    load_step_catalog,
    setup_logger
)

CATALOG = Path(__file__).with_name("steps.yaml")


async def basic_example():
    """Create a work order and record results until the unit completes."""
    print("Starting Production Flow Orchestrator example")

    setup_logger("production_flow_orchestrator", level="WARNING", structured=False)
    orchestrator = ProductionOrchestrator(
        InMemoryDatabase(),
        OrchestratorConfig(),
        graphs=load_step_catalog(CATALOG)
    )
    await orchestrator.start()

    try:
        await orchestrator.register_rule(AutomationRule.from_dict({
            "name": "Record finished units",
            "source_id": "unit_completed",
            "action_type": "log_activity",
            "field_mappings": {
                "action": "unit_completed",
                "entity_type": "unit",
                "entity_id": "{{serial_number}}"
            }
        }))
        # Deliveries to example.com fail and show up in the delivery log
        await orchestrator.register_webhook(OutgoingWebhookConfig(
            webhook_id="mes-sync",
            name="MES sync",
            url="https://mes.example.com/hooks/production",
            event_type="unit_completed",
            secret="change-me",
            retry_attempts=1
        ))

        work_order, units = await orchestrator.create_work_order("WO-1001", "SENSOR", batch_size=2)
        serial = units[0].serial_number
        print(f"Work order {work_order.wo_number}: {[u.serial_number for u in units]}")

        results = [
            {"barcode_scanned": "H-000123"},
            {"value_recorded": "B"},
            {"measurement_values": {"offset": 0.4}},
            {"measurement_values": {"pressure": 24}},   # out of range, unit goes on hold
            {"measurement_values": {"pressure": 15}},   # retry passes
            {"batch_number": "LOT-7"},
        ]
        for result in results:
            outcome = await orchestrator.record_step_result(serial, **result)
            print(f"  step {outcome.record.execution.step_number}: "
                  f"{outcome.record.validation.status.value} -> {outcome.advance.action} "
                  f"(current step {outcome.advance.unit.current_step})")

        await orchestrator.wait_until_idle()

        status = await orchestrator.get_unit_status(serial)
        print(f"Unit {serial} is {status['unit']['status']} "
              f"after {len(status['executions'])} executions")

        health = await orchestrator.get_system_health()
        print(f"System health: {health['overall_status']}")

    finally:
        await orchestrator.stop()
        print("Orchestrator stopped")


if __name__ == "__main__":
    asyncio.run(basic_example())
