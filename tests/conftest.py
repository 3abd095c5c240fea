"""
Shared fixtures for Production Flow Orchestrator tests.
"""

import uuid
from typing import Callable, List

import httpx
import pytest
import pytest_asyncio

from production_flow_orchestrator.core.config import AutomationConfig, DispatcherConfig, parse_step_catalog
from production_flow_orchestrator.core.exceptions import error_registry
from production_flow_orchestrator.models.unit import WorkOrder
from production_flow_orchestrator.models.webhook import OutgoingWebhookConfig
from production_flow_orchestrator.services.event_bus import EventBus
from production_flow_orchestrator.services.execution_state_machine import ExecutionStateMachine
from production_flow_orchestrator.services.fault_tolerance import HealthTracker
from production_flow_orchestrator.services.step_resolver import StepGraphResolver
from production_flow_orchestrator.services.unit_progression import UnitProgressionController
from production_flow_orchestrator.services.webhook_dispatcher import WebhookDispatcher
from production_flow_orchestrator.utils.memory_store import InMemoryDatabase


CATALOG = {
    "product_types": {
        # Variant branch, then a blocking range check without restart
        "SENSOR": [
            {"step_number": 1, "title": "Inspect housing"},
            {"step_number": 2, "title": "Select variant", "requires_value_input": True},
            {"step_number": 3, "title": "Calibrate variant A", "conditional_on_step": 2, "conditional_value": "A"},
            {"step_number": 4, "title": "Calibrate variant B", "conditional_on_step": 2, "conditional_value": "B"},
            {
                "step_number": 5,
                "title": "Pressure test",
                "blocks_on_failure": True,
                "measurement_fields": [{"name": "pressure", "label": "Pressure", "unit": "bar", "type": "number"}],
                "validation_rules": {"min": 10, "max": 20},
            },
            {"step_number": 6, "title": "Final check"},
        ],
        # Blocking pass/fail test that rewinds to alignment
        "MLA": [
            {"step_number": 1, "title": "Assemble"},
            {"step_number": 2, "title": "Align optics"},
            {
                "step_number": 3,
                "title": "Leak test",
                "blocks_on_failure": True,
                "restart_from_step": 2,
                "validation_rules": {"pass_fail": True},
            },
            {"step_number": 4, "title": "Pack", "requires_batch_number": True},
        ],
    }
}

WEBHOOK_URL = "https://hooks.example.com/production"


@pytest.fixture(autouse=True)
def _reset_error_registry():
    error_registry.reset()
    yield
    error_registry.reset()


@pytest.fixture
def graphs():
    return parse_step_catalog(CATALOG)


@pytest.fixture
def resolver(graphs):
    return StepGraphResolver(graphs)


@pytest_asyncio.fixture
async def store():
    db = InMemoryDatabase()
    await db.initialize()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def event_bus():
    return EventBus()


@pytest_asyncio.fixture
async def controller(store, resolver, event_bus):
    state_machine = ExecutionStateMachine(store, event_bus)
    return UnitProgressionController(store, resolver, state_machine, event_bus)


@pytest.fixture
def make_unit(store, controller):
    """Create a one-unit work order of the given product type."""

    async def _make(product_type: str = "SENSOR"):
        work_order = WorkOrder(
            work_order_id=str(uuid.uuid4()),
            wo_number=f"WO-{uuid.uuid4().hex[:8]}",
            product_type=product_type,
            batch_size=1
        )
        await store.insert_work_order(work_order)
        units = await controller.create_units_for_work_order(
            work_order, AutomationConfig().serial_prefix_for(product_type)
        )
        return units[0]

    return _make


class RecordingHandler:
    """MockTransport handler replaying a scripted list of responses."""

    def __init__(self, responses: List[Callable[[httpx.Request], httpx.Response]]):
        self.responses = list(responses)
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        index = min(len(self.requests), len(self.responses)) - 1
        return self.responses[index](request)


def respond(status: int, body: str = "", headers=None):
    def _response(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, text=body, headers=headers or {})
    return _response


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(delay: float):
        sleeps.append(delay)
    return _sleep


@pytest.fixture
def make_dispatcher(store, fake_sleep):
    """Build a dispatcher whose HTTP client replays ``handler``."""

    def _make(handler, **config_overrides):
        config = DispatcherConfig(**config_overrides)
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return WebhookDispatcher(
            store,
            HealthTracker(config.health_failure_threshold),
            config,
            client=client,
            sleep=fake_sleep,
            rng=lambda: 0.5
        )

    return _make


@pytest.fixture
def make_webhook(store):
    async def _make(**overrides):
        data = {
            "webhook_id": str(uuid.uuid4()),
            "name": "ERP sync",
            "url": WEBHOOK_URL,
            "event_type": "step_completed",
            "secret": "s3cret",
            "retry_attempts": 3,
        }
        data.update(overrides)
        return await store.upsert_webhook(OutgoingWebhookConfig.from_dict(data))

    return _make
