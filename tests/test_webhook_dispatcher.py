"""
Tests for outgoing webhook delivery, retries, health tracking and the worker queue.
"""

import json
from datetime import timedelta
from email.utils import format_datetime

import httpx
import pytest

from production_flow_orchestrator.core.exceptions import (
    HealthDegradedError, TransientDeliveryError, WebhookNotFoundError, error_registry
)
from production_flow_orchestrator.models.unit import utcnow
from production_flow_orchestrator.models.webhook import DeliveryOutcome, DISABLED_HEALTH_DEGRADED
from production_flow_orchestrator.services.webhook_dispatcher import TEST_MESSAGE, parse_retry_after
from production_flow_orchestrator.utils.signing import signature_header, verify_signature

from .conftest import RecordingHandler, respond


class TestParseRetryAfter:
    def test_seconds(self):
        assert parse_retry_after("7") == 7.0

    def test_missing_or_garbage(self):
        assert parse_retry_after(None) is None
        assert parse_retry_after("soon") is None

    def test_http_date(self):
        when = format_datetime(utcnow() + timedelta(seconds=60), usegmt=True)
        assert 50 <= parse_retry_after(when) <= 60

    def test_past_date_is_zero(self):
        when = format_datetime(utcnow() - timedelta(hours=1), usegmt=True)
        assert parse_retry_after(when) == 0.0


@pytest.mark.asyncio
async def test_transient_failures_retry_with_stable_delivery_id(make_dispatcher, make_webhook, store, sleeps):
    handler = RecordingHandler([respond(500), respond(503), respond(200, "ok")])
    dispatcher = make_dispatcher(handler)
    webhook = await make_webhook()

    result = await dispatcher.deliver(webhook, "step_completed", {"unit_id": "u-1"})

    assert result.success
    assert result.attempts == 3
    assert sleeps == [1.0, 2.0]
    assert len({r.headers["X-Delivery-Id"] for r in handler.requests}) == 1
    assert handler.requests[0].headers["X-Delivery-Id"] == result.delivery_id

    logs = await store.list_delivery_logs(webhook.webhook_id)
    assert len(logs) == 1
    assert logs[0].outcome == DeliveryOutcome.SUCCESS
    assert logs[0].attempts == 3
    assert logs[0].response_body == "ok"


@pytest.mark.asyncio
async def test_permanent_failure_is_not_retried(make_dispatcher, make_webhook, store, sleeps):
    handler = RecordingHandler([respond(404, "no such hook")])
    dispatcher = make_dispatcher(handler)
    webhook = await make_webhook()

    result = await dispatcher.deliver(webhook, "step_completed", {})

    assert not result.success
    assert result.outcome == DeliveryOutcome.PERMANENT_FAILURE
    assert result.attempts == 1
    assert result.status_code == 404
    assert sleeps == []
    assert len(handler.requests) == 1
    assert error_registry.get_error_statistics()["error_counts"] == {"PermanentDeliveryError": 1}


@pytest.mark.asyncio
async def test_exhausted_retries_are_logged_as_failed(make_dispatcher, make_webhook, store, sleeps):
    handler = RecordingHandler([respond(502)])
    dispatcher = make_dispatcher(handler)
    webhook = await make_webhook(retry_attempts=2)

    result = await dispatcher.deliver(webhook, "step_completed", {})

    assert result.outcome == DeliveryOutcome.FAILED
    assert result.attempts == 2
    assert len(sleeps) == 1
    assert (await store.get_webhook(webhook.webhook_id)).consecutive_failures == 0


@pytest.mark.asyncio
async def test_retry_after_overrides_backoff(make_dispatcher, make_webhook, sleeps):
    handler = RecordingHandler([respond(429, headers={"Retry-After": "7"}), respond(200)])
    dispatcher = make_dispatcher(handler)
    webhook = await make_webhook()

    result = await dispatcher.deliver(webhook, "step_completed", {})

    assert result.success
    assert sleeps == [7.0]


@pytest.mark.asyncio
async def test_retry_after_is_capped(make_dispatcher, make_webhook, sleeps):
    handler = RecordingHandler([respond(429, headers={"Retry-After": "3600"}), respond(200)])
    dispatcher = make_dispatcher(handler, max_retry_after=120)
    webhook = await make_webhook()

    await dispatcher.deliver(webhook, "step_completed", {})

    assert sleeps == [120.0]


@pytest.mark.asyncio
async def test_timeouts_are_transient(make_dispatcher, make_webhook, sleeps):
    def timeout(request):
        raise httpx.ConnectTimeout("connect timed out", request=request)

    handler = RecordingHandler([timeout])
    dispatcher = make_dispatcher(handler)
    webhook = await make_webhook(retry_attempts=2)

    result = await dispatcher.deliver(webhook, "step_completed", {})

    assert result.outcome == DeliveryOutcome.FAILED
    assert result.attempts == 2
    assert result.status_code is None
    assert "timed out" in result.error


@pytest.mark.asyncio
async def test_request_is_signed_over_exact_body(make_dispatcher, make_webhook):
    handler = RecordingHandler([respond(200)])
    dispatcher = make_dispatcher(handler)
    webhook = await make_webhook(headers={"X-Tenant": "plant-2"})

    await dispatcher.deliver(webhook, "step_completed", {"serial_number": "Q-1"})

    request = handler.requests[0]
    assert request.headers["X-Signature"] == signature_header("s3cret", request.content)
    assert verify_signature("s3cret", request.content, request.headers["X-Signature"])
    assert not verify_signature("s3cret", request.content + b" ", request.headers["X-Signature"])
    assert request.headers["X-Webhook-Event"] == "step_completed"
    assert request.headers["X-Tenant"] == "plant-2"
    assert request.headers["Content-Type"] == "application/json"

    body = json.loads(request.content)
    assert body["event"] == "step_completed"
    assert body["test"] is False
    assert body["data"] == {"serial_number": "Q-1"}
    assert body["timestamp"] == request.headers["X-Webhook-Timestamp"]


@pytest.mark.asyncio
async def test_unsigned_without_secret(make_dispatcher, make_webhook):
    handler = RecordingHandler([respond(200)])
    dispatcher = make_dispatcher(handler)
    webhook = await make_webhook(secret=None)

    await dispatcher.deliver(webhook, "step_completed", {})

    assert "X-Signature" not in handler.requests[0].headers


@pytest.mark.asyncio
async def test_private_url_is_rejected_without_sending(make_dispatcher, make_webhook, store):
    handler = RecordingHandler([respond(200)])
    dispatcher = make_dispatcher(handler)
    webhook = await make_webhook(url="http://127.0.0.1:8080/hook")

    result = await dispatcher.deliver(webhook, "step_completed", {})

    assert result.outcome == DeliveryOutcome.PERMANENT_FAILURE
    assert result.attempts == 0
    assert handler.requests == []
    assert "Invalid webhook URL" in result.error


@pytest.mark.asyncio
async def test_response_body_is_truncated(make_dispatcher, make_webhook, store):
    handler = RecordingHandler([respond(200, "x" * 50)])
    dispatcher = make_dispatcher(handler, response_body_limit=10)
    webhook = await make_webhook()

    await dispatcher.deliver(webhook, "step_completed", {})

    logs = await store.list_delivery_logs(webhook.webhook_id)
    assert logs[0].response_body == "x" * 10


@pytest.mark.asyncio
async def test_consecutive_failures_disable_webhook(make_dispatcher, make_webhook, store):
    handler = RecordingHandler([respond(404)])
    dispatcher = make_dispatcher(handler, health_failure_threshold=3)
    webhook = await make_webhook(retry_attempts=1)

    for _ in range(3):
        await dispatcher.deliver(webhook, "step_completed", {})

    stored = await store.get_webhook(webhook.webhook_id)
    assert stored.enabled is False
    assert stored.disabled_reason == DISABLED_HEALTH_DEGRADED
    assert stored.consecutive_failures == 3

    with pytest.raises(HealthDegradedError):
        await dispatcher.deliver(stored, "step_completed", {})
    assert len(handler.requests) == 3
    assert dispatcher.get_statistics()["auto_disabled"] == 1


@pytest.mark.asyncio
async def test_success_resets_failure_count(make_dispatcher, make_webhook, store):
    handler = RecordingHandler([respond(404), respond(404), respond(200)])
    dispatcher = make_dispatcher(handler, health_failure_threshold=3)
    webhook = await make_webhook(retry_attempts=1)

    await dispatcher.deliver(webhook, "step_completed", {})
    await dispatcher.deliver(webhook, "step_completed", {})
    assert (await store.get_webhook(webhook.webhook_id)).consecutive_failures == 2

    result = await dispatcher.deliver(webhook, "step_completed", {})

    assert result.success
    stored = await store.get_webhook(webhook.webhook_id)
    assert stored.consecutive_failures == 0
    assert stored.enabled is True
    assert dispatcher.health_tracker.failures(webhook.webhook_id) == 0


@pytest.mark.asyncio
async def test_transient_failures_never_disable_webhook(make_dispatcher, make_webhook, store):
    handler = RecordingHandler([respond(503)])
    dispatcher = make_dispatcher(handler, health_failure_threshold=3)
    webhook = await make_webhook(retry_attempts=1)

    for _ in range(4):
        result = await dispatcher.deliver(webhook, "step_completed", {})
        assert result.outcome == DeliveryOutcome.FAILED

    stored = await store.get_webhook(webhook.webhook_id)
    assert stored.enabled is True
    assert stored.disabled_reason is None
    assert stored.consecutive_failures == 0
    assert len(handler.requests) == 4


@pytest.mark.asyncio
async def test_transient_failure_keeps_permanent_streak(make_dispatcher, make_webhook, store):
    handler = RecordingHandler([respond(404), respond(404), respond(503), respond(404)])
    dispatcher = make_dispatcher(handler, health_failure_threshold=3)
    webhook = await make_webhook(retry_attempts=1)

    for _ in range(3):
        await dispatcher.deliver(webhook, "step_completed", {})
    assert (await store.get_webhook(webhook.webhook_id)).consecutive_failures == 2

    await dispatcher.deliver(webhook, "step_completed", {})

    stored = await store.get_webhook(webhook.webhook_id)
    assert stored.consecutive_failures == 3
    assert stored.disabled_reason == DISABLED_HEALTH_DEGRADED


@pytest.mark.asyncio
async def test_enable_restores_disabled_webhook(make_dispatcher, make_webhook, store):
    handler = RecordingHandler([respond(404), respond(200)])
    dispatcher = make_dispatcher(handler, health_failure_threshold=1)
    webhook = await make_webhook(retry_attempts=1)

    await dispatcher.deliver(webhook, "step_completed", {})
    assert (await store.get_webhook(webhook.webhook_id)).health_degraded

    enabled = await dispatcher.enable(webhook.webhook_id)

    assert enabled.enabled and enabled.consecutive_failures == 0
    assert (await dispatcher.deliver(enabled, "step_completed", {})).success


@pytest.mark.asyncio
async def test_test_send_leaves_health_untouched(make_dispatcher, make_webhook, store):
    handler = RecordingHandler([respond(404)])
    dispatcher = make_dispatcher(handler, health_failure_threshold=1)
    webhook = await make_webhook(retry_attempts=1)

    result = await dispatcher.send_test(webhook.webhook_id)

    assert not result.success
    assert result.log_entry.is_test
    body = json.loads(handler.requests[0].content)
    assert body["test"] is True
    assert body["data"] == {"message": TEST_MESSAGE, "webhook_name": "ERP sync"}
    stored = await store.get_webhook(webhook.webhook_id)
    assert stored.enabled is True
    assert stored.consecutive_failures == 0


@pytest.mark.asyncio
async def test_send_test_for_unknown_webhook(make_dispatcher):
    dispatcher = make_dispatcher(RecordingHandler([respond(200)]))
    with pytest.raises(WebhookNotFoundError):
        await dispatcher.send_test("missing")


@pytest.mark.asyncio
async def test_dispatch_event_fans_out_to_enabled_subscribers(make_dispatcher, make_webhook, store):
    handler = RecordingHandler([respond(200)])
    dispatcher = make_dispatcher(handler, workers=2)
    first = await make_webhook(name="ERP")
    second = await make_webhook(name="MES")
    await make_webhook(name="Off", enabled=False)
    await make_webhook(name="Other", event_type="unit_completed")

    await dispatcher.start()
    try:
        delivery_ids = await dispatcher.dispatch_event("step_completed", {"step_number": 3})
        await dispatcher.join()
    finally:
        await dispatcher.stop()

    assert len(delivery_ids) == 2
    assert len(handler.requests) == 2
    logged = {entry.webhook_id for entry in await store.list_delivery_logs()}
    assert logged == {first.webhook_id, second.webhook_id}
    assert {entry.delivery_id for entry in await store.list_delivery_logs()} == set(delivery_ids)


@pytest.mark.asyncio
async def test_delivery_is_dropped_when_webhook_disabled_before_start(make_dispatcher, make_webhook, store):
    handler = RecordingHandler([respond(200)])
    dispatcher = make_dispatcher(handler)
    webhook = await make_webhook()

    delivery_id = await dispatcher.enqueue(webhook, "step_completed", {})
    await store.update_webhook_health(webhook.webhook_id, False, 0, "disabled by operator")

    await dispatcher.start()
    try:
        await dispatcher.join()
    finally:
        await dispatcher.stop()

    logs = await store.list_delivery_logs(webhook.webhook_id)
    assert handler.requests == []
    assert len(logs) == 1
    assert logs[0].outcome == DeliveryOutcome.DROPPED
    assert logs[0].attempts == 0
    assert logs[0].delivery_id == delivery_id


@pytest.mark.asyncio
async def test_full_queue_rejects_enqueue(make_dispatcher, make_webhook):
    dispatcher = make_dispatcher(RecordingHandler([respond(200)]), queue_size=1)
    webhook = await make_webhook()

    await dispatcher.enqueue(webhook, "step_completed", {})
    with pytest.raises(TransientDeliveryError):
        await dispatcher.enqueue(webhook, "step_completed", {})


@pytest.mark.asyncio
async def test_load_health_seeds_tracker(make_dispatcher, make_webhook):
    dispatcher = make_dispatcher(RecordingHandler([respond(200)]), health_failure_threshold=5)
    webhook = await make_webhook(consecutive_failures=4)

    await dispatcher.load_health()

    assert dispatcher.health_tracker.failures(webhook.webhook_id) == 4
