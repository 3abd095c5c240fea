"""
WebhookDispatcher service for Production Flow Orchestrator

Delivers signed JSON notifications to external endpoints with retry,
exponential backoff and per-webhook health tracking. Queued deliveries are
processed by a pool of worker tasks so retry sleeps never block callers.
"""

import asyncio
import json
import random
import time
import uuid
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from datetime import timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

from ..models.unit import utcnow
from ..models.webhook import (
    OutgoingWebhookConfig, DeliveryLogEntry, DeliveryOutcome, DeliveryResult, DISABLED_HEALTH_DEGRADED
)
from ..utils.store import ProductionStore
from ..utils.signing import signature_header
from ..utils.url_validation import validate_webhook_url
from ..utils.logger import get_logger, set_log_context
from ..utils.metrics import (
    WEBHOOK_DELIVERIES, WEBHOOK_ATTEMPTS, WEBHOOK_LATENCY, WEBHOOK_QUEUE_DEPTH, WEBHOOKS_DISABLED
)
from ..core.config import DispatcherConfig
from ..core.exceptions import (
    ProductionFlowError, DeliveryError, TransientDeliveryError, PermanentDeliveryError,
    HealthDegradedError, WebhookNotFoundError, error_registry
)
from .fault_tolerance import RetryPolicy, HealthTracker

TEST_MESSAGE = "This is a test webhook from Production Flow"


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a ``Retry-After`` header given in seconds or as an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - utcnow()).total_seconds())


def classify_response(response: httpx.Response) -> Optional[DeliveryError]:
    """Map an HTTP response to ``None`` (success) or the delivery error it represents."""
    status = response.status_code
    if 200 <= status < 400:
        return None
    body = response.text
    if status == 429:
        return TransientDeliveryError(
            "HTTP 429: rate limited", status_code=status,
            retry_after=parse_retry_after(response.headers.get("Retry-After")), response_body=body
        )
    if status >= 500:
        return TransientDeliveryError(f"HTTP {status}", status_code=status, response_body=body)
    return PermanentDeliveryError(f"HTTP {status}", status_code=status, response_body=body)


@dataclass
class QueuedDelivery:
    """A delivery waiting for a worker."""
    delivery_id: str
    webhook_id: str
    event_type: str
    payload: Dict[str, Any]
    enqueued_at: float = 0.0


class WebhookDispatcher:
    """
    Outgoing webhook dispatcher.

    Provides capabilities for:
    - Signed delivery with a stable delivery id across retries
    - Transient/permanent failure classification with backoff
    - One delivery log entry per attempt set
    - Health auto-disable after consecutive permanent failures
    - A bounded FIFO queue drained by worker tasks
    """

    def __init__(self, store: ProductionStore, health_tracker: Optional[HealthTracker] = None,
                 config: Optional[DispatcherConfig] = None, client: Optional[httpx.AsyncClient] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 rng: Optional[Callable[[], float]] = None):
        """
        Initialize WebhookDispatcher.

        Args:
            store: Persistence for webhook configs and delivery logs
            health_tracker: Shared consecutive failure counters
            config: Dispatcher settings
            client: HTTP client; one is created on first use when omitted
            sleep: Coroutine used between attempts
            rng: Jitter source returning floats in [0, 1)
        """
        self.store = store
        self.config = config or DispatcherConfig()
        self.health_tracker = health_tracker or HealthTracker(self.config.health_failure_threshold)
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep
        self._rng = rng or random.random

        self._queue: "asyncio.Queue[QueuedDelivery]" = asyncio.Queue(maxsize=self.config.queue_size)
        self._workers: List[asyncio.Task] = []

        self._stats = {
            "delivered": 0,
            "failed": 0,
            "dropped": 0,
            "attempts": 0,
            "auto_disabled": 0
        }

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="webhook_dispatcher")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=False)
        return self._client

    def retry_policy_for(self, webhook: OutgoingWebhookConfig) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=max(1, webhook.retry_attempts),
            initial_delay=self.config.initial_delay,
            max_delay=self.config.max_delay,
            jitter=self.config.jitter,
            max_retry_after=self.config.max_retry_after
        )

    def build_request(self, webhook: OutgoingWebhookConfig, event_type: str, payload: Dict[str, Any],
                      delivery_id: str, test: bool = False) -> Tuple[bytes, Dict[str, str]]:
        """Serialise the body once and build the signed header set for it."""
        timestamp = utcnow().isoformat()
        body = json.dumps({
            "event": event_type,
            "test": test,
            "timestamp": timestamp,
            "data": payload
        }, default=str).encode("utf-8")

        headers = {
            "Content-Type": "application/json",
            "User-Agent": self.config.user_agent,
            "X-Webhook-Event": event_type,
            "X-Webhook-Timestamp": timestamp,
            "X-Delivery-Id": delivery_id,
        }
        if webhook.secret:
            headers["X-Signature"] = signature_header(webhook.secret, body)
        headers.update(webhook.headers or {})
        return body, headers

    async def deliver(self, webhook: OutgoingWebhookConfig, event_type: str, payload: Dict[str, Any],
                      test: bool = False, delivery_id: Optional[str] = None) -> DeliveryResult:
        """
        Deliver one event to one endpoint, retrying per policy.

        Raises:
            HealthDegradedError: The config is auto-disabled; nothing is sent
        """
        if webhook.health_degraded or self.health_tracker.is_degraded(webhook.webhook_id):
            raise HealthDegradedError(
                webhook.webhook_id,
                max(webhook.consecutive_failures, self.health_tracker.failures(webhook.webhook_id))
            )

        delivery_id = delivery_id or str(uuid.uuid4())
        started = time.monotonic()

        valid, reason = validate_webhook_url(webhook.url, allow_private=self.config.allow_private_urls)
        if not valid:
            error = PermanentDeliveryError(f"Invalid webhook URL: {reason}")
            return await self._finish(webhook, event_type, payload, delivery_id, test,
                                      attempts=0, error=error, status_code=None, body=None, started=started)

        body, headers = self.build_request(webhook, event_type, payload, delivery_id, test)
        policy = self.retry_policy_for(webhook)
        timeout = webhook.timeout_seconds or self.config.default_timeout_seconds
        client = self._get_client()

        attempts = 0
        error: Optional[DeliveryError] = None
        status_code: Optional[int] = None
        response_body: Optional[str] = None

        while True:
            attempts += 1
            WEBHOOK_ATTEMPTS.labels(event_type).inc()
            self._stats["attempts"] += 1
            try:
                response = await client.post(webhook.url, content=body, headers=headers, timeout=timeout)
            except httpx.TimeoutException:
                error = TransientDeliveryError(f"Request timed out after {timeout}s")
                status_code, response_body = None, None
            except httpx.HTTPError as e:
                error = TransientDeliveryError(f"Network error: {e}")
                status_code, response_body = None, None
            else:
                status_code, response_body = response.status_code, response.text
                error = classify_response(response)

            if error is None:
                break

            self.logger.debug("Delivery attempt failed", extra={
                "webhook_id": webhook.webhook_id,
                "delivery_id": delivery_id,
                "attempt": attempts,
                "status_code": status_code,
                "retryable": error.retryable,
                "error": error.message
            })

            if not error.retryable or not policy.should_retry(attempts):
                break

            await self._sleep(policy.compute_delay(attempts, error.retry_after, self._rng))

        return await self._finish(webhook, event_type, payload, delivery_id, test,
                                  attempts=attempts, error=error, status_code=status_code,
                                  body=response_body, started=started)

    async def _finish(self, webhook: OutgoingWebhookConfig, event_type: str, payload: Dict[str, Any],
                      delivery_id: str, test: bool, attempts: int, error: Optional[DeliveryError],
                      status_code: Optional[int], body: Optional[str], started: float) -> DeliveryResult:
        elapsed_ms = int((time.monotonic() - started) * 1000)

        if error is None:
            outcome = DeliveryOutcome.SUCCESS
        elif error.retryable:
            outcome = DeliveryOutcome.FAILED
        else:
            outcome = DeliveryOutcome.PERMANENT_FAILURE

        limit = self.config.response_body_limit
        entry = DeliveryLogEntry(
            log_id=str(uuid.uuid4()),
            webhook_id=webhook.webhook_id,
            event_type=event_type,
            payload=payload,
            delivery_id=delivery_id,
            outcome=outcome,
            attempts=attempts,
            response_status=status_code,
            response_body=body[:limit] if body is not None else None,
            response_time_ms=elapsed_ms,
            error_message=error.message if error else None,
            is_test=test
        )
        await self.store.insert_delivery_log(entry)

        WEBHOOK_DELIVERIES.labels(event_type, outcome.value).inc()
        WEBHOOK_LATENCY.labels(event_type).observe(elapsed_ms / 1000.0)

        if error is None:
            self._stats["delivered"] += 1
            self.logger.info("Webhook delivered", extra={
                "webhook_id": webhook.webhook_id,
                "delivery_id": delivery_id,
                "event_type": event_type,
                "status_code": status_code,
                "attempts": attempts,
                "response_time_ms": elapsed_ms
            })
        else:
            self._stats["failed"] += 1
            error_registry.record_error(error)
            self.logger.warning("Webhook delivery failed", extra={
                "webhook_id": webhook.webhook_id,
                "delivery_id": delivery_id,
                "event_type": event_type,
                "status_code": status_code,
                "attempts": attempts,
                "outcome": outcome.value,
                "error": error.message
            })

        # Only permanent failures count toward health; test sends and exhausted
        # transient retries leave the streak as it was
        if not test and outcome != DeliveryOutcome.FAILED:
            await self._update_health(webhook, success=error is None)

        return DeliveryResult(
            delivery_id=delivery_id,
            webhook_id=webhook.webhook_id,
            success=error is None,
            outcome=outcome,
            attempts=attempts,
            status_code=status_code,
            response_time_ms=elapsed_ms,
            error=error.message if error else None,
            log_entry=entry
        )

    async def _update_health(self, webhook: OutgoingWebhookConfig, success: bool):
        webhook_id = webhook.webhook_id

        if success:
            previous = max(webhook.consecutive_failures, self.health_tracker.failures(webhook_id))
            webhook.consecutive_failures = self.health_tracker.record_success(webhook_id)
            if previous:
                await self.store.update_webhook_health(webhook_id, webhook.enabled, 0, webhook.disabled_reason)
            return

        count = self.health_tracker.record_failure(webhook_id)
        webhook.consecutive_failures = count

        if self.health_tracker.reached_threshold(count):
            webhook.enabled = False
            webhook.disabled_reason = DISABLED_HEALTH_DEGRADED
            self._stats["auto_disabled"] += 1
            WEBHOOKS_DISABLED.inc()
            self.logger.warning("Webhook auto-disabled", extra={
                "webhook_id": webhook_id,
                "consecutive_failures": count,
                "threshold": self.health_tracker.failure_threshold
            })

        await self.store.update_webhook_health(webhook_id, webhook.enabled, count, webhook.disabled_reason)

    # Queue

    async def enqueue(self, webhook: OutgoingWebhookConfig, event_type: str, payload: Dict[str, Any]) -> str:
        """Queue a delivery for the worker pool and return its delivery id."""
        item = QueuedDelivery(
            delivery_id=str(uuid.uuid4()),
            webhook_id=webhook.webhook_id,
            event_type=event_type,
            payload=payload,
            enqueued_at=time.monotonic()
        )
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            raise TransientDeliveryError(f"Delivery queue is full ({self.config.queue_size} pending)")

        WEBHOOK_QUEUE_DEPTH.set(self._queue.qsize())
        self.logger.debug("Delivery enqueued", extra={
            "webhook_id": webhook.webhook_id,
            "delivery_id": item.delivery_id,
            "event_type": event_type,
            "queue_size": self._queue.qsize()
        })
        return item.delivery_id

    async def dispatch_event(self, event_type: str, payload: Dict[str, Any]) -> List[str]:
        """Enqueue a delivery to every enabled webhook subscribed to ``event_type``."""
        webhooks = await self.store.list_webhooks(event_type=event_type, enabled_only=True)
        return [await self.enqueue(webhook, event_type, payload) for webhook in webhooks]

    async def process(self, item: QueuedDelivery) -> Optional[DeliveryResult]:
        """Run one queued delivery against the current stored config."""
        webhook = await self.store.get_webhook(item.webhook_id)
        if webhook is None or not webhook.enabled:
            await self._drop(item, "webhook not found" if webhook is None else "webhook disabled")
            return None
        return await self.deliver(webhook, item.event_type, item.payload, delivery_id=item.delivery_id)

    async def _drop(self, item: QueuedDelivery, reason: str):
        entry = DeliveryLogEntry(
            log_id=str(uuid.uuid4()),
            webhook_id=item.webhook_id,
            event_type=item.event_type,
            payload=item.payload,
            delivery_id=item.delivery_id,
            outcome=DeliveryOutcome.DROPPED,
            attempts=0,
            error_message=f"Delivery dropped: {reason}"
        )
        await self.store.insert_delivery_log(entry)
        self._stats["dropped"] += 1
        WEBHOOK_DELIVERIES.labels(item.event_type, DeliveryOutcome.DROPPED.value).inc()
        self.logger.info("Delivery dropped", extra={
            "webhook_id": item.webhook_id,
            "delivery_id": item.delivery_id,
            "reason": reason
        })

    async def _worker(self, index: int):
        while True:
            item = await self._queue.get()
            try:
                await self.process(item)
            except ProductionFlowError as e:
                error_registry.record_error(e)
                self.logger.error("Queued delivery failed", extra={
                    "worker": index,
                    "delivery_id": item.delivery_id,
                    "webhook_id": item.webhook_id,
                    "error": e.message
                })
            except Exception:
                self.logger.error("Unexpected error in delivery worker", exc_info=True, extra={
                    "worker": index,
                    "delivery_id": item.delivery_id
                })
            finally:
                self._queue.task_done()
                WEBHOOK_QUEUE_DEPTH.set(self._queue.qsize())

    async def start(self):
        """Start the worker pool."""
        if self._workers:
            return
        self.logger.info("Starting WebhookDispatcher", extra={"workers": self.config.workers})
        self._workers = [asyncio.create_task(self._worker(i)) for i in range(self.config.workers)]

    async def stop(self, drain: bool = True):
        """Stop the worker pool, finishing queued deliveries first when ``drain``."""
        self.logger.info("Stopping WebhookDispatcher", extra={"pending": self._queue.qsize()})
        if drain and self._workers:
            await self._queue.join()
        for task in self._workers:
            task.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def join(self):
        """Wait until every queued delivery has been processed."""
        await self._queue.join()

    # Operator actions

    async def send_test(self, webhook_id: str) -> DeliveryResult:
        """Deliver a test notification synchronously."""
        webhook = await self.store.get_webhook(webhook_id)
        if webhook is None:
            raise WebhookNotFoundError(webhook_id)
        payload = {"message": TEST_MESSAGE, "webhook_name": webhook.name}
        return await self.deliver(webhook, webhook.event_type, payload, test=True)

    async def enable(self, webhook_id: str) -> OutgoingWebhookConfig:
        """Re-enable a webhook and reset its failure count."""
        webhook = await self.store.get_webhook(webhook_id)
        if webhook is None:
            raise WebhookNotFoundError(webhook_id)

        self.health_tracker.reset(webhook_id)
        await self.store.update_webhook_health(webhook_id, True, 0, None)
        webhook.enabled = True
        webhook.consecutive_failures = 0
        webhook.disabled_reason = None

        self.logger.info("Webhook enabled", extra={"webhook_id": webhook_id})
        return webhook

    async def load_health(self):
        """Seed the health tracker from persisted failure counts."""
        webhooks = await self.store.list_webhooks()
        self.health_tracker.load({w.webhook_id: w.consecutive_failures for w in webhooks})

    def get_statistics(self) -> Dict[str, Any]:
        """Get dispatcher statistics."""
        return {
            **self._stats,
            "queue_size": self._queue.qsize(),
            "workers": len(self._workers),
            "unhealthy_webhooks": self.health_tracker.snapshot()
        }
