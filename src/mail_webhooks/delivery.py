# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Webhook delivery engine with admission control and retries.

This module sends signed HTTP POST requests to webhook endpoints. Every
attempt goes through admission control (a global and a per-webhook
concurrency ceiling), records exactly one outcome in the webhook's
statistics, and on failure schedules a retry with a fixed backoff table.

Retry schedule (delay before the attempt, by attempt number):
    1. immediate
    2. 30 seconds
    3. 5 minutes
    4. 30 minutes
    5. 4 hours (reused for any later attempt)

The retry queue lives in memory. It is bounded globally (oldest entry is
evicted when full) and per webhook (new retries are dropped past the cap).
A webhook reaching the consecutive-failure threshold is disabled and its
pending retries are cancelled.

Example:
    Delivering an event and sweeping the retry queue::

        engine = WebhookDelivery(storage, WebhookTemplates())
        result = await engine.deliver(webhook, event)
        ...
        await engine.process_retry_queue()
"""

from __future__ import annotations

import asyncio
import json
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any

import aiohttp

from .ids import generate_delivery_id
from .logger import get_logger
from .models import (
    CustomTemplate,
    DeliveryOutcome,
    DeliveryResult,
    TestDeliveryResult,
    Webhook,
    WebhookEvent,
)
from .prometheus import WebhookMetrics
from .signing import sign
from .template import WebhookTemplates, iso_timestamp

RETRY_DELAYS = (0, 30, 300, 1800, 14400)
"""Seconds to wait before each attempt, indexed by ``attempt - 1``."""

USER_AGENT = "MailWebhooks/1.0"
DEFAULT_CONTENT_TYPE = "application/json"
MAX_RESPONSE_LENGTH = 1024
TRUNCATION_MARKER = "... (truncated)"

TEST_EVENT_ID = "evt_test_000000000000000000000000000000"
TEST_MESSAGE_ID = "msg_test_000000000000000000000000000000"
TEST_DELIVERY_ID = "dlv_test_000000000000000000000000000000"


class DeliveryHTTPError(Exception):
    """Raised when an endpoint answers with a non-2xx status."""

    def __init__(self, status: int, body: str | None = None):
        super().__init__(f"Request failed with status code {status}")
        self.status = status
        self.body = body


@dataclass
class RetryEntry:
    """A delivery attempt waiting in the retry queue."""

    webhook: Webhook
    """Webhook snapshot taken when the retry was scheduled."""

    event: WebhookEvent
    """Event to deliver."""

    attempt: int
    """Attempt number about to be made (1-based)."""

    scheduled_at: float
    """Epoch seconds at which the attempt becomes eligible."""


def calculate_retry_delay(attempt: int) -> int:
    """Return the delay in seconds before ``attempt``.

    Attempts past the end of the table reuse its last entry.
    """
    index = min(max(attempt, 1) - 1, len(RETRY_DELAYS) - 1)
    return RETRY_DELAYS[index]


def calculate_next_retry(attempt: int, now: float | None = None) -> float:
    """Return the epoch time at which ``attempt`` becomes eligible."""
    return (time.time() if now is None else now) + calculate_retry_delay(attempt)


def truncate_response(data: Any) -> str | None:
    """Cap a response body for diagnostics at 1 KB, marking truncation."""
    if data is None:
        return None
    text = data if isinstance(data, str) else json.dumps(data)
    if len(text) > MAX_RESPONSE_LENGTH:
        return text[:MAX_RESPONSE_LENGTH] + TRUNCATION_MARKER
    return text


def _error_message(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


class WebhookDelivery:
    """Delivers events to webhooks with concurrency limits and retries.

    Queue and counters are shared between dispatch calls and the retry sweep.
    They are guarded by a lock held only around synchronous sections, never
    across an ``await``.

    Attributes:
        storage: Subscription store providing records and stats mutation.
        templates: Payload transformer.
        max_retries: Total attempts per event, the first one included.
        delivery_timeout: Per-attempt HTTP timeout in seconds.
        max_retries_per_webhook: Outstanding queued retries allowed per webhook.
        max_retry_queue_size: Global retry queue capacity.
        max_concurrent_per_webhook: In-flight deliveries allowed per webhook.
        max_total_concurrent: In-flight deliveries allowed in total.
        auto_disable_threshold: Consecutive failures that disable a webhook.
    """

    def __init__(
        self,
        storage,
        templates: WebhookTemplates | None = None,
        *,
        max_retries: int = 5,
        delivery_timeout: float = 10.0,
        max_retries_per_webhook: int = 100,
        max_retry_queue_size: int = 10_000,
        max_concurrent_per_webhook: int = 10,
        max_total_concurrent: int = 100,
        auto_disable_threshold: int = 5,
        log_delivery_activity: bool = False,
        metrics: WebhookMetrics | None = None,
        logger=None,
    ):
        self.storage = storage
        self.templates = templates or WebhookTemplates()
        self.max_retries = max_retries
        self.delivery_timeout = delivery_timeout
        self.max_retries_per_webhook = max_retries_per_webhook
        self.max_retry_queue_size = max_retry_queue_size
        self.max_concurrent_per_webhook = max_concurrent_per_webhook
        self.max_total_concurrent = max_total_concurrent
        self.auto_disable_threshold = auto_disable_threshold
        self.log_delivery_activity = log_delivery_activity
        self.metrics = metrics
        self.logger = logger or get_logger("WebhookDelivery")

        self._lock = threading.Lock()
        self._retry_queue: OrderedDict[str, RetryEntry] = OrderedDict()
        self._active: dict[str, int] = {}
        self._total_active = 0
        self._retry_counts: dict[str, int] = {}

    # ----------------------------------------------------------------- public
    async def deliver(self, webhook: Webhook, event: WebhookEvent) -> DeliveryResult:
        """Deliver ``event`` to ``webhook`` as attempt 1.

        If a concurrency ceiling is reached, the attempt is not executed and
        a retry is queued at attempt 1 instead.
        """
        if not self._acquire_slot(webhook.id):
            self.logger.warning("Concurrent limit reached for webhook %s, queueing for retry", webhook.id)
            self.schedule_retry(webhook, event, 1)
            return DeliveryResult(success=False, error="concurrent_limit", will_retry=True, next_attempt=1)
        return await self._execute_delivery(webhook, event, 1)

    async def process_retry_queue(self) -> int:
        """Run every retry whose scheduled time has passed.

        Ready entries are removed from the queue first. Each one is then
        re-checked against the store: deleted or disabled webhooks are
        skipped, webhooks still over their concurrency ceiling are re-queued
        at the same attempt number, and the rest are executed concurrently.

        Returns:
            Number of ready entries taken from the queue.
        """
        now = time.time()
        with self._lock:
            ready = [
                (delivery_id, entry)
                for delivery_id, entry in self._retry_queue.items()
                if entry.scheduled_at <= now
            ]
            for delivery_id, entry in ready:
                del self._retry_queue[delivery_id]
                self._decrement(self._retry_counts, entry.webhook.id)
        self._refresh_queue_gauge()

        if not ready:
            return 0

        entries = sorted((entry for _, entry in ready), key=lambda entry: entry.scheduled_at)
        self.logger.info("Processing %d webhook retries", len(entries))

        results = await asyncio.gather(
            *(self._process_retry(entry) for entry in entries),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                self.logger.error("Unexpected retry processing error: %s", result)
        return len(entries)

    def cancel_pending_retries(self, webhook_id: str) -> int:
        """Remove every queued retry of ``webhook_id``.

        Returns:
            Number of cancelled entries.
        """
        with self._lock:
            cancelled = [
                delivery_id
                for delivery_id, entry in self._retry_queue.items()
                if entry.webhook.id == webhook_id
            ]
            for delivery_id in cancelled:
                del self._retry_queue[delivery_id]
            self._retry_counts.pop(webhook_id, None)
        self._refresh_queue_gauge()
        if cancelled:
            self.logger.debug("Cancelled %d pending retries for webhook %s", len(cancelled), webhook_id)
        return len(cancelled)

    async def test_webhook(self, webhook: Webhook) -> TestDeliveryResult:
        """Send a sample event to ``webhook`` without touching statistics.

        The request goes through the same templating, signing and transport
        path as a real delivery. No retry is ever scheduled.
        """
        now = time.time()
        event = WebhookEvent(
            id=TEST_EVENT_ID,
            created_at=int(now),
            type=webhook.events[0] if webhook.events else "email.received",
            data={
                "id": TEST_MESSAGE_ID,
                "inboxId": "test_inbox_hash",
                "inboxEmail": "test@sandbox.example.com",
                "from": {"address": "sender@example.com", "name": "Test Sender"},
                "to": [{"address": "test@sandbox.example.com", "name": "Test Inbox"}],
                "subject": "Test webhook delivery",
                "snippet": "This is a test webhook delivery to verify your endpoint is working correctly.",
                "receivedAt": iso_timestamp(now),
                "headers": {"message-id": "<test@example.com>"},
                "attachments": [],
            },
        )

        payload = self.templates.transform(event, webhook.template)
        payload_sent = json.loads(payload)
        started = time.monotonic()
        try:
            status, body = await self._post(webhook, event.type, TEST_DELIVERY_ID, payload)
        except DeliveryHTTPError as exc:
            return TestDeliveryResult(
                success=False,
                status_code=exc.status,
                response_time_ms=self._elapsed_ms(started),
                response_body=truncate_response(exc.body),
                error=_error_message(exc),
                payload_sent=payload_sent,
            )
        except Exception as exc:
            return TestDeliveryResult(
                success=False,
                response_time_ms=self._elapsed_ms(started),
                error=_error_message(exc),
                payload_sent=payload_sent,
            )
        return TestDeliveryResult(
            success=True,
            status_code=status,
            response_time_ms=self._elapsed_ms(started),
            response_body=truncate_response(body),
            payload_sent=payload_sent,
        )

    def schedule_retry(self, webhook: Webhook, event: WebhookEvent, attempt: int) -> str | None:
        """Queue ``attempt`` of ``event`` for ``webhook``.

        The retry is dropped when the webhook already has its maximum of
        outstanding retries. When the queue is full, its oldest entry is
        evicted first.

        Returns:
            The queue key of the new entry, or None if the retry was dropped.
        """
        evicted: RetryEntry | None = None
        with self._lock:
            if self._retry_counts.get(webhook.id, 0) >= self.max_retries_per_webhook:
                dropped = True
            else:
                dropped = False
                if len(self._retry_queue) >= self.max_retry_queue_size and self._retry_queue:
                    evicted_id, evicted = self._retry_queue.popitem(last=False)
                    self._decrement(self._retry_counts, evicted.webhook.id)
                delivery_id = generate_delivery_id()
                scheduled_at = calculate_next_retry(attempt)
                self._retry_queue[delivery_id] = RetryEntry(
                    webhook=webhook, event=event, attempt=attempt, scheduled_at=scheduled_at
                )
                self._retry_counts[webhook.id] = self._retry_counts.get(webhook.id, 0) + 1

        if dropped:
            self.logger.warning(
                "Webhook %s has reached per-webhook retry limit (%d), skipping retry",
                webhook.id,
                self.max_retries_per_webhook,
            )
            if self.metrics:
                self.metrics.inc_retry_dropped(webhook.id)
            return None

        if evicted is not None:
            self.logger.warning("Retry queue full, evicted oldest entry: %s", evicted_id)
            if self.metrics:
                self.metrics.inc_retry_evicted()
        if self.metrics:
            self.metrics.inc_retry_scheduled(webhook.id)
        self._refresh_queue_gauge()
        self.logger.debug(
            "Scheduled retry %d/%d for webhook %s at %s",
            attempt,
            self.max_retries,
            webhook.id,
            iso_timestamp(scheduled_at),
        )
        return delivery_id

    def get_retry_queue_size(self) -> int:
        return len(self._retry_queue)

    def get_pending_retry_count(self, webhook_id: str) -> int:
        """Return the outstanding queued retries of ``webhook_id``."""
        with self._lock:
            return self._retry_counts.get(webhook_id, 0)

    def get_active_delivery_counts(self) -> dict[str, Any]:
        """Return in-flight delivery counts as ``{"total": n, "per_webhook": {...}}``."""
        with self._lock:
            return {"total": self._total_active, "per_webhook": dict(self._active)}

    # -------------------------------------------------------------- execution
    async def _process_retry(self, entry: RetryEntry) -> DeliveryResult | None:
        webhook = self.storage.get_webhook(entry.webhook.id)
        if webhook is None or not webhook.enabled:
            self.logger.debug("Skipping retry for deleted/disabled webhook %s", entry.webhook.id)
            return None
        if not self._acquire_slot(webhook.id):
            self.schedule_retry(webhook, entry.event, entry.attempt)
            return None
        return await self._execute_delivery(webhook, entry.event, entry.attempt)

    async def _execute_delivery(self, webhook: Webhook, event: WebhookEvent, attempt: int) -> DeliveryResult:
        """Run one admitted attempt. The caller must hold a slot.

        The stats update, slot release and auto-disable check run exactly
        once in the ``finally`` block, however the attempt ends.
        """
        delivery_id = generate_delivery_id()
        started = time.monotonic()
        outcome: DeliveryOutcome = "failure"

        if self.log_delivery_activity:
            self.logger.info(
                "Delivering %s to webhook %s (attempt %d/%d)", event.type, webhook.id, attempt, self.max_retries
            )

        try:
            payload = self.templates.transform(event, webhook.template)
            status, body = await self._post(webhook, event.type, delivery_id, payload)
            response_time_ms = self._elapsed_ms(started)
            outcome = "success"
            self.logger.info(
                "Webhook %s delivered successfully (%d) in %dms", webhook.id, status, response_time_ms
            )
            result = DeliveryResult(
                success=True,
                status_code=status,
                response_time_ms=response_time_ms,
                response_body=truncate_response(body),
            )
        except Exception as exc:
            will_retry = attempt < self.max_retries
            if will_retry:
                self.schedule_retry(webhook, event, attempt + 1)
            else:
                self.logger.warning(
                    "Webhook %s exhausted all %d retry attempts", webhook.id, self.max_retries
                )
            message = _error_message(exc)
            self.logger.warning(
                "Webhook %s delivery failed (attempt %d/%d): %s", webhook.id, attempt, self.max_retries, message
            )
            http_error = exc if isinstance(exc, DeliveryHTTPError) else None
            result = DeliveryResult(
                success=False,
                status_code=http_error.status if http_error else None,
                response_time_ms=self._elapsed_ms(started),
                response_body=truncate_response(http_error.body) if http_error else None,
                error=message,
                will_retry=will_retry,
                next_attempt=attempt + 1 if will_retry else None,
            )
        finally:
            stats = self.storage.increment_stats(webhook.id, outcome)
            self._release_slot(webhook.id)
            if self.metrics:
                self.metrics.inc_delivery(webhook.id, outcome)
            if stats and stats["consecutive_failures"] >= self.auto_disable_threshold:
                self._auto_disable(webhook.id, stats["consecutive_failures"])

        return result

    async def _post(self, webhook: Webhook, event_type: str, delivery_id: str, payload: str) -> tuple[int, str]:
        """POST a signed payload. Returns ``(status, body)`` for 2xx answers.

        Raises:
            DeliveryHTTPError: On a non-2xx status.
            aiohttp.ClientError: On connection failures.
            asyncio.TimeoutError: When the attempt exceeds the timeout.
        """
        timestamp = int(time.time())
        headers = {
            "Content-Type": self._content_type(webhook),
            "User-Agent": USER_AGENT,
            "X-Signature": sign(timestamp, payload, webhook.secret),
            "X-Event": event_type,
            "X-Delivery": delivery_id,
            "X-Timestamp": str(timestamp),
        }
        timeout = aiohttp.ClientTimeout(total=self.delivery_timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(
                webhook.url,
                data=payload.encode("utf-8"),
                headers=headers,
                allow_redirects=False,
            ) as response:
                body = await response.text(errors="replace")
                if not 200 <= response.status < 300:
                    raise DeliveryHTTPError(response.status, body)
                return response.status, body

    @staticmethod
    def _content_type(webhook: Webhook) -> str:
        template = webhook.template
        if isinstance(template, CustomTemplate) and template.content_type:
            return template.content_type
        return DEFAULT_CONTENT_TYPE

    def _auto_disable(self, webhook_id: str, consecutive_failures: int) -> None:
        updated = self.storage.update_webhook(webhook_id, enabled=False)
        if updated is None:
            return
        self.cancel_pending_retries(webhook_id)
        if self.metrics:
            self.metrics.inc_auto_disabled(webhook_id)
        self.logger.warning(
            "Webhook %s auto-disabled after %d consecutive failures", webhook_id, consecutive_failures
        )

    # ------------------------------------------------------------- admission
    def _acquire_slot(self, webhook_id: str) -> bool:
        """Check both ceilings and take a slot in one step."""
        with self._lock:
            if self._total_active >= self.max_total_concurrent:
                return False
            if self._active.get(webhook_id, 0) >= self.max_concurrent_per_webhook:
                return False
            self._active[webhook_id] = self._active.get(webhook_id, 0) + 1
            self._total_active += 1
            total = self._total_active
        if self.metrics:
            self.metrics.set_active_deliveries(total)
        return True

    def _release_slot(self, webhook_id: str) -> None:
        with self._lock:
            self._decrement(self._active, webhook_id)
            self._total_active = max(0, self._total_active - 1)
            total = self._total_active
        if self.metrics:
            self.metrics.set_active_deliveries(total)

    @staticmethod
    def _decrement(counters: dict[str, int], key: str) -> None:
        current = counters.get(key, 0)
        if current <= 1:
            counters.pop(key, None)
        else:
            counters[key] = current - 1

    def _refresh_queue_gauge(self) -> None:
        if self.metrics:
            self.metrics.set_retry_queue_size(len(self._retry_queue))

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)
