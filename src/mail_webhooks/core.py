# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Service orchestration for outbound webhooks.

This module provides MailWebhookService, the coordinator that wires the
subscription store, filter evaluator, template transformer, delivery engine
and event dispatcher together, and runs the background retry loop that
sweeps the delivery engine's retry queue on a fixed interval.

Example:
    Running the service::

        from mail_webhooks.core import MailWebhookService

        service = MailWebhookService()
        await service.start()

        service.handle_email_received(email, inbox_hash, inbox_email)

        # To stop gracefully
        await service.stop()
"""

from __future__ import annotations

import asyncio
import math
from typing import Any

from .config_loader import EmailAuthConfig, WebhookSettings
from .delivery import WebhookDelivery
from .dispatcher import WebhookEventDispatcher
from .filter import WebhookFilter
from .logger import get_logger
from .models import DeliveryResult, TestDeliveryResult, Webhook, WebhookStats
from .prometheus import WebhookMetrics
from .storage import WebhookStorage
from .template import WebhookTemplates


class WebhookNotFoundError(LookupError):
    """Raised when an operation targets a webhook id that does not exist."""

    def __init__(self, webhook_id: str):
        super().__init__(f"Webhook {webhook_id} not found")
        self.webhook_id = webhook_id
        self.code = "webhook_not_found"


class MailWebhookService:
    """Coordinator of the webhook subsystem.

    Attributes:
        settings: Dispatch and delivery settings.
        storage: Subscription store.
        metrics: Prometheus metrics collector.
        templates: Payload transformer.
        filter: Filter evaluator.
        delivery: Delivery engine.
        dispatcher: Event dispatcher.
    """

    def __init__(
        self,
        settings: WebhookSettings | None = None,
        *,
        email_auth: EmailAuthConfig | None = None,
        storage: WebhookStorage | None = None,
        metrics: WebhookMetrics | None = None,
        logger=None,
    ):
        """Initialize the service and its components.

        Args:
            settings: Webhook settings. Defaults to ``WebhookSettings()``.
            email_auth: Email authentication checks for the requireAuth gate.
                Defaults to ``EmailAuthConfig()`` (all checks enabled).
            storage: Subscription store. A fresh in-memory store if None.
            metrics: Prometheus metrics collector. If None, creates new instance.
            logger: Custom logger instance. If None, uses default logger.
        """
        self.settings = settings or WebhookSettings()
        self.logger = logger or get_logger("MailWebhooks")
        self.storage = storage or WebhookStorage()
        self.metrics = metrics or WebhookMetrics()
        self.templates = WebhookTemplates()
        self.filter = WebhookFilter(
            email_auth or EmailAuthConfig(),
            require_auth_default=self.settings.require_auth_default,
        )
        self.delivery = WebhookDelivery(
            self.storage,
            self.templates,
            max_retries=self.settings.max_retries,
            delivery_timeout=self.settings.delivery_timeout,
            max_retries_per_webhook=self.settings.max_retries_per_webhook,
            log_delivery_activity=self.settings.log_delivery_activity,
            metrics=self.metrics,
        )
        self.dispatcher = WebhookEventDispatcher(self.storage, self.delivery, self.filter, self.settings)

        self._retry_interval = max(0.05, float(self.settings.retry_interval))
        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._task_retry: asyncio.Task | None = None

    # ----------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Start the background retry loop."""
        self._stop.clear()
        self._task_retry = asyncio.create_task(self._retry_loop(), name="webhook-retry-loop")
        self.logger.debug("Webhook retry loop started (interval=%ss)", self._retry_interval)

    async def stop(self) -> None:
        """Stop the retry loop and wait for in-flight dispatches to finish."""
        self._stop.set()
        self._wake_event.set()
        if self._task_retry:
            await asyncio.gather(self._task_retry, return_exceptions=True)
            self._task_retry = None
        await self.dispatcher.drain()

    def run_now(self) -> None:
        """Wake the retry loop for an immediate sweep."""
        self._wake_event.set()

    async def _retry_loop(self) -> None:
        while not self._stop.is_set():
            await self._wait_for_wakeup(self._retry_interval)
            if self._stop.is_set():
                break
            try:
                await self.delivery.process_retry_queue()
            except Exception as exc:  # pragma: no cover
                self.logger.exception("Unhandled error in webhook retry loop: %s", exc)

    async def _wait_for_wakeup(self, timeout: float | None) -> None:
        """Pause the retry loop until timeout or wake event.

        Args:
            timeout: Maximum seconds to wait. None or infinity waits indefinitely.
        """
        if self._stop.is_set():
            return
        if timeout is None or math.isinf(timeout):
            await self._wake_event.wait()
            self._wake_event.clear()
            return
        try:
            await asyncio.wait_for(self._wake_event.wait(), timeout=max(0.0, timeout))
        except asyncio.TimeoutError:
            return
        self._wake_event.clear()

    # ---------------------------------------------------------------- events
    def handle_email_received(self, email: dict[str, Any], inbox_hash: str, inbox_email: str) -> list[asyncio.Task]:
        return self.dispatcher.handle_email_received(email, inbox_hash, inbox_email)

    def handle_email_stored(self, email_id: str, inbox_hash: str, inbox_email: str) -> list[asyncio.Task]:
        return self.dispatcher.handle_email_stored(email_id, inbox_hash, inbox_email)

    def handle_email_deleted(
        self, email_id: str, inbox_hash: str, inbox_email: str, reason: str
    ) -> list[asyncio.Task]:
        return self.dispatcher.handle_email_deleted(email_id, inbox_hash, inbox_email, reason)

    def on_inbox_deleted(self, inbox_hash: str) -> None:
        """Cascade an inbox deletion to its webhooks and their retries."""
        for webhook in self.storage.list_inbox_webhooks(inbox_hash):
            self.delivery.cancel_pending_retries(webhook.id)
        self.storage.on_inbox_deleted(inbox_hash)

    # ------------------------------------------------------------- management
    def get_webhook(self, webhook_id: str) -> Webhook:
        """Return a webhook or raise WebhookNotFoundError."""
        webhook = self.storage.get_webhook(webhook_id)
        if webhook is None:
            raise WebhookNotFoundError(webhook_id)
        return webhook

    def delete_webhook(self, webhook_id: str) -> None:
        """Delete a webhook and cancel its pending retries."""
        if not self.storage.delete_webhook(webhook_id):
            raise WebhookNotFoundError(webhook_id)
        self.delivery.cancel_pending_retries(webhook_id)

    def set_enabled(self, webhook_id: str, enabled: bool) -> Webhook:
        """Enable or disable a webhook. Disabling cancels its pending retries."""
        updated = self.storage.update_webhook(webhook_id, enabled=enabled)
        if updated is None:
            raise WebhookNotFoundError(webhook_id)
        if not enabled:
            self.delivery.cancel_pending_retries(webhook_id)
        self.logger.info("Webhook %s %s", webhook_id, "enabled" if enabled else "disabled")
        return updated

    def rotate_secret(self, webhook_id: str) -> Webhook:
        """Issue a new signing secret; the old one stays valid for one hour."""
        updated = self.storage.rotate_secret(webhook_id)
        if updated is None:
            raise WebhookNotFoundError(webhook_id)
        return updated

    # ---------------------------------------------------------------- queries
    async def test_webhook(self, webhook_id: str) -> TestDeliveryResult:
        """Send a sample event to a webhook without recording statistics."""
        return await self.delivery.test_webhook(self.get_webhook(webhook_id))

    async def deliver(self, webhook_id: str, event) -> DeliveryResult:
        return await self.delivery.deliver(self.get_webhook(webhook_id), event)

    def get_delivery_stats(self, webhook_id: str) -> WebhookStats:
        return self.get_webhook(webhook_id).stats

    def get_metrics(self) -> dict[str, Any]:
        """Return subscription counts, delivery totals and engine state."""
        active = self.delivery.get_active_delivery_counts()
        return {
            "webhooks": self.storage.get_metrics(),
            "deliveries": self.storage.get_aggregated_metrics(),
            "retryQueueSize": self.delivery.get_retry_queue_size(),
            "activeDeliveries": active["total"],
        }
