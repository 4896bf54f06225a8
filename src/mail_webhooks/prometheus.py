# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for monitoring webhook delivery.

All metrics use the ``mwh_`` prefix (mail-webhooks).

Metrics exposed:
    - ``mwh_deliveries_total``: Counter of delivery attempts per webhook and outcome.
    - ``mwh_retries_scheduled_total``: Counter of retries enqueued per webhook.
    - ``mwh_retries_dropped_total``: Counter of retries dropped by the per-webhook cap.
    - ``mwh_retries_evicted_total``: Counter of retries evicted from a full queue.
    - ``mwh_auto_disabled_total``: Counter of automatic webhook disables.
    - ``mwh_retry_queue_size``: Gauge of entries in the retry queue.
    - ``mwh_active_deliveries``: Gauge of in-flight deliveries.

Example:
    Accessing metrics via the REST API::

        GET /metrics
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class WebhookMetrics:
    """Prometheus metrics collector for the delivery engine.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
        deliveries: Counter of attempts labeled by ``webhook_id`` and ``outcome``.
        retries_scheduled: Counter of retries placed on the queue.
        retries_dropped: Counter of retries refused by the per-webhook cap.
        retries_evicted: Counter of retries evicted to make room.
        auto_disabled: Counter of webhooks disabled after repeated failures.
        retry_queue_size: Gauge of current retry queue depth.
        active_deliveries: Gauge of deliveries currently in flight.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """Initialize metrics with an optional custom registry.

        Args:
            registry: Optional Prometheus CollectorRegistry. A new registry is
                created when omitted, so several services never collide.
        """
        self.registry = registry or CollectorRegistry()
        self.deliveries = Counter(
            "mwh_deliveries_total",
            "Total webhook delivery attempts",
            ["webhook_id", "outcome"],
            registry=self.registry,
        )
        self.retries_scheduled = Counter(
            "mwh_retries_scheduled_total",
            "Total retries scheduled",
            ["webhook_id"],
            registry=self.registry,
        )
        self.retries_dropped = Counter(
            "mwh_retries_dropped_total",
            "Total retries dropped by the per-webhook limit",
            ["webhook_id"],
            registry=self.registry,
        )
        self.retries_evicted = Counter(
            "mwh_retries_evicted_total",
            "Total retries evicted from a full queue",
            registry=self.registry,
        )
        self.auto_disabled = Counter(
            "mwh_auto_disabled_total",
            "Total webhooks auto-disabled after consecutive failures",
            ["webhook_id"],
            registry=self.registry,
        )
        self.retry_queue_size = Gauge(
            "mwh_retry_queue_size",
            "Current retry queue size",
            registry=self.registry,
        )
        self.active_deliveries = Gauge(
            "mwh_active_deliveries",
            "Current in-flight deliveries",
            registry=self.registry,
        )

    def inc_delivery(self, webhook_id: str, outcome: str) -> None:
        """Count one finished attempt.

        Args:
            webhook_id: The webhook identifier.
            outcome: "success" or "failure".
        """
        self.deliveries.labels(webhook_id=webhook_id, outcome=outcome).inc()

    def inc_retry_scheduled(self, webhook_id: str) -> None:
        self.retries_scheduled.labels(webhook_id=webhook_id).inc()

    def inc_retry_dropped(self, webhook_id: str) -> None:
        self.retries_dropped.labels(webhook_id=webhook_id).inc()

    def inc_retry_evicted(self) -> None:
        self.retries_evicted.inc()

    def inc_auto_disabled(self, webhook_id: str) -> None:
        self.auto_disabled.labels(webhook_id=webhook_id).inc()

    def set_retry_queue_size(self, value: int) -> None:
        self.retry_queue_size.set(value)

    def set_active_deliveries(self, value: int) -> None:
        self.active_deliveries.set(value)

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format.

        Returns:
            Byte string suitable for an HTTP response to a Prometheus scraper.
        """
        return generate_latest(self.registry)
