# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""In-memory webhook subscription store.

The store keeps global webhooks and inbox-scoped webhooks in separate tables,
with a reverse index from webhook id to inbox hash. It is the single source
of truth for subscription records and their delivery statistics.

Statistics are only mutated through :meth:`WebhookStorage.increment_stats`,
which updates the stored stats object in place under a per-webhook lock.
:meth:`WebhookStorage.update_webhook` replaces the record but carries the
same stats object over, so a concurrent increment is never lost.

State is volatile and lost on restart.
"""

from __future__ import annotations

import threading
from datetime import timedelta
from typing import Any

from .ids import generate_webhook_secret
from .logger import get_logger
from .models import DeliveryOutcome, Webhook, utc_now

SECRET_GRACE_PERIOD = timedelta(hours=1)


class WebhookStorage:
    """Thread-safe in-memory store for webhook subscriptions."""

    def __init__(self, logger=None):
        self.logger = logger or get_logger("WebhookStorage")
        self._lock = threading.Lock()
        self._global: dict[str, Webhook] = {}
        self._inbox: dict[str, dict[str, Webhook]] = {}
        self._webhook_to_inbox: dict[str, str] = {}
        self._stats_locks: dict[str, threading.Lock] = {}

    # ----------------------------------------------------------------- global
    def create_global_webhook(self, webhook: Webhook) -> Webhook:
        """Store a global webhook."""
        with self._lock:
            self._global[webhook.id] = webhook
            self._stats_locks.setdefault(webhook.id, threading.Lock())
        self.logger.info("Created global webhook %s", webhook.id)
        return webhook

    def get_global_webhook(self, webhook_id: str) -> Webhook | None:
        return self._global.get(webhook_id)

    def list_global_webhooks(self) -> list[Webhook]:
        with self._lock:
            return list(self._global.values())

    def get_global_webhook_count(self) -> int:
        return len(self._global)

    # ------------------------------------------------------------------ inbox
    def create_inbox_webhook(self, inbox_hash: str, webhook: Webhook) -> Webhook:
        """Store a webhook scoped to ``inbox_hash``."""
        with self._lock:
            self._inbox.setdefault(inbox_hash, {})[webhook.id] = webhook
            self._webhook_to_inbox[webhook.id] = inbox_hash
            self._stats_locks.setdefault(webhook.id, threading.Lock())
        self.logger.info("Created inbox webhook %s for inbox %s", webhook.id, inbox_hash)
        return webhook

    def get_inbox_webhook(self, inbox_hash: str, webhook_id: str) -> Webhook | None:
        return self._inbox.get(inbox_hash, {}).get(webhook_id)

    def list_inbox_webhooks(self, inbox_hash: str) -> list[Webhook]:
        with self._lock:
            return list(self._inbox.get(inbox_hash, {}).values())

    def get_inbox_webhook_count(self, inbox_hash: str) -> int:
        return len(self._inbox.get(inbox_hash, {}))

    def get_total_inbox_webhook_count(self) -> int:
        with self._lock:
            return sum(len(webhooks) for webhooks in self._inbox.values())

    # ---------------------------------------------------------------- generic
    def get_webhook(self, webhook_id: str) -> Webhook | None:
        """Return a global or inbox webhook by id, or None."""
        with self._lock:
            return self._find(webhook_id)

    def _find(self, webhook_id: str) -> Webhook | None:
        webhook = self._global.get(webhook_id)
        if webhook is not None:
            return webhook
        inbox_hash = self._webhook_to_inbox.get(webhook_id)
        if inbox_hash is None:
            return None
        return self._inbox.get(inbox_hash, {}).get(webhook_id)

    def increment_stats(self, webhook_id: str, outcome: DeliveryOutcome) -> dict[str, int] | None:
        """Record one delivery outcome for a webhook.

        This is the only mutation point for statistics. The stored stats
        object is updated in place under the webhook's lock.

        Args:
            webhook_id: Webhook to update.
            outcome: "success" or "failure". ``total_deliveries`` is always
                incremented.

        Returns:
            ``{"consecutive_failures": n}`` after the update, or None if the
            webhook no longer exists.
        """
        with self._lock:
            webhook = self._find(webhook_id)
            stats_lock = self._stats_locks.get(webhook_id)
        if webhook is None or stats_lock is None:
            return None

        with stats_lock:
            stats = webhook.stats
            stats.total_deliveries += 1
            stats.last_delivery_at = utc_now()
            if outcome == "success":
                stats.successful_deliveries += 1
                stats.consecutive_failures = 0
                stats.last_delivery_status = "success"
            else:
                stats.failed_deliveries += 1
                stats.consecutive_failures += 1
                stats.last_delivery_status = "failed"
            return {"consecutive_failures": stats.consecutive_failures}

    def update_webhook(self, webhook_id: str, **updates: Any) -> Webhook | None:
        """Replace a webhook with an updated copy, keeping its location.

        ``stats`` cannot be replaced through this method; the updated record
        shares the stats object of the previous one.

        Returns:
            The updated webhook, or None if it does not exist.
        """
        updates.pop("stats", None)
        with self._lock:
            webhook = self._find(webhook_id)
            if webhook is None:
                return None
            updated = webhook.model_copy(update={**updates, "updated_at": utc_now()})
            updated.stats = webhook.stats
            if webhook_id in self._global:
                self._global[webhook_id] = updated
                scope = "global"
            else:
                self._inbox[self._webhook_to_inbox[webhook_id]][webhook_id] = updated
                scope = "inbox"
        self.logger.debug("Updated %s webhook %s", scope, webhook_id)
        return updated

    def delete_webhook(self, webhook_id: str) -> bool:
        """Delete a global or inbox webhook. Returns True if it existed."""
        with self._lock:
            if self._global.pop(webhook_id, None) is not None:
                self._stats_locks.pop(webhook_id, None)
                scope = "global"
            else:
                inbox_hash = self._webhook_to_inbox.get(webhook_id)
                webhooks = self._inbox.get(inbox_hash, {}) if inbox_hash else {}
                if webhook_id not in webhooks:
                    return False
                del webhooks[webhook_id]
                del self._webhook_to_inbox[webhook_id]
                self._stats_locks.pop(webhook_id, None)
                if not webhooks:
                    del self._inbox[inbox_hash]
                scope = "inbox"
        self.logger.info("Deleted %s webhook %s", scope, webhook_id)
        return True

    def rotate_secret(self, webhook_id: str) -> Webhook | None:
        """Issue a new signing secret, keeping the old one valid for one hour."""
        webhook = self.get_webhook(webhook_id)
        if webhook is None:
            return None
        return self.update_webhook(
            webhook_id,
            secret=generate_webhook_secret(),
            previous_secret=webhook.secret,
            previous_secret_expires_at=utc_now() + SECRET_GRACE_PERIOD,
        )

    # --------------------------------------------------------------- matching
    def get_webhooks_for_event(self, event_type: str, inbox_hash: str | None = None) -> list[Webhook]:
        """Return enabled webhooks subscribed to ``event_type``.

        Global webhooks always take part; inbox webhooks only when
        ``inbox_hash`` is given.
        """
        with self._lock:
            candidates = list(self._global.values())
            if inbox_hash:
                candidates.extend(self._inbox.get(inbox_hash, {}).values())
        return [webhook for webhook in candidates if webhook.enabled and event_type in webhook.events]

    def on_inbox_deleted(self, inbox_hash: str) -> None:
        """Remove every webhook bound to a deleted inbox."""
        with self._lock:
            webhooks = self._inbox.pop(inbox_hash, None)
            if not webhooks:
                return
            for webhook_id in webhooks:
                self._webhook_to_inbox.pop(webhook_id, None)
                self._stats_locks.pop(webhook_id, None)
        self.logger.info("Deleted %d webhooks for deleted inbox %s", len(webhooks), inbox_hash)

    # ---------------------------------------------------------------- metrics
    def get_metrics(self) -> dict[str, int]:
        """Return subscription counts."""
        with self._lock:
            global_count = len(self._global)
            inbox_count = sum(len(webhooks) for webhooks in self._inbox.values())
            return {
                "globalWebhookCount": global_count,
                "inboxWebhookCount": inbox_count,
                "totalWebhookCount": global_count + inbox_count,
                "inboxesWithWebhooks": len(self._inbox),
            }

    def get_aggregated_metrics(self) -> dict[str, int]:
        """Return delivery totals across every webhook."""
        with self._lock:
            webhooks = list(self._global.values())
            for inbox_webhooks in self._inbox.values():
                webhooks.extend(inbox_webhooks.values())

        totals = {"enabledCount": 0, "totalDeliveries": 0, "successfulDeliveries": 0, "failedDeliveries": 0}
        for webhook in webhooks:
            if webhook.enabled:
                totals["enabledCount"] += 1
            totals["totalDeliveries"] += webhook.stats.total_deliveries
            totals["successfulDeliveries"] += webhook.stats.successful_deliveries
            totals["failedDeliveries"] += webhook.stats.failed_deliveries
        return totals

    def clear_all(self) -> None:
        with self._lock:
            global_count = len(self._global)
            inbox_count = sum(len(webhooks) for webhooks in self._inbox.values())
            self._global.clear()
            self._inbox.clear()
            self._webhook_to_inbox.clear()
            self._stats_locks.clear()
        self.logger.info("Cleared all webhooks: %d global, %d inbox", global_count, inbox_count)
