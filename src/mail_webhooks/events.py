# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Webhook event type names."""

from __future__ import annotations

from enum import Enum


class WebhookEventType(str, Enum):
    """Mail lifecycle events a webhook can subscribe to.

    Attributes:
        EMAIL_RECEIVED: An inbound email was accepted for an inbox.
        EMAIL_STORED: An email was persisted to the inbox store.
        EMAIL_DELETED: An email was removed (manually, by TTL or eviction).
    """

    EMAIL_RECEIVED = "email.received"
    EMAIL_STORED = "email.stored"
    EMAIL_DELETED = "email.deleted"


ALL_WEBHOOK_EVENTS: list[str] = [event.value for event in WebhookEventType]

# Events that carry inbox context
EMAIL_EVENTS: list[str] = [
    WebhookEventType.EMAIL_RECEIVED.value,
    WebhookEventType.EMAIL_STORED.value,
    WebhookEventType.EMAIL_DELETED.value,
]

DELETION_REASONS = ("manual", "ttl", "eviction")


def is_valid_webhook_event(event: str) -> bool:
    """Return True if ``event`` is a known webhook event type name."""
    return event in ALL_WEBHOOK_EVENTS


def is_email_event(event: str) -> bool:
    """Return True if ``event`` is email-related (has inbox context)."""
    return event in EMAIL_EVENTS
