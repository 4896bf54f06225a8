# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Dispatch of email domain events to matching webhooks.

The dispatcher receives email lifecycle notifications, normalizes them into
webhook payloads, selects the subscribed webhooks from the store, prunes
them through their filters and hands every survivor to the delivery engine.
Deliveries run as independent asyncio tasks: dispatching never waits for
them and never raises because of them.

Input email mappings use snake_case keys::

    {
        "id": "msg_123",
        "from": "alice@example.com" or {"address": ..., "name": ...},
        "to": [...], "cc": [...],
        "subject": "...", "text": "...", "html": "...",
        "headers": {"Message-ID": "..."},
        "attachments": [{"filename": ..., "content_type": ..., "size": ..., "content_id": ...}],
        "received_at": datetime or ISO string,
        "auth": {"spf": "pass", "dkim": "pass", "dmarc": "pass"},
    }
"""

from __future__ import annotations

import asyncio
import re
import time
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from typing import Any

from .config_loader import WebhookSettings
from .events import WebhookEventType
from .filter import WebhookFilter
from .ids import generate_event_id
from .logger import get_logger
from .models import (
    AttachmentMeta,
    EmailAddress,
    EmailAuthResults,
    EmailDeletedData,
    EmailReceivedData,
    EmailStoredData,
    WebhookEvent,
)

SNIPPET_LENGTH = 200
NO_SUBJECT = "(no subject)"
DEFAULT_ATTACHMENT_NAME = "unnamed"
DEFAULT_ATTACHMENT_TYPE = "application/octet-stream"

_WHITESPACE_RE = re.compile(r"\s+")


def _iso(value: datetime | str | None = None) -> str:
    if isinstance(value, str):
        return value
    moment = value or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def normalize_address(address: str | Mapping[str, Any]) -> EmailAddress:
    """Normalize a bare address string or an address mapping."""
    if isinstance(address, str):
        return EmailAddress(address=address)
    return EmailAddress(address=address["address"], name=address.get("name") or None)


def normalize_addresses(addresses: Iterable[str | Mapping[str, Any]] | None) -> list[EmailAddress]:
    return [normalize_address(address) for address in addresses or ()]


def create_snippet(text: str | None) -> str:
    """Collapse whitespace and cap ``text`` at 200 characters."""
    if not text:
        return ""
    normalized = _WHITESPACE_RE.sub(" ", text).strip()
    if len(normalized) <= SNIPPET_LENGTH:
        return normalized
    return normalized[: SNIPPET_LENGTH - 3] + "..."


def normalize_headers(
    headers: Mapping[str, Any] | None, max_headers: int = 50, max_value_len: int = 1000
) -> dict[str, str]:
    """Lower-case header names and cap header count and value length.

    Missing values become empty strings and other values are converted with
    ``str()``.
    """
    if not headers:
        return {}
    result: dict[str, str] = {}
    for count, (key, value) in enumerate(headers.items()):
        if count >= max_headers:
            break
        text = "" if value is None else str(value)
        result[key.lower()] = text[:max_value_len]
    return result


def normalize_attachments(attachments: Iterable[Mapping[str, Any]] | None) -> list[AttachmentMeta]:
    """Reduce attachments to metadata, never copying their content."""
    return [
        AttachmentMeta(
            filename=attachment.get("filename") or DEFAULT_ATTACHMENT_NAME,
            content_type=attachment.get("content_type") or DEFAULT_ATTACHMENT_TYPE,
            size=attachment.get("size") or 0,
            content_id=attachment.get("content_id"),
        )
        for attachment in attachments or ()
    ]


class WebhookEventDispatcher:
    """Routes email events to the delivery engine.

    Attributes:
        storage: Subscription store queried for candidate webhooks.
        delivery: Delivery engine receiving each matching webhook.
        filter: Filter evaluator applied to webhooks that carry a filter.
        settings: Dispatch settings (enabled flag, header caps).
    """

    def __init__(
        self,
        storage,
        delivery,
        webhook_filter: WebhookFilter | None = None,
        settings: WebhookSettings | None = None,
        logger=None,
    ):
        self.settings = settings or WebhookSettings()
        self.storage = storage
        self.delivery = delivery
        self.filter = webhook_filter or WebhookFilter(require_auth_default=self.settings.require_auth_default)
        self.logger = logger or get_logger("WebhookDispatcher")
        self._tasks: set[asyncio.Task] = set()

    # --------------------------------------------------------------- handlers
    def handle_email_received(
        self, email: Mapping[str, Any], inbox_hash: str, inbox_email: str
    ) -> list[asyncio.Task]:
        """Dispatch ``email.received`` for a newly received email."""
        if not self.settings.enabled:
            return []
        data = self.build_received_data(email, inbox_hash, inbox_email)
        return self.dispatch(WebhookEventType.EMAIL_RECEIVED.value, data, inbox_hash)

    def handle_email_stored(self, email_id: str, inbox_hash: str, inbox_email: str) -> list[asyncio.Task]:
        """Dispatch ``email.stored`` once an email has been persisted."""
        if not self.settings.enabled:
            return []
        data = EmailStoredData(id=email_id, inbox_id=inbox_hash, inbox_email=inbox_email, stored_at=_iso())
        return self.dispatch(WebhookEventType.EMAIL_STORED.value, _dump(data), inbox_hash)

    def handle_email_deleted(
        self, email_id: str, inbox_hash: str, inbox_email: str, reason: str
    ) -> list[asyncio.Task]:
        """Dispatch ``email.deleted``. ``reason`` is manual, ttl or eviction."""
        if not self.settings.enabled:
            return []
        data = EmailDeletedData(
            id=email_id, inbox_id=inbox_hash, inbox_email=inbox_email, reason=reason, deleted_at=_iso()
        )
        return self.dispatch(WebhookEventType.EMAIL_DELETED.value, _dump(data), inbox_hash)

    # --------------------------------------------------------------- dispatch
    def dispatch(
        self, event_type: str, data: Mapping[str, Any], inbox_hash: str | None = None
    ) -> list[asyncio.Task]:
        """Send an event to every enabled, subscribed and matching webhook.

        Must be called from a running event loop. Deliveries are scheduled as
        tasks and not awaited.

        Args:
            event_type: Event type name, e.g. ``email.received``.
            data: Normalized payload with wire (camelCase) keys.
            inbox_hash: Inbox the event belongs to. Inbox-scoped webhooks
                are only considered when given.

        Returns:
            The scheduled delivery tasks, one per matching webhook.
        """
        if not self.settings.enabled:
            return []

        webhooks = self.storage.get_webhooks_for_event(event_type, inbox_hash)
        if not webhooks:
            self.logger.debug("No webhooks subscribed to %s", event_type)
            return []

        event = WebhookEvent(id=generate_event_id(), created_at=int(time.time()), type=event_type, data=dict(data))

        matching = []
        for webhook in webhooks:
            if webhook.filter is None or self.filter.matches(event, webhook.filter):
                matching.append(webhook)
            else:
                self.logger.debug("Event %s filtered out for webhook %s", event.id, webhook.id)

        if not matching:
            self.logger.debug("No webhooks matched filters for %s", event_type)
            return []

        self.logger.info(
            "Dispatching %s to %d webhook(s) (%d filtered out)",
            event_type,
            len(matching),
            len(webhooks) - len(matching),
        )

        tasks = []
        for webhook in matching:
            task = asyncio.create_task(self.delivery.deliver(webhook, event), name=f"webhook-{webhook.id}")
            task.add_done_callback(self._make_done_callback(event_type, webhook.id))
            self._tasks.add(task)
            tasks.append(task)
        return tasks

    def _make_done_callback(self, event_type: str, webhook_id: str):
        def _done(task: asyncio.Task) -> None:
            self._tasks.discard(task)
            if task.cancelled():
                return
            exc = task.exception()
            if exc is not None:
                self.logger.error("Failed to deliver %s to webhook %s: %s", event_type, webhook_id, exc)

        return _done

    async def drain(self) -> None:
        """Wait for every delivery task started by this dispatcher."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ---------------------------------------------------------------- mapping
    def build_received_data(self, email: Mapping[str, Any], inbox_hash: str, inbox_email: str) -> dict[str, Any]:
        """Map an inbound email to the ``email.received`` payload."""
        auth = email.get("auth")
        data = EmailReceivedData(
            id=email["id"],
            inbox_id=inbox_hash,
            inbox_email=inbox_email,
            from_=normalize_address(email["from"]),
            to=normalize_addresses(email.get("to")),
            cc=normalize_addresses(email["cc"]) if email.get("cc") is not None else None,
            subject=email.get("subject") or NO_SUBJECT,
            snippet=create_snippet(email.get("text")),
            text_body=email.get("text"),
            html_body=email.get("html"),
            headers=normalize_headers(
                email.get("headers"), self.settings.max_headers, self.settings.max_header_value_len
            ),
            attachments=normalize_attachments(email.get("attachments")),
            auth=EmailAuthResults(**auth) if auth else None,
            received_at=_iso(email.get("received_at")),
        )
        return _dump(data)


def _dump(data) -> dict[str, Any]:
    return data.model_dump(by_alias=True, exclude_none=True, mode="json")
