# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic models for webhook subscriptions, events and delivery results.

This module defines the data models used throughout the package for
validation, serialization and type safety. Python attributes are snake_case;
JSON serialization uses the camelCase names of the wire format through
field aliases, and models accept either form on input.

Models:
    - WebhookStats: Mutable delivery statistics of a subscription
    - CustomTemplate: User-supplied JSON body template
    - FilterRule / FilterConfig: Content-based filtering configuration
    - Webhook: Complete subscription record
    - EmailAddress / AttachmentMeta / EmailAuthResults: Payload building blocks
    - EmailReceivedData / EmailStoredData / EmailDeletedData: Event payloads
    - WebhookEvent: Event envelope wrapping every payload
    - DeliveryResult / TestDeliveryResult: Outcome of a delivery attempt
    - ValidationResult: Outcome of registration-time validation
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

BuiltInTemplate = Literal["default", "slack", "discord", "teams", "simple", "notification", "zapier"]
WebhookScope = Literal["global", "inbox"]
DeliveryOutcome = Literal["success", "failure"]


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class WebhookStats(BaseModel):
    """Delivery statistics of a webhook.

    Invariant: ``successful_deliveries + failed_deliveries == total_deliveries``.
    Only :meth:`mail_webhooks.storage.WebhookStorage.increment_stats` mutates
    an instance held by the store.
    """

    model_config = ConfigDict(populate_by_name=True)

    total_deliveries: Annotated[int, Field(default=0, ge=0, alias="totalDeliveries")]
    successful_deliveries: Annotated[int, Field(default=0, ge=0, alias="successfulDeliveries")]
    failed_deliveries: Annotated[int, Field(default=0, ge=0, alias="failedDeliveries")]
    consecutive_failures: Annotated[int, Field(default=0, ge=0, alias="consecutiveFailures")]
    last_delivery_at: Annotated[datetime | None, Field(default=None, alias="lastDeliveryAt")]
    last_delivery_status: Annotated[
        Literal["success", "failed"] | None,
        Field(default=None, alias="lastDeliveryStatus"),
    ]


class CustomTemplate(BaseModel):
    """Custom payload template.

    Attributes:
        type: Always "custom".
        body: JSON text with ``{{path}}`` placeholders.
        content_type: Optional Content-Type override for the delivery request.
    """

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    type: Literal["custom"] = "custom"
    body: Annotated[str, Field(description="JSON template with {{variable}} placeholders")]
    content_type: Annotated[str | None, Field(default=None, alias="contentType")]


WebhookTemplate = Union[str, CustomTemplate]


class FilterRule(BaseModel):
    """A single filter rule matched against event data.

    Field and operator are kept as plain strings; they are checked by
    :func:`mail_webhooks.filter.validate_filter` at registration time.
    """

    model_config = ConfigDict(populate_by_name=True)

    field: str
    operator: str
    value: str = ""
    case_sensitive: Annotated[bool, Field(default=False, alias="caseSensitive")]


class FilterConfig(BaseModel):
    """Filter configuration of a webhook.

    Attributes:
        rules: Rules to evaluate (at most 10).
        mode: "all" combines rules with AND, "any" with OR.
        require_auth: When true, events must pass every enabled email
            authentication check (SPF, DKIM, DMARC). None defers to the
            service default.
    """

    model_config = ConfigDict(populate_by_name=True)

    rules: list[FilterRule] = Field(default_factory=list)
    mode: str = "all"
    require_auth: Annotated[bool | None, Field(default=None, alias="requireAuth")]


class Webhook(BaseModel):
    """Subscription record owned by the webhook store."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    url: str
    events: list[str]
    scope: WebhookScope = "global"
    inbox_hash: Annotated[str | None, Field(default=None, alias="inboxHash")]
    inbox_email: Annotated[str | None, Field(default=None, alias="inboxEmail")]
    enabled: bool = True
    secret: str
    previous_secret: Annotated[str | None, Field(default=None, alias="previousSecret")]
    previous_secret_expires_at: Annotated[
        datetime | None, Field(default=None, alias="previousSecretExpiresAt")
    ]
    template: WebhookTemplate | None = None
    filter: FilterConfig | None = None
    description: str | None = None
    created_at: Annotated[datetime, Field(default_factory=utc_now, alias="createdAt")]
    updated_at: Annotated[datetime | None, Field(default=None, alias="updatedAt")]
    stats: WebhookStats = Field(default_factory=WebhookStats)


class EmailAddress(BaseModel):
    """Email address with optional display name."""

    model_config = ConfigDict(populate_by_name=True)

    address: str
    name: str | None = None


class AttachmentMeta(BaseModel):
    """Attachment metadata (content is never included)."""

    model_config = ConfigDict(populate_by_name=True)

    filename: str
    content_type: Annotated[str, Field(alias="contentType")]
    size: int = 0
    content_id: Annotated[str | None, Field(default=None, alias="contentId")]


class EmailAuthResults(BaseModel):
    """SPF/DKIM/DMARC verdicts of an inbound email."""

    spf: str | None = None
    dkim: str | None = None
    dmarc: str | None = None


class EmailReceivedData(BaseModel):
    """Payload of the ``email.received`` event."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    inbox_id: Annotated[str, Field(alias="inboxId")]
    inbox_email: Annotated[str, Field(alias="inboxEmail")]
    from_: Annotated[EmailAddress, Field(alias="from")]
    to: list[EmailAddress] = Field(default_factory=list)
    cc: list[EmailAddress] | None = None
    subject: str
    snippet: str = ""
    text_body: Annotated[str | None, Field(default=None, alias="textBody")]
    html_body: Annotated[str | None, Field(default=None, alias="htmlBody")]
    headers: dict[str, str] = Field(default_factory=dict)
    attachments: list[AttachmentMeta] = Field(default_factory=list)
    auth: EmailAuthResults | None = None
    received_at: Annotated[str, Field(alias="receivedAt")]


class EmailStoredData(BaseModel):
    """Payload of the ``email.stored`` event."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    inbox_id: Annotated[str, Field(alias="inboxId")]
    inbox_email: Annotated[str, Field(alias="inboxEmail")]
    stored_at: Annotated[str, Field(alias="storedAt")]


class EmailDeletedData(BaseModel):
    """Payload of the ``email.deleted`` event."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    inbox_id: Annotated[str, Field(alias="inboxId")]
    inbox_email: Annotated[str, Field(alias="inboxEmail")]
    reason: Literal["manual", "ttl", "eviction"]
    deleted_at: Annotated[str, Field(alias="deletedAt")]


class WebhookEvent(BaseModel):
    """Event envelope wrapping every webhook payload."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    object: Literal["event"] = "event"
    created_at: Annotated[int, Field(alias="createdAt", description="Unix timestamp (seconds)")]
    type: str
    data: dict[str, Any] = Field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        """Return the JSON-ready envelope with wire (camelCase) keys."""
        return self.model_dump(by_alias=True, mode="json")


class DeliveryResult(BaseModel):
    """Outcome of a single delivery attempt."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    status_code: Annotated[int | None, Field(default=None, alias="statusCode")]
    response_time_ms: Annotated[int | None, Field(default=None, alias="responseTimeMs")]
    response_body: Annotated[str | None, Field(default=None, alias="responseBody")]
    error: str | None = None
    will_retry: Annotated[bool | None, Field(default=None, alias="willRetry")]
    next_attempt: Annotated[int | None, Field(default=None, alias="nextAttempt")]


class TestDeliveryResult(BaseModel):
    """Outcome of a test delivery (never recorded in statistics)."""

    __test__ = False

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    status_code: Annotated[int | None, Field(default=None, alias="statusCode")]
    response_time_ms: Annotated[int | None, Field(default=None, alias="responseTimeMs")]
    response_body: Annotated[str | None, Field(default=None, alias="responseBody")]
    error: str | None = None
    payload_sent: Annotated[Any, Field(default=None, alias="payloadSent")]


class ValidationResult(BaseModel):
    """Result of validating a filter or template configuration."""

    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
