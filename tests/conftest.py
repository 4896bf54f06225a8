import types
from typing import Any

import pytest

from mail_webhooks.ids import generate_webhook_id, generate_webhook_secret
from mail_webhooks.models import Webhook, WebhookEvent
from mail_webhooks.storage import WebhookStorage


def silent_logger():
    return types.SimpleNamespace(
        warning=lambda *args, **kwargs: None,
        error=lambda *args, **kwargs: None,
        exception=lambda *args, **kwargs: None,
        info=lambda *args, **kwargs: None,
        debug=lambda *args, **kwargs: None,
    )


def make_webhook(**overrides: Any) -> Webhook:
    values: dict[str, Any] = {
        "id": generate_webhook_id(),
        "url": "https://hooks.example.com/mail",
        "events": ["email.received"],
        "secret": generate_webhook_secret(),
    }
    values.update(overrides)
    return Webhook(**values)


def make_event(event_type: str = "email.received", **data: Any) -> WebhookEvent:
    payload = {
        "id": "msg_1",
        "inboxId": "inbox_hash",
        "inboxEmail": "inbox@sandbox.example.com",
        "from": {"address": "alice@example.com", "name": "Alice"},
        "to": [{"address": "inbox@sandbox.example.com"}],
        "subject": "Hi",
        "snippet": "Hello there",
        "headers": {},
        "attachments": [],
        "receivedAt": "2024-01-01T00:00:00.000Z",
    }
    payload.update(data)
    return WebhookEvent(id="evt_1", created_at=1700000000, type=event_type, data=payload)


@pytest.fixture
def storage():
    return WebhookStorage(logger=silent_logger())
