# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Payload templates for webhook deliveries.

A webhook either receives the full event envelope (no template or the
``default`` template), a built-in chat/automation format, or a custom JSON
body. Templates use ``{{path}}`` placeholders resolved against a context of
``id``, ``type``, ``createdAt``, ``timestamp`` (ISO-8601) and ``data``.
Resolved values are escaped for embedding inside a JSON string literal.

Example:
    Rendering a custom template::

        templates = WebhookTemplates()
        body = templates.transform(event, CustomTemplate(body='{"s":"{{data.subject}}"}'))
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from .logger import get_logger
from .models import CustomTemplate, ValidationResult, WebhookEvent, WebhookTemplate

SLACK_TEMPLATE = """{
  "text": "New email from {{data.from.address}}",
  "blocks": [
    {
      "type": "header",
      "text": {
        "type": "plain_text",
        "text": "New Email Received"
      }
    },
    {
      "type": "section",
      "fields": [
        {
          "type": "mrkdwn",
          "text": "*From:*\\n{{data.from.address}}"
        },
        {
          "type": "mrkdwn",
          "text": "*To:*\\n{{data.inboxEmail}}"
        }
      ]
    },
    {
      "type": "section",
      "text": {
        "type": "mrkdwn",
        "text": "*Subject:*\\n{{data.subject}}"
      }
    },
    {
      "type": "section",
      "text": {
        "type": "mrkdwn",
        "text": "*Preview:*\\n{{data.snippet}}"
      }
    },
    {
      "type": "context",
      "elements": [
        {
          "type": "mrkdwn",
          "text": "Event: `{{type}}` | ID: `{{data.id}}`"
        }
      ]
    }
  ]
}"""

DISCORD_TEMPLATE = """{
  "content": "New email received",
  "embeds": [
    {
      "title": "{{data.subject}}",
      "color": 5814783,
      "fields": [
        {
          "name": "From",
          "value": "{{data.from.address}}",
          "inline": true
        },
        {
          "name": "To",
          "value": "{{data.inboxEmail}}",
          "inline": true
        },
        {
          "name": "Preview",
          "value": "{{data.snippet}}"
        }
      ],
      "footer": {
        "text": "Mail Webhooks | {{type}}"
      },
      "timestamp": "{{timestamp}}"
    }
  ]
}"""

TEAMS_TEMPLATE = """{
  "@type": "MessageCard",
  "@context": "http://schema.org/extensions",
  "themeColor": "0076D7",
  "summary": "New email from {{data.from.address}}",
  "sections": [
    {
      "activityTitle": "New Email Received",
      "facts": [
        {
          "name": "From",
          "value": "{{data.from.address}}"
        },
        {
          "name": "To",
          "value": "{{data.inboxEmail}}"
        },
        {
          "name": "Subject",
          "value": "{{data.subject}}"
        }
      ],
      "text": "{{data.snippet}}"
    }
  ]
}"""

SIMPLE_TEMPLATE = """{
  "from": "{{data.from.address}}",
  "to": "{{data.inboxEmail}}",
  "subject": "{{data.subject}}",
  "preview": "{{data.snippet}}"
}"""

NOTIFICATION_TEMPLATE = """{
  "text": "New email from {{data.from.address}}: {{data.subject}}"
}"""

ZAPIER_TEMPLATE = """{
  "event": "{{type}}",
  "email_id": "{{data.id}}",
  "inbox": "{{data.inboxEmail}}",
  "from_address": "{{data.from.address}}",
  "from_name": "{{data.from.name}}",
  "subject": "{{data.subject}}",
  "preview": "{{data.snippet}}",
  "received_at": "{{data.receivedAt}}"
}"""

BUILT_IN_TEMPLATES: dict[str, str] = {
    "slack": SLACK_TEMPLATE,
    "discord": DISCORD_TEMPLATE,
    "teams": TEAMS_TEMPLATE,
    "simple": SIMPLE_TEMPLATE,
    "notification": NOTIFICATION_TEMPLATE,
    "zapier": ZAPIER_TEMPLATE,
}

BUILT_IN_TEMPLATE_NAMES = ("default", *BUILT_IN_TEMPLATES)

BUILT_IN_TEMPLATE_OPTIONS = (
    {"label": "Default (Raw JSON)", "value": "default"},
    {"label": "Slack", "value": "slack"},
    {"label": "Discord", "value": "discord"},
    {"label": "Microsoft Teams", "value": "teams"},
    {"label": "Simple", "value": "simple"},
    {"label": "Notification", "value": "notification"},
    {"label": "Zapier/Automation", "value": "zapier"},
)

MAX_TEMPLATE_BODY = 10_000
PLACEHOLDER_RE = re.compile(r"\{\{([^}]+)\}\}")


class TemplateError(ValueError):
    """Raised when a template does not render to valid JSON."""


def to_json(value: Any) -> str:
    """Serialize ``value`` as compact JSON, keeping non-ASCII characters."""
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def iso_timestamp(epoch_seconds: int | float) -> str:
    """Return an ISO-8601 UTC timestamp with millisecond precision and Z suffix."""
    moment = datetime.fromtimestamp(epoch_seconds, timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def resolve_path(context: Any, path: str) -> str:
    """Resolve a dot-path against ``context`` and return its text form.

    Missing and null values resolve to an empty string, mappings and lists
    to compact JSON, and primitives to their string form.
    """
    value = context
    for part in path.split("."):
        if isinstance(value, Mapping):
            value = value.get(part)
        elif isinstance(value, list) and part.isdigit() and int(part) < len(value):
            value = value[int(part)]
        else:
            return ""
        if value is None:
            return ""

    if isinstance(value, (Mapping, list)):
        return to_json(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def escape_json_value(value: str) -> str:
    """Escape text for safe inclusion inside a JSON string literal."""
    return json.dumps(value, ensure_ascii=False)[1:-1]


class WebhookTemplates:
    """Transforms webhook events into delivery payloads."""

    def __init__(self, logger=None):
        self.logger = logger or get_logger("WebhookTemplates")

    def transform(self, event: WebhookEvent, template: WebhookTemplate | None = None) -> str:
        """Render ``event`` with ``template`` into a JSON string.

        Args:
            event: Event envelope to render.
            template: Built-in template name, CustomTemplate, or None.

        Returns:
            JSON text ready to be signed and delivered.

        Raises:
            TemplateError: If a custom template renders to invalid JSON.
        """
        if template is None or template == "default":
            return to_json(event.to_wire())

        if isinstance(template, str):
            built_in = BUILT_IN_TEMPLATES.get(template)
            if built_in is None:
                self.logger.warning('Unknown template "%s", using default', template)
                return to_json(event.to_wire())
            return self.apply_template(built_in, event)

        if isinstance(template, CustomTemplate):
            rendered = self.apply_template(template.body, event)
            try:
                json.loads(rendered)
            except ValueError as exc:
                raise TemplateError(f"Custom template did not produce valid JSON: {exc}") from exc
            return rendered

        return to_json(event.to_wire())

    def apply_template(self, template: str, event: WebhookEvent) -> str:
        """Replace every ``{{path}}`` placeholder of ``template``."""
        context = self.build_context(event)
        return PLACEHOLDER_RE.sub(
            lambda match: escape_json_value(resolve_path(context, match.group(1).strip())),
            template,
        )

    @staticmethod
    def build_context(event: WebhookEvent) -> dict[str, Any]:
        """Build the placeholder context for ``event``."""
        return {
            "id": event.id,
            "type": event.type,
            "createdAt": event.created_at,
            "timestamp": iso_timestamp(event.created_at),
            "data": event.to_wire()["data"],
        }

    def validate_template(self, template: WebhookTemplate | Mapping[str, Any]) -> ValidationResult:
        """Validate a template configuration at registration time."""
        if isinstance(template, str):
            if template not in BUILT_IN_TEMPLATE_NAMES:
                return ValidationResult(
                    valid=False,
                    errors=[
                        f'Unknown built-in template: "{template}". '
                        f"Valid options: {', '.join(BUILT_IN_TEMPLATE_NAMES)}"
                    ],
                )
            return ValidationResult(valid=True)

        if isinstance(template, Mapping):
            if template.get("type") != "custom":
                return ValidationResult(valid=False, errors=["Invalid template format"])
            body = template.get("body")
        elif isinstance(template, CustomTemplate):
            body = template.body
        else:
            return ValidationResult(valid=False, errors=["Invalid template format"])

        errors: list[str] = []
        if not body or not isinstance(body, str):
            errors.append("Custom template body is required")
        else:
            if len(body) > MAX_TEMPLATE_BODY:
                errors.append("Template body exceeds 10,000 character limit")
            try:
                json.loads(PLACEHOLDER_RE.sub("test", body))
            except ValueError:
                errors.append("Template does not produce valid JSON")

        return ValidationResult(valid=not errors, errors=errors)

    @staticmethod
    def is_built_in(name: str) -> bool:
        """Return True if ``name`` is a built-in template name."""
        return name in BUILT_IN_TEMPLATE_NAMES

    @staticmethod
    def built_in_names() -> list[str]:
        """Return the built-in template names."""
        return list(BUILT_IN_TEMPLATE_NAMES)

    @staticmethod
    def built_in_options() -> list[dict[str, str]]:
        """Return label/value pairs of built-in templates for UI selection."""
        return [dict(option) for option in BUILT_IN_TEMPLATE_OPTIONS]
