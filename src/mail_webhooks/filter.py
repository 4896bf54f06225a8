# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Content-based filtering of webhook events.

A webhook may carry a :class:`~mail_webhooks.models.FilterConfig`: an ordered
list of rules combined with ``all`` (AND) or ``any`` (OR) semantics, plus an
optional email authentication requirement. The filter decides whether an
event is delivered to that webhook at all.

Supported fields:
    - ``subject``, ``from.address``, ``from.name``
    - ``to.address``, ``to.name`` (first recipient only)
    - ``body.text``, ``body.html`` (first 5 KB only)
    - ``header.<Name>`` (case-insensitive header lookup)

Supported operators:
    ``equals``, ``contains``, ``starts_with``, ``ends_with``, ``domain``,
    ``regex``, ``exists``.

Example:
    Matching an event against a filter::

        webhook_filter = WebhookFilter(EmailAuthConfig(), require_auth_default=False)
        config = FilterConfig(
            mode="all",
            rules=[FilterRule(field="from.address", operator="domain", value="example.com")],
        )
        if webhook_filter.matches(event, config):
            ...
"""

from __future__ import annotations

import re
from collections import OrderedDict
from collections.abc import Mapping
from typing import Any

from .config_loader import EmailAuthConfig
from .logger import get_logger
from .models import FilterConfig, FilterRule, ValidationResult, WebhookEvent

FILTER_OPERATORS = ("equals", "contains", "starts_with", "ends_with", "regex", "domain", "exists")

VALID_FILTER_FIELDS = (
    "subject",
    "from.address",
    "from.name",
    "to.address",
    "to.name",
    "body.text",
    "body.html",
)

BODY_FIELDS = {"body.text": "textBody", "body.html": "htmlBody"}
HEADER_PREFIX = "header."
AUTH_CHECKS = ("spf", "dkim", "dmarc")

BODY_LIMIT = 5 * 1024
MAX_RULES = 10
REGEX_CACHE_SIZE = 1000


class WebhookFilter:
    """Evaluates filter rules against webhook events.

    Compiled regular expressions are cached by ``pattern:case-sensitivity``
    key; the cache is bounded and evicts its oldest entry when full.

    Attributes:
        email_auth: Globally enabled authentication checks.
        require_auth_default: Gate value used when a filter leaves
            ``require_auth`` unset.
    """

    def __init__(
        self,
        email_auth: EmailAuthConfig | None = None,
        require_auth_default: bool = False,
        logger=None,
    ):
        self.email_auth = email_auth
        self.require_auth_default = require_auth_default
        self.logger = logger or get_logger("WebhookFilter")
        self._regex_cache: OrderedDict[str, re.Pattern[str]] = OrderedDict()

    def matches(self, event: WebhookEvent, filter_config: FilterConfig | None = None) -> bool:
        """Return True if ``event`` passes ``filter_config``.

        The authentication gate is evaluated first; an event without a filter
        or with an empty rule list matches once the gate has passed.
        """
        require_auth = filter_config.require_auth if filter_config is not None else None
        if require_auth is None:
            require_auth = self.require_auth_default

        if require_auth and not self._auth_passes(event):
            return False

        if filter_config is None or not filter_config.rules:
            return True

        results = (self._evaluate_rule(rule, event) for rule in filter_config.rules)
        if filter_config.mode == "all":
            return all(results)
        return any(results)

    def _auth_passes(self, event: WebhookEvent) -> bool:
        config = self.email_auth
        if config is None or not config.enabled:
            return True

        auth = event.data.get("auth") if isinstance(event.data, Mapping) else None
        for check in AUTH_CHECKS:
            if not getattr(config, check):
                continue
            if not isinstance(auth, Mapping) or auth.get(check) != "pass":
                return False
        return True

    def _evaluate_rule(self, rule: FilterRule, event: WebhookEvent) -> bool:
        value = extract_field_value(rule.field, event.data)

        if rule.operator == "exists":
            return value is not None

        if value is None:
            return False

        return self._apply_operator(rule.operator, value, rule.value, rule.case_sensitive)

    def _apply_operator(self, operator: str, field_value: str, filter_value: str, case_sensitive: bool) -> bool:
        a = field_value if case_sensitive else field_value.lower()
        b = filter_value if case_sensitive else filter_value.lower()

        match operator:
            case "equals":
                return a == b
            case "contains":
                return b in a
            case "starts_with":
                return a.startswith(b)
            case "ends_with":
                return a.endswith(b)
            case "domain":
                domain = b[1:] if b.startswith("@") else b
                return a.endswith(f"@{domain}") or f".{domain}" in a
            case "regex":
                return self._match_regex(filter_value, field_value, case_sensitive)
            case _:
                self.logger.warning("Unknown filter operator: %s", operator)
                return False

    def _match_regex(self, pattern: str, value: str, case_sensitive: bool) -> bool:
        cache_key = f"{pattern}:{str(case_sensitive).lower()}"
        regex = self._regex_cache.get(cache_key)
        if regex is None:
            try:
                regex = re.compile(pattern, 0 if case_sensitive else re.IGNORECASE)
            except re.error:
                self.logger.warning("Invalid regex pattern: %s", pattern)
                return False
            self._regex_cache[cache_key] = regex
            if len(self._regex_cache) > REGEX_CACHE_SIZE:
                self._regex_cache.popitem(last=False)
        return regex.search(value) is not None


def extract_field_value(field: str, data: Mapping[str, Any] | None) -> str | None:
    """Extract the string value of a filter field from an event payload.

    Returns None when the field is absent or not a string.
    """
    if not isinstance(data, Mapping):
        return None

    if field.startswith(HEADER_PREFIX):
        headers = data.get("headers")
        if not isinstance(headers, Mapping):
            return None
        return _lookup_header(headers, field[len(HEADER_PREFIX):])

    if field in BODY_FIELDS:
        body = data.get(BODY_FIELDS[field])
        return body[:BODY_LIMIT] if isinstance(body, str) else None

    if field in ("to.address", "to.name"):
        recipients = data.get("to")
        if not isinstance(recipients, list) or not recipients:
            return None
        first = recipients[0]
        if not isinstance(first, Mapping):
            return None
        value = first.get("address" if field == "to.address" else "name")
        return value if isinstance(value, str) else None

    value: Any = data
    for part in field.split("."):
        if not isinstance(value, Mapping):
            return None
        value = value.get(part)
    return value if isinstance(value, str) else None


def _lookup_header(headers: Mapping[str, Any], name: str) -> str | None:
    for key in (name, name.lower()):
        value = headers.get(key)
        if value is not None:
            return value if isinstance(value, str) else None
    wanted = name.lower()
    for key, value in headers.items():
        if isinstance(key, str) and key.lower() == wanted:
            return value if isinstance(value, str) else None
    return None


def is_valid_field(field: str) -> bool:
    """Return True for a known field or a well-formed ``header.<Name>``."""
    if field in VALID_FILTER_FIELDS:
        return True
    return field.startswith(HEADER_PREFIX) and len(field) > len(HEADER_PREFIX)


def is_valid_operator(operator: str) -> bool:
    """Return True if ``operator`` is a supported filter operator."""
    return operator in FILTER_OPERATORS


def validate_filter(filter_config: FilterConfig | Mapping[str, Any]) -> ValidationResult:
    """Validate a filter configuration at registration time.

    Args:
        filter_config: A FilterConfig or its raw mapping form.

    Returns:
        ValidationResult with blocking ``errors`` and non-blocking ``warnings``
        (body filtering and regex on body content are slow for large emails).
    """
    if isinstance(filter_config, Mapping):
        if not isinstance(filter_config.get("rules"), list):
            return ValidationResult(valid=False, errors=["Filter rules array is required"])
        filter_config = FilterConfig.model_validate(filter_config)

    errors: list[str] = []
    warnings: list[str] = []

    if len(filter_config.rules) > MAX_RULES:
        errors.append(f"Maximum {MAX_RULES} filter rules allowed per webhook")

    if filter_config.mode not in ("all", "any"):
        errors.append("Filter mode must be 'all' or 'any'")

    for index, rule in enumerate(filter_config.rules, start=1):
        prefix = f"Rule {index}"

        if not is_valid_field(rule.field):
            errors.append(f"{prefix}: Invalid filter field '{rule.field}'")

        if not is_valid_operator(rule.operator):
            errors.append(f"{prefix}: Invalid filter operator '{rule.operator}'")

        if rule.operator == "regex":
            try:
                re.compile(rule.value)
            except re.error:
                errors.append(f"{prefix}: Invalid regex pattern '{rule.value}'")

        if rule.field in BODY_FIELDS:
            warnings.append(f"{prefix}: Body filtering is limited to first 5KB for performance")
            if rule.operator == "regex":
                warnings.append(f"{prefix}: Regex on body content may be slow for large emails")

        if rule.operator != "exists" and not rule.value:
            errors.append(f"{prefix}: Filter value is required for '{rule.operator}' operator")

    return ValidationResult(valid=not errors, errors=errors, warnings=warnings)
