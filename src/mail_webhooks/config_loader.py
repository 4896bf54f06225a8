# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration loading for the webhook service.

Settings are read from an INI file (default: ``config.ini``, overridable via
``MWH_CONFIG``) with ``MWH_``-prefixed environment variables as fallbacks,
and returned as plain dataclasses.

Example:
    Configuration file format (config.ini)::

        [webhook]
        enabled = true
        max_retries = 5
        delivery_timeout = 10
        max_retries_per_webhook = 100
        max_headers = 50
        max_header_value_len = 1000
        require_auth_default = false
        retry_interval = 30

        [email_auth]
        enabled = true
        spf = true
        dkim = true
        dmarc = false

        [logging]
        delivery_activity = false

    Loading it::

        settings, email_auth = load_settings("/etc/mail-webhooks/config.ini")

Environment variables (all prefixed with MWH_):
    MWH_CONFIG, MWH_LOG_LEVEL, MWH_ENABLED, MWH_MAX_RETRIES,
    MWH_DELIVERY_TIMEOUT, MWH_MAX_RETRIES_PER_WEBHOOK, MWH_MAX_HEADERS,
    MWH_MAX_HEADER_VALUE_LEN, MWH_REQUIRE_AUTH_DEFAULT, MWH_RETRY_INTERVAL,
    MWH_LOG_DELIVERY_ACTIVITY, MWH_EMAIL_AUTH_ENABLED, MWH_EMAIL_AUTH_SPF,
    MWH_EMAIL_AUTH_DKIM, MWH_EMAIL_AUTH_DMARC
"""

from __future__ import annotations

import configparser
import os
from dataclasses import dataclass
from pathlib import Path

from .logger import get_logger

logger = get_logger("ConfigLoader")

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass
class WebhookSettings:
    """Webhook dispatch and delivery settings."""

    enabled: bool = True
    """Master switch; when false, events are never dispatched."""

    max_retries: int = 5
    """Total delivery attempts per event, the first one included."""

    delivery_timeout: float = 10.0
    """Per-attempt HTTP timeout in seconds."""

    max_retries_per_webhook: int = 100
    """Maximum outstanding scheduled retries for a single webhook."""

    max_headers: int = 50
    """Maximum number of headers copied into an event payload."""

    max_header_value_len: int = 1000
    """Maximum length of a header value copied into an event payload."""

    require_auth_default: bool = False
    """Authentication gate used when a filter does not set requireAuth."""

    retry_interval: float = 30.0
    """Seconds between retry queue sweeps."""

    log_delivery_activity: bool = False
    """Log every delivery outcome at INFO level."""


@dataclass
class EmailAuthConfig:
    """Email authentication checks enforced by the requireAuth gate."""

    enabled: bool = True
    """When false, the gate always passes."""

    spf: bool = True
    """Require SPF pass."""

    dkim: bool = True
    """Require DKIM pass."""

    dmarc: bool = True
    """Require DMARC pass."""


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = str(value).strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    return default


def load_settings(config_path: str | Path | None = None) -> tuple[WebhookSettings, EmailAuthConfig]:
    """Load webhook and email-auth settings from INI file and environment.

    INI values take precedence over environment variables; missing keys fall
    back to the dataclass defaults.

    Args:
        config_path: Path to the INI file. Defaults to ``MWH_CONFIG`` or
            ``config.ini``. A missing file is not an error.

    Returns:
        Tuple of (WebhookSettings, EmailAuthConfig).

    Raises:
        ValueError: If a numeric option cannot be parsed.
    """
    path = Path(config_path or os.getenv("MWH_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    read = parser.read(path)
    if read:
        logger.debug("Loaded configuration from %s", path)

    def get(section: str, option: str, env: str) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return os.getenv(env)

    def get_int(section: str, option: str, env: str, default: int) -> int:
        value = get(section, option, env)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError as exc:
            raise ValueError(f"Invalid integer for {section}.{option}: {value!r}") from exc

    def get_float(section: str, option: str, env: str, default: float) -> float:
        value = get(section, option, env)
        if value is None:
            return default
        try:
            return float(value)
        except ValueError as exc:
            raise ValueError(f"Invalid number for {section}.{option}: {value!r}") from exc

    defaults = WebhookSettings()
    settings = WebhookSettings(
        enabled=_parse_bool(get("webhook", "enabled", "MWH_ENABLED"), defaults.enabled),
        max_retries=get_int("webhook", "max_retries", "MWH_MAX_RETRIES", defaults.max_retries),
        delivery_timeout=get_float(
            "webhook", "delivery_timeout", "MWH_DELIVERY_TIMEOUT", defaults.delivery_timeout
        ),
        max_retries_per_webhook=get_int(
            "webhook",
            "max_retries_per_webhook",
            "MWH_MAX_RETRIES_PER_WEBHOOK",
            defaults.max_retries_per_webhook,
        ),
        max_headers=get_int("webhook", "max_headers", "MWH_MAX_HEADERS", defaults.max_headers),
        max_header_value_len=get_int(
            "webhook", "max_header_value_len", "MWH_MAX_HEADER_VALUE_LEN", defaults.max_header_value_len
        ),
        require_auth_default=_parse_bool(
            get("webhook", "require_auth_default", "MWH_REQUIRE_AUTH_DEFAULT"),
            defaults.require_auth_default,
        ),
        retry_interval=get_float("webhook", "retry_interval", "MWH_RETRY_INTERVAL", defaults.retry_interval),
        log_delivery_activity=_parse_bool(
            get("logging", "delivery_activity", "MWH_LOG_DELIVERY_ACTIVITY"),
            defaults.log_delivery_activity,
        ),
    )

    auth_defaults = EmailAuthConfig()
    email_auth = EmailAuthConfig(
        enabled=_parse_bool(get("email_auth", "enabled", "MWH_EMAIL_AUTH_ENABLED"), auth_defaults.enabled),
        spf=_parse_bool(get("email_auth", "spf", "MWH_EMAIL_AUTH_SPF"), auth_defaults.spf),
        dkim=_parse_bool(get("email_auth", "dkim", "MWH_EMAIL_AUTH_DKIM"), auth_defaults.dkim),
        dmarc=_parse_bool(get("email_auth", "dmarc", "MWH_EMAIL_AUTH_DMARC"), auth_defaults.dmarc),
    )
    return settings, email_auth


__all__ = ["EmailAuthConfig", "WebhookSettings", "load_settings"]
