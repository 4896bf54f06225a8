"""Logging utilities for the webhook service.

This module provides a centralized logging helper. The actual logging setup
(level, handlers, format) is configured via ``logging.basicConfig()`` in the
entry point to avoid duplicate handlers.

Example:
    Typical usage in a module::

        from mail_webhooks.logger import get_logger

        logger = get_logger("WebhookDelivery")
        logger.info("Delivery completed")
"""

import logging

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "MailWebhooks") -> logging.Logger:
    """Retrieve a logger instance.

    Handlers and formatters are not configured here; that responsibility lies
    with the application entry point.

    Args:
        name: The logger name. Defaults to "MailWebhooks".

    Returns:
        A ``logging.Logger`` instance bound to the given name.
    """
    return logging.getLogger(name)


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging for command-line entry points.

    Args:
        level: Level name such as "DEBUG" or "INFO". Unknown names fall back
            to INFO.
    """
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        force=True,
    )
