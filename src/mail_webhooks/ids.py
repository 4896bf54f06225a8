# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prefixed identifier and secret generators."""

from __future__ import annotations

import secrets
import uuid


def _compact_uuid() -> str:
    return uuid.uuid4().hex


def generate_webhook_id() -> str:
    """Generate a unique webhook ID with "whk_" prefix."""
    return f"whk_{_compact_uuid()}"


def generate_webhook_secret() -> str:
    """Generate a signing secret with "whsec_" prefix (32 bytes of entropy)."""
    return f"whsec_{secrets.token_hex(32)}"


def generate_event_id() -> str:
    """Generate a unique event ID with "evt_" prefix."""
    return f"evt_{_compact_uuid()}"


def generate_delivery_id() -> str:
    """Generate a unique delivery ID with "dlv_" prefix."""
    return f"dlv_{_compact_uuid()}"
