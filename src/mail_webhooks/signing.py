# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""HMAC-SHA256 signing of webhook deliveries.

Every delivery carries an ``X-Signature`` header of the form
``sha256=<hex>``, computed over ``"<X-Timestamp>.<raw body>"`` with the
webhook's signing secret. Receivers recompute the digest with their copy of
the secret; during a rotation grace period the previous secret is accepted
too.

Example:
    Verifying an incoming delivery on the receiving side::

        from mail_webhooks.signing import verify_signature

        ok = verify_signature(
            secret,
            request.headers["X-Timestamp"],
            raw_body,
            request.headers["X-Signature"],
        )
"""

from __future__ import annotations

import hashlib
import hmac
from datetime import datetime, timezone

SIGNATURE_PREFIX = "sha256="


def signing_payload(timestamp: int | str, body: str) -> str:
    """Return the exact string that is signed for a delivery."""
    return f"{timestamp}.{body}"


def generate_signature(payload: str, secret: str) -> str:
    """Compute the hex HMAC-SHA256 digest of ``payload`` keyed by ``secret``."""
    return hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()


def sign(timestamp: int | str, body: str, secret: str) -> str:
    """Return the ``X-Signature`` header value for a delivery."""
    return f"{SIGNATURE_PREFIX}{generate_signature(signing_payload(timestamp, body), secret)}"


def verify_signature(
    secret: str,
    timestamp: int | str,
    body: str,
    signature: str,
    previous_secret: str | None = None,
    previous_secret_expires_at: datetime | None = None,
    now: datetime | None = None,
) -> bool:
    """Check a received signature against the current or previous secret.

    Args:
        secret: Current signing secret.
        timestamp: Value of the ``X-Timestamp`` header.
        body: Raw request body, exactly as received.
        signature: Value of the ``X-Signature`` header, with or without the
            ``sha256=`` prefix.
        previous_secret: Secret replaced by the last rotation, if any.
        previous_secret_expires_at: End of the grace window for
            ``previous_secret``. None means the previous secret is not accepted.
        now: Reference time, defaults to the current UTC time.

    Returns:
        True if the signature matches an acceptable secret.
    """
    received = signature[len(SIGNATURE_PREFIX):] if signature.startswith(SIGNATURE_PREFIX) else signature
    payload = signing_payload(timestamp, body)

    if hmac.compare_digest(generate_signature(payload, secret), received):
        return True

    if previous_secret and previous_secret_expires_at is not None:
        current = now or datetime.now(timezone.utc)
        if current < previous_secret_expires_at:
            return hmac.compare_digest(generate_signature(payload, previous_secret), received)
    return False
