# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Signed inbound callbacks from the card processor.

The ``Stripe-Signature`` header carries ``t=<unix ts>,v1=<hex hmac>``; the
signature is HMAC-SHA256 of ``"<t>.<raw body>"`` under the endpoint secret.
Unsigned, badly signed or stale events are rejected before anything else
looks at them.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from typing import Any

from ..core.exceptions import AuthorizationError, ValidationError
from ..core.models import InboundEvent

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Stripe-Signature"

# Card events that affect escrow funding
HANDLED_EVENT_TYPES = frozenset(
    {
        "payment_intent.amount_capturable_updated",
        "payment_intent.succeeded",
        "payment_intent.payment_failed",
        "payment_intent.canceled",
    }
)


class WebhookSignatureError(AuthorizationError):
    """The callback is unsigned, badly signed, or outside the tolerance window."""

    code = "WEBHOOK_SIGNATURE_INVALID"


def compute_signature(payload: bytes, timestamp: int, secret: str) -> str:
    signed = f"{timestamp}.".encode() + payload
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


def sign_header(payload: bytes, secret: str, timestamp: int | None = None) -> str:
    """Build a signature header value (used by tests and local tooling)."""
    ts = int(time.time()) if timestamp is None else timestamp
    return f"t={ts},v1={compute_signature(payload, ts, secret)}"


def verify_signature(
    payload: bytes,
    header: str | None,
    secret: str,
    tolerance_seconds: int = 300,
    now: float | None = None,
) -> None:
    """Authenticate a callback body against its signature header.

    Raises:
        WebhookSignatureError: On any authentication failure.
    """
    if not secret:
        raise WebhookSignatureError("Webhook secret is not configured")
    if not header:
        raise WebhookSignatureError("Missing webhook signature")

    timestamp: int | None = None
    signatures: list[str] = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise WebhookSignatureError("Malformed webhook timestamp")
        elif key == "v1":
            signatures.append(value)

    if timestamp is None or not signatures:
        raise WebhookSignatureError("Malformed webhook signature header")

    current = time.time() if now is None else now
    if abs(current - timestamp) > tolerance_seconds:
        raise WebhookSignatureError("Webhook timestamp outside tolerance window")

    expected = compute_signature(payload, timestamp, secret)
    if not any(hmac.compare_digest(expected, sig) for sig in signatures):
        raise WebhookSignatureError("Webhook signature mismatch")


def parse_card_event(payload: bytes) -> InboundEvent:
    """Turn an authenticated card callback body into a queue entry."""
    try:
        event: dict[str, Any] = json.loads(payload)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("Webhook body is not valid JSON")

    event_id = event.get("id")
    event_type = event.get("type")
    if not event_id or not event_type:
        raise ValidationError("Webhook event is missing id or type")

    obj = (event.get("data") or {}).get("object") or {}
    metadata = obj.get("metadata") or {}
    return InboundEvent(
        id=f"card:{event_id}",
        provider="card",
        event_type=event_type,
        payload=obj,
        bounty_id=metadata.get("bounty_id"),
        reference=obj.get("id"),
    )
