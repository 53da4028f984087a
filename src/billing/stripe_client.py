"""Stripe webhook signature verification and event parsing."""

from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


class StripeWebhookError(ValueError):
    """Raised when webhook payload/signature is invalid."""


@dataclass(frozen=True)
class StripeSignatureData:
    timestamp: int
    signatures: List[str]


@dataclass(frozen=True)
class StripeWebhookEvent:
    event_id: str
    event_type: str
    data_object: Dict[str, Any] = field(default_factory=dict)


def compute_signature(*, payload: bytes, timestamp: int, webhook_secret: str) -> str:
    signed_payload = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    return hmac.new(webhook_secret.encode("utf-8"), signed_payload, digestmod=hashlib.sha256).hexdigest()


def parse_stripe_signature_header(signature_header: str) -> StripeSignatureData:
    timestamp: Optional[int] = None
    signatures: List[str] = []

    for part in signature_header.split(","):
        key, separator, value = part.strip().partition("=")
        if not separator:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError as exc:
                raise StripeWebhookError("Invalid Stripe signature timestamp") from exc
        elif key == "v1":
            signatures.append(value)

    if timestamp is None or not signatures:
        raise StripeWebhookError("Invalid Stripe signature header")
    return StripeSignatureData(timestamp=timestamp, signatures=signatures)


def verify_stripe_signature(
    *,
    payload: bytes,
    signature_header: str,
    webhook_secret: str,
    tolerance_seconds: int = 300,
    now: Optional[datetime] = None,
) -> None:
    if not webhook_secret:
        raise StripeWebhookError("Stripe webhook secret is not configured")

    data = parse_stripe_signature_header(signature_header)
    current_time = now or datetime.now(timezone.utc)
    if abs(int(current_time.timestamp()) - data.timestamp) > tolerance_seconds:
        raise StripeWebhookError("Stripe signature timestamp outside tolerance window")

    expected = compute_signature(payload=payload, timestamp=data.timestamp, webhook_secret=webhook_secret)
    if not any(hmac.compare_digest(expected, candidate) for candidate in data.signatures):
        raise StripeWebhookError("Stripe signature mismatch")


def parse_stripe_event(payload: bytes) -> StripeWebhookEvent:
    try:
        event = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise StripeWebhookError("Invalid Stripe JSON payload") from exc

    if not isinstance(event, dict):
        raise StripeWebhookError("Stripe payload must be a JSON object")
    if not event.get("id") or not event.get("type"):
        raise StripeWebhookError("Stripe payload missing required fields: id/type")

    data = event.get("data") or {}
    data_object = data.get("object") if isinstance(data, dict) else None
    return StripeWebhookEvent(
        event_id=str(event["id"]),
        event_type=str(event["type"]),
        data_object=data_object if isinstance(data_object, dict) else {},
    )


def construct_event(
    *,
    payload: bytes,
    signature_header: str,
    webhook_secret: str,
    tolerance_seconds: int = 300,
) -> StripeWebhookEvent:
    verify_stripe_signature(
        payload=payload,
        signature_header=signature_header,
        webhook_secret=webhook_secret,
        tolerance_seconds=tolerance_seconds,
    )
    return parse_stripe_event(payload)
