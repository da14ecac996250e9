from __future__ import annotations
import json
from typing import Any, Dict
import stripe
from flask import current_app
from ..errors import BillingError, SignatureError, ValidationError

DEFAULT_TOLERANCE = 300 # seconds


def verify_event(payload: bytes, sig_header: str, secret: str, tolerance: int = DEFAULT_TOLERANCE) -> Dict[str, Any]:
    """
    Authenticate a raw webhook body and only then parse it.

    The HMAC is recomputed over the exact bytes received; parsing first and
    re-serializing would change them. Stripe's verifier compares in constant
    time and rejects timestamps older than `tolerance`.
    """
    if not secret:
        # misconfiguration, not a bad request: answer 5xx so deliveries are retried
        raise BillingError("webhook secret not configured", code="secret_missing")
    if not sig_header:
        raise SignatureError("missing signature header")

    try:
        body = payload.decode("utf-8") if isinstance(payload, (bytes, bytearray)) else payload
    except UnicodeDecodeError as e:
        raise SignatureError("payload is not UTF-8") from e
    try:
        stripe.WebhookSignature.verify_header(body, sig_header, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        current_app.logger.warning("[security] billing_webhook: signature rejected: %s", e)
        raise SignatureError(str(e)) from e

    try:
        event = json.loads(body)
    except ValueError as e:
        raise ValidationError("payload is not valid JSON") from e
    return validate_event_shape(event)


def validate_event_shape(event: Any) -> Dict[str, Any]:
    if not isinstance(event, dict):
        raise ValidationError("event must be a JSON object")
    if not isinstance(event.get("id"), str) or not event["id"]:
        raise ValidationError("event id missing")
    if not isinstance(event.get("type"), str) or not event["type"]:
        raise ValidationError("event type missing")
    data = event.get("data")
    if not isinstance(data, dict) or not isinstance(data.get("object"), dict):
        raise ValidationError("event data.object missing")
    return event
