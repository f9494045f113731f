"""Authenticity checks for inbound provider webhooks.

Both verifiers work on the raw request body. Anything that does not verify,
or does not parse once verified, raises InvalidSignature and is never applied.
"""

import hashlib
import hmac
import json

import stripe

from reconciler.core.exceptions import InvalidSignature


def _load_json(payload: bytes) -> dict:
    try:
        body = json.loads(payload)
    except ValueError as exc:
        raise InvalidSignature("Invalid payload") from exc
    if not isinstance(body, dict):
        raise InvalidSignature("Invalid payload")
    return body


def _parse_stripe_header(signature_header: str) -> dict[str, list[str]]:
    parts: dict[str, list[str]] = {}
    for item in signature_header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep or not value:
            continue
        parts.setdefault(key, []).append(value)
    return parts


def verify_stripe(payload: bytes, signature_header: str | None, secret: str) -> dict:
    """Verify a Stripe-Signature header and return the parsed event.

    The header is checked for a timestamp and at least one v1 signature
    before handing off to the SDK, which enforces the HMAC and its replay
    tolerance. The event is returned as plain JSON, not a StripeObject.

    Raises:
        InvalidSignature: missing/malformed header, bad signature or bad payload
    """
    if not signature_header:
        raise InvalidSignature("Missing Stripe-Signature header")

    parts = _parse_stripe_header(signature_header)
    if "t" not in parts or "v1" not in parts:
        raise InvalidSignature("Malformed Stripe-Signature header")

    try:
        stripe.WebhookSignature.verify_header(
            payload.decode("utf-8"),
            signature_header,
            secret,
            tolerance=stripe.Webhook.DEFAULT_TOLERANCE,
        )
    except stripe.SignatureVerificationError as exc:
        raise InvalidSignature("Invalid signature") from exc
    except UnicodeDecodeError as exc:
        raise InvalidSignature("Invalid payload") from exc

    return _load_json(payload)


def github_signature(payload: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_github(payload: bytes, signature_header: str | None, secret: str) -> dict:
    """Verify an X-Hub-Signature-256 header and return the parsed payload."""
    if not signature_header or not signature_header.startswith("sha256="):
        raise InvalidSignature("Missing or malformed X-Hub-Signature-256 header")

    if not hmac.compare_digest(github_signature(payload, secret), signature_header):
        raise InvalidSignature("Invalid signature")

    return _load_json(payload)
