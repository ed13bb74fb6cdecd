"""Stripe webhook signature verification.

WHAT:
    Authenticates an inbound webhook body against the endpoint's signing
    secret and only then parses it.

WHY:
    - Unverified input must never reach the ingestion pipeline
    - The signature covers the exact bytes Stripe sent; verifying after
      JSON parsing and re-serialization would change whitespace/key order
      and break the HMAC

HOW:
    Stripe-Signature header format: "t=<unix ts>,v1=<hex hmac>[,v1=...]".
    The signed payload is "<t>.<raw body>" (HMAC-SHA256 with the secret).
    The Stripe SDK checks every v1 signature in constant time and rejects
    timestamps older than the tolerance (replay protection).

REFERENCES:
    - https://docs.stripe.com/webhooks#verify-events
"""

import json
import logging
from typing import Any, Dict, Optional

import stripe

from ..exceptions import InvalidSignature, MalformedEvent

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300


def verify_stripe_event(
    payload: bytes,
    signature_header: Optional[str],
    secret: Optional[str],
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
) -> Dict[str, Any]:
    """Verify a raw webhook body and return the parsed event.

    Args:
        payload: Raw request body bytes, exactly as received
        signature_header: Stripe-Signature header value
        secret: Endpoint signing secret (whsec_...)
        tolerance: Maximum age of the signed timestamp in seconds

    Returns:
        The event as a plain dict (raw JSON, not an SDK object)

    Raises:
        InvalidSignature: Missing header/secret, bad signature or stale timestamp
        MalformedEvent: Body verified but is not a JSON object
    """
    if not secret:
        logger.error("[STRIPE_WEBHOOK] STRIPE_WEBHOOK_SECRET not configured")
        raise InvalidSignature("Webhook secret not configured")

    if not signature_header:
        logger.warning("[STRIPE_WEBHOOK] Missing Stripe-Signature header")
        raise InvalidSignature("Stripe signature is missing")

    try:
        body_text = payload.decode("utf-8")
    except UnicodeDecodeError as e:
        raise InvalidSignature("Webhook body is not valid UTF-8") from e

    try:
        stripe.WebhookSignature.verify_header(body_text, signature_header, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        logger.warning(f"[STRIPE_WEBHOOK] Invalid signature: {e}")
        raise InvalidSignature("Invalid signature") from e

    # Only now is the body trusted enough to parse
    try:
        event = json.loads(body_text)
    except ValueError as e:
        raise MalformedEvent("Invalid JSON payload") from e

    if not isinstance(event, dict):
        raise MalformedEvent("Webhook payload is not a JSON object")

    return event
