"""
Tests for Stripe webhook signature verification.

WHAT:
    Validate that only bodies signed with the endpoint secret are parsed,
    and that signature checks run on the raw bytes.

REFERENCES:
    - conversion_ledger/services/stripe_signature.py
"""

import json
import time

import pytest

from conversion_ledger.exceptions import InvalidSignature, MalformedEvent
from conversion_ledger.services.stripe_signature import verify_stripe_event
from conversion_ledger.tests.helpers import WEBHOOK_SECRET, checkout_event, sign_payload


def _body(event=None) -> bytes:
    return json.dumps(event or checkout_event()).encode("utf-8")


def test_valid_signature_returns_parsed_event():
    body = _body()
    event = verify_stripe_event(body, sign_payload(body), WEBHOOK_SECRET)

    assert event["id"] == "evt_1"
    assert event["type"] == "checkout.session.completed"


def test_signature_covers_exact_bytes():
    body = _body()
    header = sign_payload(body)
    # Same JSON, different whitespace: the HMAC no longer matches
    reformatted = json.dumps(json.loads(body), indent=2).encode("utf-8")

    with pytest.raises(InvalidSignature):
        verify_stripe_event(reformatted, header, WEBHOOK_SECRET)


def test_tampered_body_rejected():
    body = _body()
    header = sign_payload(body)
    tampered = body.replace(b"100000", b"999999")

    with pytest.raises(InvalidSignature):
        verify_stripe_event(tampered, header, WEBHOOK_SECRET)


def test_wrong_secret_rejected():
    body = _body()
    with pytest.raises(InvalidSignature):
        verify_stripe_event(body, sign_payload(body, secret="whsec_other"), WEBHOOK_SECRET)


def test_missing_header_rejected():
    with pytest.raises(InvalidSignature):
        verify_stripe_event(_body(), None, WEBHOOK_SECRET)


def test_missing_secret_rejected():
    body = _body()
    with pytest.raises(InvalidSignature):
        verify_stripe_event(body, sign_payload(body), None)


def test_stale_timestamp_rejected():
    body = _body()
    header = sign_payload(body, timestamp=int(time.time()) - 3600)

    with pytest.raises(InvalidSignature):
        verify_stripe_event(body, header, WEBHOOK_SECRET, tolerance=300)


def test_signed_non_json_body_is_malformed():
    body = b"not json at all"
    with pytest.raises(MalformedEvent):
        verify_stripe_event(body, sign_payload(body), WEBHOOK_SECRET)


def test_signed_json_array_is_malformed():
    body = b'[{"id": "evt_1"}]'
    with pytest.raises(MalformedEvent):
        verify_stripe_event(body, sign_payload(body), WEBHOOK_SECRET)
