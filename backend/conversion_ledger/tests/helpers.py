"""Test doubles and payload builders shared by the ledger tests."""

import hashlib
import hmac
import json
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx
from sqlalchemy.orm import Session

from conversion_ledger.models import ConversionRecord

WEBHOOK_SECRET = "whsec_test_secret"
STRIPE_API_URL = "https://stripe.test"
DEFAULT_PIXEL_ID = "999000111222333"
DEFAULT_ACCESS_TOKEN = "EAAB-default-token"


# ============================================================================
# HTTP doubles
# ============================================================================

class RecordingTransport:
    """httpx MockTransport handler that records requests.

    Assign `handler` to change responses; defaults to 200 `{}`.
    """

    def __init__(self, handler: Optional[Callable[[httpx.Request], httpx.Response]] = None):
        self.handler = handler or (lambda request: httpx.Response(200, json={}))
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def json_bodies(self) -> List[Dict[str, Any]]:
        return [json.loads(r.content) for r in self.requests]


def meta_ok(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"events_received": 1, "fbtrace_id": "trace-123"})


# ============================================================================
# Stripe payload helpers
# ============================================================================

def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header for `payload`."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.".encode("utf-8") + payload
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def checkout_event(
    event_id: str = "evt_1",
    amount: Optional[int] = 100000,
    email: Optional[str] = "a@example.com",
    currency: Optional[str] = "jpy",
    customer: Any = None,
    metadata: Optional[Dict[str, str]] = None,
    phone: Optional[str] = None,
) -> Dict[str, Any]:
    session: Dict[str, Any] = {
        "id": f"cs_{event_id}",
        "object": "checkout.session",
        "amount_total": amount,
        "currency": currency,
        "customer": customer,
        "payment_status": "paid",
        "metadata": metadata or {},
    }
    if email is not None or phone is not None:
        session["customer_details"] = {
            "email": email,
            "name": "Test Customer",
            "phone": phone,
            "address": {"country": "JP", "postal_code": "100-0001"},
        }
    return {
        "id": event_id,
        "object": "event",
        "type": "checkout.session.completed",
        "data": {"object": session},
    }


def subscription_event(
    event_id: str = "evt_sub_1",
    customer: Any = "cus_1",
    unit_amounts: Optional[List[int]] = None,
    currency: str = "usd",
    status: str = "active",
    metadata: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    unit_amounts = [1500] if unit_amounts is None else unit_amounts
    items = [
        {
            "id": f"si_{i}",
            "price": {
                "id": f"price_{i}",
                "nickname": f"Plan {i}",
                "unit_amount": amount,
                "recurring": {"interval": "month", "interval_count": 1},
            },
            "current_period_start": 1760000000,
            "current_period_end": 1762600000,
        }
        for i, amount in enumerate(unit_amounts)
    ]
    return {
        "id": event_id,
        "object": "event",
        "type": "customer.subscription.created",
        "data": {
            "object": {
                "id": f"sub_{event_id}",
                "object": "subscription",
                "customer": customer,
                "currency": currency,
                "status": status,
                "items": {"data": items},
                "metadata": metadata or {},
                "cancel_at_period_end": False,
                "created": 1760000000,
                "start_date": 1760000000,
            }
        },
    }


def make_record(
    db: Session,
    amount: int = 1000,
    email: str = "buyer@example.com",
    created_at: Optional[datetime] = None,
    currency: str = "jpy",
) -> ConversionRecord:
    record = ConversionRecord(
        source_event_id=f"evt_{uuid.uuid4().hex}",
        customer_email=email,
        amount=amount,
        currency=currency,
        status="completed",
        event_metadata={"event_type": "checkout.session.completed"},
        created_at=created_at or datetime.now(timezone.utc),
    )
    db.add(record)
    db.commit()
    return record


