"""
Tests for the Stripe webhook endpoint.

WHAT:
    Signature gate, idempotent acknowledgement, and attribution fan-out
    after a newly recorded conversion.

REFERENCES:
    - conversion_ledger/routers/stripe_webhooks.py
"""

import json
from unittest.mock import patch

import httpx
from sqlalchemy.exc import OperationalError

from conversion_ledger.deps import get_routing_table
from conversion_ledger.models import ConversionRecord
from conversion_ledger.tests.helpers import DEFAULT_PIXEL_ID, checkout_event, sign_payload


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_checkout_event_is_recorded(post_webhook, test_db_session):
    response = post_webhook(checkout_event("evt_1", amount=100000, email="a@example.com"))

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "success"

    record = test_db_session.query(ConversionRecord).one()
    assert body["conversionId"] == str(record.id)
    assert (record.amount, record.currency, record.customer_email) == (100000, "jpy", "a@example.com")


def test_redelivery_acknowledged_without_second_row(post_webhook, test_db_session, meta_http):
    first = post_webhook(checkout_event("evt_1"))
    second = post_webhook(checkout_event("evt_1"))

    assert second.status_code == 200
    assert second.json() == {"status": "already_processed", "conversionId": first.json()["conversionId"]}
    assert test_db_session.query(ConversionRecord).count() == 1
    # Attribution fired once, for the first delivery only
    assert len(meta_http.requests) == 1


def test_invalid_signature_rejected_before_processing(post_webhook, test_db_session):
    body = json.dumps(checkout_event("evt_1")).encode("utf-8")

    response = post_webhook(body, signature=sign_payload(body, secret="whsec_wrong"))

    assert response.status_code == 401
    assert test_db_session.query(ConversionRecord).count() == 0


def test_missing_signature_rejected(client):
    response = client.post("/webhooks/stripe", content=b"{}")
    assert response.status_code == 401


def test_signed_garbage_is_bad_request(post_webhook):
    assert post_webhook(b"{not json").status_code == 400


def test_event_without_id_is_bad_request(post_webhook):
    assert post_webhook({"type": "checkout.session.completed"}).status_code == 400


def test_unknown_event_type_ignored(post_webhook, test_db_session, meta_http):
    response = post_webhook({"id": "evt_9", "type": "invoice.paid", "data": {"object": {}}})

    assert response.status_code == 200
    assert response.json() == {"status": "ignored"}
    assert test_db_session.query(ConversionRecord).count() == 0
    assert meta_http.requests == []


def test_recorded_conversion_sent_to_default_pixel(post_webhook, meta_http):
    post_webhook(checkout_event("evt_1", amount=100000))

    assert len(meta_http.requests) == 1
    request = meta_http.requests[0]
    assert f"/{DEFAULT_PIXEL_ID}/events" in request.url.path

    event = json.loads(request.content)["data"][0]
    assert event["event_id"] == "stripe_evt_1"
    assert event["custom_data"]["value"] == "1000.00"
    assert event["custom_data"]["currency"] == "JPY"


def test_campaign_metadata_routes_to_campaign_pixel(post_webhook, meta_http, campaign):
    post_webhook(checkout_event("evt_1", metadata={"campaign_id": "cmp_spring"}))

    assert len(meta_http.requests) == 1
    assert "/111222333444555/events" in meta_http.requests[0].url.path
    assert json.loads(meta_http.requests[0].content)["access_token"] == "EAAB-campaign-token"


def test_attribution_failure_does_not_fail_webhook(post_webhook, meta_http, test_db_session):
    meta_http.handler = lambda request: httpx.Response(500, json={"error": {"message": "down"}})

    response = post_webhook(checkout_event("evt_1"))

    assert response.status_code == 200
    assert response.json()["status"] == "success"
    assert test_db_session.query(ConversionRecord).count() == 1


def test_attribution_skipped_without_destination(post_webhook, meta_http, settings):
    settings.META_PIXEL_ID = None

    response = post_webhook(checkout_event("evt_1"))

    assert response.json()["status"] == "success"
    assert meta_http.requests == []


def test_customer_lookup_failure_returns_500(post_webhook, stripe_http, test_db_session):
    stripe_http.handler = lambda request: httpx.Response(503, json={"error": {"message": "unavailable"}})

    response = post_webhook(checkout_event("evt_1", email=None, customer="cus_1"))

    assert response.status_code == 500
    assert test_db_session.query(ConversionRecord).count() == 0


def test_webhook_does_not_require_admin_key(post_webhook, settings):
    settings.ADMIN_API_KEY = "admin-secret"

    assert post_webhook(checkout_event("evt_1")).status_code == 200


class _BrokenRoutingTable:
    def destinations_for(self, campaign_ids):
        raise OperationalError("SELECT campaign_mappings", {}, Exception("store blip"))


def test_routing_failure_after_commit_still_acknowledges(app, post_webhook, meta_http, test_db_session):
    app.dependency_overrides[get_routing_table] = lambda: _BrokenRoutingTable()

    with patch("conversion_ledger.routers.stripe_webhooks.capture_exception") as captured:
        response = post_webhook(checkout_event("evt_rt"))

    assert response.status_code == 200
    assert response.json()["status"] == "success"
    assert test_db_session.query(ConversionRecord).count() == 1
    assert meta_http.requests == []
    captured.assert_called_once()
