import hashlib
import json

import httpx
import pytest

from conversion_ledger.exceptions import MetaCAPIError
from conversion_ledger.services.meta_capi_service import MetaCAPIService, minor_units_to_value
from conversion_ledger.tests.helpers import RecordingTransport, meta_ok


def _sha256(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def _service(transport: RecordingTransport) -> MetaCAPIService:
    return MetaCAPIService(
        pixel_id="123456",
        access_token="EAAB-token",
        api_version="v18.0",
        transport=transport.transport,
    )


def test_minor_units_to_value():
    assert minor_units_to_value(100000) == "1000.00"
    assert minor_units_to_value(1999) == "19.99"
    assert minor_units_to_value(1) == "0.01"
    assert minor_units_to_value(0) == "0.00"


@pytest.mark.asyncio
async def test_purchase_payload_hashes_pii():
    transport = RecordingTransport(meta_ok)

    result = await _service(transport).send_purchase_event(
        event_id="stripe_evt_1",
        amount=100000,
        currency="jpy",
        email="  A@Example.com ",
        phone="+81-90-1234-5678",
        client_ip="203.0.113.7",
        client_user_agent="pytest",
        event_time=1760000000,
        test_event_code="TEST123",
    )

    assert result["events_received"] == 1
    request = transport.requests[0]
    assert str(request.url) == "https://graph.facebook.com/v18.0/123456/events"

    body = json.loads(request.content)
    assert body["access_token"] == "EAAB-token"
    assert body["test_event_code"] == "TEST123"

    event = body["data"][0]
    assert event["event_name"] == "Purchase"
    assert event["event_id"] == "stripe_evt_1"
    assert event["event_time"] == 1760000000
    assert event["action_source"] == "website"
    assert event["user_data"]["em"] == [_sha256("a@example.com")]
    assert event["user_data"]["ph"] == [_sha256("819012345678")]
    assert event["user_data"]["client_ip_address"] == "203.0.113.7"
    assert event["custom_data"] == {
        "content_type": "product",
        "content_ids": ["stripe_purchase"],
        "value": "1000.00",
        "currency": "JPY",
    }
    # Raw PII never leaves the process
    assert b"Example.com" not in request.content
    assert b"1234-5678" not in request.content


@pytest.mark.asyncio
async def test_missing_pii_is_omitted():
    transport = RecordingTransport(meta_ok)

    await _service(transport).send_purchase_event(event_id="e", amount=100, currency="usd")

    user_data = json.loads(transport.requests[0].content)["data"][0]["user_data"]
    assert "em" not in user_data
    assert "ph" not in user_data


@pytest.mark.asyncio
async def test_api_error_raises():
    transport = RecordingTransport(
        lambda request: httpx.Response(400, json={"error": {"message": "Invalid OAuth access token"}})
    )

    with pytest.raises(MetaCAPIError, match="Invalid OAuth access token"):
        await _service(transport).send_purchase_event(event_id="e", amount=100, currency="usd")


@pytest.mark.asyncio
async def test_network_error_raises():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(MetaCAPIError, match="Network error"):
        await _service(RecordingTransport(handler)).send_purchase_event(
            event_id="e", amount=100, currency="usd"
        )
