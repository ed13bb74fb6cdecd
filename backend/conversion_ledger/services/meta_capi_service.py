"""Meta Conversions API (CAPI) client for ledger conversions.

WHAT:
    Delivers one Purchase event per recorded conversion to a Meta pixel.

WHY:
    - Browser pixels miss purchases completed on Stripe-hosted pages
    - Meta drops repeats of an event_id, so resending a conversion is harmless

HOW:
    POST {META_GRAPH_BASE_URL}/{version}/{pixel_id}/events with the access
    token in the body. Email and phone are normalized and SHA-256 hashed
    here; nothing unhashed is sent or logged. Amounts are stored in minor
    units and sent as a two-decimal major-unit string.

REFERENCES:
    - https://developers.facebook.com/docs/marketing-api/conversions-api
    - https://developers.facebook.com/docs/marketing-api/conversions-api/parameters/customer-information-parameters
"""

import hashlib
import logging
import time
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

import httpx

from ..exceptions import MetaCAPIError

logger = logging.getLogger(__name__)

META_GRAPH_BASE_URL = "https://graph.facebook.com"
DEFAULT_API_VERSION = "v18.0"


def minor_units_to_value(amount: int) -> str:
    """1000 -> "10.00"; Meta expects the major-unit value."""
    value = (Decimal(amount) / Decimal(100)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return f"{value:.2f}"


def _sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        message = body["error"].get("message")
        if message:
            return message
    return response.text or f"HTTP {response.status_code}"


class MetaCAPIService:
    """Sends Purchase events to a single pixel.

    One instance per (pixel, token) pair; the fan-out builds a fresh one
    for every destination.

        capi = MetaCAPIService(pixel_id="123456", access_token="EAAB...")
        await capi.send_purchase_event(
            event_id="stripe_evt_123", amount=100000, currency="jpy",
            email="customer@example.com",
        )
    """

    def __init__(
        self,
        pixel_id: str,
        access_token: str,
        api_version: str = DEFAULT_API_VERSION,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.pixel_id = pixel_id
        self.access_token = access_token
        self.timeout = timeout
        self.transport = transport
        self.events_url = f"{META_GRAPH_BASE_URL}/{api_version}/{pixel_id}/events"

    async def send_purchase_event(
        self,
        event_id: str,
        amount: int,
        currency: str,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        client_ip: Optional[str] = None,
        client_user_agent: Optional[str] = None,
        event_time: Optional[int] = None,
        test_event_code: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Deliver one Purchase event and return Meta's response body.

        ``amount`` is in minor units. ``event_time`` defaults to now.
        ``test_event_code`` sends the event to Events Manager's Test Events tab.

        Raises:
            MetaCAPIError: rejected by Meta or unreachable
        """
        event = {
            "event_name": "Purchase",
            "event_time": event_time if event_time is not None else int(time.time()),
            "event_id": event_id,
            "action_source": "website",
            "user_data": self._user_data(email, phone, client_ip, client_user_agent),
            "custom_data": {
                "content_type": "product",
                "content_ids": ["stripe_purchase"],
                "value": minor_units_to_value(amount),
                "currency": currency.upper(),
            },
        }
        return await self._post([event], test_event_code)

    @staticmethod
    def _user_data(
        email: Optional[str],
        phone: Optional[str],
        client_ip: Optional[str],
        client_user_agent: Optional[str],
    ) -> Dict[str, Any]:
        user_data: Dict[str, Any] = {}

        normalized_email = (email or "").strip().lower()
        if normalized_email:
            user_data["em"] = [_sha256_hex(normalized_email)]

        # "+81-90-1234-5678" -> "819012345678"
        digits = "".join(ch for ch in (phone or "") if ch.isdigit())
        if digits:
            user_data["ph"] = [_sha256_hex(digits)]

        if client_ip:
            user_data["client_ip_address"] = client_ip
        if client_user_agent:
            user_data["client_user_agent"] = client_user_agent
        return user_data

    async def _post(self, events: List[Dict[str, Any]], test_event_code: Optional[str]) -> Dict[str, Any]:
        body: Dict[str, Any] = {"data": events, "access_token": self.access_token}
        if test_event_code:
            body["test_event_code"] = test_event_code

        # Presence flags only
        logger.info(
            f"[META_CAPI] Posting {len(events)} event(s) to pixel {self.pixel_id}",
            extra={
                "event_ids": [event["event_id"] for event in events],
                "has_email": any("em" in event["user_data"] for event in events),
                "has_phone": any("ph" in event["user_data"] for event in events),
                "test_mode": bool(test_event_code),
            },
        )

        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
                response = await client.post(self.events_url, json=body)
        except httpx.RequestError as e:
            logger.error(f"[META_CAPI] Pixel {self.pixel_id} unreachable: {e}")
            raise MetaCAPIError(f"Network error sending to Meta CAPI: {e}") from e

        if response.status_code != 200:
            message = _error_message(response)
            logger.error(
                f"[META_CAPI] Pixel {self.pixel_id} rejected event(s): {response.status_code} {message}"
            )
            raise MetaCAPIError(f"Meta CAPI error: {message}")

        result = response.json()
        logger.info(
            f"[META_CAPI] Accepted {result.get('events_received', 0)} event(s)",
            extra={"pixel_id": self.pixel_id, "fbtrace_id": result.get("fbtrace_id", "")},
        )
        return result
