"""Attribution fan-out sender.

WHAT:
    Delivers one conversion to every resolved attribution destination.

WHY:
    A conversion tagged with several campaigns reports to several pixels.
    Each send is an isolated attempt: one destination failing must never
    hide another's success, and attribution failures never undo a recorded
    conversion.

HOW:
    All sends run concurrently via asyncio.gather(return_exceptions=True);
    every outcome becomes a DeliveryResult. `dispatch` is the
    fire-and-forget variant run as a background task after ingestion
    commits: it logs failures, reports them to Sentry and never raises.
    There is no automatic retry; Meta deduplicates on event_id, so a manual
    resend is safe.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Sequence

import httpx

from ..models import ConversionRecord
from ..telemetry import capture_exception, capture_message
from .campaign_routing import AttributionDestination
from .conversion_reporting import as_utc
from .meta_capi_service import DEFAULT_API_VERSION, MetaCAPIService

logger = logging.getLogger(__name__)


@dataclass
class AttributionConversion:
    """What gets reported to a destination for one conversion."""
    event_id: str
    amount: int
    currency: str
    email: Optional[str] = None
    phone: Optional[str] = None
    client_ip: Optional[str] = None
    client_user_agent: Optional[str] = None
    event_time: Optional[int] = None
    test_event_code: Optional[str] = None

    @classmethod
    def from_record(cls, record: ConversionRecord) -> "AttributionConversion":
        """Build from a ledger row; event id is derived from the Stripe event id."""
        metadata = record.event_metadata or {}
        details = metadata.get("customer_details") or {}
        event_time = int(as_utc(record.created_at).timestamp()) if record.created_at else None
        return cls(
            event_id=f"stripe_{record.source_event_id}",
            amount=record.amount,
            currency=record.currency,
            email=record.customer_email,
            phone=details.get("phone"),
            event_time=event_time,
        )


@dataclass
class DeliveryResult:
    pixel_id: str
    campaign_id: Optional[str]
    success: bool
    # The default destination stood in for campaign_id
    used_default: bool = False
    error: Optional[str] = None
    events_received: Optional[int] = None
    fbtrace_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class AttributionFanout:
    """Concurrent, failure-isolated CAPI sender.

    Usage:
        ```python
        fanout = AttributionFanout(api_version="v18.0", timeout=10.0)
        results = await fanout.send(destinations, conversion)
        ```
    """

    def __init__(
        self,
        api_version: str = DEFAULT_API_VERSION,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_version = api_version
        self.timeout = timeout
        self.transport = transport

    def _service_for(self, destination: AttributionDestination) -> MetaCAPIService:
        return MetaCAPIService(
            pixel_id=destination.pixel_id,
            access_token=destination.access_token,
            api_version=self.api_version,
            timeout=self.timeout,
            transport=self.transport,
        )

    async def _send_one(
        self,
        destination: AttributionDestination,
        conversion: AttributionConversion,
    ) -> Dict[str, Any]:
        return await self._service_for(destination).send_purchase_event(
            event_id=conversion.event_id,
            amount=conversion.amount,
            currency=conversion.currency,
            email=conversion.email,
            phone=conversion.phone,
            client_ip=conversion.client_ip,
            client_user_agent=conversion.client_user_agent,
            event_time=conversion.event_time,
            test_event_code=conversion.test_event_code,
        )

    async def send(
        self,
        destinations: Sequence[AttributionDestination],
        conversion: AttributionConversion,
    ) -> List[DeliveryResult]:
        """Send to every destination; one result per destination, in order."""
        if not destinations:
            return []

        outcomes = await asyncio.gather(
            *(self._send_one(d, conversion) for d in destinations),
            return_exceptions=True,
        )

        results = []
        for destination, outcome in zip(destinations, outcomes):
            if isinstance(outcome, BaseException):
                results.append(DeliveryResult(
                    pixel_id=destination.pixel_id,
                    campaign_id=destination.campaign_id,
                    used_default=destination.is_default,
                    success=False,
                    error=str(outcome) or outcome.__class__.__name__,
                ))
                continue
            results.append(DeliveryResult(
                pixel_id=destination.pixel_id,
                campaign_id=destination.campaign_id,
                used_default=destination.is_default,
                success=True,
                events_received=outcome.get("events_received"),
                fbtrace_id=outcome.get("fbtrace_id"),
            ))

        succeeded = sum(1 for r in results if r.success)
        logger.info(
            f"[FANOUT] Event {conversion.event_id}: {succeeded}/{len(results)} destination(s) succeeded"
        )
        return results

    async def dispatch(
        self,
        destinations: Sequence[AttributionDestination],
        conversion: AttributionConversion,
    ) -> None:
        """Fire-and-forget send. Failures are logged and reported, never raised."""
        try:
            results = await self.send(destinations, conversion)
        except Exception as e:
            logger.exception(f"[FANOUT] Dispatch failed for event {conversion.event_id}: {e}")
            capture_exception(e, extra={"event_id": conversion.event_id})
            return

        for result in results:
            if result.success:
                continue
            logger.error(
                f"[FANOUT] Delivery to pixel {result.pixel_id} failed: {result.error}",
                extra={"event_id": conversion.event_id, "campaign_id": result.campaign_id},
            )
            capture_message(
                f"Attribution delivery failed: {result.error}",
                level="error",
                extra={
                    "event_id": conversion.event_id,
                    "pixel_id": result.pixel_id,
                    "campaign_id": result.campaign_id,
                },
            )
