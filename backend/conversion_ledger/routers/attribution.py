"""Attribution test-send and configuration status.

WHAT:
    Lets an operator fire a synthetic Purchase event at a campaign's
    destination(s) or the default pixel and see each delivery's outcome.

WHY:
    Verifies pixel/token pairs end to end before real conversions depend on
    them. Test sends go to Meta's Test Events tab when a test_event_code is
    supplied or configured.
"""

import logging
import time
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ..deps import (
    Settings,
    get_attribution_fanout,
    get_routing_table,
    get_settings,
    require_admin,
)
from ..schemas import (
    AttributionConfigResponse,
    AttributionTestRequest,
    AttributionTestResponse,
    DeliveryResultOut,
    ErrorResponse,
    preview_pixel_id,
)
from ..services.attribution_fanout import AttributionConversion, AttributionFanout
from ..services.campaign_routing import CampaignRoutingTable

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/attribution",
    tags=["Attribution"],
    dependencies=[Depends(require_admin)],
    responses={401: {"description": "Unauthorized"}},
)

TEST_EMAIL = "test@example.com"
TEST_PHONE = "+81-90-1234-5678"
TEST_AMOUNT = 1000


def client_ip_from(request: Request) -> Optional[str]:
    """First X-Forwarded-For hop, then X-Real-IP, then the peer address."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else None


@router.post(
    "/test",
    response_model=AttributionTestResponse,
    response_model_by_alias=True,
    responses={400: {"model": ErrorResponse, "description": "No destination configured"}},
)
async def send_test_conversion(
    request: Request,
    payload: Optional[AttributionTestRequest] = None,
    settings: Settings = Depends(get_settings),
    routing: CampaignRoutingTable = Depends(get_routing_table),
    fanout: AttributionFanout = Depends(get_attribution_fanout),
):
    """Send a synthetic conversion and report per-destination results."""
    payload = payload or AttributionTestRequest()

    campaign_ids = list(payload.campaign_ids or [])
    if payload.campaign_id and payload.campaign_id not in campaign_ids:
        campaign_ids.insert(0, payload.campaign_id)

    if campaign_ids:
        destinations = routing.destinations_for(campaign_ids)
        prefix = "test_campaign"
    else:
        default = routing.resolve_default()
        destinations = [default] if default else []
        prefix = "test_default"

    if not destinations:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No attribution destination configured",
        )

    conversion = AttributionConversion(
        event_id=f"{prefix}_{int(time.time() * 1000)}",
        amount=payload.amount if payload.amount is not None else TEST_AMOUNT,
        currency=(payload.currency or settings.DEFAULT_CURRENCY).lower(),
        email=payload.email or TEST_EMAIL,
        phone=payload.phone or TEST_PHONE,
        client_ip=client_ip_from(request),
        client_user_agent=request.headers.get("User-Agent"),
        test_event_code=payload.test_event_code or settings.META_TEST_EVENT_CODE,
    )

    logger.info(
        f"[FANOUT] Test send {conversion.event_id} to {len(destinations)} destination(s)",
        extra={"campaign_ids": campaign_ids, "test_mode": bool(conversion.test_event_code)},
    )
    results = await fanout.send(destinations, conversion)
    succeeded = sum(1 for r in results if r.success)

    return AttributionTestResponse(
        success=succeeded == len(results),
        event_id=conversion.event_id,
        results=[DeliveryResultOut(**r.to_dict()) for r in results],
        message=f"{succeeded}/{len(results)} destination(s) accepted the test event",
    )


@router.get("/config", response_model=AttributionConfigResponse, response_model_by_alias=True)
def attribution_config(settings: Settings = Depends(get_settings)):
    """Whether the default destination is configured. Secrets are never returned."""
    return AttributionConfigResponse(
        configured=bool(settings.META_PIXEL_ID and settings.META_ACCESS_TOKEN),
        pixel_id_preview=preview_pixel_id(settings.META_PIXEL_ID),
        has_access_token=bool(settings.META_ACCESS_TOKEN),
        test_event_code_configured=bool(settings.META_TEST_EVENT_CODE),
        api_version=settings.META_GRAPH_API_VERSION,
    )
