"""Stripe webhook endpoint.

WHAT:
    Receives signed Stripe events and records conversions in the ledger.

WHY:
    checkout.session.completed and customer.subscription.created are the
    revenue events the ledger tracks. Everything else is acknowledged and
    ignored so Stripe stops retrying it.

FLOW:
    1. Verify Stripe-Signature over the raw body (401 on failure)
    2. Parse into a typed event (400 when malformed)
    3. Ingest idempotently (success / already_processed / ignored)
    4. After commit, schedule attribution fan-out as a background task

    A customer lookup or store failure returns 500 so Stripe redelivers;
    idempotency makes the redelivery safe.

REFERENCES:
    - https://docs.stripe.com/webhooks
    - conversion_ledger/services/conversion_ingestion.py
"""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from ..database import get_db
from ..deps import (
    Settings,
    get_attribution_fanout,
    get_routing_table,
    get_settings,
    get_stripe_client,
)
from ..exceptions import CustomerLookupError, InvalidSignature, LedgerWriteError, MalformedEvent
from ..schemas import ErrorResponse, WebhookResponse
from ..services.attribution_fanout import AttributionConversion, AttributionFanout
from ..services.campaign_routing import CampaignRoutingTable
from ..services.conversion_ingestion import (
    ConversionIngestionService,
    IngestionResult,
    IngestionStatus,
)
from ..services.payment_events import parse_event
from ..services.stripe_client import StripeClient
from ..services.stripe_signature import verify_stripe_event
from ..telemetry import capture_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/stripe", tags=["Stripe Webhooks"])


def schedule_attribution(
    background_tasks: BackgroundTasks,
    routing: CampaignRoutingTable,
    fanout: AttributionFanout,
    result: IngestionResult,
) -> int:
    """Queue fan-out for a newly recorded conversion.

    Returns the number of destinations scheduled (0 means skipped). The
    conversion is already committed here, so a routing failure is logged and
    reported but never reaches the caller.
    """
    if result.status != IngestionStatus.recorded or result.record is None:
        return 0

    try:
        destinations = routing.destinations_for(result.campaign_ids)
    except Exception as e:
        logger.error(f"[FANOUT] Routing lookup failed for {result.event_id}, attribution skipped: {e}")
        capture_exception(e, extra={"event_id": result.event_id, "campaign_ids": result.campaign_ids})
        return 0

    if not destinations:
        logger.info(f"[STRIPE_WEBHOOK] No attribution destination for {result.event_id}, skipping")
        return 0

    background_tasks.add_task(
        fanout.dispatch,
        destinations,
        AttributionConversion.from_record(result.record),
    )
    return len(destinations)


@router.post(
    "",
    response_model=WebhookResponse,
    response_model_exclude_none=True,
    response_model_by_alias=True,
    responses={
        400: {"model": ErrorResponse, "description": "Malformed event"},
        401: {"model": ErrorResponse, "description": "Invalid signature"},
        500: {"model": ErrorResponse, "description": "Processing failed, Stripe will retry"},
    },
)
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    stripe_client: StripeClient = Depends(get_stripe_client),
    fanout: AttributionFanout = Depends(get_attribution_fanout),
    routing: CampaignRoutingTable = Depends(get_routing_table),
):
    """Handle one Stripe webhook delivery."""
    body = await request.body()

    try:
        raw_event = verify_stripe_event(
            body,
            request.headers.get("Stripe-Signature"),
            settings.STRIPE_WEBHOOK_SECRET,
            tolerance=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
        )
        event = parse_event(raw_event)
    except InvalidSignature as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
    except MalformedEvent as e:
        logger.warning(f"[STRIPE_WEBHOOK] Malformed event: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    logger.info(f"[STRIPE_WEBHOOK] Received {event.event_type} ({event.event_id})")

    service = ConversionIngestionService(db, stripe_client, settings.DEFAULT_CURRENCY)
    try:
        result = await service.ingest(event)
    except CustomerLookupError as e:
        logger.error(f"[STRIPE_WEBHOOK] Customer lookup failed for {event.event_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to resolve customer",
        )
    except LedgerWriteError as e:
        logger.error(f"[STRIPE_WEBHOOK] {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to record conversion",
        )

    if result.status == IngestionStatus.ignored:
        return WebhookResponse(status="ignored")

    conversion_id = result.record.id if result.record is not None else None

    if result.status == IngestionStatus.already_processed:
        return WebhookResponse(status="already_processed", conversion_id=conversion_id)

    schedule_attribution(background_tasks, routing, fanout, result)
    return WebhookResponse(status="success", conversion_id=conversion_id)
