"""Conversion ledger reporting API.

ENDPOINTS:
    GET  /conversions            - Paginated listing with summary
    GET  /conversions/export     - CSV export (same filters, unpaginated)
    POST /conversions/reconcile  - Replay recent Stripe events into the ledger

All endpoints are admin endpoints (X-Admin-Key when ADMIN_API_KEY is set).
"""

import logging
import math
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from fastapi.responses import Response
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..database import get_db
from ..deps import (
    Settings,
    get_attribution_fanout,
    get_routing_table,
    get_settings,
    get_stripe_client,
    require_admin,
)
from ..exceptions import StripeAPIError
from ..schemas import (
    ConversionListResponse,
    ConversionOut,
    ErrorResponse,
    LedgerSummaryOut,
    PaginationMeta,
    ReconcileFailure,
    ReconcileResponse,
)
from ..services.attribution_fanout import AttributionFanout
from ..services.campaign_routing import CampaignRoutingTable
from ..services.conversion_ingestion import ConversionIngestionService
from ..services.conversion_reporting import ConversionFilters, ConversionReportService
from ..services.stripe_client import StripeClient
from .stripe_webhooks import schedule_attribution

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/conversions",
    tags=["Conversions"],
    dependencies=[Depends(require_admin)],
    responses={
        400: {"model": ErrorResponse, "description": "Invalid filter"},
        401: {"description": "Unauthorized"},
    },
)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 1000


def _filters(
    email: Optional[str] = Query(None, description="Case-insensitive substring of the customer email"),
    start_date: Optional[str] = Query(None, alias="startDate", description="ISO date or datetime, inclusive"),
    end_date: Optional[str] = Query(None, alias="endDate", description="ISO date or datetime, inclusive"),
) -> ConversionFilters:
    try:
        return ConversionFilters.parse(email=email, start_date=start_date, end_date=end_date)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("", response_model=ConversionListResponse, response_model_by_alias=True)
def list_conversions(
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    filters: ConversionFilters = Depends(_filters),
    db: Session = Depends(get_db),
):
    """One page of conversions, newest first, plus totals over the whole filter."""
    reports = ConversionReportService(db)
    rows, total = reports.list(filters, page=page, page_size=limit)
    summary = reports.summarize(filters)

    return ConversionListResponse(
        conversions=[ConversionOut.from_record(r) for r in rows],
        pagination=PaginationMeta(
            page=page,
            limit=limit,
            total=total,
            total_pages=math.ceil(total / limit) if total else 0,
        ),
        summary=LedgerSummaryOut(
            total_amount=summary.total_amount,
            total_conversions=summary.total_conversions,
        ),
    )


@router.get(
    "/export",
    response_class=Response,
    responses={200: {"content": {"text/csv": {}}, "description": "CSV file"}},
)
def export_conversions(
    filters: ConversionFilters = Depends(_filters),
    db: Session = Depends(get_db),
):
    """Download every matching conversion as CSV."""
    try:
        content = ConversionReportService(db).export_csv(filters)
    except SQLAlchemyError as e:
        logger.error(f"[REPORTING] Export failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to export conversions",
        )

    filename = f"conversions_{datetime.now(timezone.utc).date().isoformat()}.csv"
    return Response(
        content=content,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post(
    "/reconcile",
    response_model=ReconcileResponse,
    response_model_by_alias=True,
    response_model_exclude_none=True,
    responses={
        502: {"model": ErrorResponse, "description": "Stripe API failure"},
        503: {"model": ErrorResponse, "description": "Stripe not configured"},
    },
)
async def reconcile_conversions(
    background_tasks: BackgroundTasks,
    limit: int = Query(100, ge=1, le=100),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    stripe_client: StripeClient = Depends(get_stripe_client),
    fanout: AttributionFanout = Depends(get_attribution_fanout),
    routing: CampaignRoutingTable = Depends(get_routing_table),
):
    """Ingest recent Stripe events whose webhook may have been missed.

    Per-event failures are reported under `failed`; the sweep continues.
    A store failure ends the sweep early and is reported under `aborted`;
    conversions recorded before it are still sent for attribution.
    """
    if not settings.STRIPE_SECRET_KEY:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Stripe is not configured",
        )

    service = ConversionIngestionService(db, stripe_client, settings.DEFAULT_CURRENCY)
    try:
        report = await service.reconcile(limit=limit)
    except StripeAPIError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    for result in report.recorded:
        schedule_attribution(background_tasks, routing, fanout, result)

    return ReconcileResponse(
        fetched=report.fetched,
        recorded=len(report.recorded),
        already_processed=report.already_processed,
        ignored=report.ignored,
        failed=[ReconcileFailure(event_id=f["eventId"], error=f["error"]) for f in report.failed],
        aborted=report.aborted,
    )
