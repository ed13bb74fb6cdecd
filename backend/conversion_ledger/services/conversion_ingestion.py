"""Conversion ingestion pipeline.

WHAT:
    Consumes verified payment events and writes at most one ConversionRecord
    per upstream event id.

WHY:
    Stripe delivers webhooks at least once and may deliver the same event
    concurrently. A second row would double-count revenue and double-fire
    attribution, so the event id is the idempotency key.

HOW:
    1. Dispatch on the event variant (unrecognized kinds are ignored)
    2. Existence check by source_event_id (fast path for redeliveries)
    3. Extract a normalized record (may resolve the customer via Stripe)
    4. Insert + commit; a unique-constraint violation on commit means a
       concurrent delivery won the race and is reported as already processed

    The existence check is an optimization. The unique constraint on
    conversions.source_event_id is the correctness guarantee.

REFERENCES:
    - https://docs.stripe.com/webhooks#handle-duplicate-events
    - conversion_ledger/models.py:ConversionRecord
"""

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..exceptions import CustomerLookupError, LedgerWriteError, MalformedEvent
from ..models import ConversionRecord, UNKNOWN_CUSTOMER_EMAIL
from .payment_events import (
    RECOGNIZED_EVENT_TYPES,
    CheckoutCompleted,
    PaymentEvent,
    SubscriptionCreated,
    parse_event,
)
from .stripe_client import StripeClient

logger = logging.getLogger(__name__)


class IngestionStatus(str, enum.Enum):
    recorded = "recorded"
    already_processed = "already_processed"
    ignored = "ignored"


@dataclass
class IngestionResult:
    status: IngestionStatus
    event_id: str
    event_type: str
    record: Optional[ConversionRecord] = None
    campaign_ids: List[str] = field(default_factory=list)


@dataclass
class ReconciliationReport:
    fetched: int = 0
    recorded: List[IngestionResult] = field(default_factory=list)
    already_processed: int = 0
    ignored: int = 0
    failed: List[Dict[str, str]] = field(default_factory=list)
    # Set when a store failure stopped the sweep early
    aborted: Optional[str] = None


def _non_negative_int(value: Any, label: str) -> int:
    """Coerce a provider amount to a non-negative int (0 when unusable)."""
    if isinstance(value, bool) or not isinstance(value, int):
        return 0
    if value < 0:
        logger.warning(f"[INGEST] Negative {label} {value} clamped to 0")
        return 0
    return value


def _customer_id(reference: Any) -> Optional[str]:
    # Stripe sends either "cus_..." or an expanded Customer object
    if isinstance(reference, str):
        return reference
    if isinstance(reference, dict):
        return reference.get("id")
    return None


class ConversionIngestionService:
    """Idempotent writer for the conversion ledger.

    Usage:
        ```python
        service = ConversionIngestionService(db, stripe_client)
        result = await service.ingest(parse_event(verified_event))
        if result.status == IngestionStatus.recorded:
            ...
        ```
    """

    def __init__(
        self,
        db: Session,
        stripe_client: Optional[StripeClient] = None,
        default_currency: str = "jpy",
    ):
        self.db = db
        self.stripe_client = stripe_client
        self.default_currency = default_currency.lower()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def ingest(self, event: PaymentEvent) -> IngestionResult:
        """Record one verified event exactly once.

        Raises:
            CustomerLookupError: Customer reference could not be resolved
            LedgerWriteError: The store failed for a reason other than a duplicate
        """
        if isinstance(event, CheckoutCompleted):
            extract = self._from_checkout
        elif isinstance(event, SubscriptionCreated):
            extract = self._from_subscription
        else:
            logger.info(f"[INGEST] Ignoring event {event.event_id} of type {event.event_type}")
            return IngestionResult(IngestionStatus.ignored, event.event_id, event.event_type)

        if self._find(event.event_id) is not None:
            logger.info(f"[INGEST] Conversion already exists for event {event.event_id}")
            return self._already_processed(event)

        fields = await extract(event)
        return self._insert(event, fields)

    async def reconcile(self, limit: int = 100) -> ReconciliationReport:
        """Replay recent recognized Stripe events through `ingest`.

        WHAT: Catches events whose webhook delivery never succeeded
        WHY: Plural processing must not abort on one bad event

        Events whose customer cannot be resolved or that are malformed are
        logged and reported under `failed`; the sweep continues. A store
        failure stops the sweep, but the report still carries everything
        recorded before it so those conversions get their attribution.
        """
        if self.stripe_client is None:
            raise CustomerLookupError("Stripe client not configured")

        raw_events = await self.stripe_client.list_events(RECOGNIZED_EVENT_TYPES, limit=limit)
        report = ReconciliationReport(fetched=len(raw_events))

        for raw in raw_events:
            event_id = raw.get("id", "unknown")
            try:
                result = await self.ingest(parse_event(raw))
            except (CustomerLookupError, MalformedEvent) as e:
                logger.error(f"[INGEST] Reconciliation skipped event {event_id}: {e}")
                report.failed.append({"eventId": str(event_id), "error": str(e)})
                continue
            except LedgerWriteError as e:
                logger.error(f"[INGEST] Reconciliation stopped at event {event_id}: {e}")
                report.failed.append({"eventId": str(event_id), "error": str(e)})
                report.aborted = str(e)
                break

            if result.status == IngestionStatus.recorded:
                report.recorded.append(result)
            elif result.status == IngestionStatus.already_processed:
                report.already_processed += 1
            else:
                report.ignored += 1

        logger.info(
            f"[INGEST] Reconciliation complete: {len(report.recorded)} recorded, "
            f"{report.already_processed} already processed, {len(report.failed)} failed"
        )
        return report

    # -------------------------------------------------------------------------
    # Store access
    # -------------------------------------------------------------------------

    def _find(self, event_id: str) -> Optional[ConversionRecord]:
        return (
            self.db.query(ConversionRecord)
            .filter(ConversionRecord.source_event_id == event_id)
            .first()
        )

    def _already_processed(self, event: PaymentEvent) -> IngestionResult:
        return IngestionResult(
            IngestionStatus.already_processed,
            event.event_id,
            event.event_type,
            record=self._find(event.event_id),
        )

    def _insert(self, event: PaymentEvent, fields: Dict[str, Any]) -> IngestionResult:
        record = ConversionRecord(source_event_id=event.event_id, **fields)
        self.db.add(record)

        try:
            self.db.commit()
        except IntegrityError as e:
            # A concurrent delivery committed first; the constraint is the
            # canonical duplicate signal.
            self.db.rollback()
            if self._find(event.event_id) is None:
                logger.error(f"[INGEST] Integrity error for event {event.event_id}: {e}")
                raise LedgerWriteError(f"Failed to record event {event.event_id}") from e
            logger.info(f"[INGEST] Lost insert race for event {event.event_id}, already processed")
            return self._already_processed(event)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"[INGEST] Commit failed for event {event.event_id}: {e}")
            raise LedgerWriteError(f"Failed to record event {event.event_id}") from e

        self.db.refresh(record)
        logger.info(
            "[INGEST] Conversion created",
            extra={
                "conversion_id": str(record.id),
                "event_id": event.event_id,
                "event_type": event.event_type,
                "amount": record.amount,
                "currency": record.currency,
            },
        )
        return IngestionResult(
            IngestionStatus.recorded,
            event.event_id,
            event.event_type,
            record=record,
            campaign_ids=event.campaign_ids,
        )

    # -------------------------------------------------------------------------
    # Extraction (one per recognized kind)
    # -------------------------------------------------------------------------

    async def _resolve_email(self, embedded_email: Optional[str], customer_ref: Any) -> str:
        """Embedded email if present, else the customer's email, else the sentinel."""
        if embedded_email:
            return embedded_email

        if isinstance(customer_ref, dict) and customer_ref.get("email"):
            return customer_ref["email"]

        customer_id = _customer_id(customer_ref)
        if not customer_id or self.stripe_client is None:
            return UNKNOWN_CUSTOMER_EMAIL

        customer = await self.stripe_client.retrieve_customer(customer_id)
        if not customer:
            return UNKNOWN_CUSTOMER_EMAIL
        return customer.get("email") or UNKNOWN_CUSTOMER_EMAIL

    def _currency(self, obj: Dict[str, Any]) -> str:
        currency = obj.get("currency")
        if not isinstance(currency, str) or not currency:
            return self.default_currency
        return currency.lower()

    async def _from_checkout(self, event: CheckoutCompleted) -> Dict[str, Any]:
        session = event.payload
        details = session.get("customer_details") or {}
        customer_ref = session.get("customer")

        email = await self._resolve_email(
            details.get("email") or session.get("customer_email"),
            customer_ref,
        )

        customer_details = None
        if details:
            address = details.get("address")
            customer_details = {
                "email": details.get("email"),
                "name": details.get("name"),
                "phone": details.get("phone"),
                "address": {
                    "city": address.get("city"),
                    "country": address.get("country"),
                    "line1": address.get("line1"),
                    "line2": address.get("line2"),
                    "postal_code": address.get("postal_code"),
                    "state": address.get("state"),
                } if isinstance(address, dict) else None,
            }

        return {
            "customer_email": email,
            "amount": _non_negative_int(session.get("amount_total"), "amount_total"),
            "currency": self._currency(session),
            "status": "completed",
            "event_metadata": {
                "event_type": event.event_type,
                "session_id": session.get("id"),
                "customer_id": _customer_id(customer_ref),
                "payment_status": session.get("payment_status"),
                "customer_details": customer_details,
                "campaign_ids": event.campaign_ids,
            },
        }

    async def _from_subscription(self, event: SubscriptionCreated) -> Dict[str, Any]:
        subscription = event.payload
        customer_ref = subscription.get("customer")
        email = await self._resolve_email(None, customer_ref)

        items = (subscription.get("items") or {}).get("data") or []
        # A subscription may bundle several priced items: the conversion
        # amount is the sum of their unit prices.
        amount = sum(
            _non_negative_int((item.get("price") or {}).get("unit_amount"), "unit_amount")
            for item in items
        )

        first_item = items[0] if items else {}
        first_price = first_item.get("price") or {}
        recurring = first_price.get("recurring") or {}

        return {
            "customer_email": email,
            "amount": amount,
            "currency": self._currency(subscription),
            "status": subscription.get("status") or "completed",
            "event_metadata": {
                "event_type": event.event_type,
                "subscription_id": subscription.get("id"),
                "customer_id": _customer_id(customer_ref),
                "status": subscription.get("status"),
                # Newer API versions moved the period onto subscription items
                "current_period_start": subscription.get("current_period_start")
                or first_item.get("current_period_start"),
                "current_period_end": subscription.get("current_period_end")
                or first_item.get("current_period_end"),
                "plan_id": first_price.get("id"),
                "plan_name": first_price.get("nickname"),
                "interval": recurring.get("interval"),
                "interval_count": recurring.get("interval_count"),
                "item_count": len(items),
                "trial_end": subscription.get("trial_end"),
                "cancel_at_period_end": subscription.get("cancel_at_period_end"),
                "created": subscription.get("created"),
                "start_date": subscription.get("start_date"),
                "campaign_ids": event.campaign_ids,
            },
        }
