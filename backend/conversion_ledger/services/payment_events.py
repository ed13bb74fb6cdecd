"""Typed view over verified Stripe webhook events.

WHAT:
    Turns a verified event dict into one variant of a small tagged union:
    CheckoutCompleted, SubscriptionCreated or UnrecognizedEvent.

WHY:
    Ingestion dispatches once over the variant with an explicit default
    ("ignored") arm. Adding a kind means adding a variant and a handler.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..exceptions import MalformedEvent

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_CREATED = "customer.subscription.created"

RECOGNIZED_EVENT_TYPES = (CHECKOUT_COMPLETED, SUBSCRIPTION_CREATED)


@dataclass(frozen=True)
class PaymentEvent:
    """Common shape: the event id, its type and the `data.object` payload."""
    event_id: str
    event_type: str
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def campaign_ids(self) -> List[str]:
        return campaign_ids_from_metadata(self.payload.get("metadata"))


class CheckoutCompleted(PaymentEvent):
    """checkout.session.completed; payload is a Checkout Session."""


class SubscriptionCreated(PaymentEvent):
    """customer.subscription.created; payload is a Subscription."""


class UnrecognizedEvent(PaymentEvent):
    """Any other event type. Acknowledged, never recorded."""


_VARIANTS = {
    CHECKOUT_COMPLETED: CheckoutCompleted,
    SUBSCRIPTION_CREATED: SubscriptionCreated,
}


def parse_event(raw: Dict[str, Any]) -> PaymentEvent:
    """Build the typed event from raw webhook JSON.

    Raises:
        MalformedEvent: id/type missing, or a recognized kind without an object
    """
    event_id = raw.get("id")
    event_type = raw.get("type")
    if not isinstance(event_id, str) or not event_id:
        raise MalformedEvent("Event has no id")
    if not isinstance(event_type, str) or not event_type:
        raise MalformedEvent("Event has no type")

    variant = _VARIANTS.get(event_type)
    data = raw.get("data")
    obj = data.get("object") if isinstance(data, dict) else None

    if variant is None:
        return UnrecognizedEvent(
            event_id=event_id,
            event_type=event_type,
            payload=obj if isinstance(obj, dict) else {},
        )

    if not isinstance(obj, dict):
        raise MalformedEvent(f"Event {event_id} ({event_type}) has no data.object")

    return variant(event_id=event_id, event_type=event_type, payload=obj)


def campaign_ids_from_metadata(metadata: Optional[Dict[str, Any]]) -> List[str]:
    """Campaign ids carried in Stripe object metadata.

    Accepts `campaign_ids` or `campaign_id`, each possibly comma-separated.
    Order is preserved, duplicates and blanks dropped.
    """
    if not isinstance(metadata, dict):
        return []

    raw = metadata.get("campaign_ids") or metadata.get("campaign_id")
    if not raw or not isinstance(raw, str):
        return []

    ids: List[str] = []
    for part in raw.split(","):
        campaign_id = part.strip()
        if campaign_id and campaign_id not in ids:
            ids.append(campaign_id)
    return ids
