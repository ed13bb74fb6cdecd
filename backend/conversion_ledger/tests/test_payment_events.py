import pytest

from conversion_ledger.exceptions import MalformedEvent
from conversion_ledger.services.payment_events import (
    CheckoutCompleted,
    SubscriptionCreated,
    UnrecognizedEvent,
    campaign_ids_from_metadata,
    parse_event,
)
from conversion_ledger.tests.helpers import checkout_event, subscription_event


def test_parse_recognized_kinds():
    assert isinstance(parse_event(checkout_event()), CheckoutCompleted)
    assert isinstance(parse_event(subscription_event()), SubscriptionCreated)


def test_parse_unknown_kind_is_unrecognized():
    event = parse_event({"id": "evt_x", "type": "invoice.paid", "data": {"object": {"id": "in_1"}}})

    assert isinstance(event, UnrecognizedEvent)
    assert event.event_type == "invoice.paid"


def test_unknown_kind_without_object_still_parses():
    event = parse_event({"id": "evt_x", "type": "ping"})
    assert isinstance(event, UnrecognizedEvent)
    assert event.payload == {}


@pytest.mark.parametrize("raw", [
    {"type": "checkout.session.completed", "data": {"object": {}}},
    {"id": "evt_1", "data": {"object": {}}},
    {"id": "", "type": "checkout.session.completed"},
])
def test_missing_id_or_type_is_malformed(raw):
    with pytest.raises(MalformedEvent):
        parse_event(raw)


def test_recognized_kind_without_object_is_malformed():
    with pytest.raises(MalformedEvent):
        parse_event({"id": "evt_1", "type": "checkout.session.completed", "data": {}})


def test_campaign_ids_from_metadata():
    assert campaign_ids_from_metadata({"campaign_id": "cmp_a"}) == ["cmp_a"]
    assert campaign_ids_from_metadata({"campaign_ids": "cmp_a, cmp_b,,cmp_a"}) == ["cmp_a", "cmp_b"]
    assert campaign_ids_from_metadata({"campaign_ids": "cmp_b", "campaign_id": "cmp_a"}) == ["cmp_b"]
    assert campaign_ids_from_metadata({}) == []
    assert campaign_ids_from_metadata(None) == []


def test_event_exposes_campaign_ids():
    event = parse_event(checkout_event(metadata={"campaign_id": "cmp_spring"}))
    assert event.campaign_ids == ["cmp_spring"]
