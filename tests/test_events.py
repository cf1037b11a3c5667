import pytest
from creditledger.billing.events import (
    InvoiceEvent,
    PaymentIntentEvent,
    SubscriptionEvent,
    UnknownEvent,
    parse_event,
)
from creditledger.errors import ValidationError
from conftest import T0


def test_subscription_event_parsed_with_previous_items(sub_event):
    raw = sub_event("evt_1", previous={"items": {"data": [{"price": {"id": "price_old"}}]}, "status": "trialing"})
    ev = parse_event(raw)
    assert isinstance(ev, SubscriptionEvent)
    assert ev.action == "updated"
    assert ev.subscription.price_id == "price_basic_monthly"
    assert ev.subscription.current_period_start == T0
    assert ev.previous_attributes.has_items is True
    assert ev.previous_attributes.price_id == "price_old"
    assert ev.previous_attributes.status == "trialing"


def test_expanded_customer_object_is_reduced_to_id(sub_event):
    raw = sub_event("evt_1")
    raw["data"]["object"]["customer"] = {"id": "cus_9", "object": "customer"}
    assert parse_event(raw).subscription.customer == "cus_9"


def test_period_falls_back_to_first_item():
    raw = {
        "id": "evt_1",
        "type": "customer.subscription.created",
        "data": {"object": {
            "id": "sub_1", "customer": "cus_1", "status": "active", "metadata": {},
            "items": {"data": [{"price": {"id": "price_basic_monthly"}, "current_period_start": 1767225600}]},
        }},
    }
    assert parse_event(raw).subscription.current_period_start == T0


@pytest.mark.parametrize("raw", [
    {"type": "customer.subscription.created", "data": {}},
    {"id": "evt_1", "data": {}},
    {"id": "", "type": "invoice.paid"},
])
def test_missing_id_or_type_is_a_validation_error(raw):
    with pytest.raises(ValidationError):
        parse_event(raw)


def test_subscription_without_customer_is_rejected():
    raw = {"id": "evt_1", "type": "customer.subscription.updated",
           "data": {"object": {"id": "sub_1", "status": "active"}}}
    with pytest.raises(ValidationError):
        parse_event(raw)


def test_payment_intent_failure_carries_decline_code(pi_event):
    ev = parse_event(pi_event("evt_1", outcome="payment_failed", decline_code="stolen_card"))
    assert isinstance(ev, PaymentIntentEvent)
    assert ev.outcome == "payment_failed"
    assert ev.payment_intent.decline_code == "stolen_card"
    assert ev.payment_intent.is_top_up is True


def test_payment_intent_without_top_up_metadata(pi_event):
    ev = parse_event(pi_event("evt_1", metadata={"order": "42"}))
    assert ev.payment_intent.is_top_up is False


def test_invoice_subscription_from_parent_details():
    raw = {"id": "evt_1", "type": "invoice.paid", "data": {"object": {
        "id": "in_1", "customer": "cus_1", "billing_reason": "subscription_cycle",
        "parent": {"subscription_details": {"subscription": "sub_1"}},
        "period_start": 1767225600, "period_end": 1769904000,
    }}}
    ev = parse_event(raw)
    assert isinstance(ev, InvoiceEvent)
    assert ev.invoice.subscription == "sub_1"
    assert ev.invoice.period_start == T0


def test_unrecognised_type_is_unknown_not_an_error():
    ev = parse_event({"id": "evt_1", "type": "charge.dispute.created", "data": {"object": {}}})
    assert isinstance(ev, UnknownEvent)
    assert ev.type == "charge.dispute.created"
