"""Strict parse of verified processor events into a closed set of variants."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Tuple, Union

from creditledger.errors import ValidationError
from creditledger.utils.helpers import from_epoch, object_id, safe_int

SUBSCRIPTION_ACTIONS = ("created", "updated", "deleted")
TOP_UP_METADATA = ("top_up_key", "top_up_amount", "user_id")


@dataclass(frozen=True)
class SubscriptionItemSnapshot:
    id: Optional[str]
    price_id: str
    quantity: int = 1


@dataclass(frozen=True)
class SubscriptionSnapshot:
    id: str
    customer: str
    status: str
    metadata: Dict[str, str]
    items: Tuple[SubscriptionItemSnapshot, ...]
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None

    @property
    def price_id(self) -> Optional[str]:
        return self.items[0].price_id if self.items else None

    @property
    def cancelled_as_duplicate(self) -> bool:
        return str(self.metadata.get("cancelled_as_duplicate", "")).lower() == "true"


@dataclass(frozen=True)
class PreviousAttributes:
    """The subset of `previous_attributes` the reconciler cares about."""

    status: Optional[str] = None
    has_items: bool = False
    price_id: Optional[str] = None
    current_period_start: Optional[datetime] = None


@dataclass(frozen=True)
class PaymentIntentSnapshot:
    id: str
    customer: Optional[str]
    amount: int
    currency: str
    status: str
    metadata: Dict[str, str]
    payment_method: Optional[str] = None
    decline_code: Optional[str] = None

    @property
    def is_top_up(self) -> bool:
        return all(self.metadata.get(k) for k in TOP_UP_METADATA)


@dataclass(frozen=True)
class InvoiceSnapshot:
    id: str
    customer: Optional[str]
    subscription: Optional[str]
    billing_reason: Optional[str]
    period_start: Optional[datetime]
    period_end: Optional[datetime]


@dataclass(frozen=True)
class SubscriptionEvent:
    id: str
    type: str
    action: str
    subscription: SubscriptionSnapshot
    previous_attributes: Optional[PreviousAttributes] = None


@dataclass(frozen=True)
class PaymentIntentEvent:
    id: str
    type: str
    outcome: str
    payment_intent: PaymentIntentSnapshot


@dataclass(frozen=True)
class InvoiceEvent:
    id: str
    type: str
    invoice: InvoiceSnapshot


@dataclass(frozen=True)
class UnknownEvent:
    id: str
    type: str
    payload: Dict[str, Any] = field(default_factory=dict, compare=False)


Event = Union[SubscriptionEvent, PaymentIntentEvent, InvoiceEvent, UnknownEvent]


def to_plain(obj: Any) -> Any:
    # stripe.StripeObject -> dict
    if hasattr(obj, "to_dict_recursive"):
        return obj.to_dict_recursive()
    if hasattr(obj, "to_dict") and not isinstance(obj, dict):
        return obj.to_dict()
    return obj


def _metadata(raw: Any) -> Dict[str, str]:
    return {str(k): "" if v is None else str(v) for k, v in (raw or {}).items()}


def _items(raw: Any) -> Tuple[SubscriptionItemSnapshot, ...]:
    out = []
    for item in ((raw or {}).get("data") or []):
        price_id = object_id(item.get("price"))
        if not price_id:
            continue
        out.append(SubscriptionItemSnapshot(id=item.get("id"), price_id=price_id, quantity=safe_int(item.get("quantity"), 1)))
    return tuple(out)


def _period(obj: Dict[str, Any], name: str) -> Optional[datetime]:
    # Newer API versions moved the billing period onto the subscription items
    value = obj.get(name)
    if value is None:
        data = (obj.get("items") or {}).get("data") or []
        if data:
            value = data[0].get(name)
    return from_epoch(value)


def parse_subscription(obj: Dict[str, Any]) -> SubscriptionSnapshot:
    sub_id = obj.get("id")
    customer = object_id(obj.get("customer"))
    status = obj.get("status")
    if not sub_id or not customer or not status:
        raise ValidationError("Subscription object requires id, customer and status")
    return SubscriptionSnapshot(
        id=sub_id,
        customer=customer,
        status=status,
        metadata=_metadata(obj.get("metadata")),
        items=_items(obj.get("items")),
        current_period_start=_period(obj, "current_period_start"),
        current_period_end=_period(obj, "current_period_end"),
        cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
        canceled_at=from_epoch(obj.get("canceled_at")),
    )


def parse_previous_attributes(raw: Optional[Dict[str, Any]]) -> Optional[PreviousAttributes]:
    if not raw:
        return None
    has_items = "items" in raw and raw.get("items") is not None
    prev_items = _items(raw.get("items")) if has_items else ()
    return PreviousAttributes(
        status=raw.get("status"),
        has_items=has_items,
        price_id=prev_items[0].price_id if prev_items else None,
        current_period_start=_period(raw, "current_period_start"),
    )


def parse_payment_intent(obj: Dict[str, Any]) -> PaymentIntentSnapshot:
    if not obj.get("id"):
        raise ValidationError("PaymentIntent object requires an id")
    last_error = obj.get("last_payment_error") or {}
    return PaymentIntentSnapshot(
        id=obj["id"],
        customer=object_id(obj.get("customer")),
        amount=safe_int(obj.get("amount"), 0),
        currency=(obj.get("currency") or "usd").lower(),
        status=obj.get("status") or "",
        metadata=_metadata(obj.get("metadata")),
        payment_method=object_id(obj.get("payment_method")) or object_id(last_error.get("payment_method")),
        decline_code=last_error.get("decline_code") or last_error.get("code"),
    )


def parse_invoice(obj: Dict[str, Any]) -> InvoiceSnapshot:
    if not obj.get("id"):
        raise ValidationError("Invoice object requires an id")
    # Old API: invoice.subscription; newer: invoice.parent.subscription_details.subscription
    subscription = object_id(obj.get("subscription"))
    if not subscription:
        details = ((obj.get("parent") or {}).get("subscription_details") or {})
        subscription = object_id(details.get("subscription"))
    return InvoiceSnapshot(
        id=obj["id"],
        customer=object_id(obj.get("customer")),
        subscription=subscription,
        billing_reason=obj.get("billing_reason"),
        period_start=from_epoch(obj.get("period_start")),
        period_end=from_epoch(obj.get("period_end")),
    )


def parse_event(raw: Any) -> Event:
    payload = to_plain(raw)
    if not isinstance(payload, dict):
        raise ValidationError("Event payload must be an object")
    ev_id = payload.get("id")
    ev_type = payload.get("type")
    if not ev_id or not ev_type:
        raise ValidationError("Event requires id and type")

    data = payload.get("data") or {}
    obj = data.get("object") or {}

    prefix, _, action = ev_type.rpartition(".")
    if prefix.endswith("subscription") and action in SUBSCRIPTION_ACTIONS:
        return SubscriptionEvent(
            id=ev_id,
            type=ev_type,
            action=action,
            subscription=parse_subscription(obj),
            previous_attributes=parse_previous_attributes(data.get("previous_attributes")),
        )
    if prefix == "payment_intent":
        return PaymentIntentEvent(id=ev_id, type=ev_type, outcome=action, payment_intent=parse_payment_intent(obj))
    if prefix == "invoice":
        return InvoiceEvent(id=ev_id, type=ev_type, invoice=parse_invoice(obj))
    return UnknownEvent(id=ev_id, type=ev_type, payload=payload)
