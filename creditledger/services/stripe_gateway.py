from typing import Dict, Any, Optional
from flask import current_app
from stripe import StripeClient
import hashlib
import logging
import stripe

from creditledger.billing.events import SubscriptionSnapshot, to_plain
from creditledger.errors import PaymentDeclined, TransientCollaboratorError, NotFoundError
from creditledger.extensions import db
from creditledger.models import BillingCustomer

log = logging.getLogger(__name__)


def _client() -> StripeClient:
    key = current_app.config.get("STRIPE_SECRET_KEY")
    if not key:
        raise RuntimeError("STRIPE_SECRET_KEY is not configured")
    return StripeClient(key)


def make_idempotency_key(prefix: str, *parts: Any) -> str:
    raw = "|".join(str(p) for p in parts)
    return f"{prefix}:" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


def customer_for_user(user_id: str) -> str:
    cid = db.session.execute(
        db.select(BillingCustomer.stripe_customer_id).filter_by(user_id=user_id)
    ).scalar_one_or_none()
    if not cid:
        raise NotFoundError("No billing account for user", user_id=user_id)
    return cid


def default_payment_method(customer_id: str) -> Optional[str]:
    try:
        customer = to_plain(_client().customers.retrieve(customer_id))
    except stripe.StripeError as e:
        raise TransientCollaboratorError(f"customer lookup failed: {type(e).__name__}", customer=customer_id)
    if customer.get("deleted"):
        raise NotFoundError("Customer has been deleted", customer=customer_id)
    pm = (customer.get("invoice_settings") or {}).get("default_payment_method")
    return pm["id"] if isinstance(pm, dict) else pm


# ----- duplicate subscription safety net -----

def _unit_amount(sub: Dict[str, Any]) -> int:
    items = (sub.get("items") or {}).get("data") or []
    price = (items[0].get("price") or {}) if items else {}
    return int(price.get("unit_amount") or 0)


def detect_duplicate_subscription(snap: SubscriptionSnapshot) -> bool:
    """
    If the customer holds more than one active/trialing subscription, keep the
    highest-value one (earliest created on ties), flag and cancel the rest.
    Returns True when `snap` is one of the cancelled duplicates.
    """
    client = _client()
    try:
        listing = to_plain(client.subscriptions.list(params={"customer": snap.customer, "status": "all", "limit": 20}))
    except stripe.StripeError as e:
        raise TransientCollaboratorError(f"subscription lookup failed: {type(e).__name__}", customer=snap.customer)

    subs = listing.get("data") or []
    # The event payload can predate an earlier cleanup; trust Stripe's current state
    current = next((s for s in subs if s.get("id") == snap.id), None)
    if current is not None:
        flagged = (current.get("metadata") or {}).get("cancelled_as_duplicate") == "true"
        if flagged or current.get("status") == "canceled":
            log.info("subscription %s already cancelled on Stripe; treating as duplicate", snap.id)
            return True

    live = [s for s in subs if s.get("status") in ("active", "trialing")]
    if len(live) <= 1:
        return False

    live.sort(key=lambda s: (-_unit_amount(s), int(s.get("created") or 0)))
    keep = live[0]
    for sub in live[1:]:
        try:
            client.subscriptions.update(sub["id"], params={"metadata": {"cancelled_as_duplicate": "true"}})
            client.subscriptions.cancel(sub["id"])
            log.warning("cancelled duplicate subscription %s (kept %s)", sub["id"], keep["id"])
        except stripe.StripeError:
            log.exception("failed to cancel duplicate subscription %s", sub["id"])
    return snap.id != keep["id"]


# ----- charges -----

def charge_overage(*, user_id: str, key: str, quantity: int, amount: int, currency: str,
                   idempotency_key: str, description: str = "") -> Optional[str]:
    """Add an invoice item for usage beyond the allocation; lands on the next invoice."""
    customer_id = customer_for_user(user_id)
    params = {
        "customer": customer_id,
        "amount": int(amount),
        "currency": currency,
        "description": description or f"{key} overage",
        "metadata": {"user_id": user_id, "key": key, "quantity": str(quantity)},
    }
    try:
        item = _client().invoice_items.create(params=params, options={"idempotency_key": idempotency_key})
    except stripe.StripeError as e:
        raise TransientCollaboratorError(f"overage charge failed: {type(e).__name__}", key=key)
    return getattr(item, "id", None) or to_plain(item).get("id")


def create_topup_payment_intent(*, customer_id: str, amount: int, currency: str, payment_method: str,
                                metadata: Dict[str, str], idempotency_key: Optional[str] = None) -> Dict[str, Any]:
    """
    Off-session, confirm-immediately PaymentIntent for a credit top-up.
    Card declines surface as PaymentDeclined; anything else Stripe-side is transient.
    """
    params = {
        "amount": int(amount),
        "currency": currency,
        "customer": customer_id,
        "payment_method": payment_method,
        "confirm": True,
        "off_session": True,
        "metadata": metadata,
    }
    options = {"idempotency_key": idempotency_key} if idempotency_key else {}
    try:
        pi = _client().payment_intents.create(params=params, options=options)
    except stripe.CardError as e:
        err = getattr(e, "error", None)
        decline_code = getattr(e, "code", None)
        if err is not None:
            decline_code = getattr(err, "decline_code", None) or decline_code
        pi_obj = getattr(err, "payment_intent", None) if err is not None else None
        raise PaymentDeclined(
            e.user_message or "Card declined",
            decline_code=decline_code,
            payment_method=payment_method,
            payment_intent=(pi_obj or {}).get("id") if isinstance(pi_obj, dict) else getattr(pi_obj, "id", None),
        )
    except stripe.StripeError as e:
        raise TransientCollaboratorError(f"top-up charge failed: {type(e).__name__}")
    return to_plain(pi)


def send_meter_event(*, event_name: str, customer_id: str, value: int, identifier: Optional[str] = None) -> None:
    params: Dict[str, Any] = {
        "event_name": event_name,
        "payload": {"stripe_customer_id": customer_id, "value": str(int(value))},
    }
    if identifier:
        params["identifier"] = identifier
    try:
        _client().billing.meter_events.create(params=params)
    except stripe.StripeError as e:
        raise TransientCollaboratorError(f"meter event failed: {type(e).__name__}", event_name=event_name)
