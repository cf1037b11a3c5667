from flask import request, jsonify, current_app
from flask_login import login_required, current_user
from sqlalchemy import select
from . import bp
from creditledger.extensions import db, limiter, billing_state
from creditledger.errors import NotFoundError, TransientCollaboratorError, ValidationError
from creditledger.models import Subscription
from creditledger.billing.ledger import LedgerStore
from creditledger.billing.topup_failures import TopUpFailureTracker
from creditledger.billing.usage import UsageAggregator, period_containing
from creditledger.services import stripe_gateway
from creditledger.services.topup import TopUpService
from creditledger.utils.helpers import safe_int, utcnow


def _body() -> dict:
    return request.get_json(silent=True) or {}


def _tracker() -> TopUpFailureTracker:
    return TopUpFailureTracker.from_config(db.session, current_app.config)


def _current_subscription(user_id: str):
    return db.session.execute(
        select(Subscription)
        .filter_by(user_id=user_id)
        .order_by(Subscription.current_period_start.desc(), Subscription.id.desc())
    ).scalars().first()


# ----- balances -----

@bp.get("/credits")
@login_required
def list_balances():
    balances = LedgerStore(db.session).get_all_balances(current_user.id)
    return jsonify({"user_id": current_user.id, "balances": balances}), 200


@bp.get("/credits/<key>")
@login_required
def get_balance(key):
    balance = LedgerStore(db.session).get_balance(current_user.id, key)
    return jsonify({"key": key, "balance": balance}), 200


@bp.get("/credits/<key>/history")
@login_required
def history(key):
    limit = safe_int(request.args.get("limit"), 50)
    offset = safe_int(request.args.get("offset"), 0)
    entries = LedgerStore(db.session).history(current_user.id, key, limit=limit, offset=offset)
    return jsonify({"key": key, "entries": [e.to_dict() for e in entries]}), 200


@bp.post("/credits/<key>/consume")
@login_required
@limiter.limit("120 per minute")
def consume(key):
    body = _body()
    balance = LedgerStore(db.session).debit(
        current_user.id, key, body.get("amount"),
        source="api",
        source_id=body.get("source_id"),
        idempotency_key=body.get("idempotency_key"),
        description=body.get("description"),
    )
    return jsonify({"key": key, "balance": balance}), 200


# ----- top-ups -----

@bp.post("/credits/<key>/topup")
@login_required
@limiter.limit("10 per hour")
def topup(key):
    body = _body()
    state = billing_state()
    service = TopUpService(db.session, state["catalog"], _tracker(), callbacks=state["callbacks"])
    result = service.top_up(
        current_user.id, key, body.get("amount"),
        payment_method_id=body.get("payment_method_id"),
        idempotency_key=body.get("idempotency_key"),
    )
    return jsonify(result.to_dict()), (200 if result.status == "succeeded" else 202)


@bp.get("/credits/<key>/topup/status")
@login_required
def topup_status(key):
    tracker = _tracker()
    rows = tracker.status(current_user.id, key)
    return jsonify({
        "key": key,
        "suppressed": any(r["suppressed"] for r in rows),
        "payment_methods": rows,
    }), 200


@bp.post("/credits/<key>/topup/unblock")
@login_required
@limiter.limit("10 per hour")
def topup_unblock(key):
    removed = _tracker().unblock_all(current_user.id, key)
    return jsonify({"key": key, "cleared": removed}), 200


# ----- usage -----

@bp.post("/usage/<key>")
@login_required
@limiter.limit("600 per minute")
def record_usage(key):
    body = _body()
    sub = _current_subscription(current_user.id)
    if sub is None or not sub.is_active:
        raise NotFoundError("No active subscription", user_id=current_user.id)
    if sub.current_period_start is None or sub.current_period_end is None:
        raise ValidationError("Subscription has no current billing period", subscription=sub.stripe_subscription_id)

    # renewal webhook may lag behind the period end
    now = utcnow()
    start, end = period_containing(sub.current_period_start, sub.current_period_end, now)

    meter_event_id = body.get("meter_event_id")
    event = UsageAggregator(db.session).record_usage(
        current_user.id, key, body.get("amount"), start, end,
        meter_event_id=meter_event_id, occurred_at=now,
    )

    if current_app.config.get("STRIPE_METER_EVENTS"):
        try:
            stripe_gateway.send_meter_event(
                event_name=key,
                customer_id=sub.stripe_customer_id,
                value=int(event.amount),
                identifier=event.meter_event_id,
            )
        except TransientCollaboratorError:
            current_app.logger.warning("meter_event_failed key=%s usage_id=%s", key, event.id)
            raise

    total = UsageAggregator(db.session).period_total(current_user.id, key, start, end)
    return jsonify({"usage": event.to_dict(), "period_total": total}), 201


@bp.get("/usage/<key>")
@login_required
def usage_history(key):
    limit = safe_int(request.args.get("limit"), 50)
    events = UsageAggregator(db.session).history(current_user.id, key, limit=limit)
    return jsonify({"key": key, "events": [e.to_dict() for e in events]}), 200


# ----- subscription -----

@bp.get("/subscription")
@login_required
def subscription():
    sub = _current_subscription(current_user.id)
    if sub is None:
        raise NotFoundError("No subscription", user_id=current_user.id)
    plan = billing_state()["catalog"].find_plan_for_price(sub.price_id)
    payload = sub.to_dict()
    payload["plan"] = {"id": plan.id, "name": plan.name} if plan else None
    return jsonify(payload), 200
