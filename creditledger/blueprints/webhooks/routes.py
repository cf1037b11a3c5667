import hashlib
import json
from flask import request, jsonify, current_app
from . import bp
from creditledger.extensions import db, csrf, billing_state
from creditledger.errors import BillingError, SignatureInvalid, SignatureMissing
from creditledger.models import BillingEventLog
from creditledger.billing.router import WebhookRouter
from creditledger.services import stripe_gateway
import stripe


def _verify(raw_bytes: bytes):
    secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")
    if not secret:
        raise RuntimeError("STRIPE_WEBHOOK_SECRET is not configured")
    sig_header = request.headers.get("Stripe-Signature", "")
    if not sig_header:
        raise SignatureMissing("Stripe-Signature header missing")
    try:
        return stripe.Webhook.construct_event(
            payload=raw_bytes.decode("utf-8"),
            sig_header=sig_header,
            secret=secret,
        )
    except (stripe.SignatureVerificationError, ValueError):
        raise SignatureInvalid("Stripe signature verification failed")


def _log_invalid(raw_bytes: bytes, kind: str) -> None:
    # Deterministic synthetic id: nothing in the payload is trusted
    digest = hashlib.sha256(raw_bytes).hexdigest()[:32]
    synthetic_id = f"invalid:{digest}"
    if BillingEventLog.query.filter_by(stripe_event_id=synthetic_id).first():
        return
    db.session.add(BillingEventLog(
        stripe_event_id=synthetic_id,
        type=kind,
        signature_valid=False,
        payload={},
    ))
    db.session.commit()


def build_router() -> WebhookRouter:
    state = billing_state()
    return WebhookRouter(
        db.session,
        state["catalog"],
        config=current_app.config,
        callbacks=state["callbacks"],
        charger=stripe_gateway.charge_overage,
        duplicate_detector=stripe_gateway.detect_duplicate_subscription,
    )


# ----- Stripe Webhook -----
@csrf.exempt
@bp.post("/stripe")
def stripe_webhook():
    """
    Stripe → /webhooks/stripe
    Verifies signature, then hands the event to the router (dedupe, reconcile, ledger).
    """
    raw_bytes = request.get_data(cache=False, as_text=False)

    try:
        event = _verify(raw_bytes)
    except (SignatureMissing, SignatureInvalid) as e:
        _log_invalid(raw_bytes, "signature_missing" if isinstance(e, SignatureMissing) else "signature_invalid")
        current_app.logger.warning(json.dumps({"event": "stripe_webhook", "error": e.code}))
        return jsonify(e.to_dict()), e.http_status

    try:
        outcome = build_router().handle(event)
    except BillingError as e:
        current_app.logger.warning(json.dumps({
            "event": "stripe_webhook",
            "stripe_event_id": event.get("id"),
            "type": event.get("type"),
            "error": e.code,
            "status": e.http_status,
        }))
        return jsonify(e.to_dict()), e.http_status

    current_app.logger.info(json.dumps({
        "event": "stripe_webhook",
        "stripe_event_id": outcome.event_id,
        "type": outcome.event_type,
        "status": outcome.status,
        "transition": outcome.transition,
    }))
    return jsonify(outcome.to_dict()), 200
