"""Verified processor events -> reconciler / ledger / usage / tracker.

Delivery is at least once and possibly out of order. Every event id gets a
`billing_event_logs` row; `processed_at` is set in the same commit as the
event's state changes, so a redelivery after success is a no-op and a
redelivery after a failure is a retry.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from creditledger.billing.callbacks import BillingCallbacks, Notification, dispatch
from creditledger.billing.catalog import PlanCatalog
from creditledger.billing.events import (
    InvoiceEvent,
    PaymentIntentEvent,
    SubscriptionEvent,
    parse_event,
    to_plain,
)
from creditledger.billing.ledger import OP_GRANT, LedgerStore
from creditledger.billing.reconciler import SubscriptionReconciler
from creditledger.billing.topup_failures import TopUpFailureTracker
from creditledger.billing.usage import Charger, UsageAggregator
from creditledger.errors import BillingError
from creditledger.models import BillingEventLog, Subscription
from creditledger.models.credit import TX_TOPUP
from creditledger.utils.helpers import as_utc, safe_int, utcnow

log = logging.getLogger(__name__)

PROCESSED = "processed"
DUPLICATE = "duplicate"
IGNORED = "ignored"


@dataclass
class Outcome:
    status: str
    event_id: str
    event_type: str
    transition: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        out = {"ok": True, "status": self.status, "event_id": self.event_id, "type": self.event_type}
        if self.status == DUPLICATE:
            out["duplicate"] = True
        if self.transition:
            out["transition"] = self.transition
        if self.detail:
            out["detail"] = self.detail
        return out


def topup_key(payment_intent_id: str) -> str:
    return f"topup:{payment_intent_id}"


class WebhookRouter:
    def __init__(self, session, catalog: PlanCatalog, *, config: Optional[Dict[str, Any]] = None,
                 callbacks: Optional[BillingCallbacks] = None, charger: Optional[Charger] = None,
                 duplicate_detector=None):
        config = config or {}
        self.session = session
        self.callbacks = callbacks
        self.charger = charger
        self.ledger = LedgerStore(session, autocommit=False)
        self.usage = UsageAggregator(session, ledger=self.ledger, autocommit=False)
        self.tracker = TopUpFailureTracker.from_config(session, config, autocommit=False)
        self.reconciler = SubscriptionReconciler.from_config(
            session, catalog, config, ledger=self.ledger, duplicate_detector=duplicate_detector,
        )

    # ----- event log -----

    def _record(self, event_id: str, event_type: str, payload: Dict[str, Any]) -> bool:
        """Make sure the audit row exists and is committed. True if this call created it."""
        exists = self.session.execute(
            select(BillingEventLog.id).filter_by(stripe_event_id=event_id)
        ).scalar_one_or_none()
        if exists is not None:
            return False
        try:
            self.session.add(BillingEventLog(
                stripe_event_id=event_id, type=event_type, signature_valid=True, payload=payload,
            ))
            self.session.commit()
            return True
        except IntegrityError:
            # Concurrent delivery inserted it first
            self.session.rollback()
            return False

    def _lock_log(self, event_id: str) -> BillingEventLog:
        return self.session.execute(
            select(BillingEventLog)
            .filter_by(stripe_event_id=event_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one()

    def _note_failure(self, event_id: str, exc: Exception, retried: bool) -> None:
        row = self.session.execute(
            select(BillingEventLog).filter_by(stripe_event_id=event_id)
        ).scalar_one_or_none()
        if row is None:
            return
        code = exc.code if isinstance(exc, BillingError) else type(exc).__name__
        row.notes = f"handler_error:{code}"[:255]
        if retried:
            row.retries = int(row.retries or 0) + 1
        self.session.commit()

    # ----- entry point -----

    def handle(self, raw_event: Any) -> Outcome:
        event = parse_event(raw_event)
        payload = json.loads(json.dumps(to_plain(raw_event), default=str))

        created = self._record(event.id, event.type, payload)
        row = self._lock_log(event.id)
        if row.processed_at is not None:
            self.session.commit()
            log.info("webhook duplicate event=%s type=%s", event.id, event.type)
            return Outcome(DUPLICATE, event.id, event.type)
        if not created:
            row.retries = int(row.retries or 0) + 1

        try:
            outcome, notifications = self._dispatch(event)
            row.processed_at = utcnow()
            reason = outcome.detail.get("reason") if outcome.status == IGNORED else None
            row.notes = f"ignored:{reason}" if reason else None
            self.session.commit()
        except Exception as exc:
            self.session.rollback()
            self._note_failure(event.id, exc, retried=not created)
            raise

        dispatch(self.callbacks, notifications)
        return outcome

    def _dispatch(self, event) -> Tuple[Outcome, List[Notification]]:
        if isinstance(event, SubscriptionEvent):
            res = self.reconciler.reconcile(event)
            detail = {"subscription": res.subscription.id, "user_id": res.subscription.user_id}
            if res.stale:
                detail["stale"] = True
            return (
                Outcome(PROCESSED, event.id, event.type, transition=res.transition.kind.value, detail=detail),
                res.notifications,
            )
        if isinstance(event, PaymentIntentEvent):
            return self._payment_intent(event)
        if isinstance(event, InvoiceEvent):
            return self._invoice(event)
        return Outcome(IGNORED, event.id, event.type), []

    def _payment_intent(self, event: PaymentIntentEvent) -> Tuple[Outcome, List[Notification]]:
        pi = event.payment_intent
        if not pi.is_top_up or event.outcome not in ("succeeded", "payment_failed"):
            return Outcome(IGNORED, event.id, event.type), []

        user_id = pi.metadata["user_id"]
        key = pi.metadata["top_up_key"]

        if event.outcome == "payment_failed":
            row = self.tracker.record_failure(user_id, key, pi.payment_method, None, pi.decline_code,
                                             payment_intent_id=pi.id)
            return Outcome(PROCESSED, event.id, event.type, detail={
                "user_id": user_id, "key": key, "decline_type": row.decline_type, "disabled": bool(row.disabled),
            }), []

        amount = safe_int(pi.metadata.get("top_up_amount"))
        if amount is None or amount <= 0:
            # redelivery cannot fix the metadata
            log.warning("top-up %s carries invalid amount %r; not granted", pi.id, pi.metadata.get("top_up_amount"))
            return Outcome(IGNORED, event.id, event.type, detail={
                "reason": "invalid_topup_amount", "user_id": user_id, "key": key,
            }), []
        res = self.ledger.apply(
            user_id, key, OP_GRANT, amount,
            source="topup", source_id=pi.id, idempotency_key=topup_key(pi.id),
            transaction_type=TX_TOPUP, description="top-up",
            metadata={"amount_paid": pi.amount, "currency": pi.currency},
        )
        self.tracker.clear_failures(user_id, key, pi.payment_method)
        notes = []
        if not res.replayed:
            notes = [
                Notification("on_credits_granted", (user_id, key, res.amount, res.balance, "topup")),
                Notification("on_topup_completed", (user_id, key, res.amount, res.balance, pi.id)),
            ]
        return Outcome(PROCESSED, event.id, event.type, detail={
            "user_id": user_id, "key": key, "balance": res.balance, "replayed": res.replayed,
        }), notes

    def _invoice(self, event: InvoiceEvent) -> Tuple[Outcome, List[Notification]]:
        inv = event.invoice
        start, end = as_utc(inv.period_start), as_utc(inv.period_end)
        if not inv.subscription or start is None or end is None or start >= end:
            return Outcome(IGNORED, event.id, event.type), []

        sub = self.session.execute(
            select(Subscription).filter_by(stripe_subscription_id=inv.subscription)
        ).scalar_one_or_none()
        if sub is None:
            log.info("invoice %s references unknown subscription %s", inv.id, inv.subscription)
            return Outcome(IGNORED, event.id, event.type, detail={"reason": "unknown_subscription"}), []
        plan = self.reconciler.catalog.find_plan_for_price(sub.price_id)
        if plan is None:
            return Outcome(IGNORED, event.id, event.type, detail={"reason": "unknown_price"}), []
        if self.charger is None:
            log.warning("no overage charger configured; invoice %s not closed", inv.id)
            return Outcome(IGNORED, event.id, event.type, detail={"reason": "no_charger"}), []

        charges = self.usage.close_period(sub.user_id, plan, start, end, inv.id, self.charger)
        return Outcome(PROCESSED, event.id, event.type, detail={
            "user_id": sub.user_id,
            "overage": [{"key": c.key, "quantity": c.quantity, "amount": c.amount} for c in charges],
        }), []
