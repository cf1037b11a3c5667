from datetime import timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy import select

from creditledger.extensions import db
from creditledger.billing.ledger import LedgerStore
from creditledger.billing.router import WebhookRouter
from creditledger.billing.topup_failures import TopUpFailureTracker
from creditledger.billing.usage import UsageAggregator
from creditledger.errors import NotFoundError
from creditledger.models import BillingCustomer, BillingEventLog, CreditLedgerEntry, Subscription, TopUpFailure
from creditledger.services import stripe_gateway
from conftest import T0

T1 = T0 + timedelta(days=30)


def _balance(user_id="user_1", key="api_calls"):
    return LedgerStore(db.session).get_balance(user_id, key)


def _log(event_id):
    return db.session.execute(select(BillingEventLog).filter_by(stripe_event_id=event_id)).scalar_one()


def _sub(sub_id="sub_1"):
    return db.session.execute(select(Subscription).filter_by(stripe_subscription_id=sub_id)).scalar_one()


def _old_items(price):
    return {"items": {"data": [{"id": "si_old", "quantity": 1, "price": {"id": price}}]}}


# ---- subscriptions ----

def test_created_grants_allocation_and_links_customer(router, sub_event, callbacks):
    out = router.handle(sub_event("evt_1", action="created"))

    assert out.status == "processed"
    assert out.transition == "created"
    assert _balance() == 100
    assert _sub().status == "active"
    assert _sub().items[0].price_id == "price_basic_monthly"
    bc = db.session.execute(select(BillingCustomer).filter_by(stripe_customer_id="cus_1")).scalar_one()
    assert bc.user_id == "user_1"
    assert _log("evt_1").processed_at is not None
    assert callbacks.calls == ["granted:user_1:api_calls:100", "created:sub_1"]


def test_redelivered_event_is_a_duplicate(router, sub_event, callbacks):
    raw = sub_event("evt_1", action="created")
    router.handle(raw)
    callbacks.calls.clear()

    out = router.handle(raw)

    assert out.status == "duplicate"
    assert out.to_dict()["duplicate"] is True
    assert _balance() == 100
    assert callbacks.calls == []


def test_same_snapshot_under_new_event_id_is_noop(router, sub_event, callbacks):
    router.handle(sub_event("evt_1", action="created"))
    out = router.handle(sub_event("evt_2"))

    assert out.transition == "noop"
    assert _balance() == 100
    assert callbacks.subscription_calls() == ["created:sub_1"]


def test_upgrade_fires_plan_changed_exactly_once(router, sub_event, callbacks):
    router.handle(sub_event("evt_1", sub_id="sub_upgrade", action="created"))
    LedgerStore(db.session).debit("user_1", "api_calls", 40, source="api")
    upgrade = sub_event("evt_2", sub_id="sub_upgrade", price="price_pro_monthly",
                        previous=_old_items("price_basic_monthly"))

    out = router.handle(upgrade)
    again = router.handle(upgrade)

    assert out.transition == "plan_changed"
    assert again.status == "duplicate"
    assert callbacks.subscription_calls() == [
        "created:sub_upgrade",
        "changed:sub_upgrade:price_basic_monthly",
    ]
    # reset policy: leftover basic credits go, pro allocation lands
    assert _balance() == 1000
    assert _balance(key="storage_gb") == 50
    assert _sub("sub_upgrade").price_id == "price_pro_monthly"


def test_downgrade_reclaims_keys_missing_from_new_plan(router, sub_event):
    router.handle(sub_event("evt_1", action="created", price="price_pro_monthly"))
    LedgerStore(db.session).grant("user_1", "storage_gb", 10, source="topup")
    router.handle(sub_event("evt_2", previous=_old_items("price_pro_monthly")))

    assert _balance() == 100
    # only the pro allocation is removed from storage_gb
    assert _balance(key="storage_gb") == 10


def test_plan_change_with_add_policy_keeps_balance(app, ctx, catalog, sub_event):
    router = WebhookRouter(db.session, catalog, config={"PLAN_CHANGE_POLICY": "add"})
    router.handle(sub_event("evt_1", action="created"))
    router.handle(sub_event("evt_2", price="price_pro_monthly", previous=_old_items("price_basic_monthly")))

    assert _balance() == 1100


def test_renewal_resets_or_adds_per_feature(router, sub_event, callbacks):
    router.handle(sub_event("evt_1", action="created", price="price_pro_monthly"))
    LedgerStore(db.session).debit("user_1", "api_calls", 300, source="api")
    LedgerStore(db.session).debit("user_1", "storage_gb", 20, source="api")

    out = router.handle(sub_event("evt_2", price="price_pro_monthly", period_start=T1,
                                  previous={"current_period_start": int(T0.timestamp())}))

    assert out.transition == "renewed"
    assert _balance() == 1000
    assert _balance(key="storage_gb") == 80
    assert "renewed:sub_1" in callbacks.subscription_calls()


def test_stale_snapshot_does_not_overwrite_row(router, sub_event):
    router.handle(sub_event("evt_1", action="created"))
    router.handle(sub_event("evt_2", period_start=T1, previous={"current_period_start": int(T0.timestamp())}))

    out = router.handle(sub_event("evt_old", status="past_due", period_start=T0))

    assert out.status == "processed"
    assert out.detail["stale"] is True
    row = _sub()
    assert row.status == "active"
    assert row.current_period_start.replace(tzinfo=None) == T1.replace(tzinfo=None)


def test_deleted_duplicate_is_silent(router, sub_event, callbacks):
    out = router.handle(sub_event("evt_1", sub_id="sub_dup", action="deleted", status="canceled",
                                  metadata={"cancelled_as_duplicate": "true"}))

    assert out.transition == "noop"
    assert callbacks.calls == []
    assert db.session.execute(select(CreditLedgerEntry)).first() is None


def test_deleted_fires_cancelled_once(router, sub_event, callbacks):
    router.handle(sub_event("evt_1", action="created"))
    cancel = sub_event("evt_2", action="deleted", status="canceled")

    router.handle(cancel)
    router.handle(cancel)
    router.handle(sub_event("evt_3", action="deleted", status="canceled"))

    assert callbacks.subscription_calls() == ["created:sub_1", "cancelled:sub_1"]
    # default policy keeps the credits
    assert _balance() == 100


def test_resubscribe_after_cancel_resets_to_allocation(router, sub_event, callbacks):
    router.handle(sub_event("evt_1", action="created"))
    LedgerStore(db.session).debit("user_1", "api_calls", 30, source="api")
    router.handle(sub_event("evt_2", action="deleted", status="canceled"))
    assert _balance() == 70

    out = router.handle(sub_event("evt_3", sub_id="sub_2", action="created"))

    assert out.transition == "created"
    assert _balance() == 100
    assert LedgerStore(db.session).find_entry("sub:evt_3:api_calls").amount == 30
    assert callbacks.subscription_calls() == ["created:sub_1", "cancelled:sub_1", "created:sub_2"]


def test_cancellation_reclaims_subscription_credits_only(app, ctx, catalog, sub_event):
    router = WebhookRouter(db.session, catalog, config={"CANCELLATION_POLICY": "reclaim"})
    router.handle(sub_event("evt_1", action="created"))
    LedgerStore(db.session).grant("user_1", "api_calls", 500, source="topup", source_id="pi_9")

    router.handle(sub_event("evt_2", action="deleted", status="canceled"))

    assert _balance() == 500


def test_detected_duplicate_gets_no_credits(app, ctx, catalog, sub_event, callbacks):
    seen = []

    def _detector(snap):
        seen.append(snap.id)
        return snap.id == "sub_2"

    router = WebhookRouter(db.session, catalog, config={"DETECT_DUPLICATE_SUBSCRIPTIONS": True},
                           callbacks=callbacks, duplicate_detector=_detector)
    router.handle(sub_event("evt_1", sub_id="sub_1", action="created"))
    out = router.handle(sub_event("evt_2", sub_id="sub_2", action="created"))

    assert seen == ["sub_1", "sub_2"]
    assert out.transition == "noop"
    assert _balance() == 100
    assert _sub("sub_2").metadata_json["cancelled_as_duplicate"] == "true"
    assert callbacks.subscription_calls() == ["created:sub_1"]


class _FakeSubscriptions:
    """Customer subscriptions held the way Stripe would, mutated by update/cancel."""

    def __init__(self, *subs):
        self.subs = {s["id"]: s for s in subs}

    def list(self, params=None):
        return {"data": [dict(s) for s in self.subs.values()]}

    def update(self, sub_id, params=None):
        self.subs[sub_id]["metadata"] = {**self.subs[sub_id]["metadata"], **(params or {}).get("metadata", {})}

    def cancel(self, sub_id):
        self.subs[sub_id]["status"] = "canceled"


def test_duplicate_cancelled_earlier_gets_no_credits(app, ctx, catalog, sub_event, callbacks, monkeypatch):
    def _stripe_sub(sub_id, created):
        return {"id": sub_id, "status": "active", "created": created, "metadata": {"user_id": "user_1"},
                "items": {"data": [{"price": {"id": "price_basic_monthly", "unit_amount": 1000}}]}}

    fake = _FakeSubscriptions(_stripe_sub("sub_1", 100), _stripe_sub("sub_2", 200))
    monkeypatch.setattr(stripe_gateway, "_client", lambda: SimpleNamespace(subscriptions=fake))
    router = WebhookRouter(db.session, catalog, config={"DETECT_DUPLICATE_SUBSCRIPTIONS": True},
                           callbacks=callbacks, duplicate_detector=stripe_gateway.detect_duplicate_subscription)

    router.handle(sub_event("evt_1", sub_id="sub_1", action="created"))
    # sub_2's own event was built before the cleanup and still reads active
    out = router.handle(sub_event("evt_2", sub_id="sub_2", action="created"))

    assert fake.subs["sub_2"]["status"] == "canceled"
    assert out.transition == "noop"
    assert _balance() == 100
    assert callbacks.subscription_calls() == ["created:sub_1"]


def test_unresolvable_customer_fails_then_retries(router, sub_event):
    raw = sub_event("evt_1", action="created", customer="cus_ghost", user_id=None)

    with pytest.raises(NotFoundError):
        router.handle(raw)
    with pytest.raises(NotFoundError):
        router.handle(raw)

    row = _log("evt_1")
    assert row.processed_at is None
    assert row.notes == "handler_error:not_found"
    assert row.retries == 1

    db.session.add(BillingCustomer(user_id="user_7", stripe_customer_id="cus_ghost"))
    db.session.commit()
    out = router.handle(raw)

    assert out.status == "processed"
    assert _balance("user_7") == 100
    row = _log("evt_1")
    assert row.retries == 2
    assert row.notes is None


def test_failing_callback_does_not_undo_state(router, sub_event, callbacks):
    callbacks.fail_on.add("granted")

    out = router.handle(sub_event("evt_1", action="created"))

    assert out.status == "processed"
    assert _balance() == 100
    assert _log("evt_1").processed_at is not None
    # later hooks still run
    assert callbacks.subscription_calls() == ["created:sub_1"]


def test_unknown_event_type_is_logged_and_ignored(router):
    out = router.handle({"id": "evt_x", "type": "charge.refunded", "data": {"object": {"id": "ch_1"}}})

    assert out.status == "ignored"
    row = _log("evt_x")
    assert row.type == "charge.refunded"
    assert row.processed_at is not None


# ---- payment intents ----

def test_topup_success_grants_and_clears_failures(router, pi_event, callbacks):
    TopUpFailureTracker(db.session).record_failure("user_1", "api_calls", "pm_1", decline_code="insufficient_funds")

    out = router.handle(pi_event("evt_pi"))

    assert out.status == "processed"
    assert _balance() == 500
    entry = LedgerStore(db.session).find_entry("topup:pi_1")
    assert entry.transaction_type == "topup"
    assert db.session.execute(select(TopUpFailure)).first() is None
    assert callbacks.calls == ["granted:user_1:api_calls:500", "topup:user_1:api_calls:500"]


def test_topup_replayed_under_new_event_grants_once(router, pi_event, callbacks):
    router.handle(pi_event("evt_pi"))
    callbacks.calls.clear()

    out = router.handle(pi_event("evt_pi_again"))

    assert out.detail["replayed"] is True
    assert _balance() == 500
    assert callbacks.calls == []


def test_payment_failed_records_hard_decline(router, pi_event):
    out = router.handle(pi_event("evt_pf", outcome="payment_failed", decline_code="expired_card"))

    assert out.detail["decline_type"] == "hard"
    assert out.detail["disabled"] is True
    row = db.session.execute(select(TopUpFailure)).scalar_one()
    assert (row.payment_method_id, row.decline_code) == ("pm_1", "expired_card")
    assert _balance() == 0


def test_payment_intent_without_topup_metadata_is_ignored(router, pi_event):
    out = router.handle(pi_event("evt_pi", metadata={"order": "42"}))

    assert out.status == "ignored"
    assert _balance() == 0


def test_topup_with_invalid_amount_is_noted_not_retried(router, pi_event, callbacks):
    raw = pi_event("evt_pi", metadata={"top_up_key": "api_calls", "top_up_amount": "lots", "user_id": "user_1"})

    out = router.handle(raw)
    again = router.handle(raw)

    assert out.status == "ignored"
    assert out.detail["reason"] == "invalid_topup_amount"
    assert again.status == "duplicate"
    row = _log("evt_pi")
    assert row.processed_at is not None
    assert row.notes == "ignored:invalid_topup_amount"
    assert _balance() == 0
    assert callbacks.calls == []


# ---- invoices ----

def _invoice_event(event_id, sub_id="sub_1", start=T0, end=T1):
    return {
        "id": event_id,
        "type": "invoice.created",
        "data": {"object": {
            "id": "in_1", "customer": "cus_1", "subscription": sub_id, "billing_reason": "subscription_cycle",
            "period_start": int(start.timestamp()), "period_end": int(end.timestamp()),
        }},
    }


def test_invoice_charges_overage_once(router, sub_event, charges):
    router.handle(sub_event("evt_1", action="created", price="price_metered_monthly"))
    usage = UsageAggregator(db.session)
    usage.record_usage("user_1", "api_calls", 90, T0, T1, occurred_at=T0 + timedelta(days=1))
    usage.record_usage("user_1", "api_calls", 40, T0, T1, occurred_at=T0 + timedelta(days=2))

    out = router.handle(_invoice_event("evt_inv"))
    router.handle(_invoice_event("evt_inv_2"))

    assert out.status == "processed"
    assert len(charges) == 1
    charge = charges[0]
    assert (charge["quantity"], charge["amount"], charge["currency"]) == (30, 150, "usd")
    assert charge["idempotency_key"] == f"overage:user_1:api_calls:{int(T0.timestamp())}"
    marker = LedgerStore(db.session).find_entry(charge["idempotency_key"])
    assert marker.amount == 0
    assert marker.transaction_type == "overage"
    assert marker.metadata_json["charge_id"] == "ii_1"
    # credit balance is untouched by billing
    assert _balance() == 100


def test_invoice_within_allocation_charges_nothing(router, sub_event, charges):
    router.handle(sub_event("evt_1", action="created", price="price_metered_monthly"))
    UsageAggregator(db.session).record_usage("user_1", "api_calls", 100, T0, T1, occurred_at=T0)

    router.handle(_invoice_event("evt_inv"))

    assert charges == []


def test_invoice_for_unknown_subscription_is_ignored(router, charges):
    out = router.handle(_invoice_event("evt_inv", sub_id="sub_nope"))

    assert out.status == "ignored"
    assert out.detail["reason"] == "unknown_subscription"
    assert charges == []
