from datetime import timedelta

import pytest

from creditledger.extensions import db
from creditledger.billing.ledger import LedgerStore
from creditledger.billing.topup_failures import TopUpFailureTracker
from creditledger.errors import NotFoundError, PaymentDeclined, TopUpSuppressed, ValidationError
from creditledger.models import BillingCustomer, Subscription, TopUpFailure
from creditledger.services.topup import TopUpService
from conftest import T0


class FakeGateway:
    def __init__(self, status="succeeded", decline=None, default_pm="pm_default"):
        self.status = status
        self.decline = decline
        self.default_pm = default_pm
        self.intents = []

    def default_payment_method(self, customer_id):
        return self.default_pm

    def create_topup_payment_intent(self, **kw):
        self.intents.append(kw)
        if self.decline:
            raise PaymentDeclined("Card declined", decline_code=self.decline, payment_method=kw["payment_method"],
                                  payment_intent=f"pi_{len(self.intents)}")
        return {"id": f"pi_{len(self.intents)}", "status": self.status}


def _seed(price="price_pro_monthly", status="active", user_id="u1"):
    db.session.add(BillingCustomer(user_id=user_id, stripe_customer_id=f"cus_{user_id}"))
    db.session.add(Subscription(
        stripe_subscription_id=f"sub_{user_id}", stripe_customer_id=f"cus_{user_id}", user_id=user_id,
        status=status, price_id=price, metadata_json={}, current_period_start=T0,
        current_period_end=T0 + timedelta(days=30),
    ))
    db.session.commit()


def _service(catalog, gateway, callbacks=None):
    return TopUpService(db.session, catalog, TopUpFailureTracker(db.session), gateway=gateway, callbacks=callbacks)


def test_successful_topup_grants_credits(ctx, catalog, callbacks):
    _seed()
    gw = FakeGateway()

    res = _service(catalog, gw, callbacks).top_up("u1", "api_calls", 250)

    assert res.status == "succeeded"
    assert (res.credits, res.charged, res.currency, res.balance) == (250, 250, "usd", 250)
    intent = gw.intents[0]
    assert intent["payment_method"] == "pm_default"
    assert intent["metadata"] == {"top_up_key": "api_calls", "top_up_amount": "250", "user_id": "u1"}
    assert LedgerStore(db.session).find_entry("topup:pi_1").transaction_type == "topup"
    assert callbacks.calls == ["granted:u1:api_calls:250", "topup:u1:api_calls:250"]


def test_processing_intent_is_pending(ctx, catalog):
    _seed()

    res = _service(catalog, FakeGateway(status="processing")).top_up("u1", "api_calls", 250, payment_method_id="pm_x")

    assert res.status == "pending"
    assert res.to_dict()["balance"] is None
    assert LedgerStore(db.session).get_balance("u1", "api_calls") == 0


def test_declined_card_is_recorded(ctx, catalog):
    _seed()

    with pytest.raises(PaymentDeclined):
        _service(catalog, FakeGateway(decline="expired_card")).top_up("u1", "api_calls", 250)

    row = db.session.query(TopUpFailure).one()
    assert (row.payment_method_id, row.decline_type, row.disabled) == ("pm_default", "hard", True)


def test_decline_and_its_webhook_count_once(router, catalog, pi_event):
    _seed()

    with pytest.raises(PaymentDeclined):
        _service(catalog, FakeGateway(decline="insufficient_funds")).top_up("u1", "api_calls", 250)
    router.handle(pi_event("evt_pf", pi_id="pi_1", outcome="payment_failed", user_id="u1",
                           payment_method="pm_default", decline_code="insufficient_funds"))

    row = db.session.query(TopUpFailure).one()
    assert (row.failure_count, row.disabled) == (1, False)
    assert row.last_payment_intent_id == "pi_1"


def test_requires_action_counts_as_soft_failure(ctx, catalog):
    _seed()

    with pytest.raises(PaymentDeclined):
        _service(catalog, FakeGateway(status="requires_action")).top_up("u1", "api_calls", 250)

    row = db.session.query(TopUpFailure).one()
    assert (row.decline_type, row.failure_count, row.disabled) == ("soft", 1, False)


def test_suppressed_method_is_not_charged(ctx, catalog):
    _seed()
    TopUpFailureTracker(db.session).record_failure("u1", "api_calls", "pm_default", decline_code="insufficient_funds")
    gw = FakeGateway()

    with pytest.raises(TopUpSuppressed) as exc:
        _service(catalog, gw).top_up("u1", "api_calls", 250)

    assert exc.value.retry_at is not None
    assert gw.intents == []


def test_another_payment_method_is_not_suppressed(ctx, catalog):
    _seed()
    TopUpFailureTracker(db.session).record_failure("u1", "api_calls", "pm_default", decline_code="expired_card")

    res = _service(catalog, FakeGateway()).top_up("u1", "api_calls", 250, payment_method_id="pm_new")

    assert res.status == "succeeded"


@pytest.mark.parametrize("key,amount", [
    ("api_calls", 50),        # below minPerPurchase
    ("api_calls", 6000),      # above maxPerPurchase
    ("storage_gb", 10),       # no pricePerCredit
    ("unknown", 10),
    ("api_calls", 0),
])
def test_purchase_limits(ctx, catalog, key, amount):
    _seed()
    with pytest.raises(ValidationError):
        _service(catalog, FakeGateway()).top_up("u1", key, amount)


def test_minimum_charge(ctx, catalog):
    _seed(price="price_basic_monthly")
    with pytest.raises(ValidationError):
        _service(catalog, FakeGateway()).top_up("u1", "api_calls", 29)
    assert _service(catalog, FakeGateway()).top_up("u1", "api_calls", 30).charged == 60


def test_usage_billed_feature_cannot_be_topped_up(ctx, catalog):
    _seed(price="price_metered_monthly")
    with pytest.raises(ValidationError):
        _service(catalog, FakeGateway()).top_up("u1", "api_calls", 100)


def test_missing_payment_method(ctx, catalog):
    _seed()
    with pytest.raises(ValidationError):
        _service(catalog, FakeGateway(default_pm=None)).top_up("u1", "api_calls", 250)


def test_requires_live_subscription(ctx, catalog):
    _seed(status="canceled")
    with pytest.raises(NotFoundError):
        _service(catalog, FakeGateway()).top_up("u1", "api_calls", 250)


def test_past_due_subscription_may_top_up(ctx, catalog):
    _seed(status="past_due")
    assert _service(catalog, FakeGateway()).top_up("u1", "api_calls", 250).status == "succeeded"


def test_unknown_user(ctx, catalog):
    with pytest.raises(NotFoundError):
        _service(catalog, FakeGateway()).top_up("nobody", "api_calls", 250)
