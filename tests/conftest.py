import os
# Ensure the app factory picks the Testing config & SQLite memory DB
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite:///:memory:")

from datetime import datetime, timedelta, timezone

import pytest
from creditledger import create_app
from creditledger.config import TestingConfig
from creditledger.extensions import db, billing_state
from creditledger.billing.callbacks import BillingCallbacks
from creditledger.billing.router import WebhookRouter

PLANS = [
    {
        "id": "basic",
        "name": "Basic",
        "price": [{"id": "price_basic_monthly", "amount": 1000, "currency": "usd", "interval": "month"}],
        "features": {
            "api_calls": {"credits": {"allocation": 100, "onRenewal": "reset"}, "pricePerCredit": 2},
        },
    },
    {
        "id": "pro",
        "name": "Pro",
        "price": [
            {"id": "price_pro_monthly", "amount": 3000, "currency": "usd", "interval": "month"},
            {"id": "price_pro_yearly", "amount": 30000, "currency": "usd", "interval": "year"},
        ],
        "features": {
            "api_calls": {"credits": {"allocation": 1000, "onRenewal": "reset"}, "pricePerCredit": 1,
                          "minPerPurchase": 100, "maxPerPurchase": 5000},
            "storage_gb": {"credits": {"allocation": 50, "onRenewal": "add"}},
        },
    },
    {
        "id": "metered",
        "name": "Metered",
        "price": [{"id": "price_metered_monthly", "amount": 500, "currency": "usd", "interval": "month"}],
        "features": {
            "api_calls": {"credits": {"allocation": 100, "onRenewal": "reset"}, "pricePerCredit": 5,
                          "trackUsage": True},
        },
    },
]

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


class _Config(TestingConfig):
    SQLALCHEMY_DATABASE_URI = os.environ.get("TEST_DATABASE_URL", "sqlite:///:memory:")
    BILLING_PLANS = PLANS
    STRIPE_SECRET_KEY = "sk_test_x"
    STRIPE_WEBHOOK_SECRET = "whsec_test_x"


class Recorder(BillingCallbacks):
    """Collects callback invocations as short strings."""

    def __init__(self):
        self.calls = []
        self.fail_on = set()

    def _hit(self, name, text):
        self.calls.append(text)
        if name in self.fail_on:
            raise RuntimeError(f"{name} exploded")

    def on_subscription_created(self, sub):
        self._hit("created", f"created:{sub.id}")

    def on_subscription_cancelled(self, sub):
        self._hit("cancelled", f"cancelled:{sub.id}")

    def on_subscription_renewed(self, sub):
        self._hit("renewed", f"renewed:{sub.id}")

    def on_subscription_plan_changed(self, sub, old_price_id):
        self._hit("changed", f"changed:{sub.id}:{old_price_id}")

    def on_credits_granted(self, user_id, key, amount, balance, source):
        self._hit("granted", f"granted:{user_id}:{key}:{amount}")

    def on_topup_completed(self, user_id, key, amount, balance, payment_intent_id):
        self._hit("topup", f"topup:{user_id}:{key}:{amount}")

    def subscription_calls(self):
        return [c for c in self.calls if not c.startswith(("granted:", "topup:"))]


_recorder = Recorder()


@pytest.fixture(scope="session")
def app():
    app = create_app(config_object=_Config, callbacks=_recorder)
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def callbacks():
    return _recorder


@pytest.fixture(autouse=True)
def _db_clean(app):
    # Clean BEFORE each test
    _recorder.calls.clear()
    _recorder.fail_on.clear()
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()
    yield
    # And AFTER each test (keeps state hermetic even if a test fails mid-transaction)
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()


@pytest.fixture()
def ctx(app):
    with app.app_context():
        yield


@pytest.fixture()
def catalog(app):
    with app.app_context():
        return billing_state()["catalog"]


@pytest.fixture()
def charges():
    return []


@pytest.fixture()
def router(app, ctx, catalog, charges):
    def _charger(**kw):
        charges.append(kw)
        return f"ii_{len(charges)}"

    return WebhookRouter(db.session, catalog, config=app.config, callbacks=_recorder, charger=_charger)


def _epoch(dt):
    return int(dt.timestamp())


@pytest.fixture()
def sub_event():
    """Build a customer.subscription.* event payload."""

    def _build(event_id, sub_id="sub_1", action="updated", status="active", price="price_basic_monthly",
               customer="cus_1", user_id="user_1", period_start=T0, metadata=None, previous=None):
        meta = {"user_id": user_id} if user_id else {}
        meta.update(metadata or {})
        obj = {
            "id": sub_id,
            "object": "subscription",
            "customer": customer,
            "status": status,
            "metadata": meta,
            "current_period_start": _epoch(period_start),
            "current_period_end": _epoch(period_start + timedelta(days=30)),
            "cancel_at_period_end": False,
            "items": {"data": [{"id": f"si_{sub_id}", "quantity": 1, "price": {"id": price}}]},
        }
        data = {"object": obj}
        if previous is not None:
            data["previous_attributes"] = previous
        return {"id": event_id, "type": f"customer.subscription.{action}", "data": data}

    return _build


@pytest.fixture()
def pi_event():
    """Build a payment_intent.* event payload carrying top-up metadata."""

    def _build(event_id, pi_id="pi_1", outcome="succeeded", user_id="user_1", key="api_calls", amount=500,
               payment_method="pm_1", decline_code=None, metadata=None):
        meta = {"top_up_key": key, "top_up_amount": str(amount), "user_id": user_id}
        if metadata is not None:
            meta = metadata
        obj = {
            "id": pi_id,
            "object": "payment_intent",
            "customer": "cus_1",
            "amount": amount,
            "currency": "usd",
            "status": "succeeded" if outcome == "succeeded" else "requires_payment_method",
            "metadata": meta,
            "payment_method": payment_method,
        }
        if decline_code:
            obj["last_payment_error"] = {"code": "card_declined", "decline_code": decline_code}
        return {"id": event_id, "type": f"payment_intent.{outcome}", "data": {"object": obj}}

    return _build

