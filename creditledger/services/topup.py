import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy import select

from creditledger.billing.callbacks import BillingCallbacks, Notification, dispatch
from creditledger.billing.catalog import PlanCatalog
from creditledger.billing.ledger import OP_GRANT, LedgerStore
from creditledger.billing.router import topup_key
from creditledger.billing.topup_failures import TopUpFailureTracker
from creditledger.errors import NotFoundError, PaymentDeclined, TopUpSuppressed, ValidationError
from creditledger.models import BillingCustomer, Subscription
from creditledger.models.credit import TX_TOPUP
from creditledger.services import stripe_gateway

log = logging.getLogger(__name__)

TOPUP_STATUSES = ("active", "trialing", "past_due")
# Processor minimum charge, with headroom for currency conversion
MIN_CHARGE = 60


@dataclass(frozen=True)
class TopUpResult:
    status: str  # succeeded | pending
    payment_intent_id: str
    credits: int
    charged: int
    currency: str
    balance: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "payment_intent": self.payment_intent_id,
            "credits": self.credits,
            "charged": {"amount": self.charged, "currency": self.currency},
            "balance": self.balance,
        }


class TopUpService:
    """On-demand credit purchase charged off-session against the saved card."""

    def __init__(self, session, catalog: PlanCatalog, tracker: TopUpFailureTracker,
                 ledger: Optional[LedgerStore] = None, gateway=stripe_gateway,
                 callbacks: Optional[BillingCallbacks] = None):
        self.session = session
        self.catalog = catalog
        self.tracker = tracker
        self.ledger = ledger or LedgerStore(session)
        self.gateway = gateway
        self.callbacks = callbacks

    def _subscription(self, user_id: str) -> Subscription:
        sub = self.session.execute(
            select(Subscription)
            .filter(Subscription.user_id == user_id, Subscription.status.in_(TOPUP_STATUSES))
            .order_by(Subscription.current_period_start.desc(), Subscription.id.desc())
        ).scalars().first()
        if sub is None:
            raise NotFoundError("No active subscription", user_id=user_id)
        return sub

    def top_up(self, user_id: str, key: str, amount: int, *, payment_method_id: Optional[str] = None,
               idempotency_key: Optional[str] = None) -> TopUpResult:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError("Amount must be a positive integer", amount=amount)

        customer_id = self.session.execute(
            select(BillingCustomer.stripe_customer_id).filter_by(user_id=user_id)
        ).scalar_one_or_none()
        if not customer_id:
            raise NotFoundError("No billing account for user", user_id=user_id)

        sub = self._subscription(user_id)
        plan = self.catalog.plan_for_price(sub.price_id)
        feature = plan.features.get(key)
        if feature is None or not feature.price_per_credit:
            raise ValidationError(f"Top-up not configured for {key}", key=key)
        if feature.track_usage:
            raise ValidationError(f"Top-ups are disabled for {key} because usage is billed", key=key)
        if amount < feature.min_per_purchase:
            raise ValidationError(f"Minimum purchase is {feature.min_per_purchase} credits", key=key)
        if feature.max_per_purchase is not None and amount > feature.max_per_purchase:
            raise ValidationError(f"Maximum purchase is {feature.max_per_purchase} credits", key=key)

        total = amount * feature.price_per_credit
        if total < MIN_CHARGE:
            raise ValidationError(f"Minimum purchase amount is {MIN_CHARGE}", key=key, amount=total)
        currency = plan.currency()

        pm = payment_method_id or self.gateway.default_payment_method(customer_id)
        if not pm:
            raise ValidationError("No payment method on file", user_id=user_id)

        if self.tracker.is_suppressed(user_id, key, pm):
            retry_at = self.tracker.retry_at(user_id, key, pm)
            raise TopUpSuppressed(
                "Automatic top-up is paused after payment failures" if retry_at else
                "Top-up disabled for this payment method",
                retry_at=retry_at, key=key,
            )

        try:
            pi = self.gateway.create_topup_payment_intent(
                customer_id=customer_id,
                amount=total,
                currency=currency,
                payment_method=pm,
                metadata={"top_up_key": key, "top_up_amount": str(amount), "user_id": user_id},
                idempotency_key=idempotency_key,
            )
        except PaymentDeclined as e:
            self.tracker.record_failure(user_id, key, pm, None, e.details.get("decline_code"),
                                        payment_intent_id=e.details.get("payment_intent"))
            raise

        status = pi.get("status")
        if status == "succeeded":
            res = self.ledger.apply(
                user_id, key, OP_GRANT, amount,
                source="topup", source_id=pi["id"], idempotency_key=topup_key(pi["id"]),
                transaction_type=TX_TOPUP, description="top-up",
                metadata={"amount_paid": total, "currency": currency},
            )
            self.tracker.clear_failures(user_id, key, pm)
            if not res.replayed:
                dispatch(self.callbacks, [
                    Notification("on_credits_granted", (user_id, key, res.amount, res.balance, "topup")),
                    Notification("on_topup_completed", (user_id, key, res.amount, res.balance, pi["id"])),
                ])
            log.info("topup succeeded user=%s key=%s credits=%s pi=%s", user_id, key, amount, pi["id"])
            return TopUpResult("succeeded", pi["id"], amount, total, currency, res.balance)

        if status == "processing":
            return TopUpResult("pending", pi["id"], amount, total, currency)

        # requires_action / requires_payment_method: the card needs the customer present
        self.tracker.record_failure(user_id, key, pm, None, status, payment_intent_id=pi.get("id"))
        raise PaymentDeclined("Payment requires customer action", decline_code=status,
                              payment_intent=pi.get("id"), payment_method=pm)
