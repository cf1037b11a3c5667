"""Subscription snapshots -> local subscription rows + credit effects.

`classify_transition` decides what a delivery means; `SubscriptionReconciler`
applies it. The reconciler never commits: the router commits once, together
with the event's processed marker, and only then fires callbacks.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from creditledger.billing.callbacks import Notification
from creditledger.billing.catalog import Plan, PlanCatalog
from creditledger.billing.events import PreviousAttributes, SubscriptionEvent, SubscriptionSnapshot
from creditledger.billing.ledger import OP_GRANT, OP_RECLAIM, OP_SET, LedgerResult, LedgerStore
from creditledger.errors import ConflictError, NotFoundError, ValidationError
from creditledger.models import BillingCustomer, Subscription, SubscriptionItem
from creditledger.models.credit import TX_RECLAIM
from creditledger.utils.helpers import as_utc

log = logging.getLogger(__name__)

ACTIVE_STATUSES = ("active", "trialing")
SOURCE = "subscription"

PLAN_CHANGE_POLICIES = ("reset", "add")
CANCELLATION_POLICIES = ("retain", "reclaim")


class TransitionKind(str, enum.Enum):
    CREATED = "created"
    RENEWED = "renewed"
    CANCELLED = "cancelled"
    PLAN_CHANGED = "plan_changed"
    NOOP = "noop"


@dataclass(frozen=True)
class Transition:
    kind: TransitionKind
    old_price_id: Optional[str] = None


@dataclass(frozen=True)
class PriorState:
    """What the local store knew about a subscription before this delivery."""

    status: str
    price_id: Optional[str] = None
    current_period_start: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Optional[Subscription]) -> Optional["PriorState"]:
        if row is None:
            return None
        return cls(status=row.status, price_id=row.price_id, current_period_start=as_utc(row.current_period_start))


def classify_transition(
    previous: Optional[PriorState],
    current: SubscriptionSnapshot,
    previous_attributes: Optional[PreviousAttributes] = None,
) -> Transition:
    pa = previous_attributes
    is_active = current.status in ACTIVE_STATUSES

    # 1. first sighting of a live subscription (or activation after an incomplete first payment)
    if is_active and (previous is None or previous.status == "incomplete"):
        if current.cancelled_as_duplicate:
            return Transition(TransitionKind.NOOP)
        return Transition(TransitionKind.CREATED)

    # 2. cancellation
    if current.status == "canceled":
        if current.cancelled_as_duplicate:
            return Transition(TransitionKind.NOOP)
        if previous is not None and previous.status == "canceled":
            return Transition(TransitionKind.NOOP)
        if pa is not None and pa.status == "canceled":
            return Transition(TransitionKind.NOOP)
        return Transition(TransitionKind.CANCELLED)

    # 3. price swap
    if pa is not None and pa.has_items and pa.price_id and current.price_id and pa.price_id != current.price_id:
        return Transition(TransitionKind.PLAN_CHANGED, old_price_id=pa.price_id)

    # 4. new billing period
    status_unchanged = pa is None or pa.status is None or pa.status == current.status
    start = as_utc(current.current_period_start)
    if is_active and status_unchanged and start is not None:
        prior_start = previous.current_period_start if previous is not None else None
        if prior_start is not None and start > as_utc(prior_start):
            return Transition(TransitionKind.RENEWED)
        if pa is not None and pa.current_period_start is not None and as_utc(pa.current_period_start) < start:
            return Transition(TransitionKind.RENEWED)

    return Transition(TransitionKind.NOOP)


@dataclass(frozen=True)
class ReconciledSubscription:
    """Immutable view handed to callbacks; safe to read after the commit."""

    id: str
    user_id: str
    customer: str
    status: str
    price_id: Optional[str]
    plan_id: Optional[str]
    metadata: Dict[str, str]
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None


@dataclass
class ReconcileResult:
    transition: Transition
    subscription: ReconciledSubscription
    stale: bool = False
    ledger: List[LedgerResult] = field(default_factory=list)
    notifications: List[Notification] = field(default_factory=list)


# detector(snapshot) -> True when this subscription is a duplicate that must not receive credits
DuplicateDetector = Callable[[SubscriptionSnapshot], bool]


class SubscriptionReconciler:
    def __init__(self, session, catalog: PlanCatalog, ledger: Optional[LedgerStore] = None, *,
                 plan_change_policy: str = "reset", cancellation_policy: str = "retain",
                 duplicate_detector: Optional[DuplicateDetector] = None):
        if plan_change_policy not in PLAN_CHANGE_POLICIES:
            raise ValidationError(f"PLAN_CHANGE_POLICY must be one of {PLAN_CHANGE_POLICIES}")
        if cancellation_policy not in CANCELLATION_POLICIES:
            raise ValidationError(f"CANCELLATION_POLICY must be one of {CANCELLATION_POLICIES}")
        self.session = session
        self.catalog = catalog
        self.ledger = ledger or LedgerStore(session, autocommit=False)
        self.plan_change_policy = plan_change_policy
        self.cancellation_policy = cancellation_policy
        self.duplicate_detector = duplicate_detector

    @classmethod
    def from_config(cls, session, catalog, config, ledger=None, duplicate_detector=None) -> "SubscriptionReconciler":
        return cls(
            session, catalog, ledger,
            plan_change_policy=config.get("PLAN_CHANGE_POLICY", "reset"),
            cancellation_policy=config.get("CANCELLATION_POLICY", "retain"),
            duplicate_detector=duplicate_detector if config.get("DETECT_DUPLICATE_SUBSCRIPTIONS") else None,
        )

    # ----- user resolution -----

    def link_customer(self, user_id: str, customer_id: str, email: Optional[str] = None) -> BillingCustomer:
        bc = self.session.execute(
            select(BillingCustomer).filter_by(stripe_customer_id=customer_id)
        ).scalar_one_or_none()
        if bc is not None:
            return bc
        bc = BillingCustomer(user_id=user_id, stripe_customer_id=customer_id, billing_email=email)
        try:
            with self.session.begin_nested():
                self.session.add(bc)
        except IntegrityError:
            bc = self.session.execute(
                select(BillingCustomer).filter_by(stripe_customer_id=customer_id)
            ).scalar_one_or_none()
            if bc is None:
                raise ConflictError("User already linked to another customer", user_id=user_id, customer=customer_id)
        return bc

    def resolve_user(self, snap: SubscriptionSnapshot) -> str:
        user_id = self.session.execute(
            select(BillingCustomer.user_id).filter_by(stripe_customer_id=snap.customer)
        ).scalar_one_or_none()
        if user_id:
            return user_id
        meta_user = snap.metadata.get("user_id")
        if not meta_user:
            raise NotFoundError("No billing account for customer", customer=snap.customer)
        return self.link_customer(meta_user, snap.customer).user_id

    def _plan(self, price_id: Optional[str]) -> Plan:
        return self.catalog.plan_for_price(price_id)

    # ----- snapshot persistence -----

    def _lock_row(self, sub_id: str) -> Optional[Subscription]:
        return self.session.execute(
            select(Subscription)
            .filter_by(stripe_subscription_id=sub_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _store(self, row: Optional[Subscription], snap: SubscriptionSnapshot, user_id: str) -> Subscription:
        if row is None:
            row = Subscription(stripe_subscription_id=snap.id)
            try:
                with self.session.begin_nested():
                    self._copy(row, snap, user_id)
                    self.session.add(row)
                    self.session.flush()
            except IntegrityError:
                raise ConflictError("Subscription row created concurrently", subscription=snap.id)
            return row
        self._copy(row, snap, user_id)
        return row

    def _copy(self, row: Subscription, snap: SubscriptionSnapshot, user_id: str) -> None:
        row.stripe_customer_id = snap.customer
        row.user_id = user_id
        row.status = snap.status
        row.price_id = snap.price_id
        row.metadata_json = dict(snap.metadata)
        row.current_period_start = snap.current_period_start
        row.current_period_end = snap.current_period_end
        row.cancel_at_period_end = snap.cancel_at_period_end
        row.canceled_at = snap.canceled_at
        row.items = [
            SubscriptionItem(stripe_item_id=i.id, price_id=i.price_id, quantity=i.quantity)
            for i in snap.items
        ]

    @staticmethod
    def _is_stale(row: Optional[Subscription], snap: SubscriptionSnapshot) -> bool:
        if row is None or row.current_period_start is None or snap.current_period_start is None:
            return False
        return as_utc(snap.current_period_start) < as_utc(row.current_period_start)

    # ----- main entry -----

    def reconcile(self, event: SubscriptionEvent) -> ReconcileResult:
        snap = event.subscription
        row = self._lock_row(snap.id)

        if (row is None and snap.status in ACTIVE_STATUSES and not snap.cancelled_as_duplicate
                and self.duplicate_detector is not None and self.duplicate_detector(snap)):
            log.warning("duplicate subscription %s for customer %s; skipping credits", snap.id, snap.customer)
            snap = replace(snap, metadata={**snap.metadata, "cancelled_as_duplicate": "true"})

        transition = classify_transition(PriorState.from_row(row), snap, event.previous_attributes)
        user_id = self.resolve_user(snap)

        stale = self._is_stale(row, snap)
        if stale:
            log.info("stale snapshot for %s ignored (event %s)", snap.id, event.id)
        else:
            row = self._store(row, snap, user_id)

        plan = self.catalog.find_plan_for_price(snap.price_id)
        view = ReconciledSubscription(
            id=snap.id,
            user_id=user_id,
            customer=snap.customer,
            status=snap.status,
            price_id=snap.price_id,
            plan_id=plan.id if plan else None,
            metadata=dict(snap.metadata),
            current_period_start=snap.current_period_start,
            current_period_end=snap.current_period_end,
        )
        result = ReconcileResult(transition=transition, subscription=view, stale=stale)

        kind = transition.kind
        if kind == TransitionKind.CREATED:
            self._on_created(event, user_id, result)
            result.notifications.append(Notification("on_subscription_created", (view,)))
        elif kind == TransitionKind.RENEWED:
            self._on_renewed(event, user_id, result)
            result.notifications.append(Notification("on_subscription_renewed", (view,)))
        elif kind == TransitionKind.PLAN_CHANGED:
            self._on_plan_changed(event, user_id, transition.old_price_id, result)
            result.notifications.append(Notification("on_subscription_plan_changed", (view, transition.old_price_id)))
        elif kind == TransitionKind.CANCELLED:
            self._on_cancelled(event, user_id, result)
            result.notifications.append(Notification("on_subscription_cancelled", (view,)))

        log.info("subscription %s event=%s transition=%s", snap.id, event.id, kind.value)
        return result

    # ----- effects -----

    def _write(self, result: ReconcileResult, user_id: str, key: str, op: str, amount, idem: str,
               transaction_type=None, description=None) -> LedgerResult:
        res = self.ledger.apply(
            user_id, key, op, amount,
            source=SOURCE, source_id=result.subscription.id, idempotency_key=idem,
            transaction_type=transaction_type, description=description,
        )
        result.ledger.append(res)
        if res.amount > 0 and not res.replayed:
            result.notifications.append(Notification(
                "on_credits_granted", (user_id, key, res.amount, res.balance, SOURCE),
            ))
        return res

    def _on_created(self, event: SubscriptionEvent, user_id: str, result: ReconcileResult) -> None:
        plan = self._plan(event.subscription.price_id)
        for feature in plan.credit_features():
            op = OP_SET if feature.on_renewal == "reset" else OP_GRANT
            self._write(result, user_id, feature.key, op, feature.allocation,
                        f"sub:{event.id}:{feature.key}", description=f"{plan.name} allocation")

    def _on_renewed(self, event: SubscriptionEvent, user_id: str, result: ReconcileResult) -> None:
        plan = self._plan(event.subscription.price_id)
        for feature in plan.credit_features():
            op = OP_SET if feature.on_renewal == "reset" else OP_GRANT
            self._write(result, user_id, feature.key, op, feature.allocation,
                        f"sub:{event.id}:{feature.key}", description=f"{plan.name} renewal ({feature.on_renewal})")

    def _on_plan_changed(self, event: SubscriptionEvent, user_id: str, old_price_id: Optional[str],
                         result: ReconcileResult) -> None:
        new_plan = self._plan(event.subscription.price_id)
        old_plan = self.catalog.find_plan_for_price(old_price_id)
        new_keys = {f.key: f for f in new_plan.credit_features()}

        if self.plan_change_policy == "reset":
            for key, feature in new_keys.items():
                self._write(result, user_id, key, OP_RECLAIM, None, f"sub:{event.id}:{key}:reclaim",
                            transaction_type=TX_RECLAIM, description="plan change")
                self._write(result, user_id, key, OP_GRANT, feature.allocation, f"sub:{event.id}:{key}",
                            description=f"{new_plan.name} allocation")
            if old_plan is not None:
                for old in old_plan.credit_features():
                    if old.key in new_keys:
                        continue
                    self._write(result, user_id, old.key, OP_RECLAIM, old.allocation,
                                f"sub:{event.id}:{old.key}:reclaim", transaction_type=TX_RECLAIM,
                                description="plan change")
        else:
            for key, feature in new_keys.items():
                self._write(result, user_id, key, OP_GRANT, feature.allocation, f"sub:{event.id}:{key}",
                            description=f"{new_plan.name} allocation")

    def _on_cancelled(self, event: SubscriptionEvent, user_id: str, result: ReconcileResult) -> None:
        if self.cancellation_policy != "reclaim":
            return
        granted = self.ledger.granted_by_source(user_id, SOURCE, event.subscription.id)
        for key, net in granted.items():
            if net <= 0:
                continue
            self._write(result, user_id, key, OP_RECLAIM, net, f"sub:{event.id}:{key}:reclaim",
                        transaction_type=TX_RECLAIM, description="subscription cancelled")
