import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from creditledger.billing.catalog import Plan
from creditledger.billing.ledger import OP_GRANT, LedgerStore
from creditledger.errors import ValidationError
from creditledger.models import UsageEvent
from creditledger.models.credit import TX_OVERAGE
from creditledger.utils.helpers import as_utc, to_epoch, utcnow

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class OverageCharge:
    user_id: str
    key: str
    quantity: int
    amount: int
    currency: str
    idempotency_key: str
    charge_id: Optional[str] = None


# charger(user_id=, key=, quantity=, amount=, currency=, idempotency_key=, description=) -> charge id
Charger = Callable[..., Optional[str]]


def overage_key(user_id: str, key: str, period_start: datetime) -> str:
    return f"overage:{user_id}:{key}:{to_epoch(period_start)}"


def period_containing(period_start: datetime, period_end: datetime, at: datetime) -> Tuple[datetime, datetime]:
    """Stored period, rolled forward by its own length until it contains `at`.

    Covers the gap between the period ending and the renewal event arriving.
    """
    start, end, at = as_utc(period_start), as_utc(period_end), as_utc(at)
    length = end - start
    if length <= timedelta(0):
        raise ValidationError("Usage period must have start < end")
    if at >= end:
        skipped = (at - end) // length
        start = end + skipped * length
        end = start + length
    return start, end


class UsageAggregator:
    def __init__(self, session, ledger: Optional[LedgerStore] = None, autocommit: bool = True):
        self.session = session
        self.autocommit = autocommit
        self.ledger = ledger or LedgerStore(session, autocommit=autocommit)

    def record_usage(self, user_id: str, key: str, amount: int, period_start: datetime, period_end: datetime,
                     meter_event_id: Optional[str] = None, occurred_at: Optional[datetime] = None) -> UsageEvent:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError("Usage amount must be a positive integer", amount=amount)
        period_start, period_end = as_utc(period_start), as_utc(period_end)
        if not period_start or not period_end or period_start >= period_end:
            raise ValidationError("Usage period must have start < end")
        occurred_at = as_utc(occurred_at) or utcnow()
        if not (period_start <= occurred_at < period_end):
            raise ValidationError(
                "Usage timestamp falls outside the billing period",
                occurred_at=occurred_at, period_start=period_start, period_end=period_end,
            )

        if meter_event_id:
            existing = self._by_meter_id(meter_event_id)
            if existing is not None:
                return existing

        event = UsageEvent(
            user_id=user_id, key=key, amount=amount, occurred_at=occurred_at,
            period_start=period_start, period_end=period_end, meter_event_id=meter_event_id or None,
        )
        try:
            with self.session.begin_nested():
                self.session.add(event)
                self.session.flush()
        except IntegrityError:
            existing = self._by_meter_id(meter_event_id) if meter_event_id else None
            if existing is None:
                raise
            return existing

        if self.autocommit:
            self.session.commit()
        return event

    def _by_meter_id(self, meter_event_id: str) -> Optional[UsageEvent]:
        return self.session.execute(
            select(UsageEvent).filter_by(meter_event_id=meter_event_id)
        ).scalar_one_or_none()

    def period_total(self, user_id: str, key: str, period_start: datetime, period_end: datetime) -> int:
        total = self.session.execute(
            select(func.coalesce(func.sum(UsageEvent.amount), 0)).where(
                UsageEvent.user_id == user_id,
                UsageEvent.key == key,
                UsageEvent.occurred_at >= as_utc(period_start),
                UsageEvent.occurred_at < as_utc(period_end),
            )
        ).scalar_one()
        return int(total)

    def history(self, user_id: str, key: str, limit: int = 50) -> List[UsageEvent]:
        return list(self.session.execute(
            select(UsageEvent)
            .filter_by(user_id=user_id, key=key)
            .order_by(UsageEvent.occurred_at.desc(), UsageEvent.id.desc())
            .limit(limit)
        ).scalars())

    def close_period(self, user_id: str, plan: Plan, period_start: datetime, period_end: datetime,
                     source_id: Optional[str], charger: Charger) -> List[OverageCharge]:
        """Bill usage beyond the plan allocation once per (user, key, period)."""
        charges = []
        for feature in plan.features.values():
            if not feature.usage_billed:
                continue
            idem = overage_key(user_id, feature.key, period_start)
            if self.ledger.find_entry(idem) is not None:
                log.debug("overage already charged %s", idem)
                continue

            total = self.period_total(user_id, feature.key, period_start, period_end)
            overage = max(0, total - feature.allocation)
            if overage <= 0:
                continue

            amount = overage * feature.price_per_credit
            currency = plan.currency()
            charge_id = charger(
                user_id=user_id,
                key=feature.key,
                quantity=overage,
                amount=amount,
                currency=currency,
                idempotency_key=idem,
                description=f"{feature.key} overage: {overage} over {feature.allocation}",
            )
            # Zero-amount marker entry: the period is charged
            self.ledger.apply(
                user_id, feature.key, OP_GRANT, 0,
                source="invoice", source_id=source_id, idempotency_key=idem,
                transaction_type=TX_OVERAGE,
                description=f"overage {overage} @ {feature.price_per_credit}",
                metadata={"quantity": overage, "amount": amount, "currency": currency, "charge_id": charge_id},
            )
            log.info("overage charged user=%s key=%s quantity=%s amount=%s", user_id, feature.key, overage, amount)
            charges.append(OverageCharge(user_id, feature.key, overage, amount, currency, idem, charge_id))
        return charges
