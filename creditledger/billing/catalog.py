"""Plan catalog: immutable plan/price/credit configuration loaded at startup.

Catalog file shape (JSON)::

    {
      "test": {"plans": [
        {"id": "pro", "name": "Pro",
         "price": [{"id": "price_pro_monthly", "amount": 2000, "currency": "usd", "interval": "month"}],
         "features": {"api_calls": {"credits": {"allocation": 1000, "onRenewal": "reset"},
                                    "pricePerCredit": 2, "trackUsage": false}}}
      ]},
      "production": {"plans": [...]}
    }
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from creditledger.errors import NotFoundError, ValidationError

INTERVALS = ("month", "year", "week", "one_time")
RENEWAL_POLICIES = ("reset", "add")


@dataclass(frozen=True)
class Price:
    id: str
    amount: int
    currency: str
    interval: str
    plan_id: str


@dataclass(frozen=True)
class FeatureConfig:
    key: str
    allocation: int = 0
    on_renewal: str = "reset"
    price_per_credit: Optional[int] = None
    track_usage: bool = False
    min_per_purchase: int = 1
    max_per_purchase: Optional[int] = None

    @property
    def has_credits(self) -> bool:
        return self.allocation > 0

    @property
    def usage_billed(self) -> bool:
        return self.track_usage and self.price_per_credit is not None


@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    prices: Tuple[Price, ...]
    features: Dict[str, FeatureConfig] = field(default_factory=dict)

    def credit_features(self) -> List[FeatureConfig]:
        return [f for f in self.features.values() if f.has_credits]

    def currency(self) -> str:
        return self.prices[0].currency if self.prices else "usd"


def _parse_feature(key: str, raw: Dict[str, Any]) -> FeatureConfig:
    credits = raw.get("credits") or {}
    on_renewal = credits.get("onRenewal", "reset")
    if on_renewal not in RENEWAL_POLICIES:
        raise ValidationError(f"Feature {key!r}: onRenewal must be one of {RENEWAL_POLICIES}")
    allocation = int(credits.get("allocation", 0))
    if allocation < 0:
        raise ValidationError(f"Feature {key!r}: allocation cannot be negative")
    ppc = raw.get("pricePerCredit")
    return FeatureConfig(
        key=key,
        allocation=allocation,
        on_renewal=on_renewal,
        price_per_credit=int(ppc) if ppc is not None else None,
        track_usage=bool(raw.get("trackUsage", False)),
        min_per_purchase=int(raw.get("minPerPurchase", 1)),
        max_per_purchase=int(raw["maxPerPurchase"]) if raw.get("maxPerPurchase") is not None else None,
    )


def _parse_plan(raw: Dict[str, Any]) -> Plan:
    name = raw.get("name")
    if not name:
        raise ValidationError("Plan is missing a name")
    plan_id = raw.get("id") or name
    prices = []
    for p in raw.get("price") or []:
        interval = p.get("interval")
        if interval not in INTERVALS:
            raise ValidationError(f"Plan {plan_id!r}: unknown interval {interval!r}")
        if not p.get("id"):
            raise ValidationError(f"Plan {plan_id!r}: price for {interval!r} has no id")
        prices.append(Price(
            id=p["id"],
            amount=int(p.get("amount", 0)),
            currency=(p.get("currency") or "usd").lower(),
            interval=interval,
            plan_id=plan_id,
        ))
    features = {k: _parse_feature(k, v or {}) for k, v in (raw.get("features") or {}).items()}
    return Plan(id=plan_id, name=name, prices=tuple(prices), features=features)


class PlanCatalog:
    """Resolves plans by id/name + interval, and price ids back to plans."""

    def __init__(self, plans: Iterable[Plan]):
        self._plans: List[Plan] = list(plans)
        self._by_price: Dict[str, Plan] = {}
        for plan in self._plans:
            for price in plan.prices:
                if price.id in self._by_price:
                    raise ValidationError(f"Price id {price.id!r} is used by more than one plan")
                self._by_price[price.id] = plan

    @classmethod
    def from_dicts(cls, plans: Iterable[Dict[str, Any]]) -> "PlanCatalog":
        return cls(_parse_plan(p) for p in plans)

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "PlanCatalog":
        inline = config.get("BILLING_PLANS")
        if inline is not None:
            return cls.from_dicts(inline)
        path = config.get("BILLING_PLANS_FILE")
        if not path:
            return cls([])
        with open(path, "r", encoding="utf-8") as fh:
            doc = json.load(fh)
        mode = config.get("BILLING_MODE", "test")
        section = doc.get(mode) or {}
        return cls.from_dicts(section.get("plans") or [])

    @property
    def plans(self) -> List[Plan]:
        return list(self._plans)

    def get_plan(self, plan_ref: str) -> Plan:
        for plan in self._plans:
            if plan.id == plan_ref or plan.name == plan_ref:
                return plan
        raise NotFoundError(f"Unknown plan {plan_ref!r}", plan=plan_ref)

    def resolve(self, plan_ref: str, interval: Optional[str] = None) -> Price:
        plan = self.get_plan(plan_ref)
        if interval is None:
            if len(plan.prices) == 1:
                return plan.prices[0]
            raise ValidationError(
                f"Plan {plan.name!r} has {len(plan.prices)} prices; an interval is required",
                plan=plan.id,
            )
        for price in plan.prices:
            if price.interval == interval:
                return price
        raise NotFoundError(f"Plan {plan.name!r} has no {interval!r} price", plan=plan.id, interval=interval)

    def plan_for_price(self, price_id: Optional[str]) -> Plan:
        plan = self._by_price.get(price_id or "")
        if plan is None:
            raise NotFoundError(f"Unknown price {price_id!r}", price_id=price_id)
        return plan

    def find_plan_for_price(self, price_id: Optional[str]) -> Optional[Plan]:
        return self._by_price.get(price_id or "")
