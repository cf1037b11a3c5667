from .billing_customer import BillingCustomer
from .subscription import Subscription, SubscriptionItem
from .billing_event import BillingEventLog
from .credit import CreditBalance, CreditLedgerEntry
from .usage_event import UsageEvent
from .topup_failure import TopUpFailure

__all__ = [
    "BillingCustomer",
    "Subscription",
    "SubscriptionItem",
    "BillingEventLog",
    "CreditBalance",
    "CreditLedgerEntry",
    "UsageEvent",
    "TopUpFailure",
]
