"""Host notification hooks. Fired only after the state they describe is committed."""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

log = logging.getLogger(__name__)


class BillingCallbacks:
    """Subclass and override what the host cares about. Defaults do nothing."""

    def on_subscription_created(self, sub) -> None:
        pass

    def on_subscription_cancelled(self, sub) -> None:
        pass

    def on_subscription_renewed(self, sub) -> None:
        pass

    def on_subscription_plan_changed(self, sub, old_price_id: Optional[str]) -> None:
        pass

    def on_credits_granted(self, user_id: str, key: str, amount: int, balance: int, source: str) -> None:
        pass

    def on_topup_completed(self, user_id: str, key: str, amount: int, balance: int, payment_intent_id: str) -> None:
        pass


@dataclass
class Notification:
    name: str
    args: Tuple[Any, ...] = ()
    kwargs: Dict[str, Any] = field(default_factory=dict)


def dispatch(callbacks: Optional[BillingCallbacks], notifications: List[Notification]) -> None:
    """Best effort: a failing hook is logged and never undoes committed state."""
    if callbacks is None:
        return
    for note in notifications:
        hook = getattr(callbacks, note.name, None)
        if hook is None:
            continue
        try:
            hook(*note.args, **note.kwargs)
        except Exception:
            log.exception("billing callback %s failed", note.name)
