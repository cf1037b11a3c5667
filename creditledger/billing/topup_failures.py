import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from creditledger.models import TopUpFailure
from creditledger.utils.helpers import as_utc, utcnow

log = logging.getLogger(__name__)

DECLINE_HARD = "hard"
DECLINE_SOFT = "soft"

# Declines that will not succeed on retry with the same card
HARD_DECLINE_CODES = frozenset({
    "expired_card",
    "stolen_card",
    "lost_card",
    "pickup_card",
    "fraudulent",
    "invalid_account",
    "restricted_card",
    "invalid_cvc",
    "incorrect_cvc",
    "invalid_number",
    "incorrect_number",
})


def classify_decline(code: Optional[str]) -> str:
    return DECLINE_HARD if (code or "").lower() in HARD_DECLINE_CODES else DECLINE_SOFT


class TopUpFailureTracker:
    """Per (user, key, payment method) decline history with exponential cooldown.

    Consulted by whoever initiates a top-up; the ledger never looks at it.
    """

    def __init__(self, session, *, cooldown_base: int = 3600, cooldown_max: int = 7 * 24 * 3600,
                 max_soft_failures: int = 3, autocommit: bool = True):
        self.session = session
        self.cooldown_base = int(cooldown_base)
        self.cooldown_max = int(cooldown_max)
        self.max_soft_failures = int(max_soft_failures)
        self.autocommit = autocommit

    @classmethod
    def from_config(cls, session, config, autocommit: bool = True) -> "TopUpFailureTracker":
        return cls(
            session,
            cooldown_base=config.get("TOPUP_COOLDOWN_BASE_SECONDS", 3600),
            cooldown_max=config.get("TOPUP_COOLDOWN_MAX_SECONDS", 7 * 24 * 3600),
            max_soft_failures=config.get("TOPUP_MAX_SOFT_FAILURES", 3),
            autocommit=autocommit,
        )

    def _rows(self, user_id: str, key: str, payment_method_id: Optional[str]) -> List[TopUpFailure]:
        q = select(TopUpFailure).filter_by(user_id=user_id, key=key)
        if payment_method_id is not None:
            q = q.filter_by(payment_method_id=payment_method_id)
        return list(self.session.execute(q.order_by(TopUpFailure.id)).scalars())

    def record_failure(self, user_id: str, key: str, payment_method_id: Optional[str] = None,
                       decline_type: Optional[str] = None, decline_code: Optional[str] = None,
                       now: Optional[datetime] = None, payment_intent_id: Optional[str] = None) -> TopUpFailure:
        """Count one decline. A decline already counted for `payment_intent_id` is not counted again."""
        pm = payment_method_id or ""
        if decline_type not in (DECLINE_HARD, DECLINE_SOFT):
            decline_type = classify_decline(decline_code)
        now = now or utcnow()

        try:
            with self.session.begin_nested():
                self.session.add(TopUpFailure(
                    user_id=user_id, key=key, payment_method_id=pm,
                    decline_type=decline_type, failure_count=0, last_failure_at=now, disabled=False,
                ))
        except IntegrityError:
            pass  # row already there

        row = self.session.execute(
            select(TopUpFailure)
            .filter_by(user_id=user_id, key=key, payment_method_id=pm)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one()

        if payment_intent_id and row.last_payment_intent_id == payment_intent_id:
            if self.autocommit:
                self.session.commit()
            log.info("topup failure already counted user=%s key=%s pi=%s", user_id, key, payment_intent_id)
            return row

        row.failure_count = int(row.failure_count or 0) + 1
        row.last_failure_at = now
        row.decline_type = decline_type
        row.decline_code = decline_code
        if payment_intent_id:
            row.last_payment_intent_id = payment_intent_id
        if decline_type == DECLINE_HARD or row.failure_count >= self.max_soft_failures:
            row.disabled = True

        if self.autocommit:
            self.session.commit()
        log.info(
            "topup failure user=%s key=%s pm=%s type=%s code=%s count=%s disabled=%s",
            user_id, key, pm, decline_type, decline_code, row.failure_count, row.disabled,
        )
        return row

    def cooldown(self, failure_count: int) -> timedelta:
        if failure_count <= 0:
            return timedelta(0)
        seconds = self.cooldown_base * (2 ** (failure_count - 1))
        return timedelta(seconds=min(seconds, self.cooldown_max))

    def _retry_at(self, row: TopUpFailure) -> Optional[datetime]:
        if row.disabled:
            return None
        return as_utc(row.last_failure_at) + self.cooldown(int(row.failure_count or 0))

    def _suppressed(self, row: TopUpFailure, now: datetime) -> bool:
        if row.disabled:
            return True
        return now < self._retry_at(row)

    def is_suppressed(self, user_id: str, key: str, payment_method_id: Optional[str] = None,
                      now: Optional[datetime] = None) -> bool:
        """True when a top-up should not be attempted.

        With no payment method every tracked method for the key is considered.
        """
        now = as_utc(now) or utcnow()
        return any(self._suppressed(r, now) for r in self._rows(user_id, key, payment_method_id))

    def retry_at(self, user_id: str, key: str, payment_method_id: Optional[str] = None,
                 now: Optional[datetime] = None) -> Optional[datetime]:
        """Earliest time a retry is allowed; None when not suppressed or permanently disabled."""
        now = as_utc(now) or utcnow()
        latest = None
        for row in self._rows(user_id, key, payment_method_id):
            if row.disabled:
                return None
            at = self._retry_at(row)
            if at > now and (latest is None or at > latest):
                latest = at
        return latest

    def status(self, user_id: str, key: str, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        now = as_utc(now) or utcnow()
        out = []
        for row in self._rows(user_id, key, None):
            retry = self._retry_at(row)
            out.append({
                "payment_method_id": row.payment_method_id or None,
                "decline_type": row.decline_type,
                "decline_code": row.decline_code,
                "failure_count": int(row.failure_count or 0),
                "last_failure_at": as_utc(row.last_failure_at).isoformat() if row.last_failure_at else None,
                "disabled": bool(row.disabled),
                "retry_at": retry.isoformat() if retry else None,
                "suppressed": self._suppressed(row, now),
            })
        return out

    def clear_failures(self, user_id: str, key: str, payment_method_id: Optional[str] = None) -> int:
        stmt = delete(TopUpFailure).where(
            TopUpFailure.user_id == user_id,
            TopUpFailure.key == key,
            TopUpFailure.payment_method_id == (payment_method_id or ""),
        )
        removed = self.session.execute(stmt).rowcount or 0
        if self.autocommit:
            self.session.commit()
        return removed

    def unblock_all(self, user_id: str, key: Optional[str] = None) -> int:
        stmt = delete(TopUpFailure).where(TopUpFailure.user_id == user_id)
        if key is not None:
            stmt = stmt.where(TopUpFailure.key == key)
        removed = self.session.execute(stmt).rowcount or 0
        if self.autocommit:
            self.session.commit()
        if removed:
            log.info("topup unblock user=%s key=%s rows=%s", user_id, key, removed)
        return removed
