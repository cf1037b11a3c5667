"""Append-only credit ledger with a materialized per-(user, key) balance.

Each mutation runs as: ensure balance row -> lock it -> check the idempotency
key under the lock -> compute -> update balance + insert entry. The unique
index on `credit_ledger.idempotency_key` backs up the lock when two writers
race on the same key from different rows.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from creditledger.errors import ConflictError, InsufficientBalance, ValidationError
from creditledger.models import CreditBalance, CreditLedgerEntry
from creditledger.models.credit import (
    TX_DEBIT,
    TX_GRANT,
    TX_RECLAIM,
    TX_REFUND,
    TRANSACTION_TYPES,
)

log = logging.getLogger(__name__)

OP_GRANT = "grant"
OP_DEBIT = "debit"
OP_SET = "set"
OP_RECLAIM = "reclaim"


@dataclass(frozen=True)
class LedgerResult:
    balance: int
    entry_id: Optional[int]
    amount: int
    replayed: bool = False


def _require_positive(amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("Amount must be a positive integer", amount=amount)
    return amount


class LedgerStore:
    """Owns `credit_balances` and `credit_ledger`.

    With ``autocommit=True`` (host API, CLI) every mutation commits on its own.
    With ``autocommit=False`` the caller commits, which lets the webhook router
    land ledger writes in the same commit as the event's processed marker.
    """

    def __init__(self, session, autocommit: bool = True):
        self.session = session
        self.autocommit = autocommit

    # ----- reads -----

    def get_balance(self, user_id: str, key: str) -> int:
        value = self.session.execute(
            select(CreditBalance.balance).filter_by(user_id=user_id, key=key)
        ).scalar_one_or_none()
        return int(value or 0)

    def get_all_balances(self, user_id: str) -> Dict[str, int]:
        rows = self.session.execute(
            select(CreditBalance.key, CreditBalance.balance)
            .filter_by(user_id=user_id)
            .order_by(CreditBalance.key)
        ).all()
        return {k: int(b) for k, b in rows}

    def history(self, user_id: str, key: Optional[str] = None, limit: int = 50, offset: int = 0) -> List[CreditLedgerEntry]:
        q = select(CreditLedgerEntry).filter_by(user_id=user_id)
        if key is not None:
            q = q.filter_by(key=key)
        q = q.order_by(CreditLedgerEntry.created_at.desc(), CreditLedgerEntry.id.desc())
        q = q.limit(max(1, min(int(limit), 500))).offset(max(0, int(offset)))
        return list(self.session.execute(q).scalars())

    def granted_by_source(self, user_id: str, source: str, source_id: str) -> Dict[str, int]:
        """Net credits per key (grants minus reclaims) recorded against one source."""
        rows = self.session.execute(
            select(CreditLedgerEntry.key, func.coalesce(func.sum(CreditLedgerEntry.amount), 0))
            .filter_by(user_id=user_id, source=source, source_id=source_id)
            .group_by(CreditLedgerEntry.key)
            .order_by(CreditLedgerEntry.key)
        ).all()
        return {k: int(total) for k, total in rows}

    def find_entry(self, idempotency_key: str) -> Optional[CreditLedgerEntry]:
        return self.session.execute(
            select(CreditLedgerEntry).filter_by(idempotency_key=idempotency_key)
        ).scalar_one_or_none()

    # ----- writes -----

    def grant(self, user_id, key, amount, source, source_id=None, idempotency_key=None,
              transaction_type=TX_GRANT, **kw) -> int:
        _require_positive(amount)
        return self.apply(user_id, key, OP_GRANT, amount, source=source, source_id=source_id,
                          idempotency_key=idempotency_key, transaction_type=transaction_type, **kw).balance

    def refund(self, user_id, key, amount, source, source_id=None, idempotency_key=None, **kw) -> int:
        return self.grant(user_id, key, amount, source, source_id, idempotency_key, transaction_type=TX_REFUND, **kw)

    def debit(self, user_id, key, amount, source, source_id=None, idempotency_key=None, **kw) -> int:
        _require_positive(amount)
        return self.apply(user_id, key, OP_DEBIT, amount, source=source, source_id=source_id,
                          idempotency_key=idempotency_key, transaction_type=TX_DEBIT, **kw).balance

    def set_balance(self, user_id, key, value, source, source_id=None, idempotency_key=None, **kw) -> int:
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValidationError("Balance must be a non-negative integer", value=value)
        return self.apply(user_id, key, OP_SET, value, source=source, source_id=source_id,
                          idempotency_key=idempotency_key, **kw).balance

    def reclaim(self, user_id, key, max_amount=None, source="system", source_id=None, idempotency_key=None, **kw) -> int:
        """Remove up to `max_amount` credits (all of them when None); never goes below zero."""
        if max_amount is not None and (isinstance(max_amount, bool) or not isinstance(max_amount, int) or max_amount < 0):
            raise ValidationError("Reclaim amount must be a non-negative integer", amount=max_amount)
        return self.apply(user_id, key, OP_RECLAIM, max_amount, source=source, source_id=source_id,
                          idempotency_key=idempotency_key, transaction_type=TX_RECLAIM, **kw).balance

    def apply(
        self,
        user_id: str,
        key: str,
        op: str,
        amount: Optional[int],
        *,
        source: str,
        source_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        transaction_type: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        currency: Optional[str] = None,
    ) -> LedgerResult:
        if not user_id or not key:
            raise ValidationError("user_id and key are required")
        if transaction_type is not None and transaction_type not in TRANSACTION_TYPES:
            raise ValidationError(f"Unknown transaction type {transaction_type!r}")

        session = self.session
        self._ensure_balance_row(user_id, key, currency)
        row = self._lock_balance(user_id, key)

        if idempotency_key:
            prior = self.find_entry(idempotency_key)
            if prior is not None:
                self._finish()
                return LedgerResult(int(prior.balance_after), prior.id, int(prior.amount), replayed=True)

        before = int(row.balance)
        delta = self._delta(op, before, amount, user_id, key)

        if delta == 0 and not idempotency_key:
            self._finish()
            return LedgerResult(before, None, 0)

        if transaction_type is None:
            transaction_type = TX_GRANT if delta >= 0 else TX_RECLAIM

        entry = CreditLedgerEntry(
            user_id=user_id,
            key=key,
            amount=delta,
            balance_after=before + delta,
            transaction_type=transaction_type,
            source=source,
            source_id=source_id,
            idempotency_key=idempotency_key or None,
            description=description,
            metadata_json=metadata,
        )
        try:
            with session.begin_nested():
                row.balance = before + delta
                session.add(entry)
                session.flush()
        except IntegrityError:
            # Another writer committed the same idempotency key first
            session.refresh(row)
            prior = self.find_entry(idempotency_key) if idempotency_key else None
            if prior is None:
                raise ConflictError("Idempotency conflict with no committed entry", idempotency_key=idempotency_key)
            log.info("ledger idempotency conflict recovered key=%s", idempotency_key)
            self._finish()
            return LedgerResult(int(prior.balance_after), prior.id, int(prior.amount), replayed=True)

        self._finish()
        log.debug("ledger %s user=%s key=%s amount=%s balance=%s", transaction_type, user_id, key, delta, before + delta)
        return LedgerResult(before + delta, entry.id, delta)

    # ----- internals -----

    def _delta(self, op: str, before: int, amount: Optional[int], user_id: str, key: str) -> int:
        if op == OP_GRANT:
            return amount
        if op == OP_DEBIT:
            if amount > before:
                self._abort()
                raise InsufficientBalance(user_id=user_id, key=key, balance=before, requested=amount)
            return -amount
        if op == OP_SET:
            return amount - before
        if op == OP_RECLAIM:
            return -(before if amount is None else min(amount, before))
        raise ValidationError(f"Unknown ledger operation {op!r}")

    def _ensure_balance_row(self, user_id: str, key: str, currency: Optional[str]) -> None:
        exists = self.session.execute(
            select(CreditBalance.id).filter_by(user_id=user_id, key=key)
        ).scalar_one_or_none()
        if exists is not None:
            return
        try:
            with self.session.begin_nested():
                self.session.add(CreditBalance(user_id=user_id, key=key, balance=0, currency=currency))
        except IntegrityError:
            pass  # created concurrently; the lock below picks it up

    def _lock_balance(self, user_id: str, key: str) -> CreditBalance:
        return self.session.execute(
            select(CreditBalance)
            .filter_by(user_id=user_id, key=key)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one()

    def _finish(self) -> None:
        if self.autocommit:
            self.session.commit()

    def _abort(self) -> None:
        if self.autocommit:
            self.session.rollback()
