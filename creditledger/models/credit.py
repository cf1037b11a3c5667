from sqlalchemy import func, CheckConstraint, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP
from creditledger.extensions import db

_JSON = db.JSON().with_variant(JSONB(), "postgresql")

TX_GRANT = "grant"
TX_DEBIT = "debit"
TX_REFUND = "refund"
TX_TOPUP = "topup"
TX_OVERAGE = "overage"
TX_RECLAIM = "reclaim"

TRANSACTION_TYPES = (TX_GRANT, TX_DEBIT, TX_REFUND, TX_TOPUP, TX_OVERAGE, TX_RECLAIM)


class CreditBalance(db.Model):
    """Materialized balance per (user, key). Only the ledger store writes it."""

    __tablename__ = "credit_balances"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(128), nullable=False, index=True)
    key = db.Column(db.String(64), nullable=False)
    balance = db.Column(db.BigInteger, nullable=False, default=0, server_default="0")
    currency = db.Column(db.String(8), nullable=True)

    created_at = db.Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("user_id", "key", name="uq_credit_balances_user_key"),
    )

    def __repr__(self) -> str:
        return f"<CreditBalance user_id={self.user_id!r} key={self.key!r} balance={self.balance}>"


class CreditLedgerEntry(db.Model):
    """Immutable ledger entry. Never updated or deleted."""

    __tablename__ = "credit_ledger"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(128), nullable=False, index=True)
    key = db.Column(db.String(64), nullable=False, index=True)
    amount = db.Column(db.BigInteger, nullable=False)
    balance_after = db.Column(db.BigInteger, nullable=False)
    transaction_type = db.Column(db.String(16), nullable=False)
    source = db.Column(db.String(32), nullable=False)
    source_id = db.Column(db.String(255), nullable=True, index=True)
    idempotency_key = db.Column(db.String(255), nullable=True)
    description = db.Column(db.String(255), nullable=True)
    metadata_json = db.Column(_JSON, nullable=True)

    created_at = db.Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now(), index=True)

    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_credit_ledger_idempotency_key"),
        CheckConstraint(
            "transaction_type IN ('grant','debit','refund','topup','overage','reclaim')",
            name="ck_credit_ledger_transaction_type",
        ),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "key": self.key,
            "amount": int(self.amount),
            "balance_after": int(self.balance_after),
            "transaction_type": self.transaction_type,
            "source": self.source,
            "source_id": self.source_id,
            "description": self.description,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return (
            f"<CreditLedgerEntry id={self.id} user_id={self.user_id!r} key={self.key!r} "
            f"amount={self.amount} type={self.transaction_type!r}>"
        )
