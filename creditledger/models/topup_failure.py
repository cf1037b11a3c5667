from sqlalchemy import func, false, UniqueConstraint
from sqlalchemy.dialects.postgresql import TIMESTAMP
from creditledger.extensions import db

class TopUpFailure(db.Model):
    __tablename__ = "topup_failures"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(128), nullable=False, index=True)
    key = db.Column(db.String(64), nullable=False)
    # "" when the decline was not tied to a specific payment method
    payment_method_id = db.Column(db.String(64), nullable=False, server_default="")
    decline_type = db.Column(db.String(8), nullable=False)  # hard | soft
    decline_code = db.Column(db.String(64), nullable=True)
    failure_count = db.Column(db.Integer, nullable=False, server_default="0")
    last_failure_at = db.Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    disabled = db.Column(db.Boolean, nullable=False, server_default=false())
    # last PaymentIntent counted; the synchronous decline and its webhook count once
    last_payment_intent_id = db.Column(db.String(64), nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "key", "payment_method_id", name="uq_topup_failures_user_key_pm"),
    )

    def __repr__(self) -> str:
        return (
            f"<TopUpFailure user_id={self.user_id!r} key={self.key!r} pm={self.payment_method_id!r} "
            f"count={self.failure_count} disabled={self.disabled}>"
        )
