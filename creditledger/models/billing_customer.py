from sqlalchemy import func
from sqlalchemy.dialects.postgresql import TIMESTAMP
from creditledger.extensions import db

class BillingCustomer(db.Model):
    """One-to-one map between a host user id and a processor customer id."""

    __tablename__ = "billing_customers"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(128), nullable=False, unique=True, index=True)
    stripe_customer_id = db.Column(db.String(64), nullable=False, unique=True, index=True)
    billing_email = db.Column(db.String(255), nullable=True)

    created_at = db.Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    def __repr__(self) -> str:
        return f"<BillingCustomer id={self.id} user_id={self.user_id!r} stripe_customer_id={self.stripe_customer_id!r}>"
