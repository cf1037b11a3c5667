from sqlalchemy import func, false
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP
from creditledger.extensions import db

_JSON = db.JSON().with_variant(JSONB(), "postgresql")

class Subscription(db.Model):
    __tablename__ = "subscriptions"

    id = db.Column(db.Integer, primary_key=True)
    stripe_subscription_id = db.Column(db.String(64), nullable=False, unique=True, index=True)
    stripe_customer_id = db.Column(db.String(64), nullable=False, index=True)
    user_id = db.Column(db.String(128), nullable=False, index=True)

    status = db.Column(db.String(32), nullable=False, index=True, server_default="incomplete")
    price_id = db.Column(db.String(64), nullable=True, index=True)
    metadata_json = db.Column(_JSON, nullable=False, default=dict)

    current_period_start = db.Column(TIMESTAMP(timezone=True), nullable=True)
    current_period_end = db.Column(TIMESTAMP(timezone=True), nullable=True, index=True)
    cancel_at_period_end = db.Column(db.Boolean, nullable=False, server_default=false())
    canceled_at = db.Column(TIMESTAMP(timezone=True), nullable=True)

    created_at = db.Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    items = db.relationship(
        "SubscriptionItem",
        back_populates="subscription",
        cascade="all, delete-orphan",
        order_by="SubscriptionItem.id",
    )

    @property
    def is_active(self) -> bool:
        return self.status in ("active", "trialing")

    def to_dict(self) -> dict:
        return {
            "id": self.stripe_subscription_id,
            "customer": self.stripe_customer_id,
            "user_id": self.user_id,
            "status": self.status,
            "price_id": self.price_id,
            "metadata": dict(self.metadata_json or {}),
            "current_period_start": self.current_period_start.isoformat() if self.current_period_start else None,
            "current_period_end": self.current_period_end.isoformat() if self.current_period_end else None,
            "cancel_at_period_end": bool(self.cancel_at_period_end),
        }

    def __repr__(self) -> str:
        return f"<Subscription id={self.id} user_id={self.user_id!r} status={self.status!r} price_id={self.price_id!r}>"


class SubscriptionItem(db.Model):
    __tablename__ = "subscription_items"

    id = db.Column(db.Integer, primary_key=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True)
    stripe_item_id = db.Column(db.String(64), nullable=True)
    price_id = db.Column(db.String(64), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, server_default="1")

    subscription = db.relationship("Subscription", back_populates="items")
