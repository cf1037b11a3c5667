from sqlalchemy import func, true
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP
from creditledger.extensions import db

_JSON = db.JSON().with_variant(JSONB(), "postgresql")

class BillingEventLog(db.Model):
    __tablename__ = "billing_event_logs"

    id = db.Column(db.Integer, primary_key=True)
    stripe_event_id = db.Column(db.String(255), nullable=False, unique=True, index=True)
    type = db.Column(db.String(80), nullable=False, index=True)
    signature_valid = db.Column(db.Boolean, nullable=False, server_default=true())
    payload = db.Column(_JSON, nullable=False, default=dict)
    retries = db.Column(db.Integer, nullable=False, server_default="0")
    notes = db.Column(db.String(255), nullable=True)

    processed_at = db.Column(TIMESTAMP(timezone=True), nullable=True)
    created_at = db.Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    def __repr__(self) -> str:
        return f"<BillingEventLog id={self.id} event={self.stripe_event_id!r} type={self.type!r} processed={self.processed_at is not None}>"
