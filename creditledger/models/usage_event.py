from sqlalchemy import func
from sqlalchemy.dialects.postgresql import TIMESTAMP
from creditledger.extensions import db

class UsageEvent(db.Model):
    __tablename__ = "usage_events"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(128), nullable=False)
    key = db.Column(db.String(64), nullable=False)
    amount = db.Column(db.BigInteger, nullable=False)
    occurred_at = db.Column(TIMESTAMP(timezone=True), nullable=False)
    period_start = db.Column(TIMESTAMP(timezone=True), nullable=False)
    period_end = db.Column(TIMESTAMP(timezone=True), nullable=False)
    meter_event_id = db.Column(db.String(255), nullable=True)

    created_at = db.Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        db.Index("ix_usage_events_user_key_occurred", "user_id", "key", "occurred_at"),
        db.UniqueConstraint("meter_event_id", name="uq_usage_events_meter_event_id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "key": self.key,
            "amount": int(self.amount),
            "occurred_at": self.occurred_at.isoformat() if self.occurred_at else None,
            "period_start": self.period_start.isoformat() if self.period_start else None,
            "period_end": self.period_end.isoformat() if self.period_end else None,
            "meter_event_id": self.meter_event_id,
        }
