from datetime import datetime
from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base for errors the engine surfaces to its callers."""

    code = "billing_error"
    http_status = 500

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        payload = {"error": self.code, "code": self.http_status, "message": self.message}
        for k, v in self.details.items():
            payload[k] = v.isoformat() if isinstance(v, datetime) else v
        return payload


class ValidationError(BillingError):
    code = "validation_error"
    http_status = 400


class NotFoundError(BillingError):
    code = "not_found"
    http_status = 404


class InsufficientBalance(BillingError):
    code = "insufficient_balance"
    http_status = 402

    def __init__(self, *, user_id: str, key: str, balance: int, requested: int):
        super().__init__(
            f"Insufficient {key} credits: requested {requested}, available {balance}",
            user_id=user_id, key=key, balance=balance, requested=requested,
        )
        self.balance = balance
        self.requested = requested


class ConflictError(BillingError):
    """Idempotency key collision; the ledger recovers from it locally."""

    code = "idempotency_conflict"
    http_status = 409


class TransientCollaboratorError(BillingError):
    code = "collaborator_unavailable"
    http_status = 503


class TopUpSuppressed(BillingError):
    code = "topup_suppressed"
    http_status = 429

    def __init__(self, message: str, *, retry_at: Optional[datetime] = None, **details: Any):
        super().__init__(message, retry_at=retry_at, **details)
        self.retry_at = retry_at


class PaymentDeclined(BillingError):
    code = "payment_declined"
    http_status = 402


class SignatureMissing(BillingError):
    code = "signature_missing"
    http_status = 400


class SignatureInvalid(BillingError):
    code = "invalid_signature"
    http_status = 400
