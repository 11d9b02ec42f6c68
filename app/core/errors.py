# app/core/errors.py
"""
Gateway error taxonomy.

Every error raised by the ledger, verifier, gateway and payout layers is a
GatewayError subclass carrying the HTTP status it maps to and a stable
machine-readable code. Routers turn these into JSON error bodies.
"""
from typing import Any, Dict, Optional


class GatewayError(Exception):
    """Base class for all gateway errors."""
    status_code = 500
    code = "GatewayError"

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details is not None:
            body["details"] = self.details
        return body


class InputValidationError(GatewayError):
    """Missing or malformed cid, address, signature or amount. Never retried."""
    status_code = 400
    code = "InputValidation"


class NotFoundError(GatewayError):
    status_code = 404
    code = "NotFound"


class PaymentRequiredError(GatewayError):
    """No payment proof was supplied; carries the instructions for paying."""
    status_code = 402
    code = "PaymentRequired"

    def __init__(self, payment_info: Dict[str, Any]):
        super().__init__("Payment required")
        self.payment_info = payment_info

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "code": self.code,
            "message": "Please submit a valid payment transaction signature",
            "paymentInfo": self.payment_info,
        }


class PaymentVerificationError(GatewayError):
    """A payment proof was supplied but did not verify."""
    status_code = 402
    code = "PaymentVerificationFailed"

    def __init__(self, reason: str, message: str):
        super().__init__("Payment verification failed", details=message)
        self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["reason"] = self.reason
        return body


class UpstreamError(GatewayError):
    """The proxied call never produced an HTTP response."""
    status_code = 500
    code = "UpstreamFailure"


class LedgerError(GatewayError):
    """Ledger RPC failure. Not retried automatically."""
    status_code = 500
    code = "LedgerFailure"


class TransferFailed(LedgerError):
    """A token transfer was rejected or never confirmed."""
    code = "TransferFailed"


class PersistenceError(GatewayError):
    """Datastore write or read failed."""
    status_code = 500
    code = "PersistenceFailure"


class ConflictError(GatewayError):
    status_code = 409
    code = "Conflict"


class ConfigurationError(GatewayError):
    """A required operator setting is missing."""
    status_code = 503
    code = "ConfigurationError"
