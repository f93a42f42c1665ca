"""
billing/errors.py

Error taxonomy of the billing engine.

Every failure is scoped to one entity operation; none of these is fatal to the process.
- ValidationError / Forbidden / NotFound: rejected at the boundary, never retried.
- Conflict: version mismatch or illegal state transition. Callers may re-read and resubmit;
  sweeps skip the row and pick it up on the next pass.
- Expired: quote past its expiry date on accept/reject.
- InsufficientBalance: normal business outcome of a token consume.
- AlreadyProcessed: an invoice already exists for the quote. Internal signal only,
  the public operation returns the existing invoice.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base class. `code` and `http_status` drive the JSON error handler."""

    code = "billing_error"
    http_status = 400

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(BillingError):
    code = "validation_error"
    http_status = 400


class Forbidden(BillingError):
    code = "forbidden"
    http_status = 403


class NotFound(BillingError):
    code = "not_found"
    http_status = 404


class Conflict(BillingError):
    code = "conflict"
    http_status = 409


class Expired(BillingError):
    code = "expired"
    http_status = 410


class InsufficientBalance(BillingError):
    code = "insufficient_balance"
    http_status = 402


class AlreadyProcessed(BillingError):
    """Raised when an invoice for the quote already exists; carries that invoice."""

    code = "already_processed"
    http_status = 200

    def __init__(self, message: str, *, invoice: Any):
        super().__init__(message, details={"invoice_id": getattr(invoice, "id", None)})
        self.invoice = invoice
