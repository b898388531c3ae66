"""
Error taxonomy for the billing and payout core.

Every error carries a ``context`` dict (subscription id, period, rule id,
failing field, ...) so that the operator surface can point at the record
that needs fixing. HTTP status mapping lives here too so routers and the
exception handler in ``app.main`` agree on it.
"""
from typing import Optional, Dict, Any


class BillingError(Exception):
    """Base class for all billing/payout errors."""

    code = "billing_error"
    http_status = 400

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "detail": self.message,
            "error": self.code,
            "context": {k: str(v) if v is not None else None for k, v in self.context.items()},
        }


class InvalidInputError(BillingError):
    """Rejected at the boundary: negative money, malformed rule values, bad period."""

    code = "invalid_input"
    http_status = 400

    def __init__(self, field: str, message: str, context: Optional[Dict[str, Any]] = None):
        ctx = {"field": field}
        ctx.update(context or {})
        super().__init__(f"{field}: {message}", ctx)
        self.field = field


class NotFoundError(BillingError):
    code = "not_found"
    http_status = 404


class DataIntegrityError(BillingError):
    """Stored data violates an invariant. Reported, never auto-corrected."""

    code = "data_integrity"
    http_status = 409


class StatementConflictError(DataIntegrityError):
    """A paid statement was targeted for recomputation or mutation."""

    code = "statement_conflict"
    http_status = 409


class InvalidTransitionError(BillingError):
    """Lifecycle action requested against a state that cannot accept it."""

    code = "invalid_transition"
    http_status = 409


class ConcurrencyConflictError(BillingError):
    """Another writer changed the record first; refresh and retry."""

    code = "concurrency_conflict"
    http_status = 409


class JobAlreadyRunningError(BillingError):
    code = "job_already_running"
    http_status = 423


class AuditWriteError(BillingError):
    """The audit sink refused a write; the mutation it guards must roll back."""

    code = "audit_write_failed"
    http_status = 500
