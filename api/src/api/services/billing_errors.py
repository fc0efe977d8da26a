"""Domain errors raised by the billing and entitlement services."""

from __future__ import annotations

from typing import Any


class BillingError(Exception):
    """Base class for billing errors; routers translate these to HTTP responses."""

    code = "billing_error"
    status_code = 400

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"detail": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(BillingError):
    code = "validation_error"
    status_code = 400


class NotAvailable(BillingError):
    code = "not_available"
    status_code = 400


class InvalidPromoCode(NotAvailable):
    code = "invalid_promo_code"


class PlanNotApplicable(NotAvailable):
    code = "plan_not_applicable"


class Exhausted(NotAvailable):
    code = "promo_code_exhausted"


class Conflict(BillingError):
    code = "conflict"
    status_code = 409


class EmailInUse(Conflict):
    code = "email_in_use"


class AlreadyUsedByUser(Conflict):
    code = "promo_code_already_used"


class NotFound(BillingError):
    code = "not_found"
    status_code = 404


class ExternalProviderError(BillingError):
    code = "payment_provider_unavailable"
    status_code = 503


class InvariantViolation(BillingError):
    code = "invariant_violation"
    status_code = 500
