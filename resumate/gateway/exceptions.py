from typing import Any


class APIError(Exception):
    """Base exception for all API errors."""

    status_code: int = 500
    code: str = "INTERNAL"

    def __init__(self, message: str):
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for JSON response."""
        return {"detail": str(self), "code": self.code}


class ValidationError(APIError):
    """Raised for semantically invalid request parameters - maps to HTTP 422."""

    status_code = 422
    code = "VALIDATION"


class ResourceNotFoundError(APIError):
    """Raised when a required resource is not found - maps to HTTP 404."""

    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, resource_type: str, resource_id: Any, *, message: str | None = None):
        super().__init__(message or f"{resource_type} {resource_id!r} not found")
        self.resource_type = resource_type
        self.resource_id = resource_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "detail": str(self),
            "code": self.code,
            "resource_type": self.resource_type,
            "resource_id": str(self.resource_id),
        }


class CheckoutRejectedError(APIError):
    """A plan transition that checkout refuses to start - maps to HTTP 409."""

    status_code = 409
    code = "CHECKOUT_REJECTED"


class AlreadyBasicError(CheckoutRejectedError):
    code = "ALREADY_BASIC"

    def __init__(self):
        super().__init__("Already subscribed to the Basic plan")


class DowngradeNotAllowedError(CheckoutRejectedError):
    code = "DOWNGRADE_NOT_ALLOWED"

    def __init__(self):
        super().__init__("Downgrading from Pro must be scheduled for the end of the billing period")


class ProStillActiveError(CheckoutRejectedError):
    code = "PRO_STILL_ACTIVE"

    def __init__(self, credits: int):
        super().__init__(f"Pro plan still has {credits} credits; renewal is available once they are used up")
        self.credits = credits


class SubscriptionStateError(APIError):
    """Raised when the user's subscription can't take the requested action - maps to HTTP 400."""

    status_code = 400

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code


class InsufficientCreditsError(APIError):
    """Raised when user has insufficient credits - maps to HTTP 402."""

    status_code = 402
    code = "INSUFFICIENT_CREDITS"

    def __init__(self, required: int, available: int, *, message: str | None = None):
        super().__init__(message or f"Insufficient credits: required {required}, available {available}")
        self.required = required
        self.available = available

    def to_dict(self) -> dict[str, Any]:
        return {"detail": str(self), "code": self.code, "required": self.required, "available": self.available}


class BillingFrozenError(APIError):
    """Raised when extraction is frozen for a user without an active plan - maps to HTTP 402."""

    status_code = 402
    code = "BILLING_FROZEN"

    def __init__(self):
        super().__init__("Subscription inactive; please reactivate")


class PaymentProcessorError(APIError):
    """Raised when a call to the payment processor fails - maps to HTTP 502."""

    status_code = 502
    code = "PAYMENT_PROCESSOR"

    def __init__(self, operation: str, message: str):
        super().__init__(f"Payment processor call {operation!r} failed: {message}")
        self.operation = operation


class BillingNotConfiguredError(APIError):
    status_code = 503
    code = "BILLING_DISABLED"

    def __init__(self):
        super().__init__("Billing is not configured")
