"""
Domain errors raised by the negotiation and pricing core.

Each error carries a stable machine-readable ``code`` and the HTTP status the
API layer answers with. The core raises them; nothing in the core retries.
"""
from typing import Optional


class ErrorKind:
    """Error kinds exposed to API clients."""
    VALIDATION = "validation_error"
    NOT_FOUND = "not_found_error"
    FORBIDDEN = "forbidden_error"
    INVALID_STATE = "invalid_state_error"
    CONFLICT = "conflict_error"


# Error codes (stable API surface)
INVALID_INPUT = "INVALID_INPUT"
MISSING_CURRENCY = "MISSING_CURRENCY"
INVALID_CURRENCY = "INVALID_CURRENCY"
INVALID_QUANTITY = "INVALID_QUANTITY"
NEGATIVE_AMOUNT = "NEGATIVE_AMOUNT"
DISCOUNT_OUT_OF_RANGE = "DISCOUNT_OUT_OF_RANGE"
PRICE_OVERRIDE_AMBIGUOUS = "PRICE_OVERRIDE_AMBIGUOUS"
INVALID_WINDOW = "INVALID_WINDOW"

QUOTE_REQUEST_NOT_FOUND = "QUOTE_REQUEST_NOT_FOUND"
QUOTE_RESPONSE_NOT_FOUND = "QUOTE_RESPONSE_NOT_FOUND"
PARTY_NOT_FOUND = "PARTY_NOT_FOUND"
PRODUCT_NOT_FOUND = "PRODUCT_NOT_FOUND"
PRICE_NOT_FOUND = "PRICE_NOT_FOUND"

NOT_REQUESTING_PARTY = "NOT_REQUESTING_PARTY"
NOT_A_SELLER = "NOT_A_SELLER"
NOT_A_BUYER = "NOT_A_BUYER"
NOT_TARGET_SELLER = "NOT_TARGET_SELLER"
NOT_PRODUCT_OWNER = "NOT_PRODUCT_OWNER"
ACCESS_DENIED = "ACCESS_DENIED"

ILLEGAL_TRANSITION = "ILLEGAL_TRANSITION"
QUOTE_REQUEST_EXPIRED = "QUOTE_REQUEST_EXPIRED"
QUOTE_RESPONSE_REJECTED = "QUOTE_RESPONSE_REJECTED"
QUOTE_RESPONSE_LAPSED = "QUOTE_RESPONSE_LAPSED"
RESPONSES_EXIST = "RESPONSES_EXIST"

RESPONSE_ALREADY_ACCEPTED = "RESPONSE_ALREADY_ACCEPTED"
CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"


class NegotiationError(Exception):
    """Base error with structured information."""

    kind = "negotiation_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        code: str,
        guard: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        self.message = message
        self.code = code
        self.guard = guard
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body = {
            "code": self.code,
            "kind": self.kind,
            "message": self.message,
            "details": self.details,
        }
        if self.guard:
            body["guard"] = self.guard
        return body

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class ValidationError(NegotiationError):
    """Malformed input. Recoverable by the caller."""
    kind = ErrorKind.VALIDATION
    status_code = 400

    def __init__(self, message: str, code: str = INVALID_INPUT, field: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", None) or {}
        if field:
            details["field"] = field
        super().__init__(message, code, details=details, **kwargs)


class NotFoundError(NegotiationError):
    """Referenced request/response/counter-offer does not exist."""
    kind = ErrorKind.NOT_FOUND
    status_code = 404


class ForbiddenError(NegotiationError):
    """Caller's party or role does not match what the operation requires."""
    kind = ErrorKind.FORBIDDEN
    status_code = 403


class InvalidStateError(NegotiationError):
    """Transition is illegal from the current (or expiry-derived) status."""
    kind = ErrorKind.INVALID_STATE
    status_code = 409


class ConflictError(NegotiationError):
    """A competing transition already happened; re-fetch before deciding to retry."""
    kind = ErrorKind.CONFLICT
    status_code = 409
