"""
Input validation shared by the negotiation and catalog write boundaries.
"""
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Optional

from app.core import errors
from app.core.clock import ensure_utc
from app.services.price_resolution import to_decimal


def validate_currency(currency: Optional[str], field: str = "currency") -> str:
    """Require a three-letter ISO 4217 code; returns it upper-cased."""
    if not currency:
        raise errors.ValidationError(
            "A currency is required for every monetary amount",
            code=errors.MISSING_CURRENCY,
            field=field,
        )
    if len(currency) != 3 or not currency.isalpha():
        raise errors.ValidationError(
            f"Invalid currency code: {currency}",
            code=errors.INVALID_CURRENCY,
            field=field,
        )
    return currency.upper()


def _as_decimal(value, field: str) -> Decimal:
    try:
        result = to_decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise errors.ValidationError(f"{field} must be a number", field=field)
    if not result.is_finite():
        raise errors.ValidationError(f"{field} must be a finite number", field=field)
    return result


def validate_amount(value, field: str = "price") -> Decimal:
    """Monetary amounts are required and must be >= 0."""
    if value is None:
        raise errors.ValidationError(f"{field} is required", field=field)
    amount = _as_decimal(value, field)
    if amount < 0:
        raise errors.ValidationError(
            f"{field} must not be negative",
            code=errors.NEGATIVE_AMOUNT,
            field=field,
        )
    return amount


def validate_optional_amount(value, field: str) -> Optional[Decimal]:
    if value is None:
        return None
    return validate_amount(value, field)


def validate_quantity(value, field: str = "quantity") -> Optional[Decimal]:
    """Quantity is optional, but must be > 0 when present."""
    if value is None:
        return None
    quantity = _as_decimal(value, field)
    if quantity <= 0:
        raise errors.ValidationError(
            f"{field} must be greater than zero",
            code=errors.INVALID_QUANTITY,
            field=field,
        )
    return quantity


def validate_discount(value, field: str = "discount_percentage") -> Decimal:
    percent = _as_decimal(value, field)
    if percent < 0 or percent > 100:
        raise errors.ValidationError(
            "Discount percentage must be between 0 and 100",
            code=errors.DISCOUNT_OUT_OF_RANGE,
            field=field,
        )
    return percent


def validate_window(
    effective_from: Optional[datetime],
    effective_until: Optional[datetime],
) -> None:
    if effective_from and effective_until and ensure_utc(effective_until) <= ensure_utc(effective_from):
        raise errors.ValidationError(
            "effective_until must be after effective_from",
            code=errors.INVALID_WINDOW,
            field="effective_until",
        )
