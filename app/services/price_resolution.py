"""
Price resolution: the price a given viewer sees for a product.

Pure functions only. A product has a public default price and at most one
private override per counterpart, either a ``FixedPrice`` or a ``Discount``.

Rounding policy: money rounds half-up to 2 decimal places, percentages
round half-up to 1 decimal place.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Iterable, List, Optional, TypeVar, Union

MONEY_QUANTUM = Decimal("0.01")
PERCENT_QUANTUM = Decimal("0.1")
HUNDRED = Decimal("100")

T = TypeVar("T")


def to_decimal(value) -> Decimal:
    """Convert ints, floats and strings to Decimal without float artefacts."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(value)


def round_money(value) -> Decimal:
    return to_decimal(value).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def round_percent(value) -> Decimal:
    return to_decimal(value).quantize(PERCENT_QUANTUM, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Money:
    amount: Decimal
    currency: str

    def __post_init__(self):
        object.__setattr__(self, "amount", to_decimal(self.amount))
        object.__setattr__(self, "currency", self.currency.upper())


@dataclass(frozen=True)
class FixedPrice:
    """Override replacing the default with a stored amount in its own currency."""
    amount: Decimal
    currency: str

    def __post_init__(self):
        object.__setattr__(self, "amount", to_decimal(self.amount))
        object.__setattr__(self, "currency", self.currency.upper())


@dataclass(frozen=True)
class Discount:
    """Override taking a percentage (0-100) off the default price."""
    percent: Decimal

    def __post_init__(self):
        object.__setattr__(self, "percent", to_decimal(self.percent))


PriceOverride = Union[FixedPrice, Discount]


@dataclass(frozen=True)
class EffectivePrice:
    amount: Decimal
    currency: str
    is_special: bool
    savings_percent: Optional[Decimal]

    def to_dict(self) -> dict:
        return {
            "amount": self.amount,
            "currency": self.currency,
            "is_special": self.is_special,
            "savings_percent": self.savings_percent,
        }


def resolve_price(default: Money, override: Optional[PriceOverride] = None) -> EffectivePrice:
    """
    Resolve the effective price for one viewer.

    Args:
        default: the product's public default price
        override: the viewer's private price, if any

    Returns:
        EffectivePrice with ``savings_percent`` in [0, 100] or None
    """
    if override is None:
        return EffectivePrice(
            amount=round_money(default.amount),
            currency=default.currency,
            is_special=False,
            savings_percent=None,
        )

    if isinstance(override, FixedPrice):
        savings = None
        # Percentages across currencies are meaningless
        if override.currency == default.currency and default.amount > 0:
            savings = round_percent((default.amount - override.amount) / default.amount * HUNDRED)
            if savings < 0:
                savings = None
        return EffectivePrice(
            amount=round_money(override.amount),
            currency=override.currency,
            is_special=True,
            savings_percent=savings,
        )

    # Discount rides the default currency
    if default.amount == 0:
        return EffectivePrice(
            amount=round_money(0),
            currency=default.currency,
            is_special=True,
            savings_percent=None,
        )
    return EffectivePrice(
        amount=round_money(default.amount * (1 - override.percent / HUNDRED)),
        currency=default.currency,
        is_special=True,
        savings_percent=round_percent(override.percent),
    )


def rank_offers(offers: Iterable[T], price_of: Callable[[T], Money]) -> List[T]:
    """
    Order offers lowest price first.

    Amounts are compared after money rounding and only within a currency;
    currency groups are ordered by code. Ties keep their input order.
    """
    def sort_key(offer):
        price = price_of(offer)
        return (price.currency, round_money(price.amount))

    return sorted(offers, key=sort_key)
