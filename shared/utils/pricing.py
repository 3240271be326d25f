"""
shared/utils/pricing.py
Tour price calculator.

    4h = base_rate_hour × 4
    6h = base_rate_hour × 6, minus 5%
    8h = base_rate_hour × 8, minus 10%

Amounts are Decimal so that total + discount == subtotal holds exactly.
The discount is rounded half-up to a whole currency unit.
"""

from decimal import ROUND_HALF_UP, Decimal
from functools import lru_cache
from typing import Optional, Sequence, Union

from shared.schemas.schemas import PriceBreakdown

Number = Union[int, float, Decimal, str]

DURATION_DISCOUNTS = {4: 0, 6: 5, 8: 10}

CURRENCY_SYMBOLS = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "AUD": "A$",
}


class InvalidDurationError(ValueError):
    """Raised for a tour length outside the 4/6/8 hour tiers."""

    def __init__(self, duration):
        super().__init__(f"Unsupported tour duration: {duration!r}. Choose 4, 6 or 8 hours.")
        self.duration = duration


def round_half_up(value: Decimal) -> Decimal:
    return value.quantize(Decimal("1"), rounding=ROUND_HALF_UP)


def _to_decimal(value: Number) -> Decimal:
    # str() first so floats like 47.3 keep their printed value
    return value if isinstance(value, Decimal) else Decimal(str(value))


def discount_percentage_for(duration: int) -> int:
    if isinstance(duration, bool) or duration not in DURATION_DISCOUNTS:
        raise InvalidDurationError(duration)
    return DURATION_DISCOUNTS[duration]


@lru_cache(maxsize=1024)
def _tour_price(base_rate_hour: Decimal, duration: int, currency: str) -> PriceBreakdown:
    pct = discount_percentage_for(duration)
    if base_rate_hour <= 0:
        raise ValueError("base_rate_hour must be positive")

    subtotal = base_rate_hour * duration
    discount = round_half_up(subtotal * pct / 100)
    return PriceBreakdown(
        subtotal=subtotal,
        discount=discount,
        discount_percentage=pct,
        total=subtotal - discount,
        currency=currency,
    )


def calculate_tour_price(
    base_rate_hour: Number,
    duration: int,
    currency: str = "USD",
) -> PriceBreakdown:
    """Price of one tour for one traveler."""
    return _tour_price(_to_decimal(base_rate_hour), duration, currency)


def calculate_group_price(
    base_rate_hour: Number,
    duration: int,
    travelers: int,
    currency: str = "USD",
) -> PriceBreakdown:
    """
    Scale every amount of the single-traveler price by the group size.
    discount_percentage is a rate and stays as is.
    """
    if isinstance(travelers, bool) or not isinstance(travelers, int) or travelers < 1:
        raise ValueError("travelers must be an integer >= 1")

    single = calculate_tour_price(base_rate_hour, duration, currency)
    return PriceBreakdown(
        subtotal=single.subtotal * travelers,
        discount=single.discount * travelers,
        discount_percentage=single.discount_percentage,
        total=single.total * travelers,
        currency=currency,
    )


def quote_sessions(
    durations: Sequence[int],
    travelers: int,
    base_rate_hour: Optional[Number] = None,
    legacy_prices: Optional[dict] = None,
) -> PriceBreakdown:
    """
    Price a multi-session booking. Uses the hourly rate when the guide has
    one; otherwise the flat per-tour prices {"h4", "h6", "h8", "currency"}
    of older profiles, which carry no tier discount.
    """
    if not durations:
        raise ValueError("At least one session is required")

    if base_rate_hour is not None:
        currency = (legacy_prices or {}).get("currency", "USD")
        parts = [calculate_group_price(base_rate_hour, d, travelers, currency) for d in durations]
    elif legacy_prices:
        currency = legacy_prices.get("currency", "USD")
        parts = []
        for d in durations:
            discount_percentage_for(d)
            flat = legacy_prices.get(f"h{d}")
            if flat is None:
                raise ValueError(f"Guide has no price for {d}-hour tours")
            subtotal = _to_decimal(flat) * travelers
            parts.append(PriceBreakdown(
                subtotal=subtotal, discount=Decimal(0), discount_percentage=0,
                total=subtotal, currency=currency,
            ))
    else:
        raise ValueError("Guide has no pricing configured")

    pcts = {p.discount_percentage for p in parts}
    return PriceBreakdown(
        subtotal=sum((p.subtotal for p in parts), Decimal(0)),
        discount=sum((p.discount for p in parts), Decimal(0)),
        discount_percentage=pcts.pop() if len(pcts) == 1 else 0,
        total=sum((p.total for p in parts), Decimal(0)),
        currency=currency,
    )


def traveler_fee(amount: Number, fee_percent: int) -> Decimal:
    return round_half_up(_to_decimal(amount) * fee_percent / 100)


def calculate_all_duration_prices(base_rate_hour: Number, currency: str = "USD") -> dict:
    return {
        f"h{hours}": calculate_tour_price(base_rate_hour, hours, currency)
        for hours in DURATION_DISCOUNTS
    }


def get_price_description(duration: int) -> str:
    pct = discount_percentage_for(duration)
    if pct == 0:
        return f"{duration} hours (Standard rate)"
    return f"{duration} hours ({pct}% discount)"


def format_price(amount: Number, currency: str = "USD") -> str:
    """Currency symbol plus whole units, e.g. "$285"."""
    symbol = CURRENCY_SYMBOLS.get(currency, f"{currency} ")
    whole = round_half_up(_to_decimal(amount))
    return f"{symbol}{whole:,}"
