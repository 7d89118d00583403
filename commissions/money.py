from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

from .exceptions import InvalidCommissionRateError

# Half-up (away from zero) is the only rounding rule applied to commissions.
ROUNDING = ROUND_HALF_UP

Rate = Union[Decimal, float, str]


def to_rate(rate: Rate) -> Decimal:
    try:
        value = rate if isinstance(rate, Decimal) else Decimal(str(rate))
    except InvalidOperation:
        raise InvalidCommissionRateError(f"Invalid commission rate: {rate!r}")
    if not value.is_finite() or value < 0 or value > 1:
        raise InvalidCommissionRateError(f"Commission rate must be within [0, 1], got {rate!r}")
    return value


def calculate_commission(amount_minor: int, rate: Rate) -> int:
    """Commission in minor currency units: round_half_up(amount * rate)."""
    if isinstance(amount_minor, bool) or not isinstance(amount_minor, int):
        raise TypeError("amounts are integers in minor currency units")
    product = Decimal(amount_minor) * to_rate(rate)
    return int(product.quantize(Decimal(1), rounding=ROUNDING))
