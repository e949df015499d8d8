"""
Decimal Arithmetic Module

Exact fixed-point helpers for every monetary value in the ledger.
NEVER uses float for monetary values: floats are converted through str().
Currency rounding (ROUND_HALF_UP) is applied only where a currency amount
is produced from a rate, everything else keeps full precision.
"""

from decimal import Decimal, ROUND_HALF_UP, ROUND_FLOOR, InvalidOperation, getcontext
from typing import Iterable, Optional, Union

from .config import get_config

# Set global decimal context for financial precision
getcontext().prec = 28

ZERO = Decimal('0')
HUNDRED = Decimal('100')

Numeric = Union[Decimal, int, float, str]


def to_decimal(value: Optional[Numeric]) -> Decimal:
    """
    Convert a stored or supplied value to Decimal

    Args:
        value: Decimal, int, float or numeric string (None is treated as zero)

    Returns:
        Decimal value

    Raises:
        ValueError: If the value cannot be represented as a finite Decimal
    """
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        raise ValueError("Boolean is not a monetary value")
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation:
            raise ValueError(f"Cannot convert '{value}' to Decimal")
    else:
        raise ValueError(f"Unsupported numeric type: {type(value).__name__}")

    if not result.is_finite():
        raise ValueError(f"Amount must be finite, got {value}")
    return result


def currency_quantum(precision: Optional[int] = None) -> Decimal:
    """Smallest currency unit, e.g. Decimal('0.01') for 2 decimal places"""
    if precision is None:
        precision = get_config().currency_precision
    return Decimal('0.1') ** precision


def round_currency(value: Numeric, precision: Optional[int] = None) -> Decimal:
    """Round to currency precision with half-up rounding"""
    return to_decimal(value).quantize(currency_quantum(precision), rounding=ROUND_HALF_UP)


def percent_of(amount: Numeric, rate_percent: Numeric) -> Decimal:
    """amount x rate / 100 at full precision"""
    return to_decimal(amount) * to_decimal(rate_percent) / HUNDRED


def floor_div(numerator: Numeric, denominator: Numeric) -> int:
    """Whole number of times denominator fits in numerator"""
    denominator = to_decimal(denominator)
    if denominator <= ZERO:
        return 0
    quotient = to_decimal(numerator) / denominator
    return int(quotient.to_integral_value(rounding=ROUND_FLOOR))


def clamp_non_negative(value: Numeric) -> Decimal:
    """max(value, 0)"""
    value = to_decimal(value)
    return value if value > ZERO else ZERO


def sum_amounts(values: Iterable[Numeric]) -> Decimal:
    """Exact sum of an iterable of amounts"""
    total = ZERO
    for value in values:
        total += to_decimal(value)
    return total


def format_amount(value: Optional[Numeric]) -> str:
    """Format an amount with exactly 2 fractional digits for aggregate reports"""
    return f"{round_currency(to_decimal(value), 2):.2f}"


def normalize(value: Numeric) -> Decimal:
    """Strip trailing zeros for entity views (100.00 -> 100, 999.99 stays)"""
    value = to_decimal(value)
    if value == value.to_integral_value():
        return value.quantize(Decimal('1'))
    return value.normalize()
