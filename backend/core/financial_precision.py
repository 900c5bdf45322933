"""
LEDGER CORE - DECIMAL PRECISION & FINANCIAL UTILITIES

This module provides:
1. Decimal precision lock (2-decimal places)
2. Safe financial calculations
3. Value validation (no negative amounts)
4. Rounding at calculation boundary only
"""

from decimal import Decimal, ROUND_HALF_UP, ROUND_FLOOR, InvalidOperation
from typing import Union, Iterable, Optional
import logging

logger = logging.getLogger(__name__)

# Precision configuration
DECIMAL_PLACES = 2
QUANTIZE_PATTERN = Decimal('0.01')

# Drift below this is treated as rounding noise
RECONCILIATION_TOLERANCE = Decimal('0.01')

Number = Union[float, int, str, Decimal]


class FinancialPrecisionError(Exception):
    """Raised when financial precision validation fails"""
    pass


class NegativeValueError(Exception):
    """Raised when a negative financial value is detected"""
    pass


def to_decimal(value: Optional[Number]) -> Decimal:
    """
    Convert any numeric value to Decimal.
    Does NOT round - preserves full precision for intermediate calculations.
    Missing values (None) are treated as zero, the way absent amount fields are.
    """
    if value is None:
        return Decimal('0')
    if isinstance(value, bool):
        raise FinancialPrecisionError("Cannot convert bool to Decimal")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        # Convert via string to avoid float precision issues
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value)
        except InvalidOperation:
            raise FinancialPrecisionError(f"Cannot convert '{value}' to Decimal")
    # bson Decimal128 and friends
    if hasattr(value, "to_decimal"):
        return value.to_decimal()
    raise FinancialPrecisionError(f"Cannot convert {type(value)} to Decimal")


def round_financial(value: Number) -> Decimal:
    """
    Round a value to 2 decimal places (half-up).
    This should be called ONLY at calculation boundaries.
    """
    decimal_value = to_decimal(value)
    return decimal_value.quantize(QUANTIZE_PATTERN, rounding=ROUND_HALF_UP)


def round_whole(value: Number) -> Decimal:
    """Round half-up to a whole currency unit (allocation suggestions)."""
    return to_decimal(value).quantize(Decimal('1'), rounding=ROUND_HALF_UP)


def floor_whole(value: Number) -> Decimal:
    """Truncate toward negative infinity to a whole currency unit."""
    return to_decimal(value).quantize(Decimal('1'), rounding=ROUND_FLOOR)


def to_float(value: Number) -> float:
    """
    Convert Decimal back to float for MongoDB storage.
    Rounds to 2 decimal places first.
    """
    rounded = round_financial(value)
    return float(rounded)


def validate_non_negative(value: Number, field_name: str) -> None:
    """
    Validate that a financial value is not negative.
    Raises NegativeValueError if validation fails.
    """
    decimal_value = to_decimal(value)
    if decimal_value < Decimal('0'):
        raise NegativeValueError(
            f"Financial value '{field_name}' cannot be negative: {value}"
        )


def validate_positive(value: Number, field_name: str) -> None:
    """
    Validate that a financial value is strictly positive (> 0).
    Raises NegativeValueError if validation fails.
    """
    decimal_value = to_decimal(value)
    if decimal_value <= Decimal('0'):
        raise NegativeValueError(
            f"Financial value '{field_name}' must be positive: {value}"
        )


def safe_multiply(a: Number, b: Number) -> Decimal:
    """Safe multiplication preserving precision"""
    return to_decimal(a) * to_decimal(b)


def safe_divide(numerator: Number, denominator: Number) -> Decimal:
    """Safe division with zero check"""
    denom = to_decimal(denominator)
    if denom == Decimal('0'):
        return Decimal('0')
    return to_decimal(numerator) / denom


def safe_subtract(a: Number, b: Number) -> Decimal:
    """Safe subtraction preserving precision"""
    return to_decimal(a) - to_decimal(b)


def safe_add(*values: Number) -> Decimal:
    """Safe addition of multiple values"""
    result = Decimal('0')
    for v in values:
        result += to_decimal(v)
    return result


def safe_sum(values: Iterable[Number]) -> Decimal:
    """Sum an iterable of amounts"""
    return safe_add(*list(values))


def clamp_non_negative(value: Number) -> Decimal:
    """max(0, value)"""
    decimal_value = to_decimal(value)
    if decimal_value < Decimal('0'):
        return Decimal('0')
    return decimal_value


def calculate_percentage(amount: Number, percentage: Number) -> Decimal:
    """
    Calculate percentage of an amount.
    Example: calculate_percentage(1000, 10) = 100
    """
    return safe_multiply(to_decimal(amount), safe_divide(to_decimal(percentage), Decimal('100')))


def calculate_remaining(total: Number, actual: Number, committed: Number) -> float:
    """
    Remaining budget for a scope.

    LOCKED FORMULA:
    - remaining = max(0, total - actual - committed)
    """
    remaining = safe_subtract(safe_subtract(total, actual), committed)
    return to_float(clamp_non_negative(remaining))


def amounts_differ(a: Number, b: Number, tolerance: Decimal = RECONCILIATION_TOLERANCE) -> bool:
    """True when two amounts differ by more than the tolerance."""
    return abs(safe_subtract(a, b)) > tolerance
