"""
LEDGER ENGINE - DECIMAL PRECISION UTILITIES

This module provides:
1. Decimal precision lock (2-decimal places)
2. Conversion between Decimal (in memory) and Decimal128 (at rest)
3. Value validation (no negative / zero amounts where forbidden)
4. Rounding at calculation boundary only
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from bson import Decimal128
from typing import Union
import logging

from ledger.errors import ValidationError

logger = logging.getLogger(__name__)

# Precision configuration
DECIMAL_PLACES = 2
QUANTIZE_PATTERN = Decimal('0.01')
ZERO = Decimal('0')

Numeric = Union[float, int, str, Decimal, Decimal128]


def to_decimal(value: Numeric) -> Decimal:
    """
    Convert any numeric value to Decimal.
    Does NOT round - preserves full precision for intermediate calculations.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if value is None:
        return ZERO
    if isinstance(value, bool):
        raise ValidationError(f"Cannot convert boolean {value!r} to an amount")
    if isinstance(value, (int, float)):
        # Convert via string to avoid float precision issues
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value)
        except InvalidOperation:
            raise ValidationError(f"Invalid amount: {value!r}")
    raise ValidationError(f"Cannot convert {type(value).__name__} to an amount")


def round_financial(value: Numeric) -> Decimal:
    """
    Round a value to 2 decimal places (half up).
    This should be called ONLY at calculation boundaries.
    """
    return to_decimal(value).quantize(QUANTIZE_PATTERN, rounding=ROUND_HALF_UP)


def to_decimal128(value: Numeric) -> Decimal128:
    """Convert to Decimal128 for MongoDB storage"""
    return Decimal128(round_financial(value))


def to_float(value: Numeric) -> float:
    """Convert to float for JSON responses. Rounds to 2 decimal places first."""
    return float(round_financial(value))


def clamp_non_negative(value: Numeric) -> Decimal:
    """Negative inputs are treated as zero."""
    decimal_value = to_decimal(value)
    return decimal_value if decimal_value > ZERO else ZERO


def validate_non_negative(value: Numeric, field_name: str) -> Decimal:
    """
    Validate that a financial value is not negative.
    Raises ValidationError if validation fails.
    """
    decimal_value = to_decimal(value)
    if decimal_value < ZERO:
        raise ValidationError(
            f"Financial value '{field_name}' cannot be negative: {value}",
            details={"field": field_name, "value": str(value)}
        )
    return decimal_value


def validate_positive(value: Numeric, field_name: str) -> Decimal:
    """
    Validate that a financial value is strictly positive (> 0).
    Raises ValidationError if validation fails.
    """
    decimal_value = to_decimal(value)
    if decimal_value <= ZERO:
        raise ValidationError(
            f"Financial value '{field_name}' must be positive: {value}",
            details={"field": field_name, "value": str(value)}
        )
    return decimal_value


def calculate_percentage(amount: Numeric, percentage: Numeric) -> Decimal:
    """
    Calculate percentage of an amount.
    Example: calculate_percentage(1000, 18) = 180
    """
    return to_decimal(amount) * to_decimal(percentage) / Decimal('100')
