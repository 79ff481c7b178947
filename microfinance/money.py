"""
Amount Handling Module

Decimal coercion and rounding for loan amounts. Amounts are held in whole
currency units, rounded half-up. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Any

from .errors import ValidationError

# High precision for intermediate results (compound factors in particular)
getcontext().prec = 28

ZERO = Decimal('0')
WHOLE_UNIT = Decimal('1')


def to_amount(value: Any, field_name: str = "amount") -> Decimal:
    """
    Convert a user supplied value into a Decimal.

    Floats are routed through str() so 0.1 stays 0.1 instead of its binary
    approximation.

    Raises:
        ValidationError: If the value is missing, boolean or not numeric
    """
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field_name} is required and must be numeric")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise ValidationError(f"{field_name} must be numeric, got {value!r}")
    if not result.is_finite():
        raise ValidationError(f"{field_name} must be a finite number")
    return result


def round_amount(value: Decimal) -> Decimal:
    """Round to the nearest whole currency unit (half-up)"""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(WHOLE_UNIT, rounding=ROUND_HALF_UP)


def format_amount(value: Decimal) -> str:
    """Format for display, e.g. 12,000"""
    return f"{round_amount(value):,.0f}"
