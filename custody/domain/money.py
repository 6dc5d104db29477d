"""
Decimal helpers for monetary values.

Amounts are quantized to cents with ROUND_HALF_UP and persisted as TEXT.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

from custody.domain.errors import ValidationError

TWO_PLACES = Decimal("0.01")
ZERO = Decimal("0.00")


def quantize_money(value: Decimal, field: str = "amount") -> Decimal:
    """
    Round monetary values to cents.

    Raises:
        ValidationError: If the value has too many digits to carry cents.
    """
    try:
        return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise ValidationError(f"{field} is too large", field=field, value=str(value)) from exc


def to_decimal(value: Any, field: str) -> Decimal:
    """
    Convert caller input to Decimal without going through binary floats.

    Raises:
        ValidationError: If the value is missing or not numeric.
    """
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} is required", field=field)
    try:
        number = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"{field} must be a number", field=field, value=str(value)) from exc
    if not number.is_finite():
        raise ValidationError(f"{field} must be a finite number", field=field, value=str(value))
    return number


def to_money(value: Any, field: str = "amount") -> Decimal:
    """Convert caller input to a cent-quantized Decimal."""
    return quantize_money(to_decimal(value, field), field)


def from_db(value: Any) -> Decimal:
    """Decode a TEXT money column."""
    return Decimal(str(value))
