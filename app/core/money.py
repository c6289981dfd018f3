"""
Money helpers.

Every monetary value is canonicalised to 2 decimal places before it is
stored, compared or returned. Rounding is half-up on the decimal
representation of the value, so 2.675 becomes 2.68 rather than the binary
float artefact 2.67.
"""

import logging
import math
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Iterable, Mapping

from app.config import settings
from app.core.errors import ValidationError

logger = logging.getLogger(__name__)

# Absolute tolerance when comparing independently computed amounts
MONEY_TOLERANCE = 0.01

_TWO_PLACES = Decimal("0.01")


def _warn(message: str, value: Any) -> None:
    if not settings.is_test:
        logger.warning(f"{message}: {value!r}")


def _to_decimal(value: Any, field_name: str) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if value == "":
            return None
    if isinstance(value, float) and not math.isfinite(value):
        _warn(f"{field_name}: invalid number provided, returning 0", value)
        return None
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        _warn(f"{field_name}: invalid number provided, returning 0", value)
        return None
    if not number.is_finite():
        _warn(f"{field_name}: invalid number provided, returning 0", value)
        return None
    return number


def round_money(value: Any) -> float:
    """
    Round a monetary value to 2 decimal places.

    Never raises. None, empty strings and anything that is not a finite
    number yield 0.
    """
    number = _to_decimal(value, "round_money")
    if number is None:
        return 0.0
    return float(number.quantize(_TWO_PLACES, rounding=ROUND_HALF_UP))


def validate_and_round_money(value: Any, field_name: str = "value") -> float:
    """Same as round_money, but flags inputs carrying more than 2 decimals."""
    number = _to_decimal(value, field_name)
    if number is None:
        return 0.0
    exponent = number.normalize().as_tuple().exponent
    if isinstance(exponent, int) and exponent < -2:
        _warn(f"{field_name}: value has more than 2 decimal places, rounding", value)
    return float(number.quantize(_TWO_PLACES, rounding=ROUND_HALF_UP))


def round_monetary_fields(obj: Mapping[str, Any], fields: Iterable[str]) -> dict:
    """Return a copy of obj with the named fields rounded (missing/None fields untouched)."""
    if obj is None:
        return obj
    rounded = dict(obj)
    for field in fields:
        if rounded.get(field) is not None:
            rounded[field] = round_money(rounded[field])
    return rounded


def money_equal(a: Any, b: Any, tolerance: float = MONEY_TOLERANCE) -> bool:
    """Compare two amounts after rounding, within the absolute tolerance."""
    return abs(round_money(a) - round_money(b)) <= tolerance + 1e-9


def to_minor_units(amount: Any) -> int:
    """
    Convert a currency amount to integer minor units (rupees -> paise).

    Raises ValidationError if the amount is not exactly representable.
    """
    number = _to_decimal(amount, "amount")
    if number is None:
        raise ValidationError("Amount must be a valid number")
    minor = number * 100
    if minor != minor.to_integral_value():
        raise ValidationError(
            f"Amount {amount} cannot be converted to whole minor currency units",
            details={"amount": str(amount)},
        )
    return int(minor)


def from_minor_units(minor: int) -> float:
    return round_money(Decimal(int(minor)) / 100)
