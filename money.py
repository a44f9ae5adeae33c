from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

from errors import ValidationError

CENTS_PER_UNIT = 100
_CENT = Decimal("0.01")

Amount = Union[int, float, str, Decimal]


def to_minor_units(value: Amount) -> int:
    """Convert a major-unit amount (``25.5``) into integer minor units (``2550``).

    Rounds half-up to two decimal places before scaling so binary float noise
    never leaks into stored values.
    """
    if isinstance(value, bool):
        raise ValidationError("Invalid amount")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
        quantized = amount.quantize(_CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError("Invalid amount") from exc
    if not quantized.is_finite():
        raise ValidationError("Invalid amount")
    return int(quantized * CENTS_PER_UNIT)


def from_minor_units(cents: int) -> Decimal:
    return (Decimal(int(cents)) / CENTS_PER_UNIT).quantize(_CENT)


def cents_to_float(cents: int) -> float:
    return float(from_minor_units(cents))


def format_amount(cents: int) -> str:
    return f"{from_minor_units(cents):.2f}"
