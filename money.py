from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

from errors import InvalidInput

CENT = Decimal("0.01")

# Largest amount the ledger accepts; keeps every cents column (and any sum of
# a month's expenses) well inside a signed 64-bit integer.
MAX_AMOUNT = Decimal("999999999999.99")

AmountLike = Union[Decimal, int, str]


def to_decimal(value: AmountLike, *, field: str = "amount") -> Decimal:
    """Coerce user input into a cent-quantized Decimal.

    Floats are rejected: every amount must arrive as text, an int or a
    Decimal so nothing binary-rounded ever reaches the ledger. Amounts
    beyond ``MAX_AMOUNT`` in either direction are rejected too.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise InvalidInput(f"Invalid {field}", field=field)
    if isinstance(value, str):
        clean = value.strip().replace(" ", "").replace(",", ".")
        if clean.count(".") > 1:
            parts = clean.split(".")
            clean = "".join(parts[:-1]) + "." + parts[-1]
        value = clean
    try:
        amount = Decimal(value)
        if not amount.is_finite():
            raise InvalidInput(f"Invalid {field}", field=field)
        if abs(amount) > MAX_AMOUNT:
            raise InvalidInput(f"{field} is too large", field=field)
        return amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, TypeError) as exc:
        raise InvalidInput(f"Invalid {field}", field=field) from exc


def to_cents(value: AmountLike, *, field: str = "amount") -> int:
    return int(to_decimal(value, field=field) * 100)


def cents_to_decimal(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def positive_cents(value: AmountLike, *, field: str = "amount") -> int:
    cents = to_cents(value, field=field)
    if cents <= 0:
        raise InvalidInput(f"{field} must be positive", field=field)
    return cents


def non_negative_cents(value: AmountLike, *, field: str = "amount") -> int:
    cents = to_cents(value, field=field)
    if cents < 0:
        raise InvalidInput(f"{field} must not be negative", field=field)
    return cents
