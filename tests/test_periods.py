from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from errors import InvalidInput
from money import (
    CENT,
    MAX_AMOUNT,
    non_negative_cents,
    positive_cents,
    to_cents,
    to_decimal,
)
from periods import first_instant_of_month, parse_local_date, resolve_period


def test_parse_local_date_takes_leading_day_literally():
    assert parse_local_date("2025-03-14") == date(2025, 3, 14)
    assert parse_local_date("2025-01-31") == date(2025, 1, 31)
    assert parse_local_date("2025-03-14T23:30:00-08:00") == date(2025, 3, 14)
    assert parse_local_date(" 2025-03-14 ") == date(2025, 3, 14)


def test_parse_local_date_same_day_for_date_and_datetime():
    day = date(2025, 1, 31)
    assert parse_local_date(day) == day
    assert parse_local_date(datetime(2025, 1, 31, 22, 15)) == day
    berlin = timezone(timedelta(hours=1))
    # The wall-clock day wins, exactly as for the ISO string of that instant.
    assert parse_local_date(datetime(2025, 1, 31, 0, 30, tzinfo=berlin)) == day
    assert parse_local_date("2025-01-31T00:30:00+01:00") == day
    los_angeles = timezone(timedelta(hours=-8))
    assert parse_local_date(datetime(2025, 1, 31, 23, 30, tzinfo=los_angeles)) == day


@pytest.mark.parametrize("value", ["", "14.03.2025", "2025-02-30", "yesterday", 20250314])
def test_parse_local_date_rejects_malformed_input(value):
    with pytest.raises(InvalidInput) as exc:
        parse_local_date(value)
    assert exc.value.field == "date"


def test_resolve_period_defaults_to_this_month():
    period = resolve_period(None, None, None, today=date(2024, 2, 10))
    assert period.slug == "this_month"
    assert period.start == date(2024, 2, 1)
    assert period.end == date(2024, 2, 29)


def test_resolve_period_last_month_and_custom():
    last = resolve_period("last_month", None, None, today=date(2025, 1, 5))
    assert (last.start, last.end) == (date(2024, 12, 1), date(2024, 12, 31))

    custom = resolve_period(None, "2025-03-01", "2025-03-15", today=date(2025, 5, 1))
    assert custom.slug == "custom"
    assert (custom.start, custom.end) == (date(2025, 3, 1), date(2025, 3, 15))

    with pytest.raises(InvalidInput):
        resolve_period("custom", "2025-03-15", "2025-03-01")
    with pytest.raises(InvalidInput):
        resolve_period("custom", "2025-03-15", None)


def test_first_instant_of_month():
    moment = datetime(2025, 7, 19, 13, 45, 12, 999)
    assert first_instant_of_month(moment) == datetime(2025, 7, 1)


def test_amounts_are_exact_decimals():
    assert to_decimal("12,5") == Decimal("12.50")
    assert to_decimal("1.234,56") == Decimal("1234.56")
    assert to_decimal(Decimal("0.005")) == Decimal("0.01")
    assert to_cents("19.99") == 1999
    assert to_cents(3) == 300


def test_amount_validation_names_the_field():
    with pytest.raises(InvalidInput) as exc:
        to_decimal(0.1, field="paid_amount")
    assert exc.value.field == "paid_amount"

    with pytest.raises(InvalidInput):
        to_decimal("abc")
    with pytest.raises(InvalidInput):
        to_decimal("NaN")
    with pytest.raises(InvalidInput):
        positive_cents("0")
    with pytest.raises(InvalidInput):
        non_negative_cents("-1")
    assert non_negative_cents("0") == 0


@pytest.mark.parametrize("value", ["1E+30", "1E+20", Decimal("1E+400"), "-1E+30"])
def test_oversized_amounts_are_invalid_input(value):
    with pytest.raises(InvalidInput) as exc:
        to_cents(value, field="paid_amount")
    assert exc.value.field == "paid_amount"


def test_largest_amount_is_accepted():
    assert to_cents(MAX_AMOUNT) == 99999999999999
    with pytest.raises(InvalidInput):
        to_cents(MAX_AMOUNT + CENT)
