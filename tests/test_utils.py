from datetime import date, datetime
from decimal import Decimal

import pytest

from utils import (as_date, to_decimal, round_currency, split_pro_rata, fmt_money, fmt_pct,
                   fmt_date, year_fraction)


def test_split_pro_rata_sums_exactly_and_breaks_ties_by_order():
    shares = split_pro_rata(Decimal("100.00"), [("a", 1), ("b", 1), ("c", 1)])
    assert shares == {"a": Decimal("33.34"), "b": Decimal("33.33"), "c": Decimal("33.33")}
    assert sum(shares.values()) == Decimal("100.00")


def test_split_pro_rata_largest_remainder_wins():
    shares = split_pro_rata(Decimal("10.00"), [("a", Decimal("33.5")), ("b", Decimal("66.5"))])
    # exact: 3.35 / 6.65
    assert shares == {"a": Decimal("3.35"), "b": Decimal("6.65")}

    shares = split_pro_rata(Decimal("1.00"), [("a", 1), ("b", 2)])
    # exact: 0.333.. / 0.666..; the larger remainder (b) takes the leftover cent
    assert shares == {"a": Decimal("0.33"), "b": Decimal("0.67")}


def test_split_pro_rata_zero_weights():
    shares = split_pro_rata(Decimal("50"), [("a", 0), ("b", 0)])
    assert shares == {"a": Decimal("0.00"), "b": Decimal("0.00")}
    assert split_pro_rata(Decimal("50"), []) == {}


def test_split_pro_rata_negative_total():
    shares = split_pro_rata(Decimal("-10.00"), [("a", 1), ("b", 2)])
    assert sum(shares.values()) == Decimal("-10.00")


def test_round_currency_half_up():
    assert round_currency(Decimal("2.345")) == Decimal("2.35")
    assert round_currency(Decimal("2.344")) == Decimal("2.34")
    assert round_currency(Decimal("1234.5"), "JPY") == Decimal("1235")
    assert round_currency("1,000.005") == Decimal("1000.01")


def test_to_decimal_and_as_date():
    assert to_decimal(0.1) == Decimal("0.1")
    assert to_decimal(None) == Decimal("0")
    assert to_decimal(None, None) is None
    with pytest.raises(ValueError):
        to_decimal("abc")

    assert as_date("2024-03-31") == date(2024, 3, 31)
    assert as_date(datetime(2024, 3, 31, 12, 0)) == date(2024, 3, 31)
    assert as_date(None) is None


def test_formatters():
    assert fmt_money(1234.5) == "1,234.50"
    assert fmt_money(None) == "—"
    assert fmt_pct(10.004) == "10.00%"
    assert fmt_date("2024-01-05") == "2024-01-05"
    assert fmt_date("") == "—"


def test_year_fraction():
    assert year_fraction(date(2023, 1, 1), date(2024, 1, 1)) == 1.0
