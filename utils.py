"""
utils.py
Utility functions for dates, decimal money and pro-rata splitting
"""

from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP, InvalidOperation
from typing import Dict, Optional, Sequence, Tuple
import pandas as pd

from config import CURRENCY_MINOR_UNITS, DEFAULT_CURRENCY

ZERO = Decimal("0")
HUNDRED = Decimal("100")


def as_date(x) -> Optional[date]:
    """Convert various formats to date object (None stays None)"""
    if x is None or (isinstance(x, float) and pd.isna(x)):
        return None
    if isinstance(x, datetime):
        return x.date()
    if isinstance(x, date):
        return x
    return pd.to_datetime(x).date()


def utc_now() -> str:
    """ISO-8601 UTC timestamp with microseconds (sortable as text)"""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def to_decimal(x, default: Optional[Decimal] = ZERO) -> Optional[Decimal]:
    """Coerce numbers/strings to Decimal without going through binary float repr"""
    if x is None or (isinstance(x, float) and pd.isna(x)):
        return default
    if isinstance(x, Decimal):
        return x
    if isinstance(x, float):
        return Decimal(str(x))
    try:
        return Decimal(str(x).strip().replace(",", ""))
    except InvalidOperation:
        raise ValueError(f"Not a number: {x!r}")


def minor_units(currency: Optional[str]) -> int:
    return CURRENCY_MINOR_UNITS.get((currency or DEFAULT_CURRENCY).upper(), 2)


def round_currency(amount, currency: Optional[str] = None) -> Decimal:
    """Round half-up to the smallest unit of the currency"""
    quantum = Decimal(1).scaleb(-minor_units(currency))
    return to_decimal(amount).quantize(quantum, rounding=ROUND_HALF_UP)


def split_pro_rata(
    total: Decimal,
    weights: Sequence[Tuple[str, Decimal]],
    places: int = 2,
) -> Dict[str, Decimal]:
    """
    Split total across keys in proportion to weights, rounded to `places`.

    Largest-remainder rounding: every share is floored to the quantum, then the
    leftover quanta go to the keys with the largest fractional remainders
    (ties broken by key order).  The shares always sum exactly to the rounded
    total.  Zero total weight yields zero for every key.

    Args:
        total: Amount to split
        weights: [(key, weight)] - e.g. (investor_id, ownership_percent)
        places: Decimal places of the result

    Returns:
        Dict key -> share
    """
    quantum = Decimal(1).scaleb(-places)
    total = to_decimal(total).quantize(quantum, rounding=ROUND_HALF_UP)
    weight_sum = sum((to_decimal(w) for _, w in weights), ZERO)

    if not weights:
        return {}
    if weight_sum <= 0:
        return {k: ZERO.quantize(quantum) for k, _ in weights}

    sign = Decimal(1) if total >= 0 else Decimal(-1)
    magnitude = abs(total)

    floors = []
    for idx, (key, w) in enumerate(weights):
        exact = magnitude * to_decimal(w) / weight_sum
        floored = (exact / quantum).to_integral_value(rounding=ROUND_FLOOR) * quantum
        floors.append([key, floored, exact - floored, idx])

    leftover = int(((magnitude - sum(f[1] for f in floors)) / quantum).to_integral_value())
    for item in sorted(floors, key=lambda f: (-f[2], f[3]))[:leftover]:
        item[1] += quantum

    return {key: (sign * share).quantize(quantum) for key, share, _, _ in floors}


def pct_of(amount, percent) -> Decimal:
    """amount * percent / 100 in Decimal"""
    return to_decimal(amount) * to_decimal(percent) / HUNDRED


def year_fraction(d0: date, d1: date, basis: float = 365.0) -> float:
    """Actual days between two dates over the given day basis"""
    return (d1 - d0).days / basis


def fmt_money(x) -> str:
    """Format amount with commas and two decimals"""
    try:
        if x is None or (isinstance(x, float) and pd.isna(x)):
            return "—"
        return f"{float(x):,.2f}"
    except (TypeError, ValueError):
        return "—"


def fmt_pct(x, places: int = 2) -> str:
    """Format a percentage value (already x100)"""
    try:
        if x is None or (isinstance(x, float) and pd.isna(x)):
            return "—"
        return f"{float(x):.{places}f}%"
    except (TypeError, ValueError):
        return "—"


def fmt_date(x) -> str:
    """Format date for display"""
    try:
        if x is None or (isinstance(x, float) and pd.isna(x)):
            return "—"
        s = str(x).strip()
        if s == "":
            return "—"
        return pd.to_datetime(x).date().isoformat()
    except (TypeError, ValueError):
        return "—"
