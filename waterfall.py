"""
waterfall.py
Distribution waterfall engine (European, whole-fund)

KEY PRINCIPLES:
- Tiers run strictly in order against the balance left by prior tiers:
    1. Return of Capital  - up to called capital not yet returned (100% LP)
    2. Preferred Return   - up to compounded hurdle on called capital not yet paid (100% LP)
    3. GP Catch-Up        - until the GP holds carry% of all profit distributed (catch_up_rate% GP)
    4. Residual Split     - carry% GP / remainder LP
- Each tier is a pure function (accumulator, terms) -> accumulator; the engine
  is a fold over the tier list, so no balance is shared between steps
- A tier is capped at the remaining balance; the remainder never goes negative
- Optional management fee at exit is deducted before tier 1
- LP amounts of every tier are split pro rata by ownership with
  largest-remainder rounding, so investor rows add up exactly to the tier
"""

import logging
from dataclasses import replace
from datetime import date
from decimal import Decimal
from functools import reduce
from typing import Callable, Dict, Iterable, List, Sequence, Tuple

from config import PREF_DAY_BASIS, ApprovalStatus
from errors import ValidationError
from models import (WaterfallTerms, WaterfallPosition, WaterfallAccumulator, TierAmount,
                    WaterfallResult, DistributionAllocation, CapitalCall, Distribution)
from utils import ZERO, HUNDRED, to_decimal, round_currency, split_pro_rata, minor_units, as_date

logger = logging.getLogger(__name__)

TIER_NAMES = {
    1: "Return of Capital",
    2: "Preferred Return",
    3: "GP Catch-Up",
    4: "Residual Split",
}


# ============================================================
# PREF ACCRUAL
# ============================================================

def _growth(h: Decimal, start: date, end: date) -> Decimal:
    years = Decimal((end - start).days) / Decimal(str(PREF_DAY_BASIS))
    return (Decimal(1) + h) ** years - Decimal(1)


def accrue_preferred_return(
    contributions: Iterable[Tuple[date, Decimal]],
    as_of: date,
    hurdle_rate,
    currency: str = None,
    repayments: Iterable[Tuple[date, Decimal, Decimal]] = (),
) -> Decimal:
    """
    Unpaid compounded hurdle return at as_of.

    Replays contributions and repayments in date order.  Between events the
    pref accrues on  base = capital_outstanding + pref_unpaid_compounded,
    compounding annually on an Act/365 basis.  Events dated after as_of are
    ignored; on the same date contributions land before repayments.

    Args:
        contributions: [(call_date, amount)]
        as_of: Distribution date
        hurdle_rate: Annual hurdle as percentage (8 = 8%)
        repayments: [(distribution_date, capital_returned, pref_paid)]
    """
    h = to_decimal(hurdle_rate) / HUNDRED
    if h <= 0:
        return round_currency(ZERO, currency)

    events = [(as_date(d), 0, to_decimal(a), ZERO) for d, a in contributions]
    events += [(as_date(d), 1, -to_decimal(r), to_decimal(p)) for d, r, p in repayments]
    events = sorted((e for e in events if e[0] is not None and e[0] <= as_of),
                    key=lambda e: (e[0], e[1]))

    capital = ZERO
    unpaid = ZERO
    last = None
    for d, _, capital_delta, pref_paid in events:
        if last is not None and d > last:
            unpaid += max(ZERO, capital + unpaid) * _growth(h, last, d)
        capital = max(ZERO, capital + capital_delta)
        unpaid = max(ZERO, unpaid - pref_paid)
        last = d

    if last is not None and as_of > last:
        unpaid += max(ZERO, capital + unpaid) * _growth(h, last, as_of)
    return round_currency(unpaid, currency)


def position_from_history(
    capital_calls: Sequence[CapitalCall],
    prior_distributions: Sequence[Distribution],
    as_of: date,
    hurdle_rate,
    currency: str = None,
) -> WaterfallPosition:
    """
    Build the cumulative fund position before a distribution.

    Only approved capital calls dated on/before as_of count as called capital.
    Only distributions whose waterfall has been applied contribute to the
    returned / paid balances.  Undated records are placed at as_of.

    preferred_accrued is reported as pref already paid plus the pref still
    unpaid at as_of, so capital returned by tier 1 stops earning the hurdle
    from its distribution date.
    """
    called = [
        (c.call_date or as_of, to_decimal(c.total_call_amount)) for c in capital_calls
        if c.approval_status == ApprovalStatus.APPROVED
        and (c.call_date is None or c.call_date <= as_of)
    ]
    applied = [
        d for d in prior_distributions
        if d.waterfall_applied and (d.distribution_date is None or d.distribution_date <= as_of)
    ]
    contributed = sum((a for _, a in called), ZERO)

    returned = sum((d.tier1_amount for d in applied), ZERO)
    pref_paid = sum((d.tier2_amount for d in applied), ZERO)
    gp_paid = sum((d.gp_total_amount for d in applied), ZERO)
    profit = sum((d.tier2_amount + d.tier3_amount + d.tier4_amount for d in applied), ZERO)

    unpaid = accrue_preferred_return(
        called, as_of, hurdle_rate, currency,
        repayments=[(d.distribution_date or as_of, d.tier1_amount, d.tier2_amount) for d in applied],
    )

    return WaterfallPosition(
        contributed_capital=round_currency(contributed, currency),
        returned_capital=returned,
        preferred_accrued=pref_paid + unpaid,
        preferred_paid=pref_paid,
        gp_profit_paid=gp_paid,
        lp_profit_paid=profit - gp_paid,
    )


# ============================================================
# TIER FUNCTIONS
# ============================================================

def _take(acc: WaterfallAccumulator, tier: int, amount: Decimal, gp_amount: Decimal,
          position: WaterfallPosition) -> WaterfallAccumulator:
    amount = max(ZERO, min(amount, acc.remaining))
    gp_amount = min(gp_amount, amount)
    step = TierAmount(
        tier=tier,
        name=TIER_NAMES[tier],
        amount=amount,
        lp_amount=amount - gp_amount,
        gp_amount=gp_amount,
    )
    return WaterfallAccumulator(
        remaining=acc.remaining - amount,
        position=position,
        tiers=acc.tiers + (step,),
    )


def tier_return_of_capital(acc: WaterfallAccumulator, terms: WaterfallTerms) -> WaterfallAccumulator:
    """Tier 1: return called, undistributed capital to LPs"""
    amount = min(acc.remaining, acc.position.unreturned_capital)
    position = replace(acc.position, returned_capital=acc.position.returned_capital + amount)
    return _take(acc, 1, amount, ZERO, position)


def tier_preferred_return(acc: WaterfallAccumulator, terms: WaterfallTerms) -> WaterfallAccumulator:
    """Tier 2: pay the unpaid compounded hurdle return to LPs"""
    amount = min(acc.remaining, acc.position.unpaid_preferred)
    position = replace(
        acc.position,
        preferred_paid=acc.position.preferred_paid + amount,
        lp_profit_paid=acc.position.lp_profit_paid + amount,
    )
    return _take(acc, 2, amount, ZERO, position)


def catch_up_required(position: WaterfallPosition, terms: WaterfallTerms) -> Decimal:
    """
    Catch-up amount that brings the GP to carry% of cumulative profit.

    With carry k and catch-up share c (GP receives c of every catch-up dollar),
    the catch-up X solves  gp_paid + c*X = k * (profit_paid + X),
    i.e.  X = (k * profit_paid - gp_paid) / (c - k).
    Returns zero when the GP is already at or above target, or when c <= k
    (the catch-up could never close the gap).
    """
    k = to_decimal(terms.carry_percent) / HUNDRED
    c = to_decimal(terms.catch_up_rate) / HUNDRED
    if k <= 0 or c <= 0:
        return ZERO
    if c <= k:
        logger.warning(
            f"Catch-up rate {terms.catch_up_rate}% does not exceed carry "
            f"{terms.carry_percent}%; catch-up tier disabled"
        )
        return ZERO
    gap = k * position.profit_paid - position.gp_profit_paid
    if gap <= 0:
        return ZERO
    return round_currency(gap / (c - k), terms.currency)


def tier_gp_catch_up(acc: WaterfallAccumulator, terms: WaterfallTerms) -> WaterfallAccumulator:
    """Tier 3: GP catch-up, split catch_up_rate% GP / remainder LP"""
    amount = min(acc.remaining, catch_up_required(acc.position, terms))
    gp = round_currency(amount * to_decimal(terms.catch_up_rate) / HUNDRED, terms.currency)
    gp = min(gp, amount)
    position = replace(
        acc.position,
        gp_profit_paid=acc.position.gp_profit_paid + gp,
        lp_profit_paid=acc.position.lp_profit_paid + (amount - gp),
    )
    return _take(acc, 3, amount, gp, position)


def tier_residual_split(acc: WaterfallAccumulator, terms: WaterfallTerms) -> WaterfallAccumulator:
    """Tier 4: everything left, carry% GP / remainder LP"""
    amount = acc.remaining
    gp = round_currency(amount * to_decimal(terms.carry_percent) / HUNDRED, terms.currency)
    gp = min(gp, amount)
    position = replace(
        acc.position,
        gp_profit_paid=acc.position.gp_profit_paid + gp,
        lp_profit_paid=acc.position.lp_profit_paid + (amount - gp),
    )
    return _take(acc, 4, amount, gp, position)


TIER_FUNCTIONS: List[Callable[[WaterfallAccumulator, WaterfallTerms], WaterfallAccumulator]] = [
    tier_return_of_capital,
    tier_preferred_return,
    tier_gp_catch_up,
    tier_residual_split,
]


# ============================================================
# ENGINE
# ============================================================

def _validate_terms(terms: WaterfallTerms):
    for name, value in (("hurdleRate", terms.hurdle_rate),
                        ("catchUpRate", terms.catch_up_rate),
                        ("carryPercent", terms.carry_percent),
                        ("exitManagementFeePercent", terms.exit_management_fee_percent)):
        v = to_decimal(value)
        if v < 0 or v > HUNDRED:
            raise ValidationError(name, "must be between 0 and 100")


def allocate_to_investors(
    tiers: Sequence[TierAmount],
    ownership: Sequence[Tuple[str, Decimal]],
    distribution_id: str = "",
    currency: str = None,
    payment_date: date = None,
) -> List[DistributionAllocation]:
    """
    Split the LP share of every tier pro rata by ownership percentage.

    Ownership is normalised to its own total, so percentages that do not add
    up to exactly 100 still allocate the whole LP amount.
    """
    places = minor_units(currency)
    pct_total = sum((to_decimal(p) for _, p in ownership), ZERO)
    by_tier: Dict[int, Dict[str, Decimal]] = {
        t.tier: split_pro_rata(t.lp_amount, ownership, places) for t in tiers
    }

    rows = []
    for investor_id, pct in ownership:
        amounts = {n: by_tier.get(n, {}).get(investor_id, ZERO) for n in (1, 2, 3, 4)}
        share = (to_decimal(pct) / pct_total * HUNDRED) if pct_total > 0 else ZERO
        rows.append(DistributionAllocation(
            distribution_id=distribution_id,
            user_id=investor_id,
            ownership_percent=share.quantize(Decimal("0.0001")),
            tier1_amount=amounts[1],
            tier2_amount=amounts[2],
            tier3_amount=amounts[3],
            tier4_amount=amounts[4],
            allocated_amount=sum(amounts.values(), ZERO),
            payment_date=payment_date,
        ))
    return rows


def run_waterfall(
    total_amount,
    terms: WaterfallTerms,
    position: WaterfallPosition,
    ownership: Sequence[Tuple[str, Decimal]],
    distribution_id: str = "",
    payment_date: date = None,
) -> WaterfallResult:
    """
    Run the four-tier waterfall for one distribution.

    Pure function: inputs are values, nothing is persisted.

    Args:
        total_amount: Distributable amount
        terms: Hurdle, catch-up, carry and exit-fee parameters
        position: Cumulative fund position before this distribution
        ownership: [(investor_id, ownership_percent)] at computation time
        distribution_id: Stamped on the allocation rows

    Returns:
        WaterfallResult with tier amounts, LP/GP totals and investor rows
    """
    total = round_currency(total_amount, terms.currency)
    if total <= 0:
        raise ValidationError("totalAmount", "must be positive")
    _validate_terms(terms)
    for investor_id, pct in ownership:
        if to_decimal(pct) < 0:
            raise ValidationError("ownershipPercent", f"negative ownership for {investor_id}")

    fee = round_currency(total * to_decimal(terms.exit_management_fee_percent) / HUNDRED,
                         terms.currency)

    start = WaterfallAccumulator(remaining=total - fee, position=position)
    final = reduce(lambda acc, tier_fn: tier_fn(acc, terms), TIER_FUNCTIONS, start)

    tiers = list(final.tiers)
    lp_total = sum((t.lp_amount for t in tiers), ZERO)
    gp_total = sum((t.gp_amount for t in tiers), ZERO)

    if lp_total > 0 and sum((to_decimal(p) for _, p in ownership), ZERO) <= 0:
        raise ValidationError("ownership", "no investors with positive ownership to allocate to")

    allocations = allocate_to_investors(tiers, ownership, distribution_id,
                                        terms.currency, payment_date)

    logger.info(
        f"Waterfall {distribution_id or '(unsaved)'}: total={total} fee={fee} "
        + " ".join(f"T{t.tier}={t.amount}" for t in tiers)
        + f" LP={lp_total} GP={gp_total}"
    )

    return WaterfallResult(
        total_amount=total,
        management_fee_amount=fee,
        tiers=tiers,
        lp_total=lp_total,
        gp_total=gp_total,
        allocations=allocations,
    )
