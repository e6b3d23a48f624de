"""
metrics.py
Fund performance metrics: XIRR (Newton-Raphson), TVPI, DPI, RVPI, MOIC
"""

import logging
from datetime import date
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np

from config import (IRR_INITIAL_GUESS, IRR_MAX_ITERATIONS, IRR_NPV_TOLERANCE,
                    IRR_DERIVATIVE_FLOOR, IRR_RATE_FLOOR, IRR_RATE_CEILING, IRR_DAY_BASIS)
from models import CashFlow, IRRResult, PerformanceMetrics

logger = logging.getLogger(__name__)

FlowLike = Union[CashFlow, Tuple[date, float]]


def _as_arrays(cfs: Sequence[FlowLike]) -> Tuple[np.ndarray, np.ndarray]:
    """Sort flows by date; return (years since first flow, amounts)"""
    pairs = [(cf.date, cf.amount) if isinstance(cf, CashFlow) else (cf[0], cf[1]) for cf in cfs]
    pairs.sort(key=lambda t: t[0])
    t0 = pairs[0][0]
    days = np.array([(d - t0).days for d, _ in pairs], dtype=float)
    amounts = np.array([float(a) for _, a in pairs], dtype=float)
    return days / IRR_DAY_BASIS, amounts


def xnpv(rate: float, cfs: Sequence[FlowLike]) -> float:
    """
    Net present value with irregular cashflow dates

    Args:
        rate: Annual discount rate (as decimal, e.g., 0.15 for 15%)
        cfs: List of CashFlow or (date, amount) tuples

    Returns:
        Net present value at the date of the first flow
    """
    if not cfs or rate <= -1.0:
        return float('inf')
    years, amounts = _as_arrays(cfs)
    return float(np.sum(amounts / np.power(1.0 + rate, years)))


def solve_irr(cfs: Sequence[FlowLike]) -> IRRResult:
    """
    Newton-Raphson IRR on NPV(r) = sum(a_i / (1+r)^(days_i/365.25)).

    Starts at 10%, iterates at most 100 times and clamps the rate to
    [-99%, 1000%] after every step.  Exits:
      - |NPV| < 1e-4: converged
      - |dNPV/dr| < 1e-10: approximate exit, last rate returned with
        converged=False (logged, not an error)
      - iteration ceiling: last rate returned with converged=False

    Fewer than two flows gives an IRR of 0.

    Returns:
        IRRResult with the IRR as a percentage
    """
    if not cfs or len(cfs) < 2:
        return IRRResult(irr=0.0, converged=True, iterations=0)

    years, amounts = _as_arrays(cfs)
    rate = IRR_INITIAL_GUESS

    for i in range(IRR_MAX_ITERATIONS):
        discount = np.power(1.0 + rate, years)
        npv = float(np.sum(amounts / discount))
        if abs(npv) < IRR_NPV_TOLERANCE:
            return IRRResult(irr=rate * 100.0, converged=True, iterations=i)

        derivative = float(np.sum(-years * amounts / (discount * (1.0 + rate))))
        if abs(derivative) < IRR_DERIVATIVE_FLOOR:
            logger.warning(
                f"IRR derivative below {IRR_DERIVATIVE_FLOOR} after {i} iterations; "
                f"returning approximate rate {rate:.6f} (NPV={npv:.6f})"
            )
            return IRRResult(irr=rate * 100.0, converged=False, iterations=i)

        rate = rate - npv / derivative
        rate = min(max(rate, IRR_RATE_FLOOR), IRR_RATE_CEILING)

    logger.warning(
        f"IRR did not converge within {IRR_MAX_ITERATIONS} iterations; "
        f"returning last rate {rate:.6f}"
    )
    return IRRResult(irr=rate * 100.0, converged=False, iterations=IRR_MAX_ITERATIONS)


def xirr(cfs: Sequence[FlowLike]) -> Optional[float]:
    """
    Internal Rate of Return with irregular cashflow dates

    Returns:
        Annual IRR as decimal (e.g., 0.15 for 15%)
        None if the flows are not a mix of investments and returns
    """
    if not cfs or len(cfs) < 2:
        return None
    _, amounts = _as_arrays(cfs)
    if amounts.min() >= 0 or amounts.max() <= 0:
        return None
    return solve_irr(cfs).irr / 100.0


def calculate_multiples(total_called: float, total_distributed: float, nav: float) -> dict:
    """
    TVPI = (NAV + distributed) / called
    DPI  = distributed / called
    RVPI = NAV / called
    MOIC = TVPI

    All zero when nothing has been called.
    """
    if total_called <= 0:
        return {"tvpi": 0.0, "dpi": 0.0, "rvpi": 0.0, "moic": 0.0}
    tvpi = (nav + total_distributed) / total_called
    return {
        "tvpi": tvpi,
        "dpi": total_distributed / total_called,
        "rvpi": nav / total_called,
        "moic": tvpi,
    }


def approximate_net_irr(gross_irr: float, total_fees: float, total_called: float) -> float:
    """
    Net IRR as gross IRR scaled by the fee drag: gross x (1 - fees / called).

    This is the figure historical reports were produced with; it is not an
    IRR over net-of-fee cash flows.
    """
    if total_called <= 0:
        return 0.0
    return gross_irr * (1.0 - total_fees / total_called)


def compute_performance(
    cash_flows: Sequence[CashFlow],
    as_of_nav: float = 0.0,
    as_of_date: Optional[date] = None,
    total_fees: float = 0.0,
) -> PerformanceMetrics:
    """
    Performance metrics over a fund's cash-flow history.

    Args:
        cash_flows: Capital calls as negative flows, distributions as positive
        as_of_nav: NAV estimate, appended as a terminal positive flow when > 0
        as_of_date: Date of the NAV flow (defaults to the last flow date)
        total_fees: Management fees charged, for the net IRR approximation

    Returns:
        PerformanceMetrics (IRR values are percentages)
    """
    flows: List[CashFlow] = sorted(cash_flows, key=lambda cf: cf.date)
    total_called = float(sum(-cf.amount for cf in flows if cf.amount < 0))
    total_distributed = float(sum(cf.amount for cf in flows if cf.amount > 0))
    nav = float(as_of_nav or 0.0)

    irr_flows = list(flows)
    if nav > 0 and flows:
        irr_flows.append(CashFlow(date=as_of_date or flows[-1].date, amount=nav, kind="nav"))

    irr = solve_irr(irr_flows)
    multiples = calculate_multiples(total_called, total_distributed, nav)

    return PerformanceMetrics(
        irr=irr.irr,
        net_irr=approximate_net_irr(irr.irr, float(total_fees or 0.0), total_called),
        tvpi=multiples["tvpi"],
        dpi=multiples["dpi"],
        rvpi=multiples["rvpi"],
        moic=multiples["moic"],
        total_capital_called=total_called,
        total_distributed=total_distributed,
        nav=nav,
        total_fees=float(total_fees or 0.0),
        irr_converged=irr.converged,
    )
