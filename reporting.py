"""
reporting.py
ILPA-style reporting: fund performance, quarterly activity, capital call &
distribution (CC&D) summary

Only approved capital calls and distributions enter the numbers.
"""

import logging
from datetime import date
from typing import Any, Dict, List, Optional

import pandas as pd

from config import ApprovalStatus, EntityType
from errors import NotFoundError
from metrics import compute_performance
from models import CapitalCall, CashFlow, Distribution
from utils import ZERO, to_decimal, as_date, fmt_money, fmt_pct, fmt_date

logger = logging.getLogger(__name__)

APPROVED = [ApprovalStatus.APPROVED]


def cash_flows_from_transactions(calls: List[CapitalCall],
                                 distributions: List[Distribution],
                                 as_of: Optional[date] = None) -> List[CashFlow]:
    """Calls as negative flows on their call date, distributions positive on theirs"""
    flows = []
    for c in calls:
        if c.call_date and (as_of is None or c.call_date <= as_of):
            flows.append(CashFlow(date=c.call_date, amount=-float(c.total_call_amount), kind="call"))
    for d in distributions:
        if d.distribution_date and (as_of is None or d.distribution_date <= as_of):
            flows.append(CashFlow(date=d.distribution_date, amount=float(d.total_amount), kind="distribution"))
    return sorted(flows, key=lambda cf: cf.date)


def _approved(store, entity_type, structure_id):
    return store.list_transactions(entity_type, structure_id, approval_statuses=APPROVED)


def performance_report(store, structure_id: str, nav=None,
                       as_of: Optional[date] = None) -> Dict[str, Any]:
    """
    Fund performance summary

    Args:
        nav: Current NAV; when omitted it is estimated as called - distributed
            (floored at zero) and reports no unrealized gain
        as_of: Report date (defaults to today); flows after it are ignored

    Returns:
        Dict with fundInfo, performance (2 dp), capitalSummary, cashFlowSummary
    """
    fund = store.get_structure(structure_id)
    if fund is None:
        raise NotFoundError("structure", structure_id)
    as_of = as_date(as_of) or date.today()

    calls = [c for c in _approved(store, EntityType.CAPITAL_CALL, structure_id)
             if c.call_date is None or c.call_date <= as_of]
    dists = [d for d in _approved(store, EntityType.DISTRIBUTION, structure_id)
             if d.distribution_date is None or d.distribution_date <= as_of]
    investors = store.list_structure_investors(structure_id)

    total_fees = float(sum(
        (a.management_fee_net for c in calls
         for a in store.list_allocations(EntityType.CAPITAL_CALL, c.id)), ZERO))
    flows = cash_flows_from_transactions(calls, dists, as_of)
    called = float(sum((c.total_call_amount for c in calls), ZERO))
    distributed = float(sum((d.total_amount for d in dists), ZERO))

    # estimated NAV is the unreturned cost basis, so it carries no unrealized gain
    cost_remaining = max(0.0, called - distributed)
    nav = cost_remaining if nav is None else float(nav)

    m = compute_performance(flows, as_of_nav=nav, as_of_date=as_of, total_fees=total_fees)
    if not m.irr_converged:
        logger.warning(f"Structure {structure_id}: IRR is an approximate estimate")

    total_value = nav + distributed
    net_tvpi = (total_value - total_fees) / called if called > 0 else 0.0
    commitment = float(to_decimal(fund.total_commitment))

    return {
        'fundInfo': {
            'id': fund.id,
            'name': fund.name or 'Fund',
            'currency': fund.base_currency,
            'vintage': int(fund.created_at[:4]) if fund.created_at else None,
            'totalCommitment': commitment,
            'investorCount': len(investors),
        },
        'performance': {
            'grossIRR': round(m.irr, 2),
            'netIRR': round(m.net_irr, 2),
            'grossTVPI': round(m.tvpi, 2),
            'netTVPI': round(net_tvpi, 2),
            'dpi': round(m.dpi, 2),
            'rvpi': round(m.rvpi, 2),
            'moic': round(m.moic, 2),
            'irrConverged': m.irr_converged,
        },
        'capitalSummary': {
            'totalCommitment': commitment,
            'totalCapitalCalled': called,
            'totalDistributed': distributed,
            'totalFees': total_fees,
            'currentNAV': nav,
            'totalValue': total_value,
            'uncalled': commitment - called,
            'paidInRatio': round(called / commitment * 100, 1) if commitment > 0 else 0.0,
        },
        'cashFlowSummary': {
            'totalCalls': len(calls),
            'totalDistributions': len(dists),
            'realizedGain': round(max(0.0, distributed - called), 2),
            'unrealizedGain': round(max(0.0, nav - cost_remaining), 2),
        },
        'asOfDate': as_of.isoformat(),
    }


def performance_table(report: Dict[str, Any]) -> pd.DataFrame:
    """Display table (Metric, Value) for a performance report"""
    p = report['performance']
    c = report['capitalSummary']
    rows = [
        ('Gross IRR', fmt_pct(p['grossIRR'])),
        ('Net IRR', fmt_pct(p['netIRR'])),
        ('Gross TVPI', f"{p['grossTVPI']:.2f}x"),
        ('Net TVPI', f"{p['netTVPI']:.2f}x"),
        ('DPI', f"{p['dpi']:.2f}x"),
        ('RVPI', f"{p['rvpi']:.2f}x"),
        ('MOIC', f"{p['moic']:.2f}x"),
        ('Total Commitment', fmt_money(c['totalCommitment'])),
        ('Capital Called', fmt_money(c['totalCapitalCalled'])),
        ('Distributed', fmt_money(c['totalDistributed'])),
        ('NAV', fmt_money(c['currentNAV'])),
        ('Paid-In Ratio', fmt_pct(c['paidInRatio'], 1)),
        ('As Of', fmt_date(report['asOfDate'])),
    ]
    return pd.DataFrame(rows, columns=['Metric', 'Value'])


def quarterly_activity(store, structure_id: str, start_date, end_date) -> Dict[str, Any]:
    """Approved calls and distributions dated within [start_date, end_date]"""
    start, end = as_date(start_date), as_date(end_date)
    calls = [c for c in _approved(store, EntityType.CAPITAL_CALL, structure_id)
             if c.call_date and start <= c.call_date <= end]
    dists = [d for d in _approved(store, EntityType.DISTRIBUTION, structure_id)
             if d.distribution_date and start <= d.distribution_date <= end]

    called = sum((c.total_call_amount for c in calls), ZERO)
    distributed = sum((d.total_amount for d in dists), ZERO)
    return {
        'period': {'startDate': start.isoformat(), 'endDate': end.isoformat()},
        'capitalCalls': {
            'count': len(calls),
            'totalAmount': called,
            'calls': [{'callNumber': c.call_number, 'callDate': c.call_date.isoformat(),
                       'amount': c.total_call_amount,
                       'purpose': c.purpose or 'Capital Deployment'} for c in calls],
        },
        'distributions': {
            'count': len(dists),
            'totalAmount': distributed,
            'distributions': [{'distributionNumber': d.distribution_number,
                               'distributionDate': d.distribution_date.isoformat(),
                               'amount': d.total_amount,
                               'source': d.source or 'Operating Income'} for d in dists],
        },
        'netCashFlow': called - distributed,
    }


def ccd_summary(store, structure_id: str) -> pd.DataFrame:
    """
    Capital call & distribution running balances

    Returns:
        DataFrame ordered by date with columns: date, type, number, amount,
        cumulativeCalled, cumulativeDistributed, netPosition
    """
    cols = ['date', 'type', 'number', 'amount', 'cumulativeCalled',
            'cumulativeDistributed', 'netPosition']
    rows = []
    for c in _approved(store, EntityType.CAPITAL_CALL, structure_id):
        rows.append({'date': c.call_date, 'type': 'Capital Call', 'number': c.call_number,
                     'called': float(c.total_call_amount), 'distributed': 0.0})
    for d in _approved(store, EntityType.DISTRIBUTION, structure_id):
        rows.append({'date': d.distribution_date, 'type': 'Distribution',
                     'number': d.distribution_number,
                     'called': 0.0, 'distributed': float(d.total_amount)})
    if not rows:
        return pd.DataFrame(columns=cols)

    df = pd.DataFrame(rows).sort_values(['date', 'type', 'number'], kind='mergesort')
    df['amount'] = df['called'] + df['distributed']
    df['cumulativeCalled'] = df['called'].cumsum()
    df['cumulativeDistributed'] = df['distributed'].cumsum()
    df['netPosition'] = df['cumulativeCalled'] - df['cumulativeDistributed']
    return df[cols].reset_index(drop=True)
