"""
loaders.py
Load and normalize tabular inputs: investor commitments and cash-flow series
"""

import logging
from typing import List

import pandas as pd

from models import CashFlow, StructureInvestor
from utils import to_decimal, as_date

logger = logging.getLogger(__name__)

CONTRIBUTION_KINDS = {'call', 'capital_call', 'contribution', 'capital call'}
DISTRIBUTION_KINDS = {'distribution', 'dist', 'return', 'nav'}


def load_investor_commitments(df: pd.DataFrame) -> pd.DataFrame:
    """
    Normalize an investor commitments table

    Expected columns:
    - user_id / investor_id / investor / userId: Investor identifier
    - commitment: Committed capital
    - fee_discount / feeDiscount (optional): Percent of gross fee waived
    - vat_exempt / vatExempt (optional): Truthy when the investor pays no VAT
    """
    inv = df.copy()
    inv.columns = [str(c).strip() for c in inv.columns]

    rename = {}
    for alias in ('userId', 'investor_id', 'InvestorID', 'investor'):
        if alias in inv.columns and 'user_id' not in inv.columns and 'user_id' not in rename.values():
            rename[alias] = 'user_id'
    if 'feeDiscount' in inv.columns:
        rename['feeDiscount'] = 'fee_discount'
    if 'vatExempt' in inv.columns:
        rename['vatExempt'] = 'vat_exempt'
    if 'Commitment' in inv.columns:
        rename['Commitment'] = 'commitment'
    inv = inv.rename(columns=rename)

    if 'user_id' not in inv.columns or 'commitment' not in inv.columns:
        raise ValueError("Commitments need an investor id column and a commitment column")

    if 'fee_discount' not in inv.columns:
        inv['fee_discount'] = 0.0
    if 'vat_exempt' not in inv.columns:
        inv['vat_exempt'] = False

    inv['user_id'] = inv['user_id'].astype(str).str.strip()
    inv['commitment'] = pd.to_numeric(inv['commitment'], errors='coerce').fillna(0.0)
    inv['fee_discount'] = pd.to_numeric(inv['fee_discount'], errors='coerce').fillna(0.0)
    inv['vat_exempt'] = inv['vat_exempt'].map(
        lambda v: str(v).strip().lower() in ('1', 'true', 'yes', 'y'))

    # Same investor listed twice: add commitments
    if inv['user_id'].duplicated().any():
        logger.warning("Duplicate investor rows found, summing commitments")
        inv = inv.groupby('user_id', as_index=False, sort=False).agg(
            commitment=('commitment', 'sum'),
            fee_discount=('fee_discount', 'max'),
            vat_exempt=('vat_exempt', 'max'),
        )

    return inv[['user_id', 'commitment', 'fee_discount', 'vat_exempt']].reset_index(drop=True)


def investors_from_frame(df: pd.DataFrame, structure_id: str) -> List[StructureInvestor]:
    """StructureInvestor rows from a normalized commitments table (ownership left at 0)"""
    inv = load_investor_commitments(df)
    return [
        StructureInvestor(
            structure_id=structure_id,
            user_id=r.user_id,
            commitment=to_decimal(r.commitment),
            fee_discount=to_decimal(r.fee_discount),
            vat_exempt=bool(r.vat_exempt),
        )
        for r in inv.itertuples(index=False)
    ]


def load_cash_flows(df: pd.DataFrame) -> pd.DataFrame:
    """
    Normalize a cash-flow table to columns date, amount, kind

    Sign convention after loading: contributions negative, distributions positive.
    When a kind column is present the sign is taken from the kind, otherwise
    amounts are used as given.
    """
    cf = df.copy()
    cf.columns = [str(c).strip().lower() for c in cf.columns]

    if 'effectivedate' in cf.columns and 'date' not in cf.columns:
        cf = cf.rename(columns={'effectivedate': 'date'})
    if 'type' in cf.columns and 'kind' not in cf.columns:
        cf = cf.rename(columns={'type': 'kind'})

    cf['date'] = pd.to_datetime(cf['date']).dt.date
    cf['amount'] = pd.to_numeric(cf['amount'], errors='coerce').fillna(0.0)

    if 'kind' in cf.columns:
        cf['kind'] = cf['kind'].astype(str).str.strip().str.lower()
        is_call = cf['kind'].isin(CONTRIBUTION_KINDS)
        is_dist = cf['kind'].isin(DISTRIBUTION_KINDS)
        cf.loc[is_call, 'amount'] = -cf.loc[is_call, 'amount'].abs()
        cf.loc[is_dist, 'amount'] = cf.loc[is_dist, 'amount'].abs()
        unknown = ~(is_call | is_dist)
        if unknown.any():
            logger.warning(f"{int(unknown.sum())} cash flows with unknown kind kept with their own sign")
    else:
        cf['kind'] = cf['amount'].map(lambda a: 'call' if a < 0 else 'distribution')

    cf = cf[cf['amount'] != 0]
    return cf[['date', 'amount', 'kind']].sort_values('date').reset_index(drop=True)


def cash_flows_from_frame(df: pd.DataFrame) -> List[CashFlow]:
    cf = load_cash_flows(df)
    return [CashFlow(date=as_date(r.date), amount=float(r.amount), kind=r.kind)
            for r in cf.itertuples(index=False)]


def validate_cash_flows(df: pd.DataFrame) -> List[str]:
    """
    Validate a raw cash-flow table and return list of issues

    Returns:
        List of validation error messages (empty if valid)
    """
    errors = []

    if df is None or df.empty:
        errors.append("Cash flow dataframe is empty")
        return errors

    cols = {str(c).strip().lower() for c in df.columns}
    if 'date' not in cols and 'effectivedate' not in cols:
        errors.append("Missing required column: date")
    if 'amount' not in cols:
        errors.append("Missing required column: amount")
    if errors:
        return errors

    lowered = df.rename(columns=lambda c: str(c).strip().lower())
    if 'effectivedate' in lowered.columns and 'date' not in lowered.columns:
        lowered = lowered.rename(columns={'effectivedate': 'date'})
    if lowered['date'].isnull().any():
        errors.append("Found null values in date column")
    if pd.to_numeric(lowered['amount'], errors='coerce').isnull().any():
        errors.append("Found non-numeric values in amount column")

    return errors
