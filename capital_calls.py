"""
capital_calls.py
Capital calls: creation, investor allocations with ILPA fees, payment recording

Allocation amounts per investor:
    principal   = call total x ownership (largest remainder, sums to the call total)
    fees        = FeeCalculator on the configured base (see fees.py)
    total_due   = principal + net fee + VAT
Payments are applied principal first, then fees, then VAT.
"""

import logging
import uuid
from dataclasses import replace
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

import pandas as pd

from config import (ApprovalStatus, EntityType, ACTION_CREATED, FEE_BASES,
                    FEE_BASE_INVESTED, FEE_BASE_NIC_PLUS_UNFUNDED,
                    CALL_STATUS_PARTIAL, CALL_STATUS_PAID,
                    ALLOC_STATUS_PENDING, ALLOC_STATUS_PARTIAL, ALLOC_STATUS_PAID,
                    OP_CREATE, OP_GENERATE_ALLOCATIONS, OP_RECORD_PAYMENT, OP_MARK_PAID,
                    OP_DELETE, fee_period_fraction)
from errors import NotFoundError, StateConflictError, ValidationError
from fees import compute_fees, period_rate, fee_base_amount
from models import (Actor, CapitalCall, CapitalCallAllocation, FeeConfig, FundContext,
                    InvestorFeeTerms, StructureInvestor)
from ownership import ownership_weights
from ports import RoleAuthorizer
from utils import ZERO, HUNDRED, to_decimal, as_date, round_currency, split_pro_rata, minor_units, pct_of
import audit

logger = logging.getLogger(__name__)


# ============================================================
# CREATION
# ============================================================

def _validate_percent(name: str, value):
    if value is None:
        return
    v = to_decimal(value)
    if v < 0 or v > HUNDRED:
        raise ValidationError(name, "must be between 0 and 100")


def create_capital_call(
    store,
    actor: Actor,
    structure_id: str,
    total_call_amount,
    call_date: Optional[date] = None,
    due_date: Optional[date] = None,
    purpose: str = "",
    notes: str = "",
    management_fee_base: Optional[str] = None,
    management_fee_rate=None,
    vat_rate=None,
    vat_applicable: bool = False,
    fee_period: Optional[str] = None,
    fee_rate_on_nic=None,
    fee_rate_on_unfunded=None,
    authorizer=None,
) -> CapitalCall:
    """
    Create a draft capital call and its 'created' history entry.

    Returns:
        The persisted CapitalCall
    """
    fund = store.get_structure(structure_id)
    if fund is None:
        raise NotFoundError("structure", structure_id)

    amount = round_currency(total_call_amount, fund.base_currency)
    if amount <= 0:
        raise ValidationError("totalCallAmount", "must be positive")
    if management_fee_base is not None and management_fee_base not in FEE_BASES:
        raise ValidationError("managementFeeBase", f"unknown fee base {management_fee_base!r}")
    try:
        fee_period_fraction(fee_period)
    except ValueError as e:
        raise ValidationError("feePeriod", str(e))
    for name, value in (("managementFeeRate", management_fee_rate), ("vatRate", vat_rate),
                        ("feeRateOnNic", fee_rate_on_nic), ("feeRateOnUnfunded", fee_rate_on_unfunded)):
        _validate_percent(name, value)
    call_date = as_date(call_date) or date.today()
    due_date = as_date(due_date)
    if due_date is not None and due_date < call_date:
        raise ValidationError("dueDate", "must not be before callDate")

    (authorizer or RoleAuthorizer()).authorize_structure(actor, fund, OP_CREATE)

    with store.unit_of_work():
        call = CapitalCall(
            id=str(uuid.uuid4()),
            structure_id=structure_id,
            call_number=store.next_number(EntityType.CAPITAL_CALL, structure_id),
            total_call_amount=amount,
            call_date=call_date,
            due_date=due_date,
            total_unpaid_amount=amount,
            purpose=purpose or "",
            notes=notes or "",
            management_fee_base=management_fee_base,
            management_fee_rate=to_decimal(management_fee_rate, None),
            vat_rate=to_decimal(vat_rate, None),
            vat_applicable=bool(vat_applicable),
            fee_period=fee_period,
            fee_rate_on_nic=to_decimal(fee_rate_on_nic, None),
            fee_rate_on_unfunded=to_decimal(fee_rate_on_unfunded, None),
            approval_status=ApprovalStatus.DRAFT,
            created_by=actor.user_id,
        )
        store.insert_transaction(call)
        audit.record(store, EntityType.CAPITAL_CALL, call.id, ACTION_CREATED,
                     None, ApprovalStatus.DRAFT, actor)
        call = store.require(EntityType.CAPITAL_CALL, call.id)

    logger.info(f"Created capital call #{call.call_number} {call.id} for {structure_id}: {amount}")
    return call


# ============================================================
# ALLOCATIONS
# ============================================================

def build_capital_call_allocations(
    call: CapitalCall,
    fund: FundContext,
    investors: List[StructureInvestor],
    capital_history: Optional[Dict[str, Tuple[Decimal, Decimal]]] = None,
) -> List[CapitalCallAllocation]:
    """
    Compute every investor's allocation of a capital call.

    Pure function.

    Args:
        call: The capital call (fee configuration is read from it)
        fund: Structure terms (default fee rate, GP percentage, currency)
        investors: Structure investors with ownership, commitment, side-letter terms
        capital_history: user_id -> (capital called by prior approved calls,
            capital returned by applied distributions); drives NIC and unfunded

    Returns:
        One CapitalCallAllocation per investor
    """
    cur = fund.base_currency
    capital_history = capital_history or {}
    weights = ownership_weights(investors)
    principals = split_pro_rata(call.total_call_amount, weights, minor_units(cur))

    annual_rate = call.management_fee_rate if call.management_fee_rate is not None else fund.management_fee_rate
    dual = call.is_dual_rate
    gp_pct = to_decimal(fund.gp_percentage)

    allocations = []
    for inv in investors:
        principal = principals.get(inv.user_id, ZERO)
        commitment = to_decimal(inv.commitment)
        called_before, returned = capital_history.get(inv.user_id, (ZERO, ZERO))
        nic = max(ZERO, called_before - returned)
        unfunded = max(ZERO, commitment - called_before)
        terms = InvestorFeeTerms(
            fee_discount_percent=to_decimal(inv.fee_discount),
            vat_exempt=inv.vat_exempt,
            commitment=commitment,
            net_invested_capital=nic,
            unfunded_commitment=unfunded,
        )

        if dual:
            cfg = FeeConfig(
                base=FEE_BASE_NIC_PLUS_UNFUNDED,
                vat_rate=to_decimal(call.vat_rate),
                vat_applicable=call.vat_applicable,
                fee_rate_on_nic=period_rate(call.fee_rate_on_nic or ZERO, call.fee_period),
                fee_rate_on_unfunded=period_rate(call.fee_rate_on_unfunded or ZERO, call.fee_period),
                currency=cur,
            )
            before_offset = compute_fees(principal, cfg, terms)
            offset = round_currency(pct_of(before_offset.gross, gp_pct), cur)
            if offset > 0:
                cfg = replace(cfg, fee_offset=offset)
                fees = compute_fees(principal, cfg, terms)
            else:
                fees = before_offset
        else:
            base = call.management_fee_base or FEE_BASE_INVESTED
            cfg = FeeConfig(
                rate=period_rate(annual_rate or ZERO, call.fee_period),
                base=base,
                vat_rate=to_decimal(call.vat_rate),
                vat_applicable=call.vat_applicable,
                currency=cur,
            )
            base_amount = fee_base_amount(call.management_fee_base, commitment, principal,
                                          nic, unfunded)
            fees = compute_fees(base_amount, cfg, terms)

        total_due = principal + fees.net + fees.vat
        allocations.append(CapitalCallAllocation(
            capital_call_id=call.id,
            user_id=inv.user_id,
            ownership_percent=to_decimal(inv.ownership_percent),
            commitment=commitment,
            principal_amount=principal,
            management_fee_gross=fees.gross,
            management_fee_discount=fees.discount,
            management_fee_net=fees.net,
            vat_amount=fees.vat,
            total_due=total_due,
            allocated_amount=total_due,
            remaining_amount=total_due,
            nic_fee_amount=fees.nic_fee,
            unfunded_fee_amount=fees.unfunded_fee,
            fee_offset_amount=fees.fee_offset,
            deemed_gp_contribution=-fees.fee_offset,
            status=ALLOC_STATUS_PENDING,
            due_date=call.due_date,
        ))
    return allocations


def investor_capital_history(store, structure_id: str,
                             exclude_call_id: Optional[str] = None) -> Dict[str, Tuple[Decimal, Decimal]]:
    """
    user_id -> (principal called by approved capital calls,
                capital returned through tier 1 of applied distributions)
    """
    called: Dict[str, Decimal] = {}
    returned: Dict[str, Decimal] = {}
    for c in store.list_transactions(EntityType.CAPITAL_CALL, structure_id,
                                     approval_statuses=[ApprovalStatus.APPROVED]):
        if c.id == exclude_call_id:
            continue
        for a in store.list_allocations(EntityType.CAPITAL_CALL, c.id):
            called[a.user_id] = called.get(a.user_id, ZERO) + a.principal_amount
    for d in store.list_transactions(EntityType.DISTRIBUTION, structure_id):
        if not d.waterfall_applied:
            continue
        for a in store.list_allocations(EntityType.DISTRIBUTION, d.id):
            returned[a.user_id] = returned.get(a.user_id, ZERO) + a.tier1_amount
    users = set(called) | set(returned)
    return {u: (called.get(u, ZERO), returned.get(u, ZERO)) for u in users}


def create_allocations(store, actor: Actor, call_id: str, authorizer=None) -> List[CapitalCallAllocation]:
    """
    Generate and persist allocations for every investor of the call's structure.

    Only draft calls without existing allocations can be allocated.
    """
    with store.unit_of_work():
        call = store.require(EntityType.CAPITAL_CALL, call_id)
        (authorizer or RoleAuthorizer()).authorize(actor, call, OP_GENERATE_ALLOCATIONS)
        if call.approval_status != ApprovalStatus.DRAFT:
            raise StateConflictError(
                f"Allocations can only be generated for draft calls ({call.approval_status.value})",
                expected=ApprovalStatus.DRAFT, actual=call.approval_status)
        if store.list_allocations(EntityType.CAPITAL_CALL, call_id):
            raise StateConflictError(f"Capital call {call_id} already has allocations")

        fund = store.get_structure(call.structure_id)
        investors = store.list_structure_investors(call.structure_id)
        if not investors:
            raise ValidationError("structureId", f"structure {call.structure_id} has no investors")

        history = investor_capital_history(store, call.structure_id, exclude_call_id=call_id)
        allocations = build_capital_call_allocations(call, fund, investors, history)
        store.insert_allocations(EntityType.CAPITAL_CALL, allocations)
        total_due = sum((a.total_due for a in allocations), ZERO)
        store.update_fields(EntityType.CAPITAL_CALL, call_id,
                            total_paid_amount=ZERO, total_unpaid_amount=total_due)

    logger.info(f"Capital call {call_id}: {len(allocations)} allocations, total due {total_due}")
    return allocations


# ============================================================
# PAYMENTS
# ============================================================

def apply_payment(alloc: CapitalCallAllocation, amount: Decimal) -> CapitalCallAllocation:
    """
    Apply a payment to an allocation: principal first, then fees, then VAT.

    Pure function; returns the updated allocation.
    """
    amount = to_decimal(amount)
    if amount <= 0:
        raise ValidationError("amount", "must be positive")
    if amount > alloc.remaining_amount:
        raise ValidationError("amount", f"exceeds remaining amount {alloc.remaining_amount}")

    left = amount
    capital = min(left, alloc.principal_amount - alloc.capital_paid)
    left -= capital
    fees = min(left, alloc.management_fee_net - alloc.fees_paid)
    left -= fees
    vat = min(left, alloc.vat_amount - alloc.vat_paid)

    alloc.capital_paid += capital
    alloc.fees_paid += fees
    alloc.vat_paid += vat
    alloc.paid_amount += amount
    alloc.remaining_amount = alloc.total_due - alloc.paid_amount
    alloc.status = ALLOC_STATUS_PAID if alloc.remaining_amount <= 0 else ALLOC_STATUS_PARTIAL
    return alloc


def _roll_up(store, call_id: str):
    allocations = store.list_allocations(EntityType.CAPITAL_CALL, call_id)
    paid = sum((a.paid_amount for a in allocations), ZERO)
    unpaid = sum((a.remaining_amount for a in allocations), ZERO)
    values = {'total_paid_amount': paid, 'total_unpaid_amount': unpaid}
    if allocations and all(a.status == ALLOC_STATUS_PAID for a in allocations):
        values['status'] = CALL_STATUS_PAID
    elif paid > 0:
        values['status'] = CALL_STATUS_PARTIAL
    store.update_fields(EntityType.CAPITAL_CALL, call_id, **values)


def _require_approved(call: CapitalCall):
    if call.approval_status != ApprovalStatus.APPROVED:
        raise StateConflictError(
            f"Capital call {call.id} is {call.approval_status.value}; payments need approval",
            expected=ApprovalStatus.APPROVED, actual=call.approval_status)


def record_payment(store, actor: Actor, call_id: str, user_id: str, amount,
                   authorizer=None) -> CapitalCallAllocation:
    """Record an investor payment against an approved capital call"""
    with store.unit_of_work():
        call = store.require(EntityType.CAPITAL_CALL, call_id)
        (authorizer or RoleAuthorizer()).authorize(actor, call, OP_RECORD_PAYMENT)
        _require_approved(call)
        fund = store.get_structure(call.structure_id)
        amount = round_currency(amount, fund.base_currency if fund else None)

        alloc = next((a for a in store.list_allocations(EntityType.CAPITAL_CALL, call_id)
                      if a.user_id == user_id), None)
        if alloc is None:
            raise NotFoundError("capital_call_allocation", f"{call_id}/{user_id}")
        alloc = apply_payment(alloc, amount)
        store.update_allocation(EntityType.CAPITAL_CALL, alloc)
        _roll_up(store, call_id)

    logger.info(f"Capital call {call_id}: payment {amount} from {user_id} ({alloc.status})")
    return alloc


def mark_paid(store, actor: Actor, call_id: str, authorizer=None) -> CapitalCall:
    """Settle every outstanding allocation of an approved call"""
    with store.unit_of_work():
        call = store.require(EntityType.CAPITAL_CALL, call_id)
        (authorizer or RoleAuthorizer()).authorize(actor, call, OP_MARK_PAID)
        _require_approved(call)
        for alloc in store.list_allocations(EntityType.CAPITAL_CALL, call_id):
            if alloc.remaining_amount > 0:
                store.update_allocation(EntityType.CAPITAL_CALL,
                                        apply_payment(alloc, alloc.remaining_amount))
        _roll_up(store, call_id)
        store.update_fields(EntityType.CAPITAL_CALL, call_id, status=CALL_STATUS_PAID)
        call = store.require(EntityType.CAPITAL_CALL, call_id)
    logger.info(f"Capital call {call_id} marked paid")
    return call


def delete_capital_call(store, actor: Actor, call_id: str, authorizer=None):
    """Delete a draft or rejected call with its allocations and history"""
    call = store.require(EntityType.CAPITAL_CALL, call_id)
    (authorizer or RoleAuthorizer()).authorize(actor, call, OP_DELETE)
    if call.approval_status not in (ApprovalStatus.DRAFT, ApprovalStatus.REJECTED):
        raise StateConflictError(
            f"Cannot delete capital call {call_id} in {call.approval_status.value}",
            actual=call.approval_status)
    store.delete_transaction(EntityType.CAPITAL_CALL, call_id)


# ============================================================
# SUMMARY TABLES
# ============================================================

def capital_calls_summary_table(calls: List[CapitalCall]) -> pd.DataFrame:
    """
    Create a summary table of capital calls

    Returns:
        DataFrame with columns: callNumber, callDate, dueDate, totalCallAmount,
        totalPaidAmount, totalUnpaidAmount, status, approvalStatus
    """
    cols = ['callNumber', 'callDate', 'dueDate', 'totalCallAmount', 'totalPaidAmount',
            'totalUnpaidAmount', 'status', 'approvalStatus']
    if not calls:
        return pd.DataFrame(columns=cols)

    df = pd.DataFrame([c.to_record(json_safe=True) for c in calls])
    return df[cols].sort_values('callNumber').reset_index(drop=True)


def capital_calls_by_investor(allocations: List[CapitalCallAllocation]) -> pd.DataFrame:
    """
    Summarize allocations by investor

    Returns:
        DataFrame with columns: userId, principal, fees, vat, totalDue, paid, remaining, numCalls
    """
    cols = ['userId', 'principal', 'fees', 'vat', 'totalDue', 'paid', 'remaining', 'numCalls']
    if not allocations:
        return pd.DataFrame(columns=cols)

    df = pd.DataFrame([a.to_record(json_safe=True) for a in allocations])
    summary = df.groupby('userId').agg(
        principal=('principalAmount', 'sum'),
        fees=('managementFeeNet', 'sum'),
        vat=('vatAmount', 'sum'),
        totalDue=('totalDue', 'sum'),
        paid=('paidAmount', 'sum'),
        remaining=('remainingAmount', 'sum'),
        numCalls=('capitalCallId', 'nunique'),
    ).reset_index()
    return summary[cols]
