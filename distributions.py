"""
distributions.py
Distributions: creation, pro-rata allocations, waterfall application, payment

Waterfall application is a one-shot operation per distribution: the
waterfall_applied flag, the tier totals, the investor rows and the history
entry are written in one unit of work, and the flag is set with a
conditional update so a second application can never overwrite the first.
"""

import logging
import uuid
from datetime import date
from typing import List, Optional

import pandas as pd

from config import (ApprovalStatus, EntityType, ACTION_CREATED, ACTION_WATERFALL_APPLIED,
                    CALL_STATUS_PAID, ALLOC_STATUS_PAID, ALLOC_STATUS_PENDING,
                    OP_CREATE, OP_GENERATE_ALLOCATIONS, OP_APPLY_WATERFALL, OP_MARK_PAID, OP_DELETE)
from errors import NotFoundError, StateConflictError, ValidationError, WaterfallAlreadyAppliedError
from models import Actor, Distribution, DistributionAllocation, WaterfallResult, WaterfallTerms
from ownership import ownership_weights
from ports import RoleAuthorizer
from utils import ZERO, to_decimal, as_date, round_currency, split_pro_rata, minor_units
from waterfall import run_waterfall, position_from_history
import audit

logger = logging.getLogger(__name__)

SOURCE_FIELDS = ('source_equity_gain', 'source_debt_interest', 'source_debt_principal', 'source_other')


# ============================================================
# CREATION
# ============================================================

def create_distribution(
    store,
    actor: Actor,
    structure_id: str,
    total_amount,
    distribution_date: Optional[date] = None,
    source: str = "",
    notes: str = "",
    source_equity_gain=ZERO,
    source_debt_interest=ZERO,
    source_debt_principal=ZERO,
    source_other=ZERO,
    authorizer=None,
) -> Distribution:
    """
    Create a draft distribution and its 'created' history entry.

    The source breakdown is optional; when given it may not exceed the total.
    """
    fund = store.get_structure(structure_id)
    if fund is None:
        raise NotFoundError("structure", structure_id)
    cur = fund.base_currency

    amount = round_currency(total_amount, cur)
    if amount <= 0:
        raise ValidationError("totalAmount", "must be positive")
    sources = {
        'source_equity_gain': round_currency(source_equity_gain, cur),
        'source_debt_interest': round_currency(source_debt_interest, cur),
        'source_debt_principal': round_currency(source_debt_principal, cur),
        'source_other': round_currency(source_other, cur),
    }
    for name, value in sources.items():
        if value < 0:
            raise ValidationError(name, "must not be negative")
    if sum(sources.values(), ZERO) > amount:
        raise ValidationError("source", "source breakdown exceeds total amount")

    (authorizer or RoleAuthorizer()).authorize_structure(actor, fund, OP_CREATE)

    with store.unit_of_work():
        dist = Distribution(
            id=str(uuid.uuid4()),
            structure_id=structure_id,
            distribution_number=store.next_number(EntityType.DISTRIBUTION, structure_id),
            total_amount=amount,
            distribution_date=as_date(distribution_date) or date.today(),
            source=source or "",
            notes=notes or "",
            approval_status=ApprovalStatus.DRAFT,
            created_by=actor.user_id,
            **sources,
        )
        store.insert_transaction(dist)
        audit.record(store, EntityType.DISTRIBUTION, dist.id, ACTION_CREATED,
                     None, ApprovalStatus.DRAFT, actor)
        dist = store.require(EntityType.DISTRIBUTION, dist.id)

    logger.info(f"Created distribution #{dist.distribution_number} {dist.id} for {structure_id}: {amount}")
    return dist


# ============================================================
# ALLOCATIONS
# ============================================================

def build_pro_rata_allocations(dist: Distribution, investors, currency: str = None) -> List[DistributionAllocation]:
    """Split the whole distribution by ownership, without tier detail"""
    weights = ownership_weights(investors)
    shares = split_pro_rata(dist.total_amount, weights, minor_units(currency))
    return [
        DistributionAllocation(
            distribution_id=dist.id,
            user_id=inv.user_id,
            ownership_percent=to_decimal(inv.ownership_percent),
            allocated_amount=shares.get(inv.user_id, ZERO),
            status=ALLOC_STATUS_PENDING,
            payment_date=dist.distribution_date,
        )
        for inv in investors
    ]


def create_allocations(store, actor: Actor, distribution_id: str,
                       authorizer=None) -> List[DistributionAllocation]:
    """
    Persist pro-rata allocations for a distribution whose waterfall has not run.

    Applying the waterfall later replaces these rows with tiered ones.
    """
    with store.unit_of_work():
        dist = store.require(EntityType.DISTRIBUTION, distribution_id)
        (authorizer or RoleAuthorizer()).authorize(actor, dist, OP_GENERATE_ALLOCATIONS)
        if dist.waterfall_applied:
            raise WaterfallAlreadyAppliedError(distribution_id)
        if store.list_allocations(EntityType.DISTRIBUTION, distribution_id):
            raise StateConflictError(f"Distribution {distribution_id} already has allocations")
        fund = store.get_structure(dist.structure_id)
        investors = store.list_structure_investors(dist.structure_id)
        if not investors:
            raise ValidationError("structureId", f"structure {dist.structure_id} has no investors")
        allocations = build_pro_rata_allocations(dist, investors, fund.base_currency)
        store.insert_allocations(EntityType.DISTRIBUTION, allocations)

    logger.info(f"Distribution {distribution_id}: {len(allocations)} pro-rata allocations")
    return allocations


# ============================================================
# WATERFALL
# ============================================================

def apply_waterfall(store, actor: Actor, distribution_id: str, authorizer=None) -> WaterfallResult:
    """
    Run the waterfall for a distribution and persist its results.

    Raises:
        WaterfallAlreadyAppliedError: the distribution already carries a
            waterfall; nothing is recomputed or overwritten
    """
    with store.unit_of_work():
        dist = store.require(EntityType.DISTRIBUTION, distribution_id)
        (authorizer or RoleAuthorizer()).authorize(actor, dist, OP_APPLY_WATERFALL)
        if dist.waterfall_applied:
            raise WaterfallAlreadyAppliedError(distribution_id)
        if dist.approval_status == ApprovalStatus.REJECTED:
            raise StateConflictError(f"Distribution {distribution_id} is rejected",
                                     actual=dist.approval_status)

        fund = store.get_structure(dist.structure_id)
        investors = store.list_structure_investors(dist.structure_id)
        as_of = dist.distribution_date or date.today()

        calls = store.list_transactions(EntityType.CAPITAL_CALL, dist.structure_id)
        prior = [
            d for d in store.list_transactions(EntityType.DISTRIBUTION, dist.structure_id)
            if d.id != dist.id and (d.distribution_date is None or d.distribution_date <= as_of)
        ]
        position = position_from_history(calls, prior, as_of, fund.hurdle_rate, fund.base_currency)

        result = run_waterfall(
            dist.total_amount,
            WaterfallTerms.from_fund(fund),
            position,
            ownership_weights(investors),
            distribution_id=dist.id,
            payment_date=dist.distribution_date,
        )

        if not store.mark_waterfall_applied_if_not(distribution_id, result):
            raise WaterfallAlreadyAppliedError(distribution_id)
        store.replace_allocations(EntityType.DISTRIBUTION, distribution_id, result.allocations)
        audit.record(
            store, EntityType.DISTRIBUTION, distribution_id, ACTION_WATERFALL_APPLIED,
            dist.approval_status, dist.approval_status, actor,
            metadata={
                'tiers': {f"tier{t.tier}": str(t.amount) for t in result.tiers},
                'lpTotal': str(result.lp_total),
                'gpTotal': str(result.gp_total),
                'managementFeeAmount': str(result.management_fee_amount),
            },
        )

    logger.info(f"Waterfall applied to distribution {distribution_id} by {actor.user_id}")
    return result


# ============================================================
# PAYMENT
# ============================================================

def mark_paid(store, actor: Actor, distribution_id: str, payment_date: Optional[date] = None,
              authorizer=None) -> Distribution:
    """Mark an approved distribution and all its allocations as paid"""
    with store.unit_of_work():
        dist = store.require(EntityType.DISTRIBUTION, distribution_id)
        (authorizer or RoleAuthorizer()).authorize(actor, dist, OP_MARK_PAID)
        if dist.approval_status != ApprovalStatus.APPROVED:
            raise StateConflictError(
                f"Distribution {distribution_id} is {dist.approval_status.value}; payment needs approval",
                expected=ApprovalStatus.APPROVED, actual=dist.approval_status)
        paid_on = as_date(payment_date) or dist.distribution_date or date.today()
        for alloc in store.list_allocations(EntityType.DISTRIBUTION, distribution_id):
            alloc.paid_amount = alloc.allocated_amount
            alloc.status = ALLOC_STATUS_PAID
            alloc.payment_date = paid_on
            store.update_allocation(EntityType.DISTRIBUTION, alloc)
        store.update_fields(EntityType.DISTRIBUTION, distribution_id, status=CALL_STATUS_PAID)
        dist = store.require(EntityType.DISTRIBUTION, distribution_id)
    logger.info(f"Distribution {distribution_id} marked paid")
    return dist


def delete_distribution(store, actor: Actor, distribution_id: str, authorizer=None):
    """Delete a draft or rejected distribution with its allocations and history"""
    dist = store.require(EntityType.DISTRIBUTION, distribution_id)
    (authorizer or RoleAuthorizer()).authorize(actor, dist, OP_DELETE)
    if dist.approval_status not in (ApprovalStatus.DRAFT, ApprovalStatus.REJECTED):
        raise StateConflictError(
            f"Cannot delete distribution {distribution_id} in {dist.approval_status.value}",
            actual=dist.approval_status)
    store.delete_transaction(EntityType.DISTRIBUTION, distribution_id)


# ============================================================
# SUMMARY TABLES
# ============================================================

def distributions_summary_table(distributions: List[Distribution]) -> pd.DataFrame:
    """One row per distribution with tier and LP/GP totals"""
    cols = ['distributionNumber', 'distributionDate', 'totalAmount', 'tier1Amount', 'tier2Amount',
            'tier3Amount', 'tier4Amount', 'lpTotalAmount', 'gpTotalAmount',
            'managementFeeAmount', 'waterfallApplied', 'status', 'approvalStatus']
    if not distributions:
        return pd.DataFrame(columns=cols)
    df = pd.DataFrame([d.to_record(json_safe=True) for d in distributions])
    return df[cols].sort_values('distributionNumber').reset_index(drop=True)
