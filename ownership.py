"""
ownership.py
Structures, investor commitments and ownership percentages

Ownership percent = commitment / total commitment x 100, rounded to four
decimals with largest-remainder rounding so a structure always totals
exactly 100 (or 0 when nothing is committed).
"""

import logging
import uuid
from decimal import Decimal
from typing import Dict, List, Sequence, Tuple

from config import Role, OWNERSHIP_DECIMALS, OWNERSHIP_TOLERANCE, OP_CREATE
from errors import AuthorizationError, NotFoundError, ValidationError
from models import Actor, FundContext, StructureInvestor
from ports import RoleAuthorizer
from utils import ZERO, HUNDRED, to_decimal, split_pro_rata

logger = logging.getLogger(__name__)


def compute_ownership(commitments: Sequence[Tuple[str, Decimal]]) -> Dict[str, Decimal]:
    """
    Ownership percentages from commitments.

    Args:
        commitments: [(user_id, commitment)]

    Returns:
        Dict user_id -> percent (4 dp), summing to exactly 100 when any
        commitment is positive
    """
    for user_id, c in commitments:
        if to_decimal(c) < 0:
            raise ValidationError("commitment", f"negative commitment for {user_id}")
    return split_pro_rata(HUNDRED, list(commitments), places=OWNERSHIP_DECIMALS)


def ownership_weights(investors: Sequence[StructureInvestor]) -> List[Tuple[str, Decimal]]:
    """
    [(user_id, ownership_percent)], warning when the stored percentages drift from 100.

    Raises ValidationError when there are investors but none holds a positive
    share, since nothing could then be allocated to them.
    """
    weights = [(i.user_id, to_decimal(i.ownership_percent)) for i in investors]
    total = sum((w for _, w in weights), ZERO)
    if weights and total <= 0:
        raise ValidationError("ownership", "no investor has positive ownership")
    if weights and abs(total - HUNDRED) > Decimal(str(OWNERSHIP_TOLERANCE)):
        logger.warning(f"Ownership sums to {total}%, normalising allocations to 100%")
    return weights


def create_structure(store, actor: Actor, fund: FundContext) -> FundContext:
    """Register a structure owned by the acting root/admin user"""
    role = Role.from_code(actor.role)
    if role not in (Role.ROOT, Role.ADMIN):
        raise AuthorizationError(f"{role.name.title()} users cannot create structures")
    for name in ('management_fee_rate', 'hurdle_rate', 'catch_up_rate', 'carry_percent',
                 'gp_percentage', 'exit_management_fee_percent'):
        v = to_decimal(getattr(fund, name))
        if v < 0 or v > HUNDRED:
            raise ValidationError(name, "must be between 0 and 100")
    if not fund.id:
        fund.id = str(uuid.uuid4())
    fund.created_by = actor.user_id
    with store.unit_of_work():
        store.insert_structure(fund)
    logger.info(f"Created structure {fund.id} ({fund.name}) for {actor.user_id}")
    return fund


def recompute_ownership(store, structure_id: str) -> Dict[str, Decimal]:
    """Recompute and persist every investor's ownership and the structure total commitment"""
    with store.unit_of_work():
        investors = store.list_structure_investors(structure_id)
        ownership = compute_ownership([(i.user_id, i.commitment) for i in investors])
        store.set_ownership(structure_id, ownership)
        total = sum((to_decimal(i.commitment) for i in investors), ZERO)
        store.update_structure(structure_id, total_commitment=total)
    logger.info(f"Structure {structure_id}: ownership recomputed for {len(ownership)} investors "
                f"(total commitment {total})")
    return ownership


def set_commitment(store, actor: Actor, structure_id: str, user_id: str, commitment,
                   fee_discount=ZERO, vat_exempt: bool = False,
                   authorizer=None) -> Dict[str, Decimal]:
    """
    Add an investor or change its commitment, then recompute ownership.

    Returns:
        New ownership percentages of the structure
    """
    commitment = to_decimal(commitment)
    if commitment < 0:
        raise ValidationError("commitment", "must not be negative")
    fee_discount = to_decimal(fee_discount)
    if fee_discount < 0 or fee_discount > HUNDRED:
        raise ValidationError("feeDiscount", "must be between 0 and 100")

    fund = store.get_structure(structure_id)
    if fund is None:
        raise NotFoundError("structure", structure_id)
    (authorizer or RoleAuthorizer()).authorize_structure(actor, fund, OP_CREATE)

    with store.unit_of_work():
        store.upsert_structure_investor(StructureInvestor(
            structure_id=structure_id,
            user_id=user_id,
            commitment=commitment,
            fee_discount=fee_discount,
            vat_exempt=vat_exempt,
        ))
        return recompute_ownership(store, structure_id)
