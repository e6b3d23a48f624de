"""
models.py
Data structures for capital transactions, allocations and the calculation engines
"""

from dataclasses import dataclass, field, fields
from datetime import date
from decimal import Decimal
from typing import Any, ClassVar, Dict, List, Optional, Tuple

from config import (ApprovalStatus, EntityType, Role, DEFAULT_CURRENCY,
                    CALL_STATUS_DRAFT, ALLOC_STATUS_PENDING)
from utils import ZERO


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(p[:1].upper() + p[1:] for p in rest)


class RecordMixin:
    """camelCase record serialisation shared by every persisted dataclass.

    Keys follow the field names used by statement and report generators
    (structureId, approvalStatus, tier1Amount, ...).  Enums serialise to their
    value, dates to ISO strings.  With json_safe=True, Decimals become floats.
    """

    def to_record(self, json_safe: bool = False) -> Dict[str, Any]:
        out = {}
        for f in fields(self):
            v = getattr(self, f.name)
            if isinstance(v, (ApprovalStatus, EntityType)):
                v = v.value
            elif isinstance(v, Role):
                v = v.value
            elif isinstance(v, date):
                v = v.isoformat()
            elif json_safe and isinstance(v, Decimal):
                v = float(v)
            out[_camel(f.name)] = v
        return out


# ============================================================
# ACTORS AND FUND CONTEXT
# ============================================================

@dataclass
class Actor:
    """Authenticated user performing an action (resolved by the auth layer)"""
    user_id: str
    role: Role
    name: str = "Unknown"


@dataclass
class FundContext(RecordMixin):
    """
    Read-only snapshot of a fund (structure) consumed by the engines.

    Rates are percentages (8 = 8%).
    """
    id: str
    name: str = ""
    base_currency: str = DEFAULT_CURRENCY
    total_commitment: Decimal = ZERO
    management_fee_rate: Decimal = ZERO
    hurdle_rate: Decimal = Decimal("8")
    catch_up_rate: Decimal = Decimal("100")   # share of catch-up tier paid to GP
    carry_percent: Decimal = Decimal("20")
    gp_percentage: Decimal = ZERO             # GP ownership, used for dual-rate fee offset
    exit_management_fee_percent: Decimal = ZERO
    created_by: Optional[str] = None
    created_at: Optional[str] = None


@dataclass
class StructureInvestor(RecordMixin):
    """An LP's commitment to a structure plus its fee settings"""
    structure_id: str
    user_id: str
    commitment: Decimal = ZERO
    ownership_percent: Decimal = ZERO
    fee_discount: Decimal = ZERO   # percent of gross fee waived
    vat_exempt: bool = False


# ============================================================
# TRANSACTIONS
# ============================================================

@dataclass
class CapitalCall(RecordMixin):
    """Capital call header with ILPA fee configuration and approval state"""
    entity_type: ClassVar[EntityType] = EntityType.CAPITAL_CALL

    id: str
    structure_id: str
    call_number: int
    total_call_amount: Decimal
    call_date: Optional[date] = None
    due_date: Optional[date] = None
    total_paid_amount: Decimal = ZERO
    total_unpaid_amount: Decimal = ZERO
    status: str = CALL_STATUS_DRAFT
    purpose: str = ""
    notes: str = ""
    # ILPA fee configuration
    management_fee_base: Optional[str] = None
    management_fee_rate: Optional[Decimal] = None   # annual, percent
    vat_rate: Optional[Decimal] = None
    vat_applicable: bool = False
    fee_period: Optional[str] = None
    # Dual-rate fee fields (percent, annual)
    fee_rate_on_nic: Optional[Decimal] = None
    fee_rate_on_unfunded: Optional[Decimal] = None
    approval_status: ApprovalStatus = ApprovalStatus.DRAFT
    created_by: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_dual_rate(self) -> bool:
        return (self.management_fee_base == "nic_plus_unfunded" and
                (self.fee_rate_on_nic is not None or self.fee_rate_on_unfunded is not None))


@dataclass
class Distribution(RecordMixin):
    """Distribution header with source breakdown, waterfall results and approval state"""
    entity_type: ClassVar[EntityType] = EntityType.DISTRIBUTION

    id: str
    structure_id: str
    distribution_number: int
    total_amount: Decimal
    distribution_date: Optional[date] = None
    status: str = CALL_STATUS_DRAFT
    source: str = ""
    notes: str = ""
    # Source breakdown
    source_equity_gain: Decimal = ZERO
    source_debt_interest: Decimal = ZERO
    source_debt_principal: Decimal = ZERO
    source_other: Decimal = ZERO
    # Waterfall
    waterfall_applied: bool = False
    tier1_amount: Decimal = ZERO
    tier2_amount: Decimal = ZERO
    tier3_amount: Decimal = ZERO
    tier4_amount: Decimal = ZERO
    lp_total_amount: Decimal = ZERO
    gp_total_amount: Decimal = ZERO
    management_fee_amount: Decimal = ZERO
    approval_status: ApprovalStatus = ApprovalStatus.DRAFT
    created_by: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def tier_total(self) -> Decimal:
        return self.tier1_amount + self.tier2_amount + self.tier3_amount + self.tier4_amount


# ============================================================
# ALLOCATIONS
# ============================================================

@dataclass
class CapitalCallAllocation(RecordMixin):
    """One investor's share of a capital call, with ILPA fee breakdown"""
    capital_call_id: str
    user_id: str
    ownership_percent: Decimal = ZERO
    commitment: Decimal = ZERO
    principal_amount: Decimal = ZERO
    management_fee_gross: Decimal = ZERO
    management_fee_discount: Decimal = ZERO
    management_fee_net: Decimal = ZERO
    vat_amount: Decimal = ZERO
    total_due: Decimal = ZERO
    allocated_amount: Decimal = ZERO
    paid_amount: Decimal = ZERO
    remaining_amount: Decimal = ZERO
    # Payment buckets (principal first, then fees, then VAT)
    capital_paid: Decimal = ZERO
    fees_paid: Decimal = ZERO
    vat_paid: Decimal = ZERO
    # Dual-rate breakdown
    nic_fee_amount: Decimal = ZERO
    unfunded_fee_amount: Decimal = ZERO
    fee_offset_amount: Decimal = ZERO
    deemed_gp_contribution: Decimal = ZERO
    status: str = ALLOC_STATUS_PENDING
    due_date: Optional[date] = None
    id: Optional[int] = None


@dataclass
class DistributionAllocation(RecordMixin):
    """One investor's share of a distribution, split by waterfall tier"""
    distribution_id: str
    user_id: str
    ownership_percent: Decimal = ZERO
    tier1_amount: Decimal = ZERO
    tier2_amount: Decimal = ZERO
    tier3_amount: Decimal = ZERO
    tier4_amount: Decimal = ZERO
    allocated_amount: Decimal = ZERO
    paid_amount: Decimal = ZERO
    status: str = ALLOC_STATUS_PENDING
    payment_date: Optional[date] = None
    id: Optional[int] = None


# ============================================================
# AUDIT
# ============================================================

@dataclass(frozen=True)
class ApprovalHistoryEntry(RecordMixin):
    """Immutable record of one workflow action"""
    entity_type: EntityType
    entity_id: str
    action: str
    from_status: Optional[ApprovalStatus]
    to_status: Optional[ApprovalStatus]
    user_id: Optional[str]
    user_name: str = "Unknown"
    notes: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[str] = None
    id: Optional[int] = None

    @property
    def timestamp(self) -> Optional[str]:
        return self.created_at


@dataclass
class TransitionResult:
    """Outcome of a committed workflow transition"""
    transaction: Any            # CapitalCall or Distribution, as persisted after the write
    audit_entry: ApprovalHistoryEntry


# ============================================================
# FEE ENGINE
# ============================================================

@dataclass(frozen=True)
class FeeConfig:
    """
    Fee configuration for one calculation.

    rate is the period-adjusted percentage applied to the principal.
    Dual-rate mode is used when either dual rate is set; those rates are
    period-adjusted percentages applied to NIC and unfunded commitment.
    """
    rate: Decimal = ZERO
    base: str = "invested"
    vat_rate: Decimal = ZERO
    vat_applicable: bool = False
    fee_rate_on_nic: Optional[Decimal] = None
    fee_rate_on_unfunded: Optional[Decimal] = None
    fee_offset: Decimal = ZERO
    currency: str = DEFAULT_CURRENCY

    @property
    def is_dual_rate(self) -> bool:
        return self.fee_rate_on_nic is not None or self.fee_rate_on_unfunded is not None


@dataclass(frozen=True)
class InvestorFeeTerms:
    """Investor-specific overrides (side letter terms)"""
    fee_discount_percent: Decimal = ZERO
    vat_exempt: bool = False
    commitment: Optional[Decimal] = None
    net_invested_capital: Decimal = ZERO
    unfunded_commitment: Decimal = ZERO


@dataclass(frozen=True)
class FeeBreakdown:
    """Result of one fee calculation, all amounts rounded to the currency unit"""
    gross: Decimal
    discount: Decimal
    net: Decimal
    vat: Decimal
    total: Decimal
    nic_fee: Decimal = ZERO
    unfunded_fee: Decimal = ZERO
    fee_offset: Decimal = ZERO
    clamped: bool = False


# ============================================================
# WATERFALL ENGINE
# ============================================================

@dataclass(frozen=True)
class WaterfallTerms:
    """Fund-level waterfall parameters (percentages)"""
    hurdle_rate: Decimal = Decimal("8")
    catch_up_rate: Decimal = Decimal("100")
    carry_percent: Decimal = Decimal("20")
    exit_management_fee_percent: Decimal = ZERO
    currency: str = DEFAULT_CURRENCY

    @classmethod
    def from_fund(cls, fund: FundContext) -> "WaterfallTerms":
        return cls(
            hurdle_rate=fund.hurdle_rate,
            catch_up_rate=fund.catch_up_rate,
            carry_percent=fund.carry_percent,
            exit_management_fee_percent=fund.exit_management_fee_percent,
            currency=fund.base_currency,
        )


@dataclass(frozen=True)
class WaterfallPosition:
    """
    Cumulative fund position before this distribution.

    contributed_capital: capital called to date
    returned_capital: tier 1 paid by prior distributions
    preferred_accrued: pref paid so far plus the compounded hurdle still unpaid at
        the distribution date (see accrue_preferred_return)
    preferred_paid: tier 2 paid by prior distributions
    gp_profit_paid: catch-up and carry paid to the GP by prior distributions
    lp_profit_paid: profit (tiers 2-4) paid to LPs by prior distributions
    """
    contributed_capital: Decimal = ZERO
    returned_capital: Decimal = ZERO
    preferred_accrued: Decimal = ZERO
    preferred_paid: Decimal = ZERO
    gp_profit_paid: Decimal = ZERO
    lp_profit_paid: Decimal = ZERO

    @property
    def unreturned_capital(self) -> Decimal:
        return max(ZERO, self.contributed_capital - self.returned_capital)

    @property
    def unpaid_preferred(self) -> Decimal:
        return max(ZERO, self.preferred_accrued - self.preferred_paid)

    @property
    def profit_paid(self) -> Decimal:
        return self.gp_profit_paid + self.lp_profit_paid


@dataclass(frozen=True)
class TierAmount:
    """One executed tier: total with its LP / GP split"""
    tier: int
    name: str
    amount: Decimal
    lp_amount: Decimal
    gp_amount: Decimal


@dataclass(frozen=True)
class WaterfallAccumulator:
    """Value threaded through the tier functions"""
    remaining: Decimal
    position: WaterfallPosition
    tiers: Tuple[TierAmount, ...] = ()


@dataclass
class WaterfallResult:
    """Tier amounts, LP/GP totals and per-investor rows for one distribution"""
    total_amount: Decimal
    management_fee_amount: Decimal
    tiers: List[TierAmount]
    lp_total: Decimal
    gp_total: Decimal
    allocations: List[DistributionAllocation] = field(default_factory=list)

    def tier_amount(self, tier: int) -> Decimal:
        for t in self.tiers:
            if t.tier == tier:
                return t.amount
        return ZERO

    @property
    def tier_total(self) -> Decimal:
        return sum((t.amount for t in self.tiers), ZERO)

    def to_record(self) -> Dict[str, Any]:
        return {
            "totalAmount": self.total_amount,
            "managementFeeAmount": self.management_fee_amount,
            "tiers": {f"tier{t.tier}": t.amount for t in self.tiers},
            "splits": {"lpTotal": self.lp_total, "gpTotal": self.gp_total},
            "allocations": [a.to_record() for a in self.allocations],
        }


# ============================================================
# PERFORMANCE METRICS
# ============================================================

@dataclass(frozen=True)
class CashFlow:
    """Dated cash flow: negative = capital called, positive = distributed"""
    date: date
    amount: float
    kind: str = ""


@dataclass(frozen=True)
class IRRResult:
    """Newton-Raphson outcome. converged=False is the approximate-convergence exit."""
    irr: float            # percentage
    converged: bool
    iterations: int


@dataclass(frozen=True)
class PerformanceMetrics:
    """Fund performance ratios (IRR values are percentages)"""
    irr: float
    net_irr: float
    tvpi: float
    dpi: float
    rvpi: float
    moic: float
    total_capital_called: float
    total_distributed: float
    nav: float
    total_fees: float = 0.0
    irr_converged: bool = True

    def to_record(self) -> Dict[str, Any]:
        return {
            "irr": self.irr,
            "netIRR": self.net_irr,
            "tvpi": self.tvpi,
            "dpi": self.dpi,
            "rvpi": self.rvpi,
            "moic": self.moic,
            "totalCapitalCalled": self.total_capital_called,
            "totalDistributed": self.total_distributed,
            "nav": self.nav,
            "totalFees": self.total_fees,
            "irrConverged": self.irr_converged,
        }
