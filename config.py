"""
config.py
Configuration and constants for capital call / distribution administration
"""

import os
from enum import Enum

# ============================================================
# DEFAULT SETTINGS
# ============================================================
DB_PATH = os.environ.get("FUND_ADMIN_DB_PATH", "fund_admin.db")
DEFAULT_CURRENCY = "USD"

# Minor units per ISO currency code (unknown codes fall back to 2)
CURRENCY_MINOR_UNITS = {
    "USD": 2,
    "EUR": 2,
    "GBP": 2,
    "MXN": 2,
    "CAD": 2,
    "JPY": 0,
}

# Invariant tolerances
OWNERSHIP_DECIMALS = 4
OWNERSHIP_TOLERANCE = 0.01   # percentage points


# ============================================================
# ROLES
# ============================================================

class Role(Enum):
    """Closed set of user roles. Codes match the numeric values stored upstream."""
    ROOT = 0      # CFO / firm owner
    ADMIN = 1     # fund administrator
    SUPPORT = 2
    INVESTOR = 3

    @classmethod
    def from_code(cls, code) -> "Role":
        if isinstance(code, Role):
            return code
        for role in cls:
            if role.value == code or role.name.lower() == str(code).strip().lower():
                return role
        raise ValueError(f"Unknown role code: {code!r}")


# ============================================================
# APPROVAL WORKFLOW
# ============================================================

class ApprovalStatus(str, Enum):
    DRAFT = "draft"
    PENDING_REVIEW = "pending_review"
    PENDING_CFO = "pending_cfo"
    APPROVED = "approved"
    REJECTED = "rejected"


class EntityType(str, Enum):
    CAPITAL_CALL = "capital_call"
    DISTRIBUTION = "distribution"


# History actions
ACTION_CREATED = "created"
ACTION_SUBMITTED = "submitted"
ACTION_CFO_SUBMITTED = "cfo_submitted"
ACTION_APPROVED = "approved"
ACTION_CFO_APPROVED = "cfo_approved"
ACTION_REJECTED = "rejected"
ACTION_CHANGES_REQUESTED = "changes_requested"
ACTION_WATERFALL_APPLIED = "waterfall_applied"

# Actions recorded in history that do not move approval status
NON_TRANSITION_ACTIONS = {ACTION_WATERFALL_APPLIED}

PENDING_STATUSES = (ApprovalStatus.PENDING_REVIEW, ApprovalStatus.PENDING_CFO)

# Legal (from, to) edges and the actions that may produce them.
# from=None is the creation edge.
LEGAL_TRANSITIONS = {
    (None, ApprovalStatus.DRAFT): {ACTION_CREATED},
    (ApprovalStatus.DRAFT, ApprovalStatus.PENDING_REVIEW): {ACTION_SUBMITTED},
    (ApprovalStatus.PENDING_REVIEW, ApprovalStatus.PENDING_CFO): {ACTION_CFO_SUBMITTED},
    (ApprovalStatus.PENDING_REVIEW, ApprovalStatus.APPROVED): {ACTION_APPROVED},
    (ApprovalStatus.PENDING_CFO, ApprovalStatus.APPROVED): {ACTION_CFO_APPROVED},
    (ApprovalStatus.PENDING_REVIEW, ApprovalStatus.REJECTED): {ACTION_REJECTED},
    (ApprovalStatus.PENDING_CFO, ApprovalStatus.REJECTED): {ACTION_REJECTED},
    (ApprovalStatus.PENDING_REVIEW, ApprovalStatus.DRAFT): {ACTION_CHANGES_REQUESTED},
    (ApprovalStatus.PENDING_CFO, ApprovalStatus.DRAFT): {ACTION_CHANGES_REQUESTED},
}

# Who is told about a transition. "approvers" = root users, "creator" = record owner.
NOTIFICATION_AUDIENCE = {
    ACTION_SUBMITTED: "approvers",
    ACTION_CFO_SUBMITTED: "approvers",
    ACTION_APPROVED: "creator",
    ACTION_CFO_APPROVED: "creator",
    ACTION_REJECTED: "creator",
    ACTION_CHANGES_REQUESTED: "creator",
}


# ============================================================
# OPERATIONAL (PAYMENT) STATUSES
# ============================================================
CALL_STATUS_DRAFT = "Draft"
CALL_STATUS_PARTIAL = "Partially Paid"
CALL_STATUS_PAID = "Paid"

ALLOC_STATUS_PENDING = "Pending"
ALLOC_STATUS_PARTIAL = "Partially Paid"
ALLOC_STATUS_PAID = "Paid"


# ============================================================
# MANAGEMENT FEES
# ============================================================
FEE_BASE_COMMITTED = "committed"
FEE_BASE_INVESTED = "invested"
FEE_BASE_NIC_PLUS_UNFUNDED = "nic_plus_unfunded"
FEE_BASES = {FEE_BASE_COMMITTED, FEE_BASE_INVESTED, FEE_BASE_NIC_PLUS_UNFUNDED}

FEE_PERIOD_FRACTIONS = {
    "annual": 1.0,
    "semi-annual": 0.5,
    "quarterly": 0.25,
}
DEFAULT_FEE_PERIOD = "annual"


def fee_period_fraction(fee_period: str) -> float:
    """Map a fee period name to the fraction of a year it covers.

    None or empty means annual.  Unknown names raise ValueError.
    """
    p = (fee_period or DEFAULT_FEE_PERIOD).strip().lower()
    if p in ("semiannual", "semi_annual"):
        p = "semi-annual"
    if p not in FEE_PERIOD_FRACTIONS:
        raise ValueError(f"Unknown fee period: {fee_period!r}")
    return FEE_PERIOD_FRACTIONS[p]


# ============================================================
# IRR SOLVER
# ============================================================
IRR_INITIAL_GUESS = 0.10
IRR_MAX_ITERATIONS = 100
IRR_NPV_TOLERANCE = 1e-4
IRR_DERIVATIVE_FLOOR = 1e-10
IRR_RATE_FLOOR = -0.99
IRR_RATE_CEILING = 10.0
IRR_DAY_BASIS = 365.25

# Preferred return accrues Act/365 (matches Excel XIRR convention)
PREF_DAY_BASIS = 365.0


# ============================================================
# OPERATIONS (authorization vocabulary)
# ============================================================
OP_CREATE = "create"
OP_SUBMIT = "submit"
OP_APPROVE = "approve"
OP_CFO_APPROVE = "cfo_approve"
OP_REJECT = "reject"
OP_REQUEST_CHANGES = "request_changes"
OP_APPLY_WATERFALL = "apply_waterfall"
OP_GENERATE_ALLOCATIONS = "generate_allocations"
OP_RECORD_PAYMENT = "record_payment"
OP_MARK_PAID = "mark_paid"
OP_DELETE = "delete"

# Operations allowed while a transaction waits for CFO sign-off
PENDING_CFO_OPERATIONS = {OP_CFO_APPROVE, OP_REJECT, OP_REQUEST_CHANGES}
