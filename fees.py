"""
fees.py
Management fee calculation (ILPA fee breakdown)

Standard path:
    gross    = principal x rate / 100           (rate already period-adjusted)
    discount = gross x fee_discount_percent / 100
    net      = gross - discount
    vat      = 0 if VAT exempt / not applicable else net x vat_rate / 100
    total    = net + vat

Dual-rate path (rate on NIC plus rate on unfunded commitment):
    gross    = NIC x nic_rate / 100 + unfunded x unfunded_rate / 100 - fee_offset
    then discount / VAT exactly as the standard path

Every component is rounded half-up to the currency unit before it is used in
the next step, so the breakdown always adds up to the cent.  A negative gross
is clamped to zero and logged.
"""

import logging
from decimal import Decimal
from typing import Optional

from config import (FEE_BASES, FEE_BASE_COMMITTED, FEE_BASE_INVESTED,
                    FEE_BASE_NIC_PLUS_UNFUNDED, fee_period_fraction)
from errors import ValidationError
from models import FeeConfig, FeeBreakdown, InvestorFeeTerms
from utils import ZERO, HUNDRED, to_decimal, round_currency, pct_of

logger = logging.getLogger(__name__)


def _require_non_negative(name: str, value: Optional[Decimal]):
    if value is not None and value < 0:
        raise ValidationError(name, "must not be negative")


def validate_fee_inputs(principal: Decimal, cfg: FeeConfig, investor: InvestorFeeTerms):
    """Raise ValidationError on out-of-range fee inputs"""
    _require_non_negative("principal", principal)
    _require_non_negative("rate", to_decimal(cfg.rate))
    _require_non_negative("vatRate", to_decimal(cfg.vat_rate))
    _require_non_negative("feeRateOnNic", to_decimal(cfg.fee_rate_on_nic, None))
    _require_non_negative("feeRateOnUnfunded", to_decimal(cfg.fee_rate_on_unfunded, None))
    _require_non_negative("feeOffset", to_decimal(cfg.fee_offset))
    discount = to_decimal(investor.fee_discount_percent)
    if discount < 0 or discount > HUNDRED:
        raise ValidationError("feeDiscountPercent", "must be between 0 and 100")
    if cfg.base not in FEE_BASES:
        raise ValidationError("managementFeeBase", f"unknown fee base {cfg.base!r}")


def compute_fees(principal, fee_config: FeeConfig,
                 investor: Optional[InvestorFeeTerms] = None) -> FeeBreakdown:
    """
    Compute the fee breakdown for one investor.

    Pure function: no I/O, no shared state.

    Args:
        principal: Fee base amount for the standard path
        fee_config: Fee configuration (period-adjusted rates, VAT)
        investor: Investor overrides; for the dual-rate path also NIC,
            unfunded commitment and commitment

    Returns:
        FeeBreakdown rounded to the currency unit
    """
    investor = investor or InvestorFeeTerms()
    cur = fee_config.currency
    principal = to_decimal(principal)
    validate_fee_inputs(principal, fee_config, investor)

    nic_fee = ZERO
    unfunded_fee = ZERO
    offset = ZERO

    if fee_config.is_dual_rate:
        commitment = to_decimal(investor.commitment, None)
        if commitment is None or commitment <= 0:
            gross = ZERO
        else:
            nic_fee = round_currency(
                pct_of(investor.net_invested_capital, to_decimal(fee_config.fee_rate_on_nic)), cur)
            unfunded_fee = round_currency(
                pct_of(investor.unfunded_commitment, to_decimal(fee_config.fee_rate_on_unfunded)), cur)
            offset = round_currency(fee_config.fee_offset, cur)
            gross = nic_fee + unfunded_fee - offset
    else:
        gross = round_currency(pct_of(principal, fee_config.rate), cur)

    clamped = False
    if gross < 0:
        logger.warning(
            f"Negative gross management fee {gross} clamped to zero "
            f"(nic_fee={nic_fee}, unfunded_fee={unfunded_fee}, offset={offset})"
        )
        gross = round_currency(ZERO, cur)
        clamped = True

    discount = round_currency(pct_of(gross, investor.fee_discount_percent), cur)
    net = gross - discount

    if investor.vat_exempt or not fee_config.vat_applicable:
        vat = round_currency(ZERO, cur)
    else:
        vat = round_currency(pct_of(net, fee_config.vat_rate), cur)

    return FeeBreakdown(
        gross=gross,
        discount=discount,
        net=net,
        vat=vat,
        total=net + vat,
        nic_fee=nic_fee,
        unfunded_fee=unfunded_fee,
        fee_offset=offset,
        clamped=clamped,
    )


def period_rate(annual_rate, fee_period: Optional[str]) -> Decimal:
    """Prorate an annual percentage rate to the fee period"""
    try:
        fraction = fee_period_fraction(fee_period)
    except ValueError as e:
        raise ValidationError("feePeriod", str(e))
    return to_decimal(annual_rate) * to_decimal(fraction)


def fee_base_amount(base: Optional[str], commitment, principal,
                    net_invested_capital=ZERO, unfunded_commitment=ZERO) -> Decimal:
    """
    Amount the single-rate fee is charged on.

    committed         -> investor commitment
    invested          -> principal called in this call
    nic_plus_unfunded -> NIC + unfunded commitment
    None              -> principal (legacy behaviour)
    """
    if base is None or base == FEE_BASE_INVESTED:
        return to_decimal(principal)
    if base == FEE_BASE_COMMITTED:
        return to_decimal(commitment)
    if base == FEE_BASE_NIC_PLUS_UNFUNDED:
        return to_decimal(net_invested_capital) + to_decimal(unfunded_commitment)
    raise ValidationError("managementFeeBase", f"unknown fee base {base!r}")
