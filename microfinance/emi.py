"""
EMI Calculation Module

Computes the equated monthly installment (EMI) for a loan under two
interest models. Both are pure functions: no storage, no side effects.

- FLAT: simple interest on the full principal for every period. The rate is
  a per-period percentage ("% per month"), the convention loans are created
  with.
- REDUCING_BALANCE: standard annuity formula P * r(1+r)^n / ((1+r)^n - 1)
  with r = rate / 100 / 12, i.e. the rate is read as an annual percentage.
"""

from decimal import Decimal
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .errors import ValidationError
from .money import to_amount, round_amount, ZERO

TWELVE = Decimal('12')
HUNDRED = Decimal('100')


class InterestModel(Enum):
    """Interest models supported for EMI calculation"""
    FLAT = "flat"
    REDUCING_BALANCE = "reducing_balance"


@dataclass(frozen=True)
class EMIResult:
    """EMI together with the totals it implies, in whole currency units"""
    emi: Decimal
    total_amount: Decimal
    total_interest: Decimal


def _validate_inputs(principal: Any, interest_rate: Any, period: Any):
    principal = to_amount(principal, "principal")
    interest_rate = to_amount(interest_rate, "interest_rate")

    if isinstance(period, bool) or not isinstance(period, int):
        raise ValidationError(f"period must be a whole number of months, got {period!r}")
    if period <= 0:
        raise ValidationError(f"period must be positive, got {period}")
    if interest_rate < ZERO:
        raise ValidationError(f"interest_rate cannot be negative, got {interest_rate}")
    if principal <= ZERO:
        raise ValidationError(f"principal must be positive, got {principal}")

    return principal, interest_rate, period


def calculate_flat_emi(principal: Any, interest_rate: Any, period: int) -> EMIResult:
    """
    Calculate EMI with flat (simple) interest.

    Args:
        principal: Loan principal
        interest_rate: Percentage charged per period, e.g. 2 for 2% per month
        period: Number of monthly installments

    Returns:
        EMIResult with emi rounded to whole units

    Example:
        100000 at 2% for 10 months -> interest 20000, total 120000, emi 12000
    """
    principal, interest_rate, period = _validate_inputs(principal, interest_rate, period)

    total_interest = principal * (interest_rate / HUNDRED) * Decimal(period)
    total_amount = principal + total_interest
    emi = round_amount(total_amount / Decimal(period))

    return EMIResult(
        emi=emi,
        total_amount=round_amount(total_amount),
        total_interest=round_amount(total_interest)
    )


def calculate_reducing_balance_emi(principal: Any, interest_rate: Any, period: int) -> EMIResult:
    """
    Calculate EMI on a reducing balance.

    Args:
        principal: Loan principal
        interest_rate: Annual percentage rate, divided by 12 for the monthly rate
        period: Number of monthly installments

    Returns:
        EMIResult where total_amount is emi * period
    """
    principal, interest_rate, period = _validate_inputs(principal, interest_rate, period)

    monthly_rate = interest_rate / HUNDRED / TWELVE
    n = Decimal(period)

    if monthly_rate == ZERO:
        # No interest - simple division
        emi = round_amount(principal / n)
    else:
        factor = (Decimal('1') + monthly_rate) ** period
        emi = round_amount(principal * monthly_rate * factor / (factor - Decimal('1')))

    total_amount = emi * n
    return EMIResult(
        emi=emi,
        total_amount=total_amount,
        total_interest=total_amount - principal
    )


def calculate_emi(principal: Any, interest_rate: Any, period: int,
                  model: InterestModel = InterestModel.FLAT) -> EMIResult:
    """Calculate EMI for the requested interest model"""
    if model == InterestModel.FLAT:
        return calculate_flat_emi(principal, interest_rate, period)
    if model == InterestModel.REDUCING_BALANCE:
        return calculate_reducing_balance_emi(principal, interest_rate, period)
    raise ValidationError(f"Unsupported interest model: {model}")
