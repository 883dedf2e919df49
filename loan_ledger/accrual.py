"""
accrual.py - Interest Accrual for Interest-Only Debt Investments

Pure functions. No store access, no hidden state, no side effects.

A debt investment pays a fixed interest amount every payment period and returns
its principal once, at payoff:

    period_payment = principal * (annual_rate_percent / 100) * months_per_period / 12

rounded to cents with ROUND_HALF_EVEN. For the default monthly frequency this is
principal * rate / 100 / 12, e.g. 1000 at 12% -> 10.00.

No prepayment penalty is modeled: the payoff amount is the principal.
"""
from __future__ import annotations
import calendar
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, Union

from .core import (
    InvalidInputError, PaymentFrequency,
    ZERO, money, to_decimal,
)

MONTHS_PER_YEAR = Decimal("12")
HUNDRED = Decimal("100")


@dataclass(frozen=True, slots=True)
class PeriodSplit:
    """Interest and principal due in one scheduled payment period."""
    period_number: int
    interest: Decimal
    principal: Decimal

    @property
    def total(self) -> Decimal:
        return self.interest + self.principal


def _validate_terms(principal, annual_rate_percent, term_months) -> tuple:
    principal = to_decimal(principal, "principal")
    rate = to_decimal(annual_rate_percent, "annual_rate_percent")
    if principal < ZERO:
        raise InvalidInputError(f"principal must be >= 0, got {principal}")
    if rate < ZERO:
        raise InvalidInputError(f"annual_rate_percent must be >= 0, got {rate}")
    if isinstance(term_months, bool) or not isinstance(term_months, int):
        raise InvalidInputError(f"term_months must be an integer, got {term_months!r}")
    if term_months <= 0:
        raise InvalidInputError(f"term_months must be > 0, got {term_months}")
    return principal, rate


def compute_period_payment(
    principal: Decimal,
    annual_rate_percent: Decimal,
    term_months: int,
    frequency: PaymentFrequency = PaymentFrequency.MONTHLY,
) -> Decimal:
    """
    Interest paid each period on an interest-only investment.

    Args:
        principal: Amount invested (>= 0)
        annual_rate_percent: Annual rate in percent (12 means 12%)
        term_months: Loan term in months (> 0)
        frequency: Payment frequency (default monthly)

    Returns:
        Period interest rounded to cents

    Raises:
        InvalidInputError: On negative principal or rate, or non-positive term
    """
    principal, rate = _validate_terms(principal, annual_rate_percent, term_months)
    frequency = PaymentFrequency(frequency)
    return money(principal * (rate / HUNDRED) * Decimal(frequency.months) / MONTHS_PER_YEAR)


def compute_payoff_amount(principal: Decimal) -> Decimal:
    """Principal returned at payoff. No fee tier applies to debt payoff."""
    principal = to_decimal(principal, "principal")
    if principal < ZERO:
        raise InvalidInputError(f"principal must be >= 0, got {principal}")
    return money(principal)


def total_periods(term_months: int, frequency: PaymentFrequency = PaymentFrequency.MONTHLY) -> int:
    """Number of scheduled payment periods over the term (a partial last period counts)."""
    if isinstance(term_months, bool) or not isinstance(term_months, int) or term_months <= 0:
        raise InvalidInputError(f"term_months must be a positive integer, got {term_months!r}")
    months = PaymentFrequency(frequency).months
    return -(-term_months // months)


def calculate_period_split(
    principal: Decimal,
    annual_rate_percent: Decimal,
    term_months: int,
    period_number: int,
    frequency: PaymentFrequency = PaymentFrequency.MONTHLY,
) -> PeriodSplit:
    """
    Interest/principal split for a 1-based period of the schedule.

    Every period pays the period interest; the final scheduled period also
    returns the principal.
    """
    interest = compute_period_payment(principal, annual_rate_percent, term_months, frequency)
    periods = total_periods(term_months, frequency)
    if period_number < 1 or period_number > periods:
        raise InvalidInputError(f"period_number must be in [1, {periods}], got {period_number}")
    returned = compute_payoff_amount(principal) if period_number == periods else ZERO
    return PeriodSplit(period_number=period_number, interest=interest, principal=returned)


def projected_total_interest(
    principal: Decimal,
    annual_rate_percent: Decimal,
    term_months: int,
    frequency: PaymentFrequency = PaymentFrequency.MONTHLY,
) -> Decimal:
    """Interest paid over the full schedule if the investment runs to term."""
    interest = compute_period_payment(principal, annual_rate_percent, term_months, frequency)
    return money(interest * total_periods(term_months, frequency))


def add_months(start: date, months: int, day: Optional[int] = None) -> date:
    """
    Add months to a date, clamping the day to the end of the target month.

    day overrides start.day, so a schedule anchored on the 31st returns to the
    31st after passing through a shorter month.
    """
    month = start.month - 1 + months
    year = start.year + month // 12
    month = month % 12 + 1
    day = min(day or start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def advance_payment_date(
    current: Union[date, datetime],
    frequency: PaymentFrequency = PaymentFrequency.MONTHLY,
    anchor_day: Optional[int] = None,
) -> date:
    """The payment date one period after the given date, on anchor_day when given."""
    if isinstance(current, datetime):
        current = current.date()
    return add_months(current, PaymentFrequency(frequency).months, anchor_day)


def first_payment_date(
    start: Union[date, datetime],
    frequency: PaymentFrequency = PaymentFrequency.MONTHLY,
) -> date:
    """First payment is due one full period after the investment date."""
    return advance_payment_date(start, frequency)
