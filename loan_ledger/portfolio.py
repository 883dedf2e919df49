"""
portfolio.py - Read-Side Aggregates over Investments and Payments

Pure functions over records already loaded from the store.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from .core import (
    ZERO, Loan, LoanInvestment, Payment, PaymentType, SettlementResult,
    money,
)


@dataclass(frozen=True, slots=True)
class PortfolioSummary:
    """
    A user's debt portfolio at a point in time.

    Attributes:
        total_invested: Principal across all investments, paid off included.
        expected_period_income: Sum of expected_period_payment over active investments.
        active_count: Number of active investments.
        average_rate: Principal-weighted average annual rate in percent.
        total_interest_earned: Interest received across all investments.
        total_principal_returned: Principal received back at payoff.
        next_payment_date: Earliest next_payment_date among active investments.
    """
    total_invested: Decimal
    expected_period_income: Decimal
    active_count: int
    average_rate: Decimal
    total_interest_earned: Decimal
    total_principal_returned: Decimal
    next_payment_date: Optional[date]


@dataclass(frozen=True, slots=True)
class PaymentTotals:
    interest: Decimal
    principal: Decimal

    @property
    def total(self) -> Decimal:
        return self.interest + self.principal


@dataclass(frozen=True, slots=True)
class BatchSummary:
    """What a batch settlement paid out."""
    total_amount: Decimal
    payment_count: int
    failure_count: int


def calculate_portfolio_summary(
    investments: Iterable[LoanInvestment],
    loans: Dict[str, Loan],
) -> PortfolioSummary:
    """
    Aggregate a user's investments.

    Args:
        investments: The user's investments
        loans: Loans by loan_id, used for the rate weighting; missing loans weigh as 0%
    """
    investments = list(investments)
    active = [inv for inv in investments if inv.is_active]
    total_invested = sum((inv.principal for inv in investments), ZERO)

    average_rate = ZERO
    if total_invested > ZERO:
        weighted = sum(
            (inv.principal * loans[inv.loan_id].rate_per_year
             for inv in investments if inv.loan_id in loans),
            ZERO,
        )
        average_rate = money(weighted / total_invested)

    upcoming = [inv.next_payment_date for inv in active if inv.next_payment_date is not None]
    return PortfolioSummary(
        total_invested=money(total_invested),
        expected_period_income=money(sum((inv.expected_period_payment for inv in active), ZERO)),
        active_count=len(active),
        average_rate=average_rate,
        total_interest_earned=money(sum((inv.total_interest_earned for inv in investments), ZERO)),
        total_principal_returned=money(sum((inv.total_principal_returned for inv in investments), ZERO)),
        next_payment_date=min(upcoming) if upcoming else None,
    )


def calculate_payment_totals(payments: Iterable[Payment]) -> PaymentTotals:
    """Split a payment history into interest and principal sums."""
    interest = principal = ZERO
    for payment in payments:
        if payment.payment_type == PaymentType.INTEREST:
            interest += payment.amount
        else:
            principal += payment.amount
    return PaymentTotals(interest=interest, principal=principal)


def summarize_batch(results: List[SettlementResult]) -> BatchSummary:
    paid = [r.payment for r in results if r.ok and r.payment is not None]
    return BatchSummary(
        total_amount=sum((p.amount for p in paid), ZERO),
        payment_count=len(paid),
        failure_count=sum(1 for r in results if not r.ok),
    )
