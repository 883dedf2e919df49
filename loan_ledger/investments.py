"""
investments.py - Loan Investments and their Payment History

Owns LoanInvestment and Payment rows.

    LoanInvestment: active --mark_paid_off()--> paid_off   (terminal)
    Payment:        append-only, one row per disbursement

Per investment, at every commit:
    total_interest_earned    == sum(interest payments)
    total_principal_returned == sum(principal payments)
"""

from __future__ import annotations
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional

from .accrual import advance_payment_date, first_payment_date
from .core import (
    TABLE_INVESTMENTS, TABLE_LOANS, TABLE_PAYMENTS,
    InvalidTransition, InvestmentNotFound, InvestmentStatus,
    LoanInvestment, LoanNotFound, OutOfRange, Payment, PaymentType,
    money, new_id, positive_money, utc_now,
)
from .logging import get_logger
from .store import RecordStore, UnitOfWork, row_lock

logger = get_logger(__name__)


def investment_lock(investment_id: str) -> str:
    return row_lock("investment", investment_id)


class InvestmentBook:
    """Owns investment records, their derived schedule fields and their payments."""

    def __init__(self, store: RecordStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    # ========================================================================
    # READS
    # ========================================================================

    def get(self, investment_id: str, uow: Optional[UnitOfWork] = None) -> LoanInvestment:
        """
        Raises:
            InvestmentNotFound: If no investment has this id
        """
        investment = (uow or self.store).get(TABLE_INVESTMENTS, investment_id)
        if investment is None:
            raise InvestmentNotFound(f"Investment {investment_id} not found")
        return investment

    def list_for_user(self, user_id: str) -> List[LoanInvestment]:
        """A user's investments, newest first."""
        rows = self.store.find(TABLE_INVESTMENTS, user_id=user_id)
        return sorted(rows, key=lambda inv: inv.created_at, reverse=True)

    def list_active_for_user(self, user_id: str) -> List[LoanInvestment]:
        return self.store.find(TABLE_INVESTMENTS, user_id=user_id, status=InvestmentStatus.ACTIVE)

    def list_for_loan(self, loan_id: str, uow: Optional[UnitOfWork] = None) -> List[LoanInvestment]:
        return (uow or self.store).find(TABLE_INVESTMENTS, loan_id=loan_id)

    def has_position(self, user_id: str, loan_id: str, uow: Optional[UnitOfWork] = None) -> bool:
        """True if the user already holds an investment in the loan."""
        return bool((uow or self.store).find(TABLE_INVESTMENTS, user_id=user_id, loan_id=loan_id))

    def list_payments(self, investment_id: str) -> List[Payment]:
        """Payments for an investment, newest first."""
        rows = self.store.find(TABLE_PAYMENTS, investment_id=investment_id)
        return sorted(rows, key=lambda p: p.payment_date, reverse=True)

    # ========================================================================
    # WRITES
    # ========================================================================

    def create(
        self,
        user_id: str,
        loan_id: str,
        principal: Decimal,
        expected_period_payment: Decimal,
        uow: Optional[UnitOfWork] = None,
    ) -> LoanInvestment:
        """
        Record a user's principal commitment against a loan.

        Raises:
            LoanNotFound: If the loan does not exist
            OutOfRange: If principal is outside [min_investment, max_investment]
        """
        principal = positive_money(principal, "principal")
        with self.store.unit_of_work(uow) as unit:
            loan = unit.get(TABLE_LOANS, loan_id)
            if loan is None:
                raise LoanNotFound(f"Loan {loan_id} not found")
            check_investment_range(loan, principal)
            now = self.clock()
            investment = LoanInvestment(
                investment_id=new_id("inv"),
                user_id=user_id,
                loan_id=loan_id,
                principal=principal,
                expected_period_payment=money(expected_period_payment),
                payment_frequency=loan.payment_frequency,
                next_payment_date=first_payment_date(now, loan.payment_frequency),
                created_at=now,
                updated_at=now,
            )
            return unit.insert(TABLE_INVESTMENTS, investment)

    def record_payment(
        self,
        investment_id: str,
        payment_type: PaymentType,
        amount: Decimal,
        payment_date: datetime,
        uow: Optional[UnitOfWork] = None,
    ) -> Payment:
        """
        Append a Payment and roll it into the investment's totals.

        Interest payments add to total_interest_earned, principal payments to
        total_principal_returned. Either kind advances next_payment_date by one
        payment period, keeping the day of month the investment was made on.
        """
        amount = positive_money(amount)
        payment_type = PaymentType(payment_type)
        with self.store.locks.hold(investment_lock(investment_id)):
            with self.store.unit_of_work(uow) as unit:
                investment = self.get(investment_id, unit)
                payment = Payment(
                    payment_id=new_id("pay"),
                    investment_id=investment_id,
                    loan_id=investment.loan_id,
                    user_id=investment.user_id,
                    payment_type=payment_type,
                    amount=amount,
                    payment_date=payment_date,
                )
                unit.insert(TABLE_PAYMENTS, payment)

                if payment_type == PaymentType.INTEREST:
                    totals = {'total_interest_earned': investment.total_interest_earned + amount}
                else:
                    totals = {'total_principal_returned': investment.total_principal_returned + amount}
                current_due = investment.next_payment_date or payment_date
                anchor_day = investment.created_at.day if investment.created_at else None
                unit.update(TABLE_INVESTMENTS, investment, replace(
                    investment,
                    next_payment_date=advance_payment_date(
                        current_due, investment.payment_frequency, anchor_day,
                    ),
                    updated_at=self.clock(),
                    **totals,
                ))
                return payment

    def mark_paid_off(self, investment_id: str, uow: Optional[UnitOfWork] = None) -> LoanInvestment:
        """
        Terminal transition active -> paid_off. Clears next_payment_date.

        Raises:
            InvalidTransition: If the investment is already paid off
        """
        with self.store.locks.hold(investment_lock(investment_id)):
            with self.store.unit_of_work(uow) as unit:
                investment = self.get(investment_id, unit)
                if investment.status == InvestmentStatus.PAID_OFF:
                    raise InvalidTransition(f"Investment {investment_id} is already paid off")
                return unit.update(TABLE_INVESTMENTS, investment, replace(
                    investment,
                    status=InvestmentStatus.PAID_OFF,
                    next_payment_date=None,
                    updated_at=self.clock(),
                ))


def check_investment_range(loan, principal: Decimal) -> None:
    """
    Raises:
        OutOfRange: If principal is outside the loan's [min_investment, max_investment]
    """
    if principal < loan.min_investment:
        raise OutOfRange(
            f"{principal} is below the minimum investment {loan.min_investment}",
            code="below_minimum_investment",
        )
    if principal > loan.effective_max_investment:
        raise OutOfRange(
            f"{principal} exceeds the maximum investment {loan.effective_max_investment}",
            code="above_maximum_investment",
        )
