"""
loans.py - Loan Offering Registry

Owns Loan rows. State machine:

    funding --activate()--> active --mark_paid_off()--> paid_off

funded_amount only grows while the loan is funding, and never above
target_amount. reserve_funding() is a compare-and-increment: it runs under the
loan's row lock and its update is committed with a compare-and-swap on the
row it read, so concurrent investors can never jointly overshoot the cap.
"""

from __future__ import annotations
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional

from .core import (
    TABLE_INVESTMENTS, TABLE_LOANS, ZERO,
    InsufficientCapacity, InvalidInputError, InvalidTransition,
    InvestmentStatus, Loan, LoanNotFound, LoanNotFundable, LoanStatus,
    positive_money, utc_now,
)
from .logging import get_logger
from .store import RecordStore, UnitOfWork, row_lock

logger = get_logger(__name__)


def loan_lock(loan_id: str) -> str:
    return row_lock("loan", loan_id)


def validate_offering(loan: Loan) -> None:
    """
    Check the term sheet of a new offering.

    Raises:
        InvalidInputError: If any amount, rate or term is inconsistent
    """
    if not loan.loan_id or not loan.loan_id.strip():
        raise InvalidInputError("loan_id cannot be empty")
    if loan.target_amount <= ZERO:
        raise InvalidInputError(f"target_amount must be > 0, got {loan.target_amount}")
    if loan.rate_per_year < ZERO:
        raise InvalidInputError(f"rate_per_year must be >= 0, got {loan.rate_per_year}")
    if isinstance(loan.term_months, bool) or not isinstance(loan.term_months, int) or loan.term_months <= 0:
        raise InvalidInputError(f"term_months must be a positive integer, got {loan.term_months!r}")
    if loan.min_investment <= ZERO:
        raise InvalidInputError(f"min_investment must be > 0, got {loan.min_investment}")
    if loan.effective_max_investment < loan.min_investment:
        raise InvalidInputError(
            f"max_investment {loan.effective_max_investment} < min_investment {loan.min_investment}"
        )
    if loan.effective_max_investment > loan.target_amount:
        raise InvalidInputError(
            f"max_investment {loan.effective_max_investment} > target_amount {loan.target_amount}"
        )
    if loan.funded_amount < ZERO or loan.funded_amount > loan.target_amount:
        raise InvalidInputError(
            f"funded_amount {loan.funded_amount} outside [0, {loan.target_amount}]"
        )
    if loan.investor_count < 0:
        raise InvalidInputError(f"investor_count must be >= 0, got {loan.investor_count}")


class LoanRegistry:
    """Owns Loan offering records and their funding state."""

    def __init__(self, store: RecordStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    def register(self, loan: Loan) -> Loan:
        """
        Take in a new offering from the offering-management workflow.

        Only loans in the funding phase can be registered.

        Raises:
            InvalidInputError: If the term sheet is inconsistent or the loan is not funding
        """
        validate_offering(loan)
        if loan.status != LoanStatus.FUNDING:
            raise InvalidInputError(f"New loan {loan.loan_id} must be funding, got {loan.status.value}")
        now = self.clock()
        loan = replace(loan, created_at=loan.created_at or now, updated_at=now)
        with self.store.unit_of_work() as uow:
            uow.insert(TABLE_LOANS, loan)
        logger.info("Registered loan %s (%s) target=%s rate=%s%%",
                    loan.loan_id, loan.name, loan.target_amount, loan.rate_per_year)
        return loan

    def get(self, loan_id: str, uow: Optional[UnitOfWork] = None) -> Loan:
        """
        Raises:
            LoanNotFound: If no loan has this id
        """
        loan = (uow or self.store).get(TABLE_LOANS, loan_id)
        if loan is None:
            raise LoanNotFound(f"Loan {loan_id} not found")
        return loan

    def list_all(self) -> List[Loan]:
        return self.store.find(TABLE_LOANS)

    def list_open(self) -> List[Loan]:
        """Loans not yet paid off, newest first."""
        loans = [loan for loan in self.store.find(TABLE_LOANS) if loan.status != LoanStatus.PAID_OFF]
        return sorted(loans, key=lambda loan: loan.created_at, reverse=True)

    def reserve_funding(
        self,
        loan_id: str,
        amount: Decimal,
        new_investor: bool = True,
        uow: Optional[UnitOfWork] = None,
    ) -> Loan:
        """
        Add amount to funded_amount if it fits under target_amount.

        Args:
            loan_id: Loan to fund
            amount: Principal being committed (> 0)
            new_investor: Whether to count a new distinct investor
            uow: Unit of work to join (a new one is opened if omitted)

        Returns:
            The updated Loan

        Raises:
            LoanNotFound: If the loan does not exist
            LoanNotFundable: If the loan is not in the funding phase
            InsufficientCapacity: If funded_amount + amount > target_amount
        """
        amount = positive_money(amount)
        with self.store.locks.hold(loan_lock(loan_id)):
            with self.store.unit_of_work(uow) as unit:
                loan = self.get(loan_id, unit)
                if loan.status != LoanStatus.FUNDING:
                    raise LoanNotFundable(f"Loan {loan_id} is {loan.status.value}")
                if loan.funded_amount + amount > loan.target_amount:
                    raise InsufficientCapacity(
                        f"Loan {loan_id}: {amount} exceeds remaining capacity {loan.remaining_capacity}"
                    )
                updated = replace(
                    loan,
                    funded_amount=loan.funded_amount + amount,
                    investor_count=loan.investor_count + (1 if new_investor else 0),
                    updated_at=self.clock(),
                )
                return unit.update(TABLE_LOANS, loan, updated)

    def activate(self, loan_id: str, uow: Optional[UnitOfWork] = None) -> Loan:
        """
        Move a fully funded loan from funding to active.

        Raises:
            InvalidTransition: If the loan is not funding or not fully funded
        """
        with self.store.locks.hold(loan_lock(loan_id)):
            with self.store.unit_of_work(uow) as unit:
                loan = self.get(loan_id, unit)
                if loan.status != LoanStatus.FUNDING:
                    raise InvalidTransition(f"Loan {loan_id} is {loan.status.value}, not funding")
                if not loan.is_fully_funded:
                    raise InvalidTransition(
                        f"Loan {loan_id} funded {loan.funded_amount} of {loan.target_amount}"
                    )
                updated = unit.update(TABLE_LOANS, loan, replace(
                    loan, status=LoanStatus.ACTIVE, updated_at=self.clock(),
                ))
        logger.info("Activated loan %s", loan_id)
        return updated

    def mark_paid_off(self, loan_id: str, uow: Optional[UnitOfWork] = None) -> Loan:
        """
        Move an active loan to paid_off once none of its investments is active.

        Raises:
            InvalidTransition: If the loan is not active or still has active investments
        """
        with self.store.locks.hold(loan_lock(loan_id)):
            with self.store.unit_of_work(uow) as unit:
                loan = self.get(loan_id, unit)
                if loan.status != LoanStatus.ACTIVE:
                    raise InvalidTransition(f"Loan {loan_id} is {loan.status.value}, not active")
                still_active = unit.find(
                    TABLE_INVESTMENTS, loan_id=loan_id, status=InvestmentStatus.ACTIVE,
                )
                if still_active:
                    raise InvalidTransition(
                        f"Loan {loan_id} has {len(still_active)} active investment(s)"
                    )
                updated = unit.update(TABLE_LOANS, loan, replace(
                    loan, status=LoanStatus.PAID_OFF, updated_at=self.clock(),
                ))
        logger.info("Loan %s paid off", loan_id)
        return updated
