"""
test_loan_registry.py - Unit tests for LoanRegistry

Tests:
- Offering intake validation
- reserve_funding cap and investor counting
- funding -> active -> paid_off transitions
"""

import pytest
from dataclasses import replace
from decimal import Decimal

from loan_ledger import (
    LoanRegistry, LoanStatus, InvestmentStatus,
    InvalidInputError, InsufficientCapacity, LoanNotFound, LoanNotFundable,
    InvalidTransition, LoanInvestment, PersistenceError, TABLE_INVESTMENTS, TABLE_LOANS,
)

from tests.helpers import make_loan


@pytest.fixture
def loans(store, clock):
    return LoanRegistry(store, clock)


def _add_investment(store, status=InvestmentStatus.ACTIVE, investment_id="inv_1"):
    with store.unit_of_work() as uow:
        uow.insert(TABLE_INVESTMENTS, LoanInvestment(
            investment_id=investment_id, user_id="alice", loan_id="loan_1",
            principal=Decimal("1000"), expected_period_payment=Decimal("10"),
            status=status,
        ))


class TestRegister:

    def test_register_stamps_times(self, loans, clock):
        loan = loans.register(make_loan())
        assert loan.created_at is not None
        assert loans.get("loan_1") == loan

    @pytest.mark.parametrize("kwargs", [
        dict(target="0"),
        dict(rate="-1"),
        dict(term=0),
        dict(min_investment="0"),
        dict(min_investment="500", max_investment="100"),
        dict(max_investment="60000"),
        dict(loan_id=" "),
    ])
    def test_invalid_offerings(self, loans, kwargs):
        with pytest.raises(InvalidInputError):
            loans.register(make_loan(**kwargs))

    def test_only_funding_loans_can_be_registered(self, loans):
        with pytest.raises(InvalidInputError):
            loans.register(make_loan(status=LoanStatus.ACTIVE))

    def test_duplicate_id_rejected(self, loans):
        loans.register(make_loan())
        with pytest.raises(PersistenceError):
            loans.register(make_loan())

    def test_get_unknown(self, loans):
        with pytest.raises(LoanNotFound):
            loans.get("missing")

    def test_list_open_newest_first_excludes_paid_off(self, loans, store):
        loans.register(make_loan("loan_a"))
        loans.register(make_loan("loan_b"))
        closed = loans.register(make_loan("loan_c"))
        with store.unit_of_work() as uow:
            uow.update(TABLE_LOANS, closed, replace(closed, status=LoanStatus.PAID_OFF))
        assert [l.loan_id for l in loans.list_open()] == ["loan_b", "loan_a"]
        assert len(loans.list_all()) == 3


class TestReserveFunding:

    def test_increments_funded_and_investors(self, loans):
        loans.register(make_loan(target="1000"))
        loan = loans.reserve_funding("loan_1", Decimal("400"))
        assert loan.funded_amount == Decimal("400.00")
        assert loan.investor_count == 1
        loan = loans.reserve_funding("loan_1", Decimal("100"), new_investor=False)
        assert loan.funded_amount == Decimal("500.00")
        assert loan.investor_count == 1

    def test_fill_exactly_to_target(self, loans):
        loans.register(make_loan(target="1000"))
        loan = loans.reserve_funding("loan_1", Decimal("1000"))
        assert loan.is_fully_funded

    def test_overshoot_rejected(self, loans):
        loans.register(make_loan(target="1000"))
        loans.reserve_funding("loan_1", Decimal("900"))
        with pytest.raises(InsufficientCapacity) as exc_info:
            loans.reserve_funding("loan_1", Decimal("100.01"))
        assert exc_info.value.code == "exceeds_funding_capacity"
        assert loans.get("loan_1").funded_amount == Decimal("900.00")

    def test_not_funding(self, loans):
        loans.register(make_loan(target="1000"))
        loans.reserve_funding("loan_1", Decimal("1000"))
        loans.activate("loan_1")
        with pytest.raises(LoanNotFundable):
            loans.reserve_funding("loan_1", Decimal("1"))


class TestTransitions:

    def test_activate_requires_full_funding(self, loans):
        loans.register(make_loan(target="1000"))
        loans.reserve_funding("loan_1", Decimal("999"))
        with pytest.raises(InvalidTransition):
            loans.activate("loan_1")

    def test_activate(self, loans):
        loans.register(make_loan(target="1000"))
        loans.reserve_funding("loan_1", Decimal("1000"))
        assert loans.activate("loan_1").status == LoanStatus.ACTIVE
        with pytest.raises(InvalidTransition):
            loans.activate("loan_1")

    def test_paid_off_requires_active_loan(self, loans):
        loans.register(make_loan(target="1000"))
        with pytest.raises(InvalidTransition):
            loans.mark_paid_off("loan_1")

    def test_paid_off_blocked_by_active_investment(self, loans, store):
        loans.register(make_loan(target="1000"))
        loans.reserve_funding("loan_1", Decimal("1000"))
        loans.activate("loan_1")
        _add_investment(store)
        with pytest.raises(InvalidTransition):
            loans.mark_paid_off("loan_1")

    def test_paid_off(self, loans, store):
        loans.register(make_loan(target="1000"))
        loans.reserve_funding("loan_1", Decimal("1000"))
        loans.activate("loan_1")
        _add_investment(store, status=InvestmentStatus.PAID_OFF)
        assert loans.mark_paid_off("loan_1").status == LoanStatus.PAID_OFF
