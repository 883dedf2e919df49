"""
Functional tests for a loan's full lifecycle

Offer -> fund -> activate -> pay interest -> pay off, on every record
store backend, plus durability of the SQLite file across reopen.
"""

import pytest
from decimal import Decimal

from loan_ledger import (
    SettlementEngine, SqliteRecordStore, LoanStatus, InvestmentStatus, PaymentType,
    TransactionType, LoanNotFundable, NotActive,
)

from tests.fake_clock import FakeClock
from tests.helpers import make_loan, assert_conserved


USERS = ["alice", "bob"]


def _open_market(store, clock):
    engine = SettlementEngine(store, clock=clock)
    engine.loans.register(make_loan(target="2000", rate="12", term=12))
    for user in USERS:
        engine.wallets.deposit(user, Decimal("5000"))
    return engine


class TestLoanLifecycle:

    def test_fund_pay_and_close(self, store):
        clock = FakeClock()
        engine = _open_market(store, clock)

        a = engine.invest("alice", "loan_1", Decimal("1500"))
        b = engine.invest("bob", "loan_1", Decimal("500"))
        loan = engine.get_loan("loan_1")
        assert loan.funded_amount == Decimal("2000.00")
        assert loan.investor_count == 2
        assert loan.is_fully_funded
        assert [l.loan_id for l in engine.list_open_loans()] == ["loan_1"]

        with pytest.raises(LoanNotFundable):
            engine.invest("alice", "loan_1", Decimal("100"))

        assert engine.activate_loan("loan_1").status == LoanStatus.ACTIVE

        dates = []
        for _ in range(12):
            clock.advance(days=30)
            results = engine.simulate_all_payments("alice")
            engine.simulate_all_payments("bob")
            assert all(r.ok for r in results)
            dates.append(engine.investments.get(a.investment_id).next_payment_date)
        assert dates == sorted(dates)
        assert len(set(dates)) == 12

        alice = engine.investments.get(a.investment_id)
        assert alice.total_interest_earned == Decimal("180.00")
        assert engine.investments.get(b.investment_id).total_interest_earned == Decimal("60.00")

        engine.simulate_payoff(a.investment_id)
        assert engine.get_loan("loan_1").status == LoanStatus.ACTIVE
        engine.simulate_payoff(b.investment_id)
        assert engine.get_loan("loan_1").status == LoanStatus.PAID_OFF
        assert engine.list_open_loans() == []

        assert engine.get_wallet_balance("alice") == Decimal("5180.00")
        assert engine.get_wallet_balance("bob") == Decimal("5060.00")

        with pytest.raises(NotActive):
            engine.simulate_single_payment(a.investment_id)
        assert engine.simulate_all_payments("alice") == []

        summary = engine.get_portfolio_summary("alice")
        assert summary.active_count == 0
        assert summary.total_invested == Decimal("1500.00")
        assert summary.total_principal_returned == Decimal("1500.00")
        assert summary.next_payment_date is None

        payments = engine.list_payments_for_investment(a.investment_id)
        assert len(payments) == 13
        assert payments[0].payment_type == PaymentType.PRINCIPAL

        for user in USERS:
            assert engine.wallets.reconcile(user)["valid"]
        assert_conserved(engine, USERS)

    def test_transaction_history_tells_the_story(self, store):
        engine = _open_market(store, FakeClock())
        inv = engine.invest("alice", "loan_1", Decimal("1000"))
        engine.simulate_single_payment(inv.investment_id)
        engine.simulate_payoff(inv.investment_id)

        kinds = [t.transaction_type for t in engine.wallets.list_transactions("alice")]
        assert sorted(kinds) == sorted([
            TransactionType.DEPOSIT,
            TransactionType.LOAN_INVESTMENT,
            TransactionType.INTEREST_PAYMENT,
            TransactionType.PRINCIPAL_RETURN,
        ])

    def test_auto_activation(self, store):
        engine = SettlementEngine(store, clock=FakeClock(), auto_activate=True)
        engine.loans.register(make_loan(target="1000"))
        engine.wallets.deposit("alice", Decimal("1000"))
        engine.invest("alice", "loan_1", Decimal("600"))
        assert engine.get_loan("loan_1").status == LoanStatus.FUNDING
        engine.wallets.deposit("alice", Decimal("400"))
        engine.invest("alice", "loan_1", Decimal("400"))
        loan = engine.get_loan("loan_1")
        assert loan.status == LoanStatus.ACTIVE
        assert loan.investor_count == 1


class TestSqliteDurability:

    def test_state_survives_reopen(self, tmp_path):
        path = str(tmp_path / "ledger.db")
        clock = FakeClock()

        first = SqliteRecordStore(path)
        engine = _open_market(first, clock)
        inv = engine.invest("alice", "loan_1", Decimal("1000"), idempotency_key="k-1")
        engine.simulate_single_payment(inv.investment_id)
        first.close()

        second = SqliteRecordStore(path)
        try:
            engine = SettlementEngine(second, clock=clock)
            assert engine.get_wallet_balance("alice") == Decimal("4010.00")
            reopened = engine.investments.get(inv.investment_id)
            assert reopened == engine.list_investments_for_user("alice")[0]
            assert reopened.status == InvestmentStatus.ACTIVE
            assert reopened.total_interest_earned == Decimal("10.00")

            again = engine.invest("alice", "loan_1", Decimal("1000"), idempotency_key="k-1")
            assert again == inv
            assert engine.get_wallet_balance("alice") == Decimal("4010.00")
            assert_conserved(engine, USERS)
        finally:
            second.close()
