"""
helpers.py - Builders and invariant checks shared by the test suites
"""

from decimal import Decimal
from typing import Iterable

from loan_ledger import (
    Loan,
    PaymentType,
    SettlementEngine,
    TABLE_INVESTMENTS,
    TABLE_PAYMENTS,
    TABLE_TRANSACTIONS,
)


def make_loan(
    loan_id: str = "loan_1",
    target: str = "50000",
    rate: str = "12",
    term: int = 12,
    min_investment: str = "100",
    max_investment: str = None,
    **kwargs,
) -> Loan:
    """Create a funding-phase loan offering for testing."""
    return Loan(
        loan_id=loan_id,
        name=kwargs.pop("name", f"Offering {loan_id}"),
        target_amount=Decimal(target),
        rate_per_year=Decimal(rate),
        term_months=term,
        min_investment=Decimal(min_investment),
        max_investment=Decimal(max_investment) if max_investment is not None else None,
        **kwargs,
    )


def transaction_sum(store, user_id: str) -> Decimal:
    return sum((t.amount for t in store.find(TABLE_TRANSACTIONS, user_id=user_id)), Decimal("0"))


def assert_conserved(engine: SettlementEngine, users: Iterable[str]) -> None:
    """
    Check the ledger-wide invariants for the given users:
    - wallet balance equals the sum of the user's transactions
    - every investment's totals equal the sum of its payments
    - no loan is funded above its target
    """
    store = engine.store
    for user_id in users:
        assert engine.get_wallet_balance(user_id) == transaction_sum(store, user_id), user_id
        assert engine.get_wallet_balance(user_id) >= 0, user_id

    for investment in store.find(TABLE_INVESTMENTS):
        payments = store.find(TABLE_PAYMENTS, investment_id=investment.investment_id)
        interest = sum((p.amount for p in payments if p.payment_type == PaymentType.INTEREST), Decimal("0"))
        principal = sum((p.amount for p in payments if p.payment_type == PaymentType.PRINCIPAL), Decimal("0"))
        assert investment.total_interest_earned == interest
        assert investment.total_principal_returned == principal
        assert principal in (Decimal("0"), investment.principal)

    for loan in engine.loans.list_all():
        assert Decimal("0") <= loan.funded_amount <= loan.target_amount


