"""
settlement.py - Settlement Engine for Debt Investments

The only component that drives the wallet, loan and investment components
together. Every operation runs as one unit of work under the row locks it
needs, taken up front in sorted order:

    invest                    loan + wallet
    simulate_single_payment   investment + wallet
    simulate_payoff           investment + loan + wallet
    (+ the idempotency key, when the caller passes one)

Either every write of an operation commits or none does. Business rejections
are logged at WARNING and raised to the caller; nothing is retried here.

State machines:

    Loan:           funding -> active -> paid_off
    LoanInvestment: active -> paid_off

Payments are caller-triggered and repeatable. Nothing in this module looks at
the clock to decide that a payment is due.
"""

from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from .accrual import compute_payoff_amount, compute_period_payment
from .core import (
    TABLE_INVESTMENTS, TABLE_LOANS, TABLE_PAYMENTS,
    BusinessRuleViolation, InvalidInputError, LedgerError, Loan,
    LoanInvestment, LoanNotFundable, LoanStatus, NotActive, Payment,
    PaymentType, PersistenceError, SettlementResult, TransactionType,
    positive_money, request_fingerprint, utc_now,
)
from .idempotency import IdempotencyCache, Request, idempotency_lock
from .investments import InvestmentBook, check_investment_range, investment_lock
from .loans import LoanRegistry, loan_lock
from .logging import get_logger
from .portfolio import (
    PaymentTotals, PortfolioSummary,
    calculate_payment_totals, calculate_portfolio_summary, summarize_batch,
)
from .store import RecordStore, UnitOfWork
from .wallet import WalletLedger, wallet_lock

logger = get_logger(__name__)

# (table the result row belongs to, result row)
Outcome = Tuple[str, Any]


def _require_id(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidInputError(f"{name} must be a non-empty string, got {value!r}")
    return value


def item_key(batch_key: Optional[str], investment_id: str) -> Optional[str]:
    """Idempotency key of one investment's payment inside a keyed batch."""
    if batch_key is None:
        return None
    return f"{batch_key}:{investment_id}"


class SettlementEngine:
    """
    Orchestrates invest, payment simulation and payoff.

    Example:
        engine = SettlementEngine(InMemoryRecordStore())
        engine.loans.register(Loan(loan_id="loan_1", name="Bridge loan",
                                   target_amount=Decimal("50000"), rate_per_year=Decimal("12"),
                                   term_months=12, min_investment=Decimal("100")))
        engine.wallets.deposit("alice", Decimal("5000"))
        investment = engine.invest("alice", "loan_1", Decimal("1000"))
        engine.simulate_single_payment(investment.investment_id)   # +10.00
    """

    def __init__(
        self,
        store: RecordStore,
        clock: Callable[[], datetime] = utc_now,
        idempotency_retention_seconds: Optional[int] = None,
        auto_activate: bool = False,
    ):
        self.store = store
        self.clock = clock
        self.auto_activate = auto_activate
        self.wallets = WalletLedger(store, clock)
        self.loans = LoanRegistry(store, clock)
        self.investments = InvestmentBook(store, clock)
        if idempotency_retention_seconds is None:
            self.idempotency = IdempotencyCache(store, clock=clock)
        else:
            self.idempotency = IdempotencyCache(store, idempotency_retention_seconds, clock)

    @classmethod
    def from_config(cls, config, clock: Callable[[], datetime] = utc_now) -> "SettlementEngine":
        """Build the configured record store and an engine over it."""
        return cls(
            config.store.build(),
            clock=clock,
            idempotency_retention_seconds=config.settlement.idempotency_retention_seconds,
            auto_activate=config.settlement.auto_activate,
        )

    # ========================================================================
    # ATOMIC EXECUTION
    # ========================================================================

    def _execute(
        self,
        operation: str,
        arguments: Dict[str, Any],
        lock_names: List[str],
        action: Callable[[UnitOfWork], Outcome],
        idempotency_key: Optional[str] = None,
    ) -> Tuple[Any, bool]:
        """
        Run action in one unit of work under lock_names. Returns (result, replayed).

        With an idempotency key, a stored outcome for the same request is
        replayed instead of running action, and the new outcome (result or
        business rejection) is stored.
        """
        request = None
        if idempotency_key is not None:
            _require_id(idempotency_key, "idempotency_key")
            request = Request(idempotency_key, operation, request_fingerprint(operation, arguments))
            lock_names = lock_names + [idempotency_lock(idempotency_key)]

        with self.store.locks.hold(*lock_names):
            if request is not None:
                stored = self.idempotency.lookup(request)
                if stored is not None:
                    return self.idempotency.replay(stored), True
            try:
                with self.store.unit_of_work() as uow:
                    table, result = action(uow)
                    if request is not None:
                        self.idempotency.remember_result(uow, request, table, result)
            except BusinessRuleViolation as e:
                logger.warning("%s rejected (%s): %s", operation, e.code, e,
                               extra={"extra": {"operation": operation, "code": e.code, **arguments}})
                if request is not None:
                    with self.store.unit_of_work() as uow:
                        self.idempotency.remember_error(uow, request, e)
                raise
            except PersistenceError as e:
                logger.error("%s failed to persist: %s", operation, e,
                             extra={"extra": {"operation": operation, **arguments}})
                raise
        return result, False

    def _investment_locks(self, investment_id: str, with_loan: bool) -> List[str]:
        # user_id and loan_id never change, so a committed read is enough to pick the locks
        names = [investment_lock(investment_id)]
        investment = self.store.get(TABLE_INVESTMENTS, investment_id)
        if investment is not None:
            names.append(wallet_lock(investment.user_id))
            if with_loan:
                names.append(loan_lock(investment.loan_id))
        return names

    # ========================================================================
    # INVEST
    # ========================================================================

    def invest(
        self,
        user_id: str,
        loan_id: str,
        principal: Decimal,
        idempotency_key: Optional[str] = None,
    ) -> LoanInvestment:
        """
        Commit principal from the user's wallet to a loan.

        Checks run in this order: loan is funding, principal within the loan's
        investment range, wallet balance, remaining funding capacity. The
        wallet debit, funding reservation and new investment commit together.

        Raises:
            LoanNotFound, LoanNotFundable, OutOfRange, InsufficientFunds,
            InsufficientCapacity, InvalidInputError, IdempotencyConflict,
            PersistenceError
        """
        _require_id(user_id, "user_id")
        _require_id(loan_id, "loan_id")
        principal = positive_money(principal, "principal")

        def action(uow: UnitOfWork) -> Outcome:
            loan = self.loans.get(loan_id, uow)
            if loan.status != LoanStatus.FUNDING:
                raise LoanNotFundable(f"Loan {loan_id} is {loan.status.value}, not accepting investments")
            check_investment_range(loan, principal)
            self.wallets.debit(
                user_id, principal, f"Investment in {loan.name}",
                TransactionType.LOAN_INVESTMENT, reference_id=loan_id, uow=uow,
            )
            new_investor = not self.investments.has_position(user_id, loan_id, uow)
            funded = self.loans.reserve_funding(loan_id, principal, new_investor, uow)
            period_payment = compute_period_payment(
                principal, loan.rate_per_year, loan.term_months, loan.payment_frequency,
            )
            investment = self.investments.create(user_id, loan_id, principal, period_payment, uow)
            if self.auto_activate and funded.is_fully_funded:
                self.loans.activate(loan_id, uow)
            return TABLE_INVESTMENTS, investment

        investment, replayed = self._execute(
            "invest",
            {"user_id": user_id, "loan_id": loan_id, "principal": principal},
            [loan_lock(loan_id), wallet_lock(user_id)],
            action,
            idempotency_key,
        )
        if not replayed:
            logger.info("%s invested %s in %s (%s, %s per period)",
                        user_id, investment.principal, loan_id,
                        investment.investment_id, investment.expected_period_payment)
        return investment

    # ========================================================================
    # PAYMENTS
    # ========================================================================

    def simulate_single_payment(self, investment_id: str, idempotency_key: Optional[str] = None) -> Payment:
        """
        Pay one period of interest on an active investment.

        Credits expected_period_payment to the investor's wallet and records
        an interest Payment. Repeatable: each call pays one more period.

        Raises:
            InvestmentNotFound, NotActive, IdempotencyConflict, PersistenceError
        """
        _require_id(investment_id, "investment_id")

        def action(uow: UnitOfWork) -> Outcome:
            investment = self.investments.get(investment_id, uow)
            if not investment.is_active:
                raise NotActive(f"Investment {investment_id} is {investment.status.value}")
            now = self.clock()
            self.wallets.credit(
                investment.user_id, investment.expected_period_payment, "Interest payment",
                TransactionType.INTEREST_PAYMENT, reference_id=investment_id, uow=uow,
            )
            payment = self.investments.record_payment(
                investment_id, PaymentType.INTEREST, investment.expected_period_payment, now, uow,
            )
            return TABLE_PAYMENTS, payment

        payment, replayed = self._execute(
            "simulate_single_payment",
            {"investment_id": investment_id},
            self._investment_locks(investment_id, with_loan=False),
            action,
            idempotency_key,
        )
        if not replayed:
            logger.info("Paid interest %s to %s on %s", payment.amount, payment.user_id, investment_id)
        return payment

    def simulate_all_payments(self, user_id: str, idempotency_key: Optional[str] = None) -> List[SettlementResult]:
        """
        Pay one period of interest on each of the user's active investments.

        Each investment settles in its own unit of work. A failure is reported
        in that investment's SettlementResult and does not stop the others.
        With a batch key, each investment uses the key "<batch key>:<investment_id>".
        """
        _require_id(user_id, "user_id")
        if idempotency_key is not None:
            _require_id(idempotency_key, "idempotency_key")
        active = sorted(
            self.investments.list_active_for_user(user_id),
            key=lambda inv: (inv.created_at, inv.investment_id),
        )
        results = []
        for investment in active:
            investment_id = investment.investment_id
            try:
                payment = self.simulate_single_payment(investment_id, item_key(idempotency_key, investment_id))
            except LedgerError as e:
                logger.warning("Batch payment for %s skipped investment %s: %s", user_id, investment_id, e)
                results.append(SettlementResult(investment_id=investment_id, ok=False, error=e))
            else:
                results.append(SettlementResult(investment_id=investment_id, ok=True, payment=payment))
        summary = summarize_batch(results)
        logger.info("Batch payment for %s: paid %s on %d investment(s), %d failed",
                    user_id, summary.total_amount, summary.payment_count, summary.failure_count)
        return results

    # ========================================================================
    # PAYOFF
    # ========================================================================

    def simulate_payoff(self, investment_id: str, idempotency_key: Optional[str] = None) -> Payment:
        """
        Return an active investment's principal and close it.

        Credits the principal, records a principal Payment and marks the
        investment paid off. If that was the loan's last active investment
        and the loan is active, the loan is marked paid off in the same unit.

        Raises:
            InvestmentNotFound, NotActive, IdempotencyConflict, PersistenceError
        """
        _require_id(investment_id, "investment_id")

        def action(uow: UnitOfWork) -> Outcome:
            investment = self.investments.get(investment_id, uow)
            if not investment.is_active:
                raise NotActive(f"Investment {investment_id} is {investment.status.value}")
            now = self.clock()
            amount = compute_payoff_amount(investment.principal)
            self.wallets.credit(
                investment.user_id, amount, "Principal returned",
                TransactionType.PRINCIPAL_RETURN, reference_id=investment_id, uow=uow,
            )
            payment = self.investments.record_payment(
                investment_id, PaymentType.PRINCIPAL, amount, now, uow,
            )
            self.investments.mark_paid_off(investment_id, uow)

            loan = uow.get(TABLE_LOANS, investment.loan_id)
            if loan is not None and loan.status == LoanStatus.ACTIVE:
                remaining = [inv for inv in self.investments.list_for_loan(loan.loan_id, uow) if inv.is_active]
                if not remaining:
                    self.loans.mark_paid_off(loan.loan_id, uow)
            return TABLE_PAYMENTS, payment

        payment, replayed = self._execute(
            "simulate_payoff",
            {"investment_id": investment_id},
            self._investment_locks(investment_id, with_loan=True),
            action,
            idempotency_key,
        )
        if not replayed:
            logger.info("Paid off %s: returned %s to %s", investment_id, payment.amount, payment.user_id)
        return payment

    # ========================================================================
    # LOAN STATUS
    # ========================================================================

    def activate_loan(self, loan_id: str) -> Loan:
        """Move a fully funded loan from funding to active."""
        _require_id(loan_id, "loan_id")
        try:
            return self.loans.activate(loan_id)
        except BusinessRuleViolation as e:
            logger.warning("activate_loan rejected (%s): %s", e.code, e)
            raise

    # ========================================================================
    # READS
    # ========================================================================

    def get_loan(self, loan_id: str) -> Loan:
        return self.loans.get(loan_id)

    def list_open_loans(self) -> List[Loan]:
        return self.loans.list_open()

    def list_investments_for_user(self, user_id: str) -> List[LoanInvestment]:
        return self.investments.list_for_user(user_id)

    def list_payments_for_investment(self, investment_id: str) -> List[Payment]:
        return self.investments.list_payments(investment_id)

    def get_payment_totals(self, investment_id: str) -> PaymentTotals:
        """Interest and principal received so far on one investment."""
        return calculate_payment_totals(self.investments.list_payments(investment_id))

    def get_wallet_balance(self, user_id: str) -> Decimal:
        return self.wallets.get_balance(user_id)

    def get_portfolio_summary(self, user_id: str) -> PortfolioSummary:
        investments = self.investments.list_for_user(user_id)
        loans = {}
        for loan_id in {inv.loan_id for inv in investments}:
            loan = self.store.get(TABLE_LOANS, loan_id)
            if loan is not None:
                loans[loan_id] = loan
        return calculate_portfolio_summary(investments, loans)
