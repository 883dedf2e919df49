"""
loan_ledger - Debt Investment Ledger and Settlement Engine

Tracks loan offerings, investor commitments against a funding target,
interest disbursement and principal payoff, keeping every cash movement
paired with a wallet transaction.

Usage:
    from decimal import Decimal
    from loan_ledger import InMemoryRecordStore, Loan, SettlementEngine

    engine = SettlementEngine(InMemoryRecordStore())
    engine.loans.register(Loan(
        loan_id="loan_1", name="Bridge loan",
        target_amount=Decimal("50000"), rate_per_year=Decimal("12"),
        term_months=12, min_investment=Decimal("100"),
    ))
    engine.wallets.deposit("alice", Decimal("5000"))

    investment = engine.invest("alice", "loan_1", Decimal("1000"))
    engine.simulate_single_payment(investment.investment_id)   # +10.00 interest
    engine.simulate_payoff(investment.investment_id)           # +1000.00 principal
"""

# Core types
from .core import (
    Loan,
    LoanInvestment,
    Payment,
    Transaction,
    Wallet,
    IdempotencyRecord,
    SettlementResult,
    LoanStatus,
    InvestmentStatus,
    PaymentType,
    PaymentFrequency,
    TransactionType,
    LedgerError,
    InvalidInputError,
    IdempotencyConflict,
    ConfigurationError,
    BusinessRuleViolation,
    NotFound,
    LoanNotFound,
    InvestmentNotFound,
    InsufficientFunds,
    InsufficientCapacity,
    OutOfRange,
    LoanNotFundable,
    NotActive,
    InvalidTransition,
    PersistenceError,
    StaleRecordError,
    money,
    to_decimal,
    request_fingerprint,
    TABLE_LOANS,
    TABLE_INVESTMENTS,
    TABLE_PAYMENTS,
    TABLE_TRANSACTIONS,
    TABLE_WALLETS,
    TABLE_IDEMPOTENCY,
)

# Accrual
from .accrual import (
    PeriodSplit,
    compute_period_payment,
    compute_payoff_amount,
    calculate_period_split,
    total_periods,
    projected_total_interest,
    advance_payment_date,
    first_payment_date,
)

# Persistence
from .store import (
    RecordStore,
    UnitOfWork,
    KeyedLocks,
    InMemoryRecordStore,
)
from .sqlite_store import SqliteRecordStore

# Components
from .wallet import WalletLedger
from .loans import LoanRegistry
from .investments import InvestmentBook
from .idempotency import IdempotencyCache
from .settlement import SettlementEngine

# Read-side aggregates
from .portfolio import (
    PortfolioSummary,
    PaymentTotals,
    BatchSummary,
    calculate_portfolio_summary,
    calculate_payment_totals,
    summarize_batch,
)

# Ambient
from .config import LedgerConfig, StoreConfig, SettlementConfig
from .logging import setup_logging, get_logger


__all__ = [
    # Records
    'Loan', 'LoanInvestment', 'Payment', 'Transaction', 'Wallet',
    'IdempotencyRecord', 'SettlementResult',
    # Enums
    'LoanStatus', 'InvestmentStatus', 'PaymentType', 'PaymentFrequency', 'TransactionType',
    # Errors
    'LedgerError', 'InvalidInputError', 'IdempotencyConflict', 'ConfigurationError',
    'BusinessRuleViolation', 'NotFound', 'LoanNotFound', 'InvestmentNotFound',
    'InsufficientFunds', 'InsufficientCapacity', 'OutOfRange', 'LoanNotFundable',
    'NotActive', 'InvalidTransition', 'PersistenceError', 'StaleRecordError',
    # Helpers
    'money', 'to_decimal', 'request_fingerprint',
    'TABLE_LOANS', 'TABLE_INVESTMENTS', 'TABLE_PAYMENTS', 'TABLE_TRANSACTIONS',
    'TABLE_WALLETS', 'TABLE_IDEMPOTENCY',
    # Accrual
    'PeriodSplit', 'compute_period_payment', 'compute_payoff_amount',
    'calculate_period_split', 'total_periods', 'projected_total_interest',
    'advance_payment_date', 'first_payment_date',
    # Persistence
    'RecordStore', 'UnitOfWork', 'KeyedLocks', 'InMemoryRecordStore', 'SqliteRecordStore',
    # Components
    'WalletLedger', 'LoanRegistry', 'InvestmentBook', 'IdempotencyCache', 'SettlementEngine',
    # Aggregates
    'PortfolioSummary', 'PaymentTotals', 'BatchSummary',
    'calculate_portfolio_summary', 'calculate_payment_totals', 'summarize_batch',
    # Ambient
    'LedgerConfig', 'StoreConfig', 'SettlementConfig', 'setup_logging', 'get_logger',
]

__version__ = '1.0.0'
