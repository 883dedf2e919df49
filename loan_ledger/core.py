"""
Core types and pure helpers for the debt investment ledger.

This module provides the foundational data structures shared by every component:
1. Decimal configuration and money rounding
2. Status enums for loans, investments, payments and wallet transactions
3. Exceptions: LedgerError and the typed business-rule rejections
4. Immutable records: Loan, LoanInvestment, Payment, Transaction, Wallet
5. Canonicalization used to fingerprint requests for idempotency

Records are frozen. A change to a row is expressed as a new record built with
dataclasses.replace() and written through a unit of work (see store.py).
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_EVEN, getcontext
from enum import Enum
import hashlib
import uuid
from typing import Any, Optional


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# Money arithmetic must be deterministic. The global context is configured
# once at import time: prec=50 for intermediate results, banker's rounding.
#
_LEDGER_DECIMAL_CONTEXT = getcontext()
_LEDGER_DECIMAL_CONTEXT.prec = 50
_LEDGER_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

CURRENCY_PLACES = 2
CENT = Decimal(10) ** -CURRENCY_PLACES
ZERO = Decimal("0")

# Table names in the record store.
TABLE_LOANS = "loans"
TABLE_INVESTMENTS = "investments"
TABLE_PAYMENTS = "payments"
TABLE_TRANSACTIONS = "transactions"
TABLE_WALLETS = "wallets"
TABLE_IDEMPOTENCY = "idempotency_keys"

# Rows in these tables are never updated or deleted.
APPEND_ONLY_TABLES = frozenset({TABLE_PAYMENTS, TABLE_TRANSACTIONS})


# ============================================================================
# ENUMS
# ============================================================================

class LoanStatus(str, Enum):
    FUNDING = "funding"
    ACTIVE = "active"
    PAID_OFF = "paid_off"


class InvestmentStatus(str, Enum):
    ACTIVE = "active"
    PAID_OFF = "paid_off"


class PaymentType(str, Enum):
    INTEREST = "interest"
    PRINCIPAL = "principal"


class PaymentFrequency(str, Enum):
    """How often an interest payment period comes around."""
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    SEMI_ANNUAL = "semi_annual"
    ANNUAL = "annual"

    @property
    def months(self) -> int:
        return _FREQUENCY_MONTHS[self]


_FREQUENCY_MONTHS = {
    PaymentFrequency.MONTHLY: 1,
    PaymentFrequency.QUARTERLY: 3,
    PaymentFrequency.SEMI_ANNUAL: 6,
    PaymentFrequency.ANNUAL: 12,
}


class TransactionType(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    LOAN_INVESTMENT = "loan_investment"
    INTEREST_PAYMENT = "interest_payment"
    PRINCIPAL_RETURN = "principal_return"


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LedgerError(Exception):
    """Base exception for all ledger-related errors."""
    code = "ledger_error"


class InvalidInputError(LedgerError):
    """Raised for malformed arguments. Fatal to the call, never retried."""
    code = "invalid_input"


class IdempotencyConflict(InvalidInputError):
    """Raised when an idempotency key is replayed with different arguments."""
    code = "idempotency_conflict"


class ConfigurationError(InvalidInputError):
    """Raised when configuration is invalid."""
    code = "configuration_error"


class BusinessRuleViolation(LedgerError):
    """Base class for expected rejections returned to the caller as typed results."""
    code = "business_rule_violation"


class NotFound(BusinessRuleViolation):
    code = "not_found"


class LoanNotFound(NotFound):
    code = "loan_not_found"


class InvestmentNotFound(NotFound):
    code = "investment_not_found"


class InsufficientFunds(BusinessRuleViolation):
    """Raised when a debit would take a wallet balance below zero."""
    code = "insufficient_balance"


class InsufficientCapacity(BusinessRuleViolation):
    """Raised when a funding reservation would exceed the loan's target amount."""
    code = "exceeds_funding_capacity"


class OutOfRange(BusinessRuleViolation):
    """Raised when a principal is outside the loan's [min, max] investment bounds."""
    code = "investment_out_of_range"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        if code:
            self.code = code


class LoanNotFundable(BusinessRuleViolation):
    """Raised when investing in a loan that is no longer in the funding phase."""
    code = "loan_not_accepting_investments"


class NotActive(BusinessRuleViolation):
    """Raised when settling an investment that is not active."""
    code = "investment_not_active"


class InvalidTransition(BusinessRuleViolation):
    """Raised when a status change is not allowed by the state machine."""
    code = "invalid_transition"


class PersistenceError(LedgerError):
    """Raised when the record store is unavailable or rejects a write. Retryable."""
    code = "persistence_error"


class StaleRecordError(PersistenceError):
    """Raised at commit when a row changed since the unit of work read it."""
    code = "stale_record"


# ============================================================================
# HELPERS
# ============================================================================

def to_decimal(value: Any, name: str = "value") -> Decimal:
    """
    Convert a number to Decimal without going through binary floating point.

    Raises:
        InvalidInputError: If the value is not a finite number.
    """
    if isinstance(value, bool):
        raise InvalidInputError(f"{name} must be a number, got {value!r}")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except (InvalidOperation, ValueError, TypeError):
            raise InvalidInputError(f"{name} must be a number, got {value!r}") from None
    if result.is_nan() or result.is_infinite():
        raise InvalidInputError(f"{name} must be finite, got {value!r}")
    return result


def money(value: Any, name: str = "amount") -> Decimal:
    """Round a value to currency precision (2 places, ROUND_HALF_EVEN)."""
    return to_decimal(value, name).quantize(CENT, rounding=ROUND_HALF_EVEN)


def positive_money(value: Any, name: str = "amount") -> Decimal:
    """Round to currency precision and require a strictly positive result."""
    amount = money(value, name)
    if amount <= ZERO:
        raise InvalidInputError(f"{name} must be > 0, got {value!r}")
    return amount


def new_id(prefix: str) -> str:
    """Generate a row identifier like 'loan_3f2a9c...'."""
    return f"{prefix}_{uuid.uuid4().hex}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_decimal_fields(record: Any, *names: str) -> None:
    """Convert float/int/str fields of a frozen record to Decimal in place."""
    for name in names:
        value = getattr(record, name)
        if value is not None and not isinstance(value, Decimal):
            object.__setattr__(record, name, to_decimal(value, name))


# ============================================================================
# RECORDS
# ============================================================================

@dataclass(frozen=True, slots=True)
class Loan:
    """
    A fixed-income offering investors commit principal to.

    Attributes:
        loan_id: Row identifier.
        name: Display name of the offering.
        target_amount: Funding cap.
        funded_amount: Principal committed so far (never above target_amount).
        rate_per_year: Annual interest rate in percent (12 means 12%).
        term_months: Length of the loan.
        min_investment: Smallest principal a single investment may commit.
        max_investment: Largest principal; None means the target amount.
        payment_frequency: How often interest is paid.
        status: funding -> active -> paid_off.
        investor_count: Number of distinct investors.
    """
    loan_id: str
    name: str
    target_amount: Decimal
    rate_per_year: Decimal
    term_months: int
    min_investment: Decimal
    max_investment: Optional[Decimal] = None
    funded_amount: Decimal = ZERO
    payment_frequency: PaymentFrequency = PaymentFrequency.MONTHLY
    status: LoanStatus = LoanStatus.FUNDING
    investor_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        _coerce_decimal_fields(
            self, 'target_amount', 'rate_per_year', 'min_investment',
            'max_investment', 'funded_amount',
        )
        if not isinstance(self.status, LoanStatus):
            object.__setattr__(self, 'status', LoanStatus(self.status))
        if not isinstance(self.payment_frequency, PaymentFrequency):
            object.__setattr__(self, 'payment_frequency', PaymentFrequency(self.payment_frequency))

    @property
    def remaining_capacity(self) -> Decimal:
        return self.target_amount - self.funded_amount

    @property
    def is_fully_funded(self) -> bool:
        return self.funded_amount >= self.target_amount

    @property
    def effective_max_investment(self) -> Decimal:
        if self.max_investment is None:
            return self.target_amount
        return self.max_investment


@dataclass(frozen=True, slots=True)
class LoanInvestment:
    """One user's principal commitment against one loan."""
    investment_id: str
    user_id: str
    loan_id: str
    principal: Decimal
    expected_period_payment: Decimal
    payment_frequency: PaymentFrequency = PaymentFrequency.MONTHLY
    status: InvestmentStatus = InvestmentStatus.ACTIVE
    total_interest_earned: Decimal = ZERO
    total_principal_returned: Decimal = ZERO
    next_payment_date: Optional[date] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        _coerce_decimal_fields(
            self, 'principal', 'expected_period_payment',
            'total_interest_earned', 'total_principal_returned',
        )
        if not isinstance(self.status, InvestmentStatus):
            object.__setattr__(self, 'status', InvestmentStatus(self.status))
        if not isinstance(self.payment_frequency, PaymentFrequency):
            object.__setattr__(self, 'payment_frequency', PaymentFrequency(self.payment_frequency))

    @property
    def is_active(self) -> bool:
        return self.status == InvestmentStatus.ACTIVE


@dataclass(frozen=True, slots=True)
class Payment:
    """An immutable disbursement against one investment."""
    payment_id: str
    investment_id: str
    loan_id: str
    user_id: str
    payment_type: PaymentType
    amount: Decimal
    payment_date: datetime
    status: str = "completed"

    def __post_init__(self):
        _coerce_decimal_fields(self, 'amount')
        if not isinstance(self.payment_type, PaymentType):
            object.__setattr__(self, 'payment_type', PaymentType(self.payment_type))


@dataclass(frozen=True, slots=True)
class Transaction:
    """
    An immutable wallet ledger entry.

    amount is signed: positive values credit the wallet, negative values debit it.
    """
    transaction_id: str
    user_id: str
    transaction_type: TransactionType
    amount: Decimal
    description: str
    created_at: datetime
    reference_id: Optional[str] = None

    def __post_init__(self):
        _coerce_decimal_fields(self, 'amount')
        if not isinstance(self.transaction_type, TransactionType):
            object.__setattr__(self, 'transaction_type', TransactionType(self.transaction_type))


@dataclass(frozen=True, slots=True)
class Wallet:
    """Cached balance for a user, always written together with a Transaction."""
    user_id: str
    balance: Decimal = ZERO
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        _coerce_decimal_fields(self, 'balance')


@dataclass(frozen=True, slots=True)
class IdempotencyRecord:
    """The stored outcome of a request made with a client idempotency key."""
    key: str
    operation: str
    fingerprint: str
    created_at: datetime
    outcome: str
    result_table: Optional[str] = None
    result_body: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


@dataclass(frozen=True, slots=True)
class SettlementResult:
    """Per-investment outcome of a batch settlement."""
    investment_id: str
    ok: bool
    payment: Optional[Payment] = None
    error: Optional[LedgerError] = field(default=None, compare=False)

    @property
    def error_code(self) -> Optional[str]:
        return self.error.code if self.error is not None else None


# Row key attribute for each table.
TABLE_KEYS = {
    TABLE_LOANS: 'loan_id',
    TABLE_INVESTMENTS: 'investment_id',
    TABLE_PAYMENTS: 'payment_id',
    TABLE_TRANSACTIONS: 'transaction_id',
    TABLE_WALLETS: 'user_id',
    TABLE_IDEMPOTENCY: 'key',
}

TABLE_RECORDS = {
    TABLE_LOANS: Loan,
    TABLE_INVESTMENTS: LoanInvestment,
    TABLE_PAYMENTS: Payment,
    TABLE_TRANSACTIONS: Transaction,
    TABLE_WALLETS: Wallet,
    TABLE_IDEMPOTENCY: IdempotencyRecord,
}


def record_key(table: str, record: Any) -> str:
    """Return the primary key of a record for the given table."""
    try:
        return getattr(record, TABLE_KEYS[table])
    except KeyError:
        raise PersistenceError(f"Unknown table {table}") from None


# ============================================================================
# CANONICALIZATION
# ============================================================================

def _normalize_decimal(d: Decimal) -> str:
    """
    Normalize a Decimal to a canonical string representation.

    Decimal("1.0") and Decimal("1.00") both become "1".
    """
    normalized = d.normalize()
    if normalized == normalized.to_integral_value():
        return str(int(normalized))
    return format(normalized, 'f')


def _canonicalize(value: Any) -> str:
    """
    Produce a canonical string representation of a value for hashing.

    Output is independent of dict insertion order and Decimal representation.
    """
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        return f"E:{value.value}"
    if isinstance(value, Decimal):
        return f"D:{_normalize_decimal(value)}"
    if isinstance(value, (int, float)):
        return f"D:{_normalize_decimal(to_decimal(value))}"
    if isinstance(value, str):
        return f"S:{value}"
    if isinstance(value, (datetime, date)):
        return f"T:{value.isoformat()}"
    if isinstance(value, dict):
        items = sorted(value.items(), key=lambda kv: str(kv[0]))
        serialized = ",".join(f"{_canonicalize(k)}:{_canonicalize(v)}" for k, v in items)
        return f"{{{serialized}}}"
    if isinstance(value, (list, tuple)):
        serialized = ",".join(_canonicalize(item) for item in value)
        return f"[{serialized}]"
    return f"R:{repr(value)}"


def request_fingerprint(operation: str, arguments: dict) -> str:
    """
    Deterministic content hash of a request.

    Semantically equal requests (e.g. principal 1000 vs Decimal("1000.00"))
    produce the same fingerprint.
    """
    content = f"op:{operation}|{_canonicalize(arguments)}"
    return hashlib.sha256(content.encode()).hexdigest()[:16]
