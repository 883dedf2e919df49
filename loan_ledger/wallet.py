"""
wallet.py - Per-User Cash Wallets and the Append-Only Transaction Log

Every change to a wallet balance is paired with exactly one Transaction row,
written in the same unit of work:

    credit:  balance += amount, insert Transaction(+amount)
    debit:   balance -= amount, insert Transaction(-amount)

so that, for every user, at every commit:

    wallet.balance == sum(t.amount for t in transactions(user))

This layer is idempotency-unaware; request deduplication belongs to the
settlement engine.
"""

from __future__ import annotations
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from .core import (
    TABLE_TRANSACTIONS, TABLE_WALLETS, ZERO,
    InsufficientFunds, Transaction, TransactionType, Wallet,
    money, new_id, positive_money, utc_now,
)
from .logging import get_logger
from .store import RecordStore, UnitOfWork, row_lock

logger = get_logger(__name__)


def wallet_lock(user_id: str) -> str:
    return row_lock("wallet", user_id)


class WalletLedger:
    """Owns wallet balances and their transaction log."""

    def __init__(self, store: RecordStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    # ========================================================================
    # READS
    # ========================================================================

    def get_balance(self, user_id: str, uow: Optional[UnitOfWork] = None) -> Decimal:
        """Current balance; zero for a user who never had a wallet movement."""
        wallet = (uow or self.store).get(TABLE_WALLETS, user_id)
        return wallet.balance if wallet is not None else ZERO

    def list_transactions(self, user_id: str) -> List[Transaction]:
        """Wallet transactions for a user, newest first."""
        rows = self.store.find(TABLE_TRANSACTIONS, user_id=user_id)
        return sorted(rows, key=lambda t: t.created_at, reverse=True)

    def reconcile(self, user_id: str) -> Dict[str, Any]:
        """
        Check that the cached balance equals the sum of the user's transactions.

        Returns:
            Dict with keys 'valid', 'balance', 'transaction_sum', 'difference'
        """
        balance = self.get_balance(user_id)
        transaction_sum = sum(
            (t.amount for t in self.store.find(TABLE_TRANSACTIONS, user_id=user_id)),
            ZERO,
        )
        difference = balance - transaction_sum
        return {
            'valid': difference == ZERO,
            'balance': balance,
            'transaction_sum': transaction_sum,
            'difference': difference,
        }

    # ========================================================================
    # PAIRED WRITES (inside a caller's unit of work)
    # ========================================================================

    def _post(
        self,
        uow: UnitOfWork,
        user_id: str,
        signed_amount: Decimal,
        description: str,
        transaction_type: TransactionType,
        reference_id: Optional[str],
    ) -> Transaction:
        now = self.clock()
        wallet = uow.get(TABLE_WALLETS, user_id)
        if wallet is None:
            uow.insert(TABLE_WALLETS, Wallet(user_id=user_id, balance=signed_amount, updated_at=now))
        else:
            uow.update(TABLE_WALLETS, wallet, replace(
                wallet, balance=money(wallet.balance + signed_amount), updated_at=now,
            ))
        txn = Transaction(
            transaction_id=new_id("txn"),
            user_id=user_id,
            transaction_type=transaction_type,
            amount=signed_amount,
            description=description,
            created_at=now,
            reference_id=reference_id,
        )
        uow.insert(TABLE_TRANSACTIONS, txn)
        return txn

    def credit(
        self,
        user_id: str,
        amount: Decimal,
        description: str,
        transaction_type: TransactionType = TransactionType.DEPOSIT,
        reference_id: Optional[str] = None,
        uow: Optional[UnitOfWork] = None,
    ) -> Transaction:
        """
        Add amount to the wallet and append a positive Transaction.

        Raises:
            InvalidInputError: If amount is not > 0
        """
        amount = positive_money(amount)
        with self.store.locks.hold(wallet_lock(user_id)):
            with self.store.unit_of_work(uow) as unit:
                return self._post(unit, user_id, amount, description, transaction_type, reference_id)

    def debit(
        self,
        user_id: str,
        amount: Decimal,
        description: str,
        transaction_type: TransactionType = TransactionType.WITHDRAWAL,
        reference_id: Optional[str] = None,
        uow: Optional[UnitOfWork] = None,
    ) -> Transaction:
        """
        Remove amount from the wallet and append a negative Transaction.

        Raises:
            InvalidInputError: If amount is not > 0
            InsufficientFunds: If the balance is below amount
        """
        amount = positive_money(amount)
        with self.store.locks.hold(wallet_lock(user_id)):
            with self.store.unit_of_work(uow) as unit:
                balance = self.get_balance(user_id, unit)
                if balance < amount:
                    raise InsufficientFunds(
                        f"Wallet {user_id}: balance {balance} < {amount}"
                    )
                return self._post(unit, user_id, -amount, description, transaction_type, reference_id)

    # ========================================================================
    # STANDALONE OPERATIONS
    # ========================================================================

    def deposit(self, user_id: str, amount: Decimal, description: str = "deposit") -> Transaction:
        """Fund a wallet from outside the ledger (e.g. a linked bank account)."""
        txn = self.credit(user_id, amount, description, TransactionType.DEPOSIT)
        logger.info("Deposit %s to %s", txn.amount, user_id)
        return txn

    def withdraw(self, user_id: str, amount: Decimal, description: str = "withdrawal") -> Transaction:
        """Move cash out of a wallet. Rejects with InsufficientFunds like any debit."""
        txn = self.debit(user_id, amount, description, TransactionType.WITHDRAWAL)
        logger.info("Withdrawal %s from %s", -txn.amount, user_id)
        return txn
