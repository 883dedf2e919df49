"""
test_sqlite_store.py - Unit tests for the SQLite record store

Tests:
- Durability across store instances
- Record round trip through the JSON codec
- Rollback of a failed commit, including a failed COMMIT
- Configuration and error wrapping
"""

import sqlite3
import threading
import pytest
from dataclasses import replace
from datetime import date, datetime, timezone
from decimal import Decimal

from loan_ledger import (
    SqliteRecordStore, ConfigurationError, PersistenceError, StaleRecordError,
    LoanInvestment, PaymentFrequency, InvestmentStatus,
    TABLE_INVESTMENTS, TABLE_LOANS, TABLE_WALLETS,
)
from loan_ledger.codec import dumps, loads, to_dict
from loan_ledger.core import Wallet

from tests.helpers import make_loan


def _investment():
    return LoanInvestment(
        investment_id="inv_1", user_id="alice", loan_id="loan_1",
        principal=Decimal("1000.00"), expected_period_payment=Decimal("10.00"),
        payment_frequency=PaymentFrequency.QUARTERLY,
        next_payment_date=date(2025, 4, 15),
        created_at=datetime(2025, 1, 15, 9, 0, tzinfo=timezone.utc),
    )


class TestSqliteStore:

    def test_rejects_memory_database(self):
        with pytest.raises(ConfigurationError):
            SqliteRecordStore(":memory:")

    def test_rows_survive_reopen(self, tmp_path):
        path = str(tmp_path / "ledger.db")
        first = SqliteRecordStore(path)
        with first.unit_of_work() as uow:
            uow.insert(TABLE_LOANS, make_loan())
            uow.insert(TABLE_INVESTMENTS, _investment())
        first.close()

        second = SqliteRecordStore(path)
        assert second.get(TABLE_LOANS, "loan_1") == make_loan()
        restored = second.get(TABLE_INVESTMENTS, "inv_1")
        assert restored == _investment()
        assert restored.payment_frequency is PaymentFrequency.QUARTERLY
        assert restored.status is InvestmentStatus.ACTIVE
        assert restored.next_payment_date == date(2025, 4, 15)
        second.close()

    def test_find_uses_indexed_columns(self, sqlite_store):
        with sqlite_store.unit_of_work() as uow:
            uow.insert(TABLE_INVESTMENTS, _investment())
            uow.insert(TABLE_INVESTMENTS, replace(_investment(), investment_id="inv_2", user_id="bob"))
        assert [i.investment_id for i in sqlite_store.find(TABLE_INVESTMENTS, user_id="bob")] == ["inv_2"]
        assert len(sqlite_store.find(TABLE_INVESTMENTS, loan_id="loan_1")) == 2
        assert sqlite_store.find(TABLE_INVESTMENTS, status=InvestmentStatus.PAID_OFF) == []

    def test_stale_commit_rolls_back_every_write(self, sqlite_store):
        with sqlite_store.unit_of_work() as uow:
            uow.insert(TABLE_LOANS, make_loan())
        loan = sqlite_store.get(TABLE_LOANS, "loan_1")

        with pytest.raises(StaleRecordError):
            with sqlite_store.unit_of_work() as uow:
                uow.insert(TABLE_WALLETS, Wallet("alice", Decimal("5")))
                uow.update(TABLE_LOANS, loan, replace(loan, funded_amount=Decimal("100")))
                with sqlite_store.unit_of_work() as other:
                    other.update(TABLE_LOANS, loan, replace(loan, name="renamed"))

        assert sqlite_store.get(TABLE_WALLETS, "alice") is None
        assert sqlite_store.get(TABLE_LOANS, "loan_1").name == "renamed"

    def test_each_thread_gets_its_own_connection(self, sqlite_store):
        with sqlite_store.unit_of_work() as uow:
            uow.insert(TABLE_LOANS, make_loan())
        seen = []

        def reader():
            seen.append(sqlite_store.get(TABLE_LOANS, "loan_1"))
            sqlite_store.close()

        t = threading.Thread(target=reader)
        t.start()
        t.join(5)
        assert seen == [make_loan()]

    def test_sqlite_errors_are_wrapped(self, sqlite_store, monkeypatch):
        monkeypatch.setattr(sqlite_store, "_get_connection", lambda: _BrokenConnection())
        with pytest.raises(PersistenceError) as exc_info:
            sqlite_store.get(TABLE_LOANS, "loan_1")
        assert isinstance(exc_info.value.__cause__, sqlite3.Error)

    def test_failed_commit_leaves_connection_usable(self, sqlite_store, monkeypatch):
        conn = sqlite_store._get_connection()
        flaky = _CommitFailsOnce(conn)
        monkeypatch.setattr(sqlite_store, "_get_connection", lambda: flaky)

        with pytest.raises(PersistenceError):
            with sqlite_store.unit_of_work() as uow:
                uow.insert(TABLE_LOANS, make_loan())
        assert not conn.in_transaction
        assert sqlite_store.get(TABLE_LOANS, "loan_1") is None

        with sqlite_store.unit_of_work() as uow:
            uow.insert(TABLE_LOANS, make_loan())
        assert sqlite_store.get(TABLE_LOANS, "loan_1") == make_loan()

    def test_rollback_failure_keeps_original_error(self, sqlite_store, monkeypatch):
        flaky = _CommitFailsOnce(sqlite_store._get_connection(), rollback_fails=True)
        monkeypatch.setattr(sqlite_store, "_get_connection", lambda: flaky)

        with pytest.raises(PersistenceError) as exc_info:
            with sqlite_store.unit_of_work() as uow:
                uow.insert(TABLE_LOANS, make_loan())
        assert "disk I/O error on commit" in str(exc_info.value)


class _BrokenConnection:
    def execute(self, *args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")


class _CommitFailsOnce:
    """Delegates to a real connection but fails the first COMMIT (and optionally ROLLBACK)."""

    def __init__(self, conn, rollback_fails=False):
        self._conn = conn
        self._rollback_fails = rollback_fails
        self._failed = False

    def execute(self, sql, *args):
        if sql == "COMMIT" and not self._failed:
            self._failed = True
            raise sqlite3.OperationalError("disk I/O error on commit")
        if sql == "ROLLBACK" and self._rollback_fails:
            self._conn.execute(sql, *args)
            raise sqlite3.OperationalError("rollback failed")
        return self._conn.execute(sql, *args)

    def __getattr__(self, name):
        return getattr(self._conn, name)


class TestCodec:

    def test_to_dict_is_json_safe(self):
        data = to_dict(_investment())
        assert data["principal"] == "1000.00"
        assert data["payment_frequency"] == "quarterly"
        assert data["next_payment_date"] == "2025-04-15"
        assert data["created_at"].startswith("2025-01-15T09:00:00")

    def test_round_trip_keeps_optional_none(self):
        loan = make_loan()
        restored = loads(type(loan), dumps(loan))
        assert restored == loan
        assert restored.max_investment is None

    def test_non_record_rejected(self):
        with pytest.raises(PersistenceError):
            to_dict({"not": "a record"})
