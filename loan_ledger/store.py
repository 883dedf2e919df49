"""
store.py - Record Store Contract, Unit of Work and Row Locks

The engine keeps no shared mutable state of its own. Every row lives in a
record store and every change goes through a UnitOfWork:

    with store.unit_of_work() as uow:
        loan = uow.get(TABLE_LOANS, loan_id)
        uow.update(TABLE_LOANS, loan, replace(loan, funded_amount=...))
        uow.insert(TABLE_TRANSACTIONS, txn)
    # committed here, atomically; an exception inside the block discards everything

Properties of a unit of work:
    - Writes are staged privately. Other threads never see them before commit.
    - Reads inside the unit see its own staged writes.
    - Every update and delete carries the record it replaces. Commit is a
      compare-and-swap: if any row changed since it was read, nothing is
      applied and StaleRecordError is raised.
    - Rows in append-only tables (payments, transactions) can only be inserted.

Row locks (KeyedLocks) serialize operations on the same loan, investment or
wallet. Callers take every lock they need up front, in one hold() call, which
acquires them in sorted order.
"""

from __future__ import annotations
from contextlib import contextmanager
import threading
from typing import Any, Dict, Iterator, List, Optional, Protocol, Tuple, runtime_checkable

from .core import (
    APPEND_ONLY_TABLES, TABLE_KEYS,
    PersistenceError, StaleRecordError,
    record_key,
)
from .logging import get_logger

logger = get_logger(__name__)

RowKey = Tuple[str, str]


def row_lock(kind: str, key: str) -> str:
    """Name of the lock guarding one row, e.g. row_lock("loan", "loan_1") -> "loan:loan_1"."""
    return f"{kind}:{key}"


def matches(record: Any, criteria: Dict[str, Any]) -> bool:
    """True if every criteria field equals the record's attribute."""
    return all(getattr(record, name) == value for name, value in criteria.items())


# ============================================================================
# ROW LOCKS
# ============================================================================

class KeyedLocks:
    """
    Re-entrant locks addressed by name.

    hold() acquires a set of names in sorted order, so two operations needing
    overlapping rows can never deadlock on each other. Locks are re-entrant:
    a component may re-acquire a lock its caller already holds.

    A lock exists only while some thread holds or waits for it. Each name
    carries a count of its holders and waiters; the entry is dropped when the
    count returns to zero.
    """

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._users: Dict[str, int] = {}
        self._guard = threading.Lock()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, name: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = threading.RLock()
                self._locks[name] = lock
            self._users[name] = self._users.get(name, 0) + 1
            return lock

    def _checkin(self, name: str) -> None:
        with self._guard:
            remaining = self._users[name] - 1
            if remaining:
                self._users[name] = remaining
            else:
                del self._users[name]
                del self._locks[name]

    @contextmanager
    def hold(self, *names: str) -> Iterator[None]:
        ordered = sorted({name for name in names if name})
        checked_out: List[str] = []
        acquired: List[threading.RLock] = []
        try:
            for name in ordered:
                lock = self._checkout(name)
                checked_out.append(name)
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for name in reversed(checked_out):
                self._checkin(name)


# ============================================================================
# PROTOCOL
# ============================================================================

@runtime_checkable
class RecordStore(Protocol):
    """
    Persistence collaborator used by every component.

    get/find read committed rows. unit_of_work() opens an atomic write scope;
    passing an already-open unit joins it instead of opening a new one.
    """

    locks: KeyedLocks

    def get(self, table: str, key: str) -> Optional[Any]:
        ...

    def find(self, table: str, **criteria: Any) -> List[Any]:
        ...

    def unit_of_work(self, parent: Optional['UnitOfWork'] = None):
        ...


# ============================================================================
# UNIT OF WORK
# ============================================================================

class UnitOfWork:
    """A staged set of inserts, updates and deletes committed together."""

    def __init__(self, store: 'BaseRecordStore'):
        self._store = store
        self.inserts: Dict[RowKey, Any] = {}
        self.updates: Dict[RowKey, Tuple[Any, Any]] = {}
        self.deletes: Dict[RowKey, Any] = {}

    def __repr__(self) -> str:
        return (f"UnitOfWork({len(self.inserts)} inserts, {len(self.updates)} updates, "
                f"{len(self.deletes)} deletes)")

    def is_empty(self) -> bool:
        return not self.inserts and not self.updates and not self.deletes

    # ------------------------------------------------------------------ reads

    def get(self, table: str, key: str) -> Optional[Any]:
        row = (table, key)
        if row in self.deletes:
            return None
        if row in self.inserts:
            return self.inserts[row]
        if row in self.updates:
            return self.updates[row][1]
        return self._store.get(table, key)

    def find(self, table: str, **criteria: Any) -> List[Any]:
        """Committed rows matching criteria, as seen through this unit's staged writes."""
        found: List[Any] = []
        for committed in self._store.find(table, **criteria):
            row = (table, record_key(table, committed))
            if row not in self.updates and row not in self.deletes:
                found.append(committed)
        for (t, _), (_, new) in self.updates.items():
            if t == table and matches(new, criteria):
                found.append(new)
        for (t, _), record in self.inserts.items():
            if t == table and matches(record, criteria):
                found.append(record)
        return found

    # ----------------------------------------------------------------- writes

    def insert(self, table: str, record: Any) -> Any:
        key = record_key(table, record)
        if self.get(table, key) is not None:
            raise PersistenceError(f"{table} row {key} already exists")
        row = (table, key)
        if row in self.deletes:
            # re-inserting a row deleted in this unit replaces it
            self.updates[row] = (self.deletes.pop(row), record)
            return record
        self.inserts[row] = record
        return record

    def update(self, table: str, old: Any, new: Any) -> Any:
        """Stage new in place of old. old must be the row as currently seen."""
        if table in APPEND_ONLY_TABLES:
            raise PersistenceError(f"{table} is append-only")
        key = record_key(table, old)
        if record_key(table, new) != key:
            raise PersistenceError(f"Cannot change the key of {table} row {key}")
        current = self.get(table, key)
        if current != old:
            raise StaleRecordError(f"{table} row {key} changed since it was read")
        row = (table, key)
        if row in self.inserts:
            self.inserts[row] = new
        elif row in self.updates:
            self.updates[row] = (self.updates[row][0], new)
        else:
            self.updates[row] = (old, new)
        return new

    def delete(self, table: str, record: Any) -> None:
        if table in APPEND_ONLY_TABLES:
            raise PersistenceError(f"{table} is append-only")
        key = record_key(table, record)
        row = (table, key)
        if self.get(table, key) != record:
            raise StaleRecordError(f"{table} row {key} changed since it was read")
        if row in self.inserts:
            del self.inserts[row]
            return
        expected = self.updates.pop(row)[0] if row in self.updates else record
        self.deletes[row] = expected


# ============================================================================
# STORES
# ============================================================================

class BaseRecordStore:
    """Shared unit-of-work handling. Subclasses implement get, find and _commit."""

    def __init__(self):
        self.locks = KeyedLocks()

    def get(self, table: str, key: str) -> Optional[Any]:
        raise NotImplementedError

    def find(self, table: str, **criteria: Any) -> List[Any]:
        raise NotImplementedError

    def _commit(self, uow: UnitOfWork) -> None:
        raise NotImplementedError

    @contextmanager
    def unit_of_work(self, parent: Optional[UnitOfWork] = None) -> Iterator[UnitOfWork]:
        if parent is not None:
            yield parent
            return
        uow = UnitOfWork(self)
        yield uow
        if not uow.is_empty():
            self._commit(uow)

    @staticmethod
    def _check_table(table: str) -> None:
        if table not in TABLE_KEYS:
            raise PersistenceError(f"Unknown table {table}")


class InMemoryRecordStore(BaseRecordStore):
    """
    Process-local record store.

    Tables are dicts keyed by primary key (insertion ordered). A single mutex
    makes each commit atomic with respect to readers and other commits.
    """

    def __init__(self):
        super().__init__()
        self._tables: Dict[str, Dict[str, Any]] = {table: {} for table in TABLE_KEYS}
        self._mutex = threading.Lock()

    def get(self, table: str, key: str) -> Optional[Any]:
        self._check_table(table)
        with self._mutex:
            return self._tables[table].get(key)

    def find(self, table: str, **criteria: Any) -> List[Any]:
        self._check_table(table)
        with self._mutex:
            rows = list(self._tables[table].values())
        return [row for row in rows if matches(row, criteria)]

    def count(self, table: str) -> int:
        self._check_table(table)
        with self._mutex:
            return len(self._tables[table])

    def _commit(self, uow: UnitOfWork) -> None:
        with self._mutex:
            # Validate everything before touching anything
            for (table, key) in uow.inserts:
                if key in self._tables[table]:
                    raise PersistenceError(f"{table} row {key} already exists")
            for (table, key), (expected, _) in uow.updates.items():
                if self._tables[table].get(key) != expected:
                    raise StaleRecordError(f"{table} row {key} changed since it was read")
            for (table, key), expected in uow.deletes.items():
                if self._tables[table].get(key) != expected:
                    raise StaleRecordError(f"{table} row {key} changed since it was read")

            for (table, key), record in uow.inserts.items():
                self._tables[table][key] = record
            for (table, key), (_, new) in uow.updates.items():
                self._tables[table][key] = new
            for (table, key) in uow.deletes:
                del self._tables[table][key]
        logger.debug("Committed %r", uow)
