"""
sqlite_store.py - Durable Record Store on SQLite

Same contract as InMemoryRecordStore. Each table holds one JSON body per row
plus indexed user_id / loan_id / investment_id columns for the lookups the
components make. A unit of work commits inside one BEGIN IMMEDIATE
transaction, so a crash can never leave a wallet balance without its paired
transaction row.

Each thread gets its own connection. SQLite serializes writers; a writer
waits up to `timeout` seconds for the database lock.
"""

from __future__ import annotations
import sqlite3
import threading
from typing import Any, List, Optional

from .codec import dumps, loads
from .core import (
    TABLE_KEYS, TABLE_RECORDS,
    ConfigurationError, PersistenceError, StaleRecordError,
)
from .logging import get_logger
from .store import BaseRecordStore, UnitOfWork, matches

logger = get_logger(__name__)

INDEXED_COLUMNS = ("user_id", "loan_id", "investment_id")


class SqliteRecordStore(BaseRecordStore):
    """Record store backed by a SQLite database file."""

    def __init__(self, db_path: str, timeout: float = 5.0):
        super().__init__()
        if not db_path or str(db_path) == ":memory:":
            raise ConfigurationError(
                "SqliteRecordStore needs a database file; use InMemoryRecordStore for a process-local store"
            )
        self.db_path = str(db_path)
        self.timeout = timeout
        self._local = threading.local()
        self._init_schema()

    def _get_connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "connection", None)
        if conn is None:
            try:
                conn = sqlite3.connect(
                    self.db_path,
                    timeout=self.timeout,
                    isolation_level=None,
                    check_same_thread=False,
                )
                conn.row_factory = sqlite3.Row
                conn.execute("PRAGMA journal_mode = WAL;")
            except sqlite3.Error as e:
                raise PersistenceError(f"Cannot open {self.db_path}: {e}") from e
            self._local.connection = conn
        return conn

    def close(self) -> None:
        """Close this thread's connection."""
        conn = getattr(self._local, "connection", None)
        if conn is not None:
            conn.close()
            self._local.connection = None

    def _init_schema(self) -> None:
        conn = self._get_connection()
        try:
            for table in TABLE_KEYS:
                conn.execute(f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        record_key TEXT PRIMARY KEY,
                        user_id TEXT,
                        loan_id TEXT,
                        investment_id TEXT,
                        body TEXT NOT NULL
                    )
                """)
                for column in INDEXED_COLUMNS:
                    conn.execute(
                        f"CREATE INDEX IF NOT EXISTS ix_{table}_{column} ON {table} ({column})"
                    )
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot create schema in {self.db_path}: {e}") from e

    @staticmethod
    def _index_values(record: Any) -> tuple:
        return tuple(getattr(record, column, None) for column in INDEXED_COLUMNS)

    def _decode(self, table: str, body: str) -> Any:
        return loads(TABLE_RECORDS[table], body)

    # ------------------------------------------------------------------ reads

    def get(self, table: str, key: str) -> Optional[Any]:
        self._check_table(table)
        try:
            row = self._get_connection().execute(
                f"SELECT body FROM {table} WHERE record_key = ?", (key,)
            ).fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot read {table} row {key}: {e}") from e
        return self._decode(table, row["body"]) if row else None

    def find(self, table: str, **criteria: Any) -> List[Any]:
        self._check_table(table)
        clauses = []
        params = []
        for column in INDEXED_COLUMNS:
            if column in criteria:
                clauses.append(f"{column} = ?")
                params.append(criteria[column])
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        try:
            rows = self._get_connection().execute(
                f"SELECT body FROM {table}{where} ORDER BY rowid", params
            ).fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot query {table}: {e}") from e
        records = [self._decode(table, row["body"]) for row in rows]
        return [record for record in records if matches(record, criteria)]

    # ----------------------------------------------------------------- writes

    def _current(self, conn: sqlite3.Connection, table: str, key: str) -> Optional[Any]:
        row = conn.execute(f"SELECT body FROM {table} WHERE record_key = ?", (key,)).fetchone()
        return self._decode(table, row["body"]) if row else None

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        # the error that triggered the rollback is the one the caller sees
        if not conn.in_transaction:
            return
        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            logger.error("SQLite rollback failed: %s", e)

    def _commit(self, uow: UnitOfWork) -> None:
        conn = self._get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                for (table, key), record in uow.inserts.items():
                    if self._current(conn, table, key) is not None:
                        raise PersistenceError(f"{table} row {key} already exists")
                    conn.execute(
                        f"INSERT INTO {table} (record_key, user_id, loan_id, investment_id, body) "
                        f"VALUES (?, ?, ?, ?, ?)",
                        (key, *self._index_values(record), dumps(record)),
                    )
                for (table, key), (expected, new) in uow.updates.items():
                    if self._current(conn, table, key) != expected:
                        raise StaleRecordError(f"{table} row {key} changed since it was read")
                    conn.execute(
                        f"UPDATE {table} SET user_id = ?, loan_id = ?, investment_id = ?, body = ? "
                        f"WHERE record_key = ?",
                        (*self._index_values(new), dumps(new), key),
                    )
                for (table, key), expected in uow.deletes.items():
                    if self._current(conn, table, key) != expected:
                        raise StaleRecordError(f"{table} row {key} changed since it was read")
                    conn.execute(f"DELETE FROM {table} WHERE record_key = ?", (key,))
                conn.execute("COMMIT")
            except BaseException:
                self._rollback(conn)
                raise
        except sqlite3.Error as e:
            logger.error("SQLite commit failed for %r: %s", uow, e)
            raise PersistenceError(f"Commit failed: {e}") from e
        logger.debug("Committed %r", uow)
