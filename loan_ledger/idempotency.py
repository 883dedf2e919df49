"""
idempotency.py - Client Idempotency Keys

A caller may attach an idempotency key to any settlement write. The first
outcome for the key is stored in the idempotency_keys table:

    ok     -> the committed record (table name + JSON body)
    error  -> the business rejection (error code + message)

A retry with the same key and the same arguments replays that outcome without
touching any balance. A retry with the same key and different arguments is a
client bug and raises IdempotencyConflict. Records older than the retention
window are treated as absent and overwritten on the next use.

Persistence failures are never stored: the client may retry them.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Type

from .codec import dumps, loads
from .core import (
    TABLE_IDEMPOTENCY, TABLE_RECORDS,
    BusinessRuleViolation, IdempotencyConflict, IdempotencyRecord,
    InsufficientCapacity, InsufficientFunds, InvalidTransition,
    InvestmentNotFound, LoanNotFound, LoanNotFundable, NotActive, NotFound,
    OutOfRange, utc_now,
)
from .logging import get_logger
from .store import RecordStore, UnitOfWork, row_lock

logger = get_logger(__name__)

DEFAULT_RETENTION_SECONDS = 24 * 60 * 60

OUTCOME_OK = "ok"
OUTCOME_ERROR = "error"

# Error code -> exception class used to rebuild a stored rejection.
_REJECTIONS: Dict[str, Type[BusinessRuleViolation]] = {
    cls.code: cls for cls in (
        BusinessRuleViolation, NotFound, LoanNotFound, InvestmentNotFound,
        InsufficientFunds, InsufficientCapacity, LoanNotFundable, NotActive,
        InvalidTransition,
    )
}
_OUT_OF_RANGE_CODES = {OutOfRange.code, "below_minimum_investment", "above_maximum_investment"}


def idempotency_lock(key: str) -> str:
    return row_lock("idempotency", key)


def rebuild_error(code: Optional[str], message: Optional[str]) -> BusinessRuleViolation:
    """Reconstruct a stored business rejection with its original class and code."""
    message = message or ""
    if code in _OUT_OF_RANGE_CODES:
        return OutOfRange(message, code=code)
    return _REJECTIONS.get(code, BusinessRuleViolation)(message)


@dataclass(frozen=True, slots=True)
class Request:
    """The identity of one keyed request: key, operation name and argument fingerprint."""
    key: str
    operation: str
    fingerprint: str


class IdempotencyCache:
    """Stores and replays the first outcome of each keyed request."""

    def __init__(
        self,
        store: RecordStore,
        retention_seconds: int = DEFAULT_RETENTION_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.retention = timedelta(seconds=retention_seconds)
        self.clock = clock

    def is_expired(self, record: IdempotencyRecord) -> bool:
        return self.clock() - record.created_at > self.retention

    def lookup(self, request: Request, uow: Optional[UnitOfWork] = None) -> Optional[IdempotencyRecord]:
        """
        Find a live record for the request's key.

        Returns:
            The stored record, or None if the key is unused or expired

        Raises:
            IdempotencyConflict: If the key was used for a different request
        """
        record = (uow or self.store).get(TABLE_IDEMPOTENCY, request.key)
        if record is None or self.is_expired(record):
            return None
        if record.operation != request.operation or record.fingerprint != request.fingerprint:
            raise IdempotencyConflict(
                f"Idempotency key {request.key!r} was already used for a different "
                f"{record.operation} request"
            )
        return record

    def replay(self, record: IdempotencyRecord) -> Any:
        """Return the stored result, or raise the stored rejection."""
        logger.debug("Replaying %s for idempotency key %s", record.operation, record.key)
        if record.outcome == OUTCOME_ERROR:
            raise rebuild_error(record.error_code, record.error_message)
        return loads(TABLE_RECORDS[record.result_table], record.result_body)

    def _put(self, uow: UnitOfWork, record: IdempotencyRecord) -> IdempotencyRecord:
        existing = uow.get(TABLE_IDEMPOTENCY, record.key)
        if existing is None:
            return uow.insert(TABLE_IDEMPOTENCY, record)
        # only an expired record can be replaced
        return uow.update(TABLE_IDEMPOTENCY, existing, record)

    def remember_result(self, uow: UnitOfWork, request: Request, table: str, result: Any) -> IdempotencyRecord:
        return self._put(uow, IdempotencyRecord(
            key=request.key,
            operation=request.operation,
            fingerprint=request.fingerprint,
            created_at=self.clock(),
            outcome=OUTCOME_OK,
            result_table=table,
            result_body=dumps(result),
        ))

    def remember_error(self, uow: UnitOfWork, request: Request, error: BusinessRuleViolation) -> IdempotencyRecord:
        return self._put(uow, IdempotencyRecord(
            key=request.key,
            operation=request.operation,
            fingerprint=request.fingerprint,
            created_at=self.clock(),
            outcome=OUTCOME_ERROR,
            error_code=error.code,
            error_message=str(error),
        ))

    def purge_expired(self) -> int:
        """Delete every record older than the retention window. Returns the count removed."""
        expired = [r for r in self.store.find(TABLE_IDEMPOTENCY) if self.is_expired(r)]
        if not expired:
            return 0
        removed = 0
        with self.store.locks.hold(*(idempotency_lock(r.key) for r in expired)):
            with self.store.unit_of_work() as uow:
                for record in expired:
                    current = uow.get(TABLE_IDEMPOTENCY, record.key)
                    if current is not None and self.is_expired(current):
                        uow.delete(TABLE_IDEMPOTENCY, current)
                        removed += 1
        logger.info("Purged %d expired idempotency record(s)", removed)
        return removed
