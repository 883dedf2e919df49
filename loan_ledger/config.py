"""Configuration management for loan_ledger."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .core import ConfigurationError
from .idempotency import DEFAULT_RETENTION_SECONDS
from .logging import setup_logging

STORE_BACKENDS = ("memory", "sqlite")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
LOG_FORMATS = ("standard", "json")

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {raw!r}")


def _env_number(name: str, default, kind=float):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return kind(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a {kind.__name__}, got {raw!r}") from None


@dataclass
class StoreConfig:
    """Record store configuration."""

    backend: str = "memory"
    sqlite_path: Optional[Path] = None
    busy_timeout_seconds: float = 5.0

    def __post_init__(self):
        if self.backend not in STORE_BACKENDS:
            raise ConfigurationError(f"Unknown store backend {self.backend!r}, expected one of {STORE_BACKENDS}")
        if self.backend == "sqlite" and not self.sqlite_path:
            raise ConfigurationError("The sqlite backend needs sqlite_path")
        if self.busy_timeout_seconds < 0:
            raise ConfigurationError(f"busy_timeout_seconds must be >= 0, got {self.busy_timeout_seconds}")

    def build(self):
        """Create the configured record store."""
        if self.backend == "sqlite":
            from .sqlite_store import SqliteRecordStore
            return SqliteRecordStore(str(self.sqlite_path), timeout=self.busy_timeout_seconds)
        from .store import InMemoryRecordStore
        return InMemoryRecordStore()


@dataclass
class SettlementConfig:
    """Settlement engine behaviour."""

    idempotency_retention_seconds: int = DEFAULT_RETENTION_SECONDS
    auto_activate: bool = False

    def __post_init__(self):
        if self.idempotency_retention_seconds <= 0:
            raise ConfigurationError(
                f"idempotency_retention_seconds must be > 0, got {self.idempotency_retention_seconds}"
            )


@dataclass
class LedgerConfig:
    """Main configuration for loan_ledger."""

    store: StoreConfig = field(default_factory=StoreConfig)
    settlement: SettlementConfig = field(default_factory=SettlementConfig)
    log_level: str = "INFO"
    log_format: str = "standard"

    def __post_init__(self):
        self.log_level = self.log_level.upper()
        if self.log_level not in LOG_LEVELS:
            raise ConfigurationError(f"Unknown log level {self.log_level!r}")
        if self.log_format not in LOG_FORMATS:
            raise ConfigurationError(f"Unknown log format {self.log_format!r}, expected one of {LOG_FORMATS}")

    def configure_logging(self, stream=None) -> logging.Handler:
        """Install the configured log level and format."""
        return setup_logging(self.log_level, self.log_format, stream)

    @classmethod
    def from_env(cls) -> "LedgerConfig":
        """Create config from environment variables."""
        sqlite_path = os.getenv("LOAN_LEDGER_SQLITE_PATH")

        store = StoreConfig(
            backend=os.getenv("LOAN_LEDGER_STORE", "memory").strip().lower(),
            sqlite_path=Path(sqlite_path) if sqlite_path else None,
            busy_timeout_seconds=_env_number("LOAN_LEDGER_SQLITE_TIMEOUT", 5.0),
        )

        settlement = SettlementConfig(
            idempotency_retention_seconds=_env_number(
                "LOAN_LEDGER_IDEMPOTENCY_RETENTION", DEFAULT_RETENTION_SECONDS, int,
            ),
            auto_activate=_env_bool("LOAN_LEDGER_AUTO_ACTIVATE", False),
        )

        return cls(
            store=store,
            settlement=settlement,
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "standard").strip().lower(),
        )
