"""wallet-cron storage layer -- key-value backends and Pydantic record models."""

from __future__ import annotations

from pathlib import Path

from wallet_cron.storage.database import SQLiteKVStore
from wallet_cron.storage.kv import BaseKVStore, MemoryKVStore
from wallet_cron.storage.models import (
    AnyJob,
    EthTransferJob,
    ExecutionLogEntry,
    ExecutionResult,
    ExecutionStatus,
    JobType,
    LogStatus,
    SwapDirection,
    SwapJob,
    TickReport,
    TokenSwapJob,
    WalletLogEntry,
    WalletRecord,
    parse_job,
)


def get_store(backend: str, app_dir: Path, path: str = "store.db") -> BaseKVStore:
    """Return an unconnected store for the configured *backend*.

    The caller is responsible for calling :meth:`BaseKVStore.connect`.
    """
    if backend == "memory":
        return MemoryKVStore()
    if backend == "sqlite":
        return SQLiteKVStore(Path(app_dir) / path)
    raise ValueError(f"Unknown storage backend '{backend}'. Use 'sqlite' or 'memory'.")


__all__ = [
    "AnyJob",
    "BaseKVStore",
    "EthTransferJob",
    "ExecutionLogEntry",
    "ExecutionResult",
    "ExecutionStatus",
    "JobType",
    "LogStatus",
    "MemoryKVStore",
    "SQLiteKVStore",
    "SwapDirection",
    "SwapJob",
    "TickReport",
    "TokenSwapJob",
    "WalletLogEntry",
    "WalletRecord",
    "get_store",
    "parse_job",
]
