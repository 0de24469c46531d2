"""Exception hierarchy for wallet-cron.

Every failure that a single job attempt can run into derives from
:class:`ExecutionError`. The run loop catches those per job and records them.
:class:`StoreError` is not an execution error: a broken store aborts the tick.
"""

from __future__ import annotations


class WalletCronError(Exception):
    """Base class for all wallet-cron errors."""


# ---------------------------------------------------------------------------
# Configuration / validation
# ---------------------------------------------------------------------------


class CronSyntaxError(WalletCronError, ValueError):
    """A cron expression failed validation."""


class JobConfigError(WalletCronError, ValueError):
    """A job definition is invalid or cannot be run in its current state."""


class WalletConfigError(WalletCronError, ValueError):
    """A wallet operation would break the wallet tree or orphan jobs."""


class NotFoundError(WalletCronError, KeyError):
    """A job or wallet id does not exist."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Not found"


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class StoreError(WalletCronError):
    """The key-value store is unavailable or failed an operation."""


# ---------------------------------------------------------------------------
# Per-job execution failures
# ---------------------------------------------------------------------------


class ExecutionError(WalletCronError):
    """A transient failure while executing one job's on-chain action."""


class InsufficientBalanceError(ExecutionError):
    """Balance does not cover the amount and/or the gas for it."""


class QuoteError(ExecutionError):
    """The swap price/quote endpoint rejected the request or is unreachable."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class LockTimeout(ExecutionError):
    """The per-address nonce lock could not be obtained in time."""


class UnsupportedChainError(ExecutionError):
    """The requested chain is not one of the supported networks."""


class UnsupportedTokenError(ExecutionError):
    """The token address or symbol is malformed or not supported."""


class ChainError(ExecutionError):
    """An RPC call or transaction submission failed."""


class JobTimeoutError(ExecutionError):
    """A job exceeded the run loop's per-job time budget."""
