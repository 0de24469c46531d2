"""Pydantic models for the records kept in the key-value store."""

from __future__ import annotations

import re
import secrets
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator, model_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class JobType(str, Enum):
    ETH_TRANSFER = "eth_transfer"
    SWAP = "swap"
    TOKEN_SWAP = "token_swap"


class SwapDirection(str, Enum):
    ETH_TO_TOKEN = "eth_to_token"
    TOKEN_TO_ETH = "token_to_eth"


class ExecutionStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


class LogStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


def new_id(prefix: str) -> str:
    """Generate a prefixed 32-hex-character id, e.g. ``cron_3f9a...``."""
    return f"{prefix}_{secrets.token_hex(16)}"


def is_address(value: str) -> bool:
    return bool(_ADDRESS_RE.match(value or ""))


def _check_address(value: str, field_name: str) -> str:
    if not is_address(value):
        raise ValueError(f"{field_name} must be a 0x-prefixed 40-hex-digit address")
    return value


def _check_amount(amount: Optional[str], use_max: bool) -> None:
    if use_max:
        return
    if amount is None:
        raise ValueError("either amount or use_max is required")
    try:
        parsed = Decimal(amount)
    except InvalidOperation:
        raise ValueError(f"amount {amount!r} is not a decimal number") from None
    if not parsed.is_finite() or parsed <= 0:
        raise ValueError("amount must be a positive number")


# ---------------------------------------------------------------------------
# Job configuration (tagged union on ``type``)
# ---------------------------------------------------------------------------

class _JobBase(BaseModel):
    id: str = Field(default_factory=lambda: new_id("cron"))
    name: str
    schedule: str
    chain: str = "base"
    wallet_id: Optional[str] = None
    address: str
    private_key: str
    priority: int = 0
    enabled: bool = True
    last_run_time: Optional[datetime] = None
    consecutive_failures: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=datetime.now)

    @field_validator("address")
    @classmethod
    def _valid_address(cls, v: str) -> str:
        return _check_address(v, "address")

    def public(self) -> dict[str, Any]:
        """Serializable view without the private key."""
        return self.model_dump(mode="json", exclude={"private_key"})


class EthTransferJob(_JobBase):
    """Send native ETH to a fixed destination."""

    type: Literal["eth_transfer"] = "eth_transfer"
    to_address: str
    amount: Optional[str] = None
    use_max: bool = False

    @field_validator("to_address")
    @classmethod
    def _valid_to(cls, v: str) -> str:
        return _check_address(v, "to_address")

    @model_validator(mode="after")
    def _valid_amount(self) -> EthTransferJob:
        _check_amount(self.amount, self.use_max)
        return self


class SwapJob(_JobBase):
    """Swap between ETH and USDC on Base."""

    type: Literal["swap"] = "swap"
    from_token: Literal["ETH", "USDC"]
    to_token: Literal["ETH", "USDC"]
    amount: Optional[str] = None
    use_max: bool = False

    @model_validator(mode="after")
    def _valid_pair(self) -> SwapJob:
        if self.from_token == self.to_token:
            raise ValueError(f"Invalid swap pair: {self.from_token} -> {self.to_token}")
        _check_amount(self.amount, self.use_max)
        return self


class TokenSwapJob(_JobBase):
    """Swap between ETH and an arbitrary ERC-20 token, in either direction."""

    type: Literal["token_swap"] = "token_swap"
    token_address: str
    direction: SwapDirection = SwapDirection.ETH_TO_TOKEN
    amount: Optional[str] = None
    use_max: bool = False

    @field_validator("token_address")
    @classmethod
    def _valid_token(cls, v: str) -> str:
        return _check_address(v, "token_address")

    @model_validator(mode="after")
    def _valid_amount(self) -> TokenSwapJob:
        _check_amount(self.amount, self.use_max)
        return self


AnyJob = Union[EthTransferJob, SwapJob, TokenSwapJob]

# Fields shared by every variant; they survive a change of ``type``.
COMMON_JOB_FIELDS = frozenset(_JobBase.model_fields) | {"amount", "use_max"}

JobConfig = Annotated[AnyJob, Field(discriminator="type")]

_job_adapter: TypeAdapter[Any] = TypeAdapter(JobConfig)


def parse_job(data: dict[str, Any]) -> EthTransferJob | SwapJob | TokenSwapJob:
    """Validate a raw mapping into the matching job variant."""
    return _job_adapter.validate_python(data)


# ---------------------------------------------------------------------------
# Execution results and logs
# ---------------------------------------------------------------------------

class ExecutionResult(BaseModel):
    """Outcome of one execution attempt, as reported to callers."""

    job_id: str
    job_name: Optional[str] = None
    type: Optional[JobType] = None
    status: ExecutionStatus
    tx_hash: Optional[str] = None
    amount: Optional[str] = None  # the amount actually attempted
    details: dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    auto_paused: bool = False
    executed_at: datetime = Field(default_factory=datetime.now)

    @property
    def ok(self) -> bool:
        return self.status == ExecutionStatus.SUCCESS


class ExecutionLogEntry(BaseModel):
    """Maps to ``cron:log:{id}``. Written once, never updated."""

    model_config = {"frozen": True}

    id: str = Field(default_factory=lambda: new_id("log"))
    job_id: str
    status: LogStatus
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    auto_paused: bool = False
    amount: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
    manual: bool = False
    executed_at: datetime = Field(default_factory=datetime.now)

    @classmethod
    def from_result(cls, result: ExecutionResult, *, manual: bool = False) -> ExecutionLogEntry:
        return cls(
            job_id=result.job_id,
            status=LogStatus.SUCCESS if result.ok else LogStatus.ERROR,
            tx_hash=result.tx_hash,
            error=result.error,
            auto_paused=result.auto_paused,
            amount=result.amount,
            details=result.details,
            manual=manual,
            executed_at=result.executed_at,
        )


class TickReport(BaseModel):
    """Aggregate result of one ``run_due_jobs`` pass."""

    processed_count: int = 0
    executed: list[ExecutionResult] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Wallet models
# ---------------------------------------------------------------------------

class WalletRecord(BaseModel):
    """Maps to ``wallet:{id}``."""

    id: str = Field(default_factory=lambda: new_id("wallet"))
    name: str
    address: str
    private_key: str
    parent_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)

    def public(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude={"private_key"})


class WalletLogEntry(BaseModel):
    """Maps to ``wallet:log:{id}``."""

    id: str = Field(default_factory=lambda: new_id("wallet_log"))
    wallet_id: str
    type: str
    status: LogStatus
    tx_hash: Optional[str] = None
    message: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.now)
