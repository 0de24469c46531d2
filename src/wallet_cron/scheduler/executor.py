"""Turns a job definition into one on-chain action.

The executor resolves the effective amount (honouring "use max" and the
native-asset reserve) and submits the transaction. Both happen while holding
the nonce lock for the job's address, so concurrent jobs on one address
never read the same balance or pick the same nonce.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional

from wallet_cron.config import ReserveConfig
from wallet_cron.errors import ExecutionError, InsufficientBalanceError, JobTimeoutError
from wallet_cron.storage.models import (
    AnyJob,
    EthTransferJob,
    ExecutionResult,
    ExecutionStatus,
    JobType,
    SwapDirection,
    SwapJob,
    TokenSwapJob,
)
from wallet_cron.wallet.chains import Chain, get_chain
from wallet_cron.wallet.nonce_lock import NonceLock
from wallet_cron.wallet.provider import call_blocking
from wallet_cron.wallet.swap import SwapService, require_swap_chain
from wallet_cron.wallet.tokens import USDC, TokenMetadataCache, format_units, parse_units

logger = logging.getLogger("wallet_cron.scheduler.executor")

ETH_DECIMALS = 18


def max_native_amount(balance: int, reserve: int) -> int:
    """Spendable native amount after keeping *reserve* behind (never negative)."""
    if balance > reserve:
        return balance - reserve
    return 0


@dataclass
class _Attempt:
    """What we know about an attempt so far, kept for the error path."""

    amount: Optional[str] = None
    tx_hash: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)

    def record_tx(self, tx_hash: str) -> None:
        self.tx_hash = tx_hash


class ActionExecutor:
    """Executes a single job attempt and reports it as an :class:`ExecutionResult`.

    Every :class:`~wallet_cron.errors.ExecutionError` is turned into an
    ``error`` result. Anything else (a broken store, a programming error)
    propagates to the caller.
    """

    def __init__(
        self,
        provider: Any,
        swaps: SwapService,
        lock: NonceLock,
        tokens: TokenMetadataCache,
        reserve: ReserveConfig | None = None,
    ) -> None:
        self.provider = provider
        self.swaps = swaps
        self.lock = lock
        self.tokens = tokens
        self.reserve = reserve or ReserveConfig()

    # ------------------------------------------------------------------
    # Amount resolution
    # ------------------------------------------------------------------

    async def _call(self, fn, *args, on_result=None):
        return await call_blocking(fn, *args, on_result=on_result)

    async def gas_cost(self, chain: Chain, gas_units: int) -> int:
        gas_price = await self._call(self.provider.get_gas_price, chain.name)
        return gas_price * gas_units

    def reserve_for(self, gas_cost: int) -> int:
        """``max(floor, gas_cost * (1 + cushion))`` in wei."""
        floor = parse_units(self.reserve.floor_eth, ETH_DECIMALS)
        cushioned = int(Decimal(gas_cost) * (1 + Decimal(str(self.reserve.gas_cushion_fraction))))
        return max(floor, cushioned)

    async def native_amount(
        self, job: AnyJob, chain: Chain, gas_units: int, attempt: _Attempt
    ) -> int:
        """Wei to spend for a job whose sell side is the native asset."""
        if not job.use_max:
            return parse_units(job.amount, ETH_DECIMALS)

        balance = await self._call(self.provider.get_native_balance, job.address, chain.name)
        reserve = self.reserve_for(await self.gas_cost(chain, gas_units))
        amount = max_native_amount(balance, reserve)
        attempt.details["balance"] = format_units(balance, ETH_DECIMALS)
        attempt.details["reserve"] = format_units(reserve, ETH_DECIMALS)
        if amount <= 0:
            raise InsufficientBalanceError(
                f"Balance {format_units(balance, ETH_DECIMALS)} ETH does not exceed the "
                f"reserve of {format_units(reserve, ETH_DECIMALS)} ETH"
            )
        logger.info(
            f"Using max balance for {job.id}: {format_units(amount, ETH_DECIMALS)} ETH "
            f"(reserve {format_units(reserve, ETH_DECIMALS)} ETH)"
        )
        return amount

    async def token_amount(
        self, job: AnyJob, token: str, decimals: int, chain: Chain, attempt: _Attempt
    ) -> int:
        """Raw token units to sell. "Use max" sells the whole token balance."""
        if not job.use_max:
            return parse_units(job.amount, decimals)

        balance = await self._call(self.provider.get_token_balance, token, job.address, chain.name)
        if balance <= 0:
            raise InsufficientBalanceError(f"No balance of token {token} to swap")
        gas_cost = await self.gas_cost(chain, self.reserve.swap_gas_units)
        native = await self._call(self.provider.get_native_balance, job.address, chain.name)
        if native < gas_cost:
            raise InsufficientBalanceError(
                f"Native balance {format_units(native, ETH_DECIMALS)} ETH cannot cover "
                f"gas of {format_units(gas_cost, ETH_DECIMALS)} ETH"
            )
        attempt.details["balance"] = format_units(balance, decimals)
        return balance

    # ------------------------------------------------------------------
    # Per-type actions
    # ------------------------------------------------------------------

    async def _eth_transfer(self, job: EthTransferJob, chain: Chain, attempt: _Attempt) -> str:
        attempt.details.update({"from": job.address, "to": job.to_address})
        amount = await self.native_amount(job, chain, self.reserve.transfer_gas_units, attempt)
        attempt.amount = format_units(amount, ETH_DECIMALS)
        return await self._call(
            self.provider.send_native, job.private_key, job.to_address, amount, chain.name,
            on_result=attempt.record_tx,
        )

    async def _swap_from_eth(self, job: AnyJob, token: str, chain: Chain, attempt: _Attempt) -> str:
        amount = await self.native_amount(job, chain, self.reserve.swap_gas_units, attempt)
        attempt.amount = format_units(amount, ETH_DECIMALS)
        outcome = await self.swaps.swap_eth_for_token(
            job.private_key, token, amount, chain.name, on_sent=attempt.record_tx
        )
        attempt.details["buy_amount"] = outcome.buy_amount
        return outcome.tx_hash

    async def _swap_to_eth(
        self, job: AnyJob, token: str, decimals: int, chain: Chain, attempt: _Attempt
    ) -> str:
        amount = await self.token_amount(job, token, decimals, chain, attempt)
        attempt.amount = format_units(amount, decimals)
        outcome = await self.swaps.swap_token_for_eth(
            job.private_key, token, amount, chain.name, on_sent=attempt.record_tx
        )
        attempt.details["buy_amount"] = outcome.buy_amount
        return outcome.tx_hash

    async def _swap(self, job: SwapJob, chain: Chain, attempt: _Attempt) -> str:
        require_swap_chain(chain.name)
        attempt.details.update({"from_token": job.from_token, "to_token": job.to_token})
        if job.from_token == "ETH":
            return await self._swap_from_eth(job, USDC.address, chain, attempt)
        return await self._swap_to_eth(job, USDC.address, USDC.decimals, chain, attempt)

    async def _token_swap(self, job: TokenSwapJob, chain: Chain, attempt: _Attempt) -> str:
        require_swap_chain(chain.name)
        attempt.details.update(
            {"token_address": job.token_address, "direction": job.direction.value}
        )
        if job.direction == SwapDirection.ETH_TO_TOKEN:
            return await self._swap_from_eth(job, job.token_address, chain, attempt)
        decimals = await self.tokens.decimals(job.token_address)
        return await self._swap_to_eth(job, job.token_address, decimals, chain, attempt)

    async def _dispatch(self, job: AnyJob, chain: Chain, attempt: _Attempt) -> str:
        if isinstance(job, EthTransferJob):
            return await self._eth_transfer(job, chain, attempt)
        if isinstance(job, SwapJob):
            return await self._swap(job, chain, attempt)
        return await self._token_swap(job, chain, attempt)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def _locked(self, job: AnyJob, attempt: _Attempt) -> str:
        chain = get_chain(job.chain)
        async with self.lock.hold(chain.chain_id, job.address):
            return await self._dispatch(job, chain, attempt)

    async def execute(self, job: AnyJob, timeout: Optional[float] = None) -> ExecutionResult:
        """Run one attempt of *job*.

        *timeout* bounds the whole attempt including the wait for the nonce
        lock. A blocking submission that has already started is allowed to
        finish before the lock is released; its hash is still reported.
        """
        attempt = _Attempt(details={"chain": job.chain, "use_max": job.use_max})
        try:
            try:
                tx_hash = await asyncio.wait_for(self._locked(job, attempt), timeout)
            except asyncio.TimeoutError:
                raise JobTimeoutError(f"Job {job.id} timed out after {timeout}s") from None
        except ExecutionError as exc:
            logger.warning(f"Job {job.id} ({job.name}) failed: {exc}")
            return ExecutionResult(
                job_id=job.id,
                job_name=job.name,
                type=JobType(job.type),
                status=ExecutionStatus.ERROR,
                tx_hash=attempt.tx_hash,
                amount=attempt.amount,
                details=attempt.details,
                error=str(exc),
            )

        logger.info(f"Job {job.id} ({job.name}) executed: {tx_hash}")
        return ExecutionResult(
            job_id=job.id,
            job_name=job.name,
            type=JobType(job.type),
            status=ExecutionStatus.SUCCESS,
            tx_hash=tx_hash,
            amount=attempt.amount,
            details=attempt.details,
        )
