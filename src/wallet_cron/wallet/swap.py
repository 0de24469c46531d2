"""Token swaps on Base through the 0x allowance-holder API.

:class:`ZeroExClient` only talks HTTP. :class:`SwapService` strings the
wrap / price / approve / quote / send / unwrap steps together on top of a
:class:`~wallet_cron.wallet.provider.Web3Provider`. Callers are expected to
hold the nonce lock for the sending address.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import httpx

from wallet_cron.config import SwapConfig, resolve_secret
from wallet_cron.errors import InsufficientBalanceError, QuoteError, UnsupportedChainError
from wallet_cron.wallet.chains import get_chain
from wallet_cron.wallet.provider import call_blocking
from wallet_cron.wallet.tokens import USDC, WETH

logger = logging.getLogger("wallet_cron.wallet.swap")

SWAP_CHAIN = "base"


def require_swap_chain(chain_name: str) -> int:
    if chain_name != SWAP_CHAIN:
        raise UnsupportedChainError(
            f"Swaps are only supported on {SWAP_CHAIN}, not '{chain_name}'"
        )
    return get_chain(chain_name).chain_id


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


class ZeroExClient:
    """Minimal async client for the 0x v2 ``price`` and ``quote`` endpoints."""

    def __init__(
        self,
        config: SwapConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or SwapConfig()
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        api_key = resolve_secret(self.config.api_key)
        if not api_key:
            raise QuoteError("ZERO_EX_API_KEY is not configured")
        return {"0x-api-key": api_key, "0x-version": "v2"}

    async def _get(self, url: str, params: dict[str, Any]) -> dict[str, Any]:
        headers = self._headers()
        try:
            async with httpx.AsyncClient(
                timeout=self.config.timeout_seconds, transport=self._transport
            ) as client:
                resp = await client.get(url, params=params, headers=headers)
        except httpx.HTTPError as exc:
            raise QuoteError(f"0x API request failed: {exc}") from exc

        if resp.status_code >= 400:
            raise QuoteError(
                f"0x API error ({resp.status_code}): {resp.text}", resp.status_code
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise QuoteError(f"0x API returned invalid JSON: {exc}", resp.status_code) from exc

    async def price(self, params: dict[str, Any]) -> dict[str, Any]:
        """Indicative price. ``issues.allowance`` reports a missing approval."""
        return await self._get(self.config.price_url, params)

    async def quote(self, params: dict[str, Any], taker: str) -> dict[str, Any]:
        """Firm quote including an executable ``transaction`` payload."""
        return await self._get(self.config.quote_url, {**params, "taker": taker})


# ---------------------------------------------------------------------------
# Swap orchestration
# ---------------------------------------------------------------------------


@dataclass
class SwapOutcome:
    tx_hash: str
    sell_amount: int
    buy_amount: Optional[str] = None
    side_tx_hashes: list[str] = field(default_factory=list)


class SwapService:
    """Executes ETH<->token swaps for a single key.

    Parameters
    ----------
    provider:
        Synchronous chain client (``Web3Provider`` or a test double).
    quotes:
        Anything with async ``price(params)`` and ``quote(params, taker)``.
    receipt_timeout:
        Seconds to wait for each transaction to be mined.
    """

    def __init__(self, provider: Any, quotes: Any, receipt_timeout: float = 120) -> None:
        self.provider = provider
        self.quotes = quotes
        self.receipt_timeout = receipt_timeout

    async def _call(self, fn, *args, on_result=None):
        return await call_blocking(fn, *args, on_result=on_result)

    async def _wait(self, tx_hash: str, chain_name: str) -> None:
        await call_blocking(
            self.provider.wait_for_receipt, tx_hash, chain_name, self.receipt_timeout
        )

    async def _approve_if_needed(
        self, private_key: str, token: str, price: dict[str, Any], chain_name: str
    ) -> Optional[str]:
        allowance = (price.get("issues") or {}).get("allowance")
        if not allowance:
            return None
        spender = allowance.get("spender")
        if not spender:
            raise QuoteError("Price reported an allowance issue without a spender")
        logger.info(f"Approving {token} for spender {spender}")
        tx_hash = await self._call(self.provider.approve, private_key, token, spender, chain_name)
        await self._wait(tx_hash, chain_name)
        return tx_hash

    async def _execute(
        self,
        private_key: str,
        taker: str,
        params: dict[str, Any],
        chain_name: str,
        side_txs: list[str],
        on_sent: Optional[Callable[[str], None]] = None,
    ) -> tuple[str, Optional[str]]:
        price = await self.quotes.price(params)
        if price.get("liquidityAvailable") is False:
            raise QuoteError("No liquidity available for this swap")

        approve_tx = await self._approve_if_needed(
            private_key, params["sellToken"], price, chain_name
        )
        if approve_tx:
            side_txs.append(approve_tx)

        quote = await self.quotes.quote(params, taker)
        payload = quote.get("transaction")
        if not payload:
            raise QuoteError("Quote did not include a transaction")

        tx_hash = await self._call(
            self.provider.send_prepared, private_key, payload, chain_name, on_result=on_sent
        )
        await self._wait(tx_hash, chain_name)
        buy_amount = quote.get("buyAmount")
        return tx_hash, str(buy_amount) if buy_amount is not None else None

    async def swap_eth_for_token(
        self, private_key: str, token: str, amount_wei: int, chain_name: str = SWAP_CHAIN,
        on_sent: Optional[Callable[[str], None]] = None,
    ) -> SwapOutcome:
        """Sell *amount_wei* of ETH (as WETH) for *token*.

        Wraps only the part of the amount not already held as WETH.
        *on_sent* receives the swap transaction hash as soon as it is broadcast.
        """
        chain_id = require_swap_chain(chain_name)
        taker = self.provider.address_of(private_key)
        side_txs: list[str] = []

        weth_balance = await self._call(
            self.provider.get_token_balance, WETH.address, taker, chain_name
        )
        shortfall = amount_wei - weth_balance
        if shortfall > 0:
            logger.info(f"Wrapping {shortfall} wei to WETH for {taker}")
            wrap_tx = await self._call(
                self.provider.wrap_eth, private_key, WETH.address, shortfall, chain_name
            )
            await self._wait(wrap_tx, chain_name)
            side_txs.append(wrap_tx)

        params = {
            "chainId": chain_id,
            "sellToken": WETH.address,
            "buyToken": token,
            "sellAmount": str(amount_wei),
            "taker": taker,
        }
        tx_hash, buy_amount = await self._execute(
            private_key, taker, params, chain_name, side_txs, on_sent
        )
        logger.info(f"Swapped {amount_wei} wei ETH for {token}: {tx_hash}")
        return SwapOutcome(tx_hash, amount_wei, buy_amount, side_txs)

    async def swap_token_for_eth(
        self, private_key: str, token: str, amount: int, chain_name: str = SWAP_CHAIN,
        on_sent: Optional[Callable[[str], None]] = None,
    ) -> SwapOutcome:
        """Sell *amount* raw units of *token* for WETH, then unwrap the WETH received."""
        chain_id = require_swap_chain(chain_name)
        taker = self.provider.address_of(private_key)
        side_txs: list[str] = []

        balance = await self._call(self.provider.get_token_balance, token, taker, chain_name)
        if balance < amount:
            raise InsufficientBalanceError(
                f"Insufficient token balance. Have {balance}, need {amount}"
            )

        weth_before = await self._call(
            self.provider.get_token_balance, WETH.address, taker, chain_name
        )
        params = {
            "chainId": chain_id,
            "sellToken": token,
            "buyToken": WETH.address,
            "sellAmount": str(amount),
            "taker": taker,
        }
        tx_hash, buy_amount = await self._execute(
            private_key, taker, params, chain_name, side_txs, on_sent
        )

        weth_after = await self._call(
            self.provider.get_token_balance, WETH.address, taker, chain_name
        )
        received = weth_after - weth_before
        if received > 0:
            unwrap_tx = await self._call(
                self.provider.unwrap_weth, private_key, WETH.address, received, chain_name
            )
            await self._wait(unwrap_tx, chain_name)
            side_txs.append(unwrap_tx)
        logger.info(f"Swapped {amount} of {token} for ETH: {tx_hash}")
        return SwapOutcome(tx_hash, amount, buy_amount, side_txs)

    async def swap_pair(
        self,
        private_key: str,
        from_token: str,
        to_token: str,
        amount: int,
        chain_name: str = SWAP_CHAIN,
    ) -> SwapOutcome:
        """ETH<->USDC convenience wrapper. *amount* is in the sell token's units."""
        pair = (from_token.upper(), to_token.upper())
        if pair == ("ETH", "USDC"):
            return await self.swap_eth_for_token(private_key, USDC.address, amount, chain_name)
        if pair == ("USDC", "ETH"):
            return await self.swap_token_for_eth(private_key, USDC.address, amount, chain_name)
        raise QuoteError(f"Invalid swap pair: {from_token} -> {to_token}")
