"""Web3 multi-chain provider for Ethereum-compatible networks.

All amounts crossing this boundary are integers in the asset's smallest
unit (wei for ETH, raw units for ERC-20s). The provider is synchronous;
async callers run it through :func:`call_blocking`.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional, TypeVar

from web3 import Web3
from web3.middleware import ExtraDataToPOAMiddleware

from wallet_cron.errors import ChainError, ExecutionError, InsufficientBalanceError
from wallet_cron.wallet.chains import get_chain, resolve_rpc_url

logger = logging.getLogger("wallet_cron.wallet.provider")

NATIVE_TRANSFER_GAS = 21000
MAX_UINT256 = 2**256 - 1

T = TypeVar("T")

ERC20_ABI: list[dict[str, Any]] = [
    {
        "name": "balanceOf", "type": "function", "stateMutability": "view",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "decimals", "type": "function", "stateMutability": "view",
        "inputs": [], "outputs": [{"name": "", "type": "uint8"}],
    },
    {
        "name": "symbol", "type": "function", "stateMutability": "view",
        "inputs": [], "outputs": [{"name": "", "type": "string"}],
    },
    {
        "name": "name", "type": "function", "stateMutability": "view",
        "inputs": [], "outputs": [{"name": "", "type": "string"}],
    },
    {
        "name": "approve", "type": "function", "stateMutability": "nonpayable",
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "name": "transfer", "type": "function", "stateMutability": "nonpayable",
        "inputs": [
            {"name": "recipient", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
]

WETH_ABI: list[dict[str, Any]] = ERC20_ABI + [
    {
        "name": "deposit", "type": "function", "stateMutability": "payable",
        "inputs": [], "outputs": [],
    },
    {
        "name": "withdraw", "type": "function", "stateMutability": "nonpayable",
        "inputs": [{"name": "amount", "type": "uint256"}], "outputs": [],
    },
]


async def call_blocking(
    fn: Callable[..., T],
    *args: Any,
    on_result: Optional[Callable[[T], None]] = None,
) -> T:
    """Run a blocking provider call in a worker thread.

    A started call cannot be interrupted, so cancelling the awaiting task
    only takes effect once the thread has returned. Callers holding the
    nonce lock therefore keep it until a broadcast has really finished.
    *on_result* sees the return value even when the caller was cancelled.
    """
    future = asyncio.ensure_future(asyncio.to_thread(fn, *args))
    try:
        result = await asyncio.shield(future)
    except asyncio.CancelledError:
        await asyncio.wait({future})
        if on_result is not None and future.exception() is None:
            on_result(future.result())
        raise
    if on_result is not None:
        on_result(result)
    return result


@contextmanager
def _rpc_errors(action: str) -> Iterator[None]:
    """Re-raise RPC/library failures as :class:`ChainError`."""
    try:
        yield
    except ExecutionError:
        raise
    except Exception as exc:
        raise ChainError(f"{action} failed: {exc}") from exc


class Web3Provider:
    """Manages Web3 connections across multiple EVM chains."""

    def __init__(self, rpc_overrides: dict[str, str] | None = None) -> None:
        self._instances: dict[str, Web3] = {}
        self._rpc_overrides = dict(rpc_overrides or {})

    def get_web3(self, chain_name: str) -> Web3:
        """Return a (cached) Web3 instance for the given chain.

        Injects POA middleware for non-mainnet chains.
        """
        if chain_name in self._instances:
            return self._instances[chain_name]

        chain = get_chain(chain_name)
        w3 = Web3(Web3.HTTPProvider(resolve_rpc_url(chain, self._rpc_overrides)))

        if chain.chain_id != 1:
            w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)

        self._instances[chain_name] = w3
        return w3

    def _erc20(self, w3: Web3, token: str, abi: list[dict[str, Any]] = ERC20_ABI):
        return w3.eth.contract(address=Web3.to_checksum_address(token), abi=abi)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def address_of(self, private_key: str) -> str:
        return Web3().eth.account.from_key(private_key).address

    def get_native_balance(self, address: str, chain_name: str) -> int:
        """Native balance in wei."""
        w3 = self.get_web3(chain_name)
        with _rpc_errors("get_balance"):
            return int(w3.eth.get_balance(Web3.to_checksum_address(address)))

    def get_token_balance(self, token: str, address: str, chain_name: str) -> int:
        """ERC-20 balance in raw token units."""
        w3 = self.get_web3(chain_name)
        with _rpc_errors("balanceOf"):
            contract = self._erc20(w3, token)
            return int(contract.functions.balanceOf(Web3.to_checksum_address(address)).call())

    def get_token_decimals(self, token: str, chain_name: str) -> int:
        w3 = self.get_web3(chain_name)
        with _rpc_errors("decimals"):
            return int(self._erc20(w3, token).functions.decimals().call())

    def get_token_metadata(self, token: str, chain_name: str) -> dict[str, Any]:
        """Return ``{"name", "symbol", "decimals"}`` read from the token contract."""
        w3 = self.get_web3(chain_name)
        with _rpc_errors("token metadata"):
            contract = self._erc20(w3, token)
            return {
                "name": contract.functions.name().call(),
                "symbol": contract.functions.symbol().call(),
                "decimals": int(contract.functions.decimals().call()),
            }

    def get_gas_price(self, chain_name: str) -> int:
        w3 = self.get_web3(chain_name)
        with _rpc_errors("gas_price"):
            return int(w3.eth.gas_price)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _apply_fees(self, w3: Web3, tx: dict) -> None:
        """Fill EIP-1559 fee fields, falling back to a legacy gas price."""
        try:
            latest = w3.eth.get_block("latest")
            base_fee = latest.get("baseFeePerGas")
            if base_fee is None:
                raise ValueError("No baseFeePerGas")
            max_priority = w3.eth.max_priority_fee
            tx["maxFeePerGas"] = base_fee * 2 + max_priority
            tx["maxPriorityFeePerGas"] = max_priority
        except Exception:
            tx["gasPrice"] = w3.eth.gas_price

    def _sign_and_send(self, chain_name: str, private_key: str, tx: dict) -> str:
        w3 = self.get_web3(chain_name)
        chain = get_chain(chain_name)
        account = w3.eth.account.from_key(private_key)
        tx.setdefault("chainId", chain.chain_id)
        tx["from"] = account.address
        # pending, so transactions still in the mempool count
        tx["nonce"] = w3.eth.get_transaction_count(account.address, "pending")
        if "maxFeePerGas" not in tx and "gasPrice" not in tx:
            self._apply_fees(w3, tx)
        if "gas" not in tx:
            tx["gas"] = w3.eth.estimate_gas(tx)
        signed = w3.eth.account.sign_transaction(tx, private_key)
        tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
        return Web3.to_hex(tx_hash)

    def send_native(
        self,
        private_key: str,
        to_address: str,
        value_wei: int,
        chain_name: str,
    ) -> str:
        """Send *value_wei* of native asset after checking balance and gas.

        Returns the transaction hash as a hex string.
        """
        w3 = self.get_web3(chain_name)
        with _rpc_errors("send_native"):
            sender = w3.eth.account.from_key(private_key).address
            balance = int(w3.eth.get_balance(sender))
            if balance < value_wei:
                raise InsufficientBalanceError(
                    f"Insufficient balance. Address {sender} has "
                    f"{Web3.from_wei(balance, 'ether')} ETH, but needs "
                    f"{Web3.from_wei(value_wei, 'ether')} ETH"
                )
            total = value_wei + int(w3.eth.gas_price) * NATIVE_TRANSFER_GAS
            if balance < total:
                raise InsufficientBalanceError(
                    f"Insufficient balance for gas. Need {Web3.from_wei(total, 'ether')} ETH "
                    f"but have {Web3.from_wei(balance, 'ether')} ETH"
                )
            tx = {
                "to": Web3.to_checksum_address(to_address),
                "value": value_wei,
                "gas": NATIVE_TRANSFER_GAS,
            }
            tx_hash = self._sign_and_send(chain_name, private_key, tx)
        logger.info(f"Sent {value_wei} wei from {sender} to {to_address}: {tx_hash}")
        return tx_hash

    def _send_contract_call(
        self, chain_name: str, private_key: str, fn: Any, value: int = 0
    ) -> str:
        w3 = self.get_web3(chain_name)
        sender = w3.eth.account.from_key(private_key).address
        tx = fn.build_transaction({"from": sender, "value": value, "nonce": 0})
        tx.pop("nonce", None)
        return self._sign_and_send(chain_name, private_key, dict(tx))

    def transfer_token(
        self, private_key: str, token: str, to_address: str, amount: int, chain_name: str
    ) -> str:
        w3 = self.get_web3(chain_name)
        with _rpc_errors("token transfer"):
            fn = self._erc20(w3, token).functions.transfer(
                Web3.to_checksum_address(to_address), amount
            )
            return self._send_contract_call(chain_name, private_key, fn)

    def approve(
        self, private_key: str, token: str, spender: str, chain_name: str, amount: int = MAX_UINT256
    ) -> str:
        w3 = self.get_web3(chain_name)
        with _rpc_errors("approve"):
            fn = self._erc20(w3, token).functions.approve(
                Web3.to_checksum_address(spender), amount
            )
            return self._send_contract_call(chain_name, private_key, fn)

    def wrap_eth(self, private_key: str, weth: str, amount_wei: int, chain_name: str) -> str:
        w3 = self.get_web3(chain_name)
        with _rpc_errors("WETH deposit"):
            fn = self._erc20(w3, weth, WETH_ABI).functions.deposit()
            return self._send_contract_call(chain_name, private_key, fn, value=amount_wei)

    def unwrap_weth(self, private_key: str, weth: str, amount_wei: int, chain_name: str) -> str:
        w3 = self.get_web3(chain_name)
        with _rpc_errors("WETH withdraw"):
            fn = self._erc20(w3, weth, WETH_ABI).functions.withdraw(amount_wei)
            return self._send_contract_call(chain_name, private_key, fn)

    def send_prepared(self, private_key: str, payload: dict[str, Any], chain_name: str) -> str:
        """Sign and send a transaction payload returned by a swap quote."""
        if not payload.get("to") or not payload.get("data"):
            raise ChainError("Quote did not include an executable transaction")
        tx: dict[str, Any] = {
            "to": Web3.to_checksum_address(payload["to"]),
            "data": payload["data"],
            "value": int(payload.get("value") or 0),
        }
        if payload.get("gas"):
            tx["gas"] = int(payload["gas"])
        if payload.get("maxFeePerGas") and payload.get("maxPriorityFeePerGas"):
            tx["maxFeePerGas"] = int(payload["maxFeePerGas"])
            tx["maxPriorityFeePerGas"] = int(payload["maxPriorityFeePerGas"])
        elif payload.get("gasPrice"):
            tx["gasPrice"] = int(payload["gasPrice"])
        with _rpc_errors("swap transaction"):
            return self._sign_and_send(chain_name, private_key, tx)

    def wait_for_receipt(self, tx_hash: str, chain_name: str, timeout: float = 120) -> None:
        w3 = self.get_web3(chain_name)
        with _rpc_errors(f"waiting for {tx_hash}"):
            receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        if receipt.get("status") == 0:
            raise ChainError(f"Transaction {tx_hash} reverted")
