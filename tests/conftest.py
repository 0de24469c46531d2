"""Shared fixtures and in-memory test doubles.

Nothing here touches the network: the chain is a dict of balances and the
swap API is a scripted object.
"""

from __future__ import annotations

import itertools
import threading
import time
from datetime import datetime
from typing import Any, Optional

import pytest
from eth_account import Account

from wallet_cron.app import Application
from wallet_cron.config import AppConfig, DashboardConfig, LockConfig, StorageConfig
from wallet_cron.errors import ChainError, InsufficientBalanceError
from wallet_cron.storage.kv import MemoryKVStore
from wallet_cron.wallet.tokens import WETH

ETH = 10**18
GWEI = 10**9


# ---------------------------------------------------------------------------
# Chain double
# ---------------------------------------------------------------------------


class FakeChain:
    """Synchronous stand-in for :class:`Web3Provider`.

    Balances live in dicts keyed by lower-cased addresses. Every submitted
    transaction is appended to :attr:`sent`. ``fail_with`` makes the next
    submission raise, ``send_delay`` keeps a submission "in flight" so
    tests can observe overlap.
    """

    def __init__(self, gas_price: int = GWEI) -> None:
        self.gas_price = gas_price
        self.native: dict[str, int] = {}
        self.tokens: dict[tuple[str, str], int] = {}
        self.decimals: dict[str, int] = {}
        self.sent: list[dict[str, Any]] = []
        self.fail_with: Optional[Exception] = None
        self.send_delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0
        self._guard = threading.Lock()
        self._hashes = itertools.count(1)

    # -- setup helpers ------------------------------------------------

    def fund(self, address: str, wei: int) -> None:
        self.native[address.lower()] = wei

    def fund_token(self, token: str, address: str, amount: int) -> None:
        self.tokens[(token.lower(), address.lower())] = amount

    # -- reads ----------------------------------------------------------

    def address_of(self, private_key: str) -> str:
        return Account.from_key(private_key).address

    def get_native_balance(self, address: str, chain_name: str) -> int:
        return self.native.get(address.lower(), 0)

    def get_token_balance(self, token: str, address: str, chain_name: str) -> int:
        return self.tokens.get((token.lower(), address.lower()), 0)

    def get_token_metadata(self, token: str, chain_name: str) -> dict:
        if token.lower() not in self.decimals:
            raise ChainError(f"no contract at {token}")
        return {"name": "Fake", "symbol": "FAKE", "decimals": self.decimals[token.lower()]}

    def get_token_decimals(self, token: str, chain_name: str) -> int:
        return self.get_token_metadata(token, chain_name)["decimals"]

    def get_gas_price(self, chain_name: str) -> int:
        return self.gas_price

    # -- writes ---------------------------------------------------------

    def _submit(self, kind: str, **fields: Any) -> str:
        with self._guard:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.send_delay:
                time.sleep(self.send_delay)
            if self.fail_with is not None:
                exc, self.fail_with = self.fail_with, None
                raise exc
            tx_hash = f"0x{next(self._hashes):064x}"
            self.sent.append({"kind": kind, "tx_hash": tx_hash, **fields})
            return tx_hash
        finally:
            with self._guard:
                self.in_flight -= 1

    def send_native(self, private_key: str, to_address: str, value_wei: int, chain_name: str) -> str:
        sender = self.address_of(private_key).lower()
        balance = self.native.get(sender, 0)
        if balance < value_wei + self.gas_price * 21000:
            raise InsufficientBalanceError(f"have {balance}, need {value_wei}")
        tx_hash = self._submit("native", sender=sender, to=to_address, value=value_wei, chain=chain_name)
        self.native[sender] = balance - value_wei
        return tx_hash

    def transfer_token(self, private_key, token, to_address, amount, chain_name) -> str:
        sender = self.address_of(private_key).lower()
        tx_hash = self._submit("token", sender=sender, token=token, to=to_address, value=amount)
        self.tokens[(token.lower(), sender)] = self.get_token_balance(token, sender, chain_name) - amount
        return tx_hash

    def approve(self, private_key, token, spender, chain_name, amount=2**256 - 1) -> str:
        return self._submit("approve", token=token, spender=spender)

    def wrap_eth(self, private_key, weth, amount_wei, chain_name) -> str:
        sender = self.address_of(private_key).lower()
        tx_hash = self._submit("wrap", sender=sender, value=amount_wei)
        self.native[sender] = self.native.get(sender, 0) - amount_wei
        self.fund_token(weth, sender, self.get_token_balance(weth, sender, chain_name) + amount_wei)
        return tx_hash

    def unwrap_weth(self, private_key, weth, amount_wei, chain_name) -> str:
        sender = self.address_of(private_key).lower()
        tx_hash = self._submit("unwrap", sender=sender, value=amount_wei)
        self.fund_token(weth, sender, self.get_token_balance(weth, sender, chain_name) - amount_wei)
        self.native[sender] = self.native.get(sender, 0) + amount_wei
        return tx_hash

    def send_prepared(self, private_key, payload, chain_name) -> str:
        sender = self.address_of(private_key).lower()
        tx_hash = self._submit("swap", sender=sender, payload=payload)
        sell, buy = payload.get("sellToken"), payload.get("buyToken")
        amount = int(payload.get("sellAmount", 0))
        if sell:
            self.fund_token(sell, sender, self.get_token_balance(sell, sender, chain_name) - amount)
        if buy:
            received = int(payload.get("buyAmount", 0))
            self.fund_token(buy, sender, self.get_token_balance(buy, sender, chain_name) + received)
        return tx_hash

    def wait_for_receipt(self, tx_hash: str, chain_name: str, timeout: float = 120) -> None:
        return None

    def sent_of(self, kind: str) -> list[dict[str, Any]]:
        return [tx for tx in self.sent if tx["kind"] == kind]


# ---------------------------------------------------------------------------
# Swap API double
# ---------------------------------------------------------------------------


class ScriptedQuotes:
    """Answers ``price``/``quote`` like the 0x API, recording every call.

    The quote's ``transaction`` payload echoes the sell/buy side so that
    :class:`FakeChain` can move balances when it is "executed".
    """

    def __init__(self, buy_amount: int = 1_000_000, needs_allowance: bool = False) -> None:
        self.buy_amount = buy_amount
        self.needs_allowance = needs_allowance
        self.price_calls: list[dict[str, Any]] = []
        self.quote_calls: list[dict[str, Any]] = []
        self.error: Optional[Exception] = None

    async def price(self, params: dict[str, Any]) -> dict[str, Any]:
        self.price_calls.append(dict(params))
        if self.error is not None:
            raise self.error
        body: dict[str, Any] = {"liquidityAvailable": True, "buyAmount": str(self.buy_amount)}
        if self.needs_allowance:
            body["issues"] = {"allowance": {"spender": "0x" + "ab" * 20, "actual": "0"}}
        return body

    async def quote(self, params: dict[str, Any], taker: str) -> dict[str, Any]:
        self.quote_calls.append({**params, "taker": taker})
        return {
            "buyAmount": str(self.buy_amount),
            "transaction": {
                "to": "0x" + "cd" * 20,
                "data": "0xdeadbeef",
                "value": "0",
                "sellToken": params["sellToken"],
                "buyToken": params["buyToken"],
                "sellAmount": params["sellAmount"],
                "buyAmount": str(self.buy_amount),
            },
        }


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, *args: int) -> None:
        self.now = datetime(*args)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store():
    return MemoryKVStore()


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def quotes():
    return ScriptedQuotes()


@pytest.fixture
def clock():
    return FrozenClock(datetime(2024, 1, 1, 12, 0, 0))


@pytest.fixture
def config():
    return AppConfig(
        storage=StorageConfig(backend="memory"),
        lock=LockConfig(lease_seconds=60, retry_delay_seconds=0.01, max_wait_seconds=2.0),
        dashboard=DashboardConfig(cron_secret=""),
    )


@pytest.fixture
def application(config, tmp_path, store, chain, quotes, clock):
    return Application(config, tmp_path, store, provider=chain, quotes=quotes, clock=clock)


@pytest.fixture
def keypair():
    acct = Account.create()
    return "0x" + acct.key.hex().removeprefix("0x"), acct.address


def make_transfer_job(private_key: str, address: str, **overrides: Any) -> dict[str, Any]:
    """Raw eth_transfer definition suitable for ``Application.create_job``."""
    data: dict[str, Any] = {
        "type": "eth_transfer",
        "name": "payroll",
        "schedule": "* * * * *",
        "address": address,
        "private_key": private_key,
        "to_address": "0x" + "11" * 20,
        "amount": "0.001",
    }
    data.update(overrides)
    return data


WETH_ADDRESS = WETH.address
