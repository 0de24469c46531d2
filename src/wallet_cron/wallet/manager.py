"""High-level wallet manager used by the dashboard, the CLI and the runner."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from wallet_cron.errors import (
    ExecutionError,
    NotFoundError,
    UnsupportedTokenError,
    WalletConfigError,
)
from wallet_cron.scheduler.store import wallet_jobs_key
from wallet_cron.storage.kv import BaseKVStore
from wallet_cron.storage.models import LogStatus, WalletLogEntry, WalletRecord, is_address
from wallet_cron.wallet.chains import get_chain
from wallet_cron.wallet.keystore import generate_keypair
from wallet_cron.wallet.nonce_lock import NonceLock
from wallet_cron.wallet.swap import SWAP_CHAIN, SwapService
from wallet_cron.wallet.tokens import (
    DEFAULT_DECIMALS,
    STANDARD_TOKENS,
    TokenMetadataCache,
    format_units,
    get_standard_token,
    parse_units,
)

logger = logging.getLogger("wallet_cron.wallet.manager")

ACTIVE_WALLETS_KEY = "wallets:active"
DRAIN_MIN_CUSHION_WEI = 10**13  # 0.00001 ETH
NATIVE_TRANSFER_GAS = 21000


def wallet_key(wallet_id: str) -> str:
    return f"wallet:{wallet_id}"


def wallet_logs_key(wallet_id: str) -> str:
    return f"wallet:{wallet_id}:logs"


def wallet_log_key(log_id: str) -> str:
    return f"wallet:log:{log_id}"


def wallet_tokens_key(wallet_id: str) -> str:
    return f"wallet:{wallet_id}:tokens"


class WalletManager:
    """Orchestrates wallet records, activity logs and manual transactions.

    Every balance-changing operation runs under the same nonce lock the
    scheduler uses, so manual actions and cron jobs never race on a nonce.
    """

    def __init__(
        self,
        store: BaseKVStore,
        provider: Any,
        lock: NonceLock,
        swaps: Optional[SwapService] = None,
        tokens: Optional[TokenMetadataCache] = None,
        max_logs: int = 100,
    ) -> None:
        self.store = store
        self.provider = provider
        self.lock = lock
        self.swaps = swaps
        self.tokens = tokens or TokenMetadataCache(provider)
        self.max_logs = max_logs

    # ------------------------------------------------------------------
    # Wallet lifecycle
    # ------------------------------------------------------------------

    async def create_wallet(self, name: str, parent_id: Optional[str] = None) -> WalletRecord:
        """Generate a keypair and persist it as a new wallet."""
        if parent_id is not None:
            await self.require_wallet(parent_id)
        private_key, address = generate_keypair()
        record = WalletRecord(name=name, address=address, private_key=private_key, parent_id=parent_id)
        await self.store.set(wallet_key(record.id), record.model_dump(mode="json"))
        await self.store.sadd(ACTIVE_WALLETS_KEY, record.id)
        await self.record_log(
            record.id, "create", LogStatus.SUCCESS, message=f"Wallet '{name}' created",
            details={"address": address, "parent_id": parent_id},
        )
        logger.info(f"Created wallet {record.id} ({address})")
        return record

    async def get_wallet(self, wallet_id: str) -> Optional[WalletRecord]:
        data = await self.store.get(wallet_key(wallet_id))
        if data is None:
            return None
        return WalletRecord.model_validate(data)

    async def require_wallet(self, wallet_id: str) -> WalletRecord:
        record = await self.get_wallet(wallet_id)
        if record is None:
            raise NotFoundError(f"Wallet {wallet_id} not found")
        return record

    async def list_wallets(self) -> list[WalletRecord]:
        wallets = []
        for wallet_id in await self.store.smembers(ACTIVE_WALLETS_KEY):
            record = await self.get_wallet(wallet_id)
            if record is not None:
                wallets.append(record)
        wallets.sort(key=lambda w: w.created_at)
        return wallets

    async def _save(self, record: WalletRecord) -> None:
        await self.store.set(wallet_key(record.id), record.model_dump(mode="json"))

    async def delete_wallet(self, wallet_id: str) -> None:
        """Delete a wallet. Refused while any job still uses it.

        Child wallets are attached to the deleted wallet's parent.
        """
        record = await self.require_wallet(wallet_id)
        job_ids = await self.store.smembers(wallet_jobs_key(wallet_id))
        if job_ids:
            raise WalletConfigError(
                f"Wallet {wallet_id} still has {len(job_ids)} job(s); delete them first"
            )
        for child in await self.list_wallets():
            if child.parent_id == wallet_id:
                child.parent_id = record.parent_id
                await self._save(child)

        for log_id in await self.store.lrange(wallet_logs_key(wallet_id), 0, -1):
            await self.store.delete(wallet_log_key(log_id))
        await self.store.delete(wallet_logs_key(wallet_id))
        await self.store.delete(wallet_jobs_key(wallet_id))
        await self.store.delete(wallet_tokens_key(wallet_id))
        await self.store.delete(wallet_key(wallet_id))
        await self.store.srem(ACTIVE_WALLETS_KEY, wallet_id)
        logger.info(f"Deleted wallet {wallet_id}")

    async def reparent(self, wallet_id: str, parent_id: Optional[str]) -> WalletRecord:
        """Move *wallet_id* under *parent_id* (``None`` makes it a root)."""
        record = await self.require_wallet(wallet_id)
        ancestor_id = parent_id
        while ancestor_id is not None:
            if ancestor_id == wallet_id:
                raise WalletConfigError(
                    f"Cannot move wallet {wallet_id} under its own descendant {parent_id}"
                )
            ancestor_id = (await self.require_wallet(ancestor_id)).parent_id
        record.parent_id = parent_id
        await self._save(record)
        return record

    # ------------------------------------------------------------------
    # Activity log
    # ------------------------------------------------------------------

    async def record_log(
        self,
        wallet_id: str,
        type: str,
        status: LogStatus,
        *,
        tx_hash: Optional[str] = None,
        message: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> WalletLogEntry:
        entry = WalletLogEntry(
            wallet_id=wallet_id,
            type=type,
            status=status,
            tx_hash=tx_hash,
            message=message,
            details=details or {},
        )
        list_key = wallet_logs_key(wallet_id)
        await self.store.set(wallet_log_key(entry.id), entry.model_dump(mode="json"))
        length = await self.store.lpush(list_key, entry.id)
        if length > self.max_logs:
            for evicted in await self.store.lrange(list_key, self.max_logs, -1):
                await self.store.delete(wallet_log_key(evicted))
            await self.store.ltrim(list_key, 0, self.max_logs - 1)
        return entry

    async def list_logs(self, wallet_id: str, limit: Optional[int] = None) -> list[WalletLogEntry]:
        if limit is not None and limit <= 0:
            return []
        stop = -1 if limit is None else limit - 1
        entries = []
        for log_id in await self.store.lrange(wallet_logs_key(wallet_id), 0, stop):
            data = await self.store.get(wallet_log_key(log_id))
            if data is not None:
                entries.append(WalletLogEntry.model_validate(data))
        return entries

    # ------------------------------------------------------------------
    # Tracked tokens and balances
    # ------------------------------------------------------------------

    async def track_token(self, wallet_id: str, token_address: str) -> None:
        """Add an ERC-20 to the wallet's tracked tokens (stored lowercased)."""
        await self.require_wallet(wallet_id)
        if not is_address(token_address):
            raise WalletConfigError(f"Invalid token address: {token_address}")
        await self.store.sadd(wallet_tokens_key(wallet_id), token_address.lower())
        logger.debug(f"Wallet {wallet_id} now tracks {token_address.lower()}")

    async def tracked_tokens(self, wallet_id: str) -> list[str]:
        return sorted(await self.store.smembers(wallet_tokens_key(wallet_id)))

    async def _tracked_balances(self, record: WalletRecord, balances: dict[str, str]) -> None:
        standard = {t.address.lower() for t in STANDARD_TOKENS.values()}
        for address in await self.tracked_tokens(record.id):
            if address in standard:
                continue
            try:
                metadata = await self.tokens.get(address)
                raw = await asyncio.to_thread(
                    self.provider.get_token_balance, address, record.address, SWAP_CHAIN
                )
            except ExecutionError as exc:
                logger.warning(f"Skipping tracked token {address} for wallet {record.id}: {exc}")
                continue
            if raw <= 0:
                continue
            label = metadata.get("symbol") or address
            if label in balances:
                label = address
            balances[label] = format_units(raw, int(metadata.get("decimals", DEFAULT_DECIMALS)))

    async def get_balances(self, wallet_id: str, chain: str = SWAP_CHAIN) -> dict[str, str]:
        """Native balance plus, on Base, the standard and tracked token balances.

        Tracked tokens are keyed by symbol (by address when the symbol is
        already taken) and only listed while their balance is non-zero.
        """
        record = await self.require_wallet(wallet_id)
        chain_info = get_chain(chain)
        native = await asyncio.to_thread(self.provider.get_native_balance, record.address, chain)
        balances = {chain_info.native_symbol: format_units(native, 18)}
        if chain == SWAP_CHAIN:
            for symbol, token in STANDARD_TOKENS.items():
                raw = await asyncio.to_thread(
                    self.provider.get_token_balance, token.address, record.address, chain
                )
                balances[symbol] = format_units(raw, token.decimals)
            await self._tracked_balances(record, balances)
        return balances

    # ------------------------------------------------------------------
    # Manual transactions
    # ------------------------------------------------------------------

    async def _logged(self, record: WalletRecord, action: str, details: dict[str, Any], coro):
        """Await *coro*, writing a success or error wallet log for it."""
        try:
            tx_hash = await coro
        except ExecutionError as exc:
            await self.record_log(
                record.id, action, LogStatus.ERROR, message=str(exc), details=details
            )
            raise
        await self.record_log(record.id, action, LogStatus.SUCCESS, tx_hash=tx_hash, details=details)
        return tx_hash

    async def send_once(self, wallet_id: str, to_address: str, amount: str, chain: str = SWAP_CHAIN) -> str:
        """Send *amount* ETH from the wallet to *to_address*."""
        record = await self.require_wallet(wallet_id)
        if not is_address(to_address):
            raise WalletConfigError(f"Invalid recipient address: {to_address}")
        value = parse_units(amount, 18)
        chain_id = get_chain(chain).chain_id

        async def _send() -> str:
            async with self.lock.hold(chain_id, record.address):
                return await asyncio.to_thread(
                    self.provider.send_native, record.private_key, to_address, value, chain
                )

        details = {"to": to_address, "amount": amount, "chain": chain}
        return await self._logged(record, "send", details, _send())

    async def _resolve_token(self, token: str) -> tuple[str, int]:
        if is_address(token):
            return token, await self.tokens.decimals(token)
        standard = get_standard_token(token)
        return standard.address, standard.decimals

    async def swap_once(self, wallet_id: str, from_token: str, to_token: str, amount: str) -> str:
        """Swap *amount* of *from_token* into *to_token*; one side must be ETH."""
        record = await self.require_wallet(wallet_id)
        if self.swaps is None:
            raise ExecutionError("Swaps are not configured")
        chain_id = get_chain(SWAP_CHAIN).chain_id
        sell, buy = from_token.upper(), to_token.upper()

        if sell == "ETH" and buy != "ETH":
            token, _ = await self._resolve_token(to_token)
            raw = parse_units(amount, 18)
        elif buy == "ETH" and sell != "ETH":
            token, decimals = await self._resolve_token(from_token)
            raw = parse_units(amount, decimals)
        else:
            raise UnsupportedTokenError(f"Invalid swap pair: {from_token} -> {to_token}")

        async def _swap() -> str:
            async with self.lock.hold(chain_id, record.address):
                if sell == "ETH":
                    outcome = await self.swaps.swap_eth_for_token(record.private_key, token, raw)
                else:
                    outcome = await self.swaps.swap_token_for_eth(record.private_key, token, raw)
                return outcome.tx_hash

        details = {"from_token": from_token, "to_token": to_token, "amount": amount}
        return await self._logged(record, "swap", details, _swap())

    async def drain(self, wallet_id: str, recipient: str, chain: str = SWAP_CHAIN) -> dict[str, Any]:
        """Move every standard token and then all spendable ETH to *recipient*.

        Returns ``{"tokens": {symbol: tx_hash}, "native_tx": ..., "native_amount": ...}``.
        """
        record = await self.require_wallet(wallet_id)
        if not is_address(recipient):
            raise WalletConfigError(f"Invalid recipient address: {recipient}")
        chain_id = get_chain(chain).chain_id
        report: dict[str, Any] = {"tokens": {}, "native_tx": None, "native_amount": "0"}

        async with self.lock.hold(chain_id, record.address):
            if chain == SWAP_CHAIN:
                for symbol, token in STANDARD_TOKENS.items():
                    balance = await asyncio.to_thread(
                        self.provider.get_token_balance, token.address, record.address, chain
                    )
                    if balance <= 0:
                        continue

                    async def _transfer(token=token, balance=balance) -> str:
                        tx = await asyncio.to_thread(
                            self.provider.transfer_token,
                            record.private_key, token.address, recipient, balance, chain,
                        )
                        await asyncio.to_thread(self.provider.wait_for_receipt, tx, chain)
                        return tx

                    details = {"token": symbol, "amount": format_units(balance, token.decimals),
                               "to": recipient}
                    report["tokens"][symbol] = await self._logged(
                        record, "drain_token", details, _transfer()
                    )

            balance = await asyncio.to_thread(self.provider.get_native_balance, record.address, chain)
            gas_price = await asyncio.to_thread(self.provider.get_gas_price, chain)
            gas_cost = gas_price * NATIVE_TRANSFER_GAS
            cushion = max(DRAIN_MIN_CUSHION_WEI, gas_cost // 5)
            value = balance - gas_cost - cushion
            if value > 0:
                details = {"amount": format_units(value, 18), "to": recipient, "chain": chain}
                report["native_tx"] = await self._logged(
                    record, "drain_eth", details,
                    asyncio.to_thread(
                        self.provider.send_native, record.private_key, recipient, value, chain
                    ),
                )
                report["native_amount"] = format_units(value, 18)
            else:
                logger.info(f"Nothing left to drain from {record.address} after gas")
        return report
