"""Distributed per-address lock that serializes transaction submission.

Two on-chain actions from the same address must never pick a nonce at the
same time. Every balance-mutating operation (scheduled or manual) therefore
runs inside :meth:`NonceLock.hold` keyed on ``(chain_id, address)``.

The lock lives in the shared key-value store under
``nonce:lock:{chain_id}:{address}``. The value is a random holder token.
Keys carry a lease so that a crashed holder cannot block an address forever.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, TypeVar

from wallet_cron.errors import LockTimeout
from wallet_cron.storage.kv import BaseKVStore

logger = logging.getLogger("wallet_cron.wallet.nonce_lock")

T = TypeVar("T")

LOCK_TTL = 60
LOCK_RETRY_DELAY = 0.1
MAX_LOCK_WAIT = 10.0


def lock_key(chain_id: int | str | None, address: str) -> str:
    return f"nonce:lock:{chain_id or 'default'}:{address.lower()}"


def _new_token() -> str:
    return f"{int(time.time() * 1000)}-{secrets.token_hex(4)}"


class NonceLock:
    """Poll-based mutual exclusion on top of a :class:`BaseKVStore`.

    Parameters
    ----------
    store:
        Shared store. When it offers an atomic ``set_if_absent`` the lock
        uses it; otherwise it falls back to write-then-verify.
    lease_seconds:
        Lease after which the store drops an unreleased lock.
    retry_delay:
        Sleep between acquisition attempts.
    max_wait:
        Total time to keep trying before raising :class:`LockTimeout`.
    """

    def __init__(
        self,
        store: BaseKVStore,
        lease_seconds: int = LOCK_TTL,
        retry_delay: float = LOCK_RETRY_DELAY,
        max_wait: float = MAX_LOCK_WAIT,
    ) -> None:
        self.store = store
        self.lease_seconds = lease_seconds
        self.retry_delay = retry_delay
        self.max_wait = max_wait
        self._warned_no_ttl = False

    # ------------------------------------------------------------------
    # Acquire / release
    # ------------------------------------------------------------------

    async def _try_atomic(self, key: str, token: str) -> bool:
        ttl = self.lease_seconds if self.store.supports_ttl else None
        if ttl is None:
            self._warn_no_ttl(key)
        return await self.store.set_if_absent(key, token, ttl)

    async def _try_verify(self, key: str, token: str) -> bool:
        if await self.store.get(key):
            return False
        await self.store.set(key, token)
        try:
            await self.store.expire(key, self.lease_seconds)
        except NotImplementedError:
            self._warn_no_ttl(key)
        return await self.store.get(key) == token

    def _warn_no_ttl(self, key: str) -> None:
        if not self._warned_no_ttl:
            logger.warning(
                f"Expire not supported by store, lock {key} will not auto-expire"
            )
            self._warned_no_ttl = True

    async def acquire(self, chain_id: int | str | None, address: str) -> str:
        """Block until the lock is ours and return the holder token.

        Raises :class:`LockTimeout` after ``max_wait`` seconds.
        """
        key = lock_key(chain_id, address)
        token = _new_token()
        attempt = self._try_atomic if self.store.supports_atomic_set else self._try_verify
        deadline = time.monotonic() + self.max_wait

        while True:
            if await attempt(key, token):
                logger.info(f"Acquired nonce lock for {address} (lock: {token})")
                return token
            if time.monotonic() >= deadline:
                break
            await asyncio.sleep(self.retry_delay)

        logger.warning(
            f"Failed to acquire nonce lock for {address} within {self.max_wait}s"
        )
        raise LockTimeout(
            f"Failed to acquire nonce lock for address {address}. "
            "Another transaction may be in progress."
        )

    async def release(self, chain_id: int | str | None, address: str, token: str) -> bool:
        """Delete the lock if *token* still holds it. Returns whether it did."""
        key = lock_key(chain_id, address)
        current = await self.store.get(key)
        if current != token:
            logger.warning(
                f"Lock ID mismatch for {address}. Expected {token}, got {current}"
            )
            return False
        await self.store.delete(key)
        logger.info(f"Released nonce lock for {address} (lock: {token})")
        return True

    # ------------------------------------------------------------------
    # Convenience wrappers
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def hold(self, chain_id: int | str | None, address: str) -> AsyncIterator[str]:
        token = await self.acquire(chain_id, address)
        try:
            yield token
        finally:
            await self.release(chain_id, address, token)

    async def with_lock(
        self,
        chain_id: int | str | None,
        address: str,
        fn: Callable[[], Awaitable[T]],
    ) -> T:
        """Await ``fn()`` while holding the lock for ``(chain_id, address)``."""
        async with self.hold(chain_id, address):
            return await fn()
