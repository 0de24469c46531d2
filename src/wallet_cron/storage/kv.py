"""Key-value store contract and the in-process backend.

The scheduler core only needs a small Redis-like surface: plain values,
sets, lists with trimming, and best-effort key expiry. Backends advertise
what they can do through ``supports_ttl`` and ``supports_atomic_set`` so
that callers such as the nonce lock can pick the strongest algorithm
available.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any, Optional


class BaseKVStore(ABC):
    """Abstract base class for key-value storage backends."""

    #: Whether :meth:`expire` (and ``ttl`` on :meth:`set_if_absent`) is honoured.
    supports_ttl: bool = True
    #: Whether :meth:`set_if_absent` is atomic across concurrent callers.
    supports_atomic_set: bool = True

    async def connect(self) -> None:
        """Open any underlying resources. No-op by default."""

    async def close(self) -> None:
        """Release any underlying resources. No-op by default."""

    # -- values ---------------------------------------------------------

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Return the JSON value stored at *key*, or ``None``."""

    @abstractmethod
    async def set(self, key: str, value: Any) -> None:
        """Store *value* at *key*, clearing any expiry."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove *key* (value, set or list). Missing keys are ignored."""

    @abstractmethod
    async def set_if_absent(
        self, key: str, value: Any, ttl_seconds: Optional[int] = None
    ) -> bool:
        """Store *value* only if *key* holds no live value.

        Returns ``True`` if this call wrote the value.
        """

    @abstractmethod
    async def expire(self, key: str, ttl_seconds: int) -> None:
        """Expire *key* after *ttl_seconds*.

        Raises ``NotImplementedError`` on backends without TTL support.
        """

    # -- sets -----------------------------------------------------------

    @abstractmethod
    async def sadd(self, key: str, member: str) -> None: ...

    @abstractmethod
    async def srem(self, key: str, member: str) -> None: ...

    @abstractmethod
    async def smembers(self, key: str) -> list[str]: ...

    # -- lists ----------------------------------------------------------

    @abstractmethod
    async def lpush(self, key: str, value: str) -> int:
        """Prepend *value* to the list at *key*; return the new length."""

    @abstractmethod
    async def lrange(self, key: str, start: int, stop: int) -> list[str]:
        """Return elements ``start..stop`` inclusive (``-1`` means the end)."""

    @abstractmethod
    async def ltrim(self, key: str, start: int, stop: int) -> None:
        """Keep only elements ``start..stop`` inclusive."""


def _slice_bounds(length: int, start: int, stop: int) -> tuple[int, int]:
    """Translate Redis-style inclusive indices into a Python slice."""
    if start < 0:
        start = max(length + start, 0)
    if stop < 0:
        stop = length + stop
    return start, min(stop, length - 1) + 1


class MemoryKVStore(BaseKVStore):
    """In-process store used for tests and single-process deployments.

    Expiry uses the monotonic clock and is applied lazily on access. All
    operations run without awaiting in between, so ``set_if_absent`` is
    atomic with respect to other coroutines on the same event loop.
    """

    def __init__(self, *, supports_ttl: bool = True, supports_atomic_set: bool = True) -> None:
        self.supports_ttl = supports_ttl
        self.supports_atomic_set = supports_atomic_set
        self._values: dict[str, Any] = {}
        self._expires: dict[str, float] = {}
        self._sets: dict[str, set[str]] = {}
        self._lists: dict[str, list[str]] = {}
        self._lock = asyncio.Lock()

    def _purge_if_expired(self, key: str) -> None:
        deadline = self._expires.get(key)
        if deadline is not None and time.monotonic() >= deadline:
            self._values.pop(key, None)
            self._expires.pop(key, None)

    async def get(self, key: str) -> Optional[Any]:
        self._purge_if_expired(key)
        return self._values.get(key)

    async def set(self, key: str, value: Any) -> None:
        self._values[key] = value
        self._expires.pop(key, None)

    async def delete(self, key: str) -> None:
        self._values.pop(key, None)
        self._expires.pop(key, None)
        self._sets.pop(key, None)
        self._lists.pop(key, None)

    async def set_if_absent(
        self, key: str, value: Any, ttl_seconds: Optional[int] = None
    ) -> bool:
        async with self._lock:
            self._purge_if_expired(key)
            if key in self._values:
                return False
            self._values[key] = value
            if ttl_seconds is not None and self.supports_ttl:
                self._expires[key] = time.monotonic() + ttl_seconds
            return True

    async def expire(self, key: str, ttl_seconds: int) -> None:
        if not self.supports_ttl:
            raise NotImplementedError("This store does not support key expiry")
        if key in self._values:
            self._expires[key] = time.monotonic() + ttl_seconds

    async def sadd(self, key: str, member: str) -> None:
        self._sets.setdefault(key, set()).add(member)

    async def srem(self, key: str, member: str) -> None:
        members = self._sets.get(key)
        if members is not None:
            members.discard(member)

    async def smembers(self, key: str) -> list[str]:
        return sorted(self._sets.get(key, set()))

    async def lpush(self, key: str, value: str) -> int:
        items = self._lists.setdefault(key, [])
        items.insert(0, value)
        return len(items)

    async def lrange(self, key: str, start: int, stop: int) -> list[str]:
        items = self._lists.get(key, [])
        lo, hi = _slice_bounds(len(items), start, stop)
        return list(items[lo:hi])

    async def ltrim(self, key: str, start: int, stop: int) -> None:
        items = self._lists.get(key)
        if items is None:
            return
        lo, hi = _slice_bounds(len(items), start, stop)
        self._lists[key] = items[lo:hi]
