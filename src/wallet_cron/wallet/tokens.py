"""Well-known Base tokens and an ERC-20 metadata cache."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from wallet_cron.errors import ChainError, UnsupportedTokenError
from wallet_cron.storage.models import is_address

logger = logging.getLogger("wallet_cron.wallet.tokens")

DEFAULT_DECIMALS = 18


@dataclass(frozen=True)
class Token:
    symbol: str
    name: str
    address: str
    decimals: int


WETH = Token("WETH", "Wrapped Ether", "0x4200000000000000000000000000000000000006", 18)
USDC = Token("USDC", "USD Coin", "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913", 6)
TEST_TOKEN = Token(
    "TEST",
    "Test Token",
    os.environ.get("DEFAULT_TOKEN_ADDRESS", "0x4961015f34b0432e86e6d9841858c4ff87d4bb07"),
    18,
)
WRPLT = Token("WRPLT", "Wrapped RPLT", "0x4db6506600d00afdbdf1c0a331b64cf6ebf43b07", 18)

STANDARD_TOKENS: dict[str, Token] = {t.symbol: t for t in (WETH, USDC, TEST_TOKEN, WRPLT)}


def get_standard_token(symbol: str) -> Token:
    """Look up a standard token by symbol (case-insensitive)."""
    token = STANDARD_TOKENS.get(symbol.upper())
    if token is None:
        raise UnsupportedTokenError(
            f"Unknown token '{symbol}'. Available: {sorted(STANDARD_TOKENS)}"
        )
    return token


class TokenMetadataCache:
    """Caches ``name``/``symbol``/``decimals`` per token address.

    Standard tokens are pre-seeded so they never hit the chain.
    """

    def __init__(self, provider, chain_name: str = "base") -> None:
        self.provider = provider
        self.chain_name = chain_name
        self._cache: dict[str, dict] = {
            t.address.lower(): {"name": t.name, "symbol": t.symbol, "decimals": t.decimals}
            for t in STANDARD_TOKENS.values()
        }

    async def get(self, address: str) -> dict:
        if not is_address(address):
            raise UnsupportedTokenError(f"Invalid token address: {address}")
        key = address.lower()
        if key not in self._cache:
            self._cache[key] = await asyncio.to_thread(
                self.provider.get_token_metadata, address, self.chain_name
            )
        return self._cache[key]

    async def decimals(self, address: str, default: int = DEFAULT_DECIMALS) -> int:
        """Token decimals, or *default* when the contract cannot be read."""
        try:
            return int((await self.get(address))["decimals"])
        except ChainError as exc:
            logger.warning(f"Could not read decimals for {address}, using {default}: {exc}")
            return default


# ---------------------------------------------------------------------------
# Unit conversion
# ---------------------------------------------------------------------------


def parse_units(amount: str | Decimal, decimals: int) -> int:
    """Convert a human decimal amount to raw integer units (truncating)."""
    try:
        value = Decimal(str(amount))
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {amount!r}") from None
    return int(value * (Decimal(10) ** decimals))


def format_units(raw: int, decimals: int) -> str:
    """Render raw integer units as a plain decimal string, e.g. ``0.0095``."""
    value = (Decimal(raw) / (Decimal(10) ** decimals)).normalize()
    return format(value, "f")
