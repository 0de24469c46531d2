"""Chain definitions for supported EVM networks."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from wallet_cron.errors import UnsupportedChainError


@dataclass(frozen=True)
class Chain:
    """An EVM-compatible blockchain network."""

    name: str
    chain_id: int
    rpc_url: str
    native_symbol: str
    explorer_url: str
    rpc_env_var: str
    infura_network: Optional[str] = None


CHAINS: dict[str, Chain] = {
    "base": Chain(
        name="base",
        chain_id=8453,
        rpc_url="https://base.publicnode.com",
        native_symbol="ETH",
        explorer_url="https://basescan.org",
        rpc_env_var="BASE_RPC_URL",
    ),
    "mainnet": Chain(
        name="mainnet",
        chain_id=1,
        rpc_url="https://eth.llamarpc.com",
        native_symbol="ETH",
        explorer_url="https://etherscan.io",
        rpc_env_var="ETH_RPC_URL",
        infura_network="mainnet",
    ),
    "sepolia": Chain(
        name="sepolia",
        chain_id=11155111,
        rpc_url="https://rpc.sepolia.org",
        native_symbol="ETH",
        explorer_url="https://sepolia.etherscan.io",
        rpc_env_var="ETH_RPC_URL",
        infura_network="sepolia",
    ),
}


def get_chain(name: str) -> Chain:
    """Get a chain by name. Raises ``UnsupportedChainError`` if not found."""
    if name not in CHAINS:
        raise UnsupportedChainError(
            f"Unsupported chain '{name}'. Available: {list_chain_names()}"
        )
    return CHAINS[name]


def list_chain_names() -> list[str]:
    """Return the names of all supported chains."""
    return list(CHAINS.keys())


def resolve_rpc_url(chain: Chain, overrides: dict[str, str] | None = None) -> str:
    """Pick the RPC endpoint for *chain*.

    Order: explicit config override, the chain's env var, Infura (if
    ``INFURA_API_KEY`` is set and Infura serves the network), public RPC.
    """
    if overrides and overrides.get(chain.name):
        return overrides[chain.name]
    from_env = os.environ.get(chain.rpc_env_var)
    if from_env:
        return from_env
    infura_key = os.environ.get("INFURA_API_KEY")
    if infura_key and chain.infura_network:
        return f"https://{chain.infura_network}.infura.io/v3/{infura_key}"
    return chain.rpc_url
