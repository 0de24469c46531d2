"""Tests for the chain registry and RPC endpoint selection."""

import pytest

from wallet_cron.errors import UnsupportedChainError
from wallet_cron.wallet.chains import get_chain, resolve_rpc_url


def test_known_chains():
    assert get_chain("base").chain_id == 8453
    assert get_chain("sepolia").chain_id == 11155111
    assert get_chain("mainnet").chain_id == 1


def test_unknown_chain():
    with pytest.raises(UnsupportedChainError):
        get_chain("polygon")


class TestResolveRpcUrl:
    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch):
        for var in ("BASE_RPC_URL", "ETH_RPC_URL", "INFURA_API_KEY"):
            monkeypatch.delenv(var, raising=False)

    def test_override_wins(self, monkeypatch):
        monkeypatch.setenv("BASE_RPC_URL", "https://env.example")
        assert resolve_rpc_url(get_chain("base"), {"base": "https://cfg.example"}) == "https://cfg.example"

    def test_env_var(self, monkeypatch):
        monkeypatch.setenv("BASE_RPC_URL", "https://env.example")
        assert resolve_rpc_url(get_chain("base")) == "https://env.example"

    def test_infura_only_where_served(self, monkeypatch):
        monkeypatch.setenv("INFURA_API_KEY", "abc")
        assert resolve_rpc_url(get_chain("sepolia")) == "https://sepolia.infura.io/v3/abc"
        assert resolve_rpc_url(get_chain("base")) == get_chain("base").rpc_url

    def test_public_fallback(self):
        assert resolve_rpc_url(get_chain("mainnet")) == "https://eth.llamarpc.com"
