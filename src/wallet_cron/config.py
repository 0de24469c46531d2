"""Configuration system for wallet-cron.

Loads settings from ``.wallet-cron/config.yaml``, supports environment
variable expansion, and provides defaults for every section so that an
empty or missing file still yields a working configuration.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Environment-variable expansion helper
# ---------------------------------------------------------------------------

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)\}")


def _expand_env_vars(value: str) -> str:
    """Replace ``${VAR_NAME}`` placeholders with their environment values.

    If the variable is not set the placeholder is left as-is so that
    :func:`resolve_secret` can treat it as unset later.
    """

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))

    return _ENV_VAR_RE.sub(_replace, value)


def _expand_env_recursive(obj: object) -> object:
    """Walk an arbitrary nested structure and expand env vars in strings."""
    if isinstance(obj, str):
        return _expand_env_vars(obj)
    if isinstance(obj, dict):
        return {k: _expand_env_recursive(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_expand_env_recursive(item) for item in obj]
    return obj


def resolve_secret(value: str | None) -> str:
    """Expand ``${VAR}`` placeholders and return ``""`` if any remain unset."""
    if not value:
        return ""
    expanded = _expand_env_vars(value)
    if _ENV_VAR_RE.search(expanded):
        return ""
    return expanded


# ---------------------------------------------------------------------------
# Pydantic v2 models
# ---------------------------------------------------------------------------


class ChainOverride(BaseModel):
    """Per-chain overrides (e.g. a private RPC endpoint)."""

    rpc_url: Optional[str] = None


class StorageConfig(BaseModel):
    """Key-value store backend."""

    backend: str = "sqlite"  # "sqlite" or "memory"
    path: str = "store.db"   # relative to the app directory


class LockConfig(BaseModel):
    """Per-address nonce lock timings."""

    lease_seconds: int = 60
    retry_delay_seconds: float = 0.1
    max_wait_seconds: float = 10.0


class SchedulerConfig(BaseModel):
    """Run loop limits."""

    max_consecutive_failures: int = 3
    max_logs_per_job: int = 100
    max_parallel_jobs: int = 4
    job_timeout_seconds: float = 120.0


class ReserveConfig(BaseModel):
    """How much native asset a "use max" job leaves behind for gas."""

    floor_eth: str = "0.0005"
    gas_cushion_fraction: float = 0.2
    transfer_gas_units: int = 21000
    swap_gas_units: int = 350000


class SwapConfig(BaseModel):
    """0x swap API settings."""

    api_key: str = "${ZERO_EX_API_KEY}"
    price_url: str = "https://api.0x.org/swap/allowance-holder/price"
    quote_url: str = "https://api.0x.org/swap/allowance-holder/quote"
    timeout_seconds: float = 30.0


class DashboardConfig(BaseModel):
    """HTTP API settings."""

    host: str = "127.0.0.1"
    port: int = 8430
    cron_secret: str = "${CRON_SECRET}"
    # Accept x-cron / vercel-cron headers in place of the bearer secret
    trust_platform_cron_headers: bool = False


class AppConfig(BaseModel):
    """Root configuration object."""

    chains: dict[str, ChainOverride] = Field(default_factory=dict)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    lock: LockConfig = Field(default_factory=LockConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    reserve: ReserveConfig = Field(default_factory=ReserveConfig)
    swap: SwapConfig = Field(default_factory=SwapConfig)
    dashboard: DashboardConfig = Field(default_factory=DashboardConfig)

    def rpc_overrides(self) -> dict[str, str]:
        """Return ``{chain_name: rpc_url}`` for chains with an explicit URL."""
        return {
            name: override.rpc_url
            for name, override in self.chains.items()
            if override.rpc_url
        }


# ---------------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------------


def get_app_dir(base: Path | None = None, *, create: bool = True) -> Path:
    """Return the ``.wallet-cron/`` directory under *base* (default: cwd)."""
    if base is None:
        base = Path.cwd()
    app_dir = base / ".wallet-cron"
    if create:
        app_dir.mkdir(parents=True, exist_ok=True)
    return app_dir


def load_config(path: Path) -> AppConfig:
    """Load and validate configuration from a YAML file.

    Environment variable placeholders (``${VAR}``) are expanded before
    validation. A missing file yields the defaults.
    """
    if not path.exists():
        return AppConfig()
    raw_text = path.read_text(encoding="utf-8")
    raw_data = yaml.safe_load(raw_text) or {}
    expanded = _expand_env_recursive(raw_data)
    return AppConfig.model_validate(expanded)


def save_config(config: AppConfig, path: Path) -> None:
    """Serialize an :class:`AppConfig` to a YAML file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump(mode="python", exclude_none=True)
    with open(path, "w", encoding="utf-8") as fh:
        yaml.dump(data, fh, default_flow_style=False, sort_keys=False)
