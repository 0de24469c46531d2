"""Application object wiring config, storage, chain access and the scheduler."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional

from pydantic import ValidationError

from wallet_cron.config import AppConfig, get_app_dir, load_config, save_config
from wallet_cron.errors import (
    CronSyntaxError,
    JobConfigError,
    UnsupportedChainError,
    WalletCronError,
)
from wallet_cron.scheduler.cron import validate_expression
from wallet_cron.scheduler.executor import ActionExecutor
from wallet_cron.scheduler.runner import JobRunner
from wallet_cron.scheduler.store import JobStore
from wallet_cron.storage import get_store
from wallet_cron.storage.kv import BaseKVStore
from wallet_cron.storage.models import (
    COMMON_JOB_FIELDS,
    AnyJob,
    JobType,
    TokenSwapJob,
    parse_job,
)
from wallet_cron.wallet.chains import get_chain
from wallet_cron.wallet.keystore import address_from_key
from wallet_cron.wallet.manager import WalletManager
from wallet_cron.wallet.nonce_lock import NonceLock
from wallet_cron.wallet.provider import Web3Provider
from wallet_cron.wallet.swap import SWAP_CHAIN, SwapService, ZeroExClient
from wallet_cron.wallet.tokens import TokenMetadataCache

logger = logging.getLogger("wallet_cron.app")

CONFIG_FILE = "config.yaml"

# Managed by the runner and by pause/resume, never by an edit.
FIXED_JOB_FIELDS = frozenset({"id", "created_at", "enabled", "last_run_time", "consecutive_failures"})


def _first_error(exc: ValidationError) -> str:
    err = exc.errors()[0]
    loc = ".".join(str(part) for part in err.get("loc", ()) if part not in JobType._value2member_map_)
    return f"{loc}: {err['msg']}" if loc else err["msg"]


class Application:
    """Everything a tick, the HTTP API or the CLI needs, built from one config.

    *provider* and *quotes* can be replaced (tests pass in fakes).
    """

    def __init__(
        self,
        config: AppConfig,
        app_dir: Path,
        store: BaseKVStore,
        provider: Any = None,
        quotes: Any = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.config = config
        self.app_dir = app_dir
        self.store = store
        self.provider = provider or Web3Provider(config.rpc_overrides())
        self.quotes = quotes or ZeroExClient(config.swap)

        self.lock = NonceLock(
            store,
            lease_seconds=config.lock.lease_seconds,
            retry_delay=config.lock.retry_delay_seconds,
            max_wait=config.lock.max_wait_seconds,
        )
        self.tokens = TokenMetadataCache(self.provider)
        self.swaps = SwapService(self.provider, self.quotes)
        self.executor = ActionExecutor(
            self.provider, self.swaps, self.lock, self.tokens, config.reserve
        )
        self.jobs = JobStore(store, max_logs=config.scheduler.max_logs_per_job)
        self.wallets = WalletManager(
            store, self.provider, self.lock, self.swaps, self.tokens,
            max_logs=config.scheduler.max_logs_per_job,
        )
        self.runner = JobRunner(
            self.jobs, self.executor, config.scheduler, clock=clock, wallets=self.wallets
        )

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    async def load(cls, base_path: Path | None = None, **kwargs: Any) -> Application:
        """Load ``.wallet-cron/config.yaml`` under *base_path* and connect the store."""
        app_dir = get_app_dir(base_path)
        config = load_config(app_dir / CONFIG_FILE)
        store = get_store(config.storage.backend, app_dir, config.storage.path)
        await store.connect()
        return cls(config, app_dir, store, **kwargs)

    @classmethod
    async def init(cls, base_path: Path | None = None, config: Optional[AppConfig] = None) -> Application:
        """Write a default config (unless one exists) and load it."""
        app_dir = get_app_dir(base_path)
        config_path = app_dir / CONFIG_FILE
        if not config_path.exists():
            save_config(config or AppConfig(), config_path)
            logger.info(f"Wrote default configuration to {config_path}")
        return await cls.load(base_path)

    async def shutdown(self) -> None:
        await self.store.close()

    # ------------------------------------------------------------------
    # Job definitions
    # ------------------------------------------------------------------

    async def _apply_wallet(self, data: dict[str, Any]) -> None:
        wallet_id = data.get("wallet_id")
        if wallet_id:
            wallet = await self.wallets.require_wallet(wallet_id)
            data["address"] = wallet.address
            data["private_key"] = wallet.private_key

    def _validate(self, data: dict[str, Any]) -> AnyJob:
        try:
            job = parse_job(data)
        except ValidationError as exc:
            raise JobConfigError(_first_error(exc)) from exc

        try:
            validate_expression(job.schedule)
            get_chain(job.chain)
        except (CronSyntaxError, UnsupportedChainError) as exc:
            raise JobConfigError(str(exc)) from exc

        if job.type != JobType.ETH_TRANSFER and job.chain != SWAP_CHAIN:
            raise JobConfigError(f"Swap jobs are only supported on {SWAP_CHAIN}")

        try:
            key_address = address_from_key(job.private_key)
        except Exception as exc:
            raise JobConfigError(f"private_key is not a valid key: {exc}") from exc
        if key_address.lower() != job.address.lower():
            raise JobConfigError("private_key does not control address")
        return job

    async def _track_job_token(self, job: AnyJob) -> bool:
        if not isinstance(job, TokenSwapJob) or not job.wallet_id:
            return False
        try:
            await self.wallets.track_token(job.wallet_id, job.token_address)
        except WalletCronError as exc:
            logger.warning(f"Could not track token {job.token_address} for job {job.id}: {exc}")
            return False
        return True

    async def create_job(self, data: dict[str, Any]) -> AnyJob:
        """Validate a raw job definition and persist it.

        When ``wallet_id`` is given the job's ``address`` and ``private_key``
        are taken from that wallet, and a token_swap job's token is added to
        the wallet's tracked tokens.

        Raises
        ------
        JobConfigError
            If the definition is invalid.
        NotFoundError
            If ``wallet_id`` names an unknown wallet.
        """
        data = dict(data)
        await self._apply_wallet(data)
        job = await self.jobs.create_job(self._validate(data))
        await self._track_job_token(job)
        return job

    async def update_job(self, job_id: str, changes: dict[str, Any]) -> AnyJob:
        """Apply a partial edit to an existing job.

        Fields missing from *changes* keep their stored value. Changing
        ``type`` drops the old variant's own fields, so the new variant's
        fields must be supplied. Turning on ``use_max`` without an ``amount``
        clears the stored amount. Run state (``enabled``, ``last_run_time``,
        ``consecutive_failures``) is left alone; use pause/resume for that.
        The result goes through the same checks as :meth:`create_job`.
        """
        current = await self.jobs.require_job(job_id)
        changes = {k: v for k, v in changes.items() if k not in FIXED_JOB_FIELDS}

        data = current.model_dump()
        if changes.get("type", current.type) != current.type:
            data = {k: v for k, v in data.items() if k in COMMON_JOB_FIELDS}
        data.update(changes)
        if changes.get("use_max") and "amount" not in changes:
            data["amount"] = None

        await self._apply_wallet(data)
        job = await self.jobs.update_job(current, self._validate(data))
        await self._track_job_token(job)
        return job

    async def backfill_tokens(self) -> dict[str, int]:
        """Track the token of every existing token_swap job on its wallet."""
        tracked = skipped = errors = 0
        for job in await self.jobs.list_jobs():
            if not isinstance(job, TokenSwapJob) or not job.wallet_id:
                skipped += 1
            elif await self._track_job_token(job):
                tracked += 1
            else:
                errors += 1
        logger.info(f"Token backfill: {tracked} tracked, {skipped} skipped, {errors} failed")
        return {"tracked": tracked, "skipped": skipped, "errors": errors}
