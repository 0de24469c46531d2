"""Job definitions and execution logs on top of the key-value store."""

from __future__ import annotations

import logging
from typing import Optional

from wallet_cron.errors import NotFoundError
from wallet_cron.storage.kv import BaseKVStore
from wallet_cron.storage.models import AnyJob, ExecutionLogEntry, parse_job

logger = logging.getLogger("wallet_cron.scheduler.store")

ACTIVE_JOBS_KEY = "cron:jobs:active"


def job_key(job_id: str) -> str:
    return f"cron:job:{job_id}"


def job_logs_key(job_id: str) -> str:
    return f"cron:job:{job_id}:logs"


def log_key(log_id: str) -> str:
    return f"cron:log:{log_id}"


def wallet_jobs_key(wallet_id: str) -> str:
    return f"wallet:{wallet_id}:jobs"


class JobStore:
    """CRUD for cron jobs plus a bounded per-job execution log."""

    def __init__(self, store: BaseKVStore, max_logs: int = 100) -> None:
        self.store = store
        self.max_logs = max_logs

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def create_job(self, job: AnyJob) -> AnyJob:
        await self.store.set(job_key(job.id), job.model_dump(mode="json"))
        await self.store.sadd(ACTIVE_JOBS_KEY, job.id)
        if job.wallet_id:
            await self.store.sadd(wallet_jobs_key(job.wallet_id), job.id)
        logger.info(f"Created job {job.id} ({job.type}, schedule '{job.schedule}')")
        return job

    async def get_job(self, job_id: str) -> Optional[AnyJob]:
        data = await self.store.get(job_key(job_id))
        if data is None:
            return None
        return parse_job(data)

    async def require_job(self, job_id: str) -> AnyJob:
        job = await self.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        return job

    async def list_jobs(self) -> list[AnyJob]:
        jobs = []
        for job_id in await self.store.smembers(ACTIVE_JOBS_KEY):
            job = await self.get_job(job_id)
            if job is None:
                # id left behind by a partial delete
                logger.warning(f"Job {job_id} is listed as active but has no record")
                continue
            jobs.append(job)
        return jobs

    async def save_job(self, job: AnyJob) -> None:
        """Persist the whole job record in one write."""
        await self.store.set(job_key(job.id), job.model_dump(mode="json"))

    async def update_job(self, previous: AnyJob, job: AnyJob) -> AnyJob:
        """Replace a job definition, moving it between wallet job sets if its owner changed."""
        await self.save_job(job)
        if previous.wallet_id != job.wallet_id:
            if previous.wallet_id:
                await self.store.srem(wallet_jobs_key(previous.wallet_id), job.id)
            if job.wallet_id:
                await self.store.sadd(wallet_jobs_key(job.wallet_id), job.id)
        logger.info(f"Updated job {job.id} ({job.type}, schedule '{job.schedule}')")
        return job

    async def set_enabled(self, job_id: str, enabled: bool) -> AnyJob:
        """Pause or resume a job. Resuming clears the failure counter."""
        job = await self.require_job(job_id)
        job.enabled = enabled
        if enabled:
            job.consecutive_failures = 0
        await self.save_job(job)
        logger.info(f"Job {job_id} {'resumed' if enabled else 'paused'}")
        return job

    async def delete_job(self, job_id: str) -> None:
        job = await self.require_job(job_id)
        for log_id in await self.store.lrange(job_logs_key(job_id), 0, -1):
            await self.store.delete(log_key(log_id))
        await self.store.delete(job_logs_key(job_id))
        await self.store.delete(job_key(job_id))
        await self.store.srem(ACTIVE_JOBS_KEY, job_id)
        if job.wallet_id:
            await self.store.srem(wallet_jobs_key(job.wallet_id), job_id)
        logger.info(f"Deleted job {job_id}")

    async def jobs_for_wallet(self, wallet_id: str) -> list[str]:
        return await self.store.smembers(wallet_jobs_key(wallet_id))

    # ------------------------------------------------------------------
    # Execution logs
    # ------------------------------------------------------------------

    async def append_log(self, entry: ExecutionLogEntry) -> None:
        """Record *entry* and keep only the newest ``max_logs`` for its job."""
        list_key = job_logs_key(entry.job_id)
        await self.store.set(log_key(entry.id), entry.model_dump(mode="json"))
        length = await self.store.lpush(list_key, entry.id)
        if length > self.max_logs:
            for evicted in await self.store.lrange(list_key, self.max_logs, -1):
                await self.store.delete(log_key(evicted))
            await self.store.ltrim(list_key, 0, self.max_logs - 1)

    async def list_logs(self, job_id: str, limit: Optional[int] = None) -> list[ExecutionLogEntry]:
        """Log entries for *job_id*, newest first."""
        stop = -1 if limit is None else limit - 1
        if limit is not None and limit <= 0:
            return []
        entries = []
        for log_id in await self.store.lrange(job_logs_key(job_id), 0, stop):
            data = await self.store.get(log_key(log_id))
            if data is not None:
                entries.append(ExecutionLogEntry.model_validate(data))
        return entries
