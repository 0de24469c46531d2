"""The job run loop: one call to :meth:`JobRunner.run_due_jobs` is one tick.

A tick is triggered externally (HTTP endpoint, CLI, or the ``serve --every``
loop). It finds the jobs due in the current minute, executes them, and
updates each job's failure state and execution log.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Optional

from wallet_cron.config import SchedulerConfig
from wallet_cron.errors import JobConfigError
from wallet_cron.scheduler.cron import should_run
from wallet_cron.scheduler.executor import ActionExecutor
from wallet_cron.scheduler.store import JobStore
from wallet_cron.storage.models import (
    AnyJob,
    ExecutionLogEntry,
    ExecutionResult,
    LogStatus,
    TickReport,
)

logger = logging.getLogger("wallet_cron.scheduler.runner")


class JobRunner:
    """Runs due jobs and applies the success/failure state machine.

    Parameters
    ----------
    jobs:
        Job and log persistence.
    executor:
        Performs the on-chain action for one job.
    config:
        Failure threshold, parallelism and per-job timeout.
    clock:
        Returns the current local time. Injected so ticks can be replayed.
    wallets:
        Optional :class:`~wallet_cron.wallet.manager.WalletManager`; when
        present each attempt is also written to the owning wallet's log.
    """

    def __init__(
        self,
        jobs: JobStore,
        executor: ActionExecutor,
        config: SchedulerConfig | None = None,
        clock: Callable[[], datetime] = datetime.now,
        wallets: Any = None,
    ) -> None:
        self.jobs = jobs
        self.executor = executor
        self.config = config or SchedulerConfig()
        self.clock = clock
        self.wallets = wallets

    # ------------------------------------------------------------------
    # Single attempt
    # ------------------------------------------------------------------

    async def _execute(self, job: AnyJob) -> ExecutionResult:
        return await self.executor.execute(job, timeout=self.config.job_timeout_seconds)

    async def _record_wallet_log(self, job: AnyJob, result: ExecutionResult, manual: bool) -> None:
        if self.wallets is None or not job.wallet_id:
            return
        try:
            await self.wallets.record_log(
                job.wallet_id,
                f"cron_{job.type}",
                LogStatus.SUCCESS if result.ok else LogStatus.ERROR,
                tx_hash=result.tx_hash,
                message=result.error or f"{'Test run' if manual else 'Cron job'} '{job.name}' executed",
                details={"job_id": job.id, "amount": result.amount, **result.details},
            )
        except Exception as exc:
            logger.warning(f"Could not write wallet log for job {job.id}: {exc}")

    def _apply_outcome(self, job: AnyJob, result: ExecutionResult, now: datetime) -> None:
        if result.ok:
            job.consecutive_failures = 0
        else:
            job.consecutive_failures += 1
            threshold = self.config.max_consecutive_failures
            if job.consecutive_failures >= threshold and job.enabled:
                job.enabled = False
                result.auto_paused = True
                logger.warning(
                    f"Job {job.id} ({job.name}) auto-paused after "
                    f"{job.consecutive_failures} consecutive failures"
                )
        job.last_run_time = now

    async def _run_one(self, job: AnyJob, now: datetime) -> ExecutionResult:
        result = await self._execute(job)

        # Re-read so a pause or edit made while the action ran is not lost.
        current = await self.jobs.get_job(job.id)
        if current is None:
            logger.warning(f"Job {job.id} was deleted while running; result not recorded")
            return result

        self._apply_outcome(current, result, now)
        await self.jobs.save_job(current)
        await self.jobs.append_log(ExecutionLogEntry.from_result(result))
        await self._record_wallet_log(current, result, manual=False)
        return result

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def run_due_jobs(self) -> TickReport:
        """Execute every enabled job whose schedule matches the current minute.

        Jobs run concurrently (bounded by ``max_parallel_jobs``) and start in
        descending ``priority`` order. A failing job never affects the others.
        Store errors are re-raised once every job has finished.
        """
        now = self.clock()
        due: list[AnyJob] = []
        skipped: list[str] = []
        for job in await self.jobs.list_jobs():
            if job.enabled and should_run(job.schedule, job.last_run_time, now):
                due.append(job)
            else:
                skipped.append(job.id)

        if not due:
            logger.debug(f"No jobs due at {now.isoformat()}")
            return TickReport(processed_count=0, skipped=skipped)

        due.sort(key=lambda j: j.priority, reverse=True)
        logger.info(f"Running {len(due)} due job(s) at {now.isoformat()}")

        semaphore = asyncio.Semaphore(max(1, self.config.max_parallel_jobs))

        async def _bounded(job: AnyJob) -> ExecutionResult:
            async with semaphore:
                return await self._run_one(job, now)

        outcomes = await asyncio.gather(*(_bounded(job) for job in due), return_exceptions=True)

        executed: list[ExecutionResult] = []
        first_error: Optional[BaseException] = None
        for job, outcome in zip(due, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Tick failed while processing job {job.id}: {outcome}")
                if first_error is None:
                    first_error = outcome
                continue
            executed.append(outcome)
        if first_error is not None:
            raise first_error

        return TickReport(processed_count=len(due), executed=executed, skipped=skipped)

    # ------------------------------------------------------------------
    # Manual runs
    # ------------------------------------------------------------------

    async def test_run_job(self, job_id: str) -> ExecutionResult:
        """Run one job now, ignoring its schedule.

        The attempt is logged (``manual=True``) but does not touch
        ``consecutive_failures`` or ``last_run_time``.
        """
        job = await self.jobs.require_job(job_id)
        if not job.enabled:
            raise JobConfigError(f"Job {job_id} is paused; resume it before test-running")

        result = await self._execute(job)
        await self.jobs.append_log(ExecutionLogEntry.from_result(result, manual=True))
        await self._record_wallet_log(job, result, manual=True)
        return result
