"""Tests for the job run loop, failure state machine and execution logs."""

from datetime import datetime, timedelta

import pytest
from eth_account import Account

from conftest import ETH, make_transfer_job
from wallet_cron.app import Application
from wallet_cron.errors import JobConfigError, NotFoundError, StoreError
from wallet_cron.storage.kv import MemoryKVStore
from wallet_cron.storage.models import ExecutionStatus, LogStatus
from wallet_cron.wallet.chains import get_chain
from wallet_cron.wallet.nonce_lock import lock_key


def new_keypair():
    acct = Account.create()
    return "0x" + acct.key.hex().removeprefix("0x"), acct.address


async def add_job(application, keypair, **overrides):
    return await application.create_job(make_transfer_job(*keypair, **overrides))


@pytest.mark.asyncio
async def test_tick_with_no_jobs_is_empty(application):
    report = await application.runner.run_due_jobs()
    assert report.processed_count == 0
    assert report.executed == []


@pytest.mark.asyncio
async def test_success_updates_job_and_log(application, chain, clock, keypair):
    chain.fund(keypair[1], ETH)
    job = await add_job(application, keypair, amount="0.01")

    report = await application.runner.run_due_jobs()

    assert report.processed_count == 1
    [result] = report.executed
    assert result.status == ExecutionStatus.SUCCESS
    stored = await application.jobs.get_job(job.id)
    assert stored.last_run_time == clock.now
    assert stored.consecutive_failures == 0
    [entry] = await application.jobs.list_logs(job.id)
    assert entry.status == LogStatus.SUCCESS
    assert entry.tx_hash == result.tx_hash
    assert entry.amount == "0.01"
    assert entry.manual is False


@pytest.mark.asyncio
async def test_runs_at_most_once_per_minute(application, chain, clock, keypair):
    chain.fund(keypair[1], ETH)
    await add_job(application, keypair)

    clock.set(2024, 1, 1, 12, 0, 0)
    assert (await application.runner.run_due_jobs()).processed_count == 1
    clock.set(2024, 1, 1, 12, 0, 30)
    assert (await application.runner.run_due_jobs()).processed_count == 0
    clock.set(2024, 1, 1, 12, 1, 5)
    assert (await application.runner.run_due_jobs()).processed_count == 1
    assert len(chain.sent_of("native")) == 2


@pytest.mark.asyncio
async def test_auto_pause_after_three_consecutive_failures(application, chain, clock, keypair):
    job = await add_job(application, keypair, amount="0.5")

    results = []
    for minute in range(3):
        clock.set(2024, 1, 1, 12, minute, 0)
        report = await application.runner.run_due_jobs()
        results.extend(report.executed)

    assert [r.status for r in results] == [ExecutionStatus.ERROR] * 3
    assert [r.auto_paused for r in results] == [False, False, True]
    stored = await application.jobs.get_job(job.id)
    assert stored.enabled is False
    assert stored.consecutive_failures == 3
    assert stored.last_run_time == clock.now

    newest = (await application.jobs.list_logs(job.id))[0]
    assert newest.auto_paused is True
    assert newest.status == LogStatus.ERROR

    clock.set(2024, 1, 1, 12, 3, 0)
    report = await application.runner.run_due_jobs()
    assert report.processed_count == 0
    assert job.id in report.skipped


@pytest.mark.asyncio
async def test_success_resets_failure_counter(application, chain, clock, keypair):
    job = await add_job(application, keypair, amount="0.5")
    for minute in range(2):
        clock.set(2024, 1, 1, 12, minute, 0)
        await application.runner.run_due_jobs()
    assert (await application.jobs.get_job(job.id)).consecutive_failures == 2

    chain.fund(keypair[1], ETH)
    clock.set(2024, 1, 1, 12, 2, 0)
    await application.runner.run_due_jobs()

    stored = await application.jobs.get_job(job.id)
    assert stored.consecutive_failures == 0
    assert stored.enabled is True


@pytest.mark.asyncio
async def test_resume_resets_failures(application, clock, keypair):
    job = await add_job(application, keypair, amount="0.5")
    for minute in range(3):
        clock.set(2024, 1, 1, 12, minute, 0)
        await application.runner.run_due_jobs()

    resumed = await application.jobs.set_enabled(job.id, True)
    assert resumed.enabled is True
    assert resumed.consecutive_failures == 0


@pytest.mark.asyncio
async def test_log_is_capped_at_one_hundred(application, chain, clock, store, keypair):
    chain.fund(keypair[1], 1000 * ETH)
    job = await add_job(application, keypair, amount="0.001")
    start = datetime(2024, 1, 1, 0, 0)

    written = []
    for i in range(105):
        clock.now = start + timedelta(minutes=i)
        await application.runner.run_due_jobs()
        written.append((await application.jobs.list_logs(job.id, limit=1))[0].id)

    logs = await application.jobs.list_logs(job.id)
    assert [entry.id for entry in logs] == list(reversed(written[5:]))
    assert len(await application.jobs.list_logs(job.id, limit=5)) == 5
    log_records = [k for k in store._values if k.startswith("cron:log:")]
    assert len(log_records) == 100


@pytest.mark.asyncio
async def test_failing_job_does_not_affect_others(application, chain, keypair):
    broke = new_keypair()
    chain.fund(keypair[1], ETH)
    good = await add_job(application, keypair, name="good")
    bad = await add_job(application, broke, name="bad")

    report = await application.runner.run_due_jobs()

    by_id = {r.job_id: r for r in report.executed}
    assert by_id[good.id].status == ExecutionStatus.SUCCESS
    assert by_id[bad.id].status == ExecutionStatus.ERROR
    assert report.processed_count == 2


@pytest.mark.asyncio
async def test_higher_priority_runs_first(application, chain, keypair):
    application.runner.config.max_parallel_jobs = 1
    chain.fund(keypair[1], ETH)
    for priority, to in [(0, "0x" + "01" * 20), (5, "0x" + "05" * 20), (1, "0x" + "02" * 20)]:
        await add_job(application, keypair, priority=priority, to_address=to)

    await application.runner.run_due_jobs()

    assert [tx["to"] for tx in chain.sent_of("native")] == [
        "0x" + "05" * 20, "0x" + "02" * 20, "0x" + "01" * 20,
    ]


@pytest.mark.asyncio
async def test_paused_and_not_due_jobs_are_skipped(application, chain, keypair):
    chain.fund(keypair[1], ETH)
    paused = await add_job(application, keypair, name="paused")
    await application.jobs.set_enabled(paused.id, False)
    later = await add_job(application, keypair, name="later", schedule="30 * * * *")

    report = await application.runner.run_due_jobs()

    assert report.processed_count == 0
    assert set(report.skipped) == {paused.id, later.id}
    assert chain.sent == []


@pytest.mark.asyncio
async def test_job_timeout_counts_as_failure(application, chain, keypair):
    application.runner.config.job_timeout_seconds = 0.05
    chain.fund(keypair[1], ETH)
    chain.send_delay = 0.3
    job = await add_job(application, keypair)

    report = await application.runner.run_due_jobs()

    [result] = report.executed
    assert result.status == ExecutionStatus.ERROR
    assert "timed out" in result.error
    assert result.amount == "0.001"
    assert result.tx_hash == chain.sent_of("native")[0]["tx_hash"]
    assert (await application.jobs.get_job(job.id)).consecutive_failures == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("parallel", [1, 2])
async def test_timed_out_broadcast_keeps_the_address_locked(application, chain, store, keypair, parallel):
    application.runner.config.job_timeout_seconds = 0.05
    application.runner.config.max_parallel_jobs = parallel
    chain.fund(keypair[1], ETH)
    chain.send_delay = 0.3
    await add_job(application, keypair, name="first", priority=1)
    await add_job(application, keypair, name="second")

    report = await application.runner.run_due_jobs()

    assert chain.max_in_flight == 1
    assert [r.status for r in report.executed] == [ExecutionStatus.ERROR] * 2
    reported = {r.tx_hash for r in report.executed if r.tx_hash}
    assert reported == {tx["tx_hash"] for tx in chain.sent_of("native")}
    assert len(reported) >= 1
    assert await store.get(lock_key(get_chain("base").chain_id, keypair[1])) is None


@pytest.mark.asyncio
async def test_wallet_activity_is_logged(application, chain):
    wallet = await application.wallets.create_wallet("ops")
    chain.fund(wallet.address, ETH)
    job = await application.create_job({
        "type": "eth_transfer", "name": "payroll", "schedule": "* * * * *",
        "wallet_id": wallet.id, "to_address": "0x" + "11" * 20, "amount": "0.01",
    })

    await application.runner.run_due_jobs()

    [newest, created] = await application.wallets.list_logs(wallet.id)
    assert created.type == "create"
    assert newest.type == "cron_eth_transfer"
    assert newest.status == LogStatus.SUCCESS
    assert newest.details["job_id"] == job.id


class _FailingLogStore(MemoryKVStore):
    async def lpush(self, key, value):
        raise StoreError("disk full")


@pytest.mark.asyncio
async def test_store_errors_abort_tick_after_other_jobs_finish(config, tmp_path, chain, quotes, clock):
    store = _FailingLogStore()
    application = Application(config, tmp_path, store, provider=chain, quotes=quotes, clock=clock)
    first, second = new_keypair(), new_keypair()
    chain.fund(first[1], ETH)
    chain.fund(second[1], ETH)
    a = await add_job(application, first, name="a")
    b = await add_job(application, second, name="b")

    with pytest.raises(StoreError):
        await application.runner.run_due_jobs()

    for job_id in (a.id, b.id):
        assert (await application.jobs.get_job(job_id)).last_run_time == clock.now
    assert len(chain.sent_of("native")) == 2


class TestManualRun:
    @pytest.mark.asyncio
    async def test_bypasses_schedule_and_logs_manual(self, application, chain, keypair):
        chain.fund(keypair[1], ETH)
        job = await add_job(application, keypair, schedule="0 0 1 1 *")

        result = await application.runner.test_run_job(job.id)

        assert result.ok
        [entry] = await application.jobs.list_logs(job.id)
        assert entry.manual is True
        assert (await application.jobs.get_job(job.id)).last_run_time is None

    @pytest.mark.asyncio
    async def test_failure_does_not_count(self, application, keypair):
        job = await add_job(application, keypair, amount="0.5")
        for _ in range(4):
            result = await application.runner.test_run_job(job.id)
            assert result.status == ExecutionStatus.ERROR

        stored = await application.jobs.get_job(job.id)
        assert stored.consecutive_failures == 0
        assert stored.enabled is True

    @pytest.mark.asyncio
    async def test_unknown_job(self, application):
        with pytest.raises(NotFoundError):
            await application.runner.test_run_job("cron_missing")

    @pytest.mark.asyncio
    async def test_paused_job_is_refused(self, application, keypair):
        job = await add_job(application, keypair)
        await application.jobs.set_enabled(job.id, False)
        with pytest.raises(JobConfigError):
            await application.runner.test_run_job(job.id)
