"""CLI for wallet-cron - schedule and run Ethereum wallet jobs from the terminal."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from wallet_cron.app import Application
from wallet_cron.errors import WalletCronError

app = typer.Typer(
    name="wallet-cron",
    help="Cron-scheduled transfers and swaps for Ethereum wallets.",
    no_args_is_help=True,
)
console = Console()

_base_path: Optional[Path] = None


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        console.print(f"wallet-cron {version('wallet-cron')}")
        raise typer.Exit()


@app.callback()
def main(
    directory: Optional[Path] = typer.Option(
        None,
        "--dir",
        "-d",
        help="Project directory containing .wallet-cron/",
        envvar="WALLET_CRON_DIR",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    ),
):
    """Cron-scheduled transfers and swaps for Ethereum wallets."""
    global _base_path
    _base_path = directory
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _run(coro):
    """Run an async function synchronously."""
    try:
        loop = asyncio.get_event_loop()
        if loop.is_running():
            import concurrent.futures
            with concurrent.futures.ThreadPoolExecutor() as pool:
                return pool.submit(asyncio.run, coro).result()
        return loop.run_until_complete(coro)
    except RuntimeError:
        return asyncio.run(coro)


def _with_app(fn):
    """Load the application, await ``fn(application)``, and always shut down.

    Domain errors are printed and turned into exit code 1.
    """

    async def _inner():
        application = await Application.load(_base_path)
        try:
            return await fn(application)
        finally:
            await application.shutdown()

    try:
        return _run(_inner())
    except WalletCronError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)


def _status_style(status: str) -> str:
    return {"success": "green", "error": "red", "skipped": "yellow"}.get(status, "white")


# ------------------------------------------------------------------
# init / tick / serve
# ------------------------------------------------------------------


@app.command()
def init():
    """Create .wallet-cron/ with a default config and an empty store."""

    async def _init():
        application = await Application.init(_base_path)
        await application.shutdown()
        return application.app_dir

    app_dir = _run(_init())
    console.print(Panel(
        f"[bold green]Initialized wallet-cron[/bold green]\n\n"
        f"Config: [cyan]{app_dir / 'config.yaml'}[/cyan]\n\n"
        f"[dim]Set ZERO_EX_API_KEY for swaps and CRON_SECRET to protect the runner endpoint.[/dim]",
        title="wallet-cron",
    ))


@app.command()
def tick():
    """Run every job due in the current minute (one scheduler tick)."""

    async def _tick(application: Application):
        return await application.runner.run_due_jobs()

    report = _with_app(_tick)
    if not report.processed_count:
        console.print("[dim]No jobs due.[/dim]")
        return

    table = Table(title=f"Tick - {report.processed_count} job(s)")
    table.add_column("Job", style="bold")
    table.add_column("Status")
    table.add_column("Amount", justify="right")
    table.add_column("Tx / Error", style="dim")
    for r in report.executed:
        style = _status_style(r.status.value)
        status = f"[{style}]{r.status.value}[/{style}]"
        if r.auto_paused:
            status += " [yellow](auto-paused)[/yellow]"
        table.add_row(r.job_name or r.job_id, status, r.amount or "-", r.tx_hash or r.error or "")
    console.print(table)


@app.command()
def serve(
    port: int = typer.Option(None, "--port", "-p", help="Port to serve on (default from config)"),
    host: str = typer.Option(None, "--host", help="Host to bind to (default from config)"),
    every: float = typer.Option(
        None, "--every", help="Also trigger a tick every N seconds"
    ),
):
    """Serve the HTTP API (and optionally a local tick loop)."""
    from wallet_cron.config import get_app_dir, load_config
    from wallet_cron.dashboard.server import run_dashboard

    config = load_config(get_app_dir(_base_path) / "config.yaml")
    host = host or config.dashboard.host
    port = port or config.dashboard.port
    console.print(f"[bold green]Serving wallet-cron at http://{host}:{port}[/bold green]")
    if every:
        console.print(f"[dim]Ticking every {every}s[/dim]")
    run_dashboard(host=host, port=port, base_path=_base_path, tick_every=every)


# ------------------------------------------------------------------
# jobs
# ------------------------------------------------------------------

jobs_app = typer.Typer(name="jobs", help="Manage scheduled jobs.", no_args_is_help=True)
app.add_typer(jobs_app, name="jobs")


@jobs_app.command("create")
def jobs_create(
    name: str = typer.Argument(help="Job name"),
    schedule: str = typer.Option(..., "--schedule", "-s", help="Cron expression, e.g. '*/15 * * * *'"),
    wallet: str = typer.Option(..., "--wallet", "-w", help="Wallet id to run the job from"),
    job_type: str = typer.Option(
        "eth_transfer", "--type", "-t", help="eth_transfer, swap or token_swap"
    ),
    to: str = typer.Option(None, "--to", help="Recipient (eth_transfer)"),
    amount: str = typer.Option(None, "--amount", "-a", help="Amount in sell-token units"),
    use_max: bool = typer.Option(False, "--max", help="Use the maximum available balance"),
    chain: str = typer.Option("base", "--chain", "-c", help="base, sepolia or mainnet"),
    from_token: str = typer.Option(None, "--from-token", help="ETH or USDC (swap)"),
    to_token: str = typer.Option(None, "--to-token", help="ETH or USDC (swap)"),
    token: str = typer.Option(None, "--token", help="Token address (token_swap)"),
    direction: str = typer.Option(
        "eth_to_token", "--direction", help="eth_to_token or token_to_eth (token_swap)"
    ),
    priority: int = typer.Option(0, "--priority", help="Higher runs first within a tick"),
):
    """Create a job from CLI options."""
    data = {
        "type": job_type,
        "name": name,
        "schedule": schedule,
        "wallet_id": wallet,
        "chain": chain,
        "amount": amount,
        "use_max": use_max,
        "priority": priority,
    }
    if job_type == "eth_transfer":
        data["to_address"] = to
    elif job_type == "swap":
        data.update({"from_token": from_token, "to_token": to_token})
    else:
        data.update({"token_address": token, "direction": direction})

    async def _create(application: Application):
        return await application.create_job({k: v for k, v in data.items() if v is not None})

    job = _with_app(_create)
    console.print(f"Job [bold]{job.id}[/bold] created ({job.type}, '{job.schedule}')")


@jobs_app.command("update")
def jobs_update(
    job_id: str = typer.Argument(help="Job id"),
    name: str = typer.Option(None, "--name", help="New name"),
    schedule: str = typer.Option(None, "--schedule", "-s", help="Cron expression"),
    wallet: str = typer.Option(None, "--wallet", "-w", help="Move the job to another wallet"),
    job_type: str = typer.Option(None, "--type", "-t", help="eth_transfer, swap or token_swap"),
    to: str = typer.Option(None, "--to", help="Recipient (eth_transfer)"),
    amount: str = typer.Option(None, "--amount", "-a", help="Amount in sell-token units"),
    use_max: Optional[bool] = typer.Option(None, "--max/--no-max", help="Use the maximum available balance"),
    chain: str = typer.Option(None, "--chain", "-c", help="base, sepolia or mainnet"),
    from_token: str = typer.Option(None, "--from-token", help="ETH or USDC (swap)"),
    to_token: str = typer.Option(None, "--to-token", help="ETH or USDC (swap)"),
    token: str = typer.Option(None, "--token", help="Token address (token_swap)"),
    direction: str = typer.Option(None, "--direction", help="eth_to_token or token_to_eth"),
    priority: int = typer.Option(None, "--priority", help="Higher runs first within a tick"),
):
    """Change some fields of a job; the rest keep their values."""
    changes = {
        "name": name,
        "schedule": schedule,
        "wallet_id": wallet,
        "type": job_type,
        "to_address": to,
        "amount": amount,
        "use_max": use_max,
        "chain": chain,
        "from_token": from_token,
        "to_token": to_token,
        "token_address": token,
        "direction": direction,
        "priority": priority,
    }

    async def _update(application: Application):
        return await application.update_job(job_id, {k: v for k, v in changes.items() if v is not None})

    job = _with_app(_update)
    console.print(f"Job [bold]{job.id}[/bold] updated ({job.type}, '{job.schedule}')")


@jobs_app.command("list")
def jobs_list():
    """Show all jobs."""

    async def _list(application: Application):
        return await application.jobs.list_jobs()

    jobs = _with_app(_list)
    if not jobs:
        console.print("[yellow]No jobs yet.[/yellow] Use 'wallet-cron jobs create' to add one.")
        return

    table = Table(title="Jobs")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="bold")
    table.add_column("Type", style="cyan")
    table.add_column("Schedule")
    table.add_column("Chain")
    table.add_column("Prio", justify="right")
    table.add_column("Enabled")
    table.add_column("Failures", justify="right")
    table.add_column("Last Run", style="dim")
    for j in sorted(jobs, key=lambda j: j.created_at):
        table.add_row(
            j.id, j.name, j.type, j.schedule, j.chain, str(j.priority),
            "[green]yes[/green]" if j.enabled else "[red]paused[/red]",
            str(j.consecutive_failures),
            j.last_run_time.strftime("%Y-%m-%d %H:%M:%S") if j.last_run_time else "-",
        )
    console.print(table)


def _set_enabled(job_id: str, enabled: bool) -> None:
    async def _toggle(application: Application):
        return await application.jobs.set_enabled(job_id, enabled)

    job = _with_app(_toggle)
    console.print(f"Job [bold]{job.id}[/bold] {'resumed' if job.enabled else 'paused'}.")


@jobs_app.command("pause")
def jobs_pause(job_id: str = typer.Argument(help="Job id")):
    """Pause a job."""
    _set_enabled(job_id, False)


@jobs_app.command("resume")
def jobs_resume(job_id: str = typer.Argument(help="Job id")):
    """Resume a job and reset its failure counter."""
    _set_enabled(job_id, True)


@jobs_app.command("delete")
def jobs_delete(
    job_id: str = typer.Argument(help="Job id"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Delete a job and its logs."""
    if not yes and not typer.confirm(f"Delete job {job_id}?"):
        raise typer.Exit()

    async def _delete(application: Application):
        await application.jobs.delete_job(job_id)

    _with_app(_delete)
    console.print(f"Job [bold]{job_id}[/bold] deleted.")


@jobs_app.command("logs")
def jobs_logs(
    job_id: str = typer.Argument(help="Job id"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of entries"),
):
    """Show the newest execution log entries for a job."""

    async def _logs(application: Application):
        await application.jobs.require_job(job_id)
        return await application.jobs.list_logs(job_id, limit=limit)

    entries = _with_app(_logs)
    if not entries:
        console.print("[dim]No executions logged yet.[/dim]")
        return

    table = Table(title=f"Logs - {job_id}")
    table.add_column("When", style="dim")
    table.add_column("Status")
    table.add_column("Amount", justify="right")
    table.add_column("Tx / Error")
    for e in entries:
        style = _status_style(e.status.value)
        status = f"[{style}]{e.status.value}[/{style}]"
        if e.manual:
            status += " [dim](test)[/dim]"
        if e.auto_paused:
            status += " [yellow](auto-paused)[/yellow]"
        table.add_row(
            e.executed_at.strftime("%Y-%m-%d %H:%M:%S"), status, e.amount or "-",
            e.tx_hash or e.error or "",
        )
    console.print(table)


@jobs_app.command("test")
def jobs_test(job_id: str = typer.Argument(help="Job id")):
    """Run a job once right now, ignoring its schedule."""

    async def _test(application: Application):
        return await application.runner.test_run_job(job_id)

    with console.status("Executing job..."):
        result = _with_app(_test)

    color = _status_style(result.status.value)
    console.print(Panel(
        f"Status: [{color}]{result.status.value}[/{color}]\n"
        f"Amount: {result.amount or 'N/A'}\n"
        f"Tx: {result.tx_hash or 'N/A'}\n"
        f"Error: {result.error or 'N/A'}",
        title=f"Test run - {result.job_name or job_id}",
    ))
    if not result.ok:
        raise typer.Exit(1)


# ------------------------------------------------------------------
# wallet
# ------------------------------------------------------------------

wallet_app = typer.Typer(name="wallet", help="Manage job wallets.", no_args_is_help=True)
app.add_typer(wallet_app, name="wallet")


@wallet_app.command("create")
def wallet_create(
    name: str = typer.Argument(help="Wallet name"),
    parent: str = typer.Option(None, "--parent", help="Parent wallet id"),
):
    """Generate a new wallet."""

    async def _create(application: Application):
        return await application.wallets.create_wallet(name, parent_id=parent)

    wallet = _with_app(_create)
    console.print(Panel(
        f"[bold green]Wallet created![/bold green]\n\n"
        f"ID: [bold]{wallet.id}[/bold]\n"
        f"Address: [cyan]{wallet.address}[/cyan]\n\n"
        f"[dim]The private key is stored in the wallet-cron store. Fund the address to start.[/dim]",
        title="Wallet",
    ))


@wallet_app.command("list")
def wallet_list():
    """Show all wallets."""

    async def _list(application: Application):
        return await application.wallets.list_wallets()

    wallets = _with_app(_list)
    if not wallets:
        console.print("[yellow]No wallets yet.[/yellow] Use 'wallet-cron wallet create <name>'.")
        return

    table = Table(title="Wallets")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="bold")
    table.add_column("Address", style="cyan")
    table.add_column("Parent", style="dim")
    for w in wallets:
        table.add_row(w.id, w.name, w.address, w.parent_id or "-")
    console.print(table)


@wallet_app.command("balance")
def wallet_balance(
    wallet_id: str = typer.Argument(help="Wallet id"),
    chain: str = typer.Option("base", "--chain", "-c", help="Chain name"),
):
    """Show native, standard-token and tracked-token balances."""

    async def _balance(application: Application):
        return await application.wallets.get_balances(wallet_id, chain)

    balances = _with_app(_balance)
    table = Table(title=f"Balances - {wallet_id} ({chain})")
    table.add_column("Asset", style="cyan")
    table.add_column("Balance", justify="right")
    for symbol, amount in balances.items():
        table.add_row(symbol, amount)
    console.print(table)


@wallet_app.command("track")
def wallet_track(
    wallet_id: str = typer.Argument(help="Wallet id"),
    token: str = typer.Argument(help="ERC-20 token address to include in balances"),
):
    """Track an extra token for this wallet's balances."""

    async def _track(application: Application):
        await application.wallets.track_token(wallet_id, token)
        return await application.wallets.tracked_tokens(wallet_id)

    tokens = _with_app(_track)
    console.print(f"Tracking {len(tokens)} token(s) for {wallet_id}.")


@wallet_app.command("logs")
def wallet_logs(
    wallet_id: str = typer.Argument(help="Wallet id"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of entries"),
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON"),
):
    """Show wallet activity."""

    async def _logs(application: Application):
        await application.wallets.require_wallet(wallet_id)
        return await application.wallets.list_logs(wallet_id, limit=limit)

    entries = _with_app(_logs)
    if as_json:
        console.print_json(json.dumps([e.model_dump(mode="json") for e in entries]))
        return
    if not entries:
        console.print("[dim]No activity yet.[/dim]")
        return

    table = Table(title=f"Activity - {wallet_id}")
    table.add_column("When", style="dim")
    table.add_column("Type", style="cyan")
    table.add_column("Status")
    table.add_column("Tx / Message")
    for e in entries:
        style = _status_style(e.status.value)
        table.add_row(
            e.created_at.strftime("%Y-%m-%d %H:%M:%S"), e.type,
            f"[{style}]{e.status.value}[/{style}]", e.tx_hash or e.message or "",
        )
    console.print(table)


@wallet_app.command("send")
def wallet_send(
    wallet_id: str = typer.Argument(help="Wallet id"),
    amount: str = typer.Argument(help="Amount of ETH to send (e.g. 0.01)"),
    to: str = typer.Option(..., "--to", help="Recipient address"),
    chain: str = typer.Option("base", "--chain", "-c", help="Chain name"),
):
    """Send ETH once, under the same nonce lock the scheduler uses."""

    async def _send(application: Application):
        return await application.wallets.send_once(wallet_id, to, amount, chain)

    with console.status("Sending..."):
        tx_hash = _with_app(_send)
    console.print(f"[green]Sent.[/green] Tx: [cyan]{tx_hash}[/cyan]")


@wallet_app.command("drain")
def wallet_drain(
    wallet_id: str = typer.Argument(help="Wallet id"),
    to: str = typer.Option(..., "--to", help="Recipient address"),
    chain: str = typer.Option("base", "--chain", "-c", help="Chain name"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Move all standard tokens and spendable ETH to another address."""
    if not yes and not typer.confirm(f"Drain wallet {wallet_id} to {to}?"):
        raise typer.Exit()

    async def _drain(application: Application):
        return await application.wallets.drain(wallet_id, to, chain)

    with console.status("Draining..."):
        report = _with_app(_drain)
    for symbol, tx in report["tokens"].items():
        console.print(f"{symbol}: [cyan]{tx}[/cyan]")
    if report["native_tx"]:
        console.print(f"ETH {report['native_amount']}: [cyan]{report['native_tx']}[/cyan]")
    else:
        console.print("[dim]No ETH left to move after gas.[/dim]")
