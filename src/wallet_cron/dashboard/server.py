"""FastAPI HTTP API for wallet-cron: the tick endpoint plus job and wallet management."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Query, Request

from wallet_cron.app import Application
from wallet_cron.config import resolve_secret
from wallet_cron.errors import (
    ExecutionError,
    JobConfigError,
    NotFoundError,
    WalletConfigError,
)

logger = logging.getLogger("wallet_cron.dashboard")

TRUSTED_CRON_HEADERS = ("x-cron", "vercel-cron", "x-vercel-cron")


def _authorized(request: Request, secret: str, trust_platform_headers: bool = False) -> bool:
    if not secret:
        return True
    # Only safe behind a platform that strips these headers from outside requests.
    if trust_platform_headers and any(request.headers.get(h) for h in TRUSTED_CRON_HEADERS):
        return True
    auth = request.headers.get("authorization", "")
    return auth == f"Bearer {secret}"


async def _tick_forever(application: Application, every: float) -> None:
    """Local stand-in for an external cron trigger."""
    while True:
        await asyncio.sleep(every)
        try:
            report = await application.runner.run_due_jobs()
        except Exception as exc:
            logger.error(f"Scheduled tick failed: {exc}")
            continue
        if report.processed_count:
            logger.info(f"Tick ran {report.processed_count} job(s)")


def create_app(
    application: Application | None = None,
    base_path: Path | None = None,
    tick_every: float | None = None,
) -> FastAPI:
    """Build the API around *application*, or load one from *base_path* on startup.

    With *tick_every* the server also runs ``run_due_jobs`` on that interval.
    """
    app = FastAPI(title="wallet-cron")
    app.state.application = application
    app.state.ticker = None

    @app.on_event("startup")
    async def startup():
        if app.state.application is None:
            app.state.application = await Application.load(base_path)
        if tick_every:
            app.state.ticker = asyncio.create_task(
                _tick_forever(app.state.application, tick_every)
            )
        logger.info(f"API started with store at {app.state.application.app_dir}")

    @app.on_event("shutdown")
    async def shutdown():
        if app.state.ticker is not None:
            app.state.ticker.cancel()
        if app.state.application is not None and application is None:
            await app.state.application.shutdown()

    def _app() -> Application:
        if app.state.application is None:
            raise HTTPException(status_code=503, detail="Application not loaded")
        return app.state.application

    # ------------------------------------------------------------------
    # Runner
    # ------------------------------------------------------------------

    @app.api_route("/api/cron/runner", methods=["GET", "POST"])
    async def api_runner(request: Request):
        core = _app()
        dashboard = core.config.dashboard
        if not _authorized(
            request, resolve_secret(dashboard.cron_secret), dashboard.trust_platform_cron_headers
        ):
            raise HTTPException(status_code=401, detail="Unauthorized")
        report = await core.runner.run_due_jobs()
        if not report.processed_count:
            return {"message": "No jobs due", **report.model_dump(mode="json")}
        return report.model_dump(mode="json")

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    @app.post("/api/cron/jobs")
    async def api_create_job(body: dict):
        try:
            job = await _app().create_job(body)
        except JobConfigError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return {"success": True, "job": job.public()}

    @app.get("/api/cron/jobs")
    async def api_list_jobs():
        jobs = await _app().jobs.list_jobs()
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return {"jobs": [j.public() for j in jobs]}

    @app.put("/api/cron/jobs/{job_id}")
    async def api_update_job(job_id: str, body: dict):
        try:
            job = await _app().update_job(job_id, body)
        except JobConfigError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return {"success": True, "job": job.public()}

    @app.post("/api/cron/jobs/{job_id}/pause")
    async def api_pause_job(job_id: str, body: Optional[dict] = None):
        enabled = bool((body or {}).get("enabled", False))
        try:
            job = await _app().jobs.set_enabled(job_id, enabled)
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return {"success": True, "job": job.public()}

    @app.delete("/api/cron/jobs/{job_id}")
    async def api_delete_job(job_id: str):
        try:
            await _app().jobs.delete_job(job_id)
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return {"success": True}

    @app.get("/api/cron/jobs/{job_id}/logs")
    async def api_job_logs(job_id: str, limit: Optional[int] = Query(None, ge=1)):
        core = _app()
        if await core.jobs.get_job(job_id) is None:
            raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
        logs = await core.jobs.list_logs(job_id, limit=limit)
        return {"logs": [entry.model_dump(mode="json") for entry in logs]}

    @app.post("/api/cron/jobs/{job_id}/test")
    async def api_test_job(job_id: str):
        try:
            result = await _app().runner.test_run_job(job_id)
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except JobConfigError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"success": result.ok, "result": result.model_dump(mode="json")}

    # ------------------------------------------------------------------
    # Wallets
    # ------------------------------------------------------------------

    @app.post("/api/wallets")
    async def api_create_wallet(body: dict):
        name = (body.get("name") or "").strip()
        if not name:
            raise HTTPException(status_code=400, detail="name is required")
        try:
            wallet = await _app().wallets.create_wallet(name, parent_id=body.get("parent_id"))
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return {"success": True, "wallet": wallet.public()}

    @app.get("/api/wallets")
    async def api_list_wallets():
        wallets = await _app().wallets.list_wallets()
        return {"wallets": [w.public() for w in wallets]}

    @app.delete("/api/wallets/{wallet_id}")
    async def api_delete_wallet(wallet_id: str):
        try:
            await _app().wallets.delete_wallet(wallet_id)
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except WalletConfigError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"success": True}

    @app.get("/api/wallets/{wallet_id}/logs")
    async def api_wallet_logs(wallet_id: str, limit: Optional[int] = Query(None, ge=1)):
        core = _app()
        if await core.wallets.get_wallet(wallet_id) is None:
            raise HTTPException(status_code=404, detail=f"Wallet {wallet_id} not found")
        logs = await core.wallets.list_logs(wallet_id, limit=limit)
        return {"logs": [entry.model_dump(mode="json") for entry in logs]}

    @app.get("/api/wallets/{wallet_id}/balances")
    async def api_wallet_balances(wallet_id: str, chain: str = Query("base")):
        try:
            balances = await _app().wallets.get_balances(wallet_id, chain)
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ExecutionError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {"balances": balances}

    @app.post("/api/wallets/{wallet_id}/tokens")
    async def api_track_token(wallet_id: str, body: dict):
        try:
            await _app().wallets.track_token(wallet_id, body.get("token_address") or "")
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except WalletConfigError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"success": True}

    @app.get("/api/wallets/{wallet_id}/tokens")
    async def api_tracked_tokens(wallet_id: str):
        return {"tokens": await _app().wallets.tracked_tokens(wallet_id)}

    @app.post("/api/wallets/backfill-tokens")
    async def api_backfill_tokens():
        counts = await _app().backfill_tokens()
        return {"success": True, **counts}

    @app.post("/api/wallets/{wallet_id}/reparent")
    async def api_reparent_wallet(wallet_id: str, body: dict):
        try:
            wallet = await _app().wallets.reparent(wallet_id, body.get("parent_id"))
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except WalletConfigError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"success": True, "wallet": wallet.public()}

    async def _wallet_action(coro):
        try:
            return await coro
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except (WalletConfigError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except ExecutionError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc

    @app.post("/api/wallets/{wallet_id}/send")
    async def api_send_once(wallet_id: str, body: dict):
        core = _app()
        tx_hash = await _wallet_action(core.wallets.send_once(
            wallet_id, body.get("to_address", ""), str(body.get("amount", "")),
            body.get("chain", "base"),
        ))
        return {"success": True, "tx_hash": tx_hash}

    @app.post("/api/wallets/{wallet_id}/swap")
    async def api_swap_once(wallet_id: str, body: dict):
        core = _app()
        tx_hash = await _wallet_action(core.wallets.swap_once(
            wallet_id, body.get("from_token", ""), body.get("to_token", ""),
            str(body.get("amount", "")),
        ))
        return {"success": True, "tx_hash": tx_hash}

    @app.post("/api/wallets/{wallet_id}/drain")
    async def api_drain(wallet_id: str, body: dict):
        core = _app()
        report = await _wallet_action(core.wallets.drain(
            wallet_id, body.get("to_address", ""), body.get("chain", "base"),
        ))
        return {"success": True, **report}

    return app


def run_dashboard(
    host: str = "127.0.0.1",
    port: int = 8430,
    base_path: Path | None = None,
    tick_every: float | None = None,
) -> None:
    uvicorn.run(
        create_app(base_path=base_path, tick_every=tick_every),
        host=host, port=port, log_level="info",
    )
