"""Tests for the HTTP API."""

import pytest
from fastapi.testclient import TestClient

from conftest import ETH
from wallet_cron.dashboard.server import create_app

RECIPIENT = "0x" + "33" * 20


@pytest.fixture
def client(application):
    with TestClient(create_app(application)) as test_client:
        yield test_client


@pytest.fixture
def wallet(client, chain):
    body = client.post("/api/wallets", json={"name": "ops"}).json()
    chain.fund(body["wallet"]["address"], ETH)
    return body["wallet"]


def create_transfer(client, wallet, **overrides):
    data = {
        "type": "eth_transfer", "name": "payroll", "schedule": "* * * * *",
        "wallet_id": wallet["id"], "to_address": RECIPIENT, "amount": "0.01",
    }
    data.update(overrides)
    return client.post("/api/cron/jobs", json=data)


class TestRunner:
    def test_no_jobs_due(self, client):
        resp = client.get("/api/cron/runner")
        assert resp.status_code == 200
        assert resp.json()["message"] == "No jobs due"

    def test_runs_due_jobs(self, client, wallet, chain):
        job_id = create_transfer(client, wallet).json()["job"]["id"]

        body = client.post("/api/cron/runner").json()

        assert body["processed_count"] == 1
        assert body["executed"][0]["job_id"] == job_id
        assert body["executed"][0]["status"] == "success"
        assert len(chain.sent_of("native")) == 1

    def test_secret_is_enforced(self, client, application, monkeypatch):
        monkeypatch.setenv("CRON_SECRET", "hunter2")
        application.config.dashboard.cron_secret = "${CRON_SECRET}"

        assert client.get("/api/cron/runner").status_code == 401
        assert client.get(
            "/api/cron/runner", headers={"Authorization": "Bearer wrong"}
        ).status_code == 401
        assert client.get(
            "/api/cron/runner", headers={"Authorization": "Bearer hunter2"}
        ).status_code == 200

    @pytest.mark.parametrize("header", ["x-cron", "vercel-cron", "x-vercel-cron"])
    def test_platform_headers_need_opt_in(self, client, application, header):
        application.config.dashboard.cron_secret = "hunter2"

        assert client.get("/api/cron/runner", headers={header: "1"}).status_code == 401

        application.config.dashboard.trust_platform_cron_headers = True
        assert client.get("/api/cron/runner", headers={header: "1"}).status_code == 200


class TestJobs:
    def test_create_hides_private_key(self, client, wallet):
        resp = create_transfer(client, wallet)
        assert resp.status_code == 200
        job = resp.json()["job"]
        assert "private_key" not in job
        assert job["address"] == wallet["address"]
        assert job["enabled"] is True

    @pytest.mark.parametrize(
        "overrides",
        [
            {"schedule": "61 * * * *"},
            {"to_address": "nope"},
            {"amount": None},
            {"chain": "dogechain"},
            {"type": "teleport"},
        ],
    )
    def test_create_rejects_invalid(self, client, wallet, overrides):
        resp = create_transfer(client, wallet, **overrides)
        assert resp.status_code == 400

    def test_create_with_unknown_wallet(self, client):
        resp = create_transfer(client, {"id": "wallet_missing"})
        assert resp.status_code == 404

    def test_list_pause_resume_delete(self, client, wallet):
        job_id = create_transfer(client, wallet).json()["job"]["id"]
        assert [j["id"] for j in client.get("/api/cron/jobs").json()["jobs"]] == [job_id]

        paused = client.post(f"/api/cron/jobs/{job_id}/pause", json={"enabled": False}).json()
        assert paused["job"]["enabled"] is False
        resumed = client.post(f"/api/cron/jobs/{job_id}/pause", json={"enabled": True}).json()
        assert resumed["job"]["enabled"] is True

        assert client.delete(f"/api/cron/jobs/{job_id}").json() == {"success": True}
        assert client.get("/api/cron/jobs").json()["jobs"] == []
        assert client.delete(f"/api/cron/jobs/{job_id}").status_code == 404

    def test_test_run_and_logs(self, client, wallet):
        job_id = create_transfer(client, wallet).json()["job"]["id"]

        body = client.post(f"/api/cron/jobs/{job_id}/test").json()
        assert body["success"] is True
        assert body["result"]["tx_hash"]

        logs = client.get(f"/api/cron/jobs/{job_id}/logs").json()["logs"]
        assert len(logs) == 1
        assert logs[0]["manual"] is True
        assert client.get(f"/api/cron/jobs/{job_id}/logs", params={"limit": 0}).status_code == 422

    def test_test_run_of_paused_job(self, client, wallet):
        job_id = create_transfer(client, wallet).json()["job"]["id"]
        client.post(f"/api/cron/jobs/{job_id}/pause", json={"enabled": False})
        assert client.post(f"/api/cron/jobs/{job_id}/test").status_code == 400

    def test_unknown_job(self, client):
        assert client.post("/api/cron/jobs/cron_missing/test").status_code == 404
        assert client.get("/api/cron/jobs/cron_missing/logs").status_code == 404
        assert client.put("/api/cron/jobs/cron_missing", json={"name": "x"}).status_code == 404

    def test_update(self, client, wallet):
        job_id = create_transfer(client, wallet).json()["job"]["id"]

        resp = client.put(f"/api/cron/jobs/{job_id}", json={"schedule": "0 9 * * 1-5", "use_max": True})

        assert resp.status_code == 200
        job = resp.json()["job"]
        assert job["schedule"] == "0 9 * * 1-5"
        assert job["amount"] is None
        assert "private_key" not in job
        assert client.put(f"/api/cron/jobs/{job_id}", json={"schedule": "bad"}).status_code == 400


class TestWallets:
    def test_create_requires_name(self, client):
        assert client.post("/api/wallets", json={}).status_code == 400

    def test_list_and_balances(self, client, wallet):
        wallets = client.get("/api/wallets").json()["wallets"]
        assert [w["id"] for w in wallets] == [wallet["id"]]
        balances = client.get(f"/api/wallets/{wallet['id']}/balances").json()["balances"]
        assert balances["ETH"] == "1"

    def test_delete_refused_with_jobs(self, client, wallet):
        create_transfer(client, wallet)
        assert client.delete(f"/api/wallets/{wallet['id']}").status_code == 400

    def test_send_and_logs(self, client, wallet, chain):
        resp = client.post(
            f"/api/wallets/{wallet['id']}/send", json={"to_address": RECIPIENT, "amount": "0.1"}
        )
        assert resp.status_code == 200
        assert chain.sent_of("native")[0]["value"] == ETH // 10

        logs = client.get(f"/api/wallets/{wallet['id']}/logs").json()["logs"]
        assert [entry["type"] for entry in logs] == ["send", "create"]

    def test_send_failures_map_to_status_codes(self, client, wallet):
        url = f"/api/wallets/{wallet['id']}/send"
        assert client.post(url, json={"to_address": "bad", "amount": "0.1"}).status_code == 400
        assert client.post(url, json={"to_address": RECIPIENT, "amount": "5"}).status_code == 502
        assert client.post(
            "/api/wallets/wallet_missing/send", json={"to_address": RECIPIENT, "amount": "1"}
        ).status_code == 404

    def test_tracked_tokens(self, client, wallet):
        token = "0x" + "AB" * 20
        url = f"/api/wallets/{wallet['id']}/tokens"

        assert client.post(url, json={"token_address": token}).json() == {"success": True}
        assert client.post(url, json={"token_address": "nope"}).status_code == 400
        assert client.post(
            "/api/wallets/wallet_missing/tokens", json={"token_address": token}
        ).status_code == 404
        assert client.get(url).json() == {"tokens": [token.lower()]}

    def test_backfill_tokens(self, client, wallet):
        client.post("/api/cron/jobs", json={
            "type": "token_swap", "name": "dca", "schedule": "0 * * * *",
            "wallet_id": wallet["id"], "token_address": "0x" + "AB" * 20, "use_max": True,
        })
        body = client.post("/api/wallets/backfill-tokens").json()
        assert body == {"success": True, "tracked": 1, "skipped": 0, "errors": 0}

    def test_reparent_cycle(self, client, wallet):
        child = client.post(
            "/api/wallets", json={"name": "child", "parent_id": wallet["id"]}
        ).json()["wallet"]
        resp = client.post(f"/api/wallets/{wallet['id']}/reparent", json={"parent_id": child["id"]})
        assert resp.status_code == 400

    def test_drain(self, client, wallet, chain):
        body = client.post(
            f"/api/wallets/{wallet['id']}/drain", json={"to_address": RECIPIENT}
        ).json()
        assert body["success"] is True
        assert body["native_tx"] == chain.sent_of("native")[0]["tx_hash"]
