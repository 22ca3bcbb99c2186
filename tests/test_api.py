"""Tests for the HTTP API and the progress event stream."""

import json

import httpx
import pytest

from gitferry.api.main import create_app
from gitferry.pipeline.progress import OperationProgress
from gitferry.pipeline.service import PipelineService
from gitferry.pipeline.steps import StepOutcome
from gitferry.schemas import STEP_ORDER, ProgressPhase


async def _ok(ctx):
    return StepOutcome(message="done")


@pytest.fixture
def service(store, settings, hosting):
    return PipelineService(
        store=store,
        settings=settings,
        client_factory=hosting.factory,
        steps=[(name, _ok) for name in STEP_ORDER],
    )


@pytest.fixture
async def client(service):
    app = create_app(service=service)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client


OWNER = {"X-Owner-Id": "owner-1"}


def _frames(body: str) -> list[dict]:
    return [json.loads(line[len("data: "):]) for line in body.splitlines() if line.startswith("data: ")]


# ===========================================================================
# Runs
# ===========================================================================


class TestRuns:
    async def test_submit_then_poll(self, client, request_payload):
        response = await client.post("/api/pipeline/runs", json=request_payload, headers=OWNER)

        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "in_progress"
        assert body["operation_id"] == body["run_id"]

        run = (await client.get(f"/api/pipeline/runs/{body['run_id']}", headers=OWNER)).json()
        assert run["status"] == "success"
        assert run["completion_percentage"] == 100
        assert [step["name"] for step in run["steps"]] == [name.value for name in STEP_ORDER]
        assert "github_access_token" not in run["configuration"]

        status = await client.get(f"/api/pipeline/runs/{body['run_id']}/status", headers=OWNER)
        assert status.json()["id"] == body["run_id"]

    async def test_invalid_submission(self, client, request_payload):
        response = await client.post(
            "/api/pipeline/runs",
            json={**request_payload, "gitlab_branch_name": "bad branch"},
            headers=OWNER,
        )

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["error"]["type"] == "VALIDATION_ERROR"
        assert "gitlab_branch_name" in body["error"]["message"]

    async def test_owner_header_required(self, client, request_payload):
        response = await client.post("/api/pipeline/runs", json=request_payload)

        assert response.status_code == 401
        assert response.json()["error"]["type"] == "AUTHENTICATION_ERROR"

    async def test_other_owner_is_forbidden(self, client, request_payload):
        run_id = (await client.post("/api/pipeline/runs", json=request_payload, headers=OWNER)).json()["run_id"]

        response = await client.get(f"/api/pipeline/runs/{run_id}", headers={"X-Owner-Id": "owner-2"})

        assert response.status_code == 403

    async def test_unknown_run(self, client):
        response = await client.get("/api/pipeline/runs/missing", headers=OWNER)

        assert response.status_code == 404
        assert response.json()["error"]["type"] == "NOT_FOUND_ERROR"

    async def test_list_runs(self, client, request_payload):
        for _ in range(3):
            await client.post("/api/pipeline/runs", json=request_payload, headers=OWNER)

        body = (await client.get("/api/pipeline/runs", params={"page_size": 2}, headers=OWNER)).json()

        assert body["total"] == 3
        assert body["total_pages"] == 2
        assert len(body["runs"]) == 2

    async def test_page_size_is_bounded(self, client):
        response = await client.get("/api/pipeline/runs", params={"page_size": 500}, headers=OWNER)
        assert response.status_code == 400


# ===========================================================================
# Stats and retention
# ===========================================================================


class TestStatsAndCleanup:
    async def test_owner_stats(self, client, request_payload):
        await client.post("/api/pipeline/runs", json=request_payload, headers=OWNER)

        stats = (await client.get("/api/pipeline/stats", headers=OWNER)).json()

        assert stats["total"] == 1
        assert stats["success_count"] == 1
        assert stats["success_rate"] == 100.0
        assert len(stats["recent_runs"]) == 1

    async def test_global_stats_need_admin_token(self, client, service, request_payload):
        service.settings.admin_token = "secret"
        await client.post("/api/pipeline/runs", json=request_payload, headers=OWNER)

        denied = await client.get("/api/pipeline/stats/global")
        allowed = await client.get("/api/pipeline/stats/global", headers={"X-Admin-Token": "secret"})

        assert denied.status_code == 403
        assert allowed.status_code == 200
        assert allowed.json()["total_owners"] == 1

    async def test_cleanup_defaults_to_retention(self, client, settings):
        response = await client.post("/api/pipeline/cleanup")

        assert response.status_code == 200
        assert response.json() == {"deleted_count": 0, "days_old": settings.retention_default_days}

    async def test_cleanup_rejects_zero_days(self, client):
        response = await client.post("/api/pipeline/cleanup", json={"days_old": 0})
        assert response.status_code == 400


# ===========================================================================
# Progress
# ===========================================================================


class TestProgress:
    async def test_cancel_without_running_fetch(self, client):
        response = await client.post("/api/pipeline/progress/op-1/cancel")

        assert response.status_code == 200
        assert response.json() == {"operation_id": "op-1", "cancelled": False}

    async def test_idle_stream_sends_heartbeat_then_ends(self, client):
        response = await client.get("/api/pipeline/progress/op-1")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        frames = _frames(response.text)
        assert frames[0]["type"] == "connected"
        assert frames[0]["operation_id"] == "op-1"
        assert ": heartbeat" in response.text

    async def test_stream_ends_after_complete(self, service):
        stream = service.reporter.progress_stream("op-2")
        connected = await stream.__anext__()

        progress = OperationProgress(service.progress, "op-2", teardown_delay=0)
        progress.progress("Receiving objects: 50%", 55, ProgressPhase.RECEIVING)
        progress.complete("Repository ready")

        frames = _frames(connected + "".join([chunk async for chunk in stream]))

        assert [frame["type"] for frame in frames] == ["connected", "progress", "complete"]
        assert frames[1]["percentage"] == 55
        assert frames[2]["percentage"] == 100

    async def test_late_subscriber_gets_final_event(self, client, service):
        progress = OperationProgress(service.progress, "op-3", teardown_delay=0)
        progress.error("Clone was cancelled")

        response = await client.get("/api/pipeline/progress/op-3")

        frames = _frames(response.text)
        assert [frame["type"] for frame in frames] == ["connected", "error"]
        assert frames[1]["message"] == "Clone was cancelled"
        assert ": heartbeat" not in response.text


async def test_health(client):
    response = await client.get("/api/health")
    assert response.json()["status"] == "ok"
