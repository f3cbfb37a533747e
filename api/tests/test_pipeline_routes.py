"""Tests for run inspection, cancellation and health endpoints."""

import asyncio

import pytest
from httpx import ASGITransport, AsyncClient

from api.src.main import create_app
from controller.src.models.pipeline import TriggerEvent
from controller.src.models.run import RunStatus
from controller.src.services.status_reporter import DatabaseSink

def push(branch="main"):
    return TriggerEvent(repository="acme/app", branch=branch, commit_sha="abc123")

TWO_JOBS = {
    "name": "Demo",
    "jobs": {
        "build": {"steps": [{"name": "compile", "run": "echo compiling && echo done"}]},
        "test": {"needs": ["build"], "steps": [{"name": "unit", "run": "echo bad && exit 1"}]},
    },
}

@pytest.mark.asyncio
async def test_get_run(api_client, scheduler):
    run_id = await scheduler.submit(push(), TWO_JOBS)
    await scheduler.wait(run_id, timeout=5)

    response = await api_client.get(f"/api/pipelines/runs/{run_id}")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "failed"
    assert body["reason"] == "step_failed"
    assert body["pipeline"] == "Demo"
    assert body["commit_sha"] == "abc123"
    assert [j["name"] for j in body["jobs"]] == ["build", "test"]
    unit = body["jobs"][1]["steps"][0]
    assert unit["status"] == "failed"
    assert unit["exit_code"] == 1

@pytest.mark.asyncio
async def test_unknown_run(api_client):
    assert (await api_client.get("/api/pipelines/runs/nope")).status_code == 404
    assert (await api_client.get("/api/pipelines/runs/nope/logs")).status_code == 404
    assert (await api_client.post("/api/pipelines/runs/nope/cancel")).status_code == 404

@pytest.mark.asyncio
async def test_evicted_run_is_served_from_archive(make_scheduler, tmp_path):
    archive = DatabaseSink(f"sqlite:///{tmp_path / 'kiln.db'}")
    scheduler = make_scheduler(max_retained_runs=1, sinks=[archive])
    first = await scheduler.submit(push("main"), TWO_JOBS)
    await scheduler.wait(first, timeout=5)
    second = await scheduler.submit(push("dev"), {"jobs": {"a": {"steps": [{"run": "echo ok"}]}}})
    await scheduler.wait(second, timeout=5)

    transport = ASGITransport(app=create_app(scheduler))
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        listed = (await client.get("/api/pipelines/runs")).json()
        response = await client.get(f"/api/pipelines/runs/{first}")
        missing = await client.get("/api/pipelines/runs/nope")
    await scheduler.shutdown(timeout=2)

    assert [r["id"] for r in listed] == [second]
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "failed"
    assert body["commit_sha"] == "abc123"
    assert [j["name"] for j in body["jobs"]] == ["build", "test"]
    assert body["jobs"][1]["steps"][0]["exit_code"] == 1
    assert missing.status_code == 404

@pytest.mark.asyncio
async def test_list_runs(api_client, scheduler):
    first = await scheduler.submit(push("main"), TWO_JOBS)
    second = await scheduler.submit(push("dev"), {"jobs": {"a": {"steps": [{"run": "echo ok"}]}}})
    await scheduler.wait(first, timeout=5)
    await scheduler.wait(second, timeout=5)

    runs = (await api_client.get("/api/pipelines/runs")).json()
    assert [r["id"] for r in runs] == [second, first]

    failed = (await api_client.get("/api/pipelines/runs", params={"status": "failed"})).json()
    assert [r["id"] for r in failed] == [first]

    dev = (await api_client.get("/api/pipelines/runs", params={"branch": "dev"})).json()
    assert [r["id"] for r in dev] == [second]

    page = (await api_client.get("/api/pipelines/runs", params={"limit": 1, "offset": 1})).json()
    assert [r["id"] for r in page] == [first]

@pytest.mark.asyncio
async def test_run_logs(api_client, scheduler):
    run_id = await scheduler.submit(push(), TWO_JOBS)
    await scheduler.wait(run_id, timeout=5)

    body = (await api_client.get(f"/api/pipelines/runs/{run_id}/logs")).json()
    logs = {j["name"]: j["steps"][0]["logs"] for j in body["jobs"]}
    assert logs == {"build": "compiling\ndone", "test": "bad"}

    only_test = (await api_client.get(f"/api/pipelines/runs/{run_id}/logs", params={"job": "test"})).json()
    assert [j["name"] for j in only_test["jobs"]] == ["test"]

@pytest.mark.asyncio
async def test_run_events(api_client, scheduler):
    run_id = await scheduler.submit(push(), {"jobs": {"a": {"steps": [{"name": "s", "run": "echo ok"}]}}})
    await scheduler.wait(run_id, timeout=5)

    events = (await api_client.get(f"/api/pipelines/runs/{run_id}/events")).json()["events"]
    assert events[0] == {**events[0], "runID": run_id, "status": "queued"}
    assert [(e.get("jobName"), e.get("stepName"), e["status"]) for e in events[1:]] == [
        (None, None, "running"),
        ("a", None, "running"),
        ("a", "s", "running"),
        ("a", "s", "succeeded"),
        ("a", None, "succeeded"),
        (None, None, "succeeded"),
    ]

@pytest.mark.asyncio
async def test_cancel_run(api_client, scheduler):
    run_id = await scheduler.submit(push(), {"jobs": {"a": {"steps": [{"run": "sleep 5"}]}}})
    await asyncio.sleep(0.05)

    response = await api_client.post(f"/api/pipelines/runs/{run_id}/cancel")
    assert response.status_code == 200

    run = await scheduler.wait(run_id, timeout=2)
    assert run.status == RunStatus.CANCELLED
    final = (await api_client.get(f"/api/pipelines/runs/{run_id}")).json()
    assert final["status"] == "cancelled"
    assert final["jobs"][0]["status"] == "cancelled"

@pytest.mark.asyncio
async def test_stats(api_client, scheduler):
    run_id = await scheduler.submit(push(), TWO_JOBS)
    await scheduler.wait(run_id, timeout=5)

    stats = (await api_client.get("/api/pipelines/stats")).json()
    assert stats["runs"] == {"failed": 1}
    assert stats["total_runs"] == 1
    assert stats["repositories"] == 0
    assert stats["runners"]["size"] == 2

@pytest.mark.asyncio
async def test_health(api_client):
    assert (await api_client.get("/health")).json()["status"] == "healthy"

    runners = (await api_client.get("/health/runners")).json()
    assert runners == {"status": "healthy", "size": 2, "available": 2, "busy": []}

    assert (await api_client.get("/health/db")).json()["status"] == "disabled"
    assert (await api_client.get("/health/redis")).json()["status"] == "disabled"

@pytest.mark.asyncio
async def test_root(api_client):
    assert (await api_client.get("/")).json()["name"] == "Kiln"
