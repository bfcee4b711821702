from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from conftest import ScriptedExecutor, make_workflow, run_step
from flowci.dispatch import Dispatcher
from flowci.model import RunStatus
from flowci.runner import RunCoordinator
from flowci.server import create_app

TIMEOUT = 10


@pytest.fixture
def dispatcher(coordinator: RunCoordinator) -> Dispatcher:
    ci = make_workflow({"build": run_step("make")}, name="ci", on={"push": {"branches": ["main"]}})
    release = make_workflow(
        {"publish": run_step("publish ${{ inputs.version }}")},
        name="release",
        on={"workflow_dispatch": {"inputs": {"version": {"required": True}}}},
    )
    return Dispatcher([ci, release], coordinator)


@pytest.fixture
def client(dispatcher: Dispatcher) -> TestClient:
    return TestClient(create_app(dispatcher))


def test_healthz(client: TestClient) -> None:
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json() == {"ok": True, "active_runs": 0}


def test_push_event_starts_run(client: TestClient, coordinator: RunCoordinator, executor: ScriptedExecutor) -> None:
    resp = client.post("/events", json={"kind": "push", "ref": "refs/heads/main"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["errors"] == []
    assert len(body["run_ids"]) == 1

    run_id = body["run_ids"][0]
    assert coordinator.wait(run_id, timeout=TIMEOUT).status is RunStatus.SUCCESS
    assert executor.commands() == ["make"]

    run = client.get(f"/runs/{run_id}").json()
    assert run["workflow"] == "ci"
    assert run["status"] == "success"
    assert run["jobs"]["build"]["steps"][0]["status"] == "success"


def test_unmatched_event_starts_nothing(client: TestClient) -> None:
    resp = client.post("/events", json={"kind": "push", "ref": "refs/heads/feature"})
    assert resp.status_code == 200
    assert resp.json() == {"run_ids": [], "errors": []}


def test_manual_event_missing_input(client: TestClient) -> None:
    resp = client.post("/events", json={"kind": "manual"})
    assert resp.status_code == 422
    assert "release" in resp.json()["detail"][0]


def test_manual_event_with_input(client: TestClient, coordinator: RunCoordinator, executor: ScriptedExecutor) -> None:
    resp = client.post("/events", json={"kind": "manual", "payload": {"inputs": {"version": "1.0"}}})
    assert resp.status_code == 200
    run_id = resp.json()["run_ids"][0]
    coordinator.wait(run_id, timeout=TIMEOUT)
    assert executor.commands() == ["publish 1.0"]


def test_invalid_event_kind(client: TestClient) -> None:
    resp = client.post("/events", json={"kind": "deploy"})
    assert resp.status_code == 422


def test_list_runs_filters(client: TestClient, coordinator: RunCoordinator) -> None:
    run_id = client.post("/events", json={"kind": "push", "ref": "refs/heads/main"}).json()["run_ids"][0]
    coordinator.wait(run_id, timeout=TIMEOUT)

    assert [r["run_id"] for r in client.get("/runs").json()] == [run_id]
    assert [r["run_id"] for r in client.get("/runs", params={"workflow": "ci"}).json()] == [run_id]
    assert client.get("/runs", params={"workflow": "release"}).json() == []
    assert client.get("/runs", params={"status": "failure"}).json() == []


def test_unknown_run_is_404(client: TestClient) -> None:
    assert client.get("/runs/missing").status_code == 404
    assert client.post("/runs/missing/cancel").status_code == 404


def test_cancel_running_run(client: TestClient, coordinator: RunCoordinator, executor: ScriptedExecutor) -> None:
    executor.gate("make")
    run_id = client.post("/events", json={"kind": "push", "ref": "refs/heads/main"}).json()["run_ids"][0]
    assert executor.started("make").wait(TIMEOUT)

    resp = client.post(f"/runs/{run_id}/cancel")
    assert resp.status_code == 200
    assert resp.json() == {"run_id": run_id, "cancelled": True}
    assert coordinator.wait(run_id, timeout=TIMEOUT).status is RunStatus.CANCELLED

    # already finished
    assert client.post(f"/runs/{run_id}/cancel").json()["cancelled"] is False


def test_list_workflows(client: TestClient) -> None:
    summaries = client.get("/workflows").json()
    assert [s["name"] for s in summaries] == ["ci", "release"]
    assert summaries[0]["triggers"] == ["push"]
    assert summaries[1]["triggers"] == ["manual"]
    assert summaries[1]["jobs"] == ["publish"]


def test_validate_workflow(client: TestClient) -> None:
    good = {"name": "x", "on": "push", "jobs": {"a": {"runs-on": "local", "steps": [{"run": "true"}]}}}
    resp = client.post("/workflows/validate", json=good)
    assert resp.status_code == 200
    assert resp.json()["jobs"] == ["a"]

    bad = {"name": "x", "on": "push", "jobs": {"a": {"runs-on": "local", "steps": [{"run": "true"}], "needs": ["b"]}}}
    resp = client.post("/workflows/validate", json=bad)
    assert resp.status_code == 422
    assert resp.json()["detail"]["path"].startswith("jobs.a.needs")
