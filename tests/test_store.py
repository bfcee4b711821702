from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from flowci.model import JobRun, JobStatus, Run, RunStatus, StepRun, StepStatus
from flowci.store import MemoryRunStore, SqlRunStore

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["memory", "sql"])
def run_store(request, tmp_path):
    if request.param == "memory":
        return MemoryRunStore()
    return SqlRunStore(f"sqlite:///{tmp_path / 'runs.db'}")


def make_run(run_id: str, workflow: str = "ci", minutes: int = 0, status: RunStatus = RunStatus.SUCCESS) -> Run:
    step = StepRun(
        name="Test",
        step_id="test",
        status=StepStatus.FAILURE,
        conclusion=StepStatus.SUCCESS,
        output="ok\n",
        exit_code=1,
        duration=0.5,
        outputs={"k": "v"},
        error="process exited with code 1",
    )
    job = JobRun(
        key="test (3.12)",
        job_id="test",
        status=JobStatus.SUCCESS,
        matrix={"python": "3.12"},
        steps=[step],
        outputs={"result": "v"},
        started_at=T0,
        finished_at=T0 + timedelta(seconds=5),
    )
    return Run(
        run_id=run_id,
        workflow=workflow,
        status=status,
        jobs={job.key: job},
        context={"github": {"ref": "refs/heads/main"}},
        created_at=T0 + timedelta(minutes=minutes),
    )


def test_save_and_get(run_store) -> None:
    original = make_run("r1")
    run_store.save(original)

    loaded = run_store.get("r1")
    assert loaded is not original
    assert loaded.to_dict() == original.to_dict()
    assert loaded.jobs["test (3.12)"].steps[0].conclusion is StepStatus.SUCCESS


def test_get_missing(run_store) -> None:
    assert run_store.get("nope") is None


def test_save_copies_the_run(run_store) -> None:
    run = make_run("r1", status=RunStatus.RUNNING)
    run_store.save(run)
    run.status = RunStatus.FAILURE
    assert run_store.get("r1").status is RunStatus.RUNNING


def test_save_overwrites(run_store) -> None:
    run = make_run("r1", status=RunStatus.RUNNING)
    run_store.save(run)
    run.status = RunStatus.FAILURE
    run.jobs["test (3.12)"].steps.append(StepRun(name="Cleanup", status=StepStatus.SKIPPED))
    run_store.save(run)

    loaded = run_store.get("r1")
    assert loaded.status is RunStatus.FAILURE
    assert [s.name for s in loaded.jobs["test (3.12)"].steps] == ["Test", "Cleanup"]


def test_list_newest_first_and_filters(run_store) -> None:
    run_store.save(make_run("old", minutes=0))
    run_store.save(make_run("new", minutes=10, status=RunStatus.FAILURE))
    run_store.save(make_run("other", workflow="deploy", minutes=5))

    assert [r.run_id for r in run_store.list_runs()] == ["new", "other", "old"]
    assert [r.run_id for r in run_store.list_runs(workflow="ci")] == ["new", "old"]
    assert [r.run_id for r in run_store.list_runs(status=RunStatus.FAILURE)] == ["new"]
    assert [r.run_id for r in run_store.list_runs(limit=1)] == ["new"]


def test_delete(run_store) -> None:
    run_store.save(make_run("r1"))
    assert run_store.delete("r1") is True
    assert run_store.get("r1") is None
    assert run_store.delete("r1") is False


def test_sql_store_persists_across_instances(tmp_path) -> None:
    url = f"sqlite:///{tmp_path / 'nested' / 'runs.db'}"
    SqlRunStore(url).save(make_run("r1"))
    assert SqlRunStore(url).get("r1").workflow == "ci"
