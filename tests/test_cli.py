from __future__ import annotations

import json
from pathlib import Path

import click
import pytest
from click.testing import CliRunner

from flowci.cli import cli, find_workflow_files, parse_pairs, secrets_from_env
from flowci.server.settings import Settings, load_settings

ENV = {"FLOWCI_DATABASE_URL": "memory"}


def write_workflow(path: Path, jobs: dict, **extra) -> Path:
    doc = {"name": extra.pop("name", "ci"), "on": extra.pop("on", "push"), "jobs": jobs}
    doc.update(extra)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(doc), encoding="utf-8")
    return path


def shell_job(*commands: str, **extra) -> dict:
    job = {"runs-on": "local", "steps": [{"run": c} for c in commands]}
    job.update(extra)
    return job


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------

def test_secrets_from_env() -> None:
    environ = {"FLOWCI_SECRET_TOKEN": "abc", "FLOWCI_SECRET_EMPTY": "", "HOME": "/root"}
    assert secrets_from_env(environ) == {"TOKEN": "abc"}


def test_parse_pairs() -> None:
    assert parse_pairs(("a=1", "b = x=y"), "--input") == {"a": "1", "b": " x=y"}
    with pytest.raises(click.BadParameter):
        parse_pairs(("nope",), "--input")


def test_load_settings() -> None:
    settings = load_settings({"FLOWCI_MAX_JOBS": "3", "FLOWCI_REDIS_URL": "redis://x"})
    assert settings.max_jobs == 3
    assert settings.redis_url == "redis://x"
    assert settings.database_url == Settings.database_url
    assert load_settings({}).redis_url is None


def test_find_workflow_files(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    assert find_workflow_files(".flowci/workflows") == []

    (tmp_path / "flowci_workflow.json").write_text("{}")
    assert find_workflow_files(".flowci/workflows") == [Path("flowci_workflow.json")]

    write_workflow(tmp_path / ".flowci/workflows/b.json", {"a": shell_job("true")})
    write_workflow(tmp_path / ".flowci/workflows/a.json", {"a": shell_job("true")})
    assert [p.name for p in find_workflow_files(".flowci/workflows")] == ["a.json", "b.json"]


# ---------------------------------------------------------------------
# validate / plan
# ---------------------------------------------------------------------

def test_validate_ok(runner: CliRunner) -> None:
    with runner.isolated_filesystem():
        write_workflow(Path("flowci_workflow.json"), {"build": shell_job("make")})
        result = runner.invoke(cli, ["validate"], env=ENV)
    assert result.exit_code == 0, result.output
    assert "'ci' (1 job(s))" in result.output


def test_validate_reports_schema_error(runner: CliRunner) -> None:
    with runner.isolated_filesystem():
        write_workflow(Path("bad.json"), {"build": shell_job("make", needs=["missing"])})
        result = runner.invoke(cli, ["validate", "bad.json"], env=ENV)
    assert result.exit_code == 1
    assert "jobs.build.needs[0]" in result.output


def test_validate_without_workflows(runner: CliRunner) -> None:
    with runner.isolated_filesystem():
        result = runner.invoke(cli, ["validate"], env=ENV)
    assert result.exit_code == 1
    assert "No workflow file found" in result.output


def test_plan_prints_stages(runner: CliRunner) -> None:
    with runner.isolated_filesystem():
        write_workflow(Path("wf.json"), {
            "lint": shell_job("ruff"),
            "test": shell_job("pytest", needs=["lint"], strategy={"matrix": {"py": ["3.11", "3.12"]}}),
        })
        result = runner.invoke(cli, ["plan", "wf.json"], env=ENV)
    assert result.exit_code == 0, result.output
    assert "Stage 1: lint" in result.output
    assert "Stage 2: test (3.11), test (3.12)" in result.output


def test_plan_missing_path(runner: CliRunner) -> None:
    with runner.isolated_filesystem():
        result = runner.invoke(cli, ["plan", "nope.json"], env=ENV)
    assert result.exit_code == 1
    assert "Workflow not found" in result.output


# ---------------------------------------------------------------------
# run
# ---------------------------------------------------------------------

def test_run_success(runner: CliRunner) -> None:
    with runner.isolated_filesystem():
        write_workflow(Path("wf.json"), {
            "build": shell_job("echo building"),
            "test": shell_job("echo testing", needs=["build"]),
        })
        result = runner.invoke(
            cli, ["run", "--workflows", "wf.json", "--ref", "refs/heads/main", "--db", "memory"], env=ENV,
        )
    assert result.exit_code == 0, result.output
    assert "RUN: SUCCESS" in result.output


def test_run_failure_exits_nonzero(runner: CliRunner) -> None:
    with runner.isolated_filesystem():
        write_workflow(Path("wf.json"), {"build": shell_job("exit 2")})
        result = runner.invoke(
            cli, ["run", "--workflows", "wf.json", "--ref", "refs/heads/main", "--db", "memory"], env=ENV,
        )
    assert result.exit_code == 1
    assert "RUN: FAILURE" in result.output


def test_run_nothing_matches(runner: CliRunner) -> None:
    with runner.isolated_filesystem():
        write_workflow(Path("wf.json"), {"build": shell_job("true")}, on={"push": {"branches": ["main"]}})
        result = runner.invoke(
            cli, ["run", "--workflows", "wf.json", "--ref", "refs/heads/dev", "--db", "memory"], env=ENV,
        )
    assert result.exit_code == 1
    assert "Nothing to run" in result.output


def test_run_manual_inputs(runner: CliRunner) -> None:
    with runner.isolated_filesystem():
        write_workflow(
            Path("wf.json"),
            {"deploy": shell_job('test "${{ inputs.target }}" = staging')},
            on={"workflow_dispatch": {"inputs": {"target": {"required": True}}}},
        )
        args = ["run", "--workflows", "wf.json", "--event", "manual", "--ref", "refs/heads/main", "--db", "memory"]
        missing = runner.invoke(cli, args, env=ENV)
        given = runner.invoke(cli, args + ["--input", "target=staging"], env=ENV)

    assert missing.exit_code == 1
    assert "Workflow not started" in missing.output
    assert given.exit_code == 0, given.output


def test_run_persists_to_database_and_show(runner: CliRunner) -> None:
    with runner.isolated_filesystem():
        write_workflow(Path("wf.json"), {"build": shell_job("echo persisted")})
        db = "sqlite:///runs.db"
        result = runner.invoke(cli, ["run", "--workflows", "wf.json", "--ref", "refs/heads/main", "--db", db], env=ENV)
        assert result.exit_code == 0, result.output
        run_id = next(
            line.split(":", 1)[1].strip() for line in result.output.splitlines() if line.startswith("Run ID:")
        )

        shown = runner.invoke(cli, ["show", run_id, "--db", db, "--json"], env=ENV)
        assert shown.exit_code == 0, shown.output
        data = json.loads(shown.output)
        assert data["status"] == "success"
        assert "persisted" in data["jobs"]["build"]["steps"][0]["output"]

        missing = runner.invoke(cli, ["show", "nope", "--db", db], env=ENV)
        assert missing.exit_code == 1


# ---------------------------------------------------------------------
# tick / submit
# ---------------------------------------------------------------------

def test_tick_runs_due_schedules(runner: CliRunner) -> None:
    with runner.isolated_filesystem():
        write_workflow(Path("wf.json"), {"nightly": shell_job("echo nightly")}, on={"schedule": [{"cron": "0 3 * * *"}]})
        due = runner.invoke(cli, ["tick", "--workflows", "wf.json", "--at", "2026-01-01T03:00:00"], env=ENV)
        idle = runner.invoke(cli, ["tick", "--workflows", "wf.json", "--at", "2026-01-01T04:00:00"], env=ENV)

    assert due.exit_code == 0, due.output
    assert "RUN: SUCCESS" in due.output
    assert idle.exit_code == 0
    assert "No schedules due" in idle.output


def test_tick_rejects_bad_time(runner: CliRunner) -> None:
    result = runner.invoke(cli, ["tick", "--at", "yesterday"], env=ENV)
    assert result.exit_code == 2


def test_submit_needs_destination(runner: CliRunner) -> None:
    result = runner.invoke(cli, ["submit"], env={**ENV, "FLOWCI_REDIS_URL": ""})
    assert result.exit_code == 1
    assert "No destination" in result.output
