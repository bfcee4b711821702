from __future__ import annotations

import pytest

from conftest import make_workflow, run_step
from flowci.errors import SchedulingDeadlock, SchemaError
from flowci.model import JobStatus, RunStatus
from flowci.scheduler import JobGraphScheduler


def keys(instances):
    return [i.key for i in instances]


def diamond():
    return make_workflow({
        "a": run_step("a"),
        "b": run_step("b", needs=["a"]),
        "c": run_step("c", needs=["a"]),
        "d": run_step("d", needs=["b", "c"]),
    })


def test_prerequisites_gate_eligibility() -> None:
    sched = JobGraphScheduler(diamond())

    assert keys(sched.take_ready()) == ["a"]
    assert sched.take_ready() == []

    adv = sched.advance("a", JobStatus.SUCCESS)
    assert sorted(adv.eligible) == ["b", "c"]
    assert sorted(keys(sched.take_ready())) == ["b", "c"]

    sched.advance("b", JobStatus.SUCCESS)
    assert sched.take_ready() == []
    sched.advance("c", JobStatus.SUCCESS)
    assert keys(sched.take_ready()) == ["d"]
    sched.advance("d", JobStatus.SUCCESS)

    assert sched.done
    assert sched.run_status is RunStatus.SUCCESS


def test_failure_skips_dependents_transitively() -> None:
    sched = JobGraphScheduler(diamond())
    sched.take_ready()

    adv = sched.advance("a", JobStatus.FAILURE)

    assert sorted(adv.skipped) == ["b", "c", "d"]
    assert sched.done
    assert sched.run_status is RunStatus.FAILURE
    assert sched.take_ready() == []


def test_tolerant_dependent_still_runs() -> None:
    wf = make_workflow({
        "build": run_step("build"),
        "notify": run_step("notify", needs=["build"], **{"if": "always()"}),
        "deploy": run_step("deploy", needs=["build"]),
    })
    sched = JobGraphScheduler(wf)
    sched.take_ready()

    adv = sched.advance("build", JobStatus.FAILURE)

    assert adv.eligible == ["notify"]
    assert adv.skipped == ["deploy"]
    assert keys(sched.take_ready()) == ["notify"]


def test_skipped_prerequisite_skips_dependents() -> None:
    wf = make_workflow({"a": run_step("a"), "b": run_step("b", needs=["a"])})
    sched = JobGraphScheduler(wf)
    sched.take_ready()

    adv = sched.advance("a", JobStatus.SKIPPED)

    assert adv.skipped == ["b"]
    assert sched.run_status is RunStatus.SUCCESS


def test_max_concurrency_ceiling_is_fifo() -> None:
    wf = make_workflow({"x": run_step("x"), "y": run_step("y"), "z": run_step("z")})
    sched = JobGraphScheduler(wf, max_concurrency=1)

    assert keys(sched.take_ready()) == ["x"]
    assert sched.take_ready() == []
    sched.advance("x", JobStatus.SUCCESS)
    assert keys(sched.take_ready()) == ["y"]
    sched.advance("y", JobStatus.SUCCESS)
    assert keys(sched.take_ready()) == ["z"]


def test_max_concurrency_must_be_positive() -> None:
    with pytest.raises(ValueError):
        JobGraphScheduler(diamond(), max_concurrency=0)


def matrix_workflow(**strategy):
    strategy.setdefault("matrix", {"n": [1, 2, 3]})
    return make_workflow({"t": run_step("t", strategy=strategy), "after": run_step("after", needs=["t"])})


def test_matrix_fail_fast_cancels_siblings() -> None:
    sched = JobGraphScheduler(matrix_workflow(**{"max-parallel": 2}))
    assert keys(sched.take_ready()) == ["t (1)", "t (2)"]

    adv = sched.advance("t (1)", JobStatus.FAILURE)

    assert adv.cancelled == ["t (3)"]
    assert adv.signal == ["t (2)"]
    sched.advance("t (2)", JobStatus.CANCELLED)
    assert sched.job_status("t") is JobStatus.FAILURE
    assert sched.status["after"] is JobStatus.SKIPPED
    assert sched.run_status is RunStatus.FAILURE


def test_matrix_without_fail_fast_reports_each_cell() -> None:
    sched = JobGraphScheduler(matrix_workflow(**{"fail-fast": False}), max_concurrency=1)

    outcomes = {"t (1)": JobStatus.SUCCESS, "t (2)": JobStatus.FAILURE, "t (3)": JobStatus.SUCCESS}
    for _ in range(3):
        (inst,) = sched.take_ready()
        adv = sched.advance(inst.key, outcomes[inst.key])
        assert adv.cancelled == [] and adv.signal == []

    assert {k: sched.status[k] for k in outcomes} == outcomes
    assert sched.job_status("t") is JobStatus.FAILURE
    assert sched.status["after"] is JobStatus.SKIPPED


def test_cancel_pending() -> None:
    sched = JobGraphScheduler(diamond())
    sched.take_ready()
    sched.advance("a", JobStatus.SUCCESS)
    sched.take_ready()  # b, c running

    adv = sched.cancel_pending()

    assert sorted(adv.signal) == ["b", "c"]
    assert adv.cancelled == ["d"]
    assert sched.take_ready() == []
    sched.advance("b", JobStatus.CANCELLED)
    sched.advance("c", JobStatus.SUCCESS)
    assert sched.done
    assert sched.status["a"] is JobStatus.SUCCESS
    assert sched.run_status is RunStatus.CANCELLED


def test_advance_ignores_terminal_instances() -> None:
    sched = JobGraphScheduler(diamond())
    sched.take_ready()
    sched.advance("a", JobStatus.SUCCESS)
    assert sched.advance("a", JobStatus.FAILURE).eligible == []
    assert sched.status["a"] is JobStatus.SUCCESS


def test_advance_requires_terminal_status() -> None:
    sched = JobGraphScheduler(diamond())
    sched.take_ready()
    with pytest.raises(ValueError):
        sched.advance("a", JobStatus.RUNNING)


def test_check_deadlock() -> None:
    sched = JobGraphScheduler(diamond())
    sched.check_deadlock()  # "a" is eligible

    sched.take_ready()
    sched.status["a"] = JobStatus.QUEUED  # simulate lost bookkeeping
    sched.running.clear()
    with pytest.raises(SchedulingDeadlock) as exc:
        sched.check_deadlock()
    assert "a" in exc.value.pending


def test_plan_levels() -> None:
    assert JobGraphScheduler(diamond()).plan() == [["a"], ["b", "c"], ["d"]]


def test_failure_outranks_cancellation() -> None:
    sched = JobGraphScheduler(make_workflow({"a": run_step("a"), "b": run_step("b")}))
    assert keys(sched.take_ready()) == ["a", "b"]
    sched.advance("a", JobStatus.FAILURE)

    adv = sched.cancel_pending()

    assert adv.signal == ["b"]
    sched.advance("b", JobStatus.CANCELLED)
    assert sched.done
    assert sched.run_status is RunStatus.FAILURE


def test_matrix_include_adds_standalone_cell() -> None:
    strategy = {"matrix": {"os": ["linux"], "include": [{"os": "mac", "extra": "x"}]}}
    sched = JobGraphScheduler(make_workflow({
        "build": run_step("build", strategy=strategy),
        "after": run_step("after", needs=["build"]),
    }))

    assert sched.by_job["build"] == ["build (linux)", "build (mac, x)"]
    assert sched.instances["build (mac, x)"].matrix == {"os": "mac", "extra": "x"}
    assert keys(sched.take_ready()) == ["build (linux)", "build (mac, x)"]

    sched.advance("build (linux)", JobStatus.SUCCESS)
    assert sched.take_ready() == []
    adv = sched.advance("build (mac, x)", JobStatus.SUCCESS)
    assert adv.eligible == ["after"]


def test_matrix_exclude_schedules_remaining_cells() -> None:
    strategy = {"matrix": {"os": ["linux", "mac"], "py": ["3.11", "3.12"], "exclude": [{"os": "mac", "py": "3.11"}]}}
    sched = JobGraphScheduler(make_workflow({"t": run_step("t", strategy=strategy)}))

    assert keys(sched.take_ready()) == ["t (linux, 3.11)", "t (linux, 3.12)", "t (mac, 3.12)"]


def test_fully_excluded_matrix_never_reaches_the_scheduler() -> None:
    strategy = {"matrix": {"os": ["linux"], "exclude": [{"os": "linux"}]}}
    with pytest.raises(SchemaError):
        make_workflow({"build": run_step("build", strategy=strategy)})
