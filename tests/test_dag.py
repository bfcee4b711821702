from __future__ import annotations

import pytest

from conftest import make_workflow, run_step
from flowci.dag import build_dag, expand_job, expand_matrix, instance_key, topo_levels
from flowci.errors import CyclicDependencyError
from flowci.model import MatrixSpec


def test_topo_levels_group_parallel_jobs() -> None:
    wf = make_workflow({
        "lint": run_step("lint"),
        "unit": run_step("unit", needs=["lint"]),
        "e2e": run_step("e2e", needs=["lint"]),
        "deploy": run_step("deploy", needs=["unit", "e2e"]),
    })
    adj, indeg = build_dag(wf.jobs)

    assert topo_levels(adj, indeg) == [["lint"], ["e2e", "unit"], ["deploy"]]


def test_topo_levels_detect_cycle() -> None:
    adj = {"a": {"b"}, "b": {"a"}}
    indeg = {"a": 1, "b": 1}
    with pytest.raises(CyclicDependencyError):
        topo_levels(adj, indeg)


def test_expand_matrix_cross_product_in_declared_order() -> None:
    combos = expand_matrix(MatrixSpec(axes={"os": ("linux", "mac"), "py": ("3.11", "3.12")}))
    assert combos == [
        {"os": "linux", "py": "3.11"},
        {"os": "linux", "py": "3.12"},
        {"os": "mac", "py": "3.11"},
        {"os": "mac", "py": "3.12"},
    ]


def test_expand_matrix_exclude_then_include() -> None:
    spec = MatrixSpec(
        axes={"os": ("linux", "mac"), "py": ("3.11", "3.12")},
        exclude=({"os": "mac", "py": "3.11"},),
        include=({"os": "linux", "experimental": True}, {"os": "windows", "py": "3.12"}),
    )
    combos = expand_matrix(spec)

    assert {"os": "mac", "py": "3.11"} not in combos
    assert {"os": "linux", "py": "3.11", "experimental": True} in combos
    assert {"os": "linux", "py": "3.12", "experimental": True} in combos
    assert {"os": "windows", "py": "3.12"} in combos
    assert len(combos) == 4


def test_instance_keys() -> None:
    assert instance_key("test", {"os": "linux", "py": "3.12"}) == "test (linux, 3.12)"
    wf = make_workflow({"t": run_step("x", strategy={"matrix": {"n": [1, 2]}})})
    assert [i.key for i in expand_job(wf.jobs["t"])] == ["t (1)", "t (2)"]
    plain = make_workflow({"p": run_step("x")})
    assert [i.key for i in expand_job(plain.jobs["p"])] == ["p"]
