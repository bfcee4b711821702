# src/flowci/dsl.py
"""
Build workflow definitions in Python.

The helpers assemble the same document a JSON file would contain and run it
through `parse_document`, so a definition built here is validated exactly
like one loaded from disk:

    from flowci.dsl import workflow, job, sh, uses, matrix

    WORKFLOW = workflow(
        "ci",
        job("lint", sh("Lint", "ruff check .")),
        job("test", sh("Test", "pytest -q"), needs=["lint"],
            matrix=matrix(python=["3.11", "3.12"])),
        on={"push": {"branches": ["main"]}},
    )
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from .model import WorkflowDefinition
from .parser import parse_document

Step = Dict[str, Any]


@dataclass
class JobDraft:
    """A job document plus its id, waiting to be placed into a workflow."""
    id: str
    document: Dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def _step_options(
    step: Step,
    *,
    id: Optional[str] = None,
    if_: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    continue_on_error: bool = False,
    timeout_minutes: Optional[float] = None,
) -> Step:
    if id is not None:
        step["id"] = id
    if if_ is not None:
        step["if"] = if_
    if env:
        step["env"] = {k: str(v) for k, v in env.items()}
    if continue_on_error:
        step["continue-on-error"] = True
    if timeout_minutes is not None:
        step["timeout-minutes"] = timeout_minutes
    return step


def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    shell: str | None = None,
    **options: Any,
) -> Step:
    """Create a shell step."""
    step: Step = {"name": name, "run": cmd}
    if cwd is not None:
        step["working-directory"] = cwd
    if shell is not None:
        step["shell"] = shell
    return _step_options(step, **options)


def uses(action: str, *, name: str | None = None, with_: Optional[Mapping[str, Any]] = None, **options: Any) -> Step:
    """Create a step that invokes a registered action."""
    step: Step = {"uses": action}
    if name is not None:
        step["name"] = name
    if with_:
        step["with"] = dict(with_)
    return _step_options(step, **options)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

def matrix(
    include: Optional[Iterable[Mapping[str, Any]]] = None,
    exclude: Optional[Iterable[Mapping[str, Any]]] = None,
    **axes: Iterable[Any],
) -> Dict[str, Any]:
    """
    Matrix document for job(matrix=...).

    Example:
        matrix(os=["linux", "mac"], python=["3.11", "3.12"],
               exclude=[{"os": "mac", "python": "3.11"}])
    """
    doc: Dict[str, Any] = {k: list(v) for k, v in axes.items()}
    if include:
        doc["include"] = [dict(x) for x in include]
    if exclude:
        doc["exclude"] = [dict(x) for x in exclude]
    return doc


# ---------------------------------------------------------------------
# Functional job helper
# ---------------------------------------------------------------------

def job(
    id: str,
    *steps: Step,
    steps_list: Optional[List[Step]] = None,
    needs: Optional[List[str]] = None,
    runs_on: str = "local",
    name: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    if_: Optional[str] = None,
    matrix: Optional[Dict[str, Any]] = None,
    fail_fast: bool = True,
    max_parallel: Optional[int] = None,
    timeout_minutes: Optional[float] = None,
    concurrency: Union[str, Dict[str, Any], None] = None,
    outputs: Optional[Dict[str, str]] = None,
    cwd: str | None = None,  # default working-directory for steps missing one
) -> JobDraft:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(dict(s) for s in steps_list)
    steps_final.extend(dict(s) for s in steps)

    if not steps_final:
        raise ValueError(f"job({id!r}) must have at least one step")

    if cwd is not None:
        for s in steps_final:
            if "run" in s:
                s.setdefault("working-directory", cwd)

    doc: Dict[str, Any] = {"runs-on": runs_on, "steps": steps_final}
    if name is not None:
        doc["name"] = name
    if needs:
        doc["needs"] = list(needs)
    if env:
        doc["env"] = {k: str(v) for k, v in env.items()}
    if if_ is not None:
        doc["if"] = if_
    if matrix is not None:
        strategy: Dict[str, Any] = {"matrix": matrix, "fail-fast": fail_fast}
        if max_parallel is not None:
            strategy["max-parallel"] = max_parallel
        doc["strategy"] = strategy
    if timeout_minutes is not None:
        doc["timeout-minutes"] = timeout_minutes
    if concurrency is not None:
        doc["concurrency"] = concurrency
    if outputs:
        doc["outputs"] = dict(outputs)
    return JobDraft(id=id, document=doc)


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, id: str):
        self.id = id
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._runs_on = "local"
        self._if: Optional[str] = None
        self._matrix: Optional[Dict[str, Any]] = None
        self._fail_fast = True
        self._max_parallel: Optional[int] = None
        self._timeout: Optional[float] = None
        self._outputs: dict[str, str] = {}

    def depends_on(self, *job_ids: str):
        self._needs.extend(job_ids)
        return self

    def on_runner(self, label: str):
        self._runs_on = label
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, **options: Any):
        self._steps.append(sh(name, run, cwd=cwd, **options))
        return self

    def use(self, action: str, **with_: Any):
        self._steps.append(uses(action, with_=with_))
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def when(self, condition: str):
        self._if = condition
        return self

    def with_matrix(self, *, fail_fast: bool = True, max_parallel: Optional[int] = None, **axes: Iterable[Any]):
        self._matrix = matrix(**axes)
        self._fail_fast = fail_fast
        self._max_parallel = max_parallel
        return self

    def timeout(self, minutes: float):
        self._timeout = minutes
        return self

    def output(self, name: str, template: str):
        self._outputs[name] = template
        return self

    def build(self) -> JobDraft:
        if not self._steps:
            raise ValueError(f"Job '{self.id}' has no steps")
        return job(
            self.id,
            steps_list=self._steps,
            needs=self._needs,
            runs_on=self._runs_on,
            env=self._env,
            if_=self._if,
            matrix=self._matrix,
            fail_fast=self._fail_fast,
            max_parallel=self._max_parallel,
            timeout_minutes=self._timeout,
            outputs=self._outputs,
        )


def build(id: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(id)


# ---------------------------------------------------------------------
# Workflow helper
# ---------------------------------------------------------------------

def workflow(
    name: str,
    *jobs: JobDraft,
    on: Union[str, List[str], Dict[str, Any]] = "push",
    env: Optional[Dict[str, str]] = None,
    concurrency: Union[str, Dict[str, Any], None] = None,
) -> WorkflowDefinition:
    """
    Assemble and validate a workflow.

    Raises SchemaError / CyclicDependencyError exactly as parsing a document
    would.
    """
    ids = [j.id for j in jobs]
    if len(ids) != len(set(ids)):
        raise ValueError(f"workflow({name!r}) declares a job id twice")

    doc: Dict[str, Any] = {
        "name": name,
        "on": on,
        "jobs": {j.id: j.document for j in jobs},
    }
    if env:
        doc["env"] = {k: str(v) for k, v in env.items()}
    if concurrency is not None:
        doc["concurrency"] = concurrency
    return parse_document(doc, source=f"<dsl:{name}>")


wf = workflow
