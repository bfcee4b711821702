# parser.py
"""
Workflow document parser.

Documents are JSON: braces and brackets delimit structure, so a misplaced
indent can never silently re-parent a key. Example:

    {
      "name": "ci",
      "on": {"push": {"branches": ["main"]}},
      "jobs": {
        "lint": {"runs-on": "linux", "steps": [{"run": "ruff check ."}]},
        "test": {"runs-on": "linux", "needs": "lint",
                 "steps": [{"run": "pytest -q"}]}
      }
    }

`parse()` either returns a complete WorkflowDefinition or raises; it never
hands back a partially usable definition.
"""
from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .dag import expand_matrix
from .errors import CyclicDependencyError, ExpressionError, SchemaError
from .expressions import validate_expression, validate_template
from .model import (
    ConcurrencySpec,
    EventKind,
    JobDefinition,
    MatrixSpec,
    StepDefinition,
    StepKind,
    Trigger,
    TriggerInput,
    WorkflowDefinition,
)
from .schedule import parse_cron

JOB_ID_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_\-]*$")

TRIGGER_NAMES = {
    "push": EventKind.PUSH,
    "pull_request": EventKind.PULL_REQUEST,
    "schedule": EventKind.SCHEDULE,
    "workflow_dispatch": EventKind.MANUAL,
    "manual": EventKind.MANUAL,
}

WORKFLOW_KEYS = {"name", "on", "jobs", "env", "concurrency"}
JOB_KEYS = {
    "name", "runs-on", "needs", "steps", "if", "strategy", "env",
    "timeout-minutes", "concurrency", "outputs",
}
STEP_KEYS = {
    "name", "id", "run", "uses", "with", "if", "continue-on-error",
    "timeout-minutes", "env", "working-directory", "shell",
}
STRATEGY_KEYS = {"matrix", "fail-fast", "max-parallel"}
PUSH_KEYS = {"branches", "branches-ignore", "tags", "tags-ignore", "paths", "paths-ignore"}
PULL_REQUEST_KEYS = {"branches", "branches-ignore", "paths", "paths-ignore", "types"}
INPUT_KEYS = {"description", "required", "default", "type", "options"}
INPUT_TYPES = {"string", "boolean", "number", "choice"}
SHELLS = {"bash", "sh", "python"}

DEFAULT_WORKFLOW_NAME = "workflow"


# ----------------------------------------------------------------------
# Small validation helpers
# ----------------------------------------------------------------------

class _Ctx:
    """Carries the document source into every error raised while parsing."""

    def __init__(self, source: Optional[str]):
        self.source = source

    def fail(self, path: str, message: str) -> SchemaError:
        return SchemaError(path=path, message=message, source=self.source)

    def mapping(self, value: Any, path: str) -> Mapping[str, Any]:
        if not isinstance(value, dict):
            raise self.fail(path, f"expected an object, got {_type_name(value)}")
        return value

    def keys(self, value: Mapping[str, Any], allowed: set, path: str) -> None:
        unknown = sorted(set(value) - allowed)
        if unknown:
            raise self.fail(f"{path}.{unknown[0]}", f"unknown key (allowed: {sorted(allowed)})")

    def string(self, value: Any, path: str) -> str:
        if not isinstance(value, str):
            raise self.fail(path, f"expected a string, got {_type_name(value)}")
        return value

    def nonempty_string(self, value: Any, path: str) -> str:
        s = self.string(value, path)
        if not s.strip():
            raise self.fail(path, "must not be empty")
        return s

    def boolean(self, value: Any, path: str) -> bool:
        if not isinstance(value, bool):
            raise self.fail(path, f"expected true/false, got {_type_name(value)}")
        return value

    def positive_number(self, value: Any, path: str) -> float:
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            raise self.fail(path, "expected a positive number")
        return value

    def string_list(self, value: Any, path: str, *, allow_scalar: bool = False) -> Tuple[str, ...]:
        if allow_scalar and isinstance(value, str):
            return (value,)
        if not isinstance(value, list):
            raise self.fail(path, f"expected a list of strings, got {_type_name(value)}")
        return tuple(self.string(v, f"{path}[{i}]") for i, v in enumerate(value))

    def env(self, value: Any, path: str) -> Dict[str, str]:
        out: Dict[str, str] = {}
        for k, v in self.mapping(value, path).items():
            if isinstance(v, bool):
                v = "true" if v else "false"
            elif isinstance(v, (int, float)):
                v = str(v)
            elif not isinstance(v, str):
                raise self.fail(f"{path}.{k}", "expected a scalar value")
            self.template(v, f"{path}.{k}")
            out[k] = v
        return out

    def expression(self, value: Any, path: str) -> str:
        if isinstance(value, bool):
            value = "true" if value else "false"
        s = self.nonempty_string(value, path)
        try:
            validate_expression(s)
        except ExpressionError as e:
            raise self.fail(path, str(e)) from e
        return s

    def template(self, value: str, path: str) -> str:
        try:
            validate_template(value)
        except ExpressionError as e:
            raise self.fail(path, str(e)) from e
        return value


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    return {
        dict: "object", list: "list", str: "string", bool: "boolean",
        int: "number", float: "number",
    }.get(type(value), type(value).__name__)


# ----------------------------------------------------------------------
# Triggers
# ----------------------------------------------------------------------

def _parse_on(c: _Ctx, value: Any) -> Tuple[Trigger, ...]:
    if isinstance(value, str):
        value = [value]
    if isinstance(value, list):
        names = c.string_list(value, "on")
        value = {n: None for n in names}
    on = c.mapping(value, "on")
    if not on:
        raise c.fail("on", "at least one trigger is required")

    triggers: List[Trigger] = []
    seen = set()
    for name, cfg in on.items():
        path = f"on.{name}"
        if name not in TRIGGER_NAMES:
            raise c.fail(path, f"unknown trigger (expected one of {sorted(TRIGGER_NAMES)})")
        kind = TRIGGER_NAMES[name]
        if kind in seen:
            raise c.fail(path, "trigger declared twice")
        seen.add(kind)

        if kind is EventKind.PUSH:
            triggers.append(_parse_ref_trigger(c, kind, cfg, path, PUSH_KEYS))
        elif kind is EventKind.PULL_REQUEST:
            triggers.append(_parse_ref_trigger(c, kind, cfg, path, PULL_REQUEST_KEYS))
        elif kind is EventKind.SCHEDULE:
            triggers.append(_parse_schedule(c, cfg, path))
        else:
            triggers.append(_parse_manual(c, cfg, path))
    return tuple(triggers)


def _parse_ref_trigger(c: _Ctx, kind: EventKind, cfg: Any, path: str, allowed: set) -> Trigger:
    if cfg is None:
        return Trigger(kind=kind)
    cfg = c.mapping(cfg, path)
    c.keys(cfg, allowed, path)
    for a, b in (("branches", "branches-ignore"), ("tags", "tags-ignore"), ("paths", "paths-ignore")):
        if a in cfg and b in cfg:
            raise c.fail(f"{path}.{b}", f"cannot be combined with '{a}'")

    def lst(key: str) -> Tuple[str, ...]:
        return c.string_list(cfg[key], f"{path}.{key}") if key in cfg else ()

    return Trigger(
        kind=kind,
        branches=lst("branches"),
        branches_ignore=lst("branches-ignore"),
        tags=lst("tags"),
        tags_ignore=lst("tags-ignore"),
        paths=lst("paths"),
        paths_ignore=lst("paths-ignore"),
        types=lst("types"),
    )


def _parse_schedule(c: _Ctx, cfg: Any, path: str) -> Trigger:
    if not isinstance(cfg, list) or not cfg:
        raise c.fail(path, "expected a non-empty list of {\"cron\": ...} entries")
    crons = []
    for i, entry in enumerate(cfg):
        p = f"{path}[{i}]"
        entry = c.mapping(entry, p)
        c.keys(entry, {"cron"}, p)
        if "cron" not in entry:
            raise c.fail(f"{p}.cron", "required")
        cron = c.nonempty_string(entry["cron"], f"{p}.cron")
        try:
            parse_cron(cron)
        except ValueError as e:
            raise c.fail(f"{p}.cron", str(e)) from e
        crons.append(cron)
    return Trigger(kind=EventKind.SCHEDULE, crons=tuple(crons))


def _parse_manual(c: _Ctx, cfg: Any, path: str) -> Trigger:
    if cfg is None:
        return Trigger(kind=EventKind.MANUAL)
    cfg = c.mapping(cfg, path)
    c.keys(cfg, {"inputs"}, path)
    inputs: List[TriggerInput] = []
    for name, spec in c.mapping(cfg.get("inputs") or {}, f"{path}.inputs").items():
        p = f"{path}.inputs.{name}"
        spec = c.mapping(spec if spec is not None else {}, p)
        c.keys(spec, INPUT_KEYS, p)
        type_ = c.string(spec.get("type", "string"), f"{p}.type")
        if type_ not in INPUT_TYPES:
            raise c.fail(f"{p}.type", f"expected one of {sorted(INPUT_TYPES)}")
        options = c.string_list(spec["options"], f"{p}.options") if "options" in spec else ()
        if type_ == "choice" and not options:
            raise c.fail(f"{p}.options", "a choice input needs options")
        inputs.append(TriggerInput(
            name=name,
            required=c.boolean(spec.get("required", False), f"{p}.required"),
            default=spec.get("default"),
            type=type_,
            options=options,
            description=c.string(spec.get("description", ""), f"{p}.description"),
        ))
    return Trigger(kind=EventKind.MANUAL, inputs=tuple(inputs))


# ----------------------------------------------------------------------
# Jobs & steps
# ----------------------------------------------------------------------

def _parse_concurrency(c: _Ctx, value: Any, path: str) -> ConcurrencySpec:
    if isinstance(value, str):
        return ConcurrencySpec(group=c.template(c.nonempty_string(value, path), path))
    value = c.mapping(value, path)
    c.keys(value, {"group", "cancel-in-progress"}, path)
    if "group" not in value:
        raise c.fail(f"{path}.group", "required")
    return ConcurrencySpec(
        group=c.template(c.nonempty_string(value["group"], f"{path}.group"), f"{path}.group"),
        cancel_in_progress=c.boolean(value.get("cancel-in-progress", False), f"{path}.cancel-in-progress"),
    )


def _parse_step(c: _Ctx, value: Any, path: str) -> StepDefinition:
    step = c.mapping(value, path)
    c.keys(step, STEP_KEYS, path)

    has_run, has_uses = "run" in step, "uses" in step
    if has_run == has_uses:
        raise c.fail(path, "a step needs exactly one of 'run' or 'uses'")

    if has_run:
        run = c.template(c.nonempty_string(step["run"], f"{path}.run"), f"{path}.run")
        kind, uses = StepKind.RUN, None
        default_name = "Run " + run.strip().splitlines()[0]
    else:
        uses = c.nonempty_string(step["uses"], f"{path}.uses")
        kind, run = StepKind.USES, None
        default_name = "Run " + uses
    if "with" in step and not has_uses:
        raise c.fail(f"{path}.with", "only 'uses' steps take inputs")
    if "shell" in step and not has_run:
        raise c.fail(f"{path}.shell", "only 'run' steps take a shell")

    with_ = dict(c.mapping(step.get("with") or {}, f"{path}.with"))
    for k, v in with_.items():
        if isinstance(v, str):
            c.template(v, f"{path}.with.{k}")

    shell = None
    if "shell" in step:
        shell = c.string(step["shell"], f"{path}.shell")
        if shell not in SHELLS:
            raise c.fail(f"{path}.shell", f"expected one of {sorted(SHELLS)}")

    step_id = None
    if "id" in step:
        step_id = c.nonempty_string(step["id"], f"{path}.id")
        if not JOB_ID_RE.match(step_id):
            raise c.fail(f"{path}.id", "must start with a letter or '_' and contain only [A-Za-z0-9_-]")

    return StepDefinition(
        name=c.nonempty_string(step["name"], f"{path}.name") if "name" in step else default_name,
        kind=kind,
        run=run,
        uses=uses,
        with_=with_,
        id=step_id,
        if_=c.expression(step["if"], f"{path}.if") if "if" in step else None,
        continue_on_error=c.boolean(step.get("continue-on-error", False), f"{path}.continue-on-error"),
        timeout_minutes=(
            c.positive_number(step["timeout-minutes"], f"{path}.timeout-minutes")
            if "timeout-minutes" in step else None
        ),
        env=c.env(step.get("env") or {}, f"{path}.env"),
        working_directory=(
            c.template(c.nonempty_string(step["working-directory"], f"{path}.working-directory"),
                       f"{path}.working-directory")
            if "working-directory" in step else None
        ),
        shell=shell,
    )


def _parse_strategy(c: _Ctx, value: Any, path: str) -> Tuple[Optional[MatrixSpec], bool, Optional[int]]:
    strategy = c.mapping(value, path)
    c.keys(strategy, STRATEGY_KEYS, path)
    fail_fast = c.boolean(strategy.get("fail-fast", True), f"{path}.fail-fast")
    max_parallel = None
    if "max-parallel" in strategy:
        mp = strategy["max-parallel"]
        if isinstance(mp, bool) or not isinstance(mp, int) or mp < 1:
            raise c.fail(f"{path}.max-parallel", "expected a positive integer")
        max_parallel = mp

    if "matrix" not in strategy:
        raise c.fail(f"{path}.matrix", "required")
    mpath = f"{path}.matrix"
    matrix = c.mapping(strategy["matrix"], mpath)
    axes: Dict[str, Tuple[Any, ...]] = {}
    for name, values in matrix.items():
        if name in ("include", "exclude"):
            continue
        if not isinstance(values, list) or not values:
            raise c.fail(f"{mpath}.{name}", "a matrix axis must be a non-empty list")
        axes[name] = tuple(values)

    def combos(key: str) -> Tuple[Mapping[str, Any], ...]:
        if key not in matrix:
            return ()
        if not isinstance(matrix[key], list):
            raise c.fail(f"{mpath}.{key}", "expected a list of objects")
        return tuple(dict(c.mapping(v, f"{mpath}.{key}[{i}]")) for i, v in enumerate(matrix[key]))

    include, exclude = combos("include"), combos("exclude")
    for i, ex in enumerate(exclude):
        for k in ex:
            if k not in axes:
                raise c.fail(f"{mpath}.exclude[{i}].{k}", "not a matrix axis")
    if not axes and not include:
        raise c.fail(mpath, "a matrix needs at least one axis or include entry")
    spec = MatrixSpec(axes=axes, include=include, exclude=exclude)
    if not expand_matrix(spec):
        raise c.fail(mpath, "exclude removes every combination")
    return spec, fail_fast, max_parallel


def _parse_job(c: _Ctx, job_id: str, value: Any) -> JobDefinition:
    path = f"jobs.{job_id}"
    if not JOB_ID_RE.match(job_id):
        raise c.fail(path, "job id must start with a letter or '_' and contain only [A-Za-z0-9_-]")
    job = c.mapping(value, path)
    c.keys(job, JOB_KEYS, path)

    if "runs-on" not in job:
        raise c.fail(f"{path}.runs-on", "required")
    runs_on = c.nonempty_string(job["runs-on"], f"{path}.runs-on")

    if "steps" not in job:
        raise c.fail(f"{path}.steps", "required")
    if not isinstance(job["steps"], list) or not job["steps"]:
        raise c.fail(f"{path}.steps", "must be a non-empty list")
    steps = tuple(_parse_step(c, s, f"{path}.steps[{i}]") for i, s in enumerate(job["steps"]))

    step_ids = [s.id for s in steps if s.id]
    if len(step_ids) != len(set(step_ids)):
        dupes = sorted({i for i in step_ids if step_ids.count(i) > 1})
        raise c.fail(f"{path}.steps", f"duplicate step ids: {dupes}")

    needs: List[str] = []
    if "needs" in job:
        for n in c.string_list(job["needs"], f"{path}.needs", allow_scalar=True):
            if n not in needs:
                needs.append(n)

    matrix, fail_fast, max_parallel = None, True, None
    if "strategy" in job:
        matrix, fail_fast, max_parallel = _parse_strategy(c, job["strategy"], f"{path}.strategy")

    outputs = {}
    for k, v in c.mapping(job.get("outputs") or {}, f"{path}.outputs").items():
        outputs[k] = c.template(c.string(v, f"{path}.outputs.{k}"), f"{path}.outputs.{k}")

    return JobDefinition(
        id=job_id,
        steps=steps,
        runs_on=runs_on,
        needs=tuple(needs),
        name=c.nonempty_string(job["name"], f"{path}.name") if "name" in job else None,
        matrix=matrix,
        fail_fast=fail_fast,
        max_parallel=max_parallel,
        if_=c.expression(job["if"], f"{path}.if") if "if" in job else None,
        env=c.env(job.get("env") or {}, f"{path}.env"),
        timeout_minutes=(
            c.positive_number(job["timeout-minutes"], f"{path}.timeout-minutes")
            if "timeout-minutes" in job else None
        ),
        concurrency=(
            _parse_concurrency(c, job["concurrency"], f"{path}.concurrency")
            if "concurrency" in job else None
        ),
        outputs=outputs,
    )


# ----------------------------------------------------------------------
# Dependency graph checks
# ----------------------------------------------------------------------

WHITE, GRAY, BLACK = 0, 1, 2


def find_cycle(needs: Mapping[str, Tuple[str, ...]]) -> Optional[List[str]]:
    """
    Depth-first search with white/gray/black coloring.

    Returns the job ids along the first cycle found (first id repeated at
    the end), or None when the relation is acyclic.
    """
    color = {n: WHITE for n in needs}
    stack: List[str] = []

    def visit(node: str) -> Optional[List[str]]:
        color[node] = GRAY
        stack.append(node)
        for dep in needs.get(node, ()):
            if color.get(dep) == GRAY:
                return stack[stack.index(dep):] + [dep]
            if color.get(dep) == WHITE:
                found = visit(dep)
                if found:
                    return found
        stack.pop()
        color[node] = BLACK
        return None

    for node in needs:
        if color[node] == WHITE:
            found = visit(node)
            if found:
                return found
    return None


def _check_needs(c: _Ctx, jobs: Mapping[str, JobDefinition]) -> None:
    for job in jobs.values():
        for i, dep in enumerate(job.needs):
            if dep not in jobs:
                raise c.fail(
                    f"jobs.{job.id}.needs[{i}]",
                    f"unknown job '{dep}'. Known jobs: {sorted(jobs)}",
                )
    cycle = find_cycle({j.id: j.needs for j in jobs.values()})
    if cycle:
        raise CyclicDependencyError(cycle, source=c.source)


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def parse_document(data: Any, *, source: Optional[str] = None) -> WorkflowDefinition:
    """Validate an already-decoded document (dict) into a WorkflowDefinition."""
    c = _Ctx(source)
    doc = c.mapping(data, "$")
    c.keys(doc, WORKFLOW_KEYS, "$")

    if "on" not in doc:
        raise c.fail("on", "required")
    triggers = _parse_on(c, doc["on"])

    if "jobs" not in doc:
        raise c.fail("jobs", "required")
    jobs_doc = c.mapping(doc["jobs"], "jobs")
    if not jobs_doc:
        raise c.fail("jobs", "at least one job is required")
    jobs = {job_id: _parse_job(c, job_id, spec) for job_id, spec in jobs_doc.items()}
    _check_needs(c, jobs)

    if "name" in doc:
        name = c.nonempty_string(doc["name"], "name")
    elif source:
        name = Path(source).stem
    else:
        name = DEFAULT_WORKFLOW_NAME

    return WorkflowDefinition(
        name=name,
        triggers=triggers,
        jobs=jobs,
        env=c.env(doc.get("env") or {}, "env"),
        concurrency=_parse_concurrency(c, doc["concurrency"], "concurrency") if "concurrency" in doc else None,
        source=source,
    )


def parse(document_text: str, *, source: Optional[str] = None) -> WorkflowDefinition:
    """
    Parse a JSON workflow document.

    Raises:
        SchemaError: structural violation (names the field path)
        CyclicDependencyError: the `needs` relation has a cycle
    """
    try:
        data = json.loads(document_text)
    except json.JSONDecodeError as e:
        raise SchemaError(path="$", message=f"invalid JSON at line {e.lineno} column {e.colno}: {e.msg}",
                          source=source) from e
    return parse_document(data, source=source)


def load_workflow(path: str | Path) -> WorkflowDefinition:
    wf_path = Path(path).expanduser()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    return parse(wf_path.read_text(encoding="utf-8"), source=str(wf_path))


def load_workflows(directory: str | Path) -> List[WorkflowDefinition]:
    """Load every `*.json` workflow in a directory (sorted by file name)."""
    root = Path(directory).expanduser()
    if not root.is_dir():
        raise FileNotFoundError(f"Workflow directory not found: {root}")
    return [load_workflow(p) for p in sorted(root.glob("*.json"))]


# ----------------------------------------------------------------------
# Serialization (definition -> document)
# ----------------------------------------------------------------------

def _concurrency_doc(spec: ConcurrencySpec) -> Dict[str, Any]:
    return {"group": spec.group, "cancel-in-progress": spec.cancel_in_progress}


def _trigger_doc(t: Trigger) -> Any:
    if t.kind is EventKind.SCHEDULE:
        return [{"cron": c} for c in t.crons]
    if t.kind is EventKind.MANUAL:
        inputs = {}
        for i in t.inputs:
            spec: Dict[str, Any] = {"required": i.required, "type": i.type}
            if i.default is not None:
                spec["default"] = i.default
            if i.options:
                spec["options"] = list(i.options)
            if i.description:
                spec["description"] = i.description
            inputs[i.name] = spec
        return {"inputs": inputs} if inputs else None

    cfg: Dict[str, Any] = {}
    for key, attr in (
        ("branches", "branches"), ("branches-ignore", "branches_ignore"),
        ("tags", "tags"), ("tags-ignore", "tags_ignore"),
        ("paths", "paths"), ("paths-ignore", "paths_ignore"), ("types", "types"),
    ):
        values = getattr(t, attr)
        if values:
            cfg[key] = list(values)
    return cfg or None


def _step_doc(s: StepDefinition) -> Dict[str, Any]:
    d: Dict[str, Any] = {"name": s.name}
    if s.id:
        d["id"] = s.id
    if s.kind is StepKind.RUN:
        d["run"] = s.run
    else:
        d["uses"] = s.uses
        if s.with_:
            d["with"] = dict(s.with_)
    if s.if_:
        d["if"] = s.if_
    if s.continue_on_error:
        d["continue-on-error"] = True
    if s.timeout_minutes is not None:
        d["timeout-minutes"] = s.timeout_minutes
    if s.env:
        d["env"] = dict(s.env)
    if s.working_directory:
        d["working-directory"] = s.working_directory
    if s.shell:
        d["shell"] = s.shell
    return d


def _job_doc(j: JobDefinition) -> Dict[str, Any]:
    d: Dict[str, Any] = {}
    if j.name:
        d["name"] = j.name
    d["runs-on"] = j.runs_on
    if j.needs:
        d["needs"] = list(j.needs)
    if j.if_:
        d["if"] = j.if_
    if j.matrix is not None:
        matrix: Dict[str, Any] = {k: list(v) for k, v in j.matrix.axes.items()}
        if j.matrix.include:
            matrix["include"] = [dict(x) for x in j.matrix.include]
        if j.matrix.exclude:
            matrix["exclude"] = [dict(x) for x in j.matrix.exclude]
        strategy: Dict[str, Any] = {"matrix": matrix, "fail-fast": j.fail_fast}
        if j.max_parallel is not None:
            strategy["max-parallel"] = j.max_parallel
        d["strategy"] = strategy
    if j.env:
        d["env"] = dict(j.env)
    if j.timeout_minutes is not None:
        d["timeout-minutes"] = j.timeout_minutes
    if j.concurrency is not None:
        d["concurrency"] = _concurrency_doc(j.concurrency)
    if j.outputs:
        d["outputs"] = dict(j.outputs)
    d["steps"] = [_step_doc(s) for s in j.steps]
    return d


def to_document(definition: WorkflowDefinition) -> Dict[str, Any]:
    doc: Dict[str, Any] = {"name": definition.name}
    on: Dict[str, Any] = {}
    for t in definition.triggers:
        key = "workflow_dispatch" if t.kind is EventKind.MANUAL else t.kind.value
        on[key] = _trigger_doc(t)
    doc["on"] = on
    if definition.env:
        doc["env"] = dict(definition.env)
    if definition.concurrency is not None:
        doc["concurrency"] = _concurrency_doc(definition.concurrency)
    doc["jobs"] = {job_id: _job_doc(j) for job_id, j in definition.jobs.items()}
    return doc


def dump(definition: WorkflowDefinition, *, indent: int = 2) -> str:
    """Serialize a definition back to a JSON document that `parse` accepts."""
    return json.dumps(to_document(definition), indent=indent) + "\n"
