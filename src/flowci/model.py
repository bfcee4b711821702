# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .expressions import uses_status_function


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# ----------------------------------------------------------------------
# Enums
# ----------------------------------------------------------------------

class EventKind(str, Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    SCHEDULE = "schedule"
    MANUAL = "manual"


class StepKind(str, Enum):
    RUN = "run"
    USES = "uses"


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.SUCCESS, RunStatus.FAILURE, RunStatus.CANCELLED)


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in (JobStatus.QUEUED, JobStatus.RUNNING)


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"

    @property
    def failed(self) -> bool:
        return self in (StepStatus.FAILURE, StepStatus.TIMED_OUT)


# ----------------------------------------------------------------------
# Definitions (immutable, parsed once per document revision)
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class TriggerInput:
    """A declared input of a manually dispatched workflow."""
    name: str
    required: bool = False
    default: Any = None
    type: str = "string"
    options: Tuple[str, ...] = ()
    description: str = ""


@dataclass(frozen=True)
class Trigger:
    kind: EventKind
    branches: Tuple[str, ...] = ()
    branches_ignore: Tuple[str, ...] = ()
    tags: Tuple[str, ...] = ()
    tags_ignore: Tuple[str, ...] = ()
    paths: Tuple[str, ...] = ()
    paths_ignore: Tuple[str, ...] = ()
    types: Tuple[str, ...] = ()
    crons: Tuple[str, ...] = ()
    inputs: Tuple[TriggerInput, ...] = ()


@dataclass(frozen=True)
class ConcurrencySpec:
    group: str
    cancel_in_progress: bool = False


@dataclass(frozen=True)
class StepDefinition:
    """
    A single unit of work inside a job.

    Exactly one of `run` (shell command) or `uses` (action reference) is set.
    """
    name: str
    kind: StepKind
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Mapping[str, Any] = field(default_factory=dict)
    id: Optional[str] = None
    if_: Optional[str] = None
    continue_on_error: bool = False
    timeout_minutes: Optional[float] = None
    env: Mapping[str, str] = field(default_factory=dict)
    working_directory: Optional[str] = None
    shell: Optional[str] = None


@dataclass(frozen=True)
class MatrixSpec:
    axes: Mapping[str, Tuple[Any, ...]] = field(default_factory=dict)
    include: Tuple[Mapping[str, Any], ...] = ()
    exclude: Tuple[Mapping[str, Any], ...] = ()


@dataclass(frozen=True)
class JobDefinition:
    """
    A job: ordered steps + dependencies + runner/matrix/condition metadata.

    Canonical dependency field: `needs`
    """
    id: str
    steps: Tuple[StepDefinition, ...]
    runs_on: str
    needs: Tuple[str, ...] = ()
    name: Optional[str] = None
    matrix: Optional[MatrixSpec] = None
    fail_fast: bool = True
    max_parallel: Optional[int] = None
    if_: Optional[str] = None
    env: Mapping[str, str] = field(default_factory=dict)
    timeout_minutes: Optional[float] = None
    concurrency: Optional[ConcurrencySpec] = None
    outputs: Mapping[str, str] = field(default_factory=dict)

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @property
    def tolerates_failure(self) -> bool:
        """True if the job declares it may run after a prerequisite failed."""
        return self.if_ is not None and uses_status_function(self.if_)


@dataclass(frozen=True)
class WorkflowDefinition:
    name: str
    triggers: Tuple[Trigger, ...]
    jobs: Mapping[str, JobDefinition]
    env: Mapping[str, str] = field(default_factory=dict)
    concurrency: Optional[ConcurrencySpec] = None
    source: Optional[str] = None

    def trigger(self, kind: EventKind) -> Optional[Trigger]:
        for t in self.triggers:
            if t.kind is kind:
                return t
        return None


# ----------------------------------------------------------------------
# Events & context
# ----------------------------------------------------------------------

@dataclass
class Event:
    """An external trigger occurrence (webhook relay, manual API, clock)."""
    kind: EventKind
    ref: str = ""
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def ref_type(self) -> str:
        return "tag" if self.ref.startswith("refs/tags/") else "branch"

    @property
    def ref_name(self) -> str:
        for prefix in ("refs/heads/", "refs/tags/", "refs/pull/"):
            if self.ref.startswith(prefix):
                return self.ref[len(prefix):]
        return self.ref

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "ref": self.ref,
            "payload": dict(self.payload),
            "timestamp": _iso(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Event:
        ts = _from_iso(data.get("timestamp")) or utcnow()
        return cls(
            kind=EventKind(data["kind"]),
            ref=data.get("ref", ""),
            payload=dict(data.get("payload") or {}),
            timestamp=ts,
        )


@dataclass
class ResolvedContext:
    """
    Expression context resolved for one workflow at trigger-match time.

    Secrets are deliberately absent: they are supplied per step invocation
    by the coordinator's secrets provider.
    """
    github: Dict[str, Any] = field(default_factory=dict)
    inputs: Dict[str, Any] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    vars: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "github": dict(self.github),
            "inputs": dict(self.inputs),
            "env": dict(self.env),
            "vars": dict(self.vars),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ResolvedContext:
        return cls(
            github=dict(data.get("github") or {}),
            inputs=dict(data.get("inputs") or {}),
            env=dict(data.get("env") or {}),
            vars=dict(data.get("vars") or {}),
        )


# ----------------------------------------------------------------------
# Run records (owned exclusively by one Run)
# ----------------------------------------------------------------------

@dataclass
class StepRun:
    name: str
    status: StepStatus = StepStatus.PENDING
    conclusion: Optional[StepStatus] = None
    output: str = ""
    exit_code: Optional[int] = None
    duration: float = 0.0
    outputs: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None
    step_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "step_id": self.step_id,
            "status": self.status.value,
            "conclusion": self.conclusion.value if self.conclusion else None,
            "output": self.output,
            "exit_code": self.exit_code,
            "duration": self.duration,
            "outputs": dict(self.outputs),
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> StepRun:
        conclusion = data.get("conclusion")
        return cls(
            name=data["name"],
            step_id=data.get("step_id"),
            status=StepStatus(data["status"]),
            conclusion=StepStatus(conclusion) if conclusion else None,
            output=data.get("output") or "",
            exit_code=data.get("exit_code"),
            duration=float(data.get("duration") or 0.0),
            outputs=dict(data.get("outputs") or {}),
            error=data.get("error"),
        )


@dataclass
class JobRun:
    key: str
    job_id: str
    status: JobStatus = JobStatus.QUEUED
    matrix: Dict[str, Any] = field(default_factory=dict)
    steps: List[StepRun] = field(default_factory=list)
    outputs: Dict[str, str] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "job_id": self.job_id,
            "status": self.status.value,
            "matrix": dict(self.matrix),
            "steps": [s.to_dict() for s in self.steps],
            "outputs": dict(self.outputs),
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> JobRun:
        return cls(
            key=data["key"],
            job_id=data["job_id"],
            status=JobStatus(data["status"]),
            matrix=dict(data.get("matrix") or {}),
            steps=[StepRun.from_dict(s) for s in data.get("steps") or []],
            outputs=dict(data.get("outputs") or {}),
            started_at=_from_iso(data.get("started_at")),
            finished_at=_from_iso(data.get("finished_at")),
            error=data.get("error"),
        )


@dataclass
class Run:
    run_id: str
    workflow: str
    status: RunStatus = RunStatus.PENDING
    jobs: Dict[str, JobRun] = field(default_factory=dict)
    context: Dict[str, Any] = field(default_factory=dict)
    cause: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def job_runs(self, job_id: str) -> List[JobRun]:
        """All JobRuns (matrix instances included) of one job definition."""
        return [jr for jr in self.jobs.values() if jr.job_id == job_id]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "workflow": self.workflow,
            "status": self.status.value,
            "jobs": {k: jr.to_dict() for k, jr in self.jobs.items()},
            "context": dict(self.context),
            "cause": self.cause,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Run:
        return cls(
            run_id=data["run_id"],
            workflow=data["workflow"],
            status=RunStatus(data["status"]),
            jobs={k: JobRun.from_dict(v) for k, v in (data.get("jobs") or {}).items()},
            context=dict(data.get("context") or {}),
            cause=data.get("cause"),
            created_at=_from_iso(data.get("created_at")) or utcnow(),
            started_at=_from_iso(data.get("started_at")),
            finished_at=_from_iso(data.get("finished_at")),
        )
