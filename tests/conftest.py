"""Test configuration and fixtures."""

from __future__ import annotations

import threading
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import pytest

from flowci.executor.base import StepEnvironment, StepExecutor
from flowci.model import ResolvedContext, StepDefinition, StepRun, StepStatus, WorkflowDefinition
from flowci.parser import parse_document
from flowci.runner import RunCoordinator
from flowci.store import MemoryRunStore
from flowci.ui.console import Console, set_console

Outcome = Union[StepStatus, Callable[[StepDefinition, StepEnvironment, threading.Event], StepRun]]


class ScriptedExecutor(StepExecutor):
    """
    Deterministic executor keyed by the step's interpolated command (or
    `uses` reference). Unscripted steps succeed immediately. A gated step
    blocks until its gate is opened or the step is cancelled.
    """

    def __init__(self, script: Optional[Dict[str, Outcome]] = None):
        self.script: Dict[str, Outcome] = dict(script or {})
        self.calls: List[Tuple[str, str]] = []
        self.environments: List[StepEnvironment] = []
        self._gates: Dict[str, threading.Event] = {}
        self._started: Dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    def gate(self, command: str) -> threading.Event:
        with self._lock:
            return self._gates.setdefault(command, threading.Event())

    def started(self, command: str) -> threading.Event:
        with self._lock:
            return self._started.setdefault(command, threading.Event())

    def commands(self, job_key: Optional[str] = None) -> List[str]:
        with self._lock:
            return [c for k, c in self.calls if job_key is None or k == job_key]

    def execute(self, step: StepDefinition, environment: StepEnvironment, cancel: threading.Event) -> StepRun:
        command = environment.command if environment.command is not None else step.uses
        with self._lock:
            self.calls.append((environment.job_key, command))
            self.environments.append(environment)
            gate = self._gates.get(command)
        self.started(command).set()

        if gate is not None:
            while not gate.is_set():
                if cancel.wait(0.01):
                    return StepRun(name=step.name, step_id=step.id, status=StepStatus.CANCELLED)

        outcome = self.script.get(command, StepStatus.SUCCESS)
        if callable(outcome):
            return outcome(step, environment, cancel)
        exit_code = 0 if outcome is StepStatus.SUCCESS else 1
        return StepRun(name=step.name, step_id=step.id, status=outcome, exit_code=exit_code)


def run_step(*commands: str, **job: Any) -> Dict[str, Any]:
    """Job document with one `run` step per command."""
    doc: Dict[str, Any] = {"runs-on": "local", "steps": [{"run": c} for c in commands]}
    doc.update({k.replace("_", "-"): v for k, v in job.items()})
    return doc


def make_workflow(jobs: Dict[str, Any], **extra: Any) -> WorkflowDefinition:
    doc: Dict[str, Any] = {"name": extra.pop("name", "test"), "on": extra.pop("on", "push"), "jobs": jobs}
    doc.update(extra)
    return parse_document(doc)


def push_context(ref: str = "refs/heads/main") -> ResolvedContext:
    return ResolvedContext(github={"event_name": "push", "ref": ref, "ref_name": ref.rsplit("/", 1)[-1]})


@pytest.fixture(autouse=True)
def quiet_console() -> Console:
    """Keep coordinator progress lines out of test output."""
    console = Console(quiet=True)
    set_console(console)
    return console


@pytest.fixture
def executor() -> ScriptedExecutor:
    return ScriptedExecutor()


@pytest.fixture
def store() -> MemoryRunStore:
    return MemoryRunStore()


@pytest.fixture
def coordinator(executor: ScriptedExecutor, store: MemoryRunStore) -> RunCoordinator:
    return RunCoordinator(executor, store=store)
