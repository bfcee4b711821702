# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional


class FlowError(Exception):
    """Base class for every error raised by flowci."""


# ----------------------------------------------------------------------
# Parse time
# ----------------------------------------------------------------------

@dataclass
class SchemaError(FlowError):
    """
    A workflow document is structurally invalid.

    `path` names the offending field, e.g. "jobs.build.steps[2].run".
    """
    path: str
    message: str
    source: Optional[str] = None

    def __str__(self) -> str:
        where = f"{self.source}: " if self.source else ""
        return f"{where}{self.path}: {self.message}"


class CyclicDependencyError(SchemaError):
    """The `needs` relation of a workflow contains a cycle."""

    def __init__(self, cycle: List[str], source: Optional[str] = None):
        self.cycle = list(cycle)
        super().__init__(
            path="jobs",
            message="dependency cycle: " + " -> ".join(self.cycle),
            source=source,
        )


@dataclass
class ExpressionError(FlowError):
    """An expression could not be parsed or evaluated."""
    expression: str
    message: str

    def __str__(self) -> str:
        return f"{self.message} in expression {self.expression!r}"


# ----------------------------------------------------------------------
# Trigger match time
# ----------------------------------------------------------------------

@dataclass
class MissingInputError(FlowError):
    workflow: str
    input_name: str

    def __str__(self) -> str:
        return f"workflow '{self.workflow}' requires input '{self.input_name}'"


@dataclass
class InvalidInputError(FlowError):
    workflow: str
    input_name: str
    message: str

    def __str__(self) -> str:
        return f"workflow '{self.workflow}' input '{self.input_name}': {self.message}"


# ----------------------------------------------------------------------
# Execution time (recorded on StepRun/JobRun, never escape a Run)
# ----------------------------------------------------------------------

@dataclass
class StepFailure(FlowError):
    message: str
    exit_code: Optional[int] = None
    outputs: dict = field(default_factory=dict)

    def __str__(self) -> str:
        if self.exit_code is None:
            return self.message
        return f"{self.message} (exit={self.exit_code})"


class TimeoutFailure(StepFailure):
    """The step exceeded its declared maximum duration."""


@dataclass
class SchedulingDeadlock(FlowError):
    """No job can ever become eligible although the graph is not terminal."""
    pending: List[str]

    def __str__(self) -> str:
        return f"scheduler deadlock, pending jobs: {self.pending}"


@dataclass
class RunNotFound(FlowError):
    run_id: str

    def __str__(self) -> str:
        return f"run not found: {self.run_id}"
