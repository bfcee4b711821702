from .dispatch import Dispatcher, DispatchResult
from .dsl import JobBuilder, build, job, matrix, sh, uses, wf, workflow
from .errors import (
    CyclicDependencyError,
    FlowError,
    MissingInputError,
    RunNotFound,
    SchemaError,
)
from .model import Event, EventKind, Run, RunStatus, WorkflowDefinition
from .parser import dump, load_workflow, parse
from .runner import RunCoordinator
from .triggers import match

__all__ = [
    "Dispatcher", "DispatchResult",
    "JobBuilder", "build", "job", "matrix", "sh", "uses", "wf", "workflow",
    "CyclicDependencyError", "FlowError", "MissingInputError", "RunNotFound", "SchemaError",
    "Event", "EventKind", "Run", "RunStatus", "WorkflowDefinition",
    "dump", "load_workflow", "parse",
    "RunCoordinator",
    "match",
]
