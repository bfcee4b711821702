# dispatch.py
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional

from .errors import FlowError
from .model import Event, WorkflowDefinition
from .parser import load_workflows
from .runner import RunCoordinator
from .triggers import match
from .ui.console import Console, get_console


@dataclass
class DispatchResult:
    run_ids: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


class Dispatcher:
    """
    Event ingestion: matches an event against the loaded workflows and starts
    one run per match. Input errors are reported per workflow and never stop
    the other matches from starting.
    """

    def __init__(
        self,
        workflows: Iterable[WorkflowDefinition],
        coordinator: RunCoordinator,
        *,
        console: Optional[Console] = None,
    ):
        self.coordinator = coordinator
        self.console = console
        self._lock = threading.Lock()
        self._workflows: List[WorkflowDefinition] = list(workflows)

    @classmethod
    def from_directory(cls, directory: str | Path, coordinator: RunCoordinator, **kwargs) -> Dispatcher:
        return cls(load_workflows(directory), coordinator, **kwargs)

    @property
    def workflows(self) -> List[WorkflowDefinition]:
        with self._lock:
            return list(self._workflows)

    def reload(self, workflows: Iterable[WorkflowDefinition]) -> None:
        """Swap the workflow set; runs already started keep their definitions."""
        with self._lock:
            self._workflows = list(workflows)

    def dispatch(self, event: Event) -> DispatchResult:
        console = self.console or get_console()
        result = DispatchResult()

        def on_error(workflow: WorkflowDefinition, error: FlowError) -> None:
            result.errors.append(f"{workflow.name}: {error}")
            console.print_debug(f"workflow '{workflow.name}' rejected {event.kind.value} event: {error}")

        for wf, context in match(event, self.workflows, on_error=on_error):
            run = self.coordinator.start(wf, context)
            result.run_ids.append(run.run_id)
            console.print_debug(f"started run {run.run_id} of '{wf.name}'")

        if not result.run_ids and not result.errors:
            console.print_debug(f"no workflow matched {event.kind.value} {event.ref}".rstrip())
        return result
