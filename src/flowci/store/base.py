# store/base.py
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional

from ..model import Run, RunStatus


class RunStore(ABC):
    """
    Persistence for Run/JobRun/StepRun records.

    `save` receives the coordinator's live Run and must copy it; `get` and
    `list_runs` always return fresh objects, so readers never share mutable
    state with a running coordinator.
    """

    @abstractmethod
    def save(self, run: Run) -> None:
        raise NotImplementedError

    @abstractmethod
    def get(self, run_id: str) -> Optional[Run]:
        raise NotImplementedError

    @abstractmethod
    def list_runs(
        self,
        *,
        workflow: Optional[str] = None,
        status: Optional[RunStatus] = None,
        limit: int = 50,
    ) -> List[Run]:
        """Newest first."""
        raise NotImplementedError

    @abstractmethod
    def delete(self, run_id: str) -> bool:
        """Drop a run together with its job and step records."""
        raise NotImplementedError
