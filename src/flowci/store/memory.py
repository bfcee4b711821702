# store/memory.py
from __future__ import annotations

import threading
from typing import Any, Dict, List, Optional

from ..model import Run, RunStatus
from .base import RunStore


class MemoryRunStore(RunStore):
    """Keeps dict snapshots of runs in process memory."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._runs: Dict[str, Dict[str, Any]] = {}

    def save(self, run: Run) -> None:
        snapshot = run.to_dict()
        with self._lock:
            self._runs[run.run_id] = snapshot

    def get(self, run_id: str) -> Optional[Run]:
        with self._lock:
            snapshot = self._runs.get(run_id)
        return Run.from_dict(snapshot) if snapshot is not None else None

    def list_runs(
        self,
        *,
        workflow: Optional[str] = None,
        status: Optional[RunStatus] = None,
        limit: int = 50,
    ) -> List[Run]:
        with self._lock:
            snapshots = list(self._runs.values())
        runs = [Run.from_dict(s) for s in snapshots]
        if workflow is not None:
            runs = [r for r in runs if r.workflow == workflow]
        if status is not None:
            runs = [r for r in runs if r.status is status]
        runs.sort(key=lambda r: r.created_at, reverse=True)
        return runs[:limit]

    def delete(self, run_id: str) -> bool:
        with self._lock:
            return self._runs.pop(run_id, None) is not None
