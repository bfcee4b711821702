# server/settings.py
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///.flowci/runs.db"
    redis_url: Optional[str] = None
    queue_name: str = "flowci:events"
    workflow_dir: str = ".flowci/workflows"
    max_jobs: Optional[int] = None


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if environ is None else environ
    max_jobs = env.get("FLOWCI_MAX_JOBS")
    return Settings(
        database_url=env.get("FLOWCI_DATABASE_URL", Settings.database_url),
        redis_url=env.get("FLOWCI_REDIS_URL") or None,
        queue_name=env.get("FLOWCI_QUEUE_NAME", Settings.queue_name),
        workflow_dir=env.get("FLOWCI_WORKFLOW_DIR", Settings.workflow_dir),
        max_jobs=int(max_jobs) if max_jobs else None,
    )
