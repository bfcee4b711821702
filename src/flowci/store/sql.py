# store/sql.py
from __future__ import annotations

import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import sqlalchemy as sa
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, selectinload, sessionmaker
from sqlalchemy.pool import StaticPool

from ..model import JobRun, JobStatus, Run, RunStatus, StepRun, StepStatus
from .base import RunStore
from .models import Base, JobRunRow, RunRow, StepRunRow


def create_store_engine(url: str) -> Engine:
    """
    Engine for any SQLAlchemy URL. SQLite gets the settings it needs to be
    shared by the coordinator's worker threads.
    """
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite":
        return sa.create_engine(url, pool_pre_ping=True)

    database = parsed.database or ""
    if database and database != ":memory:":
        Path(database).expanduser().parent.mkdir(parents=True, exist_ok=True)
        return sa.create_engine(url, connect_args={"check_same_thread": False})
    return sa.create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands timestamps back without tzinfo
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _run_row(run: Run) -> RunRow:
    row = RunRow(
        run_id=run.run_id,
        workflow=run.workflow,
        status=run.status.value,
        context=dict(run.context),
        cause=run.cause,
        created_at=run.created_at,
        started_at=run.started_at,
        finished_at=run.finished_at,
    )
    for pos, jr in enumerate(run.jobs.values()):
        job_row = JobRunRow(
            position=pos,
            key=jr.key,
            job_id=jr.job_id,
            status=jr.status.value,
            matrix=dict(jr.matrix),
            outputs=dict(jr.outputs),
            started_at=jr.started_at,
            finished_at=jr.finished_at,
            error=jr.error,
        )
        for spos, sr in enumerate(jr.steps):
            job_row.steps.append(StepRunRow(
                position=spos,
                name=sr.name,
                step_id=sr.step_id,
                status=sr.status.value,
                conclusion=sr.conclusion.value if sr.conclusion else None,
                output=sr.output,
                exit_code=sr.exit_code,
                duration=sr.duration,
                outputs=dict(sr.outputs),
                error=sr.error,
            ))
        row.jobs.append(job_row)
    return row


def _to_run(row: RunRow) -> Run:
    jobs = {}
    for jrow in row.jobs:
        jobs[jrow.key] = JobRun(
            key=jrow.key,
            job_id=jrow.job_id,
            status=JobStatus(jrow.status),
            matrix=dict(jrow.matrix or {}),
            outputs=dict(jrow.outputs or {}),
            started_at=_aware(jrow.started_at),
            finished_at=_aware(jrow.finished_at),
            error=jrow.error,
            steps=[
                StepRun(
                    name=srow.name,
                    step_id=srow.step_id,
                    status=StepStatus(srow.status),
                    conclusion=StepStatus(srow.conclusion) if srow.conclusion else None,
                    output=srow.output or "",
                    exit_code=srow.exit_code,
                    duration=srow.duration or 0.0,
                    outputs=dict(srow.outputs or {}),
                    error=srow.error,
                )
                for srow in jrow.steps
            ],
        )
    return Run(
        run_id=row.run_id,
        workflow=row.workflow,
        status=RunStatus(row.status),
        jobs=jobs,
        context=dict(row.context or {}),
        cause=row.cause,
        created_at=_aware(row.created_at),
        started_at=_aware(row.started_at),
        finished_at=_aware(row.finished_at),
    )


class SqlRunStore(RunStore):
    """Relational RunStore (runs -> job_runs -> step_runs) via SQLAlchemy."""

    def __init__(self, url_or_engine: str | Engine = "sqlite://", *, create_tables: bool = True):
        self.engine = (
            url_or_engine if isinstance(url_or_engine, Engine) else create_store_engine(url_or_engine)
        )
        self._sessions = sessionmaker(self.engine, expire_on_commit=False)
        self._write_lock = threading.Lock()
        if create_tables:
            Base.metadata.create_all(self.engine)

    def _load(self, session: Session, run_id: str) -> Optional[RunRow]:
        stmt = (
            sa.select(RunRow)
            .where(RunRow.run_id == run_id)
            .options(selectinload(RunRow.jobs).selectinload(JobRunRow.steps))
        )
        return session.execute(stmt).scalar_one_or_none()

    def save(self, run: Run) -> None:
        fresh = _run_row(run)
        with self._write_lock, self._sessions.begin() as s:
            existing = self._load(s, run.run_id)
            if existing is not None:
                s.delete(existing)
                s.flush()
            s.add(fresh)

    def get(self, run_id: str) -> Optional[Run]:
        with self._sessions() as s:
            row = self._load(s, run_id)
            return _to_run(row) if row is not None else None

    def list_runs(
        self,
        *,
        workflow: Optional[str] = None,
        status: Optional[RunStatus] = None,
        limit: int = 50,
    ) -> List[Run]:
        stmt = sa.select(RunRow).options(selectinload(RunRow.jobs).selectinload(JobRunRow.steps))
        if workflow is not None:
            stmt = stmt.where(RunRow.workflow == workflow)
        if status is not None:
            stmt = stmt.where(RunRow.status == status.value)
        stmt = stmt.order_by(RunRow.created_at.desc()).limit(limit)
        with self._sessions() as s:
            return [_to_run(row) for row in s.execute(stmt).scalars()]

    def delete(self, run_id: str) -> bool:
        with self._write_lock, self._sessions.begin() as s:
            row = self._load(s, run_id)
            if row is None:
                return False
            s.delete(row)
            return True
