# store/models.py
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class RunRow(Base):
    __tablename__ = "runs"
    run_id: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    workflow: Mapped[str] = mapped_column(sa.Text, nullable=False, index=True)
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False, index=True)
    context: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    cause: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)

    jobs: Mapped[List[JobRunRow]] = relationship(
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="JobRunRow.position",
    )


class JobRunRow(Base):
    __tablename__ = "job_runs"
    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(sa.ForeignKey("runs.run_id", ondelete="CASCADE"), nullable=False, index=True)
    position: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    key: Mapped[str] = mapped_column(sa.Text, nullable=False)
    job_id: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    matrix: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    outputs: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    started_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)

    run: Mapped[RunRow] = relationship(back_populates="jobs")
    steps: Mapped[List[StepRunRow]] = relationship(
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="StepRunRow.position",
    )


class StepRunRow(Base):
    __tablename__ = "step_runs"
    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    job_run_id: Mapped[int] = mapped_column(sa.ForeignKey("job_runs.id", ondelete="CASCADE"), nullable=False, index=True)
    position: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    step_id: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    conclusion: Mapped[Optional[str]] = mapped_column(sa.String(16), nullable=True)
    output: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    exit_code: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    duration: Mapped[float] = mapped_column(sa.Float, nullable=False, default=0.0)
    outputs: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    error: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)

    job: Mapped[JobRunRow] = relationship(back_populates="steps")
