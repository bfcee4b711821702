# scheduler.py
"""
Job graph scheduler.

A pure state machine over the job instances of one run. It performs no I/O
and no locking: the run coordinator owns one scheduler per run and calls it
while holding that run's lock.

Lifecycle of an instance:

    queued --take_ready()--> running --advance()--> success | failure |
                                                    skipped | cancelled
    queued --(prerequisite failed)--> skipped
    queued --(cancel_pending / fail-fast)--> cancelled
"""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Set

from .dag import JobInstance, build_dag, expand_job, topo_levels
from .errors import SchedulingDeadlock
from .model import JobStatus, RunStatus, WorkflowDefinition


@dataclass
class Advance:
    """Consequences of one state change, for the coordinator to act on."""
    eligible: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    cancelled: List[str] = field(default_factory=list)
    signal: List[str] = field(default_factory=list)

    def merge(self, other: Advance) -> None:
        self.eligible.extend(other.eligible)
        self.skipped.extend(other.skipped)
        self.cancelled.extend(other.cancelled)
        self.signal.extend(other.signal)


class JobGraphScheduler:
    def __init__(self, workflow: WorkflowDefinition, *, max_concurrency: Optional[int] = None):
        if max_concurrency is not None and max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.workflow = workflow
        self.jobs = workflow.jobs
        self.max_concurrency = max_concurrency
        self.adj, self.indeg = build_dag(self.jobs)

        self.instances: Dict[str, JobInstance] = {}
        self.by_job: Dict[str, List[str]] = {}
        for job in self.jobs.values():
            keys = []
            for inst in expand_job(job):
                self.instances[inst.key] = inst
                keys.append(inst.key)
            self.by_job[job.id] = keys

        self.status: Dict[str, JobStatus] = {k: JobStatus.QUEUED for k in self.instances}
        self.running: Set[str] = set()
        self.cancelled = False
        self._eligible: Deque[str] = deque()
        self._decided: Set[str] = set()

        for job in self.jobs.values():
            if not job.needs:
                self._make_eligible(job.id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def plan(self) -> List[List[str]]:
        """Topological stages of job ids (jobs in one stage may run in parallel)."""
        return topo_levels(self.adj, self.indeg)

    @property
    def done(self) -> bool:
        return all(s.terminal for s in self.status.values())

    def job_status(self, job_id: str) -> JobStatus:
        """Aggregate status of a job over all of its (matrix) instances."""
        statuses = [self.status[k] for k in self.by_job[job_id]]
        if any(s is JobStatus.RUNNING for s in statuses):
            return JobStatus.RUNNING
        if any(s is JobStatus.QUEUED for s in statuses):
            return JobStatus.QUEUED
        if any(s is JobStatus.FAILURE for s in statuses):
            return JobStatus.FAILURE
        if any(s is JobStatus.CANCELLED for s in statuses):
            return JobStatus.CANCELLED
        if all(s is JobStatus.SKIPPED for s in statuses):
            return JobStatus.SKIPPED
        return JobStatus.SUCCESS

    def _job_terminal(self, job_id: str) -> bool:
        return all(self.status[k].terminal for k in self.by_job[job_id])

    @property
    def run_status(self) -> RunStatus:
        if not self.done:
            return RunStatus.RUNNING
        results = [self.job_status(j) for j in self.jobs]
        if any(r is JobStatus.FAILURE for r in results):
            return RunStatus.FAILURE
        if self.cancelled or any(r is JobStatus.CANCELLED for r in results):
            return RunStatus.CANCELLED
        return RunStatus.SUCCESS

    def check_deadlock(self) -> None:
        """Raise if nothing runs, nothing can start and the graph is not terminal."""
        if self.done or self.running:
            return
        if any(self.status[k] is JobStatus.QUEUED for k in self._eligible):
            return
        pending = [k for k, s in self.status.items() if not s.terminal]
        raise SchedulingDeadlock(pending)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _make_eligible(self, job_id: str) -> List[str]:
        self._decided.add(job_id)
        keys = [k for k in self.by_job[job_id] if self.status[k] is JobStatus.QUEUED]
        self._eligible.extend(keys)
        return keys

    def _running_of(self, job_id: str) -> int:
        return sum(1 for k in self.by_job[job_id] if k in self.running)

    def take_ready(self) -> List[JobInstance]:
        """
        Pop eligible instances in FIFO order while the concurrency ceiling
        (and each matrix's max-parallel) allows, marking them running.
        """
        started: List[JobInstance] = []
        deferred: List[str] = []
        while self._eligible:
            if self.max_concurrency is not None and len(self.running) >= self.max_concurrency:
                break
            key = self._eligible.popleft()
            if self.status[key] is not JobStatus.QUEUED:
                continue
            inst = self.instances[key]
            limit = inst.job.max_parallel
            if limit is not None and self._running_of(inst.job_id) >= limit:
                deferred.append(key)
                continue
            self.status[key] = JobStatus.RUNNING
            self.running.add(key)
            started.append(inst)
        self._eligible.extendleft(reversed(deferred))
        return started

    def advance(self, key: str, outcome: JobStatus) -> Advance:
        """Record the terminal outcome of a running (or queued) instance."""
        if not outcome.terminal:
            raise ValueError(f"advance() needs a terminal status, got {outcome.value}")
        if self.status[key].terminal:
            return Advance()

        self.running.discard(key)
        self.status[key] = outcome
        adv = Advance()
        job = self.instances[key].job

        if outcome is JobStatus.FAILURE and job.matrix is not None and job.fail_fast:
            for sibling in self.by_job[job.id]:
                if self.status[sibling] is JobStatus.QUEUED:
                    self.status[sibling] = JobStatus.CANCELLED
                    adv.cancelled.append(sibling)
                elif self.status[sibling] is JobStatus.RUNNING:
                    adv.signal.append(sibling)

        self._propagate(job.id, adv)
        return adv

    def _propagate(self, job_id: str, adv: Advance) -> None:
        """Decide dependents of `job_id` once all their prerequisites are terminal."""
        if not self._job_terminal(job_id):
            return
        for dep_id, dep in self.jobs.items():
            if dep_id not in self.adj[job_id] or dep_id in self._decided:
                continue
            if not all(self._job_terminal(n) for n in dep.needs):
                continue

            results = [self.job_status(n) for n in dep.needs]
            if all(r is JobStatus.SUCCESS for r in results) or dep.tolerates_failure:
                adv.eligible.extend(self._make_eligible(dep_id))
                continue

            self._decided.add(dep_id)
            for k in self.by_job[dep_id]:
                self.status[k] = JobStatus.SKIPPED
                adv.skipped.append(k)
            self._propagate(dep_id, adv)

    def cancel_pending(self) -> Advance:
        """
        Cancel the whole graph: queued instances become cancelled directly,
        running instances are reported in `signal` and finish through
        advance() once their executor has stopped.
        """
        self.cancelled = True
        adv = Advance()
        for key, status in self.status.items():
            if status is JobStatus.QUEUED:
                self.status[key] = JobStatus.CANCELLED
                adv.cancelled.append(key)
            elif status is JobStatus.RUNNING:
                adv.signal.append(key)
        self._decided.update(self.jobs)
        self._eligible.clear()
        return adv
