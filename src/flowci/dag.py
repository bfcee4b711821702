# dag.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from itertools import product
from typing import Any, Dict, List, Mapping, Set, Tuple

from .errors import CyclicDependencyError
from .expressions import to_string
from .model import JobDefinition, MatrixSpec


def build_dag(jobs: Mapping[str, JobDefinition]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from job definitions.

    Returns:
      adj:   job id -> ids of jobs that need it (edge needs -> job)
      indeg: job id -> number of prerequisites
    """
    adj: Dict[str, Set[str]] = {n: set() for n in jobs}
    indeg: Dict[str, int] = {n: 0 for n in jobs}

    for job in jobs.values():
        for dep in job.needs:
            if dep not in adj:
                raise ValueError(
                    f"Job '{job.id}' needs missing job '{dep}'. "
                    f"Known jobs: {sorted(adj)}"
                )
            if job.id not in adj[dep]:
                adj[dep].add(job.id)
                indeg[job.id] += 1

    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (stages).
    Each stage can run in parallel.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted([n for n, d in indeg.items() if d == 0]))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        remaining = sorted([n for n, d in indeg.items() if d > 0])
        raise CyclicDependencyError(remaining)

    return levels


# ----------------------------------------------------------------------
# Matrix
# ----------------------------------------------------------------------

def _subset(candidate: Mapping[str, Any], combo: Mapping[str, Any]) -> bool:
    return all(k in combo and combo[k] == v for k, v in candidate.items())


def expand_matrix(spec: MatrixSpec) -> List[Dict[str, Any]]:
    """
    Cross product of the axes, minus `exclude` entries, plus `include` entries.

    An include entry extends every combination whose axis values it does not
    contradict; an include entry that fits no combination becomes a
    combination of its own.
    """
    names = list(spec.axes)
    combos: List[Dict[str, Any]] = []
    if names:
        combos = [dict(zip(names, values)) for values in product(*(spec.axes[n] for n in names))]
    combos = [c for c in combos if not any(_subset(ex, c) for ex in spec.exclude)]

    base_count = len(combos)
    for inc in spec.include:
        extended = False
        for c in combos[:base_count]:
            if all(c[k] == v for k, v in inc.items() if k in names):
                c.update(inc)
                extended = True
        if not extended:
            combos.append(dict(inc))
    return combos


def instance_key(job_id: str, values: Mapping[str, Any]) -> str:
    """`build (3.11, linux)` for a matrix instance, `build` otherwise."""
    if not values:
        return job_id
    return f"{job_id} ({', '.join(to_string(v) for v in values.values())})"


@dataclass(frozen=True)
class JobInstance:
    """One schedulable unit: a job, or one cell of a job's matrix."""
    key: str
    job: JobDefinition
    matrix: Mapping[str, Any] = field(default_factory=dict)

    @property
    def job_id(self) -> str:
        return self.job.id


def expand_job(job: JobDefinition) -> List[JobInstance]:
    if job.matrix is None:
        return [JobInstance(key=job.id, job=job)]
    instances: List[JobInstance] = []
    seen: Set[str] = set()
    for combo in expand_matrix(job.matrix):
        key = instance_key(job.id, combo)
        n = 2
        while key in seen:
            key = f"{instance_key(job.id, combo)} #{n}"
            n += 1
        seen.add(key)
        instances.append(JobInstance(key=key, job=job, matrix=combo))
    return instances
