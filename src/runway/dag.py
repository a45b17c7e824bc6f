# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Set, Tuple

from .errors import PipelineError
from .model import Job


def build_dag(jobs: Iterable[Job]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from Job objects.

    Requires:
      - job.name: str (unique)
      - job.needs: names of jobs that must run BEFORE this job

    Returns (adj, indeg) where adj maps a job to its dependents.
    """
    jobs = list(jobs)
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise PipelineError(f"Duplicate job names found: {dupes}")

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in name_set}
    indeg: Dict[str, int] = {n: 0 for n in name_set}

    for job in jobs:
        for dep in job.needs:
            if dep not in name_set:
                raise PipelineError(
                    f"Job '{job.name}' needs missing job '{dep}'",
                    job=job.name,
                    details={"known": sorted(name_set)},
                )
            if dep == job.name:
                raise PipelineError(f"Job '{job.name}' needs itself", job=job.name)
            # Edge dep -> job.name (dep must run before job)
            if job.name not in adj[dep]:
                adj[dep].add(job.name)
                indeg[job.name] += 1

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
        raise PipelineError(f"Job graph has a cycle. Stuck jobs: {remaining}")

    return levels


def validate_graph(jobs: Iterable[Job]) -> List[List[str]]:
    """Raise PipelineError unless the jobs form a DAG; return its stages."""
    adj, indeg = build_dag(jobs)
    return topo_levels(adj, indeg)
