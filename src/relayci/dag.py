# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, List, Mapping, Set, Tuple

from .errors import CyclicGraphError, UnknownDependencyError
from .model import JobSpec, PipelineDefinition


def build_dag(jobs: Mapping[str, JobSpec]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from JobSpecs.

    Returns (adj, indeg) where adj maps a job to the jobs that need it and
    indeg counts each job's distinct predecessors.
    """
    adj: Dict[str, Set[str]] = {name: set() for name in jobs}
    indeg: Dict[str, int] = {name: 0 for name in jobs}

    for name, spec in jobs.items():
        for dep in spec.needs:
            if dep not in jobs:
                raise UnknownDependencyError(job=name, missing=dep, known=list(jobs))
            # Edge dep -> name (dep must finish before name)
            if name not in adj[dep]:
                adj[dep].add(name)
                indeg[name] += 1

    return adj, indeg


def _find_cycle(adj: Dict[str, Set[str]], stuck: Set[str]) -> List[str]:
    """
    Walk predecessor edges inside the stuck set until a node repeats.

    Every stuck node still has a stuck predecessor, so the walk always
    closes a cycle.
    """
    preds: Dict[str, Set[str]] = {n: set() for n in stuck}
    for src, dests in adj.items():
        for dest in dests:
            if src in stuck and dest in stuck:
                preds[dest].add(src)

    path: List[str] = []
    seen: Dict[str, int] = {}
    node = min(stuck)
    while node not in seen:
        seen[node] = len(path)
        path.append(node)
        node = min(preds[node])
    cycle = path[seen[node]:] + [node]
    cycle.reverse()
    return cycle


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (stages).
    Each stage can run in parallel.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted(n for n, d in indeg.items() if d == 0))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level: List[str] = []
        for _ in range(len(q)):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        stuck = {n for n, d in indeg.items() if d > 0}
        raise CyclicGraphError(cycle=_find_cycle(adj, stuck))

    return levels


def validate_graph(pipeline: PipelineDefinition) -> List[List[str]]:
    """Check references and acyclicity; return the parallel stages."""
    adj, indeg = build_dag(pipeline.jobs)
    return topo_levels(adj, indeg)
