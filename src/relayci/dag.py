# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, List, Set, Tuple

from .errors import ConfigurationError
from .matrix import validate_matrix
from .model import JobGroup


def build_graph(
    groups: List[JobGroup],
) -> Tuple[Dict[str, JobGroup], Dict[str, Set[str]], Dict[str, int]]:
    """
    Build the dependency graph over job groups.

    Returns (by_name, adj, indeg) where adj maps a group to the groups that
    need it and indeg counts each group's unresolved needs.

    Raises ConfigurationError for duplicate names, unknown needs, cycles,
    bad matrices and downloads from groups that are not in `needs`.
    """
    names = [g.name for g in groups]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ConfigurationError(f"duplicate job group names: {dupes}", {"groups": dupes})

    by_name: Dict[str, JobGroup] = {g.name: g for g in groups}
    adj: Dict[str, Set[str]] = {n: set() for n in by_name}   # dep -> dependents
    indeg: Dict[str, int] = {n: 0 for n in by_name}

    for g in groups:
        if not g.steps:
            raise ConfigurationError(f"group '{g.name}' has no steps")
        validate_matrix(g.name, g.matrix)

        for dep in g.needs:
            if dep not in by_name:
                raise ConfigurationError(
                    f"group '{g.name}' needs missing group '{dep}'",
                    {"known": sorted(by_name)},
                )
            if g.name not in adj[dep]:
                adj[dep].add(g.name)
                indeg[g.name] += 1

        for step in g.steps:
            if step.consumes and step.source not in g.needs:
                raise ConfigurationError(
                    f"group '{g.name}' step '{step.name}' downloads from '{step.source}', "
                    f"which is not in its needs",
                    {"needs": list(g.needs)},
                )

    topo_levels(adj, indeg)  # cycle check
    return by_name, adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert the DAG into topological "levels" (stages).
    Each stage can run in parallel.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted(n for n, d in indeg.items() if d == 0))

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
        remaining = sorted(n for n, d in indeg.items() if d > 0)
        raise ConfigurationError(
            f"dependency cycle between job groups: {remaining}",
            {"stuck": remaining},
        )

    return levels
