# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Set, Tuple

from .errors import ConfigurationError
from .model import Step, flatten_steps


def build_dag(steps: Iterable[Step]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from emitted steps.

    Requires:
      - step.key: str (unique)
      - step.depends_on: keys of steps that must run BEFORE this step
    Group members are validated alongside their group.

    Raises:
      ConfigurationError on duplicate keys or a depends_on that names no step.
    """
    steps = flatten_steps(steps)
    keys = [s.key for s in steps]
    if len(set(keys)) != len(keys):
        dupes = sorted({k for k in keys if keys.count(k) > 1})
        raise ConfigurationError(f"duplicate step keys: {dupes}")

    key_set = set(keys)
    adj: Dict[str, Set[str]] = {k: set() for k in key_set}
    indeg: Dict[str, int] = {k: 0 for k in key_set}

    for s in steps:
        for dep in s.depends_on:
            if dep not in key_set:
                raise ConfigurationError(
                    f"step '{s.key}' depends on missing step '{dep}'",
                    known=", ".join(sorted(key_set)),
                )
            # Edge dep -> s.key (dep must run before s)
            if s.key not in adj[dep]:
                adj[dep].add(s.key)
                indeg[s.key] += 1

    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into topological "levels".
    Every step in a level can be scheduled once all earlier levels finish.
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
        raise ConfigurationError(f"step graph has a cycle; stuck steps: {remaining}")

    return levels


def validate_steps(steps: Iterable[Step]) -> List[List[str]]:
    """Check the step graph is a DAG and return its levels."""
    adj, indeg = build_dag(steps)
    return topo_levels(adj, indeg)
