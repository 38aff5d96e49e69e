"""Dependency resolution: Kahn layering into parallelizable batches.

Works on a plain adjacency mapping (logical id -> ids it depends on) so the
same routine orders template graphs, stored stacks and rollback runs.
"""

import logging
from collections import deque
from typing import Iterable, Mapping, Optional

from engine.errors import CyclicDependencyError

logger = logging.getLogger(__name__)


def resolve_batches(dependencies: Mapping[str, Iterable[str]]) -> list[list[str]]:
    """Order nodes into strictly sequential batches.

    Each batch is the maximal set of nodes whose dependencies all appear in
    earlier batches. Members are sorted lexically so plans are stable across
    runs. Dependencies on ids outside the mapping are ignored (already
    satisfied).

    Args:
        dependencies: Node id -> ids it must be provisioned after

    Returns:
        List of batches, each a sorted list of node ids

    Raises:
        CyclicDependencyError: If nodes remain after layering
    """
    deps = {node: {d for d in targets if d in dependencies and d != node}
            for node, targets in dependencies.items()}
    self_loops = sorted(node for node, targets in dependencies.items() if node in set(targets))
    if self_loops:
        raise CyclicDependencyError([self_loops[0]])

    in_degree = {node: len(targets) for node, targets in deps.items()}
    dependents: dict[str, set[str]] = {node: set() for node in deps}
    for node, targets in deps.items():
        for target in targets:
            dependents[target].add(node)

    batches: list[list[str]] = []
    ready = sorted(node for node, degree in in_degree.items() if degree == 0)
    while ready:
        batches.append(ready)
        next_ready: set[str] = set()
        for node in ready:
            for dependent in dependents[node]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    next_ready.add(dependent)
        ready = sorted(next_ready)

    remaining = {node for node, degree in in_degree.items() if degree > 0}
    if remaining:
        cycle = find_minimal_cycle({n: deps[n] & remaining for n in remaining})
        logger.debug(f"Cycle detected among {sorted(remaining)}: {cycle}")
        raise CyclicDependencyError(cycle or sorted(remaining))

    return batches


def reverse_batches(dependencies: Mapping[str, Iterable[str]]) -> list[list[str]]:
    """Batches for teardown: dependents before their dependencies."""
    return [list(reversed(batch)) for batch in reversed(resolve_batches(dependencies))]


def find_minimal_cycle(graph: Mapping[str, Iterable[str]]) -> Optional[list[str]]:
    """Find the shortest cycle in graph.

    BFS from every node back to itself; among equally short cycles the one
    starting at the lexically smallest node wins. The returned list starts
    at that node and follows dependency edges.
    """
    best: Optional[list[str]] = None
    for start in sorted(graph):
        parents: dict[str, Optional[str]] = {start: None}
        queue: deque[str] = deque([start])
        found: Optional[str] = None
        while queue and found is None:
            node = queue.popleft()
            for nxt in sorted(graph.get(node, ())):
                if nxt == start:
                    found = node
                    break
                if nxt not in parents:
                    parents[nxt] = node
                    queue.append(nxt)
        if found is None:
            continue
        path = [found]
        while parents[path[-1]] is not None:
            path.append(parents[path[-1]])
        cycle = list(reversed(path))
        if best is None or len(cycle) < len(best):
            best = cycle
    return best
