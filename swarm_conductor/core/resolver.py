"""Dependency Resolver - ready-set computation and cycle validation.

An issue is ready iff its status is open and every blocker is closed.
Ordering is priority, then insertion order, then id, so allocation order is
reproducible for a given backlog snapshot.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, Mapping

from swarm_conductor.core.errors import CyclicDependencyError
from swarm_conductor.core.models import Issue, IssueStatus

if TYPE_CHECKING:
    from swarm_conductor.core.store import BacklogStore


def detect_circular_dependency(deps: Mapping[str, Iterable[str]], issue_id: str, new_deps: list[str]) -> list[str] | None:
    """Detect if giving issue_id the blockers new_deps would create a cycle.

    Args:
        deps: Current dependency graph {issue: [blockers]}
        issue_id: Issue being created or updated
        new_deps: Complete blocker list proposed for issue_id

    Returns:
        List representing the cycle path if a cycle is detected, None otherwise
    """
    graph: dict[str, set[str]] = {k: set(v) for k, v in deps.items()}
    graph[issue_id] = set(new_deps)

    visited: set[str] = set()
    path: list[str] = []

    def dfs(node: str) -> list[str] | None:
        if node in path:
            cycle_start = path.index(node)
            return path[cycle_start:] + [node]

        if node in visited:
            return None

        visited.add(node)
        path.append(node)

        for dep in sorted(graph.get(node, set())):
            result = dfs(dep)
            if result:
                return result

        path.pop()
        return None

    for dep in sorted(new_deps):
        if dep == issue_id:
            return [issue_id, issue_id]
        path = [issue_id]
        visited = {issue_id}
        result = dfs(dep)
        if result:
            return result

    return None


def assert_acyclic(deps: Mapping[str, Iterable[str]], issue_id: str, new_deps: list[str]) -> None:
    """Raise CyclicDependencyError if the proposed edges close a cycle."""
    cycle = detect_circular_dependency(deps, issue_id, new_deps)
    if cycle:
        raise CyclicDependencyError(cycle)


def compute_ready_set(issues: Iterable[Issue], statuses: Mapping[str, IssueStatus] | None = None) -> list[str]:
    """Pure ready-set computation over a backlog snapshot.

    Args:
        issues: Issues to consider (archived ones are never ready)
        statuses: Status lookup for blockers; defaults to the statuses of `issues`.
            Blockers missing from the lookup are treated as not closed.

    Returns:
        Ready issue ids sorted by (priority, insertion order, id)
    """
    snapshot = list(issues)
    if statuses is None:
        statuses = {issue.id: issue.status for issue in snapshot}

    ready = [
        issue
        for issue in snapshot
        if issue.status is IssueStatus.OPEN
        and not issue.archived
        and all(statuses.get(blocker) is IssueStatus.CLOSED for blocker in issue.blocking_ids)
    ]
    ready.sort(key=lambda issue: (issue.priority, issue.seq, issue.id))
    return [issue.id for issue in ready]


async def ready_set(store: "BacklogStore") -> list[str]:
    """Ordered ids of issues eligible for immediate assignment."""
    open_issues = await store.list_issues(status=IssueStatus.OPEN)
    statuses = await store.status_map()
    return compute_ready_set(open_issues, statuses)
