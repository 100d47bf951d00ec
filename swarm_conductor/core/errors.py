"""Error taxonomy for the orchestration core.

Only MergeConflict and CyclicDependencyError are hard stops for an operator.
Everything else is absorbed by the open/in_progress/closed state machine.
"""

from __future__ import annotations


class ConductorError(Exception):
    """Base class for all swarm-conductor errors."""


class ConfigError(ConductorError):
    """Invalid configuration."""


class IssueNotFoundError(ConductorError):
    def __init__(self, issue_id: str) -> None:
        super().__init__(f"Issue not found: {issue_id}")
        self.issue_id = issue_id


class DuplicateIssueError(ConductorError):
    def __init__(self, issue_id: str) -> None:
        super().__init__(f"Issue already exists: {issue_id}")
        self.issue_id = issue_id


class InvalidIssueIdError(ConductorError):
    def __init__(self, issue_id: str) -> None:
        super().__init__(f"Invalid issue id (allowed: letters, digits, '-', '_'): {issue_id!r}")
        self.issue_id = issue_id


class CyclicDependencyError(ConductorError):
    """Adding a dependency edge would close a cycle. Rejected at creation time."""

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(f"Circular dependency: {' -> '.join(cycle)}")
        self.cycle = cycle


class UnknownGateError(ConductorError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown gate type: {name!r}")
        self.name = name


class WorkspaceSetupFailure(ConductorError):
    """Workspace could not be created. The issue stays open."""

    def __init__(self, issue_id: str, reason: str) -> None:
        super().__init__(f"Workspace setup failed for {issue_id}: {reason}")
        self.issue_id = issue_id
        self.reason = reason


class SpawnFailure(ConductorError):
    """Worker process could not be started. The claim is reverted."""

    def __init__(self, issue_id: str, reason: str) -> None:
        super().__init__(f"Failed to spawn worker for {issue_id}: {reason}")
        self.issue_id = issue_id
        self.reason = reason


class StaleWorker(ConductorError):
    def __init__(self, issue_id: str, idle_for: float) -> None:
        super().__init__(f"Worker for {issue_id} idle for {idle_for:.0f}s")
        self.issue_id = issue_id
        self.idle_for = idle_for


class GateFailure(ConductorError):
    def __init__(self, issue_id: str, gate: str, summary: str) -> None:
        super().__init__(f"Gate {gate} failed for {issue_id}: {summary}")
        self.issue_id = issue_id
        self.gate = gate
        self.summary = summary


class MergeConflict(ConductorError):
    """Merge into trunk conflicted. Needs a human; never auto-retried."""

    def __init__(self, issue_id: str, branch: str, output: str) -> None:
        super().__init__(f"Merge conflict merging {branch} for {issue_id}")
        self.issue_id = issue_id
        self.branch = branch
        self.output = output


class BuildFailure(ConductorError):
    def __init__(self, issue_id: str, output: str) -> None:
        super().__init__(f"Post-merge build failed for {issue_id}")
        self.issue_id = issue_id
        self.output = output


class NotificationLost(ConductorError):
    """A push message was malformed or undeliverable. Absorbed by the poll fallback."""
