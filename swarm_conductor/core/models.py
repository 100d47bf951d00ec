"""Data models for the orchestration core."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterable, Mapping, Optional

from swarm_conductor.core.errors import UnknownGateError


class IssueStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    CLOSED = "closed"
    BLOCKED = "blocked"


class WorkerState(str, Enum):
    SPAWNING = "spawning"
    ACTIVE = "active"
    AWAITING_INPUT = "awaiting_input"
    STALE = "stale"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkerState.COMPLETED, WorkerState.FAILED)


class GateType(str, Enum):
    """Closed set of quality checkpoints.

    Declaration order is execution order: cheap checks first so they can
    short-circuit before expensive ones.
    """

    DOCS_CHECK = "docs-check"
    CODEX_REVIEW = "codex-review"
    TEST_RUNNER = "test-runner"
    VISUAL_QA = "visual-qa"

    @classmethod
    def parse(cls, name: str) -> "GateType":
        """Parse a gate label; accepts both `test-runner` and `gate:test-runner`."""
        label = name.strip()
        if label.startswith("gate:"):
            label = label[len("gate:") :]
        try:
            return cls(label)
        except ValueError as exc:
            raise UnknownGateError(name) from exc

    @property
    def checkpoint_file(self) -> str:
        return GATE_ENTRIES[self].checkpoint_file

    @property
    def skill(self) -> str:
        return GATE_ENTRIES[self].skill


@dataclass(frozen=True)
class GateEntry:
    """Verification entry point for one gate type."""

    skill: str
    checkpoint_file: str


GATE_ENTRIES: dict[GateType, GateEntry] = {
    GateType.DOCS_CHECK: GateEntry(skill="conductor:docs-check", checkpoint_file="docs-check.json"),
    GateType.CODEX_REVIEW: GateEntry(skill="conductor:reviewing-code", checkpoint_file="codex-review.json"),
    GateType.TEST_RUNNER: GateEntry(skill="conductor:running-tests", checkpoint_file="test-runner.json"),
    GateType.VISUAL_QA: GateEntry(skill="conductor:visual-qa", checkpoint_file="visual-qa.json"),
}


def ordered_gates(gates: Iterable[GateType]) -> list[GateType]:
    """Return gates deduplicated, in execution order."""
    wanted = set(gates)
    return [gate for gate in GateType if gate in wanted]


def _parse_dt(value: object) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


@dataclass
class Issue:  # pylint: disable=too-many-instance-attributes  # Mirrors the issues table
    """A unit of backlog work."""

    id: str
    title: str
    status: IssueStatus = IssueStatus.OPEN
    priority: int = 2
    blocking_ids: frozenset[str] = frozenset()
    required_gates: tuple[GateType, ...] = ()
    notes: str = ""
    assignee: Optional[str] = None
    workspace_path: Optional[str] = None
    reopen_count: int = 0
    reopen_reason: Optional[str] = None
    seq: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None

    @property
    def archived(self) -> bool:
        return self.archived_at is not None

    @classmethod
    def from_row(
        cls,
        row: Mapping[str, object],
        blocking_ids: Iterable[str] = (),
        gates: Iterable[str] = (),
    ) -> "Issue":
        """Build an Issue from an `issues` row plus its edge and gate rows."""
        return cls(
            id=str(row["id"]),
            title=str(row["title"]),
            status=IssueStatus(str(row["status"])),
            priority=int(row["priority"]),  # type: ignore[arg-type]
            blocking_ids=frozenset(blocking_ids),
            required_gates=tuple(ordered_gates(GateType(g) for g in gates)),
            notes=str(row["notes"] or ""),
            assignee=str(row["assignee"]) if row["assignee"] else None,
            workspace_path=str(row["workspace_path"]) if row["workspace_path"] else None,
            reopen_count=int(row["reopen_count"]),  # type: ignore[arg-type]
            reopen_reason=str(row["reopen_reason"]) if row["reopen_reason"] else None,
            seq=int(row["seq"]),  # type: ignore[arg-type]
            created_at=_parse_dt(row["created_at"]),
            updated_at=_parse_dt(row["updated_at"]),
            closed_at=_parse_dt(row["closed_at"]),
            archived_at=_parse_dt(row["archived_at"]),
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "title": self.title,
            "status": self.status.value,
            "priority": self.priority,
            "blocking_ids": sorted(self.blocking_ids),
            "required_gates": [g.value for g in self.required_gates],
            "notes": self.notes,
            "assignee": self.assignee,
            "workspace_path": self.workspace_path,
            "reopen_count": self.reopen_count,
            "reopen_reason": self.reopen_reason,
            "archived": self.archived,
        }


@dataclass(frozen=True)
class SessionHandle:
    """Opaque handle to a process hosted by the session host."""

    name: str


@dataclass
class Worker:
    """A spawned process bound to exactly one issue. Owned by the scheduler."""

    issue_id: str
    handle: SessionHandle
    workspace_path: str
    state: WorkerState = WorkerState.SPAWNING
    spawned_at: float = 0.0
    last_activity: float = 0.0
    output_digest: str = ""
    stale_since: Optional[float] = None
    closed_seen_at: Optional[float] = None
    completion_summary: Optional[str] = None

    @property
    def worker_id(self) -> str:
        return self.handle.name


@dataclass(frozen=True)
class GateFinding:
    file: str = ""
    line: Optional[int] = None
    detail: str = ""


@dataclass(frozen=True)
class GateResult:
    """Outcome of one verification worker. Never mutated after creation."""

    gate: GateType
    issue_id: str
    passed: bool
    summary: str
    issues: tuple[GateFinding, ...] = ()

    def issues_json(self) -> str:
        return json.dumps([{"file": f.file, "line": f.line, "detail": f.detail} for f in self.issues])


class CompletionSource(str, Enum):
    PUSH = "push"
    POLL = "poll"


@dataclass
class WaveReport:
    """Accumulated outcome of one or more wave passes."""

    spawned: list[str] = field(default_factory=list)
    completed: list[str] = field(default_factory=list)
    reopened: list[str] = field(default_factory=list)
    escalated: list[str] = field(default_factory=list)
    merged: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)
    stale_killed: list[str] = field(default_factory=list)
    crashed: list[str] = field(default_factory=list)
    passes: int = 0

    @property
    def has_hard_stop(self) -> bool:
        return bool(self.conflicts)

    def summary(self) -> str:
        return (
            f"passes={self.passes} spawned={len(self.spawned)} completed={len(self.completed)} "
            f"merged={len(self.merged)} reopened={len(self.reopened)} escalated={len(self.escalated)} "
            f"conflicts={len(self.conflicts)} stale_killed={len(self.stale_killed)} crashed={len(self.crashed)}"
        )
