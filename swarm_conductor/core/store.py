"""Backlog Store - durable record of issues, dependencies, gates and audit trail.

The store is the single source of truth for issue status. Status only changes
through the named operations below; each one is a compare-and-set on the
current status, so two concurrent scheduler passes can never both claim the
same issue.
"""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

import aiosqlite

from swarm_conductor.constants import ISSUE_ID_PATTERN
from swarm_conductor.core.errors import (
    DuplicateIssueError,
    InvalidIssueIdError,
    IssueNotFoundError,
)
from swarm_conductor.core.models import GateFinding, GateResult, GateType, Issue, IssueStatus
from swarm_conductor.core.resolver import assert_acyclic

logger = logging.getLogger(__name__)

_ISSUE_EVENT_LOG = "ISSUE_TRANSITION"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class BacklogStore:
    """Async SQLite-backed issue store."""

    def __init__(self, db_path: str) -> None:
        """Initialize store.

        Args:
            db_path: Path to SQLite database file (":memory:" for tests)
        """
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None

    async def initialize(self) -> None:
        """Open the database and create tables."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        # Workers close issues from their own processes; wait on their locks
        self._db = await aiosqlite.connect(self.db_path, timeout=30)
        self._db.row_factory = aiosqlite.Row

        schema_path = Path(__file__).parent / "schema.sql"
        with open(schema_path, "r", encoding="utf-8") as f:
            schema_sql = f.read()

        await self._db.executescript(schema_sql)
        await self._db.commit()

    @property
    def conn(self) -> aiosqlite.Connection:
        """Get database connection, asserting it's initialized.

        Raises:
            RuntimeError: If store not initialized
        """
        if self._db is None:
            raise RuntimeError("Store not initialized - call initialize() first")
        return self._db

    async def disconnect(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> "BacklogStore":
        await self.initialize()
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.disconnect()

    # ------------------------------------------------------------------
    # Creation and graph edits
    # ------------------------------------------------------------------

    async def create_issue(  # pylint: disable=too-many-arguments  # Issue insert takes all intake fields
        self,
        issue_id: str,
        title: str,
        *,
        priority: int = 2,
        blocking_ids: Iterable[str] = (),
        required_gates: Iterable[str | GateType] = (),
        notes: str = "",
    ) -> Issue:
        """Create an issue at backlog-intake time.

        Raises:
            InvalidIssueIdError: id unusable as path/branch/session name
            DuplicateIssueError: id already exists
            IssueNotFoundError: a blocking id does not exist
            UnknownGateError: a gate label is not a known gate type
            CyclicDependencyError: the edges would close a cycle
        """
        if not ISSUE_ID_PATTERN.match(issue_id):
            raise InvalidIssueIdError(issue_id)
        if await self._exists(issue_id):
            raise DuplicateIssueError(issue_id)

        blockers = sorted(set(blocking_ids))
        for blocker in blockers:
            if not await self._exists(blocker):
                raise IssueNotFoundError(blocker)
        gates = [g if isinstance(g, GateType) else GateType.parse(g) for g in required_gates]

        graph = await self.dependency_graph()
        assert_acyclic(graph, issue_id, blockers)

        now = _now()
        cursor = await self.conn.execute("SELECT COALESCE(MAX(seq), 0) + 1 FROM issues")
        row = await cursor.fetchone()
        seq = int(row[0]) if row else 1

        try:
            await self.conn.execute(
                """
                INSERT INTO issues (id, title, status, priority, notes, seq, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (issue_id, title, IssueStatus.OPEN.value, priority, notes, seq, now, now),
            )
        except aiosqlite.IntegrityError as exc:
            raise DuplicateIssueError(issue_id) from exc
        await self.conn.executemany(
            "INSERT INTO issue_dependencies (issue_id, blocker_id) VALUES (?, ?)",
            [(issue_id, blocker) for blocker in blockers],
        )
        await self.conn.executemany(
            "INSERT OR IGNORE INTO issue_gates (issue_id, gate) VALUES (?, ?)",
            [(issue_id, gate.value) for gate in gates],
        )
        await self._record_event(issue_id, "create", None, IssueStatus.OPEN.value, title)
        await self.conn.commit()

        logger.info("Created issue %s (priority=%d, blockers=%s)", issue_id, priority, blockers or "-")
        return await self.get_issue(issue_id)

    async def add_dependency(self, issue_id: str, blocker_id: str) -> None:
        """Add a blocking edge issue_id -> blocker_id, rejecting cycles."""
        for known in (issue_id, blocker_id):
            if not await self._exists(known):
                raise IssueNotFoundError(known)

        graph = await self.dependency_graph()
        assert_acyclic(graph, issue_id, sorted(set(graph.get(issue_id, [])) | {blocker_id}))

        await self.conn.execute(
            "INSERT OR IGNORE INTO issue_dependencies (issue_id, blocker_id) VALUES (?, ?)",
            (issue_id, blocker_id),
        )
        await self._record_event(issue_id, "add_dependency", None, None, blocker_id)
        await self.conn.commit()

    async def dependency_graph(self) -> dict[str, list[str]]:
        """Return {issue_id: [blocker ids]} for every issue with edges."""
        cursor = await self.conn.execute("SELECT issue_id, blocker_id FROM issue_dependencies ORDER BY issue_id")
        graph: dict[str, list[str]] = defaultdict(list)
        for row in await cursor.fetchall():
            graph[row["issue_id"]].append(row["blocker_id"])
        return dict(graph)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _exists(self, issue_id: str) -> bool:
        cursor = await self.conn.execute("SELECT 1 FROM issues WHERE id = ?", (issue_id,))
        return await cursor.fetchone() is not None

    async def get_issue(self, issue_id: str) -> Issue:
        """Get issue by id.

        Raises:
            IssueNotFoundError: If no such issue exists
        """
        cursor = await self.conn.execute("SELECT * FROM issues WHERE id = ?", (issue_id,))
        row = await cursor.fetchone()
        if not row:
            raise IssueNotFoundError(issue_id)

        cursor = await self.conn.execute("SELECT blocker_id FROM issue_dependencies WHERE issue_id = ?", (issue_id,))
        blockers = [r["blocker_id"] for r in await cursor.fetchall()]
        cursor = await self.conn.execute("SELECT gate FROM issue_gates WHERE issue_id = ?", (issue_id,))
        gates = [r["gate"] for r in await cursor.fetchall()]
        return Issue.from_row(dict(row), blockers, gates)

    async def get_status(self, issue_id: str) -> IssueStatus:
        cursor = await self.conn.execute("SELECT status FROM issues WHERE id = ?", (issue_id,))
        row = await cursor.fetchone()
        if not row:
            raise IssueNotFoundError(issue_id)
        return IssueStatus(row["status"])

    async def list_issues(
        self,
        status: Optional[IssueStatus] = None,
        include_archived: bool = False,
    ) -> list[Issue]:
        """List issues in insertion order.

        Args:
            status: Optional status filter
            include_archived: Include issues already merged and archived
        """
        query = "SELECT * FROM issues"
        clauses: list[str] = []
        params: list[object] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if not include_archived:
            clauses.append("archived_at IS NULL")
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY seq"

        cursor = await self.conn.execute(query, params)
        rows = [dict(r) for r in await cursor.fetchall()]

        graph = await self.dependency_graph()
        cursor = await self.conn.execute("SELECT issue_id, gate FROM issue_gates")
        gates: dict[str, list[str]] = defaultdict(list)
        for r in await cursor.fetchall():
            gates[r["issue_id"]].append(r["gate"])

        return [Issue.from_row(r, graph.get(str(r["id"]), []), gates.get(str(r["id"]), [])) for r in rows]

    async def status_map(self) -> dict[str, IssueStatus]:
        """Return {issue_id: status} for every issue, archived included."""
        cursor = await self.conn.execute("SELECT id, status FROM issues")
        return {r["id"]: IssueStatus(r["status"]) for r in await cursor.fetchall()}

    # ------------------------------------------------------------------
    # Atomic status transitions
    # ------------------------------------------------------------------

    async def compare_and_set_status(
        self,
        issue_id: str,
        expected: IssueStatus,
        new: IssueStatus,
        *,
        event: str = "cas",
        detail: Optional[str] = None,
        fields: Optional[dict[str, object]] = None,
    ) -> bool:
        """Atomically move issue from `expected` to `new`.

        Args:
            issue_id: Issue to transition
            expected: Status the caller believes the issue has
            new: Target status
            event: Audit event name
            detail: Optional audit detail
            fields: Extra column updates applied in the same statement

        Returns:
            True if this call performed the transition, False if the current
            status was not `expected` (someone else got there first).

        Raises:
            IssueNotFoundError: If no such issue exists
        """
        updates = {"status": new.value, "updated_at": _now(), **(fields or {})}
        assignments = ", ".join(f"{column} = ?" for column in updates)
        cursor = await self.conn.execute(
            f"UPDATE issues SET {assignments} WHERE id = ? AND status = ?",
            (*updates.values(), issue_id, expected.value),
        )
        if cursor.rowcount != 1:
            if not await self._exists(issue_id):
                raise IssueNotFoundError(issue_id)
            # Release the write lock the no-op UPDATE took
            await self.conn.commit()
            logger.debug("CAS %s %s->%s lost (event=%s)", issue_id, expected.value, new.value, event)
            return False

        await self._record_event(issue_id, event, expected.value, new.value, detail)
        await self.conn.commit()
        logger.info(
            "%s issue=%s event=%s from=%s to=%s", _ISSUE_EVENT_LOG, issue_id, event, expected.value, new.value
        )
        return True

    async def claim(self, issue_id: str, worker_id: str, workspace_path: Optional[str] = None) -> bool:
        """open -> in_progress. The at-most-one-worker-per-issue guarantee lives here."""
        return await self.compare_and_set_status(
            issue_id,
            IssueStatus.OPEN,
            IssueStatus.IN_PROGRESS,
            event="claim",
            detail=worker_id,
            fields={"assignee": worker_id, "workspace_path": workspace_path},
        )

    async def set_workspace(self, issue_id: str, workspace_path: str) -> None:
        """Attach the workspace path to an issue this caller has claimed."""
        await self.conn.execute(
            "UPDATE issues SET workspace_path = ?, updated_at = ? WHERE id = ? AND status = ?",
            (workspace_path, _now(), issue_id, IssueStatus.IN_PROGRESS.value),
        )
        await self.conn.commit()

    async def release(self, issue_id: str, reason: str) -> bool:
        """in_progress -> open (claim reverted: spawn failure, crash, stale kill)."""
        return await self.compare_and_set_status(
            issue_id,
            IssueStatus.IN_PROGRESS,
            IssueStatus.OPEN,
            event="release",
            detail=reason,
            fields={"assignee": None, "workspace_path": None},
        )

    async def close(self, issue_id: str, summary: Optional[str] = None) -> bool:
        """in_progress -> closed. Called by workers when their work is done."""
        return await self.compare_and_set_status(
            issue_id,
            IssueStatus.IN_PROGRESS,
            IssueStatus.CLOSED,
            event="close",
            detail=summary,
            fields={"closed_at": _now()},
        )

    async def reopen(self, issue_id: str, reason: str, max_reopens: Optional[int] = None) -> Optional[IssueStatus]:
        """closed|in_progress -> open, with the reason attached.

        When `max_reopens` is given and the issue has already been reopened
        that many times, it is escalated to blocked instead.

        Returns:
            The new status, or None if the issue was not reopenable.
        """
        issue = await self.get_issue(issue_id)
        if issue.status not in (IssueStatus.CLOSED, IssueStatus.IN_PROGRESS) or issue.archived:
            return None

        target = IssueStatus.OPEN
        if max_reopens is not None and issue.reopen_count >= max_reopens:
            target = IssueStatus.BLOCKED

        changed = await self.compare_and_set_status(
            issue_id,
            issue.status,
            target,
            event="reopen" if target is IssueStatus.OPEN else "escalate",
            detail=reason,
            fields={
                "assignee": None,
                "workspace_path": None,
                "closed_at": None,
                "reopen_count": issue.reopen_count + 1,
                "reopen_reason": reason,
            },
        )
        if not changed:
            return None
        if target is IssueStatus.BLOCKED:
            logger.warning("Issue %s escalated to blocked after %d reopens", issue_id, issue.reopen_count + 1)
        return target

    async def block(self, issue_id: str, reason: str) -> bool:
        """open -> blocked (operator or escalation)."""
        return await self.compare_and_set_status(
            issue_id, IssueStatus.OPEN, IssueStatus.BLOCKED, event="block", detail=reason
        )

    async def unblock(self, issue_id: str) -> bool:
        """blocked -> open. Resets the reopen counter."""
        return await self.compare_and_set_status(
            issue_id,
            IssueStatus.BLOCKED,
            IssueStatus.OPEN,
            event="unblock",
            fields={"reopen_count": 0},
        )

    async def archive(self, issue_id: str) -> bool:
        """Mark a closed issue archived after a successful merge."""
        cursor = await self.conn.execute(
            "UPDATE issues SET archived_at = ?, updated_at = ? WHERE id = ? AND status = ? AND archived_at IS NULL",
            (_now(), _now(), issue_id, IssueStatus.CLOSED.value),
        )
        if cursor.rowcount != 1:
            return False
        await self._record_event(issue_id, "archive", IssueStatus.CLOSED.value, IssueStatus.CLOSED.value, None)
        await self.conn.commit()
        logger.info("%s issue=%s event=archive", _ISSUE_EVENT_LOG, issue_id)
        return True

    async def add_note(self, issue_id: str, text: str) -> None:
        issue = await self.get_issue(issue_id)
        notes = f"{issue.notes}\n{text}".strip()
        await self.conn.execute("UPDATE issues SET notes = ?, updated_at = ? WHERE id = ?", (notes, _now(), issue_id))
        await self._record_event(issue_id, "note", None, None, text)
        await self.conn.commit()

    async def record_merge_conflict(self, issue_id: str, detail: str) -> None:
        """Park a closed issue until an operator resolves the conflict."""
        await self._record_event(issue_id, "merge_conflict", None, None, detail)
        await self.conn.commit()
        logger.warning("%s issue=%s event=merge_conflict", _ISSUE_EVENT_LOG, issue_id)

    async def has_open_conflict(self, issue_id: str) -> bool:
        """True when the latest conflict is newer than the latest close or resolve."""
        cursor = await self.conn.execute(
            """
            SELECT event FROM issue_events
            WHERE issue_id = ? AND event IN ('merge_conflict', 'resolve_conflict', 'close')
            ORDER BY id DESC LIMIT 1
            """,
            (issue_id,),
        )
        row = await cursor.fetchone()
        return bool(row) and row["event"] == "merge_conflict"

    async def resolve_conflict(self, issue_id: str) -> bool:
        """Clear a recorded merge conflict so the next run retries the merge."""
        if not await self.has_open_conflict(issue_id):
            return False
        await self._record_event(issue_id, "resolve_conflict", None, None, None)
        await self.conn.commit()
        logger.info("%s issue=%s event=resolve_conflict", _ISSUE_EVENT_LOG, issue_id)
        return True

    # ------------------------------------------------------------------
    # Gate results (append-only)
    # ------------------------------------------------------------------

    async def record_gate_result(self, result: GateResult) -> None:
        await self.conn.execute(
            """
            INSERT INTO gate_results (issue_id, gate, passed, summary, issues, recorded_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (result.issue_id, result.gate.value, int(result.passed), result.summary, result.issues_json(), _now()),
        )
        await self.conn.commit()

    async def gate_results(self, issue_id: str) -> list[GateResult]:
        """All recorded gate results for an issue, oldest first."""
        cursor = await self.conn.execute("SELECT * FROM gate_results WHERE issue_id = ? ORDER BY id", (issue_id,))
        results = []
        for row in await cursor.fetchall():
            findings = tuple(
                GateFinding(file=str(f.get("file") or ""), line=f.get("line"), detail=str(f.get("detail") or ""))
                for f in json.loads(row["issues"] or "[]")
            )
            results.append(
                GateResult(
                    gate=GateType(row["gate"]),
                    issue_id=row["issue_id"],
                    passed=bool(row["passed"]),
                    summary=row["summary"],
                    issues=findings,
                )
            )
        return results

    async def passed_gates(self, issue_id: str) -> set[GateType]:
        """Gates with a passing result recorded since the issue's latest close."""
        cursor = await self.conn.execute("SELECT closed_at FROM issues WHERE id = ?", (issue_id,))
        row = await cursor.fetchone()
        if not row:
            raise IssueNotFoundError(issue_id)
        if not row["closed_at"]:
            return set()
        cursor = await self.conn.execute(
            "SELECT DISTINCT gate FROM gate_results WHERE issue_id = ? AND passed = 1 AND recorded_at >= ?",
            (issue_id, row["closed_at"]),
        )
        return {GateType(r["gate"]) for r in await cursor.fetchall()}

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    async def _record_event(
        self,
        issue_id: str,
        event: str,
        from_status: Optional[str],
        to_status: Optional[str],
        detail: Optional[str],
    ) -> None:
        await self.conn.execute(
            """
            INSERT INTO issue_events (issue_id, event, from_status, to_status, detail, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (issue_id, event, from_status, to_status, detail, _now()),
        )

    async def events(self, issue_id: str) -> list[dict[str, object]]:
        cursor = await self.conn.execute(
            "SELECT event, from_status, to_status, detail, created_at FROM issue_events WHERE issue_id = ? ORDER BY id",
            (issue_id,),
        )
        return [dict(r) for r in await cursor.fetchall()]
