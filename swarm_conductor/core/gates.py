"""Gate Runner - verification workers for closed issues.

Each required gate runs as its own short-lived worker in the issue's
workspace. The worker reports by writing `.checkpoints/<gate>.json`; the
runner polls for that file, records the result and kills the session.
Gates run in GateType order and the first failure stops the sequence and
reopens the issue with the failure summary.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

from pydantic import BaseModel, ConfigDict, ValidationError

from swarm_conductor.constants import (
    CHECKPOINT_DIR,
    ENV_ISSUE_ID,
    ENV_SOCKET,
    ENV_STORE,
    ENV_WORKSPACE,
    GATE_SESSION_PREFIX,
)
from swarm_conductor.core.errors import SpawnFailure
from swarm_conductor.core.host import session_name
from swarm_conductor.core.models import (
    GateFinding,
    GateResult,
    GateType,
    Issue,
    IssueStatus,
    SessionHandle,
    ordered_gates,
)

if TYPE_CHECKING:
    from swarm_conductor.config import GatesConfig
    from swarm_conductor.core.host import SessionHost
    from swarm_conductor.core.pool import SlotPool
    from swarm_conductor.core.store import BacklogStore
    from swarm_conductor.core.workspace import WorkspaceIsolator

logger = logging.getLogger(__name__)


class GateFindingFile(BaseModel):  # type: ignore[explicit-any]
    model_config = ConfigDict(extra="ignore")

    file: str = ""
    line: Optional[int] = None
    detail: str = ""


class GateResultFile(BaseModel):  # type: ignore[explicit-any]
    """Checkpoint file written by a verification worker."""

    model_config = ConfigDict(extra="ignore")

    passed: bool
    summary: str = ""
    issues: list[GateFindingFile] = []

    def to_result(self, gate: GateType, issue_id: str) -> GateResult:
        return GateResult(
            gate=gate,
            issue_id=issue_id,
            passed=self.passed,
            summary=self.summary,
            issues=tuple(GateFinding(file=f.file, line=f.line, detail=f.detail) for f in self.issues),
        )


@dataclass
class GateOutcome:
    """What happened to one issue's gate sequence."""

    issue_id: str
    passed: bool
    results: list[GateResult] = field(default_factory=list)
    status: Optional[IssueStatus] = None
    workspace_path: Optional[str] = None
    skipped: bool = False

    @property
    def failed_result(self) -> Optional[GateResult]:
        return next((r for r in self.results if not r.passed), None)


def checkpoint_path(workspace: str | Path, gate: GateType) -> Path:
    return Path(workspace) / CHECKPOINT_DIR / gate.checkpoint_file


def read_checkpoint(path: Path) -> GateResultFile:
    """Parse a checkpoint file.

    Raises:
        OSError: file unreadable
        ValidationError: not JSON, or not the expected shape
    """
    return GateResultFile.model_validate_json(path.read_text(encoding="utf-8"))


def format_findings(result: GateResult) -> str:
    lines = [f"[{result.gate.value}] {result.summary}".rstrip()]
    for finding in result.issues:
        location = f"{finding.file}:{finding.line}" if finding.line is not None else finding.file
        lines.append(f"  - {location}: {finding.detail}" if location else f"  - {finding.detail}")
    return "\n".join(lines)


class GateRunner:
    """Runs required gates for closed issues, one verification worker per gate."""

    def __init__(  # pylint: disable=too-many-arguments  # Runner needs store, host, pool and worker env
        self,
        store: "BacklogStore",
        host: "SessionHost",
        pool: "SlotPool",
        config: "GatesConfig",
        *,
        isolator: Optional["WorkspaceIsolator"] = None,
        max_reopens: Optional[int] = None,
        boot_delay: float = 0.0,
        socket_path: str = "",
        store_path: str = "",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.host = host
        self.pool = pool
        self.config = config
        self.isolator = isolator
        self.max_reopens = max_reopens
        self.boot_delay = boot_delay
        self.socket_path = socket_path
        self.store_path = store_path
        self.clock = clock
        self.sleep = sleep

    async def run_gates(self, issue_id: str, workspace_path: Optional[str] = None) -> GateOutcome:
        """Run every required gate not already passed since the issue's last close.

        Args:
            issue_id: A closed, unarchived issue
            workspace_path: Workspace to verify; defaults to the issue's recorded path

        Returns:
            GateOutcome. On failure the issue has already been reopened (or escalated).
        """
        issue = await self.store.get_issue(issue_id)
        workspace = workspace_path or issue.workspace_path
        if issue.status is not IssueStatus.CLOSED or issue.archived:
            logger.debug("Skipping gates for %s (status=%s)", issue_id, issue.status.value)
            return GateOutcome(issue_id, passed=False, workspace_path=workspace, skipped=True)

        already = await self.store.passed_gates(issue_id)
        outcome = GateOutcome(issue_id, passed=True, workspace_path=workspace)
        for gate in ordered_gates(issue.required_gates):
            if gate in already:
                logger.debug("Gate %s already passed for %s", gate.value, issue_id)
                continue

            if not workspace or not Path(workspace).is_dir():
                result = GateResult(gate, issue_id, passed=False, summary=f"workspace missing: {workspace}")
            else:
                result = await self.run_gate(issue, gate, workspace)

            await self.store.record_gate_result(result)
            outcome.results.append(result)
            logger.info("GATE_RESULT issue=%s gate=%s passed=%s", issue_id, gate.value, result.passed)

            if not result.passed:
                outcome.passed = False
                await self.store.add_note(issue_id, format_findings(result))
                if self.isolator is not None and workspace:
                    # Hand the workspace back before the issue re-enters the ready-set
                    self.isolator.release(workspace)
                outcome.status = await self.store.reopen(
                    issue_id, f"gate {gate.value} failed: {result.summary}", self.max_reopens
                )
                return outcome
        return outcome

    async def run_gate(self, issue: Issue, gate: GateType, workspace: str) -> GateResult:
        """Run one verification worker and turn its checkpoint into a GateResult.

        Holds a pool slot for the lifetime of the worker. The session is killed
        whatever the outcome.
        """
        path = checkpoint_path(workspace, gate)
        path.parent.mkdir(parents=True, exist_ok=True)
        # A result left over from an earlier attempt must not satisfy this run
        path.unlink(missing_ok=True)

        name = session_name(GATE_SESSION_PREFIX, issue.id, gate.value)
        env = {
            ENV_ISSUE_ID: issue.id,
            ENV_SOCKET: self.socket_path,
            ENV_STORE: self.store_path,
            ENV_WORKSPACE: workspace,
        }
        async with self.pool.slot():
            try:
                handle = await self.host.spawn(name, workspace, self.config.command_for(gate), env)
            except SpawnFailure as exc:
                logger.error("Could not start %s verification for %s: %s", gate.value, issue.id, exc.reason)
                return GateResult(gate, issue.id, passed=False, summary=f"failed to spawn verification worker: {exc.reason}")

            try:
                if self.boot_delay:
                    await self.sleep(self.boot_delay)
                prompt = self.config.prompt.format(
                    skill=gate.skill, issue_id=issue.id, title=issue.title, checkpoint_path=str(path)
                )
                await self.host.send_input(handle, prompt)
                return await self._wait_for_result(issue.id, gate, path, handle)
            finally:
                await self.host.kill(handle)

    async def _wait_for_result(self, issue_id: str, gate: GateType, path: Path, handle: SessionHandle) -> GateResult:
        timeout = self.config.timeout_for(gate)
        deadline = self.clock() + timeout
        last_error = ""
        while True:
            if path.exists():
                try:
                    return read_checkpoint(path).to_result(gate, issue_id)
                except (OSError, ValidationError) as exc:
                    # May be mid-write; keep polling until the worker exits or time runs out
                    last_error = str(exc).splitlines()[0]

            if not await self.host.exists(handle):
                if path.exists():
                    try:
                        return read_checkpoint(path).to_result(gate, issue_id)
                    except (OSError, ValidationError) as exc:
                        last_error = str(exc).splitlines()[0]
                summary = f"invalid result file: {last_error}" if last_error else "gate worker exited without result"
                logger.warning("Gate %s for %s: %s", gate.value, issue_id, summary)
                return GateResult(gate, issue_id, passed=False, summary=summary)

            if self.clock() >= deadline:
                logger.warning("Gate %s for %s timed out after %.0fs", gate.value, issue_id, timeout)
                return GateResult(gate, issue_id, passed=False, summary=f"gate timed out after {timeout:.0f}s")

            await self.sleep(self.config.poll_interval)
