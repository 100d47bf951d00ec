"""Merge Pipeline - fold gated branches into trunk, one at a time.

Merges are serialised by a single lock: trunk is shared mutable state. A
conflict aborts the merge and halts that issue for a human. A failing
post-merge build resets trunk and reopens the issue. Success tears down the
workspace and branch and archives the issue.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from git import Repo
from git.exc import GitCommandError

from swarm_conductor.constants import BUILD_OUTPUT_TAIL_CHARS, DOCS_ONLY_SUFFIXES
from swarm_conductor.core.errors import BuildFailure, GateFailure, MergeConflict
from swarm_conductor.core.models import IssueStatus
from swarm_conductor.utils import tail

if TYPE_CHECKING:
    from swarm_conductor.config import MergeConfig
    from swarm_conductor.core.store import BacklogStore
    from swarm_conductor.core.workspace import WorkspaceIsolator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MergeResult:
    issue_id: str
    branch: str
    head_before: str
    head_after: str
    changed_files: tuple[str, ...]
    build_ran: bool


def is_docs_only(changed_files: tuple[str, ...] | list[str]) -> bool:
    """True when every changed file is documentation."""
    return bool(changed_files) and all(f.lower().endswith(DOCS_ONLY_SUFFIXES) for f in changed_files)


class MergePipeline:
    """Sequential merge of verified issue branches into trunk."""

    def __init__(
        self,
        store: "BacklogStore",
        isolator: "WorkspaceIsolator",
        config: "MergeConfig",
        *,
        max_reopens: Optional[int] = None,
    ) -> None:
        self.store = store
        self.isolator = isolator
        self.config = config
        self.max_reopens = max_reopens
        self._lock = asyncio.Lock()

    @property
    def root(self) -> Path:
        return self.isolator.root

    @property
    def trunk(self) -> str:
        return self.isolator.trunk

    async def merge(self, issue_id: str) -> MergeResult:
        """Merge an issue branch into trunk.

        Raises:
            GateFailure: a required gate has no passing result (nothing merged)
            MergeConflict: git reported a conflict; the merge was aborted
            BuildFailure: post-merge build failed; trunk was reset and the issue reopened
        """
        async with self._lock:
            issue = await self.store.get_issue(issue_id)
            if issue.status is not IssueStatus.CLOSED or issue.archived:
                raise GateFailure(issue_id, "-", f"issue is not mergeable (status={issue.status.value})")

            passed = await self.store.passed_gates(issue_id)
            missing = [gate for gate in issue.required_gates if gate not in passed]
            if missing:
                raise GateFailure(issue_id, missing[0].value, "required gate has no passing result")

            branch = self.isolator.branch_for(issue_id)
            workspace = issue.workspace_path or str(self.isolator.path_for(issue_id))
            head_before, changed = await asyncio.to_thread(self._merge_branch, issue_id, branch)

            build_ran = False
            if self.config.build_command and not (self.config.skip_build_for_docs_only and is_docs_only(changed)):
                build_ran = True
                ok, output = await self._run_build()
                if not ok:
                    await asyncio.to_thread(self._reset_trunk, head_before)
                    await self.store.reopen(issue_id, f"post-merge build failed: {tail(output, 500)}", self.max_reopens)
                    self.isolator.release(workspace)
                    logger.error("Build failed after merging %s, trunk reset to %s", branch, head_before[:12])
                    raise BuildFailure(issue_id, output)
            elif self.config.build_command:
                logger.info("Docs-only change for %s, skipping build", issue_id)

            head_after = await asyncio.to_thread(lambda: Repo(self.root).head.commit.hexsha)
            await self.isolator.destroy(workspace)
            await self.isolator.delete_branch(issue_id)
            await self.store.archive(issue_id)
            logger.info("MERGED issue=%s branch=%s head=%s", issue_id, branch, head_after[:12])
            return MergeResult(issue_id, branch, head_before, head_after, tuple(changed), build_ran)

    def _merge_branch(self, issue_id: str, branch: str) -> tuple[str, list[str]]:
        repo = Repo(self.root)
        if branch not in [head.name for head in repo.heads]:
            raise MergeConflict(issue_id, branch, f"branch {branch} does not exist")

        if repo.head.is_detached or repo.active_branch.name != self.trunk:
            repo.git.checkout(self.trunk)
        head_before = repo.head.commit.hexsha

        try:
            repo.git.merge("--no-edit", branch)
        except GitCommandError as exc:
            output = f"{exc.stdout or ''}{exc.stderr or ''}".strip()
            try:
                repo.git.merge("--abort")
            except GitCommandError as abort_exc:
                logger.error("merge --abort failed for %s: %s", branch, abort_exc)
            logger.error("Merge conflict merging %s into %s", branch, self.trunk)
            raise MergeConflict(issue_id, branch, output) from exc

        changed = repo.git.diff("--name-only", head_before, "HEAD").splitlines()
        return head_before, [path for path in changed if path]

    def _reset_trunk(self, head_before: str) -> None:
        Repo(self.root).git.reset("--hard", head_before)

    async def _run_build(self) -> tuple[bool, str]:
        assert self.config.build_command
        proc = await asyncio.create_subprocess_shell(
            self.config.build_command,
            cwd=str(self.root),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self.config.build_timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return False, f"build timed out after {self.config.build_timeout:.0f}s"

        output = stdout.decode("utf-8", errors="replace") if stdout else ""
        return proc.returncode == 0, tail(output, BUILD_OUTPUT_TAIL_CHARS)
