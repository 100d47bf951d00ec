"""Workspace Isolator - one git worktree per issue.

The isolator is the sole allocator of workspaces. Workers never create or
delete their own. Locking is per issue id so unrelated issues never wait on
each other; git itself serialises the few ref updates that need it.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Optional

from git import Repo
from git.exc import GitCommandError, InvalidGitRepositoryError, NoSuchPathError

from swarm_conductor.constants import ISSUE_ID_PATTERN
from swarm_conductor.core.errors import WorkspaceSetupFailure

logger = logging.getLogger(__name__)


class WorkspaceIsolator:
    """Creates and destroys branch-backed worktrees under `<root>/<worktree_dir>`."""

    def __init__(  # pylint: disable=too-many-arguments  # Mirrors ProjectConfig fields
        self,
        root: str | Path,
        *,
        trunk: str = "main",
        worktree_dir: str | Path = ".worktrees",
        branch_prefix: str = "feature/",
        prepare_command: Optional[str] = None,
        prepare_timeout: float = 600.0,
    ) -> None:
        self.root = Path(root).expanduser().resolve()
        worktrees = Path(worktree_dir).expanduser()
        self.worktrees_dir = worktrees if worktrees.is_absolute() else self.root / worktrees
        self.trunk = trunk
        self.branch_prefix = branch_prefix
        self.prepare_command = prepare_command
        self.prepare_timeout = prepare_timeout
        self._locks: dict[str, asyncio.Lock] = {}
        self._owned: dict[str, str] = {}

    def branch_for(self, issue_id: str) -> str:
        return f"{self.branch_prefix}{issue_id}"

    def path_for(self, issue_id: str) -> Path:
        return self.worktrees_dir / issue_id

    def owner_of(self, workspace_path: str | Path) -> Optional[str]:
        return self._owned.get(str(Path(workspace_path)))

    def _lock_for(self, issue_id: str) -> asyncio.Lock:
        # setdefault is atomic within the event loop thread
        return self._locks.setdefault(issue_id, asyncio.Lock())

    def _repo(self) -> Repo:
        return Repo(self.root)

    async def create(self, issue_id: str) -> str:
        """Create (or adopt) the workspace for an issue.

        An existing worktree on disk that nobody owns in this process is adopted,
        which is how a restarted controller picks up prior work.

        Raises:
            WorkspaceSetupFailure: invalid id, already owned, git or prepare failure
        """
        if not ISSUE_ID_PATTERN.match(issue_id):
            raise WorkspaceSetupFailure(issue_id, "invalid issue id")

        async with self._lock_for(issue_id):
            path = self.path_for(issue_id)
            key = str(path)
            if key in self._owned:
                raise WorkspaceSetupFailure(issue_id, f"workspace {path} already owned by {self._owned[key]}")

            if path.exists():
                logger.info("Worktree for %s exists, adopting %s", issue_id, path)
            else:
                await asyncio.to_thread(self._add_worktree, issue_id, path)
                if self.prepare_command:
                    await self._prepare(issue_id, path)

            self._owned[key] = issue_id
            return key

    def _add_worktree(self, issue_id: str, path: Path) -> None:
        try:
            repo = self._repo()
        except (InvalidGitRepositoryError, NoSuchPathError) as exc:
            raise WorkspaceSetupFailure(issue_id, f"{self.root} is not a git repository") from exc

        branch = self.branch_for(issue_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            try:
                repo.git.worktree("add", str(path), "-b", branch, self.trunk)
            except GitCommandError:
                # Branch may already exist (reopened issue, partial cleanup)
                repo.git.worktree("add", str(path), branch)
        except GitCommandError as exc:
            raise WorkspaceSetupFailure(issue_id, f"git worktree add failed: {exc.stderr.strip()}") from exc
        except OSError as exc:
            # Disk full, or a file sitting where the worktree directory goes
            raise WorkspaceSetupFailure(issue_id, f"cannot create {path}: {exc}") from exc
        logger.info("Created worktree %s on branch %s", path, branch)

    async def _prepare(self, issue_id: str, path: Path) -> None:
        """Run the project's prepare command (dependency install etc.) in a fresh workspace."""
        assert self.prepare_command
        proc = await asyncio.create_subprocess_shell(
            self.prepare_command,
            cwd=str(path),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self.prepare_timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            await asyncio.to_thread(self._remove_worktree, path)
            raise WorkspaceSetupFailure(issue_id, f"prepare command timed out after {self.prepare_timeout:.0f}s")

        if proc.returncode != 0:
            output = stdout.decode("utf-8", errors="replace")[-500:] if stdout else ""
            await asyncio.to_thread(self._remove_worktree, path)
            raise WorkspaceSetupFailure(issue_id, f"prepare command exited {proc.returncode}: {output}")
        logger.info("Prepared workspace %s", path)

    def release(self, workspace_path: str | Path) -> None:
        """Drop ownership without touching disk (the branch keeps the work)."""
        self._owned.pop(str(Path(workspace_path)), None)

    async def destroy(self, workspace_path: str | Path) -> bool:
        """Remove a worktree. Best-effort: failures are logged, never raised."""
        path = Path(workspace_path)
        self.release(path)
        issue_id = path.name
        async with self._lock_for(issue_id):
            return await asyncio.to_thread(self._remove_worktree, path)

    def _remove_worktree(self, path: Path) -> bool:
        try:
            repo = self._repo()
            repo.git.worktree("remove", "--force", str(path))
            repo.git.worktree("prune")
        except (GitCommandError, InvalidGitRepositoryError, NoSuchPathError) as exc:
            logger.warning("Failed to remove worktree %s, leaving it for manual cleanup: %s", path, exc)
            return False
        if path.exists():
            shutil.rmtree(path, ignore_errors=True)
        logger.info("Removed worktree %s", path)
        return True

    async def delete_branch(self, issue_id: str) -> bool:
        """Delete the issue branch (after merge). Best-effort."""

        def _delete() -> bool:
            branch = self.branch_for(issue_id)
            try:
                self._repo().git.branch("-d", branch)
            except (GitCommandError, InvalidGitRepositoryError, NoSuchPathError) as exc:
                logger.warning("Failed to delete branch %s: %s", branch, exc)
                return False
            logger.info("Deleted branch %s", branch)
            return True

        return await asyncio.to_thread(_delete)
