"""Worker Pool Scheduler - turn ready issues into running workers.

Each allocation pulls as many ids off the front of the ready-set as there
are free slots, claims each through the store's compare-and-set, creates the
workspace and spawns a worker session. Every failure after the claim puts
the issue back to open so it re-enters the ready-set.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

from swarm_conductor.constants import (
    ENV_ISSUE_ID,
    ENV_SOCKET,
    ENV_STORE,
    ENV_WORKSPACE,
    WORKER_SESSION_PREFIX,
)
from swarm_conductor.core.errors import SpawnFailure, WorkspaceSetupFailure
from swarm_conductor.core.host import session_name
from swarm_conductor.core.models import Issue, SessionHandle, Worker, WorkerState
from swarm_conductor.core.resolver import ready_set

if TYPE_CHECKING:
    from swarm_conductor.config import SchedulerConfig
    from swarm_conductor.core.host import SessionHost
    from swarm_conductor.core.pool import SlotPool
    from swarm_conductor.core.store import BacklogStore
    from swarm_conductor.core.workspace import WorkspaceIsolator

logger = logging.getLogger(__name__)


def worker_id_for(issue_id: str) -> str:
    return session_name(WORKER_SESSION_PREFIX, issue_id)


class WorkerPoolScheduler:
    """Owns the live coding workers and their pool slots."""

    def __init__(  # pylint: disable=too-many-arguments  # Scheduler wires every collaborator together
        self,
        store: "BacklogStore",
        isolator: "WorkspaceIsolator",
        host: "SessionHost",
        pool: "SlotPool",
        config: "SchedulerConfig",
        *,
        socket_path: str = "",
        store_path: str = "",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.isolator = isolator
        self.host = host
        self.pool = pool
        self.config = config
        self.socket_path = socket_path
        self.store_path = store_path
        self.clock = clock
        self.sleep = sleep
        self.workers: dict[str, Worker] = {}

    def active_workers(self) -> list[Worker]:
        return [w for w in self.workers.values() if not w.state.is_terminal]

    def active_count(self) -> int:
        return len(self.active_workers())

    def _env(self, issue_id: str, workspace: str) -> dict[str, str]:
        return {
            ENV_ISSUE_ID: issue_id,
            ENV_SOCKET: self.socket_path,
            ENV_STORE: self.store_path,
            ENV_WORKSPACE: workspace,
        }

    def _prompt(self, issue: Issue) -> str:
        notes = issue.notes
        if issue.reopen_reason:
            notes = f"{notes}\n\nPrevious attempt was reopened: {issue.reopen_reason}".strip()
        return self.config.work_prompt.format(
            issue_id=issue.id, title=issue.title, notes=notes, socket=self.socket_path
        )

    async def allocate(self) -> list[str]:
        """Fill free pool slots from the front of the ready-set.

        Returns:
            Ids of issues that got a running worker this call.
        """
        free = self.pool.free
        if free <= 0:
            return []

        candidates = (await ready_set(self.store))[:free]
        started: list[Worker] = []
        for issue_id in candidates:
            worker = await self._start(issue_id)
            if worker is not None:
                started.append(worker)

        if started:
            if self.config.boot_delay:
                await self.sleep(self.config.boot_delay)
            for worker in started:
                await self._send_work(worker)
        return [w.issue_id for w in started]

    async def _start(self, issue_id: str) -> Optional[Worker]:
        if not self.pool.try_acquire():
            return None

        worker_id = worker_id_for(issue_id)
        if not await self.store.claim(issue_id, worker_id):
            logger.debug("Claim on %s lost, skipping", issue_id)
            self.pool.release()
            return None

        try:
            workspace = await self.isolator.create(issue_id)
        except WorkspaceSetupFailure as exc:
            logger.error("Workspace setup failed for %s: %s", issue_id, exc.reason)
            await self.store.release(issue_id, f"workspace setup failed: {exc.reason}")
            self.pool.release()
            return None

        await self.store.set_workspace(issue_id, workspace)
        try:
            handle = await self.host.spawn(worker_id, workspace, self.config.worker_command, self._env(issue_id, workspace))
        except SpawnFailure as exc:
            logger.error("Spawn failed for %s: %s", issue_id, exc.reason)
            self.isolator.release(workspace)
            await self.store.release(issue_id, f"spawn failed: {exc.reason}")
            self.pool.release()
            return None

        now = self.clock()
        worker = Worker(issue_id=issue_id, handle=handle, workspace_path=workspace, spawned_at=now, last_activity=now)
        self.workers[issue_id] = worker
        logger.info("WORKER_SPAWNED issue=%s worker=%s workspace=%s", issue_id, worker_id, workspace)
        return worker

    async def _send_work(self, worker: Worker) -> None:
        issue = await self.store.get_issue(worker.issue_id)
        if not await self.host.send_input(worker.handle, self._prompt(issue)):
            # The detector sees the dead session on its next poll and reverts the claim
            logger.warning("Could not deliver work prompt to %s", worker.worker_id)

    async def adopt(self, issue: Issue) -> Optional[Worker]:
        """Re-attach an in_progress issue left behind by a previous controller.

        Without a free slot the claim is reverted instead.
        """
        if issue.id in self.workers:
            return self.workers[issue.id]
        handle = SessionHandle(name=issue.assignee or worker_id_for(issue.id))

        if not self.pool.try_acquire():
            logger.warning("No slot to adopt %s, reverting claim", issue.id)
            await self.host.kill(handle)
            await self.store.release(issue.id, "no slot on resume")
            return None

        workspace = issue.workspace_path or str(self.isolator.path_for(issue.id))
        if await self.host.exists(handle):
            try:
                workspace = await self.isolator.create(issue.id)
            except WorkspaceSetupFailure as exc:
                logger.warning("Adopted %s without workspace ownership: %s", issue.id, exc.reason)

        now = self.clock()
        worker = Worker(
            issue_id=issue.id,
            handle=handle,
            workspace_path=workspace,
            state=WorkerState.ACTIVE,
            spawned_at=now,
            last_activity=now,
        )
        self.workers[issue.id] = worker
        logger.info("Adopted worker %s for %s", handle.name, issue.id)
        return worker

    async def finish(self, issue_id: str) -> Optional[Worker]:
        """Tear down a completed worker. Its workspace stays owned for gates and merge."""
        worker = self.workers.pop(issue_id, None)
        if worker is None:
            return None
        await self.host.kill(worker.handle)
        self.pool.release()
        return worker

    async def discard(self, issue_id: str) -> Optional[Worker]:
        """Drop a worker whose claim is gone without touching issue status."""
        worker = await self.finish(issue_id)
        if worker is not None:
            self.isolator.release(worker.workspace_path)
        return worker

    async def revert(self, issue_id: str, reason: str) -> bool:
        """Kill the worker and put its issue back to open.

        The worktree stays on disk so the next claim adopts the branch.
        """
        worker = await self.discard(issue_id)
        if worker is None:
            logger.debug("No worker for %s to revert", issue_id)
        reverted = await self.store.release(issue_id, reason)
        if reverted:
            logger.info("Issue %s back to open: %s", issue_id, reason)
        return reverted

    async def shutdown(self) -> None:
        """Forget workers without killing them; a later run re-adopts them."""
        for worker in list(self.workers.values()):
            self.isolator.release(worker.workspace_path)
            self.pool.release()
        self.workers.clear()
