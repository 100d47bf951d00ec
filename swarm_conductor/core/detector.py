"""Completion Detector - hybrid push/poll state machine per worker.

spawning -> active <-> awaiting_input
active|awaiting_input -> stale -> (widened timeout) -> failed
any live state -> completed (push, or poll fallback after the grace window)
any live state -> failed (session vanished with the issue not closed)

Push is authoritative the moment it arrives. Poll reads issue status from the
store on a fixed interval; a closed issue with no push inside the grace window
completes through the poll path instead. Delivery is at-least-once, handling is
idempotent: a second signal for a terminal worker is ignored.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable, Iterable, Optional

from swarm_conductor.core.models import CompletionSource, IssueStatus, Worker, WorkerState
from swarm_conductor.core.notifications import WorkerCompleteMessage
from swarm_conductor.utils import output_digest

if TYPE_CHECKING:
    from swarm_conductor.config import DetectorConfig
    from swarm_conductor.core.host import SessionHost
    from swarm_conductor.core.store import BacklogStore

logger = logging.getLogger(__name__)


class DetectorEventKind(str, Enum):
    COMPLETED = "completed"
    CRASHED = "crashed"
    CLAIM_LOST = "claim_lost"
    STALE = "stale"
    STALE_KILL = "stale_kill"
    AWAITING_INPUT = "awaiting_input"


@dataclass(frozen=True)
class DetectorEvent:
    kind: DetectorEventKind
    issue_id: str
    source: Optional[CompletionSource] = None
    summary: str = ""
    idle_for: float = 0.0


class CompletionDetector:
    """Learns when workers finish, crash or go stale."""

    def __init__(
        self,
        store: "BacklogStore",
        host: "SessionHost",
        config: "DetectorConfig",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.host = host
        self.config = config
        self.clock = clock
        self._pushes: dict[str, str] = {}
        self._awaiting = [re.compile(p) for p in config.awaiting_patterns]
        self._last_poll: Optional[float] = None

    def record_push(self, message: WorkerCompleteMessage) -> None:
        """Queue a push signal; consumed on the next check."""
        if message.issue_id in self._pushes:
            logger.debug("Duplicate push for %s ignored", message.issue_id)
            return
        self._pushes[message.issue_id] = message.summary

    def forget(self, issue_id: str) -> None:
        """Drop any queued signal for an issue whose worker is gone."""
        self._pushes.pop(issue_id, None)

    def poll_due(self) -> bool:
        if self._last_poll is None:
            return True
        return self.clock() - self._last_poll >= self.config.poll_interval

    async def check(self, workers: Iterable[Worker], force_poll: bool = False) -> list[DetectorEvent]:
        """Advance every live worker's state machine once.

        Push signals are handled on every call; store/output polling only when
        the poll interval has elapsed (or `force_poll`).
        """
        live = [w for w in workers if not w.state.is_terminal]
        live_ids = {w.issue_id for w in live}
        for issue_id in [i for i in self._pushes if i not in live_ids]:
            logger.debug("Push for %s has no live worker, ignoring", issue_id)
            self._pushes.pop(issue_id)

        events: list[DetectorEvent] = []
        do_poll = force_poll or self.poll_due()
        if do_poll:
            self._last_poll = self.clock()

        for worker in live:
            event = self._consume_push(worker)
            if event is None and do_poll:
                event = await self._poll_worker(worker)
            if event is not None:
                events.append(event)
        return events

    def _consume_push(self, worker: Worker) -> Optional[DetectorEvent]:
        if worker.issue_id not in self._pushes:
            return None
        summary = self._pushes.pop(worker.issue_id)
        worker.state = WorkerState.COMPLETED
        worker.completion_summary = summary
        logger.info("WORKER_COMPLETE issue=%s source=push", worker.issue_id)
        return DetectorEvent(DetectorEventKind.COMPLETED, worker.issue_id, CompletionSource.PUSH, summary)

    async def _poll_worker(self, worker: Worker) -> Optional[DetectorEvent]:
        now = self.clock()
        status = await self.store.get_status(worker.issue_id)
        alive = await self.host.exists(worker.handle)

        if status is IssueStatus.CLOSED:
            if worker.closed_seen_at is None:
                worker.closed_seen_at = now
            # A dead session can no longer push; no point waiting out the grace window
            if not alive or now - worker.closed_seen_at >= self.config.push_grace:
                worker.state = WorkerState.COMPLETED
                logger.info("WORKER_COMPLETE issue=%s source=poll alive=%s", worker.issue_id, alive)
                return DetectorEvent(DetectorEventKind.COMPLETED, worker.issue_id, CompletionSource.POLL)
            return None

        if status is not IssueStatus.IN_PROGRESS:
            worker.state = WorkerState.FAILED
            logger.warning("Worker %s lost its claim (issue now %s)", worker.worker_id, status.value)
            return DetectorEvent(DetectorEventKind.CLAIM_LOST, worker.issue_id, summary=f"issue is {status.value}")

        if not alive:
            worker.state = WorkerState.FAILED
            logger.warning("Worker %s exited before closing %s", worker.worker_id, worker.issue_id)
            return DetectorEvent(DetectorEventKind.CRASHED, worker.issue_id, summary="worker session exited")

        return await self._check_activity(worker, now)

    async def _check_activity(self, worker: Worker, now: float) -> Optional[DetectorEvent]:
        output = await self.host.capture_output(worker.handle, self.config.capture_lines)
        digest = output_digest(output)
        if digest != worker.output_digest:
            worker.output_digest = digest
            worker.last_activity = now
            if worker.state is WorkerState.STALE:
                logger.info("Worker %s active again after stale", worker.worker_id)
            worker.stale_since = None
            awaiting = any(p.search(output) for p in self._awaiting)
            if awaiting and worker.state is not WorkerState.AWAITING_INPUT:
                worker.state = WorkerState.AWAITING_INPUT
                logger.warning("Worker %s is waiting for input", worker.worker_id)
                return DetectorEvent(DetectorEventKind.AWAITING_INPUT, worker.issue_id)
            worker.state = WorkerState.AWAITING_INPUT if awaiting else WorkerState.ACTIVE
            return None

        idle_for = now - worker.last_activity
        if worker.state is WorkerState.STALE:
            if worker.stale_since is None:
                worker.stale_since = now
            if now - worker.stale_since >= self.config.stale_kill_after:
                worker.state = WorkerState.FAILED
                logger.warning("Worker %s stale for %.0fs, killing", worker.worker_id, idle_for)
                return DetectorEvent(DetectorEventKind.STALE_KILL, worker.issue_id, idle_for=idle_for)
            return None

        if idle_for >= self.config.stale_after:
            worker.state = WorkerState.STALE
            worker.stale_since = now
            logger.warning("Worker %s stale (idle %.0fs)", worker.worker_id, idle_for)
            return DetectorEvent(DetectorEventKind.STALE, worker.issue_id, idle_for=idle_for)
        return None
