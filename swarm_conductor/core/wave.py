"""Wave Controller - the outer orchestration loop.

    while ready-set nonempty OR work in flight:
        allocate; poll completions; gate newly closed issues; merge resolved
        issues; sleep

Work in flight means live coding workers, running gate pipelines or queued
merges. A fresh controller can be started against the same store at any time:
`recover()` re-adopts in_progress issues and requeues closed ones.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

from swarm_conductor.core.detector import DetectorEvent, DetectorEventKind
from swarm_conductor.core.errors import BuildFailure, GateFailure, MergeConflict, StaleWorker
from swarm_conductor.core.gates import GateOutcome
from swarm_conductor.core.models import CompletionSource, IssueStatus, WaveReport
from swarm_conductor.core.resolver import ready_set
from swarm_conductor.core.task_registry import TaskRegistry

if TYPE_CHECKING:
    from swarm_conductor.core.detector import CompletionDetector
    from swarm_conductor.core.gates import GateRunner
    from swarm_conductor.core.merge import MergePipeline
    from swarm_conductor.core.notifications import NotificationListener
    from swarm_conductor.core.scheduler import WorkerPoolScheduler
    from swarm_conductor.core.store import BacklogStore

logger = logging.getLogger(__name__)


@dataclass
class Wave:
    """Issues touched by one controller pass."""

    number: int
    issue_ids: list[str] = field(default_factory=list)

    def touch(self, issue_id: str) -> None:
        if issue_id not in self.issue_ids:
            self.issue_ids.append(issue_id)


class WaveController:
    """Drives scheduler, detector, gates and merge until the backlog drains."""

    def __init__(  # pylint: disable=too-many-arguments  # Controller owns every pipeline stage
        self,
        store: "BacklogStore",
        scheduler: "WorkerPoolScheduler",
        detector: "CompletionDetector",
        gates: "GateRunner",
        merger: "MergePipeline",
        *,
        listener: Optional["NotificationListener"] = None,
        tick_interval: float = 5.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.detector = detector
        self.gates = gates
        self.merger = merger
        self.listener = listener
        self.tick_interval = tick_interval
        self.sleep = sleep
        self.report = WaveReport()
        self._gate_tasks: TaskRegistry[GateOutcome] = TaskRegistry()
        self._merge_queue: list[str] = []
        self._wave_number = 0

    async def recover(self) -> None:
        """Pick up work left behind by a previous controller."""
        for issue in await self.store.list_issues(status=IssueStatus.IN_PROGRESS):
            await self.scheduler.adopt(issue)

        for issue in await self.store.list_issues(status=IssueStatus.CLOSED):
            if await self.store.has_open_conflict(issue.id):
                logger.warning("Skipping %s: merge conflict awaits manual resolution", issue.id)
                continue
            passed = await self.store.passed_gates(issue.id)
            if all(gate in passed for gate in issue.required_gates):
                self._queue_merge(issue.id)
            else:
                self._start_gates(issue.id, issue.workspace_path)
        logger.info(
            "Recovered %d workers, %d gate pipelines, %d merges",
            len(self.scheduler.workers),
            self._gate_tasks.task_count(),
            len(self._merge_queue),
        )

    def _queue_merge(self, issue_id: str) -> None:
        if issue_id not in self._merge_queue:
            self._merge_queue.append(issue_id)

    def _start_gates(self, issue_id: str, workspace_path: Optional[str]) -> None:
        self._gate_tasks.spawn(issue_id, self.gates.run_gates(issue_id, workspace_path))

    def in_flight(self) -> bool:
        return bool(self.scheduler.active_count() or self._gate_tasks.task_count() or self._merge_queue)

    async def has_work(self) -> bool:
        if self.in_flight():
            return True
        return bool(await ready_set(self.store))

    async def run_pass(self) -> Wave:
        """One tick: allocate, detect, gate, merge."""
        self._wave_number += 1
        wave = Wave(self._wave_number)

        for issue_id in await self.scheduler.allocate():
            self.report.spawned.append(issue_id)
            wave.touch(issue_id)

        if self.listener is not None:
            for message in self.listener.drain():
                self.detector.record_push(message)

        # Collected before detection: a reclosed issue respawns its gate run under the same key
        for issue_id, task in self._gate_tasks.pop_finished():
            wave.touch(issue_id)
            if task.cancelled() or task.exception() is not None:
                # Logged by the registry; the issue stays closed and is regated on resume
                continue
            self._handle_gate_outcome(task.result())

        for event in await self.detector.check(self.scheduler.active_workers()):
            await self._handle_event(event)
            wave.touch(event.issue_id)

        while self._merge_queue:
            issue_id = self._merge_queue.pop(0)
            wave.touch(issue_id)
            await self._merge(issue_id)

        self.report.passes += 1
        if wave.issue_ids:
            logger.info("WAVE_PASS wave=%d issues=%s", wave.number, ",".join(wave.issue_ids))
        return wave

    async def _handle_event(self, event: DetectorEvent) -> None:
        issue_id = event.issue_id
        if event.kind is DetectorEventKind.COMPLETED:
            await self._complete(issue_id, event)
        elif event.kind is DetectorEventKind.CRASHED:
            await self.scheduler.revert(issue_id, "worker exited before closing the issue")
            self.detector.forget(issue_id)
            self.report.crashed.append(issue_id)
        elif event.kind is DetectorEventKind.STALE_KILL:
            stale = StaleWorker(issue_id, event.idle_for)
            await self.scheduler.revert(issue_id, f"{stale}, killed")
            self.detector.forget(issue_id)
            self.report.stale_killed.append(issue_id)
        elif event.kind is DetectorEventKind.CLAIM_LOST:
            await self.scheduler.discard(issue_id)
            self.detector.forget(issue_id)
        else:
            # STALE and AWAITING_INPUT are surfaced through the detector's log only
            logger.debug("Worker event %s for %s", event.kind.value, issue_id)

    async def _complete(self, issue_id: str, event: DetectorEvent) -> None:
        if event.source is CompletionSource.PUSH and await self.store.get_status(issue_id) is IssueStatus.IN_PROGRESS:
            # The push arrived before the worker's own close landed
            await self.store.close(issue_id, event.summary or None)
        if event.summary:
            await self.store.add_note(issue_id, f"Worker summary: {event.summary}")

        worker = await self.scheduler.finish(issue_id)
        self.report.completed.append(issue_id)
        self._start_gates(issue_id, worker.workspace_path if worker else None)

    def _handle_gate_outcome(self, outcome: GateOutcome) -> None:
        if outcome.skipped:
            return
        if outcome.passed:
            self._queue_merge(outcome.issue_id)
            return

        if outcome.status is IssueStatus.BLOCKED:
            self.report.escalated.append(outcome.issue_id)
        elif outcome.status is IssueStatus.OPEN:
            self.report.reopened.append(outcome.issue_id)

    async def _merge(self, issue_id: str) -> None:
        try:
            await self.merger.merge(issue_id)
        except MergeConflict as exc:
            # Never auto-retried: the issue stays closed and keeps its workspace
            logger.error("MERGE_CONFLICT issue=%s branch=%s\n%s", issue_id, exc.branch, exc.output)
            await self.store.record_merge_conflict(issue_id, f"{exc.branch}: {exc.output}")
            self.report.conflicts.append(issue_id)
            return
        except BuildFailure:
            status = await self.store.get_status(issue_id)
            if status is IssueStatus.BLOCKED:
                self.report.escalated.append(issue_id)
            else:
                self.report.reopened.append(issue_id)
            return
        except GateFailure as exc:
            logger.error("Refusing to merge %s: %s", issue_id, exc)
            return
        self.report.merged.append(issue_id)

    async def run(self, max_passes: Optional[int] = None) -> WaveReport:
        """Loop until the backlog drains (or `max_passes` passes ran).

        Returns:
            The accumulated WaveReport
        """
        await self.recover()
        try:
            while True:
                await self.run_pass()
                if max_passes is not None and self.report.passes >= max_passes:
                    break
                if not await self.has_work():
                    break
                await self.sleep(self.tick_interval)
        finally:
            await self._gate_tasks.shutdown()
            await self.scheduler.shutdown()

        logger.info("WAVE_DONE %s", self.report.summary())
        return self.report
