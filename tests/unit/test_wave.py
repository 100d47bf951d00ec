"""Scenario tests for the wave controller with an in-memory host and workspaces."""

import asyncio
import json
from types import SimpleNamespace

import pytest

from swarm_conductor.constants import ENV_ISSUE_ID
from swarm_conductor.core.detector import CompletionDetector
from swarm_conductor.core.errors import GateFailure, MergeConflict
from swarm_conductor.core.gates import GateRunner, checkpoint_path
from swarm_conductor.core.models import GateType, IssueStatus
from swarm_conductor.core.notifications import WorkerCompleteMessage
from swarm_conductor.core.pool import SlotPool
from swarm_conductor.core.resolver import ready_set
from swarm_conductor.core.scheduler import WorkerPoolScheduler
from swarm_conductor.core.wave import WaveController

PASS = {"passed": True, "summary": "ok"}


class FakeListener:
    def __init__(self) -> None:
        self.messages: list[WorkerCompleteMessage] = []

    def push(self, issue_id: str, summary: str = "") -> None:
        self.messages.append(WorkerCompleteMessage(type="worker-complete", issue_id=issue_id, summary=summary))

    def drain(self) -> list[WorkerCompleteMessage]:
        messages, self.messages = self.messages, []
        return messages


class FakeMerger:
    """Merge stand-in: enforces the gate precondition and does the cleanup steps."""

    def __init__(self, store, isolator) -> None:
        self.store = store
        self.isolator = isolator
        self.conflict_on: set[str] = set()
        self.merged: list[str] = []

    async def merge(self, issue_id: str) -> None:
        issue = await self.store.get_issue(issue_id)
        passed = await self.store.passed_gates(issue_id)
        missing = [g for g in issue.required_gates if g not in passed]
        if missing:
            raise GateFailure(issue_id, missing[0].value, "not passed")
        if issue_id in self.conflict_on:
            raise MergeConflict(issue_id, self.isolator.branch_for(issue_id), "CONFLICT (content): app.py")
        await self.isolator.destroy(issue.workspace_path)
        await self.isolator.delete_branch(issue_id)
        await self.store.archive(issue_id)
        self.merged.append(issue_id)


class Simulation:
    """Plays both coding workers and verification workers."""

    def __init__(self, store, listener: FakeListener) -> None:
        self.store = store
        self.listener = listener
        self.verdicts: dict[tuple[str, GateType], dict | list[dict]] = {}
        self.auto_complete = False
        self.prompted: list[str] = []

    async def __call__(self, session, text: str) -> None:
        issue_id = session.env[ENV_ISSUE_ID]
        if session.name.startswith("chk-"):
            gate = next(g for g in GateType if session.name.endswith(g.value))
            payload = self.verdicts.get((issue_id, gate), PASS)
            if isinstance(payload, list):
                # One verdict per run; the last one repeats
                payload = payload.pop(0) if len(payload) > 1 else payload[0]
            checkpoint_path(session.workdir, gate).write_text(json.dumps(payload), encoding="utf-8")
            session.alive = False
            return
        self.prompted.append(issue_id)
        if self.auto_complete:
            await self.complete(issue_id)

    async def complete(self, issue_id: str, push: bool = True) -> None:
        await self.store.close(issue_id, "done")
        if push:
            self.listener.push(issue_id, "done")


@pytest.fixture
def harness(store, fake_host, fake_isolator, scheduler_config, detector_config, gates_config, clock):
    async def gate_sleep(seconds: float) -> None:
        clock.advance(seconds)
        await asyncio.sleep(0)

    async def tick_sleep(_seconds: float) -> None:
        await asyncio.sleep(0.005)

    pool = SlotPool(scheduler_config.max_concurrency)
    listener = FakeListener()
    sim = Simulation(store, listener)
    fake_host.on_input = sim
    scheduler = WorkerPoolScheduler(store, fake_isolator, fake_host, pool, scheduler_config, clock=clock)
    detector = CompletionDetector(store, fake_host, detector_config, clock=clock)
    gates = GateRunner(
        store, fake_host, pool, gates_config, isolator=fake_isolator, max_reopens=3, clock=clock, sleep=gate_sleep
    )
    merger = FakeMerger(store, fake_isolator)
    controller = WaveController(store, scheduler, detector, gates, merger, listener=listener, sleep=tick_sleep)
    return SimpleNamespace(
        controller=controller,
        store=store,
        host=fake_host,
        isolator=fake_isolator,
        pool=pool,
        sim=sim,
        merger=merger,
        clock=clock,
    )


async def run_until(harness, predicate, max_passes: int = 200) -> None:
    for _ in range(max_passes):
        await harness.controller.run_pass()
        if await predicate():
            return
        await asyncio.sleep(0.005)
    raise AssertionError("condition not reached")


async def test_scenario_concurrency_bound(harness):
    """A, B, C with max_concurrency=2: C waits for a free slot."""
    for issue_id in ("A", "B", "C"):
        await harness.store.create_issue(issue_id, issue_id)

    await harness.controller.run_pass()
    assert harness.controller.report.spawned == ["A", "B"]
    assert harness.pool.in_use == 2

    await harness.sim.complete("A")
    await harness.controller.run_pass()
    assert harness.controller.report.completed == ["A"]
    assert "C" not in harness.controller.report.spawned

    await harness.controller.run_pass()
    assert harness.controller.report.spawned == ["A", "B", "C"]
    assert harness.pool.in_use <= 2


async def test_scenario_dependency_waits_for_close(harness):
    """D depends on A: not ready while A is merely in progress."""
    await harness.store.create_issue("A", "a")
    await harness.store.create_issue("D", "d", blocking_ids=["A"])

    await harness.controller.run_pass()
    assert harness.controller.report.spawned == ["A"]
    assert await ready_set(harness.store) == []

    await harness.sim.complete("A")
    assert await ready_set(harness.store) == ["D"]

    async def d_spawned():
        return "D" in harness.controller.report.spawned

    await run_until(harness, d_spawned)


async def test_scenario_gate_failure_reopens(harness):
    """E fails test-runner: back to open with the reason, ready again."""
    await harness.store.create_issue("E", "e", required_gates=["test-runner"])
    harness.sim.verdicts[("E", GateType.TEST_RUNNER)] = {"passed": False, "summary": "2 tests failed"}

    await harness.controller.run_pass()
    await harness.sim.complete("E")

    async def reopened():
        return "E" in harness.controller.report.reopened

    await run_until(harness, reopened)

    issue = await harness.store.get_issue("E")
    assert "2 tests failed" in issue.reopen_reason
    assert issue.reopen_count == 1
    events = [e["event"] for e in await harness.store.events("E")]
    assert "reopen" in events

    async def respawned():
        return harness.controller.report.spawned.count("E") == 2

    await run_until(harness, respawned)
    assert harness.merger.merged == []


async def test_reopened_issue_is_regated_after_reclose(harness):
    """E fails its first gate run and passes the second: the second run happens and E merges."""
    await harness.store.create_issue("E", "e", required_gates=["test-runner"])
    harness.sim.verdicts[("E", GateType.TEST_RUNNER)] = [{"passed": False, "summary": "1 test failed"}, PASS]
    harness.sim.auto_complete = True

    report = await asyncio.wait_for(harness.controller.run(), timeout=3)

    assert report.reopened == ["E"]
    assert report.merged == ["E"]
    assert report.completed == ["E", "E"]
    issue = await harness.store.get_issue("E")
    assert issue.archived is True
    assert [r.passed for r in await harness.store.gate_results("E")] == [False, True]


async def test_scenario_all_gates_pass_then_merge(harness):
    """F passes codex-review and test-runner: merged, workspace and branch removed."""
    await harness.store.create_issue("F", "f", required_gates=["codex-review", "test-runner"])
    harness.sim.auto_complete = True

    async def merged():
        return "F" in harness.controller.report.merged

    await run_until(harness, merged)

    issue = await harness.store.get_issue("F")
    assert issue.archived is True
    assert await harness.store.passed_gates("F") == {GateType.CODEX_REVIEW, GateType.TEST_RUNNER}
    assert str(harness.isolator.path_for("F")) in harness.isolator.destroyed
    assert harness.isolator.deleted_branches == ["F"]
    assert harness.pool.in_use == 0


async def test_scenario_poll_fallback_after_crash(harness):
    """G closes itself then dies without pushing: poll picks it up, no second worker."""
    await harness.store.create_issue("G", "g", required_gates=["test-runner"])

    await harness.controller.run_pass()
    await harness.sim.complete("G", push=False)
    harness.host.crash("worker-G")

    async def merged():
        return "G" in harness.controller.report.merged

    await run_until(harness, merged)

    assert harness.host.spawned.count("worker-G") == 1
    assert harness.controller.report.crashed == []


async def test_crashed_worker_returns_issue_to_open(harness):
    await harness.store.create_issue("H", "h")
    await harness.controller.run_pass()

    harness.host.crash("worker-H")
    await harness.controller.run_pass()

    assert harness.controller.report.crashed == ["H"]
    status = await harness.store.get_status("H")
    assert status is IssueStatus.OPEN

    await harness.controller.run_pass()
    assert harness.host.spawned.count("worker-H") == 2


async def test_stale_worker_killed_and_reopened(harness, detector_config):
    await harness.store.create_issue("S", "s")
    await harness.controller.run_pass()

    harness.clock.advance(detector_config.stale_after + 1)
    await harness.controller.run_pass()
    harness.clock.advance(detector_config.stale_kill_after + 1)
    await harness.controller.run_pass()

    assert harness.controller.report.stale_killed == ["S"]
    assert "worker-S" in harness.host.killed
    release = [e for e in await harness.store.events("S") if e["event"] == "release"]
    assert release[-1]["detail"].startswith("Worker for S idle for")
    assert release[-1]["detail"].endswith(", killed")


async def test_merge_conflict_halts_only_that_issue(harness):
    await harness.store.create_issue("X", "x")
    await harness.store.create_issue("Y", "y")
    harness.merger.conflict_on.add("X")
    harness.sim.auto_complete = True

    report = await asyncio.wait_for(harness.controller.run(), timeout=3)

    assert report.conflicts == ["X"]
    assert report.merged == ["Y"]
    assert report.has_hard_stop
    issue = await harness.store.get_issue("X")
    assert issue.status is IssueStatus.CLOSED
    assert issue.archived is False
    assert str(harness.isolator.path_for("X")) not in harness.isolator.destroyed


async def test_run_terminates_on_empty_backlog(harness):
    report = await asyncio.wait_for(harness.controller.run(), timeout=1)
    assert report.passes == 1
    assert report.spawned == []


async def test_run_keeps_going_while_issues_arrive(harness):
    """Never terminates while work exists; terminates once it drains."""
    harness.sim.auto_complete = False
    await harness.store.create_issue("L0", "first")
    run_task = asyncio.create_task(harness.controller.run())

    for n in range(1, 5):
        await asyncio.sleep(0.05)
        assert not run_task.done()
        await harness.store.create_issue(f"L{n}", f"issue {n}")
        if f"L{n - 1}" in harness.sim.prompted:
            await harness.sim.complete(f"L{n - 1}")

    harness.sim.auto_complete = True
    for n in range(5):
        if await harness.store.get_status(f"L{n}") is IssueStatus.IN_PROGRESS:
            await harness.sim.complete(f"L{n}")

    report = await asyncio.wait_for(run_task, timeout=3)

    assert sorted(report.merged) == [f"L{n}" for n in range(5)]
    assert await ready_set(harness.store) == []


async def test_resume_recovers_previous_run(harness):
    """A fresh controller adopts in_progress work and requeues closed work."""
    store = harness.store
    await store.create_issue("R", "left in progress")
    await store.claim("R", "worker-R", str(harness.isolator.path_for("R")))
    await store.create_issue("T", "closed, gates pending", required_gates=["test-runner"])
    await store.claim("T", "worker-T", await harness.isolator.create("T"))
    await store.close("T")
    harness.isolator.release(harness.isolator.path_for("T"))
    harness.sim.auto_complete = True

    report = await asyncio.wait_for(harness.controller.run(), timeout=3)

    assert report.crashed == ["R"]
    assert sorted(report.merged) == ["R", "T"]
    assert harness.host.spawned.count("worker-T") == 0


async def test_restart_skips_unresolved_conflict(harness):
    """A recorded conflict is not retried by a restart until it is resolved."""
    await harness.store.create_issue("X", "x")
    harness.merger.conflict_on.add("X")
    harness.sim.auto_complete = True

    await asyncio.wait_for(harness.controller.run(), timeout=3)
    assert await harness.store.has_open_conflict("X")

    harness.merger.conflict_on.clear()
    report = await asyncio.wait_for(harness.controller.run(), timeout=3)
    assert report.conflicts == ["X"]
    assert harness.merger.merged == []

    await harness.store.resolve_conflict("X")
    report = await asyncio.wait_for(harness.controller.run(), timeout=3)
    assert report.merged == ["X"]
    assert (await harness.store.get_issue("X")).archived is True
