"""Pytest configuration and shared fakes for swarm-conductor tests."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Awaitable, Callable, Mapping, Optional

import pytest

from swarm_conductor.config import DetectorConfig, GatesConfig, MergeConfig, SchedulerConfig
from swarm_conductor.core.errors import SpawnFailure, WorkspaceSetupFailure
from swarm_conductor.core.models import SessionHandle
from swarm_conductor.core.store import BacklogStore

logging.getLogger("swarm_conductor").handlers.clear()


def pytest_collection_modifyitems(config, items):
    """Set per-marker timeouts: unit=5s, integration=15s."""
    for item in items:
        if "unit" in item.keywords:
            item.add_marker(pytest.mark.timeout(5))
        elif "integration" in item.keywords:
            item.add_marker(pytest.mark.timeout(15))


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSession:
    def __init__(self, name: str, workdir: str, command: str, env: Mapping[str, str]) -> None:
        self.name = name
        self.workdir = workdir
        self.command = command
        self.env = dict(env)
        self.alive = True
        self.output = ""
        self.inputs: list[str] = []


class FakeHost:
    """In-memory session host.

    `on_input` lets a test play the worker: it is awaited with the session and
    the text whenever input is sent.
    """

    def __init__(self) -> None:
        self.sessions: dict[str, FakeSession] = {}
        self.spawned: list[str] = []
        self.killed: list[str] = []
        self.fail_spawn: set[str] = set()
        self.on_input: Optional[Callable[[FakeSession, str], Awaitable[None]]] = None

    async def spawn(self, name: str, workdir: str, command: str, env: Mapping[str, str]) -> SessionHandle:
        if name in self.fail_spawn:
            raise SpawnFailure(name, "simulated spawn failure")
        self.sessions[name] = FakeSession(name, workdir, command, env)
        self.spawned.append(name)
        return SessionHandle(name=name)

    async def send_input(self, handle: SessionHandle, text: str) -> bool:
        session = self.sessions.get(handle.name)
        if session is None or not session.alive:
            return False
        session.inputs.append(text)
        if self.on_input is not None:
            await self.on_input(session, text)
        return True

    async def capture_output(self, handle: SessionHandle, lines: Optional[int] = None) -> str:
        session = self.sessions.get(handle.name)
        if session is None or not session.alive:
            return ""
        return session.output

    async def kill(self, handle: SessionHandle) -> bool:
        session = self.sessions.get(handle.name)
        self.killed.append(handle.name)
        if session is None or not session.alive:
            return False
        session.alive = False
        return True

    async def exists(self, handle: SessionHandle) -> bool:
        session = self.sessions.get(handle.name)
        return session is not None and session.alive

    def crash(self, name: str) -> None:
        self.sessions[name].alive = False

    def live_names(self) -> set[str]:
        return {name for name, session in self.sessions.items() if session.alive}


class FakeIsolator:
    """Workspace isolator backed by plain directories (no git)."""

    def __init__(self, root: Path, trunk: str = "main") -> None:
        self.root = root
        self.trunk = trunk
        self.owned: dict[str, str] = {}
        self.destroyed: list[str] = []
        self.deleted_branches: list[str] = []
        self.fail_create: set[str] = set()

    def branch_for(self, issue_id: str) -> str:
        return f"feature/{issue_id}"

    def path_for(self, issue_id: str) -> Path:
        return self.root / ".worktrees" / issue_id

    async def create(self, issue_id: str) -> str:
        if issue_id in self.fail_create:
            raise WorkspaceSetupFailure(issue_id, "simulated disk full")
        path = self.path_for(issue_id)
        if str(path) in self.owned:
            raise WorkspaceSetupFailure(issue_id, "already owned")
        path.mkdir(parents=True, exist_ok=True)
        self.owned[str(path)] = issue_id
        return str(path)

    def release(self, workspace_path: str | Path) -> None:
        self.owned.pop(str(workspace_path), None)

    async def destroy(self, workspace_path: str | Path) -> bool:
        self.release(workspace_path)
        self.destroyed.append(str(workspace_path))
        return True

    async def delete_branch(self, issue_id: str) -> bool:
        self.deleted_branches.append(issue_id)
        return True


@pytest.fixture
async def store(tmp_path):
    """Initialized store on a temporary database file."""
    backlog = BacklogStore(str(tmp_path / "backlog.db"))
    await backlog.initialize()
    yield backlog
    await backlog.disconnect()


@pytest.fixture
def fake_host():
    return FakeHost()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_isolator(tmp_path):
    return FakeIsolator(tmp_path)


@pytest.fixture
def scheduler_config():
    return SchedulerConfig(
        max_concurrency=2,
        tick_interval=0,
        worker_command="agent",
        work_prompt="Work on {issue_id}: {title}\n{notes}",
        boot_delay=0,
        max_reopens=3,
    )


@pytest.fixture
def detector_config():
    return DetectorConfig(
        poll_interval=0,
        push_grace=10,
        stale_after=100,
        stale_kill_after=50,
        capture_lines=50,
        awaiting_patterns=[r"Do you want to proceed\?"],
    )


@pytest.fixture
def gates_config():
    return GatesConfig(
        timeout=30,
        poll_interval=1,
        command="verifier",
        prompt="Run /{skill} for {issue_id}, write {checkpoint_path}",
    )


@pytest.fixture
def merge_config():
    return MergeConfig(build_command=None, build_timeout=60, skip_build_for_docs_only=True)
