"""`conductor` command line.

Operators use it to fill the backlog and run the controller; workers use
`close` and `notify` from inside their sessions (the store path and socket
arrive through CONDUCTOR_STORE / CONDUCTOR_SOCKET).

Exit codes: 0 ok, 1 usage or lookup error, 2 hard stop (merge conflict,
cyclic dependency).
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
from typing import Optional

from swarm_conductor.config import ConductorConfig, load_config
from swarm_conductor.constants import ENV_SOCKET
from swarm_conductor.core.detector import CompletionDetector
from swarm_conductor.core.errors import ConductorError, CyclicDependencyError
from swarm_conductor.core.gates import GateRunner
from swarm_conductor.core.host import TmuxHost
from swarm_conductor.core.merge import MergePipeline
from swarm_conductor.core.models import GateType, IssueStatus
from swarm_conductor.core.notifications import NotificationListener, send_worker_complete
from swarm_conductor.core.pool import SlotPool
from swarm_conductor.core.resolver import ready_set
from swarm_conductor.core.scheduler import WorkerPoolScheduler
from swarm_conductor.core.store import BacklogStore
from swarm_conductor.core.wave import WaveController
from swarm_conductor.core.workspace import WorkspaceIsolator
from swarm_conductor.logging_config import setup_logging

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_HARD_STOP = 2


def build_controller(
    config: ConductorConfig,
    store: BacklogStore,
    listener: Optional[NotificationListener] = None,
) -> WaveController:
    """Wire every pipeline stage from configuration."""
    host = TmuxHost()
    pool = SlotPool(config.scheduler.max_concurrency)
    project = config.project
    isolator = WorkspaceIsolator(
        project.root_path,
        trunk=project.trunk,
        worktree_dir=project.worktree_dir,
        branch_prefix=project.branch_prefix,
        prepare_command=project.prepare_command,
        prepare_timeout=project.prepare_timeout,
    )
    socket_path = config.notifications.socket_path
    scheduler = WorkerPoolScheduler(
        store, isolator, host, pool, config.scheduler, socket_path=socket_path, store_path=store.db_path
    )
    detector = CompletionDetector(store, host, config.detector)
    gates = GateRunner(
        store,
        host,
        pool,
        config.gates,
        isolator=isolator,
        max_reopens=config.scheduler.max_reopens,
        boot_delay=config.scheduler.boot_delay,
        socket_path=socket_path,
        store_path=store.db_path,
    )
    merger = MergePipeline(store, isolator, config.merge, max_reopens=config.scheduler.max_reopens)
    return WaveController(
        store,
        scheduler,
        detector,
        gates,
        merger,
        listener=listener,
        tick_interval=config.scheduler.tick_interval,
    )


async def _cmd_run(config: ConductorConfig, args: argparse.Namespace) -> int:
    if args.max_concurrency is not None:
        if args.max_concurrency < 1:
            print("--max-concurrency must be >= 1")
            return EXIT_ERROR
        config.scheduler.max_concurrency = args.max_concurrency

    async with BacklogStore(config.store.path) as store:
        async with NotificationListener(config.notifications.socket_path) as listener:
            controller = build_controller(config, store, listener)
            report = await controller.run(max_passes=1 if args.once else None)

    print(report.summary())
    for issue_id in report.conflicts:
        print(f"MERGE CONFLICT: {issue_id} needs manual resolution")
    return EXIT_HARD_STOP if report.has_hard_stop else EXIT_OK


async def _cmd_add(store: BacklogStore, args: argparse.Namespace) -> int:
    gates = [GateType.parse(g) for g in args.gate or []]
    issue = await store.create_issue(
        args.id,
        args.title,
        priority=args.priority,
        blocking_ids=args.blocked_by or [],
        required_gates=gates,
        notes=args.notes or "",
    )
    print(f"Created {issue.id}")
    return EXIT_OK


async def _cmd_list(store: BacklogStore, args: argparse.Namespace) -> int:
    status = IssueStatus(args.status) if args.status else None
    for issue in await store.list_issues(status=status, include_archived=args.all):
        archived = " (archived)" if issue.archived else ""
        print(f"{issue.id:<20} {issue.status.value:<12} p{issue.priority}  {issue.title}{archived}")
    return EXIT_OK


async def _cmd_ready(store: BacklogStore, _args: argparse.Namespace) -> int:
    for issue_id in await ready_set(store):
        print(issue_id)
    return EXIT_OK


async def _cmd_show(store: BacklogStore, args: argparse.Namespace) -> int:
    issue = await store.get_issue(args.id)
    data = issue.to_dict()
    data["passed_gates"] = sorted(g.value for g in await store.passed_gates(args.id))
    data["events"] = await store.events(args.id)
    print(json.dumps(data, indent=2, default=str))
    return EXIT_OK


async def _cmd_close(store: BacklogStore, args: argparse.Namespace) -> int:
    if not await store.close(args.id, args.summary):
        status = await store.get_status(args.id)
        print(f"{args.id} is {status.value}, not in_progress")
        return EXIT_ERROR
    print(f"Closed {args.id}")
    return EXIT_OK


async def _cmd_reopen(store: BacklogStore, args: argparse.Namespace) -> int:
    status = await store.reopen(args.id, args.reason)
    if status is None:
        print(f"{args.id} cannot be reopened")
        return EXIT_ERROR
    print(f"{args.id} is now {status.value}")
    return EXIT_OK


async def _cmd_unblock(store: BacklogStore, args: argparse.Namespace) -> int:
    if not await store.unblock(args.id):
        print(f"{args.id} is not blocked")
        return EXIT_ERROR
    print(f"Unblocked {args.id}")
    return EXIT_OK


async def _cmd_resolve(store: BacklogStore, args: argparse.Namespace) -> int:
    await store.get_issue(args.id)
    if not await store.resolve_conflict(args.id):
        print(f"{args.id} has no unresolved merge conflict")
        return EXIT_ERROR
    print(f"Marked {args.id} resolved; the next run retries its merge")
    return EXIT_OK


_STORE_COMMANDS = {
    "add": _cmd_add,
    "list": _cmd_list,
    "ready": _cmd_ready,
    "show": _cmd_show,
    "close": _cmd_close,
    "reopen": _cmd_reopen,
    "unblock": _cmd_unblock,
    "resolve": _cmd_resolve,
}


async def _cmd_notify(config: ConductorConfig, args: argparse.Namespace) -> int:
    socket_path = os.getenv(ENV_SOCKET) or config.notifications.socket_path
    # Best-effort: the controller's poll fallback covers a missed push
    delivered = await send_worker_complete(socket_path, args.id, args.summary or "")
    print("Notified" if delivered else "Controller not reachable; completion will be picked up by polling")
    return EXIT_OK


async def _dispatch(config: ConductorConfig, args: argparse.Namespace) -> int:
    if args.command == "run":
        return await _cmd_run(config, args)
    if args.command == "notify":
        return await _cmd_notify(config, args)
    async with BacklogStore(config.store.path) as store:
        return await _STORE_COMMANDS[args.command](store, args)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="conductor", description="Parallel work orchestration over a backlog.")
    parser.add_argument("--config", default=None, help="Path to conductor.yml")
    parser.add_argument("--log-level", default=None, help="Override CONDUCTOR_LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run the wave controller until the backlog drains")
    run.add_argument("--max-concurrency", type=int, default=None)
    run.add_argument("--once", action="store_true", help="Run a single pass")

    add = sub.add_parser("add", help="Add an issue to the backlog")
    add.add_argument("id")
    add.add_argument("--title", required=True)
    add.add_argument("--priority", type=int, default=2, help="Lower runs first (default 2)")
    add.add_argument("--blocked-by", nargs="*", default=[], metavar="ID")
    add.add_argument("--gate", action="append", default=[], help="Required gate (repeatable)")
    add.add_argument("--notes", default="")

    lst = sub.add_parser("list", help="List issues")
    lst.add_argument("--status", choices=[s.value for s in IssueStatus], default=None)
    lst.add_argument("--all", action="store_true", help="Include archived issues")

    sub.add_parser("ready", help="Print the ready-set in allocation order")

    show = sub.add_parser("show", help="Show one issue as JSON")
    show.add_argument("id")

    close = sub.add_parser("close", help="Close an in-progress issue (worker side)")
    close.add_argument("id")
    close.add_argument("--summary", default=None)

    notify = sub.add_parser("notify", help="Tell the controller a worker is done (worker side)")
    notify.add_argument("id")
    notify.add_argument("--summary", default="")

    reopen = sub.add_parser("reopen", help="Reopen a closed or in-progress issue")
    reopen.add_argument("id")
    reopen.add_argument("--reason", required=True)

    unblock = sub.add_parser("unblock", help="Return an escalated issue to the ready-set")
    unblock.add_argument("id")

    resolve = sub.add_parser("resolve", help="Mark a merge conflict resolved so the next run retries the merge")
    resolve.add_argument("id")

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)

    try:
        config = load_config(args.config)
        return asyncio.run(_dispatch(config, args))
    except CyclicDependencyError as exc:
        print(f"error: {exc}")
        return EXIT_HARD_STOP
    except ConductorError as exc:
        print(f"error: {exc}")
        return EXIT_ERROR
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return EXIT_ERROR


if __name__ == "__main__":
    raise SystemExit(main())
