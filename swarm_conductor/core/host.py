"""Session host - the process multiplexer that runs workers (tmux).

The core only needs four verbs from the host: spawn, send input, capture
output and kill. `SessionHost` is that contract; `TmuxHost` is the production
implementation. All functions are stateless wrappers around the tmux CLI.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Mapping, Optional, Protocol

from swarm_conductor.constants import SEND_KEYS_ENTER_DELAY_S, TMUX_COMMAND_TIMEOUT_S
from swarm_conductor.core.errors import SpawnFailure
from swarm_conductor.core.models import SessionHandle

logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def session_name(prefix: str, *parts: str) -> str:
    """Build a tmux-safe session name."""
    raw = prefix + "-".join(parts)
    return _UNSAFE_NAME_CHARS.sub("-", raw)


class SessionHost(Protocol):
    """What the orchestration core consumes from the process host."""

    async def spawn(self, name: str, workdir: str, command: str, env: Mapping[str, str]) -> SessionHandle: ...

    async def send_input(self, handle: SessionHandle, text: str) -> bool: ...

    async def capture_output(self, handle: SessionHandle, lines: Optional[int] = None) -> str: ...

    async def kill(self, handle: SessionHandle) -> bool: ...

    async def exists(self, handle: SessionHandle) -> bool: ...


class TmuxHost:
    """tmux-backed session host."""

    def __init__(self, cols: int = 200, rows: int = 50, tmux_binary: str = "tmux") -> None:
        self.cols = cols
        self.rows = rows
        self.tmux_binary = tmux_binary

    async def _run(self, *args: str, capture: bool = False) -> tuple[int, str, str]:
        """Run a tmux command.

        Returns:
            (returncode, stdout, stderr); returncode -1 when tmux could not run.
        """
        cmd = [self.tmux_binary, *args]
        try:
            if capture:
                proc = await asyncio.create_subprocess_exec(
                    *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
                )
            else:
                # Don't capture stdout/stderr for session creation: pipes leak into the tmux server
                proc = await asyncio.create_subprocess_exec(
                    *cmd, stdout=asyncio.subprocess.DEVNULL, stderr=asyncio.subprocess.DEVNULL
                )
        except OSError as exc:
            logger.error("Failed to run %s: %s", cmd[0], exc)
            return -1, "", str(exc)

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=TMUX_COMMAND_TIMEOUT_S)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.error("tmux %s timed out after %.0fs", args[0], TMUX_COMMAND_TIMEOUT_S)
            return -1, "", "timeout"

        out = stdout.decode("utf-8", errors="replace") if stdout else ""
        err = stderr.decode("utf-8", errors="replace") if stderr else ""
        return proc.returncode or 0, out, err

    async def exists(self, handle: SessionHandle) -> bool:
        returncode, _, _ = await self._run("has-session", "-t", handle.name, capture=True)
        return returncode == 0

    async def spawn(self, name: str, workdir: str, command: str, env: Mapping[str, str]) -> SessionHandle:
        """Create a detached tmux session running `command` in `workdir`.

        A leftover session with the same name (from a crashed run) is replaced.

        Raises:
            SpawnFailure: If tmux refuses to create the session
        """
        handle = SessionHandle(name=name)
        if await self.exists(handle):
            logger.warning("Session %s already exists, replacing it", name)
            await self.kill(handle)

        args = ["new-session", "-d", "-s", name, "-c", workdir, "-x", str(self.cols), "-y", str(self.rows)]
        for key, value in env.items():
            args.extend(["-e", f"{key}={value}"])
        args.append(command)

        returncode, _, err = await self._run(*args)
        if returncode != 0:
            raise SpawnFailure(name, f"tmux new-session exited {returncode} {err.strip()}".strip())

        logger.info("Spawned session %s in %s", name, workdir)
        return handle

    async def send_input(self, handle: SessionHandle, text: str) -> bool:
        """Send text literally, then Enter. Returns False if the session is gone."""
        if not await self.exists(handle):
            logger.warning("Session %s does not exist, skipping send", handle.name)
            return False

        returncode, _, err = await self._run("send-keys", "-t", handle.name, "-l", text, capture=True)
        if returncode != 0:
            logger.warning("send-keys to %s failed: %s", handle.name, err.strip())
            return False

        # Give the TUI time to ingest a paste before submitting it
        await asyncio.sleep(SEND_KEYS_ENTER_DELAY_S)
        returncode, _, _ = await self._run("send-keys", "-t", handle.name, "C-m", capture=True)
        return returncode == 0

    async def capture_output(self, handle: SessionHandle, lines: Optional[int] = None) -> str:
        """Capture pane output (last `lines` lines of scrollback, or all of it)."""
        start = f"-{lines}" if lines else "-"
        returncode, out, err = await self._run(
            "capture-pane", "-t", handle.name, "-p", "-J", "-S", start, capture=True
        )
        if returncode != 0:
            logger.debug("capture-pane %s failed: %s", handle.name, err.strip())
            return ""
        return out

    async def kill(self, handle: SessionHandle) -> bool:
        returncode, _, _ = await self._run("kill-session", "-t", handle.name, capture=True)
        if returncode == 0:
            logger.info("Killed session %s", handle.name)
        return returncode == 0
