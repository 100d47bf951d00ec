"""Push notification channel - workers tell the controller they are done.

Delivery is best-effort. The listener is a Unix socket speaking
newline-delimited JSON; anything it cannot parse is dropped and the poll
fallback in the completion detector covers the gap.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from swarm_conductor.constants import SUMMARY_MAX_CHARS, WORKER_COMPLETE_TYPE
from swarm_conductor.core.errors import NotificationLost

logger = logging.getLogger(__name__)


class WorkerCompleteMessage(BaseModel):  # type: ignore[explicit-any]
    """`{"type": "worker-complete", "issue_id": ..., "summary": ...}`"""

    model_config = ConfigDict(frozen=True)

    type: Literal["worker-complete"]
    issue_id: str = Field(..., min_length=1)
    summary: str = ""


def parse_message(raw: bytes | str) -> WorkerCompleteMessage:
    """Parse one wire message.

    Raises:
        NotificationLost: If the payload is not a valid worker-complete message
    """
    try:
        return WorkerCompleteMessage.model_validate_json(raw)
    except ValidationError as exc:
        raise NotificationLost(f"invalid notification: {exc.errors()[0].get('msg', 'invalid')}") from exc


class NotificationListener:
    """Unix socket server feeding validated messages into an asyncio queue."""

    def __init__(self, socket_path: str) -> None:
        self.socket_path = Path(socket_path).expanduser()
        self.queue: asyncio.Queue[WorkerCompleteMessage] = asyncio.Queue()
        self._server: Optional[asyncio.Server] = None
        self.dropped = 0

    async def start(self) -> None:
        """Start listening. A stale socket file from a previous run is removed."""
        if self.socket_path.exists():
            self.socket_path.unlink()
        self.socket_path.parent.mkdir(parents=True, exist_ok=True)

        self._server = await asyncio.start_unix_server(self._handle_connection, path=str(self.socket_path))
        # Owner only
        self.socket_path.chmod(0o600)
        logger.info("Notification listener on %s", self.socket_path)

    async def stop(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        self.socket_path.unlink(missing_ok=True)

    async def __aenter__(self) -> "NotificationListener":
        await self.start()
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.stop()

    async def _handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                if not line.strip():
                    continue
                try:
                    message = parse_message(line)
                except NotificationLost as exc:
                    self.dropped += 1
                    logger.warning("Dropped notification: %s", exc)
                    continue
                logger.debug("Push received for %s", message.issue_id)
                self.queue.put_nowait(message)
        except (ConnectionError, asyncio.IncompleteReadError) as exc:
            logger.debug("Notification connection ended: %s", exc)
        finally:
            writer.close()

    def drain(self) -> list[WorkerCompleteMessage]:
        """Return every message received since the last drain."""
        messages = []
        while True:
            try:
                messages.append(self.queue.get_nowait())
            except asyncio.QueueEmpty:
                return messages


async def send_worker_complete(socket_path: str, issue_id: str, summary: str = "", timeout: float = 5.0) -> bool:
    """Send a worker-complete message. Returns False if the controller is unreachable."""
    payload = {"type": WORKER_COMPLETE_TYPE, "issue_id": issue_id, "summary": summary[:SUMMARY_MAX_CHARS]}
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_unix_connection(str(Path(socket_path).expanduser())), timeout=timeout
        )
    except (OSError, asyncio.TimeoutError) as exc:
        logger.warning("Controller not reachable at %s: %s", socket_path, exc)
        return False

    try:
        writer.write((json.dumps(payload) + "\n").encode("utf-8"))
        await writer.drain()
    except ConnectionError as exc:
        logger.warning("Failed to deliver notification for %s: %s", issue_id, exc)
        return False
    finally:
        writer.close()
    return True
