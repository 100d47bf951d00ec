"""Unit tests for the push notification channel."""

import asyncio
import stat

import pytest

from swarm_conductor.core.errors import NotificationLost
from swarm_conductor.core.notifications import NotificationListener, parse_message, send_worker_complete


def test_parse_valid_message():
    message = parse_message('{"type": "worker-complete", "issue_id": "A", "summary": "done"}')
    assert message.issue_id == "A"
    assert message.summary == "done"


def test_summary_is_optional():
    assert parse_message('{"type": "worker-complete", "issue_id": "A"}').summary == ""


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        '{"type": "something-else", "issue_id": "A"}',
        '{"type": "worker-complete", "issue_id": ""}',
        '{"type": "worker-complete"}',
    ],
)
def test_parse_rejects_invalid(raw):
    with pytest.raises(NotificationLost):
        parse_message(raw)


async def _wait_for_messages(listener: NotificationListener, count: int) -> list:
    received = []
    for _ in range(50):
        received.extend(listener.drain())
        if len(received) >= count:
            break
        await asyncio.sleep(0.02)
    return received


async def test_send_and_receive(tmp_path):
    socket_path = str(tmp_path / "notify.sock")
    async with NotificationListener(socket_path) as listener:
        assert stat.S_IMODE((tmp_path / "notify.sock").stat().st_mode) == 0o600

        assert await send_worker_complete(socket_path, "A", "all tests green") is True
        received = await _wait_for_messages(listener, 1)

    assert [(m.issue_id, m.summary) for m in received] == [("A", "all tests green")]
    assert not (tmp_path / "notify.sock").exists()


async def test_malformed_lines_are_dropped(tmp_path):
    socket_path = str(tmp_path / "notify.sock")
    async with NotificationListener(socket_path) as listener:
        _, writer = await asyncio.open_unix_connection(socket_path)
        writer.write(b"garbage\n\n")
        writer.write(b'{"type": "worker-complete", "issue_id": "B"}\n')
        await writer.drain()
        writer.close()

        received = await _wait_for_messages(listener, 1)

    assert [m.issue_id for m in received] == ["B"]
    assert listener.dropped == 1


async def test_stale_socket_file_replaced(tmp_path):
    socket_path = tmp_path / "notify.sock"
    socket_path.write_text("left over", encoding="utf-8")

    async with NotificationListener(str(socket_path)) as listener:
        assert await send_worker_complete(str(socket_path), "C") is True
        assert len(await _wait_for_messages(listener, 1)) == 1


async def test_send_without_listener_returns_false(tmp_path):
    assert await send_worker_complete(str(tmp_path / "nobody.sock"), "A", timeout=0.5) is False
