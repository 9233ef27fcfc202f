from __future__ import annotations

import asyncio

import pytest

from marketplace_chat.core.errors import TransportUnavailable
from marketplace_chat.realtime.connection_manager import ConnectionManager, SubscriptionLimitExceeded
from marketplace_chat.realtime.protocol import ProtocolError, event_frame, parse_command


class _FakeWebSocket:
    def __init__(self, *, stall: bool = False) -> None:
        self.sent: list[dict[str, object]] = []
        self.close_codes: list[int] = []
        self._stall = stall

    async def send_json(self, payload: dict[str, object]) -> None:
        if self._stall:
            await asyncio.Event().wait()
        self.sent.append(payload)

    async def close(self, code: int = 1000) -> None:
        self.close_codes.append(code)


def _event(conversation_id: str, seq: int) -> dict[str, object]:
    return event_frame(
        event_type="message.created",
        event_id=f"event-{conversation_id}-{seq}",
        conversation_id=conversation_id,
        seq=seq,
        occurred_at="2024-01-01T00:00:00+00:00",
        payload={"content": f"mensaje {seq}"},
    )


async def _drain() -> None:
    for _ in range(20):
        await asyncio.sleep(0)


def test_fanout_reaches_only_subscribers_in_order():
    async def scenario() -> tuple[list[int], list[dict[str, object]]]:
        manager = ConnectionManager(max_subscriptions_per_connection=5)
        watcher = _FakeWebSocket()
        bystander = _FakeWebSocket()
        watching = await manager.register(watcher, user_id="u1")
        await manager.register(bystander, user_id="u3")
        await manager.subscribe(watching.connection_id, "c1")

        delivered = [await manager.fanout_conversation("c1", _event("c1", seq)) for seq in (1, 2, 3)]
        await _drain()
        await manager.close()
        return delivered, [watcher.sent, bystander.sent]

    delivered, (watcher_frames, bystander_frames) = asyncio.run(scenario())

    assert delivered == [1, 1, 1]
    assert [frame["seq"] for frame in watcher_frames] == [1, 2, 3]
    assert bystander_frames == []


def test_events_queued_before_close_are_dropped():
    async def scenario() -> list[dict[str, object]]:
        manager = ConnectionManager(max_subscriptions_per_connection=5)
        websocket = _FakeWebSocket()
        context = await manager.register(websocket, user_id="u1")
        await manager.subscribe(context.connection_id, "c1")

        await manager.fanout_conversation("c1", _event("c1", 1))
        await manager.unsubscribe(context.connection_id, "c1")
        await manager.send(context.connection_id, {"type": "pong"})
        await _drain()
        await manager.close()
        return websocket.sent

    assert asyncio.run(scenario()) == [{"type": "pong"}]


def test_slow_client_is_disconnected():
    async def scenario() -> tuple[list[int], int]:
        manager = ConnectionManager(max_subscriptions_per_connection=5, queue_size=1)
        websocket = _FakeWebSocket(stall=True)
        context = await manager.register(websocket, user_id="u1")
        await manager.subscribe(context.connection_id, "c1")

        for seq in (1, 2, 3):
            await manager.fanout_conversation("c1", _event("c1", seq))
        remaining = await manager.connection_count()
        await manager.close()
        return websocket.close_codes, remaining

    close_codes, remaining = asyncio.run(scenario())

    assert close_codes == [1013]
    assert remaining == 0


def test_subscription_limit_is_enforced():
    async def scenario() -> int:
        manager = ConnectionManager(max_subscriptions_per_connection=1)
        context = await manager.register(_FakeWebSocket(), user_id="u1")
        await manager.subscribe(context.connection_id, "c1")
        await manager.subscribe(context.connection_id, "c1")
        try:
            with pytest.raises(SubscriptionLimitExceeded):
                await manager.subscribe(context.connection_id, "c2")
            return await manager.subscriber_count("c1")
        finally:
            await manager.close()

    assert asyncio.run(scenario()) == 1


def test_closed_manager_reports_transport_unavailable():
    async def scenario() -> list[int]:
        manager = ConnectionManager(max_subscriptions_per_connection=5)
        websocket = _FakeWebSocket()
        context = await manager.register(websocket, user_id="u1")
        await manager.close()

        assert manager.closed
        with pytest.raises(TransportUnavailable):
            await manager.subscribe(context.connection_id, "c1")
        with pytest.raises(TransportUnavailable):
            await manager.fanout_conversation("c1", _event("c1", 1))
        with pytest.raises(TransportUnavailable):
            await manager.register(_FakeWebSocket(), user_id="u2")
        return websocket.close_codes

    assert asyncio.run(scenario()) == [1001]


def test_subscribe_on_unknown_connection_is_transport_error():
    async def scenario() -> None:
        manager = ConnectionManager(max_subscriptions_per_connection=5)
        with pytest.raises(TransportUnavailable):
            await manager.subscribe("gone", "c1")

    asyncio.run(scenario())


@pytest.mark.parametrize(
    ("raw", "message"),
    [
        ("[]", "Command payload must be an object"),
        ('{"op": ["open"]}', "Unsupported command"),
        ('{"op": "open"}', "Field required"),
        ('{"op": "open", "conversation_id": "c1", "after_seq": -1}', "Input should be greater than or equal to 0"),
    ],
)
def test_parse_command_rejects_malformed_frames(raw, message):
    with pytest.raises(ProtocolError) as exc_info:
        parse_command(raw, max_bytes=4096)
    assert exc_info.value.code == "INVALID_COMMAND"
    assert exc_info.value.message == message


def test_parse_command_enforces_frame_size():
    with pytest.raises(ProtocolError) as exc_info:
        parse_command('{"op": "ping"}', max_bytes=4)
    assert exc_info.value.message == "Frame is too large"


def test_parse_open_command_defaults_to_full_history():
    command = parse_command('{"op": "open", "conversation_id": "c1"}', max_bytes=4096)
    assert command.conversation_id == "c1"
    assert command.after_seq == 0


def test_unregister_leaves_no_subscriptions_behind():
    async def scenario() -> tuple[int, int, int]:
        manager = ConnectionManager(max_subscriptions_per_connection=5)
        first = await manager.register(_FakeWebSocket(), user_id="u1")
        second = await manager.register(_FakeWebSocket(), user_id="u1")
        await manager.subscribe(first.connection_id, "c1")
        await manager.subscribe(second.connection_id, "c1")

        await manager.unregister(first.connection_id)
        remaining = await manager.subscriber_count("c1")
        await manager.unregister(second.connection_id)
        result = (remaining, await manager.subscriber_count("c1"), await manager.connection_count())
        await manager.close()
        return result

    assert asyncio.run(scenario()) == (1, 0, 0)
