import asyncio
import json

import pytest

from feishubridge.realtime.dispatcher import EventDispatcher
from feishubridge.realtime.supervisor import RealtimeSupervisor
from feishubridge.realtime.transport import WebSocketEventTransport
from feishubridge.utils.config import FeishuConfig


class DummyWebSocket:
    """Async-iterable socket yielding queued frames, then waiting or closing."""

    def __init__(self, frames, *, hold_open: bool = False) -> None:
        self._frames = list(frames)
        self._hold_open = hold_open
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self._frames:
            return self._frames.pop(0)
        if self._hold_open:
            await asyncio.Event().wait()
        raise StopAsyncIteration

    async def close(self) -> None:
        self.closed = True


def envelope(event_type, event):
    return json.dumps({"schema": "2.0", "header": {"event_type": event_type}, "event": event})


@pytest.mark.asyncio
async def test_frames_are_dispatched_in_order():
    seen = []
    dispatcher = EventDispatcher().register({"evt": lambda e: seen.append(e["n"])})
    socket = DummyWebSocket(
        [envelope("evt", {"n": 1}), "not json", b'{"header": {"event_type": "evt"}, "event": {"n": 2}}'],
        hold_open=True,
    )

    async def connector(url):
        assert url == "wss://example/ws"
        return socket

    transport = WebSocketEventTransport("wss://example/ws", connector=connector)
    await transport.start(dispatcher)
    await asyncio.sleep(0.01)

    assert seen == [1, 2]
    assert transport.running

    transport.disable_auto_reconnect()
    transport.terminate()
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert not transport.running
    assert socket.closed


@pytest.mark.asyncio
async def test_handshake_failure_propagates():
    async def connector(url):
        raise OSError("refused")

    transport = WebSocketEventTransport("wss://example/ws", connector=connector)
    with pytest.raises(OSError):
        await transport.start(EventDispatcher())
    assert not transport.running


@pytest.mark.asyncio
async def test_reconnects_after_server_close():
    seen = []
    dispatcher = EventDispatcher().register({"evt": lambda e: seen.append(e["n"])})
    sockets = [
        DummyWebSocket([envelope("evt", {"n": 1})]),
        DummyWebSocket([envelope("evt", {"n": 2})], hold_open=True),
    ]
    attempts = []

    async def connector(url):
        attempts.append(url)
        if len(attempts) == 2:
            raise OSError("flaky")
        return sockets.pop(0)

    transport = WebSocketEventTransport(
        "wss://example/ws", connector=connector, reconnect_delay=0.001
    )
    await transport.start(dispatcher)
    for _ in range(100):
        if seen == [1, 2]:
            break
        await asyncio.sleep(0.005)

    assert seen == [1, 2]
    assert len(attempts) == 3

    transport.disable_auto_reconnect()
    transport.terminate()


@pytest.mark.asyncio
async def test_no_reconnect_when_disabled():
    attempts = []

    async def connector(url):
        attempts.append(url)
        return DummyWebSocket([])

    transport = WebSocketEventTransport(
        "wss://example/ws", connector=connector, auto_reconnect=False
    )
    await transport.start(EventDispatcher())
    await asyncio.sleep(0.01)

    assert attempts == ["wss://example/ws"]
    assert not transport.running


def test_requires_url():
    with pytest.raises(ValueError):
        WebSocketEventTransport("")


def gated_connector(socket):
    gate = asyncio.Event()
    entered = asyncio.Event()

    async def connector(url):
        entered.set()
        await gate.wait()
        return socket

    return connector, gate, entered


@pytest.mark.asyncio
async def test_terminate_during_handshake_closes_socket():
    socket = DummyWebSocket([], hold_open=True)
    connector, gate, entered = gated_connector(socket)
    transport = WebSocketEventTransport("wss://example/ws", connector=connector)

    starting = asyncio.create_task(transport.start(EventDispatcher()))
    await entered.wait()
    transport.disable_auto_reconnect()
    transport.terminate()
    gate.set()
    await starting

    assert not transport.running
    assert socket.closed


@pytest.mark.asyncio
async def test_stop_connection_during_handshake_leaves_no_live_reader():
    socket = DummyWebSocket([], hold_open=True)
    connector, gate, entered = gated_connector(socket)
    transport = WebSocketEventTransport("wss://example/ws", connector=connector)
    supervisor = RealtimeSupervisor(lambda config: transport)
    config = FeishuConfig(app_id="a", app_secret="s", event_stream_url="wss://example/ws")

    async def handler(context):
        pass

    runner = asyncio.create_task(supervisor.start_connection(config, handler))
    await entered.wait()
    supervisor.stop_connection()
    gate.set()
    await asyncio.wait_for(runner, 1.0)

    assert not transport.running
    assert socket.closed
    assert supervisor.current is None


@pytest.mark.asyncio
async def test_superseded_during_handshake_is_torn_down():
    first_socket = DummyWebSocket([], hold_open=True)
    connector, gate, entered = gated_connector(first_socket)
    first = WebSocketEventTransport("wss://example/ws", connector=connector)
    second_socket = DummyWebSocket([], hold_open=True)

    async def open_second(url):
        return second_socket

    second = WebSocketEventTransport("wss://example/ws", connector=open_second)
    transports = [first, second]
    supervisor = RealtimeSupervisor(lambda config: transports.pop(0))
    config = FeishuConfig(app_id="a", app_secret="s", event_stream_url="wss://example/ws")

    async def handler(context):
        pass

    run_first = asyncio.create_task(supervisor.start_connection(config, handler))
    await entered.wait()
    abort = asyncio.Event()
    run_second = asyncio.create_task(supervisor.start_connection(config, handler, abort=abort))
    await asyncio.sleep(0.01)
    gate.set()
    await asyncio.wait_for(run_first, 1.0)

    assert not first.running
    assert first_socket.closed
    assert supervisor.current is second
    assert second.running

    abort.set()
    await asyncio.wait_for(run_second, 1.0)
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert not second.running
