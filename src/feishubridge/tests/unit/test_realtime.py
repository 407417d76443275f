import asyncio
from typing import List, Optional

import pytest

from feishubridge.realtime.dedup import DedupCache
from feishubridge.realtime.dispatcher import EventDispatcher
from feishubridge.realtime.router import (
    BOT_ADDED_EVENT,
    MESSAGE_READ_EVENT,
    MESSAGE_RECEIVE_EVENT,
)
from feishubridge.realtime.supervisor import (
    RealtimeSupervisor,
    force_stop_transport,
    websocket_transport_factory,
)
from feishubridge.utils.config import ConfigError, FeishuConfig


class FakeTransport:
    """Transport double that records lifecycle calls."""

    def __init__(self, fail_start: Optional[Exception] = None) -> None:
        self.fail_start = fail_start
        self.dispatcher: Optional[EventDispatcher] = None
        self.auto_reconnect = True
        self.terminated = False
        self.calls: List[str] = []

    async def start(self, dispatcher: EventDispatcher) -> None:
        self.calls.append("start")
        await asyncio.sleep(0)
        if self.fail_start is not None:
            raise self.fail_start
        self.dispatcher = dispatcher

    def disable_auto_reconnect(self) -> None:
        self.calls.append("disable_auto_reconnect")
        self.auto_reconnect = False

    def terminate(self) -> None:
        self.calls.append("terminate")
        self.terminated = True

    def emit(self, event_type, event):
        return self.dispatcher.dispatch_envelope(
            {"schema": "2.0", "header": {"event_type": event_type}, "event": event}
        )


class TransportPool:
    def __init__(self, *transports: FakeTransport) -> None:
        self.pending = list(transports)
        self.created: List[FakeTransport] = []

    def __call__(self, config: FeishuConfig) -> FakeTransport:
        transport = self.pending.pop(0) if self.pending else FakeTransport()
        self.created.append(transport)
        return transport


class RecordingHandler:
    def __init__(self) -> None:
        self.contexts = []

    async def __call__(self, context) -> None:
        self.contexts.append(context)

    @property
    def message_ids(self):
        return [c.event["message"].get("message_id") for c in self.contexts]


@pytest.fixture
def config():
    return FeishuConfig(app_id="a", app_secret="s", event_stream_url="wss://example/ws")


async def wait_until(predicate, timeout: float = 1.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.001)


@pytest.mark.asyncio
async def test_dispatcher_runs_sync_and_async_handlers():
    seen = []

    def sync_handler(event):
        seen.append(("sync", event["n"]))

    async def async_handler(event):
        seen.append(("async", event["n"]))

    dispatcher = EventDispatcher().register({"a": sync_handler, "b": async_handler})

    assert dispatcher.dispatch("a", {"n": 1}) is None
    task = dispatcher.dispatch("b", {"n": 2})
    assert task is not None
    assert dispatcher.dispatch("unknown", {}) is None
    await dispatcher.drain()

    assert seen == [("sync", 1), ("async", 2)]
    assert dispatcher.event_types == {"a", "b"}


@pytest.mark.asyncio
async def test_dispatcher_contains_handler_failures():
    def broken(event):
        raise RuntimeError("sync boom")

    async def broken_async(event):
        raise RuntimeError("async boom")

    dispatcher = EventDispatcher().register({"x": broken, "y": broken_async})

    assert dispatcher.dispatch("x", {}) is None
    dispatcher.dispatch("y", {})
    await dispatcher.drain()
    assert dispatcher.dispatch_envelope({"header": {}}) is None


@pytest.mark.asyncio
async def test_duplicate_deliveries_reach_handler_once(config, make_message_event):
    transport = FakeTransport()
    supervisor = RealtimeSupervisor(TransportPool(transport))
    handler = RecordingHandler()
    abort = asyncio.Event()

    runner = asyncio.create_task(
        supervisor.start_connection(config, handler, bot_open_id="ou_bot", abort=abort)
    )
    await wait_until(lambda: transport.dispatcher is not None)

    event = make_message_event("om_dup")
    transport.emit(MESSAGE_RECEIVE_EVENT, event)
    transport.emit(MESSAGE_RECEIVE_EVENT, event)
    transport.emit(MESSAGE_RECEIVE_EVENT, make_message_event(None, text="no id"))
    transport.emit(MESSAGE_RECEIVE_EVENT, make_message_event(None, text="no id"))
    await transport.dispatcher.drain()

    assert handler.message_ids == ["om_dup", None, None]
    assert handler.contexts[0].bot_open_id == "ou_bot"
    assert handler.contexts[0].config is config

    abort.set()
    await runner
    assert transport.calls == ["start", "disable_auto_reconnect", "terminate"]
    assert supervisor.current is None


@pytest.mark.asyncio
async def test_restart_supersedes_previous_connection(config, make_message_event):
    first, second = FakeTransport(), FakeTransport()
    supervisor = RealtimeSupervisor(TransportPool(first, second))
    handler = RecordingHandler()

    run_first = asyncio.create_task(supervisor.start_connection(config, handler))
    await wait_until(lambda: first.dispatcher is not None)
    old_dispatcher = first.dispatcher

    abort = asyncio.Event()
    run_second = asyncio.create_task(supervisor.start_connection(config, handler, abort=abort))
    await wait_until(lambda: second.dispatcher is not None)

    # The first run returns once it has been superseded.
    await asyncio.wait_for(run_first, 1.0)
    assert first.terminated
    assert first.auto_reconnect is False
    assert supervisor.current is second
    assert supervisor.generation == 2

    # Late events on the retired connection are ignored.
    old_dispatcher.dispatch_envelope(
        {"header": {"event_type": MESSAGE_RECEIVE_EVENT}, "event": make_message_event("om_late")}
    )
    second.emit(MESSAGE_RECEIVE_EVENT, make_message_event("om_live"))
    await old_dispatcher.drain()
    await second.dispatcher.drain()
    assert handler.message_ids == ["om_live"]

    abort.set()
    await run_second


@pytest.mark.asyncio
async def test_dedup_survives_reconnect(config, make_message_event):
    first, second = FakeTransport(), FakeTransport()
    supervisor = RealtimeSupervisor(TransportPool(first, second), dedup=DedupCache())
    handler = RecordingHandler()

    abort = asyncio.Event()
    runner = asyncio.create_task(supervisor.start_connection(config, handler, abort=abort))
    await wait_until(lambda: first.dispatcher is not None)
    first.emit(MESSAGE_RECEIVE_EVENT, make_message_event("om_1"))
    await first.dispatcher.drain()

    abort.set()
    await runner

    abort = asyncio.Event()
    runner = asyncio.create_task(supervisor.start_connection(config, handler, abort=abort))
    await wait_until(lambda: second.dispatcher is not None)
    second.emit(MESSAGE_RECEIVE_EVENT, make_message_event("om_1"))
    await second.dispatcher.drain()

    assert handler.message_ids == ["om_1"]
    abort.set()
    await runner


@pytest.mark.asyncio
async def test_stop_connection_retires_handlers(config, make_message_event):
    transport = FakeTransport()
    supervisor = RealtimeSupervisor(TransportPool(transport))
    handler = RecordingHandler()

    runner = asyncio.create_task(supervisor.start_connection(config, handler))
    await wait_until(lambda: transport.dispatcher is not None)

    supervisor.stop_connection()
    await asyncio.wait_for(runner, 1.0)

    transport.emit(MESSAGE_RECEIVE_EVENT, make_message_event("om_after_stop"))
    await transport.dispatcher.drain()
    assert handler.message_ids == []
    assert transport.terminated


@pytest.mark.asyncio
async def test_already_aborted_start_never_connects(config):
    transport = FakeTransport()
    supervisor = RealtimeSupervisor(TransportPool(transport))
    abort = asyncio.Event()
    abort.set()

    await supervisor.start_connection(config, RecordingHandler(), abort=abort)

    assert "start" not in transport.calls
    assert transport.terminated
    assert supervisor.current is None


@pytest.mark.asyncio
async def test_handshake_failure_cleans_up_and_raises(config):
    transport = FakeTransport(fail_start=OSError("handshake refused"))
    supervisor = RealtimeSupervisor(TransportPool(transport))

    with pytest.raises(OSError):
        await supervisor.start_connection(config, RecordingHandler())

    assert transport.terminated
    assert supervisor.current is None


@pytest.mark.asyncio
async def test_other_events_are_handled_without_forwarding(config):
    transport = FakeTransport()
    supervisor = RealtimeSupervisor(TransportPool(transport))
    handler = RecordingHandler()
    abort = asyncio.Event()

    runner = asyncio.create_task(supervisor.start_connection(config, handler, abort=abort))
    await wait_until(lambda: transport.dispatcher is not None)

    assert transport.emit(MESSAGE_READ_EVENT, {"reader": {}}) is None
    assert transport.emit(BOT_ADDED_EVENT, {"chat_id": "oc_new"}) is None
    assert handler.contexts == []

    abort.set()
    await runner


def test_force_stop_swallows_errors():
    class Exploding:
        def disable_auto_reconnect(self):
            raise RuntimeError("already gone")

        def terminate(self):
            raise AssertionError("not reached")

    force_stop_transport(Exploding())


def test_websocket_factory_requires_url():
    with pytest.raises(ConfigError):
        websocket_transport_factory(FeishuConfig())
