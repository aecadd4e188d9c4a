from __future__ import annotations

import asyncio
import itertools
import json

import httpx
import pytest
import websockets

from relaybot.agent.dispatcher import Dispatcher
from relaybot.bus.events import Scope, ScopeKind
from relaybot.channels.errors import (
    GatewayDisconnected,
    GatewayTimeout,
    SendFailed,
    TemporaryGatewayError,
)
from relaybot.channels.onebot import OneBotGateway, flatten_segments
from relaybot.config.schema import NetworkConfig
from relaybot.permissions.engine import PermissionPolicy, PolicyHolder
from relaybot.providers.base import CompletionClient, CompletionRequest
from relaybot.session.manager import ConversationStore
from relaybot.session.repository import MemoryRepository
from relaybot.utils.clock import ManualClock


def _frame(**overrides) -> str:
    payload = {
        "post_type": "message",
        "message_type": "group",
        "message_id": 1001,
        "group_id": 555,
        "self_id": 999,
        "user_id": 123,
        "sender": {"user_id": 123, "nickname": "alice", "card": "", "role": "member"},
        "raw_message": "hello",
        "message_format": "array",
        "message": [{"type": "text", "data": {"text": "hello"}}],
    }
    payload.update(overrides)
    return json.dumps(payload)


def _gateway(handler=None) -> OneBotGateway:
    network = NetworkConfig(http="http://bridge.test/v1", login_token="tok", send_timeout=5)
    client = None
    if handler is not None:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OneBotGateway(network, http_client=client)


def test_group_message_frame_becomes_event() -> None:
    gw = _gateway()
    event = gw.handle_frame(_frame())

    assert event is not None
    assert event.scope == Scope(ScopeKind.GROUP, "555")
    assert event.principal.sender_id == "123"
    assert event.principal.display_name == "alice"
    assert event.raw_text == "hello"
    assert event.message_id == "1001"
    assert event.mentions_self is False
    assert event.from_self is False


def test_private_message_and_card_name() -> None:
    gw = _gateway()
    event = gw.handle_frame(
        _frame(message_type="private", sender={"user_id": 7, "nickname": "bob", "card": "Bobby"})
    )
    assert event is not None
    assert event.scope.key == "private:7"
    assert event.principal.display_name == "Bobby"


def test_segments_are_flattened() -> None:
    text, mentioned = flatten_segments(
        [
            {"type": "at", "data": {"qq": "999"}},
            {"type": "text", "data": {"text": " look "}},
            {"type": "face", "data": {"id": 14}},
            {"type": "image", "data": {"summary": "[pic]", "file": "a.png", "url": "http://x"}},
        ],
        self_id="999",
    )
    assert text == "@<999> look Image<[pic] a.png>"
    assert mentioned is True

    _, mentioned_all = flatten_segments([{"type": "at", "data": {"qq": "all"}}], self_id=None)
    assert mentioned_all is True

    _, other = flatten_segments([{"type": "at", "data": {"qq": "1"}}], self_id="999")
    assert other is False


def test_lifecycle_records_self_id_and_marks_own_messages() -> None:
    gw = _gateway()
    assert gw.handle_frame(json.dumps({"post_type": "meta_event", "meta_event_type": "lifecycle", "self_id": 999})) is None
    assert gw.self_id == "999"

    event = gw.handle_frame(_frame(sender={"user_id": 999, "nickname": "me"}, message_id=2))
    assert event is not None and event.from_self is True

    # A private message the bot account sent elsewhere is keyed on the peer.
    own_private = gw.handle_frame(
        _frame(message_type="private", sender={"user_id": 999}, target_id=42, message_id=3)
    )
    assert own_private is not None and own_private.scope.key == "private:42"
    assert gw.handle_frame(_frame(message_type="private", sender={"user_id": 999}, message_id=4)) is None

    # The bridge's message_sent reports are not events.
    assert gw.handle_frame(_frame(post_type="message_sent", message_id=5)) is None


def test_heartbeat_and_unknown_frames_yield_nothing() -> None:
    gw = _gateway()
    heartbeat = {"post_type": "meta_event", "meta_event_type": "heartbeat", "status": {"online": False, "good": True}}
    assert gw.handle_frame(json.dumps(heartbeat)) is None
    assert gw.handle_frame(json.dumps({"post_type": "notice", "notice_type": "group_increase"})) is None
    assert gw.handle_frame("not json") is None
    assert gw.handle_frame(b"\xff\xfe") is None
    assert gw.handle_frame("[1, 2]") is None
    assert gw.handle_frame(_frame(message_type="guild")) is None


def test_local_sequence_numbers_and_replay_reuse() -> None:
    gw = _gateway()
    first = gw.handle_frame(_frame(message_id=10))
    second = gw.handle_frame(_frame(message_id=11))
    replay = gw.handle_frame(_frame(message_id=10))

    assert (first.sequence_no, second.sequence_no) == (1, 2)
    assert replay.sequence_no == first.sequence_no


def test_bridge_sequence_is_used_verbatim() -> None:
    gw = _gateway()
    assert gw.handle_frame(_frame(seq=40, message_id=1)).sequence_no == 40
    # A gap is logged, the number is still taken as given.
    assert gw.handle_frame(_frame(seq=45, message_id=2)).sequence_no == 45


def test_send_group_message_posts_to_command_api() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"status": "ok", "retcode": 0, "data": {"message_id": 77}})

    gw = _gateway(handler)
    delivery = asyncio.run(gw.send(Scope.group("555"), "hi all"))

    assert delivery == "77"
    request = seen[0]
    assert str(request.url) == "http://bridge.test/v1/send_group_msg"
    assert request.headers["Authorization"] == "Bearer tok"
    body = json.loads(request.content)
    assert body == {"group_id": 555, "message": [{"type": "text", "data": {"text": "hi all"}}]}


def test_send_private_with_reply_segment() -> None:
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        assert request.url.path.endswith("/send_private_msg")
        return httpx.Response(200, json={"status": "ok", "data": {"message_id": 5}})

    gw = _gateway(handler)
    asyncio.run(gw.send(Scope.private("7"), "yo", reply_to="1001"))

    assert bodies[0]["user_id"] == 7
    assert bodies[0]["message"][0] == {"type": "reply", "data": {"id": "1001"}}


@pytest.mark.parametrize(
    "response,expected",
    [
        (httpx.Response(503), TemporaryGatewayError),
        (httpx.Response(429), TemporaryGatewayError),
        (httpx.Response(404, text="no such group"), SendFailed),
        (httpx.Response(200, json={"status": "failed", "wording": "muted"}), SendFailed),
        (httpx.Response(200, text="<html>"), SendFailed),
        (httpx.Response(200, json={"status": "ok", "data": {}}), SendFailed),
    ],
)
def test_send_status_mapping(response, expected) -> None:
    gw = _gateway(lambda request: response)
    with pytest.raises(expected):
        asyncio.run(gw.send(Scope.group("1"), "x"))


def test_send_transport_errors_map_to_temporary_errors() -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    def slow(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(GatewayDisconnected):
        asyncio.run(_gateway(refuse).send(Scope.group("1"), "x"))
    with pytest.raises(GatewayTimeout):
        asyncio.run(_gateway(slow).send(Scope.group("1"), "x"))
    assert issubclass(GatewayTimeout, TemporaryGatewayError)
    assert not issubclass(SendFailed, TemporaryGatewayError)


class _FakeSocket:
    def __init__(self, frames: list[str]) -> None:
        self.frames = frames
        self.closed = False

    async def __aenter__(self) -> "_FakeSocket":
        return self

    async def __aexit__(self, *exc) -> None:
        self.closed = True

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for frame in self.frames:
            yield frame

    async def close(self) -> None:
        self.closed = True


def test_events_stream_frames_with_bearer_header(monkeypatch) -> None:
    calls: list[dict] = []
    socket = _FakeSocket(
        [
            json.dumps({"post_type": "meta_event", "meta_event_type": "lifecycle", "self_id": 999}),
            _frame(message=[{"type": "at", "data": {"qq": "999"}}, {"type": "text", "data": {"text": " hi"}}]),
        ]
    )

    def fake_connect(url, **kwargs):
        calls.append({"url": url, **kwargs})
        return socket

    monkeypatch.setattr(websockets, "connect", fake_connect)
    gw = OneBotGateway(NetworkConfig(websocket="ws://bridge.test", login_token="tok"))

    async def _run():
        async for event in gw.events():
            assert gw.is_connected
            await gw.close()
            return event

    event = asyncio.run(_run())

    assert calls[0]["url"] == "ws://bridge.test"
    assert calls[0]["additional_headers"] == {"Authorization": "Bearer tok"}
    assert event.mentions_self is True
    assert event.raw_text == "@<999> hi"
    assert socket.closed


def test_events_reconnect_with_backoff(monkeypatch) -> None:
    attempts: list[str] = []

    def refuse(url, **kwargs):
        attempts.append(url)
        raise OSError("connection refused")

    monkeypatch.setattr(websockets, "connect", refuse)
    clock = ManualClock()
    gw = OneBotGateway(NetworkConfig(reconnect_max_delay=1.5), heart_beat=0.5, clock=clock)

    async def _run() -> None:
        async def consume() -> None:
            async for _ in gw.events():
                pass

        task = asyncio.create_task(consume())
        while len(clock.sleeps) < 4:
            await asyncio.sleep(0)
        await gw.close()
        await asyncio.wait_for(task, timeout=1)

    asyncio.run(_run())

    assert len(attempts) >= 4
    assert not gw.is_connected
    first, second, third, fourth = clock.sleeps[:4]
    assert 0.4 <= first <= 0.6
    assert 0.8 <= second <= 1.2
    # Capped at reconnect_max_delay before jitter.
    assert 1.2 <= third <= 1.8
    assert 1.2 <= fourth <= 1.8


def test_reconnect_backoff_grows_when_bridge_drops_without_frames(monkeypatch) -> None:
    def accept_then_drop(url, **kwargs):
        return _FakeSocket([])

    monkeypatch.setattr(websockets, "connect", accept_then_drop)
    clock = ManualClock()
    gw = OneBotGateway(NetworkConfig(reconnect_max_delay=10), heart_beat=0.5, clock=clock)

    async def _run() -> None:
        async def consume() -> None:
            async for _ in gw.events():
                pass

        task = asyncio.create_task(consume())
        while len(clock.sleeps) < 3:
            await asyncio.sleep(0)
        await gw.close()
        await asyncio.wait_for(task, timeout=1)

    asyncio.run(_run())

    first, second, third = clock.sleeps[:3]
    assert 0.4 <= first <= 0.6
    assert 0.8 <= second <= 1.2
    assert 1.6 <= third <= 2.4


def test_bridge_sequence_restart_starts_new_epoch() -> None:
    gw = _gateway()
    numbers = [
        gw.handle_frame(_frame(seq=seq, message_id=100 + i)).sequence_no
        for i, seq in enumerate([100, 101, 1, 2])
    ]
    assert numbers == [100, 101, 103, 104]

    # A replay of a recent seq keeps the number it was given.
    assert gw.handle_frame(_frame(seq=2, message_id=103)).sequence_no == 104
    # Each scope keeps its own numbering.
    assert gw.handle_frame(_frame(seq=5, group_id=777, message_id=200)).sequence_no == 5


def test_send_after_close_raises_disconnected() -> None:
    gw = OneBotGateway(NetworkConfig(http="http://bridge.test/v1"))

    async def _run() -> None:
        await gw.close()
        with pytest.raises(GatewayDisconnected):
            await gw.send(Scope.group("1"), "too late")

    asyncio.run(_run())


class _EchoClient(CompletionClient):
    def __init__(self, reply: str | None = None) -> None:
        self.reply = reply
        self.requests: list[CompletionRequest] = []

    async def complete(self, request: CompletionRequest) -> str:
        self.requests.append(request)
        return self.reply or f"re:{request.turns[-1][1]}"

    def get_default_model(self) -> str:
        return "stub"


def _dispatcher(gw: OneBotGateway, client: CompletionClient) -> Dispatcher:
    return Dispatcher(
        gateway=gw,
        client=client,
        store=ConversationStore(MemoryRepository()),
        policy=PolicyHolder(PermissionPolicy()),
        clock=ManualClock(),
        rand=lambda: 0.5,
    )


def _ok_handler():
    ids = itertools.count(5001)

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"status": "ok", "data": {"message_id": next(ids)}})

    return handler


def test_stop_waits_for_in_flight_send_before_closing() -> None:
    bodies: list[dict] = []

    async def _run() -> Dispatcher:
        entered = asyncio.Event()
        release = asyncio.Event()

        async def slow_bridge(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            entered.set()
            await release.wait()
            return httpx.Response(200, json={"status": "ok", "data": {"message_id": 501}})

        gw = _gateway(slow_bridge)
        dispatcher = _dispatcher(gw, _EchoClient("pong"))
        dispatcher.submit(gw.handle_frame(_frame(message_type="private", seq=1)))
        await asyncio.wait_for(entered.wait(), timeout=2)

        stopper = asyncio.create_task(dispatcher.stop(drain_timeout=5))
        await asyncio.sleep(0.01)
        release.set()
        await stopper

        with pytest.raises(GatewayDisconnected):
            await gw.send(Scope.private("123"), "late")
        return dispatcher

    dispatcher = asyncio.run(_run())

    outcome = dispatcher.recent_outcomes()[-1]
    assert outcome.reason == "replied"
    assert outcome.send_attempts == 1
    assert outcome.delivery_id == "501"
    assert len(bodies) == 1


def test_bridge_echo_of_reply_is_not_recorded_again() -> None:
    gw = _gateway(_ok_handler())
    client = _EchoClient("pong")
    dispatcher = _dispatcher(gw, client)
    pong = [{"type": "text", "data": {"text": "pong"}}]
    bot = {"user_id": 999, "nickname": "bot"}

    async def _run() -> list[tuple[str, str]]:
        ping = gw.handle_frame(
            _frame(
                message=[{"type": "at", "data": {"qq": "999"}}, {"type": "text", "data": {"text": " ping?"}}],
                seq=1,
            )
        )
        dispatcher.submit(ping)
        await dispatcher.wait_idle()

        echoes = [
            gw.handle_frame(_frame(post_type="message_sent", sender=bot, user_id=999, message_id=5001, message=pong)),
            gw.handle_frame(_frame(sender=bot, user_id=999, message_id=5001, seq=2, message=pong)),
        ]
        assert echoes == [None, None]
        await dispatcher.store.drain()
        return [(t.role, t.text) for t in await dispatcher.store.snapshot(Scope.group("555"))]

    turns = asyncio.run(_run())

    assert turns == [("user", "@<999> ping?"), ("assistant", "pong")]
    assert len(client.requests) == 1
    assert dispatcher.scope_status()[0]["scope"] == "group:555"
    assert len(dispatcher.scope_status()) == 1


def test_dispatcher_keeps_answering_after_bridge_sequence_restart() -> None:
    gw = _gateway(_ok_handler())
    client = _EchoClient()
    dispatcher = _dispatcher(gw, client)

    async def _run() -> None:
        for i, seq in enumerate([100, 101, 1, 2, 3]):
            text = [{"type": "text", "data": {"text": f"m{i}"}}]
            dispatcher.submit(gw.handle_frame(_frame(seq=seq, message_id=300 + i, message=text)))
        await dispatcher.wait_idle()
        await dispatcher.store.drain()

    asyncio.run(_run())

    assert [o.reason for o in dispatcher.recent_outcomes()] == ["replied"] * 5
    assert len(client.requests) == 5
