"""
Duplex Session Tests.

============================================================
PURPOSE
============================================================
Session lifecycle against an in-memory transport.

TEST CATEGORIES:
- Start / send / close
- Private login
- Backpressure
- Reconnect with subscription replay
- Heartbeat staleness
- Backoff schedule

============================================================
"""

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional

import pytest

from exchange_connector.config import SessionSettings
from exchange_connector.correlation import CorrelationTable, RequestKind
from exchange_connector.errors import (
    OutboundBackpressure,
    SessionAborted,
    SessionDisconnected,
    SessionNotReady,
)
from exchange_connector.session import DuplexSession, SessionState
from exchange_connector.subscriptions import SubscriptionRegistry, Topic
from exchange_connector.transport import Transport, TransportClosed


# ============================================================
# FAKES
# ============================================================

class FakeTransport(Transport):
    """In-memory transport; None in the inbound queue closes it."""

    def __init__(self, url: str, responder: Optional[Callable[["FakeTransport", Dict[str, Any]], None]] = None):
        self.url = url
        self.sent: List[str] = []
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.responder = responder
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, text: str) -> None:
        if self._closed:
            raise TransportClosed("closed")
        self.sent.append(text)
        if self.responder is not None and text != "ping":
            self.responder(self, json.loads(text))

    async def receive(self) -> str:
        item = await self.inbound.get()
        if item is None:
            raise TransportClosed("remote closed")
        return item

    async def close(self) -> None:
        self._closed = True

    def push(self, frame: Any) -> None:
        self.inbound.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def drop(self) -> None:
        self.inbound.put_nowait(None)

    def frames(self) -> List[Dict[str, Any]]:
        return [json.loads(s) for s in self.sent if s != "ping"]


class FakeFactory:
    """Transport factory recording every connection."""

    def __init__(self, responder=None, failures: int = 0):
        self.responder = responder
        self.failures = failures
        self.transports: List[FakeTransport] = []

    async def __call__(self, url: str) -> FakeTransport:
        if self.failures > 0:
            self.failures -= 1
            raise TransportClosed("connection refused")
        transport = FakeTransport(url, self.responder)
        self.transports.append(transport)
        return transport

    @property
    def current(self) -> FakeTransport:
        return self.transports[-1]


def login_ok(transport: FakeTransport, frame: Dict[str, Any]) -> None:
    if frame.get("op") == "login":
        transport.push({"event": "login", "code": "0", "msg": ""})


def login_rejected(transport: FakeTransport, frame: Dict[str, Any]) -> None:
    if frame.get("op") == "login":
        transport.push({"event": "error", "code": "60009", "msg": "Login failed."})


def fast_settings(**overrides) -> SessionSettings:
    values = dict(
        reconnect_initial_delay_seconds=0.01,
        reconnect_max_delay_seconds=0.05,
        reconnect_jitter=0.0,
        heartbeat_interval_seconds=30.0,
        login_timeout_seconds=0.5,
        connect_timeout_seconds=0.5,
        drain_timeout_seconds=0.2,
    )
    values.update(overrides)
    return SessionSettings(**values)


async def eventually(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


async def _ignore(text: str) -> None:
    pass


def make_session(factory: FakeFactory, private: bool = False, on_message=None, **overrides) -> DuplexSession:
    return DuplexSession(
        name="private" if private else "public",
        url="wss://test/ws",
        settings=fast_settings(**overrides),
        on_message=on_message or _ignore,
        transport_factory=factory,
        login_builder=(lambda: {"op": "login", "args": [{"apiKey": "k"}]}) if private else None,
    )


# ============================================================
# LIFECYCLE
# ============================================================

class TestLifecycle:
    """Tests for start, send and close."""

    @pytest.mark.asyncio
    async def test_start_public(self):
        factory = FakeFactory()
        session = make_session(factory)

        await session.start(timeout=1)

        assert session.state == SessionState.READY
        assert session.is_ready
        assert not session.is_private
        assert session.connect_count == 1
        await session.close()

    @pytest.mark.asyncio
    async def test_send_before_start(self):
        session = make_session(FakeFactory())

        with pytest.raises(SessionNotReady):
            await session.send({"op": "subscribe", "args": []})

    @pytest.mark.asyncio
    async def test_send_reaches_transport(self):
        factory = FakeFactory()
        session = make_session(factory)
        await session.start(timeout=1)

        await session.send({"op": "subscribe", "args": [{"channel": "tickers", "instId": "BTC-USDT"}]})
        await eventually(lambda: len(factory.current.sent) == 1)

        assert factory.current.frames()[0]["op"] == "subscribe"
        await session.close()

    @pytest.mark.asyncio
    async def test_inbound_delivered(self):
        received: List[str] = []

        async def on_message(text: str) -> None:
            received.append(text)

        factory = FakeFactory()
        session = make_session(factory, on_message=on_message)
        await session.start(timeout=1)

        factory.current.push("pong")
        factory.current.push({"event": "subscribe", "arg": {"channel": "tickers"}})
        await eventually(lambda: len(received) == 1)

        assert json.loads(received[0])["event"] == "subscribe"
        await session.close()

    @pytest.mark.asyncio
    async def test_close_aborts_pending(self):
        factory = FakeFactory()
        session = make_session(factory)
        table = CorrelationTable("public", 5.0)
        session.add_teardown_hook(lambda error: table.abort_all(lambda e: error))
        await session.start(timeout=1)

        entry = table.allocate(RequestKind.TICKER)
        await session.close()

        with pytest.raises(SessionAborted):
            await table.wait(entry)
        assert session.state == SessionState.CLOSED
        assert factory.current.closed
        with pytest.raises(SessionNotReady):
            await session.send({"op": "subscribe", "args": []})

    @pytest.mark.asyncio
    async def test_close_drains_queue(self):
        factory = FakeFactory()
        session = make_session(factory)
        await session.start(timeout=1)

        for i in range(3):
            await session.send({"op": "subscribe", "args": [{"channel": "tickers", "instId": f"{i}-USDT"}]})
        await session.close()

        assert len(factory.transports[0].sent) == 3

    @pytest.mark.asyncio
    async def test_start_after_close(self):
        session = make_session(FakeFactory())
        await session.start(timeout=1)
        await session.close()

        with pytest.raises(SessionAborted):
            await session.start(timeout=1)


# ============================================================
# LOGIN
# ============================================================

class TestLogin:
    """Tests for private session login."""

    @pytest.mark.asyncio
    async def test_login_first(self):
        factory = FakeFactory(responder=login_ok)
        session = make_session(factory, private=True)

        await session.start(timeout=1)

        assert session.is_private
        assert factory.current.frames()[0]["op"] == "login"
        assert session.is_ready
        await session.close()

    @pytest.mark.asyncio
    async def test_login_rejected_keeps_retrying(self):
        factory = FakeFactory(responder=login_rejected)
        session = make_session(factory, private=True)

        with pytest.raises(SessionNotReady):
            await session.start(timeout=0.1)

        assert session.login_failures >= 1
        assert len(factory.transports) >= 2
        assert session.state != SessionState.READY
        await session.close()

    @pytest.mark.asyncio
    async def test_frames_before_login_reply_forwarded(self):
        received: List[str] = []

        async def on_message(text: str) -> None:
            received.append(text)

        def responder(transport: FakeTransport, frame: Dict[str, Any]) -> None:
            if frame.get("op") == "login":
                transport.push({"event": "notice", "msg": "hello"})
                transport.push({"event": "login", "code": "0"})

        factory = FakeFactory(responder=responder)
        session = make_session(factory, private=True, on_message=on_message)
        await session.start(timeout=1)

        assert len(received) == 1
        assert json.loads(received[0])["event"] == "notice"
        await session.close()


# ============================================================
# BACKPRESSURE
# ============================================================

class TestBackpressure:
    """Tests for the bounded outbound queue."""

    @pytest.mark.asyncio
    async def test_full_queue(self):
        factory = FakeFactory()
        session = make_session(factory, outbound_queue_size=1)
        await session.start(timeout=1)

        # No yield between sends, so the writer has not drained yet.
        await session.send({"op": "subscribe", "args": []})
        with pytest.raises(OutboundBackpressure):
            await session.send({"op": "subscribe", "args": []})
        await session.close()


# ============================================================
# RECONNECT
# ============================================================

class TestReconnect:
    """Tests for reconnect, replay and pending failure."""

    @pytest.mark.asyncio
    async def test_replay_before_ready(self):
        factory = FakeFactory()
        session = make_session(factory)
        registry = SubscriptionRegistry("public", session.send)
        session.add_ready_hook(registry.replay)
        await session.start(timeout=1)

        await registry.subscribe(Topic.of("candle1m", "ETH-USDT"))
        await registry.subscribe(Topic.of("tickers", "BTC-USDT"))
        await eventually(lambda: len(factory.current.sent) == 2)

        factory.current.drop()
        await eventually(lambda: len(factory.transports) == 2 and session.is_ready)

        # A request admitted after READY lands behind the replay.
        await session.send({"id": "9", "op": "order", "args": [{}]})
        await eventually(lambda: len(factory.current.sent) == 2)

        frames = factory.current.frames()
        assert frames[0] == {
            "op": "subscribe",
            "args": [
                {"channel": "tickers", "instId": "BTC-USDT"},
                {"channel": "candle1m", "instId": "ETH-USDT"},
            ],
        }
        assert frames[1]["op"] == "order"
        assert session.reconnect_count == 1
        await session.close()

    @pytest.mark.asyncio
    async def test_disconnect_fails_pending(self):
        factory = FakeFactory()
        session = make_session(factory)
        table = CorrelationTable("public", 5.0)
        session.add_teardown_hook(lambda error: table.abort_all(lambda e: error))
        await session.start(timeout=1)

        entry = table.allocate(RequestKind.BALANCE, key="real")
        factory.current.drop()

        with pytest.raises(SessionDisconnected):
            await table.wait(entry)
        await session.close()

    @pytest.mark.asyncio
    async def test_private_relogin(self):
        factory = FakeFactory(responder=login_ok)
        session = make_session(factory, private=True)
        await session.start(timeout=1)

        factory.current.drop()
        await eventually(lambda: len(factory.transports) == 2 and session.is_ready)

        assert factory.current.frames()[0]["op"] == "login"
        await session.close()

    @pytest.mark.asyncio
    async def test_connect_failures_retry(self):
        factory = FakeFactory(failures=2)
        session = make_session(factory)

        await session.start(timeout=1)

        assert session.is_ready
        assert len(factory.transports) == 1
        await session.close()

    @pytest.mark.asyncio
    async def test_force_reconnect(self):
        factory = FakeFactory()
        session = make_session(factory)
        await session.start(timeout=1)

        session.force_reconnect("test")
        await eventually(lambda: len(factory.transports) == 2 and session.is_ready)

        assert factory.transports[0].closed
        await session.close()


# ============================================================
# HEARTBEAT
# ============================================================

class TestHeartbeat:
    """Tests for ping and stale detection."""

    @pytest.mark.asyncio
    async def test_ping_then_stale(self):
        factory = FakeFactory()
        session = make_session(factory, heartbeat_interval_seconds=0.03)
        await session.start(timeout=1)

        await eventually(lambda: len(factory.transports) >= 2, timeout=2.0)

        assert "ping" in factory.transports[0].sent
        await session.close()

    @pytest.mark.asyncio
    async def test_traffic_keeps_alive(self):
        factory = FakeFactory()
        session = make_session(factory, heartbeat_interval_seconds=0.03)
        await session.start(timeout=1)

        for _ in range(10):
            factory.current.push("pong")
            await asyncio.sleep(0.01)

        assert len(factory.transports) == 1
        await session.close()


# ============================================================
# BACKOFF
# ============================================================

class TestBackoff:
    """Tests for the reconnect delay schedule."""

    def test_exponential_with_cap(self):
        session = DuplexSession(
            name="public",
            url="wss://test/ws",
            settings=SessionSettings(reconnect_jitter=0.2),
            on_message=_ignore,
            transport_factory=FakeFactory(),
            rng=lambda: 0.0,
        )

        assert [session.backoff_delay(n) for n in (1, 2, 3, 4, 5, 6, 7)] == [1, 2, 4, 8, 16, 30, 30]

    def test_jitter_shortens_delay(self):
        session = DuplexSession(
            name="public",
            url="wss://test/ws",
            settings=SessionSettings(reconnect_jitter=0.2),
            on_message=_ignore,
            transport_factory=FakeFactory(),
            rng=lambda: 0.5,
        )

        assert session.backoff_delay(1) == pytest.approx(0.9)
        assert session.backoff_delay(10) == pytest.approx(27.0)
