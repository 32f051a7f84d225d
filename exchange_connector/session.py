"""
Exchange Connector - Duplex Session.

============================================================
PURPOSE
============================================================
One long-lived WebSocket connection with a full lifecycle:

    DISCONNECTED -> CONNECTING -> [AUTHENTICATING] -> READY
         READY -> RECONNECTING -> [AUTHENTICATING] -> READY
           any -> CLOSED

FEATURES:
- Private login (AUTHENTICATING) before anything else is sent
- Reader, writer (bounded queue) and heartbeat tasks
- Reconnect with exponential backoff and jitter (1s .. 30s)
- Ready hooks run before READY (subscription replay)
- Teardown hooks fail pending requests

============================================================
USAGE
============================================================
```python
session = DuplexSession(
    name="public",
    url=OKX_PUBLIC_WS_URL,
    settings=SessionSettings(),
    on_message=router.feed,
)
session.add_ready_hook(registry.replay)
await session.start()
await session.send({"op": "subscribe", "args": [...]})
```

============================================================
"""

import asyncio
import logging
import random
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .codec import PING, decode_frame, encode_frame, is_pong
from .config import SessionSettings
from .errors import (
    ConnectorError,
    LoginFailed,
    MalformedFrame,
    OutboundBackpressure,
    SessionAborted,
    SessionDisconnected,
    SessionNotReady,
)
from .logging_utils import mask_frame
from .transport import TransportClosed, TransportFactory, aiohttp_transport_factory


logger = logging.getLogger(__name__)


# ============================================================
# STATE
# ============================================================

class SessionState(Enum):
    """Session lifecycle states."""

    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    AUTHENTICATING = "AUTHENTICATING"
    READY = "READY"
    RECONNECTING = "RECONNECTING"
    CLOSED = "CLOSED"


Sender = Callable[[Dict[str, Any]], Awaitable[None]]
MessageHandler = Callable[[str], Awaitable[None]]
LoginBuilder = Callable[[], Dict[str, Any]]
ReadyHook = Callable[[Sender], Awaitable[Any]]
TeardownHook = Callable[[ConnectorError], None]


# ============================================================
# SESSION
# ============================================================

class DuplexSession:
    """
    A single duplex connection with lifecycle management.

    A supervisor task owns the connection: it establishes it,
    waits for the first failure signal from the reader, writer
    or heartbeat, tears it down and reconnects with backoff.
    """

    def __init__(
        self,
        name: str,
        url: str,
        settings: SessionSettings,
        on_message: MessageHandler,
        transport_factory: Optional[TransportFactory] = None,
        login_builder: Optional[LoginBuilder] = None,
        rng: Callable[[], float] = random.random,
    ):
        """
        Initialize session.

        Args:
            name: Label used in logs and errors
            url: WebSocket URL
            settings: Lifecycle settings
            on_message: Receives every inbound text frame except pong
            transport_factory: Opens the transport (aiohttp by default)
            login_builder: Builds a fresh login frame; None for public sessions
            rng: Jitter source in [0, 1)
        """
        self._name = name
        self._url = url
        self._settings = settings
        self._on_message = on_message
        self._factory = transport_factory or aiohttp_transport_factory(
            settings.connect_timeout_seconds
        )
        self._login_builder = login_builder
        self._rng = rng

        # Connection state
        self._state = SessionState.DISCONNECTED
        self._transport = None
        self._ready = asyncio.Event()
        self._closing = False
        self._failed: Optional[asyncio.Future] = None
        self._last_activity = 0.0

        # Tasks
        self._supervisor: Optional[asyncio.Task] = None
        self._reader: Optional[asyncio.Task] = None
        self._writer: Optional[asyncio.Task] = None
        self._heartbeat: Optional[asyncio.Task] = None
        self._outbound: asyncio.Queue = asyncio.Queue(maxsize=settings.outbound_queue_size)

        # Hooks
        self._ready_hooks: List[ReadyHook] = []
        self._teardown_hooks: List[TeardownHook] = []

        # Stats
        self.connect_count = 0
        self.reconnect_count = 0
        self.login_failures = 0

    # --------------------------------------------------------
    # PROPERTIES
    # --------------------------------------------------------

    @property
    def name(self) -> str:
        return self._name

    @property
    def url(self) -> str:
        return self._url

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state == SessionState.READY

    @property
    def is_private(self) -> bool:
        return self._login_builder is not None

    @property
    def queued(self) -> int:
        return self._outbound.qsize()

    def add_ready_hook(self, hook: ReadyHook) -> None:
        """Run hook(send_control) after login, before READY."""
        self._ready_hooks.append(hook)

    def add_teardown_hook(self, hook: TeardownHook) -> None:
        """Run hook(error) whenever the connection is torn down."""
        self._teardown_hooks.append(hook)

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    async def start(self, timeout: Optional[float] = None) -> None:
        """
        Start the supervisor and wait for READY.

        Raises:
            SessionNotReady: READY not reached within timeout
                (the supervisor keeps retrying in the background)
        """
        if self._state == SessionState.CLOSED:
            raise SessionAborted(f"Session {self._name} is closed")

        if self._supervisor is None:
            self._closing = False
            self._supervisor = asyncio.create_task(self._supervise())

        try:
            await asyncio.wait_for(self._ready.wait(), timeout)
        except asyncio.TimeoutError:
            raise SessionNotReady(self._name, self._state.value)

    async def wait_ready(self, timeout: Optional[float] = None) -> bool:
        try:
            await asyncio.wait_for(self._ready.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def close(self) -> None:
        """Close: stop heartbeat, drain writer, abort pending requests."""
        if self._state == SessionState.CLOSED:
            return

        was_ready = self._state == SessionState.READY
        self._closing = True
        self._state = SessionState.CLOSED
        self._ready.clear()

        await self._cancel(self._heartbeat)
        self._heartbeat = None

        if was_ready and self._writer is not None and not self._writer.done():
            try:
                await asyncio.wait_for(self._outbound.join(), self._settings.drain_timeout_seconds)
            except asyncio.TimeoutError:
                logger.warning(f"[{self._name}] {self._outbound.qsize()} frame(s) not drained on close")

        await self._cancel(self._supervisor)
        self._supervisor = None

        await self._teardown(SessionAborted(f"Session {self._name} closed"))
        logger.info(f"[{self._name}] session closed")

    def force_reconnect(self, reason: str = "forced") -> None:
        """Drop the current connection; the supervisor reconnects."""
        self._signal_failure(TransportClosed(reason))

    # --------------------------------------------------------
    # SUPERVISOR
    # --------------------------------------------------------

    def backoff_delay(self, attempt: int) -> float:
        """Delay before reconnect attempt n (1-based), with jitter."""
        base = min(
            self._settings.reconnect_initial_delay_seconds * (2 ** (attempt - 1)),
            self._settings.reconnect_max_delay_seconds,
        )
        return base * (1 - self._settings.reconnect_jitter * self._rng())

    async def _supervise(self) -> None:
        attempt = 0
        while not self._closing:
            self._state = SessionState.RECONNECTING if self.connect_count else SessionState.CONNECTING
            try:
                await self._establish()
            except asyncio.CancelledError:
                raise
            except (TransportClosed, OSError, asyncio.TimeoutError, ConnectorError) as e:
                if isinstance(e, LoginFailed):
                    self.login_failures += 1
                logger.warning(f"[{self._name}] connect attempt failed: {e}")
                await self._teardown(SessionDisconnected(
                    f"Session {self._name} failed to connect", cause=e,
                ))
                attempt += 1
                await self._sleep_backoff(attempt)
                continue

            attempt = 0
            reason = await self._failed
            if self._closing:
                return

            logger.warning(f"[{self._name}] connection lost: {reason}")
            self._state = SessionState.RECONNECTING
            await self._teardown(SessionDisconnected(
                f"Session {self._name} disconnected", cause=reason,
            ))
            self.reconnect_count += 1
            attempt = 1
            await self._sleep_backoff(attempt)

    async def _sleep_backoff(self, attempt: int) -> None:
        if self._closing:
            return
        self._state = SessionState.RECONNECTING
        delay = self.backoff_delay(attempt)
        logger.info(f"[{self._name}] reconnecting in {delay:.2f}s (attempt {attempt})")
        await asyncio.sleep(delay)

    async def _establish(self) -> None:
        loop = asyncio.get_running_loop()

        self._transport = await asyncio.wait_for(
            self._factory(self._url), self._settings.connect_timeout_seconds,
        )
        self._last_activity = loop.time()
        self._failed = loop.create_future()
        self.connect_count += 1

        if self._login_builder is not None:
            self._state = SessionState.AUTHENTICATING
            await self._login()

        self._outbound = asyncio.Queue(maxsize=self._settings.outbound_queue_size)
        self._reader = asyncio.create_task(self._read_loop())
        self._writer = asyncio.create_task(self._write_loop())

        for hook in self._ready_hooks:
            await hook(self.send_control)

        self._state = SessionState.READY
        self._heartbeat = asyncio.create_task(self._heartbeat_loop())
        self._ready.set()
        logger.info(f"[{self._name}] session ready: {self._url}")

    async def _login(self) -> None:
        """Send login and read frames until the login event arrives."""
        await self.send_control(self._login_builder())

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.login_timeout_seconds

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise asyncio.TimeoutError(f"login not acknowledged in {self._settings.login_timeout_seconds}s")

            text = await asyncio.wait_for(self._transport.receive(), remaining)
            self._last_activity = loop.time()
            if is_pong(text):
                continue

            try:
                frame = decode_frame(text)
            except MalformedFrame:
                await self._on_message(text)
                continue

            if frame.event == "login":
                if frame.is_success:
                    logger.info(f"[{self._name}] login ok")
                    return
                raise LoginFailed(frame.code or "", frame.msg or "")

            if frame.event == "error":
                raise LoginFailed(frame.code or "", frame.msg or "")

            await self._on_message(text)

    async def _teardown(self, error: ConnectorError) -> None:
        self._ready.clear()

        for task in (self._heartbeat, self._reader, self._writer):
            await self._cancel(task)
        self._heartbeat = self._reader = self._writer = None

        # Queued frames are discarded, never replayed.
        dropped = self._outbound.qsize()
        self._outbound = asyncio.Queue(maxsize=self._settings.outbound_queue_size)
        if dropped:
            logger.info(f"[{self._name}] discarded {dropped} queued frame(s)")

        if self._transport is not None:
            try:
                await self._transport.close()
            except (TransportClosed, OSError) as e:
                logger.debug(f"[{self._name}] transport close error: {e}")
            self._transport = None

        for hook in self._teardown_hooks:
            try:
                hook(error)
            except Exception as e:
                logger.error(f"[{self._name}] teardown hook error: {e}", exc_info=True)

    @staticmethod
    async def _cancel(task: Optional[asyncio.Task]) -> None:
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _signal_failure(self, reason: BaseException) -> None:
        if self._failed is not None and not self._failed.done():
            self._failed.set_result(reason)

    # --------------------------------------------------------
    # TASKS
    # --------------------------------------------------------

    async def _read_loop(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            while True:
                text = await self._transport.receive()
                self._last_activity = loop.time()
                if is_pong(text):
                    continue
                await self._on_message(text)
        except asyncio.CancelledError:
            raise
        except (TransportClosed, OSError) as e:
            self._signal_failure(e)
        except Exception as e:
            logger.error(f"[{self._name}] error in receive loop: {e}", exc_info=True)
            self._signal_failure(e)

    async def _write_loop(self) -> None:
        queue = self._outbound
        while True:
            text = await queue.get()
            try:
                await self._transport.send(text)
            except (TransportClosed, OSError) as e:
                self._signal_failure(e)
                return
            finally:
                queue.task_done()

    async def _heartbeat_loop(self) -> None:
        loop = asyncio.get_running_loop()
        interval = self._settings.heartbeat_interval_seconds
        while True:
            await asyncio.sleep(interval)

            idle = loop.time() - self._last_activity
            if idle >= 2 * interval:
                logger.warning(f"[{self._name}] no traffic for {idle:.1f}s, connection stale")
                self._signal_failure(TransportClosed("heartbeat stale"))
                return

            try:
                self._outbound.put_nowait(PING)
            except asyncio.QueueFull:
                # Outbound traffic is already flowing.
                pass

    # --------------------------------------------------------
    # SENDING
    # --------------------------------------------------------

    async def send(self, frame: Dict[str, Any]) -> None:
        """
        Queue a frame for the writer.

        Raises:
            SessionNotReady: outside READY
            OutboundBackpressure: outbound queue full
        """
        if self._state != SessionState.READY:
            raise SessionNotReady(self._name, self._state.value)

        text = encode_frame(frame)
        try:
            self._outbound.put_nowait(text)
        except asyncio.QueueFull:
            raise OutboundBackpressure(
                f"Session {self._name} outbound queue full ({self._outbound.maxsize})",
                context={"session": self._name},
            )
        logger.debug(f"[{self._name}] >>> {mask_frame(frame)}")

    async def send_control(self, frame: Dict[str, Any]) -> None:
        """Write directly to the transport. Login and ready hooks only."""
        if self._transport is None:
            raise TransportClosed("Not connected")
        logger.debug(f"[{self._name}] >>> {mask_frame(frame)}")
        await self._transport.send(encode_frame(frame))
