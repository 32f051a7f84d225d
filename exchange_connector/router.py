"""
Exchange Connector - Message Router.

============================================================
PURPOSE
============================================================
Dispatch decoded frames to handlers keyed by channel prefix.

Lookup is an exact dict match after stripping the candle
interval suffix ("candle1H" -> "candle").

DROPS (counted, never raised):
- malformed        frame failed decoding
- unknown_channel  no handler for the channel tag
- unsubscribed     push for a topic no longer subscribed
- overflow         per-channel queue full, oldest dropped

============================================================
"""

import asyncio
import inspect
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Union

from .codec import Frame, decode_frame, split_channel
from .errors import MalformedFrame


logger = logging.getLogger(__name__)


Handler = Callable[[Frame], Union[None, Awaitable[None]]]
TopicFilter = Callable[[Frame], bool]


class _ChannelQueue:
    """Bounded per-channel buffer drained by one worker task."""

    def __init__(self, size: int):
        self.frames: Deque[Frame] = deque(maxlen=size)
        self.ready = asyncio.Event()
        self.task: Optional[asyncio.Task] = None


class MessageRouter:
    """
    Prefix -> handler table.

    Frames are processed in arrival order. With queue_size > 0
    each channel prefix gets its own bounded queue and worker so
    a slow handler never stalls the reader.
    """

    def __init__(
        self,
        name: str,
        topic_filter: Optional[TopicFilter] = None,
        event_handler: Optional[Handler] = None,
        queue_size: int = 0,
    ):
        self._name = name
        self._handlers: Dict[str, Handler] = {}
        self._topic_filter = topic_filter
        self._event_handler = event_handler
        self._queue_size = queue_size
        self._queues: Dict[str, _ChannelQueue] = {}
        self.counters: Dict[str, int] = {
            "dispatched": 0,
            "events": 0,
            "malformed": 0,
            "unknown_channel": 0,
            "unsubscribed": 0,
            "overflow": 0,
            "handler_errors": 0,
        }

    # --------------------------------------------------------
    # REGISTRATION
    # --------------------------------------------------------

    def register(self, prefix: str, handler: Handler) -> None:
        if prefix in self._handlers:
            logger.warning(f"[{self._name}] replacing handler for {prefix}")
        self._handlers[prefix] = handler

    def set_topic_filter(self, topic_filter: Optional[TopicFilter]) -> None:
        self._topic_filter = topic_filter

    def set_event_handler(self, handler: Optional[Handler]) -> None:
        self._event_handler = handler

    def resolve(self, channel_tag: Optional[str]) -> Optional[Handler]:
        if not channel_tag:
            return None
        prefix, _ = split_channel(channel_tag)
        return self._handlers.get(prefix)

    # --------------------------------------------------------
    # DISPATCH
    # --------------------------------------------------------

    async def feed(self, text: Union[str, bytes]) -> None:
        """Decode and dispatch one inbound text frame."""
        try:
            frame = decode_frame(text)
        except MalformedFrame as e:
            self.counters["malformed"] += 1
            logger.warning(f"[{self._name}] dropped malformed frame: {e}")
            return
        await self.dispatch(frame)

    async def dispatch(self, frame: Frame) -> None:
        if frame.is_event:
            self.counters["events"] += 1
            if self._event_handler is not None:
                await self._invoke(self._event_handler, frame, "event")
            return

        handler = self.resolve(frame.channel_tag)
        if handler is None:
            self.counters["unknown_channel"] += 1
            logger.debug(f"[{self._name}] no handler for channel {frame.channel_tag!r}")
            return

        if frame.is_push and self._topic_filter is not None and not self._topic_filter(frame):
            self.counters["unsubscribed"] += 1
            logger.debug(f"[{self._name}] dropped frame for unsubscribed {frame.channel}:{frame.inst_id}")
            return

        self.counters["dispatched"] += 1

        if self._queue_size <= 0:
            await self._invoke(handler, frame, frame.channel_tag)
            return

        prefix, _ = split_channel(frame.channel_tag)
        queue = self._queues.get(prefix)
        if queue is None:
            queue = _ChannelQueue(self._queue_size)
            queue.task = asyncio.create_task(self._drain(prefix, queue))
            self._queues[prefix] = queue

        if len(queue.frames) == self._queue_size:
            self.counters["overflow"] += 1
            logger.warning(f"[{self._name}] {prefix} queue full, dropping oldest frame")
        queue.frames.append(frame)
        queue.ready.set()

    async def _drain(self, prefix: str, queue: _ChannelQueue) -> None:
        handler = self._handlers[prefix]
        while True:
            await queue.ready.wait()
            while queue.frames:
                frame = queue.frames.popleft()
                await self._invoke(handler, frame, prefix)
            queue.ready.clear()

    async def _invoke(self, handler: Handler, frame: Frame, label: Any) -> None:
        try:
            result = handler(frame)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self.counters["handler_errors"] += 1
            logger.error(f"[{self._name}] handler error for {label}: {e}", exc_info=True)

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    def pending(self) -> int:
        return sum(len(q.frames) for q in self._queues.values())

    async def stop(self) -> None:
        """Cancel per-channel workers. Queued frames are discarded."""
        for queue in self._queues.values():
            if queue.task is not None:
                queue.task.cancel()
                try:
                    await queue.task
                except asyncio.CancelledError:
                    pass
        self._queues.clear()
