"""
Exchange Connector - Subscription Registry.

============================================================
PURPOSE
============================================================
Canonical set of topics a session should be receiving.

RULES:
- Ref-counted: only the 0 -> 1 transition sends "subscribe",
  only the 1 -> 0 transition sends "unsubscribe"
- Subscribing while the session is not READY keeps the topic;
  the next replay delivers it
- Replay walks topics in (instrument, channel, interval) order
- One lock serialises mutations and replay

============================================================
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .codec import split_channel, subscription_frame
from .errors import SessionNotReady


logger = logging.getLogger(__name__)


Sender = Callable[[Dict[str, Any]], Awaitable[None]]


@dataclass(frozen=True, order=True)
class Topic:
    """A (instrument, channel, interval) subscription key."""

    inst_id: str
    channel: str
    interval: str = ""

    @classmethod
    def of(cls, channel: str, inst_id: str = "") -> "Topic":
        """Build a topic, deriving the interval from candle channels."""
        return cls(inst_id=inst_id or "", channel=channel, interval=split_channel(channel)[1])

    @classmethod
    def from_arg(cls, arg: Dict[str, Any]) -> "Topic":
        return cls.of(arg.get("channel", ""), arg.get("instId", ""))

    def to_arg(self, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        arg: Dict[str, Any] = {"channel": self.channel}
        if self.inst_id:
            arg["instId"] = self.inst_id
        if extra:
            arg.update(extra)
        return arg

    def __str__(self) -> str:
        return f"{self.channel}:{self.inst_id}" if self.inst_id else self.channel


@dataclass
class SubscriptionEntry:
    topic: Topic
    ref_count: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)


class SubscriptionRegistry:
    """
    Ref-counted registry for one session.

    The sender is the session's public send(); it raises
    SessionNotReady outside READY.
    """

    def __init__(self, name: str, sender: Sender, batch_size: int = 20):
        self._name = name
        self._sender = sender
        self._batch_size = max(1, batch_size)
        self._entries: Dict[Topic, SubscriptionEntry] = {}
        self._lock = asyncio.Lock()

    # --------------------------------------------------------
    # QUERIES
    # --------------------------------------------------------

    def is_active(self, topic: Topic) -> bool:
        return topic in self._entries

    def ref_count(self, topic: Topic) -> int:
        entry = self._entries.get(topic)
        return entry.ref_count if entry else 0

    def topics(self) -> List[Topic]:
        """Active topics in replay order."""
        return sorted(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    # --------------------------------------------------------
    # MUTATIONS
    # --------------------------------------------------------

    async def subscribe(self, topic: Topic, extra: Optional[Dict[str, Any]] = None) -> bool:
        """
        Acquire a topic.

        Returns:
            True if this call created the subscription

        Raises:
            Any send error other than SessionNotReady; the
            acquisition is rolled back first
        """
        async with self._lock:
            entry = self._entries.get(topic)
            if entry is not None:
                entry.ref_count += 1
                logger.debug(f"[{self._name}] {topic} ref_count={entry.ref_count}")
                return False

            entry = SubscriptionEntry(topic=topic, ref_count=1, extra=dict(extra or {}))
            self._entries[topic] = entry

            try:
                await self._sender(subscription_frame("subscribe", [topic.to_arg(entry.extra)]))
            except SessionNotReady:
                logger.info(f"[{self._name}] {topic} queued for replay (session not ready)")
            except Exception:
                del self._entries[topic]
                raise

            logger.info(f"[{self._name}] subscribed {topic}")
            return True

    async def unsubscribe(self, topic: Topic) -> bool:
        """
        Release a topic.

        Returns:
            True if this call removed the subscription
        """
        async with self._lock:
            entry = self._entries.get(topic)
            if entry is None:
                return False

            entry.ref_count -= 1
            if entry.ref_count > 0:
                logger.debug(f"[{self._name}] {topic} ref_count={entry.ref_count}")
                return False

            del self._entries[topic]

            try:
                await self._sender(subscription_frame("unsubscribe", [topic.to_arg(entry.extra)]))
            except SessionNotReady:
                # Not replayed, so the remote never sees it again.
                pass

            logger.info(f"[{self._name}] unsubscribed {topic}")
            return True

    # --------------------------------------------------------
    # REPLAY
    # --------------------------------------------------------

    async def replay(self, send: Sender) -> int:
        """
        Resubscribe every active topic.

        Args:
            send: Control-path sender usable before READY

        Returns:
            Number of topics replayed
        """
        async with self._lock:
            topics = self.topics()
            for start in range(0, len(topics), self._batch_size):
                batch = topics[start:start + self._batch_size]
                args = [t.to_arg(self._entries[t].extra) for t in batch]
                await send(subscription_frame("subscribe", args))

            if topics:
                logger.info(f"[{self._name}] replayed {len(topics)} subscription(s)")
            return len(topics)
