"""
Exchange Connector - Correlation Table.

============================================================
PURPOSE
============================================================
Ties asynchronous inbound frames back to pending callers.

Each entry is a single-shot future plus one timer. Reads with
the same key may share an entry; each caller keeps its own
deadline and cancel signal, and detaching one caller leaves the
others waiting. Exactly one outcome reaches each caller:
- result
- VenueError
- RequestTimeout
- RequestCanceled
- SessionDisconnected
- SessionAborted

All mutations run on the event loop thread without awaiting,
so each operation is atomic with respect to the others.

============================================================
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .errors import DuplicateRequest, RequestCanceled, RequestTimeout


logger = logging.getLogger(__name__)


class RequestKind(Enum):
    """What a pending request waits for."""

    TICKER = "ticker"
    KLINE_SNAPSHOT = "kline_snapshot"
    BALANCE = "balance"
    ORDERS = "orders"
    ORDER = "order"
    CANCEL = "cancel"


@dataclass
class PendingRequest:
    """A correlation entry."""

    key: str
    kind: RequestKind
    created_at: float
    deadline: float
    future: asyncio.Future
    timer: Optional[asyncio.TimerHandle] = None
    context: Dict[str, Any] = field(default_factory=dict)
    waiters: int = 1

    @property
    def done(self) -> bool:
        return self.future.done()


# Outcome callback: (kind, outcome, latency_seconds)
OutcomeCallback = Callable[[RequestKind, str, float], None]


def _consume_exception(future: asyncio.Future) -> None:
    # Marks the exception retrieved when nobody awaits the entry.
    if not future.cancelled():
        future.exception()


class CorrelationTable:
    """
    Map of correlation key -> pending request.

    Keys are unique within a table; a second allocate() on a key
    that is still pending raises DuplicateRequest.
    """

    def __init__(
        self,
        name: str,
        default_timeout: float,
        on_outcome: Optional[OutcomeCallback] = None,
    ):
        self._name = name
        self._default_timeout = default_timeout
        self._on_outcome = on_outcome
        self._entries: Dict[str, PendingRequest] = {}
        self._counter = itertools.count(1)

    # --------------------------------------------------------
    # PROPERTIES
    # --------------------------------------------------------

    @property
    def name(self) -> str:
        return self._name

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def get(self, key: str) -> Optional[PendingRequest]:
        return self._entries.get(key)

    def pending(self, kind: Optional[RequestKind] = None) -> List[PendingRequest]:
        return [e for e in self._entries.values() if kind is None or e.kind == kind]

    # --------------------------------------------------------
    # ALLOCATION
    # --------------------------------------------------------

    def next_id(self) -> str:
        """Mint a key unique within this table."""
        while True:
            key = str(next(self._counter))
            if key not in self._entries:
                return key

    def allocate(
        self,
        kind: RequestKind,
        timeout: Optional[float] = None,
        key: Optional[str] = None,
        **context: Any,
    ) -> PendingRequest:
        """
        Install a waiter and arm its timer.

        Args:
            kind: Request kind
            timeout: Seconds until RequestTimeout (table default if None)
            key: Explicit key (client order id, fixed tag); minted if None

        Raises:
            DuplicateRequest: key already pending
        """
        loop = asyncio.get_running_loop()
        key = key if key is not None else self.next_id()
        if key in self._entries:
            raise DuplicateRequest(key)

        timeout = self._default_timeout if timeout is None else timeout
        now = loop.time()
        entry = PendingRequest(
            key=key,
            kind=kind,
            created_at=now,
            deadline=now + timeout,
            future=loop.create_future(),
            context=context,
        )
        entry.future.add_done_callback(_consume_exception)
        entry.timer = loop.call_later(timeout, self._expire, entry, timeout)
        self._entries[key] = entry

        logger.debug(f"[{self._name}] allocated {kind.value} key={key} timeout={timeout:.1f}s")
        return entry

    def join_or_allocate(
        self,
        kind: RequestKind,
        timeout: Optional[float] = None,
        key: Optional[str] = None,
        **context: Any,
    ) -> PendingRequest:
        """
        Join a pending entry of the same kind, or allocate one.

        A joiner with a later deadline pushes the entry's timer out;
        an earlier one is enforced by wait(timeout=...).
        """
        entry = self._entries.get(key) if key is not None else None
        if entry is None or entry.kind != kind or entry.done:
            return self.allocate(kind, timeout, key=key, **context)

        loop = asyncio.get_running_loop()
        timeout = self._default_timeout if timeout is None else timeout
        deadline = loop.time() + timeout
        entry.waiters += 1
        if deadline > entry.deadline:
            entry.deadline = deadline
            if entry.timer is not None:
                entry.timer.cancel()
            entry.timer = loop.call_later(
                timeout, self._expire, entry, deadline - entry.created_at,
            )

        logger.debug(f"[{self._name}] joined {kind.value} key={entry.key} waiters={entry.waiters}")
        return entry

    # --------------------------------------------------------
    # COMPLETION
    # --------------------------------------------------------

    def _pop(self, key: str, entry: Optional[PendingRequest] = None) -> Optional[PendingRequest]:
        current = self._entries.get(key)
        if current is None or (entry is not None and current is not entry):
            return None
        del self._entries[key]
        if current.timer is not None:
            current.timer.cancel()
        return current

    def _record(self, entry: PendingRequest, outcome: str) -> None:
        if self._on_outcome is None:
            return
        latency = asyncio.get_running_loop().time() - entry.created_at
        self._on_outcome(entry.kind, outcome, latency)

    def complete(self, key: str, value: Any) -> bool:
        """
        Fulfil a waiter exactly once.

        Returns:
            True if a pending entry was completed, False otherwise
        """
        entry = self._pop(key)
        if entry is None or entry.future.done():
            return False
        entry.future.set_result(value)
        self._record(entry, "success")
        return True

    def fail(self, key: str, error: BaseException) -> bool:
        """Fail a waiter exactly once."""
        entry = self._pop(key)
        if entry is None or entry.future.done():
            return False
        entry.future.set_exception(error)
        self._record(entry, type(error).__name__)
        return True

    def cancel(self, key: str, reason: str = "canceled by caller") -> bool:
        return self.fail(key, RequestCanceled(reason, context={"key": key}))

    def abort_all(self, make_error: Callable[[PendingRequest], BaseException]) -> int:
        """
        Fail every pending entry.

        Args:
            make_error: Builds the error for each entry

        Returns:
            Number of entries failed
        """
        entries = list(self._entries.values())
        self._entries.clear()
        count = 0
        for entry in entries:
            if entry.timer is not None:
                entry.timer.cancel()
            if entry.future.done():
                continue
            error = make_error(entry)
            entry.future.set_exception(error)
            self._record(entry, type(error).__name__)
            count += 1
        if count:
            logger.info(f"[{self._name}] aborted {count} pending request(s)")
        return count

    def _expire(self, entry: PendingRequest, timeout: float) -> None:
        if self._pop(entry.key, entry) is None or entry.future.done():
            return
        entry.future.set_exception(RequestTimeout(entry.key, timeout))
        self._record(entry, "RequestTimeout")
        logger.warning(f"[{self._name}] {entry.kind.value} key={entry.key} timed out")

    def _detach(self, entry: PendingRequest, error: Optional[BaseException]) -> None:
        """
        Drop one caller from an entry.

        The last caller out removes the entry and fails it with
        error, or cancels it when error is None.
        """
        entry.waiters -= 1
        if entry.waiters > 0 or entry.future.done():
            return
        if self._pop(entry.key, entry) is None:
            return
        if error is None:
            entry.future.cancel()
            return
        entry.future.set_exception(error)
        self._record(entry, type(error).__name__)

    # --------------------------------------------------------
    # WAITING
    # --------------------------------------------------------

    async def _wait_once(
        self,
        entry: PendingRequest,
        limit: Optional[float],
        cancel_event: Optional[asyncio.Event],
    ) -> None:
        cancel_waiter = asyncio.ensure_future(cancel_event.wait()) if cancel_event else None
        waitables = {entry.future}
        if cancel_waiter is not None:
            waitables.add(cancel_waiter)

        try:
            await asyncio.wait(waitables, timeout=limit, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            if not entry.future.done():
                self._detach(entry, None)
            raise
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()

    def _canceled(self, entry: PendingRequest) -> RequestCanceled:
        return RequestCanceled("cancel signal fired", context={"key": entry.key})

    async def settle(
        self,
        entry: PendingRequest,
        limit: float,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> bool:
        """
        Wait at most limit seconds without giving up the entry.

        Returns:
            True if the entry is done (completed, failed, or
            canceled by cancel_event), False if still pending
        """
        await self._wait_once(entry, limit, cancel_event)

        if not entry.future.done() and cancel_event is not None and cancel_event.is_set():
            self._detach(entry, self._canceled(entry))
        return entry.future.done()

    async def wait(
        self,
        entry: PendingRequest,
        cancel_event: Optional[asyncio.Event] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Await an entry's outcome for one caller.

        If cancel_event fires or this caller's timeout elapses first,
        only this caller is detached and gets RequestCanceled or
        RequestTimeout. If the awaiting task is cancelled, this caller
        is detached and CancelledError propagates. The entry itself
        is removed when its last caller leaves.
        """
        await self._wait_once(entry, timeout, cancel_event)

        if entry.future.done():
            return entry.future.result()

        if cancel_event is not None and cancel_event.is_set():
            error: BaseException = self._canceled(entry)
        else:
            error = RequestTimeout(entry.key, timeout)
        self._detach(entry, error)
        raise error
