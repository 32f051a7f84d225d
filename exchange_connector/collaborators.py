"""
Exchange Connector - Collaborator Interfaces.

============================================================
PURPOSE
============================================================
Interfaces the connector consumes, plus default in-process
implementations:

- KeyValueCache     per-asset balance cache      (InMemoryCache)
- PriceObserver     last-price notifications     (none)
- StrategyEngine    candle dispatch              (none)
- OrderPersistence  order rows + strategy errors (CsvOrderLog)

Calls into collaborators are fire-and-forget: sync results are
ignored, coroutine results are scheduled as tasks, errors are
logged and never reach the router.

============================================================
"""

import asyncio
import csv
import inspect
import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Set, Tuple

from .models import Candlestick


logger = logging.getLogger(__name__)


# ============================================================
# INTERFACES
# ============================================================

class KeyValueCache(ABC):
    """Balance cache keyed by asset."""

    @abstractmethod
    def put(self, key: str, amount: Decimal, ttl: float) -> None:
        pass

    @abstractmethod
    def get(self, key: str) -> Optional[Decimal]:
        pass


class PriceObserver(ABC):
    """Receives last-price updates."""

    @abstractmethod
    def update(self, inst_id: str, price: Decimal) -> None:
        pass


class StrategyEngine(ABC):
    """Consumes candles."""

    @abstractmethod
    def on_candle(self, inst_id: str, interval: str, candle: Candlestick) -> None:
        pass


class OrderPersistence(ABC):
    """
    Order log sink and strategy error attribution.

    Either method may be a coroutine function. Sync calls run on
    the event loop.
    """

    @abstractmethod
    def save_order_row(self, fields: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def mark_strategy_error(self, strategy_id: str, message: str) -> None:
        pass


# ============================================================
# DEFAULTS
# ============================================================

class InMemoryCache(KeyValueCache):
    """Dict-backed cache with per-key expiry."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._items: Dict[str, Tuple[Decimal, float]] = {}

    def put(self, key: str, amount: Decimal, ttl: float) -> None:
        self._items[key] = (amount, self._clock() + ttl)

    def get(self, key: str) -> Optional[Decimal]:
        item = self._items.get(key)
        if item is None:
            return None
        amount, expires_at = item
        if self._clock() >= expires_at:
            del self._items[key]
            return None
        return amount

    def __len__(self) -> int:
        return len(self._items)


class CsvOrderLog(OrderPersistence):
    """
    Daily CSV order log: <directory>/orders_YYYY-MM-DD.csv.

    The header is the sorted field names of the first row written
    to a file. Rows are written on the default executor so file I/O
    stays off the event loop. Strategy errors are kept in memory
    and logged.
    """

    def __init__(self, directory: str = "logs/orders", tz: timezone = timezone.utc):
        self._directory = directory
        self._tz = tz
        self._write_lock = threading.Lock()
        self.strategy_errors: Dict[str, str] = {}

    def path_for(self, when: Optional[datetime] = None) -> str:
        when = when or datetime.now(self._tz)
        return os.path.join(self._directory, f"orders_{when.strftime('%Y-%m-%d')}.csv")

    async def save_order_row(self, fields: Dict[str, Any], when: Optional[datetime] = None) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.write_row, dict(fields), when)

    def write_row(self, fields: Dict[str, Any], when: Optional[datetime] = None) -> str:
        """Append one row synchronously; safe to call from worker threads."""
        path = self.path_for(when)
        os.makedirs(self._directory, exist_ok=True)

        with self._write_lock:
            new_file = not os.path.exists(path) or os.path.getsize(path) == 0
            if new_file:
                header = sorted(fields)
            else:
                with open(path, "r", newline="", encoding="utf-8") as f:
                    header = next(csv.reader(f), sorted(fields))

            with open(path, "a", newline="", encoding="utf-8") as f:
                writer = csv.DictWriter(f, fieldnames=header, extrasaction="ignore")
                if new_file:
                    writer.writeheader()
                writer.writerow({k: _csv_value(fields.get(k)) for k in header})

        logger.info(f"Order row written to {path}")
        return path

    def mark_strategy_error(self, strategy_id: str, message: str) -> None:
        self.strategy_errors[strategy_id] = message
        logger.warning(f"Strategy {strategy_id} marked ERROR: {message}")


def _csv_value(value: Any) -> str:
    return "" if value is None else str(value)


# ============================================================
# FIRE-AND-FORGET DISPATCH
# ============================================================

class Notifier:
    """Calls collaborators without letting them block or fail the caller."""

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def call(self, label: str, fn: Callable[..., Any], *args: Any) -> None:
        try:
            result = fn(*args)
        except Exception as e:
            logger.error(f"{label} failed: {e}", exc_info=True)
            return

        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(lambda t: self._done(label, t))

    def _done(self, label: str, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"{label} failed: {error}")

    async def drain(self, timeout: float = 2.0) -> None:
        if not self._tasks:
            return
        await asyncio.wait(set(self._tasks), timeout=timeout)

    def __len__(self) -> int:
        return len(self._tasks)
