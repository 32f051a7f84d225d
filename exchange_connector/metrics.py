"""
Exchange Connector - Metrics.

============================================================
PURPOSE
============================================================
In-process metrics for the connector.

METRICS TRACKED:
- Correlated request outcomes and latency, by request kind
- REST side channel latency and failures, by endpoint
- Order placements and how they were resolved
- Rolling counters for the last minute / hour

============================================================
"""

import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union


# ============================================================
# STATS
# ============================================================

@dataclass
class LatencyStats:
    """Latency statistics."""

    count: int = 0
    total_ms: float = 0.0
    min_ms: float = float("inf")
    max_ms: float = 0.0

    @property
    def avg_ms(self) -> float:
        return self.total_ms / self.count if self.count > 0 else 0.0

    def record(self, latency_ms: float) -> None:
        self.count += 1
        self.total_ms += latency_ms
        self.min_ms = min(self.min_ms, latency_ms)
        self.max_ms = max(self.max_ms, latency_ms)

    def to_dict(self) -> Dict[str, float]:
        return {
            "count": self.count,
            "avg_ms": round(self.avg_ms, 2),
            "min_ms": round(self.min_ms, 2) if self.count else 0.0,
            "max_ms": round(self.max_ms, 2),
        }


@dataclass
class CounterStats:
    """Counter with rolling minute / hour windows."""

    total: int = 0
    last_minute: int = 0
    last_hour: int = 0
    _events: List[float] = field(default_factory=list)

    def increment(self, now: Optional[float] = None) -> None:
        now = time.time() if now is None else now
        self.total += 1
        self._events.append(now)
        self._cleanup(now)

    def _cleanup(self, now: float) -> None:
        hour_ago = now - 3600
        self._events = [t for t in self._events if t > hour_ago]
        self.last_hour = len(self._events)
        self.last_minute = sum(1 for t in self._events if t > now - 60)


# ============================================================
# CONNECTOR METRICS
# ============================================================

class ConnectorMetrics:
    """Metrics collector for one connector instance."""

    def __init__(self, name: str = "okx"):
        self._name = name
        self._start_time = datetime.now(timezone.utc)

        # Correlated requests
        self._request_latency: Dict[str, LatencyStats] = defaultdict(LatencyStats)
        self._request_outcomes: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))

        # REST
        self._rest_latency: Dict[str, LatencyStats] = defaultdict(LatencyStats)
        self._rest_failures: Dict[str, int] = defaultdict(int)

        # Orders
        self._orders_placed = CounterStats()
        self._orders_rejected = CounterStats()
        self._orders_resolved: Dict[str, int] = defaultdict(int)
        self._reconciliations = CounterStats()

    # --------------------------------------------------------
    # RECORDING
    # --------------------------------------------------------

    def record_request(self, kind: Union[Enum, str], outcome: str, latency_seconds: float) -> None:
        """Record a correlated request outcome (success or error class name)."""
        key = kind.value if isinstance(kind, Enum) else str(kind)
        self._request_outcomes[key][outcome] += 1
        if outcome == "success":
            self._request_latency[key].record(latency_seconds * 1000)

    def record_rest(self, endpoint: str, latency_ms: float, success: bool, error_code: Optional[str] = None) -> None:
        self._rest_latency[endpoint].record(latency_ms)
        if not success:
            self._rest_failures[error_code or "unknown"] += 1

    def record_order_placed(self) -> None:
        self._orders_placed.increment()

    def record_order_rejected(self) -> None:
        self._orders_rejected.increment()

    def record_order_resolved(self, resolved_by: str) -> None:
        self._orders_resolved[resolved_by] += 1
        if resolved_by == "rest":
            self._reconciliations.increment()

    # --------------------------------------------------------
    # REPORTING
    # --------------------------------------------------------

    def outcomes(self, kind: Union[Enum, str]) -> Dict[str, int]:
        key = kind.value if isinstance(kind, Enum) else str(kind)
        return dict(self._request_outcomes.get(key, {}))

    def get_summary(self) -> Dict[str, Any]:
        uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()
        return {
            "name": self._name,
            "uptime_seconds": round(uptime, 1),
            "requests": {
                kind: {
                    "outcomes": dict(outcomes),
                    "latency": self._request_latency[kind].to_dict(),
                }
                for kind, outcomes in self._request_outcomes.items()
            },
            "rest": {
                "latency": {ep: stats.to_dict() for ep, stats in self._rest_latency.items()},
                "failures": dict(self._rest_failures),
            },
            "orders": {
                "placed": self._orders_placed.total,
                "rejected": self._orders_rejected.total,
                "resolved_by": dict(self._orders_resolved),
                "reconciliations_last_hour": self._reconciliations.last_hour,
            },
        }
