"""
Exchange Connector - Domain Records.

============================================================
PURPOSE
============================================================
Typed, venue-neutral records produced by the normalizer.

RULES:
- Monetary fields are Decimal, never float
- Timestamps are timezone-aware datetimes

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


# ============================================================
# ENUMS
# ============================================================

class OrderSide(Enum):
    """Order side."""

    BUY = "buy"
    SELL = "sell"


class OrderType(Enum):
    """Order type."""

    MARKET = "market"
    LIMIT = "limit"


class OrderStatus(Enum):
    """Canonical order status. Unknown venue states pass through upper-cased."""

    NEW = "NEW"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELED = "CANCELED"
    CANCELING = "CANCELING"


class EventType(Enum):
    """Stream events fanned out to listeners."""

    TICKER = "ticker"
    CANDLE = "candle"
    ACCOUNT = "account"
    ORDER = "order"


# ============================================================
# MARKET DATA
# ============================================================

@dataclass(frozen=True)
class Ticker:
    """24h rolling ticker snapshot."""

    inst_id: str
    last: Decimal
    open_24h: Decimal
    high_24h: Decimal
    low_24h: Decimal
    bid: Decimal
    ask: Decimal
    bid_size: Decimal
    ask_size: Decimal
    base_volume: Decimal
    quote_volume: Decimal
    change: Decimal
    percent: Decimal
    """Percent change over 24h, e.g. 25.0000 for +25%."""
    timestamp: datetime
    source: str = "tickers"


@dataclass(frozen=True)
class Candlestick:
    """One OHLCV bar."""

    inst_id: str
    interval: str
    open_time: datetime
    close_time: datetime
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    base_volume: Decimal
    quote_volume: Decimal
    confirmed: bool
    """False while the interval is still open."""


# ============================================================
# ACCOUNT
# ============================================================

@dataclass(frozen=True)
class AssetBalance:
    """Balance of a single asset."""

    asset: str
    available: Decimal
    frozen: Decimal
    total: Decimal
    usd_value: Decimal


@dataclass(frozen=True)
class AccountBalance:
    """
    Account-level balance in USD terms.

    available is the USD value of the available share of each
    asset; frozen is total_equity minus available.
    """

    total_equity: Decimal
    available: Decimal
    frozen: Decimal
    details: List[AssetBalance] = field(default_factory=list)
    timestamp: Optional[datetime] = None
    simulated: bool = False

    def get_asset(self, asset: str) -> Optional[AssetBalance]:
        for detail in self.details:
            if detail.asset == asset:
                return detail
        return None


# ============================================================
# ORDERS
# ============================================================

@dataclass(frozen=True)
class Order:
    """Order state as reported by the venue."""

    order_id: str
    client_order_id: str
    inst_id: str
    side: str
    type: str
    quantity: Decimal
    executed_quantity: Decimal
    """Filled size net of fee when the fee is charged in the traded asset."""
    price: Decimal
    """Last fill price."""
    cumulative_quote_quantity: Decimal
    status: str
    fee: Decimal
    """Absolute fee in quote currency."""
    fee_currency: str
    venue_code: str = "0"
    venue_message: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_rejected(self) -> bool:
        return self.venue_code not in ("", "0")

    @property
    def is_terminal(self) -> bool:
        return self.status in (OrderStatus.FILLED.value, OrderStatus.CANCELED.value)


@dataclass
class OrderRequest:
    """
    Order placement request.

    Exactly one of quantity (base currency) or amount (quote
    currency) must be given.
    """

    inst_id: str
    side: OrderSide
    type: OrderType = OrderType.MARKET
    quantity: Optional[Decimal] = None
    amount: Optional[Decimal] = None
    price: Optional[Decimal] = None
    strategy_id: Optional[str] = None
    client_order_id: Optional[str] = None
    inst_type: str = "SPOT"
    leverage: Optional[Decimal] = None
    """Only sent for SWAP instruments."""

    def validate(self) -> List[str]:
        errors = []
        if (self.quantity is None) == (self.amount is None):
            errors.append("exactly one of quantity or amount is required")
        for name in ("quantity", "amount", "price"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                errors.append(f"{name} must be positive")
        return errors


@dataclass
class PlacementResult:
    """Outcome of a placement: the order and how it was resolved."""

    client_order_id: str
    order: Optional[Order]
    resolved_by: str
    """One of: ack, stream, rest."""
    raw: Dict[str, Any] = field(default_factory=dict)
