"""
Exchange Connector Package.

============================================================
PURPOSE
============================================================
Bidirectional OKX connector over WebSocket, with a REST side
channel for history and order reconciliation.

COMPONENTS:
- codec: Frame decoding / encoding
- signer: HMAC-SHA256 request signing
- session: Duplex session lifecycle (login, heartbeat, reconnect)
- router: Channel prefix -> handler dispatch
- correlation: Pending request table
- subscriptions: Ref-counted subscription registry
- normalizer: Venue payloads -> domain records
- connector: ExchangeConnector facade

============================================================
"""

# Configuration
from .config import (
    ConnectionMode,
    ConnectorConfig,
    Credentials,
    LastPriceSource,
    SessionSettings,
)

# Errors
from .errors import (
    ConnectorError,
    DuplicateRequest,
    ErrorCategory,
    LoginFailed,
    MalformedFrame,
    OutboundBackpressure,
    RequestCanceled,
    RequestTimeout,
    RestError,
    RetryEligibility,
    SessionAborted,
    SessionDisconnected,
    SessionNotReady,
    UnsupportedOperation,
    VenueError,
    classify_okx_code,
)

# Domain records
from .models import (
    AccountBalance,
    AssetBalance,
    Candlestick,
    EventType,
    Order,
    OrderRequest,
    OrderSide,
    OrderStatus,
    OrderType,
    PlacementResult,
    Ticker,
)

# Building blocks
from .codec import Frame, decode_frame, encode_frame
from .correlation import CorrelationTable, RequestKind
from .router import MessageRouter
from .session import DuplexSession, SessionState
from .subscriptions import SubscriptionRegistry, Topic
from .transport import AiohttpTransport, Transport, TransportClosed

# Collaborators
from .collaborators import (
    CsvOrderLog,
    InMemoryCache,
    KeyValueCache,
    OrderPersistence,
    PriceObserver,
    StrategyEngine,
)

# Facade
from .connector import ExchangeConnector
from .metrics import ConnectorMetrics
from .rest import OKXRestClient


__all__ = [
    # Configuration
    "ConnectionMode",
    "ConnectorConfig",
    "Credentials",
    "LastPriceSource",
    "SessionSettings",
    # Errors
    "ConnectorError",
    "DuplicateRequest",
    "ErrorCategory",
    "LoginFailed",
    "MalformedFrame",
    "OutboundBackpressure",
    "RequestCanceled",
    "RequestTimeout",
    "RestError",
    "RetryEligibility",
    "SessionAborted",
    "SessionDisconnected",
    "SessionNotReady",
    "UnsupportedOperation",
    "VenueError",
    "classify_okx_code",
    # Domain records
    "AccountBalance",
    "AssetBalance",
    "Candlestick",
    "EventType",
    "Order",
    "OrderRequest",
    "OrderSide",
    "OrderStatus",
    "OrderType",
    "PlacementResult",
    "Ticker",
    # Building blocks
    "Frame",
    "decode_frame",
    "encode_frame",
    "CorrelationTable",
    "RequestKind",
    "MessageRouter",
    "DuplexSession",
    "SessionState",
    "SubscriptionRegistry",
    "Topic",
    "AiohttpTransport",
    "Transport",
    "TransportClosed",
    # Collaborators
    "CsvOrderLog",
    "InMemoryCache",
    "KeyValueCache",
    "OrderPersistence",
    "PriceObserver",
    "StrategyEngine",
    # Facade
    "ExchangeConnector",
    "ConnectorMetrics",
    "OKXRestClient",
]
