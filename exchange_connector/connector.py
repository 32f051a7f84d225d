"""
Exchange Connector - OKX Connector Facade.

============================================================
PURPOSE
============================================================
User-level API over the public and private OKX sessions.

Every request follows the same skeleton:
    install waiter -> send frame -> await outcome -> remove waiter

OPERATIONS:
- Market data: get_ticker, get_kline, subscribe/unsubscribe
  (kline, ticker, mark price), get_history_klines, get_all_tickers
- Account: get_balance, get_orders
- Trading: place_order, cancel_order, get_order

Placement correlates on the client order id. If neither the
venue ack nor an order update arrives within the settle delay,
one REST read-by-client-id reconciles the order.

============================================================
USAGE
============================================================
```python
config = ConnectorConfig.from_env()
async with ExchangeConnector(config) as connector:
    ticker = await connector.get_ticker("BTC-USDT")
    result = await connector.place_order(OrderRequest(
        inst_id="BTC-USDT",
        side=OrderSide.BUY,
        amount=Decimal("10"),
        strategy_id="grid-1",
    ))
```

============================================================
"""

import asyncio
import logging
import secrets
import time
from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from .codec import Frame, candle_channel, request_frame
from .collaborators import (
    CsvOrderLog,
    InMemoryCache,
    KeyValueCache,
    Notifier,
    OrderPersistence,
    PriceObserver,
    StrategyEngine,
)
from .config import ConnectionMode, ConnectorConfig
from .correlation import CorrelationTable, RequestKind
from .errors import (
    ConnectorError,
    MalformedFrame,
    RestError,
    SessionNotReady,
    UnsupportedOperation,
    VenueError,
)
from .logging_utils import ConnectorLogger
from .metrics import ConnectorMetrics
from .models import (
    AccountBalance,
    AssetBalance,
    Candlestick,
    EventType,
    Order,
    OrderRequest,
    OrderStatus,
    OrderType,
    PlacementResult,
    Ticker,
)
from .normalizer import (
    ZERO,
    parse_account_balance,
    parse_candle_row,
    parse_mark_price,
    parse_order,
    parse_ticker,
)
from .rest import OKXRestClient
from .router import MessageRouter
from .session import DuplexSession
from .signer import epoch_timestamp, login_frame
from .subscriptions import SubscriptionRegistry, Topic
from .transport import TransportFactory


logger = logging.getLogger(__name__)


Listener = Callable[[Any], Any]

BALANCE_ASSET = "USDT"


def new_client_order_id() -> str:
    """<millis><rand8>: alphanumeric, unique enough per process."""
    return f"{int(time.time() * 1000)}{secrets.token_hex(4)}"


def balance_key(simulated: bool) -> str:
    return "simulated" if simulated else "real"


@dataclass
class _SessionSide:
    """One session with the components it owns."""

    session: DuplexSession
    router: MessageRouter
    table: CorrelationTable
    registry: SubscriptionRegistry


class ExchangeConnector:
    """
    OKX connector facade.

    In WS mode a public session is always created; the private
    session only when credentials are complete. In REST mode only
    the REST-backed operations are available.
    """

    def __init__(
        self,
        config: ConnectorConfig,
        cache: Optional[KeyValueCache] = None,
        price_observer: Optional[PriceObserver] = None,
        strategy_engine: Optional[StrategyEngine] = None,
        persistence: Optional[OrderPersistence] = None,
        rest_client: Optional[OKXRestClient] = None,
        transport_factory: Optional[TransportFactory] = None,
        metrics: Optional[ConnectorMetrics] = None,
    ):
        """
        Initialize connector.

        Args:
            config: Connector configuration
            cache: Per-asset balance cache (in-memory by default)
            price_observer: Notified on every last-price update
            strategy_engine: Receives every candle
            persistence: Order rows and strategy errors (CSV by default)
            rest_client: REST side channel (built from config by default)
            transport_factory: Opens WebSocket transports (aiohttp by default)
            metrics: Metrics collector
        """
        self._config = config
        self._tz = timezone(timedelta(hours=config.timezone_offset_hours))
        self.metrics = metrics or ConnectorMetrics()

        self._rest = rest_client or OKXRestClient(
            base_url=config.base_url,
            credentials=config.credentials,
            simulated=config.simulated,
            timeout=config.request_timeout_seconds,
            metrics=self.metrics,
            tz=self._tz,
        )

        # Collaborators
        self._cache = cache or InMemoryCache()
        self._price_observer = price_observer
        self._strategy_engine = strategy_engine
        self._persistence = persistence or CsvOrderLog(config.order_log_dir, self._tz)
        self._notifier = Notifier()
        self._order_log = ConnectorLogger("orders")

        # Local state
        self._listeners: Dict[EventType, List[Listener]] = defaultdict(list)
        self._last_prices: Dict[str, Decimal] = {}
        self._latest_candles: Dict[Tuple[str, str], Candlestick] = {}
        self._client_strategies: Dict[str, str] = {}
        self._request_keys: Dict[str, str] = {}
        self._started = False
        self._closed = False

        self._public: Optional[_SessionSide] = None
        self._private: Optional[_SessionSide] = None

        if config.mode == ConnectionMode.WS:
            self._public = self._build_side(
                "public", config.resolved_public_ws_url, transport_factory, login=False,
            )
            self._register_public_handlers(self._public.router)

            if config.credentials.is_complete:
                self._private = self._build_side(
                    "private", config.resolved_private_ws_url, transport_factory, login=True,
                )
                self._register_private_handlers(self._private.router)
            else:
                logger.info("No API credentials configured, private session disabled")

        logger.info(
            f"ExchangeConnector initialized: mode={config.mode.value}, "
            f"simulated={config.simulated}, private={self._private is not None}"
        )

    # --------------------------------------------------------
    # CONSTRUCTION
    # --------------------------------------------------------

    def _build_side(
        self,
        name: str,
        url: str,
        transport_factory: Optional[TransportFactory],
        login: bool,
    ) -> _SessionSide:
        settings = self._config.session
        router = MessageRouter(name, queue_size=self._config.route_queue_size)

        session = DuplexSession(
            name=name,
            url=url,
            settings=settings,
            on_message=router.feed,
            transport_factory=transport_factory,
            login_builder=self._build_login if login else None,
        )
        table = CorrelationTable(
            name,
            self._config.request_timeout_seconds,
            on_outcome=self.metrics.record_request,
        )
        registry = SubscriptionRegistry(name, session.send, settings.replay_batch_size)

        router.set_topic_filter(lambda frame: registry.is_active(Topic.from_arg(frame.arg)))
        router.set_event_handler(self._on_event)

        session.add_ready_hook(registry.replay)
        session.add_teardown_hook(
            lambda error: table.abort_all(
                lambda entry: type(error)(
                    error.message,
                    context={"key": entry.key, "kind": entry.kind.value},
                    cause=error.cause,
                )
            )
        )
        return _SessionSide(session=session, router=router, table=table, registry=registry)

    def _build_login(self) -> Dict[str, Any]:
        return login_frame(self._config.credentials, epoch_timestamp())

    def _register_public_handlers(self, router: MessageRouter) -> None:
        router.register("tickers", self._on_ticker)
        router.register("mark-price", self._on_mark_price)
        router.register("candle", self._on_candles)
        router.register("mark-price-candle", self._on_candles)

    def _register_private_handlers(self, router: MessageRouter) -> None:
        router.register("account", self._on_account)
        router.register("orders", self._on_orders)
        router.register("order", self._on_order_reply)
        router.register("cancel-order", self._on_cancel_reply)

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    async def __aenter__(self) -> "ExchangeConnector":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def start(self, timeout: Optional[float] = None) -> None:
        """
        Open the sessions and wait until they are READY.

        Raises:
            SessionNotReady: a session did not become READY in time
        """
        if self._started:
            return
        self._started = True

        timeout = timeout or self._config.session.connect_timeout_seconds
        sides = [side for side in (self._public, self._private) if side is not None]
        await asyncio.gather(*(side.session.start(timeout) for side in sides))
        logger.info(f"ExchangeConnector started ({len(sides)} session(s))")

    async def close(self) -> None:
        """Close sessions, abort pending requests and release the REST client."""
        if self._closed:
            return
        self._closed = True

        for side in (self._public, self._private):
            if side is None:
                continue
            await side.session.close()
            await side.router.stop()

        await self._rest.close()
        await self._notifier.drain()
        logger.info("ExchangeConnector closed")

    # --------------------------------------------------------
    # LISTENERS
    # --------------------------------------------------------

    def add_listener(self, event_type: EventType, callback: Listener) -> None:
        """Register callback(record) for pushed tickers, candles, balances or orders."""
        self._listeners[event_type].append(callback)

    def remove_listener(self, event_type: EventType, callback: Listener) -> None:
        if callback in self._listeners[event_type]:
            self._listeners[event_type].remove(callback)

    def _emit(self, event_type: EventType, record: Any) -> None:
        for callback in list(self._listeners.get(event_type, ())):
            self._notifier.call(f"{event_type.value} listener", callback, record)

    # --------------------------------------------------------
    # STATE QUERIES
    # --------------------------------------------------------

    def last_price(self, inst_id: str) -> Optional[Decimal]:
        return self._last_prices.get(inst_id)

    def latest_candle(self, inst_id: str, interval: str) -> Optional[Candlestick]:
        return self._latest_candles.get((inst_id, interval))

    def strategy_for(self, client_order_id: str) -> Optional[str]:
        return self._client_strategies.get(client_order_id)

    def stats(self) -> Dict[str, Any]:
        """Metrics summary plus per-session state."""
        sessions = {}
        for side in (self._public, self._private):
            if side is None:
                continue
            sessions[side.session.name] = {
                "state": side.session.state.value,
                "connects": side.session.connect_count,
                "reconnects": side.session.reconnect_count,
                "login_failures": side.session.login_failures,
                "queued": side.session.queued,
                "pending_requests": len(side.table),
                "subscriptions": [str(t) for t in side.registry.topics()],
                "router": dict(side.router.counters),
            }
        return {
            "mode": self._config.mode.value,
            "simulated": self._config.simulated,
            "sessions": sessions,
            "metrics": self.metrics.get_summary(),
        }

    # --------------------------------------------------------
    # HELPERS
    # --------------------------------------------------------

    def _require_public(self, operation: str) -> _SessionSide:
        if self._public is None:
            raise UnsupportedOperation(
                f"{operation} requires a WebSocket connection (mode={self._config.mode.value})",
            )
        self._require_ready(self._public)
        return self._public

    def _require_private(self, operation: str) -> _SessionSide:
        if self._private is None:
            if self._public is None:
                raise UnsupportedOperation(
                    f"{operation} requires a WebSocket connection (mode={self._config.mode.value})",
                )
            raise UnsupportedOperation(f"{operation} requires API credentials")
        self._require_ready(self._private)
        return self._private

    @staticmethod
    def _require_ready(side: _SessionSide) -> None:
        if not side.session.is_ready:
            raise SessionNotReady(side.session.name, side.session.state.value)

    async def _await_topic(
        self,
        side: _SessionSide,
        topic: Topic,
        kind: RequestKind,
        key: str,
        timeout: float,
        cancel_event: Optional[asyncio.Event],
        extra: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Hold a topic until the first matching push completes key."""
        await side.registry.subscribe(topic, extra)
        try:
            entry = side.table.join_or_allocate(kind, timeout, key=key)
            return await side.table.wait(entry, cancel_event, timeout)
        finally:
            await side.registry.unsubscribe(topic)

    async def _send(self, side: _SessionSide, key: str, frame: Dict[str, Any]) -> None:
        """Send a keyed request; a send failure fails the waiter too."""
        try:
            await side.session.send(frame)
        except ConnectorError as e:
            side.table.fail(key, e)
            raise
        if frame.get("id"):
            self._request_keys[frame["id"]] = key

    def _complete_kind(self, side: _SessionSide, key: str, kind: RequestKind, value: Any) -> bool:
        entry = side.table.get(key)
        if entry is None or entry.kind != kind:
            return False
        return side.table.complete(key, value)

    def _update_price(self, inst_id: str, price: Decimal) -> None:
        if not inst_id or price <= ZERO:
            return
        self._last_prices[inst_id] = price
        if self._price_observer is not None:
            self._notifier.call("price observer", self._price_observer.update, inst_id, price)

    def _attribute_failure(self, client_order_id: str, message: str) -> None:
        strategy_id = self._client_strategies.get(client_order_id)
        if not strategy_id or not message.strip():
            return
        logger.warning(f"Order {client_order_id} failed for strategy {strategy_id}: {message}")
        self._notifier.call(
            "strategy error", self._persistence.mark_strategy_error, strategy_id, message,
        )

    def _persist_row(self, row: Dict[str, Any]) -> None:
        self._notifier.call("order persistence", self._persistence.save_order_row, row)

    # --------------------------------------------------------
    # MARKET DATA
    # --------------------------------------------------------

    async def get_ticker(
        self,
        inst_id: str,
        timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Ticker:
        """
        Get the next ticker push for an instrument.

        In REST mode the ticker snapshot endpoint is used instead.
        """
        if self._config.mode == ConnectionMode.REST:
            return await self._rest.get_ticker(inst_id)

        side = self._require_public("get_ticker")
        return await self._await_topic(
            side,
            Topic.of("tickers", inst_id),
            RequestKind.TICKER,
            f"tickers_{inst_id}",
            timeout or self._config.request_timeout_seconds,
            cancel_event,
        )

    async def get_kline(
        self,
        inst_id: str,
        interval: str = "1m",
        limit: Optional[int] = None,
        timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[Candlestick]:
        """
        Get the candle snapshot pushed after subscribing.

        In REST mode the recent candles endpoint is used instead.
        """
        if self._config.mode == ConnectionMode.REST:
            return await self._rest.get_candles(inst_id, interval, limit)

        side = self._require_public("get_kline")
        channel = candle_channel(interval)
        candles = await self._await_topic(
            side,
            Topic.of(channel, inst_id),
            RequestKind.KLINE_SNAPSHOT,
            f"{channel}_{inst_id}_{interval}",
            timeout or self._config.kline_snapshot_timeout,
            cancel_event,
        )
        return candles[:limit] if limit else candles

    async def get_history_klines(
        self,
        inst_id: str,
        interval: str,
        start_ms: Optional[int] = None,
        end_ms: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[Candlestick]:
        """Paged candle history over REST."""
        return await self._rest.get_history_candles(inst_id, interval, start_ms, end_ms, limit)

    async def get_all_tickers(self, quote_ccy: str = "USDT") -> List[Ticker]:
        """All spot tickers quoted in quote_ccy, over REST."""
        return await self._rest.get_tickers("SPOT", quote_ccy)

    async def subscribe_kline(self, inst_id: str, interval: str = "1m") -> bool:
        side = self._require_public("subscribe_kline")
        return await side.registry.subscribe(Topic.of(candle_channel(interval), inst_id))

    async def unsubscribe_kline(self, inst_id: str, interval: str = "1m") -> bool:
        side = self._require_public("unsubscribe_kline")
        return await side.registry.unsubscribe(Topic.of(candle_channel(interval), inst_id))

    async def subscribe_ticker(self, inst_id: str) -> bool:
        side = self._require_public("subscribe_ticker")
        return await side.registry.subscribe(Topic.of("tickers", inst_id))

    async def unsubscribe_ticker(self, inst_id: str) -> bool:
        side = self._require_public("unsubscribe_ticker")
        return await side.registry.unsubscribe(Topic.of("tickers", inst_id))

    async def subscribe_mark_price(self, inst_id: str) -> bool:
        side = self._require_public("subscribe_mark_price")
        return await side.registry.subscribe(Topic.of("mark-price", inst_id))

    async def unsubscribe_mark_price(self, inst_id: str) -> bool:
        side = self._require_public("unsubscribe_mark_price")
        return await side.registry.unsubscribe(Topic.of("mark-price", inst_id))

    # --------------------------------------------------------
    # ACCOUNT
    # --------------------------------------------------------

    async def get_balance(
        self,
        simulated: Optional[bool] = None,
        use_cache: bool = False,
        timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AccountBalance:
        """
        Get the account balance.

        Args:
            simulated: Demo account (defaults to config.simulated)
            use_cache: Return the cached USDT available amount when present
        """
        simulated = self._config.simulated if simulated is None else simulated

        if use_cache:
            cached = self._cache.get(BALANCE_ASSET)
            if cached is not None:
                return AccountBalance(
                    total_equity=cached,
                    available=cached,
                    frozen=ZERO,
                    details=[AssetBalance(BALANCE_ASSET, cached, ZERO, cached, cached)],
                    simulated=simulated,
                )

        side = self._require_private("get_balance")
        key = balance_key(simulated)
        timeout = timeout or self._config.request_timeout_seconds
        topic = Topic.of("account")
        await side.registry.subscribe(topic)
        try:
            entry = side.table.join_or_allocate(RequestKind.BALANCE, timeout, key=key)
            if simulated and entry.waiters == 1:
                frame = request_frame(
                    side.table.next_id(), "request", [{"channel": "account", "simulated": "1"}],
                )
                await self._send(side, key, frame)
            return await side.table.wait(entry, cancel_event, timeout)
        finally:
            await side.registry.unsubscribe(topic)

    async def get_orders(
        self,
        inst_id: str,
        state: Optional[str] = None,
        limit: Optional[int] = None,
        timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[Order]:
        """Get the next order update batch for an instrument."""
        side = self._require_private("get_orders")

        extra: Dict[str, Any] = {"instType": "ANY"}
        if state:
            extra["state"] = state
        if limit:
            extra["limit"] = str(limit)

        return await self._await_topic(
            side,
            Topic.of("orders", inst_id),
            RequestKind.ORDERS,
            f"{inst_id}_orders",
            timeout or self._config.request_timeout_seconds,
            cancel_event,
            extra,
        )

    async def get_order(self, inst_id: str, client_order_id: str) -> Optional[Order]:
        """Read one order by client order id over REST."""
        order, _ = await self._rest.get_order(inst_id, client_order_id)
        return order

    # --------------------------------------------------------
    # TRADING
    # --------------------------------------------------------

    def _build_order_arg(self, request: OrderRequest, client_order_id: str) -> Dict[str, Any]:
        arg: Dict[str, Any] = {
            "instId": request.inst_id,
            "tdMode": "cash",
            "side": request.side.value,
            "ordType": request.type.value,
        }

        if request.amount is not None:
            arg["sz"] = request.amount
            arg["tgtCcy"] = "quote_ccy"
        else:
            arg["sz"] = request.quantity
            arg["tgtCcy"] = "base_ccy"

        if request.type == OrderType.LIMIT:
            price = request.price or self._last_prices.get(request.inst_id)
            if price is None:
                raise ValueError(f"Limit order for {request.inst_id} needs a price and none is cached")
            arg["px"] = price

        arg["clOrdId"] = client_order_id

        if request.inst_type == "SWAP" and request.leverage is not None:
            arg["lever"] = request.leverage

        if self._config.simulated:
            arg["simulated"] = "1"

        return arg

    async def place_order(
        self,
        request: OrderRequest,
        timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> PlacementResult:
        """
        Place an order over the private session.

        Resolved by the first of: venue ack, orders-channel update,
        or (once, after the settle delay) a REST read by client id.

        Raises:
            ValueError: invalid request
            VenueError: venue rejected the order
            RequestTimeout, RequestCanceled, SessionDisconnected
        """
        errors = request.validate()
        if errors:
            raise ValueError(f"Invalid order request: {'; '.join(errors)}")

        side = self._require_private("place_order")
        client_order_id = request.client_order_id or new_client_order_id()

        arg = self._build_order_arg(request, client_order_id)
        entry = side.table.allocate(
            RequestKind.ORDER,
            timeout or self._config.request_timeout_seconds,
            key=client_order_id,
            inst_id=request.inst_id,
        )
        # Held only while the placement is in flight.
        if request.strategy_id:
            self._client_strategies[client_order_id] = request.strategy_id

        frame = request_frame(side.table.next_id(), "order", [arg])
        try:
            await self._send(side, client_order_id, frame)
            self.metrics.record_order_placed()
            self._order_log.log_order(
                "place",
                client_order_id,
                inst_id=request.inst_id,
                side=request.side.value,
                order_type=request.type.value,
                size=arg["sz"],
                price=arg.get("px"),
                strategy_id=request.strategy_id,
            )

            settled = await side.table.settle(entry, self._config.settle_delay_seconds, cancel_event)
            if not settled:
                await self._reconcile(side, request.inst_id, client_order_id)

            result = await side.table.wait(entry, cancel_event)
        except VenueError as e:
            self._order_log.log_order(
                "place", client_order_id,
                inst_id=request.inst_id,
                strategy_id=request.strategy_id,
                error_code=e.code,
                error_message=e.venue_message,
            )
            raise
        finally:
            self._forget_request(frame["id"])
            self._client_strategies.pop(client_order_id, None)

        self.metrics.record_order_resolved(result.resolved_by)
        self._order_log.log_order(
            "resolved",
            client_order_id,
            order_id=result.order.order_id if result.order else None,
            inst_id=request.inst_id,
            status=result.order.status if result.order else None,
            strategy_id=request.strategy_id,
            resolved_by=result.resolved_by,
        )
        return result

    async def _reconcile(self, side: _SessionSide, inst_id: str, client_order_id: str) -> None:
        """The single REST read-by-client-id for a placement."""
        logger.info(f"No order response for {client_order_id} after settle delay, reading over REST")
        try:
            order, raw = await self._rest.get_order(inst_id, client_order_id)
        except (RestError, MalformedFrame) as e:
            logger.warning(f"REST reconciliation for {client_order_id} failed: {e}")
            return

        if order is None:
            logger.info(f"Order {client_order_id} not known over REST yet, waiting for the stream")
            return

        if side.table.complete(client_order_id, PlacementResult(client_order_id, order, "rest", raw)):
            self._persist_row(raw)

    def _forget_request(self, request_id: str) -> None:
        self._request_keys.pop(request_id, None)

    async def cancel_order(
        self,
        inst_id: str,
        order_id: str,
        timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> bool:
        """
        Cancel an order by venue order id.

        Resolves True on the order update with state canceled.

        Raises:
            VenueError: venue rejected the cancel
        """
        side = self._require_private("cancel_order")
        topic = Topic.of("orders", inst_id)
        await side.registry.subscribe(topic, {"instType": "ANY"})

        frame = request_frame(
            side.table.next_id(), "cancel-order", [{"instId": inst_id, "ordId": order_id}],
        )
        try:
            entry = side.table.allocate(
                RequestKind.CANCEL,
                timeout or self._config.request_timeout_seconds,
                key=order_id,
                inst_id=inst_id,
            )
            await self._send(side, order_id, frame)
            self._order_log.log_order("cancel", "", order_id=order_id, inst_id=inst_id)
            return await side.table.wait(entry, cancel_event)
        finally:
            self._forget_request(frame["id"])
            await side.registry.unsubscribe(topic)

    # --------------------------------------------------------
    # PUBLIC HANDLERS
    # --------------------------------------------------------

    def _on_ticker(self, frame: Frame) -> None:
        for item in frame.data:
            ticker = parse_ticker(item, frame.inst_id, self._tz)
            if self._config.last_price_source.uses_tickers:
                self._update_price(ticker.inst_id, ticker.last)
            self._complete_kind(self._public, f"tickers_{ticker.inst_id}", RequestKind.TICKER, ticker)
            self._emit(EventType.TICKER, ticker)

    def _on_mark_price(self, frame: Frame) -> None:
        for item in frame.data:
            ticker = parse_mark_price(item, frame.inst_id, self._tz)
            if self._config.last_price_source.uses_tickers:
                self._update_price(ticker.inst_id, ticker.last)
            self._emit(EventType.TICKER, ticker)

    def _on_candles(self, frame: Frame) -> None:
        inst_id = frame.inst_id or ""
        interval = frame.interval
        candles = [parse_candle_row(row, inst_id, interval, self._tz) for row in frame.data]

        for candle in candles:
            self._latest_candles[(inst_id, interval)] = candle
            if self._config.last_price_source.uses_candles:
                self._update_price(inst_id, candle.close)
            if self._strategy_engine is not None:
                self._notifier.call(
                    "strategy engine", self._strategy_engine.on_candle, inst_id, interval, candle,
                )
            self._emit(EventType.CANDLE, candle)

        self._complete_kind(
            self._public,
            f"{frame.channel}_{inst_id}_{interval}",
            RequestKind.KLINE_SNAPSHOT,
            candles,
        )

    # --------------------------------------------------------
    # PRIVATE HANDLERS
    # --------------------------------------------------------

    def _on_account(self, frame: Frame) -> None:
        flag = frame.arg.get("simulated")
        if flag is not None:
            simulated = str(flag) == "1"
            keys = [balance_key(simulated)]
        else:
            # Untagged pushes complete every pending balance read.
            simulated = self._config.simulated
            keys = [e.key for e in self._private.table.pending(RequestKind.BALANCE)]

        for item in frame.data:
            balance = parse_account_balance(item, simulated, self._tz)
            for detail in balance.details:
                self._cache.put(detail.asset, detail.available, self._config.balance_cache_ttl_seconds)
            for key in keys:
                self._complete_kind(
                    self._private, key, RequestKind.BALANCE,
                    replace(balance, simulated=key == balance_key(True)),
                )
            self._emit(EventType.ACCOUNT, balance)

    def _on_orders(self, frame: Frame) -> None:
        orders = []
        for item in frame.data:
            order = parse_order(item, self._tz)
            orders.append(order)

            if order.client_order_id:
                placed = PlacementResult(order.client_order_id, order, "stream", item)
                if self._complete_kind(self._private, order.client_order_id, RequestKind.ORDER, placed):
                    self._persist_row(item)

            if order.status == OrderStatus.CANCELED.value:
                self._complete_kind(self._private, order.order_id, RequestKind.CANCEL, True)

            self._emit(EventType.ORDER, order)

        if frame.inst_id:
            self._complete_kind(self._private, f"{frame.inst_id}_orders", RequestKind.ORDERS, orders)

    def _fail_unmatched_reply(self, frame: Frame) -> None:
        """A rejected op reply with no data rows: fail by request id."""
        key = self._request_keys.pop(frame.id or "", None)
        if key is None or frame.is_success:
            return
        self._attribute_failure(key, frame.msg or "")
        self._private.table.fail(key, VenueError(frame.code or "", frame.msg or ""))

    def _on_order_reply(self, frame: Frame) -> None:
        if not frame.data:
            self._fail_unmatched_reply(frame)
            return

        for item in frame.data:
            order = parse_order(item, self._tz)
            client_order_id = order.client_order_id
            if order.is_rejected:
                self.metrics.record_order_rejected()
                self._attribute_failure(client_order_id, order.venue_message)
                self._private.table.fail(
                    client_order_id,
                    VenueError(
                        order.venue_code,
                        order.venue_message,
                        context={"client_order_id": client_order_id},
                    ),
                )
                continue

            placed = PlacementResult(client_order_id, order, "ack", item)
            if self._complete_kind(self._private, client_order_id, RequestKind.ORDER, placed):
                self._persist_row(item)

    def _on_cancel_reply(self, frame: Frame) -> None:
        if not frame.data:
            self._fail_unmatched_reply(frame)
            return

        for item in frame.data:
            code = str(item.get("sCode") or "0")
            if code != "0":
                self._private.table.fail(
                    item.get("ordId") or "",
                    VenueError(code, item.get("sMsg") or "", context={"order_id": item.get("ordId")}),
                )

    # --------------------------------------------------------
    # EVENTS
    # --------------------------------------------------------

    def _on_event(self, frame: Frame) -> None:
        if frame.event == "error":
            logger.warning(f"Venue error event: code={frame.code} msg={frame.msg}")
        elif frame.event in ("subscribe", "unsubscribe"):
            logger.debug(f"{frame.event} confirmed: {frame.arg}")
        else:
            logger.debug(f"Event {frame.event}: {frame.code} {frame.msg}")
