"""
Exchange Connector - REST Side Channel.

============================================================
PURPOSE
============================================================
Bounded REST access to the OKX v5 API, used for:
- Paged candle history (unauthenticated)
- Single-order reconciliation by client order id (signed)
- Ticker snapshots when running in REST-only mode

============================================================
API DOCUMENTATION
============================================================
https://www.okx.com/docs-v5/

============================================================
"""

import asyncio
import json
import logging
import time
from datetime import timezone
from decimal import Decimal
from functools import partial
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import aiohttp

from .config import Credentials, OKX_REST_URL
from .errors import RestError
from .logging_utils import ConnectorLogger
from .metrics import ConnectorMetrics
from .models import Candlestick, Order, Ticker
from .normalizer import parse_candle_row, parse_order, parse_ticker
from .signer import iso_timestamp, rest_headers


logger = logging.getLogger(__name__)


# ============================================================
# CONSTANTS
# ============================================================

HISTORY_CANDLES_PATH = "/api/v5/market/history-candles"
CANDLES_PATH = "/api/v5/market/candles"
TICKER_PATH = "/api/v5/market/ticker"
TICKERS_PATH = "/api/v5/market/tickers"
ORDER_PATH = "/api/v5/trade/order"

MAX_HISTORY_LIMIT = 300

# Venue codes meaning "no such order"
ORDER_NOT_FOUND_CODES = {"51603"}

# Numbers in bodies decode to Decimal, never float
_loads = partial(json.loads, parse_float=Decimal)


class OKXRestClient:
    """
    Minimal OKX REST client.

    Signed requests carry OK-ACCESS-* headers and, in simulated
    mode, x-simulated-trading: 1.
    """

    def __init__(
        self,
        base_url: str = OKX_REST_URL,
        credentials: Optional[Credentials] = None,
        simulated: bool = False,
        timeout: float = 10.0,
        metrics: Optional[ConnectorMetrics] = None,
        tz: timezone = timezone.utc,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._credentials = credentials or Credentials()
        self._simulated = simulated
        self._timeout = timeout
        self._metrics = metrics
        self._tz = tz
        self._session = session
        self._owns_session = session is None
        self._logger = ConnectorLogger("rest")

    async def __aenter__(self) -> "OKXRestClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            )
            self._owns_session = True
        return self._session

    # --------------------------------------------------------
    # REQUEST HANDLING
    # --------------------------------------------------------

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> List[Any]:
        """
        Make a request and return the data array.

        Raises:
            RestError: network failure, timeout, or non-zero code
        """
        session = self._ensure_session()

        params = {k: v for k, v in (params or {}).items() if v is not None}
        path = f"{endpoint}?{urlencode(params)}" if params else endpoint
        url = f"{self._base_url}{path}"

        headers = {"Content-Type": "application/json"}
        if signed:
            if not self._credentials.is_complete:
                raise RestError("AUTH", "API credentials not configured", path=endpoint)
            headers = rest_headers(
                self._credentials, method, path, "", iso_timestamp(), self._simulated,
            )
        elif self._simulated:
            headers["x-simulated-trading"] = "1"

        operation = endpoint.split("/")[-1]
        request_id = self._logger.log_request(
            operation=operation,
            method=method,
            endpoint=path,
            headers=headers,
        )

        start_time = time.time()
        try:
            async with session.request(method, url, headers=headers) as resp:
                return await self._handle_response(resp, request_id, endpoint, start_time)
        except aiohttp.ClientError as e:
            self._record(endpoint, start_time, False, "NETWORK")
            raise RestError("NETWORK", str(e), path=endpoint, cause=e)
        except asyncio.TimeoutError as e:
            self._record(endpoint, start_time, False, "TIMEOUT")
            raise RestError("TIMEOUT", f"no response within {self._timeout}s", path=endpoint, cause=e)

    async def _handle_response(
        self,
        response: aiohttp.ClientResponse,
        request_id: str,
        endpoint: str,
        start_time: float,
    ) -> List[Any]:
        latency_ms = (time.time() - start_time) * 1000

        try:
            data = await response.json(content_type=None, loads=_loads)
        except ValueError:
            data = {"code": str(response.status), "msg": (await response.text())[:200]}

        if not isinstance(data, dict):
            data = {"code": str(response.status), "msg": "unexpected response body"}

        # OKX returns code "0" for success
        code = str(data.get("code", "0"))
        msg = data.get("msg", "")
        success = code == "0" and response.status < 400

        self._logger.log_response(
            operation=endpoint.split("/")[-1],
            request_id=request_id,
            status_code=response.status,
            latency_ms=latency_ms,
            success=success,
            error_code=None if success else code,
            error_message=None if success else msg,
        )
        if self._metrics is not None:
            self._metrics.record_rest(endpoint, latency_ms, success, None if success else code)

        if not success:
            raise RestError(code, msg, path=endpoint, http_status=response.status)

        return data.get("data") or []

    def _record(self, endpoint: str, start_time: float, success: bool, code: str) -> None:
        if self._metrics is not None:
            self._metrics.record_rest(endpoint, (time.time() - start_time) * 1000, success, code)

    # --------------------------------------------------------
    # MARKET DATA
    # --------------------------------------------------------

    async def get_history_candles(
        self,
        inst_id: str,
        interval: str,
        start_ms: Optional[int] = None,
        end_ms: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[Candlestick]:
        """
        Fetch historical candles between start_ms and end_ms inclusive.

        The venue treats before/after as open bounds, so both are
        widened by one millisecond.
        """
        params = {
            "instId": inst_id,
            "bar": interval,
            "before": start_ms - 1 if start_ms is not None else None,
            "after": end_ms + 1 if end_ms is not None else None,
            "limit": min(limit, MAX_HISTORY_LIMIT) if limit else None,
        }
        rows = await self._request("GET", HISTORY_CANDLES_PATH, params)
        return [parse_candle_row(row, inst_id, interval, self._tz) for row in rows]

    async def get_candles(self, inst_id: str, interval: str, limit: Optional[int] = None) -> List[Candlestick]:
        """Most recent candles, newest first."""
        params = {
            "instId": inst_id,
            "bar": interval,
            "limit": min(limit, MAX_HISTORY_LIMIT) if limit else None,
        }
        rows = await self._request("GET", CANDLES_PATH, params)
        return [parse_candle_row(row, inst_id, interval, self._tz) for row in rows]

    async def get_ticker(self, inst_id: str) -> Ticker:
        data = await self._request("GET", TICKER_PATH, {"instId": inst_id})
        if not data:
            raise RestError("EMPTY", f"no ticker for {inst_id}", path=TICKER_PATH)
        return parse_ticker(data[0], inst_id, self._tz)

    async def get_tickers(self, inst_type: str = "SPOT", quote_ccy: Optional[str] = "USDT") -> List[Ticker]:
        """All tickers of an instrument type, optionally filtered by quote currency."""
        data = await self._request("GET", TICKERS_PATH, {"instType": inst_type})
        tickers = [parse_ticker(item, tz=self._tz) for item in data]
        if quote_ccy:
            suffix = f"-{quote_ccy}"
            tickers = [t for t in tickers if t.inst_id.endswith(suffix)]
        return tickers

    # --------------------------------------------------------
    # TRADING
    # --------------------------------------------------------

    async def get_order(
        self,
        inst_id: str,
        client_order_id: str,
    ) -> Tuple[Optional[Order], Optional[Dict[str, Any]]]:
        """
        Read one order by client order id.

        Returns:
            (order, raw row), or (None, None) if the venue does not
            know the order yet
        """
        try:
            data = await self._request(
                "GET",
                ORDER_PATH,
                {"instId": inst_id, "clOrdId": client_order_id},
                signed=True,
            )
        except RestError as e:
            if e.code in ORDER_NOT_FOUND_CODES:
                return None, None
            raise

        if not data:
            return None, None
        return parse_order(data[0], self._tz), data[0]
