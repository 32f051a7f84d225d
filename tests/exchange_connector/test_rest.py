"""
REST Side Channel Tests.

============================================================
PURPOSE
============================================================
Request parameters, response handling, and reconciliation
reads. No network: _request or the response is faked.

============================================================
"""

import json
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from exchange_connector.config import Credentials
from exchange_connector.errors import ErrorCategory, RestError
from exchange_connector.metrics import ConnectorMetrics
from exchange_connector.rest import (
    HISTORY_CANDLES_PATH,
    ORDER_PATH,
    TICKERS_PATH,
    OKXRestClient,
)


class FakeResponse:
    def __init__(self, status, body):
        self.status = status
        self._body = body

    async def json(self, content_type=None, loads=json.loads):
        if isinstance(self._body, dict):
            return self._body
        return loads(self._body)

    async def text(self):
        return self._body if isinstance(self._body, str) else ""


def make_client(**kwargs) -> OKXRestClient:
    return OKXRestClient(credentials=Credentials("k", "s", "p"), **kwargs)


class TestHistory:
    """Tests for history candle parameters."""

    @pytest.mark.asyncio
    async def test_bounds_widened_and_limit_capped(self):
        client = make_client()
        client._request = AsyncMock(return_value=[
            ["1700000060000", "2", "3", "1", "2.5", "10", "25", "25", "1"],
        ])

        candles = await client.get_history_candles("BTC-USDT", "1m", 1700000000000, 1700000120000, 500)

        method, path, params = client._request.await_args.args
        assert (method, path) == ("GET", HISTORY_CANDLES_PATH)
        assert params["before"] == 1699999999999
        assert params["after"] == 1700000120001
        assert params["limit"] == 300
        assert candles[0].close == Decimal("2.5")

    @pytest.mark.asyncio
    async def test_open_bounds(self):
        client = make_client()
        client._request = AsyncMock(return_value=[])

        await client.get_history_candles("BTC-USDT", "1H")

        params = client._request.await_args.args[2]
        assert params["before"] is None
        assert params["after"] is None
        assert params["limit"] is None


class TestTickers:
    """Tests for ticker snapshots."""

    @pytest.mark.asyncio
    async def test_quote_filter(self):
        client = make_client()
        client._request = AsyncMock(return_value=[
            {"instId": "BTC-USDT", "last": "1", "open24h": "1"},
            {"instId": "BTC-USDC", "last": "1", "open24h": "1"},
        ])

        tickers = await client.get_tickers("SPOT", "USDT")

        assert [t.inst_id for t in tickers] == ["BTC-USDT"]
        assert client._request.await_args.args[1] == TICKERS_PATH

    @pytest.mark.asyncio
    async def test_empty_ticker(self):
        client = make_client()
        client._request = AsyncMock(return_value=[])

        with pytest.raises(RestError):
            await client.get_ticker("NOPE-USDT")


class TestGetOrder:
    """Tests for reconciliation reads."""

    @pytest.mark.asyncio
    async def test_found(self):
        client = make_client()
        row = {"instId": "BTC-USDT", "clOrdId": "c1", "ordId": "o1", "state": "filled"}
        client._request = AsyncMock(return_value=[row])

        order, raw = await client.get_order("BTC-USDT", "c1")

        assert order.status == "FILLED"
        assert raw == row
        assert client._request.await_args.args[1] == ORDER_PATH
        assert client._request.await_args.kwargs == {"signed": True}

    @pytest.mark.asyncio
    async def test_not_found(self):
        client = make_client()
        client._request = AsyncMock(side_effect=RestError("51603", "Order does not exist"))

        assert await client.get_order("BTC-USDT", "c1") == (None, None)

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self):
        client = make_client()
        client._request = AsyncMock(side_effect=RestError("50011", "Too many requests"))

        with pytest.raises(RestError) as exc_info:
            await client.get_order("BTC-USDT", "c1")
        assert exc_info.value.category == ErrorCategory.RATE_LIMIT

    @pytest.mark.asyncio
    async def test_signed_request_needs_credentials(self):
        client = OKXRestClient()

        with pytest.raises(RestError) as exc_info:
            await client.get_order("BTC-USDT", "c1")

        assert exc_info.value.code == "AUTH"
        await client.close()


class TestHandleResponse:
    """Tests for response decoding."""

    @pytest.mark.asyncio
    async def test_success(self):
        metrics = ConnectorMetrics()
        client = make_client(metrics=metrics)

        data = await client._handle_response(
            FakeResponse(200, {"code": "0", "msg": "", "data": [{"a": 1}]}), "r1", ORDER_PATH, 0.0,
        )

        assert data == [{"a": 1}]
        assert ORDER_PATH in metrics.get_summary()["rest"]["latency"]

    @pytest.mark.asyncio
    async def test_bare_numbers_decode_as_decimal(self):
        client = make_client()

        data = await client._handle_response(
            FakeResponse(200, '{"code":"0","msg":"","data":[{"last":0.1}]}'), "r1", TICKERS_PATH, 0.0,
        )

        assert data[0]["last"] == Decimal("0.1")
        assert isinstance(data[0]["last"], Decimal)

    @pytest.mark.asyncio
    async def test_venue_error(self):
        client = make_client()

        with pytest.raises(RestError) as exc_info:
            await client._handle_response(
                FakeResponse(200, {"code": "51001", "msg": "Instrument ID does not exist"}), "r1", ORDER_PATH, 0.0,
            )

        assert exc_info.value.code == "51001"
        assert exc_info.value.path == ORDER_PATH

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        client = make_client()

        with pytest.raises(RestError) as exc_info:
            await client._handle_response(FakeResponse(502, "Bad Gateway"), "r1", ORDER_PATH, 0.0)

        assert exc_info.value.code == "502"
        assert exc_info.value.is_retryable
