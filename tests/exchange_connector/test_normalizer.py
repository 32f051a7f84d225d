"""
Normalizer Tests.

============================================================
PURPOSE
============================================================
Venue payload -> domain record mapping.

TEST PRINCIPLES:
- Monetary values stay Decimal end to end
- Edge policies: zero open, fee currency, confirm flag
- Deterministic output for identical input

============================================================
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from exchange_connector.errors import MalformedFrame
from exchange_connector.normalizer import (
    candle_close_time,
    fee_in_traded_asset,
    map_order_status,
    parse_account_balance,
    parse_candle_row,
    parse_mark_price,
    parse_order,
    parse_ticker,
    percent_change,
    split_instrument,
    to_decimal,
)


TICKER_ITEM = {
    "last": "100",
    "open24h": "80",
    "bidPx": "99",
    "askPx": "101",
    "high24h": "110",
    "low24h": "70",
    "vol24h": "5",
    "volCcy24h": "500",
    "ts": "1700000000000",
}


# ============================================================
# PRIMITIVES
# ============================================================

class TestPrimitives:
    """Tests for decimal and instrument helpers."""

    def test_to_decimal(self):
        assert to_decimal("1.10") == Decimal("1.10")
        assert to_decimal("") == Decimal("0")
        assert to_decimal(None, Decimal("7")) == Decimal("7")
        assert to_decimal(0.1) == Decimal("0.1")

    def test_to_decimal_invalid(self):
        with pytest.raises(MalformedFrame):
            to_decimal("abc")

    def test_split_instrument(self):
        assert split_instrument("BTC-USDT") == ("BTC", "USDT")
        assert split_instrument("ETH-USDT-SWAP") == ("ETH", "USDT")
        assert split_instrument("") == (None, None)


# ============================================================
# TICKERS
# ============================================================

class TestParseTicker:
    """Tests for ticker parsing."""

    def test_ticker_fields(self):
        ticker = parse_ticker(TICKER_ITEM, "BTC-USDT")

        assert ticker.inst_id == "BTC-USDT"
        assert ticker.last == Decimal("100")
        assert ticker.change == Decimal("20")
        assert ticker.percent == Decimal("25.0000")
        assert ticker.bid == Decimal("99")
        assert ticker.ask == Decimal("101")
        assert ticker.high_24h == Decimal("110")
        assert ticker.low_24h == Decimal("70")
        assert ticker.base_volume == Decimal("5")
        assert ticker.quote_volume == Decimal("500")
        assert ticker.timestamp == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)

    def test_zero_open_guard(self):
        ticker = parse_ticker(dict(TICKER_ITEM, open24h="0"), "BTC-USDT")

        assert ticker.percent == Decimal("0")
        assert ticker.change == Decimal("0")

    def test_percent_rounding(self):
        # 1/3 -> 0.3333 -> 33.33
        assert percent_change(Decimal("4"), Decimal("3")) == Decimal("33.33")

    def test_negative_change(self):
        ticker = parse_ticker(dict(TICKER_ITEM, last="60"), "BTC-USDT")

        assert ticker.change == Decimal("-20")
        assert ticker.percent == Decimal("-25")

    def test_inst_id_from_payload_wins(self):
        ticker = parse_ticker(dict(TICKER_ITEM, instId="ETH-USDT"), "BTC-USDT")
        assert ticker.inst_id == "ETH-USDT"

    def test_mark_price(self):
        ticker = parse_mark_price({"instId": "BTC-USDT-SWAP", "markPx": "42000.5", "ts": "1700000000000"})

        assert ticker.last == Decimal("42000.5")
        assert ticker.source == "mark-price"
        assert ticker.percent == Decimal("0")


# ============================================================
# CANDLES
# ============================================================

class TestCandles:
    """Tests for candle rows and close times."""

    def test_trade_candle_row(self):
        candle = parse_candle_row(
            ["1700000000000", "100", "110", "90", "105", "12", "1260", "1260.5", "1"],
            "BTC-USDT",
            "1H",
        )

        assert candle.open == Decimal("100")
        assert candle.high == Decimal("110")
        assert candle.low == Decimal("90")
        assert candle.close == Decimal("105")
        assert candle.base_volume == Decimal("12")
        assert candle.quote_volume == Decimal("1260.5")
        assert candle.confirmed is True
        assert candle.close_time - candle.open_time == timedelta(hours=1)

    def test_unconfirmed_flag_from_last_field(self):
        candle = parse_candle_row(
            ["1700000000000", "1", "1", "1", "1", "0", "0", "0", "0"], "BTC-USDT", "1m",
        )
        assert candle.confirmed is False

    def test_mark_candle_row(self):
        candle = parse_candle_row(["1700000000000", "1", "2", "0.5", "1.5", "1"], "BTC-USDT", "5m")

        assert candle.base_volume == Decimal("0")
        assert candle.quote_volume == Decimal("0")
        assert candle.confirmed is True

    def test_history_row_without_confirm(self):
        candle = parse_candle_row(["1700000000000", "1", "2", "0.5", "1.5", "3", "4.5"], "BTC-USDT", "1m")

        assert candle.confirmed is True
        assert candle.quote_volume == Decimal("4.5")

    def test_short_row_is_malformed(self):
        with pytest.raises(MalformedFrame):
            parse_candle_row(["1700000000000", "1", "2"], "BTC-USDT", "1m")

    @pytest.mark.parametrize("interval,delta", [
        ("1s", timedelta(seconds=1)),
        ("15m", timedelta(minutes=15)),
        ("4H", timedelta(hours=4)),
        ("1D", timedelta(days=1)),
        ("1Dutc", timedelta(days=1)),
        ("1W", timedelta(weeks=1)),
    ])
    def test_close_time_units(self, interval, delta):
        open_time = datetime(2024, 3, 1, tzinfo=timezone.utc)
        assert candle_close_time(open_time, interval) == open_time + delta

    def test_close_time_calendar_month(self):
        open_time = datetime(2024, 1, 31, tzinfo=timezone.utc)
        assert candle_close_time(open_time, "1M") == datetime(2024, 2, 29, tzinfo=timezone.utc)

    def test_close_time_unknown_unit_defaults_to_minute(self):
        open_time = datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert candle_close_time(open_time, "weird") == open_time + timedelta(minutes=1)


# ============================================================
# ACCOUNT
# ============================================================

class TestAccountBalance:
    """Tests for account roll-up."""

    def test_roll_up(self):
        balance = parse_account_balance({
            "totalEq": "1000",
            "uTime": "1700000000000",
            "details": [
                {"ccy": "USDT", "availBal": "500", "eq": "600", "eqUsd": "600", "frozenBal": "100"},
                {"ccy": "BTC", "availBal": "0.01", "eq": "0.01", "eqUsd": "400", "frozenBal": "0"},
                {"ccy": "ETH", "availBal": "0", "eq": "0", "eqUsd": "0"},
            ],
        }, simulated=True)

        # 500/600 -> 0.83333333 * 600 + 1 * 400
        assert balance.available == Decimal("899.99999800")
        assert balance.frozen == Decimal("100.00000200")
        assert balance.total_equity == Decimal("1000")
        assert balance.simulated is True
        assert len(balance.details) == 3
        assert balance.get_asset("USDT").frozen == Decimal("100")
        assert balance.timestamp == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)


# ============================================================
# ORDERS
# ============================================================

class TestParseOrder:
    """Tests for order parsing and fee normalization."""

    def test_fee_in_base_asset(self):
        order = parse_order({
            "side": "buy",
            "sz": "2",
            "accFillSz": "0.003112",
            "fillPx": "642.5",
            "fee": "-0.000003112",
            "feeCcy": "BNB",
        })

        assert order.executed_quantity == Decimal("0.003108888")
        assert order.fee == Decimal("0.00199946")
        assert order.side == "BUY"

    def test_fee_in_quote(self):
        order = parse_order({
            "side": "sell",
            "accFillSz": "0.00004324",
            "fillPx": "100000",
            "fee": "-0.004593758",
            "feeCcy": "USDT",
        })

        assert order.fee == Decimal("0.004593758")
        assert order.executed_quantity == Decimal("0.000043194063")
        assert order.cumulative_quote_quantity == Decimal("4.3194063")

    def test_fee_in_base_with_inst_id(self):
        order = parse_order({
            "instId": "BTC-USDT",
            "accFillSz": "1",
            "fillPx": "10",
            "fee": "-0.001",
            "feeCcy": "BTC",
        })

        assert order.executed_quantity == Decimal("0.999")
        assert order.fee == Decimal("0.010")

    def test_no_fill_price(self):
        order = parse_order({"accFillSz": "0", "fillPx": "", "fee": "0", "feeCcy": "USDT", "state": "live"})

        assert order.executed_quantity == Decimal("0")
        assert order.status == "NEW"
        assert not order.is_terminal

    def test_ack_fields(self):
        order = parse_order({"clOrdId": "c1", "ordId": "o1", "sCode": "51008", "sMsg": "Insufficient balance"})

        assert order.client_order_id == "c1"
        assert order.order_id == "o1"
        assert order.is_rejected
        assert order.venue_message == "Insufficient balance"

    def test_status_mapping(self):
        assert map_order_status("filled") == "FILLED"
        assert map_order_status("partially_filled") == "PARTIALLY_FILLED"
        assert map_order_status("canceled") == "CANCELED"
        assert map_order_status("mmp_canceled") == "MMP_CANCELED"
        assert map_order_status(None) == ""

    def test_fee_asset_inference(self):
        assert fee_in_traded_asset("BTC", "BTC-USDT")
        assert not fee_in_traded_asset("USDT", "BTC-USDT")
        assert fee_in_traded_asset("BNB", None)
        assert not fee_in_traded_asset("USDT", None)
        assert not fee_in_traded_asset("", None)
