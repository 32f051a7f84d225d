"""
Frame Codec Tests.

============================================================
PURPOSE
============================================================
Decoding of pushes, events and op replies, malformed input,
and outbound encoding.

============================================================
"""

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from exchange_connector.codec import (
    Frame,
    candle_channel,
    datetime_to_ms,
    decode_frame,
    encode_frame,
    is_pong,
    ms_to_datetime,
    request_frame,
    split_channel,
    subscription_frame,
)
from exchange_connector.errors import MalformedFrame


# ============================================================
# CHANNEL HELPERS
# ============================================================

class TestSplitChannel:
    """Tests for channel prefix / interval splitting."""

    def test_candle_channel(self):
        assert split_channel("candle1H") == ("candle", "1H")

    def test_mark_price_candle_is_not_plain_candle(self):
        assert split_channel("mark-price-candle1m") == ("mark-price-candle", "1m")

    def test_utc_interval(self):
        assert split_channel("candle1Dutc") == ("candle", "1Dutc")

    def test_plain_channel(self):
        assert split_channel("tickers") == ("tickers", "")
        assert split_channel("mark-price") == ("mark-price", "")

    def test_unknown_suffix_is_not_an_interval(self):
        assert split_channel("candle7X") == ("candle7X", "")

    def test_candle_channel_builder(self):
        assert candle_channel("5m") == "candle5m"
        assert candle_channel("1m", "mark-price-candle") == "mark-price-candle1m"

    def test_candle_channel_rejects_unknown_interval(self):
        with pytest.raises(ValueError, match="Unsupported candle interval"):
            candle_channel("7m")

    def test_pong(self):
        assert is_pong("pong")
        assert not is_pong('{"event":"pong"}')


class TestTimestamps:
    """Tests for millisecond timestamp conversion."""

    def test_ms_to_datetime_utc(self):
        value = ms_to_datetime("1700000000123")

        assert value == datetime(2023, 11, 14, 22, 13, 20, 123000, tzinfo=timezone.utc)

    def test_ms_to_datetime_offset(self):
        tz = timezone(timedelta(hours=7))
        value = ms_to_datetime(1700000000000, tz)

        assert value.utcoffset() == timedelta(hours=7)
        assert value.hour == 5

    def test_empty_is_none(self):
        assert ms_to_datetime("") is None
        assert ms_to_datetime(None) is None

    def test_invalid_raises(self):
        with pytest.raises(MalformedFrame):
            ms_to_datetime("yesterday")

    def test_round_trip_preserves_millis(self):
        value = ms_to_datetime("1700000000999")
        assert datetime_to_ms(value) == 1700000000999


# ============================================================
# DECODING
# ============================================================

class TestDecodeFrame:
    """Tests for decode_frame."""

    def test_ticker_push(self):
        frame = decode_frame(json.dumps({
            "arg": {"channel": "tickers", "instId": "BTC-USDT"},
            "data": [{"last": "100"}],
        }))

        assert frame.is_push
        assert frame.channel == "tickers"
        assert frame.channel_tag == "tickers"
        assert frame.inst_id == "BTC-USDT"
        assert not frame.rows_are_arrays

    def test_candle_push_rows(self):
        frame = decode_frame(json.dumps({
            "arg": {"channel": "candle1m", "instId": "ETH-USDT"},
            "data": [["1700000000000", "1", "2", "0.5", "1.5", "10", "15", "15", "0"]],
        }))

        assert frame.rows_are_arrays
        assert frame.interval == "1m"

    def test_event(self):
        frame = decode_frame('{"event":"subscribe","arg":{"channel":"tickers","instId":"BTC-USDT"},"connId":"a1"}')

        assert frame.is_event
        assert not frame.is_push
        assert frame.conn_id == "a1"

    def test_login_event_code(self):
        frame = decode_frame('{"event":"login","code":"0","msg":""}')

        assert frame.event == "login"
        assert frame.is_success

    def test_op_reply(self):
        frame = decode_frame(json.dumps({
            "id": 7,
            "op": "order",
            "code": "1",
            "msg": "",
            "data": [{"clOrdId": "abc", "sCode": "51008", "sMsg": "Insufficient balance"}],
        }))

        assert frame.is_op_reply
        assert frame.channel_tag == "order"
        assert frame.id == "7"
        assert not frame.is_success

    def test_bytes_input(self):
        frame = decode_frame(b'{"event":"error","code":"60012","msg":"Invalid request"}')
        assert frame.code == "60012"

    def test_bare_numbers_decode_as_decimal(self):
        frame = decode_frame('{"arg":{"channel":"tickers","instId":"BTC-USDT"},"data":[{"last":0.1,"vol24h":3}]}')

        assert frame.data[0]["last"] == Decimal("0.1")
        assert isinstance(frame.data[0]["last"], Decimal)
        assert frame.data[0]["vol24h"] == 3

    @pytest.mark.parametrize("text", [
        "not json",
        "[1, 2, 3]",
        '{"foo": "bar"}',
        '{"arg": {"instId": "BTC-USDT"}, "data": [{}]}',
        '{"arg": {"channel": "tickers"}, "data": {"last": "1"}}',
        '{"arg": {"channel": "candle1m"}, "data": [["1"], {"a": 1}]}',
        '{"arg": {"channel": "tickers"}, "data": []}',
    ])
    def test_malformed(self, text):
        with pytest.raises(MalformedFrame):
            decode_frame(text)

    def test_op_reply_without_data_is_valid(self):
        frame = decode_frame('{"id":"3","op":"order","code":"60013","msg":"Invalid args","data":[]}')

        assert frame.data == []
        assert frame.code == "60013"


# ============================================================
# ENCODING
# ============================================================

class TestEncodeFrame:
    """Tests for outbound encoding."""

    def test_compact_json(self):
        text = encode_frame(subscription_frame("subscribe", [{"channel": "tickers", "instId": "BTC-USDT"}]))
        assert text == '{"op":"subscribe","args":[{"channel":"tickers","instId":"BTC-USDT"}]}'

    def test_decimal_as_plain_string(self):
        text = encode_frame(request_frame("1", "order", [{"sz": Decimal("0.00001"), "px": Decimal("1E+2")}]))
        payload = json.loads(text)

        assert payload["args"][0]["sz"] == "0.00001"
        assert payload["args"][0]["px"] == "100"
        assert payload["id"] == "1"

    def test_subscription_frame_rejects_other_ops(self):
        with pytest.raises(ValueError):
            subscription_frame("order", [])

    def test_unencodable_value(self):
        with pytest.raises(TypeError):
            encode_frame({"op": "x", "args": [object()]})

    def test_frame_defaults(self):
        frame = Frame(op="order")
        assert frame.arg == {}
        assert frame.data == []
        assert frame.is_success
