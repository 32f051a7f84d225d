"""
Exchange Connector - Frame Codec.

============================================================
PURPOSE
============================================================
Encode/decode OKX v5 WebSocket text frames.

Wire form: JSON object with fields op|event|arg|data|id|code|msg.

- Push:      {"arg": {"channel", "instId", ...}, "data": [...]}
- Event:     {"event": "subscribe|unsubscribe|login|error", ...}
- Op reply:  {"id", "op": "order|cancel-order", "code", "msg", "data"}

Candlestick pushes carry data as an array of arrays; every
other channel carries an array of objects.

============================================================
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from .errors import MalformedFrame


# Fixed set of candle bar sizes understood by the venue.
CANDLE_INTERVALS = frozenset([
    "1s", "1m", "3m", "5m", "15m", "30m",
    "1H", "2H", "4H", "6H", "12H",
    "1D", "2D", "3D", "1W", "1M", "3M",
    "6Hutc", "12Hutc", "1Dutc", "2Dutc", "3Dutc", "1Wutc", "1Mutc", "3Mutc",
])

# Longest first so "mark-price-candle1m" is not read as "candle".
CANDLE_PREFIXES = ("mark-price-candle", "index-candle", "candle")

PING = "ping"
PONG = "pong"


# ============================================================
# CHANNEL HELPERS
# ============================================================

def split_channel(channel: str) -> tuple:
    """
    Split a channel name into (prefix, interval).

    "candle1H" -> ("candle", "1H"); "tickers" -> ("tickers", "").
    """
    for prefix in CANDLE_PREFIXES:
        if channel.startswith(prefix):
            suffix = channel[len(prefix):]
            if suffix in CANDLE_INTERVALS:
                return prefix, suffix
    return channel, ""


def candle_channel(interval: str, prefix: str = "candle") -> str:
    if interval not in CANDLE_INTERVALS:
        raise ValueError(f"Unsupported candle interval: {interval}")
    return f"{prefix}{interval}"


def is_pong(text: str) -> bool:
    return text == PONG


def ms_to_datetime(value: Union[str, int, None], tz: timezone = timezone.utc) -> Optional[datetime]:
    """
    Convert epoch milliseconds to an aware datetime in tz.

    Returns None for empty values.
    """
    if value is None or value == "":
        return None
    try:
        ms = int(value)
    except (TypeError, ValueError) as e:
        raise MalformedFrame(f"Invalid millisecond timestamp: {value!r}", cause=e)
    seconds, millis = divmod(ms, 1000)
    return datetime.fromtimestamp(seconds, tz) + timedelta(milliseconds=millis)


def datetime_to_ms(value: datetime) -> int:
    return int(value.timestamp()) * 1000 + value.microsecond // 1000


# ============================================================
# FRAME
# ============================================================

@dataclass
class Frame:
    """A decoded inbound frame."""

    op: Optional[str] = None
    event: Optional[str] = None
    arg: Dict[str, Any] = field(default_factory=dict)
    data: List[Any] = field(default_factory=list)
    id: Optional[str] = None
    code: Optional[str] = None
    msg: Optional[str] = None
    conn_id: Optional[str] = None

    @property
    def channel(self) -> Optional[str]:
        return self.arg.get("channel")

    @property
    def channel_tag(self) -> Optional[str]:
        """
        Routing tag: arg.channel for pushes and subscription events,
        op for operation replies.
        """
        return self.channel or self.op

    @property
    def inst_id(self) -> Optional[str]:
        return self.arg.get("instId")

    @property
    def interval(self) -> str:
        if self.arg.get("interval"):
            return self.arg["interval"]
        if self.channel:
            return split_channel(self.channel)[1]
        return ""

    @property
    def is_event(self) -> bool:
        return self.event is not None

    @property
    def is_push(self) -> bool:
        return self.event is None and self.op is None and bool(self.arg)

    @property
    def is_op_reply(self) -> bool:
        return self.event is None and self.op is not None

    @property
    def rows_are_arrays(self) -> bool:
        return bool(self.data) and isinstance(self.data[0], list)

    @property
    def is_success(self) -> bool:
        return self.code in (None, "", "0")


def decode_frame(text: Union[str, bytes]) -> Frame:
    """
    Decode a text frame.

    Raises:
        MalformedFrame: invalid JSON, wrong shapes, or missing
            required fields
    """
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")

    try:
        raw = json.loads(text, parse_float=Decimal)
    except json.JSONDecodeError as e:
        raise MalformedFrame(f"Invalid JSON frame: {text[:100]}", cause=e)

    if not isinstance(raw, dict):
        raise MalformedFrame(f"Frame is not an object: {text[:100]}")

    arg = raw.get("arg")
    if arg is not None:
        if not isinstance(arg, dict) or not isinstance(arg.get("channel"), str) or not arg["channel"]:
            raise MalformedFrame(f"Frame arg missing channel: {text[:100]}")

    event = raw.get("event")
    op = raw.get("op")
    if event is None and op is None and arg is None:
        raise MalformedFrame(f"Frame has no event, op or arg: {text[:100]}")

    data = raw.get("data", [])
    if data is None:
        data = []
    if not isinstance(data, list):
        raise MalformedFrame(f"Frame data is not a list: {text[:100]}")
    if data:
        if all(isinstance(row, list) for row in data):
            pass
        elif all(isinstance(row, dict) for row in data):
            pass
        else:
            raise MalformedFrame(f"Frame data mixes rows and objects: {text[:100]}")

    # A push without data carries nothing to route.
    if event is None and op is None and not data:
        raise MalformedFrame(f"Push frame without data: {text[:100]}")

    code = raw.get("code")
    return Frame(
        op=op,
        event=event,
        arg=arg or {},
        data=data,
        id=str(raw["id"]) if raw.get("id") is not None else None,
        code=str(code) if code is not None else None,
        msg=raw.get("msg"),
        conn_id=raw.get("connId"),
    )


# ============================================================
# ENCODING
# ============================================================

def _default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, datetime):
        return str(datetime_to_ms(value))
    raise TypeError(f"Cannot encode {type(value).__name__}")


def encode_frame(frame: Dict[str, Any]) -> str:
    """Encode an outbound frame. Decimals are written as plain strings."""
    return json.dumps(frame, separators=(",", ":"), default=_default)


def subscription_frame(op: str, args: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Build a subscribe/unsubscribe frame."""
    if op not in ("subscribe", "unsubscribe"):
        raise ValueError(f"Not a subscription op: {op}")
    return {"op": op, "args": args}


def request_frame(request_id: str, op: str, args: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Build an id-tagged request frame (order, cancel-order, request)."""
    return {"id": request_id, "op": op, "args": args}
