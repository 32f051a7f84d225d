"""
Exchange Connector - Normalizer.

============================================================
PURPOSE
============================================================
Pure functions mapping raw OKX payloads to domain records.

EDGE POLICIES:
- Percent change is 0 when open24h <= 0
- Executed quantity is net of fee:
    fee in traded asset  -> accFillSz - |fee|
    fee in quote         -> accFillSz - |fee| / fillPx (ROUND_DOWN @ 12dp)
- Fee is reported in quote currency
- Candle confirmed flag comes from the last row field
- Unknown order states pass through upper-cased

============================================================
"""

import calendar
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation, ROUND_DOWN, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Sequence

from .codec import ms_to_datetime
from .errors import MalformedFrame
from .models import (
    AccountBalance,
    AssetBalance,
    Candlestick,
    Order,
    OrderStatus,
    Ticker,
)


ZERO = Decimal("0")
HUNDRED = Decimal("100")
PERCENT_QUANT = Decimal("0.0001")
RATIO_QUANT = Decimal("0.00000001")
FEE_QTY_QUANT = Decimal("0.000000000001")

DEFAULT_QUOTE_CCY = "USDT"

OKX_STATUS_MAP = {
    "live": OrderStatus.NEW.value,
    "partially_filled": OrderStatus.PARTIALLY_FILLED.value,
    "filled": OrderStatus.FILLED.value,
    "canceled": OrderStatus.CANCELED.value,
    "canceling": OrderStatus.CANCELING.value,
}


# ============================================================
# PRIMITIVES
# ============================================================

def to_decimal(value: Any, default: Decimal = ZERO) -> Decimal:
    """
    Convert a wire value to Decimal.

    Empty strings and None yield default. Floats are routed
    through str() so no binary artefacts leak in.
    """
    if value is None or value == "":
        return default
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise MalformedFrame(f"Not a decimal: {value!r}", cause=e)


def split_instrument(inst_id: Optional[str]) -> tuple:
    """'BTC-USDT' -> ('BTC', 'USDT'); 'BTC-USDT-SWAP' -> ('BTC', 'USDT')."""
    if not inst_id or "-" not in inst_id:
        return None, None
    parts = inst_id.split("-")
    return parts[0], parts[1]


# ============================================================
# TICKERS
# ============================================================

def percent_change(last: Decimal, open_24h: Decimal) -> Decimal:
    """(last - open) / open rounded half-up at 4dp, times 100. Zero when open <= 0."""
    if open_24h <= ZERO:
        return ZERO
    ratio = ((last - open_24h) / open_24h).quantize(PERCENT_QUANT, rounding=ROUND_HALF_UP)
    return ratio * HUNDRED


def parse_ticker(
    item: Dict[str, Any],
    inst_id: Optional[str] = None,
    tz: timezone = timezone.utc,
) -> Ticker:
    """Parse one object from the tickers channel or /market/ticker."""
    last = to_decimal(item.get("last"))
    open_24h = to_decimal(item.get("open24h"))
    change = last - open_24h if open_24h > ZERO else ZERO

    return Ticker(
        inst_id=item.get("instId") or inst_id or "",
        last=last,
        open_24h=open_24h,
        high_24h=to_decimal(item.get("high24h")),
        low_24h=to_decimal(item.get("low24h")),
        bid=to_decimal(item.get("bidPx")),
        ask=to_decimal(item.get("askPx")),
        bid_size=to_decimal(item.get("bidSz")),
        ask_size=to_decimal(item.get("askSz")),
        base_volume=to_decimal(item.get("vol24h")),
        quote_volume=to_decimal(item.get("volCcy24h")),
        change=change,
        percent=percent_change(last, open_24h),
        timestamp=ms_to_datetime(item.get("ts"), tz),
        source="tickers",
    )


def parse_mark_price(
    item: Dict[str, Any],
    inst_id: Optional[str] = None,
    tz: timezone = timezone.utc,
) -> Ticker:
    """Parse one object from the mark-price channel as a last-only ticker."""
    mark = to_decimal(item.get("markPx"))
    return Ticker(
        inst_id=item.get("instId") or inst_id or "",
        last=mark,
        open_24h=ZERO,
        high_24h=ZERO,
        low_24h=ZERO,
        bid=ZERO,
        ask=ZERO,
        bid_size=ZERO,
        ask_size=ZERO,
        base_volume=ZERO,
        quote_volume=ZERO,
        change=ZERO,
        percent=ZERO,
        timestamp=ms_to_datetime(item.get("ts"), tz),
        source="mark-price",
    )


# ============================================================
# CANDLES
# ============================================================

def _add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def candle_close_time(open_time: datetime, interval: str) -> datetime:
    """
    Close time of a bar from its open time and bar size.

    Units: s, m, H, D, W, M (calendar months). Unknown units
    default to one minute.
    """
    bar = interval[:-3] if interval.endswith("utc") else interval
    unit = bar[-1:] if bar else ""
    try:
        amount = int(bar[:-1])
    except ValueError:
        amount = 1

    if unit == "s":
        return open_time + timedelta(seconds=amount)
    if unit == "m":
        return open_time + timedelta(minutes=amount)
    if unit == "H":
        return open_time + timedelta(hours=amount)
    if unit == "D":
        return open_time + timedelta(days=amount)
    if unit == "W":
        return open_time + timedelta(weeks=amount)
    if unit == "M":
        return _add_months(open_time, amount)
    return open_time + timedelta(minutes=1)


def parse_candle_row(
    row: Sequence[Any],
    inst_id: str,
    interval: str,
    tz: timezone = timezone.utc,
) -> Candlestick:
    """
    Parse one candlestick row.

    Layouts:
    - [ts, o, h, l, c, vol, volCcy, volCcyQuote, confirm]  (trade candles)
    - [ts, o, h, l, c, vol, volCcy]                       (some history endpoints)
    - [ts, o, h, l, c, confirm]                           (mark/index candles)
    """
    if len(row) not in (6, 7) and len(row) < 9:
        raise MalformedFrame(f"Unexpected candle row length {len(row)}: {row!r}")

    open_time = ms_to_datetime(row[0], tz)
    if open_time is None:
        raise MalformedFrame(f"Candle row without timestamp: {row!r}")

    if len(row) == 6:
        base_volume = quote_volume = ZERO
        confirmed = str(row[-1]) == "1"
    elif len(row) == 7:
        base_volume = to_decimal(row[5])
        quote_volume = to_decimal(row[6])
        confirmed = True
    else:
        base_volume = to_decimal(row[5])
        quote_volume = to_decimal(row[7], default=to_decimal(row[6]))
        confirmed = str(row[-1]) == "1"

    return Candlestick(
        inst_id=inst_id,
        interval=interval,
        open_time=open_time,
        close_time=candle_close_time(open_time, interval),
        open=to_decimal(row[1]),
        high=to_decimal(row[2]),
        low=to_decimal(row[3]),
        close=to_decimal(row[4]),
        base_volume=base_volume,
        quote_volume=quote_volume,
        confirmed=confirmed,
    )


def parse_candles(
    rows: List[Sequence[Any]],
    inst_id: str,
    interval: str,
    tz: timezone = timezone.utc,
) -> List[Candlestick]:
    return [parse_candle_row(row, inst_id, interval, tz) for row in rows]


# ============================================================
# ACCOUNT
# ============================================================

def parse_account_balance(
    item: Dict[str, Any],
    simulated: bool = False,
    tz: timezone = timezone.utc,
) -> AccountBalance:
    """
    Parse one object from the account channel.

    available = sum(available / total (8dp half-up) * usd value)
    frozen    = total equity - available
    Assets with zero total are listed but carry no USD share.
    """
    total_equity = to_decimal(item.get("totalEq"))

    details = []
    available = ZERO
    for detail in item.get("details") or []:
        asset = AssetBalance(
            asset=detail.get("ccy", ""),
            available=to_decimal(detail.get("availEq") or detail.get("availBal")),
            frozen=to_decimal(detail.get("frozenBal")),
            total=to_decimal(detail.get("eq")),
            usd_value=to_decimal(detail.get("eqUsd")),
        )
        details.append(asset)
        if asset.total != ZERO:
            share = (asset.available / asset.total).quantize(RATIO_QUANT, rounding=ROUND_HALF_UP)
            available += share * asset.usd_value

    return AccountBalance(
        total_equity=total_equity,
        available=available,
        frozen=total_equity - available,
        details=details,
        timestamp=ms_to_datetime(item.get("uTime"), tz),
        simulated=simulated,
    )


# ============================================================
# ORDERS
# ============================================================

def map_order_status(state: Optional[str]) -> str:
    if not state:
        return ""
    return OKX_STATUS_MAP.get(state, state.upper())


def map_order_type(ord_type: Optional[str]) -> str:
    return (ord_type or "").upper()


def fee_in_traded_asset(fee_ccy: str, inst_id: Optional[str]) -> bool:
    """
    Whether the fee was charged in the traded (base) asset.

    Falls back to "anything but the quote currency" when the
    instrument is not in the payload.
    """
    base, _ = split_instrument(inst_id)
    if base:
        return fee_ccy == base
    return bool(fee_ccy) and fee_ccy != DEFAULT_QUOTE_CCY


def parse_order(item: Dict[str, Any], tz: timezone = timezone.utc) -> Order:
    """Parse one order object (orders channel, op reply, or REST)."""
    inst_id = item.get("instId") or ""
    fee_ccy = item.get("feeCcy") or ""
    raw_fee = to_decimal(item.get("fee"))
    fill_px = to_decimal(item.get("fillPx"))
    acc_fill = to_decimal(item.get("accFillSz"))
    in_traded = fee_in_traded_asset(fee_ccy, inst_id)

    # Fee in quote currency
    if in_traded:
        fee = abs(raw_fee * fill_px)
    else:
        fee = abs(raw_fee)

    # Executed quantity net of fee
    if in_traded:
        executed = acc_fill - abs(raw_fee)
    elif fill_px > ZERO:
        executed = acc_fill - (fee / fill_px).quantize(FEE_QTY_QUANT, rounding=ROUND_DOWN)
    else:
        executed = acc_fill

    return Order(
        order_id=item.get("ordId") or "",
        client_order_id=item.get("clOrdId") or "",
        inst_id=inst_id,
        side=(item.get("side") or "").upper(),
        type=map_order_type(item.get("ordType")),
        quantity=to_decimal(item.get("sz")),
        executed_quantity=executed,
        price=fill_px,
        cumulative_quote_quantity=executed * fill_px,
        status=map_order_status(item.get("state")),
        fee=fee,
        fee_currency=fee_ccy,
        venue_code=str(item.get("sCode") or "0"),
        venue_message=item.get("sMsg") or "",
        created_at=ms_to_datetime(item.get("cTime"), tz),
        updated_at=ms_to_datetime(item.get("uTime"), tz),
    )
