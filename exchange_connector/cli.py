"""
Exchange Connector - CLI.

============================================================
RESPONSIBILITY
============================================================
Command-line access to the connector.

- argparse-based subcommands for market data, account and orders
- Configuration from --config (YAML) or the environment (.env)
- Records printed as one JSON object per line

============================================================
USAGE
============================================================
exchange-connector ticker BTC-USDT
exchange-connector --mode REST history BTC-USDT --interval 1H --limit 100
exchange-connector stream BTC-USDT --interval 1m --duration 60
exchange-connector --simulated order BTC-USDT buy --amount 10

============================================================
"""

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, List, Optional

from .config import MIN_REQUEST_TIMEOUT_SECONDS, ConnectionMode, ConnectorConfig, Credentials
from .connector import ExchangeConnector
from .errors import ConnectorError
from .logging_utils import setup_logging
from .models import EventType, OrderRequest, OrderSide, OrderType


logger = logging.getLogger(__name__)


# ============================================================
# CLI ARGUMENT PARSER
# ============================================================

def _decimal(value: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"not a decimal: {value}")


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="exchange-connector",
        description="OKX exchange connector",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  ticker    - Next ticker for an instrument
  tickers   - All spot tickers for a quote currency (REST)
  klines    - Candle snapshot for an instrument
  history   - Candle history between two timestamps (REST)
  stream    - Print ticker and candle pushes for a while
  balance   - Account balance (private)
  order     - Place an order (private)
  cancel    - Cancel an order by venue order id (private)
        """
    )

    # --------------------------------------------------------
    # Connection Options
    # --------------------------------------------------------
    connection_group = parser.add_argument_group("Connection Options")

    connection_group.add_argument(
        "--config",
        type=str,
        metavar="PATH",
        help="YAML configuration file (default: environment / .env)",
    )

    connection_group.add_argument(
        "--mode",
        type=str,
        choices=[m.value for m in ConnectionMode],
        help="Connection mode (default: from configuration, WS)",
    )

    connection_group.add_argument(
        "--base-url",
        type=str,
        help="REST base URL",
    )

    connection_group.add_argument(
        "--simulated",
        action="store_true",
        help="Use the demo trading environment",
    )

    connection_group.add_argument(
        "--timeout",
        type=float,
        metavar="SECONDS",
        help="Request timeout in seconds (floored at 10)",
    )

    # --------------------------------------------------------
    # Credentials
    # --------------------------------------------------------
    credentials_group = parser.add_argument_group("Credentials")
    credentials_group.add_argument("--api-key", type=str, help="API key (default: OKX_API_KEY)")
    credentials_group.add_argument("--api-secret", type=str, help="API secret (default: OKX_API_SECRET)")
    credentials_group.add_argument("--passphrase", type=str, help="API passphrase (default: OKX_PASSPHRASE)")

    # --------------------------------------------------------
    # Logging Options
    # --------------------------------------------------------
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default="WARNING",
        help="Logging level (default: WARNING)",
    )

    # --------------------------------------------------------
    # Commands
    # --------------------------------------------------------
    commands = parser.add_subparsers(dest="command", required=True)

    ticker = commands.add_parser("ticker", help="Next ticker for an instrument")
    ticker.add_argument("inst_id", help="Instrument, e.g. BTC-USDT")

    tickers = commands.add_parser("tickers", help="All spot tickers (REST)")
    tickers.add_argument("--quote", default="USDT", help="Quote currency (default: USDT)")

    klines = commands.add_parser("klines", help="Candle snapshot")
    klines.add_argument("inst_id")
    klines.add_argument("--interval", default="1m")
    klines.add_argument("--limit", type=int)

    history = commands.add_parser("history", help="Candle history (REST)")
    history.add_argument("inst_id")
    history.add_argument("--interval", default="1m")
    history.add_argument("--start", type=int, metavar="MS", help="Start, epoch milliseconds")
    history.add_argument("--end", type=int, metavar="MS", help="End, epoch milliseconds")
    history.add_argument("--limit", type=int, default=100)

    stream = commands.add_parser("stream", help="Print pushes for a while")
    stream.add_argument("inst_id")
    stream.add_argument("--interval", default="1m")
    stream.add_argument("--duration", type=float, default=30.0, metavar="SECONDS")

    balance = commands.add_parser("balance", help="Account balance")
    balance.add_argument("--cached", action="store_true", help="Use the cached USDT amount if present")

    order = commands.add_parser("order", help="Place an order")
    order.add_argument("inst_id")
    order.add_argument("side", choices=[s.value for s in OrderSide])
    order.add_argument("--type", dest="order_type", choices=[t.value for t in OrderType], default="market")
    size = order.add_mutually_exclusive_group(required=True)
    size.add_argument("--quantity", type=_decimal, help="Size in base currency")
    size.add_argument("--amount", type=_decimal, help="Size in quote currency")
    order.add_argument("--price", type=_decimal, help="Limit price")
    order.add_argument("--strategy-id", type=str)
    order.add_argument("--client-order-id", type=str)

    cancel = commands.add_parser("cancel", help="Cancel an order")
    cancel.add_argument("inst_id")
    cancel.add_argument("order_id")

    return parser


# ============================================================
# CLI CONFIGURATION BUILDER
# ============================================================

def build_config(args: argparse.Namespace) -> ConnectorConfig:
    """
    Build connector configuration: file or environment, then flags.

    Args:
        args: Parsed arguments
    """
    config = ConnectorConfig.from_yaml(args.config) if args.config else ConnectorConfig.from_env()

    if args.mode:
        config.mode = ConnectionMode(args.mode)
    if args.base_url:
        config.base_url = args.base_url
    if args.simulated:
        config.simulated = True
    if args.timeout:
        config.request_timeout_seconds = max(MIN_REQUEST_TIMEOUT_SECONDS, args.timeout)
    if args.api_key or args.api_secret or args.passphrase:
        config.credentials = Credentials(
            api_key=args.api_key or config.credentials.api_key,
            api_secret=args.api_secret or config.credentials.api_secret,
            passphrase=args.passphrase or config.credentials.passphrase,
        )

    return config


# ============================================================
# OUTPUT
# ============================================================

def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    return str(value)


def render(record: Any) -> str:
    """Render a record (dataclass, list, or plain value) as JSON."""
    if dataclasses.is_dataclass(record) and not isinstance(record, type):
        record = dataclasses.asdict(record)
    elif isinstance(record, list):
        record = [dataclasses.asdict(r) if dataclasses.is_dataclass(r) else r for r in record]
    return json.dumps(record, default=_json_default)


# ============================================================
# COMMANDS
# ============================================================

async def _stream(connector: ExchangeConnector, args: argparse.Namespace) -> None:
    connector.add_listener(EventType.TICKER, lambda t: print(render(t), flush=True))
    connector.add_listener(EventType.CANDLE, lambda c: print(render(c), flush=True))

    await connector.subscribe_ticker(args.inst_id)
    await connector.subscribe_kline(args.inst_id, args.interval)
    try:
        await asyncio.sleep(args.duration)
    finally:
        await connector.unsubscribe_ticker(args.inst_id)
        await connector.unsubscribe_kline(args.inst_id, args.interval)


async def run_command(connector: ExchangeConnector, args: argparse.Namespace) -> None:
    """Run one subcommand and print its result."""
    command = args.command

    if command == "ticker":
        print(render(await connector.get_ticker(args.inst_id)))
    elif command == "tickers":
        for ticker in await connector.get_all_tickers(args.quote):
            print(render(ticker))
    elif command == "klines":
        for candle in await connector.get_kline(args.inst_id, args.interval, args.limit):
            print(render(candle))
    elif command == "history":
        candles = await connector.get_history_klines(
            args.inst_id, args.interval, args.start, args.end, args.limit,
        )
        for candle in candles:
            print(render(candle))
    elif command == "stream":
        await _stream(connector, args)
    elif command == "balance":
        print(render(await connector.get_balance(use_cache=args.cached)))
    elif command == "order":
        request = OrderRequest(
            inst_id=args.inst_id,
            side=OrderSide(args.side),
            type=OrderType(args.order_type),
            quantity=args.quantity,
            amount=args.amount,
            price=args.price,
            strategy_id=args.strategy_id,
            client_order_id=args.client_order_id,
        )
        print(render(await connector.place_order(request)))
    elif command == "cancel":
        print(render({"canceled": await connector.cancel_order(args.inst_id, args.order_id)}))


# ============================================================
# MAIN ENTRY POINT
# ============================================================

async def async_main(args: argparse.Namespace) -> int:
    """
    Async main entry point.

    Returns:
        Exit code
    """
    config = build_config(args)

    errors = config.validate()
    if errors:
        for error in errors:
            print(f"Error: {error}", file=sys.stderr)
        return 1

    connector = ExchangeConnector(config)
    try:
        await connector.start()
        await run_command(connector, args)
        return 0
    except ConnectorError as e:
        logger.error(f"{type(e).__name__}: {e.message}")
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    finally:
        await connector.close()


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    setup_logging(args.log_level)

    try:
        return asyncio.run(async_main(args))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130


# ============================================================
# MODULE EXECUTION
# ============================================================

if __name__ == "__main__":
    sys.exit(main())
