"""
Exchange Connector - Configuration.

============================================================
PURPOSE
============================================================
All configuration for the OKX duplex connector.

Sources:
- Environment variables (a local .env file is honoured)
- YAML file
- Direct construction (tests, embedding)

============================================================
"""

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from dotenv import load_dotenv


logger = logging.getLogger(__name__)


OKX_REST_URL = "https://www.okx.com"
OKX_PUBLIC_WS_URL = "wss://ws.okx.com:8443/ws/v5/public"
OKX_PRIVATE_WS_URL = "wss://ws.okx.com:8443/ws/v5/private"
OKX_DEMO_PUBLIC_WS_URL = "wss://wspap.okx.com:8443/ws/v5/public"
OKX_DEMO_PRIVATE_WS_URL = "wss://wspap.okx.com:8443/ws/v5/private"

MIN_REQUEST_TIMEOUT_SECONDS = 10.0


# ============================================================
# ENUMS
# ============================================================

class ConnectionMode(Enum):
    """How market data and account requests are served."""

    WS = "WS"        # Duplex sessions, REST only as side channel
    REST = "REST"    # REST only, streaming operations unavailable


class LastPriceSource(Enum):
    """Which stream feeds the last-price cache and price observer."""

    TICKERS = "tickers"
    CANDLES = "candles"
    BOTH = "both"

    @property
    def uses_tickers(self) -> bool:
        return self in (LastPriceSource.TICKERS, LastPriceSource.BOTH)

    @property
    def uses_candles(self) -> bool:
        return self in (LastPriceSource.CANDLES, LastPriceSource.BOTH)


# ============================================================
# CREDENTIALS
# ============================================================

@dataclass
class Credentials:
    """API credentials triple."""

    api_key: str = ""
    api_secret: str = ""
    passphrase: str = ""

    @property
    def is_complete(self) -> bool:
        """All three parts present."""
        return bool(self.api_key and self.api_secret and self.passphrase)

    def __repr__(self) -> str:
        masked = f"{self.api_key[:4]}****" if self.api_key else ""
        return f"Credentials(api_key={masked!r}, api_secret='****', passphrase='****')"


# ============================================================
# SESSION SETTINGS
# ============================================================

@dataclass
class SessionSettings:
    """
    Per-session lifecycle settings.

    Backoff: exponential with jitter, initial 1s, cap 30s.
    """

    reconnect_initial_delay_seconds: float = 1.0
    """Delay before the first reconnect attempt."""

    reconnect_max_delay_seconds: float = 30.0
    """Cap on reconnect delay."""

    reconnect_jitter: float = 0.2
    """Fraction of the delay randomised away (0 disables jitter)."""

    heartbeat_interval_seconds: float = 20.0
    """Interval between text pings. Stale after twice this with no traffic."""

    login_timeout_seconds: float = 10.0
    """Maximum wait for the login acknowledgement."""

    connect_timeout_seconds: float = 10.0
    """Maximum wait for the transport handshake."""

    outbound_queue_size: int = 1024
    """Bound on queued outbound frames."""

    drain_timeout_seconds: float = 2.0
    """Maximum wait for the writer to drain on close."""

    replay_batch_size: int = 20
    """Topics per subscribe frame when replaying after reconnect."""


# ============================================================
# CONNECTOR CONFIG
# ============================================================

@dataclass
class ConnectorConfig:
    """
    Main connector configuration.

    Combines credentials, endpoints and session settings.
    """

    # Endpoints
    base_url: str = OKX_REST_URL
    public_ws_url: Optional[str] = None
    private_ws_url: Optional[str] = None

    # Mode
    mode: ConnectionMode = ConnectionMode.WS
    simulated: bool = False

    # Auth
    credentials: Credentials = field(default_factory=Credentials)

    # Requests
    request_timeout_seconds: float = MIN_REQUEST_TIMEOUT_SECONDS
    settle_delay_seconds: float = 1.0

    # Caches and sinks
    last_price_source: LastPriceSource = LastPriceSource.BOTH
    balance_cache_ttl_seconds: int = 600
    order_log_dir: str = "logs/orders"

    # Router
    route_queue_size: int = 0
    """Per-channel queue bound; 0 dispatches inline."""

    # Timestamps are rendered in this offset from UTC
    timezone_offset_hours: float = 0.0

    session: SessionSettings = field(default_factory=SessionSettings)

    def __post_init__(self) -> None:
        if self.request_timeout_seconds < MIN_REQUEST_TIMEOUT_SECONDS:
            logger.warning(
                f"request_timeout_seconds={self.request_timeout_seconds} below floor, "
                f"using {MIN_REQUEST_TIMEOUT_SECONDS}"
            )
            self.request_timeout_seconds = MIN_REQUEST_TIMEOUT_SECONDS

    # --------------------------------------------------------
    # DERIVED
    # --------------------------------------------------------

    @property
    def resolved_public_ws_url(self) -> str:
        if self.public_ws_url:
            return self.public_ws_url
        return OKX_DEMO_PUBLIC_WS_URL if self.simulated else OKX_PUBLIC_WS_URL

    @property
    def resolved_private_ws_url(self) -> str:
        if self.private_ws_url:
            return self.private_ws_url
        return OKX_DEMO_PRIVATE_WS_URL if self.simulated else OKX_PRIVATE_WS_URL

    @property
    def kline_snapshot_timeout(self) -> float:
        """Initial kline snapshot wait: 1.5x default, floor 15s."""
        return max(15.0, self.request_timeout_seconds * 1.5)

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of error messages, empty when valid
        """
        errors = []

        if not self.base_url.startswith(("http://", "https://")):
            errors.append(f"base_url must be http(s): {self.base_url}")
        if self.mode == ConnectionMode.WS:
            for url in (self.resolved_public_ws_url, self.resolved_private_ws_url):
                if not url.startswith(("ws://", "wss://")):
                    errors.append(f"websocket url must be ws(s): {url}")
        if self.settle_delay_seconds < 0:
            errors.append("settle_delay_seconds must be >= 0")
        if self.session.outbound_queue_size <= 0:
            errors.append("session.outbound_queue_size must be > 0")
        if self.session.heartbeat_interval_seconds <= 0:
            errors.append("session.heartbeat_interval_seconds must be > 0")
        if self.session.reconnect_initial_delay_seconds > self.session.reconnect_max_delay_seconds:
            errors.append("reconnect initial delay exceeds max delay")
        if not 0 <= self.session.reconnect_jitter < 1:
            errors.append("session.reconnect_jitter must be in [0, 1)")
        if self.route_queue_size < 0:
            errors.append("route_queue_size must be >= 0")

        return errors

    # --------------------------------------------------------
    # LOADERS
    # --------------------------------------------------------

    @classmethod
    def from_env(cls, dotenv_path: Optional[Union[str, Path]] = None) -> "ConnectorConfig":
        """
        Load configuration from environment variables.

        Environment variables:
        - OKX_API_KEY, OKX_API_SECRET, OKX_PASSPHRASE
        - OKX_BASE_URL
        - OKX_PUBLIC_WS_URL, OKX_PRIVATE_WS_URL
        - OKX_CONNECTION_MODE (WS | REST)
        - OKX_TIMEOUT_SECONDS
        - OKX_SETTLE_DELAY_SECONDS
        - OKX_SIMULATED (1/true/yes)
        - OKX_LAST_PRICE_SOURCE (tickers | candles | both)
        - OKX_ORDER_LOG_DIR
        - OKX_TIMEZONE_OFFSET_HOURS
        - OKX_HEARTBEAT_INTERVAL_SECONDS
        """
        load_dotenv(dotenv_path)

        config = cls(
            credentials=Credentials(
                api_key=os.getenv("OKX_API_KEY", ""),
                api_secret=os.getenv("OKX_API_SECRET", ""),
                passphrase=os.getenv("OKX_PASSPHRASE", ""),
            ),
        )

        if os.getenv("OKX_BASE_URL"):
            config.base_url = os.getenv("OKX_BASE_URL")
        if os.getenv("OKX_PUBLIC_WS_URL"):
            config.public_ws_url = os.getenv("OKX_PUBLIC_WS_URL")
        if os.getenv("OKX_PRIVATE_WS_URL"):
            config.private_ws_url = os.getenv("OKX_PRIVATE_WS_URL")
        if os.getenv("OKX_CONNECTION_MODE"):
            config.mode = ConnectionMode(os.getenv("OKX_CONNECTION_MODE").upper())
        if os.getenv("OKX_TIMEOUT_SECONDS"):
            config.request_timeout_seconds = max(
                MIN_REQUEST_TIMEOUT_SECONDS, float(os.getenv("OKX_TIMEOUT_SECONDS"))
            )
        if os.getenv("OKX_SETTLE_DELAY_SECONDS"):
            config.settle_delay_seconds = float(os.getenv("OKX_SETTLE_DELAY_SECONDS"))
        if os.getenv("OKX_SIMULATED"):
            config.simulated = _parse_bool(os.getenv("OKX_SIMULATED"))
        if os.getenv("OKX_LAST_PRICE_SOURCE"):
            config.last_price_source = LastPriceSource(os.getenv("OKX_LAST_PRICE_SOURCE").lower())
        if os.getenv("OKX_ORDER_LOG_DIR"):
            config.order_log_dir = os.getenv("OKX_ORDER_LOG_DIR")
        if os.getenv("OKX_TIMEZONE_OFFSET_HOURS"):
            config.timezone_offset_hours = float(os.getenv("OKX_TIMEZONE_OFFSET_HOURS"))
        if os.getenv("OKX_HEARTBEAT_INTERVAL_SECONDS"):
            config.session.heartbeat_interval_seconds = float(
                os.getenv("OKX_HEARTBEAT_INTERVAL_SECONDS")
            )

        return config

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "ConnectorConfig":
        """
        Load configuration from a YAML file.

        Credentials left blank in the file fall back to the
        OKX_* environment variables.
        """
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConnectorConfig":
        """Build configuration from a plain mapping."""
        config = cls()

        creds = data.get("credentials", {}) or {}
        config.credentials = Credentials(
            api_key=creds.get("api_key") or os.getenv("OKX_API_KEY", ""),
            api_secret=creds.get("api_secret") or os.getenv("OKX_API_SECRET", ""),
            passphrase=creds.get("passphrase") or os.getenv("OKX_PASSPHRASE", ""),
        )

        if "base_url" in data:
            config.base_url = data["base_url"]
        if "public_ws_url" in data:
            config.public_ws_url = data["public_ws_url"]
        if "private_ws_url" in data:
            config.private_ws_url = data["private_ws_url"]
        if "mode" in data:
            config.mode = ConnectionMode(str(data["mode"]).upper())
        if "simulated" in data:
            config.simulated = _parse_bool(data["simulated"])
        if "request_timeout_seconds" in data:
            config.request_timeout_seconds = max(
                MIN_REQUEST_TIMEOUT_SECONDS, float(data["request_timeout_seconds"])
            )
        if "settle_delay_seconds" in data:
            config.settle_delay_seconds = float(data["settle_delay_seconds"])
        if "last_price_source" in data:
            config.last_price_source = LastPriceSource(str(data["last_price_source"]).lower())
        if "balance_cache_ttl_seconds" in data:
            config.balance_cache_ttl_seconds = int(data["balance_cache_ttl_seconds"])
        if "order_log_dir" in data:
            config.order_log_dir = data["order_log_dir"]
        if "route_queue_size" in data:
            config.route_queue_size = int(data["route_queue_size"])
        if "timezone_offset_hours" in data:
            config.timezone_offset_hours = float(data["timezone_offset_hours"])

        session = data.get("session", {}) or {}
        for name, value in session.items():
            if not hasattr(config.session, name):
                logger.warning(f"Ignoring unknown session setting: {name}")
                continue
            setattr(config.session, name, type(getattr(config.session, name))(value))

        return config

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (secrets excluded)."""
        return {
            "base_url": self.base_url,
            "public_ws_url": self.resolved_public_ws_url,
            "private_ws_url": self.resolved_private_ws_url,
            "mode": self.mode.value,
            "simulated": self.simulated,
            "has_credentials": self.credentials.is_complete,
            "request_timeout_seconds": self.request_timeout_seconds,
            "settle_delay_seconds": self.settle_delay_seconds,
            "last_price_source": self.last_price_source.value,
            "order_log_dir": self.order_log_dir,
            "timezone_offset_hours": self.timezone_offset_hours,
        }


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")
