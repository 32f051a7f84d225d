"""
Exchange Connector - Secure Logging Utilities.

============================================================
PURPOSE
============================================================
Logging helpers for the connector:
- Credential masking for headers, params, URLs and WS frames
- Structured REQUEST / RESPONSE / ORDER log lines
- Process-level logging setup for the CLI

============================================================
SECURITY REQUIREMENTS
============================================================
1. NEVER log raw API keys, secrets, passphrases or signatures
2. Login frames are logged with apiKey/passphrase/sign masked
3. REST bodies are logged as a hash, never in full

============================================================
"""

import hashlib
import json
import logging
import re
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional


logger = logging.getLogger(__name__)


LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Header names that should be masked
SENSITIVE_HEADERS = {
    "ok-access-key",
    "ok-access-passphrase",
    "ok-access-sign",
    "authorization",
}

# Parameter / frame arg names that should be masked
SENSITIVE_PARAMS = {
    "apikey",
    "api_key",
    "secret",
    "api_secret",
    "passphrase",
    "sign",
    "signature",
}


# ============================================================
# MASKING FUNCTIONS
# ============================================================

def mask_value(value: str, show_chars: int = 4) -> str:
    """
    Mask a sensitive value, showing only first few chars.

    Args:
        value: Value to mask
        show_chars: Number of chars to show at start
    """
    if not value or len(value) <= show_chars:
        return "***"
    return f"{value[:show_chars]}...***"


def mask_headers(headers: Optional[Dict[str, str]]) -> Dict[str, str]:
    """Mask sensitive request headers."""
    if not headers:
        return {}
    return {
        key: mask_value(str(value)) if key.lower() in SENSITIVE_HEADERS else value
        for key, value in headers.items()
    }


def mask_params(params: Any) -> Any:
    """Recursively mask sensitive keys in dicts and lists."""
    if isinstance(params, dict):
        masked = {}
        for key, value in params.items():
            if str(key).lower() in SENSITIVE_PARAMS:
                masked[key] = mask_value(str(value)) if value else value
            else:
                masked[key] = mask_params(value)
        return masked
    if isinstance(params, list):
        return [mask_params(item) for item in params]
    return params


def mask_url(url: str) -> str:
    """Mask sensitive query string params in a URL."""
    if not url:
        return url
    for param in SENSITIVE_PARAMS:
        pattern = re.compile(f"({param}=)([^&]+)", re.IGNORECASE)
        url = pattern.sub(lambda m: f"{m.group(1)}***", url)
    return url


def mask_frame(frame: Dict[str, Any]) -> str:
    """Render an outbound WS frame for logs with credentials masked."""
    return json.dumps(mask_params(frame), default=str)[:500]


# ============================================================
# LOG ENTRY STRUCTURES
# ============================================================

def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class RequestLogEntry:
    """Structured log entry for REST requests."""

    timestamp: str
    operation: str
    method: str
    endpoint: str
    request_id: str
    headers: Optional[Dict[str, str]] = None
    params: Optional[Dict[str, Any]] = None
    body_hash: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps({k: v for k, v in asdict(self).items() if v is not None}, default=str)


@dataclass
class ResponseLogEntry:
    """Structured log entry for REST responses."""

    timestamp: str
    operation: str
    request_id: str
    status_code: int
    latency_ms: float
    success: bool
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps({k: v for k, v in asdict(self).items() if v is not None})


@dataclass
class OrderLogEntry:
    """Structured log entry for order placement and cancel."""

    timestamp: str
    operation: str
    client_order_id: str
    order_id: Optional[str] = None
    inst_id: Optional[str] = None
    side: Optional[str] = None
    order_type: Optional[str] = None
    size: Optional[str] = None
    price: Optional[str] = None
    status: Optional[str] = None
    strategy_id: Optional[str] = None
    resolved_by: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps({k: v for k, v in asdict(self).items() if v is not None})


# ============================================================
# CONNECTOR LOGGER
# ============================================================

class ConnectorLogger:
    """
    Structured logger with automatic credential masking.
    """

    def __init__(self, component: str, logger_name: Optional[str] = None):
        self._component = component
        self._logger = logging.getLogger(logger_name or f"exchange_connector.{component}")
        self._request_counter = 0

    def _next_request_id(self) -> str:
        self._request_counter += 1
        return f"{self._component}-{self._request_counter}"

    @staticmethod
    def _hash_body(body: Any) -> Optional[str]:
        if not body:
            return None
        body_str = body if isinstance(body, str) else json.dumps(body, sort_keys=True, default=str)
        return hashlib.sha256(body_str.encode()).hexdigest()[:16]

    def log_request(
        self,
        operation: str,
        method: str,
        endpoint: str,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        body: Any = None,
    ) -> str:
        """
        Log an outgoing REST request.

        Returns:
            Request ID for correlating the response line
        """
        request_id = self._next_request_id()
        entry = RequestLogEntry(
            timestamp=_now(),
            operation=operation,
            method=method,
            endpoint=mask_url(endpoint),
            request_id=request_id,
            headers=mask_headers(headers) if headers else None,
            params=mask_params(params) if params else None,
            body_hash=self._hash_body(body),
        )
        self._logger.debug(f"REQUEST: {entry.to_json()}")
        return request_id

    def log_response(
        self,
        operation: str,
        request_id: str,
        status_code: int,
        latency_ms: float,
        success: bool,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> None:
        entry = ResponseLogEntry(
            timestamp=_now(),
            operation=operation,
            request_id=request_id,
            status_code=status_code,
            latency_ms=round(latency_ms, 2),
            success=success,
            error_code=error_code,
            error_message=error_message[:200] if error_message else None,
        )
        if success:
            self._logger.debug(f"RESPONSE: {entry.to_json()}")
        else:
            self._logger.warning(f"RESPONSE_ERROR: {entry.to_json()}")

    def log_order(self, operation: str, client_order_id: str, **fields: Any) -> None:
        """Log an order operation (place, ack, reconcile, cancel)."""
        values = {k: (str(v) if v is not None else None) for k, v in fields.items()}
        entry = OrderLogEntry(
            timestamp=_now(),
            operation=operation,
            client_order_id=client_order_id,
            **values,
        )
        if entry.error_code:
            self._logger.warning(f"ORDER_ERROR: {entry.to_json()}")
        else:
            self._logger.info(f"ORDER: {entry.to_json()}")


# ============================================================
# SETUP
# ============================================================

def setup_logging(level: str = "INFO") -> None:
    """Configure root logging for command-line use."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
    # aiohttp access/client chatter stays at WARNING.
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
