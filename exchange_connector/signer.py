"""
Exchange Connector - Request Signing.

============================================================
PURPOSE
============================================================
OKX signature: BASE64(HMAC-SHA256(timestamp + METHOD + path + body))

Used for:
- Private WebSocket login (epoch-seconds timestamp,
  GET /users/self/verify)
- REST headers (ISO-8601 timestamp)

All functions are pure; callers supply the timestamp.

============================================================
"""

import base64
import hashlib
import hmac
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .config import Credentials


LOGIN_METHOD = "GET"
LOGIN_PATH = "/users/self/verify"


def sign(
    timestamp: str,
    method: str,
    request_path: str,
    body: str,
    secret: str,
) -> str:
    """
    Create request signature.

    Args:
        timestamp: ISO-8601 (REST) or epoch seconds (login)
        method: HTTP method, upper-cased before signing
        request_path: Path including query string
        body: Request body (JSON string), empty for GET
        secret: API secret

    Returns:
        Base64 encoded signature
    """
    message = f"{timestamp}{method.upper()}{request_path}{body or ''}"
    digest = hmac.new(
        secret.encode(),
        message.encode(),
        hashlib.sha256,
    ).digest()
    return base64.b64encode(digest).decode()


def iso_timestamp(now: Optional[datetime] = None) -> str:
    """ISO timestamp with millisecond precision, e.g. 2020-12-08T09:08:57.715Z."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def epoch_timestamp(now: Optional[datetime] = None) -> str:
    """Unix epoch seconds as used by the WebSocket login."""
    now = now or datetime.now(timezone.utc)
    return str(int(now.timestamp()))


def login_frame(credentials: Credentials, timestamp: str) -> Dict[str, Any]:
    """Build the private session login frame."""
    return {
        "op": "login",
        "args": [{
            "apiKey": credentials.api_key,
            "passphrase": credentials.passphrase,
            "timestamp": timestamp,
            "sign": sign(timestamp, LOGIN_METHOD, LOGIN_PATH, "", credentials.api_secret),
        }],
    }


def rest_headers(
    credentials: Credentials,
    method: str,
    request_path: str,
    body: str,
    timestamp: str,
    simulated: bool = False,
) -> Dict[str, str]:
    """Build authenticated REST headers."""
    headers = {
        "Content-Type": "application/json",
        "OK-ACCESS-KEY": credentials.api_key,
        "OK-ACCESS-SIGN": sign(timestamp, method, request_path, body, credentials.api_secret),
        "OK-ACCESS-TIMESTAMP": timestamp,
        "OK-ACCESS-PASSPHRASE": credentials.passphrase,
    }
    if simulated:
        headers["x-simulated-trading"] = "1"
    return headers
