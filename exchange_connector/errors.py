"""
Exchange Connector - Errors.

============================================================
PURPOSE
============================================================
Exception hierarchy for the duplex connector and OKX error
code classification.

============================================================
EXCEPTION HIERARCHY
============================================================
ConnectorError (base)
├── MalformedFrame        - inbound frame failed decoding
├── SessionNotReady       - session not in READY state
├── RequestTimeout        - deadline elapsed before completion
├── RequestCanceled       - caller-initiated cancellation
├── SessionDisconnected   - session lost before completion
├── SessionAborted        - shutdown
├── OutboundBackpressure  - outbound queue full
├── DuplicateRequest      - correlation key already pending
├── LoginFailed           - private login rejected
├── UnsupportedOperation  - operation unavailable in this mode
├── VenueError            - venue rejected the command
└── RestError             - REST side channel failure

============================================================
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple


# ============================================================
# ERROR TAXONOMY
# ============================================================

class ErrorCategory(Enum):
    """Standardized venue error categories."""

    NETWORK = "NETWORK"
    RATE_LIMIT = "RATE_LIMIT"
    AUTHENTICATION = "AUTHENTICATION"
    INVALID_ORDER = "INVALID_ORDER"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    INSUFFICIENT_MARGIN = "INSUFFICIENT_MARGIN"
    EXCHANGE_ERROR = "EXCHANGE_ERROR"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    SYMBOL_NOT_FOUND = "SYMBOL_NOT_FOUND"
    INVALID_QUANTITY = "INVALID_QUANTITY"
    INVALID_PRICE = "INVALID_PRICE"
    MIN_NOTIONAL = "MIN_NOTIONAL"
    TIMEOUT = "TIMEOUT"
    UNKNOWN = "UNKNOWN"


class RetryEligibility(Enum):
    """Whether the caller may reissue the command."""

    RETRY = "RETRY"           # Safe to retry
    NO_RETRY = "NO_RETRY"     # Should not retry
    BACKOFF = "BACKOFF"       # Retry with exponential backoff


# OKX error codes to unified category
OKX_ERROR_MAP: Dict[str, Tuple[ErrorCategory, RetryEligibility]] = {
    # Rate limiting
    "50011": (ErrorCategory.RATE_LIMIT, RetryEligibility.BACKOFF),
    "50013": (ErrorCategory.RATE_LIMIT, RetryEligibility.BACKOFF),

    # Authentication
    "50101": (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),
    "50102": (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),
    "50103": (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),
    "50104": (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),
    "50105": (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),
    "50111": (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),
    "60009": (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),
    "60024": (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),

    # Order validation
    "51000": (ErrorCategory.INVALID_ORDER, RetryEligibility.NO_RETRY),
    "51001": (ErrorCategory.SYMBOL_NOT_FOUND, RetryEligibility.NO_RETRY),
    "51006": (ErrorCategory.INVALID_PRICE, RetryEligibility.NO_RETRY),
    "51008": (ErrorCategory.INSUFFICIENT_FUNDS, RetryEligibility.NO_RETRY),
    "51020": (ErrorCategory.MIN_NOTIONAL, RetryEligibility.NO_RETRY),
    "51121": (ErrorCategory.INVALID_QUANTITY, RetryEligibility.NO_RETRY),
    "51400": (ErrorCategory.ORDER_NOT_FOUND, RetryEligibility.NO_RETRY),
    "51401": (ErrorCategory.ORDER_NOT_FOUND, RetryEligibility.NO_RETRY),
    "51603": (ErrorCategory.ORDER_NOT_FOUND, RetryEligibility.NO_RETRY),

    # Insufficient margin
    "51119": (ErrorCategory.INSUFFICIENT_MARGIN, RetryEligibility.NO_RETRY),

    # Venue internal
    "50001": (ErrorCategory.EXCHANGE_ERROR, RetryEligibility.RETRY),
    "50004": (ErrorCategory.TIMEOUT, RetryEligibility.RETRY),
    "50026": (ErrorCategory.EXCHANGE_ERROR, RetryEligibility.RETRY),
}


def classify_okx_code(
    code: str,
    http_status: Optional[int] = None,
) -> Tuple[ErrorCategory, RetryEligibility]:
    """
    Classify an OKX error code.

    Args:
        code: OKX error code (sCode or code)
        http_status: HTTP status code, REST only

    Returns:
        (category, retry eligibility)
    """
    if code in OKX_ERROR_MAP:
        return OKX_ERROR_MAP[code]
    if http_status == 429:
        return ErrorCategory.RATE_LIMIT, RetryEligibility.BACKOFF
    if http_status in (401, 403):
        return ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY
    if http_status and http_status >= 500:
        return ErrorCategory.EXCHANGE_ERROR, RetryEligibility.RETRY
    return ErrorCategory.UNKNOWN, RetryEligibility.NO_RETRY


# ============================================================
# BASE EXCEPTION
# ============================================================

class ConnectorError(Exception):
    """
    Base exception for all connector errors.

    Carries a context dict for debugging and the time the error
    was raised.
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)

        self.message = message
        self.context = context or {}
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

        if cause:
            self.context["cause_type"] = type(cause).__name__
            self.context["cause_message"] = str(cause)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging."""
        return {
            "type": type(self).__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "cause": str(self.cause) if self.cause else None,
        }


# ============================================================
# LOCAL ERRORS
# ============================================================

class MalformedFrame(ConnectorError):
    """Inbound frame could not be decoded."""


class SessionNotReady(ConnectorError):
    """Session is not in the READY state."""

    def __init__(self, session: str, state: str, **kwargs):
        context = kwargs.pop("context", {})
        context.update({"session": session, "state": state})
        super().__init__(f"Session {session} not ready (state={state})", context=context, **kwargs)
        self.session = session
        self.state = state


class OutboundBackpressure(ConnectorError):
    """Outbound writer queue is full."""


class DuplicateRequest(ConnectorError):
    """A pending request already holds this correlation key."""

    def __init__(self, key: str, **kwargs):
        super().__init__(f"Request already pending for key {key}", context={"key": key}, **kwargs)
        self.key = key


class UnsupportedOperation(ConnectorError):
    """Operation unavailable in the configured connection mode."""


# ============================================================
# REQUEST OUTCOMES
# ============================================================

class RequestTimeout(ConnectorError):
    """Deadline elapsed before the request completed."""

    def __init__(self, key: str, timeout: float, **kwargs):
        super().__init__(
            f"Request {key} timed out after {timeout:.1f}s",
            context={"key": key, "timeout": timeout},
            **kwargs,
        )
        self.key = key
        self.timeout = timeout


class RequestCanceled(ConnectorError):
    """Caller canceled the request."""


class SessionDisconnected(ConnectorError):
    """Session dropped before the request completed."""


class SessionAborted(ConnectorError):
    """Session was closed before the request completed."""


class LoginFailed(ConnectorError):
    """Private session login was rejected."""

    def __init__(self, code: str, message: str, **kwargs):
        super().__init__(
            f"Login failed: {code} {message}",
            context={"code": code, "msg": message},
            **kwargs,
        )
        self.code = code
        self.venue_message = message


# ============================================================
# VENUE ERRORS
# ============================================================

class VenueError(ConnectorError):
    """
    Venue rejected the command.

    Attributes:
        code: venue status code (sCode or code)
        venue_message: venue message (sMsg or msg), may be empty
        category: unified category from the OKX code table
        retry: whether reissuing is reasonable
    """

    def __init__(
        self,
        code: str,
        message: str = "",
        http_status: Optional[int] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        context.update({"code": code, "msg": message})
        if http_status is not None:
            context["http_status"] = http_status

        super().__init__(f"[OKX {code}] {message}".rstrip(), context=context, **kwargs)

        self.code = str(code)
        self.venue_message = message or ""
        self.http_status = http_status
        self.category, self.retry = classify_okx_code(self.code, http_status)

    @property
    def is_retryable(self) -> bool:
        """Check if reissuing is reasonable."""
        return self.retry in (RetryEligibility.RETRY, RetryEligibility.BACKOFF)


class RestError(VenueError):
    """REST side channel failure (network, timeout, or non-zero code)."""

    def __init__(self, code: str, message: str = "", path: str = "", **kwargs):
        context = kwargs.pop("context", {})
        if path:
            context["path"] = path
        super().__init__(code, message, context=context, **kwargs)
        self.path = path
        if code == "NETWORK":
            self.category, self.retry = ErrorCategory.NETWORK, RetryEligibility.RETRY
        elif code == "TIMEOUT":
            self.category, self.retry = ErrorCategory.TIMEOUT, RetryEligibility.RETRY
