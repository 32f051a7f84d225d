"""
Error Taxonomy Tests.

============================================================
PURPOSE
============================================================
OKX code classification and error payloads.

============================================================
"""

from exchange_connector.errors import (
    ErrorCategory,
    RestError,
    RetryEligibility,
    SessionNotReady,
    VenueError,
    classify_okx_code,
)


class TestClassify:
    """Tests for classify_okx_code()."""

    def test_known_codes(self):
        assert classify_okx_code("51008") == (ErrorCategory.INSUFFICIENT_FUNDS, RetryEligibility.NO_RETRY)
        assert classify_okx_code("50011") == (ErrorCategory.RATE_LIMIT, RetryEligibility.BACKOFF)

    def test_http_fallbacks(self):
        assert classify_okx_code("x", 429)[0] == ErrorCategory.RATE_LIMIT
        assert classify_okx_code("x", 403)[0] == ErrorCategory.AUTHENTICATION
        assert classify_okx_code("x", 503)[1] == RetryEligibility.RETRY
        assert classify_okx_code("x") == (ErrorCategory.UNKNOWN, RetryEligibility.NO_RETRY)


class TestErrors:
    """Tests for error payloads."""

    def test_venue_error(self):
        error = VenueError("51008", "Insufficient balance", context={"client_order_id": "c1"})

        assert error.code == "51008"
        assert error.venue_message == "Insufficient balance"
        assert not error.is_retryable
        assert error.context["client_order_id"] == "c1"
        assert error.to_dict()["context"]["code"] == "51008"

    def test_venue_error_blank_message(self):
        assert VenueError("1").venue_message == ""

    def test_rest_network_error_is_retryable(self):
        error = RestError("NETWORK", "connection reset", path="/api/v5/trade/order")

        assert error.category == ErrorCategory.NETWORK
        assert error.is_retryable
        assert error.context["path"] == "/api/v5/trade/order"

    def test_session_not_ready(self):
        error = SessionNotReady("private", "RECONNECTING")
        assert "RECONNECTING" in str(error)
