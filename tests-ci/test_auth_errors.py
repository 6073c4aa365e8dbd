"""
Tests de l'AuthErrorHandler (twitchapi/auth_errors.py)
Règles de classification des échecs de refresh, évaluées dans l'ordre
"""
import asyncio

import pytest

from twitchapi.auth_errors import AuthErrorHandler


def _response_error(status, data=None, headers=None):
    return {"response": {"status": status, "data": data or {}, "headers": headers or {}}}


@pytest.fixture
def handler():
    return AuthErrorHandler()


@pytest.mark.unit
class TestAnalyzeRefreshError:

    def test_token_limit_wins_first(self, handler):
        error = _response_error(400, {"error": "invalid_grant", "message": "Maximum of 50 valid access tokens reached"})
        result = handler.analyze_refresh_error(error)
        assert result == {
            "category": "token_limit_exceeded",
            "severity": "terminal",
            "recoverable": False,
            "action": "oauth_required",
        }

    def test_invalid_grant(self, handler):
        result = handler.analyze_refresh_error(_response_error(400, {"error": "invalid_grant"}))
        assert result["category"] == "invalid_refresh_token"

    def test_400_invalid_refresh_token_without_error_field(self, handler):
        result = handler.analyze_refresh_error(_response_error(400, {"message": "Invalid refresh token"}))
        assert result["category"] == "expired_refresh_token"
        assert result["severity"] == "terminal"

    def test_plain_400(self, handler):
        result = handler.analyze_refresh_error(_response_error(400, {"error": "invalid_request", "message": "missing"}))
        assert result["category"] == "invalid_refresh_token"

    def test_revoked(self, handler):
        assert handler.analyze_refresh_error(_response_error(401))["category"] == "expired_refresh_token"
        assert handler.analyze_refresh_error("Token has been revoked")["category"] == "invalid_refresh_token"
        assert handler.analyze_refresh_error(_response_error(403, {"error": "unauthorized"}))["category"] == "expired_refresh_token"

    def test_rate_limited_retry_after(self, handler):
        result = handler.analyze_refresh_error(_response_error(429, headers={"Retry-After": "15"}))
        assert result == {"category": "rate_limited", "severity": "recoverable", "recoverable": True, "retryAfter": 15.0}
        assert handler.analyze_refresh_error(_response_error(429))["retryAfter"] == 60

    def test_network_errors(self, handler):
        assert handler.analyze_refresh_error(ConnectionRefusedError())["category"] == "network_error"
        assert handler.analyze_refresh_error(asyncio.TimeoutError())["category"] == "network_error"

    def test_server_error_is_terminal(self, handler):
        result = handler.analyze_refresh_error(_response_error(503))
        assert result == {"category": "server_error", "severity": "terminal", "recoverable": False}

    def test_unknown(self, handler):
        assert handler.analyze_refresh_error(ValueError("odd"))["category"] == "unknown"


@pytest.mark.unit
class TestRetryStrategy:

    def test_not_recoverable(self, handler):
        strategy = handler.create_retry_strategy({"category": "server_error", "recoverable": False})
        assert strategy["shouldRetry"] is False
        assert strategy["reason"] == "Error not recoverable"

    def test_max_attempts(self, handler):
        strategy = handler.create_retry_strategy({"category": "network_error", "recoverable": True}, 3, 3)
        assert strategy == {"shouldRetry": False, "delay": 0, "reason": "Max attempts reached"}

    def test_delays_by_category(self, handler):
        rate = {"category": "rate_limited", "recoverable": True, "retryAfter": 15}
        network = {"category": "network_error", "recoverable": True}
        other = {"category": "other", "recoverable": True}

        assert handler.create_retry_strategy(rate, 0)["delay"] == 15000
        assert handler.create_retry_strategy(network, 0)["delay"] == 2000
        assert handler.create_retry_strategy(network, 2)["delay"] == 8000
        assert handler.create_retry_strategy(other, 1)["delay"] == 2000


@pytest.mark.unit
class TestHelpers:

    def test_is_refreshable_on_401(self, handler):
        assert handler.is_refreshable_error(_response_error(401)) is True
        assert handler.is_refreshable_error("weird") is False

    def test_debug_format(self, handler):
        formatted = handler.format_error_for_debugging(_response_error(500, {"message": "down"}), "refresh")
        assert formatted["context"] == "refresh"
        assert formatted["statusCode"] == 500
        assert formatted["hasResponse"] is True
