"""
🩺 Auth Error Handler - Analyse des échecs de refresh Twitch

analyze_refresh_error(error) → {category, severity, recoverable, action?, retryAfter?}

Catégories : token_limit_exceeded, invalid_refresh_token, expired_refresh_token,
rate_limited, network_error, server_error, unknown.
Les catégories terminales exigent une ré-authentification (OAuth).
"""
import logging
from typing import Any, Dict, Optional

from core import error_classifier
from core.error_classifier import ERROR_PATTERNS, error_code, error_details

LOGGER = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER_S = 60

USER_MESSAGES = {
    "invalid_refresh_token": {
        "title": "Token refresh failed: Invalid refresh token",
        "message": "Re-authentication required - please run the OAuth flow again",
    },
    "expired_refresh_token": {
        "title": "Refresh token expired",
        "message": "Manual re-authentication required - refresh token has expired",
    },
    "token_limit_exceeded": {
        "title": "Token limit exceeded",
        "message": "Maximum of 50 valid access tokens per refresh token reached - re-authentication required",
    },
    "rate_limited": {
        "title": "Rate limited by Twitch API",
        "message": "Please try again in a few moments",
    },
    "network_error": {
        "title": "Network error during authentication",
        "message": "Please check your internet connection",
    },
    "server_error": {
        "title": "Twitch server error during token refresh",
        "message": "Please try again in a few moments",
    },
}


def _terminal(category: str, action: Optional[str] = "oauth_required") -> Dict[str, Any]:
    result = {"category": category, "severity": "terminal", "recoverable": False}
    if action:
        result["action"] = action
    return result


def _retry_after(headers: Dict[str, Any]) -> float:
    for key, value in headers.items():
        if key.lower() == "retry-after":
            try:
                return float(value)
            except (TypeError, ValueError):
                break
    return DEFAULT_RETRY_AFTER_S


class AuthErrorHandler:
    """Spécialisation du classifieur pour les erreurs de refresh OAuth"""

    USER_MESSAGES = USER_MESSAGES

    def analyze_error(self, error: Any) -> Dict[str, Any]:
        return error_classifier.analyze_error(error)

    def analyze_refresh_error(self, error: Any) -> Dict[str, Any]:
        """Règles évaluées dans l'ordre, la première qui matche gagne"""
        details = error_details(error)
        status = details["status"]
        data = details["data"] if isinstance(details["data"], dict) else {}
        message = (
            data.get("message")
            or data.get("error_description")
            or (str(error) if isinstance(error, BaseException) else "")
            or (error.get("message", "") if isinstance(error, dict) else "")
            or (error if isinstance(error, str) else "")
        )
        lower = str(message).lower()
        has_refresh_pattern = any(p.lower() in lower for p in ERROR_PATTERNS["TWITCH_REFRESH"])

        if "50 valid access tokens" in lower:
            return _terminal("token_limit_exceeded")

        if data.get("error") == "invalid_grant":
            return _terminal("invalid_refresh_token")

        if status == 400 and "invalid refresh token" in lower and not data.get("error"):
            return _terminal("expired_refresh_token")

        if status == 400 or has_refresh_pattern:
            return _terminal("invalid_refresh_token")

        if status == 401 or data.get("error") == "unauthorized" or "token has been revoked" in lower:
            return _terminal("expired_refresh_token")

        if status == 429:
            return {
                "category": "rate_limited",
                "severity": "recoverable",
                "recoverable": True,
                "retryAfter": _retry_after(details["headers"]),
            }

        if error_code(error) in ("ECONNREFUSED", "ETIMEDOUT"):
            return {"category": "network_error", "severity": "recoverable", "recoverable": True}

        if isinstance(status, int) and status >= 500:
            return _terminal("server_error", action=None)

        return {"category": "unknown", "severity": "unknown", "recoverable": False}

    def is_refreshable_error(self, error: Any) -> bool:
        analysis = self.analyze_error(error)
        if analysis["statusCode"] in (401, 403):
            LOGGER.debug(f"[AUTH] Detected {analysis['statusCode']} response - token refresh needed")
            return True
        if analysis["isNetworkError"]:
            LOGGER.debug("[AUTH] Network error detected - token refresh might help with retry")
            return True
        if analysis["isAuthError"]:
            LOGGER.debug("[AUTH] Authentication error detected - token refresh needed")
            return True
        return analysis["isRefreshable"]

    def create_retry_strategy(self, analysis: Dict[str, Any], current_attempt: int = 0,
                              max_attempts: int = 3) -> Dict[str, Any]:
        """
        Délai avant nouvelle tentative de refresh.

        rate_limited : retryAfter s | network_error : 2^(n+1) s | sinon (n+1) s
        """
        if not analysis.get("recoverable") or current_attempt >= max_attempts:
            return {
                "shouldRetry": False,
                "delay": 0,
                "reason": "Max attempts reached" if analysis.get("recoverable") else "Error not recoverable",
            }

        category = analysis.get("category")
        if category == "rate_limited":
            delay = (analysis.get("retryAfter") or DEFAULT_RETRY_AFTER_S) * 1000
        elif category == "network_error":
            delay = (2 ** (current_attempt + 1)) * 1000
        else:
            delay = (current_attempt + 1) * 1000

        return {
            "shouldRetry": True,
            "delay": delay,
            "reason": f"Retry {current_attempt + 1}/{max_attempts} for {category}",
        }

    def log_user_facing_error(self, category: str, context: Optional[Dict[str, Any]] = None):
        user_message = USER_MESSAGES.get(category)
        if user_message:
            LOGGER.error(f"❌ {user_message['title']} ({context or {}})")
            LOGGER.info(user_message["message"])
        else:
            LOGGER.error(f"❌ Authentication error: {category} ({context or {}})")

    def format_error_for_debugging(self, error: Any, context: str = "unknown") -> Dict[str, Any]:
        details = error_details(error)
        return {
            "context": context,
            "message": error_classifier.extract_error_message(error),
            "statusCode": details["status"],
            "errorCode": error_code(error),
            "hasResponse": details["status"] is not None,
            "responseData": details["data"],
        }
