"""
🔄 Token Refresh Engine - Refresh OAuth Twitch (planifié et à la demande)

POST https://id.twitch.tv/oauth2/token (application/x-www-form-urlencoded)
    grant_type=refresh_token&refresh_token=...&client_id=...&client_secret=...

Planification : refresh à expiresAt - max(5 min, 10% de la durée de vie).
Politique 401 : une requête API en 401 force un refresh puis est rejouée une seule fois.
"""
import asyncio
import logging
import math
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp

from core.error_classifier import error_details
from core.timer_registry import TimerRegistry
from twitchapi.auth_errors import AuthErrorHandler

LOGGER = logging.getLogger(__name__)

TOKEN_URL = "https://id.twitch.tv/oauth2/token"
REFRESH_TIMER_NAME = "twitch:token-refresh"
MIN_REFRESH_BUFFER_MS = 5 * 60 * 1000
LIFETIME_BUFFER_RATIO = 0.10


def _now_ms() -> int:
    return int(time.time() * 1000)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


class TokenRefreshEngine:
    """
    Args:
        client_id / client_secret: Identifiants de l'application Twitch
        session: aiohttp.ClientSession partagée (une session par appel sinon)
        timers: TimerRegistry pour le refresh planifié
    """

    def __init__(self, client_id: str, client_secret: str,
                 session: Optional[aiohttp.ClientSession] = None,
                 timers: Optional[TimerRegistry] = None):
        self.client_id = client_id
        self.client_secret = client_secret
        self.session = session
        self.timers = timers or TimerRegistry("twitch-auth")
        self.error_handler = AuthErrorHandler()
        self.refresh_count = 0
        self.last_refresh_at: Optional[int] = None

    # ========================================================================
    # Refresh
    # ========================================================================

    async def execute_token_refresh(self, refresh_token: str) -> Dict[str, Any]:
        """
        Échange un refresh token contre une nouvelle paire.

        Returns:
            {"success": True, "tokens": {...}} ou {"success": False, "error": str, "analysis": {...}}
        """
        if not refresh_token:
            return {"success": False, "error": "No refresh token available",
                    "analysis": {"category": "invalid_refresh_token", "severity": "terminal",
                                 "recoverable": False, "action": "oauth_required"}}

        form = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }

        try:
            status, headers, data = await self._post(form)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            analysis = self.error_handler.analyze_refresh_error(e)
            LOGGER.error(f"❌ Token refresh request failed: {e} ({analysis['category']})")
            return {"success": False, "error": str(e) or type(e).__name__, "analysis": analysis}

        if 200 <= status < 300:
            tokens = data if isinstance(data, dict) else {}
            if not tokens.get("access_token") or not tokens.get("refresh_token") or not _is_number(tokens.get("expires_in")):
                LOGGER.error("❌ Token refresh response missing access_token, refresh_token or expires_in")
                return {"success": False, "error": "Invalid token refresh response",
                        "analysis": {"category": "unknown", "severity": "unknown", "recoverable": False}}

            self.refresh_count += 1
            self.last_refresh_at = _now_ms()
            LOGGER.info(f"✅ Token refreshed (expires in {tokens['expires_in']}s)")
            return {"success": True, "tokens": tokens}

        failure = {"status": status, "data": data if isinstance(data, dict) else {"message": str(data or "")},
                   "headers": headers}
        analysis = self.error_handler.analyze_refresh_error(failure)
        message = failure["data"].get("message") or failure["data"].get("error") or f"HTTP {status}"
        LOGGER.error(f"❌ Token refresh failed: HTTP {status} {message} ({analysis['category']})")
        return {"success": False, "error": message, "status": status, "analysis": analysis}

    async def _post(self, form: Dict[str, str]):
        if self.session is not None:
            return await self._send(self.session, form)
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=15)) as session:
            return await self._send(session, form)

    @staticmethod
    async def _send(session, form: Dict[str, str]):
        async with session.post(TOKEN_URL, data=form) as resp:
            try:
                data = await resp.json(content_type=None)
            except ValueError:
                data = {"message": await resp.text()}
            return resp.status, dict(resp.headers), data

    # ========================================================================
    # Planification
    # ========================================================================

    def calculate_refresh_scheduling(self, expires_at_ms: Optional[float], now_ms: Optional[int] = None,
                                     issued_at_ms: Optional[int] = None) -> Dict[str, Any]:
        """
        Returns:
            {"canSchedule": bool, "delayMs": int, "reason": str}
        """
        if not _is_number(expires_at_ms):
            return {"canSchedule": False, "delayMs": 0, "reason": "No expiration time available"}

        now = _now_ms() if now_ms is None else now_ms
        issued = issued_at_ms if _is_number(issued_at_ms) else now
        lifetime = max(0, expires_at_ms - issued)
        buffer_ms = max(MIN_REFRESH_BUFFER_MS, int(lifetime * LIFETIME_BUFFER_RATIO))
        refresh_at = expires_at_ms - buffer_ms
        delay = int(refresh_at - now)

        if delay <= 0:
            return {"canSchedule": True, "delayMs": 0, "reason": "Token expires soon, refreshing immediately"}
        return {"canSchedule": True, "delayMs": delay, "reason": f"Refresh scheduled {buffer_ms // 1000}s before expiry"}

    def schedule_refresh(self, expires_at_ms: Optional[float], callback: Callable[[], Awaitable[Any]],
                         issued_at_ms: Optional[int] = None) -> Dict[str, Any]:
        plan = self.calculate_refresh_scheduling(expires_at_ms, issued_at_ms=issued_at_ms)
        if not plan["canSchedule"]:
            LOGGER.warning(f"⚠️ Cannot schedule token refresh: {plan['reason']}")
            return plan
        self.timers.create_timeout(REFRESH_TIMER_NAME, callback, plan["delayMs"], timer_type="auth")
        LOGGER.info(f"📌 Token refresh in {plan['delayMs'] // 1000}s ({plan['reason']})")
        return plan

    def cancel_scheduled_refresh(self) -> bool:
        return self.timers.clear_interval(REFRESH_TIMER_NAME)

    # ========================================================================
    # Politique 401
    # ========================================================================

    async def request_with_auth_retry(self, request_fn: Callable[[], Awaitable[Any]],
                                      ensure_valid_token: Callable[..., Awaitable[Any]]) -> Any:
        return await request_with_auth_retry(request_fn, ensure_valid_token)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "refresh_count": self.refresh_count,
            "last_refresh_at": self.last_refresh_at,
            "refresh_scheduled": self.timers.has_interval(REFRESH_TIMER_NAME),
        }


async def request_with_auth_retry(request_fn: Callable[[], Awaitable[Any]],
                                  ensure_valid_token: Callable[..., Awaitable[Any]]) -> Any:
    """Exécute request_fn ; sur 401 force un refresh et rejoue exactement une fois"""
    try:
        return await request_fn()
    except Exception as e:
        if error_details(e)["status"] != 401:
            raise
        LOGGER.warning("⚠️ API request returned 401, forcing token refresh")

    await ensure_valid_token(force_refresh=True)
    return await request_fn()
