#!/usr/bin/env python3
"""
TwitchAuthManager
Cycle de vie du user token Twitch : chargement, OAuth, validation, refresh.

UNINITIALIZED → INITIALIZING → READY | ERROR

Tous les accès au token passent par AuthStateMachine.execute_when_ready(),
un seul refresh est en vol à la fois.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

import httpx

from core.config import TwitchConfig
from core.exceptions import AuthenticationError, TokenRefreshError
from core.timer_registry import TimerRegistry
from twitchapi.auth_errors import AuthErrorHandler
from twitchapi.auth_state import AuthStateMachine
from twitchapi.oauth_handler import OAuthHandler
from twitchapi.scope_validator import ScopeValidator
from twitchapi.token_refresh import TokenRefreshEngine
from twitchapi.token_store import TokenStore

LOGGER = logging.getLogger(__name__)

REFRESH_THRESHOLD_MS = 5 * 60 * 1000
MAX_REFRESH_ATTEMPTS = 3


class AuthManagerState(Enum):
    UNINITIALIZED = "UNINITIALIZED"
    INITIALIZING = "INITIALIZING"
    READY = "READY"
    ERROR = "ERROR"


def _now_ms() -> int:
    return int(time.time() * 1000)


class TwitchAuthManager:
    """
    Gère le user token Twitch du broadcaster
    - Load/save via TokenStore
    - OAuth si aucun token
    - Refresh planifié + refresh forcé (401)
    - Validation des scopes
    """

    def __init__(
        self,
        config: TwitchConfig,
        token_store: Optional[TokenStore] = None,
        oauth_handler: Optional[OAuthHandler] = None,
        refresh_engine: Optional[TokenRefreshEngine] = None,
        timers: Optional[TimerRegistry] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        on_event: Optional[Callable[[str, Dict[str, Any]], Any]] = None,
    ):
        self.config = config
        self.timers = timers or TimerRegistry("twitch-auth")
        self.token_store = token_store or TokenStore(config.token_store_path, platform="twitch")
        self.oauth_handler = oauth_handler
        self.refresh_engine = refresh_engine or TokenRefreshEngine(
            config.client_id, config.client_secret, timers=self.timers
        )
        self.http_client = http_client
        self.on_event = on_event
        self.error_handler = AuthErrorHandler()
        self.auth_state = AuthStateMachine(refresher=self._refresh_tokens, on_event=self._emit)

        self.state = AuthManagerState.UNINITIALIZED
        self.access_token: Optional[str] = None
        self.refresh_token: Optional[str] = None
        self.expires_at: Optional[int] = None
        self.issued_at: Optional[int] = None
        self.user_id: Optional[str] = None
        self.login: Optional[str] = None
        self.scopes: list = []
        self.last_error: Optional[str] = None
        self._last_analysis: Optional[Dict[str, Any]] = None

        LOGGER.info("TwitchAuthManager initialisé")

    # ========================================================================
    # Initialisation
    # ========================================================================

    async def initialize(self) -> bool:
        """
        Charge les tokens (OAuth si absents), les valide puis planifie le refresh.

        Raises:
            AuthenticationError si aucun token exploitable
        """
        if self.state is AuthManagerState.READY:
            return True

        self.state = AuthManagerState.INITIALIZING
        try:
            record = await self.token_store.load_tokens()
            if record is None or not (record.access_token or record.refresh_token):
                await self._run_oauth()
            else:
                self.access_token, self.refresh_token, self.expires_at = record.as_tuple()
                LOGGER.info("✅ Tokens Twitch chargés depuis le store")

            if not self.access_token:
                if not await self._refresh_tokens():
                    raise AuthenticationError("Unable to obtain a Twitch access token")

            await self._validate()
        except Exception as e:
            self.state = AuthManagerState.ERROR
            self.last_error = str(e)
            LOGGER.error(f"❌ Twitch auth initialization failed: {e}")
            raise

        self.state = AuthManagerState.READY
        self._schedule_refresh()
        LOGGER.info(f"✅ Twitch auth ready ({self.login or 'unknown'}, ID: {self.user_id})")
        return True

    async def _run_oauth(self):
        if self.oauth_handler is None:
            self.oauth_handler = OAuthHandler(
                self.config.client_id,
                self.config.client_secret,
                token_store=self.token_store,
                port=self.config.oauth_port,
                timers=self.timers,
                http_client=self.http_client,
            )
        LOGGER.info("🔐 No stored Twitch tokens, starting OAuth flow")
        tokens = await self.oauth_handler.run_oauth_flow()
        if not tokens:
            self._emit("authentication-required", {"reason": "OAuth flow did not complete", "tokenType": "access"})
            raise AuthenticationError("OAuth flow did not complete")
        self._apply_tokens(tokens)

    async def _validate(self):
        """GET /oauth2/validate ; un 401 déclenche un refresh puis une seconde validation"""
        result = await ScopeValidator.validate_token(self.access_token, http_client=self.http_client)

        if result.get("status") == 401:
            LOGGER.warning("⚠️ Token expiré (401), tentative refresh automatique...")
            if not await self._refresh_tokens():
                raise AuthenticationError("Token validation failed and refresh was unsuccessful")
            result = await ScopeValidator.validate_token(self.access_token, http_client=self.http_client)

        if result.get("missing_critical"):
            raise AuthenticationError(f"Missing required scopes: {', '.join(result['missing_critical'])}")
        if not result.get("valid"):
            raise AuthenticationError(f"Token validation failed: {result.get('error', 'unknown error')}")

        self.user_id = result.get("user_id")
        self.login = result.get("login")
        self.scopes = result.get("scopes", [])
        expires_in = result.get("expires_in")
        if self.expires_at is None and isinstance(expires_in, (int, float)) and expires_in > 0:
            self.issued_at = _now_ms()
            self.expires_at = self.issued_at + int(expires_in * 1000)
        for warning in result.get("warnings", []):
            LOGGER.warning(warning)

    # ========================================================================
    # Accès au token
    # ========================================================================

    def is_ready(self) -> bool:
        return self.state is AuthManagerState.READY

    def get_access_token(self) -> Optional[str]:
        return self.access_token

    def _needs_refresh(self) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at - _now_ms() <= REFRESH_THRESHOLD_MS

    async def ensure_valid_token(self, force_refresh: bool = False) -> str:
        """
        Retourne un access token valide, en le rafraîchissant si forcé ou proche de l'expiration.

        Raises:
            AuthenticationError si le manager n'est pas prêt ou si le refresh échoue
        """
        if self.state not in (AuthManagerState.READY, AuthManagerState.INITIALIZING):
            raise AuthenticationError(f"Twitch auth not ready (state={self.state.value})")

        if force_refresh or self._needs_refresh():
            ok = await self.auth_state.run_refresh()
            if not ok:
                raise TokenRefreshError("Authentication refresh failed", self._last_analysis)

        return await self.auth_state.execute_when_ready(lambda: self.access_token)

    # ========================================================================
    # Refresh
    # ========================================================================

    async def _refresh_tokens(self) -> bool:
        """Refresh avec stratégie de retry (AuthErrorHandler). False si échec définitif."""
        attempt = 0
        while True:
            result = await self.refresh_engine.execute_token_refresh(self.refresh_token)
            if result["success"]:
                self._apply_tokens(result["tokens"])
                await self.token_store.save_tokens(self.access_token, self.refresh_token, self.expires_at)
                self._last_analysis = None
                if self.state is AuthManagerState.READY:
                    self._schedule_refresh()
                return True

            analysis = result.get("analysis") or {}
            self._last_analysis = analysis
            strategy = self.error_handler.create_retry_strategy(analysis, attempt, MAX_REFRESH_ATTEMPTS)
            if not strategy["shouldRetry"]:
                break
            LOGGER.info(f"🔄 {strategy['reason']} in {strategy['delay'] / 1000}s")
            await asyncio.sleep(strategy["delay"] / 1000)
            attempt += 1

        category = analysis.get("category", "unknown")
        self.last_error = result.get("error")
        self.error_handler.log_user_facing_error(category, {"attempts": attempt + 1})
        if analysis.get("severity") == "terminal":
            self._emit("authentication-required", {"reason": category, "tokenType": "refresh"})
        return False

    def _apply_tokens(self, tokens: Dict[str, Any]):
        self.access_token = tokens.get("access_token") or self.access_token
        self.refresh_token = tokens.get("refresh_token") or self.refresh_token
        expires_in = tokens.get("expires_in")
        if isinstance(expires_in, (int, float)) and not isinstance(expires_in, bool):
            self.issued_at = _now_ms()
            self.expires_at = self.issued_at + int(expires_in * 1000)

    def _schedule_refresh(self):
        self.refresh_engine.schedule_refresh(self.expires_at, self._scheduled_refresh, issued_at_ms=self.issued_at)

    async def _scheduled_refresh(self):
        try:
            await self.ensure_valid_token(force_refresh=True)
        except AuthenticationError as e:
            LOGGER.error(f"❌ Scheduled token refresh failed: {e}")

    def _emit(self, event: str, payload: Dict[str, Any]):
        if self.on_event is None:
            return
        try:
            self.on_event(event, payload)
        except Exception as e:
            LOGGER.debug(f"Auth event listener failed: {e}")

    # ========================================================================
    # Status & cleanup
    # ========================================================================

    def get_status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "auth_state": self.auth_state.get_state(),
            "user_id": self.user_id,
            "login": self.login,
            "has_access_token": bool(self.access_token),
            "has_refresh_token": bool(self.refresh_token),
            "expires_at": self.expires_at,
            "scopes": list(self.scopes),
            "last_error": self.last_error,
            "refresh": self.refresh_engine.get_stats(),
        }

    async def cleanup(self):
        self.refresh_engine.cancel_scheduled_refresh()
        self.auth_state.clear_queue("Auth manager shutting down")
        if self.oauth_handler is not None:
            await self.oauth_handler.cleanup()
        self.state = AuthManagerState.UNINITIALIZED
        LOGGER.info("🛑 TwitchAuthManager cleaned up")
