#!/usr/bin/env python3
"""
TwitchPlatform - Driver Twitch (initialize / cleanup)

Enchaîne :
    1. TwitchAuthManager.initialize()  (store → OAuth → validate)
    2. résolution du broadcaster_id
    3. EventSub WebSocket (nettoyage des subscriptions orphelines, welcome, subscriptions)
    4. StreamMonitor (GET /streams) pour le statut live

Les notifications EventSub passent par EventSubRouter vers les handlers.
"""

import dataclasses
import logging
from typing import Any, Dict, Optional

import aiohttp
import httpx

from core.config import TwitchConfig
from core.exceptions import ConfigurationError
from core.timer_registry import TimerRegistry
from twitchapi.auth_manager import TwitchAuthManager
from twitchapi.eventsub_router import EventSubRouter
from twitchapi.monitors.stream_monitor import StreamMonitor
from twitchapi.transports.eventsub_subscriptions import (
    EventSubSubscriptionManager,
    build_required_subscriptions,
    filter_by_scopes,
)
from twitchapi.transports.eventsub_ws import (
    EVENT_ABANDONED,
    EVENT_CONNECTED,
    EVENT_DISCONNECTED,
    EVENT_SUBSCRIPTION_FAILED,
    EventSubWebSocket,
)
from twitchapi.transports.helix_client import HelixClient

LOGGER = logging.getLogger(__name__)


def _call(handlers, name: str, payload: Dict[str, Any]):
    handler = getattr(handlers, name, None) if handlers is not None else None
    if handler is None:
        return
    try:
        handler(payload)
    except Exception as e:
        LOGGER.error(f"❌ Twitch handler {name} failed: {e}", exc_info=True)


class TwitchPlatform:
    """
    Args:
        config: TwitchConfig
        timers: TimerRegistry de la plateforme
        auth_manager: TwitchAuthManager (construit depuis la config sinon)
        http_client: httpx.AsyncClient partagé pour Helix et /oauth2/validate
        session: aiohttp.ClientSession pour la WebSocket EventSub
    """

    platform = "twitch"
    self_detects_stream = True

    def __init__(
        self,
        config: TwitchConfig,
        timers: Optional[TimerRegistry] = None,
        auth_manager: Optional[TwitchAuthManager] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.config = config
        self.timers = timers or TimerRegistry("twitch")
        self.http_client = http_client
        self.session = session
        self.auth_manager = auth_manager or TwitchAuthManager(
            config, timers=self.timers, http_client=http_client, on_event=self._on_auth_event
        )
        if auth_manager is not None and auth_manager.on_event is None:
            auth_manager.on_event = self._on_auth_event

        self.handlers = None
        self.helix: Optional[HelixClient] = None
        self.subscription_manager: Optional[EventSubSubscriptionManager] = None
        self.router: Optional[EventSubRouter] = None
        self.eventsub: Optional[EventSubWebSocket] = None
        self.stream_monitor: Optional[StreamMonitor] = None
        self.broadcaster_id: Optional[str] = None

    # ========================================================================
    # Initialisation
    # ========================================================================

    async def initialize(self, handlers) -> bool:
        """
        Démarre auth + EventSub + monitor.

        Raises:
            AuthenticationError / ConfigurationError : l'init est abandonnée
        """
        self.handlers = handlers
        LOGGER.info(f"🚀 Initializing Twitch platform for {self.config.username}")

        await self.auth_manager.initialize()

        self.helix = HelixClient(self.config.client_id, self.auth_manager, http_client=self.http_client)
        self.broadcaster_id = await self._resolve_broadcaster_id()

        required, skipped = filter_by_scopes(
            build_required_subscriptions(self.config.eventsub_subscriptions),
            self.auth_manager.scopes,
        )
        if skipped:
            LOGGER.warning(f"⚠️ {len(skipped)} EventSub subscriptions disabled (missing scopes)")

        self.subscription_manager = EventSubSubscriptionManager(self.helix)
        self.router = EventSubRouter(self._router_handlers(handlers))
        self.eventsub = EventSubWebSocket(
            self.auth_manager,
            self.subscription_manager,
            self.router,
            broadcaster_id=self.broadcaster_id,
            required_subscriptions=required,
            timers=self.timers,
            session=self.session,
            on_event=self._on_eventsub_event,
            welcome_timeout_s=self.config.welcome_timeout_s,
            max_retry_attempts=self.config.max_reconnect_attempts,
            retry_delay_ms=self.config.reconnect_delay_ms,
        )
        await self.eventsub.start()

        self.stream_monitor = StreamMonitor(
            self.helix,
            self.broadcaster_id,
            on_status=lambda raw: _call(self.handlers, "on_stream_status", raw),
            timers=self.timers,
            interval=self.config.stream_poll_interval_s,
        )
        await self.stream_monitor.check_now()
        self.stream_monitor.start()

        LOGGER.info(f"✅ Twitch platform initialized (broadcaster {self.broadcaster_id})")
        return True

    async def _resolve_broadcaster_id(self) -> str:
        if self.config.broadcaster_id:
            return self.config.broadcaster_id

        username = (self.config.username or "").lower()
        if self.auth_manager.user_id and (self.auth_manager.login or "").lower() == username:
            return str(self.auth_manager.user_id)

        users = await self.helix.get_users(logins=[username])
        if not users:
            raise ConfigurationError(f"Twitch channel '{self.config.username}' not found")
        LOGGER.info(f"🎯 Auto-detected broadcaster_id for '{username}': {users[0]['id']}")
        return str(users[0]["id"])

    def _router_handlers(self, handlers):
        """stream.online/offline EventSub mettent aussi à jour le StreamMonitor"""
        if not dataclasses.is_dataclass(handlers):
            return handlers
        return dataclasses.replace(handlers, on_stream_status=self._on_eventsub_stream_status)

    def _on_eventsub_stream_status(self, raw: Dict[str, Any]):
        if self.stream_monitor is not None:
            self.stream_monitor.status = "online" if raw.get("isLive") else "offline"
        _call(self.handlers, "on_stream_status", raw)

    # ========================================================================
    # Événements internes
    # ========================================================================

    def _on_eventsub_event(self, event: str, payload: Dict[str, Any]):
        if event == EVENT_CONNECTED:
            _call(self.handlers, "on_connection", {"status": "connected", **payload})
        elif event == EVENT_DISCONNECTED:
            _call(self.handlers, "on_connection", {"status": "disconnected", **payload})
        elif event == EVENT_SUBSCRIPTION_FAILED:
            _call(self.handlers, "on_error", {
                "message": "EventSub subscription setup failed",
                "context": {"failures": payload.get("failures", [])},
            })
        elif event == EVENT_ABANDONED:
            _call(self.handlers, "on_error", {
                "message": f"EventSub reconnection abandoned after {payload.get('attempts')} attempts",
                "context": payload,
            })

    def _on_auth_event(self, event: str, payload: Dict[str, Any]):
        if event == "authentication-required":
            _call(self.handlers, "on_authentication_required", payload)
        elif event == "auth-state":
            LOGGER.debug(f"Twitch auth state: {payload.get('state')}")

    # ========================================================================
    # Status & cleanup
    # ========================================================================

    def is_connected(self) -> bool:
        return self.eventsub is not None and self.eventsub.is_active()

    def get_status(self) -> Dict[str, Any]:
        return {
            "auth": self.auth_manager.get_status(),
            "eventsub": self.eventsub.get_status() if self.eventsub else None,
            "stream": self.stream_monitor.get_state() if self.stream_monitor else None,
            "helix": self.helix.get_stats() if self.helix else None,
        }

    async def cleanup(self):
        LOGGER.info("🛑 Cleaning up Twitch platform...")
        if self.stream_monitor is not None:
            self.stream_monitor.stop()
        if self.eventsub is not None:
            await self.eventsub.stop()
        await self.auth_manager.cleanup()
        LOGGER.info("✅ Twitch platform cleaned up")
