#!/usr/bin/env python3
"""
TikTokPlatform - Driver TikTok (WebCast)

Le client WebCast est injecté :

    client_factory(username, emit) -> client   (client.connect() / client.disconnect())

Le client appelle emit(event_name, raw) pour chaque événement WebCast.
connect() bloque jusqu'au passage en live : l'orchestrateur initialise donc
TikTok en arrière-plan. Une déconnexion non demandée passe par le RetryScheduler.
"""

import logging
from typing import Any, Callable, Dict, Optional

from core.async_utils import maybe_await
from core.config import TikTokConfig
from core.error_classifier import extract_error_message
from core.retry_scheduler import RetryScheduler
from core.timer_registry import TimerRegistry
from events.timestamps import now_iso, resolve_tiktok_timestamp

LOGGER = logging.getLogger(__name__)

EVENT_HANDLERS = {
    "chat": "on_chat",
    "gift": "on_gift",
    "follow": "on_follow",
    "share": "on_share",
    "subscribe": "on_paypiggy",
    "superfan": "on_paypiggy",
    "envelope": "on_envelope",
}

# comboType 1 : gift en série, seul l'événement repeatEnd=True est émis
COMBO_GIFT_TYPE = 1


class TikTokPlatform:
    """
    Args:
        config: TikTokConfig
        client_factory: Construit le client WebCast pour un username
        retry_scheduler: RetryScheduler partagé (reconnexion après déconnexion)
        timers: TimerRegistry de la plateforme
    """

    platform = "tiktok"
    self_detects_stream = True

    def __init__(
        self,
        config: TikTokConfig,
        client_factory: Callable[[str, Callable[[str, Dict[str, Any]], None]], Any],
        retry_scheduler: Optional[RetryScheduler] = None,
        timers: Optional[TimerRegistry] = None,
    ):
        self.config = config
        self.client_factory = client_factory
        self.timers = timers or TimerRegistry("tiktok")
        self.retry_scheduler = retry_scheduler or RetryScheduler(timers=self.timers)
        self.handlers = None
        self.client = None
        self.connected = False
        self._shutting_down = False

    async def initialize(self, handlers) -> bool:
        self.handlers = handlers
        self._shutting_down = False
        await self.connect()
        return True

    async def connect(self):
        """Connexion WebCast (bloquante jusqu'au live)"""
        LOGGER.info(f"🚀 Connecting to TikTok live of @{self.config.username}...")
        if self.client is None:
            self.client = await maybe_await(self.client_factory(self.config.username, self.dispatch))
        await maybe_await(self.client.connect())
        self.connected = True
        self.retry_scheduler.handle_connection_success("tiktok", f"@{self.config.username}")
        self._call("on_connection", {"status": "connected"})
        self._call("on_stream_status", {"isLive": True, "status": "live", "timestamp": now_iso()})

    # ========================================================================
    # Événements WebCast
    # ========================================================================

    def dispatch(self, event_name: str, raw: Dict[str, Any]) -> bool:
        if event_name == "roomUser":
            count = (raw or {}).get("viewerCount")
            return self._call("on_viewer_count", {
                "count": count,
                "timestamp": resolve_tiktok_timestamp(raw) or now_iso(),
            })
        if event_name == "streamEnd":
            self._call("on_stream_status", {"isLive": False, "status": "ended", "timestamp": now_iso()})
            return True
        if event_name == "disconnected":
            self._on_disconnected(raw)
            return True

        handler_name = EVENT_HANDLERS.get(event_name)
        if handler_name is None:
            LOGGER.debug(f"Ignoring TikTok event {event_name}")
            return False
        if not isinstance(raw, dict):
            return False

        if event_name == "gift" and raw.get("comboType") == COMBO_GIFT_TYPE and not raw.get("repeatEnd"):
            LOGGER.debug(f"[TikTok Gift] Streak in progress: {raw.get('giftType')} x{raw.get('repeatCount')}")
            return False
        if event_name == "superfan":
            raw = {**raw, "isSuperfan": True}
        return self._call(handler_name, raw)

    def _on_disconnected(self, raw: Optional[Dict[str, Any]]):
        was_connected, self.connected = self.connected, False
        if self._shutting_down or not was_connected:
            return
        reason = (raw or {}).get("reason") or "connection lost"
        LOGGER.warning(f"⚠️ TikTok disconnected: {reason}")
        self._call("on_connection", {"status": "disconnected", "reason": reason})
        self.timers.create_timeout(
            "tiktok:handle-disconnect",
            lambda: self.retry_scheduler.handle_connection_error(
                "tiktok", reason, self.connect, cleanup=self._disconnect_client
            ),
            0,
            timer_type="reconnect",
        )

    def _call(self, name: str, payload: Dict[str, Any]) -> bool:
        handler = getattr(self.handlers, name, None) if self.handlers is not None else None
        if handler is None:
            return False
        try:
            handler(payload)
        except Exception as e:
            LOGGER.error(f"❌ TikTok handler {name} failed: {e}", exc_info=True)
            return False
        return True

    # ========================================================================
    # Status & cleanup
    # ========================================================================

    async def _disconnect_client(self):
        client, self.client = self.client, None
        if client is None:
            return
        try:
            await maybe_await(client.disconnect())
        except Exception as e:
            LOGGER.debug(f"Error disconnecting TikTok client: {extract_error_message(e)}")

    def is_connected(self) -> bool:
        return self.connected

    def get_status(self) -> Dict[str, Any]:
        return {
            "connected": self.connected,
            "username": self.config.username,
            "retryCount": self.retry_scheduler.get_retry_count("tiktok"),
        }

    async def cleanup(self):
        LOGGER.info("🛑 Cleaning up TikTok platform...")
        self._shutting_down = True
        self.retry_scheduler.cancel_pending("tiktok")
        self.timers.clear_interval("tiktok:handle-disconnect")
        await self._disconnect_client()
        self.connected = False
        LOGGER.info("✅ TikTok platform cleaned up")
