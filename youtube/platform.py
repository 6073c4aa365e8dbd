#!/usr/bin/env python3
"""
YouTubePlatform - Driver YouTube (multi-stream)

La détection des lives et la connexion au chat InnerTube sont injectées :

    live_video_finder(username) -> [video_id, ...]        (async)
    connection_factory(video_id, emit) -> connexion       (async, start()/stop()/disconnect() optionnels)

La connexion appelle emit(raw_item) pour chaque item du live chat ;
le type InnerTube de l'item choisit le handler.
"""

import logging
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from core.async_utils import maybe_await
from core.config import YouTubeConfig
from core.exceptions import ConfigurationError
from core.error_classifier import extract_error_message
from core.timer_registry import TimerRegistry
from events.timestamps import now_iso
from youtube.connection_registry import YouTubeConnectionRegistry

LOGGER = logging.getLogger(__name__)

DETECTION_TIMER_NAME = "youtube:stream-detection"

ITEM_HANDLERS = {
    "LiveChatTextMessage": "on_chat",
    "LiveChatPaidMessage": "on_gift",
    "LiveChatPaidSticker": "on_gift",
    "LiveChatMembershipItem": "on_paypiggy",
    "LiveChatSponsorshipsGiftPurchaseAnnouncement": "on_giftpaypiggy",
    "ViewerCount": "on_viewer_count",
}


class YouTubePlatform:
    """
    Args:
        config: YouTubeConfig
        connection_factory: Ouvre la connexion live chat d'une vidéo
        live_video_finder: Liste les video_id live de la chaîne
        timers: TimerRegistry de la plateforme
        poll_interval_s: Intervalle de détection des lives
        max_streams: Nombre max de lives suivis (0 = illimité)
    """

    platform = "youtube"
    self_detects_stream = True

    def __init__(
        self,
        config: YouTubeConfig,
        connection_factory: Callable[[str, Callable[[Dict[str, Any]], None]], Awaitable[Any]],
        live_video_finder: Callable[[str], Awaitable[Iterable[str]]],
        timers: Optional[TimerRegistry] = None,
        poll_interval_s: float = 60,
        max_streams: int = 0,
    ):
        self.config = config
        self.connection_factory = connection_factory
        self.live_video_finder = live_video_finder
        self.timers = timers or TimerRegistry("youtube")
        self.poll_interval_s = poll_interval_s
        self.max_streams = max_streams
        self.registry = YouTubeConnectionRegistry(config)
        self.handlers = None
        self.is_live = False

    async def initialize(self, handlers) -> bool:
        if not self.config.username:
            raise ConfigurationError("YouTube is enabled but no username is provided in config")

        self.handlers = handlers
        LOGGER.info(f"🚀 Starting YouTube multi-stream monitoring for {self.config.username} "
                    f"(interval: {self.poll_interval_s}s)")
        await self.check_streams(raise_on_error=True)
        self.timers.create_polling_interval(DETECTION_TIMER_NAME, self.check_streams, int(self.poll_interval_s * 1000))
        return True

    # ========================================================================
    # Détection
    # ========================================================================

    async def check_streams(self, raise_on_error: bool = False):
        try:
            video_ids: List[str] = list(await maybe_await(self.live_video_finder(self.config.username)))
        except Exception as e:
            LOGGER.error(f"❌ YouTube stream detection failed: {extract_error_message(e)}")
            if raise_on_error:
                raise
            return

        if self.max_streams > 0 and len(video_ids) > self.max_streams:
            LOGGER.debug(f"Limiting to max_streams={self.max_streams} (found {len(video_ids)})")
            video_ids = video_ids[:self.max_streams]

        new_ids = [video_id for video_id in video_ids if not self.registry.has_connection(video_id)]
        for video_id in new_ids:
            if await self.registry.connect(video_id, self._open_connection):
                self.registry.set_connection_ready(video_id)

        if new_ids:
            self._call("on_stream_detected", {
                "eventType": "stream-detected",
                "newStreamIds": new_ids,
                "allStreamIds": video_ids,
                "detectionTime": int(time.time() * 1000),
                "connectionCount": len(self.registry.connections),
            })

        if not video_ids and self.registry.connections:
            LOGGER.warning("⚠️ Stream detection returned nothing, preserving existing connections")
            return

        for video_id in self.registry.get_active_video_ids():
            if video_id not in video_ids:
                LOGGER.info(f"💤 Stream ended, disconnecting: {video_id}")
                await self.registry.disconnect(video_id, "stream no longer live")

        self._update_live_status()

    async def _open_connection(self, video_id: str):
        connection = await maybe_await(self.connection_factory(video_id, lambda raw: self.dispatch(video_id, raw)))
        start = getattr(connection, "start", None)
        if callable(start):
            await maybe_await(start())
        return connection

    def _update_live_status(self):
        is_live = any(record.ready for record in self.registry.connections.values())
        if is_live == self.is_live:
            return
        self.is_live = is_live
        self._call("on_stream_status", {
            "isLive": is_live,
            "status": "live" if is_live else "offline",
            "timestamp": now_iso(),
        })

    # ========================================================================
    # Items du chat
    # ========================================================================

    def dispatch(self, video_id: str, raw: Dict[str, Any]) -> bool:
        """Route un item InnerTube vers le handler correspondant"""
        if not isinstance(raw, dict):
            return False
        item = raw.get("item") if isinstance(raw.get("item"), dict) else raw
        handler_name = ITEM_HANDLERS.get(item.get("type"))
        if handler_name is None:
            LOGGER.debug(f"[{video_id}] Ignoring YouTube item type {item.get('type')}")
            return False
        return self._call(handler_name, raw)

    def _call(self, name: str, payload: Dict[str, Any]) -> bool:
        handler = getattr(self.handlers, name, None) if self.handlers is not None else None
        if handler is None:
            return False
        try:
            handler(payload)
        except Exception as e:
            LOGGER.error(f"❌ YouTube handler {name} failed: {e}", exc_info=True)
            return False
        return True

    # ========================================================================
    # Status & cleanup
    # ========================================================================

    def is_connected(self) -> bool:
        return any(record.ready for record in self.registry.connections.values())

    def get_status(self) -> Dict[str, Any]:
        return {
            **self.registry.get_stats(),
            "isLive": self.is_live,
            "apiEnabled": self.registry.is_api_enabled(),
            "scrapingEnabled": self.registry.is_scraping_enabled(),
        }

    async def cleanup(self):
        LOGGER.info("🛑 Cleaning up YouTube platform...")
        self.timers.clear_interval(DETECTION_TIMER_NAME, reason="cleanup")
        await self.registry.cleanup_all_connections()
        self.is_live = False
        LOGGER.info("✅ YouTube platform cleaned up")
