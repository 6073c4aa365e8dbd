#!/usr/bin/env python3
"""
📡 Stream Monitor - Détection live/offline par polling Helix

Interroge GET /streams toutes les N secondes (timer "twitch:stream-poll").
Chaque transition est remontée via on_status(raw) au format attendu par
normalize_stream_status ({isLive, timestamp, title, category, ...}).

Un 401 passe par la politique du HelixClient : refresh forcé puis un seul rejeu.
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from core.error_classifier import extract_error_message
from core.timer_registry import TimerRegistry
from events.timestamps import now_iso

LOGGER = logging.getLogger(__name__)

POLL_TIMER_NAME = "twitch:stream-poll"


class StreamMonitor:
    """
    Détecte les transitions de statut d'un broadcaster.

    Args:
        helix: HelixClient (get_stream)
        broadcaster_id: ID Twitch du broadcaster surveillé
        on_status: Callable(raw_status) appelé à chaque transition
        timers: TimerRegistry de la plateforme
        interval: Intervalle de polling en secondes
    """

    def __init__(
        self,
        helix,
        broadcaster_id: str,
        on_status: Callable[[Dict[str, Any]], Any],
        timers: Optional[TimerRegistry] = None,
        interval: float = 60,
    ):
        self.helix = helix
        self.broadcaster_id = broadcaster_id
        self.on_status = on_status
        self.timers = timers or TimerRegistry("twitch")
        self.interval = interval

        # "online" | "offline" | "unknown"
        self.status = "unknown"
        self.last_check: Optional[datetime] = None
        self.stream: Optional[Dict[str, Any]] = None
        self.error_count = 0

        LOGGER.info(f"📡 StreamMonitor initialized for {broadcaster_id}, interval={interval}s")

    def start(self):
        """Enregistre le timer de polling (le premier check est fait par check_now)"""
        if self.timers.has_interval(POLL_TIMER_NAME):
            LOGGER.warning("⚠️ StreamMonitor already running")
            return
        self.timers.create_polling_interval(POLL_TIMER_NAME, self.check_now, int(self.interval * 1000))
        LOGGER.info("✅ StreamMonitor started")

    def stop(self):
        if self.timers.clear_interval(POLL_TIMER_NAME, reason="stopped"):
            LOGGER.info("🛑 StreamMonitor stopped")

    def is_running(self) -> bool:
        return self.timers.has_interval(POLL_TIMER_NAME)

    async def check_now(self) -> Optional[bool]:
        """
        Interroge Helix une fois.

        Returns:
            True/False selon le statut live, None si la requête a échoué
        """
        try:
            stream = await self.helix.get_stream(user_id=self.broadcaster_id)
        except Exception as e:
            self.error_count += 1
            LOGGER.error(f"❌ Error querying stream for {self.broadcaster_id}: {extract_error_message(e)}")
            return None

        current = "online" if stream else "offline"
        previous = self.status
        self.status = current
        self.last_check = datetime.now()
        if stream:
            self.stream = stream

        if previous != current:
            self._handle_transition(previous, current, stream)
        elif current == "online":
            LOGGER.info(f"🔄 [Refresh] {self.broadcaster_id} - Still Live ✅ ({stream.get('viewer_count', 0)} viewers)")
        else:
            LOGGER.debug(f"🔄 [Refresh] {self.broadcaster_id} - Still Offline ⚪")

        return current == "online"

    def _handle_transition(self, old_status: str, new_status: str, stream: Optional[Dict[str, Any]]):
        if new_status == "online":
            LOGGER.info(f"🔴 {self.broadcaster_id}: STREAM ONLINE (was {old_status})")
            raw = {
                "isLive": True,
                "timestamp": stream.get("started_at") or now_iso(),
                "status": stream.get("type") or "live",
            }
            if stream.get("title"):
                raw["title"] = stream["title"]
            if stream.get("game_name"):
                raw["category"] = stream["game_name"]
        else:
            LOGGER.info(f"💤 {self.broadcaster_id}: STREAM OFFLINE (was {old_status})")
            raw = {"isLive": False, "timestamp": now_iso(), "status": "offline"}

        try:
            self.on_status(raw)
        except Exception as e:
            LOGGER.error(f"❌ Stream status callback failed: {e}", exc_info=True)

    def get_state(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "last_check": self.last_check.isoformat() if self.last_check else None,
            "viewer_count": (self.stream or {}).get("viewer_count") if self.status == "online" else None,
            "errors": self.error_count,
            "running": self.is_running(),
        }
