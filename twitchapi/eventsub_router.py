#!/usr/bin/env python3
"""
EventSub Router - Notification EventSub → handler canonique
============================================================

    channel.chat.message            → on_chat
    channel.follow                  → on_follow
    channel.subscribe               → on_paypiggy (subs offerts ignorés, voir giftpaypiggy)
    channel.subscription.message    → on_paypiggy (avec months)
    channel.subscription.gift       → on_giftpaypiggy
    channel.raid                    → on_raid
    channel.cheer / channel.bits.use → on_gift (giftType/currency "bits")
    stream.online / stream.offline  → on_stream_status

Le timestamp manquant est complété par metadata.message_timestamp.
Une erreur de handler est loggée, jamais propagée.
"""

import logging
from typing import Any, Callable, Dict, Optional

LOGGER = logging.getLogger(__name__)

ROUTES = {
    "channel.chat.message": "on_chat",
    "channel.follow": "on_follow",
    "channel.subscribe": "on_paypiggy",
    "channel.subscription.message": "on_paypiggy",
    "channel.subscription.gift": "on_giftpaypiggy",
    "channel.raid": "on_raid",
    "channel.cheer": "on_gift",
    "channel.bits.use": "on_gift",
    "stream.online": "on_stream_status",
    "stream.offline": "on_stream_status",
}


class EventSubRouter:
    """
    Args:
        handlers: Objet exposant on_chat, on_follow, ... (EventHandlers)
    """

    def __init__(self, handlers):
        self.handlers = handlers
        self.routed: Dict[str, int] = {}
        self.dropped = 0

    def handle_notification(self, subscription_type: str, event: Any,
                            metadata: Optional[Dict[str, Any]] = None) -> bool:
        """Route une notification. False si ignorée ou en erreur."""
        metadata = metadata or {}
        handler_name = ROUTES.get(subscription_type)
        if handler_name is None:
            LOGGER.debug(f"Unhandled EventSub notification type: {subscription_type}")
            self.dropped += 1
            return False

        if not isinstance(event, dict):
            LOGGER.warning(f"⚠️ EventSub {subscription_type} notification without event payload")
            self.dropped += 1
            return False

        raw = self._prepare(subscription_type, event, metadata)
        if raw is None:
            self.dropped += 1
            return False

        handler: Optional[Callable] = getattr(self.handlers, handler_name, None)
        if handler is None:
            self.dropped += 1
            return False

        try:
            handler(raw)
        except Exception as e:
            LOGGER.error(f"❌ Error processing EventSub {subscription_type}: {e}", exc_info=True)
            self.dropped += 1
            return False

        self.routed[subscription_type] = self.routed.get(subscription_type, 0) + 1
        return True

    @staticmethod
    def _prepare(subscription_type: str, event: Dict[str, Any], metadata: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        raw = dict(event)
        if not raw.get("timestamp") and metadata.get("message_timestamp"):
            raw["timestamp"] = metadata["message_timestamp"]

        if subscription_type == "channel.subscribe" and raw.get("is_gift") is True:
            LOGGER.debug(f"[Twitch] Suppressing gifted sub for {raw.get('user_name')} (handled by channel.subscription.gift)")
            return None

        if subscription_type in ("channel.cheer", "channel.bits.use"):
            if not raw.get("id") and not raw.get("message_id"):
                raw["id"] = metadata.get("message_id")

        if subscription_type == "stream.online":
            raw["isLive"] = True
            if raw.get("started_at"):
                raw["timestamp"] = raw["started_at"]
            if raw.get("type"):
                raw["status"] = raw.pop("type")
        elif subscription_type == "stream.offline":
            raw["isLive"] = False

        return raw

    def get_stats(self) -> Dict[str, Any]:
        return {"routed": dict(self.routed), "dropped": self.dropped}
