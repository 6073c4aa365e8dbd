#!/usr/bin/env python3
"""
TikTok WebCast client - Adaptateur TikTokLive

Convertit les événements TikTokLive en dicts WebCast (camelCase) attendus par
TikTokPlatform.dispatch() :

    CommentEvent → "chat"        GiftEvent → "gift"        FollowEvent → "follow"
    ShareEvent → "share"         SubscribeEvent → "subscribe"
    EnvelopeEvent → "envelope"   RoomUserSeqEvent → "roomUser"
    LiveEndEvent → "streamEnd"   DisconnectEvent → "disconnected"

connect() attend le passage en live (UserOfflineError → nouvel essai après
offline_retry_s).
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Optional

from TikTokLive import TikTokLiveClient
from TikTokLive.client.errors import UserOfflineError
from TikTokLive.events import (
    CommentEvent,
    DisconnectEvent,
    EnvelopeEvent,
    FollowEvent,
    GiftEvent,
    LiveEndEvent,
    RoomUserSeqEvent,
    ShareEvent,
    SubscribeEvent,
)

LOGGER = logging.getLogger(__name__)

Emit = Callable[[str, Dict[str, Any]], Any]


def _first(obj: Any, *names: str, default: Any = None) -> Any:
    """Premier attribut non vide parmi names (les noms varient selon la version de TikTokLive)"""
    for name in names:
        value = getattr(obj, name, None)
        if value not in (None, ""):
            return value
    return default


def user_to_raw(user: Any) -> Dict[str, Any]:
    if user is None:
        return {}
    return {
        "uniqueId": _first(user, "unique_id", "uniqueId", default=""),
        "nickname": _first(user, "nickname", "nick_name", default=""),
        "userId": str(_first(user, "id", "user_id", default="")),
    }


def _common(event: Any) -> Dict[str, Any]:
    common = _first(event, "common", "base_message")
    create_time = _first(common, "create_time", "client_send_time") if common is not None else None
    return {"createTime": create_time} if create_time else {}


def _base(event: Any) -> Dict[str, Any]:
    raw = {"user": user_to_raw(_first(event, "user", "user_info"))}
    common = _common(event)
    if common:
        raw["common"] = common
        msg_id = _first(_first(event, "common", "base_message"), "msg_id", "message_id")
        if msg_id:
            raw["msgId"] = str(msg_id)
    return raw


# ============================================================================
# Conversion événement → dict WebCast
# ============================================================================

def comment_to_raw(event: Any) -> Dict[str, Any]:
    return {**_base(event), "comment": _first(event, "comment", "content", default="")}


def gift_to_raw(event: Any) -> Dict[str, Any]:
    gift = _first(event, "gift")
    streakable = bool(_first(gift, "streakable", default=False)) if gift is not None else False
    return {
        **_base(event),
        "giftName": _first(gift, "name", default="") if gift is not None else "",
        "giftId": _first(gift, "id", default=None) if gift is not None else None,
        "diamondCount": _first(gift, "diamond_count", default=0) if gift is not None else 0,
        "repeatCount": _first(event, "repeat_count", default=1),
        "repeatEnd": bool(_first(event, "repeat_end", default=False)),
        "comboType": 1 if streakable else 0,
    }


def envelope_to_raw(event: Any) -> Dict[str, Any]:
    info = _first(event, "envelope_info", default=event)
    return {
        **_base(event),
        "giftCoins": _first(info, "diamond_count", "coins", default=0),
        "currency": "coins",
    }


def room_user_to_raw(event: Any) -> Dict[str, Any]:
    raw = {"viewerCount": _first(event, "total", "m_total", "viewer_count", default=0)}
    common = _common(event)
    if common:
        raw["common"] = common
    return raw


EVENT_CONVERTERS = [
    (CommentEvent, "chat", comment_to_raw),
    (GiftEvent, "gift", gift_to_raw),
    (FollowEvent, "follow", _base),
    (ShareEvent, "share", _base),
    (SubscribeEvent, "subscribe", _base),
    (EnvelopeEvent, "envelope", envelope_to_raw),
    (RoomUserSeqEvent, "roomUser", room_user_to_raw),
    (LiveEndEvent, "streamEnd", lambda event: {}),
    (DisconnectEvent, "disconnected", lambda event: {"reason": "WebCast connection closed"}),
]


# ============================================================================
# Client
# ============================================================================

class TikTokWebcastClient:
    """
    Client WebCast d'un compte TikTok.

    Args:
        username: Compte TikTok (avec ou sans @)
        emit: emit(event_name, raw) de TikTokPlatform
        client_class: TikTokLiveClient (remplaçable pour les tests)
        offline_retry_s: Délai entre deux essais tant que le compte n'est pas en live
    """

    def __init__(
        self,
        username: str,
        emit: Emit,
        client_class: Callable[..., Any] = TikTokLiveClient,
        offline_retry_s: float = 60.0,
    ):
        self.username = username.lstrip("@")
        self.emit = emit
        self.offline_retry_s = offline_retry_s
        self.client = client_class(unique_id=f"@{self.username}")
        self._task: Optional[asyncio.Task] = None
        for event_class, event_name, converter in EVENT_CONVERTERS:
            self.client.add_listener(event_class, self._make_listener(event_name, converter))

    def _make_listener(self, event_name: str, converter: Callable[[Any], Dict[str, Any]]):
        async def listener(event):
            try:
                raw = converter(event)
            except Exception as e:
                LOGGER.error(f"❌ Failed to convert TikTok {event_name} event: {e}", exc_info=True)
                return
            self.emit(event_name, raw)
        listener.__name__ = f"on_{event_name}"
        return listener

    async def connect(self):
        """Attend que le compte soit en live puis ouvre la connexion WebCast"""
        while True:
            try:
                self._task = await self.client.start()
                LOGGER.info(f"✅ TikTok WebCast connected for @{self.username}")
                return
            except UserOfflineError:
                LOGGER.info(f"⏳ @{self.username} is not live, retrying in {self.offline_retry_s:.0f}s")
                await asyncio.sleep(self.offline_retry_s)

    async def disconnect(self):
        await self.client.disconnect()
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()


def create_webcast_client(username: str, emit: Emit) -> TikTokWebcastClient:
    """client_factory(username, emit) pour TikTokPlatform"""
    return TikTokWebcastClient(username, emit)
