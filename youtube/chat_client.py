#!/usr/bin/env python3
"""
YouTube chat client - Détection des lives et lecture du chat (pytchat)

- LiveVideoFinder : page https://www.youtube.com/@<handle>/live, le lien
  canonique donne le video_id quand la chaîne est en direct ("isLiveNow":true)
- PytchatConnection : pytchat tourne dans un thread dédié (interruptable=False,
  pas de signal handler hors du thread principal) ; chaque item est converti
  au format InnerTube attendu par YouTubePlatform.dispatch() puis remis à
  l'event loop via call_soon_threadsafe
"""

import asyncio
import logging
import re
import threading
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytchat

from core.error_classifier import extract_error_message

LOGGER = logging.getLogger(__name__)

YOUTUBE_BASE_URL = "https://www.youtube.com"
CANONICAL_WATCH_PATTERN = re.compile(
    r'<link rel="canonical" href="https://www\.youtube\.com/watch\?v=([a-zA-Z0-9_-]{11})"'
)
LIVE_NOW_MARKER = '"isLiveNow":true'

# type pytchat → type d'item InnerTube
PYTCHAT_ITEM_TYPES = {
    "textMessage": "LiveChatTextMessage",
    "superChat": "LiveChatPaidMessage",
    "superSticker": "LiveChatPaidSticker",
    "newSponsor": "LiveChatMembershipItem",
}


# ============================================================================
# Détection des lives
# ============================================================================

class LiveVideoFinder:
    """live_video_finder(username) -> [video_id] pour YouTubePlatform"""

    def __init__(self, http_client: httpx.AsyncClient, base_url: str = YOUTUBE_BASE_URL):
        self.http_client = http_client
        self.base_url = base_url.rstrip("/")

    async def __call__(self, username: str) -> List[str]:
        handle = username if username.startswith("@") else f"@{username}"
        response = await self.http_client.get(
            f"{self.base_url}/{handle}/live",
            headers={"Accept-Language": "en-US,en;q=0.9", "Cookie": "CONSENT=YES+1"},
            follow_redirects=True,
        )
        response.raise_for_status()

        html = response.text
        match = CANONICAL_WATCH_PATTERN.search(html)
        if match is None or LIVE_NOW_MARKER not in html:
            LOGGER.debug(f"No live stream found for {handle}")
            return []
        LOGGER.debug(f"Live stream found for {handle}: {match.group(1)}")
        return [match.group(1)]


# ============================================================================
# Conversion pytchat → item InnerTube
# ============================================================================

def chat_item_to_raw(chat_item: Any) -> Optional[Dict[str, Any]]:
    """Item pytchat → {"item": {...}} ; None pour les types non suivis"""
    item_type = PYTCHAT_ITEM_TYPES.get(getattr(chat_item, "type", None))
    if item_type is None:
        return None

    author = chat_item.author
    badges = []
    if getattr(author, "isChatSponsor", False):
        badges.append({"tooltip": "Member"})
    if getattr(author, "isChatOwner", False):
        badges.append({"tooltip": "Owner", "icon_type": "OWNER"})

    item = {
        "type": item_type,
        "id": chat_item.id,
        "author": {
            "name": author.name,
            "id": author.channelId,
            "is_moderator": bool(getattr(author, "isChatModerator", False)),
            "badges": badges,
        },
        "message": chat_item.message or "",
    }

    timestamp_ms = getattr(chat_item, "timestamp", None)
    if isinstance(timestamp_ms, (int, float)) and timestamp_ms > 0:
        item["timestamp_usec"] = int(timestamp_ms) * 1000

    if item_type in ("LiveChatPaidMessage", "LiveChatPaidSticker"):
        display = getattr(chat_item, "amountString", "") or ""
        if display.strip():
            item["purchase_amount"] = display.strip()
        else:
            item["purchase_amount"] = getattr(chat_item, "amountValue", None)
            item["purchase_currency"] = getattr(chat_item, "currency", "")
        if item_type == "LiveChatPaidSticker":
            item["sticker"] = {"name": chat_item.message or ""}
            item["message"] = ""

    return {"item": item}


# ============================================================================
# Connexion live chat
# ============================================================================

class PytchatConnection:
    """
    Connexion live chat d'une vidéo (start() / stop() / disconnect()).

    Args:
        video_id: Vidéo en direct
        emit: Appelé dans l'event loop pour chaque item converti
        chat_factory: pytchat.create (remplaçable pour les tests)
        poll_interval_s: Pause entre deux lectures du chat
    """

    MAX_POLL_INTERVAL_S = 30.0

    def __init__(
        self,
        video_id: str,
        emit: Callable[[Dict[str, Any]], Any],
        chat_factory: Callable[..., Any] = pytchat.create,
        poll_interval_s: float = 5.0,
        join_timeout_s: float = 5.0,
    ):
        self.video_id = video_id
        self.emit = emit
        self.chat_factory = chat_factory
        self.poll_interval_s = poll_interval_s
        self.join_timeout_s = join_timeout_s
        self.items_received = 0
        self._chat = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    async def start(self):
        loop = asyncio.get_running_loop()
        self._stop_event.clear()
        self._chat = await asyncio.to_thread(self.chat_factory, video_id=self.video_id, interruptable=False)
        self._thread = threading.Thread(
            target=self._worker, args=(loop,), name=f"pytchat:{self.video_id}", daemon=True
        )
        self._thread.start()
        LOGGER.info(f"✅ YouTube chat started for {self.video_id}")

    def _worker(self, loop: asyncio.AbstractEventLoop):
        chat = self._chat
        interval = self.poll_interval_s
        while not self._stop_event.is_set():
            try:
                if not chat.is_alive():
                    LOGGER.warning(f"⚠️ YouTube chat for {self.video_id} is no longer alive")
                    break
                for chat_item in chat.get().sync_items():
                    raw = chat_item_to_raw(chat_item)
                    if raw is not None:
                        loop.call_soon_threadsafe(self._deliver, raw)
                interval = self.poll_interval_s
            except RuntimeError as e:
                # event loop fermée pendant l'arrêt
                LOGGER.debug(f"YouTube chat worker stopping for {self.video_id}: {e}")
                break
            except Exception as e:
                interval = min(interval * 1.5, self.MAX_POLL_INTERVAL_S)
                LOGGER.error(f"❌ YouTube chat poll failed for {self.video_id}: {extract_error_message(e)} "
                             f"(retry in {interval:.1f}s)")
            self._stop_event.wait(interval)

    def _deliver(self, raw: Dict[str, Any]):
        self.items_received += 1
        try:
            self.emit(raw)
        except Exception as e:
            LOGGER.error(f"❌ YouTube chat item handler failed for {self.video_id}: {e}", exc_info=True)

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    async def stop(self):
        self._stop_event.set()

    async def disconnect(self):
        self._stop_event.set()
        thread, self._thread = self._thread, None
        if thread is not None:
            await asyncio.to_thread(thread.join, self.join_timeout_s)
        chat, self._chat = self._chat, None
        if chat is not None:
            chat.terminate()
        LOGGER.info(f"🛑 YouTube chat stopped for {self.video_id}")


def create_pytchat_connection(video_id: str, emit: Callable[[Dict[str, Any]], Any]) -> PytchatConnection:
    """connection_factory(video_id, emit) pour YouTubePlatform"""
    return PytchatConnection(video_id, emit)
