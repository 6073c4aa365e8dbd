"""
Tests YouTube : registre des connexions et driver multi-stream
(youtube/connection_registry.py, youtube/platform.py)
"""
import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock

import httpx
import pytest
from conftest import httpx_router

from core.config import YouTubeConfig
from core.exceptions import ConfigurationError
from core.lifecycle import EventHandlers
from events.normalizer import normalize_event
from youtube.chat_client import LiveVideoFinder, PytchatConnection, chat_item_to_raw
from youtube.connection_registry import ConnectionState, YouTubeConnectionRegistry
from youtube.platform import DETECTION_TIMER_NAME, YouTubePlatform


class FakeConnection:
    def __init__(self, fail_disconnect=False):
        self.fail_disconnect = fail_disconnect
        self.started = False
        self.stopped = False

    async def start(self):
        self.started = True

    async def stop(self):
        self.stopped = True

    async def disconnect(self):
        if self.fail_disconnect:
            raise RuntimeError("socket already gone")


@pytest.mark.unit
class TestConnectionRegistry:

    @pytest.mark.asyncio
    async def test_connect_then_ready(self):
        registry = YouTubeConnectionRegistry()
        assert await registry.connect("vid1", lambda video_id: FakeConnection()) is True
        assert registry.get_connection_status("vid1")["state"] == "connected"

        assert registry.set_connection_ready("vid1") is True
        assert registry.is_connection_ready("vid1") is True
        assert registry.get_stats()["hasAnyReady"] is True

    @pytest.mark.asyncio
    async def test_concurrent_connect_same_id(self):
        """Deux connect() simultanés sur le même id : un seul aboutit"""
        registry = YouTubeConnectionRegistry()
        release = asyncio.Event()
        created = []

        async def slow_factory(video_id):
            created.append(video_id)
            await release.wait()
            return FakeConnection()

        first = asyncio.create_task(registry.connect("vid1", slow_factory))
        await asyncio.sleep(0)
        second = await registry.connect("vid1", slow_factory)
        release.set()

        assert await first is True
        assert second is False
        assert created == ["vid1"]

    @pytest.mark.asyncio
    async def test_disconnect_during_connect_closes_new_connection(self):
        """disconnect() pendant la factory : la connexion ouverte est fermée, pas ressuscitée"""
        registry = YouTubeConnectionRegistry()
        release = asyncio.Event()
        connection = FakeConnection()

        async def slow_factory(video_id):
            await release.wait()
            return connection

        pending = asyncio.create_task(registry.connect("vid1", slow_factory))
        await asyncio.sleep(0)
        assert registry.connections["vid1"].state is ConnectionState.CONNECTING

        assert await registry.disconnect("vid1", reason="stream ended") is True
        release.set()

        assert await pending is False
        assert "vid1" not in registry.connections
        assert connection.stopped is True

    @pytest.mark.asyncio
    async def test_distinct_ids_are_independent(self):
        registry = YouTubeConnectionRegistry()
        release = asyncio.Event()

        async def slow_factory(video_id):
            await release.wait()
            return FakeConnection()

        tasks = [asyncio.create_task(registry.connect(v, slow_factory)) for v in ("a", "b")]
        await asyncio.sleep(0)
        release.set()
        assert await asyncio.gather(*tasks) == [True, True]

    @pytest.mark.asyncio
    async def test_existing_connection_is_refused(self):
        registry = YouTubeConnectionRegistry()
        await registry.connect("vid1", lambda video_id: FakeConnection())
        assert await registry.connect("vid1", lambda video_id: FakeConnection()) is False

    @pytest.mark.asyncio
    async def test_factory_failure_leaves_error_record(self):
        registry = YouTubeConnectionRegistry()

        async def failing(video_id):
            raise ConnectionRefusedError("refused")

        assert await registry.connect("vid1", failing) is False
        status = registry.get_connection_status("vid1")
        assert status["state"] == "error"
        assert status["metadata"]["errorCode"] == "ECONNREFUSED"
        assert registry.get_active_video_ids() == ["vid1"]
        assert registry.set_connection_ready("vid1") is False

    @pytest.mark.asyncio
    async def test_disconnect_removes_record(self):
        registry = YouTubeConnectionRegistry()
        connection = FakeConnection()
        await registry.connect("vid1", lambda video_id: connection)

        assert await registry.disconnect("vid1", "stream ended") is True
        assert connection.stopped is True
        assert registry.has_connection("vid1") is False
        assert await registry.disconnect("vid1") is False

    @pytest.mark.asyncio
    async def test_disconnect_failure_keeps_error_record(self):
        registry = YouTubeConnectionRegistry()
        await registry.connect("vid1", lambda video_id: FakeConnection(fail_disconnect=True))

        assert await registry.disconnect("vid1", "stream ended") is False
        record = registry.connections["vid1"]
        assert record.state is ConnectionState.ERROR
        assert record.metadata["error"] == "socket already gone"

        await registry.remove_connection("vid1")
        assert registry.has_connection("vid1") is False

    @pytest.mark.asyncio
    async def test_cleanup_all(self):
        registry = YouTubeConnectionRegistry()
        for video_id in ("a", "b"):
            await registry.connect(video_id, lambda v: FakeConnection(fail_disconnect=True))
        assert await registry.cleanup_all_connections() == 2
        assert registry.get_active_video_ids() == []

    def test_detection_modes(self):
        assert YouTubeConnectionRegistry(YouTubeConfig(enable_api=True)).is_api_enabled() is True
        assert YouTubeConnectionRegistry(YouTubeConfig(viewer_count_method="api")).is_api_enabled() is True
        registry = YouTubeConnectionRegistry(YouTubeConfig(stream_detection_method="scraping"))
        assert registry.is_scraping_enabled() is True
        assert registry.is_api_enabled() is False


@pytest.mark.unit
class TestYouTubePlatform:

    @pytest.mark.asyncio
    async def test_detects_and_connects_streams(self, timers):
        detected, statuses = [], []
        connections = {}

        async def factory(video_id, emit):
            connections[video_id] = FakeConnection()
            return connections[video_id]

        finder = AsyncMock(return_value=["v1", "v2"])
        platform = YouTubePlatform(YouTubeConfig(enabled=True, username="chan"), factory, finder, timers=timers)
        handlers = EventHandlers(on_stream_detected=detected.append, on_stream_status=statuses.append)

        assert await platform.initialize(handlers) is True
        assert set(connections) == {"v1", "v2"}
        assert all(c.started for c in connections.values())
        assert detected[0]["newStreamIds"] == ["v1", "v2"]
        assert detected[0]["connectionCount"] == 2
        assert statuses[-1]["isLive"] is True
        assert platform.is_connected() is True
        assert timers.has_interval(DETECTION_TIMER_NAME)

        finder.return_value = ["v2"]
        await platform.check_streams()
        assert platform.registry.get_active_video_ids() == ["v2"]
        assert connections["v1"].stopped is True

        await platform.cleanup()
        assert not timers.has_interval(DETECTION_TIMER_NAME)
        assert platform.registry.get_active_video_ids() == []

    @pytest.mark.asyncio
    async def test_empty_detection_preserves_connections(self, timers):
        finder = AsyncMock(return_value=["v1"])
        platform = YouTubePlatform(YouTubeConfig(enabled=True, username="chan"),
                                   AsyncMock(return_value=FakeConnection()), finder, timers=timers)
        await platform.initialize(EventHandlers())

        finder.return_value = []
        await platform.check_streams()
        assert platform.registry.get_active_video_ids() == ["v1"]
        await platform.cleanup()

    @pytest.mark.asyncio
    async def test_missing_username(self, timers):
        platform = YouTubePlatform(YouTubeConfig(enabled=True), AsyncMock(), AsyncMock(), timers=timers)
        with pytest.raises(ConfigurationError):
            await platform.initialize(EventHandlers())

    @pytest.mark.asyncio
    async def test_dispatch_by_item_type(self, timers):
        chats, gifts = [], []
        platform = YouTubePlatform(YouTubeConfig(username="chan"), AsyncMock(), AsyncMock(), timers=timers)
        platform.handlers = EventHandlers(on_chat=chats.append, on_gift=gifts.append)

        assert platform.dispatch("v1", {"item": {"type": "LiveChatTextMessage", "message": "hi"}}) is True
        assert platform.dispatch("v1", {"item": {"type": "LiveChatPaidSticker"}}) is True
        assert platform.dispatch("v1", {"item": {"type": "LiveChatPlaceholderItem"}}) is False
        assert len(chats) == 1
        assert len(gifts) == 1

    @pytest.mark.asyncio
    async def test_handler_error_is_contained(self, timers):
        platform = YouTubePlatform(YouTubeConfig(username="chan"), AsyncMock(), AsyncMock(), timers=timers)
        platform.handlers = EventHandlers(on_chat=Mock(side_effect=RuntimeError("boom")))
        assert platform.dispatch("v1", {"type": "LiveChatTextMessage"}) is False


# ============================================================================
# Adaptateur pytchat + détection des lives
# ============================================================================

def _author(**overrides):
    fields = {"name": "viewer", "channelId": "UC9", "isChatModerator": False,
              "isChatSponsor": False, "isChatOwner": False}
    fields.update(overrides)
    return SimpleNamespace(**fields)


def _chat_item(item_type="textMessage", **overrides):
    fields = {"type": item_type, "id": "m1", "author": _author(), "message": "hello",
              "timestamp": 1_700_000_000_000, "amountString": "", "amountValue": 0.0, "currency": ""}
    fields.update(overrides)
    return SimpleNamespace(**fields)


class FakeChat:
    """Chat pytchat : un seul lot d'items puis fin du live"""

    def __init__(self, items):
        self.batches = [items]
        self.terminated = False

    def is_alive(self):
        return bool(self.batches) and not self.terminated

    def get(self):
        items = self.batches.pop(0)
        return SimpleNamespace(sync_items=lambda: iter(items))

    def terminate(self):
        self.terminated = True


@pytest.mark.unit
class TestChatItemConversion:

    def test_text_message_normalizes_as_chat(self):
        raw = chat_item_to_raw(_chat_item(author=_author(isChatSponsor=True, isChatModerator=True)))
        assert raw["item"]["type"] == "LiveChatTextMessage"
        assert raw["item"]["timestamp_usec"] == 1_700_000_000_000_000

        event = normalize_event("chat-message", "youtube", raw)
        assert event["username"] == "viewer"
        assert event["message"] == {"text": "hello"}
        assert event["metadata"]["isMod"] is True
        assert event["metadata"]["isSubscriber"] is True

    def test_owner_badge_marks_broadcaster(self):
        raw = chat_item_to_raw(_chat_item(author=_author(isChatOwner=True)))
        event = normalize_event("chat-message", "youtube", raw)
        assert event["metadata"]["isBroadcaster"] is True

    def test_super_chat_uses_display_amount(self):
        raw = chat_item_to_raw(_chat_item("superChat", id="sc1", message="gg", amountString="€3,50"))
        event = normalize_event("gift", "youtube", raw)
        assert event["giftType"] == "Super Chat"
        assert event["amount"] == 3.5
        assert event["currency"] == "EUR"
        assert event["message"] == "gg"

    def test_super_sticker_without_display_amount(self):
        raw = chat_item_to_raw(_chat_item("superSticker", id="st1", message="Hype cat",
                                          amountValue=2.0, currency="USD"))
        assert raw["item"]["purchase_amount"] == 2.0
        assert raw["item"]["purchase_currency"] == "USD"
        assert raw["item"]["sticker"] == {"name": "Hype cat"}

    def test_untracked_types_are_skipped(self):
        assert chat_item_to_raw(_chat_item("donation")) is None
        assert chat_item_to_raw(SimpleNamespace()) is None


@pytest.mark.unit
class TestPytchatConnection:

    @pytest.mark.asyncio
    async def test_items_delivered_on_event_loop(self):
        chat = FakeChat([_chat_item(), _chat_item("donation"), _chat_item(id="m2")])
        factory_calls = []

        def chat_factory(**kwargs):
            factory_calls.append(kwargs)
            return chat

        received = []
        connection = PytchatConnection("vid1", received.append, chat_factory=chat_factory, poll_interval_s=0.01)
        await connection.start()
        for _ in range(100):
            if len(received) == 2:
                break
            await asyncio.sleep(0.01)

        assert factory_calls == [{"video_id": "vid1", "interruptable": False}]
        assert [raw["item"]["id"] for raw in received] == ["m1", "m2"]
        assert connection.items_received == 2

        await connection.disconnect()
        assert chat.terminated is True
        assert connection.is_running() is False

    @pytest.mark.asyncio
    async def test_handler_error_does_not_stop_delivery(self):
        chat = FakeChat([_chat_item(), _chat_item(id="m2")])
        received = []

        def emit(raw):
            received.append(raw["item"]["id"])
            if len(received) == 1:
                raise RuntimeError("boom")

        connection = PytchatConnection("vid1", emit, chat_factory=lambda **kwargs: chat, poll_interval_s=0.01)
        await connection.start()
        for _ in range(100):
            if len(received) == 2:
                break
            await asyncio.sleep(0.01)
        await connection.disconnect()
        assert received == ["m1", "m2"]

    @pytest.mark.asyncio
    async def test_connection_drives_platform_dispatch(self, timers):
        chat = FakeChat([_chat_item()])
        chats = []

        def factory(video_id, emit):
            return PytchatConnection(video_id, emit, chat_factory=lambda **kwargs: chat, poll_interval_s=0.01)

        platform = YouTubePlatform(YouTubeConfig(enabled=True, username="chan"), factory,
                                   AsyncMock(return_value=["vid1"]), timers=timers)
        await platform.initialize(EventHandlers(on_chat=chats.append))
        for _ in range(100):
            if chats:
                break
            await asyncio.sleep(0.01)
        await platform.cleanup()

        assert len(chats) == 1
        assert chat.terminated is True


LIVE_PAGE = (
    '<html><head><link rel="canonical" href="https://www.youtube.com/watch?v=abcDEF12345">'
    '</head><script>var ytInitialPlayerResponse = {"videoDetails":{"isLiveNow":true}};</script></html>'
)
OFFLINE_PAGE = '<html><head><link rel="canonical" href="https://www.youtube.com/@chan"></head></html>'


@pytest.mark.unit
class TestLiveVideoFinder:

    @pytest.mark.asyncio
    async def test_live_channel_returns_video_id(self):
        calls = []
        client = httpx_router({("GET", "/@chan/live"): [httpx.Response(200, text=LIVE_PAGE)]}, calls)
        assert await LiveVideoFinder(client)("chan") == ["abcDEF12345"]
        assert calls[0].headers["Cookie"] == "CONSENT=YES+1"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_offline_channel_returns_empty(self):
        client = httpx_router({("GET", "/@chan/live"): [httpx.Response(200, text=OFFLINE_PAGE)]})
        assert await LiveVideoFinder(client)("@chan") == []
        await client.aclose()

    @pytest.mark.asyncio
    async def test_http_error_propagates(self):
        client = httpx_router({("GET", "/@chan/live"): [httpx.Response(503, text="unavailable")]})
        with pytest.raises(httpx.HTTPStatusError):
            await LiveVideoFinder(client)("chan")
        await client.aclose()
