"""
Test d'intégration du driver Twitch (twitchapi/platform.py)
Auth factice, Helix sur MockTransport, WebSocket EventSub factice
"""
import asyncio
import json
from unittest.mock import AsyncMock, Mock

import httpx
import pytest

from core.lifecycle import EventHandlers
from twitchapi.platform import TwitchPlatform
from twitchapi.monitors.stream_monitor import POLL_TIMER_NAME

from conftest import FakeWebSocket, FakeWSSession, httpx_router, notification_message, welcome_message


def _auth(scopes):
    auth = Mock()
    auth.on_event = None
    auth.user_id = "1001"
    auth.login = "streamer"
    auth.scopes = scopes
    auth.initialize = AsyncMock()
    auth.cleanup = AsyncMock()
    auth.is_ready = Mock(return_value=True)
    auth.get_status = Mock(return_value={"state": "READY"})

    async def ensure_valid_token(force_refresh=False):
        return "access-token"

    auth.ensure_valid_token = ensure_valid_token
    return auth


def _helix_routes(created):
    def create(request):
        body = json.loads(request.content)
        created.append(body)
        return httpx.Response(202, json={"data": [{"id": f"sub-{len(created)}", "status": "enabled"}]})

    return {
        ("GET", "/helix/eventsub/subscriptions"): [httpx.Response(200, json={"data": [], "pagination": {}})],
        ("POST", "/helix/eventsub/subscriptions"): [create],
        ("GET", "/helix/streams"): [httpx.Response(200, json={"data": [{
            "id": "s1", "type": "live", "title": "Speedrun", "game_name": "Celeste",
            "viewer_count": 42, "started_at": "2024-01-01T10:00:00Z",
        }]})],
    }


@pytest.mark.integration
class TestTwitchPlatform:

    @pytest.mark.asyncio
    async def test_initialize_stream_and_cleanup(self, twitch_config, timers):
        """Auth → EventSub (welcome + subscriptions autorisées) → monitor → cleanup"""
        created = []
        client = httpx_router(_helix_routes(created))
        socket = FakeWebSocket()
        socket.push_json(welcome_message("session-1"))
        auth = _auth(["user:read:chat", "moderator:read:followers"])

        connections, statuses, follows = [], [], []
        handlers = EventHandlers(
            on_connection=connections.append,
            on_stream_status=statuses.append,
            on_follow=follows.append,
        )
        platform = TwitchPlatform(twitch_config, timers=timers, auth_manager=auth,
                                  http_client=client, session=FakeWSSession([socket]))

        assert await platform.initialize(handlers) is True
        auth.initialize.assert_awaited_once()
        assert platform.is_connected() is True
        assert platform.broadcaster_id == "1001"
        assert {body["type"] for body in created} == {
            "channel.chat.message", "channel.follow", "channel.raid", "stream.online", "stream.offline",
        }
        assert all(body["transport"] == {"method": "websocket", "session_id": "session-1"} for body in created)
        assert connections[0]["status"] == "connected"
        assert statuses[0]["isLive"] is True
        assert timers.has_interval(POLL_TIMER_NAME)

        socket.push_json(notification_message("channel.follow", {
            "user_id": "42", "user_name": "Viewer", "followed_at": "2024-01-01T00:00:00Z",
        }))
        await asyncio.sleep(0.02)
        assert follows[0]["user_name"] == "Viewer"

        await platform.cleanup()
        assert platform.is_connected() is False
        assert not timers.has_interval(POLL_TIMER_NAME)
        assert socket.close_calls == [(1000, b"Shutdown")]
        auth.cleanup.assert_awaited_once()
        await client.aclose()

    @pytest.mark.asyncio
    async def test_eventsub_stream_offline_updates_monitor(self, twitch_config, timers):
        created = []
        client = httpx_router(_helix_routes(created))
        socket = FakeWebSocket()
        socket.push_json(welcome_message("session-2"))
        statuses = []
        platform = TwitchPlatform(twitch_config, timers=timers, auth_manager=_auth([]),
                                  http_client=client, session=FakeWSSession([socket]))
        await platform.initialize(EventHandlers(on_stream_status=statuses.append))

        socket.push_json(notification_message("stream.offline", {"broadcaster_user_id": "1001"}, message_id="n2"))
        await asyncio.sleep(0.02)

        assert statuses[-1]["isLive"] is False
        assert platform.stream_monitor.status == "offline"
        await platform.cleanup()
        await client.aclose()

    @pytest.mark.asyncio
    async def test_auth_event_forwarded(self, twitch_config, timers):
        required = []
        auth = _auth([])
        platform = TwitchPlatform(twitch_config, timers=timers, auth_manager=auth)
        platform.handlers = EventHandlers(on_authentication_required=required.append)

        auth.on_event("authentication-required", {"reason": "Refresh token expired", "tokenType": "refresh"})
        assert required == [{"reason": "Refresh token expired", "tokenType": "refresh"}]
