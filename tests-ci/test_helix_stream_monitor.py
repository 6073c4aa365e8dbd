"""
Tests du HelixClient et du StreamMonitor
(twitchapi/transports/helix_client.py, twitchapi/monitors/stream_monitor.py)
"""
from unittest.mock import Mock

import httpx
import pytest

from core.exceptions import ApiRequestError
from events.normalizer import normalize_event
from twitchapi.monitors.stream_monitor import POLL_TIMER_NAME, StreamMonitor
from twitchapi.transports.helix_client import HelixClient

from conftest import httpx_router

LIVE_STREAM = {
    "id": "s1",
    "user_id": "1001",
    "type": "live",
    "title": "Speedrun",
    "game_name": "Celeste",
    "viewer_count": 42,
    "started_at": "2024-01-01T10:00:00Z",
}


def _rotating_auth():
    """ensure_valid_token : token A, puis B après un refresh forcé"""
    auth = Mock()
    auth.tokens = ["A"]
    auth.forced = []

    async def ensure_valid_token(force_refresh=False):
        if force_refresh:
            auth.forced.append(True)
            auth.tokens.append("B")
        return auth.tokens[-1]

    auth.ensure_valid_token = ensure_valid_token
    return auth


@pytest.mark.unit
class TestHelixClient:

    @pytest.mark.asyncio
    async def test_headers_and_stream(self, ready_auth):
        calls = []
        client = httpx_router({("GET", "/helix/streams"): [httpx.Response(200, json={"data": [LIVE_STREAM]})]},
                              calls=calls)
        helix = HelixClient("cid", ready_auth, http_client=client)

        stream = await helix.get_stream(user_id="1001")
        assert stream["title"] == "Speedrun"
        assert calls[0].headers["authorization"] == "Bearer access-token"
        assert calls[0].headers["client-id"] == "cid"
        assert calls[0].url.params["user_id"] == "1001"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_offline_is_none(self, ready_auth):
        client = httpx_router({("GET", "/helix/streams"): [httpx.Response(200, json={"data": []})]})
        helix = HelixClient("cid", ready_auth, http_client=client)
        assert await helix.get_stream(user_login="streamer") is None
        await client.aclose()

    @pytest.mark.asyncio
    async def test_401_forces_refresh_and_replays(self):
        calls = []
        client = httpx_router({("GET", "/helix/streams"): [
            httpx.Response(401, json={"status": 401, "message": "Invalid OAuth token"}),
            httpx.Response(200, json={"data": [LIVE_STREAM]}),
        ]}, calls=calls)
        auth = _rotating_auth()
        helix = HelixClient("cid", auth, http_client=client)

        stream = await helix.get_stream(user_id="1001")
        assert stream["id"] == "s1"
        assert auth.forced == [True]
        assert [c.headers["authorization"] for c in calls] == ["Bearer A", "Bearer B"]
        await client.aclose()

    @pytest.mark.asyncio
    async def test_error_status_raises(self, ready_auth):
        client = httpx_router({("GET", "/helix/users"): [httpx.Response(500, json={"message": "down"})]})
        helix = HelixClient("cid", ready_auth, http_client=client)

        with pytest.raises(ApiRequestError) as excinfo:
            await helix.get_users(logins=["x"])
        assert excinfo.value.status == 500
        assert helix.get_stats() == {"requests": 1, "errors": 1}
        await client.aclose()

    @pytest.mark.asyncio
    async def test_list_subscriptions_follows_pagination(self, ready_auth):
        def page(request):
            if request.url.params.get("after") == "c1":
                return httpx.Response(200, json={"data": [{"id": "b"}], "pagination": {}})
            return httpx.Response(200, json={"data": [{"id": "a"}], "pagination": {"cursor": "c1"}})

        client = httpx_router({("GET", "/helix/eventsub/subscriptions"): [page]})
        helix = HelixClient("cid", ready_auth, http_client=client)
        assert [s["id"] for s in await helix.list_eventsub_subscriptions()] == ["a", "b"]
        await client.aclose()

    @pytest.mark.asyncio
    async def test_create_and_delete_subscription(self, ready_auth):
        calls = []
        client = httpx_router({
            ("POST", "/helix/eventsub/subscriptions"): [
                httpx.Response(202, json={"data": [{"id": "new", "status": "enabled"}]}),
            ],
            ("DELETE", "/helix/eventsub/subscriptions"): [httpx.Response(204)],
        }, calls=calls)
        helix = HelixClient("cid", ready_auth, http_client=client)

        created = await helix.create_eventsub_subscription({"type": "stream.online"})
        assert created["id"] == "new"
        assert await helix.delete_eventsub_subscription("new") is None
        assert calls[1].url.params["id"] == "new"
        await client.aclose()


@pytest.mark.unit
class TestStreamMonitor:

    @pytest.mark.asyncio
    async def test_refresh_on_401_yields_live_status(self, timers):
        """GET /streams en 401 → refresh forcé → 200 → platform:stream-status isLive=true"""
        client = httpx_router({("GET", "/helix/streams"): [
            httpx.Response(401, json={"status": 401, "message": "Invalid OAuth token"}),
            httpx.Response(200, json={"data": [LIVE_STREAM]}),
        ]})
        auth = _rotating_auth()
        statuses = []
        monitor = StreamMonitor(HelixClient("cid", auth, http_client=client), "1001",
                                on_status=statuses.append, timers=timers)

        assert await monitor.check_now() is True
        assert auth.forced == [True]
        assert len(statuses) == 1

        event = normalize_event("stream-status", "twitch", statuses[0])
        assert event["type"] == "platform:stream-status"
        assert event["isLive"] is True
        assert event["timestamp"] == "2024-01-01T10:00:00.000Z"
        assert event["title"] == "Speedrun"
        assert event["category"] == "Celeste"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_transitions_only(self, timers):
        helix = Mock()
        streams = [LIVE_STREAM, LIVE_STREAM, None]

        async def get_stream(user_id=None):
            return streams.pop(0)

        helix.get_stream = get_stream
        statuses = []
        monitor = StreamMonitor(helix, "1001", on_status=statuses.append, timers=timers)

        assert await monitor.check_now() is True
        assert await monitor.check_now() is True
        assert await monitor.check_now() is False
        assert [s["isLive"] for s in statuses] == [True, False]
        assert statuses[1]["status"] == "offline"

    @pytest.mark.asyncio
    async def test_error_keeps_status(self, timers):
        helix = Mock()

        async def get_stream(user_id=None):
            raise ApiRequestError("Request failed with status code 503", status=503)

        helix.get_stream = get_stream
        monitor = StreamMonitor(helix, "1001", on_status=Mock(), timers=timers)
        assert await monitor.check_now() is None
        assert monitor.get_state()["errors"] == 1
        assert monitor.status == "unknown"

    @pytest.mark.asyncio
    async def test_start_stop(self, timers):
        monitor = StreamMonitor(Mock(), "1001", on_status=Mock(), timers=timers, interval=60)
        monitor.start()
        assert timers.has_interval(POLL_TIMER_NAME)
        assert timers.get_info(POLL_TIMER_NAME)["type"] == "polling"
        monitor.stop()
        assert monitor.is_running() is False
