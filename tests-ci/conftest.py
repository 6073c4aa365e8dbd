"""
Pytest configuration for CI tests
Provides common fixtures and fakes (aiohttp WebSocket/session, Helix, auth)
"""
import asyncio
import json
from collections import namedtuple
from unittest.mock import Mock

import aiohttp
import httpx
import pytest

from core.config import TwitchConfig
from core.timer_registry import TimerRegistry

FakeWSMessage = namedtuple("FakeWSMessage", ["type", "data", "extra"])


# ============================================================================
# EventSub WebSocket
# ============================================================================

class FakeWebSocket:
    """ClientWebSocketResponse minimal piloté par une asyncio.Queue"""

    def __init__(self):
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self.close_code = None
        self.close_calls = []
        self.pongs = []

    async def receive(self):
        return await self.queue.get()

    def push_json(self, message: dict):
        self.queue.put_nowait(FakeWSMessage(aiohttp.WSMsgType.TEXT, json.dumps(message), None))

    def push_text(self, text: str):
        self.queue.put_nowait(FakeWSMessage(aiohttp.WSMsgType.TEXT, text, None))

    def push_close(self, code: int, reason: str = ""):
        """Close frame reçue du serveur"""
        self.closed = True
        self.close_code = code
        self.queue.put_nowait(FakeWSMessage(aiohttp.WSMsgType.CLOSE, code, reason))

    def push_ping(self, data: bytes = b"ping"):
        self.queue.put_nowait(FakeWSMessage(aiohttp.WSMsgType.PING, data, None))

    async def close(self, code: int = 1000, message: bytes = b""):
        if self.closed:
            return False
        self.closed = True
        self.close_code = code
        self.close_calls.append((code, message))
        self.queue.put_nowait(FakeWSMessage(aiohttp.WSMsgType.CLOSED, None, None))
        return True

    async def pong(self, data: bytes = b""):
        self.pongs.append(data)

    def exception(self):
        return None


class FakeWSSession:
    """aiohttp.ClientSession réduit à ws_connect (sockets ou exceptions en file)"""

    def __init__(self, sockets=None):
        self.sockets = list(sockets or [])
        self.urls = []
        self.closed = False

    async def ws_connect(self, url, **kwargs):
        self.urls.append(url)
        if not self.sockets:
            raise aiohttp.ClientConnectionError("Cannot connect to host eventsub.wss.twitch.tv")
        item = self.sockets.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self):
        self.closed = True


def eventsub_message(message_type, payload=None, message_id="msg-1",
                     timestamp="2024-01-01T00:00:00.000Z", subscription_type=None):
    metadata = {
        "message_id": message_id,
        "message_type": message_type,
        "message_timestamp": timestamp,
    }
    if subscription_type:
        metadata["subscription_type"] = subscription_type
        metadata["subscription_version"] = "1"
    return {"metadata": metadata, "payload": payload or {}}


def welcome_message(session_id="session-abc", keepalive=30):
    return eventsub_message("session_welcome", {
        "session": {
            "id": session_id,
            "status": "connected",
            "keepalive_timeout_seconds": keepalive,
            "reconnect_url": None,
        }
    }, message_id=f"welcome-{session_id}")


def notification_message(subscription_type, event, message_id="notif-1",
                         timestamp="2024-01-01T00:00:00.000Z"):
    return eventsub_message("notification", {
        "subscription": {"id": "sub-1", "type": subscription_type, "version": "1", "status": "enabled"},
        "event": event,
    }, message_id=message_id, timestamp=timestamp, subscription_type=subscription_type)


# ============================================================================
# Helix / auth
# ============================================================================

class FakeHelix:
    """HelixClient en mémoire pour les subscriptions EventSub"""

    def __init__(self, create_errors=None, existing=None):
        self.create_errors = list(create_errors or [])
        self.existing = list(existing or [])
        self.created = []
        self.deleted = []

    async def create_eventsub_subscription(self, body):
        if self.create_errors:
            error = self.create_errors.pop(0)
            if error is not None:
                raise error
        self.created.append(body)
        return {"id": f"sub-{len(self.created)}", "status": "enabled", "type": body["type"]}

    async def list_eventsub_subscriptions(self, status=None):
        return list(self.existing)

    async def delete_eventsub_subscription(self, subscription_id):
        self.deleted.append(subscription_id)


class FakeTokenResponse:
    def __init__(self, status, body, headers=None):
        self.status = status
        self._body = body
        self.headers = headers or {}

    async def json(self, content_type=None):
        if isinstance(self._body, str):
            raise ValueError("not json")
        return self._body

    async def text(self):
        return self._body if isinstance(self._body, str) else json.dumps(self._body)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeTokenSession:
    """aiohttp.ClientSession réduit à post() pour le endpoint /oauth2/token"""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def post(self, url, data=None, **kwargs):
        self.calls.append((url, dict(data or {})))
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def httpx_router(routes, calls=None):
    """
    httpx.AsyncClient sur MockTransport.

    routes: {(method, path): [httpx.Response | callable, ...]} consommées dans l'ordre,
    la dernière réponse est rejouée.
    """
    def handler(request: httpx.Request):
        if calls is not None:
            calls.append(request)
        key = (request.method, request.url.path)
        queue = routes.get(key)
        if not queue:
            return httpx.Response(404, json={"message": f"no route for {key}"})
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        return item(request) if callable(item) else item
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def timers():
    return TimerRegistry("test")


@pytest.fixture
def ready_auth():
    """Auth manager prêt (is_ready / user_id / ensure_valid_token)"""
    auth = Mock()
    auth.user_id = "1001"
    auth.is_ready = Mock(return_value=True)

    async def ensure_valid_token(force_refresh=False):
        return "access-token"

    auth.ensure_valid_token = Mock(side_effect=ensure_valid_token)
    return auth


@pytest.fixture
def twitch_config(tmp_path):
    return TwitchConfig(
        enabled=True,
        username="streamer",
        client_id="cid",
        client_secret="secret",
        broadcaster_id="1001",
        token_store_path=str(tmp_path / "tokens.json"),
    )
