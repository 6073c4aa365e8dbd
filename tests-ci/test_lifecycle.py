"""
Tests de l'orchestrateur de plateformes (core/lifecycle.py)
Drivers factices, bus réel
"""
import asyncio

import pytest

from core.config import CoreConfig, TikTokConfig, TwitchConfig, YouTubeConfig
from core.lifecycle import PlatformLifecycleOrchestrator
from core.message_bus import MessageBus
from core.message_types import TOPIC_PLATFORM_EVENT


class FakeDriver:
    self_detects_stream = True

    def __init__(self, fail=None, gate=None, fail_cleanup=False):
        self.fail = fail
        self.gate = gate
        self.fail_cleanup = fail_cleanup
        self.handlers = None
        self.cleaned = False

    async def initialize(self, handlers):
        self.handlers = handlers
        if self.gate is not None:
            await self.gate.wait()
        if self.fail is not None:
            raise self.fail
        return True

    async def cleanup(self):
        self.cleaned = True
        if self.fail_cleanup:
            raise RuntimeError("socket stuck")

    def is_connected(self):
        return self.handlers is not None


class PolledDriver(FakeDriver):
    self_detects_stream = False


class FakeDetector:
    def __init__(self):
        self.calls = []

    async def start_stream_detection(self, platform, config, connect, on_status):
        self.calls.append(platform)
        on_status("live", "stream found")
        await connect()


def _config(twitch=False, youtube=False, tiktok=False):
    return CoreConfig(
        twitch=TwitchConfig(enabled=twitch, username="streamer", client_id="cid", client_secret="secret"),
        youtube=YouTubeConfig(enabled=youtube, username="chan"),
        tiktok=TikTokConfig(enabled=tiktok, username="creator"),
    )


def _orchestrator(config, drivers, timers, **kwargs):
    bus = MessageBus()
    received = []
    bus.subscribe(TOPIC_PLATFORM_EVENT, received.append)
    factories = {name: (lambda section, shared, d=driver: d) for name, driver in drivers.items()}
    orchestrator = PlatformLifecycleOrchestrator(config, bus, factories, timers=timers, **kwargs)
    return orchestrator, bus, received


@pytest.mark.unit
class TestEventEmission:

    @pytest.mark.asyncio
    async def test_handler_publishes_canonical_event(self, timers):
        orchestrator, bus, received = _orchestrator(_config(), {}, timers)
        handlers = orchestrator.create_default_event_handlers("twitch")

        handlers.on_follow({"user_name": "u", "user_id": "1", "followed_at": "2024-01-01T00:00:00Z"})
        await bus.wait_all()

        assert received == [{
            "platform": "twitch",
            "type": "platform:follow",
            "data": {
                "type": "platform:follow",
                "platform": "twitch",
                "username": "u",
                "userId": "1",
                "timestamp": "2024-01-01T00:00:00.000Z",
            },
        }]
        assert orchestrator.get_status()["events"] == {"emitted": 1, "dropped": 0}

    @pytest.mark.asyncio
    async def test_reserved_keys_are_sanitized(self, timers):
        """type/platform du payload ne remplacent jamais l'enveloppe"""
        orchestrator, bus, received = _orchestrator(_config(), {}, timers)
        handlers = orchestrator.create_default_event_handlers("tiktok")

        handlers.on_share({"userId": "7", "username": "s", "type": "social", "platform": "youtube"})
        await bus.wait_all()

        data = received[0]["data"]
        assert received[0]["platform"] == "tiktok"
        assert data["type"] == "platform:share"
        assert data["sourceType"] == "social"
        assert data["sourcePlatform"] == "youtube"

    @pytest.mark.asyncio
    async def test_bare_viewer_count_dropped(self, timers):
        orchestrator, bus, received = _orchestrator(_config(), {}, timers)
        handlers = orchestrator.create_default_event_handlers("youtube")

        assert handlers.on_viewer_count(42) is False
        assert handlers.on_viewer_count({"count": 42}) is True
        await bus.wait_all()
        assert [e["data"]["count"] for e in received] == [42]
        assert orchestrator.dropped_events == 1

    @pytest.mark.asyncio
    async def test_invalid_events_dropped(self, timers):
        orchestrator, bus, received = _orchestrator(_config(), {}, timers)

        assert orchestrator.emit_platform_event("twitch", "follow", {"user_name": "u"}) is False
        assert orchestrator.emit_platform_event("twitch", "platform:connection", {"status": "up"}) is False
        assert orchestrator.emit_platform_event("twitch", "follow", "not a mapping") is False
        await bus.wait_all()
        assert received == []
        assert orchestrator.dropped_events == 3

    @pytest.mark.asyncio
    async def test_connection_and_auth_events(self, timers):
        orchestrator, bus, received = _orchestrator(_config(), {}, timers)
        handlers = orchestrator.create_default_event_handlers("twitch")

        handlers.on_connection({"status": "disconnected", "reason": "socket closed"})
        handlers.on_authentication_required({"reason": "Refresh token expired", "tokenType": "refresh"})
        await bus.wait_all()

        connection, auth = (e["data"] for e in received)
        assert connection["status"] == "disconnected"
        assert connection["willReconnect"] is True
        assert connection["error"] == {"message": "socket closed", "code": None}
        assert auth == {
            "type": "platform:authentication-required",
            "platform": "twitch",
            "tokenType": "refresh",
            "reason": "Refresh token expired",
        }
        assert orchestrator.recent_errors[-1]["context"] == {"stage": "authentication"}

    @pytest.mark.asyncio
    async def test_stream_status_tracked(self, timers):
        orchestrator, bus, received = _orchestrator(_config(), {}, timers)
        handlers = orchestrator.create_default_event_handlers("tiktok")

        handlers.on_stream_status({"isLive": False, "status": "ended", "timestamp": "2024-01-01T00:00:00.000Z"})
        await bus.wait_all()
        assert orchestrator.get_status()["streamStatuses"]["tiktok"]["status"] == "ended"
        assert received[0]["type"] == "platform:stream-status"


@pytest.mark.unit
class TestInitialization:

    @pytest.mark.asyncio
    async def test_ready_and_disabled(self, timers):
        driver = FakeDriver()
        orchestrator, _, _ = _orchestrator(_config(twitch=True), {"twitch": driver}, timers)

        platforms = await orchestrator.initialize_all_platforms()
        status = orchestrator.get_status()

        assert platforms == {"twitch": driver}
        assert status["initializedPlatforms"] == ["twitch"]
        assert sorted(status["disabledPlatforms"]) == ["tiktok", "youtube"]
        assert orchestrator.init_managers["twitch"].is_initialized() is True
        assert status["initialization"]["twitch"]["successfulAttempts"] == 1

    @pytest.mark.asyncio
    async def test_failure_is_isolated(self, timers):
        """Un driver en échec n'empêche pas les autres plateformes"""
        written = []
        orchestrator, bus, received = _orchestrator(
            _config(twitch=True, youtube=True),
            {"twitch": FakeDriver(fail=ConnectionRefusedError("Connection refused")), "youtube": FakeDriver()},
            timers,
            error_writer=written.append,
        )

        await orchestrator.initialize_all_platforms()
        await bus.wait_all()
        status = orchestrator.get_status()

        assert status["initializedPlatforms"] == ["youtube"]
        assert status["failedPlatforms"][0]["name"] == "twitch"
        assert status["failedPlatforms"][0]["lastError"] == "Connection refused"
        assert "INTERNET CONNECTION PROBLEM" in written[0]
        assert received[0]["type"] == "platform:error"
        assert received[0]["data"]["recoverable"] is True

    @pytest.mark.asyncio
    async def test_youtube_without_username(self, timers):
        config = _config(youtube=True)
        config.youtube.username = ""
        built = []
        bus = MessageBus()
        orchestrator = PlatformLifecycleOrchestrator(
            config, bus, {"youtube": lambda section, shared: built.append(section)}, timers=timers
        )

        await orchestrator.initialize_all_platforms()
        assert built == []
        assert orchestrator.platform_health["youtube"]["lastError"] == "Missing username"

    @pytest.mark.asyncio
    async def test_missing_factory(self, timers):
        orchestrator, _, _ = _orchestrator(_config(twitch=True), {}, timers)
        await orchestrator.initialize_all_platforms()
        assert orchestrator.platform_health["twitch"]["state"] == "failed"
        assert "No platform driver registered" in orchestrator.platform_health["twitch"]["lastError"]

    @pytest.mark.asyncio
    async def test_missing_stream_detector(self, timers):
        orchestrator, _, _ = _orchestrator(_config(twitch=True), {"twitch": PolledDriver()}, timers)
        await orchestrator.initialize_all_platforms()
        health = orchestrator.platform_health["twitch"]
        assert health["state"] == "failed"
        assert health["lastError"].startswith("Stream detection unavailable for twitch")

    @pytest.mark.asyncio
    async def test_stream_detector_connects(self, timers):
        detector = FakeDetector()
        driver = PolledDriver()
        orchestrator, _, _ = _orchestrator(_config(twitch=True), {"twitch": driver}, timers,
                                           stream_detector=detector)
        await orchestrator.initialize_all_platforms()

        assert detector.calls == ["twitch"]
        assert driver.handlers is not None
        assert orchestrator.platform_health["twitch"]["state"] == "ready"
        assert orchestrator.stream_statuses["twitch"]["isLive"] is True

    @pytest.mark.asyncio
    async def test_reinitialization_prevented(self, timers):
        orchestrator, _, _ = _orchestrator(_config(twitch=True), {"twitch": FakeDriver()}, timers)
        await orchestrator.initialize_all_platforms()
        await orchestrator.initialize_all_platforms()
        assert orchestrator.statistics["twitch"].prevented_attempts == 1
        assert orchestrator.platform_health["twitch"]["attempts"] == 1

    @pytest.mark.asyncio
    async def test_tiktok_initializes_in_background(self, timers):
        gate = asyncio.Event()
        driver = FakeDriver(gate=gate)
        orchestrator, _, _ = _orchestrator(_config(tiktok=True), {"tiktok": driver}, timers)

        await orchestrator.initialize_all_platforms()
        assert orchestrator.get_status()["initializingPlatforms"] == ["tiktok"]

        gate.set()
        assert await orchestrator.wait_for_background_inits(timeout=1) is True
        assert orchestrator.get_status()["initializedPlatforms"] == ["tiktok"]


@pytest.mark.unit
class TestShutdown:

    @pytest.mark.asyncio
    async def test_cleanup_all_drivers(self, timers):
        twitch, youtube = FakeDriver(fail_cleanup=True), FakeDriver()
        orchestrator, _, _ = _orchestrator(_config(twitch=True, youtube=True),
                                           {"twitch": twitch, "youtube": youtube}, timers)
        await orchestrator.initialize_all_platforms()
        timers.create_interval("twitch:poll", lambda: None, 60_000)

        await orchestrator.shutdown(timeout=0.1)

        assert twitch.cleaned is True
        assert youtube.cleaned is True
        assert orchestrator.recent_errors[-1]["context"] == {"stage": "shutdown"}
        assert timers.get_active_intervals() == []

    @pytest.mark.asyncio
    async def test_pending_background_init_cancelled(self, timers):
        driver = FakeDriver(gate=asyncio.Event())
        orchestrator, _, _ = _orchestrator(_config(tiktok=True), {"tiktok": driver}, timers)
        await orchestrator.initialize_all_platforms()

        await orchestrator.shutdown(timeout=0.01)
        _, task = orchestrator.background_inits[0]
        assert task.cancelled() is True
        assert driver.cleaned is True

        orchestrator.dispose()
        assert orchestrator.get_status()["platformHealth"] == {}
