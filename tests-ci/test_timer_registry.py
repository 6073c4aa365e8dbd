"""
Tests du TimerRegistry (core/timer_registry.py)
Vérifie création / remplacement / nettoyage des timers nommés
"""
import asyncio

import pytest

from core.timer_registry import TimerRegistry


@pytest.mark.unit
class TestTimerRegistry:
    """Intervals et timeouts nommés"""

    @pytest.mark.asyncio
    async def test_active_count_tracks_created_minus_cleared(self):
        """active_count = créés - nettoyés"""
        timers = TimerRegistry("test")
        for name in ("a", "b", "c"):
            timers.create_interval(name, lambda: None, 1000)
        assert timers.get_statistics()["active_count"] == 3

        assert timers.clear_interval("b") is True
        assert timers.get_statistics()["active_count"] == 2
        assert timers.clear_interval("missing") is False

        timers.cleanup()
        assert timers.get_statistics()["active_count"] == 0

    @pytest.mark.asyncio
    async def test_same_name_replaces_previous_timer(self):
        timers = TimerRegistry("test")
        timers.create_interval("poll", lambda: None, 1000)
        first = timers.get_info("poll")["id"]
        timers.create_interval("poll", lambda: None, 2000)

        stats = timers.get_statistics()
        assert stats["active_count"] == 1
        assert stats["total_created"] == 2
        assert timers.get_info("poll")["id"] != first
        assert timers.get_cleanup_history()[-1]["reason"] == "replaced"
        timers.cleanup()

    @pytest.mark.asyncio
    async def test_interval_fires_repeatedly(self):
        calls = []
        timers = TimerRegistry("test")
        timers.create_interval("tick", lambda: calls.append(1), 10)
        await asyncio.sleep(0.08)
        timers.cleanup()
        assert len(calls) >= 2

    @pytest.mark.asyncio
    async def test_timeout_fires_once_and_leaves_registry(self):
        calls = []

        async def callback():
            calls.append("fired")

        timers = TimerRegistry("test")
        timers.create_timeout("once", callback, 0)
        assert timers.has_interval("once")
        await asyncio.sleep(0.02)

        assert calls == ["fired"]
        assert not timers.has_interval("once")
        assert timers.get_cleanup_history()[-1]["reason"] == "fired"

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_stop_interval(self):
        calls = []

        def callback():
            calls.append(1)
            raise RuntimeError("boom")

        timers = TimerRegistry("test")
        timers.create_interval("flaky", callback, 10)
        await asyncio.sleep(0.05)
        assert timers.has_interval("flaky")
        assert len(calls) >= 2
        timers.cleanup()

    @pytest.mark.asyncio
    async def test_clear_all_by_type_and_idempotence(self):
        timers = TimerRegistry("test")
        timers.create_polling_interval("p1", lambda: None)
        timers.create_polling_interval("p2", lambda: None)
        timers.create_keepalive_interval("k1", lambda: None)

        assert timers.clear_all_intervals("polling") == 2
        assert [t["name"] for t in timers.get_active_intervals()] == ["k1"]

        assert timers.clear_all_intervals() == 1
        assert timers.clear_all_intervals() == 0

    @pytest.mark.asyncio
    async def test_out_of_range_period_is_accepted_but_reported(self):
        timers = TimerRegistry("test")
        timers.create_interval("fast", lambda: None, 10)
        assert timers.has_interval("fast")
        assert timers.get_statistics()["out_of_range_count"] == 1
        assert timers.get_health_check()["out_of_range"][0]["name"] == "fast"
        timers.cleanup()

    def test_non_callable_rejected(self):
        timers = TimerRegistry("test")
        with pytest.raises(TypeError):
            timers.create_interval("bad", "not callable", 1000)

    @pytest.mark.asyncio
    async def test_statistics_by_type(self):
        timers = TimerRegistry("twitch")
        timers.create_monitoring_interval("m", lambda: None)
        timers.create_polling_interval("p", lambda: None)
        stats = timers.get_statistics()
        assert stats["platform"] == "twitch"
        assert stats["intervals_by_type"] == {"monitoring": 1, "polling": 1}
        assert stats["oldest_interval"]["name"] == "m"
        timers.cleanup()

    @pytest.mark.asyncio
    async def test_interval_clearing_itself_finishes_its_tick(self):
        """Un callback qui annule son propre timer va au bout de ses await"""
        timers = TimerRegistry("test")
        steps = []

        async def tick():
            steps.append("start")
            timers.clear_interval("self")
            await asyncio.sleep(0.01)
            steps.append("end")

        timers.create_interval("self", tick, 100)
        await asyncio.sleep(0.35)

        assert steps == ["start", "end"]
        assert timers.has_interval("self") is False
        assert timers.get_cleanup_history()[-1]["name"] == "self"
