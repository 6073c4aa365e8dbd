"""
Tests pour le module core/ (bus, config, messages utilisateur, devises)
Vérifie les fonctionnalités de base du système
"""
import asyncio
import logging
from unittest.mock import AsyncMock, Mock

import pytest

import main
from core.async_utils import maybe_await
from core.config import CoreConfig, RetryConfig, TikTokConfig, YouTubeConfig, load_config
from core.currency import format_currency_for_tts, get_currency_word, get_singular_currency
from core.exceptions import ConfigurationError
from core.message_bus import MessageBus
from core.message_types import PlatformEvent, SystemEvent
from core.user_errors import (
    format_error_for_console,
    format_error_for_log,
    show_user_friendly_error,
    translate_error,
)
from tiktok.platform import TikTokPlatform
from youtube.chat_client import LiveVideoFinder
from youtube.platform import YouTubePlatform


@pytest.mark.unit
class TestMessageBus:
    """Tests du bus pub/sub (core/message_bus.py)"""

    @pytest.mark.asyncio
    async def test_publish_sync_and_async_handlers(self):
        bus = MessageBus()
        sync_handler = Mock()
        async_handler = AsyncMock()
        bus.subscribe("platform:event", sync_handler)
        bus.subscribe("platform:event", async_handler)

        await bus.publish("platform:event", {"type": "platform:follow"})
        await bus.wait_all()

        sync_handler.assert_called_once_with({"type": "platform:follow"})
        async_handler.assert_awaited_once_with({"type": "platform:follow"})
        assert bus.get_stats()["published"] == 1

    @pytest.mark.asyncio
    async def test_handler_error_does_not_block_others(self):
        """Un handler qui lève n'empêche pas les autres de recevoir le message"""
        bus = MessageBus()
        received = []
        bus.subscribe("t", Mock(side_effect=RuntimeError("boom")))
        bus.subscribe("t", received.append)

        assert bus.emit("t", 1) == 2
        await bus.wait_all()
        assert received == [1]
        assert bus.get_stats()["active_tasks"] == 0

    @pytest.mark.asyncio
    async def test_no_subscriber_and_unsubscribe(self):
        bus = MessageBus()
        handler = Mock()
        assert bus.emit("nobody", 1) == 0

        bus.subscribe("t", handler)
        assert bus.unsubscribe("t", handler) is True
        assert bus.unsubscribe("t", handler) is False
        assert bus.emit("t", 1) == 0
        await asyncio.sleep(0)
        handler.assert_not_called()

    def test_message_types(self):
        event = PlatformEvent("twitch", "platform:raid", {"viewerCount": 3})
        assert event.to_dict() == {"platform": "twitch", "type": "platform:raid", "data": {"viewerCount": 3}}
        assert SystemEvent("eventsub.connected", {}).timestamp > 0


@pytest.mark.unit
class TestAsyncUtils:

    @pytest.mark.asyncio
    async def test_maybe_await_sync_and_async(self):
        """Valeur directe ou coroutine : même résultat"""
        async def produce():
            return "async"

        assert await maybe_await("sync") == "sync"
        assert await maybe_await(produce()) == "async"
        assert await maybe_await(None) is None


@pytest.mark.unit
class TestConfig:
    """Chargement YAML → CoreConfig"""

    def test_load_and_build(self, tmp_path, monkeypatch):
        monkeypatch.delenv("TWITCH_CLIENT_ID", raising=False)
        monkeypatch.setenv("TWITCH_CLIENT_SECRET", "from-env")
        path = tmp_path / "config.yaml"
        path.write_text(
            "twitch:\n"
            "  enabled: true\n"
            "  username: streamer\n"
            "  client_id: cid\n"
            "  client_secret: from-yaml\n"
            "  broadcaster_id: 1001\n"
            "  eventsub_subscriptions: [channel.bits.use]\n"
            "tiktok:\n"
            "  enabled: 'no'\n"
            "retry:\n"
            "  max_attempts: 5\n",
            encoding="utf-8",
        )
        config = CoreConfig.from_yaml(load_config(str(path)))

        assert config.twitch.enabled is True
        assert config.twitch.client_secret == "from-env"
        assert config.twitch.broadcaster_id == "1001"
        assert config.twitch.eventsub_subscriptions == ["channel.bits.use"]
        assert config.tiktok.enabled is False
        assert config.youtube.stream_detection_method == "youtubei"
        assert config.retry == RetryConfig(max_attempts=5)

    def test_missing_and_invalid_files(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_config(str(tmp_path / "absent.yaml"))

        broken = tmp_path / "broken.yaml"
        broken.write_text("twitch: [unclosed\n", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            load_config(str(broken))

        listing = tmp_path / "list.yaml"
        listing.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="expected a mapping"):
            load_config(str(listing))

        empty = tmp_path / "empty.yaml"
        empty.write_text("", encoding="utf-8")
        assert load_config(str(empty)) == {}

    def test_enabled_platform_requires_fields(self, monkeypatch):
        monkeypatch.delenv("TWITCH_CLIENT_ID", raising=False)
        monkeypatch.delenv("TWITCH_CLIENT_SECRET", raising=False)
        with pytest.raises(ConfigurationError, match="client_id, client_secret"):
            CoreConfig.from_yaml({"twitch": {"enabled": True, "username": "s"}})
        with pytest.raises(ConfigurationError, match="tiktok: username"):
            CoreConfig.from_yaml({"tiktok": {"enabled": True}})

    def test_test_mode_flag(self, monkeypatch):
        monkeypatch.setenv("TWITCH_DISABLE_AUTH", "true")
        assert CoreConfig().test_mode is True
        monkeypatch.delenv("TWITCH_DISABLE_AUTH")
        assert CoreConfig().test_mode is False


@pytest.mark.unit
class TestUserErrors:
    """Traduction des erreurs techniques (core/user_errors.py)"""

    @pytest.mark.parametrize("technical,title", [
        ("Config file config/config.yaml not found", "Settings File Missing"),
        ("401 Invalid OAuth token", "Twitch Connection Expired"),
        ("Missing required config for youtube: username", "YouTube Username Required"),
        ("connect ECONNREFUSED 127.0.0.1:443", "Internet Connection Problem"),
    ])
    def test_known_patterns(self, technical, title):
        assert translate_error(technical)["title"] == title

    def test_unknown_error(self):
        friendly = translate_error(RuntimeError("weird"), include_technical=True)
        assert friendly["title"] == "Unexpected Problem"
        assert friendly["severity"] == "error"
        assert friendly["technicalDetails"] == "weird"
        assert translate_error("weird")["technicalDetails"] is None

    def test_formatting_and_sinks(self):
        friendly = translate_error("Token exchange failed", include_technical=True)
        console = format_error_for_console(friendly, show_technical=True)
        assert "ERROR: ACCOUNT CONNECTION FAILED" in console
        assert "What to do:" in console
        assert "Technical details: Token exchange failed" in console
        assert format_error_for_log(friendly).startswith("Account Connection Failed: ")

        written = []
        logger = Mock(spec=logging.Logger)
        result = show_user_friendly_error("Access token expired", writer=written.append, logger=logger)
        assert result["severity"] == "warning"
        assert "WARNING: TWITCH CONNECTION EXPIRED" in written[0]
        logger.warning.assert_called_once()


@pytest.mark.unit
class TestCurrency:
    """Montants prononçables (core/currency.py)"""

    def test_currency_words(self):
        assert get_currency_word("EUR") == "euros"
        assert get_currency_word("XYZ") == "dollars"
        assert get_currency_word(None) == "dollars"
        assert get_singular_currency("euros") == "euro"
        assert get_singular_currency("korean won") == "korean won"

    @pytest.mark.parametrize("amount,currency,expected", [
        (1, "$", "1 dollar"),
        (5, "EUR", "5 euros"),
        (3.5, "GBP", "3 pounds 50"),
        (1.999, "USD", "2 dollars"),
        (0, "USD", "0"),
        (float("nan"), "USD", "0"),
        (None, "USD", "0"),
    ])
    def test_format_for_tts(self, amount, currency, expected):
        assert format_currency_for_tts(amount, currency) == expected


@pytest.mark.unit
class TestMain:
    """Point d'entrée et codes de sortie (main.py)"""

    def test_missing_config_exit_code(self, tmp_path):
        code = main.main(["--config", str(tmp_path / "absent.yaml"), "--log-file", str(tmp_path / "core.log")])
        assert code == main.EXIT_CONFIG_ERROR

    def test_no_platform_enabled_exit_code(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("twitch:\n  enabled: false\n", encoding="utf-8")
        code = main.main(["--config", str(path), "--log-file", str(tmp_path / "core.log")])
        assert code == main.EXIT_CONFIG_ERROR

    def test_platform_factories_build_drivers(self, timers):
        factories = main.build_platform_factories(http_client=Mock(), session=Mock())
        assert set(factories) == {"twitch", "youtube", "tiktok"}

        shared = {"timers": timers, "retry_scheduler": Mock(), "bus": MessageBus()}
        youtube = factories["youtube"](YouTubeConfig(enabled=True, username="chan"), shared)
        assert isinstance(youtube, YouTubePlatform)
        assert isinstance(youtube.live_video_finder, LiveVideoFinder)
        assert youtube.timers is timers

        tiktok = factories["tiktok"](TikTokConfig(enabled=True, username="creator"), shared)
        assert isinstance(tiktok, TikTokPlatform)
        assert tiktok.retry_scheduler is shared["retry_scheduler"]
