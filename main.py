#!/usr/bin/env python3
"""
StreamCore - Core de connexion multi-plateformes (Twitch / YouTube / TikTok)

Charge config/config.yaml, démarre les plateformes activées via
l'orchestrateur et publie les événements canoniques sur le MessageBus.

Exit codes :
    0  arrêt normal
    1  aucune plateforme n'a pu être initialisée
    2  configuration absente ou invalide
"""

import argparse
import asyncio
import logging
import os
import pathlib
import signal
import sys

import aiohttp
import httpx

from core.config import DEFAULT_CONFIG_PATH, CoreConfig, load_config
from core.exceptions import ConfigurationError
from core.lifecycle import PlatformLifecycleOrchestrator
from core.message_bus import MessageBus
from core.message_types import TOPIC_PLATFORM_EVENT
from tiktok.platform import TikTokPlatform
from tiktok.webcast_client import create_webcast_client
from twitchapi.platform import TwitchPlatform
from youtube.chat_client import LiveVideoFinder, create_pytchat_connection
from youtube.platform import YouTubePlatform

LOGGER = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_INIT_FAILED = 1
EXIT_CONFIG_ERROR = 2


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="StreamCore - multi-platform stream chat connector")
    parser.add_argument(
        '--config',
        type=str,
        default=DEFAULT_CONFIG_PATH,
        help=f'Path to config file (default: {DEFAULT_CONFIG_PATH})'
    )
    parser.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug logging'
    )
    parser.add_argument(
        '--log-file',
        type=str,
        default='logs/streamcore.log',
        help='Path to log file (default: logs/streamcore.log)'
    )
    return parser.parse_args(argv)


def setup_logging(log_file, debug=False):
    """Logs fichier + console"""
    log_path = pathlib.Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s %(message)s",
        handlers=[
            logging.FileHandler(log_path),
            logging.StreamHandler()
        ],
        force=True  # Override any existing config
    )
    return log_path


def write_pid_file():
    """Write PID file for process tracking"""
    pids_dir = pathlib.Path("pids")
    pids_dir.mkdir(exist_ok=True)
    pid_file = pids_dir / "streamcore.pid"

    pid = os.getpid()
    with open(pid_file, 'w') as f:
        f.write(str(pid))

    LOGGER.info(f"📝 PID {pid} written to {pid_file}")
    return pid_file


def remove_pid_file(pid_file):
    """Remove PID file on shutdown"""
    try:
        if pid_file.exists():
            pid_file.unlink()
            LOGGER.info(f"🗑️ PID file {pid_file} removed")
    except OSError as e:
        LOGGER.warning(f"⚠️ Could not remove PID file {pid_file}: {e}")


def build_platform_factories(http_client, session):
    """
    Factories des drivers : factory(section_config, shared) -> driver.

    YouTube : détection des lives par la page /@handle/live, chat via pytchat.
    TikTok : WebCast via TikTokLive.
    """
    def twitch_factory(section, shared):
        return TwitchPlatform(section, timers=shared["timers"], http_client=http_client, session=session)

    def youtube_factory(section, shared):
        return YouTubePlatform(
            section,
            connection_factory=create_pytchat_connection,
            live_video_finder=LiveVideoFinder(http_client),
            timers=shared["timers"],
        )

    def tiktok_factory(section, shared):
        return TikTokPlatform(
            section,
            client_factory=create_webcast_client,
            retry_scheduler=shared["retry_scheduler"],
            timers=shared["timers"],
        )

    return {
        "twitch": twitch_factory,
        "youtube": youtube_factory,
        "tiktok": tiktok_factory,
    }


def log_platform_event(event):
    """Consommateur par défaut du bus : une ligne de log par événement"""
    data = event.get("data", {})
    who = data.get("username") or data.get("status") or ""
    LOGGER.info(f"📨 [{event['platform']}] {event['type']} {who}".rstrip())


async def run(config: CoreConfig) -> int:
    bus = MessageBus()
    bus.subscribe(TOPIC_PLATFORM_EVENT, log_platform_event)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            LOGGER.debug(f"Signal handler unavailable for {sig.name}")

    async with httpx.AsyncClient(timeout=8.0) as http_client, aiohttp.ClientSession() as session:
        orchestrator = PlatformLifecycleOrchestrator(
            config,
            bus,
            build_platform_factories(http_client, session),
            error_writer=sys.stderr.write,
        )
        try:
            await orchestrator.initialize_all_platforms()
            await orchestrator.wait_for_background_inits(config.background_init_timeout_s)

            status = orchestrator.get_status()
            if not status["initializedPlatforms"] and not status["initializingPlatforms"]:
                LOGGER.error("❌ No platform could be initialized")
                return EXIT_INIT_FAILED

            LOGGER.info(f"✅ Running with: {', '.join(status['initializedPlatforms'] + status['initializingPlatforms'])}")
            await stop_event.wait()
            LOGGER.info("CTRL+C détecté, arrêt en cours...")
            return EXIT_OK
        finally:
            await orchestrator.shutdown()
            await bus.wait_all()


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_file, args.debug)

    try:
        config = CoreConfig.from_yaml(load_config(args.config))
    except ConfigurationError as e:
        LOGGER.error(f"❌ Configuration error: {e}")
        return EXIT_CONFIG_ERROR

    if not any(section.enabled for section in config.platforms().values()):
        LOGGER.error("❌ Configuration error: no platform enabled")
        return EXIT_CONFIG_ERROR

    pid_file = write_pid_file()
    try:
        return asyncio.run(run(config))
    except KeyboardInterrupt:
        return EXIT_OK
    finally:
        remove_pid_file(pid_file)
        LOGGER.info("Termine")


if __name__ == "__main__":
    sys.exit(main())
