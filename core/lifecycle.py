#!/usr/bin/env python3
"""
🎛️ Platform Lifecycle Orchestrator - Démarrage, suivi et arrêt des plateformes

Pour chaque plateforme activée :
    1. InitializationManager décide si l'init a lieu
    2. le driver est construit par sa factory
    3. des handlers uniformes convertissent les callbacks du driver en
       événements canoniques publiés sur le bus ("platform:event")
    4. driver.initialize(handlers) (TikTok en tâche de fond)

Un driver sans détection de stream intégrée passe par le stream_detector
injecté ; sans détecteur la plateforme est marquée en échec.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from core.async_utils import maybe_await
from core.config import CoreConfig
from core.error_classifier import extract_error_message
from core.exceptions import ConfigurationError, ConnectionSetupError
from core.init_manager import InitializationManager
from core.message_bus import MessageBus
from core.message_types import TOPIC_PLATFORM_EVENT, PlatformEvent
from core.retry_scheduler import RetryScheduler
from core.statistics import InitializationStatistics
from core.timer_registry import TimerRegistry
from core.user_errors import format_error_for_log, show_user_friendly_error, translate_error
from events import schema
from events.normalizer import NORMALIZERS, canonical_type, normalize_event
from events.timestamps import now_iso

LOGGER = logging.getLogger(__name__)

# Plateformes initialisées hors du chemin bloquant (connexion lente)
BACKGROUND_PLATFORMS = ("tiktok",)

RECENT_ERRORS_LIMIT = 10
SHUTDOWN_BACKGROUND_TIMEOUT_S = 10.0


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class EventHandlers:
    """Callbacks passés à driver.initialize() (un argument : le payload brut)"""
    on_chat: Optional[Callable[[Any], Any]] = None
    on_viewer_count: Optional[Callable[[Any], Any]] = None
    on_gift: Optional[Callable[[Any], Any]] = None
    on_paypiggy: Optional[Callable[[Any], Any]] = None
    on_giftpaypiggy: Optional[Callable[[Any], Any]] = None
    on_follow: Optional[Callable[[Any], Any]] = None
    on_share: Optional[Callable[[Any], Any]] = None
    on_raid: Optional[Callable[[Any], Any]] = None
    on_envelope: Optional[Callable[[Any], Any]] = None
    on_stream_status: Optional[Callable[[Any], Any]] = None
    on_stream_detected: Optional[Callable[[Any], Any]] = None
    on_connection: Optional[Callable[[Any], Any]] = None
    on_authentication_required: Optional[Callable[[Any], Any]] = None
    on_error: Optional[Callable[[Any], Any]] = None


# handler → type canonique (émission directe via normalize_event)
NORMALIZED_HANDLERS = {
    "on_chat": schema.CHAT_MESSAGE,
    "on_gift": schema.GIFT,
    "on_paypiggy": schema.PAYPIGGY,
    "on_giftpaypiggy": schema.GIFTPAYPIGGY,
    "on_follow": schema.FOLLOW,
    "on_share": schema.SHARE,
    "on_raid": schema.RAID,
    "on_envelope": schema.ENVELOPE,
}


class PlatformLifecycleOrchestrator:
    """
    Orchestrateur des drivers de plateformes.

    Args:
        config: CoreConfig (sections twitch / youtube / tiktok)
        bus: MessageBus où sont publiés les événements canoniques
        platform_factories: {nom: factory(section_config, shared) -> driver}
        stream_detector: Détecteur pour les drivers sans détection intégrée
            (start_stream_detection(platform, config, connect, on_status))
        timers: TimerRegistry partagé par les drivers
        retry_scheduler: RetryScheduler partagé
        error_writer: Sink console des erreurs utilisateur (logger seul sinon)
    """

    def __init__(
        self,
        config: CoreConfig,
        bus: MessageBus,
        platform_factories: Dict[str, Callable[[Any, Dict[str, Any]], Any]],
        stream_detector: Any = None,
        timers: Optional[TimerRegistry] = None,
        retry_scheduler: Optional[RetryScheduler] = None,
        error_writer: Optional[Callable[[str], Any]] = None,
    ):
        self.config = config
        self.bus = bus
        self.platform_factories = dict(platform_factories)
        self.stream_detector = stream_detector
        self.timers = timers or TimerRegistry("lifecycle")
        self.retry_scheduler = retry_scheduler or RetryScheduler(
            config.retry, timers=self.timers, is_connected=self.is_platform_connected
        )
        self.error_writer = error_writer

        self.platforms: Dict[str, Any] = {}
        self.init_managers: Dict[str, InitializationManager] = {}
        self.statistics: Dict[str, InitializationStatistics] = {}
        self.platform_health: Dict[str, Dict[str, Any]] = {}
        self.connection_times: Dict[str, int] = {}
        self.stream_statuses: Dict[str, Dict[str, Any]] = {}
        self.background_inits: List[Tuple[str, asyncio.Task]] = []
        self.recent_errors: List[Dict[str, Any]] = []
        self.emitted_events = 0
        self.dropped_events = 0

    # ========================================================================
    # Health
    # ========================================================================

    def _health(self, name: str) -> Dict[str, Any]:
        if name not in self.platform_health:
            self.platform_health[name] = {
                "state": "unknown",
                "attempts": 0,
                "failures": 0,
                "lastUpdated": None,
                "lastError": None,
                "lastConnection": None,
            }
        return self.platform_health[name]

    def _update_health(self, name: str, state: str, error: Any = None):
        health = self._health(name)
        health["state"] = state
        health["lastUpdated"] = now_iso()
        if state == "initializing":
            health["attempts"] += 1
        elif state == "failed":
            health["failures"] += 1
            health["lastError"] = extract_error_message(error) if error is not None else None
        elif state == "ready":
            health["lastError"] = None
            health["lastConnection"] = now_iso()

    def _init_manager(self, name: str) -> InitializationManager:
        if name not in self.init_managers:
            self.init_managers[name] = InitializationManager(name)
        return self.init_managers[name]

    def _stats(self, name: str) -> InitializationStatistics:
        if name not in self.statistics:
            self.statistics[name] = InitializationStatistics(name)
        return self.statistics[name]

    def is_platform_connected(self, name: str) -> bool:
        driver = self.platforms.get(name)
        is_connected = getattr(driver, "is_connected", None)
        if not callable(is_connected):
            return False
        try:
            return bool(is_connected())
        except Exception as e:
            LOGGER.debug(f"is_connected failed for {name}: {e}")
            return False

    # ========================================================================
    # Initialisation
    # ========================================================================

    async def initialize_all_platforms(self) -> Dict[str, Any]:
        """
        Initialise toutes les plateformes activées.

        Un échec n'interrompt pas les autres plateformes.

        Returns:
            {nom: driver} des drivers construits
        """
        for name, section in self.config.platforms().items():
            health = self._health(name)
            if not getattr(section, "enabled", False):
                health["state"] = "disabled"
                health["lastUpdated"] = now_iso()
                LOGGER.debug(f"⏭️ {name} disabled, skipping")
                continue

            manager = self._init_manager(name)
            if not manager.begin_initialization():
                self._stats(name).record_prevented_attempt("initialization refused by manager")
                continue

            self._update_health(name, "initializing")
            try:
                driver = self._create_driver(name, section)
            except Exception as e:
                manager.mark_initialization_failure(e)
                self._mark_failed(name, e)
                continue

            handlers = self.create_default_event_handlers(name)
            if name in BACKGROUND_PLATFORMS:
                LOGGER.info(f"⏳ {name} initializing in background")
                task = asyncio.create_task(self._initialize_in_background(name, driver, section, handlers))
                self.background_inits.append((name, task))
                continue

            try:
                await self._initialize_platform(name, driver, section, handlers)
            except Exception as e:
                self._mark_failed(name, e)

        ready = [name for name, health in self.platform_health.items() if health["state"] == "ready"]
        LOGGER.info(f"🎛️ Platforms ready: {', '.join(ready) or 'none'}")
        return dict(self.platforms)

    def _create_driver(self, name: str, section: Any):
        if name == "youtube" and not getattr(section, "username", None):
            raise ConfigurationError("Missing username")

        factory = self.platform_factories.get(name)
        if factory is None:
            raise ConfigurationError(f"No platform driver registered for {name}")

        driver = factory(section, {"timers": self.timers, "retry_scheduler": self.retry_scheduler, "bus": self.bus})
        self.platforms[name] = driver
        return driver

    async def _initialize_platform(self, name: str, driver: Any, section: Any, handlers: EventHandlers):
        manager = self._init_manager(name)
        stats = self._stats(name)
        attempt_id = stats.start_attempt({"platform": name})
        started = _now_ms()

        try:
            if getattr(driver, "self_detects_stream", False):
                await maybe_await(driver.initialize(handlers))
                self._mark_ready(name, started)
            else:
                await self._start_stream_detection(name, driver, section, handlers, started)
        except Exception as e:
            manager.mark_initialization_failure(e)
            stats.record_failure(attempt_id, e, {"stage": "initialize"})
            raise

        manager.mark_initialization_success()
        stats.record_success(attempt_id, {"connectionTime": _now_ms() - started})

    async def _start_stream_detection(self, name: str, driver: Any, section: Any,
                                      handlers: EventHandlers, started: int):
        if self.stream_detector is None:
            raise ConnectionSetupError(
                f"Stream detection unavailable for {name}. Configure a stream detector or disable the platform."
            )

        async def connect():
            await maybe_await(driver.initialize(handlers))
            self._mark_ready(name, started)

        def on_status(status: str, message: Optional[str] = None):
            self._record_stream_status(name, {
                "status": status,
                "message": message,
                "isLive": status == "live",
                "timestamp": now_iso(),
            })

        await maybe_await(self.stream_detector.start_stream_detection(name, section, connect, on_status))

    async def _initialize_in_background(self, name: str, driver: Any, section: Any, handlers: EventHandlers):
        try:
            await self._initialize_platform(name, driver, section, handlers)
        except asyncio.CancelledError:
            LOGGER.info(f"🛑 Background initialization of {name} cancelled")
            raise
        except Exception as e:
            self._mark_failed(name, e)

    def _mark_ready(self, name: str, started: int):
        self.connection_times[name] = _now_ms() - started
        self._update_health(name, "ready")
        LOGGER.info(f"✅ {name} initialized in {self.connection_times[name]}ms")

    def _mark_failed(self, name: str, error: Any):
        self._update_health(name, "failed", error)
        self._record_error(name, error, {"stage": "initialize"})

        if self.error_writer is not None:
            show_user_friendly_error(error, writer=self.error_writer, logger=LOGGER)
        else:
            LOGGER.error(f"❌ {name} initialization failed: {format_error_for_log(translate_error(error, include_technical=True))}")

        self.emit_platform_event(name, schema.ERROR, schema.build_error_event(name, error, {"stage": "initialize"}))

    def _record_error(self, name: str, error: Any, context: Optional[Dict[str, Any]] = None):
        self.recent_errors.append({
            "platform": name,
            "message": extract_error_message(error),
            "context": dict(context or {}),
            "timestamp": now_iso(),
        })
        del self.recent_errors[:-RECENT_ERRORS_LIMIT]

    async def wait_for_background_inits(self, timeout: Optional[float] = None) -> bool:
        """
        Attend les initialisations en tâche de fond.

        Returns:
            True si toutes sont terminées avant le timeout
        """
        tasks = [task for _, task in self.background_inits if not task.done()]
        if not tasks:
            return True
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        if pending:
            LOGGER.warning(f"⚠️ {len(pending)} background initialization(s) still running after {timeout}s")
        return not pending

    # ========================================================================
    # Handlers & émission
    # ========================================================================

    def create_default_event_handlers(self, name: str) -> EventHandlers:
        """Handlers uniformes : callbacks du driver → événements canoniques"""
        handlers = {
            attr: (lambda raw, event_type=event_type: self.emit_platform_event(name, event_type, raw))
            for attr, event_type in NORMALIZED_HANDLERS.items()
        }
        return EventHandlers(
            **handlers,
            on_viewer_count=lambda raw: self._on_viewer_count(name, raw),
            on_stream_status=lambda raw: self._record_stream_status(name, raw),
            on_stream_detected=lambda raw: self.emit_platform_event(name, schema.STREAM_DETECTED, raw),
            on_connection=lambda raw: self._on_connection(name, raw),
            on_authentication_required=lambda raw: self._on_authentication_required(name, raw),
            on_error=lambda raw: self._on_error(name, raw),
        )

    def _on_viewer_count(self, name: str, raw: Any) -> bool:
        if isinstance(raw, (int, float)) and not isinstance(raw, bool):
            LOGGER.warning(f"⚠️ {name} viewer count received as a bare number, expected {{count, timestamp}}")
            self.dropped_events += 1
            return False
        return self.emit_platform_event(name, schema.VIEWER_COUNT, raw)

    def _record_stream_status(self, name: str, raw: Dict[str, Any]) -> bool:
        raw = dict(raw or {})
        self.stream_statuses[name] = {
            "status": raw.get("status"),
            "message": raw.get("message"),
            "timestamp": raw.get("timestamp") or now_iso(),
            "isLive": raw.get("isLive"),
        }
        return self.emit_platform_event(name, schema.STREAM_STATUS, raw)

    def _on_connection(self, name: str, raw: Dict[str, Any]) -> bool:
        raw = raw or {}
        status = raw.get("status") or "unknown"
        error = None
        if raw.get("reason") and status != "connected":
            error = {"message": str(raw["reason"]), "code": raw.get("code")}
        if status == "connected":
            self._health(name)["lastConnection"] = now_iso()
        return self.emit_platform_event(name, schema.CONNECTION, schema.build_connection_event(name, status, error))

    def _on_authentication_required(self, name: str, raw: Dict[str, Any]) -> bool:
        raw = raw or {}
        reason = raw.get("reason") or "authentication required"
        LOGGER.warning(f"🔐 {name} requires re-authentication: {reason}")
        self._record_error(name, reason, {"stage": "authentication"})
        event = schema.build_authentication_required(name, str(reason), raw.get("tokenType") or "access")
        return self.emit_platform_event(name, schema.AUTHENTICATION_REQUIRED, event)

    def _on_error(self, name: str, raw: Any) -> bool:
        if isinstance(raw, dict):
            error, context = raw.get("error") or raw.get("message"), raw.get("context")
        else:
            error, context = raw, None
        self._record_error(name, error, context)
        context = context if isinstance(context, dict) else {}
        return self.emit_platform_event(name, schema.ERROR, schema.build_error_event(name, error, context))

    def emit_platform_event(self, platform: str, event_type: str, data: Any) -> bool:
        """
        Normalise / valide puis publie {platform, type, data} sur le bus.

        Returns:
            True si l'événement a été publié
        """
        event_type = canonical_type(event_type)
        if not isinstance(data, dict):
            LOGGER.warning(f"⚠️ Dropping {event_type} from {platform}: payload must be a mapping ({type(data).__name__})")
            self.dropped_events += 1
            return False

        payload = self._sanitize(platform, event_type, data)
        if event_type in NORMALIZERS:
            event = normalize_event(event_type, platform, payload)
            if event is None:
                self.dropped_events += 1
                return False
            for key in ("sourceType", "sourcePlatform"):
                if key in payload:
                    event[key] = payload[key]
        else:
            event = {**payload, "type": event_type, "platform": platform}
            if event_type in schema.TIMESTAMPED_TYPES and not event.get("timestamp"):
                LOGGER.warning(f"⚠️ Dropping {event_type} from {platform}: missing timestamp")
                self.dropped_events += 1
                return False
            result = schema.validate(event)
            if not result["valid"]:
                LOGGER.warning(f"⚠️ Dropping invalid {event_type} from {platform}: {'; '.join(result['errors'])}")
                self.dropped_events += 1
                return False

        self.bus.emit(TOPIC_PLATFORM_EVENT, PlatformEvent(platform, event_type, event).to_dict())
        self.emitted_events += 1
        return True

    @staticmethod
    def _sanitize(platform: str, event_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """type/platform du payload réservés à l'enveloppe ; une valeur différente est conservée en source*"""
        payload = dict(data)
        source_type = payload.pop("type", None)
        source_platform = payload.pop("platform", None)
        if source_type and canonical_type(str(source_type)) != event_type:
            payload["sourceType"] = source_type
        if source_platform and source_platform != platform:
            payload["sourcePlatform"] = source_platform
        return payload

    # ========================================================================
    # Status
    # ========================================================================

    def get_status(self) -> Dict[str, Any]:
        by_state: Dict[str, List[str]] = {}
        for name, health in self.platform_health.items():
            by_state.setdefault(health["state"], []).append(name)

        return {
            "timestamp": now_iso(),
            "initializedPlatforms": by_state.get("ready", []),
            "initializingPlatforms": by_state.get("initializing", []),
            "failedPlatforms": [
                {
                    "name": name,
                    "lastError": self.platform_health[name]["lastError"],
                    "failures": self.platform_health[name]["failures"],
                    "lastUpdated": self.platform_health[name]["lastUpdated"],
                }
                for name in by_state.get("failed", [])
            ],
            "disabledPlatforms": by_state.get("disabled", []),
            "platformHealth": {name: dict(health) for name, health in self.platform_health.items()},
            "connectionTimes": dict(self.connection_times),
            "streamStatuses": {name: dict(status) for name, status in self.stream_statuses.items()},
            "backgroundInitializations": [
                {"platform": name, "done": task.done()} for name, task in self.background_inits
            ],
            "recentErrors": list(self.recent_errors),
            "initialization": {name: stats.get_statistics() for name, stats in self.statistics.items()},
            "events": {"emitted": self.emitted_events, "dropped": self.dropped_events},
        }

    # ========================================================================
    # Shutdown
    # ========================================================================

    async def shutdown(self, timeout: float = SHUTDOWN_BACKGROUND_TIMEOUT_S):
        """cleanup() de chaque driver, puis timers, retries et tâches de fond"""
        LOGGER.info("🛑 Shutting down platforms...")
        await self.wait_for_background_inits(timeout)

        for name, driver in list(self.platforms.items()):
            stop = getattr(driver, "cleanup", None)
            if not callable(stop):
                stop = getattr(driver, "disconnect", None)
            if not callable(stop):
                LOGGER.error(f"❌ {name} driver has neither cleanup() nor disconnect()")
                continue
            try:
                await maybe_await(stop())
                LOGGER.info(f"✅ {name} stopped")
            except Exception as e:
                LOGGER.error(f"❌ Error stopping {name}: {extract_error_message(e)}")
                self._record_error(name, e, {"stage": "shutdown"})

        cancelled = self.retry_scheduler.cancel_pending()
        cleared = self.timers.cleanup()
        LOGGER.debug(f"Shutdown cleared {cleared} timers ({cancelled} pending retries)")

        pending = [task for _, task in self.background_inits if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        LOGGER.info("✅ All platforms stopped")

    def dispose(self):
        """Réinitialise l'état (après shutdown)"""
        self.platforms.clear()
        self.platform_health.clear()
        self.connection_times.clear()
        self.stream_statuses.clear()
        self.background_inits.clear()
        self.recent_errors.clear()
        for manager in self.init_managers.values():
            manager.reset()
        self.init_managers.clear()
        self.statistics.clear()
