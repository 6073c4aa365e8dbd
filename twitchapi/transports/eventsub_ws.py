#!/usr/bin/env python3
"""
EventSub WebSocket - Cycle de vie de la session EventSub Twitch
================================================================

INIT → CONNECTING → WELCOME_PENDING → SUBSCRIBING → READY → (CLOSING | DISCONNECTED)

- session_welcome attendu sous T_welcome, sinon "Connection timeout - no welcome message"
- subscriptions créées après le welcome ; un échec rejette la connexion
- session_reconnect : reconnect_url mémorisée, reconnexion immédiate
- close anormal (1006, 4000-4006, ...) : reconnexion avec backoff + jitter
- max tentatives atteint : is_initialized=False, événement "eventSubAbandoned"

Transport : aiohttp.ClientSession.ws_connect (ping/pong gérés à la main).
"""

import asyncio
import json
import logging
import random
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from core.error_classifier import analyze_error, extract_error_message
from core.exceptions import ConnectionSetupError, SubscriptionSetupError, WelcomeTimeoutError
from core.timer_registry import TimerRegistry
from twitchapi.eventsub_router import EventSubRouter
from twitchapi.transports.eventsub_subscriptions import (
    EventSubSubscriptionManager,
    MessageIdCache,
    SubscriptionDefinition,
)

LOGGER = logging.getLogger(__name__)

EVENTSUB_URL = "wss://eventsub.wss.twitch.tv/ws?keepalive_timeout_seconds=30"
MAX_RECONNECT_DELAY_MS = 30_000
RECONNECT_TIMER = "eventsub:reconnect"
WELCOME_TIMER = "eventsub:welcome"
KEEPALIVE_TIMER = "eventsub:keepalive"

EVENT_CONNECTED = "eventSubConnected"
EVENT_SUBSCRIPTION_FAILED = "eventSubSubscriptionFailed"
EVENT_DISCONNECTED = "eventSubDisconnected"
EVENT_ABANDONED = "eventSubAbandoned"

NORMAL_CLOSE_CODES = (1000, 1001)

CLOSE_REASONS = {
    1000: "normal closure",
    1001: "going away",
    1006: "abnormal closure (no close frame)",
    4000: "internal server error",
    4001: "client sent inbound traffic",
    4002: "client failed ping-pong",
    4003: "connection unused",
    4004: "reconnect grace time expired",
    4005: "network timeout",
    4006: "network error",
}


class EventSubState(Enum):
    INIT = "INIT"
    CONNECTING = "CONNECTING"
    WELCOME_PENDING = "WELCOME_PENDING"
    SUBSCRIBING = "SUBSCRIBING"
    READY = "READY"
    CLOSING = "CLOSING"
    DISCONNECTED = "DISCONNECTED"


def describe_close_code(code: Optional[int]) -> str:
    return CLOSE_REASONS.get(code, f"code {code}")


class EventSubWebSocket:
    """
    Session EventSub WebSocket d'un broadcaster.

    Args:
        auth: TwitchAuthManager (is_ready(), user_id)
        subscription_manager: EventSubSubscriptionManager
        router: EventSubRouter pour les notifications
        broadcaster_id: ID Twitch de la chaîne
        required_subscriptions: Subscriptions à créer à chaque nouvelle session
        timers: TimerRegistry (welcome, reconnect, keepalive)
        session: aiohttp.ClientSession (créée à la demande sinon)
        on_event: Callable(event_name, payload) pour eventSubConnected / eventSubDisconnected / ...
    """

    def __init__(
        self,
        auth,
        subscription_manager: EventSubSubscriptionManager,
        router: EventSubRouter,
        broadcaster_id: str,
        required_subscriptions: List[SubscriptionDefinition],
        timers: Optional[TimerRegistry] = None,
        session: Optional[aiohttp.ClientSession] = None,
        on_event: Optional[Callable[[str, Dict[str, Any]], Any]] = None,
        welcome_timeout_s: float = 10.0,
        max_retry_attempts: int = 10,
        retry_delay_ms: int = 5000,
        subscription_delay_s: float = 0.0,
        url: str = EVENTSUB_URL,
        random_fn: Callable[[], float] = random.random,
    ):
        self.auth = auth
        self.subscription_manager = subscription_manager
        self.router = router
        self.broadcaster_id = broadcaster_id
        self.required_subscriptions = required_subscriptions
        self.timers = timers or TimerRegistry("eventsub")
        self.session = session
        self._owns_session = session is None
        self.on_event = on_event
        self.welcome_timeout_s = welcome_timeout_s
        self.max_retry_attempts = max_retry_attempts
        self.retry_delay_ms = retry_delay_ms
        self.subscription_delay_s = subscription_delay_s
        self.url = url
        self.random_fn = random_fn

        self.state = EventSubState.INIT
        self.ws = None
        self.session_id: Optional[str] = None
        self.reconnect_url: Optional[str] = None
        self.is_initialized = False
        self.is_connected = False
        self.subscriptions_ready = False
        self.retry_attempts = 0
        self.keepalive_timeout_s: Optional[int] = None
        self.last_activity: Optional[float] = None
        self.connection_started_at: Optional[float] = None
        self.message_cache = MessageIdCache()

        self._welcome: Optional[asyncio.Future] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._stale_close_task: Optional[asyncio.Task] = None
        self._keep_subscriptions = False

    # ========================================================================
    # Démarrage / arrêt
    # ========================================================================

    async def start(self) -> bool:
        """Nettoie les subscriptions orphelines puis ouvre la session (reconnexion planifiée si échec)"""
        self.is_initialized = True
        await self.subscription_manager.cleanup_all_websocket_subscriptions()
        try:
            await self.connect_websocket()
        except Exception as e:
            LOGGER.error(f"❌ EventSub initial connection failed: {extract_error_message(e)}")
            # la connexion initiale compte dans le budget de tentatives
            self.retry_attempts += 1
            self.schedule_reconnect()
            return False
        self.retry_attempts = 0
        return True

    async def stop(self, delete_subscriptions: bool = True):
        """Arrêt propre : timers, subscriptions de la session, close 1000 "Shutdown" """
        LOGGER.info("🛑 Stopping EventSub WebSocket...")
        self.is_initialized = False
        self.timers.clear_interval(RECONNECT_TIMER)
        self.timers.clear_interval(WELCOME_TIMER)
        self.timers.clear_interval(KEEPALIVE_TIMER)
        self._fail_welcome(ConnectionSetupError("EventSub connection shut down"))

        if delete_subscriptions and self.session_id:
            await self.subscription_manager.delete_all(self.session_id)

        self.state = EventSubState.CLOSING
        await self._close_socket("Shutdown")
        await self._cancel_reader()
        self._reset_session_state()
        self.subscription_manager.subscriptions.clear()
        self.state = EventSubState.DISCONNECTED

        if self._owns_session and self.session is not None and not self.session.closed:
            await self.session.close()
            self.session = None
        LOGGER.info("✅ EventSub WebSocket stopped")

    def is_active(self) -> bool:
        return self.is_initialized and self.is_connected and self.subscriptions_ready

    # ========================================================================
    # Connexion
    # ========================================================================

    async def connect_websocket(self):
        """
        Ouvre la WebSocket, attend le welcome puis crée les subscriptions.

        Raises:
            WelcomeTimeoutError, SubscriptionSetupError, ConnectionSetupError
        """
        url = self.reconnect_url or self.url
        self._keep_subscriptions = self.reconnect_url is not None
        self.state = EventSubState.CONNECTING
        self.connection_started_at = time.time()
        LOGGER.debug(f"Connecting to EventSub WebSocket {url}")

        if self.session is None:
            self.session = aiohttp.ClientSession()
        try:
            self.ws = await asyncio.wait_for(
                self.session.ws_connect(url, autoping=False, heartbeat=None),
                timeout=self.welcome_timeout_s,
            )
        except Exception:
            self.state = EventSubState.DISCONNECTED
            raise
        LOGGER.info("✅ EventSub WebSocket connection opened, waiting for welcome...")

        self.state = EventSubState.WELCOME_PENDING
        self._welcome = asyncio.get_running_loop().create_future()
        self._reader_task = asyncio.get_running_loop().create_task(self._receive_loop(self.ws))
        self.timers.create_timeout(WELCOME_TIMER, self._on_welcome_timeout,
                                   int(self.welcome_timeout_s * 1000), timer_type="timeout")

        try:
            await self._welcome
            self.timers.clear_interval(WELCOME_TIMER)
            await self._setup_subscriptions()
        except Exception:
            self.timers.clear_interval(WELCOME_TIMER)
            await self._close_socket("Connection setup failed")
            await self._cancel_reader()
            self._reset_session_state()
            self.state = EventSubState.DISCONNECTED
            raise

    async def _setup_subscriptions(self):
        self.state = EventSubState.SUBSCRIBING

        if self._keep_subscriptions:
            for record in self.subscription_manager.subscriptions.values():
                record["transport"]["sessionId"] = self.session_id
            LOGGER.info("✅ EventSub session migrated, subscriptions preserved")
        else:
            result = await self.subscription_manager.setup_event_subscriptions(
                self.required_subscriptions,
                user_id=str(self.auth.user_id or self.broadcaster_id),
                broadcaster_id=self.broadcaster_id,
                session_id=self.session_id,
                subscription_delay_s=self.subscription_delay_s,
            )
            failures = result["failures"]
            if failures:
                self.subscriptions_ready = False
                self._emit(EVENT_SUBSCRIPTION_FAILED, {"sessionId": self.session_id, "failures": failures})
                raise SubscriptionSetupError("EventSub subscription setup failed", failures)

        self.subscriptions_ready = True
        self.state = EventSubState.READY
        self._start_keepalive_watchdog()
        LOGGER.info(f"✅ EventSub ready (session {self.session_id})")

    def _on_welcome_timeout(self):
        if self._welcome is not None and not self._welcome.done():
            LOGGER.error("❌ EventSub connection timeout - no welcome message received")
            self._welcome.set_exception(WelcomeTimeoutError("Connection timeout - no welcome message"))

    def _fail_welcome(self, error: Exception):
        if self._welcome is not None and not self._welcome.done():
            self._welcome.set_exception(error)

    # ========================================================================
    # Réception
    # ========================================================================

    async def _receive_loop(self, ws):
        code, reason = None, ""
        try:
            while True:
                msg = await ws.receive()
                if msg.type == aiohttp.WSMsgType.TEXT:
                    await self._handle_text(msg.data)
                elif msg.type == aiohttp.WSMsgType.PING:
                    LOGGER.debug("EventSub ping received, sending pong")
                    await ws.pong(msg.data)
                elif msg.type == aiohttp.WSMsgType.PONG:
                    self.last_activity = time.time()
                elif msg.type == aiohttp.WSMsgType.CLOSE:
                    code, reason = msg.data, msg.extra or ""
                    break
                elif msg.type in (aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
                    code = getattr(ws, "close_code", None)
                    break
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    LOGGER.error(f"❌ EventSub WebSocket error: {ws.exception()}")
                    code = 1006
                    break
        except asyncio.CancelledError:
            return

        await self._handle_close(ws, code if isinstance(code, int) else 1006, str(reason or ""))

    async def _handle_text(self, data: str):
        try:
            message = json.loads(data)
            metadata = message.get("metadata") or {}
            payload = message.get("payload") or {}
        except (ValueError, AttributeError) as e:
            analysis = analyze_error(e)
            LOGGER.error(f"❌ Error parsing EventSub message: {analysis['message']}")
            self._fail_welcome(ConnectionSetupError(f"Invalid EventSub message: {analysis['message']}"))
            return

        self.last_activity = time.time()
        message_type = metadata.get("message_type")

        if message_type == "session_welcome":
            self._handle_welcome(payload)
        elif message_type == "session_keepalive":
            LOGGER.debug("EventSub keepalive received")
        elif message_type == "notification":
            if self.message_cache.is_duplicate(metadata.get("message_id")):
                LOGGER.debug(f"Duplicate EventSub notification ignored: {metadata.get('message_id')}")
                return
            subscription = payload.get("subscription") or {}
            self.router.handle_notification(subscription.get("type"), payload.get("event"), metadata)
        elif message_type == "session_reconnect":
            self.handle_reconnect_request(payload)
        elif message_type == "revocation":
            self.subscription_manager.handle_revocation(payload.get("subscription") or {})
        else:
            LOGGER.debug(f"Unknown EventSub message type: {message_type}")

    def _handle_welcome(self, payload: Dict[str, Any]):
        if self._welcome is None or self._welcome.done():
            LOGGER.debug("Ignoring unexpected session_welcome")
            return

        session = payload.get("session") or {}
        session_id = session.get("id")
        if not isinstance(session_id, str) or not session_id.strip():
            LOGGER.error("❌ Invalid session ID received")
            self._welcome.set_exception(ConnectionSetupError("Invalid session ID"))
            return

        self.timers.clear_interval(WELCOME_TIMER)
        self.session_id = session_id
        self.is_connected = True
        self.reconnect_url = None
        self.keepalive_timeout_s = session.get("keepalive_timeout_seconds")
        LOGGER.info(f"✅ EventSub session established: {session_id}")
        self._emit(EVENT_CONNECTED, {"sessionId": session_id})
        self._welcome.set_result(session_id)

    async def _handle_close(self, ws, code: int, reason: str):
        if ws is not self.ws:
            return

        duration = int((time.time() - self.connection_started_at) * 1000) if self.connection_started_at else None
        # pendant le setup, connect_websocket() relève l'erreur et son appelant décide du retry
        in_setup = self.state in (EventSubState.CONNECTING, EventSubState.WELCOME_PENDING, EventSubState.SUBSCRIBING)
        self.timers.clear_interval(WELCOME_TIMER)
        self.timers.clear_interval(KEEPALIVE_TIMER)

        if code == 1006:
            self._fail_welcome(ConnectionSetupError("Connection closed abnormally during initial handshake"))
        else:
            self._fail_welcome(ConnectionSetupError(f"Connection closed during initial handshake ({describe_close_code(code)})"))

        self._reset_session_state()
        if not self._keep_subscriptions:
            self.subscription_manager.subscriptions.clear()
        self.ws = None
        self.state = EventSubState.DISCONNECTED

        abnormal = code not in NORMAL_CLOSE_CODES
        log = LOGGER.warning if abnormal else LOGGER.info
        log(f"⚠️ EventSub WebSocket closed after {duration}ms: {describe_close_code(code)} - {reason or 'no reason'}")
        self._emit(EVENT_DISCONNECTED, {"code": code, "reason": reason, "abnormal": abnormal})

        if abnormal and self.is_initialized and not in_setup:
            self.schedule_reconnect()

    def _reset_session_state(self):
        self.is_connected = False
        self.session_id = None
        self.subscriptions_ready = False

    # ========================================================================
    # Keepalive
    # ========================================================================

    def _start_keepalive_watchdog(self):
        if not self.keepalive_timeout_s:
            return
        period_ms = int(self.keepalive_timeout_s * 1000)
        self.timers.create_keepalive_interval(KEEPALIVE_TIMER, self._check_keepalive, period_ms)

    async def _check_keepalive(self):
        if self.last_activity is None or self.ws is None:
            return
        silence = time.time() - self.last_activity
        if silence > self.keepalive_timeout_s * 1.5:
            if self._stale_close_task is not None and not self._stale_close_task.done():
                return
            LOGGER.warning(f"⚠️ No EventSub traffic for {silence:.0f}s, closing session")
            # _handle_close annule le watchdog : la fermeture tourne dans sa propre task
            self._stale_close_task = asyncio.get_running_loop().create_task(self._close_stale_session(self.ws))

    async def _close_stale_session(self, ws):
        try:
            await ws.close(code=4005, message=b"Keepalive timeout")
        except Exception as e:
            LOGGER.debug(f"Error closing stale EventSub WebSocket: {e}")
        await self._handle_close(ws, 4005, "Keepalive timeout")

    # ========================================================================
    # Reconnexion
    # ========================================================================

    def handle_reconnect_request(self, payload: Dict[str, Any]):
        reconnect_url = ((payload or {}).get("session") or {}).get("reconnect_url")
        if not reconnect_url:
            return
        LOGGER.info("🔄 EventSub requesting reconnection to new URL")
        self.reconnect_url = reconnect_url
        self.timers.create_timeout(RECONNECT_TIMER, self._reconnect, 0, timer_type="reconnect")

    def calculate_reconnect_delay(self) -> float:
        delay = self.retry_delay_ms * (2 ** self.retry_attempts) + self.random_fn() * 1000
        return min(delay, MAX_RECONNECT_DELAY_MS)

    def schedule_reconnect(self) -> bool:
        """Planifie une reconnexion ; False (et abandon) si le budget est épuisé"""
        self.timers.clear_interval(RECONNECT_TIMER)

        if self.retry_attempts >= self.max_retry_attempts:
            self._abandon()
            return False

        delay = self.calculate_reconnect_delay()
        LOGGER.info(
            f"🔄 Scheduling EventSub reconnection in {round(delay)}ms "
            f"(attempt {self.retry_attempts + 1}/{self.max_retry_attempts})"
        )
        self.timers.create_timeout(RECONNECT_TIMER, self._reconnect, delay, timer_type="reconnect")
        return True

    def _abandon(self):
        LOGGER.error(f"❌ EventSub reconnection abandoned after {self.max_retry_attempts} attempts")
        self.is_initialized = False
        self._emit(EVENT_ABANDONED, {"attempts": self.retry_attempts, "maxAttempts": self.max_retry_attempts})

    async def _reconnect(self):
        if not self.is_initialized:
            LOGGER.debug("Skipping reconnect - EventSub not initialized")
            return

        self.retry_attempts += 1
        LOGGER.info(f"🔄 Attempting EventSub reconnection ({self.retry_attempts}/{self.max_retry_attempts})")

        try:
            await self._close_socket("Reconnecting")
            await self._cancel_reader()
            self._reset_session_state()

            if not self.auth.is_ready():
                raise ConnectionSetupError("AuthManager not ready for reconnection")

            await self.connect_websocket()
        except Exception as e:
            LOGGER.error(
                f"❌ EventSub reconnection failed (attempt {self.retry_attempts}/{self.max_retry_attempts}): "
                f"{extract_error_message(e)}"
            )
            if self.retry_attempts < self.max_retry_attempts:
                self.schedule_reconnect()
            else:
                self._abandon()
            return

        self.retry_attempts = 0
        LOGGER.info("✅ EventSub reconnection successful")

    async def _close_socket(self, reason: str):
        ws, self.ws = self.ws, None
        if ws is None:
            return
        try:
            if not ws.closed:
                await ws.close(code=1000, message=reason.encode())
        except Exception as e:
            LOGGER.debug(f"Error closing EventSub WebSocket: {e}")

    async def _cancel_reader(self):
        task, self._reader_task = self._reader_task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _emit(self, event: str, payload: Dict[str, Any]):
        if self.on_event is None:
            return
        try:
            self.on_event(event, payload)
        except Exception as e:
            LOGGER.debug(f"EventSub listener failed for {event}: {e}")

    def get_status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "session_id": self.session_id,
            "is_initialized": self.is_initialized,
            "is_connected": self.is_connected,
            "subscriptions_ready": self.subscriptions_ready,
            "retry_attempts": self.retry_attempts,
            "subscriptions": len(self.subscription_manager.subscriptions),
            "duplicates_dropped": self.message_cache.duplicates,
        }
