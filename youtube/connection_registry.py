#!/usr/bin/env python3
"""
YouTube Connection Registry - Connexions live chat par video_id

    CONNECTING → CONNECTED → READY → DISCONNECTING → (supprimé)
                     ↘ ERROR (l'entrée reste visible dans get_active_video_ids)

Verrous atomiques "connect_<id>" / "disconnect_<id>" : deux opérations du
même type sur le même id ne se chevauchent jamais, des ids distincts sont
indépendants.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from core.async_utils import maybe_await
from core.config import YouTubeConfig
from core.error_classifier import error_code, extract_error_message

LOGGER = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class ConnectionState(Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    READY = "ready"
    DISCONNECTING = "disconnecting"
    DISCONNECTED = "disconnected"
    ERROR = "error"


@dataclass
class ConnectionRecord:
    """Connexion live chat d'une vidéo"""
    state: ConnectionState
    connection: Any = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    ready: bool = False

    def to_dict(self, video_id: str) -> Dict[str, Any]:
        return {
            "videoId": video_id,
            "ready": self.ready,
            "state": self.state.value,
            "metadata": dict(self.metadata),
        }


class YouTubeConnectionRegistry:
    """
    Args:
        config: YouTubeConfig (is_api_enabled / is_scraping_enabled)
    """

    def __init__(self, config: Optional[YouTubeConfig] = None):
        self.config = config or YouTubeConfig()
        self.connections: Dict[str, ConnectionRecord] = {}
        self._operation_locks: Set[str] = set()

    # ========================================================================
    # Connexion
    # ========================================================================

    async def connect(self, video_id: str, factory: Callable[[str], Awaitable[Any]],
                      reason: str = "stream detected") -> bool:
        """
        Ouvre la connexion d'une vidéo via factory(video_id).

        Returns:
            False si une connexion existe / est en cours, ou si la factory échoue
        """
        lock_key = f"connect_{video_id}"
        if lock_key in self._operation_locks:
            LOGGER.warning(f"⚠️ Connection already in progress for {video_id}")
            return False

        self._operation_locks.add(lock_key)
        try:
            existing = self.connections.get(video_id)
            if existing is not None:
                LOGGER.warning(f"⚠️ Already connected to {video_id} (state: {existing.state.value})")
                return False

            LOGGER.info(f"🚀 Starting connection to {video_id}")
            pending = ConnectionRecord(
                state=ConnectionState.CONNECTING,
                metadata={"connectedAt": _now_iso(), "reason": reason},
            )
            self.connections[video_id] = pending

            started = time.monotonic()
            try:
                connection = await maybe_await(factory(video_id))
            except Exception as e:
                message = extract_error_message(e)
                LOGGER.error(f"❌ Failed to connect to {video_id}: {message}")
                if self.connections.get(video_id) is not pending:
                    return False
                self.connections[video_id] = ConnectionRecord(
                    state=ConnectionState.ERROR,
                    metadata={
                        "error": message,
                        "errorName": type(e).__name__,
                        "errorCode": error_code(e),
                        "failedAt": _now_iso(),
                    },
                )
                return False

            if self.connections.get(video_id) is not pending:
                # disconnect() a retiré l'entrée pendant la factory : la connexion ouverte est orpheline
                LOGGER.warning(f"⚠️ Connection to {video_id} dropped while connecting, closing it")
                try:
                    await self._shutdown_connection(connection, video_id)
                except Exception as e:
                    LOGGER.debug(f"Orphan connection for {video_id} left in error: {extract_error_message(e)}")
                return False

            self.connections[video_id] = ConnectionRecord(
                state=ConnectionState.CONNECTED,
                connection=connection,
                metadata={
                    "connectedAt": _now_iso(),
                    "reason": reason,
                    "connectionDuration": int((time.monotonic() - started) * 1000),
                },
            )
            LOGGER.info(f"✅ Successfully connected to {video_id}")
            return True
        finally:
            self._operation_locks.discard(lock_key)

    async def disconnect(self, video_id: str, reason: str = "unknown") -> bool:
        """
        Ferme et retire la connexion d'une vidéo.

        Un échec de connection.disconnect() laisse l'entrée en ERROR et retourne False.
        """
        lock_key = f"disconnect_{video_id}"
        if lock_key in self._operation_locks:
            LOGGER.warning(f"⚠️ Disconnection already in progress for {video_id}")
            return False

        self._operation_locks.add(lock_key)
        try:
            record = self.connections.get(video_id)
            if record is None:
                LOGGER.warning(f"⚠️ No connection to disconnect for {video_id}")
                return False

            LOGGER.info(f"🛑 Disconnecting from {video_id} (reason: {reason})")
            record.state = ConnectionState.DISCONNECTING
            record.metadata["disconnectReason"] = reason
            record.metadata["disconnectedAt"] = _now_iso()

            try:
                await self._shutdown_connection(record.connection, video_id)
            except Exception as e:
                record.state = ConnectionState.ERROR
                record.metadata["error"] = extract_error_message(e)
                record.metadata["failedAt"] = _now_iso()
                return False

            self.connections.pop(video_id, None)
            LOGGER.info(f"✅ Successfully disconnected from {video_id}")
            return True
        finally:
            self._operation_locks.discard(lock_key)

    async def _shutdown_connection(self, connection: Any, video_id: str):
        """stop() toléré en échec ; un échec de disconnect() est relevé"""
        if connection is None:
            return

        stop = getattr(connection, "stop", None)
        if callable(stop):
            try:
                await maybe_await(stop())
            except Exception as e:
                LOGGER.error(f"❌ Error stopping connection for {video_id}: {extract_error_message(e)}")

        disconnect = getattr(connection, "disconnect", None)
        if callable(disconnect):
            try:
                await maybe_await(disconnect())
            except Exception as e:
                LOGGER.error(f"❌ Error disconnecting connection for {video_id}: {extract_error_message(e)}")
                raise

    # ========================================================================
    # Sans verrou (best effort)
    # ========================================================================

    async def remove_connection(self, video_id: str):
        record = self.connections.get(video_id)
        if record is None:
            LOGGER.warning(f"⚠️ Attempted to remove non-existent connection for video {video_id}")
            return
        try:
            await self._shutdown_connection(record.connection, video_id)
        except Exception as e:
            LOGGER.debug(f"Error removing connection for video {video_id}: {e}")
        finally:
            self.connections.pop(video_id, None)
            LOGGER.debug(f"Removed connection for video {video_id}")

    async def cleanup_all_connections(self) -> int:
        count = len(self.connections)
        if count == 0:
            LOGGER.debug("No connections to cleanup")
            return 0

        records = list(self.connections.items())
        self.connections.clear()
        for video_id, record in records:
            try:
                await self._shutdown_connection(record.connection, video_id)
            except Exception as e:
                LOGGER.debug(f"Error removing connection for video {video_id}: {e}")
        LOGGER.info(f"🛑 Cleaned up all {count} connections")
        return count

    # ========================================================================
    # Readiness & introspection
    # ========================================================================

    def set_connection_ready(self, video_id: str) -> bool:
        record = self.connections.get(video_id)
        if record is None:
            LOGGER.warning(f"⚠️ Attempted to set ready status for non-existent connection: {video_id}")
            return False
        if record.state is not ConnectionState.CONNECTED:
            LOGGER.warning(f"⚠️ Cannot mark {video_id} ready from state {record.state.value}")
            return False
        record.ready = True
        record.state = ConnectionState.READY
        LOGGER.debug(f"Connection ready for video {video_id}")
        return True

    def is_connection_ready(self, video_id: str) -> bool:
        record = self.connections.get(video_id)
        return bool(record and record.ready)

    def has_connection(self, video_id: str) -> bool:
        return video_id in self.connections

    def get_connection(self, video_id: str) -> Any:
        record = self.connections.get(video_id)
        return record.connection if record else None

    def get_active_video_ids(self) -> List[str]:
        return list(self.connections)

    def get_connection_status(self, video_id: str) -> Optional[Dict[str, Any]]:
        record = self.connections.get(video_id)
        return record.to_dict(video_id) if record else None

    def is_api_enabled(self) -> bool:
        return (
            self.config.enable_api is True
            or self.config.stream_detection_method == "api"
            or self.config.viewer_count_method == "api"
        )

    def is_scraping_enabled(self) -> bool:
        return self.config.stream_detection_method == "scraping"

    def get_stats(self) -> Dict[str, Any]:
        ready = sum(1 for record in self.connections.values() if record.ready)
        return {
            "totalConnections": len(self.connections),
            "readyConnections": ready,
            "activeVideoIds": self.get_active_video_ids(),
            "hasAnyReady": ready > 0,
        }
