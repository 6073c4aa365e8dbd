"""
🚦 Auth State Machine - Sérialise les appels API autour du refresh

READY (initial) → REFRESHING → READY | ERROR

- READY : les opérations s'exécutent immédiatement
- REFRESHING : les opérations sont mises en file (FIFO) et rejouées après le refresh
- ERROR : les opérations échouent avec "Authentication is in error state"

Un seul refresh en vol à la fois.
"""
import asyncio
import inspect
import logging
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Optional, Tuple

from core.exceptions import AuthenticationError
from twitchapi.auth_errors import AuthErrorHandler

LOGGER = logging.getLogger(__name__)


class AuthState(Enum):
    READY = "READY"
    REFRESHING = "REFRESHING"
    ERROR = "ERROR"


async def _call(fn: Callable) -> Any:
    result = fn()
    if inspect.isawaitable(result):
        return await result
    return result


class AuthStateMachine:
    """
    Args:
        refresher: Coroutine function () -> bool utilisée par run_refresh()
        on_event: Callable(event_name, payload) pour les erreurs des opérations rejouées
    """

    def __init__(self, refresher: Optional[Callable[[], Awaitable[bool]]] = None,
                 on_event: Optional[Callable[[str, dict], Any]] = None):
        self.state = AuthState.READY
        self.refresher = refresher
        self.on_event = on_event
        self.error_handler = AuthErrorHandler()
        self._queue: Deque[Tuple[Callable, asyncio.Future]] = deque()
        self._refresh_task: Optional[asyncio.Task] = None
        self._drain_task: Optional[asyncio.Task] = None

    # ========================================================================
    # Exécution gardée
    # ========================================================================

    async def execute_when_ready(self, fn: Callable) -> Any:
        """Exécute fn (sync ou async) quand l'auth est prête"""
        if self.state is AuthState.READY:
            return await _call(fn)

        if self.state is AuthState.ERROR:
            raise AuthenticationError("Authentication is in error state")

        future = asyncio.get_running_loop().create_future()
        self._queue.append((fn, future))
        LOGGER.debug(f"⏳ Operation queued during refresh (queue={len(self._queue)})")
        return await future

    # ========================================================================
    # Transitions
    # ========================================================================

    def start_refresh(self) -> bool:
        """READY/ERROR → REFRESHING. False si un refresh est déjà en cours."""
        if self.state is AuthState.REFRESHING:
            return False
        LOGGER.debug(f"🔄 Auth state {self.state.value} → REFRESHING")
        self.state = AuthState.REFRESHING
        return True

    def finish_refresh(self, ok: bool):
        """Termine le refresh : rejoue la file (ok) ou la rejette (échec)"""
        if ok:
            self.state = AuthState.READY
            pending = list(self._queue)
            self._queue.clear()
            if pending:
                LOGGER.debug(f"▶️ Draining {len(pending)} queued operations")
                self._drain_task = asyncio.get_running_loop().create_task(self._drain(pending))
            return

        self.state = AuthState.ERROR
        while self._queue:
            _, future = self._queue.popleft()
            if not future.done():
                future.set_exception(AuthenticationError("Authentication refresh failed"))
        LOGGER.error("❌ Token refresh failed, queued operations rejected")

    async def _drain(self, pending):
        for fn, future in pending:
            if future.done():
                continue
            try:
                result = await _call(fn)
            except asyncio.CancelledError:
                future.cancel()
                raise
            except Exception as e:
                analysis = self.error_handler.analyze_error(e)
                LOGGER.warning(f"⚠️ Queued operation failed after refresh: {analysis['message']}")
                self._emit("auth-state", {"state": self.state.value, "error": analysis})
                future.set_exception(e)
            else:
                future.set_result(result)

    def _emit(self, event: str, payload: dict):
        if self.on_event is None:
            return
        try:
            self.on_event(event, payload)
        except Exception as e:
            LOGGER.debug(f"Auth state listener failed: {e}")

    # ========================================================================
    # Refresh piloté
    # ========================================================================

    async def run_refresh(self) -> bool:
        """Lance le refresher injecté ; un appel concurrent rejoint le refresh en vol"""
        if self._refresh_task is not None and not self._refresh_task.done():
            return await asyncio.shield(self._refresh_task)
        if self.refresher is None:
            raise AuthenticationError("No refresher configured")

        self._refresh_task = asyncio.get_running_loop().create_task(self._refresh_once())
        return await asyncio.shield(self._refresh_task)

    async def _refresh_once(self) -> bool:
        self.start_refresh()
        ok = False
        try:
            ok = bool(await self.refresher())
        except Exception as e:
            LOGGER.error(f"❌ Refresher raised: {e}")
            ok = False
        finally:
            self.finish_refresh(ok)
        return ok

    # ========================================================================
    # Utilitaires
    # ========================================================================

    def queue_size(self) -> int:
        return len(self._queue)

    def clear_queue(self, reason: str = "Queue cleared") -> int:
        count = 0
        while self._queue:
            _, future = self._queue.popleft()
            if not future.done():
                future.set_exception(AuthenticationError(reason))
            count += 1
        return count

    def reset(self):
        self.clear_queue("Auth state reset")
        self.state = AuthState.READY

    def get_state(self) -> dict:
        return {
            "state": self.state.value,
            "queue_size": len(self._queue),
            "refreshing": self.state is AuthState.REFRESHING,
        }
