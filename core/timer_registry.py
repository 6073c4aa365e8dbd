"""
⏱️ Timer Registry - Intervals et timeouts nommés

Tous les timers de fond (keepalive, polling, retry, reconnect) passent par ici :
chaque timer a un nom, un type, une période, et il est tracé jusqu'à son
nettoyage. `cleanup()` annule tout ce qui a été enregistré.
"""
import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

LOGGER = logging.getLogger(__name__)


@dataclass
class TimerEntry:
    """Timer enregistré (interval ou timeout one-shot)"""
    id: int
    name: str
    type: str
    started_at: float               # Epoch secondes
    period_ms: int
    callback_label: str
    one_shot: bool = False
    options: Dict[str, Any] = field(default_factory=dict)
    callback: Optional[Callable] = field(default=None, repr=False)
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    def to_dict(self, now: Optional[float] = None) -> Dict[str, Any]:
        now = now if now is not None else time.time()
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "started_at": self.started_at,
            "period_ms": self.period_ms,
            "callback_label": self.callback_label,
            "one_shot": self.one_shot,
            "running_ms": int((now - self.started_at) * 1000),
            "options": dict(self.options),
        }


class TimerRegistry:
    """
    Registre de timers asyncio.

    - create_interval() remplace silencieusement un timer du même nom
    - une période hors [100ms, 300s] est acceptée mais notée pour le health check
    - un timer qui tourne depuis plus d'une heure est signalé "long running"
    """

    MIN_PERIOD_MS = 100
    MAX_PERIOD_MS = 300_000
    LONG_RUNNING_SECONDS = 3600
    HISTORY_LIMIT = 100

    def __init__(self, platform: str = "core"):
        self.platform = platform
        self._timers: Dict[str, TimerEntry] = {}
        self._inflight: set = set()
        self._next_id = 0
        self._total_created = 0
        self._total_cleaned = 0
        self._history: List[Dict[str, Any]] = []
        self._cleanup_history: List[Dict[str, Any]] = []
        self._out_of_range: List[Dict[str, Any]] = []

    # ========================================================================
    # Création
    # ========================================================================

    def create_interval(
        self,
        name: str,
        callback: Callable,
        period_ms: int,
        timer_type: str = "general",
        options: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        Crée un interval nommé.

        Args:
            name: Nom unique du timer (un timer existant du même nom est remplacé)
            callback: Fonction sync ou async appelée à chaque tick
            period_ms: Période en millisecondes
            timer_type: Catégorie ("keepalive", "polling", "monitoring", ...)
            options: Métadonnées libres

        Returns:
            ID du timer
        """
        return self._register(name, callback, period_ms, timer_type, options, one_shot=False)

    def create_timeout(
        self,
        name: str,
        callback: Callable,
        delay_ms: int,
        timer_type: str = "timeout",
        options: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Crée un timeout one-shot nommé (retiré du registre quand il se déclenche)."""
        return self._register(name, callback, max(0, int(delay_ms)), timer_type, options, one_shot=True)

    def create_monitoring_interval(self, name: str, callback: Callable, period_ms: int = 60_000) -> int:
        return self.create_interval(name, callback, period_ms, "monitoring")

    def create_polling_interval(self, name: str, callback: Callable, period_ms: int = 5_000) -> int:
        return self.create_interval(name, callback, period_ms, "polling")

    def create_keepalive_interval(self, name: str, callback: Callable, period_ms: int = 30_000) -> int:
        return self.create_interval(name, callback, period_ms, "keepalive")

    def _register(
        self,
        name: str,
        callback: Callable,
        period_ms: int,
        timer_type: str,
        options: Optional[Dict[str, Any]],
        one_shot: bool,
    ) -> int:
        if not callable(callback):
            raise TypeError(f"Timer callback for '{name}' must be callable")

        if name in self._timers:
            LOGGER.debug(f"🔄 Timer '{name}' already exists, replacing it")
            self.clear_interval(name, reason="replaced")

        if not one_shot and not (self.MIN_PERIOD_MS <= period_ms <= self.MAX_PERIOD_MS):
            LOGGER.warning(
                f"⚠️ Timer '{name}' period {period_ms}ms outside "
                f"[{self.MIN_PERIOD_MS}, {self.MAX_PERIOD_MS}]"
            )
            self._out_of_range.append({"name": name, "period_ms": period_ms, "at": time.time()})

        self._next_id += 1
        entry = TimerEntry(
            id=self._next_id,
            name=name,
            type=timer_type,
            started_at=time.time(),
            period_ms=int(period_ms),
            callback_label=getattr(callback, "__name__", type(callback).__name__),
            one_shot=one_shot,
            options=dict(options or {}),
            callback=callback,
        )
        entry.task = asyncio.get_running_loop().create_task(self._run(entry), name=f"timer:{name}")
        self._timers[name] = entry
        self._total_created += 1

        self._history.append({"event": "created", "name": name, "type": timer_type, "id": entry.id, "at": entry.started_at})
        del self._history[:-self.HISTORY_LIMIT]

        LOGGER.debug(f"📌 Timer '{name}' ({timer_type}) registered: {period_ms}ms one_shot={one_shot}")
        return entry.id

    # ========================================================================
    # Exécution
    # ========================================================================

    async def _run(self, entry: TimerEntry):
        delay = entry.period_ms / 1000
        try:
            if entry.one_shot:
                await asyncio.sleep(delay)
                if self._timers.get(entry.name) is entry:
                    del self._timers[entry.name]
                    self._record_cleanup(entry, "fired")
                current = asyncio.current_task()
                self._inflight.add(current)
                try:
                    await self._invoke(entry)
                finally:
                    self._inflight.discard(current)
                return

            while True:
                await asyncio.sleep(delay)
                # retiré du registre depuis son propre callback
                if self._timers.get(entry.name) is not entry:
                    return
                await self._invoke(entry)
        except asyncio.CancelledError:
            pass

    async def _invoke(self, entry: TimerEntry):
        try:
            result = entry.callback()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            LOGGER.error(f"❌ Timer '{entry.name}' callback {entry.callback_label} failed: {e}", exc_info=True)

    # ========================================================================
    # Nettoyage
    # ========================================================================

    def clear_interval(self, name: str, reason: str = "cleared") -> bool:
        """Annule un timer. Retourne False si aucun timer de ce nom."""
        entry = self._timers.pop(name, None)
        if entry is None:
            return False

        # un timer qui s'annule depuis son callback termine son tick au lieu d'être coupé
        if entry.task and not entry.task.done() and entry.task is not asyncio.current_task():
            entry.task.cancel()
        self._record_cleanup(entry, reason)
        LOGGER.debug(f"🗑️ Timer '{name}' {reason}")
        return True

    clear_timeout = clear_interval

    def clear_all_intervals(self, timer_type: Optional[str] = None) -> int:
        """Annule tous les timers (ou seulement ceux d'un type). Retourne le nombre annulé."""
        names = [
            name for name, entry in self._timers.items()
            if timer_type is None or entry.type == timer_type
        ]
        for name in names:
            self.clear_interval(name)
        if names:
            LOGGER.debug(f"🗑️ Cleared {len(names)} timers (type={timer_type or 'all'})")
        return len(names)

    def cleanup(self) -> int:
        """Annule tous les timers enregistrés, y compris les timeouts en cours d'exécution."""
        count = self.clear_all_intervals()
        for task in list(self._inflight):
            if not task.done() and task is not asyncio.current_task():
                task.cancel()
        self._inflight.clear()
        LOGGER.info(f"🛑 TimerRegistry[{self.platform}] cleanup: {count} timers cleared")
        return count

    def _record_cleanup(self, entry: TimerEntry, reason: str):
        now = time.time()
        self._total_cleaned += 1
        self._cleanup_history.append({
            "id": entry.id,
            "name": entry.name,
            "type": entry.type,
            "reason": reason,
            "cleared_at": now,
            "duration_ms": int((now - entry.started_at) * 1000),
        })
        del self._cleanup_history[:-self.HISTORY_LIMIT]

    # ========================================================================
    # Introspection
    # ========================================================================

    def has_interval(self, name: str) -> bool:
        return name in self._timers

    def get_info(self, name: str) -> Optional[Dict[str, Any]]:
        entry = self._timers.get(name)
        return entry.to_dict() if entry else None

    def get_active_intervals(self, timer_type: Optional[str] = None) -> List[Dict[str, Any]]:
        now = time.time()
        return [
            entry.to_dict(now) for entry in self._timers.values()
            if timer_type is None or entry.type == timer_type
        ]

    def get_cleanup_history(self, limit: int = 50) -> List[Dict[str, Any]]:
        return self._cleanup_history[-limit:] if limit > 0 else []

    def get_statistics(self) -> Dict[str, Any]:
        by_type: Dict[str, int] = {}
        for entry in self._timers.values():
            by_type[entry.type] = by_type.get(entry.type, 0) + 1

        oldest = None
        if self._timers:
            entry = min(self._timers.values(), key=lambda e: e.started_at)
            oldest = {"name": entry.name, "running_ms": int((time.time() - entry.started_at) * 1000)}

        return {
            "active_count": len(self._timers),
            "total_created": self._total_created,
            "total_cleaned": self._total_cleaned,
            "intervals_by_type": by_type,
            "platform": self.platform,
            "oldest_interval": oldest,
            "out_of_range_count": len(self._out_of_range),
        }

    def get_health_check(self) -> Dict[str, Any]:
        now = time.time()
        long_running = [
            entry.name for entry in self._timers.values()
            if now - entry.started_at > self.LONG_RUNNING_SECONDS
        ]
        active = len(self._timers)
        memory_efficient = active < 20
        return {
            "healthy": not long_running and memory_efficient,
            "active_count": active,
            "long_running": long_running,
            "out_of_range": [dict(item) for item in self._out_of_range],
            "memory_efficient": memory_efficient,
        }
