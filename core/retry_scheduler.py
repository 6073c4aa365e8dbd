"""
🔄 Retry Scheduler - Backoff adaptatif par plateforme

delay(n) = min(base * multiplier^n, max) avec base=2s, multiplier=1.3, max=60s.

- handle_connection_error() : classe l'erreur, stoppe sur 401, sinon planifie
  UN timer de reconnexion (le précédent est annulé)
- handle_connection_success() : reset du compteur + annulation du timer
- execute_with_retry() : boucle d'appels avec attente entre chaque échec
"""
import asyncio
import logging
import math
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from core.async_utils import maybe_await
from core.config import RetryConfig
from core.error_classifier import extract_error_message
from core.timer_registry import TimerRegistry

LOGGER = logging.getLogger(__name__)

UNAUTHORIZED_MARKERS = ("401", "Unauthorized", "Client ID and OAuth token do not match")


class RetryScheduler:
    """
    Compteurs de retry par plateforme + timers de reconnexion.

    Args:
        config: Paramètres du backoff (RetryConfig)
        timers: TimerRegistry partagé (un registry dédié sinon)
        is_connected: Callable(platform) -> bool, consulté au déclenchement du timer
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        timers: Optional[TimerRegistry] = None,
        is_connected: Optional[Callable[[str], bool]] = None,
    ):
        self.config = config or RetryConfig()
        self.timers = timers or TimerRegistry("retry")
        self.is_connected = is_connected
        self._counts: Dict[str, int] = {"twitch": 0, "youtube": 0, "tiktok": 0}
        self.validate_config()

    # ========================================================================
    # Compteurs & délais
    # ========================================================================

    def validate_config(self) -> bool:
        """Vérifie la cohérence du backoff (ValueError sinon)"""
        if self.config.base_delay_ms <= 0:
            raise ValueError("base_delay_ms must be positive")
        if self.config.max_delay_ms <= self.config.base_delay_ms:
            raise ValueError("max_delay_ms must be greater than base_delay_ms")
        if self.config.backoff_multiplier <= 1:
            raise ValueError("backoff_multiplier must be greater than 1")
        return True

    def _delay_for(self, count: int) -> int:
        delay = self.config.base_delay_ms * (self.config.backoff_multiplier ** count)
        return int(min(delay, self.config.max_delay_ms))

    def calculate_adaptive_retry_delay(self, platform: str) -> int:
        delay = self._delay_for(self.get_retry_count(platform))
        LOGGER.debug(f"Retry delay for {platform}: {delay}ms (attempt {self.get_retry_count(platform) + 1})")
        return delay

    def increment_retry_count(self, platform: str) -> int:
        """Incrémente le compteur et retourne le prochain délai (ms)"""
        self._counts[platform] = self._counts.get(platform, 0) + 1
        return self.calculate_adaptive_retry_delay(platform)

    def reset_retry_count(self, platform: str):
        old = self._counts.get(platform, 0)
        self._counts[platform] = 0
        if old > 0:
            LOGGER.debug(f"Reset retry count for {platform} ({old} → 0)")

    def reset_all_retry_counts(self, platforms: Optional[Iterable[str]] = None):
        platforms = list(platforms) if platforms is not None else list(self._counts)
        for platform in platforms:
            self.reset_retry_count(platform)

    def get_retry_count(self, platform: str) -> int:
        return self._counts.get(platform, 0)

    def effective_max_attempts(self, max_attempts: Any = None) -> Optional[int]:
        """None = illimité (None, non fini ou <= 0)"""
        value = self.config.max_attempts if max_attempts is None else max_attempts
        if value is None or isinstance(value, bool):
            return None
        try:
            value = float(value)
        except (TypeError, ValueError):
            return None
        if not math.isfinite(value) or value <= 0:
            return None
        return int(value)

    def has_exceeded_max_retries(self, platform: str, max_attempts: Any = None) -> bool:
        limit = self.effective_max_attempts(max_attempts)
        if limit is None:
            return False
        return self.get_retry_count(platform) >= limit

    def calculate_total_retry_time(self, platform: str) -> int:
        """Somme des délais déjà consommés pour cette plateforme (ms)"""
        return sum(self._delay_for(i) for i in range(self.get_retry_count(platform)))

    def get_retry_statistics(self) -> Dict[str, Dict[str, Any]]:
        stats = {}
        for platform in self._counts:
            count = self.get_retry_count(platform)
            stats[platform] = {
                "count": count,
                "next_delay_ms": self._delay_for(count) if count > 0 else self.config.base_delay_ms,
                "total_time_ms": self.calculate_total_retry_time(platform),
                "has_exceeded_max": self.has_exceeded_max_retries(platform),
                "timer_pending": self.timers.has_interval(self._timer_name(platform)),
            }
        return stats

    # ========================================================================
    # Reconnexion planifiée
    # ========================================================================

    @staticmethod
    def _timer_name(platform: str) -> str:
        return f"retry:{platform}"

    async def handle_connection_error(
        self,
        platform: str,
        error: Any,
        reconnect: Callable[[], Awaitable[Any]],
        cleanup: Optional[Callable] = None,
        set_connection_state: Optional[Callable] = None,
    ):
        """
        Échec de connexion : stop sur 401, sinon planifie une reconnexion.

        Args:
            platform: Nom de la plateforme
            error: Erreur reçue
            reconnect: Coroutine function appelée au déclenchement du timer
            cleanup: Nettoyage à exécuter avant la reconnexion (sync ou async)
            set_connection_state: Callable(platform, connected) pour reset l'état
        """
        message = extract_error_message(error)

        if any(marker in message for marker in UNAUTHORIZED_MARKERS):
            LOGGER.warning(
                f"⚠️ [{platform}] Connection failed due to unauthorized access (401). "
                f"Stopping retry attempts."
            )
            await self._run_cleanup(platform, cleanup)
            self._reset_state(platform, set_connection_state)
            return

        delay = self.increment_retry_count(platform)
        attempt = self.get_retry_count(platform)

        if self.has_exceeded_max_retries(platform):
            LOGGER.error(f"❌ Maximum retries reached for {platform}, halting reconnect attempts.")
            return

        LOGGER.warning(f"⚠️ [{platform}] Connection failed (attempt {attempt}): {message}")
        LOGGER.info(f"🔄 [{platform}] Retrying in {delay / 1000} seconds...")

        await self._run_cleanup(platform, cleanup)
        self._reset_state(platform, set_connection_state)

        async def fire():
            if self.is_connected and self.is_connected(platform):
                LOGGER.debug(f"Cancelling scheduled retry - {platform} already connected")
                return
            LOGGER.debug(f"Executing scheduled reconnection attempt {attempt + 1} for {platform}")
            try:
                await maybe_await(reconnect())
            except Exception as e:
                LOGGER.debug(f"Scheduled reconnection failed for {platform}: {e}")
                await self.handle_connection_error(platform, e, reconnect, cleanup, set_connection_state)

        self.timers.create_timeout(self._timer_name(platform), fire, delay, timer_type="retry")

    def handle_connection_success(self, platform: str, context: str = ""):
        suffix = f" ({context})" if context else ""
        LOGGER.info(f"✅ [{platform}] Successfully connected{suffix}")
        self.reset_retry_count(platform)
        self.timers.clear_interval(self._timer_name(platform))

    def cancel_pending(self, platform: Optional[str] = None) -> int:
        """Annule les timers de retry (d'une plateforme ou de toutes)"""
        if platform is not None:
            return int(self.timers.clear_interval(self._timer_name(platform)))
        return self.timers.clear_all_intervals("retry")

    async def _run_cleanup(self, platform: str, cleanup: Optional[Callable]):
        if cleanup is None:
            return
        try:
            await maybe_await(cleanup())
            LOGGER.debug(f"Cleanup for {platform} executed successfully")
        except Exception as e:
            LOGGER.error(f"❌ {platform} cleanup failed: {e}")

    @staticmethod
    def _reset_state(platform: str, set_connection_state: Optional[Callable]):
        if set_connection_state is None:
            return
        try:
            set_connection_state(platform, False)
        except Exception as e:
            LOGGER.debug(f"Error resetting connection state for {platform}: {e}")

    # ========================================================================
    # Exécution avec retry
    # ========================================================================

    async def execute_with_retry(self, platform: str, func: Callable[[], Awaitable[Any]], max_attempts: Any = None):
        """
        Exécute func() jusqu'au succès ou à l'épuisement des tentatives.

        Les erreurs 401/Unauthorized sont relevées immédiatement.
        """
        last_error: Optional[BaseException] = None

        while not self.has_exceeded_max_retries(platform, max_attempts):
            try:
                result = await maybe_await(func())
                self.reset_retry_count(platform)
                return result
            except Exception as e:
                last_error = e
                message = extract_error_message(e)
                if "401" in message or "Unauthorized" in message:
                    LOGGER.warning(f"⚠️ [{platform}] Non-retryable error detected: {message}")
                    raise

                delay = self.increment_retry_count(platform)
                LOGGER.warning(f"⚠️ [{platform}] Request failed (attempt {self.get_retry_count(platform)}): {message}")

                if self.has_exceeded_max_retries(platform, max_attempts):
                    LOGGER.error(f"❌ Maximum retry attempts ({self.effective_max_attempts(max_attempts)}) exceeded for {platform}")
                    raise

                LOGGER.info(f"🔄 [{platform}] Retrying in {delay / 1000} seconds...")
                await asyncio.sleep(delay / 1000)

        if last_error is not None:
            raise last_error
        raise RuntimeError(f"Retry budget already exhausted for {platform}")
