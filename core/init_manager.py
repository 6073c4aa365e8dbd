"""
🚦 Initialization Manager - Gating des tentatives d'init par plateforme

begin_initialization() décide si une init peut démarrer :
- déjà initialisé (et ni force ni allow_reinitialization) → refus + compteur "prevented"
- plus de max_attempts tentatives → refus + erreur opérationnelle
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

LOGGER = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class InitializationManager:
    """Compteurs d'initialisation d'une plateforme."""

    DEFAULT_MAX_ATTEMPTS = 5

    def __init__(self, platform: str):
        self.platform = platform
        self.initialization_count = 0
        self.initialization_attempts = 0
        self.prevented_reinitializations = 0
        self.initialization_state: Dict[str, Any] = {}
        self.allow_reinitialization = False
        self.max_attempts = self.DEFAULT_MAX_ATTEMPTS

    def is_initialized(self) -> bool:
        return self.initialization_count > 0

    def _heal_counters(self):
        for name in ("initialization_count", "initialization_attempts", "prevented_reinitializations"):
            value = getattr(self, name, 0)
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                LOGGER.debug(f"[{self.platform}] Healing corrupted counter {name}={value!r}")
                setattr(self, name, 0)
        if not isinstance(self.initialization_state, dict):
            self.initialization_state = {}

    def begin_initialization(self, force: bool = False) -> bool:
        """
        Autorise (ou non) une tentative d'initialisation.

        Args:
            force: Ignore le refus "déjà initialisé"

        Returns:
            True si l'init peut démarrer
        """
        self._heal_counters()
        self.initialization_attempts += 1

        if self.is_initialized() and not force and not self.allow_reinitialization:
            self.prevented_reinitializations += 1
            LOGGER.warning(
                f"⚠️ [{self.platform}] Already initialized, skipping reinitialization "
                f"attempt #{self.prevented_reinitializations}"
            )
            return False

        if self.initialization_attempts > self.max_attempts:
            LOGGER.error(
                f"❌ [{self.platform}] Maximum initialization attempts ({self.max_attempts}) exceeded "
                f"(attempt {self.initialization_attempts})"
            )
            return False

        LOGGER.info(f"🚀 [{self.platform}] Beginning initialization attempt {self.initialization_attempts}")
        return True

    def mark_initialization_success(self, extra_state: Optional[Dict[str, Any]] = None):
        self.initialization_count = max(1, self.initialization_count + 1)
        self.initialization_state = {
            "timestamp": _now_iso(),
            "success": True,
            "attempt": self.initialization_attempts,
            **(extra_state or {}),
        }
        LOGGER.info(f"✅ [{self.platform}] Initialization successful (attempt {self.initialization_attempts})")

    def mark_initialization_failure(self, error: Any, extra_state: Optional[Dict[str, Any]] = None):
        message = str(error) if error else ""
        self.initialization_state = {
            "timestamp": _now_iso(),
            "success": False,
            "attempt": self.initialization_attempts,
            "error": message or "Unknown error",
            **(extra_state or {}),
        }
        LOGGER.error(f"❌ [{self.platform}] Initialization failed (attempt {self.initialization_attempts}): {message}")

    def configure(self, allow_reinitialization: Any = None, max_attempts: Any = None):
        """Valeurs invalides ignorées (non-bool / non-positif)"""
        if isinstance(allow_reinitialization, bool):
            self.allow_reinitialization = allow_reinitialization
        if isinstance(max_attempts, (int, float)) and not isinstance(max_attempts, bool) and max_attempts > 0:
            self.max_attempts = max_attempts
        LOGGER.debug(
            f"[{self.platform}] Initialization manager configured: "
            f"allow_reinitialization={self.allow_reinitialization} max_attempts={self.max_attempts}"
        )

    def reset(self):
        self.initialization_count = 0
        self.initialization_attempts = 0
        self.prevented_reinitializations = 0
        self.initialization_state = {}
        LOGGER.debug(f"[{self.platform}] Initialization state reset")

    def get_statistics(self) -> Dict[str, Any]:
        attempts = self.initialization_attempts
        return {
            "initializationCount": self.initialization_count,
            "initializationAttempts": attempts,
            "preventedReinitializations": self.prevented_reinitializations,
            "isInitialized": self.is_initialized(),
            "lastInitialization": dict(self.initialization_state),
            "successRate": (self.initialization_count / attempts) * 100 if attempts > 0 else 0,
        }

    def get_initialization_state(self) -> Dict[str, Any]:
        return {
            **self.initialization_state,
            "isInitialized": self.is_initialized(),
            "totalAttempts": self.initialization_attempts,
            "preventedAttempts": self.prevented_reinitializations,
        }
