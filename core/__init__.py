"""
Core - Utilitaires transverses du core de connexion

- timer_registry.py : timers nommés (intervals / timeouts)
- error_classifier.py : classification des erreurs plateformes
- retry_scheduler.py : backoff adaptatif par plateforme
- init_manager.py / statistics.py : gating et stats d'initialisation
- lifecycle.py : orchestrateur des plateformes
"""

from core.message_bus import MessageBus
from core.message_types import PlatformEvent, SystemEvent
from core.timer_registry import TimerRegistry

__all__ = ["MessageBus", "PlatformEvent", "SystemEvent", "TimerRegistry"]
