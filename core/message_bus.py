"""
🚌 MessageBus - Système de pub/sub interne

Découple les plateformes des consommateurs d'événements.
Fire-and-forget pour éviter les blocages.
"""
import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, List

LOGGER = logging.getLogger(__name__)


def _handler_name(handler: Callable) -> str:
    return getattr(handler, "__name__", type(handler).__name__)


class MessageBus:
    """Bus de messages asynchrone simple (pub/sub)"""

    def __init__(self):
        self._subscribers: Dict[str, List[Callable]] = {}
        self._task_group: List[asyncio.Task] = []
        self._published = 0

    def subscribe(self, topic: str, handler: Callable):
        """
        Abonne un handler à un topic.

        Args:
            topic: Nom du topic ("platform:event", "system.event", etc.)
            handler: Fonction sync ou async qui traite les messages
        """
        self._subscribers.setdefault(topic, []).append(handler)
        LOGGER.info(f"📌 Subscriber ajouté: {topic} -> {_handler_name(handler)}")

    def unsubscribe(self, topic: str, handler: Callable) -> bool:
        handlers = self._subscribers.get(topic, [])
        if handler not in handlers:
            return False
        handlers.remove(handler)
        if not handlers:
            del self._subscribers[topic]
        return True

    async def publish(self, topic: str, data: Any):
        """
        Publie un message sur un topic (fire-and-forget).

        Args:
            topic: Nom du topic
            data: Données à publier (PlatformEvent, SystemEvent, etc.)
        """
        self.emit(topic, data)

    def emit(self, topic: str, data: Any) -> int:
        """
        Variante synchrone de publish() (utilisable depuis un callback sync).

        Returns:
            Nombre de handlers planifiés
        """
        handlers = list(self._subscribers.get(topic, []))
        self._published += 1

        if not handlers:
            LOGGER.debug(f"⚠️ MessageBus: Aucun subscriber pour topic: {topic}")
            return 0

        LOGGER.debug(f"📤 MessageBus: Publish [{topic}] vers {len(handlers)} handlers")

        loop = asyncio.get_running_loop()
        for handler in handlers:
            try:
                task = loop.create_task(self._safe_handle(handler, data, topic))
                self._task_group.append(task)
                # Nettoyage auto des tasks terminées
                task.add_done_callback(lambda t: self._task_group.remove(t) if t in self._task_group else None)
            except Exception as e:
                LOGGER.error(f"❌ Erreur création task pour {_handler_name(handler)}: {e}")
        return len(handlers)

    async def _safe_handle(self, handler: Callable, data: Any, topic: str):
        """Wrapper sécurisé pour exécuter les handlers"""
        try:
            result = handler(data)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            LOGGER.error(f"❌ Erreur handler {_handler_name(handler)} sur topic {topic}: {e}", exc_info=True)

    async def wait_all(self):
        """Attend que toutes les tasks en cours se terminent"""
        while self._task_group:
            LOGGER.debug(f"⏳ Attente de {len(self._task_group)} tasks...")
            await asyncio.gather(*list(self._task_group), return_exceptions=True)

    def get_stats(self) -> Dict[str, int]:
        """Retourne les stats du bus"""
        return {
            "topics": len(self._subscribers),
            "subscribers": sum(len(h) for h in self._subscribers.values()),
            "active_tasks": len(self._task_group),
            "published": self._published,
        }
