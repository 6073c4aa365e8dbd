"""
📦 Message Types - DTOs publiés sur le bus

Contrat entre le core de connexion et les consommateurs (overlay, TTS, ...).
"""
import time
from dataclasses import dataclass, field
from typing import Any, Dict

# Topics du MessageBus
TOPIC_PLATFORM_EVENT = "platform:event"
TOPIC_SYSTEM = "system.event"


@dataclass
class PlatformEvent:
    """Enveloppe d'un événement canonique : {platform, type, data}"""
    platform: str                   # "twitch", "youtube", "tiktok"
    type: str                       # "platform:chat-message", "platform:follow", ...
    data: Dict[str, Any] = field(default_factory=dict)  # Champs canoniques

    def to_dict(self) -> Dict[str, Any]:
        return {"platform": self.platform, "type": self.type, "data": dict(self.data)}


@dataclass
class SystemEvent:
    """Événement interne (eventsub.connected, eventsub.abandoned, auth-state, ...)"""
    kind: str                       # Type: "eventsub.connected", "auth.state", etc.
    payload: Dict[str, Any]         # Données de l'événement
    timestamp: float = 0.0          # Timestamp

    def __post_init__(self):
        if self.timestamp == 0.0:
            self.timestamp = time.time()
