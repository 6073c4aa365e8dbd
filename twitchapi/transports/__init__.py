"""
twitchapi/transports/
=====================

Clients de transport pour l'API Twitch.

Modules:
- helix_client : Client Helix (user token, refresh + rejeu sur 401)
- eventsub_subscriptions : Création / suppression des subscriptions EventSub
- eventsub_ws : Cycle de vie de la WebSocket EventSub (welcome, keepalive, reconnect)
"""

from twitchapi.transports.eventsub_subscriptions import EventSubSubscriptionManager
from twitchapi.transports.eventsub_ws import EventSubWebSocket
from twitchapi.transports.helix_client import HelixClient

__all__ = ["EventSubSubscriptionManager", "EventSubWebSocket", "HelixClient"]
