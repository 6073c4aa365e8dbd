"""
twitchapi/
==========

Module dédié à TOUTE la gestion de l'API Twitch.

Organisation:
- token_store.py / oauth_handler.py : persistance des tokens et flow OAuth navigateur
- auth_state.py / token_refresh.py / auth_errors.py : machine d'état et refresh
- auth_manager.py : façade auth (store → OAuth → validate → refresh planifié)
- scope_validator.py : validation des scopes
- eventsub_router.py : notifications EventSub → handlers
- platform.py : driver Twitch pour l'orchestrateur
- transports/ : Helix HTTP, subscriptions et WebSocket EventSub
- monitors/ : polling du statut live
"""

from twitchapi.auth_manager import TwitchAuthManager
from twitchapi.token_store import TokenRecord, TokenStore

__all__ = ["TwitchAuthManager", "TokenRecord", "TokenStore"]
