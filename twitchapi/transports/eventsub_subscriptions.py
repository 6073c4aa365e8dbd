#!/usr/bin/env python3
"""
EventSub Subscriptions - Création / listing / suppression des subscriptions WebSocket
====================================================================================

Chaque subscription est créée via POST /helix/eventsub/subscriptions avec
    {type, version, condition, transport: {method: "websocket", session_id}}

Erreurs :
    - 401 / 403 → critique (OAuth à refaire), la boucle s'arrête
    - 429 / 5xx / réseau → retry une fois
    - autres → échec non critique enregistré dans le résultat

Déduplication des notifications : LRU des metadata.message_id (10 000 entrées).
"""

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from core.error_classifier import error_details, extract_error_message
from twitchapi.transports.helix_client import HelixClient

LOGGER = logging.getLogger(__name__)

MESSAGE_ID_CACHE_SIZE = 10_000


# ============================================================================
# Définitions
# ============================================================================

@dataclass(frozen=True)
class SubscriptionDefinition:
    """Subscription EventSub à créer pour la session"""
    name: str
    type: str
    version: str = "1"
    condition_style: str = "broadcaster"

    def get_condition(self, broadcaster_id: str, user_id: str) -> Dict[str, str]:
        if self.condition_style == "chat":
            return {"broadcaster_user_id": broadcaster_id, "user_id": user_id}
        if self.condition_style == "moderator":
            return {"broadcaster_user_id": broadcaster_id, "moderator_user_id": user_id}
        if self.condition_style == "raid":
            return {"to_broadcaster_user_id": broadcaster_id}
        return {"broadcaster_user_id": broadcaster_id}


KNOWN_SUBSCRIPTIONS = {
    "channel.chat.message": SubscriptionDefinition("Chat Messages", "channel.chat.message", "1", "chat"),
    "channel.follow": SubscriptionDefinition("Follows", "channel.follow", "2", "moderator"),
    "channel.subscribe": SubscriptionDefinition("Subscriptions", "channel.subscribe"),
    "channel.subscription.gift": SubscriptionDefinition("Gift Subscriptions", "channel.subscription.gift"),
    "channel.subscription.message": SubscriptionDefinition("Resubscriptions", "channel.subscription.message"),
    "channel.raid": SubscriptionDefinition("Raids", "channel.raid", "1", "raid"),
    "channel.cheer": SubscriptionDefinition("Cheers", "channel.cheer"),
    "channel.bits.use": SubscriptionDefinition("Bits Usage", "channel.bits.use"),
    "channel.channel_points_custom_reward_redemption.add": SubscriptionDefinition(
        "Channel Points Redemptions", "channel.channel_points_custom_reward_redemption.add"
    ),
    "stream.online": SubscriptionDefinition("Stream Online", "stream.online"),
    "stream.offline": SubscriptionDefinition("Stream Offline", "stream.offline"),
}

REQUIRED_SUBSCRIPTION_TYPES = [
    "channel.chat.message",
    "channel.follow",
    "channel.subscribe",
    "channel.subscription.gift",
    "channel.subscription.message",
    "channel.raid",
    "channel.cheer",
    "stream.online",
    "stream.offline",
]

SUBSCRIPTION_SCOPES = {
    "channel.chat.message": "user:read:chat",
    "channel.follow": "moderator:read:followers",
    "channel.subscribe": "channel:read:subscriptions",
    "channel.subscription.gift": "channel:read:subscriptions",
    "channel.subscription.message": "channel:read:subscriptions",
    "channel.cheer": "bits:read",
    "channel.bits.use": "bits:read",
    "channel.channel_points_custom_reward_redemption.add": "channel:read:redemptions",
}


def build_required_subscriptions(extra_types: Optional[Iterable[str]] = None) -> List[SubscriptionDefinition]:
    """Set requis + types supplémentaires de la config (types inconnus ignorés)"""
    types = list(REQUIRED_SUBSCRIPTION_TYPES)
    for sub_type in extra_types or []:
        if sub_type not in KNOWN_SUBSCRIPTIONS:
            LOGGER.warning(f"⚠️ Unknown EventSub subscription type in config: {sub_type}")
            continue
        if sub_type not in types:
            types.append(sub_type)
    return [KNOWN_SUBSCRIPTIONS[t] for t in types]


def filter_by_scopes(subscriptions: List[SubscriptionDefinition],
                     granted_scopes: Iterable[str]) -> Tuple[List[SubscriptionDefinition], List[SubscriptionDefinition]]:
    """Sépare les subscriptions autorisées par le token de celles qui manquent de scope"""
    granted = set(granted_scopes)
    allowed, skipped = [], []
    for sub in subscriptions:
        scope = SUBSCRIPTION_SCOPES.get(sub.type)
        (allowed if scope is None or scope in granted else skipped).append(sub)
    for sub in skipped:
        LOGGER.warning(f"⚠️ Skipping {sub.type}: missing scope {SUBSCRIPTION_SCOPES[sub.type]}")
    return allowed, skipped


# ============================================================================
# Déduplication
# ============================================================================

class MessageIdCache:
    """LRU borné des message_id EventSub déjà traités"""

    def __init__(self, max_size: int = MESSAGE_ID_CACHE_SIZE):
        self.max_size = max_size
        self._ids: "OrderedDict[str, float]" = OrderedDict()
        self.duplicates = 0

    def is_duplicate(self, message_id: Optional[str]) -> bool:
        """True si déjà vu ; sinon l'id est mémorisé"""
        if not message_id:
            return False
        if message_id in self._ids:
            self._ids.move_to_end(message_id)
            self.duplicates += 1
            return True

        self._ids[message_id] = time.time()
        while len(self._ids) > self.max_size:
            self._ids.popitem(last=False)
        return False

    def clear(self):
        self._ids.clear()

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)


# ============================================================================
# Manager
# ============================================================================

class EventSubSubscriptionManager:
    """
    Gère les subscriptions EventSub d'une session WebSocket.

    Args:
        helix: HelixClient (None → toutes les créations échouent en AUTH_MISSING)
        subscriptions: Map locale {id: record} partagée avec le transport WebSocket
    """

    RETRYABLE_STATUSES = (429, 500, 502, 503, 504)
    CRITICAL_STATUSES = (401, 403)

    def __init__(self, helix: Optional[HelixClient], subscriptions: Optional[Dict[str, Dict[str, Any]]] = None,
                 retry_delay_s: float = 1.0):
        self.helix = helix
        self.subscriptions = subscriptions if subscriptions is not None else {}
        self.retry_delay_s = retry_delay_s
        self.last_result: Optional[Dict[str, Any]] = None

    def parse_subscription_error(self, error: Any) -> Dict[str, Any]:
        details = error_details(error)
        status = details["status"]
        data = details["data"] if isinstance(details["data"], dict) else {}

        if status is None:
            return {
                "code": "NETWORK_ERROR",
                "message": extract_error_message(error),
                "status": None,
                "isCritical": False,
                "isRetryable": True,
            }

        return {
            "code": data.get("error") or f"HTTP_{status}",
            "message": data.get("message") or extract_error_message(error),
            "status": status,
            "isCritical": status in self.CRITICAL_STATUSES,
            "isRetryable": status in self.RETRYABLE_STATUSES,
        }

    async def _create(self, definition: SubscriptionDefinition, broadcaster_id: str, user_id: str,
                      session_id: str) -> Dict[str, Any]:
        body = {
            "type": definition.type,
            "version": definition.version,
            "condition": definition.get_condition(broadcaster_id, user_id),
            "transport": {"method": "websocket", "session_id": session_id},
        }
        created = await self.helix.create_eventsub_subscription(body)
        record = {
            "id": created.get("id"),
            "type": definition.type,
            "status": created.get("status", "enabled"),
            "version": definition.version,
            "condition": body["condition"],
            "transport": {"method": "websocket", "sessionId": session_id},
        }
        if record["id"]:
            self.subscriptions[record["id"]] = record
        return record

    async def setup_event_subscriptions(
        self,
        required: List[SubscriptionDefinition],
        user_id: str,
        broadcaster_id: str,
        session_id: str,
        subscription_delay_s: float = 0.0,
    ) -> Dict[str, Any]:
        """
        Crée les subscriptions dans l'ordre.

        Returns:
            {"successful": int, "total": int, "failures": [...], "timestamp": epoch ms}
        """
        failures: List[Dict[str, Any]] = []
        successful = 0

        if self.helix is None or not session_id:
            LOGGER.warning("⚠️ Cannot create EventSub subscriptions - missing authentication or session")
            failures = [
                {"subscription": d.name, "type": d.type,
                 "error": {"code": "AUTH_MISSING", "message": "Missing authentication or session id",
                           "status": None, "isCritical": True, "isRetryable": False}}
                for d in required
            ]
            return self._result(0, required, failures)

        LOGGER.info(f"📌 Setting up {len(required)} EventSub subscriptions")
        for definition in required:
            parsed = None
            for attempt in range(2):
                try:
                    record = await self._create(definition, broadcaster_id, user_id, session_id)
                    LOGGER.info(f"✅ EventSub subscription created: {definition.name} ({record['id']})")
                    successful += 1
                    parsed = None
                    break
                except Exception as e:
                    parsed = self.parse_subscription_error(e)
                    if parsed["isRetryable"] and attempt == 0:
                        LOGGER.warning(f"⚠️ {definition.name} failed ({parsed['code']}), retrying once")
                        await asyncio.sleep(self.retry_delay_s)
                        continue
                    break

            if parsed is not None:
                failures.append({"subscription": definition.name, "type": definition.type, "error": parsed})
                LOGGER.error(f"❌ Failed to create {definition.name} subscription: {parsed['message']}")
                if parsed["isCritical"]:
                    LOGGER.error("❌ Critical error encountered, stopping subscription setup")
                    break

            if subscription_delay_s > 0:
                await asyncio.sleep(subscription_delay_s)

        return self._result(successful, required, failures)

    def _result(self, successful: int, required: List[SubscriptionDefinition],
                failures: List[Dict[str, Any]]) -> Dict[str, Any]:
        result = {
            "successful": successful,
            "total": len(required),
            "failures": failures,
            "timestamp": int(time.time() * 1000),
        }
        if failures:
            LOGGER.warning(f"⚠️ EventSub subscription setup completed with failures: {successful}/{len(required)}")
        else:
            LOGGER.info(f"✅ EventSub subscription setup complete: {successful}/{len(required)} successful")
        self.last_result = result
        return result

    # ========================================================================
    # Listing & suppression
    # ========================================================================

    async def list_subscriptions(self, session_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Subscriptions WebSocket côté Twitch (filtrées par session si fournie)"""
        if self.helix is None:
            return []
        subscriptions = await self.helix.list_eventsub_subscriptions()
        websocket = [s for s in subscriptions if (s.get("transport") or {}).get("method") == "websocket"]
        if session_id is None:
            return websocket
        return [s for s in websocket if (s.get("transport") or {}).get("session_id") == session_id]

    async def delete_all(self, session_id: Optional[str] = None) -> int:
        """
        Supprime les subscriptions de la session (ou toutes les WebSocket si session_id est None).

        Les échecs par id sont loggés sans interrompre la boucle.
        """
        if self.helix is None:
            LOGGER.warning("⚠️ Cannot delete subscriptions - missing authentication")
            return 0

        try:
            targets = await self.list_subscriptions(session_id)
        except Exception as e:
            LOGGER.error(f"❌ Failed to list EventSub subscriptions: {extract_error_message(e)}")
            return 0

        if not targets:
            LOGGER.info("No EventSub subscriptions to clean up")
            return 0

        deleted = 0
        for subscription in targets:
            sub_id = subscription.get("id")
            try:
                await self.helix.delete_eventsub_subscription(sub_id)
            except Exception as e:
                LOGGER.error(f"❌ Failed to delete {subscription.get('type')} ({sub_id}): {extract_error_message(e)}")
                continue
            self.subscriptions.pop(sub_id, None)
            deleted += 1
            LOGGER.debug(f"🗑️ Deleted: {subscription.get('type')} ({sub_id})")

        LOGGER.info(f"✅ Subscription cleanup complete! Deleted {deleted}/{len(targets)} subscriptions")
        return deleted

    async def cleanup_all_websocket_subscriptions(self) -> int:
        """Nettoyage global avant connexion (limite de subscriptions Twitch)"""
        return await self.delete_all(session_id=None)

    def handle_revocation(self, subscription: Dict[str, Any]) -> bool:
        sub_id = (subscription or {}).get("id")
        LOGGER.warning(f"⚠️ EventSub subscription revoked: {(subscription or {}).get('type')} "
                       f"({(subscription or {}).get('status')})")
        return self.subscriptions.pop(sub_id, None) is not None

    def get_stats(self) -> Dict[str, Any]:
        return {
            "active": len(self.subscriptions),
            "types": sorted({s["type"] for s in self.subscriptions.values()}),
            "last_result": self.last_result,
        }
