"""
🔐 Scope Validator - Validation du token OAuth et des scopes EventSub

GET https://id.twitch.tv/oauth2/validate → login, user_id, scopes, expires_in.
Chaque feature EventSub dépend d'un ou plusieurs scopes ; les scopes
critiques (chat) empêchent le démarrage, les autres désactivent la feature.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Set

import httpx
from twitchAPI.type import AuthScope

logger = logging.getLogger(__name__)

VALIDATE_URL = "https://id.twitch.tv/oauth2/validate"


@dataclass
class ScopeRequirement:
    """Scopes requis pour une feature."""
    name: str
    scopes: Set[str]
    description: str
    critical: bool  # Impossible de démarrer sans


FEATURE_SCOPES = {
    "chat": ScopeRequirement(
        name="Chat (EventSub)",
        scopes={AuthScope.USER_READ_CHAT.value, AuthScope.CHAT_EDIT.value},
        description="Messages du chat via channel.chat.message",
        critical=True
    ),
    "follows": ScopeRequirement(
        name="Follow Events",
        scopes={AuthScope.MODERATOR_READ_FOLLOWERS.value},
        description="Notifications channel.follow",
        critical=False
    ),
    "subscriptions": ScopeRequirement(
        name="Subscription Events",
        scopes={AuthScope.CHANNEL_READ_SUBSCRIPTIONS.value},
        description="Subs, resubs et subs offerts",
        critical=False
    ),
    "bits": ScopeRequirement(
        name="Bits Events",
        scopes={AuthScope.BITS_READ.value},
        description="Cheers / bits",
        critical=False
    ),
    "redemptions": ScopeRequirement(
        name="Channel Points",
        scopes={AuthScope.CHANNEL_READ_REDEMPTIONS.value},
        description="Récompenses de points de chaîne",
        critical=False
    ),
}


def _invalid_result(status: Optional[int], error: str) -> Dict[str, Any]:
    return {
        "valid": False,
        "status": status,
        "error": error,
        "scopes": [],
        "missing_critical": [],
        "missing_optional": [],
        "available_features": [],
        "unavailable_features": list(FEATURE_SCOPES.keys()),
        "warnings": [f"❌ {error}"],
        "user_id": None,
        "login": None,
        "expires_in": None,
    }


class ScopeValidator:
    """Validate OAuth token scopes and provide feedback."""

    @staticmethod
    async def validate_token(
        token: str,
        http_client: Optional[httpx.AsyncClient] = None
    ) -> Dict[str, Any]:
        """
        Validate OAuth token and return scope analysis.

        Returns:
            {
                "valid": bool, "status": int | None,
                "scopes": List[str],
                "missing_critical": List[str], "missing_optional": List[str],
                "available_features": List[str], "unavailable_features": List[str],
                "warnings": List[str],
                "user_id": Optional[str], "login": Optional[str], "expires_in": Optional[int]
            }
        """
        clean_token = token.replace('oauth:', '') if token else ""
        headers = {"Authorization": f"OAuth {clean_token}"}

        try:
            if http_client is not None:
                response = await http_client.get(VALIDATE_URL, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=10) as client:
                    response = await client.get(VALIDATE_URL, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"❌ Erreur validation token: {e}")
            return _invalid_result(None, f"Network error: {e}")

        if response.status_code != 200:
            logger.warning(f"⚠️ Token validation failed: {response.status_code}")
            return _invalid_result(response.status_code, "Token invalide ou expiré")

        data = response.json()
        user_scopes = set(data.get("scopes") or [])
        result = {
            "valid": True,
            "status": response.status_code,
            "scopes": sorted(user_scopes),
            "missing_critical": [],
            "missing_optional": [],
            "available_features": [],
            "unavailable_features": [],
            "warnings": [],
            "user_id": data.get("user_id"),
            "login": data.get("login"),
            "expires_in": data.get("expires_in"),
        }
        logger.info(f"✅ Token validé pour user: {result['login']} (ID: {result['user_id']})")

        for feature_key, requirement in FEATURE_SCOPES.items():
            missing = requirement.scopes - user_scopes
            if not missing:
                result["available_features"].append(feature_key)
                continue

            result["unavailable_features"].append(feature_key)
            if requirement.critical:
                result["missing_critical"].extend(sorted(missing))
                result["warnings"].append(f"❌ CRITIQUE : '{requirement.name}' nécessite {sorted(missing)}")
            else:
                result["missing_optional"].extend(sorted(missing))
                result["warnings"].append(f"⚠️  OPTIONNEL : '{requirement.name}' nécessite {sorted(missing)}")

        if result["missing_critical"]:
            result["valid"] = False
            logger.critical(f"🚨 Scopes critiques manquants: {result['missing_critical']}")
        elif result["missing_optional"]:
            logger.info(f"✅ Token opérationnel, features désactivées: {result['unavailable_features']}")

        return result

