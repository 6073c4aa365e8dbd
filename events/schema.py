"""
📐 Event Schema - Types canoniques et validation

validate(event) -> {"valid": bool, "errors": [...]}

- type inconnu → "Invalid event type: <type>"
- plateforme hors twitch/youtube/tiktok → "Invalid platform: ..."
- un champ requis absent → exactement une erreur "Missing required field: <f>"
- un champ présent du mauvais type → "Invalid type for field <f>"

platform:cheer n'existe pas : les cheers Twitch sont des platform:gift.
"""
import logging
import re
import uuid
from typing import Any, Dict, List, Optional

from events.timestamps import now_iso

LOGGER = logging.getLogger(__name__)

VALID_PLATFORMS = ["twitch", "youtube", "tiktok"]

# Types canoniques
CHAT_MESSAGE = "platform:chat-message"
CHAT_CONNECTED = "platform:chat-connected"
CHAT_DISCONNECTED = "platform:chat-disconnected"
FOLLOW = "platform:follow"
PAYPIGGY = "platform:paypiggy"
GIFTPAYPIGGY = "platform:giftpaypiggy"
GIFT = "platform:gift"
RAID = "platform:raid"
SHARE = "platform:share"
ENVELOPE = "platform:envelope"
VIEWER_COUNT = "platform:viewer-count"
STREAM_STATUS = "platform:stream-status"
STREAM_DETECTED = "platform:stream-detected"
CONNECTION_STATUS = "platform:connection-status"
CONNECTION = "platform:connection"
NOTIFICATION = "platform:notification"
AUTHENTICATION_REQUIRED = "platform:authentication-required"
RATE_LIMIT_HIT = "platform:rate-limit-hit"
ERROR = "platform:error"
HEALTH_CHECK = "platform:health-check"

STRING = {"type": "string"}
NUMBER = {"type": "number"}
BOOLEAN = {"type": "boolean"}
OBJECT = {"type": "object"}
ARRAY = {"type": "array"}
USERNAME = {"type": ["string", "null"]}


def _schema(event_type: str, required: List[str], properties: Dict[str, Dict], optional: Optional[List[str]] = None) -> Dict:
    return {
        "required": ["type", "platform"] + required,
        "optional": optional or [],
        "properties": {
            "type": {"type": "string", "enum": [event_type]},
            "platform": {"type": "string", "enum": VALID_PLATFORMS},
            **properties,
        },
    }


_GIFT_PROPERTIES = {
    "username": USERNAME,
    "userId": STRING,
    "id": STRING,
    "giftType": STRING,
    "giftCount": NUMBER,
    "repeatCount": NUMBER,
    "amount": NUMBER,
    "currency": STRING,
    "timestamp": STRING,
    "message": STRING,
    "isError": BOOLEAN,
    "sourceType": STRING,
}
_GIFT_REQUIRED = ["username", "userId", "id", "giftType", "giftCount", "amount", "currency", "timestamp"]

EVENT_SCHEMAS: Dict[str, Dict] = {
    CHAT_MESSAGE: _schema(
        CHAT_MESSAGE,
        ["username", "userId", "message", "timestamp"],
        {
            "username": USERNAME,
            "userId": STRING,
            "message": {"type": "object", "required": ["text"], "properties": {"text": STRING}},
            "timestamp": STRING,
            "metadata": OBJECT,
        },
        optional=["metadata"],
    ),
    CHAT_CONNECTED: _schema(CHAT_CONNECTED, ["connectionId", "timestamp"], {"connectionId": STRING, "timestamp": STRING}),
    CHAT_DISCONNECTED: _schema(
        CHAT_DISCONNECTED, ["reason", "willReconnect"], {"reason": STRING, "willReconnect": BOOLEAN}
    ),
    FOLLOW: _schema(
        FOLLOW,
        ["username", "userId", "timestamp"],
        {"username": USERNAME, "userId": STRING, "timestamp": STRING, "metadata": OBJECT},
        optional=["metadata"],
    ),
    PAYPIGGY: _schema(
        PAYPIGGY,
        ["username", "userId", "tier", "months", "timestamp"],
        {
            "username": USERNAME,
            "userId": STRING,
            "tier": STRING,
            "months": NUMBER,
            "message": STRING,
            "timestamp": STRING,
        },
        optional=["message", "isGift", "metadata"],
    ),
    GIFTPAYPIGGY: _schema(
        GIFTPAYPIGGY,
        ["username", "userId", "giftCount", "tier", "timestamp"],
        {
            "username": USERNAME,
            "userId": STRING,
            "giftCount": NUMBER,
            "tier": STRING,
            "isAnonymous": BOOLEAN,
            "cumulativeTotal": NUMBER,
            "timestamp": STRING,
        },
        optional=["isAnonymous", "cumulativeTotal", "metadata"],
    ),
    GIFT: _schema(GIFT, _GIFT_REQUIRED, dict(_GIFT_PROPERTIES), optional=["repeatCount", "message", "isError", "sourceType", "metadata"]),
    ENVELOPE: _schema(ENVELOPE, _GIFT_REQUIRED, dict(_GIFT_PROPERTIES), optional=["repeatCount", "message", "isError", "sourceType"]),
    RAID: _schema(
        RAID,
        ["username", "userId", "viewerCount", "timestamp"],
        {"username": USERNAME, "userId": STRING, "viewerCount": NUMBER, "timestamp": STRING, "metadata": OBJECT},
        optional=["metadata"],
    ),
    SHARE: _schema(
        SHARE,
        ["username", "userId", "timestamp"],
        {"username": USERNAME, "userId": STRING, "timestamp": STRING, "metadata": OBJECT},
        optional=["metadata"],
    ),
    VIEWER_COUNT: _schema(VIEWER_COUNT, ["count", "timestamp"], {"count": NUMBER, "timestamp": STRING}),
    STREAM_STATUS: _schema(
        STREAM_STATUS,
        ["isLive", "timestamp"],
        {"isLive": BOOLEAN, "status": STRING, "message": STRING, "title": STRING, "category": STRING, "timestamp": STRING},
        optional=["status", "message", "title", "category"],
    ),
    STREAM_DETECTED: _schema(
        STREAM_DETECTED,
        ["eventType", "newStreamIds", "allStreamIds", "detectionTime", "connectionCount"],
        {
            "eventType": {"type": "string", "enum": ["stream-detected", "stream-ended"]},
            "newStreamIds": ARRAY,
            "allStreamIds": ARRAY,
            "endedStreamIds": ARRAY,
            "detectionTime": NUMBER,
            "connectionCount": NUMBER,
        },
        optional=["endedStreamIds"],
    ),
    CONNECTION_STATUS: _schema(
        CONNECTION_STATUS,
        ["status", "latency", "error"],
        {"status": STRING, "latency": NUMBER, "error": {"type": ["object", "null"]}},
    ),
    CONNECTION: _schema(
        CONNECTION,
        ["status", "timestamp"],
        {
            "status": STRING,
            "timestamp": STRING,
            "correlationId": STRING,
            "id": STRING,
            "error": {"type": ["object", "null"]},
            "willReconnect": BOOLEAN,
        },
        optional=["error", "willReconnect", "correlationId", "id"],
    ),
    NOTIFICATION: _schema(
        NOTIFICATION,
        ["notificationType", "timestamp", "data"],
        {
            "notificationType": STRING,
            "timestamp": STRING,
            "priority": NUMBER,
            "data": OBJECT,
            "username": USERNAME,
            "userId": {"type": ["string", "null"]},
            "correlationId": STRING,
            "id": STRING,
        },
        optional=["priority", "username", "userId", "correlationId", "id"],
    ),
    AUTHENTICATION_REQUIRED: _schema(
        AUTHENTICATION_REQUIRED, ["tokenType", "reason"], {"tokenType": STRING, "reason": STRING}
    ),
    RATE_LIMIT_HIT: _schema(RATE_LIMIT_HIT, ["endpoint", "retryAfter"], {"endpoint": STRING, "retryAfter": NUMBER}),
    ERROR: _schema(
        ERROR, ["error", "context", "recoverable"], {"error": OBJECT, "context": OBJECT, "recoverable": BOOLEAN}
    ),
    HEALTH_CHECK: _schema(HEALTH_CHECK, ["healthy", "metrics"], {"healthy": BOOLEAN, "metrics": OBJECT}),
}

# Types dont le payload porte un timestamp obligatoire
TIMESTAMPED_TYPES = frozenset(
    event_type for event_type, schema in EVENT_SCHEMAS.items() if "timestamp" in schema["required"]
)

NOTIFICATION_PRIORITIES = {"gift": 8, "raid": 6, "paypiggy": 5, "follow": 2}

RECOVERABLE_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (r"network", r"connection", r"timeout", r"rate limit", r"temporary")]


# ============================================================================
# Validation
# ============================================================================

def _type_matches(value: Any, expected: str) -> bool:
    if expected == "string":
        return isinstance(value, str)
    if expected == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if expected == "boolean":
        return isinstance(value, bool)
    if expected == "object":
        return isinstance(value, dict)
    if expected == "array":
        return isinstance(value, list)
    if expected == "null":
        return value is None
    return False


def _validate_field(value: Any, field_schema: Dict) -> bool:
    if "enum" in field_schema and value not in field_schema["enum"]:
        return False

    expected = field_schema.get("type")
    if expected:
        types = expected if isinstance(expected, list) else [expected]
        if not any(_type_matches(value, t) for t in types):
            return False

    if isinstance(value, dict):
        for required in field_schema.get("required", []):
            if required not in value:
                return False
        for name, sub_schema in field_schema.get("properties", {}).items():
            if name in value and not _validate_field(value[name], sub_schema):
                return False
    return True


def validate(event: Any) -> Dict[str, Any]:
    """
    Valide un événement canonique.

    Ne parcourt que les champs déclarés (jamais récursif sur le reste de
    l'objet), donc un événement avec référence circulaire ne lève pas.
    """
    if event is None:
        return {"valid": False, "errors": ["Event is null or undefined"]}

    if not isinstance(event, dict):
        return {"valid": False, "errors": [f"Invalid event type: {getattr(event, 'type', None)}"]}

    errors: List[str] = []
    event_type = event.get("type")
    schema = EVENT_SCHEMAS.get(event_type) if isinstance(event_type, str) else None

    if schema is None:
        errors.append(f"Invalid event type: {event_type}")

    platform = event.get("platform")
    if platform and platform not in VALID_PLATFORMS:
        errors.append(f"Invalid platform: {platform}. Must be one of: {', '.join(VALID_PLATFORMS)}")

    if schema is None:
        return {"valid": False, "errors": errors}

    waive_id = event_type in (GIFT, ENVELOPE) and event.get("isError") is True
    for field_name in schema["required"]:
        if field_name == "id" and waive_id:
            continue
        if field_name not in event:
            errors.append(f"Missing required field: {field_name}")

    for field_name, field_schema in schema["properties"].items():
        if field_name == "platform":
            continue
        if field_name in event and not _validate_field(event[field_name], field_schema):
            errors.append(f"Invalid type for field {field_name}")

    return {"valid": not errors, "errors": errors}


def get_supported_event_types() -> List[str]:
    return list(EVENT_SCHEMAS)


def get_event_schema(event_type: str) -> Optional[Dict]:
    return EVENT_SCHEMAS.get(event_type)


def required_fields(event_type: str) -> List[str]:
    schema = EVENT_SCHEMAS.get(event_type)
    return list(schema["required"]) if schema else []


# ============================================================================
# Builders
# ============================================================================

def check_platform(platform: str) -> str:
    if platform not in VALID_PLATFORMS:
        raise ValueError(f"Invalid platform: {platform}. Valid platforms: {', '.join(VALID_PLATFORMS)}")
    return platform


def calculate_priority(notification_type: str) -> int:
    return NOTIFICATION_PRIORITIES.get(notification_type, 1)


def is_recoverable_error(error: Any) -> bool:
    message = str(error or "")
    return any(pattern.search(message) for pattern in RECOVERABLE_PATTERNS)


def build_chat_message(platform: str, username: Optional[str], user_id: str, text: str,
                       timestamp: Optional[str] = None, metadata: Optional[Dict] = None) -> Dict[str, Any]:
    if not isinstance(text, str):
        raise TypeError("Chat message text must be a string")
    event = {
        "type": CHAT_MESSAGE,
        "platform": check_platform(platform),
        "username": username,
        "userId": user_id,
        "message": {"text": text},
        "timestamp": timestamp or now_iso(),
    }
    if metadata is not None:
        event["metadata"] = metadata
    return event


def build_follow(platform: str, username: Optional[str], user_id: str,
                 timestamp: Optional[str] = None, metadata: Optional[Dict] = None) -> Dict[str, Any]:
    event = {
        "type": FOLLOW,
        "platform": check_platform(platform),
        "username": username,
        "userId": user_id,
        "timestamp": timestamp or now_iso(),
    }
    if metadata is not None:
        event["metadata"] = metadata
    return event


def build_gift(platform: str, username: Optional[str], user_id: str, gift_id: str, gift_type: str,
               gift_count: float, amount: float, currency: str, timestamp: Optional[str] = None,
               repeat_count: Optional[int] = None) -> Dict[str, Any]:
    event = {
        "type": GIFT,
        "platform": check_platform(platform),
        "username": username,
        "userId": user_id,
        "id": gift_id,
        "giftType": gift_type,
        "giftCount": gift_count,
        "amount": amount,
        "currency": currency,
        "timestamp": timestamp or now_iso(),
    }
    if repeat_count is not None:
        event["repeatCount"] = repeat_count
    return event


def build_paypiggy(platform: str, username: Optional[str], user_id: str, tier: str, months: int,
                   timestamp: Optional[str] = None, message: Optional[str] = None) -> Dict[str, Any]:
    event = {
        "type": PAYPIGGY,
        "platform": check_platform(platform),
        "username": username,
        "userId": user_id,
        "tier": tier,
        "months": months,
        "timestamp": timestamp or now_iso(),
    }
    if message is not None:
        event["message"] = message
    return event


def build_giftpaypiggy(platform: str, username: Optional[str], user_id: str, gift_count: int, tier: str,
                       timestamp: Optional[str] = None, is_anonymous: bool = False) -> Dict[str, Any]:
    return {
        "type": GIFTPAYPIGGY,
        "platform": check_platform(platform),
        "username": username,
        "userId": user_id,
        "giftCount": gift_count,
        "tier": tier,
        "isAnonymous": is_anonymous,
        "timestamp": timestamp or now_iso(),
    }


def build_raid(platform: str, username: Optional[str], user_id: str, viewer_count: int,
               timestamp: Optional[str] = None) -> Dict[str, Any]:
    return {
        "type": RAID,
        "platform": check_platform(platform),
        "username": username,
        "userId": user_id,
        "viewerCount": viewer_count,
        "timestamp": timestamp or now_iso(),
    }


def build_viewer_count(platform: str, count: int, timestamp: Optional[str] = None) -> Dict[str, Any]:
    return {
        "type": VIEWER_COUNT,
        "platform": check_platform(platform),
        "count": count,
        "timestamp": timestamp or now_iso(),
    }


def build_stream_status(platform: str, is_live: bool, timestamp: Optional[str] = None, **extra) -> Dict[str, Any]:
    return {
        "type": STREAM_STATUS,
        "platform": check_platform(platform),
        "isLive": bool(is_live),
        "timestamp": timestamp or now_iso(),
        **extra,
    }


def build_connection_event(platform: str, status: str, error: Optional[Dict] = None) -> Dict[str, Any]:
    return {
        "id": str(uuid.uuid4()),
        "type": CONNECTION,
        "platform": check_platform(platform),
        "status": status,
        "correlationId": str(uuid.uuid4()),
        "timestamp": now_iso(),
        "error": error,
        "willReconnect": status == "disconnected",
    }


def build_notification_event(platform: str, notification_type: str, data: Optional[Dict] = None) -> Dict[str, Any]:
    data = data or {}
    return {
        "id": str(uuid.uuid4()),
        "type": NOTIFICATION,
        "platform": check_platform(platform),
        "notificationType": notification_type,
        "correlationId": str(uuid.uuid4()),
        "timestamp": now_iso(),
        "priority": calculate_priority(notification_type),
        "data": data,
        "username": data.get("username"),
        "userId": data.get("userId"),
    }


def build_error_event(platform: str, error: Any, context: Optional[Dict] = None) -> Dict[str, Any]:
    message = str(error) if error else "Unknown error"
    return {
        "id": str(uuid.uuid4()),
        "type": ERROR,
        "platform": check_platform(platform),
        "correlationId": str(uuid.uuid4()),
        "timestamp": now_iso(),
        "error": {
            "message": message,
            "code": getattr(error, "code", None) or "UNKNOWN",
            "name": type(error).__name__ if isinstance(error, BaseException) else "Error",
        },
        "context": context or {},
        "recoverable": is_recoverable_error(message),
    }


def build_authentication_required(platform: str, reason: str, token_type: str = "access") -> Dict[str, Any]:
    return {"type": AUTHENTICATION_REQUIRED, "platform": check_platform(platform), "tokenType": token_type, "reason": reason}


def build_rate_limit_hit(platform: str, endpoint: str, retry_after: float) -> Dict[str, Any]:
    return {"type": RATE_LIMIT_HIT, "platform": check_platform(platform), "endpoint": endpoint, "retryAfter": retry_after}
