"""
🔀 Normalizer - Événement brut de plateforme → événement canonique

Chaque normalize_X(platform, raw) retourne un dict contenant exactement les
champs requis du schéma pour X, plus les champs optionnels présents à la source
(metadata, message, repeatCount, ...).

Règles communes :
- Un champ source requis manquant lève ValueError("Missing required field: <f>")
- message est toujours {"text": str}
- Pseudo YouTube "@name" → "name" ; "N/A" ou vide → None (anonyme)
- Timestamp résolu par events.timestamps ; l'heure courante n'est substituée
  que pour les types qui exigent un timestamp

Formes brutes acceptées :
- Twitch : payload.event EventSub (user_name, user_id, followed_at, ...)
- YouTube : chat item InnerTube {"item": {...}} ou dict déjà aplati
- TikTok : données WebCast (user.uniqueId, user.nickname, common.createTime, ...)
"""
import logging
import math
from typing import Any, Callable, Dict, Optional, Tuple

from events import schema
from events.currency_parser import parse_display_amount
from events.timestamps import now_iso, resolve_timestamp

LOGGER = logging.getLogger(__name__)

ANONYMOUS_NAMES = {"n/a"}
ANONYMOUS_USER_ID = "anonymous"

YOUTUBE_SUPER_CHAT = "Super Chat"
YOUTUBE_SUPER_STICKER = "Super Sticker"
YOUTUBE_DEFAULT_TIER = "member"
TIKTOK_ENVELOPE_GIFT = "Treasure Chest"
TIKTOK_SUPERFAN_TIER = "superfan"
TIKTOK_DEFAULT_TIER = "subscriber"
TIKTOK_COINS = "coins"
BITS = "bits"


def _missing(field_name: str) -> ValueError:
    return ValueError(f"Missing required field: {field_name}")


# ============================================================================
# Helpers génériques
# ============================================================================

def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _first(data: Dict, *keys: str) -> Any:
    """Première valeur non-None parmi les clés"""
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return None


def _positive_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or number <= 0:
        return None
    return int(number) if number.is_integer() else number


def _non_negative_int(value: Any) -> Optional[int]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or number < 0:
        return None
    return int(number)


def _item(raw: Dict) -> Dict:
    """Payload YouTube : raw["item"] si présent, sinon raw"""
    item = raw.get("item")
    return item if isinstance(item, dict) else raw


def _require_dict(raw: Any, label: str) -> Dict:
    if not isinstance(raw, dict):
        raise ValueError(f"Missing {label} data")
    return raw


def _normalize_username(platform: str, value: Any) -> Optional[str]:
    name = _text(value)
    if platform == "youtube" and name.startswith("@"):
        name = name[1:].strip()
    if not name or name.lower() in ANONYMOUS_NAMES:
        return None
    return name


def _string_id(value: Any) -> str:
    if value is None or isinstance(value, bool):
        return ""
    return str(value).strip()


# ============================================================================
# Extraction par plateforme
# ============================================================================

def _twitch_identity(raw: Dict) -> Tuple[Any, Any]:
    """Twitch EventSub : user_*, chatter_user_* (chat), from_broadcaster_user_* (raid)"""
    for prefix in ("chatter_user", "from_broadcaster_user", "user"):
        user_id = raw.get(f"{prefix}_id")
        if user_id is not None:
            name = _first(raw, f"{prefix}_name", f"{prefix}_login")
            return name, user_id
    return raw.get("username"), raw.get("userId")


def _youtube_identity(raw: Dict) -> Tuple[Any, Any]:
    author = _item(raw).get("author")
    if isinstance(author, dict):
        return author.get("name"), author.get("id")
    return raw.get("username"), raw.get("userId")


def _tiktok_identity(raw: Dict) -> Tuple[Any, Any]:
    user = raw.get("user")
    if isinstance(user, dict) and user.get("uniqueId") is not None:
        return user.get("nickname"), user.get("uniqueId")
    return _first(raw, "username", "nickname"), _first(raw, "userId", "uniqueId")


IDENTITY_EXTRACTORS: Dict[str, Callable[[Dict], Tuple[Any, Any]]] = {
    "twitch": _twitch_identity,
    "youtube": _youtube_identity,
    "tiktok": _tiktok_identity,
}


def _identity(platform: str, raw: Dict, anonymous: bool = False) -> Tuple[Optional[str], str]:
    """(username, userId) ; userId requis sauf pour un don anonyme"""
    name, user_id = IDENTITY_EXTRACTORS[platform](raw)
    username = _normalize_username(platform, name)
    user_id = _string_id(user_id)
    if not user_id:
        if not anonymous:
            raise _missing("userId")
        user_id = ANONYMOUS_USER_ID
    return username, user_id


def extract_youtube_text(message: Any) -> str:
    """Texte d'un message YouTube : str, {text}, liste de parts, {runs}, {simpleText}"""
    if isinstance(message, str):
        return message.strip()
    if not message:
        return ""
    if isinstance(message, list):
        parts = message
    elif isinstance(message, dict):
        if isinstance(message.get("text"), str) and message["text"]:
            return message["text"].strip()
        if isinstance(message.get("runs"), list):
            parts = message["runs"]
        else:
            return _text(message.get("simpleText"))
    else:
        return ""

    pieces = []
    for part in parts:
        if not isinstance(part, dict):
            continue
        emoji = part.get("emoji")
        if isinstance(emoji, dict) and emoji.get("shortcuts"):
            pieces.append(str(emoji["shortcuts"][0]))
        else:
            pieces.append(part.get("text") or "")
    return "".join(pieces).strip()


def _structured_text(field: Any) -> str:
    if not isinstance(field, dict):
        return _text(field)
    if isinstance(field.get("runs"), list):
        return "".join((run or {}).get("text") or "" for run in field["runs"]).strip()
    return _text(field.get("simpleText") or field.get("text"))


def _message_text(platform: str, raw: Dict) -> str:
    if platform == "youtube":
        item = _item(raw)
        superchat = item.get("superchat")
        if isinstance(superchat, dict):
            return extract_youtube_text(superchat.get("message"))
        return extract_youtube_text(item.get("message"))
    if platform == "tiktok" and raw.get("comment") is not None:
        return _text(raw.get("comment"))

    message = raw.get("message")
    if isinstance(message, dict):
        text = message.get("text")
        if isinstance(text, str):
            return text.strip()
        fragments = message.get("fragments")
        if isinstance(fragments, list):
            return "".join((f or {}).get("text") or "" for f in fragments).strip()
        return ""
    if isinstance(message, str):
        return message.strip()
    return _text(raw.get("text"))


def _chat_metadata(platform: str, raw: Dict) -> Optional[Dict[str, Any]]:
    """Rôles de l'auteur quand la plateforme les fournit"""
    if isinstance(raw.get("metadata"), dict):
        return dict(raw["metadata"])

    if platform == "youtube":
        item = _item(raw)
        author = item.get("author")
        if not isinstance(author, dict):
            return None
        badges = [b for b in author.get("badges") or [] if isinstance(b, dict)]
        return {
            "isMod": author.get("is_moderator") is True,
            "isSubscriber": any("member" in str(b.get("tooltip", "")).lower() for b in badges),
            "isBroadcaster": any(b.get("icon_type") == "OWNER" for b in badges),
            "messageId": item.get("id"),
        }

    if platform == "twitch":
        badges = raw.get("badges")
        if not isinstance(badges, list):
            return None
        sets = {b.get("set_id") for b in badges if isinstance(b, dict)}
        return {
            "isMod": "moderator" in sets,
            "isSubscriber": "subscriber" in sets,
            "isBroadcaster": "broadcaster" in sets,
            "messageId": raw.get("message_id"),
        }

    if platform == "tiktok" and isinstance(raw.get("user"), dict):
        return {
            "isMod": bool(raw.get("isModerator")),
            "isSubscriber": bool(raw.get("isSubscriber")),
            "isBroadcaster": bool(raw.get("isOwner")),
            "numericId": _string_id(raw["user"].get("userId")) or None,
        }
    return None


def _timestamp(platform: str, raw: Dict, event_type: str) -> Optional[str]:
    resolved = resolve_timestamp(platform, raw)
    if resolved is None and event_type in schema.TIMESTAMPED_TYPES:
        return now_iso()
    return resolved


def _base(event_type: str, platform: str) -> Dict[str, Any]:
    return {"type": event_type, "platform": schema.check_platform(platform)}


def _copy_optional(event: Dict, raw: Dict, *keys: str):
    """Copie les champs optionnels présents à la source"""
    for key in keys:
        if raw.get(key) is not None:
            event[key] = raw[key]


# ============================================================================
# Normaliseurs
# ============================================================================

def normalize_chat_message(platform: str, raw: Any) -> Dict[str, Any]:
    raw = _require_dict(raw, "chat message")
    event = _base(schema.CHAT_MESSAGE, platform)
    username, user_id = _identity(platform, raw)
    text = _message_text(platform, raw)
    if not text:
        raise _missing("message")

    event.update({
        "username": username,
        "userId": user_id,
        "message": {"text": text},
        "timestamp": _timestamp(platform, raw, schema.CHAT_MESSAGE),
    })
    metadata = _chat_metadata(platform, raw)
    if metadata is not None:
        event["metadata"] = metadata
    return event


def normalize_follow(platform: str, raw: Any) -> Dict[str, Any]:
    raw = _require_dict(raw, "follow")
    event = _base(schema.FOLLOW, platform)
    username, user_id = _identity(platform, raw)
    event.update({
        "username": username,
        "userId": user_id,
        "timestamp": _timestamp(platform, raw, schema.FOLLOW),
    })
    _copy_optional(event, raw, "metadata")
    return event


def _paypiggy_tier(platform: str, raw: Dict) -> str:
    tier = _string_id(raw.get("tier"))
    if tier:
        return tier
    if platform == "youtube":
        return _structured_text(_item(raw).get("headerPrimaryText")) or YOUTUBE_DEFAULT_TIER
    if platform == "tiktok":
        return TIKTOK_SUPERFAN_TIER if raw.get("isSuperfan") else TIKTOK_DEFAULT_TIER
    raise _missing("tier")


def normalize_paypiggy(platform: str, raw: Any) -> Dict[str, Any]:
    """Abonnement / membership / superfan. Sans durée connue : 1er mois."""
    raw = _require_dict(raw, "subscription")
    event = _base(schema.PAYPIGGY, platform)
    username, user_id = _identity(platform, raw)
    item = _item(raw)

    months = _positive_number(_first(
        raw, "months", "cumulative_months", "cumulativeMonths", "duration_months"
    ))
    if months is None and platform == "youtube":
        months = _positive_number(item.get("memberMilestoneDurationInMonths"))

    event.update({
        "username": username,
        "userId": user_id,
        "tier": _paypiggy_tier(platform, raw),
        "months": int(months) if months is not None else 1,
        "timestamp": _timestamp(platform, raw, schema.PAYPIGGY),
    })

    if platform == "youtube":
        message = _structured_text(item.get("headerSubtext")) or extract_youtube_text(item.get("message"))
    else:
        message = _message_text(platform, raw) if raw.get("message") is not None else ""
    if message:
        event["message"] = message
    if raw.get("is_gift") is True or raw.get("isGift") is True:
        event["isGift"] = True
    _copy_optional(event, raw, "metadata")
    return event


def normalize_giftpaypiggy(platform: str, raw: Any) -> Dict[str, Any]:
    raw = _require_dict(raw, "gift subscription")
    event = _base(schema.GIFTPAYPIGGY, platform)
    anonymous = raw.get("is_anonymous") is True or raw.get("isAnonymous") is True
    username, user_id = _identity(platform, raw, anonymous=anonymous)

    count = _positive_number(_first(raw, "giftCount", "total"))
    if count is None and platform == "youtube":
        count = _positive_number(_item(raw).get("giftMembershipsCount"))
    if count is None:
        raise _missing("giftCount")

    event.update({
        "username": None if anonymous else username,
        "userId": user_id,
        "giftCount": int(count),
        "tier": _paypiggy_tier(platform, raw),
        "timestamp": _timestamp(platform, raw, schema.GIFTPAYPIGGY),
    })
    if "is_anonymous" in raw or "isAnonymous" in raw:
        event["isAnonymous"] = anonymous
    cumulative = _first(raw, "cumulative_total", "cumulativeTotal")
    if _positive_number(cumulative) is not None:
        event["cumulativeTotal"] = int(cumulative)
    _copy_optional(event, raw, "metadata")
    return event


def _youtube_purchase(item: Dict) -> Tuple[float, str]:
    """purchase_amount numérique + purchase_currency, ou chaîne affichée ("$5.00")"""
    purchase = item.get("purchase_amount")
    if purchase is None or isinstance(purchase, bool):
        raise _missing("amount")

    if isinstance(purchase, (int, float)):
        amount = _positive_number(purchase)
        if amount is None:
            raise ValueError("Invalid purchase amount")
        currency = _text(item.get("purchase_currency")).upper()
        if not currency:
            raise _missing("currency")
        return amount, currency

    parsed = parse_display_amount(purchase) if isinstance(purchase, str) else None
    if parsed is None or parsed.amount <= 0:
        raise ValueError(f"Invalid purchase amount: {purchase!r}")
    return parsed.amount, parsed.currency


def _youtube_gift_fields(raw: Dict) -> Dict[str, Any]:
    item = _item(raw)
    amount, currency = _youtube_purchase(item)
    sticker = item.get("sticker")
    is_sticker = isinstance(sticker, dict) or bool(item.get("supersticker"))
    fields = {
        "id": _string_id(item.get("id")),
        "giftType": YOUTUBE_SUPER_STICKER if is_sticker else YOUTUBE_SUPER_CHAT,
        "giftCount": 1,
        "amount": amount,
        "currency": currency,
    }
    if is_sticker and isinstance(sticker, dict):
        message = _text(sticker.get("name")) or _text(sticker.get("altText")) or _structured_text(sticker.get("label"))
    else:
        message = extract_youtube_text(item.get("message"))
    if message:
        fields["message"] = message
    return fields


def _twitch_bits_fields(raw: Dict) -> Dict[str, Any]:
    bits = _positive_number(raw.get("bits"))
    if bits is None:
        raise _missing("amount")
    fields = {
        "id": _string_id(_first(raw, "id", "message_id")),
        "giftType": BITS,
        "giftCount": 1,
        "amount": bits,
        "currency": BITS,
    }
    text = _message_text("twitch", raw)
    if text:
        fields["message"] = text
    return fields


def _generic_gift_fields(platform: str, raw: Dict) -> Dict[str, Any]:
    gift_type = _text(_first(raw, "giftType", "giftName"))
    if not gift_type:
        raise _missing("giftType")

    count = _positive_number(_first(raw, "giftCount", "repeatCount"))
    if count is None:
        raise _missing("giftCount")

    amount = _positive_number(raw.get("amount"))
    currency = _text(raw.get("currency"))
    if amount is None and platform == "tiktok":
        unit = _positive_number(raw.get("diamondCount"))
        if unit is not None:
            amount = unit * count
            currency = currency or TIKTOK_COINS
    if amount is None:
        raise _missing("amount")
    if not currency:
        raise _missing("currency")

    fields = {
        "id": _string_id(_first(raw, "id", "msgId")),
        "giftType": gift_type,
        "giftCount": count,
        "amount": amount,
        "currency": currency,
    }
    if isinstance(raw.get("message"), str) and raw["message"].strip():
        fields["message"] = raw["message"].strip()
    return fields


def normalize_gift(platform: str, raw: Any) -> Dict[str, Any]:
    """
    Dons monétaires : cadeaux TikTok, Super Chat/Sticker YouTube, bits Twitch.

    L'id n'est pas requis quand isError est True.
    """
    raw = _require_dict(raw, "gift")
    event = _base(schema.GIFT, platform)
    # Cheer anonyme Twitch : user_id null
    anonymous = raw.get("is_anonymous") is True
    username, user_id = _identity(platform, raw, anonymous=anonymous)

    if platform == "youtube" and _item(raw).get("purchase_amount") is not None:
        fields = _youtube_gift_fields(raw)
    elif platform == "twitch" and raw.get("bits") is not None:
        fields = _twitch_bits_fields(raw)
    else:
        fields = _generic_gift_fields(platform, raw)

    is_error = raw.get("isError") is True
    if not fields["id"]:
        if not is_error:
            raise _missing("id")
        del fields["id"]

    message = fields.pop("message", None)
    event.update({"username": username, "userId": user_id, **fields})
    event["timestamp"] = _timestamp(platform, raw, schema.GIFT)

    repeat_count = _positive_number(raw.get("repeatCount"))
    if repeat_count is not None:
        event["repeatCount"] = int(repeat_count)
    if message:
        event["message"] = message
    if is_error:
        event["isError"] = True
    _copy_optional(event, raw, "sourceType", "metadata")
    return event


def normalize_envelope(platform: str, raw: Any) -> Dict[str, Any]:
    """Coffre TikTok (Treasure Chest) : giftCount 1, montant en pièces"""
    raw = _require_dict(raw, "envelope")
    event = _base(schema.ENVELOPE, platform)
    username, user_id = _identity(platform, raw)

    envelope_id = _string_id(_first(raw, "id", "msgId"))
    if not envelope_id:
        raise _missing("id")
    amount = _non_negative_int(_first(raw, "giftCoins", "amount"))
    if amount is None:
        raise _missing("amount")
    currency = _text(raw.get("currency"))
    if not currency:
        raise _missing("currency")

    event.update({
        "username": username,
        "userId": user_id,
        "id": envelope_id,
        "giftType": TIKTOK_ENVELOPE_GIFT,
        "giftCount": 1,
        "amount": amount,
        "currency": currency,
        "timestamp": _timestamp(platform, raw, schema.ENVELOPE),
    })
    return event


def normalize_raid(platform: str, raw: Any) -> Dict[str, Any]:
    raw = _require_dict(raw, "raid")
    event = _base(schema.RAID, platform)
    username, user_id = _identity(platform, raw)
    viewers = _non_negative_int(_first(raw, "viewerCount", "viewers"))
    if viewers is None:
        raise _missing("viewerCount")
    event.update({
        "username": username,
        "userId": user_id,
        "viewerCount": viewers,
        "timestamp": _timestamp(platform, raw, schema.RAID),
    })
    _copy_optional(event, raw, "metadata")
    return event


def normalize_share(platform: str, raw: Any) -> Dict[str, Any]:
    raw = _require_dict(raw, "share")
    event = _base(schema.SHARE, platform)
    username, user_id = _identity(platform, raw)
    event.update({
        "username": username,
        "userId": user_id,
        "timestamp": _timestamp(platform, raw, schema.SHARE),
    })
    _copy_optional(event, raw, "metadata")
    return event


def normalize_viewer_count(platform: str, raw: Any) -> Dict[str, Any]:
    raw = _require_dict(raw, "viewer count")
    event = _base(schema.VIEWER_COUNT, platform)
    count = _non_negative_int(_first(raw, "count", "viewerCount", "viewer_count"))
    if count is None:
        raise _missing("count")
    event.update({"count": count, "timestamp": _timestamp(platform, raw, schema.VIEWER_COUNT)})
    return event


def normalize_stream_status(platform: str, raw: Any) -> Dict[str, Any]:
    raw = _require_dict(raw, "stream status")
    event = _base(schema.STREAM_STATUS, platform)
    is_live = _first(raw, "isLive", "is_live")
    if not isinstance(is_live, bool):
        raise _missing("isLive")
    event.update({"isLive": is_live, "timestamp": _timestamp(platform, raw, schema.STREAM_STATUS)})
    for key in ("status", "message", "title", "category"):
        if isinstance(raw.get(key), str):
            event[key] = raw[key]
    return event


# ============================================================================
# Dispatch
# ============================================================================

NORMALIZERS: Dict[str, Callable[[str, Any], Dict[str, Any]]] = {
    schema.CHAT_MESSAGE: normalize_chat_message,
    schema.FOLLOW: normalize_follow,
    schema.PAYPIGGY: normalize_paypiggy,
    schema.GIFTPAYPIGGY: normalize_giftpaypiggy,
    schema.GIFT: normalize_gift,
    schema.ENVELOPE: normalize_envelope,
    schema.RAID: normalize_raid,
    schema.SHARE: normalize_share,
    schema.VIEWER_COUNT: normalize_viewer_count,
    schema.STREAM_STATUS: normalize_stream_status,
}


def canonical_type(event_type: str) -> str:
    """"follow" → "platform:follow" (les deux formes sont acceptées)"""
    if event_type and not event_type.startswith("platform:"):
        return f"platform:{event_type}"
    return event_type


def normalize_event(event_type: str, platform: str, raw: Any) -> Optional[Dict[str, Any]]:
    """
    Normalise puis valide un événement brut.

    Ne lève jamais : un événement malformé est loggé puis ignoré (None),
    pour que le pipeline de chat ne s'arrête pas.
    """
    event_type = canonical_type(event_type)
    normalizer = NORMALIZERS.get(event_type)
    if normalizer is None:
        LOGGER.warning(f"⚠️ No normalizer for event type {event_type} ({platform})")
        return None

    try:
        event = normalizer(platform, raw)
    except Exception as e:
        LOGGER.warning(f"⚠️ Dropping malformed {event_type} from {platform}: {e}")
        return None

    result = schema.validate(event)
    if not result["valid"]:
        LOGGER.warning(f"⚠️ Dropping invalid {event_type} from {platform}: {'; '.join(result['errors'])}")
        return None
    return event
