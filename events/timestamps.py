"""
🕐 Timestamps - Extraction du temps source par plateforme

Chaque resolver retourne une string ISO-8601 UTC à la milliseconde
("2024-01-01T00:00:00.000Z") ou None si le champ source est absent/invalide.
Le normaliseur décide ensuite s'il faut substituer l'heure courante.

Magnitudes (TikTok) : < 10^12 → secondes, > 10^15 → microsecondes, sinon ms.
"""
import logging
import math
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

LOGGER = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
SECONDS_THRESHOLD = 10**12
MICROSECONDS_THRESHOLD = 10**15
YOUTUBE_MICROSECONDS_THRESHOLD = 10**13
FRACTION_RE = re.compile(r"\.(\d+)")


def format_iso_ms(epoch_ms: float) -> Optional[str]:
    """Epoch ms → "YYYY-MM-DDTHH:MM:SS.mmmZ" (None hors plage)"""
    try:
        moment = EPOCH + timedelta(milliseconds=int(epoch_ms))
    except (OverflowError, ValueError):
        return None
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def now_iso() -> str:
    return format_iso_ms(int(datetime.now(timezone.utc).timestamp() * 1000))


def parse_iso_ms(value: str) -> Optional[float]:
    """ISO-8601 → epoch ms (une date sans fuseau est considérée UTC)"""
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    # Twitch envoie des nanosecondes : fromisoformat n'accepte que 6 décimales
    text = FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text)
    try:
        moment = datetime.fromisoformat(text)
    except ValueError:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return (moment - EPOCH) / timedelta(milliseconds=1)


def _number(value: Any) -> Optional[float]:
    """Nombre fini (int, float ou string numérique), sinon None"""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


def _parse_input_ms(value: Any) -> Optional[float]:
    """Valeur numérique (ms) ou ISO → epoch ms > 0"""
    number = _number(value)
    if number is not None:
        return number if number > 0 else None
    if isinstance(value, str):
        parsed = parse_iso_ms(value)
        return parsed if parsed is not None and parsed > 0 else None
    return None


# ============================================================================
# TikTok
# ============================================================================

def resolve_tiktok_timestamp_ms(data: Any) -> Optional[float]:
    if not isinstance(data, dict):
        return None

    common = data.get("common") if isinstance(data.get("common"), dict) else {}

    create_time = _number(common.get("createTime"))
    if create_time is not None and create_time > 0:
        if create_time < SECONDS_THRESHOLD:
            return create_time * 1000
        if create_time > MICROSECONDS_THRESHOLD:
            return math.floor(create_time / 1000)
        return create_time

    client_send = _parse_input_ms(common.get("clientSendTime"))
    if client_send is not None:
        return client_send

    return _parse_input_ms(data.get("timestamp"))


def resolve_tiktok_timestamp(data: Any) -> Optional[str]:
    value = resolve_tiktok_timestamp_ms(data)
    return format_iso_ms(value) if value is not None else None


# ============================================================================
# YouTube
# ============================================================================

def resolve_youtube_timestamp(data: Any) -> Optional[str]:
    if not isinstance(data, dict):
        return None
    source = data["item"] if isinstance(data.get("item"), dict) else data

    raw_usec = source.get("timestamp_usec")
    if raw_usec is not None:
        usec = _number(raw_usec)
        if usec is None or usec <= 0:
            return None
        return format_iso_ms(math.floor(usec / 1000))

    raw = source.get("timestamp")
    if raw is None:
        return None
    value = _parse_input_ms(raw)
    if value is None:
        return None
    if value > YOUTUBE_MICROSECONDS_THRESHOLD:
        value = math.floor(value / 1000)
    return format_iso_ms(value)


# ============================================================================
# Twitch
# ============================================================================

def resolve_twitch_timestamp(data: Any) -> Optional[str]:
    """Priorité followed_at > started_at > timestamp (ISO ou ms)"""
    if not isinstance(data, dict):
        return None

    raw = None
    for key in ("followed_at", "started_at", "timestamp"):
        if data.get(key) is not None:
            raw = data[key]
            break
    if raw is None:
        return None

    value = _parse_input_ms(raw)
    return format_iso_ms(value) if value is not None else None


RESOLVERS = {
    "tiktok": resolve_tiktok_timestamp,
    "youtube": resolve_youtube_timestamp,
    "twitch": resolve_twitch_timestamp,
}


def resolve_timestamp(platform: str, data: Any) -> Optional[str]:
    """Dispatch par plateforme ; plateforme inconnue ou erreur → None"""
    resolver = RESOLVERS.get((platform or "").lower())
    if resolver is None:
        LOGGER.warning(f"⚠️ Unsupported platform for timestamp extraction: {platform}")
        return None
    try:
        return resolver(data)
    except Exception as e:
        LOGGER.error(f"❌ Timestamp extraction failed for {platform}: {e}", exc_info=True)
        return None
