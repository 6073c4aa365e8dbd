"""
⚙️ Configuration - Chargement YAML et dataclasses typées

config/config.yaml → CoreConfig (twitch / youtube / tiktok / retry).
Les secrets Twitch peuvent venir de l'environnement (TWITCH_CLIENT_ID,
TWITCH_CLIENT_SECRET), qui prend le pas sur le YAML.
"""
import logging
import os
import pathlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

from core.exceptions import ConfigurationError

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config/config.yaml"


def load_config(config_path: str = DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """Charge config.yaml (ConfigurationError si absent ou invalide)"""
    config_file = pathlib.Path(config_path)
    if not config_file.exists():
        raise ConfigurationError(f"Config file {config_path} not found")

    try:
        with open(config_file, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Invalid config format in {config_path}: expected a mapping")
    return data


def _as_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class RetryConfig:
    """Backoff adaptatif (delay = min(base * multiplier^n, max))"""
    base_delay_ms: int = 2000
    max_delay_ms: int = 60000
    backoff_multiplier: float = 1.3
    max_attempts: Optional[int] = None  # None / <= 0 → illimité

    @classmethod
    def from_yaml(cls, section: Optional[dict]) -> "RetryConfig":
        section = section or {}
        return cls(
            base_delay_ms=section.get("base_delay_ms", 2000),
            max_delay_ms=section.get("max_delay_ms", 60000),
            backoff_multiplier=section.get("backoff_multiplier", 1.3),
            max_attempts=section.get("max_attempts"),
        )


@dataclass
class TwitchConfig:
    enabled: bool = False
    username: str = ""
    client_id: str = ""
    client_secret: str = ""
    broadcaster_id: str = ""
    token_store_path: str = "data/tokens.json"
    oauth_port: int = 3000
    eventsub_subscriptions: List[str] = field(default_factory=list)
    max_reconnect_attempts: int = 10
    reconnect_delay_ms: int = 5000
    welcome_timeout_s: float = 10.0
    stream_poll_interval_s: float = 60.0

    @classmethod
    def from_yaml(cls, section: Optional[dict]) -> "TwitchConfig":
        section = section or {}
        return cls(
            enabled=_as_bool(section.get("enabled"), False),
            username=section.get("username") or "",
            client_id=os.environ.get("TWITCH_CLIENT_ID") or section.get("client_id") or "",
            client_secret=os.environ.get("TWITCH_CLIENT_SECRET") or section.get("client_secret") or "",
            broadcaster_id=str(section.get("broadcaster_id") or ""),
            token_store_path=section.get("token_store_path", "data/tokens.json"),
            oauth_port=int(section.get("oauth_port", 3000)),
            eventsub_subscriptions=list(section.get("eventsub_subscriptions") or []),
            max_reconnect_attempts=int(section.get("max_reconnect_attempts", 10)),
            reconnect_delay_ms=int(section.get("reconnect_delay_ms", 5000)),
            welcome_timeout_s=float(section.get("welcome_timeout_s", 10.0)),
            stream_poll_interval_s=float(section.get("stream_poll_interval_s", 60.0)),
        )


@dataclass
class YouTubeConfig:
    enabled: bool = False
    username: str = ""
    enable_api: bool = False
    api_key: str = ""
    stream_detection_method: str = "youtubei"
    viewer_count_method: str = "youtubei"

    @classmethod
    def from_yaml(cls, section: Optional[dict]) -> "YouTubeConfig":
        section = section or {}
        return cls(
            enabled=_as_bool(section.get("enabled"), False),
            username=section.get("username") or "",
            enable_api=_as_bool(section.get("enable_api"), False),
            api_key=os.environ.get("YOUTUBE_API_KEY") or section.get("api_key") or "",
            stream_detection_method=section.get("stream_detection_method", "youtubei"),
            viewer_count_method=section.get("viewer_count_method", "youtubei"),
        )


@dataclass
class TikTokConfig:
    enabled: bool = False
    username: str = ""

    @classmethod
    def from_yaml(cls, section: Optional[dict]) -> "TikTokConfig":
        section = section or {}
        return cls(
            enabled=_as_bool(section.get("enabled"), False),
            username=section.get("username") or "",
        )


@dataclass
class CoreConfig:
    """Configuration complète du core de connexion."""
    twitch: TwitchConfig = field(default_factory=TwitchConfig)
    youtube: YouTubeConfig = field(default_factory=YouTubeConfig)
    tiktok: TikTokConfig = field(default_factory=TikTokConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    background_init_timeout_s: float = 30.0

    @classmethod
    def from_yaml(cls, yaml_config: dict) -> "CoreConfig":
        """Construit la config depuis le dict YAML."""
        if not isinstance(yaml_config, dict):
            raise ConfigurationError("Invalid config format: expected a mapping")

        config = cls(
            twitch=TwitchConfig.from_yaml(yaml_config.get("twitch")),
            youtube=YouTubeConfig.from_yaml(yaml_config.get("youtube")),
            tiktok=TikTokConfig.from_yaml(yaml_config.get("tiktok")),
            retry=RetryConfig.from_yaml(yaml_config.get("retry")),
            background_init_timeout_s=float(yaml_config.get("background_init_timeout_s", 30.0)),
        )
        config.validate()
        return config

    def validate(self):
        """Vérifie les champs obligatoires des plateformes activées."""
        if self.twitch.enabled:
            missing = [
                name for name in ("username", "client_id", "client_secret")
                if not getattr(self.twitch, name)
            ]
            if missing:
                raise ConfigurationError(f"Missing required config for twitch: {', '.join(missing)}")
        if self.tiktok.enabled and not self.tiktok.username:
            raise ConfigurationError("Missing required config for tiktok: username")

    def platforms(self) -> Dict[str, Any]:
        """Sections plateformes indexées par nom"""
        return {"twitch": self.twitch, "youtube": self.youtube, "tiktok": self.tiktok}

    @property
    def test_mode(self) -> bool:
        return _as_bool(os.environ.get("TWITCH_DISABLE_AUTH"), False)
