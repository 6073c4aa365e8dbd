"""
💬 User-friendly errors - Traduction des erreurs techniques pour le streamer

translate_error() cherche le premier motif (regex, insensible à la casse)
qui correspond au message technique et retourne l'entrée de ERROR_MESSAGES.
Sinon : "Unexpected Problem".
"""
import logging
import re
import sys
from typing import Any, Callable, Dict, Optional

LOGGER = logging.getLogger(__name__)


ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    # Authentification
    "missing_twitch_credentials": {
        "title": "Twitch Setup Required",
        "message": "Your Twitch connection needs to be set up. This is required to use Twitch features.",
        "action": "Please run the setup process to connect your Twitch account.",
        "severity": "error",
        "category": "authentication",
    },
    "twitch_token_expired": {
        "title": "Twitch Connection Expired",
        "message": "Your Twitch connection has expired and needs to be refreshed.",
        "action": "The bot will automatically guide you through refreshing your Twitch connection.",
        "severity": "warning",
        "category": "authentication",
    },
    "invalid_twitch_token": {
        "title": "Twitch Connection Problem",
        "message": "There's an issue with your Twitch connection. This can happen when Twitch updates their security.",
        "action": "Please reconnect your Twitch account to fix this issue.",
        "severity": "error",
        "category": "authentication",
    },
    "oauth_flow_failed": {
        "title": "Account Connection Failed",
        "message": "We couldn't connect to your Twitch account. This might be due to a browser issue or connection problem.",
        "action": "Please try again, or check if your browser is blocking the connection.",
        "severity": "error",
        "category": "authentication",
    },
    # Configuration
    "missing_config_file": {
        "title": "Settings File Missing",
        "message": "The bot's settings file couldn't be found.",
        "action": "Please make sure the settings file exists in the bot's folder.",
        "severity": "error",
        "category": "configuration",
    },
    "invalid_config_format": {
        "title": "Settings File Problem",
        "message": "There's an issue with your settings file format.",
        "action": "Please check your settings file for any typing errors or missing sections.",
        "severity": "error",
        "category": "configuration",
    },
    "missing_required_config": {
        "title": "Setup Incomplete",
        "message": "Some required settings are missing.",
        "action": "Please complete the setup by filling in all required settings in your settings file.",
        "severity": "error",
        "category": "configuration",
    },
    "missing_twitch_username": {
        "title": "Twitch Username Required",
        "message": "Twitch is enabled but the username is missing from your settings.",
        "action": "Add a username under the twitch section or disable Twitch.",
        "severity": "error",
        "category": "configuration",
    },
    "missing_youtube_username": {
        "title": "YouTube Username Required",
        "message": "YouTube is enabled but the username is missing from your settings.",
        "action": "Add a username under the youtube section or disable YouTube.",
        "severity": "error",
        "category": "configuration",
    },
    "missing_tiktok_username": {
        "title": "TikTok Username Required",
        "message": "TikTok is enabled but the username is missing from your settings.",
        "action": "Add a username under the tiktok section or disable TikTok.",
        "severity": "error",
        "category": "configuration",
    },
    "youtube_api_key_missing": {
        "title": "YouTube Setup Required",
        "message": "To connect to YouTube, you need to add your YouTube access key.",
        "action": "Please add your YouTube access key to your settings file, or disable YouTube if you don't need it.",
        "severity": "warning",
        "category": "configuration",
    },
    "tiktok_credentials_missing": {
        "title": "TikTok Setup Required",
        "message": "To connect to TikTok, you need to add your TikTok credentials.",
        "action": "Please add your TikTok access credentials to your settings file, or disable TikTok if you don't need it.",
        "severity": "warning",
        "category": "configuration",
    },
    # Connexion
    "obs_connection_failed": {
        "title": "OBS Connection Problem",
        "message": "The bot cannot connect to OBS Studio. Make sure OBS is running and the connection feature is enabled.",
        "action": "Start OBS Studio and enable the connection server in Tools → Server Settings.",
        "severity": "warning",
        "category": "connection",
    },
    "platform_connection_failed": {
        "title": "Platform Connection Problem",
        "message": "The bot cannot connect to one of the streaming platforms.",
        "action": "Please check your internet connection and platform credentials.",
        "severity": "error",
        "category": "connection",
    },
    "network_error": {
        "title": "Internet Connection Problem",
        "message": "The bot is having trouble connecting to the internet.",
        "action": "Please check your internet connection and try again.",
        "severity": "error",
        "category": "connection",
    },
    # Système
    "permission_denied": {
        "title": "File Access Problem",
        "message": "The bot doesn't have permission to access a required file or folder.",
        "action": "Please make sure the bot has permission to read and write files in its folder.",
        "severity": "error",
        "category": "system",
    },
    "disk_full": {
        "title": "Storage Space Problem",
        "message": "Your computer is running low on storage space.",
        "action": "Please free up some disk space and try again.",
        "severity": "error",
        "category": "system",
    },
    "memory_low": {
        "title": "Memory Problem",
        "message": "Your computer is running low on memory.",
        "action": "Please close some other programs and try again.",
        "severity": "warning",
        "category": "system",
    },
    # Plateformes
    "youtube_connection_timeout": {
        "title": "YouTube Connection Problem",
        "message": "YouTube connection temporarily unavailable. This can happen during high traffic periods.",
        "action": "Please wait a moment and the bot will automatically retry connecting to YouTube.",
        "severity": "warning",
        "category": "connection",
    },
    "tiktok_connection_lost": {
        "title": "TikTok Connection Lost",
        "message": "TikTok connection was interrupted. This is usually temporary.",
        "action": "The bot will automatically attempt to reconnect to TikTok.",
        "severity": "warning",
        "category": "connection",
    },
    "twitch_rate_limit": {
        "title": "Twitch Connection Busy",
        "message": "Twitch is temporarily limiting connections. This protects your account from being overloaded.",
        "action": "Please wait a few minutes. The bot will automatically resume when the limit clears.",
        "severity": "info",
        "category": "connection",
    },
    "streaming_platform_unavailable": {
        "title": "Streaming Platform Unavailable",
        "message": "One of the streaming platforms is currently down for maintenance.",
        "action": "Other platforms will continue working normally. The unavailable platform will reconnect when service resumes.",
        "severity": "info",
        "category": "connection",
    },
    "notification_display_error": {
        "title": "Display Problem",
        "message": "There was an issue showing a notification on screen.",
        "action": "Notifications will continue working. If this happens frequently, please restart the bot.",
        "severity": "warning",
        "category": "system",
    },
    "international_character_error": {
        "title": "Text Display Issue",
        "message": "Some international characters could not be displayed properly.",
        "action": "The message will still be processed, but some characters may appear differently.",
        "severity": "info",
        "category": "system",
    },
}

UNEXPECTED_PROBLEM = {
    "title": "Unexpected Problem",
    "message": "Something unexpected happened. This might be a temporary issue.",
    "action": "Please try again. If the problem continues, check the logs for more details.",
    "severity": "error",
    "category": "unknown",
}


def _compile(*patterns):
    return [re.compile(p, re.IGNORECASE) for p in patterns]


# Ordre significatif : le premier groupe qui matche gagne
TECHNICAL_ERROR_PATTERNS = [
    (_compile(r"Config(uration)? file.*not found", r"Cannot find.*config", r"No such file.*config"), "missing_config_file"),
    (_compile(r"Missing client_?id or client_?secret", r"Missing required config for twitch:.*client_"), "missing_twitch_credentials"),
    (_compile(r"401.*Invalid OAuth token", r"Access token expired", r"Token.*expired", r"Twitch access token has expired"), "twitch_token_expired"),
    (_compile(r"Authentication failed", r"Authentication refresh failed", r"Invalid refresh token", r"Token validation failed"), "invalid_twitch_token"),
    (_compile(r"OAuth flow failed", r"OAuth error", r"Token exchange failed", r"Authorization.*failed"), "oauth_flow_failed"),
    (_compile(r"Invalid configuration format", r"Invalid config format", r"Invalid YAML", r"Failed to load configuration"), "invalid_config_format"),
    (_compile(r"Missing required config(uration)?( for)?:? twitch.*username", r"Missing.*Twitch.*username"), "missing_twitch_username"),
    (_compile(r"Missing required config(uration)?( for)?:? youtube.*username", r"Missing.*YouTube.*username"), "missing_youtube_username"),
    (_compile(r"Missing required config(uration)?( for)?:? tiktok.*username", r"Missing.*TikTok.*username"), "missing_tiktok_username"),
    (_compile(r"Missing required config", r"Required.*section.*missing"), "missing_required_config"),
    (_compile(r"YouTube.*API.*key", r"Missing.*YouTube.*configuration"), "youtube_api_key_missing"),
    (_compile(r"TikTok.*credential", r"Missing.*TikTok.*configuration"), "tiktok_credentials_missing"),
    (_compile(r"Failed to connect to OBS", r"OBS.*connection.*failed"), "obs_connection_failed"),
    (_compile(r"YouTube.*connection.*timeout", r"YouTube.*temporarily unavailable"), "youtube_connection_timeout"),
    (_compile(r"TikTok.*connection.*lost", r"TikTok.*connection.*interrupted", r"TikTok.*connection.*dropped"), "tiktok_connection_lost"),
    (_compile(r"Twitch.*rate.*limit", r"429.*too many requests.*twitch", r"Rate limit exceeded.*twitch"), "twitch_rate_limit"),
    (_compile(r"Failed to connect to platform", r"Platform connection failed", r"Cannot connect.*platform", r"Stream detection unavailable"), "platform_connection_failed"),
    (_compile(r"ECONNREFUSED", r"ECONNRESET", r"ENOTFOUND", r"Connection refused", r"Cannot connect to host", r"Network.*error", r"Connection.*timeout"), "network_error"),
    (_compile(r"EACCES", r"Permission denied", r"Access.*denied"), "permission_denied"),
    (_compile(r"ENOSPC", r"No space left", r"Disk.*full"), "disk_full"),
    (_compile(r"ENOMEM", r"Out of memory", r"MemoryError", r"Memory.*exceeded"), "memory_low"),
    (_compile(r"Platform.*unavailable", r"Streaming.*platform.*down", r"Service.*temporarily.*unavailable", r"Platform.*maintenance"), "streaming_platform_unavailable"),
    (_compile(r"Notification.*display.*error", r"Failed.*to.*show.*notification", r"Display.*queue.*error"), "notification_display_error"),
    (_compile(r"International.*character.*error", r"Unicode.*(encode|decode|encoding).*error", r"Invalid.*UTF-8.*sequence"), "international_character_error"),
]


def translate_error(technical_error: Any, include_technical: bool = False) -> Dict[str, Any]:
    """
    Traduit une erreur technique en message lisible.

    Args:
        technical_error: Exception ou message
        include_technical: Ajoute le message brut dans technicalDetails

    Returns:
        {title, message, action, severity, category, technicalDetails}
    """
    message = str(technical_error)
    if isinstance(technical_error, BaseException) and not message:
        message = type(technical_error).__name__

    friendly = UNEXPECTED_PROBLEM
    for patterns, key in TECHNICAL_ERROR_PATTERNS:
        if any(pattern.search(message) for pattern in patterns):
            friendly = ERROR_MESSAGES[key]
            break

    return {**friendly, "technicalDetails": message if include_technical else None}


def format_error_for_console(friendly: Dict[str, Any], show_technical: bool = False, include_actions: bool = True) -> str:
    labels = {"error": "ERROR", "warning": "WARNING", "info": "INFO"}
    label = labels.get(friendly.get("severity"), "ERROR")
    border = "=" * 80

    lines = ["", border, f"{label}: {friendly['title'].upper()}", border, "", friendly["message"]]
    if include_actions and friendly.get("action"):
        lines += ["", f"What to do: {friendly['action']}"]
    if show_technical and friendly.get("technicalDetails"):
        lines += ["", f"Technical details: {friendly['technicalDetails']}"]
    lines.append(border)
    return "\n".join(lines) + "\n"


def format_error_for_log(friendly: Dict[str, Any]) -> str:
    message = f"{friendly['title']}: {friendly['message']}"
    if friendly.get("action"):
        message += f" | Action: {friendly['action']}"
    if friendly.get("technicalDetails"):
        message += f" | Technical: {friendly['technicalDetails']}"
    return message


def show_user_friendly_error(
    technical_error: Any,
    writer: Optional[Callable[[str], Any]] = None,
    logger: Optional[logging.Logger] = None,
    show_technical: bool = False,
) -> Dict[str, Any]:
    """
    Affiche l'erreur traduite (stderr par défaut) et la journalise.

    Args:
        technical_error: Exception ou message
        writer: Sink console (ex: sys.stdout.write)
        logger: Logger pour la version une ligne (LOGGER du module sinon)
        show_technical: Affiche le message brut sous le message utilisateur

    Returns:
        Le dict traduit
    """
    friendly = translate_error(technical_error, include_technical=True)
    output = format_error_for_console(friendly, show_technical=show_technical)
    (writer or sys.stderr.write)(output)

    log = logger or LOGGER
    line = format_error_for_log(friendly)
    if friendly["severity"] == "error":
        log.error(f"❌ {line}")
    elif friendly["severity"] == "warning":
        log.warning(f"⚠️ {line}")
    else:
        log.info(line)
    return friendly
