"""
🔎 Error Classifier - Catégorisation des erreurs plateformes

Fonctions pures : prend une erreur (exception, dict ou string) et retourne
sa catégorie (authentication, network, api, http_auth, unknown) et si un
refresh de token a une chance de la corriger.
"""
import asyncio
import json
import logging
from typing import Any, Dict, Optional

import aiohttp
import httpx

from core.exceptions import ApiRequestError

LOGGER = logging.getLogger(__name__)


ERROR_PATTERNS = {
    "AUTH": [
        "token validation failed", "invalid oauth token", "token expired",
        "unauthorized", "invalid_token", "401 unauthorized",
    ],
    "NETWORK": [
        "econnrefused", "etimedout", "enotfound", "network error",
        "connection refused", "timeout",
    ],
    "API": [
        "invalid api response", "missing user_id or login",
        "request failed with status code",
    ],
    "TWITCH_REFRESH": [
        "Invalid refresh token", "invalid_grant", "Token has been revoked",
        "Bad Request", "50 valid access tokens",
    ],
}

UNAUTHORIZED_MARKERS = ("401", "Unauthorized", "Client ID and OAuth token do not match")


def _matches(message: str, patterns) -> bool:
    lower = message.lower()
    return any(pattern.lower() in lower for pattern in patterns)


def error_code(error: Any) -> Optional[str]:
    """Code réseau façon errno (ECONNREFUSED, ETIMEDOUT, ...) si identifiable."""
    if isinstance(error, dict):
        code = error.get("code")
        return str(code) if code is not None else None
    code = getattr(error, "code", None)
    if isinstance(code, str):
        return code
    if isinstance(error, ConnectionRefusedError):
        return "ECONNREFUSED"
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return "ETIMEDOUT"
    if isinstance(error, (aiohttp.ClientConnectorError, httpx.ConnectError)):
        return "ECONNREFUSED"
    return None


def error_details(error: Any) -> Dict[str, Any]:
    """
    Extrait status / data / headers d'une erreur HTTP, quelle que soit sa source.

    Supporte ApiRequestError, aiohttp.ClientResponseError, httpx.HTTPStatusError
    et les dicts {"status", "data", "headers"} (ou {"response": {...}}).
    """
    status = None
    data: Any = None
    headers: Dict[str, str] = {}

    if isinstance(error, ApiRequestError):
        status, data, headers = error.status, error.data, dict(error.headers)
    elif isinstance(error, aiohttp.ClientResponseError):
        status = error.status
        headers = dict(error.headers or {})
        data = {"message": error.message} if error.message else None
    elif isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        headers = dict(error.response.headers)
        try:
            data = error.response.json()
        except ValueError:
            data = {"message": error.response.text} if error.response.text else None
    elif isinstance(error, dict):
        response = error.get("response") if isinstance(error.get("response"), dict) else error
        status = response.get("status")
        data = response.get("data")
        headers = dict(response.get("headers") or {})

    return {"status": status, "data": data if data is not None else {}, "headers": headers}


def extract_error_message(error: Any) -> str:
    """
    Message lisible pour n'importe quelle valeur d'erreur.

    Priorité : string > message > error.message > errors[0].message >
    code > status > JSON tronqué à 200 caractères.
    """
    if error is None or error == "":
        return "Unknown error"
    if isinstance(error, str):
        return error
    if isinstance(error, BaseException):
        message = str(error)
        return message if message else type(error).__name__

    if isinstance(error, dict):
        if error.get("message"):
            return str(error["message"])
        nested = error.get("error")
        if isinstance(nested, dict) and nested.get("message"):
            return str(nested["message"])
        errors = error.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict) and errors[0].get("message"):
            return str(errors[0]["message"])
        if error.get("code"):
            return f"Error code: {error['code']}"
        if error.get("status"):
            return f"HTTP {error['status']}"

    try:
        text = json.dumps(error, default=str)
    except (TypeError, ValueError):
        return str(error) or "Unknown error object"
    if len(text) > 200:
        return text[:200] + "..."
    return text


def analyze_error(error: Any) -> Dict[str, Any]:
    """
    Classe une erreur.

    Returns:
        {message, statusCode, category, isAuthError, isNetworkError,
         isApiError, isRefreshable}
    """
    category = "unknown"
    status = None

    if error is not None and not isinstance(error, str):
        details = error_details(error)
        status = details["status"]
        data = details["data"] if isinstance(details["data"], dict) else {}
        message = data.get("message") or extract_error_message(error)
        if status == 401 and isinstance(error, (aiohttp.ClientResponseError, httpx.HTTPStatusError)):
            category = "http_auth"
    else:
        message = str(error or "")

    is_auth = _matches(message, ERROR_PATTERNS["AUTH"])
    is_network = _matches(message, ERROR_PATTERNS["NETWORK"])
    is_api = _matches(message, ERROR_PATTERNS["API"])

    if is_auth:
        category = "authentication"
    elif is_network:
        category = "network"
    elif is_api:
        category = "api"

    return {
        "message": message,
        "statusCode": status,
        "category": category,
        "isAuthError": is_auth,
        "isNetworkError": is_network,
        "isApiError": is_api,
        "isRefreshable": is_auth or is_network or is_api or status in (401, 403),
    }


def is_refreshable_error(error: Any) -> bool:
    return analyze_error(error)["isRefreshable"]


def is_unauthorized_error(error: Any) -> bool:
    """True si l'erreur ressemble à un refus d'accès (401, mauvais client id)."""
    if error_details(error)["status"] == 401:
        return True
    message = extract_error_message(error)
    return any(marker in message for marker in UNAUTHORIZED_MARKERS)
