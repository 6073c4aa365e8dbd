#!/usr/bin/env python3
"""Helix Client - Requêtes Helix authentifiées (User Token)

- get_stream() / get_users() / get_channel()
- create / list / delete des subscriptions EventSub

Chaque requête porte `Authorization: Bearer <token>` et `Client-Id`.
Un 401 force un refresh du token puis la requête est rejouée une seule fois.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from core.exceptions import ApiRequestError
from twitchapi.token_refresh import request_with_auth_retry

LOGGER = logging.getLogger(__name__)

HELIX_BASE_URL = "https://api.twitch.tv/helix"


class HelixClient:
    """
    Client Helix au-dessus de httpx.

    Args:
        client_id: Client-Id de l'application
        auth: Objet exposant `ensure_valid_token(force_refresh=False)` (TwitchAuthManager)
        http_client: httpx.AsyncClient partagé (un client par requête sinon)
        timeout: Timeout des requêtes en secondes
    """

    def __init__(self, client_id: str, auth, http_client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 8.0, base_url: str = HELIX_BASE_URL):
        self.client_id = client_id
        self.auth = auth
        self.http_client = http_client
        self.timeout = timeout
        self.base_url = base_url.rstrip("/")
        self.request_count = 0
        self.error_count = 0
        LOGGER.debug(f"HelixClient init (timeout={timeout}s)")

    # ========================================================================
    # Transport
    # ========================================================================

    async def request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
                      json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Requête Helix avec politique 401.

        Raises:
            ApiRequestError: status >= 400 (après le retry 401)
        """
        async def send():
            token = await self.auth.ensure_valid_token()
            return await self._send(method, path, token, params, json)

        return await request_with_auth_retry(send, self.auth.ensure_valid_token)

    async def _send(self, method: str, path: str, token: str, params, json) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {token}", "Client-Id": self.client_id}
        url = f"{self.base_url}{path}"
        self.request_count += 1

        if self.http_client is not None:
            response = await self.http_client.request(method, url, params=params, json=json, headers=headers,
                                                      timeout=self.timeout)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(method, url, params=params, json=json, headers=headers)

        if response.status_code >= 400:
            self.error_count += 1
            try:
                data = response.json()
            except ValueError:
                data = {"message": response.text}
            message = data.get("message") if isinstance(data, dict) else None
            LOGGER.debug(f"[HELIX] {method} {path} → {response.status_code} {message}")
            raise ApiRequestError(
                f"Request failed with status code {response.status_code}: {message or response.reason_phrase}",
                status=response.status_code,
                data=data,
                headers=dict(response.headers),
            )

        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    # ========================================================================
    # Streams / Users / Channels
    # ========================================================================

    async def get_stream(self, user_id: Optional[str] = None, user_login: Optional[str] = None) -> Optional[dict]:
        """Stream actif du broadcaster, None si offline"""
        params = {"user_id": user_id} if user_id else {"user_login": user_login}
        LOGGER.debug(f"[HELIX] get_stream({params})")
        data = await self.request("GET", "/streams", params=params)
        streams = data.get("data") or []
        return streams[0] if streams else None

    async def get_users(self, logins: Optional[List[str]] = None, ids: Optional[List[str]] = None) -> List[dict]:
        params: Dict[str, Any] = {}
        if logins:
            params["login"] = logins
        if ids:
            params["id"] = ids
        data = await self.request("GET", "/users", params=params or None)
        return data.get("data") or []

    async def get_channel(self, broadcaster_id: str) -> Optional[dict]:
        data = await self.request("GET", "/channels", params={"broadcaster_id": broadcaster_id})
        channels = data.get("data") or []
        return channels[0] if channels else None

    # ========================================================================
    # EventSub
    # ========================================================================

    async def create_eventsub_subscription(self, body: Dict[str, Any]) -> Dict[str, Any]:
        data = await self.request("POST", "/eventsub/subscriptions", json=body)
        subscriptions = data.get("data") or []
        return subscriptions[0] if subscriptions else {}

    async def list_eventsub_subscriptions(self, status: Optional[str] = None) -> List[dict]:
        """Toutes les pages de GET /eventsub/subscriptions"""
        results: List[dict] = []
        cursor = None
        while True:
            params: Dict[str, Any] = {}
            if status:
                params["status"] = status
            if cursor:
                params["after"] = cursor
            data = await self.request("GET", "/eventsub/subscriptions", params=params or None)
            results.extend(data.get("data") or [])
            cursor = (data.get("pagination") or {}).get("cursor")
            if not cursor:
                return results

    async def delete_eventsub_subscription(self, subscription_id: str):
        await self.request("DELETE", "/eventsub/subscriptions", params={"id": subscription_id})

    def get_stats(self) -> Dict[str, int]:
        return {"requests": self.request_count, "errors": self.error_count}
