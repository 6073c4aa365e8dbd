"""
Tests du TwitchAuthManager (twitchapi/auth_manager.py)
Chargement depuis le store, validation, refresh sur 401, OAuth manquant
"""
import time
from unittest.mock import AsyncMock, Mock

import httpx
import pytest

from core.exceptions import AuthenticationError, TokenRefreshError
from twitchapi.auth_manager import AuthManagerState, TwitchAuthManager
from twitchapi.token_refresh import REFRESH_TIMER_NAME, TokenRefreshEngine
from twitchapi.token_store import TokenStore

from conftest import FakeTokenResponse, FakeTokenSession, httpx_router

VALID_SCOPES = ["user:read:chat", "chat:edit", "moderator:read:followers"]


def _validate_ok(scopes=None):
    return httpx.Response(200, json={
        "client_id": "cid",
        "login": "streamer",
        "user_id": "1001",
        "scopes": scopes if scopes is not None else VALID_SCOPES,
        "expires_in": 14000,
    })


def _refresh_session(*responses):
    return FakeTokenSession(list(responses) or [
        FakeTokenResponse(200, {"access_token": "A2", "refresh_token": "R2", "expires_in": 14400}),
    ])


async def _stored(twitch_config, access="A1", refresh="R1"):
    store = TokenStore(twitch_config.token_store_path)
    await store.save_tokens(access, refresh, int(time.time() * 1000) + 3_600_000)
    return store


@pytest.mark.unit
class TestInitialize:

    @pytest.mark.asyncio
    async def test_loads_and_validates_stored_tokens(self, twitch_config, timers):
        """Tokens du store + validation OK → READY, refresh planifié"""
        store = await _stored(twitch_config)
        client = httpx_router({("GET", "/oauth2/validate"): [_validate_ok()]})
        manager = TwitchAuthManager(
            twitch_config, token_store=store, timers=timers, http_client=client,
            refresh_engine=TokenRefreshEngine("cid", "secret", session=_refresh_session(), timers=timers),
        )

        assert await manager.initialize() is True
        assert manager.state is AuthManagerState.READY
        assert manager.user_id == "1001"
        assert manager.login == "streamer"
        assert "user:read:chat" in manager.scopes
        assert timers.has_interval(REFRESH_TIMER_NAME)
        assert await manager.ensure_valid_token() == "A1"

        await manager.cleanup()
        await client.aclose()

    @pytest.mark.asyncio
    async def test_expired_token_is_refreshed_on_401(self, twitch_config, timers):
        """Validation 401 → refresh → seconde validation OK, tokens persistés"""
        store = await _stored(twitch_config)
        calls = []
        client = httpx_router({("GET", "/oauth2/validate"): [httpx.Response(401, json={"status": 401}), _validate_ok()]},
                              calls=calls)
        session = _refresh_session()
        manager = TwitchAuthManager(
            twitch_config, token_store=store, timers=timers, http_client=client,
            refresh_engine=TokenRefreshEngine("cid", "secret", session=session, timers=timers),
        )

        await manager.initialize()
        assert manager.access_token == "A2"
        assert len(calls) == 2
        assert calls[1].headers["authorization"] == "OAuth A2"
        assert session.calls[0][1]["refresh_token"] == "R1"

        record = await store.load_tokens()
        assert record.access_token == "A2"
        assert record.refresh_token == "R2"

        await manager.cleanup()
        await client.aclose()

    @pytest.mark.asyncio
    async def test_missing_critical_scopes(self, twitch_config, timers):
        store = await _stored(twitch_config)
        client = httpx_router({("GET", "/oauth2/validate"): [_validate_ok(scopes=["moderator:read:followers"])]})
        manager = TwitchAuthManager(twitch_config, token_store=store, timers=timers, http_client=client)

        with pytest.raises(AuthenticationError, match="Missing required scopes"):
            await manager.initialize()
        assert manager.state is AuthManagerState.ERROR
        await client.aclose()

    @pytest.mark.asyncio
    async def test_oauth_not_completed_requires_authentication(self, twitch_config, timers):
        """Pas de tokens et OAuth abandonné → authentication-required + erreur"""
        events = []
        oauth = Mock()
        oauth.run_oauth_flow = AsyncMock(return_value=None)
        manager = TwitchAuthManager(
            twitch_config,
            token_store=TokenStore(twitch_config.token_store_path),
            oauth_handler=oauth,
            timers=timers,
            on_event=lambda name, payload: events.append((name, payload)),
        )

        with pytest.raises(AuthenticationError, match="OAuth flow did not complete"):
            await manager.initialize()
        assert events == [("authentication-required", {"reason": "OAuth flow did not complete", "tokenType": "access"})]

    @pytest.mark.asyncio
    async def test_oauth_tokens_are_used(self, twitch_config, timers):
        oauth = Mock()
        oauth.run_oauth_flow = AsyncMock(return_value={"access_token": "OA", "refresh_token": "OR", "expires_in": 14400})
        oauth.cleanup = AsyncMock()
        client = httpx_router({("GET", "/oauth2/validate"): [_validate_ok()]})
        manager = TwitchAuthManager(
            twitch_config,
            token_store=TokenStore(twitch_config.token_store_path),
            oauth_handler=oauth,
            timers=timers,
            http_client=client,
        )

        await manager.initialize()
        assert manager.access_token == "OA"
        assert manager.refresh_token == "OR"
        await manager.cleanup()
        await client.aclose()


@pytest.mark.unit
class TestEnsureValidToken:

    @pytest.mark.asyncio
    async def test_not_ready(self, twitch_config, timers):
        manager = TwitchAuthManager(twitch_config, timers=timers)
        with pytest.raises(AuthenticationError):
            await manager.ensure_valid_token()

    @pytest.mark.asyncio
    async def test_forced_refresh_rotates_tokens(self, twitch_config, timers):
        store = await _stored(twitch_config)
        client = httpx_router({("GET", "/oauth2/validate"): [_validate_ok()]})
        manager = TwitchAuthManager(
            twitch_config, token_store=store, timers=timers, http_client=client,
            refresh_engine=TokenRefreshEngine("cid", "secret", session=_refresh_session(), timers=timers),
        )
        await manager.initialize()

        assert await manager.ensure_valid_token(force_refresh=True) == "A2"
        assert (await store.load_tokens()).access_token == "A2"
        await manager.cleanup()
        await client.aclose()

    @pytest.mark.asyncio
    async def test_terminal_refresh_failure(self, twitch_config, timers):
        """invalid_grant → TokenRefreshError + authentication-required (refresh)"""
        store = await _stored(twitch_config)
        events = []
        client = httpx_router({("GET", "/oauth2/validate"): [_validate_ok()]})
        session = _refresh_session(FakeTokenResponse(400, {"error": "invalid_grant", "message": "Invalid refresh token"}))
        manager = TwitchAuthManager(
            twitch_config, token_store=store, timers=timers, http_client=client,
            refresh_engine=TokenRefreshEngine("cid", "secret", session=session, timers=timers),
            on_event=lambda name, payload: events.append((name, payload)),
        )
        await manager.initialize()

        with pytest.raises(TokenRefreshError) as excinfo:
            await manager.ensure_valid_token(force_refresh=True)
        assert excinfo.value.analysis["category"] == "invalid_refresh_token"
        assert ("authentication-required", {"reason": "invalid_refresh_token", "tokenType": "refresh"}) in events
        assert len(session.calls) == 1

        await manager.cleanup()
        await client.aclose()

    @pytest.mark.asyncio
    async def test_status_snapshot(self, twitch_config, timers):
        manager = TwitchAuthManager(twitch_config, timers=timers)
        status = manager.get_status()
        assert status["state"] == "UNINITIALIZED"
        assert status["has_access_token"] is False
        assert status["auth_state"]["state"] == "READY"
