"""
🔐 OAuth Handler - Authorization code flow Twitch (callback HTTPS loopback)

Flow :
1. Sonde un port libre à partir du port configuré (3000 → 3010)
2. Démarre un serveur aiohttp HTTPS (certificat auto-signé, gardé en mémoire)
3. Ouvre le navigateur sur l'URL d'autorisation (sauf TWITCH_DISABLE_AUTH=true)
4. /callback?code=... → échange du code (httpx) → persistance via TokenStore
5. Le serveur est fermé une seule fois, quel que soit le résultat

run_oauth_flow() retourne les tokens, ou None si quelque chose échoue
après le démarrage du serveur.
"""
import asyncio
import datetime
import errno
import logging
import os
import socket
import ssl
import tempfile
import time
import webbrowser
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx
from aiohttp import web
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
from twitchAPI.helper import build_scope
from twitchAPI.type import AuthScope

from core.exceptions import OAuthFlowError
from core.timer_registry import TimerRegistry
from twitchapi.token_store import TokenStore

LOGGER = logging.getLogger(__name__)

AUTHORIZE_URL = "https://id.twitch.tv/oauth2/authorize"
TOKEN_URL = "https://id.twitch.tv/oauth2/token"

DEFAULT_PORT = 3000
PORT_RANGE = 10
OAUTH_TIMEOUT_MS = 5 * 60 * 1000
CERT_DAYS = 365
KEY_SIZE = 2048

REQUIRED_SCOPES: List[AuthScope] = [
    AuthScope.USER_READ_CHAT,
    AuthScope.CHAT_EDIT,
    AuthScope.CHANNEL_READ_SUBSCRIPTIONS,
    AuthScope.BITS_READ,
    AuthScope.CHANNEL_READ_REDEMPTIONS,
    AuthScope.MODERATOR_READ_FOLLOWERS,
]

PAGE_TEMPLATE = (
    "<html><body style=\"font-family: Arial, sans-serif; text-align: center; padding: 50px;\">"
    "<h1 style=\"color: {color};\">{title}</h1>{body}</body></html>"
)


def _page(title: str, body: str, color: str = "#FF0000") -> str:
    return PAGE_TEMPLATE.format(title=title, body=body, color=color)


def _base36(number: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if number == 0:
        return "0"
    out = []
    while number:
        number, rem = divmod(number, 36)
        out.append(digits[rem])
    return "".join(reversed(out))


def _browser_disabled() -> bool:
    return os.environ.get("TWITCH_DISABLE_AUTH", "").strip().lower() == "true"


class OAuthHandler:
    """Authorization code flow avec serveur de callback HTTPS local"""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        token_store: Optional[TokenStore] = None,
        port: int = DEFAULT_PORT,
        scopes: Optional[List[AuthScope]] = None,
        auto_find_port: bool = True,
        skip_browser_open: bool = False,
        timers: Optional[TimerRegistry] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout_ms: int = OAUTH_TIMEOUT_MS,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_store = token_store
        self.port = port
        self.start_port = port
        self.scopes = scopes or list(REQUIRED_SCOPES)
        self.auto_find_port = auto_find_port
        self.skip_browser_open = skip_browser_open
        self.timers = timers or TimerRegistry(platform="oauth")
        self.http_client = http_client
        self.timeout_ms = timeout_ms

        self._ssl_context: Optional[ssl.SSLContext] = None
        self._runner: Optional[web.AppRunner] = None
        self._result: Optional[asyncio.Future] = None
        self._closed_count = 0

    @property
    def redirect_uri(self) -> str:
        return f"https://localhost:{self.port}"

    # ========================================================================
    # Port & certificat
    # ========================================================================

    async def find_available_port(self, start_port: Optional[int] = None) -> int:
        """Premier port libre dans [start, start + PORT_RANGE]"""
        start = start_port or self.start_port
        end = start + PORT_RANGE
        for port in range(start, end + 1):
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
                try:
                    sock.bind(("127.0.0.1", port))
                except OSError as e:
                    if e.errno == errno.EADDRINUSE:
                        LOGGER.debug(f"Port {port} occupé, essai suivant")
                        continue
                    raise
                return port
        raise OAuthFlowError(f"No available ports found in range {start}-{end}")

    def generate_self_signed_cert(self) -> ssl.SSLContext:
        """Certificat localhost auto-signé, mis en cache (jamais persisté)"""
        if self._ssl_context is not None:
            return self._ssl_context

        key = rsa.generate_private_key(public_exponent=65537, key_size=KEY_SIZE)
        subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "localhost")])
        now = datetime.datetime.now(datetime.timezone.utc)
        cert = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(subject)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - datetime.timedelta(minutes=1))
            .not_valid_after(now + datetime.timedelta(days=CERT_DAYS))
            .add_extension(x509.SubjectAlternativeName([x509.DNSName("localhost")]), critical=False)
            .sign(key, hashes.SHA256())
        )

        cert_pem = cert.public_bytes(serialization.Encoding.PEM)
        key_pem = key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.TraditionalOpenSSL,
            serialization.NoEncryption(),
        )

        context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
        # load_cert_chain n'accepte que des chemins : fichiers temporaires supprimés aussitôt
        with tempfile.TemporaryDirectory() as tmp:
            cert_path = os.path.join(tmp, "cert.pem")
            key_path = os.path.join(tmp, "key.pem")
            with open(cert_path, "wb") as f:
                f.write(cert_pem)
            with open(key_path, "wb") as f:
                f.write(key_pem)
            context.load_cert_chain(cert_path, key_path)

        self._ssl_context = context
        LOGGER.info("🔒 Certificat auto-signé généré pour le callback OAuth")
        return context

    # ========================================================================
    # URL & serveur
    # ========================================================================

    def generate_auth_url(self) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": build_scope(self.scopes),
            "state": "cb_" + _base36(int(time.time() * 1000)),
        }
        return f"{AUTHORIZE_URL}?{urlencode(params)}"

    async def start_callback_server(self) -> asyncio.Future:
        """
        Démarre le serveur HTTPS de callback.

        Returns:
            Future résolue avec les tokens (ou en erreur OAuthFlowError)
        """
        if self.auto_find_port:
            self.port = await self.find_available_port(self.port)

        loop = asyncio.get_running_loop()
        self._result = loop.create_future()
        self._closed_count = 0

        app = web.Application()
        app.router.add_get("/", self._handle_callback)
        app.router.add_get("/callback", self._handle_callback)

        self._runner = web.AppRunner(app, access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, "localhost", self.port, ssl_context=self.generate_self_signed_cert())
        try:
            await site.start()
        except OSError as e:
            await self.close_server()
            raise OAuthFlowError(f"Failed to start callback server: {e}") from e

        LOGGER.info(f"🚀 OAuth callback server started on port {self.port}")

        self.timers.create_timeout(
            "oauth:timeout", self._on_timeout, self.timeout_ms, timer_type="oauth"
        )
        return self._result

    def _settle(self, tokens: Optional[Dict[str, Any]] = None, error: Optional[Exception] = None):
        if self._result is None or self._result.done():
            return
        if error is not None:
            self._result.set_exception(error)
        else:
            self._result.set_result(tokens)

    def _on_timeout(self):
        minutes = self.timeout_ms / 60000
        LOGGER.warning(f"⏱️ OAuth flow timed out after {minutes:g} minutes")
        self._settle(error=OAuthFlowError(f"OAuth flow timed out after {minutes:g} minutes"))

    async def _handle_callback(self, request: web.Request) -> web.Response:
        query = request.query
        try:
            if query.get("code"):
                LOGGER.info("🔄 Received authorization code, exchanging for tokens...")
                tokens = await self.exchange_code_for_tokens(query["code"])
                self._settle(tokens=tokens)
                return web.Response(
                    status=200,
                    content_type="text/html",
                    text=_page(
                        "Authentication Successful!",
                        "<p>Your Twitch tokens have been obtained and saved.</p>"
                        "<p style=\"color: #666;\">You can close this window and return to your terminal.</p>",
                        color="#9146FF",
                    ),
                )

            if query.get("error"):
                error = query["error"]
                description = query.get("error_description") or "Unknown error"
                LOGGER.error(f"❌ OAuth error: {error}")
                self._settle(error=OAuthFlowError(f"OAuth error: {error} - {description}"))
                return web.Response(
                    status=400,
                    content_type="text/html",
                    text=_page(
                        "Authentication Failed",
                        f"<p>Error: {error}</p><p>{query.get('error_description') or 'Unknown error occurred'}</p>"
                        "<p>Please try again or check your configuration.</p>",
                    ),
                )

            self._settle(error=OAuthFlowError("Invalid callback - no authorization code received"))
            return web.Response(
                status=400,
                content_type="text/html",
                text=_page(
                    "Invalid Callback",
                    "<p>No authorization code received.</p><p>Please try the authentication process again.</p>",
                ),
            )
        except Exception as e:
            LOGGER.error(f"❌ Error handling OAuth callback: {e}", exc_info=True)
            self._settle(error=e)
            return web.Response(
                status=500,
                content_type="text/html",
                text=_page(
                    "Server Error",
                    "<p>An error occurred while processing your authentication.</p>"
                    "<p>Please try again or check the terminal for details.</p>",
                ),
            )

    async def close_server(self):
        """Ferme le serveur (idempotent)"""
        self.timers.clear_timeout("oauth:timeout", reason="closed")
        runner, self._runner = self._runner, None
        if runner is None:
            return
        self._closed_count += 1
        try:
            await runner.cleanup()
            LOGGER.info("🛑 OAuth callback server closed")
        except Exception as e:
            LOGGER.warning(f"⚠️ Error closing OAuth callback server: {e}")

    # ========================================================================
    # Échange & persistance
    # ========================================================================

    async def exchange_code_for_tokens(self, code: str) -> Dict[str, Any]:
        """POST /oauth2/token (grant_type=authorization_code)"""
        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": self.redirect_uri,
        }
        try:
            if self.http_client is not None:
                response = await self.http_client.post(TOKEN_URL, data=data)
            else:
                async with httpx.AsyncClient(timeout=10) as client:
                    response = await client.post(TOKEN_URL, data=data)
        except httpx.HTTPError as e:
            LOGGER.error(f"❌ Token exchange request failed: {e}")
            raise OAuthFlowError(f"Token exchange request failed: {e}") from e

        try:
            payload = response.json()
        except ValueError as e:
            raise OAuthFlowError(f"Failed to parse token response: {e}") from e

        if not isinstance(payload, dict) or not payload.get("access_token") or not payload.get("refresh_token"):
            error = payload.get("error") if isinstance(payload, dict) else None
            LOGGER.error(f"❌ Invalid token response (HTTP {response.status_code})")
            raise OAuthFlowError(f"Token exchange failed: {error or 'Unknown error'}")

        LOGGER.info("✅ Successfully exchanged code for tokens")
        return payload

    async def persist_tokens(self, tokens: Dict[str, Any]):
        if self.token_store is None:
            raise OAuthFlowError("token store is required to persist OAuth tokens")
        expires_in = tokens.get("expires_in")
        expires_at = int(time.time() * 1000 + expires_in * 1000) if isinstance(expires_in, (int, float)) else None
        await self.token_store.save_tokens(tokens["access_token"], tokens.get("refresh_token"), expires_at)
        LOGGER.info("✅ Token store updated with new OAuth tokens")

    # ========================================================================
    # Navigateur & instructions
    # ========================================================================

    def open_browser(self, url: str):
        if _browser_disabled() or self.skip_browser_open:
            LOGGER.info("Skipping automatic browser opening")
            LOGGER.info("Please copy the authorization URL manually if you still need to authenticate.")
            return
        try:
            if not webbrowser.open(url):
                LOGGER.warning("⚠️ Failed to open browser automatically")
        except webbrowser.Error as e:
            LOGGER.warning(f"⚠️ Failed to open browser automatically: {e}")

    def display_instructions(self, auth_url: str):
        border = "=" * 80
        lines = [
            border,
            "TWITCH AUTHENTICATION REQUIRED",
            border,
            "Your browser should open automatically to complete authentication.",
            "If it doesn't open automatically, please copy and paste this URL:",
            "",
            auth_url,
            "",
            "REQUIRED PERMISSIONS:",
            *[f"   - {scope.value}" for scope in self.scopes],
            border,
            "WAITING FOR AUTHENTICATION...",
            border,
        ]
        for line in lines:
            LOGGER.info(line)
        self.open_browser(auth_url)

    # ========================================================================
    # Flow complet
    # ========================================================================

    async def run_oauth_flow(self) -> Optional[Dict[str, Any]]:
        """Flow complet ; None en cas d'échec (jamais d'exception)"""
        try:
            result = await self.start_callback_server()
        except Exception as e:
            LOGGER.error(f"❌ OAuth flow failed: {e}")
            return None

        try:
            self.display_instructions(self.generate_auth_url())
            tokens = await result
            await self.persist_tokens(tokens)
            return tokens
        except Exception as e:
            LOGGER.error(f"❌ OAuth flow failed: {e}")
            return None
        finally:
            await self.close_server()

    async def cleanup(self):
        self._settle(error=OAuthFlowError("OAuth handler cleaned up"))
        await self.close_server()
