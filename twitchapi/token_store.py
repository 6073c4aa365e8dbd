"""
🔑 Token Store - Persistance atomique des tokens OAuth

Fichier JSON par namespace de plateforme :
    { "twitch": { "accessToken": ..., "refreshToken": ..., "expiresAt": <ms>, "updatedAt": <ISO> } }

Écriture : <path>.tmp puis rename (atomique). Dossier 0700, fichier 0600 (POSIX).
"""
import json
import logging
import math
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from core.exceptions import TokenStoreError
from events.timestamps import now_iso

LOGGER = logging.getLogger(__name__)

DIR_MODE = 0o700
FILE_MODE = 0o600


@dataclass
class TokenRecord:
    """Tokens persistés d'une plateforme"""
    access_token: Optional[str]
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None    # epoch ms
    updated_at: Optional[str] = None

    def as_tuple(self):
        return self.access_token, self.refresh_token, self.expires_at


def _is_posix() -> bool:
    return os.name == "posix"


class TokenStore:
    """
    Store de tokens sur disque.

    Une erreur de parsing est distincte d'un fichier absent :
    absent → None, illisible → TokenStoreError("Invalid token store file: <path>").
    """

    def __init__(self, path: str, platform: str = "twitch"):
        if not path:
            raise TokenStoreError("token store path is required for token persistence")
        self.path = Path(path)
        self.platform = platform
        self.degraded = False   # access token persisté sans refresh token

    # ========================================================================
    # Fichier
    # ========================================================================

    def _chmod(self, target: Path, mode: int, label: str):
        if not _is_posix():
            return
        try:
            os.chmod(target, mode)
        except OSError as e:
            LOGGER.warning(f"⚠️ Failed to set {label} permissions on {target}: {e}")

    def _ensure_directory(self):
        directory = self.path.parent
        directory.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
        self._chmod(directory, DIR_MODE, "token store directory")

    def _read(self) -> Dict[str, Any]:
        """Contenu brut du fichier (FileNotFoundError si absent)"""
        with open(self.path, "r", encoding="utf-8") as f:
            raw = f.read()
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise TokenStoreError(f"Invalid token store file: {self.path}") from e
        return data if isinstance(data, dict) else {}

    def _write(self, payload: Dict[str, Any]):
        temp_path = self.path.with_name(self.path.name + ".tmp")
        fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, FILE_MODE)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
        self._chmod(temp_path, FILE_MODE, "token store temp file")
        os.replace(temp_path, self.path)
        self._chmod(self.path, FILE_MODE, "token store file")

    # ========================================================================
    # API
    # ========================================================================

    async def load_tokens(self) -> Optional[TokenRecord]:
        """
        Charge les tokens de la plateforme.

        Returns:
            TokenRecord, ou None si fichier absent / aucun token
        """
        try:
            data = self._read()
        except FileNotFoundError:
            LOGGER.info(f"🔑 Token store {self.path} not found; OAuth will be required")
            return None
        except TokenStoreError as e:
            LOGGER.error(f"❌ Failed to load token store: {e}")
            raise

        entry = data.get(self.platform)
        if not isinstance(entry, dict) or (not entry.get("accessToken") and not entry.get("refreshToken")):
            return None

        return TokenRecord(
            access_token=entry.get("accessToken") or None,
            refresh_token=entry.get("refreshToken") or None,
            expires_at=entry.get("expiresAt") or None,
            updated_at=entry.get("updatedAt"),
        )

    async def save_tokens(self, access_token: str, refresh_token: Optional[str] = None,
                          expires_at: Optional[float] = None) -> bool:
        """
        Persiste les tokens (écriture atomique).

        Un refresh token absent hérite de la valeur déjà stockée.
        """
        if not access_token:
            raise TokenStoreError("accessToken is required to persist tokens")

        try:
            self._ensure_directory()
        except OSError as e:
            LOGGER.error(f"❌ Token store directory unavailable: {e}")
            raise TokenStoreError(f"Token store directory unavailable: {self.path.parent}") from e

        existing: Dict[str, Any] = {}
        try:
            existing = self._read()
        except FileNotFoundError:
            pass
        except TokenStoreError:
            LOGGER.error(f"❌ Failed to parse existing token store {self.path}, refusing to overwrite")
            raise
        except OSError as e:
            LOGGER.warning(f"⚠️ Token store read failed; overwriting with new tokens ({e})")

        previous = existing.get(self.platform) if isinstance(existing.get(self.platform), dict) else {}
        previous_refresh = previous.get("refreshToken")
        next_refresh = refresh_token or previous_refresh

        entry: Dict[str, Any] = {"accessToken": access_token, "updatedAt": now_iso()}
        if next_refresh:
            entry["refreshToken"] = next_refresh
        if isinstance(expires_at, (int, float)) and not isinstance(expires_at, bool) and math.isfinite(expires_at):
            entry["expiresAt"] = int(expires_at)

        payload = dict(existing)
        payload[self.platform] = entry

        try:
            self._write(payload)
        except OSError as e:
            LOGGER.error(f"❌ Failed to persist tokens to {self.path}: {e}")
            raise TokenStoreError(f"Failed to persist tokens: {e}") from e

        self.degraded = not next_refresh
        if self.degraded:
            LOGGER.warning("⚠️ Persisted access token without refresh token")
        else:
            LOGGER.info(f"✅ Tokens {self.platform} sauvegardés dans {self.path}")
        return True

    async def clear_tokens(self) -> bool:
        """Supprime uniquement l'entrée de la plateforme (False si rien à supprimer)"""
        try:
            existing = self._read()
        except FileNotFoundError:
            return False

        if self.platform not in existing:
            return False

        payload = {key: value for key, value in existing.items() if key != self.platform}
        try:
            self._write(payload)
        except OSError as e:
            LOGGER.error(f"❌ Failed to write cleared token store: {e}")
            raise TokenStoreError(f"Failed to clear tokens: {e}") from e
        LOGGER.info(f"🗑️ Tokens {self.platform} supprimés de {self.path}")
        return True
