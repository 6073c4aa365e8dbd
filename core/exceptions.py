"""
⚠️ Exceptions - Hiérarchie d'erreurs du core de connexion

Toutes les erreurs levées par le core héritent de StreamCoreError, ce qui
permet à l'orchestrateur de distinguer nos erreurs des erreurs inattendues.
"""
from typing import Any, Dict, List, Optional


class StreamCoreError(Exception):
    """Base de toutes les erreurs du core."""


class ConfigurationError(StreamCoreError):
    """Configuration absente ou invalide (exit code 2)."""


class AuthenticationError(StreamCoreError):
    """Erreur d'authentification (token absent, refresh impossible, etc.)"""


class TokenRefreshError(AuthenticationError):
    """Le refresh du token a échoué."""

    def __init__(self, message: str, analysis: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.analysis = analysis or {}


class OAuthFlowError(AuthenticationError):
    """Le flow OAuth (callback navigateur) a échoué."""


class TokenStoreError(StreamCoreError):
    """Fichier de tokens illisible ou écriture impossible."""


class ConnectionSetupError(StreamCoreError):
    """Établissement d'une connexion plateforme impossible."""


class WelcomeTimeoutError(ConnectionSetupError):
    """Aucun session_welcome reçu dans le délai imparti."""


class SubscriptionSetupError(ConnectionSetupError):
    """Création des subscriptions EventSub en échec."""

    def __init__(self, message: str, failures: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.failures = failures or []


class ApiRequestError(StreamCoreError):
    """Réponse HTTP en erreur d'une API plateforme."""

    def __init__(self, message: str, status: Optional[int] = None, data: Any = None, headers: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.status = status
        self.data = data
        self.headers = headers or {}


class EventValidationError(StreamCoreError):
    """Événement canonique rejeté par le validateur."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or []
