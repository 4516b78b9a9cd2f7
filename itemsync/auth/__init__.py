from itemsync.auth.errors import AuthError, AuthErrorType, AuthorizationCancelled, TokenEndpointError
from itemsync.auth.manager import TokenLifecycleManager
from itemsync.auth.models import AuthEvent, AuthEventType, AuthState, AuthTokens, OAuthConfig
from itemsync.auth.oauth_client import OAuthTokenClient
from itemsync.auth.store import InMemoryAuthStateStore

__all__ = [
    "AuthError",
    "AuthErrorType",
    "AuthEvent",
    "AuthEventType",
    "AuthState",
    "AuthTokens",
    "AuthorizationCancelled",
    "InMemoryAuthStateStore",
    "OAuthConfig",
    "OAuthTokenClient",
    "TokenEndpointError",
    "TokenLifecycleManager",
]
