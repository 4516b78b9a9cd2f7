"""Authentication error taxonomy."""

from __future__ import annotations

from enum import Enum
from typing import Any


class AuthErrorType(str, Enum):
    """Why an authentication operation failed.

    Callers branch on this to pick their messaging: ``user_cancelled`` and
    ``network_error`` suggest "try again", ``invalid_credentials`` and
    ``refresh_failed`` suggest "sign in again".
    """

    USER_CANCELLED = "user_cancelled"
    NETWORK_ERROR = "network_error"
    INVALID_CREDENTIALS = "invalid_credentials"
    TOKEN_EXPIRED = "token_expired"
    REFRESH_FAILED = "refresh_failed"
    INVALID_CONFIG = "invalid_config"
    UNKNOWN = "unknown"


class AuthError(Exception):
    """Authentication failure for a single provider."""

    def __init__(
        self,
        error_type: AuthErrorType,
        message: str,
        provider_id: str,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.type = error_type
        self.message = message
        self.provider_id = provider_id
        self.details = details

    def __repr__(self) -> str:
        return f"AuthError(type={self.type.value!r}, provider_id={self.provider_id!r}, message={self.message!r})"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "message": self.message,
            "provider_id": self.provider_id,
        }


class AuthorizationCancelled(Exception):
    """Raised by an interactive authorization flow when the user aborts consent."""


class TokenEndpointError(Exception):
    """Non-success response from an OAuth token endpoint."""

    def __init__(self, message: str, status_code: int, error_code: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
