"""Pydantic models for OAuth configuration and token state."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta  # noqa: TC003 - Pydantic needs these at runtime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from itemsync.core.events import Event
from itemsync.core.time_utils import ensure_utc, utc_now

DEFAULT_EXPIRES_IN_SECONDS = 3600


class OAuthConfig(BaseModel):
    """Per-provider OAuth 2.0 authorization-code configuration."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    auth_url: str = Field(alias="authUrl")
    token_url: str = Field(alias="tokenUrl")
    client_id: str = Field(alias="clientId")
    client_secret: str | None = Field(default=None, alias="clientSecret", repr=False)
    redirect_uri: str = Field(alias="redirectUri")
    scopes: list[str] = Field(default_factory=list)
    additional_params: dict[str, str] = Field(default_factory=dict, alias="additionalParams")

    @field_validator("auth_url", "token_url", "redirect_uri", mode="before")
    @classmethod
    def _validate_url(cls, value: Any) -> str:
        url = str(value or "").strip()
        if not url:
            msg = "OAuth URLs cannot be empty"
            raise ValueError(msg)
        return url

    @field_validator("client_id", mode="before")
    @classmethod
    def _validate_client_id(cls, value: Any) -> str:
        client_id = str(value or "").strip()
        if not client_id:
            msg = "OAuth client_id is required"
            raise ValueError(msg)
        return client_id

    @field_validator("scopes", mode="before")
    @classmethod
    def _parse_scopes(cls, value: Any) -> list[str]:
        if value in (None, ""):
            return []
        if isinstance(value, str):
            return [scope for scope in value.replace(",", " ").split() if scope]
        return list(value)


class AuthTokens(BaseModel):
    """Tokens issued by a provider's token endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    access_token: str = Field(alias="accessToken", repr=False)
    refresh_token: str | None = Field(default=None, alias="refreshToken", repr=False)
    expires_at: datetime = Field(alias="expiresAt")
    token_type: str = Field(default="Bearer", alias="tokenType")
    scopes: list[str] | None = None

    @field_validator("expires_at", mode="after")
    @classmethod
    def _expires_at_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)  # type: ignore[return-value]

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utc_now()) >= self.expires_at

    def expires_within(self, margin: timedelta, now: datetime | None = None) -> bool:
        return (now or utc_now()) >= self.expires_at - margin

    @classmethod
    def from_token_response(
        cls,
        data: dict[str, Any],
        *,
        existing_refresh_token: str | None = None,
        now: datetime | None = None,
    ) -> AuthTokens:
        """Build tokens from a standard RFC 6749 token endpoint JSON body."""
        access_token = data.get("access_token")
        if not access_token:
            msg = "Token response is missing access_token"
            raise ValueError(msg)
        try:
            expires_in = int(data.get("expires_in") or DEFAULT_EXPIRES_IN_SECONDS)
        except (TypeError, ValueError):
            expires_in = DEFAULT_EXPIRES_IN_SECONDS
        scope = data.get("scope")
        return cls(
            access_token=access_token,
            refresh_token=data.get("refresh_token") or existing_refresh_token,
            token_type=data.get("token_type") or "Bearer",
            expires_at=(now or utc_now()) + timedelta(seconds=expires_in),
            scopes=scope.split() if isinstance(scope, str) and scope else None,
        )


class AuthState(BaseModel):
    """Persisted authentication state for one provider."""

    model_config = ConfigDict(populate_by_name=True)

    provider_id: str = Field(alias="providerId")
    authenticated: bool = False
    tokens: AuthTokens | None = None
    last_auth: datetime | None = Field(default=None, alias="lastAuth")
    last_refresh: datetime | None = Field(default=None, alias="lastRefresh")


class AuthEventType(str, Enum):
    AUTH_SUCCESS = "auth_success"
    AUTH_FAILURE = "auth_failure"
    TOKEN_REFRESH = "token_refresh"
    AUTH_REVOKED = "auth_revoked"


@dataclass(frozen=True)
class AuthEvent(Event):
    """Authentication lifecycle event for a single provider."""
