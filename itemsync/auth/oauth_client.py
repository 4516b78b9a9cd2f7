"""OAuth 2.0 token endpoint client."""

from __future__ import annotations

import logging
import secrets
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qs, urlencode, urlparse

import httpx

from itemsync.auth.errors import TokenEndpointError
from itemsync.auth.models import AuthTokens

if TYPE_CHECKING:
    from itemsync.auth.models import OAuthConfig

logger = logging.getLogger(__name__)

STATE_BYTES = 32
DEFAULT_TIMEOUT = 30.0


def generate_state() -> str:
    """Cryptographically random CSRF state (64 hex chars)."""
    return secrets.token_hex(STATE_BYTES)


def build_authorization_url(config: OAuthConfig, state: str) -> str:
    params = {
        "client_id": config.client_id,
        "redirect_uri": config.redirect_uri,
        "response_type": "code",
        "scope": " ".join(config.scopes),
        "state": state,
        **config.additional_params,
    }
    separator = "&" if "?" in config.auth_url else "?"
    return f"{config.auth_url}{separator}{urlencode(params)}"


def parse_redirect(redirect_url: str) -> dict[str, str]:
    """Extract ``code``/``state``/``error``/``error_description`` from a redirect URL.

    Values in the query string win over values in the fragment.
    """
    parsed = urlparse(redirect_url)
    values: dict[str, str] = {}
    for source in (parsed.fragment, parsed.query):
        for key, items in parse_qs(source).items():
            if items:
                values[key] = items[0]
    return values


class OAuthTokenClient:
    """Performs authorization-code and refresh-token grants over httpx."""

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests pass ``httpx.MockTransport``)
        """
        self._timeout = timeout
        self._transport = transport

    async def exchange_code(self, config: OAuthConfig, code: str) -> AuthTokens:
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": config.redirect_uri,
            "client_id": config.client_id,
        }
        if config.client_secret:
            form["client_secret"] = config.client_secret
        data = await self._post(config.token_url, form, operation="exchange_code")
        return AuthTokens.from_token_response(data)

    async def refresh(self, config: OAuthConfig, refresh_token: str) -> AuthTokens:
        form = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": config.client_id,
        }
        if config.client_secret:
            form["client_secret"] = config.client_secret
        data = await self._post(config.token_url, form, operation="refresh_token")
        return AuthTokens.from_token_response(data, existing_refresh_token=refresh_token)

    async def _post(self, url: str, form: dict[str, str], *, operation: str) -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.post(
                url,
                data=form,
                headers={"Accept": "application/json"},
            )

        if response.is_error:
            error_code: str | None = None
            try:
                body = response.json()
                error_code = body.get("error") if isinstance(body, dict) else None
            except ValueError:
                body = None
            logger.warning(
                "oauth_token_endpoint_error",
                extra={
                    "operation": operation,
                    "status_code": response.status_code,
                    "error_code": error_code,
                },
            )
            msg = f"{operation} failed: HTTP {response.status_code}"
            if error_code:
                msg = f"{msg} ({error_code})"
            raise TokenEndpointError(msg, response.status_code, error_code)

        try:
            data = response.json()
        except ValueError as exc:
            msg = f"{operation} returned a non-JSON body"
            raise TokenEndpointError(msg, response.status_code) from exc
        if not isinstance(data, dict):
            msg = f"{operation} returned an unexpected payload"
            raise TokenEndpointError(msg, response.status_code)
        return data
