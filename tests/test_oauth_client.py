"""Tests for the OAuth token endpoint client and URL helpers."""

from __future__ import annotations

import unittest
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from itemsync.auth.errors import TokenEndpointError
from itemsync.auth.models import AuthTokens
from itemsync.auth.oauth_client import (
    OAuthTokenClient,
    build_authorization_url,
    generate_state,
    parse_redirect,
)
from itemsync.core.time_utils import utc_now
from tests.conftest import make_oauth_config


def test_generate_state_is_random_hex():
    first, second = generate_state(), generate_state()
    assert first != second
    assert len(first) == 64
    int(first, 16)


def test_authorization_url_appends_to_existing_query():
    config = make_oauth_config(auth_url="https://auth.example.com/authorize?prompt=consent")
    url = build_authorization_url(config, "abc")

    query = parse_qs(urlparse(url).query)
    assert query["prompt"] == ["consent"]
    assert query["state"] == ["abc"]
    assert query["redirect_uri"] == ["https://app.example.com/callback"]


def test_parse_redirect_reads_query_and_fragment():
    params = parse_redirect("https://app.example.com/cb?code=q-code&state=s1#code=f-code&extra=1")
    assert params == {"code": "q-code", "state": "s1", "extra": "1"}


def test_parse_redirect_error_description():
    params = parse_redirect(
        "https://app.example.com/cb?error=access_denied&error_description=User+said+no"
    )
    assert params["error"] == "access_denied"
    assert params["error_description"] == "User said no"


def test_scopes_accept_space_or_comma_string():
    config = make_oauth_config(scopes="read, write  admin")
    assert config.scopes == ["read", "write", "admin"]


def test_client_id_is_required():
    with pytest.raises(ValueError, match="client_id"):
        make_oauth_config(client_id="  ")


def test_token_response_defaults():
    now = utc_now()
    tokens = AuthTokens.from_token_response({"access_token": "a", "scope": "read write"}, now=now)
    assert tokens.expires_at == now + timedelta(seconds=3600)
    assert tokens.token_type == "Bearer"
    assert tokens.scopes == ["read", "write"]
    assert tokens.refresh_token is None


def test_token_response_without_access_token_is_rejected():
    with pytest.raises(ValueError, match="access_token"):
        AuthTokens.from_token_response({"token_type": "Bearer"})


def test_expires_within_margin():
    now = utc_now()
    tokens = AuthTokens(access_token="a", expires_at=now + timedelta(minutes=4))
    assert tokens.expires_within(timedelta(minutes=5), now)
    assert not tokens.expires_within(timedelta(minutes=3), now)
    assert not tokens.is_expired(now)


class TestOAuthTokenClient(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.requests: list[httpx.Request] = []
        self.response = httpx.Response(
            200, json={"access_token": "new", "refresh_token": "r2", "expires_in": 60}
        )

        def handler(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return self.response

        self.client = OAuthTokenClient(transport=httpx.MockTransport(handler))
        self.config = make_oauth_config()

    def _form(self, index: int = 0) -> dict[str, str]:
        return {k: v[0] for k, v in parse_qs(self.requests[index].content.decode()).items()}

    async def test_exchange_code_posts_authorization_code_grant(self) -> None:
        tokens = await self.client.exchange_code(self.config, "the-code")

        assert tokens.access_token == "new"
        assert tokens.refresh_token == "r2"
        assert str(self.requests[0].url) == "https://auth.example.com/token"
        assert self._form() == {
            "grant_type": "authorization_code",
            "code": "the-code",
            "redirect_uri": "https://app.example.com/callback",
            "client_id": "client-123",
            "client_secret": "secret-456",
        }

    async def test_public_client_omits_secret(self) -> None:
        await self.client.refresh(make_oauth_config(client_secret=None), "r1")

        form = self._form()
        assert "client_secret" not in form
        assert form["grant_type"] == "refresh_token"
        assert form["refresh_token"] == "r1"

    async def test_error_response_raises_with_status_and_code(self) -> None:
        self.response = httpx.Response(400, json={"error": "invalid_grant"})

        with pytest.raises(TokenEndpointError) as excinfo:
            await self.client.refresh(self.config, "r1")

        assert excinfo.value.status_code == 400
        assert excinfo.value.error_code == "invalid_grant"

    async def test_non_json_error_body(self) -> None:
        self.response = httpx.Response(502, text="<html>bad gateway</html>")

        with pytest.raises(TokenEndpointError) as excinfo:
            await self.client.exchange_code(self.config, "c")

        assert excinfo.value.status_code == 502
        assert excinfo.value.error_code is None

    async def test_non_object_payload_is_rejected(self) -> None:
        self.response = httpx.Response(200, json=["not", "an", "object"])

        with pytest.raises(TokenEndpointError):
            await self.client.exchange_code(self.config, "c")


if __name__ == "__main__":
    unittest.main()
