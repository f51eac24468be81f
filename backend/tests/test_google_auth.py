"""
Unit tests for the Google OAuth integration.
"""
import base64
import hashlib
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from equiauth.integrations.google_auth import (
    code_challenge_for,
    exchange_code_for_tokens,
    generate_code_verifier,
    get_oauth_url,
)
from equiauth.utils.errors import AuthError, TransientAuthError


class TestOAuthUrl:
    """Authorization URL generation."""

    def test_contains_client_and_scopes(self, settings):
        url = get_oauth_url(state="xyz", settings=settings)
        query = parse_qs(urlparse(url).query)

        assert url.startswith("https://accounts.google.com/o/oauth2/v2/auth?")
        assert query["client_id"] == ["google-client-id"]
        assert query["redirect_uri"] == ["equihub://auth/callback"]
        assert query["scope"] == ["openid email profile"]
        assert query["access_type"] == ["offline"]
        assert query["state"] == ["xyz"]
        assert "code_challenge" not in query

    def test_pkce_challenge(self, settings):
        verifier = generate_code_verifier()
        query = parse_qs(urlparse(get_oauth_url(code_verifier=verifier, settings=settings)).query)

        assert query["code_challenge"] == [code_challenge_for(verifier)]
        assert query["code_challenge_method"] == ["S256"]

    def test_code_challenge_is_unpadded_s256(self):
        expected = base64.urlsafe_b64encode(hashlib.sha256(b"verifier").digest()).rstrip(b"=").decode()
        assert code_challenge_for("verifier") == expected

    def test_verifier_length(self):
        assert 43 <= len(generate_code_verifier()) <= 128


class TestCodeExchange:
    """Authorization code exchange."""

    @pytest.mark.asyncio
    async def test_returns_id_token(self, settings):
        seen = {}

        def handler(request):
            seen["body"] = parse_qs(request.content.decode())
            return httpx.Response(200, json={
                "id_token": "google-id-token",
                "access_token": "google-access",
                "expires_in": 3599,
            })

        tokens = await exchange_code_for_tokens(
            "auth-code", code_verifier="verifier", settings=settings, transport=httpx.MockTransport(handler)
        )

        assert tokens["id_token"] == "google-id-token"
        assert tokens["refresh_token"] is None
        assert seen["body"]["code"] == ["auth-code"]
        assert seen["body"]["code_verifier"] == ["verifier"]
        assert seen["body"]["client_secret"] == ["google-client-secret"]

    @pytest.mark.asyncio
    async def test_rejected_code(self, settings):
        transport = httpx.MockTransport(lambda request: httpx.Response(
            400, json={"error": "invalid_grant", "error_description": "Bad Request"}
        ))

        with pytest.raises(AuthError) as exc_info:
            await exchange_code_for_tokens("bad-code", settings=settings, transport=transport)

        assert exc_info.value.message == "Failed to exchange code: Bad Request"

    @pytest.mark.asyncio
    async def test_missing_id_token(self, settings):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"access_token": "a"}))

        with pytest.raises(AuthError) as exc_info:
            await exchange_code_for_tokens("code", settings=settings, transport=transport)

        assert exc_info.value.message == "Google did not return an identity token"

    @pytest.mark.asyncio
    async def test_network_failure_is_transient(self, settings):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        with pytest.raises(TransientAuthError):
            await exchange_code_for_tokens("code", settings=settings, transport=httpx.MockTransport(handler))
