"""
Unit tests for the Supabase auth client.

HTTP is served by httpx.MockTransport; nothing leaves the process.
"""
import json
from datetime import timedelta

import httpx
import pytest
from unittest.mock import AsyncMock, patch

from conftest import make_session
from equiauth.integrations.local_store import MemoryStore
from equiauth.integrations.supabase_auth import SupabaseAuthClient
from equiauth.models.auth import AuthEvent
from equiauth.models.session import utcnow
from equiauth.models.user import Provider
from equiauth.utils.errors import (
    AuthError,
    InvalidCredentialError,
    RateLimitError,
    TransientAuthError,
)

SESSION_KEY = "equihub.auth.session"

GOTRUE_USER = {
    "id": "user-1",
    "email": "rider@example.com",
    "created_at": "2024-05-01T10:00:00Z",
    "user_metadata": {"full_name": "Test Rider", "avatar_url": "https://example.com/a.png"},
    "app_metadata": {"provider": "email"},
}


def token_response(access="new-access", refresh="new-refresh", user=None, expires_in=3600):
    return {
        "access_token": access,
        "refresh_token": refresh,
        "expires_in": expires_in,
        "token_type": "bearer",
        "user": user or GOTRUE_USER,
    }


def make_client(handler, storage=None):
    return SupabaseAuthClient(
        "https://test-project.supabase.co",
        "anon-key",
        storage=storage,
        storage_key=SESSION_KEY,
        transport=httpx.MockTransport(handler),
    )


class TestErrorMapping:
    """_make_request status handling."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,body,expected", [
        (401, {"msg": "Invalid JWT"}, InvalidCredentialError),
        (403, {"msg": "Forbidden"}, InvalidCredentialError),
        (400, {"error": "invalid_grant", "error_description": "Invalid Refresh Token"}, InvalidCredentialError),
        (429, {"msg": "Too many requests"}, RateLimitError),
        (500, {"msg": "boom"}, TransientAuthError),
        (503, {}, TransientAuthError),
        (422, {"error_code": "weak_password", "msg": "Password is too weak"}, AuthError),
    ])
    async def test_status_mapping(self, status, body, expected):
        client = make_client(lambda request: httpx.Response(status, json=body))

        with pytest.raises(expected):
            await client.get_user("token")

    @pytest.mark.asyncio
    async def test_other_errors_keep_provider_message(self):
        client = make_client(lambda request: httpx.Response(
            422, json={"error_code": "weak_password", "msg": "Password is too weak"}
        ))

        with pytest.raises(AuthError) as exc_info:
            await client.sign_up("rider@example.com", "123")

        assert exc_info.value.message == "Password is too weak"
        assert exc_info.value.code == "WEAK_PASSWORD"
        assert exc_info.value.status_code == 422

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransientAuthError):
            await make_client(handler).get_user("token")

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self):
        def handler(request):
            raise httpx.ReadTimeout("too slow", request=request)

        with pytest.raises(TransientAuthError) as exc_info:
            await make_client(handler).get_user("token")

        assert "timed out" in exc_info.value.message


class TestRequests:
    """Endpoints, headers and payloads."""

    @pytest.mark.asyncio
    async def test_get_user_sends_bearer_and_apikey(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["apikey"] = request.headers["apikey"]
            return httpx.Response(200, json=GOTRUE_USER)

        user = await make_client(handler).get_user("user-token")

        assert seen["url"] == "https://test-project.supabase.co/auth/v1/user"
        assert seen["auth"] == "Bearer user-token"
        assert seen["apikey"] == "anon-key"
        assert user.id == "user-1"
        assert user.name == "Test Rider"
        assert user.provider == Provider.PASSWORD

    @pytest.mark.asyncio
    async def test_password_sign_in(self):
        seen = {}

        def handler(request):
            seen["grant"] = request.url.params["grant_type"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=token_response())

        client = make_client(handler)
        events = []
        client.on_auth_state_change(lambda event, session: events.append(event))

        session = await client.sign_in_with_password("rider@example.com", "secret")

        assert seen["grant"] == "password"
        assert seen["body"] == {"email": "rider@example.com", "password": "secret"}
        assert session.access_token == "new-access"
        assert session.expires_at > utcnow() + timedelta(minutes=59)
        assert events == [AuthEvent.SIGNED_IN]

    @pytest.mark.asyncio
    async def test_id_token_sign_in_with_nonce(self):
        seen = {}
        google_user = dict(GOTRUE_USER, app_metadata={"provider": "google"})

        def handler(request):
            seen["grant"] = request.url.params["grant_type"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=token_response(user=google_user))

        session = await make_client(handler).sign_in_with_id_token("apple", "id-token", nonce="raw-nonce")

        assert seen["grant"] == "id_token"
        assert seen["body"] == {"provider": "apple", "id_token": "id-token", "nonce": "raw-nonce"}
        assert session.provider == Provider.GOOGLE

    @pytest.mark.asyncio
    async def test_reset_password(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={})

        await make_client(handler).reset_password_for_email("rider@example.com")

        assert seen["path"] == "/auth/v1/recover"
        assert seen["body"] == {"email": "rider@example.com"}

    @pytest.mark.asyncio
    async def test_sign_up_without_confirmation_returns_user_only(self):
        client = make_client(lambda request: httpx.Response(200, json=GOTRUE_USER))

        user, session = await client.sign_up("rider@example.com", "secret", {"name": "Test Rider"})

        assert user.id == "user-1"
        assert session is None


class TestSessionPersistence:
    """get_session / refresh / set_session / sign_out against the store."""

    @pytest.mark.asyncio
    async def test_sign_in_persists_and_get_session_reloads(self):
        storage = MemoryStore()
        client = make_client(lambda request: httpx.Response(200, json=token_response()), storage)
        await client.sign_in_with_password("rider@example.com", "secret")

        fresh_client = make_client(lambda request: httpx.Response(500), storage)
        session = await fresh_client.get_session()

        assert session.access_token == "new-access"
        assert session.user_id == "user-1"

    @pytest.mark.asyncio
    async def test_corrupt_blob_removed(self):
        storage = MemoryStore({SESSION_KEY: "garbage"})
        client = make_client(lambda request: httpx.Response(500), storage)

        assert await client.get_session() is None
        assert await storage.get_item(SESSION_KEY) is None

    @pytest.mark.asyncio
    async def test_expired_session_is_refreshed(self):
        storage = MemoryStore({SESSION_KEY: make_session(expires_in=-10).model_dump_json()})
        client = make_client(lambda request: httpx.Response(200, json=token_response()), storage)
        events = []
        client.on_auth_state_change(lambda event, session: events.append(event))

        session = await client.get_session()

        assert session.access_token == "new-access"
        assert events == [AuthEvent.TOKEN_REFRESHED]

    @pytest.mark.asyncio
    async def test_expired_session_with_dead_refresh_token_cleared(self):
        storage = MemoryStore({SESSION_KEY: make_session(expires_in=-10).model_dump_json()})
        client = make_client(
            lambda request: httpx.Response(400, json={"error": "invalid_grant"}), storage
        )

        assert await client.get_session() is None
        assert await storage.get_item(SESSION_KEY) is None

    @pytest.mark.asyncio
    async def test_set_session_falls_back_to_refresh(self):
        def handler(request):
            if request.url.path.endswith("/user"):
                return httpx.Response(401, json={"msg": "JWT expired"})
            return httpx.Response(200, json=token_response(access="refreshed"))

        session = await make_client(handler).set_session("old-access", "old-refresh")

        assert session.access_token == "refreshed"

    @pytest.mark.asyncio
    async def test_sign_out_clears_even_when_logout_fails(self):
        storage = MemoryStore({SESSION_KEY: make_session().model_dump_json()})
        client = make_client(lambda request: httpx.Response(503), storage)
        await client.get_session()
        events = []
        client.on_auth_state_change(lambda event, session: events.append(event))

        with pytest.raises(TransientAuthError):
            await client.sign_out()

        assert await storage.get_item(SESSION_KEY) is None
        assert events == [AuthEvent.SIGNED_OUT]

    @pytest.mark.asyncio
    async def test_sign_out_ignores_already_dead_token(self):
        client = make_client(lambda request: httpx.Response(401, json={"msg": "Invalid JWT"}))
        client._session = make_session()

        await client.sign_out()

        assert await client.get_session() is None


class TestListeners:
    """on_auth_state_change subscriptions."""

    @pytest.mark.asyncio
    async def test_async_listener_and_unsubscribe(self):
        client = make_client(lambda request: httpx.Response(200, json=token_response()))
        listener = AsyncMock()
        subscription = client.on_auth_state_change(listener)

        await client.sign_in_with_password("rider@example.com", "secret")
        subscription.unsubscribe()
        await client.sign_in_with_password("rider@example.com", "secret")

        listener.assert_awaited_once()
        assert listener.call_args[0][0] == AuthEvent.SIGNED_IN

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_sign_in(self):
        client = make_client(lambda request: httpx.Response(200, json=token_response()))

        def broken(event, session):
            raise RuntimeError("listener bug")

        client.on_auth_state_change(broken)

        session = await client.sign_in_with_password("rider@example.com", "secret")
        assert session.user_id == "user-1"

    @pytest.mark.asyncio
    async def test_update_user_emits_user_updated(self):
        client = make_client(lambda request: httpx.Response(200, json=GOTRUE_USER))
        client._session = make_session()

        with patch.object(client, "_notify", AsyncMock()) as mock_notify:
            user = await client.update_user({"password": "new-secret"})

        assert user.id == "user-1"
        assert mock_notify.call_args[0][0] == AuthEvent.USER_UPDATED
