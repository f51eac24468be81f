"""
Supabase (GoTrue) auth client.

This module handles direct communication with the hosted identity provider:
1. Password and ID-token sign-in (token endpoint grants)
2. Token refresh and token injection (set_session)
3. Current-user lookups (GET /auth/v1/user)
4. Sign-up, password recovery and user updates
5. Push-style change notifications to registered listeners

The client keeps the current session in memory and, when given a store,
persists it under a single well-known key so it survives restarts.

GoTrue Reference: https://supabase.com/docs/reference/api/auth
"""
import inspect
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, List, Optional, Tuple, Union

import httpx
from pydantic import ValidationError

from equiauth.integrations.local_store import KeyValueStore
from equiauth.models.auth import AuthEvent
from equiauth.models.session import Session, utcnow
from equiauth.models.user import AuthUser
from equiauth.utils.errors import (
    AuthError,
    InvalidCredentialError,
    RateLimitError,
    TransientAuthError,
)
from equiauth.utils.logger import get_logger
from equiauth.utils.tokens import token_expiry

logger = get_logger(__name__)

AUTH_PATH = "/auth/v1"
DEFAULT_TOKEN_LIFETIME = 3600

# GoTrue error codes that mean "this credential is no good"
INVALID_GRANT_CODES = {"invalid_grant", "bad_jwt", "session_not_found", "refresh_token_not_found"}

AuthListener = Callable[[AuthEvent, Optional[Session]], Union[None, Awaitable[None]]]


class Subscription:
    """Handle returned by on_auth_state_change."""

    def __init__(self, listeners: List[AuthListener], callback: AuthListener):
        self._listeners = listeners
        self.callback = callback

    def unsubscribe(self) -> None:
        if self.callback in self._listeners:
            self._listeners.remove(self.callback)


class SupabaseAuthClient:
    """
    GoTrue REST client.

    Usage:
        client = SupabaseAuthClient(url, anon_key, storage=store, storage_key="equihub.auth.session")
        sub = client.on_auth_state_change(listener)
        session = await client.sign_in_with_password(email, password)
        await client.sign_out()
        sub.unsubscribe()
    """

    def __init__(
        self,
        url: str,
        anon_key: str,
        storage: Optional[KeyValueStore] = None,
        storage_key: Optional[str] = None,
        timeout: float = 30.0,
        expiry_margin: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            url: Supabase project URL
            anon_key: Public anon key, sent as `apikey` on every request
            storage: Where to persist the session, None for memory only
            storage_key: Key for the persisted session blob
            timeout: Per-request HTTP timeout in seconds
            expiry_margin: Seconds before expiry at which a session counts as expired
            transport: Optional httpx transport (tests)
        """
        self.base_url = url.rstrip("/") + AUTH_PATH
        self.anon_key = anon_key
        self.storage = storage
        self.storage_key = storage_key
        self.timeout = timeout
        self.expiry_margin = expiry_margin
        self._transport = transport
        self._session: Optional[Session] = None
        self._loaded = False
        self._listeners: List[AuthListener] = []

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        json_data: dict = None,
        params: dict = None,
        access_token: str = None,
    ) -> dict:
        """
        Make a request to the GoTrue API.

        Error mapping:
        - 400 invalid_grant, 401, 403: InvalidCredentialError
        - 429: RateLimitError
        - 5xx, timeouts, connection failures: TransientAuthError
        - anything else: AuthError with the provider's message

        Returns:
            Response JSON dict ({} for empty bodies)
        """
        url = f"{self.base_url}{endpoint}"
        headers = {
            "apikey": self.anon_key,
            "Authorization": f"Bearer {access_token or self.anon_key}",
            "Content-Type": "application/json",
        }

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.request(
                    method=method,
                    url=url,
                    headers=headers,
                    json=json_data,
                    params=params,
                )
            except httpx.TimeoutException as e:
                logger.warning(f"Auth API timeout on {method} {endpoint}: {e}")
                raise TransientAuthError("Authentication service timed out")
            except httpx.RequestError as e:
                logger.warning(f"Auth API connection error on {method} {endpoint}: {e}")
                raise TransientAuthError()

        if 200 <= response.status_code < 300:
            if response.status_code == 204 or not response.content:
                return {}
            return response.json()

        error_code, message = self._parse_error(response)

        if response.status_code == 429:
            raise RateLimitError()

        if response.status_code >= 500:
            logger.error(f"Auth API server error: {response.status_code} - {message}")
            raise TransientAuthError()

        if response.status_code in (401, 403) or error_code in INVALID_GRANT_CODES:
            logger.info(f"Auth API rejected credential on {endpoint}: {message}")
            raise InvalidCredentialError(message)

        logger.error(f"Auth API error: {response.status_code} - {message}")
        raise AuthError(message, code=error_code.upper() or "AUTH_ERROR", status_code=response.status_code)

    @staticmethod
    def _parse_error(response: httpx.Response) -> Tuple[str, str]:
        """Pull (error_code, message) out of the several GoTrue error shapes."""
        try:
            data = response.json() if response.content else {}
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        code = str(data.get("error_code") or data.get("error") or "")
        message = (
            data.get("error_description")
            or data.get("msg")
            or data.get("message")
            or f"Request failed with status {response.status_code}"
        )
        return code, str(message)

    def on_auth_state_change(self, callback: AuthListener) -> Subscription:
        """Register a listener for auth events. Returns an unsubscribe handle."""
        self._listeners.append(callback)
        return Subscription(self._listeners, callback)

    async def _notify(self, event: AuthEvent, session: Optional[Session]) -> None:
        for callback in list(self._listeners):
            try:
                result = callback(event, session)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Auth listener failed on {event.value}: {e}")

    async def _load_persisted(self) -> Optional[Session]:
        if not self.storage or not self.storage_key:
            return None
        raw = await self.storage.get_item(self.storage_key)
        if not raw:
            return None
        try:
            return Session.model_validate_json(raw)
        except ValidationError:
            logger.warning(f"Discarding corrupt session blob at {self.storage_key}")
            await self.storage.remove_item(self.storage_key)
            return None

    async def _save(self, session: Session) -> None:
        self._session = session
        self._loaded = True
        if self.storage and self.storage_key:
            await self.storage.set_item(self.storage_key, session.model_dump_json())

    async def _clear_local(self) -> None:
        self._session = None
        self._loaded = True
        if self.storage and self.storage_key:
            await self.storage.remove_item(self.storage_key)

    def _session_from_token_response(self, data: dict) -> Session:
        try:
            user = AuthUser.from_gotrue(data["user"])
            access_token = data["access_token"]
            refresh_token = data["refresh_token"]
        except (KeyError, TypeError, ValidationError) as e:
            logger.error(f"Malformed token response: {e}")
            raise AuthError("Malformed response from authentication service")

        if data.get("expires_at"):
            expires_at = datetime.fromtimestamp(int(data["expires_at"]), tz=timezone.utc)
        elif data.get("expires_in"):
            expires_at = utcnow() + timedelta(seconds=int(data["expires_in"]))
        else:
            expires_at = token_expiry(access_token) or utcnow() + timedelta(seconds=DEFAULT_TOKEN_LIFETIME)

        return Session.from_user(user, access_token, refresh_token, expires_at)

    async def get_session(self) -> Optional[Session]:
        """
        Current session from memory or the persisted blob.

        An expired session is refreshed when it carries a refresh token.
        A refresh token the provider rejects clears the local session.

        Raises:
            TransientAuthError: If a needed refresh could not reach the provider
        """
        if not self._loaded:
            self._session = await self._load_persisted()
            self._loaded = True

        session = self._session
        if session is None:
            return None

        if session.is_expired(self.expiry_margin):
            if not session.refresh_token:
                await self._clear_local()
                return None
            try:
                return await self.refresh_session(session.refresh_token)
            except InvalidCredentialError:
                logger.info("Stored session could not be refreshed, clearing")
                await self._clear_local()
                return None

        return session

    async def get_user(self, access_token: Optional[str] = None) -> AuthUser:
        """
        Fetch the user behind a bearer token.

        Raises:
            InvalidCredentialError: Token invalid or expired (HTTP 401)
            TransientAuthError: Provider unreachable
        """
        token = access_token or (self._session.access_token if self._session else None)
        if not token:
            raise InvalidCredentialError("No access token available")
        data = await self._make_request("GET", "/user", access_token=token)
        return AuthUser.from_gotrue(data)

    async def sign_in_with_password(self, email: str, password: str) -> Session:
        """Password grant."""
        data = await self._make_request(
            "POST",
            "/token",
            params={"grant_type": "password"},
            json_data={"email": email, "password": password},
        )
        session = self._session_from_token_response(data)
        await self._save(session)
        logger.info(f"Signed in with password: {session.email}")
        await self._notify(AuthEvent.SIGNED_IN, session)
        return session

    async def sign_in_with_id_token(
        self,
        provider: str,
        token: str,
        nonce: Optional[str] = None,
    ) -> Session:
        """
        Exchange a provider-issued OIDC ID token (Google, Apple) for a session.

        Args:
            provider: "google" or "apple"
            token: The provider's ID token
            nonce: Raw nonce the ID token was requested with, if any
        """
        payload = {"provider": provider, "id_token": token}
        if nonce:
            payload["nonce"] = nonce
        data = await self._make_request(
            "POST",
            "/token",
            params={"grant_type": "id_token"},
            json_data=payload,
        )
        session = self._session_from_token_response(data)
        await self._save(session)
        logger.info(f"Signed in with {provider} ID token: {session.email}")
        await self._notify(AuthEvent.SIGNED_IN, session)
        return session

    async def refresh_session(self, refresh_token: Optional[str] = None) -> Session:
        """
        Refresh-token grant.

        Raises:
            InvalidCredentialError: No refresh token, or the provider rejected it
            TransientAuthError: Provider unreachable
        """
        token = refresh_token or (self._session.refresh_token if self._session else None)
        if not token:
            raise InvalidCredentialError("No refresh token available")
        data = await self._make_request(
            "POST",
            "/token",
            params={"grant_type": "refresh_token"},
            json_data={"refresh_token": token},
        )
        session = self._session_from_token_response(data)
        await self._save(session)
        logger.info(f"Refreshed session for: {session.email}")
        await self._notify(AuthEvent.TOKEN_REFRESHED, session)
        return session

    async def set_session(self, access_token: str, refresh_token: str) -> Session:
        """
        Inject an externally held token pair.

        The access token is validated against the provider. If it is
        rejected, the refresh token is tried once before giving up.
        """
        try:
            user = await self.get_user(access_token)
        except InvalidCredentialError:
            if not refresh_token:
                raise
            logger.info("Injected access token rejected, trying refresh token")
            return await self.refresh_session(refresh_token)

        expires_at = token_expiry(access_token) or utcnow() + timedelta(seconds=DEFAULT_TOKEN_LIFETIME)
        session = Session.from_user(user, access_token, refresh_token, expires_at)
        await self._save(session)
        await self._notify(AuthEvent.SIGNED_IN, session)
        return session

    async def sign_out(self) -> None:
        """
        End the session. Local state is cleared before the provider is told,
        so a failing logout call still leaves this client signed out.

        Raises:
            AuthError: If the provider-side logout failed
        """
        session = self._session
        await self._clear_local()
        try:
            if session is not None:
                await self._make_request(
                    "POST",
                    "/logout",
                    params={"scope": "global"},
                    access_token=session.access_token,
                )
        except InvalidCredentialError:
            # Token already dead on the server side, nothing left to revoke
            pass
        finally:
            await self._notify(AuthEvent.SIGNED_OUT, None)

    async def sign_up(
        self,
        email: str,
        password: str,
        data: Optional[dict] = None,
    ) -> Tuple[AuthUser, Optional[Session]]:
        """
        Create an account.

        Returns:
            (user, session). Session is None when e-mail confirmation is on.
        """
        response = await self._make_request(
            "POST",
            "/signup",
            json_data={"email": email, "password": password, "data": data or {}},
        )
        if "access_token" in response:
            session = self._session_from_token_response(response)
            await self._save(session)
            await self._notify(AuthEvent.SIGNED_IN, session)
            return session.user, session

        user_data = response.get("user") or response
        if not user_data.get("id"):
            raise AuthError("Registration failed. Please try again.")
        return AuthUser.from_gotrue(user_data), None

    async def reset_password_for_email(self, email: str, redirect_to: Optional[str] = None) -> None:
        """Send a password recovery e-mail."""
        params = {"redirect_to": redirect_to} if redirect_to else None
        await self._make_request("POST", "/recover", json_data={"email": email}, params=params)

    async def update_user(self, attributes: dict, access_token: Optional[str] = None) -> AuthUser:
        """Update the signed-in user (password, metadata)."""
        token = access_token or (self._session.access_token if self._session else None)
        if not token:
            raise InvalidCredentialError("No access token available")
        data = await self._make_request("PUT", "/user", json_data=attributes, access_token=token)
        user = AuthUser.from_gotrue(data)
        if self._session is not None and self._session.user_id == user.id:
            updated = self._session.model_copy(update={
                "email": user.email,
                "name": user.name,
                "avatar_url": user.avatar_url,
            })
            await self._save(updated)
            await self._notify(AuthEvent.USER_UPDATED, updated)
        return user
