"""
Pytest fixtures for equiauth tests.
"""
import asyncio
import inspect
import json
from datetime import timedelta
from typing import Dict, Optional, Union

import pytest
import pytest_asyncio

from equiauth.config import Settings
from equiauth.integrations.local_store import MemoryStore
from equiauth.integrations.supabase_auth import Subscription
from equiauth.models.auth import AuthEvent
from equiauth.models.session import Session, utcnow
from equiauth.models.user import AuthUser, Provider
from equiauth.services.credential_store import CredentialStore
from equiauth.services.session_coordinator import SessionCoordinator
from equiauth.utils.errors import InvalidCredentialError


def make_session(
    user_id: str = "user-1",
    email: str = "rider@example.com",
    provider: Provider = Provider.PASSWORD,
    access_token: str = "access-1",
    refresh_token: str = "refresh-1",
    expires_in: float = 7200,
) -> Session:
    return Session(
        user_id=user_id,
        email=email,
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=utcnow() + timedelta(seconds=expires_in),
        provider=provider,
        name="Test Rider",
    )


class FakeIdentity:
    """
    In-memory identity provider.

    Knobs:
        session: what get_session() returns
        users: access token -> AuthUser (or an exception to raise) for get_user/set_session
        hang_get_session / hang_set_session: never settle
        get_user_gate: when set, get_user waits for this event first
        refresh_error / sign_in_error / sign_out_error: raised by those calls
    """

    def __init__(self):
        self.session: Optional[Session] = None
        self.users: Dict[str, Union[AuthUser, Exception]] = {}
        self.listeners = []
        self.hang_get_session = False
        self.hang_set_session = False
        self.get_user_gate: Optional[asyncio.Event] = None
        self.get_user_started = asyncio.Event()
        self.refresh_error: Optional[Exception] = None
        self.sign_in_error: Optional[Exception] = None
        self.sign_out_error: Optional[Exception] = None
        self.get_session_calls = 0
        self.get_user_calls = 0
        self.refresh_calls = 0

    def on_auth_state_change(self, callback) -> Subscription:
        self.listeners.append(callback)
        return Subscription(self.listeners, callback)

    async def emit(self, event: AuthEvent, session: Optional[Session]) -> None:
        for callback in list(self.listeners):
            result = callback(event, session)
            if inspect.isawaitable(result):
                await result

    async def _hang(self):
        await asyncio.get_running_loop().create_future()

    async def get_session(self) -> Optional[Session]:
        self.get_session_calls += 1
        if self.hang_get_session:
            await self._hang()
        return self.session

    async def get_user(self, access_token: Optional[str] = None) -> AuthUser:
        self.get_user_calls += 1
        self.get_user_started.set()
        if self.get_user_gate is not None:
            await self.get_user_gate.wait()
        user = self.users.get(access_token)
        if user is None:
            raise InvalidCredentialError("Invalid JWT")
        if isinstance(user, Exception):
            raise user
        return user

    async def set_session(self, access_token: str, refresh_token: str) -> Session:
        if self.hang_set_session:
            await self._hang()
        user = await self.get_user(access_token)
        session = Session.from_user(user, access_token, refresh_token, utcnow() + timedelta(hours=1))
        self.session = session
        await self.emit(AuthEvent.SIGNED_IN, session)
        return session

    async def refresh_session(self, refresh_token: Optional[str] = None) -> Session:
        self.refresh_calls += 1
        if self.refresh_error is not None:
            raise self.refresh_error
        current = self.session or make_session()
        session = current.with_tokens(
            f"refreshed-access-{self.refresh_calls}",
            f"refreshed-refresh-{self.refresh_calls}",
            utcnow() + timedelta(hours=1),
        )
        self.session = session
        await self.emit(AuthEvent.TOKEN_REFRESHED, session)
        return session

    async def _sign_in(self, session: Session) -> Session:
        if self.sign_in_error is not None:
            raise self.sign_in_error
        self.session = session
        await self.emit(AuthEvent.SIGNED_IN, session)
        return session

    async def sign_in_with_password(self, email: str, password: str) -> Session:
        return await self._sign_in(make_session(email=email))

    async def sign_in_with_id_token(self, provider: str, token: str, nonce: Optional[str] = None) -> Session:
        return await self._sign_in(make_session(provider=Provider(provider), access_token=f"{provider}-access"))

    async def sign_out(self) -> None:
        self.session = None
        try:
            if self.sign_out_error is not None:
                raise self.sign_out_error
        finally:
            await self.emit(AuthEvent.SIGNED_OUT, None)


@pytest.fixture
def settings():
    """Settings with tiny timeouts so race tests finish fast."""
    return Settings(
        _env_file=None,
        supabase_url="https://test-project.supabase.co",
        supabase_anon_key="anon-key",
        google_client_id="google-client-id",
        google_client_secret="google-client-secret",
        fast_session_timeout=0.05,
        slow_session_timeout=0.1,
        rest_timeout=0.05,
        background_verify_timeout=0.05,
        revalidation_interval=60.0,
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def credentials(store):
    return CredentialStore(store, namespace="equihub")


@pytest.fixture
def identity():
    return FakeIdentity()


@pytest.fixture
def rider():
    return AuthUser(id="user-1", email="rider@example.com", name="Test Rider")


@pytest.fixture
def session():
    return make_session()


@pytest.fixture
def google_session():
    return make_session(provider=Provider.GOOGLE, access_token="google-access", refresh_token="google-refresh")


@pytest_asyncio.fixture
async def coordinator(identity, credentials, settings):
    coordinator = SessionCoordinator(identity, credentials, settings=settings)
    coordinator._subscription = identity.on_auth_state_change(coordinator.on_auth_event)
    yield coordinator
    await coordinator.close()


def bearer_blob(access_token: str, refresh_token: str = "refresh-stored") -> str:
    """Identity client's persisted session, as far as the bearer-token path reads it."""
    return json.dumps({"access_token": access_token, "refresh_token": refresh_token})
