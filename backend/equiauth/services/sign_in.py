"""
Sign-in strategies.

Every provider is a SignInStrategy that turns its own credential into a
Supabase session. The coordinator only ever calls strategy.authenticate(),
so adding a provider never touches the session logic.

    strategy = build_strategy({"provider": "google", "code": code})
    result = await coordinator.sign_in(strategy)
"""
import hashlib
import secrets
from abc import ABC, abstractmethod
from typing import Optional, Tuple

import httpx

from equiauth.config import Settings
from equiauth.integrations.google_auth import exchange_code_for_tokens
from equiauth.integrations.supabase_auth import SupabaseAuthClient
from equiauth.models.session import Session
from equiauth.models.user import Provider
from equiauth.utils.errors import (
    AuthError,
    InvalidRequestError,
    ProviderNotAvailableError,
    SignInCancelledError,
)
from equiauth.utils.logger import get_logger

logger = get_logger(__name__)


def generate_nonce() -> Tuple[str, str]:
    """
    Nonce pair for ID-token providers.

    Returns:
        (raw_nonce, sha256_hex). The hash goes to the provider's native
        sign-in request; the raw value goes to Supabase.
    """
    raw = secrets.token_urlsafe(24)
    return raw, hashlib.sha256(raw.encode("utf-8")).hexdigest()


class SignInStrategy(ABC):
    """One way of obtaining a session."""

    provider: Provider

    @abstractmethod
    async def authenticate(self, identity: SupabaseAuthClient) -> Session:
        """Exchange this strategy's credential for a session."""


class PasswordSignIn(SignInStrategy):
    """E-mail + password."""

    provider = Provider.PASSWORD

    def __init__(self, email: str, password: str):
        self.email = (email or "").strip()
        self.password = password or ""

    async def authenticate(self, identity: SupabaseAuthClient) -> Session:
        if not self.email or not self.password:
            raise InvalidRequestError("Email and password are required")
        return await identity.sign_in_with_password(self.email, self.password)


class IdTokenSignIn(SignInStrategy):
    """Provider-issued OIDC ID token handed straight to Supabase."""

    def __init__(self, id_token: Optional[str] = None, nonce: Optional[str] = None, available: bool = True):
        self.id_token = id_token
        self.nonce = nonce
        self.available = available

    async def _resolve_id_token(self) -> str:
        if not self.id_token:
            raise AuthError(f"No identity token received from {self.provider.value.capitalize()}")
        return self.id_token

    async def authenticate(self, identity: SupabaseAuthClient) -> Session:
        if not self.available:
            raise ProviderNotAvailableError(self.provider.value)
        id_token = await self._resolve_id_token()
        return await identity.sign_in_with_id_token(self.provider.value, id_token, nonce=self.nonce)


class GoogleSignIn(IdTokenSignIn):
    """
    Google sign-in, from either a native ID token or an OAuth redirect.

    With an authorization code the code is first exchanged at Google's token
    endpoint; the resulting ID token is what Supabase verifies.
    """

    provider = Provider.GOOGLE

    def __init__(
        self,
        id_token: Optional[str] = None,
        code: Optional[str] = None,
        code_verifier: Optional[str] = None,
        error: Optional[str] = None,
        nonce: Optional[str] = None,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(id_token=id_token, nonce=nonce)
        self.code = code
        self.code_verifier = code_verifier
        self.error = error
        self.settings = settings
        self.transport = transport

    async def _resolve_id_token(self) -> str:
        if self.error:
            if self.error == "access_denied":
                raise SignInCancelledError()
            raise AuthError(f"OAuth error: {self.error}")
        if self.id_token:
            return self.id_token
        if not self.code:
            raise InvalidRequestError("Google sign-in needs an ID token or an authorization code")

        tokens = await exchange_code_for_tokens(
            self.code,
            code_verifier=self.code_verifier,
            settings=self.settings,
            transport=self.transport,
        )
        return tokens["id_token"]


class AppleSignIn(IdTokenSignIn):
    """Sign in with Apple. Pass the raw nonce whose hash was sent to Apple."""

    provider = Provider.APPLE


class FacebookSignIn(IdTokenSignIn):
    """Facebook Limited Login ID token."""

    provider = Provider.FACEBOOK


STRATEGIES = {
    Provider.PASSWORD: PasswordSignIn,
    Provider.GOOGLE: GoogleSignIn,
    Provider.APPLE: AppleSignIn,
    Provider.FACEBOOK: FacebookSignIn,
}


def build_strategy(provider_config: dict, settings: Optional[Settings] = None) -> SignInStrategy:
    """
    Build a strategy from a provider config dict.

    Args:
        provider_config: {"provider": "<name>", **strategy kwargs}
        settings: Settings handed to strategies that call out to OAuth endpoints

    Raises:
        InvalidRequestError: Unknown provider or unexpected fields
    """
    config = dict(provider_config)
    name = config.pop("provider", None)
    try:
        provider = Provider(name)
    except ValueError:
        raise InvalidRequestError(f"Unknown sign-in provider: {name}")

    if provider is Provider.GOOGLE and settings is not None:
        config.setdefault("settings", settings)

    try:
        return STRATEGIES[provider](**config)
    except TypeError as e:
        logger.warning(f"Bad {provider.value} sign-in config: {e}")
        raise InvalidRequestError(f"Invalid {provider.value} sign-in configuration")
