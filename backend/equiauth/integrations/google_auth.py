"""
Google OAuth client integration.

This module handles:
1. Generating OAuth authorization URLs (with PKCE for public mobile clients)
2. Exchanging authorization codes for tokens, including the OIDC ID token

The ID token is what Supabase needs: it is handed to
SupabaseAuthClient.sign_in_with_id_token("google", id_token).
"""
import base64
import hashlib
import secrets
from typing import Optional
from urllib.parse import urlencode

import httpx

from equiauth.config import Settings, get_settings
from equiauth.utils.logger import get_logger
from equiauth.utils.errors import AuthError, TransientAuthError

logger = get_logger(__name__)

# Google OAuth endpoints
GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"


def generate_code_verifier() -> str:
    """Random PKCE code verifier (43-128 chars, URL safe)."""
    return secrets.token_urlsafe(64)[:128]


def code_challenge_for(verifier: str) -> str:
    """S256 challenge for a PKCE verifier."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def get_oauth_url(
    state: Optional[str] = None,
    code_verifier: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> str:
    """
    Generate Google OAuth authorization URL.

    The user is sent to this URL to grant permissions. Google redirects back
    to the app's redirect URI with a code.

    Args:
        state: Opaque CSRF state echoed back on the redirect
        code_verifier: PKCE verifier; its S256 challenge is added to the URL
        settings: Settings override (defaults to environment)

    Returns:
        OAuth authorization URL string
    """
    settings = settings or get_settings()
    params = {
        "client_id": settings.google_client_id,
        "redirect_uri": settings.google_redirect_uri,
        "response_type": "code",
        "scope": " ".join(settings.google_scopes),
        "access_type": "offline",  # Request refresh token
        "prompt": "consent",
    }
    if state:
        params["state"] = state
    if code_verifier:
        params["code_challenge"] = code_challenge_for(code_verifier)
        params["code_challenge_method"] = "S256"

    url = f"{GOOGLE_AUTH_URL}?{urlencode(params)}"
    logger.info("Generated Google OAuth URL")
    return url


async def exchange_code_for_tokens(
    code: str,
    code_verifier: Optional[str] = None,
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> dict:
    """
    Exchange authorization code for Google tokens.

    Args:
        code: Authorization code from the Google redirect
        code_verifier: PKCE verifier used when building the auth URL
        settings: Settings override (defaults to environment)
        transport: Optional httpx transport (tests)

    Returns:
        Dict with id_token, access_token, refresh_token, expires_in

    Raises:
        AuthError: If Google rejects the code or returns no ID token
        TransientAuthError: If Google cannot be reached
    """
    settings = settings or get_settings()
    data = {
        "client_id": settings.google_client_id,
        "code": code,
        "grant_type": "authorization_code",
        "redirect_uri": settings.google_redirect_uri,
    }
    if settings.google_client_secret:
        data["client_secret"] = settings.google_client_secret
    if code_verifier:
        data["code_verifier"] = code_verifier

    async with httpx.AsyncClient(timeout=settings.http_timeout, transport=transport) as client:
        try:
            response = await client.post(GOOGLE_TOKEN_URL, data=data)
        except httpx.RequestError as e:
            logger.error(f"Token exchange request failed: {e}")
            raise TransientAuthError("Failed to connect to Google for authentication")

    if response.status_code != 200:
        try:
            error_data = response.json()
        except ValueError:
            error_data = {}
        logger.error(f"Token exchange failed: {response.status_code} {error_data.get('error', '')}")
        raise AuthError(
            f"Failed to exchange code: {error_data.get('error_description', 'Unknown error')}"
        )

    tokens = response.json()
    if not tokens.get("id_token"):
        logger.error("Token exchange returned no id_token (is the openid scope requested?)")
        raise AuthError("Google did not return an identity token")

    logger.info("Successfully exchanged code for Google tokens")
    return {
        "id_token": tokens["id_token"],
        "access_token": tokens.get("access_token"),
        "refresh_token": tokens.get("refresh_token"),  # May not be present on re-auth
        "expires_in": tokens.get("expires_in", 3600),
    }
