"""
Helpers for reading claims out of Supabase access tokens.

Tokens are decoded WITHOUT signature verification. The identity provider is
the only party that can vouch for a token; these helpers just read the
expiry and subject so stale blobs can be skipped before a network call.
"""
import jwt
from datetime import datetime, timezone
from typing import Optional


def decode_claims(access_token: str) -> Optional[dict]:
    """Return the unverified JWT claims, or None if the token is malformed."""
    try:
        return jwt.decode(
            access_token,
            options={"verify_signature": False, "verify_exp": False},
            algorithms=["HS256", "RS256", "ES256"],
        )
    except jwt.InvalidTokenError:
        return None


def token_expiry(access_token: str) -> Optional[datetime]:
    """Expiry time from the `exp` claim."""
    claims = decode_claims(access_token)
    if not claims or "exp" not in claims:
        return None
    try:
        return datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None

