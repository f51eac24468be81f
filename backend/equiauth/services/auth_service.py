"""
Account service.

This module covers the explicit account actions that sit beside the
session coordinator:
1. Registration with rider profile metadata
2. Password recovery and password change
3. Google OAuth URL generation for the redirect flow

Every action returns an AuthResult; provider failures become user-facing
messages instead of exceptions.
"""
import re
import unicodedata
from typing import Optional

from equiauth.config import Settings, get_settings
from equiauth.integrations.google_auth import get_oauth_url
from equiauth.integrations.supabase_auth import SupabaseAuthClient
from equiauth.models.auth import AuthResult, RegisterData
from equiauth.utils.errors import AppError, InvalidCredentialError
from equiauth.utils.logger import get_logger

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MIN_PASSWORD_LENGTH = 6
MIN_AGE, MAX_AGE = 13, 120
MAX_RIDING_EXPERIENCE = 80
DEFAULT_DESCRIPTION = "Equestrian enthusiast"
NAME_PUNCTUATION = "-'."


def is_valid_email(email: str) -> bool:
    return bool(EMAIL_PATTERN.match(email or ""))


def is_valid_name(name: str) -> bool:
    """2-50 characters of letters (any script), spaces, hyphens, apostrophes, dots."""
    if not name or not 2 <= len(name) <= 50:
        return False
    return all(
        ch.isalpha()
        or ch.isspace()
        or ch in NAME_PUNCTUATION
        or unicodedata.category(ch).startswith("M")
        for ch in name
    )


def validate_registration(data: RegisterData) -> Optional[str]:
    """Return the first validation error message, or None if the data is acceptable."""
    if not data.email or not data.password or not data.name or not data.age:
        return "All fields are required"
    if len(data.password) < MIN_PASSWORD_LENGTH:
        return "Password must be at least 6 characters long"
    if not MIN_AGE <= data.age <= MAX_AGE:
        return "Age must be between 13 and 120"
    if data.riding_experience is not None and not 0 <= data.riding_experience <= MAX_RIDING_EXPERIENCE:
        return "Riding experience must be between 0 and 80 years"
    if not is_valid_email(data.email):
        return "Please enter a valid email address"
    if not is_valid_name(data.name):
        return "Name must be 2-50 characters and contain only letters, spaces, hyphens, and apostrophes"
    return None


class AuthService:
    """
    Account actions against the identity provider.

    Usage:
        service = AuthService(identity)
        result = await service.register(RegisterData(...))
        result = await service.reset_password("rider@example.com")
    """

    def __init__(self, identity: SupabaseAuthClient, settings: Optional[Settings] = None):
        self.identity = identity
        self.settings = settings or get_settings()

    async def register(self, data: RegisterData) -> AuthResult:
        """
        Create an account.

        Profile fields travel as user metadata; the database trigger builds
        the profile row from them. When e-mail confirmation is disabled the
        provider also signs the user in, which reaches the coordinator as a
        SIGNED_IN event.
        """
        error = validate_registration(data)
        if error:
            return AuthResult(error=error)

        logger.info(f"Registering user: {data.email}")
        metadata = {
            "name": data.name.strip(),
            "age": data.age,
            "description": (data.description or "").strip() or DEFAULT_DESCRIPTION,
            "riding_experience": data.riding_experience or 0,
        }
        try:
            user, _ = await self.identity.sign_up(data.email, data.password, metadata)
        except AppError as e:
            logger.error(f"Registration failed for {data.email}: {e.message}")
            return AuthResult(error=e.message)
        except Exception as e:
            logger.error(f"Unexpected registration error: {e}")
            return AuthResult(error="An unexpected error occurred. Please try again.")

        logger.info(f"User registered successfully: {user.id}")
        return AuthResult(user=user)

    async def reset_password(self, email: str) -> AuthResult:
        """Send a recovery e-mail."""
        if not email:
            return AuthResult(error="Email is required")
        if not is_valid_email(email):
            return AuthResult(error="Please enter a valid email address")

        try:
            await self.identity.reset_password_for_email(email)
        except AppError as e:
            logger.error(f"Password reset error: {e.message}")
            return AuthResult(error=e.message)
        except Exception as e:
            logger.error(f"Unexpected password reset error: {e}")
            return AuthResult(error="Failed to send password reset email.")

        logger.info("Password reset email sent successfully")
        return AuthResult()

    async def update_password(self, new_password: str) -> AuthResult:
        """Change the signed-in user's password."""
        if not new_password:
            return AuthResult(error="New password is required")
        if len(new_password) < MIN_PASSWORD_LENGTH:
            return AuthResult(error="Password must be at least 6 characters long")

        try:
            user = await self.identity.update_user({"password": new_password})
        except InvalidCredentialError:
            return AuthResult(error="You must be signed in to change your password")
        except AppError as e:
            logger.error(f"Password update error: {e.message}")
            return AuthResult(error=e.message)
        except Exception as e:
            logger.error(f"Unexpected password update error: {e}")
            return AuthResult(error="Failed to update password.")

        logger.info("Password updated successfully")
        return AuthResult(user=user)

    def get_google_oauth_url(self, state: Optional[str] = None, code_verifier: Optional[str] = None) -> str:
        """
        Google authorization URL for the redirect flow.

        The redirect's code (and the same code_verifier) then go to
        coordinator.sign_in({"provider": "google", "code": ..., "code_verifier": ...}).
        """
        return get_oauth_url(state=state, code_verifier=code_verifier, settings=self.settings)
