"""
Custom error classes for session coordination.

Taxonomy:
- TransientAuthError: network trouble, timeouts, provider 5xx. Recovered
  locally as "no session yet".
- InvalidCredentialError: the provider rejected the token (401, failed
  refresh). Treated as signed out, cached credential purged.
- CorruptStorageError: a stored blob could not be parsed. The key is removed.
"""
from typing import Optional


class AppError(Exception):
    """Base application error."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        status_code: int = 500,
        details: Optional[dict] = None
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Convert error to dictionary for diagnostics."""
        return {
            "error": True,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class AuthError(AppError):
    """Authentication related errors."""

    def __init__(self, message: str, code: str = "AUTH_ERROR", status_code: int = 401):
        super().__init__(message, code, status_code=status_code)


class InvalidCredentialError(AuthError):
    """Token was rejected by the identity provider."""

    def __init__(self, message: str = "Your session has expired. Please sign in again."):
        super().__init__(message, "INVALID_CREDENTIAL")


class TransientAuthError(AuthError):
    """Identity provider temporarily unreachable."""

    def __init__(self, message: str = "Couldn't reach the authentication service."):
        super().__init__(message, "AUTH_UNAVAILABLE", status_code=503)


class SessionTimeoutError(TransientAuthError):
    """An auth operation did not settle within its timeout."""

    def __init__(self, operation: str, timeout: float):
        super().__init__(f"{operation} timed out after {timeout:g}s")
        self.code = "AUTH_TIMEOUT"
        self.details = {"operation": operation, "timeout": timeout}


class RateLimitError(AuthError):
    """Rate limit exceeded."""

    def __init__(self):
        super().__init__(
            "Too many requests. Please wait a moment.",
            "RATE_LIMITED",
            status_code=429
        )


class SignInCancelledError(AuthError):
    """User backed out of a provider sign-in."""

    def __init__(self):
        super().__init__("Sign in was cancelled", "SIGN_IN_CANCELLED", status_code=400)


class ProviderNotAvailableError(AuthError):
    """Sign-in provider is not configured or not supported here."""

    def __init__(self, provider: str):
        super().__init__(
            f"{provider.capitalize()} Sign In is not available",
            "PROVIDER_NOT_AVAILABLE",
            status_code=400,
        )


class CorruptStorageError(AppError):
    """A persisted value could not be decoded."""

    def __init__(self, key: str):
        super().__init__(
            f"Stored value for '{key}' is corrupt",
            "CORRUPT_STORAGE",
            status_code=500,
            details={"key": key},
        )


class InvalidRequestError(AppError):
    """Invalid input."""

    def __init__(self, message: str = "Invalid request format."):
        super().__init__(message, "INVALID_REQUEST", status_code=400)
