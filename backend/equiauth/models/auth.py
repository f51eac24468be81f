"""
Auth flow Pydantic models.
"""
from enum import Enum
from pydantic import BaseModel
from typing import Optional

from equiauth.models.session import AuthState
from equiauth.models.user import AuthUser


class AuthEvent(str, Enum):
    """Change notifications pushed by the identity provider."""
    INITIAL_SESSION = "INITIAL_SESSION"
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"


class AuthResult(BaseModel):
    """Outcome of an explicit auth action. Exactly one side is meaningful."""
    user: Optional[AuthUser] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class RegisterData(BaseModel):
    """Registration form input."""
    email: str
    password: str
    name: str
    age: Optional[int] = None
    description: Optional[str] = None
    riding_experience: Optional[int] = None


class AuthSnapshot(BaseModel):
    """What subscribers of the auth state store see."""
    user: Optional[AuthUser] = None
    loading: bool = True
    state: AuthState = AuthState.UNINITIALIZED
    error: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None
