"""
Session-related Pydantic models.
"""
from datetime import datetime, timedelta, timezone
from enum import Enum
from pydantic import BaseModel, ConfigDict, field_validator
from typing import Optional

from equiauth.models.user import AuthUser, Provider


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # Stored blobs from older builds carry naive timestamps
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class AuthState(str, Enum):
    """Coordinator state machine."""
    UNINITIALIZED = "uninitialized"
    AUTHENTICATED = "authenticated"
    ANONYMOUS = "anonymous"


class Session(BaseModel):
    """The current authenticated session. Either fully populated or absent."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    email: str
    created_at: Optional[datetime] = None
    access_token: str
    refresh_token: str
    expires_at: datetime
    provider: Provider = Provider.PASSWORD
    name: Optional[str] = None
    avatar_url: Optional[str] = None

    @field_validator("expires_at")
    @classmethod
    def _utc_expiry(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @property
    def user(self) -> AuthUser:
        return AuthUser(
            id=self.user_id,
            email=self.email,
            created_at=self.created_at,
            name=self.name,
            avatar_url=self.avatar_url,
            provider=self.provider,
        )

    def is_expired(self, margin: float = 0.0) -> bool:
        """True if the access token expires within `margin` seconds."""
        return utcnow() + timedelta(seconds=margin) >= self.expires_at

    def expires_within(self, seconds: float) -> bool:
        return self.is_expired(margin=seconds)

    def seconds_until_expiry(self) -> float:
        return max(0.0, (self.expires_at - utcnow()).total_seconds())

    def with_tokens(self, access_token: str, refresh_token: str, expires_at: datetime) -> "Session":
        """Copy with a new token pair. Identity fields are kept."""
        return self.model_copy(update={
            "access_token": access_token,
            "refresh_token": refresh_token,
            "expires_at": expires_at,
        })

    @classmethod
    def from_user(
        cls,
        user: AuthUser,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
        provider: Optional[Provider] = None,
    ) -> "Session":
        return cls(
            user_id=user.id,
            email=user.email,
            created_at=user.created_at,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            provider=provider or user.provider,
            name=user.name,
            avatar_url=user.avatar_url,
        )


class CachedUser(BaseModel):
    """Minimal user projection kept on disk."""
    id: str
    email: str


class CachedCredential(BaseModel):
    """Durable copy of an OAuth session used across process restarts."""
    provider: Provider
    access_token: str
    refresh_token: str
    expires_at: datetime
    user: CachedUser

    @field_validator("expires_at")
    @classmethod
    def _utc_expiry(cls, value: datetime) -> datetime:
        return _as_utc(value)

    def is_expired(self) -> bool:
        return utcnow() >= self.expires_at

    @classmethod
    def from_session(cls, session: Session) -> "CachedCredential":
        return cls(
            provider=session.provider,
            access_token=session.access_token,
            refresh_token=session.refresh_token,
            expires_at=session.expires_at,
            user=CachedUser(id=session.user_id, email=session.email),
        )


class SessionInfo(BaseModel):
    """Expiry details for the held session."""
    is_valid: bool
    expires_at: Optional[datetime] = None
    time_until_expiry: Optional[float] = None  # seconds
