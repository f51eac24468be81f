"""
User-related Pydantic models.
"""
from datetime import datetime
from enum import Enum
from pydantic import BaseModel
from typing import Optional


class Provider(str, Enum):
    """How the session was obtained."""
    PASSWORD = "password"
    GOOGLE = "google"
    APPLE = "apple"
    FACEBOOK = "facebook"

    @property
    def is_oauth(self) -> bool:
        return self is not Provider.PASSWORD

    @classmethod
    def from_gotrue(cls, value: Optional[str]) -> "Provider":
        """Map GoTrue's app_metadata.provider ("email" for password users)."""
        try:
            return cls(value)
        except ValueError:
            return cls.PASSWORD


class AuthUser(BaseModel):
    """Authenticated user as seen by the rest of the app."""
    id: str
    email: str
    created_at: Optional[datetime] = None
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    provider: Provider = Provider.PASSWORD

    @classmethod
    def from_gotrue(cls, data: dict) -> "AuthUser":
        """Build from a GoTrue user payload."""
        user_metadata = data.get("user_metadata") or {}
        app_metadata = data.get("app_metadata") or {}
        return cls(
            id=data["id"],
            email=data.get("email") or "",
            created_at=data.get("created_at"),
            name=user_metadata.get("full_name") or user_metadata.get("name"),
            avatar_url=user_metadata.get("avatar_url"),
            provider=Provider.from_gotrue(app_metadata.get("provider")),
        )
