"""
Library configuration loaded from environment variables.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    """Session coordination settings from environment variables."""

    # Supabase project
    supabase_url: str = "http://localhost:54321"
    supabase_anon_key: str = ""

    # Google OAuth
    google_client_id: str = ""
    google_client_secret: str = ""
    google_redirect_uri: str = "equihub://auth/callback"

    # Timeouts (seconds)
    fast_session_timeout: float = 3.0
    slow_session_timeout: float = 15.0
    rest_timeout: float = 10.0
    background_verify_timeout: float = 10.0
    http_timeout: float = 30.0

    # Revalidation
    revalidation_interval: float = 300.0
    refresh_threshold: float = 3600.0  # refresh when expiring within 1 hour
    expiry_margin: float = 60.0

    # Local persistent store
    storage_namespace: str = "equihub"
    storage_path: Optional[str] = None

    # Entry route policy
    skip_welcome_for_authenticated: bool = True

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    model_config = SettingsConfigDict(
        env_prefix="EQUIAUTH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def max_bootstrap_time(self) -> float:
        """Upper bound for a full bootstrap pass (every tier timing out)."""
        return (
            self.fast_session_timeout
            + self.slow_session_timeout * 2
            + self.rest_timeout
        )

    @property
    def google_scopes(self) -> list[str]:
        return ["openid", "email", "profile"]


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
