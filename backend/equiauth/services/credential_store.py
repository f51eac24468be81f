"""
Credential persistence on top of the local key-value store.

This module owns every auth-related key:
- the identity client's session blob (read here only as a bearer-token source)
- the OAuth cached credential and its provider tag
- last-login timestamp, user preferences, app settings
- the "user has used the app" flag, which survives sign-out

Storage failures are logged and swallowed: a broken disk must never take
down sign-in or sign-out. Corrupt values are deleted so the next start is
clean.
"""
import json
from datetime import datetime
from typing import List, Optional, Tuple

from pydantic import ValidationError

from equiauth.integrations.local_store import KeyValueStore
from equiauth.models.session import CachedCredential, Session, utcnow
from equiauth.utils.errors import CorruptStorageError
from equiauth.utils.logger import get_logger

logger = get_logger(__name__)

LAST_LOGIN_TIME_KEY = "last_login_time"
USER_PREFERENCES_KEY = "user_preferences"
APP_SETTINGS_KEY = "app_settings"
USER_HAS_USED_APP_KEY = "user_has_used_app"


class CredentialStore:
    """
    Typed access to persisted auth state.

    Usage:
        store = CredentialStore(FileStore(path), namespace="equihub")
        await store.save_cached_credential(session)
        credential = await store.load_cached_credential()
        await store.clear_session_data()
    """

    def __init__(self, storage: KeyValueStore, namespace: str = "equihub"):
        self.storage = storage
        self.session_key = f"{namespace}.auth.session"
        self.oauth_session_key = f"{namespace}.auth.oauth_session"
        self.oauth_provider_key = f"{namespace}.auth.oauth_provider"

    @property
    def session_keys(self) -> List[str]:
        """Keys removed on sign-out. The used-app flag is deliberately absent."""
        return [
            self.session_key,
            self.oauth_session_key,
            self.oauth_provider_key,
            LAST_LOGIN_TIME_KEY,
            USER_PREFERENCES_KEY,
            APP_SETTINGS_KEY,
        ]

    @staticmethod
    def _decode_object(key: str, raw: str) -> dict:
        try:
            value = json.loads(raw)
        except ValueError:
            raise CorruptStorageError(key)
        if not isinstance(value, dict):
            raise CorruptStorageError(key)
        return value

    async def _remove(self, key: str) -> bool:
        try:
            await self.storage.remove_item(key)
            return True
        except Exception as e:
            logger.warning(f"Failed to clear {key}: {e}")
            return False

    # Last login

    async def store_last_login_time(self) -> None:
        try:
            await self.storage.set_item(LAST_LOGIN_TIME_KEY, utcnow().isoformat())
        except Exception as e:
            logger.error(f"Error storing last login time: {e}")

    async def get_last_login_time(self) -> Optional[datetime]:
        try:
            raw = await self.storage.get_item(LAST_LOGIN_TIME_KEY)
        except Exception as e:
            logger.error(f"Error getting last login time: {e}")
            return None
        if not raw:
            return None
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            logger.warning("Corrupt last login time, removing")
            await self._remove(LAST_LOGIN_TIME_KEY)
            return None

    # Preferences

    async def store_user_preferences(self, preferences: dict) -> None:
        try:
            await self.storage.set_item(USER_PREFERENCES_KEY, json.dumps(preferences))
        except Exception as e:
            logger.error(f"Error storing user preferences: {e}")

    async def get_user_preferences(self) -> Optional[dict]:
        try:
            raw = await self.storage.get_item(USER_PREFERENCES_KEY)
        except Exception as e:
            logger.error(f"Error getting user preferences: {e}")
            return None
        if not raw:
            return None
        try:
            return self._decode_object(USER_PREFERENCES_KEY, raw)
        except CorruptStorageError as e:
            logger.warning(f"{e.message}, removing")
            await self._remove(USER_PREFERENCES_KEY)
            return None

    # Used-app flag

    async def mark_user_as_used_app(self) -> None:
        try:
            await self.storage.set_item(USER_HAS_USED_APP_KEY, "true")
        except Exception as e:
            logger.error(f"Error marking user as used app: {e}")

    async def has_user_used_app(self) -> bool:
        try:
            return await self.storage.get_item(USER_HAS_USED_APP_KEY) == "true"
        except Exception as e:
            logger.error(f"Error checking if user has used app: {e}")
            return False

    # OAuth cached credential

    async def save_cached_credential(self, session: Session) -> None:
        """Write-through copy of an OAuth session."""
        if not session.provider.is_oauth:
            return
        credential = CachedCredential.from_session(session)
        try:
            await self.storage.set_item(self.oauth_session_key, credential.model_dump_json())
            await self.storage.set_item(self.oauth_provider_key, session.provider.value)
        except Exception as e:
            logger.error(f"Error caching {session.provider.value} credential: {e}")

    async def load_cached_credential(self) -> Optional[CachedCredential]:
        """
        Read the cached OAuth credential.

        Returns None when absent, corrupt or expired. Corrupt and expired
        values are removed.
        """
        try:
            raw = await self.storage.get_item(self.oauth_session_key)
        except Exception as e:
            logger.error(f"Error reading cached credential: {e}")
            return None
        if not raw:
            return None

        try:
            credential = CachedCredential.model_validate_json(raw)
        except ValidationError:
            logger.warning("Cached OAuth credential is corrupt, removing")
            await self.clear_cached_credential()
            return None

        if credential.is_expired():
            logger.info(f"Cached {credential.provider.value} credential expired, removing")
            await self.clear_cached_credential()
            return None

        return credential

    async def update_cached_tokens(self, session: Session) -> None:
        """Rewrite the token pair of an existing cached credential for the same user."""
        try:
            raw = await self.storage.get_item(self.oauth_session_key)
        except Exception as e:
            logger.error(f"Error reading cached credential: {e}")
            return
        if not raw:
            return
        try:
            credential = CachedCredential.model_validate_json(raw)
        except ValidationError:
            await self.clear_cached_credential()
            return
        if credential.user.id != session.user_id:
            return

        updated = credential.model_copy(update={
            "access_token": session.access_token,
            "refresh_token": session.refresh_token,
            "expires_at": session.expires_at,
        })
        try:
            await self.storage.set_item(self.oauth_session_key, updated.model_dump_json())
        except Exception as e:
            logger.error(f"Error updating cached credential tokens: {e}")

    async def clear_cached_credential(self) -> None:
        await self._remove(self.oauth_session_key)
        await self._remove(self.oauth_provider_key)

    # Bearer token (identity client's persisted session)

    async def read_bearer_token(self) -> Optional[Tuple[str, str]]:
        """
        (access_token, refresh_token) from the persisted session blob.

        Only the one well-known key is consulted.
        """
        try:
            raw = await self.storage.get_item(self.session_key)
        except Exception as e:
            logger.error(f"Error reading stored session: {e}")
            return None
        if not raw:
            return None

        try:
            blob = self._decode_object(self.session_key, raw)
            if not isinstance(blob.get("access_token"), str):
                raise CorruptStorageError(self.session_key)
        except CorruptStorageError as e:
            logger.warning(f"{e.message}, removing")
            await self._remove(self.session_key)
            return None

        return blob["access_token"], str(blob.get("refresh_token") or "")

    async def clear_bearer_token(self) -> None:
        await self._remove(self.session_key)

    # Bulk

    async def clear_session_data(self) -> None:
        """Remove every session/credential key. Individual failures are logged."""
        failed = [key for key in self.session_keys if not await self._remove(key)]
        if failed:
            logger.warning(f"Session data partially cleared, failed keys: {failed}")
        else:
            logger.info("Session data cleared")

    async def reset_app_state(self) -> None:
        """Remove everything, used-app flag included."""
        try:
            keys = await self.storage.get_all_keys()
            await self.storage.multi_remove(keys)
            logger.info("App state reset completely")
        except Exception as e:
            logger.error(f"Error resetting app state: {e}")
