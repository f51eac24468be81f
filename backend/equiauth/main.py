"""
Composition root.

Wires the identity client, local store, credential store, auth state store,
session coordinator and account service together. Nothing below this module
reaches for globals; everything is passed in here.
"""
from dataclasses import dataclass
from typing import Optional

import httpx

from equiauth.config import Settings, get_settings
from equiauth.integrations.local_store import FileStore, KeyValueStore, MemoryStore
from equiauth.integrations.supabase_auth import SupabaseAuthClient
from equiauth.services.auth_service import AuthService
from equiauth.services.auth_state import AuthStateStore
from equiauth.services.credential_store import CredentialStore
from equiauth.services.navigation_policy import EntryRoutePolicy
from equiauth.services.session_coordinator import SessionCoordinator
from equiauth.utils.logger import get_logger, setup_logging

logger = get_logger(__name__)


@dataclass
class AuthStack:
    settings: Settings
    storage: KeyValueStore
    identity: SupabaseAuthClient
    credentials: CredentialStore
    state: AuthStateStore
    coordinator: SessionCoordinator
    accounts: AuthService
    entry_policy: EntryRoutePolicy


def create_auth_stack(
    settings: Optional[Settings] = None,
    storage: Optional[KeyValueStore] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    configure_logging: bool = True,
) -> AuthStack:
    """
    Build a ready-to-start auth stack.

    Args:
        settings: Settings override (defaults to environment)
        storage: Store override; otherwise a FileStore at settings.storage_path,
            or a MemoryStore when no path is configured
        transport: Optional httpx transport shared by the HTTP clients (tests)
        configure_logging: Set up root logging from settings

    Usage:
        stack = create_auth_stack()
        await stack.coordinator.start()
    """
    settings = settings or get_settings()
    if configure_logging:
        setup_logging(settings.log_level, settings.log_json)

    if storage is None:
        storage = FileStore(settings.storage_path) if settings.storage_path else MemoryStore()

    credentials = CredentialStore(storage, namespace=settings.storage_namespace)
    identity = SupabaseAuthClient(
        settings.supabase_url,
        settings.supabase_anon_key,
        storage=storage,
        storage_key=credentials.session_key,
        timeout=settings.http_timeout,
        expiry_margin=settings.expiry_margin,
        transport=transport,
    )
    state = AuthStateStore()
    coordinator = SessionCoordinator(identity, credentials, settings=settings, state=state)

    logger.info(f"Auth stack created for {settings.supabase_url} ({type(storage).__name__})")
    return AuthStack(
        settings=settings,
        storage=storage,
        identity=identity,
        credentials=credentials,
        state=state,
        coordinator=coordinator,
        accounts=AuthService(identity, settings=settings),
        entry_policy=EntryRoutePolicy.from_settings(settings),
    )
