"""
Session coordinator.

Reconciles auth state from three sources into a single (user, loading) pair:
1. The identity client's own session accessor
2. An OAuth credential cached in the local store
3. A stored bearer token checked directly against GET /auth/v1/user

Every provider event bumps a generation counter. Bootstrap and refresh
snapshot the counter before they suspend and drop their result if it moved,
so an explicit SIGNED_IN / SIGNED_OUT always beats a slower check that was
already in flight.

Usage:
    coordinator = SessionCoordinator(identity, credentials, settings)
    unsubscribe = coordinator.state.subscribe(render)
    await coordinator.start()
    ...
    await coordinator.on_app_state_change("active")
    await coordinator.sign_out()
    await coordinator.close()
"""
import asyncio
from datetime import timedelta
from typing import Coroutine, Optional, Set, Tuple, Union

from equiauth.config import Settings, get_settings
from equiauth.integrations.supabase_auth import Subscription, SupabaseAuthClient
from equiauth.models.auth import AuthEvent, AuthResult
from equiauth.models.session import AuthState, Session, SessionInfo, utcnow
from equiauth.models.user import AuthUser, Provider
from equiauth.services.auth_state import AuthStateStore
from equiauth.services.credential_store import CredentialStore
from equiauth.services.sign_in import SignInStrategy, build_strategy
from equiauth.utils.errors import (
    AppError,
    InvalidCredentialError,
    SessionTimeoutError,
    SignInCancelledError,
)
from equiauth.utils.logger import get_logger
from equiauth.utils.timeouts import race_with_timeout
from equiauth.utils.tokens import token_expiry

logger = get_logger(__name__)

APP_STATES = ("active", "background", "inactive")


class SessionCoordinator:
    """
    Single source of truth for "who is signed in".

    Owns the in-memory Session and the revalidation timer. The local store
    is a write-through cache; once a live Session exists it is never read
    back as authority.
    """

    def __init__(
        self,
        identity: SupabaseAuthClient,
        credentials: CredentialStore,
        settings: Optional[Settings] = None,
        state: Optional[AuthStateStore] = None,
    ):
        self.identity = identity
        self.credentials = credentials
        self.settings = settings or get_settings()
        self.state = state or AuthStateStore()
        self._session: Optional[Session] = None
        self._generation = 0
        self._subscription: Optional[Subscription] = None
        self._revalidation_task: Optional[asyncio.Task] = None
        self._background_tasks: Set[asyncio.Task] = set()
        self._app_state = "active"
        # (user_id, provider) of a cached credential being restored
        self._restoring: Optional[Tuple[str, Provider]] = None

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def user(self) -> Optional[AuthUser]:
        return self._session.user if self._session else None

    @property
    def loading(self) -> bool:
        return self.state.snapshot.loading

    @property
    def revalidation_active(self) -> bool:
        return self._revalidation_task is not None and not self._revalidation_task.done()

    # Lifecycle

    async def start(self) -> Optional[AuthUser]:
        """Listen for provider events, then bootstrap."""
        if self._subscription is None:
            self._subscription = self.identity.on_auth_state_change(self.on_auth_event)
        return await self.bootstrap()

    async def close(self) -> None:
        """Release the event subscription and cancel every timer and background task."""
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

        tasks = list(self._background_tasks)
        if self._revalidation_task is not None:
            tasks.append(self._revalidation_task)
            self._revalidation_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background_tasks.clear()

    # State transitions. Synchronous so subscribers see them before the
    # caller's next suspension point.

    def _adopt(self, session: Session) -> None:
        self._session = session
        self.state.update(
            user=session.user,
            loading=False,
            state=AuthState.AUTHENTICATED,
            error=None,
        )
        self._start_revalidation()

    def _clear(self) -> None:
        self._session = None
        self._stop_revalidation()
        self.state.update(user=None, loading=False, state=AuthState.ANONYMOUS)

    def _finish_loading(self) -> None:
        if self.state.snapshot.state is AuthState.UNINITIALIZED:
            self.state.update(loading=False, state=AuthState.ANONYMOUS)
        else:
            self.state.update(loading=False)

    def _keep_provider(self, session: Session) -> Session:
        # GoTrue reports the account's first provider; a live session or the
        # credential being restored knows better
        current = self._session
        if current is not None and current.user_id == session.user_id:
            provider = current.provider
        elif self._restoring is not None and self._restoring[0] == session.user_id:
            provider = self._restoring[1]
        else:
            return session
        if provider != session.provider:
            return session.model_copy(update={"provider": provider})
        return session

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def _record_sign_in(self, session: Session) -> None:
        await self.credentials.save_cached_credential(session)
        await self.credentials.store_last_login_time()
        await self.credentials.mark_user_as_used_app()

    # Bootstrap

    async def bootstrap(self) -> Optional[AuthUser]:
        """
        Establish the initial auth state.

        Tries the provider accessor, then the cached OAuth credential, then
        the stored bearer token. Always ends with loading=False, whatever
        happens along the way.

        Returns:
            The resolved user, or None
        """
        generation = self._generation
        try:
            session = await self._resolve_initial_session(generation)

            if generation != self._generation:
                logger.info("Auth event arrived during bootstrap, discarding bootstrap result")
            elif session is not None:
                logger.info(f"Bootstrap resolved session for: {session.email}")
                self._adopt(session)
                await self.credentials.mark_user_as_used_app()
            elif self._session is None:
                logger.info("Bootstrap found no session")
                self._clear()
        except Exception as e:
            logger.error(f"Bootstrap failed unexpectedly: {e}")
        finally:
            self._finish_loading()

        return self.user

    async def _resolve_initial_session(self, generation: int) -> Optional[Session]:
        session = await self._session_from_provider()
        if session is not None or generation != self._generation:
            return session

        session = await self._session_from_cached_credential()
        if session is not None or generation != self._generation:
            return session

        return await self._session_from_bearer_token()

    async def _session_from_provider(self) -> Optional[Session]:
        """Tier 1: provider accessor, fast attempt then one slow retry."""
        try:
            session = await race_with_timeout(
                self.identity.get_session(),
                self.settings.fast_session_timeout,
                "get_session",
            )
        except SessionTimeoutError:
            logger.warning("Fast session check timed out, retrying with longer timeout")
            try:
                session = await race_with_timeout(
                    self.identity.get_session(),
                    self.settings.slow_session_timeout,
                    "get_session retry",
                )
            except Exception as e:
                logger.warning(f"Session accessor unavailable: {e}")
                return None
        except Exception as e:
            logger.warning(f"Session accessor failed: {e}")
            return None

        if session is None:
            return None
        if session.is_expired():
            logger.info("Provider returned an expired session, ignoring")
            return None
        return session

    async def _session_from_cached_credential(self) -> Optional[Session]:
        """Tier 2: OAuth credential from the local store, injected into the provider."""
        credential = await self.credentials.load_cached_credential()
        if credential is None:
            return None

        logger.info(f"Restoring cached {credential.provider.value} session for: {credential.user.email}")
        self._restoring = (credential.user.id, credential.provider)
        try:
            session = await race_with_timeout(
                self.identity.set_session(credential.access_token, credential.refresh_token),
                self.settings.slow_session_timeout,
                "restore cached session",
            )
        except InvalidCredentialError:
            logger.info("Cached credential rejected by provider, purging")
            await self.credentials.clear_cached_credential()
            return None
        except Exception as e:
            logger.warning(f"Could not validate cached credential, keeping it: {e}")
            return None
        finally:
            self._restoring = None

        if session.provider != credential.provider:
            session = session.model_copy(update={"provider": credential.provider})
        return session

    async def _session_from_bearer_token(self) -> Optional[Session]:
        """Tier 3: stored bearer token checked against GET /auth/v1/user."""
        tokens = await self.credentials.read_bearer_token()
        if tokens is None:
            return None
        access_token, refresh_token = tokens

        try:
            user = await race_with_timeout(
                self.identity.get_user(access_token),
                self.settings.rest_timeout,
                "GET /auth/v1/user",
            )
        except InvalidCredentialError:
            logger.info("Stored bearer token rejected, clearing it")
            await self.credentials.clear_bearer_token()
            return None
        except Exception as e:
            logger.warning(f"REST user check failed, treating as transient: {e}")
            return None

        expires_at = token_expiry(access_token) or utcnow() + timedelta(hours=1)
        return Session.from_user(user, access_token, refresh_token, expires_at)

    # Provider events

    async def on_auth_event(self, event: AuthEvent, session: Optional[Session]) -> None:
        """
        Apply a provider change notification.

        The in-memory update happens before the first await, so callers never
        wait on persistence or verification to see the new user.
        """
        self._generation += 1
        logger.info(f"Auth event {event.value} ({session.email if session else 'no user'})")

        if event is AuthEvent.SIGNED_OUT:
            self._clear()
            await self.credentials.clear_session_data()
            return

        if session is None:
            return

        current = self._session
        if event is AuthEvent.TOKEN_REFRESHED and current is not None and current.user_id == session.user_id:
            self._session = current.with_tokens(session.access_token, session.refresh_token, session.expires_at)
            self.state.update(loading=False)
            await self.credentials.update_cached_tokens(self._session)
            return

        session = self._keep_provider(session)
        self._adopt(session)

        if event is AuthEvent.USER_UPDATED:
            return

        await self._record_sign_in(session)
        self._spawn(self._verify_in_background(session))

    async def _verify_in_background(self, session: Session) -> None:
        """Consistency check after SIGNED_IN. Never reverts the adopted session."""
        try:
            user = await race_with_timeout(
                self.identity.get_user(session.access_token),
                self.settings.background_verify_timeout,
                "background verification",
            )
        except Exception as e:
            logger.warning(f"Background verification failed for {session.email}, session kept: {e}")
            return

        if user.id != session.user_id:
            logger.warning(f"Background verification returned user {user.id}, expected {session.user_id}")
        else:
            logger.debug(f"Background verification ok for: {session.email}")

    # Explicit actions

    async def sign_in(self, strategy: Union[SignInStrategy, dict]) -> AuthResult:
        """
        Sign in with any provider.

        Args:
            strategy: A SignInStrategy or a provider config dict

        Returns:
            AuthResult with the user, or a user-facing error message
        """
        try:
            if isinstance(strategy, dict):
                strategy = build_strategy(strategy, settings=self.settings)
            session = await strategy.authenticate(self.identity)
        except SignInCancelledError as e:
            logger.info("Sign in cancelled by user")
            return AuthResult(error=e.message)
        except AppError as e:
            logger.warning(f"Sign in failed: {e.message}")
            return AuthResult(error=f"Login failed: {e.message}")
        except Exception as e:
            logger.error(f"Unexpected sign in error: {e}")
            return AuthResult(error="An unexpected error occurred. Please try again.")

        if strategy.provider.is_oauth and session.provider != strategy.provider:
            session = session.model_copy(update={"provider": strategy.provider})

        # The provider's SIGNED_IN event has usually been applied already
        current = self._session
        already_applied = (
            current is not None
            and current.access_token == session.access_token
            and current.provider == session.provider
        )
        if not already_applied:
            self._generation += 1
            self._adopt(session)
            await self._record_sign_in(session)

        logger.info(f"Signed in via {strategy.provider.value}: {session.email}")
        return AuthResult(user=session.user)

    async def sign_out(self) -> None:
        """
        Sign out. Local state flips first; the provider is told afterwards
        and its failures are only logged.
        """
        self._generation += 1
        self._clear()

        try:
            await self.identity.sign_out()
        except Exception as e:
            logger.warning(f"Provider sign out failed, local state already cleared: {e}")

        await self.credentials.clear_session_data()
        logger.info("User signed out")

    async def refresh(self) -> Optional[AuthUser]:
        """
        Revalidate the held session.

        Token refresh first, then the REST user check. If both fail the
        session is dropped rather than left stale. With nothing held, this
        is a full bootstrap.
        """
        return await self._refresh(keep_on_transient=False)

    async def _refresh(self, keep_on_transient: bool) -> Optional[AuthUser]:
        """
        Args:
            keep_on_transient: Hold on to the session when every failure was
                transient. Background paths pass True; only a rejected
                credential signs the user out there.
        """
        current = self._session
        if current is None:
            return await self.bootstrap()

        generation = self._generation
        failures = []

        try:
            refreshed = await race_with_timeout(
                self.identity.refresh_session(current.refresh_token),
                self.settings.slow_session_timeout,
                "refresh_session",
            )
        except Exception as e:
            logger.warning(f"Token refresh failed, falling back to REST check: {e}")
            failures.append(e)
        else:
            if generation == self._generation and self._session is current:
                self._session = current.with_tokens(
                    refreshed.access_token, refreshed.refresh_token, refreshed.expires_at
                )
                await self.credentials.update_cached_tokens(self._session)
            return self.user

        try:
            user = await race_with_timeout(
                self.identity.get_user(current.access_token),
                self.settings.rest_timeout,
                "GET /auth/v1/user",
            )
        except Exception as e:
            logger.warning(f"REST user check failed: {e}")
            failures.append(e)
        else:
            if generation == self._generation and self._session is current:
                self._session = current.model_copy(update={
                    "email": user.email,
                    "name": user.name,
                    "avatar_url": user.avatar_url,
                })
                self.state.update(user=self._session.user)
            return self.user

        if generation != self._generation:
            logger.info("Auth event arrived during refresh, keeping its outcome")
            return self.user

        rejected = any(isinstance(e, InvalidCredentialError) for e in failures)
        if keep_on_transient and not rejected:
            logger.warning(f"Session for {current.email} could not be revalidated, keeping it until the provider is reachable")
            return None

        logger.warning(f"Session for {current.email} could not be revalidated, signing out locally")
        self._clear()
        if rejected:
            await self.credentials.clear_cached_credential()
            await self.credentials.clear_bearer_token()
        return None

    async def refresh_if_needed(self) -> bool:
        """
        Refresh when the held session expires within the refresh threshold.

        A transient failure leaves the session held and returns False.

        Returns:
            True if the session is fresh or was refreshed
        """
        if self._session is None:
            return False
        if not self._session.expires_within(self.settings.refresh_threshold):
            return True
        logger.info("Session expires soon, refreshing")
        return await self._refresh(keep_on_transient=True) is not None

    async def is_valid(self) -> bool:
        """Ask the provider accessor whether a live session exists. Never raises."""
        try:
            session = await race_with_timeout(
                self.identity.get_session(),
                self.settings.fast_session_timeout,
                "get_session",
            )
        except Exception as e:
            logger.warning(f"Session validity check failed: {e}")
            return False
        return session is not None and not session.is_expired()

    def get_session_info(self) -> SessionInfo:
        session = self._session
        if session is None:
            return SessionInfo(is_valid=False)
        return SessionInfo(
            is_valid=not session.is_expired(),
            expires_at=session.expires_at,
            time_until_expiry=session.seconds_until_expiry(),
        )

    def will_expire_soon(self) -> bool:
        session = self._session
        if session is None or session.is_expired():
            return False
        return session.expires_within(self.settings.refresh_threshold)

    # Revalidation and app lifecycle

    def _start_revalidation(self) -> None:
        if self._app_state != "active" or self._session is None:
            return
        if self.revalidation_active:
            return
        self._revalidation_task = asyncio.create_task(self._revalidation_loop())

    def _stop_revalidation(self) -> None:
        task = self._revalidation_task
        self._revalidation_task = None
        # The loop may be the caller (refresh hard-fail inside a tick)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _revalidation_loop(self) -> None:
        interval = self.settings.revalidation_interval
        while True:
            await asyncio.sleep(interval)
            if self._session is None:
                return
            try:
                if await self.is_valid():
                    await self.refresh_if_needed()
                else:
                    logger.info("Periodic check found session invalid, refreshing")
                    await self._refresh(keep_on_transient=True)
            except Exception as e:
                logger.error(f"Periodic revalidation failed: {e}")
            if self._session is None:
                return

    async def on_app_state_change(self, app_state: str) -> None:
        """
        React to the app moving between foreground and background.

        Leaving the foreground pauses revalidation. Returning does a
        lightweight validity check when a session is held, or a full
        bootstrap when none is.
        """
        if app_state not in APP_STATES:
            logger.warning(f"Ignoring unknown app state: {app_state}")
            return

        previous = self._app_state
        self._app_state = app_state

        if app_state != "active":
            if previous == "active":
                self._stop_revalidation()
            return
        if previous == "active":
            return

        logger.info("App returned to foreground, re-checking session")
        if self._session is None:
            await self.bootstrap()
            return

        self._start_revalidation()
        if not await self.is_valid():
            await self._refresh(keep_on_transient=True)
