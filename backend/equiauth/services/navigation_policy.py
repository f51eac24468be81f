"""
Entry route policy.

Decides which screen group an app should show for a given auth snapshot.
Pure: nothing here navigates, it only answers "where should we be".
"""
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from equiauth.config import Settings
from equiauth.models.auth import AuthSnapshot


class Route(str, Enum):
    SPLASH = "splash"
    WELCOME = "welcome"
    LOGIN = "login"
    MAIN = "main"


PROTECTED_ROUTES = {Route.MAIN}


class EntryRoutePolicy(BaseModel):
    """
    skip_welcome_for_authenticated: signed-in users go straight to MAIN.
    When off, they see WELCOME first like everyone else.
    """
    skip_welcome_for_authenticated: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "EntryRoutePolicy":
        return cls(skip_welcome_for_authenticated=settings.skip_welcome_for_authenticated)


def resolve_entry_route(
    snapshot: AuthSnapshot,
    has_used_app: bool,
    policy: Optional[EntryRoutePolicy] = None,
) -> Route:
    """
    Route for the current auth snapshot.

    Args:
        snapshot: Current auth state
        has_used_app: Whether this device has seen a signed-in user before
        policy: Entry policy, defaults to skipping WELCOME for signed-in users

    Returns:
        SPLASH while loading, otherwise WELCOME / LOGIN / MAIN
    """
    policy = policy or EntryRoutePolicy()

    if snapshot.loading:
        return Route.SPLASH

    if snapshot.is_authenticated:
        return Route.MAIN if policy.skip_welcome_for_authenticated else Route.WELCOME

    # Returning riders already know the app
    return Route.LOGIN if has_used_app else Route.WELCOME


def guard_route(requested: Route, snapshot: AuthSnapshot, has_used_app: bool,
                policy: Optional[EntryRoutePolicy] = None) -> Route:
    """
    Route to actually show when `requested` is asked for.

    Anonymous users never reach protected routes; signed-in users asking for
    an entry screen are sent on per the policy.
    """
    if snapshot.loading:
        return Route.SPLASH
    if requested in PROTECTED_ROUTES and not snapshot.is_authenticated:
        return resolve_entry_route(snapshot, has_used_app, policy)
    if requested in (Route.WELCOME, Route.LOGIN, Route.SPLASH) and snapshot.is_authenticated:
        return resolve_entry_route(snapshot, has_used_app, policy)
    return requested
