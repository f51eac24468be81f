"""
Subscribable auth state.

The coordinator is the only writer. Anything that renders auth state
subscribes and receives a fresh AuthSnapshot on every change.
"""
from typing import Callable, List

from equiauth.models.auth import AuthSnapshot
from equiauth.utils.logger import get_logger

logger = get_logger(__name__)

Listener = Callable[[AuthSnapshot], None]


class AuthStateStore:
    """Holds the current AuthSnapshot and fans changes out to listeners."""

    def __init__(self):
        self._snapshot = AuthSnapshot()
        self._listeners: List[Listener] = []

    @property
    def snapshot(self) -> AuthSnapshot:
        return self._snapshot

    def update(self, **changes) -> AuthSnapshot:
        """Apply changes; listeners are called only if something changed."""
        new_snapshot = self._snapshot.model_copy(update=changes)
        if new_snapshot == self._snapshot:
            return self._snapshot
        self._snapshot = new_snapshot
        for listener in list(self._listeners):
            try:
                listener(new_snapshot)
            except Exception as e:
                logger.error(f"Auth state listener failed: {e}")
        return new_snapshot

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener. Returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe
