"""
Single live session state for the process.

The store starts in Loading (nothing reported by the identity provider yet) and
has exactly one writer, the SessionResolver. Every other component reads the
current state or observes changes through `observe()`.
"""

import asyncio
from collections.abc import AsyncIterator

from carewatch.domain.models import Loading, Resolved, Session, SessionState, SignedOut
from carewatch.services.contracts import logger


class SessionStore:
    """Injectable holder of the current SessionState."""

    def __init__(self) -> None:
        self._state: SessionState = Loading()
        self._observers: set[asyncio.Queue[SessionState]] = set()
        self.logger = logger.bind(component="session_store")

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session(self) -> Session | None:
        """The resolved session, or None while loading, signed out or invalid."""
        if isinstance(self._state, Resolved):
            return self._state.session
        return None

    def publish(self, state: SessionState) -> None:
        """Replace the live state and notify observers. Repeats are dropped."""
        if state == self._state:
            return
        previous = self._state
        self._state = state
        self.logger.debug("session_state_changed", previous=previous.kind, current=state.kind)
        for queue in self._observers:
            queue.put_nowait(state)

    def reset(self) -> None:
        self.publish(SignedOut())

    async def observe(self) -> AsyncIterator[SessionState]:
        """Yield the current state, then every state published after it."""
        queue: asyncio.Queue[SessionState] = asyncio.Queue()
        self._observers.add(queue)
        try:
            yield self._state
            while True:
                yield await queue.get()
        finally:
            self._observers.discard(queue)

    @property
    def observer_count(self) -> int:
        return len(self._observers)
