"""
Exceptions raised by the recording core.

Lookup misses are not errors: store getters return None for unknown ids.
"""


class ChatcastError(Exception):
    """Base class for recording core errors."""


class SessionValidationError(ChatcastError):
    """Input rejected before any state was mutated (empty title, missing session_id, ...)."""


class InvalidTransitionError(SessionValidationError):
    """Requested status change is not allowed by the session lifecycle."""

    def __init__(self, session_id: str, current: str | None, requested: str):
        self.session_id = session_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Session {session_id} cannot move from {current} to {requested}"
        )


class StoreError(ChatcastError):
    """The underlying store was unreachable or a write failed."""
