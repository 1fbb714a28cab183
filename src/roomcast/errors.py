"""Exception taxonomy for the chat engine."""


class ChatError(Exception):
    """Base class for errors raised by the chat engine."""

    code = "error"


class ValidationError(ChatError):
    """Inbound event is malformed or its content is rejected.

    Reported to the originating connection only, never persisted.
    """

    code = "validation"


class NotFoundError(ChatError):
    """Event references an unknown room, user or connection."""

    code = "not_found"


class PersistenceError(ChatError):
    """A store call failed. The caller may retry.

    Usage:
        raise PersistenceError(OSError("store unavailable"))
    """

    code = "persistence"

    def __init__(self, cause: Exception) -> None:
        self.cause = cause
        super().__init__(str(cause))


class ConnectionClosedError(ChatError):
    """The channel behind a connection went away mid-operation."""

    code = "connection_closed"
