"""Exception hierarchy for sharedstate."""

from __future__ import annotations

from typing import Any


class SharedStateError(Exception):
    """Base exception for all sharedstate errors."""


class IllegalArgumentError(SharedStateError, ValueError):
    """Bad enum value, missing or unknown key, or bad presence string."""


class IllegalHandlerError(SharedStateError, TypeError):
    """A non-callable object was registered as an event handler."""


class UnsupportedChannelError(SharedStateError, ValueError):
    """The event channel name is not one of the recognized channels."""


class NotReadyError(SharedStateError, RuntimeError):
    """A write was attempted while the readystate is not OPEN."""

    def __init__(self, message: str, *, readystate: Any = None) -> None:
        self.readystate = readystate
        super().__init__(message)


class RemoteError(SharedStateError):
    """The remote authority reported an application-level failure.

    Arrives asynchronously as an ``ssError`` event, so it is handed to the
    configured error sink instead of being raised.
    """

    def __init__(self, message: str, *, payload: Any = None) -> None:
        self.payload = payload
        super().__init__(message)


class HandlerFaultError(SharedStateError):
    """An application handler raised while an event was being delivered."""

    def __init__(self, message: str, *, channel: Any = None, handler: Any = None) -> None:
        self.channel = channel
        self.handler = handler
        super().__init__(message)


class TransportError(SharedStateError, ConnectionError):
    """Transport-level failure (closed connection, malformed frame)."""
