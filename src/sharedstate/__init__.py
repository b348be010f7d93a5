"""sharedstate — client-side mirror of a server-authoritative shared state."""

import logging

from sharedstate._version import __version__
from sharedstate.api.client import SharedState
from sharedstate.config import SharedStateConfig
from sharedstate.core.types import (
    ChangeItem,
    ChangeType,
    Channel,
    PresenceChange,
    ReadyState,
    StateChange,
)
from sharedstate.exceptions import (
    HandlerFaultError,
    IllegalArgumentError,
    IllegalHandlerError,
    NotReadyError,
    RemoteError,
    SharedStateError,
    TransportError,
    UnsupportedChannelError,
)
from sharedstate.net.transport import Connection, EventConnection, WebSocketConnection

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "__version__",
    "ChangeItem",
    "ChangeType",
    "Channel",
    "Connection",
    "EventConnection",
    "HandlerFaultError",
    "IllegalArgumentError",
    "IllegalHandlerError",
    "NotReadyError",
    "PresenceChange",
    "ReadyState",
    "RemoteError",
    "SharedState",
    "SharedStateConfig",
    "SharedStateError",
    "StateChange",
    "TransportError",
    "UnsupportedChannelError",
    "WebSocketConnection",
]
