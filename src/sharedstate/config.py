"""Client configuration for sharedstate."""

from __future__ import annotations

import dataclasses
import logging
from typing import Any, Callable

from sharedstate._util.ids import generate_agent_id

logger = logging.getLogger("sharedstate")


def _noop(*args: Any) -> None:
    return None


@dataclasses.dataclass(frozen=True)
class SharedStateConfig:
    """Client configuration.

    Parameters
    ----------
    agent_id : str or None
        Identifier of this agent. A random one is generated per session when
        left unset.
    user_id : str or None
        Forwarded to the authority in the ``join`` datagram when set.
    reconnection : bool
        Whether the transport reconnects after a dropped connection.
    get_on_init : bool
        Ask the authority for the full state when joining.
    log_state : bool
        Periodically hand the whole state to the log sink.
    log_state_interval : float
        Seconds between two ``log_state`` dumps.
    auto_clean : bool
        Remove ``__meta__`` namespaced keys of agents that have gone away.
    autoclean_interval : float
        Seconds between two autoclean sweeps.
    auto_presence : bool
        Publish presence ``"online"`` once the connection is OPEN.
    log_to_console : bool
        Route the log and error sinks to the ``sharedstate`` logger.
    log_function, error_function : callable or None
        Sinks called with a %-style message and its arguments. They override
        ``log_to_console``.
    transport_options : dict
        Options passed through to the transport.
    """

    agent_id: str | None = None
    user_id: str | None = None
    reconnection: bool = True
    get_on_init: bool = True
    log_state: bool = False
    log_state_interval: float = 5.0
    auto_clean: bool = False
    autoclean_interval: float = 15.0
    auto_presence: bool = True
    log_to_console: bool = False
    log_function: Callable[..., None] | None = None
    error_function: Callable[..., None] | None = None
    transport_options: dict[str, Any] = dataclasses.field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.log_state_interval <= 0:
            raise ValueError("log_state_interval must be positive")
        if self.autoclean_interval <= 0:
            raise ValueError("autoclean_interval must be positive")

    def with_agent_id(self) -> SharedStateConfig:
        """Return a copy with ``agent_id`` filled in."""
        if self.agent_id:
            return self
        return dataclasses.replace(self, agent_id=generate_agent_id())

    def replace(self, **changes: Any) -> SharedStateConfig:
        return dataclasses.replace(self, **changes)

    @property
    def log_sink(self) -> Callable[..., None]:
        if self.log_function is not None:
            return self.log_function
        if self.log_to_console:
            return logger.info
        return _noop

    @property
    def error_sink(self) -> Callable[..., None]:
        if self.error_function is not None:
            return self.error_function
        if self.log_to_console:
            return logger.error
        return _noop
