"""Shared fixtures: an in-memory connection and client factories."""

from typing import Any

import pytest

from sharedstate import SharedState, SharedStateConfig
from sharedstate.net.transport import EventConnection


class FakeConnection(EventConnection):
    """Records outbound datagrams and lets tests inject inbound events."""

    def __init__(self, connected: bool = False) -> None:
        super().__init__()
        self._connected = connected
        self.sent: list[tuple[str, Any]] = []
        self.closed = False

    @property
    def connected(self) -> bool:
        return self._connected and not self.closed

    def emit(self, event: str, payload: Any = None) -> None:
        self.sent.append((event, payload))

    def close(self) -> None:
        self.closed = True

    def fire(self, event: str, *args: Any) -> None:
        self._fire(event, *args)

    def connect(self) -> None:
        self._connected = True
        self._fire("connect")

    def drop(self) -> None:
        self._connected = False
        self._fire("disconnect")

    def payloads(self, event: str) -> list[Any]:
        return [payload for name, payload in self.sent if name == event]


class SinkRecorder:
    """Collects calls made to a log or error sink."""

    def __init__(self) -> None:
        self.calls: list[tuple[Any, ...]] = []

    def __call__(self, *args: Any) -> None:
        self.calls.append(args)

    def errors_of(self, kind: type) -> list[Any]:
        return [arg for call in self.calls for arg in call if isinstance(arg, kind)]


def open_client(client: SharedState, connection: FakeConnection, items: list[dict] | None = None) -> SharedState:
    """Drive the join handshake until the client is OPEN."""
    connection.connect()
    connection.fire("joined", {"agentID": client.agent_id, "initStateComing": True})
    connection.fire("initState", items or [])
    return client


@pytest.fixture
def connection() -> FakeConnection:
    return FakeConnection()


@pytest.fixture
def errors() -> SinkRecorder:
    return SinkRecorder()


@pytest.fixture
def make_client(connection: FakeConnection, errors: SinkRecorder):
    def factory(**overrides: Any) -> SharedState:
        overrides.setdefault("agent_id", "agent-1")
        overrides.setdefault("error_function", errors)
        return SharedState(connection, SharedStateConfig(**overrides))

    return factory


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"
