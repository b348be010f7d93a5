"""SharedState — primary user-facing class composing all sharedstate components."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator

import anyio

from sharedstate.api.autoclean import AutocleanSweeper
from sharedstate.api.batcher import WriteBatcher
from sharedstate.config import SharedStateConfig
from sharedstate.core.dispatcher import CallbackDispatcher
from sharedstate.core.readystate import ReadyStateMachine
from sharedstate.core.scheduler import DeferredQueue
from sharedstate.core.store import PresenceStore, StateStore
from sharedstate.core.types import Channel, Handler, ReadyState
from sharedstate.exceptions import IllegalArgumentError, NotReadyError, RemoteError, TransportError
from sharedstate.net.transport import CONNECT, DISCONNECT, Connection, WebSocketConnection

logger = logging.getLogger(__name__)


class SharedState:
    """Local mirror of a server-authoritative key/value state and presence table.

    Composes Connection + ReadyStateMachine + CallbackDispatcher + StateStore +
    PresenceStore + WriteBatcher (+ AutocleanSweeper). Application writes are
    sent to the authority and only show up in the local store once they come
    back as a ``changeState`` batch.
    """

    STATE = ReadyState

    def __init__(
        self,
        connection: Connection,
        config: SharedStateConfig | None = None,
        **overrides: Any,
    ) -> None:
        config = config or SharedStateConfig()
        if overrides:
            config = config.replace(**overrides)
        self._log = config.log_sink
        self._error = config.error_sink
        if not config.agent_id:
            self._log("SHAREDSTATE - agentID undefined, generating one for this session")
        self._config = config.with_agent_id()

        self._scheduler = DeferredQueue()
        self._store = StateStore()
        self._presence = PresenceStore()
        self._dispatcher = CallbackDispatcher(
            self._scheduler,
            replay_providers={
                Channel.CHANGE: self._store.replay,
                Channel.PRESENCE: self._presence.replay,
                Channel.REMOVE: lambda: [],
                Channel.READYSTATECHANGE: lambda: [self._readystate.get()],
                Channel.CHANGESET: lambda: [None],
            },
            error_sink=self._error,
        )
        self._readystate = ReadyStateMachine(on_change=self._on_readystate_change)
        self._batcher = WriteBatcher(self._store, self._readystate, self._send_datagram)
        self._sweeper: AutocleanSweeper | None = None
        if self._config.auto_clean:
            self._sweeper = AutocleanSweeper(
                self._store,
                self._presence,
                self._batcher,
                self._readystate,
                interval=self._config.autoclean_interval,
                log=self._log,
                error=self._error,
            )
        self._task_group: anyio.abc.TaskGroup | None = None
        self._destroyed = False

        self._connection: Connection | None = connection
        self._inbound = {
            CONNECT: self._on_connect,
            DISCONNECT: self._on_disconnect,
            "joined": self._on_joined,
            "status": self._on_status,
            "changeState": self._on_change_state,
            "initState": self._on_init_state,
            "ssError": self._on_remote_error,
        }
        for event, handler in self._inbound.items():
            connection.on(event, handler)
        self._readystate.set(ReadyState.CONNECTING)
        if connection.connected:
            self._on_connect()

    @classmethod
    def connect(
        cls,
        uri: str,
        config: SharedStateConfig | None = None,
        **overrides: Any,
    ) -> SharedState:
        """Create an instance talking to ``uri`` over a WebSocketConnection."""
        config = config or SharedStateConfig()
        if overrides:
            config = config.replace(**overrides)
        options = {"reconnection": config.reconnection, **config.transport_options}
        return cls(WebSocketConnection.from_options(uri, options), config)

    # -- properties ---------------------------------------------------------

    @property
    def readystate(self) -> ReadyState:
        return self._readystate.get()

    @property
    def agent_id(self) -> str:
        return self._config.agent_id or ""

    @property
    def config(self) -> SharedStateConfig:
        return self._config

    @property
    def connection(self) -> Connection | None:
        return self._connection

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    # -- internals ----------------------------------------------------------

    def _on_readystate_change(self, state: ReadyState) -> None:
        self._dispatcher.emit(Channel.READYSTATECHANGE, state)

    def _send_datagram(self, event: str, datagram: Any) -> None:
        if self._connection is None:
            raise NotReadyError(f"cannot send {event!r} after destroy", readystate=self.readystate)
        self._log("SHAREDSTATE - sending %s %r", event, datagram)
        self._connection.emit(event, datagram)

    def _open(self) -> None:
        self._readystate.set(ReadyState.OPEN)
        if self._config.auto_presence:
            self.set_presence("online")

    def _apply_batch(self, items: list[Any]) -> None:
        for channel, change in self._store.apply(items):
            self._dispatcher.emit(channel, change)
        if items:
            self._dispatcher.emit(Channel.CHANGESET, None)

    # -- inbound events -----------------------------------------------------

    def _on_connect(self) -> None:
        if self._connection is None or not self._connection.connected:
            return
        self._readystate.set(ReadyState.CONNECTING)
        datagram: dict[str, Any] = {"agentID": self.agent_id}
        if self._config.user_id:
            datagram["userId"] = self._config.user_id
        if self._config.get_on_init:
            datagram["sendInitState"] = True
        self._send_datagram("join", datagram)

    def _on_disconnect(self) -> None:
        self._readystate.set(ReadyState.CONNECTING)
        self._log('SHAREDSTATE - got "disconnected"')

    def _on_joined(self, datagram: Any) -> None:
        self._log('SHAREDSTATE - got "joined" %r', datagram)
        if not isinstance(datagram, dict) or str(datagram.get("agentID")) != self.agent_id:
            return
        if self._config.get_on_init:
            if not datagram.get("initStateComing"):
                self._send_datagram("getInitState", [])
        else:
            self._open()

    def _on_status(self, datagram: Any) -> None:
        self._log('SHAREDSTATE - got "status" %r', datagram)
        entries = datagram.get("presence") if isinstance(datagram, dict) else None
        if not isinstance(entries, (list, tuple)):
            return
        for change in self._presence.apply(entries):
            self._dispatcher.emit(Channel.PRESENCE, change)

    def _on_change_state(self, datagram: Any) -> None:
        self._log('SHAREDSTATE - got "changeState" %r', datagram)
        if not isinstance(datagram, (list, tuple)):
            return
        self._apply_batch(list(datagram))

    def _on_init_state(self, datagram: Any) -> None:
        self._log('SHAREDSTATE - got "initState" %r', datagram)
        items = list(datagram) if isinstance(datagram, (list, tuple)) else []
        self._apply_batch([item for item in items if isinstance(item, dict) and item.get("type") == "set"])
        self._open()

    def _on_remote_error(self, datagram: Any) -> None:
        self._error("SharedState-error %s", RemoteError("authority reported an error", payload=datagram))

    # -- application API ----------------------------------------------------

    def set_item(self, key: str, value: Any, *, cas: bool = False) -> SharedState:
        self._batcher.set_item(key, value, cas=cas)
        return self

    def remove_item(self, key: str) -> SharedState:
        self._batcher.remove_item(key)
        return self

    def request(self) -> SharedState:
        self._batcher.request()
        return self

    def send(self) -> SharedState:
        self._batcher.send()
        return self

    @contextmanager
    def batch(self) -> Iterator[SharedState]:
        """Bracket the enclosed writes into one ``changeState`` datagram."""
        with self._batcher.batch():
            yield self

    def get_item(self, key: Any = None, default: Any = None) -> Any:
        """Return a copy of the cached value, or request a full state refresh.

        Called without a key, asks the authority to resend the whole state and
        returns None; the refreshed entries arrive as ordinary change events.
        """
        if key is None:
            self._send_datagram("getState", [])
            return None
        return self._store.get(str(key), default)

    def keys(self) -> list[str]:
        return self._store.keys()

    def get_presence(self, agent_id: str) -> Any:
        return self._presence.get(agent_id)

    def get_presence_list(self) -> list[str]:
        return self._presence.agent_ids()

    def set_presence(self, state: str) -> SharedState:
        current = self._readystate.get()
        if current is not ReadyState.OPEN:
            raise NotReadyError(
                f"setPresence not possible - connection status: {current.value}",
                readystate=current,
            )
        if not isinstance(state, str) or not state:
            raise IllegalArgumentError(f"invalid presence state {state!r}")
        self._send_datagram("changePresence", {"agentID": self.agent_id, "presence": state})
        return self

    def on(
        self,
        channel: Channel | str,
        handler: Handler,
        context: Any = None,
        skip_replay: bool = False,
    ) -> SharedState:
        self._dispatcher.on(channel, handler, context, skip_replay)
        return self

    def off(self, channel: Channel | str, handler: Handler) -> SharedState:
        self._dispatcher.off(channel, handler)
        return self

    add_event_listener = on
    remove_event_listener = off

    def run_pending(self) -> int:
        """Run deferred replays now; for embedders that do not call start()."""
        return self._scheduler.run_pending()

    def dump_state(self) -> None:
        self._log("SharedState(%s): %r", self.agent_id, self._store.snapshot())

    def sweep(self) -> list[str]:
        """Run one autoclean pass; a no-op unless auto_clean is configured."""
        if self._sweeper is None:
            return []
        return self._sweeper.sweep()

    # -- lifecycle ----------------------------------------------------------

    async def _log_state_loop(self, *, task_status: anyio.abc.TaskStatus = anyio.TASK_STATUS_IGNORED) -> None:
        task_status.started()
        while not self._destroyed:
            await anyio.sleep(self._config.log_state_interval)
            self.dump_state()

    async def _run_connection(
        self,
        connection: Connection,
        *,
        task_status: anyio.abc.TaskStatus = anyio.TASK_STATUS_IGNORED,
    ) -> None:
        task_status.started()
        try:
            await connection.run()
        except TransportError as exc:
            self._error("SharedState-error %s", exc)
        except Exception as exc:
            logger.debug("connection task failed", exc_info=True)
            fault = TransportError(f"connection failed: {exc}")
            fault.__cause__ = exc
            self._error("SharedState-error %s", fault)

    async def start(self) -> None:
        """Run the deferred queue, the connection and the periodic tasks."""
        if self._task_group is not None or self._destroyed or self._connection is None:
            return
        self._task_group = anyio.create_task_group()
        await self._task_group.__aenter__()
        await self._task_group.start(self._scheduler.run)
        await self._task_group.start(self._run_connection, self._connection)
        if self._sweeper is not None:
            await self._task_group.start(self._sweeper.run)
        if self._config.log_state:
            await self._task_group.start(self._log_state_loop)

    def destroy(self) -> None:
        """Release the connection and every handler; later calls do nothing."""
        if self._destroyed:
            return
        self._destroyed = True
        connection, self._connection = self._connection, None
        if connection is not None:
            for event, handler in self._inbound.items():
                connection.off(event, handler)
            connection.close()
        self._readystate.set(ReadyState.CLOSED)
        self._dispatcher.clear()
        self._scheduler.close()
        self._batcher.discard()
        if self._sweeper is not None:
            self._sweeper.stop()
        if self._task_group is not None:
            self._task_group.cancel_scope.cancel()

    async def aclose(self) -> None:
        self.destroy()
        if self._task_group is None:
            return
        await self._task_group.__aexit__(None, None, None)
        self._task_group = None

    async def __aenter__(self) -> SharedState:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
