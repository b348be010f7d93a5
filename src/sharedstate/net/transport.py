"""Envelope wire format, Connection ABC, and WebSocketConnection."""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass
from typing import Any, Callable

import anyio
import websockets
import websockets.asyncio.client

from sharedstate._util.serialization import pack, unpack
from sharedstate.exceptions import TransportError

logger = logging.getLogger(__name__)


EventHandler = Callable[..., Any]

CONNECT = "connect"
DISCONNECT = "disconnect"


@dataclass
class Envelope:
    """Wire format wrapping one named event and its payload."""

    event: str
    payload: Any = None
    version: int = 1

    def encode(self) -> bytes:
        return pack({
            "v": self.version,
            "e": self.event,
            "d": self.payload,
        })

    @classmethod
    def decode(cls, data: bytes) -> Envelope:
        try:
            d = unpack(data)
        except Exception as exc:
            raise ValueError("invalid envelope encoding") from exc
        if not isinstance(d, dict):
            raise ValueError("invalid envelope payload shape")
        if "e" not in d:
            raise ValueError("envelope missing event name")
        if not isinstance(d["e"], str) or not d["e"]:
            raise ValueError("envelope event name must be a non-empty str")
        version = d.get("v", 1)
        if not isinstance(version, int) or version < 1:
            raise ValueError("envelope version must be a positive int")
        return cls(event=d["e"], payload=d.get("d"), version=version)


class Connection(abc.ABC):
    """Bidirectional named-event channel consumed by the sharedstate engine."""

    @property
    @abc.abstractmethod
    def connected(self) -> bool: ...

    @abc.abstractmethod
    def emit(self, event: str, payload: Any = None) -> None: ...

    @abc.abstractmethod
    def on(self, event: str, handler: EventHandler) -> None: ...

    @abc.abstractmethod
    def off(self, event: str, handler: EventHandler) -> None: ...

    @abc.abstractmethod
    def close(self) -> None: ...

    async def run(self, *, task_status: anyio.abc.TaskStatus = anyio.TASK_STATUS_IGNORED) -> None:
        """Drive the connection; connections without I/O return immediately."""
        task_status.started()


class EventConnection(Connection):
    """Connection base implementing the inbound handler registry."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = {}

    def on(self, event: str, handler: EventHandler) -> None:
        handlers = self._handlers.setdefault(event, [])
        if handler not in handlers:
            handlers.append(handler)

    def off(self, event: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def _fire(self, event: str, *args: Any) -> None:
        for handler in list(self._handlers.get(event, [])):
            try:
                handler(*args)
            except Exception:
                logger.exception("inbound %s handler failed", event)


class WebSocketConnection(EventConnection):
    """WebSocket connection carrying msgpack envelopes, with reconnects."""

    def __init__(
        self,
        uri: str,
        *,
        reconnection: bool = True,
        retries: int = 3,
        backoff_base: float = 0.2,
        backoff_max: float = 5.0,
        token: str | None = None,
        max_size: int | None = 10 * 1024 * 1024,
        queue_size: int = 1024,
    ) -> None:
        super().__init__()
        self._uri = uri
        self._reconnection = reconnection
        self._retries = retries
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._connect_kwargs: dict[str, Any] = {"max_size": max_size}
        if token is not None:
            self._connect_kwargs["additional_headers"] = {"Authorization": f"Bearer {token}"}
        self._ws: Any = None
        self._closed = False
        self._cancel_scope: anyio.CancelScope | None = None
        self._pending_send, self._pending_recv = anyio.create_memory_object_stream[bytes](queue_size)

    @classmethod
    def from_options(cls, uri: str, options: dict[str, Any]) -> WebSocketConnection:
        """Build a connection from ``SharedStateConfig.transport_options``."""
        return cls(uri, **options)

    @property
    def uri(self) -> str:
        return self._uri

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._closed

    async def _connect_with_retry(self) -> Any:
        attempt = 0
        while True:
            try:
                return await websockets.asyncio.client.connect(self._uri, **self._connect_kwargs)
            except Exception:
                if attempt >= self._retries:
                    raise
                delay = min(self._backoff_base * (2**attempt), self._backoff_max)
                logger.warning(
                    "websocket connect failed (attempt=%s/%s); retrying in %.2fs",
                    attempt + 1,
                    self._retries + 1,
                    delay,
                )
                await anyio.sleep(delay)
                attempt += 1

    def emit(self, event: str, payload: Any = None) -> None:
        if self._closed:
            raise TransportError(f"cannot emit {event!r} on closed websocket connection")
        frame = Envelope(event=event, payload=payload).encode()
        try:
            self._pending_send.send_nowait(frame)
        except anyio.WouldBlock:
            logger.warning("dropping outbound %s frame because the send queue is full", event)

    async def _send_loop(self, ws: Any, *, task_status: anyio.abc.TaskStatus = anyio.TASK_STATUS_IGNORED) -> None:
        task_status.started()
        async for frame in self._pending_recv:
            try:
                await ws.send(frame)
            except websockets.exceptions.ConnectionClosed:
                logger.debug("websocket closed while sending; frame dropped")
                return

    async def _receive_loop(self, ws: Any) -> None:
        try:
            async for message in ws:
                data = message.encode() if isinstance(message, str) else bytes(message)
                try:
                    envelope = Envelope.decode(data)
                except ValueError:
                    logger.warning("dropping malformed envelope from server")
                    continue
                self._fire(envelope.event, envelope.payload)
        except websockets.exceptions.ConnectionClosed:
            logger.debug("websocket receive loop ended; connection closed")

    def _drop_stale_frames(self) -> int:
        count = 0
        while True:
            try:
                self._pending_recv.receive_nowait()
            except (anyio.WouldBlock, anyio.EndOfStream, anyio.ClosedResourceError):
                return count
            count += 1

    async def _session(self, ws: Any) -> None:
        # Frames queued without a socket belong to a previous session; the
        # new one must start with the join that CONNECT handlers send.
        stale = self._drop_stale_frames()
        if stale:
            logger.debug("dropped %s frames queued while disconnected", stale)
        self._ws = ws
        self._fire(CONNECT)
        try:
            async with anyio.create_task_group() as tg:
                await tg.start(self._send_loop, ws)
                await self._receive_loop(ws)
                tg.cancel_scope.cancel()
        finally:
            self._ws = None
            with anyio.CancelScope(shield=True):
                try:
                    await ws.close()
                except Exception:
                    logger.debug("error while closing websocket", exc_info=True)
            if not self._closed:
                self._fire(DISCONNECT)

    async def run(self, *, task_status: anyio.abc.TaskStatus = anyio.TASK_STATUS_IGNORED) -> None:
        """Connect, pump frames both ways, and reconnect after drops."""
        with anyio.CancelScope() as scope:
            self._cancel_scope = scope
            task_status.started()
            while not self._closed:
                try:
                    ws = await self._connect_with_retry()
                except Exception as exc:
                    if not self._reconnection:
                        raise TransportError(f"could not connect to {self._uri}") from exc
                    logger.warning("websocket connect to %s gave up; backing off", self._uri)
                    await anyio.sleep(self._backoff_max)
                    continue
                await self._session(ws)
                if not self._reconnection:
                    break
                logger.info("websocket connection to %s lost; reconnecting", self._uri)
        self._cancel_scope = None

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._pending_send.close()
        if self._cancel_scope is not None:
            self._cancel_scope.cancel()
