"""CallbackDispatcher — per-channel handler registries with deferred replay.

A handler registered with :meth:`CallbackDispatcher.on` first receives a
one-time *replay* describing the state accumulated before it subscribed, and
only then live events. The replay is not delivered inside ``on()``: it is
queued on the :class:`DeferredQueue`, so every ``on()`` made in one
synchronous block completes before any replay runs. Until its replay has run,
a handler is flagged as pending on that channel and live events skip it; the
replay content is computed when the replay runs, so nothing skipped is lost.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from sharedstate.core.scheduler import DeferredQueue
from sharedstate.core.types import Channel, Handler, Sink
from sharedstate.exceptions import (
    HandlerFaultError,
    IllegalHandlerError,
    UnsupportedChannelError,
)

logger = logging.getLogger(__name__)


ReplayProvider = Callable[[], Iterable[Any]]


def _noop(*args: Any) -> None:
    return None


@dataclass(eq=False)
class HandlerRecord:
    handler: Handler
    context: Any = None
    pending_replay: set[Channel] = field(default_factory=set)

    def invoke(self, payload: Any) -> Any:
        if self.context is not None:
            return self.handler(self.context, payload)
        return self.handler(payload)


class CallbackDispatcher:
    """Routes replay and live events to the handlers of each channel."""

    def __init__(
        self,
        scheduler: DeferredQueue,
        *,
        replay_providers: dict[Channel, ReplayProvider] | None = None,
        error_sink: Sink | None = None,
    ) -> None:
        self._scheduler = scheduler
        self._channels: dict[Channel, list[Handler]] = {channel: [] for channel in Channel}
        self._records: dict[Handler, HandlerRecord] = {}
        self._replay_providers: dict[Channel, ReplayProvider] = dict(replay_providers or {})
        self._error = error_sink or _noop

    @staticmethod
    def resolve_channel(channel: Channel | str) -> Channel:
        try:
            return Channel(channel)
        except ValueError:
            raise UnsupportedChannelError(f"unsupported event {channel!r}") from None

    def set_replay_provider(self, channel: Channel, provider: ReplayProvider) -> None:
        self._replay_providers[channel] = provider

    def handlers(self, channel: Channel | str) -> list[Handler]:
        return list(self._channels[self.resolve_channel(channel)])

    def record(self, handler: Handler) -> HandlerRecord | None:
        return self._records.get(handler)

    def on(
        self,
        channel: Channel | str,
        handler: Handler,
        context: Any = None,
        skip_replay: bool = False,
    ) -> bool:
        """Register ``handler``; return False if it was already registered."""
        if not callable(handler):
            raise IllegalHandlerError(f"illegal handler {handler!r}")
        try:
            hash(handler)
        except TypeError:
            raise IllegalHandlerError(f"handler must be hashable: {handler!r}") from None
        resolved = self.resolve_channel(channel)

        record = self._records.get(handler)
        if record is None:
            record = HandlerRecord(handler=handler)
            self._records[handler] = record
        if context is not None:
            record.context = context

        handlers = self._channels[resolved]
        if handler in handlers:
            return False
        handlers.append(handler)
        if not skip_replay:
            record.pending_replay.add(resolved)
            self._scheduler.call_soon(self._replay, resolved, handler)
        return True

    def off(self, channel: Channel | str, handler: Handler) -> bool:
        """Unregister ``handler``; return False if it was not registered."""
        try:
            resolved = Channel(channel)
        except ValueError:
            return False
        handlers = self._channels[resolved]
        if handler not in handlers:
            return False
        handlers.remove(handler)
        record = self._records.get(handler)
        if record is not None:
            record.pending_replay.discard(resolved)
            if not any(handler in registered for registered in self._channels.values()):
                del self._records[handler]
        return True

    def _deliver(self, channel: Channel, record: HandlerRecord, payload: Any) -> None:
        try:
            record.invoke(payload)
        except Exception as exc:
            fault = HandlerFaultError(
                f"error in {channel.value} handler {record.handler!r}: {exc}",
                channel=channel,
                handler=record.handler,
            )
            fault.__cause__ = exc
            logger.debug("handler fault on %s", channel.value, exc_info=True)
            self._error("error in %s handler: %s", channel.value, fault)

    def _replay(self, channel: Channel, handler: Handler) -> None:
        # The handler may have been removed (or re-registered) since on().
        record = self._records.get(handler)
        if record is None or channel not in record.pending_replay:
            return
        if handler not in self._channels[channel]:
            return
        provider = self._replay_providers.get(channel)
        payloads = list(provider()) if provider is not None else []
        record.pending_replay.discard(channel)
        for payload in payloads:
            if handler not in self._channels[channel]:
                break
            self._deliver(channel, record, payload)

    def emit(self, channel: Channel | str, payload: Any = None) -> None:
        """Deliver a live event to every handler whose replay has already run."""
        resolved = self.resolve_channel(channel)
        registered = self._channels[resolved]
        for handler in list(registered):
            if handler not in registered:
                continue
            record = self._records.get(handler)
            if record is None or resolved in record.pending_replay:
                continue
            self._deliver(resolved, record, payload)

    def clear(self) -> None:
        for handlers in self._channels.values():
            handlers.clear()
        self._records.clear()
