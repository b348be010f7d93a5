"""WriteBatcher: immediate and request/send bracketed writes."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Callable, Iterator

from sharedstate.core.readystate import ReadyStateMachine
from sharedstate.core.store import StateStore
from sharedstate.core.types import ChangeItem, ChangeType, ReadyState
from sharedstate.exceptions import IllegalArgumentError, NotReadyError

logger = logging.getLogger(__name__)


Send = Callable[[str, Any], None]

CHANGE_STATE = "changeState"


class WriteBatcher:
    """Turns local mutations into ``changeState`` datagrams.

    Writes go out one per call unless a request bracket is open, in which case
    they are kept per key (last write wins) until :meth:`send` flushes them as
    a single batch. CAS-qualified sets carry the locally cached value as intent
    metadata; the authority makes the actual comparison.
    """

    def __init__(self, store: StateStore, readystate: ReadyStateMachine, send: Send) -> None:
        self._store = store
        self._readystate = readystate
        self._send = send
        self._pending: dict[str, ChangeItem] = {}
        self._requesting = False

    @property
    def requesting(self) -> bool:
        return self._requesting

    @property
    def pending(self) -> list[ChangeItem]:
        return list(self._pending.values())

    def _require_open(self, operation: str) -> None:
        state = self._readystate.get()
        if state is not ReadyState.OPEN:
            raise NotReadyError(
                f"{operation} not possible - connection status: {state.value}",
                readystate=state,
            )

    @staticmethod
    def _check_key(key: Any) -> str:
        if not isinstance(key, str) or not key:
            raise IllegalArgumentError(f"invalid key {key!r}")
        return key

    def set_item(self, key: str, value: Any, *, cas: bool = False) -> ChangeItem:
        if self._requesting:
            self._check_key(key)
        else:
            self._require_open("setItem")
            self._check_key(key)
        item = ChangeItem(type=ChangeType.SET, key=key, value=value)
        if cas:
            if key in self._store:
                item.type = ChangeType.SET_CAS
                item.old_value = self._store.get(key)
            else:
                item.type = ChangeType.SET_INSERT

        if self._requesting:
            self._pending[key] = item
            return item
        self._send(CHANGE_STATE, [item.to_wire()])
        return item

    def remove_item(self, key: str) -> ChangeItem:
        item = ChangeItem(type=ChangeType.REMOVE, key=key)
        if self._requesting:
            self._pending[self._check_key(key)] = item
            return item
        self._require_open("removeItem")
        if self._check_key(key) not in self._store:
            raise IllegalArgumentError(f"cannot remove unknown key {key!r}")
        self._send(CHANGE_STATE, [item.to_wire()])
        return item

    def request(self) -> None:
        self._requesting = True

    def send(self) -> int:
        """Close the bracket and flush pending writes; return how many went out."""
        self._require_open("send")
        self._requesting = False
        if not self._pending:
            return 0
        datagram = [item.to_wire() for item in self._pending.values()]
        self._pending = {}
        self._send(CHANGE_STATE, datagram)
        return len(datagram)

    def discard(self) -> None:
        """Close the bracket without sending anything."""
        if self._pending:
            logger.debug("discarding %s pending writes", len(self._pending))
        self._requesting = False
        self._pending = {}

    @contextmanager
    def batch(self) -> Iterator[WriteBatcher]:
        self.request()
        try:
            yield self
        except BaseException:
            self.discard()
            raise
        self.send()
