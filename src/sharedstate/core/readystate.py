"""ReadyStateMachine: CONNECTING / OPEN / CLOSED with an absorbing CLOSED."""

from __future__ import annotations

import logging
from typing import Any, Callable

from sharedstate.core.types import ReadyState
from sharedstate.exceptions import IllegalArgumentError

logger = logging.getLogger(__name__)


class ReadyStateMachine:
    """Guards every readystate transition and announces actual changes.

    ``on_change`` is called with the new value whenever a transition commits.
    Once CLOSED, no transition leaves it.
    """

    def __init__(self, on_change: Callable[[ReadyState], Any] | None = None) -> None:
        self._value = ReadyState.CONNECTING
        self._on_change = on_change

    def get(self) -> ReadyState:
        return self._value

    def set(self, new_value: ReadyState | str) -> None:
        if not ReadyState.is_member(new_value):
            raise IllegalArgumentError(f"illegal readystate value {new_value!r}")
        new_state = ReadyState(new_value)
        if self._value is ReadyState.CLOSED:
            return
        if new_state is self._value:
            return
        logger.debug("readystate %s -> %s", self._value.value, new_state.value)
        self._value = new_state
        if self._on_change is not None:
            self._on_change(new_state)

    @property
    def is_open(self) -> bool:
        return self._value is ReadyState.OPEN
