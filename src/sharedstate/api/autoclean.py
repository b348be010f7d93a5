"""AutocleanSweeper: drops meta keys left behind by agents that went away."""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable

import anyio

from sharedstate.api.batcher import WriteBatcher
from sharedstate.core.readystate import ReadyStateMachine
from sharedstate.core.store import PresenceStore, StateStore

logger = logging.getLogger(__name__)


META_PREFIX = "__meta__"
NAMESPACE_PREFIX = "__"


def owner_of(key: str) -> str | None:
    """Agent ID encoded in a ``__meta__<agentid>`` key, else None."""
    if key.startswith(META_PREFIX):
        return key[len(META_PREFIX):]
    return None


def keys_owned_by(keys: list[str], agent_id: str) -> list[str]:
    marker = NAMESPACE_PREFIX + agent_id
    return [key for key in keys if key.startswith(NAMESPACE_PREFIX) and marker in key]


class AutocleanSweeper:
    """Periodically removes state namespaced to agents with no presence.

    A key ``__meta__<agentid>`` marks state owned by ``agentid``. When that
    agent has no presence, every key starting with ``__`` and containing
    ``__<agentid>`` is removed through the write batcher.
    """

    def __init__(
        self,
        store: StateStore,
        presence: PresenceStore,
        batcher: WriteBatcher,
        readystate: ReadyStateMachine,
        *,
        interval: float = 15.0,
        log: Callable[..., Any] | None = None,
        error: Callable[..., Any] | None = None,
    ) -> None:
        self._store = store
        self._presence = presence
        self._batcher = batcher
        self._readystate = readystate
        self._interval = interval
        self._log = log or logger.debug
        self._error = error or logger.error
        self._running = False

    @property
    def interval(self) -> float:
        return self._interval

    def absent_owners(self) -> list[str]:
        owners: list[str] = []
        for key in self._store.keys():
            agent_id = owner_of(key)
            if agent_id is not None and not self._presence.is_present(agent_id) and agent_id not in owners:
                owners.append(agent_id)
        return owners

    def clean(self, agent_id: str, *, skip: Iterable[str] = ()) -> list[str]:
        """Remove every key namespaced to ``agent_id``; return the keys removed."""
        self._log("*** Cleaning agent %s", agent_id)
        skipped = set(skip)
        removed = [key for key in keys_owned_by(self._store.keys(), agent_id) if key not in skipped]
        for key in removed:
            self._batcher.remove_item(key)
        return removed

    def sweep(self) -> list[str]:
        if not self._readystate.is_open:
            return []
        removed: list[str] = []
        for agent_id in self.absent_owners():
            removed.extend(self.clean(agent_id, skip=removed))
        return removed

    async def run(self, *, task_status: anyio.abc.TaskStatus = anyio.TASK_STATUS_IGNORED) -> None:
        """Sweep every ``interval`` seconds until stopped."""
        self._running = True
        task_status.started()
        try:
            while self._running:
                await anyio.sleep(self._interval)
                if not self._running:
                    break
                try:
                    self.sweep()
                except Exception as exc:
                    logger.debug("autoclean sweep failed", exc_info=True)
                    self._error("autoclean sweep failed: %s", exc)
        finally:
            self._running = False

    def stop(self) -> None:
        self._running = False
