"""StateStore + PresenceStore — local mirrors of the authority's tables."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Iterator

from sharedstate._util.serialization import clone, same_value
from sharedstate.core.types import Channel, ChangeItem, ChangeType, PresenceChange, StateChange

logger = logging.getLogger(__name__)


class StateStore:
    """Key/value mirror updated only by diffing inbound change batches."""

    def __init__(self) -> None:
        self._entries: dict[str, Any] = {}

    def apply(self, items: Iterable[Any]) -> Iterator[tuple[Channel, StateChange]]:
        """Apply a change batch, yielding one event per effective change.

        The store is mutated before each event is yielded, so consumers that
        dispatch while iterating observe the batch in order. ``set`` items
        whose serialized value is unchanged are skipped silently. Events carry
        copies, so handlers cannot reach into the cached values.
        """
        for raw in items:
            item = raw if isinstance(raw, ChangeItem) else ChangeItem.from_wire(raw)
            if item is None:
                logger.debug("skipping malformed change item: %r", raw)
                continue
            if item.type is ChangeType.SET:
                present = item.key in self._entries
                if present and same_value(self._entries[item.key], item.value):
                    logger.debug("skipping unchanged key %s", item.key)
                    continue
                self._entries[item.key] = clone(item.value)
                yield Channel.CHANGE, StateChange(
                    key=item.key,
                    value=clone(item.value),
                    type="update" if present else "add",
                )
            elif item.type is ChangeType.REMOVE:
                if item.key not in self._entries:
                    continue
                previous = self._entries.pop(item.key)
                yield Channel.REMOVE, StateChange(key=item.key, value=previous, type="delete")
            else:
                # CAS variants are outbound only.
                logger.debug("ignoring inbound %s item for key %s", item.type.value, item.key)

    def replay(self) -> list[StateChange]:
        return [StateChange(key=key, value=clone(value), type="update") for key, value in self._entries.items()]

    def get(self, key: str, default: Any = None) -> Any:
        if key not in self._entries:
            return default
        return clone(self._entries[key])

    def keys(self) -> list[str]:
        return list(self._entries.keys())

    def items(self) -> list[tuple[str, Any]]:
        return list(self._entries.items())

    def snapshot(self) -> dict[str, Any]:
        return clone(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self.keys())


class PresenceStore:
    """Agent ID -> presence mirror updated by diffing ``status`` batches."""

    def __init__(self) -> None:
        self._presence: dict[str, Any] = {}

    def apply(self, entries: Iterable[Any]) -> Iterator[PresenceChange]:
        for entry in entries:
            if not isinstance(entry, dict) or not entry.get("key"):
                logger.debug("skipping malformed presence entry: %r", entry)
                continue
            agent_id = str(entry["key"])
            value = entry.get("value") or None
            if agent_id in self._presence and same_value(self._presence[agent_id], value):
                logger.debug("presence for %s already saved", agent_id)
                continue
            self._presence[agent_id] = value
            yield PresenceChange(key=agent_id, value=value)

    def replay(self) -> list[PresenceChange]:
        return [PresenceChange(key=key, value=value) for key, value in self._presence.items()]

    def get(self, agent_id: str) -> Any:
        return self._presence.get(agent_id)

    def is_present(self, agent_id: str) -> bool:
        return bool(self._presence.get(agent_id))

    def agent_ids(self) -> list[str]:
        return list(self._presence.keys())

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._presence

    def __len__(self) -> int:
        return len(self._presence)
