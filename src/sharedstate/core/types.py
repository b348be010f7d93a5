"""Type definitions for the sharedstate core module."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)


Handler = Callable[..., Any]
Sink = Callable[..., None]


class ReadyState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"

    @classmethod
    def is_member(cls, value: Any) -> bool:
        if isinstance(value, cls):
            return True
        return isinstance(value, str) and value in cls._value2member_map_


class Channel(str, Enum):
    CHANGE = "change"
    REMOVE = "remove"
    PRESENCE = "presence"
    READYSTATECHANGE = "readystatechange"
    CHANGESET = "changeset"


class ChangeType(str, Enum):
    SET = "set"
    SET_CAS = "setCas"
    SET_INSERT = "setInsert"
    REMOVE = "remove"


@dataclass
class ChangeItem:
    """One entry of a ``changeState`` / ``initState`` batch."""

    type: ChangeType
    key: str
    value: Any = None
    old_value: Any = None

    def to_wire(self) -> dict[str, Any]:
        item: dict[str, Any] = {"type": self.type.value, "key": self.key}
        if self.type is not ChangeType.REMOVE:
            item["value"] = self.value
        if self.type is ChangeType.SET_CAS:
            item["oldValue"] = self.old_value
        return item

    @classmethod
    def from_wire(cls, data: Any) -> ChangeItem | None:
        if not isinstance(data, dict):
            return None
        try:
            change_type = ChangeType(data.get("type"))
        except ValueError:
            logger.debug("ignoring change item with unknown type: %r", data.get("type"))
            return None
        key = data.get("key")
        if not key or not isinstance(key, str):
            return None
        return cls(
            type=change_type,
            key=key,
            value=data.get("value"),
            old_value=data.get("oldValue"),
        )


@dataclass(frozen=True)
class StateChange:
    """Payload delivered on the ``change`` and ``remove`` channels."""

    key: str
    value: Any
    type: str  # "add" | "update" | "delete"


@dataclass(frozen=True)
class PresenceChange:
    """Payload delivered on the ``presence`` channel."""

    key: str
    value: Any
