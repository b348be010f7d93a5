"""Msgpack serialization helpers."""

from __future__ import annotations

from typing import Any

import msgpack


def pack(obj: Any) -> bytes:
    """Serialize an object to msgpack bytes."""
    return msgpack.packb(obj, use_bin_type=True)


def unpack(data: bytes) -> Any:
    """Deserialize msgpack bytes to an object."""
    return msgpack.unpackb(data, raw=False)


def same_value(a: Any, b: Any) -> bool:
    """Compare two values by their serialized form."""
    return pack(a) == pack(b)


def clone(value: Any) -> Any:
    """Deep copy a value by round-tripping it through the wire encoding."""
    return unpack(pack(value))
