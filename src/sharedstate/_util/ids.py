"""Agent ID generation utilities."""

from __future__ import annotations

import os
import struct

_AGENT_ID_SPACE = 999_999_999


def generate_agent_id() -> str:
    """Generate a random decimal agent ID for this session."""
    return str(struct.unpack("!I", os.urandom(4))[0] % _AGENT_ID_SPACE)
