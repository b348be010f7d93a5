"""Presence board example: mirror a shared state server and react to changes.

Point it at a running sharedstate authority:

    python examples/presence_board.py ws://localhost:8765
"""

import sys

import anyio

from sharedstate import SharedState, StateChange


def on_change(change: StateChange) -> None:
    print(f"[change] {change.key} = {change.value!r} ({change.type})")


def on_remove(change: StateChange) -> None:
    print(f"[remove] {change.key} (was {change.value!r})")


def on_presence(presence) -> None:
    print(f"[presence] {presence.key}: {presence.value}")


def on_readystate(state) -> None:
    print(f"[readystate] {state.value}")


async def main(uri: str) -> None:
    state = SharedState.connect(uri, log_to_console=True, auto_clean=True)

    state.on("change", on_change)
    state.on("remove", on_remove)
    state.on("presence", on_presence)
    state.on("readystatechange", on_readystate)

    async with state:
        with anyio.fail_after(10):
            while state.readystate is not SharedState.STATE.OPEN:
                await anyio.sleep(0.05)

        # Everything this agent owns lives under its meta namespace, so the
        # autoclean sweep of other clients removes it once we go away.
        with state.batch():
            state.set_item(f"__meta__{state.agent_id}", {"role": "board"})
            state.set_item(f"__cursor__{state.agent_id}", 0)

        for tick in range(1, 6):
            await anyio.sleep(1)
            state.set_item(f"__cursor__{state.agent_id}", tick, cas=True)

        print(f"final keys: {state.keys()}")
        print(f"agents present: {state.get_presence_list()}")


if __name__ == "__main__":
    anyio.run(main, sys.argv[1] if len(sys.argv) > 1 else "ws://localhost:8765")
