"""Tests for core module: readystate, deferred queue, dispatcher, stores."""

import anyio
import pytest

from sharedstate.core.dispatcher import CallbackDispatcher
from sharedstate.core.readystate import ReadyStateMachine
from sharedstate.core.scheduler import DeferredQueue
from sharedstate.core.store import PresenceStore, StateStore
from sharedstate.core.types import (
    ChangeItem,
    ChangeType,
    Channel,
    PresenceChange,
    ReadyState,
    StateChange,
)
from sharedstate.exceptions import (
    HandlerFaultError,
    IllegalArgumentError,
    IllegalHandlerError,
    UnsupportedChannelError,
)


class TestReadyStateMachine:
    def test_initial_value_is_connecting(self):
        assert ReadyStateMachine().get() is ReadyState.CONNECTING

    def test_change_is_announced_once(self):
        seen = []
        machine = ReadyStateMachine(on_change=seen.append)
        machine.set("open")
        machine.set(ReadyState.OPEN)
        assert seen == [ReadyState.OPEN]
        assert machine.is_open

    def test_rejects_unknown_value(self):
        machine = ReadyStateMachine()
        with pytest.raises(IllegalArgumentError):
            machine.set("half-open")
        with pytest.raises(IllegalArgumentError):
            machine.set(3)
        assert machine.get() is ReadyState.CONNECTING

    def test_closed_is_absorbing(self):
        seen = []
        machine = ReadyStateMachine(on_change=seen.append)
        machine.set("open")
        machine.set("connecting")
        machine.set("closed")
        machine.set("open")
        assert machine.get() is ReadyState.CLOSED
        assert seen == [ReadyState.OPEN, ReadyState.CONNECTING, ReadyState.CLOSED]

    def test_closed_still_validates_values(self):
        machine = ReadyStateMachine()
        machine.set("closed")
        with pytest.raises(IllegalArgumentError):
            machine.set("bogus")


class TestDeferredQueue:
    def test_runs_in_fifo_order_after_caller(self):
        queue = DeferredQueue()
        order = []
        queue.call_soon(order.append, 1)
        queue.call_soon(order.append, 2)
        order.append("sync")
        assert queue.run_pending() == 2
        assert order == ["sync", 1, 2]

    def test_tasks_queued_while_draining_run_last(self):
        queue = DeferredQueue()
        order = []

        def first():
            order.append("first")
            queue.call_soon(order.append, "nested")

        queue.call_soon(first)
        queue.call_soon(order.append, "second")
        queue.run_pending()
        assert order == ["first", "second", "nested"]

    def test_failing_task_does_not_stop_queue(self):
        queue = DeferredQueue()
        order = []

        def boom():
            raise RuntimeError("boom")

        queue.call_soon(boom)
        queue.call_soon(order.append, "after")
        assert queue.run_pending() == 2
        assert order == ["after"]

    def test_close_drops_queued_tasks(self):
        queue = DeferredQueue()
        order = []
        queue.call_soon(order.append, 1)
        queue.close()
        queue.call_soon(order.append, 2)
        assert queue.run_pending() == 0
        assert order == []
        assert queue.closed

    @pytest.mark.anyio
    async def test_run_loop_executes_tasks(self):
        queue = DeferredQueue()
        order = []
        async with anyio.create_task_group() as tg:
            await tg.start(queue.run)
            queue.call_soon(order.append, "a")
            queue.call_soon(order.append, "b")
            with anyio.fail_after(2):
                while len(order) < 2:
                    await anyio.sleep(0.01)
            queue.close()
        assert order == ["a", "b"]


def _dispatcher(store=None, errors=None):
    queue = DeferredQueue()
    store = store if store is not None else StateStore()
    dispatcher = CallbackDispatcher(
        queue,
        replay_providers={
            Channel.CHANGE: store.replay,
            Channel.CHANGESET: lambda: [None],
            Channel.READYSTATECHANGE: lambda: [ReadyState.OPEN],
        },
        error_sink=(lambda *args: errors.append(args)) if errors is not None else None,
    )
    return dispatcher, queue, store


class TestCallbackDispatcher:
    def test_rejects_unknown_channel(self):
        dispatcher, _, _ = _dispatcher()
        with pytest.raises(UnsupportedChannelError):
            dispatcher.on("update", lambda e: None)

    def test_rejects_non_callable_handler(self):
        dispatcher, _, _ = _dispatcher()
        with pytest.raises(IllegalHandlerError):
            dispatcher.on("change", "not a function")

    def test_registration_is_idempotent(self):
        dispatcher, queue, _ = _dispatcher()
        calls = []
        handler = calls.append
        assert dispatcher.on("changeset", handler) is True
        assert dispatcher.on("changeset", handler) is False
        queue.run_pending()
        dispatcher.emit("changeset")
        assert calls == [None, None]
        assert len(dispatcher.handlers("changeset")) == 1

    def test_replay_delivers_current_entries_before_live_events(self):
        store = StateStore()
        list(store.apply([{"type": "set", "key": "a", "value": 1}, {"type": "set", "key": "b", "value": 2}]))
        dispatcher, queue, _ = _dispatcher(store)
        seen = []
        dispatcher.on("change", seen.append)
        dispatcher.emit("change", StateChange("c", 3, "add"))
        assert seen == []
        queue.run_pending()
        assert seen == [StateChange("a", 1, "update"), StateChange("b", 2, "update")]
        dispatcher.emit("change", StateChange("c", 3, "add"))
        assert seen[-1] == StateChange("c", 3, "add")

    def test_replay_content_is_computed_when_it_runs(self):
        dispatcher, queue, store = _dispatcher()
        seen = []
        dispatcher.on("change", seen.append)
        list(store.apply([{"type": "set", "key": "late", "value": True}]))
        queue.run_pending()
        assert seen == [StateChange("late", True, "update")]

    def test_off_before_replay_suppresses_it(self):
        store = StateStore()
        list(store.apply([{"type": "set", "key": "a", "value": 1}]))
        dispatcher, queue, _ = _dispatcher(store)
        seen = []
        dispatcher.on("change", seen.append)
        dispatcher.off("change", seen.append)
        queue.run_pending()
        assert seen == []

    def test_on_off_on_replays_once(self):
        dispatcher, queue, _ = _dispatcher()
        seen = []
        dispatcher.on("changeset", seen.append)
        dispatcher.off("changeset", seen.append)
        dispatcher.on("changeset", seen.append)
        queue.run_pending()
        assert seen == [None]

    def test_all_synchronous_registrations_complete_before_replays(self):
        dispatcher, queue, _ = _dispatcher()
        order = []
        dispatcher.on("readystatechange", lambda s: order.append(("first", s)))
        order.append("between")
        dispatcher.on("changeset", lambda e: order.append(("second", e)))
        order.append("end")
        queue.run_pending()
        assert order == ["between", "end", ("first", ReadyState.OPEN), ("second", None)]

    def test_empty_replay_clears_pending_flag(self):
        dispatcher, queue, _ = _dispatcher()
        seen = []
        dispatcher.on("change", seen.append)
        queue.run_pending()
        assert seen == []
        dispatcher.emit("change", StateChange("x", 1, "add"))
        assert seen == [StateChange("x", 1, "add")]

    def test_skip_replay_receives_live_events_immediately(self):
        dispatcher, queue, _ = _dispatcher()
        seen = []
        dispatcher.on("changeset", seen.append, skip_replay=True)
        dispatcher.emit("changeset")
        assert seen == [None]
        queue.run_pending()
        assert seen == [None]

    def test_handler_fault_is_reported_and_delivery_continues(self):
        errors = []
        dispatcher, queue, _ = _dispatcher(errors=errors)
        seen = []

        def broken(event):
            raise ValueError("handler bug")

        dispatcher.on("changeset", broken, skip_replay=True)
        dispatcher.on("changeset", seen.append, skip_replay=True)
        dispatcher.emit("changeset")
        dispatcher.emit("changeset")
        assert seen == [None, None]
        assert len(errors) == 2
        assert dispatcher.handlers("changeset") == [broken, seen.append]

    def test_handler_fault_carries_cause(self):
        reported = []
        queue = DeferredQueue()
        dispatcher = CallbackDispatcher(queue, error_sink=lambda *args: reported.append(args))

        def broken(event):
            raise ValueError("handler bug")

        dispatcher.on("remove", broken, skip_replay=True)
        dispatcher.emit("remove", StateChange("k", 1, "delete"))
        faults = [arg for call in reported for arg in call if isinstance(arg, HandlerFaultError)]
        assert len(faults) == 1
        assert faults[0].channel is Channel.REMOVE
        assert isinstance(faults[0].__cause__, ValueError)

    def test_context_is_passed_to_handler(self):
        dispatcher, queue, _ = _dispatcher()
        seen = []

        def handler(ctx, event):
            seen.append((ctx, event))

        dispatcher.on("changeset", handler, context="ctx", skip_replay=True)
        dispatcher.emit("changeset")
        assert seen == [("ctx", None)]
        assert dispatcher.record(handler).context == "ctx"

    def test_off_unknown_channel_or_handler_is_noop(self):
        dispatcher, _, _ = _dispatcher()
        assert dispatcher.off("bogus", print) is False
        assert dispatcher.off("change", print) is False

    def test_clear_makes_queued_replay_noop(self):
        dispatcher, queue, _ = _dispatcher()
        seen = []
        dispatcher.on("changeset", seen.append)
        dispatcher.clear()
        queue.run_pending()
        assert seen == []
        assert dispatcher.handlers("changeset") == []


class TestStateStore:
    def test_set_classifies_add_and_update(self):
        store = StateStore()
        events = list(store.apply([
            {"type": "set", "key": "a", "value": 1},
            {"type": "set", "key": "a", "value": 2},
        ]))
        assert events == [
            (Channel.CHANGE, StateChange("a", 1, "add")),
            (Channel.CHANGE, StateChange("a", 2, "update")),
        ]
        assert store.get("a") == 2

    def test_identical_value_is_noop(self):
        store = StateStore()
        list(store.apply([{"type": "set", "key": "a", "value": {"x": [1, 2]}}]))
        assert list(store.apply([{"type": "set", "key": "a", "value": {"x": [1, 2]}}])) == []

    def test_remove_reports_prior_value(self):
        store = StateStore()
        list(store.apply([{"type": "set", "key": "a", "value": "v"}]))
        events = list(store.apply([{"type": "remove", "key": "a"}, {"type": "remove", "key": "zzz"}]))
        assert events == [(Channel.REMOVE, StateChange("a", "v", "delete"))]
        assert "a" not in store

    def test_store_mutates_before_each_event(self):
        store = StateStore()
        observed = []
        for _, change in store.apply([
            {"type": "set", "key": "a", "value": 1},
            {"type": "set", "key": "b", "value": 2},
        ]):
            observed.append((change.key, store.keys()))
        assert observed == [("a", ["a"]), ("b", ["a", "b"])]

    def test_matches_last_write_wins_fold(self):
        batch = [
            {"type": "set", "key": "a", "value": 1},
            {"type": "set", "key": "b", "value": 1},
            {"type": "remove", "key": "a"},
            {"type": "set", "key": "c", "value": [1]},
            {"type": "set", "key": "b", "value": 5},
            {"type": "set", "key": "a", "value": 3},
            {"type": "remove", "key": "c"},
            {"type": "set", "key": "b", "value": 5},
        ]
        expected = {}
        for item in batch:
            if item["type"] == "set":
                expected[item["key"]] = item["value"]
            else:
                expected.pop(item["key"], None)
        store = StateStore()
        events = list(store.apply(batch))
        assert store.snapshot() == expected
        # the final set of b to 5 is a no-op
        assert len(events) == 7

    def test_malformed_items_are_skipped(self):
        store = StateStore()
        events = list(store.apply([
            {"type": "set", "key": "", "value": 1},
            {"type": "explode", "key": "a"},
            "garbage",
            {"type": "set", "key": "ok", "value": None},
        ]))
        assert events == [(Channel.CHANGE, StateChange("ok", None, "add"))]

    def test_get_returns_copy(self):
        store = StateStore()
        list(store.apply([{"type": "set", "key": "a", "value": {"nested": [1]}}]))
        copy = store.get("a")
        copy["nested"].append(2)
        assert store.get("a") == {"nested": [1]}
        assert store.get("missing", "absent") == "absent"


class TestPresenceStore:
    def test_first_seen_and_changes_are_reported(self):
        presence = PresenceStore()
        changes = list(presence.apply([
            {"key": "a1", "value": "online"},
            {"key": "a1", "value": "online"},
            {"key": "a2", "value": "away"},
            {"key": "a1", "value": "offline"},
        ]))
        assert changes == [
            PresenceChange("a1", "online"),
            PresenceChange("a2", "away"),
            PresenceChange("a1", "offline"),
        ]
        assert presence.agent_ids() == ["a1", "a2"]

    def test_falsy_values_normalize_to_none(self):
        presence = PresenceStore()
        assert list(presence.apply([{"key": "a1", "value": ""}])) == [PresenceChange("a1", None)]
        assert list(presence.apply([{"key": "a1"}])) == []
        assert "a1" in presence
        assert not presence.is_present("a1")

    def test_entries_without_key_are_skipped(self):
        presence = PresenceStore()
        assert list(presence.apply([{"value": "online"}, None])) == []
        assert len(presence) == 0


class TestChangeItem:
    def test_wire_shapes(self):
        assert ChangeItem(ChangeType.SET, "k", 1).to_wire() == {"type": "set", "key": "k", "value": 1}
        assert ChangeItem(ChangeType.REMOVE, "k").to_wire() == {"type": "remove", "key": "k"}
        assert ChangeItem(ChangeType.SET_CAS, "k", 1, 2).to_wire() == {
            "type": "setCas",
            "key": "k",
            "value": 1,
            "oldValue": 2,
        }
        assert ChangeItem(ChangeType.SET_INSERT, "k", 1).to_wire() == {"type": "setInsert", "key": "k", "value": 1}

    def test_from_wire_rejects_malformed(self):
        assert ChangeItem.from_wire({"type": "set"}) is None
        assert ChangeItem.from_wire({"type": "nope", "key": "k"}) is None
        assert ChangeItem.from_wire(["set", "k"]) is None
        item = ChangeItem.from_wire({"type": "setCas", "key": "k", "value": 1, "oldValue": 0})
        assert item == ChangeItem(ChangeType.SET_CAS, "k", 1, 0)
