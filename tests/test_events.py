import logging
import threading
import unittest

import pytest

from lazybind import (
    Container,
    ContainerDeleted,
    ContainerDisposed,
    ContainerUpdated,
    ContainerUpserted,
    Event,
    EventBus,
    TokenError,
)


class TestEventBus(unittest.TestCase):
    bus: EventBus

    def setUp(self):
        self.bus = EventBus()

    def test_emit_delivers_payload_to_listeners_in_order(self):
        seen = []
        self.bus.on(Event.DELETED, lambda p: seen.append(("first", p.key)))
        self.bus.on(Event.DELETED, lambda p: seen.append(("second", p.key)))

        self.bus.emit(Event.DELETED, ContainerDeleted(key="a"))
        assert seen == [("first", "a"), ("second", "a")]

    def test_event_names_are_accepted_as_strings(self):
        seen = []
        self.bus.on("disposed", seen.append)
        self.bus.emit("disposed", ContainerDisposed(key="a"))
        assert seen == [ContainerDisposed(key="a")]

    def test_unknown_event_name_raises(self):
        with pytest.raises(ValueError):
            self.bus.on("created", print)

    def test_unbind_is_idempotent(self):
        seen = []
        unbind = self.bus.on(Event.DELETED, seen.append)
        unbind()
        unbind()
        self.bus.emit(Event.DELETED, ContainerDeleted(key="a"))
        assert seen == []
        assert self.bus.listener_count(Event.DELETED) == 0

    def test_unbind_only_detaches_its_own_registration(self):
        seen = []
        unbind_first = self.bus.on(Event.DELETED, seen.append)
        self.bus.on(Event.DELETED, seen.append)
        unbind_first()
        unbind_first()
        assert self.bus.listener_count(Event.DELETED) == 1

    def test_payload_type_must_match_event(self):
        with pytest.raises(TypeError):
            self.bus.emit(Event.UPSERTED, ContainerDeleted(key="a"))

    def test_listener_can_unsubscribe_while_being_notified(self):
        seen = []

        def once(payload):
            seen.append(payload.key)
            unbind()

        unbind = self.bus.on(Event.DELETED, once)
        self.bus.emit(Event.DELETED, ContainerDeleted(key="a"))
        self.bus.emit(Event.DELETED, ContainerDeleted(key="b"))
        assert seen == ["a"]


def test_failing_listener_does_not_stop_delivery(caplog):
    bus = EventBus()
    seen = []

    def broken(payload):
        raise RuntimeError("listener bug")

    bus.on(Event.DELETED, broken)
    bus.on(Event.DELETED, seen.append)

    with caplog.at_level(logging.ERROR, logger="lazybind._events"):
        bus.emit(Event.DELETED, ContainerDeleted(key="a"))

    assert seen == [ContainerDeleted(key="a")]
    assert "failed handling 'deleted' event" in caplog.text


class TestContainerEvents(unittest.TestCase):
    cont: Container
    seen: list

    def setUp(self):
        self.cont = Container()
        self.seen = []
        for event in Event:
            self.cont.on(event, self.seen.append)

    def test_add_emits_upserted_with_registered_value(self):
        self.cont.add({"a": 1})
        assert self.seen == [ContainerUpserted(key="a", new_value=1)]

    def test_upsert_of_existing_token_emits_updated_before_upserted(self):
        self.cont.add({"a": 1})
        self.seen.clear()

        self.cont.upsert({"a": 2})
        assert self.seen == [
            ContainerUpdated(key="a", new_value=2),
            ContainerUpserted(key="a", new_value=2),
        ]

    def test_first_resolution_emits_upserted_with_produced_value(self):
        self.cont.add({"a": lambda: "made"})
        self.seen.clear()

        self.cont.get("a")
        self.cont.get("a")
        assert self.seen == [ContainerUpserted(key="a", new_value="made")]

    def test_delete_emits_deleted(self):
        self.cont.add({"a": 1})
        self.seen.clear()

        self.cont.delete("a")
        assert self.seen == [ContainerDeleted(key="a")]

    def test_failed_add_emits_nothing(self):
        self.cont.add({"a": 1})
        self.seen.clear()

        with pytest.raises(TokenError):
            self.cont.add({"b": 2, "a": 3})
        assert self.seen == []

    def test_listener_observes_applied_mutation(self):
        observed = []
        self.cont.on(Event.UPSERTED, lambda p: observed.append(self.cont.get(p.key)))
        self.cont.upsert({"a": "value"})
        assert observed[0] == "value"

    def test_on_returns_unsubscribe(self):
        unsubscribe = self.cont.on(Event.DELETED, self.seen.append)
        unsubscribe()
        self.cont.delete("a")
        # the listener registered in setUp is still attached
        assert self.seen == [ContainerDeleted(key="a")]


class TestListenersRunOutsideLock(unittest.TestCase):
    cont: Container
    blocked: list

    def setUp(self):
        self.cont = Container()
        self.blocked = []
        for event in Event:
            self.cont.on(event, self.touch_from_other_thread)

    def touch_from_other_thread(self, payload):
        worker = threading.Thread(target=self.cont.get_tokens, daemon=True)
        worker.start()
        worker.join(timeout=0.5)
        self.blocked.append((payload, worker.is_alive()))

    def assert_never_blocked(self):
        assert self.blocked, "listeners should have been notified"
        assert not any(alive for _, alive in self.blocked), self.blocked

    def test_add_notifies_outside_lock(self):
        self.cont.add({"a": 1, "b": 2})
        self.assert_never_blocked()

    def test_upsert_notifies_outside_lock(self):
        self.cont.add({"a": 1})
        self.blocked.clear()

        self.cont.upsert({"a": 2})
        assert [type(p) for p, _ in self.blocked] == [ContainerUpdated, ContainerUpserted]
        self.assert_never_blocked()

    def test_delete_notifies_outside_lock(self):
        self.cont.add({"a": 1}).delete("a")
        self.assert_never_blocked()
