"""
Tests for the in-process EventBus.
"""

from __future__ import annotations

from mediastore.services.events import EventBus


class TestEventBus:
    def test_delivers_in_registration_order(self):
        bus = EventBus()
        received = []
        bus.on("progress", lambda payload: received.append(("first", payload)))
        bus.on("progress", lambda payload: received.append(("second", payload)))

        delivered = bus.emit("progress", {"progress": 10})

        assert delivered == 2
        assert received == [("first", {"progress": 10}), ("second", {"progress": 10})]

    def test_events_are_isolated_by_name(self):
        bus = EventBus()
        received = []
        bus.on("progress:upload_1", received.append)

        assert bus.emit("progress:upload_2", {}) == 0
        assert received == []

    def test_off_removes_handler(self):
        bus = EventBus()
        received = []
        bus.on("completed", received.append)

        bus.off("completed", received.append)
        bus.emit("completed", {"task_id": "x"})

        assert received == []
        assert bus.listener_count("completed") == 0

    def test_off_unknown_handler_is_ignored(self):
        bus = EventBus()
        bus.on("failed", print)

        bus.off("failed", repr)
        bus.off("never-registered", repr)

        assert bus.listener_count("failed") == 1

    def test_failing_handler_does_not_stop_delivery(self):
        bus = EventBus()
        received = []

        def broken(payload):
            raise RuntimeError("boom")

        bus.on("progress", broken)
        bus.on("progress", received.append)

        assert bus.emit("progress", {"progress": 1}) == 2
        assert received == [{"progress": 1}]

    def test_handler_may_unsubscribe_during_emit(self):
        bus = EventBus()
        calls = []

        def once(payload):
            calls.append(payload)
            bus.off("progress", once)

        bus.on("progress", once)
        bus.emit("progress", {"n": 1})
        bus.emit("progress", {"n": 2})

        assert calls == [{"n": 1}]
