"""Tests for the push/poll event bridge.

Tests cover:
- Backlog replay before live events
- Fallback to polling when the push channel drops
- Exactly-once application of confidence deltas on the client side
- SSE framing
"""

import json
from unittest.mock import MagicMock

import pytest

from revive.core.events import (
    ConfidenceAccumulator,
    DeliveredEvents,
    EventBroadcaster,
    EventStream,
    SubscriptionDropped,
    to_sse,
)


def _take(iterator, n):
    return [next(iterator) for _ in range(n)]


# ── Tests: Broadcaster ───────────────────────────────────────────────────


class TestEventBroadcaster:

    def test_publish_reaches_only_matching_project(self):
        broadcaster = EventBroadcaster()
        sub_a = broadcaster.subscribe("a")
        sub_b = broadcaster.subscribe("b")

        broadcaster.publish({"event_id": 1, "project_id": "a"})

        assert sub_a.get(timeout=0.1)["event_id"] == 1
        assert sub_b.get(timeout=0.01) is None

    def test_slow_consumer_is_dropped(self):
        broadcaster = EventBroadcaster(max_queue=2)
        sub = broadcaster.subscribe("a")

        for i in range(3):
            broadcaster.publish({"event_id": i, "project_id": "a"})

        assert broadcaster.subscriber_count("a") == 0
        with pytest.raises(SubscriptionDropped):
            sub.get(timeout=0.01)

    def test_close_drops_everyone_and_refuses_new_subscribers(self):
        broadcaster = EventBroadcaster()
        sub = broadcaster.subscribe("a")

        broadcaster.close()

        assert sub.dropped is True
        with pytest.raises(SubscriptionDropped):
            broadcaster.subscribe("a")


# ── Tests: Stream ────────────────────────────────────────────────────────


class TestEventStream:

    def test_backlog_then_live(self, event_log, broadcaster, project):
        pid = project["project_id"]
        event_log.append(pid, "thought", "before")
        stream = EventStream(event_log, broadcaster, poll_interval=0.05)
        events = stream.iter_events(pid)

        assert next(events)["content"] == "before"
        event_log.append(pid, "thought", "after")
        assert next(events)["content"] == "after"
        events.close()
        assert broadcaster.subscriber_count(pid) == 0

    def test_falls_back_to_polling_when_push_drops(self, event_log, broadcaster, project):
        pid = project["project_id"]
        event_log.append(pid, "thought", "first")
        stream = EventStream(event_log, broadcaster, poll_interval=0.01)
        events = stream.iter_events(pid)
        assert next(events)["content"] == "first"

        broadcaster.close()
        event_log.append(pid, "thought", "second")

        assert next(events)["content"] == "second"
        events.close()

    def test_no_broadcaster_polls(self, event_log, project):
        pid = project["project_id"]
        stream = EventStream(event_log, None, poll_interval=0.01)
        events = stream.iter_events(pid)
        event_log.append(pid, "thought", "polled")

        assert next(events)["content"] == "polled"
        events.close()

    def test_subscribe_failure_falls_back_to_polling(self, event_log, project):
        pid = project["project_id"]
        broadcaster = MagicMock()
        broadcaster.subscribe.side_effect = RuntimeError("no push")
        event_log.append(pid, "thought", "still here")

        events = EventStream(event_log, broadcaster, poll_interval=0.01).iter_events(pid)

        assert next(events)["content"] == "still here"
        events.close()

    def test_each_event_delivered_once(self, event_log, broadcaster, project):
        """Push and poll both see the same events; the stream dedupes by id."""
        pid = project["project_id"]
        for i in range(3):
            event_log.append(pid, "thought", f"e{i}")
        events = EventStream(event_log, broadcaster, poll_interval=0.01).iter_events(pid)

        first = _take(events, 3)
        broadcaster.publish(first[0])
        event_log.append(pid, "thought", "e3")

        assert next(events)["content"] == "e3"
        events.close()

    def test_stop_ends_iteration(self, event_log, project):
        events = EventStream(event_log, None, poll_interval=0.01).iter_events(
            project["project_id"], stop=lambda: True
        )
        assert list(events) == []


# ── Tests: Client-side accumulation ──────────────────────────────────────


class TestConfidenceAccumulator:

    def test_duplicate_delivery_applied_once(self):
        acc = ConfidenceAccumulator()
        event = {"event_id": 7, "confidence_delta": 0.3}

        assert acc.apply(event) is True
        assert acc.apply(event) is False
        assert acc.score == pytest.approx(0.3)

    def test_clamped(self):
        acc = ConfidenceAccumulator(initial=0.9)
        acc.apply({"event_id": 1, "confidence_delta": 0.5})
        assert acc.score == 1.0
        acc.apply({"event_id": 2, "confidence_delta": -3})
        assert acc.score == 0.0

    def test_replayed_stream_matches_server_score(self, event_log, state, project):
        """Push drop + poll replay must not double count."""
        pid = project["project_id"]
        for delta in (0.1, 0.2, -0.05):
            event_log.append(pid, "confidence_update", "", confidence_delta=delta)
        events = event_log.list_events(pid)

        acc = ConfidenceAccumulator()
        for event in events + events:
            acc.apply(event)

        assert acc.score == pytest.approx(state.get_project(pid)["confidence_score"])


# ── Tests: Delivered-event bookkeeping ───────────────────────────────────


def _event(event_id, second):
    return {"event_id": event_id, "created_at": f"2026-01-01T00:00:{second:02d}"}


class TestDeliveredEvents:

    def test_ids_at_or_below_cursor_are_pruned(self):
        delivered = DeliveredEvents()
        for i in range(1, 51):
            assert delivered.first_time(_event(i, 1)) is True
        assert len(delivered) == 50

        delivered.advance(_event(40, 1))
        delivered.prune()

        assert len(delivered) == 10

    def test_pruned_event_is_still_recognised(self):
        delivered = DeliveredEvents()
        delivered.first_time(_event(1, 1))
        delivered.advance(_event(1, 1))
        delivered.prune()

        assert len(delivered) == 0
        assert delivered.first_time(_event(1, 1)) is False

    def test_push_ahead_of_cursor_deduped_against_later_read(self):
        delivered = DeliveredEvents()
        delivered.advance(_event(1, 1))
        assert delivered.first_time(_event(5, 3)) is True

        assert delivered.first_time(_event(5, 3)) is False
        delivered.advance(_event(5, 3))
        delivered.prune()
        assert len(delivered) == 0

    def test_cursor_orders_by_timestamp_before_id(self):
        delivered = DeliveredEvents()
        delivered.advance(_event(9, 1))

        assert delivered.first_time(_event(3, 2)) is True

    def test_long_stream_keeps_bookkeeping_small(self, event_log, project, monkeypatch):
        pid = project["project_id"]
        for i in range(30):
            event_log.append(pid, "thought", f"e{i}")
        sizes = []
        original_prune = DeliveredEvents.prune

        def recording_prune(self):
            original_prune(self)
            sizes.append(len(self))

        monkeypatch.setattr(DeliveredEvents, "prune", recording_prune)
        events = EventStream(event_log, None, poll_interval=0.01).iter_events(pid)

        assert len(_take(events, 30)) == 30
        event_log.append(pid, "thought", "last")
        assert next(events)["content"] == "last"
        events.close()
        assert sizes and max(sizes) == 0

    def test_push_stream_catches_cursor_up(self, event_log, broadcaster, project, monkeypatch):
        pid = project["project_id"]
        event_log.append(pid, "thought", "first")
        sizes = []
        original_prune = DeliveredEvents.prune

        def recording_prune(self):
            original_prune(self)
            sizes.append(len(self))

        monkeypatch.setattr(DeliveredEvents, "prune", recording_prune)
        events = EventStream(event_log, broadcaster, poll_interval=0.05).iter_events(pid)
        assert next(events)["content"] == "first"

        for i in range(150):
            event_log.append(pid, "thought", f"e{i}")
        received = [e["content"] for e in _take(events, 150)]
        events.close()

        assert received == [f"e{i}" for i in range(150)]
        assert len(sizes) >= 2
        assert sizes[-1] == 0


class TestToSse:

    def test_frame(self):
        frame = to_sse({"event_id": 3, "content": "hi"})

        assert frame.startswith("id: 3\ndata: ")
        assert frame.endswith("\n\n")
        assert json.loads(frame.split("data: ", 1)[1]) == {"event_id": 3, "content": "hi"}
