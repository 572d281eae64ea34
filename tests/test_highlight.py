"""
Tests for sync highlights, the debouncer and the event hub.
"""

import asyncio

import pytest

from familysync.sync.debounce import Debouncer
from familysync.sync.events import EventHub
from familysync.sync.highlight import HighlightTracker


class FakeSource:
    def __init__(self, state=None):
        self.state = dict(state or {})

    def __call__(self):
        return dict(self.state)


class TestHighlightTracker:
    """Tests for HighlightTracker."""

    def test_detects_new_and_modified(self):
        """Test the snapshot diff."""
        source = FakeSource({"a": "t1", "b": "t1"})
        tracker = HighlightTracker(source, duration_seconds=60)

        tracker.snapshot_before_reload()
        source.state = {"a": "t1", "b": "t2", "c": "t1"}
        new, modified = tracker.detect_changes()

        assert new == {"c"}
        assert modified == {"b"}
        assert tracker.is_new("c")
        assert tracker.is_modified("b")
        assert not tracker.is_new("a")

    def test_removed_ids_are_not_highlighted(self):
        """Test that deletions produce no highlight."""
        source = FakeSource({"a": "t1"})
        tracker = HighlightTracker(source, duration_seconds=60)
        tracker.snapshot_before_reload()
        source.state = {}
        assert tracker.detect_changes() == (set(), set())

    def test_no_snapshot_is_a_no_op(self):
        """Test detect_changes without a snapshot."""
        tracker = HighlightTracker(FakeSource({"a": "t1"}), duration_seconds=60)
        assert tracker.detect_changes() == (set(), set())
        assert tracker.new_ids == frozenset()

    def test_highlights_accumulate(self):
        """Test that a second sync adds to active highlights."""
        source = FakeSource({})
        tracker = HighlightTracker(source, duration_seconds=60)

        tracker.snapshot_before_reload()
        source.state = {"a": "t1"}
        tracker.detect_changes()

        tracker.snapshot_before_reload()
        source.state = {"a": "t1", "b": "t1"}
        tracker.detect_changes()

        assert tracker.new_ids == frozenset({"a", "b"})

    def test_clear(self):
        """Test clearing highlights and snapshot."""
        source = FakeSource({})
        tracker = HighlightTracker(source, duration_seconds=60)
        tracker.snapshot_before_reload()
        source.state = {"a": "t1"}
        tracker.detect_changes()

        tracker.clear()

        assert tracker.new_ids == frozenset()
        assert tracker.detect_changes() == (set(), set())

    @pytest.mark.asyncio
    async def test_highlights_expire(self):
        """Test that highlights drop after the duration."""
        source = FakeSource({})
        tracker = HighlightTracker(source, duration_seconds=0.02)
        tracker.snapshot_before_reload()
        source.state = {"a": "t1"}
        tracker.detect_changes()
        assert tracker.is_new("a")

        await asyncio.sleep(0.1)

        assert not tracker.is_new("a")


class TestDebouncer:
    """Tests for Debouncer."""

    @pytest.mark.asyncio
    async def test_burst_runs_once(self):
        """Test that triggers within the quiet period coalesce."""
        calls = []

        async def action():
            calls.append(1)

        debouncer = Debouncer(action, 0.02)
        for _ in range(5):
            debouncer.trigger()
        assert debouncer.pending

        await asyncio.sleep(0.1)
        await debouncer.wait()

        assert calls == [1]
        assert not debouncer.pending

    @pytest.mark.asyncio
    async def test_cancel(self):
        """Test that a cancelled call never runs."""
        calls = []

        async def action():
            calls.append(1)

        debouncer = Debouncer(action, 0.02)
        debouncer.trigger()
        debouncer.cancel()
        await asyncio.sleep(0.05)
        assert calls == []

    @pytest.mark.asyncio
    async def test_flush(self):
        """Test running a pending call immediately."""
        calls = []

        async def action():
            calls.append(1)

        debouncer = Debouncer(action, 10)
        assert await debouncer.flush() is False
        debouncer.trigger()
        assert await debouncer.flush() is True
        assert calls == [1]
        assert not debouncer.pending

    @pytest.mark.asyncio
    async def test_failing_action_is_contained(self):
        """Test that an exception in the action doesn't escape flush."""
        async def action():
            raise RuntimeError("boom")

        debouncer = Debouncer(action, 10)
        debouncer.trigger()
        assert await debouncer.flush() is True


class TestEventHub:
    """Tests for EventHub."""

    def test_subscribe_and_emit(self):
        """Test delivery to listeners."""
        hub = EventHub("test")
        received = []
        hub.subscribe(received.append)
        hub.emit("x")
        assert received == ["x"]

    def test_unsubscribe(self):
        """Test that the returned callable removes the listener."""
        hub = EventHub("test")
        received = []
        unsubscribe = hub.subscribe(received.append)
        unsubscribe()
        unsubscribe()
        hub.emit("x")
        assert received == []
        assert len(hub) == 0

    def test_failing_listener_does_not_stop_others(self):
        """Test listener isolation."""
        hub = EventHub("test")
        received = []

        def broken(_):
            raise ValueError("listener bug")

        hub.subscribe(broken)
        hub.subscribe(received.append)
        hub.emit("x")
        assert received == ["x"]
