"""Tests for events.py: per-project event broadcaster."""

from unittest.mock import MagicMock

from events import AGENT_OUTPUT, TASK_BLOCKED, TASK_UPDATED, EventBroadcaster


class TestEventBroadcaster:
    def test_subscriber_receives_events(self):
        bus = EventBroadcaster()
        received = []
        bus.subscribe("proj", received.append)
        bus.emit("proj", TASK_UPDATED, taskId="proj-1", status="open")
        assert len(received) == 1
        assert received[0].type == TASK_UPDATED
        assert received[0].payload == {"taskId": "proj-1", "status": "open"}
        assert received[0].project_id == "proj"

    def test_projects_are_isolated(self):
        bus = EventBroadcaster()
        a, b = [], []
        bus.subscribe("a", a.append)
        bus.subscribe("b", b.append)
        bus.emit("a", TASK_UPDATED)
        assert len(a) == 1
        assert b == []

    def test_subscribe_replaces_previous(self):
        bus = EventBroadcaster()
        first, second = [], []
        bus.subscribe("proj", first.append)
        previous = bus.subscribe("proj", second.append)
        assert previous == first.append
        bus.emit("proj", TASK_UPDATED)
        assert first == []
        assert len(second) == 1

    def test_unsubscribe(self):
        bus = EventBroadcaster()
        received = []
        bus.subscribe("proj", received.append)
        bus.unsubscribe("proj")
        bus.emit("proj", TASK_UPDATED)
        assert received == []

    def test_failing_subscriber_does_not_raise(self):
        bus = EventBroadcaster()
        bus.subscribe("proj", MagicMock(side_effect=RuntimeError("boom")))
        event = bus.emit("proj", TASK_BLOCKED, taskId="x")
        assert event.type == TASK_BLOCKED

    def test_history_excludes_agent_output(self):
        bus = EventBroadcaster()
        bus.emit("proj", AGENT_OUTPUT, chunk="line")
        bus.emit("proj", TASK_UPDATED, taskId="1")
        bus.emit("proj", TASK_BLOCKED, taskId="1")
        assert [e.type for e in bus.history("proj")] == [TASK_UPDATED, TASK_BLOCKED]
        assert [e.type for e in bus.history("proj", TASK_BLOCKED)] == [TASK_BLOCKED]

    def test_notifier_gets_events_but_not_output(self):
        notifier = MagicMock()
        bus = EventBroadcaster(notifier=notifier)
        bus.emit("proj", AGENT_OUTPUT, chunk="x")
        bus.emit("proj", TASK_BLOCKED, taskId="1")
        assert notifier.handle_event.call_count == 1
        assert notifier.handle_event.call_args[0][0].type == TASK_BLOCKED

    def test_notifier_failure_is_contained(self):
        notifier = MagicMock()
        notifier.handle_event.side_effect = RuntimeError("down")
        bus = EventBroadcaster(notifier=notifier)
        bus.emit("proj", TASK_UPDATED)
