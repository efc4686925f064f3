"""Tests for notifications.py: webhook notification system."""

from __future__ import annotations

import json
import time
import unittest
from unittest.mock import MagicMock, patch

from config_schema import NotificationEventsConfig, NotificationsConfig, WebhookConfig
from events import AGENT_COMPLETED, AGENT_OUTPUT, PUSH_FAILED, TASK_BLOCKED, Event
from notifications import NotificationManager, _RateLimiter, notification_for


def _make_config(enabled=True, webhooks=None, events=None):
    """Helper to create a NotificationsConfig."""
    if webhooks is None:
        webhooks = [WebhookConfig(url="https://hooks.example.com/test", type="generic", name="test")]
    if events is None:
        events = NotificationEventsConfig()
    return NotificationsConfig(enabled=enabled, webhooks=webhooks, events=events)


def _mock_response(mock_urlopen):
    mock_urlopen.return_value.__enter__ = MagicMock(return_value=MagicMock(read=MagicMock(return_value=b"")))
    mock_urlopen.return_value.__exit__ = MagicMock(return_value=False)


class TestNotificationFor(unittest.TestCase):

    def test_blocked(self):
        self.assertEqual(notification_for(Event(TASK_BLOCKED, "p")), "task_blocked")

    def test_push_failed(self):
        self.assertEqual(notification_for(Event(PUSH_FAILED, "p")), "push_failed")

    def test_agent_completed_by_status(self):
        done = Event(AGENT_COMPLETED, "p", {"status": "success"})
        failed = Event(AGENT_COMPLETED, "p", {"status": "failed"})
        other = Event(AGENT_COMPLETED, "p", {"status": "approved"})
        self.assertEqual(notification_for(done), "task_completed")
        self.assertEqual(notification_for(failed), "task_failed")
        self.assertIsNone(notification_for(other))

    def test_unrelated_event_ignored(self):
        self.assertIsNone(notification_for(Event(AGENT_OUTPUT, "p")))


class TestNotificationManagerDisabled(unittest.TestCase):

    @patch("notifications.urllib.request.urlopen")
    def test_disabled_does_nothing(self, mock_urlopen):
        mgr = NotificationManager(_make_config(enabled=False))
        mgr.notify("task_blocked", {"taskId": "p-1"})
        mock_urlopen.assert_not_called()

    @patch("notifications.urllib.request.urlopen")
    def test_event_toggle_respected(self, mock_urlopen):
        mgr = NotificationManager(_make_config())
        # on_task_failed defaults to False
        mgr.notify("task_failed", {"taskId": "p-1"})
        time.sleep(0.1)
        mock_urlopen.assert_not_called()


class TestPayloadFormats(unittest.TestCase):

    @patch("notifications.urllib.request.urlopen")
    def test_slack_payload(self, mock_urlopen):
        _mock_response(mock_urlopen)
        webhook = WebhookConfig(url="https://hooks.slack.com/test", type="slack", name="slack-test")
        mgr = NotificationManager(_make_config(webhooks=[webhook]))
        mgr.notify("task_blocked", {"taskId": "p-1", "reason": "Coding Failure"})

        time.sleep(0.2)

        mock_urlopen.assert_called_once()
        payload = json.loads(mock_urlopen.call_args[0][0].data.decode())
        self.assertIn("Task Blocked", payload["text"])
        self.assertIn("reason: Coding Failure", payload["text"])

    @patch("notifications.urllib.request.urlopen")
    def test_discord_payload(self, mock_urlopen):
        _mock_response(mock_urlopen)
        webhook = WebhookConfig(url="https://discord.com/api/webhooks/x", type="discord")
        mgr = NotificationManager(_make_config(webhooks=[webhook]))
        mgr.notify("push_failed", {"files": ["a.py", "b.py"]})

        time.sleep(0.2)

        payload = json.loads(mock_urlopen.call_args[0][0].data.decode())
        self.assertIn("**autosprint: Push Failed**", payload["content"])
        self.assertIn("files: a.py, b.py", payload["content"])

    @patch("notifications.urllib.request.urlopen")
    def test_generic_payload(self, mock_urlopen):
        _mock_response(mock_urlopen)
        mgr = NotificationManager(_make_config())
        mgr.notify("task_completed", {"taskId": "p-1"})

        time.sleep(0.2)

        req = mock_urlopen.call_args[0][0]
        payload = json.loads(req.data.decode())
        self.assertEqual(payload["event"], "task_completed")
        self.assertEqual(payload["source"], "autosprint")
        self.assertEqual(payload["details"], {"taskId": "p-1"})
        self.assertEqual(req.get_method(), "POST")


class TestRateLimiting(unittest.TestCase):

    @patch("notifications.urllib.request.urlopen")
    def test_duplicate_within_window_dropped(self, mock_urlopen):
        _mock_response(mock_urlopen)
        mgr = NotificationManager(_make_config())
        mgr.notify("task_blocked", {"taskId": "p-1"})
        mgr.notify("task_blocked", {"taskId": "p-1"})
        mgr.notify("task_blocked", {"taskId": "p-2"})

        time.sleep(0.2)

        self.assertEqual(mock_urlopen.call_count, 2)


class TestRateLimiter(unittest.TestCase):

    def test_window_reopens(self):
        now = [100.0]
        limiter = _RateLimiter(60, clock=lambda: now[0])
        self.assertTrue(limiter.allow("k"))
        now[0] = 159.0
        self.assertFalse(limiter.allow("k"))
        now[0] = 160.0
        self.assertTrue(limiter.allow("k"))

    def test_enabled_for_uses_event_toggles(self):
        mgr = NotificationManager(_make_config(events=NotificationEventsConfig(on_push_failed=False)))
        self.assertFalse(mgr.enabled_for("push_failed"))
        self.assertTrue(mgr.enabled_for("task_blocked"))
        self.assertFalse(NotificationManager(_make_config(webhooks=[])).enabled_for("task_blocked"))


class TestFailuresContained(unittest.TestCase):

    @patch("notifications.urllib.request.urlopen")
    def test_network_error_logged(self, mock_urlopen):
        import urllib.error
        mock_urlopen.side_effect = urllib.error.URLError("down")
        mgr = NotificationManager(_make_config())
        with self.assertLogs("notifications", level="WARNING"):
            mgr.notify("task_blocked", {"taskId": "p-1"})
            time.sleep(0.2)


class TestHandleEvent(unittest.TestCase):

    def test_forwards_mapped_events_with_project(self):
        mgr = NotificationManager(_make_config())
        with patch.object(mgr, "notify") as notify:
            mgr.handle_event(Event(TASK_BLOCKED, "proj", {"taskId": "proj-1", "reason": "Merge Failure"}))
            notify.assert_called_once_with(
                "task_blocked", {"project": "proj", "taskId": "proj-1", "reason": "Merge Failure"},
            )

    def test_ignores_unmapped_events(self):
        mgr = NotificationManager(_make_config())
        with patch.object(mgr, "notify") as notify:
            mgr.handle_event(Event(AGENT_OUTPUT, "proj", {"chunk": "x"}))
            notify.assert_not_called()

    def test_strips_output_from_details(self):
        mgr = NotificationManager(_make_config())
        with patch.object(mgr, "notify") as notify:
            mgr.handle_event(Event(AGENT_COMPLETED, "proj", {"status": "failed", "output": "huge"}))
            self.assertNotIn("output", notify.call_args[0][1])


if __name__ == "__main__":
    unittest.main()
