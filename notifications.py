"""Webhook notifications for task outcomes (Slack, Discord, generic HTTP).

The EventBroadcaster hands every non-output event to
``NotificationManager.handle_event``; only completed, failed and blocked
tasks and failed pushes become notifications, each behind its toggle in
``notifications.events``.
"""

from __future__ import annotations

import json
import logging
import threading
import time
import urllib.error
import urllib.request
from typing import Any, Callable, Dict, Optional

from config_schema import NotificationsConfig, WebhookConfig
from events import AGENT_COMPLETED, PUSH_FAILED, TASK_BLOCKED, Event

logger = logging.getLogger(__name__)

SOURCE = "autosprint"
POST_TIMEOUT = 10

_DIRECT = {TASK_BLOCKED: "task_blocked", PUSH_FAILED: "push_failed"}
_BY_COMPLETION_STATUS = {"success": "task_completed", "failed": "task_failed"}


def notification_for(event: Event) -> Optional[str]:
    """Translate a broadcast event into a notification name, or None to ignore it."""
    if event.type == AGENT_COMPLETED:
        return _BY_COMPLETION_STATUS.get(event.payload.get("status"))
    return _DIRECT.get(event.type)


def _text_body(event: str, details: Dict[str, Any], bold: str) -> str:
    title = f"{SOURCE}: {event.replace('_', ' ').title()}"
    lines = [f"{bold}{title}{bold}"]
    for key, value in details.items():
        if isinstance(value, (list, tuple)):
            value = ", ".join(str(v) for v in value)
        lines.append(f"• {key}: {value}")
    return "\n".join(lines)


def _slack(event: str, details: Dict[str, Any]) -> Dict[str, Any]:
    return {"text": _text_body(event, details, "*")}


def _discord(event: str, details: Dict[str, Any]) -> Dict[str, Any]:
    return {"content": _text_body(event, details, "**")}


def _generic(event: str, details: Dict[str, Any]) -> Dict[str, Any]:
    return {"event": event, "source": SOURCE, "details": details, "timestamp": time.time()}


PAYLOAD_BUILDERS: Dict[str, Callable[[str, Dict[str, Any]], Dict[str, Any]]] = {
    "slack": _slack,
    "discord": _discord,
    "generic": _generic,
}


class _RateLimiter:
    """Drops a key seen again within ``window`` seconds."""

    def __init__(self, window: float, clock: Callable[[], float] = time.monotonic):
        self.window = window
        self._clock = clock
        self._seen: Dict[str, float] = {}
        self._lock = threading.Lock()

    def allow(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            last = self._seen.get(key)
            if last is not None and now - last < self.window:
                return False
            self._seen = {k: t for k, t in self._seen.items() if now - t < self.window}
            self._seen[key] = now
            return True


class NotificationManager:
    """Sends webhook notifications for orchestrator events.

    Each webhook is posted from its own daemon thread so a slow endpoint
    never holds up a slot driver. Failures are logged and dropped.
    Identical (event, details) pairs within RATE_LIMIT_SECONDS are sent once.
    """

    RATE_LIMIT_SECONDS = 60

    def __init__(self, config: NotificationsConfig):
        self._config = config
        self._limiter = _RateLimiter(self.RATE_LIMIT_SECONDS)

    def handle_event(self, event: Event) -> None:
        name = notification_for(event)
        if name is None:
            return
        details = {"project": event.project_id}
        details.update((k, v) for k, v in event.payload.items() if k != "output")
        self.notify(name, details)

    def enabled_for(self, event: str) -> bool:
        if not self._config.enabled or not self._config.webhooks:
            return False
        return bool(getattr(self._config.events, f"on_{event}", True))

    def notify(self, event: str, details: Optional[Dict[str, Any]] = None) -> None:
        """Send a notification for the given event to all configured webhooks."""
        if not self.enabled_for(event):
            return
        details = details or {}
        if not self._limiter.allow(f"{event}:{json.dumps(details, sort_keys=True, default=str)}"):
            logger.debug("Rate-limited notification for event=%s", event)
            return
        for webhook in self._config.webhooks:
            if webhook.url:
                threading.Thread(
                    target=self._send_webhook, args=(webhook, event, details),
                    name=f"notify-{event}", daemon=True,
                ).start()

    def _send_webhook(self, webhook: WebhookConfig, event: str, details: Dict[str, Any]) -> None:
        label = webhook.name or webhook.url[:40]
        build = PAYLOAD_BUILDERS.get(webhook.type, _generic)
        try:
            request = urllib.request.Request(
                webhook.url,
                data=json.dumps(build(event, details), default=str).encode("utf-8"),
                headers={"Content-Type": "application/json"},
                method="POST",
            )
            with urllib.request.urlopen(request, timeout=POST_TIMEOUT) as resp:
                resp.read()
        except (urllib.error.URLError, OSError, ValueError) as e:
            logger.warning("Failed to send %s notification to %s: %s", event, label, e)
            return
        except Exception:
            logger.exception("Unexpected error sending %s notification to %s", event, label)
            return
        logger.debug("Notification sent: event=%s webhook=%s", event, label)
