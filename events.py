"""Per-project outbound event channel.

Each project has at most one subscriber (a UI bridge, a test listener); setting
a new one replaces the old. Delivery never raises into the emitter: a
failing subscriber is logged and the orchestrator carries on.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)

TASK_UPDATED = "task.updated"
TASK_BLOCKED = "task.blocked"
AGENT_STARTED = "agent.started"
AGENT_OUTPUT = "agent.output"
AGENT_COMPLETED = "agent.completed"
BUILD_STATUS = "build.status"
MERGE_PUSHED = "merge.pushed"
PUSH_FAILED = "push.failed"
EPIC_READY_FOR_FINAL_REVIEW = "epic.ready_for_final_review"
FILES_CHANGED = "merge.files_changed"

HISTORY_SIZE = 200


@dataclass
class Event:
    type: str
    project_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


Subscriber = Callable[[Event], None]


class EventBroadcaster:
    def __init__(self, notifier: Optional[Any] = None):
        self._subscribers: Dict[str, Subscriber] = {}
        self._history: Dict[str, Deque[Event]] = {}
        self._lock = threading.Lock()
        self._notifier = notifier

    def subscribe(self, project_id: str, callback: Subscriber) -> Optional[Subscriber]:
        """Install the project's subscriber, returning the one it replaced."""
        with self._lock:
            previous = self._subscribers.get(project_id)
            self._subscribers[project_id] = callback
        return previous

    def unsubscribe(self, project_id: str) -> None:
        with self._lock:
            self._subscribers.pop(project_id, None)

    def emit(self, project_id: str, event_type: str, **payload: Any) -> Event:
        event = Event(type=event_type, project_id=project_id, payload=payload)
        with self._lock:
            history = self._history.setdefault(project_id, deque(maxlen=HISTORY_SIZE))
            # agent.output is high volume; keep it out of the replay buffer
            if event_type != AGENT_OUTPUT:
                history.append(event)
            subscriber = self._subscribers.get(project_id)
        if subscriber is not None:
            try:
                subscriber(event)
            except Exception:
                logger.exception("Event subscriber for %s failed on %s", project_id, event_type)
        if self._notifier is not None and event_type != AGENT_OUTPUT:
            try:
                self._notifier.handle_event(event)
            except Exception:
                logger.exception("Notifier failed on %s", event_type)
        return event

    def history(self, project_id: str, event_type: Optional[str] = None) -> List[Event]:
        with self._lock:
            events = list(self._history.get(project_id, ()))
        if event_type is not None:
            events = [e for e in events if e.type == event_type]
        return events
