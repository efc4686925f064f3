"""Which tasks are ready for work, and which one to pick next."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional

if TYPE_CHECKING:
    from task_store import Task, TaskStore

logger = logging.getLogger(__name__)

# Plain strings so this module does not import task_store at runtime.
_OPEN = "open"
_CLOSED = "closed"
_BLOCKED = "blocked"
_BLOCKED_LABEL = "blocked"


def find_epic(task: "Task", tasks_by_id: Dict[str, "Task"]) -> Optional["Task"]:
    """Walk up the parent chain and return the first epic, if any."""
    seen = {task.id}
    parent_id = task.parent_id()
    while parent_id and parent_id not in seen:
        seen.add(parent_id)
        parent = tasks_by_id.get(parent_id)
        if parent is None:
            return None
        if parent.is_epic:
            return parent
        parent_id = parent.parent_id()
    return None


def is_epic_blocked(task: "Task", tasks_by_id: Dict[str, "Task"]) -> bool:
    epic = find_epic(task, tasks_by_id)
    return epic is not None and epic.status == _BLOCKED


def blockers_closed(task: "Task", tasks_by_id: Dict[str, "Task"]) -> bool:
    """True when every ``blocks`` predecessor is closed. Unknown ids count as open."""
    for blocker_id in task.blocker_ids():
        blocker = tasks_by_id.get(blocker_id)
        if blocker is None or blocker.status != _CLOSED:
            return False
    return True


def is_ready(task: "Task", tasks_by_id: Dict[str, "Task"]) -> bool:
    return (
        task.status == _OPEN
        and not task.is_epic
        and _BLOCKED_LABEL not in task.labels
        and blockers_closed(task, tasks_by_id)
        and not is_epic_blocked(task, tasks_by_id)
    )


def ready_tasks(tasks: Iterable["Task"]) -> List["Task"]:
    """Ready tasks sorted by priority, ties broken by original order."""
    ordered = list(tasks)
    by_id = {t.id: t for t in ordered}
    indexed = [(t.priority, i, t) for i, t in enumerate(ordered) if is_ready(t, by_id)]
    indexed.sort(key=lambda item: (item[0], item[1]))
    return [t for _, _, t in indexed]


def select_next(store: "TaskStore", exclude_ids: Iterable[str] = ()) -> Optional["Task"]:
    """Pick the first ready task whose blockers are still closed right now.

    The ready list may be stale by the time we walk it, so every candidate
    is re-checked against the store. Candidates that fail the check are
    skipped and stay in the backlog.
    """
    excluded = set(exclude_ids)
    for task in store.ready():
        if task.id in excluded:
            continue
        if not store.are_all_blockers_closed(task.id):
            logger.info("Skipping %s: blockers reopened since ready list was built", task.id)
            continue
        return task
    return None
