"""Task tracker interface and a file-backed implementation.

The orchestration core only talks to ``TaskStore``. ``JsonTaskStore`` keeps
every task of a repository in one JSON file guarded by an fcntl lock so the
CLI and the orchestrator can share it; ``InMemoryTaskStore`` backs tests.
"""

from __future__ import annotations

import abc
import copy
import fcntl
import json
import logging
import os
import re
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import readiness

logger = logging.getLogger(__name__)

STATUS_OPEN = "open"
STATUS_IN_PROGRESS = "in_progress"
STATUS_BLOCKED = "blocked"
STATUS_CLOSED = "closed"
VALID_STATUSES = (STATUS_OPEN, STATUS_IN_PROGRESS, STATUS_BLOCKED, STATUS_CLOSED)

DEP_BLOCKS = "blocks"
DEP_PARENT_CHILD = "parent-child"

BLOCKED_LABEL = "blocked"
ATTEMPTS_LABEL_PREFIX = "attempts:"
AGENT_ASSIGNEE_RE = re.compile(r"^agent-\d+$")

_UPDATABLE_FIELDS = {
    "title", "description", "status", "assignee", "priority",
    "block_reason", "last_auto_retry_at", "issue_type",
}


class TaskNotFoundError(KeyError):
    """No task with the given id."""


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_attempts(labels: List[str]) -> int:
    """Return the cumulative attempt count encoded in ``attempts:N`` labels (max wins)."""
    best = 0
    for label in labels or []:
        if not label.startswith(ATTEMPTS_LABEL_PREFIX):
            continue
        try:
            best = max(best, int(label[len(ATTEMPTS_LABEL_PREFIX):]))
        except ValueError:
            continue
    return best


def is_agent_assignee(assignee: Optional[str]) -> bool:
    return bool(assignee) and bool(AGENT_ASSIGNEE_RE.match(assignee))


@dataclass
class Dependency:
    type: str
    depends_on_id: str


@dataclass
class Task:
    id: str
    title: str
    description: str = ""
    status: str = STATUS_OPEN
    issue_type: str = "task"
    priority: int = 2
    assignee: str = ""
    labels: List[str] = field(default_factory=list)
    dependencies: List[Dependency] = field(default_factory=list)
    block_reason: Optional[str] = None
    last_auto_retry_at: Optional[str] = None
    close_reason: str = ""
    comments: List[Dict[str, str]] = field(default_factory=list)
    project_id: str = ""
    created_at: str = ""
    updated_at: str = ""

    @property
    def is_epic(self) -> bool:
        return self.issue_type == "epic"

    @property
    def cumulative_attempts(self) -> int:
        return parse_attempts(self.labels)

    def blocker_ids(self) -> List[str]:
        return [d.depends_on_id for d in self.dependencies if d.type == DEP_BLOCKS]

    def parent_id(self) -> Optional[str]:
        for d in self.dependencies:
            if d.type == DEP_PARENT_CHILD:
                return d.depends_on_id
        if "." in self.id:
            return self.id.rsplit(".", 1)[0]
        return None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        deps = [
            Dependency(type=d.get("type", DEP_BLOCKS), depends_on_id=d["depends_on_id"])
            for d in data.get("dependencies", [])
            if isinstance(d, dict) and d.get("depends_on_id")
        ]
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            description=data.get("description", ""),
            status=data.get("status", STATUS_OPEN),
            issue_type=data.get("issue_type", "task"),
            priority=int(data.get("priority", 2)),
            assignee=data.get("assignee") or "",
            labels=list(data.get("labels", [])),
            dependencies=deps,
            block_reason=data.get("block_reason"),
            last_auto_retry_at=data.get("last_auto_retry_at"),
            close_reason=data.get("close_reason", ""),
            comments=list(data.get("comments", [])),
            project_id=data.get("project_id", ""),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )


class TaskStore(abc.ABC):
    """Operations the orchestration core consumes from the task tracker."""

    @abc.abstractmethod
    def create(
        self,
        title: str,
        issue_type: str = "task",
        priority: int = 2,
        description: str = "",
        parent_id: Optional[str] = None,
        blocked_by: Optional[List[str]] = None,
    ) -> Task: ...

    @abc.abstractmethod
    def get(self, task_id: str) -> Task: ...

    @abc.abstractmethod
    def list_all(self) -> List[Task]: ...

    @abc.abstractmethod
    def update(self, task_id: str, **fields: Any) -> Task: ...

    @abc.abstractmethod
    def close(self, task_id: str, reason: str) -> Task: ...

    @abc.abstractmethod
    def ready(self) -> List[Task]: ...

    @abc.abstractmethod
    def are_all_blockers_closed(self, task_id: str) -> bool: ...

    @abc.abstractmethod
    def get_cumulative_attempts(self, task_id: str) -> int: ...

    @abc.abstractmethod
    def set_cumulative_attempts(self, task_id: str, count: int) -> None: ...

    @abc.abstractmethod
    def add_label(self, task_id: str, label: str) -> None: ...

    @abc.abstractmethod
    def remove_label(self, task_id: str, label: str) -> None: ...

    @abc.abstractmethod
    def comment(self, task_id: str, text: str) -> None: ...

    @abc.abstractmethod
    def add_dependency(self, task_id: str, depends_on_id: str, dep_type: str = DEP_BLOCKS) -> None: ...

    @abc.abstractmethod
    def delete_by_project(self, project_id: str) -> int: ...

    def children(self, parent_id: str) -> List[Task]:
        return [t for t in self.list_all() if t.id != parent_id and t.parent_id() == parent_id]

    def in_progress_agent_tasks(self) -> List[Task]:
        return [
            t for t in self.list_all()
            if t.status == STATUS_IN_PROGRESS and is_agent_assignee(t.assignee)
        ]


class BaseTaskStore(TaskStore):
    """TaskStore over an ordered ``{id: record}`` mapping.

    Subclasses supply ``_transaction()``, which yields the mapping and
    persists it when the block exits without raising.
    """

    def __init__(self, project_id: str = "", id_prefix: str = "task"):
        self.project_id = project_id
        self.id_prefix = id_prefix

    @abc.abstractmethod
    def _transaction(self) -> Iterator[Dict[str, Dict[str, Any]]]: ...

    def _snapshot(self) -> Dict[str, Dict[str, Any]]:
        with self._transaction() as records:
            return copy.deepcopy(records)

    @staticmethod
    def _require(records: Dict[str, Dict[str, Any]], task_id: str) -> Dict[str, Any]:
        record = records.get(task_id)
        if record is None:
            raise TaskNotFoundError(task_id)
        return record

    def _next_id(self, records: Dict[str, Dict[str, Any]], parent_id: Optional[str]) -> str:
        if parent_id:
            prefix = f"{parent_id}."
        else:
            prefix = f"{self.id_prefix}-"
        highest = 0
        for existing in records:
            if not existing.startswith(prefix):
                continue
            suffix = existing[len(prefix):]
            if suffix.isdigit():
                highest = max(highest, int(suffix))
        return f"{prefix}{highest + 1}"

    def create(
        self,
        title: str,
        issue_type: str = "task",
        priority: int = 2,
        description: str = "",
        parent_id: Optional[str] = None,
        blocked_by: Optional[List[str]] = None,
    ) -> Task:
        now = utc_now_iso()
        with self._transaction() as records:
            if parent_id is not None:
                self._require(records, parent_id)
            task_id = self._next_id(records, parent_id)
            deps = [Dependency(DEP_BLOCKS, b) for b in (blocked_by or [])]
            if parent_id is not None:
                deps.append(Dependency(DEP_PARENT_CHILD, parent_id))
            task = Task(
                id=task_id, title=title, description=description,
                issue_type=issue_type, priority=priority, dependencies=deps,
                project_id=self.project_id, created_at=now, updated_at=now,
            )
            records[task_id] = task.to_dict()
        logger.debug("Created task %s: %s", task_id, title)
        return task

    def get(self, task_id: str) -> Task:
        with self._transaction() as records:
            return Task.from_dict(copy.deepcopy(self._require(records, task_id)))

    def list_all(self) -> List[Task]:
        return [Task.from_dict(r) for r in self._snapshot().values()]

    def update(self, task_id: str, **fields: Any) -> Task:
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")
        status = fields.get("status")
        if status is not None and status not in VALID_STATUSES:
            raise ValueError(f"Invalid status: {status!r}")
        with self._transaction() as records:
            record = self._require(records, task_id)
            for key, value in fields.items():
                record[key] = value
            record["updated_at"] = utc_now_iso()
            return Task.from_dict(copy.deepcopy(record))

    def close(self, task_id: str, reason: str) -> Task:
        with self._transaction() as records:
            record = self._require(records, task_id)
            record["status"] = STATUS_CLOSED
            record["close_reason"] = reason
            record["assignee"] = ""
            record["updated_at"] = utc_now_iso()
            return Task.from_dict(copy.deepcopy(record))

    def ready(self) -> List[Task]:
        return readiness.ready_tasks(self.list_all())

    def are_all_blockers_closed(self, task_id: str) -> bool:
        tasks = {t.id: t for t in self.list_all()}
        if task_id not in tasks:
            raise TaskNotFoundError(task_id)
        return readiness.blockers_closed(tasks[task_id], tasks)

    def get_cumulative_attempts(self, task_id: str) -> int:
        return self.get(task_id).cumulative_attempts

    def set_cumulative_attempts(self, task_id: str, count: int) -> None:
        with self._transaction() as records:
            record = self._require(records, task_id)
            labels = [l for l in record.get("labels", []) if not l.startswith(ATTEMPTS_LABEL_PREFIX)]
            labels.append(f"{ATTEMPTS_LABEL_PREFIX}{count}")
            record["labels"] = labels
            record["updated_at"] = utc_now_iso()

    def add_label(self, task_id: str, label: str) -> None:
        with self._transaction() as records:
            record = self._require(records, task_id)
            labels = record.setdefault("labels", [])
            if label not in labels:
                labels.append(label)
                record["updated_at"] = utc_now_iso()

    def remove_label(self, task_id: str, label: str) -> None:
        with self._transaction() as records:
            record = self._require(records, task_id)
            labels = record.get("labels", [])
            if label in labels:
                record["labels"] = [l for l in labels if l != label]
                record["updated_at"] = utc_now_iso()

    def comment(self, task_id: str, text: str) -> None:
        with self._transaction() as records:
            record = self._require(records, task_id)
            record.setdefault("comments", []).append({"text": text, "created_at": utc_now_iso()})

    def add_dependency(self, task_id: str, depends_on_id: str, dep_type: str = DEP_BLOCKS) -> None:
        with self._transaction() as records:
            record = self._require(records, task_id)
            self._require(records, depends_on_id)
            deps = record.setdefault("dependencies", [])
            entry = {"type": dep_type, "depends_on_id": depends_on_id}
            if entry not in deps:
                deps.append(entry)

    def delete_by_project(self, project_id: str) -> int:
        with self._transaction() as records:
            doomed = [tid for tid, r in records.items() if r.get("project_id") == project_id]
            for tid in doomed:
                del records[tid]
        return len(doomed)


class InMemoryTaskStore(BaseTaskStore):
    def __init__(self, project_id: str = "", id_prefix: str = "task"):
        super().__init__(project_id, id_prefix)
        self._records: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.RLock()

    @contextmanager
    def _transaction(self):
        with self._lock:
            working = copy.deepcopy(self._records)
            yield working
            self._records = working


class JsonTaskStore(BaseTaskStore):
    """Tasks persisted to a JSON file.

    Each operation is a locked read-modify-write: ``fcntl.flock`` on a
    sibling ``.lock`` file across processes, a ``threading.RLock`` across
    threads, and an atomic temp-file + ``os.replace`` write.
    """

    def __init__(self, path: str, project_id: str = "", id_prefix: str = "task"):
        super().__init__(project_id, id_prefix)
        self.path = Path(path)
        self._lock_path = self.path.with_name(self.path.name + ".lock")
        self._thread_lock = threading.RLock()

    @contextmanager
    def _file_lock(self):
        self._lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self._lock_path), os.O_CREAT | os.O_RDWR)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)

    def _read(self) -> Dict[str, Dict[str, Any]]:
        if not self.path.exists():
            return {}
        text = self.path.read_text().strip()
        if not text:
            return {}
        data = json.loads(text)
        tasks = data.get("tasks", []) if isinstance(data, dict) else data
        return {r["id"]: r for r in tasks if isinstance(r, dict) and "id" in r}

    def _write(self, records: Dict[str, Dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), suffix=".tmp")
        try:
            try:
                f = os.fdopen(tmp_fd, "w")
            except Exception:
                os.close(tmp_fd)
                raise
            with f:
                json.dump({"tasks": list(records.values())}, f, indent=2)
            os.replace(tmp_path, str(self.path))
        except Exception:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    @contextmanager
    def _transaction(self):
        with self._thread_lock, self._file_lock():
            records = self._read()
            before = json.dumps(records, sort_keys=True)
            yield records
            if json.dumps(records, sort_keys=True) != before:
                self._write(records)
