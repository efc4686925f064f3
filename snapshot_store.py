"""Persisted orchestration snapshot for crash recovery.

The orchestrator rewrites ``<repo>/.autosprint/orchestrator-state.json``
after every phase transition and deletes it once no slot is active, so a
missing file means idle. Readers never see a partial write (temp file +
os.replace) and treat anything unparsable as "no snapshot".
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from task_store import utc_now_iso

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1
SNAPSHOT_FILENAME = "orchestrator-state.json"


class SnapshotError(ValueError):
    """Snapshot content failed validation."""


@dataclass
class ActiveTaskRecord:
    task_id: str
    phase: str
    branch_name: str = ""
    worktree_path: str = ""
    worker_pid: Optional[int] = None
    attempt: int = 1
    started_at: str = ""


@dataclass
class Totals:
    completed: int = 0
    failed: int = 0
    queue_depth: int = 0


@dataclass
class Snapshot:
    project_id: str
    active_tasks: List[ActiveTaskRecord] = field(default_factory=list)
    totals: Totals = field(default_factory=Totals)
    version: int = SNAPSHOT_VERSION
    updated_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Any) -> "Snapshot":
        """Build a Snapshot, raising SnapshotError on anything malformed."""
        if not isinstance(data, dict):
            raise SnapshotError("snapshot is not an object")
        if data.get("version") != SNAPSHOT_VERSION:
            raise SnapshotError(f"unsupported snapshot version {data.get('version')!r}")
        project_id = data.get("project_id")
        if not isinstance(project_id, str) or not project_id:
            raise SnapshotError("missing project_id")
        raw_tasks = data.get("active_tasks", [])
        if not isinstance(raw_tasks, list):
            raise SnapshotError("active_tasks is not a list")
        tasks = []
        for raw in raw_tasks:
            if not isinstance(raw, dict) or not isinstance(raw.get("task_id"), str):
                raise SnapshotError(f"malformed active task entry: {raw!r}")
            if not isinstance(raw.get("phase"), str):
                raise SnapshotError(f"active task {raw['task_id']} has no phase")
            pid = raw.get("worker_pid")
            if pid is not None and not isinstance(pid, int):
                raise SnapshotError(f"active task {raw['task_id']} has non-integer pid")
            tasks.append(ActiveTaskRecord(
                task_id=raw["task_id"],
                phase=raw["phase"],
                branch_name=raw.get("branch_name") or "",
                worktree_path=raw.get("worktree_path") or "",
                worker_pid=pid,
                attempt=int(raw.get("attempt") or 1),
                started_at=raw.get("started_at") or "",
            ))
        raw_totals = data.get("totals") or {}
        if not isinstance(raw_totals, dict):
            raise SnapshotError("totals is not an object")
        try:
            totals = Totals(
                completed=int(raw_totals.get("completed", 0)),
                failed=int(raw_totals.get("failed", 0)),
                queue_depth=int(raw_totals.get("queue_depth", 0)),
            )
        except (TypeError, ValueError) as e:
            raise SnapshotError(f"bad totals: {e}") from e
        return cls(
            project_id=project_id,
            active_tasks=tasks,
            totals=totals,
            updated_at=data.get("updated_at", ""),
        )


class SnapshotStore:
    """Reads and writes one project's snapshot file."""

    def __init__(self, data_dir: str):
        self._path = Path(data_dir) / SNAPSHOT_FILENAME

    @property
    def path(self) -> str:
        return str(self._path)

    def write(self, snapshot: Snapshot) -> None:
        """Atomically write the snapshot via tempfile + os.replace.

        Errors propagate: a snapshot that cannot be persisted must not be
        assumed recoverable.
        """
        snapshot.updated_at = utc_now_iso()
        data = snapshot.to_dict()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_path = tempfile.mkstemp(dir=str(self._path.parent), suffix=".tmp")
        try:
            try:
                f = os.fdopen(tmp_fd, "w")
            except Exception:
                os.close(tmp_fd)
                raise
            with f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, str(self._path))
        except Exception:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def clear(self) -> None:
        """Remove the snapshot file (nothing active)."""
        try:
            self._path.unlink()
        except FileNotFoundError:
            pass

    def read(self) -> Optional[Snapshot]:
        """Return the stored snapshot, or None if absent, empty or corrupt."""
        if not self._path.exists():
            return None
        try:
            text = self._path.read_text().strip()
            if not text:
                return None
            return Snapshot.from_dict(json.loads(text))
        except (json.JSONDecodeError, OSError, SnapshotError) as e:
            logger.warning("Ignoring unreadable snapshot %s: %s", self._path, e)
            return None
