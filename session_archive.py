"""Immutable per-attempt run records under .autosprint/sessions/."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class RunRecord:
    task_id: str
    attempt: int
    worker_type: str = "coder"
    model: str = ""
    branch: str = ""
    status: str = ""               # success, failed, approved, rejected
    output_log: str = ""
    git_diff: str = ""
    summary: str = ""
    test_results: Optional[Dict[str, Any]] = None
    failure_reason: str = ""
    started_at: str = ""
    completed_at: str = ""
    files_changed: List[str] = field(default_factory=list)


class SessionArchive:
    def __init__(self, data_dir: str):
        self.sessions_dir = Path(data_dir) / "sessions"

    def _record_dir(self, task_id: str, attempt: int) -> Path:
        return self.sessions_dir / f"{task_id}-{attempt}"

    def archive(self, record: RunRecord) -> Optional[str]:
        """Write a run record. Returns its path, or None if one already exists.

        Records are never overwritten; a second archive for the same
        task/attempt (e.g. recovery after a crash mid-archive) is dropped.
        """
        record_dir = self._record_dir(record.task_id, record.attempt)
        target = record_dir / "session.json"
        if target.exists():
            logger.info("Run record %s already archived, keeping original", target)
            return None
        record_dir.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_path = tempfile.mkstemp(dir=str(record_dir), suffix=".tmp")
        try:
            try:
                f = os.fdopen(tmp_fd, "w")
            except Exception:
                os.close(tmp_fd)
                raise
            with f:
                json.dump(asdict(record), f, indent=2, default=str)
            # os.link refuses to replace an existing file, unlike os.replace
            os.link(tmp_path, str(target))
        except FileExistsError:
            logger.info("Run record %s archived concurrently, keeping original", target)
            return None
        finally:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
        logger.debug("Archived run record %s", target)
        return str(target)

    def load(self, task_id: str, attempt: int) -> Optional[RunRecord]:
        target = self._record_dir(task_id, attempt) / "session.json"
        try:
            data = json.loads(target.read_text())
        except (OSError, json.JSONDecodeError):
            return None
        known = set(RunRecord.__dataclass_fields__)
        return RunRecord(**{k: v for k, v in data.items() if k in known})

    def list_for_task(self, task_id: str) -> List[RunRecord]:
        if not self.sessions_dir.exists():
            return []
        records = []
        for child in self.sessions_dir.glob(f"{task_id}-*"):
            suffix = child.name[len(task_id) + 1:]
            if not suffix.isdigit():
                continue
            record = self.load(task_id, int(suffix))
            if record is not None:
                records.append(record)
        records.sort(key=lambda r: r.attempt)
        return records
