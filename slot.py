"""In-memory record of one task's progress through the build phases."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from prompts import RetryContext
from snapshot_store import ActiveTaskRecord
from task_store import utc_now_iso

PHASE_ASSIGNED = "assigned"
PHASE_CODING = "coding"
PHASE_TESTING = "testing"
PHASE_REVIEW = "review"
PHASE_MERGING = "merging"
PHASE_COMPLETE = "complete"
PHASE_FAILED = "failed"

TERMINAL_PHASES = frozenset({PHASE_COMPLETE, PHASE_FAILED})
WORKER_PHASES = frozenset({PHASE_CODING, PHASE_REVIEW})

# Output kept per slot for the run archive; older chunks are dropped.
MAX_OUTPUT_CHUNKS = 5000


@dataclass
class PhaseResult:
    coding_diff: str = ""
    coding_summary: str = ""
    test_results: Optional[Dict[str, Any]] = None
    test_output: str = ""
    review_feedback: str = ""


@dataclass
class Slot:
    task_id: str
    task_title: str = ""
    phase: str = PHASE_ASSIGNED
    attempt: int = 1
    infra_retries: int = 0
    worktree_path: str = ""
    branch_name: str = ""
    worker: Any = None
    worker_pid: Optional[int] = None
    output_log: List[str] = field(default_factory=list)
    started_at: str = field(default_factory=utc_now_iso)
    last_output_at: float = field(default_factory=time.monotonic)
    phase_result: PhaseResult = field(default_factory=PhaseResult)
    retry_context: Optional[RetryContext] = None
    inactivity_timer: Any = None
    timed_out: bool = False
    done: threading.Event = field(default_factory=threading.Event)

    def append_output(self, chunk: str) -> None:
        self.output_log.append(chunk)
        if len(self.output_log) > MAX_OUTPUT_CHUNKS:
            del self.output_log[: len(self.output_log) - MAX_OUTPUT_CHUNKS]
        self.last_output_at = time.monotonic()

    def output_text(self) -> str:
        return "".join(self.output_log)

    def reset_for_retry(self) -> None:
        """Clear per-attempt state while keeping identity and retry context."""
        self.worker = None
        self.worker_pid = None
        self.output_log = []
        self.started_at = utc_now_iso()
        self.last_output_at = time.monotonic()
        self.timed_out = False
        self.phase_result = PhaseResult()

    def cancel_timers(self) -> None:
        if self.inactivity_timer is not None:
            self.inactivity_timer.cancel()
            self.inactivity_timer = None

    def to_record(self) -> ActiveTaskRecord:
        return ActiveTaskRecord(
            task_id=self.task_id,
            phase=self.phase,
            branch_name=self.branch_name,
            worktree_path=self.worktree_path,
            worker_pid=self.worker_pid,
            attempt=self.attempt,
            started_at=self.started_at,
        )
