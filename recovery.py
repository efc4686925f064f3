"""Startup recovery: resume or requeue work left by a crashed process.

``CrashRecovery`` reads the project snapshot. Workers that are still
running are re-adopted and their phase resumes when they exit. Everything
else is requeued after the snapshot entry has been cleared, so a crash
during cleanup cannot loop. ``OrphanSweep`` then resets tasks the tracker
still shows as claimed by an agent although no slot owns them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List

from events import TASK_UPDATED
from process_utils import pid_alive
from project_context import ProjectContext
from session_archive import RunRecord
from slot import WORKER_PHASES
from snapshot_store import ActiveTaskRecord, Snapshot
from task_store import STATUS_CLOSED, STATUS_OPEN, TaskNotFoundError, utc_now_iso

logger = logging.getLogger(__name__)

CRASH_COMMENT = (
    "Agent crashed (server restart). Recovered and requeued. Branch diff captured for audit."
)
ORPHAN_COMMENT = (
    "Task was in progress with no active agent (orphaned by an earlier restart); "
    "returned to the backlog."
)

ACTION_NONE = "none"
ACTION_RESUMED = "resumed"
ACTION_REQUEUED = "requeued"


@dataclass
class RecoveryResult:
    action: str = ACTION_NONE
    resumed: List[str] = field(default_factory=list)
    requeued: List[str] = field(default_factory=list)


class CrashRecovery:
    def __init__(self, ctx: ProjectContext, host):
        self.ctx = ctx
        self.host = host

    def recover(self) -> RecoveryResult:
        snapshot = self.ctx.snapshots.read()
        if snapshot is None or not snapshot.active_tasks:
            logger.info("No interrupted work to recover for %s", self.ctx.project_id)
            return RecoveryResult()

        self.host.restore_totals(snapshot.totals)
        live = [r for r in snapshot.active_tasks if r.phase in WORKER_PHASES and pid_alive(r.worker_pid)]
        dead = [r for r in snapshot.active_tasks if r not in live]
        result = RecoveryResult()

        if dead:
            # Drop the dead entries from durable state before touching anything else.
            if live:
                self.ctx.snapshots.write(Snapshot(
                    project_id=snapshot.project_id, active_tasks=live, totals=snapshot.totals,
                ))
            else:
                self.ctx.snapshots.clear()
            for record in dead:
                if self._requeue(record):
                    result.requeued.append(record.task_id)

        for record in live:
            logger.info(
                "Worker pid=%s for %s (%s) is still running; re-adopting",
                record.worker_pid, record.task_id, record.phase,
            )
            self.host.adopt_slot(record)
            result.resumed.append(record.task_id)

        if result.resumed:
            result.action = ACTION_RESUMED
        elif result.requeued:
            result.action = ACTION_REQUEUED
        return result

    def _requeue(self, record: ActiveTaskRecord) -> bool:
        task_id = record.task_id
        git = self.ctx.git
        branch = record.branch_name or git.branch_name(task_id)
        logger.warning(
            "Recovering crashed %s (phase=%s, pid=%s)", task_id, record.phase, record.worker_pid,
        )

        diff = ""
        try:
            diff = git.capture_branch_diff(branch)
        except Exception:
            logger.debug("No diff captured for %s", branch, exc_info=True)
        try:
            self.ctx.archive.archive(RunRecord(
                task_id=task_id,
                attempt=record.attempt,
                branch=branch,
                status="failed",
                git_diff=diff,
                failure_reason="Agent crashed (server restart)",
                started_at=record.started_at,
                completed_at=utc_now_iso(),
            ))
        except Exception:
            logger.exception("Failed to archive crash record for %s", task_id)

        try:
            git.remove_task_worktree(task_id, record.worktree_path or None)
            git.delete_branch(branch)
        except Exception:
            logger.warning("Cleanup after crash failed for %s", task_id, exc_info=True)

        try:
            task = self.ctx.store.get(task_id)
        except TaskNotFoundError:
            logger.warning("Crashed task %s no longer exists", task_id)
            return False
        if task.status != STATUS_CLOSED:
            self.ctx.store.comment(task_id, CRASH_COMMENT)
            self.ctx.store.update(task_id, status=STATUS_OPEN, assignee="")
        self.host.record_failed()
        self.ctx.emit(TASK_UPDATED, taskId=task_id, status=STATUS_OPEN, assignee=None)
        return True


class OrphanSweep:
    def __init__(self, ctx: ProjectContext):
        self.ctx = ctx

    def sweep(self, exclude_ids: Iterable[str] = ()) -> List[str]:
        """Return agent-claimed in-progress tasks with no slot to the open backlog."""
        excluded = set(exclude_ids)
        recovered = []
        for task in self.ctx.store.in_progress_agent_tasks():
            if task.id in excluded:
                continue
            logger.warning("Recovering orphaned task %s (assignee %s)", task.id, task.assignee)
            try:
                self.ctx.git.remove_task_worktree(task.id)
            except Exception:
                logger.warning("Could not remove worktree for orphan %s", task.id, exc_info=True)
            self.ctx.store.comment(task.id, ORPHAN_COMMENT)
            self.ctx.store.update(task.id, status=STATUS_OPEN, assignee="")
            self.ctx.emit(TASK_UPDATED, taskId=task.id, status=STATUS_OPEN, assignee=None)
            recovered.append(task.id)
        if recovered:
            logger.info("Orphan sweep reset %d task(s): %s", len(recovered), ", ".join(recovered))
        return recovered

    def prune_stale_worktrees(self, active_ids: Iterable[str] = ()) -> List[str]:
        active = set(active_ids)
        removed = []
        for path in self.ctx.git.list_worktree_dirs():
            task_id = Path(path).name
            if task_id in active:
                continue
            try:
                self.ctx.git.remove_task_worktree(task_id, path)
                removed.append(path)
            except Exception:
                logger.warning("Could not prune stale worktree %s", path, exc_info=True)
        if removed:
            logger.info("Pruned %d stale worktree(s)", len(removed))
        return removed
