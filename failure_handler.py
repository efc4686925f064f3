"""Apply the backoff policy when a slot fails coding, testing or review."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional

from backoff import (
    ACTION_BLOCK,
    ACTION_DEMOTE,
    ACTION_RETRY,
    BLOCK_REASON_CODING,
    decide,
    is_infra_failure,
)
from events import AGENT_COMPLETED, TASK_BLOCKED, TASK_UPDATED
from project_context import ProjectContext
from prompts import RetryContext
from session_archive import RunRecord
from slot import Slot
from task_store import BLOCKED_LABEL, STATUS_BLOCKED, STATUS_OPEN, Task, utc_now_iso

logger = logging.getLogger(__name__)

FAILURE_CODING = "coding_failure"
FAILURE_TEST = "test_failure"
FAILURE_REVIEW = "review_rejection"
FAILURE_TIMEOUT = "timeout"
FAILURE_AGENT_CRASH = "agent_crash"
FAILURE_NO_RESULT = "no_result"


class FailureHandler:
    def __init__(self, ctx: ProjectContext, host):
        self.ctx = ctx
        self.host = host

    def comment_text(self, attempt: int, failure_type: str, reason: str, review_feedback: str = "") -> str:
        if failure_type == FAILURE_TIMEOUT:
            minutes = round(self.ctx.config.orchestrator.inactivity_timeout_seconds / 60)
            return (
                f"Attempt {attempt} failed [timeout]: Agent stopped responding "
                f"({minutes} min inactivity); task requeued."
            )
        if failure_type == FAILURE_REVIEW and review_feedback:
            return f"Review rejected (attempt {attempt}):\n\n{review_feedback[:2000]}"
        return f"Attempt {attempt} failed [{failure_type}]: {reason[:500]}"

    def handle(
        self,
        slot: Slot,
        reason: str,
        failure_type: str = FAILURE_CODING,
        test_results: Optional[Dict[str, Any]] = None,
        review_feedback: str = "",
    ) -> bool:
        """Record a failed attempt and decide what happens next.

        Returns True when the slot should immediately run another coding
        attempt; False when the slot has been released (demoted or blocked).
        """
        store = self.ctx.store
        task = store.get(slot.task_id)
        attempt = slot.attempt
        logger.error(
            "Task %s failed [%s] (attempt %d): %s",
            task.id, failure_type, attempt, reason[:500],
            extra={"task_id": task.id, "attempt": attempt},
        )

        previous_diff = self._capture_diff(slot)
        self._archive(slot, reason, test_results, previous_diff)

        try:
            store.comment(task.id, self.comment_text(attempt, failure_type, reason, review_feedback))
        except Exception:
            logger.warning("Failed to add failure comment to %s", task.id, exc_info=True)

        retry_context = RetryContext(
            previous_failure=reason,
            failure_type=failure_type,
            review_feedback=review_feedback,
            previous_diff=previous_diff,
            previous_test_output=slot.phase_result.test_output,
        )

        max_infra = self.ctx.config.backoff.max_infra_retries
        if is_infra_failure(failure_type) and slot.infra_retries < max_infra:
            slot.infra_retries += 1
            logger.info(
                "Infrastructure retry %d/%d for %s", slot.infra_retries, max_infra, task.id,
            )
            self._prepare_retry(slot, attempt, retry_context)
            return True

        if not is_infra_failure(failure_type):
            slot.infra_retries = 0

        # slot.attempt also counts free infra retries; the durable counter does not
        failures = task.cumulative_attempts + 1
        store.set_cumulative_attempts(task.id, failures)
        decision = decide(failures, task.priority, self.ctx.config.backoff)

        if decision.action == ACTION_RETRY:
            logger.info("Retrying %s (attempt %d), preserving branch", task.id, attempt + 1)
            self._prepare_retry(slot, attempt, retry_context)
            return True

        self._remove_worktree(slot)
        if slot.branch_name:
            self.ctx.git.delete_branch(slot.branch_name)

        if decision.action == ACTION_BLOCK:
            self.block_task(task, failures, reason)
            status = STATUS_BLOCKED
        elif decision.action == ACTION_DEMOTE:
            logger.info(
                "Demoting %s priority %d -> %d after %d failures",
                task.id, task.priority, decision.new_priority, failures,
            )
            store.update(task.id, status=STATUS_OPEN, assignee="", priority=decision.new_priority)
            status = STATUS_OPEN
        else:
            raise ValueError(f"Unknown backoff action: {decision.action!r}")

        self.host.finish_slot(slot, success=False)
        self.ctx.emit(TASK_UPDATED, taskId=task.id, status=status, assignee=None)
        self.ctx.emit(
            AGENT_COMPLETED, taskId=task.id, status="failed",
            testResults=test_results, reason=reason[:500],
        )
        self.host.nudge("slot failed")
        return False

    def block_task(self, task: Task, attempts: int, reason: str) -> None:
        logger.info("Blocking %s after %d cumulative failures at max priority", task.id, attempts)
        self.ctx.store.update(
            task.id, status=STATUS_BLOCKED, assignee="", block_reason=BLOCK_REASON_CODING,
        )
        self.ctx.store.add_label(task.id, BLOCKED_LABEL)
        self.ctx.emit(
            TASK_BLOCKED, taskId=task.id,
            reason=f"Blocked after {attempts} failed attempts: {reason[:300]}",
            cumulativeAttempts=attempts, blockReason=BLOCK_REASON_CODING,
        )

    def _prepare_retry(self, slot: Slot, attempt: int, retry_context: RetryContext) -> None:
        self._remove_worktree(slot)
        slot.attempt = attempt + 1
        slot.retry_context = retry_context
        slot.reset_for_retry()
        self.host.persist_snapshot()

    def _remove_worktree(self, slot: Slot) -> None:
        if not slot.worktree_path:
            return
        try:
            self.ctx.git.remove_task_worktree(slot.task_id, slot.worktree_path)
        except Exception:
            logger.warning("Failed to remove worktree for %s", slot.task_id, exc_info=True)
        slot.worktree_path = ""

    def _capture_diff(self, slot: Slot) -> str:
        parts = []
        try:
            if slot.branch_name:
                parts.append(self.ctx.git.capture_branch_diff(slot.branch_name))
            if slot.worktree_path and Path(slot.worktree_path).exists():
                parts.append(self.ctx.git.capture_uncommitted_diff(slot.worktree_path))
        except Exception:
            logger.debug("Could not capture diff for %s", slot.task_id, exc_info=True)
        return "\n\n--- Uncommitted changes ---\n\n".join(p for p in parts if p)

    def _archive(self, slot: Slot, reason: str, test_results, diff: str) -> None:
        try:
            self.ctx.archive.archive(RunRecord(
                task_id=slot.task_id,
                attempt=slot.attempt,
                worker_type="coder",
                model=self.ctx.config.worker.model,
                branch=slot.branch_name,
                status="failed",
                output_log=slot.output_text(),
                git_diff=diff,
                summary=slot.phase_result.coding_summary,
                test_results=test_results,
                failure_reason=reason,
                started_at=slot.started_at,
                completed_at=utc_now_iso(),
            ))
        except Exception:
            logger.exception("Failed to archive failed run for %s", slot.task_id)
