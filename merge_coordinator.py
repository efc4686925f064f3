"""Integrate a reviewed task branch into trunk, then close the task.

Order of operations for one slot:

1. commit anything left uncommitted in the worktree
2. wait for an in-flight push to finish
3. rebase the task branch onto local trunk
4. on the integration queue: fast-forward trunk from the remote, rebase
   again if trunk moved, then merge
5. close the task, archive, clean up, schedule the push

A conflict in step 3 or 4 gets one merger-worker run. If that fails the
operation is aborted and the task requeued with its branch intact. The
task is never closed before the merge has succeeded.
"""

from __future__ import annotations

import logging
import threading
from typing import List, Optional, Tuple

import readiness
from backoff import ACTION_BLOCK, BLOCK_REASON_MERGE, decide_merge_failure
from events import (
    AGENT_COMPLETED,
    EPIC_READY_FOR_FINAL_REVIEW,
    FILES_CHANGED,
    MERGE_PUSHED,
    PUSH_FAILED,
    TASK_BLOCKED,
    TASK_UPDATED,
)
from git_manager import GitError, MergeConflictError, RebaseConflictError
from process_utils import run_with_group_kill
from project_context import ProjectContext
from prompts import build_merger_prompt
from session_archive import RunRecord
from slot import PHASE_MERGING, Slot
from task_store import BLOCKED_LABEL, STATUS_BLOCKED, STATUS_CLOSED, STATUS_OPEN, Task, utc_now_iso
from worker_runner import ROLE_MERGER

logger = logging.getLogger(__name__)

DEFAULT_CLOSE_REASON = "Implemented and tested"


class MergeCoordinator:
    def __init__(self, ctx: ProjectContext, host):
        self.ctx = ctx
        self.host = host
        self.push_pending = False
        self._side_effect_threads: List[threading.Thread] = []

    @property
    def git(self):
        return self.ctx.git

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def merge_and_complete(self, slot: Slot) -> bool:
        """Run the merge protocol for a slot. Returns True when the task was closed."""
        task = self.ctx.store.get(slot.task_id)
        self.host.transition(slot, PHASE_MERGING)

        self.git.commit_wip(slot.worktree_path, slot.task_id)

        if self.ctx.queue.push_in_flight:
            logger.info("Waiting for in-flight push before integrating %s", slot.task_id)
        self.ctx.queue.wait_for_push()

        try:
            self._rebase(slot, task)
            future = self.ctx.queue.submit(
                f"merge {slot.branch_name}", lambda: self._merge_job(slot, task),
            )
            _, changed_files = future.result()
        except Exception as e:
            logger.warning("Integration of %s failed: %s", slot.task_id, e)
            self._handle_merge_failure(slot, task, e)
            return False

        self._complete(slot, task, changed_files)
        return True

    # ------------------------------------------------------------------
    # Rebase and merge
    # ------------------------------------------------------------------

    def _rebase(self, slot: Slot, task: Task) -> None:
        worktree = slot.worktree_path
        try:
            self.git.rebase_onto_trunk(worktree)
            return
        except RebaseConflictError as e:
            logger.info("Rebase of %s conflicted on %s", slot.branch_name, e.conflicted_files)
            conflict = e
        if not self._resolve_with_merger(task, "rebase", conflict.conflicted_files, worktree):
            self.git.rebase_abort(worktree)
            raise conflict
        try:
            self.git.rebase_continue(worktree)
        except GitError:
            self.git.rebase_abort(worktree)
            raise

    def _merge_job(self, slot: Slot, task: Task) -> Tuple[str, List[str]]:
        """Runs on the integration queue thread, the only place trunk moves."""
        self.git.sync_trunk_from_remote()
        if not self.git.contains_trunk(slot.branch_name):
            logger.info("Trunk moved since %s was rebased, rebasing again", slot.branch_name)
            self._rebase(slot, task)
        base = self.git.get_head()
        message = f"Closed {task.id}: {task.title}"
        try:
            head = self.git.merge_to_trunk(slot.branch_name, message)
        except MergeConflictError as e:
            logger.info("Merge of %s conflicted on %s", slot.branch_name, e.conflicted_files)
            if not self._resolve_with_merger(task, "merge", e.conflicted_files, self.ctx.repo_path):
                self.git.abort_merge()
                raise
            try:
                head = self.git.conclude_merge()
            except GitError:
                self.git.abort_merge()
                raise
        return head, self.git.changed_files_between(base, head)

    def _resolve_with_merger(self, task: Task, operation: str, files: List[str], cwd: str) -> bool:
        """Run the merger worker once. True only if it reports success and no conflicts remain."""
        prompt = build_merger_prompt(
            task, operation, files,
            str(self.ctx.invoker.result_path_for(cwd, task.id)),
            trunk=self.git.trunk,
        )
        try:
            result = self.ctx.invoker.run_to_completion(ROLE_MERGER, prompt, cwd, task.id)
        except Exception:
            logger.exception("Merger worker for %s failed to run", task.id)
            return False
        if not result or result.get("status") != "success":
            logger.warning("Merger worker could not resolve %s conflicts for %s", operation, task.id)
            return False
        remaining = self.git.conflicted_files(cwd)
        if remaining:
            logger.warning("Merger worker left unresolved files for %s: %s", task.id, remaining)
            return False
        return True

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def _complete(self, slot: Slot, task: Task, changed_files: List[str]) -> None:
        reason = slot.phase_result.coding_summary or DEFAULT_CLOSE_REASON
        try:
            self.ctx.store.close(task.id, reason)
        except Exception:
            logger.exception("Merged %s but failed to close it", task.id)
        logger.info("Merged and closed %s", task.id)

        self._archive(slot, "success")
        self._cleanup(slot, delete_branch=True)

        self.host.finish_slot(slot, success=True)
        self.ctx.emit(TASK_UPDATED, taskId=task.id, status=STATUS_CLOSED, assignee=None)
        self.ctx.emit(
            AGENT_COMPLETED, taskId=task.id, status="success",
            testResults=slot.phase_result.test_results, reason=None,
        )

        self.schedule_push(task)
        self._run_side_effects(task, changed_files)
        self.host.nudge("slot completed")

    def _handle_merge_failure(self, slot: Slot, task: Task, error: Exception) -> None:
        message = str(error)
        store = self.ctx.store
        try:
            store.comment(
                task.id,
                f"Merge conflict with current {self.git.trunk}. Task requeued; next run will "
                f"rebase and retry. Error: {message[:300]}",
            )
        except Exception:
            logger.warning("Failed to comment on %s", task.id, exc_info=True)

        attempts = store.get_cumulative_attempts(task.id) + 1
        store.set_cumulative_attempts(task.id, attempts)

        self._archive(slot, "failed", failure_reason=message)
        self._cleanup(slot, delete_branch=False)

        decision = decide_merge_failure(attempts, self.ctx.config.backoff)
        if decision.action == ACTION_BLOCK:
            logger.info("Blocking %s after %d merge failures", task.id, attempts)
            store.update(task.id, status=STATUS_BLOCKED, assignee="", block_reason=BLOCK_REASON_MERGE)
            store.add_label(task.id, BLOCKED_LABEL)
            store.comment(
                task.id,
                f"Blocked after {attempts} consecutive merge failures. Last error: {message[:300]}",
            )
            self.ctx.emit(
                TASK_BLOCKED, taskId=task.id,
                reason=f"Blocked after {attempts} merge failures",
                cumulativeAttempts=attempts, blockReason=BLOCK_REASON_MERGE,
            )
            status = STATUS_BLOCKED
        else:
            logger.info("Reopening %s after merge failure (attempts=%d)", task.id, attempts)
            store.update(task.id, status=STATUS_OPEN, assignee="")
            status = STATUS_OPEN

        self.host.finish_slot(slot, success=False)
        self.ctx.emit(TASK_UPDATED, taskId=task.id, status=status, assignee=None)
        self.ctx.emit(
            AGENT_COMPLETED, taskId=task.id, status="failed",
            testResults=None, reason=message[:500],
        )
        self.host.nudge("merge failure requeue")

    def _archive(self, slot: Slot, status: str, failure_reason: str = "") -> None:
        try:
            self.ctx.archive.archive(RunRecord(
                task_id=slot.task_id,
                attempt=slot.attempt,
                worker_type="coder",
                model=self.ctx.config.worker.model,
                branch=slot.branch_name,
                status=status,
                output_log=slot.output_text(),
                git_diff=slot.phase_result.coding_diff,
                summary=slot.phase_result.coding_summary,
                test_results=slot.phase_result.test_results,
                failure_reason=failure_reason,
                started_at=slot.started_at,
                completed_at=utc_now_iso(),
            ))
        except Exception:
            logger.exception("Failed to archive run for %s", slot.task_id)

    def _cleanup(self, slot: Slot, delete_branch: bool) -> None:
        try:
            if slot.worktree_path:
                self.git.remove_task_worktree(slot.task_id, slot.worktree_path)
            if delete_branch and slot.branch_name:
                self.git.delete_branch(slot.branch_name)
        except Exception:
            logger.warning("Cleanup failed for %s", slot.task_id, exc_info=True)

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    def schedule_push(self, task: Task) -> None:
        """Queue a push of trunk. A failure leaves push_pending set for the next completion."""
        if not self.ctx.config.merge.push_enabled:
            return
        try:
            if not self.git.has_remote():
                return
        except GitError:
            return
        future = self.ctx.queue.submit_push(f"push after {task.id}", lambda: self._push_job(task))
        future.add_done_callback(lambda f: self._on_push_done(task, f))

    def _push_job(self, task: Task) -> None:
        """Runs on the integration queue thread, holding the push mutex."""
        try:
            self.git.push_trunk()
            return
        except RebaseConflictError as e:
            logger.info("Push rebase conflicted on %s", e.conflicted_files)
            conflict = e
        if not self._resolve_with_merger(task, "rebase", conflict.conflicted_files, self.ctx.repo_path):
            self.git.rebase_abort()
            raise conflict
        try:
            self.git.rebase_continue()
            self.git.push_trunk_to_remote()
        except GitError:
            if self.git.is_rebase_in_progress():
                self.git.rebase_abort()
            raise

    def _on_push_done(self, task: Task, future) -> None:
        error = future.exception()
        if error is None:
            self.push_pending = False
            self.ctx.emit(MERGE_PUSHED, taskId=task.id, trunk=self.git.trunk)
            return
        self.push_pending = True
        logger.warning("Push after %s failed; will retry on next completion: %s", task.id, error)
        self.ctx.emit(PUSH_FAILED, taskId=task.id, error=str(error)[:500])

    # ------------------------------------------------------------------
    # Post-merge side effects
    # ------------------------------------------------------------------

    def _run_side_effects(self, task: Task, changed_files: List[str]) -> None:
        thread = threading.Thread(
            target=self._side_effects, args=(task, changed_files),
            name=f"post-merge-{task.id}", daemon=True,
        )
        self._side_effect_threads.append(thread)
        thread.start()

    def wait_for_side_effects(self, timeout: Optional[float] = None) -> None:
        for thread in list(self._side_effect_threads):
            thread.join(timeout)
        self._side_effect_threads = [t for t in self._side_effect_threads if t.is_alive()]

    def _side_effects(self, task: Task, changed_files: List[str]) -> None:
        for name, step in (
            ("changed-files analysis", lambda: self._report_changed_files(task, changed_files)),
            ("post-merge hook", lambda: self._run_hook(self.ctx.config.merge.post_merge_command, task)),
            ("epic completion check", lambda: self._check_epic_complete(task)),
        ):
            try:
                step()
            except Exception:
                logger.exception("Post-merge %s failed for %s", name, task.id)

    def _report_changed_files(self, task: Task, changed_files: List[str]) -> None:
        logger.info("%s changed %d file(s)", task.id, len(changed_files))
        self.ctx.emit(FILES_CHANGED, taskId=task.id, files=changed_files)

    def _run_hook(self, command: str, task: Task, epic: Optional[Task] = None) -> None:
        if not command.strip():
            return
        epic_id = epic.id if epic else ""
        formatted = command.format(task_id=task.id, epic_id=epic_id)
        result = run_with_group_kill(
            formatted, shell=True, cwd=self.ctx.repo_path,
            timeout=self.ctx.config.merge.hook_timeout,
            env={"AUTOSPRINT_PROJECT_ID": self.ctx.project_id,
                 "AUTOSPRINT_TASK_ID": task.id, "AUTOSPRINT_EPIC_ID": epic_id},
        )
        if result.returncode != 0:
            logger.warning(
                "Hook %r failed (rc=%d): %s",
                formatted, result.returncode, (result.stderr or result.stdout).strip()[:500],
            )
        else:
            logger.info("Hook %r finished", formatted)

    def _check_epic_complete(self, task: Task) -> None:
        tasks = {t.id: t for t in self.ctx.store.list_all()}
        current = tasks.get(task.id, task)
        epic = readiness.find_epic(current, tasks)
        if epic is None:
            return
        children = [t for t in tasks.values() if readiness.find_epic(t, tasks) is epic and not t.is_epic]
        if not children or any(c.status != STATUS_CLOSED for c in children):
            return
        logger.info("All %d tasks of epic %s are closed", len(children), epic.id)
        self.ctx.emit(EPIC_READY_FOR_FINAL_REVIEW, epicId=epic.id, taskIds=[c.id for c in children])
        self._run_hook(self.ctx.config.merge.final_review_command, task, epic=epic)
