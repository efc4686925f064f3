"""Per-project slot state machine and the registry that owns one per project.

A slot walks a task through::

    assigned -> coding -> testing -> review -> merging -> complete
                   \\         \\         \\         \\
                    +---------+---------+---------+--> failed

Each slot is driven on its own executor thread. ``nudge()`` is the only
way new work is picked up: slot completion, requeue, blocked auto-retry,
an explicit user action and the watchdog timer all call it.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import readiness
from blocked_auto_retry import BlockedAutoRetry
from config_schema import Config, ProjectConfig
from events import AGENT_OUTPUT, AGENT_STARTED, BUILD_STATUS, TASK_UPDATED, EventBroadcaster
from failure_handler import (
    FAILURE_AGENT_CRASH,
    FAILURE_CODING,
    FAILURE_NO_RESULT,
    FAILURE_REVIEW,
    FAILURE_TEST,
    FAILURE_TIMEOUT,
    FailureHandler,
)
from merge_coordinator import MergeCoordinator
from project_context import ProjectContext, build_context
from prompts import build_coding_prompt, build_review_prompt
from recovery import CrashRecovery, OrphanSweep, RecoveryResult
from slot import (
    PHASE_CODING,
    PHASE_COMPLETE,
    PHASE_FAILED,
    PHASE_REVIEW,
    PHASE_TESTING,
    TERMINAL_PHASES,
    Slot,
)
from snapshot_store import ActiveTaskRecord, Snapshot, Totals
from task_store import STATUS_IN_PROGRESS, STATUS_OPEN, Task, TaskNotFoundError, TaskStore
from timers import RepeatingTimer
from worker_runner import ROLE_CODER, ROLE_REVIEWER, WorkerInvoker, WorkerSpawnError

logger = logging.getLogger(__name__)

# How often a slot driver re-checks for shutdown while a worker runs.
WORKER_WAIT_POLL_SECONDS = 1.0


class _Shutdown(Exception):
    """Raised inside a slot driver when the orchestrator is stopping."""


def format_review_feedback(result: Dict[str, Any]) -> str:
    lines = []
    summary = str(result.get("summary") or "").strip()
    if summary:
        lines.append(summary)
    for issue in result.get("issues") or []:
        if isinstance(issue, dict):
            issue = issue.get("description") or issue.get("message") or str(issue)
        lines.append(f"- {issue}")
    notes = str(result.get("notes") or "").strip()
    if notes:
        lines.append(f"\nNotes: {notes}")
    return "\n".join(lines)


class ProjectOrchestrator:
    def __init__(self, ctx: ProjectContext):
        self.ctx = ctx
        self.config = ctx.config
        self._max_slots = max(1, self.config.orchestrator.max_slots)
        self._lock = threading.RLock()
        self._slots: Dict[str, Slot] = {}
        self._completed = 0
        self._failed = 0
        self._running = False
        self._stopping = False
        self._dispatching = False
        self._nudge_pending = False
        self._drivers = 0
        self._executor = self._new_executor()
        self._watchdog: Optional[RepeatingTimer] = None
        self._auto_retry_timer: Optional[RepeatingTimer] = None

        self.merge = MergeCoordinator(ctx, self)
        self.failures = FailureHandler(ctx, self)
        self.recovery = CrashRecovery(ctx, self)
        self.orphans = OrphanSweep(ctx)
        self.auto_retry = BlockedAutoRetry(ctx, self.nudge)

    def _new_executor(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(
            max_workers=self._max_slots, thread_name_prefix=f"slot-{self.ctx.project_id}",
        )

    @property
    def project_id(self) -> str:
        return self.ctx.project_id

    @property
    def store(self) -> TaskStore:
        return self.ctx.store

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, recover: bool = True, timers: bool = True) -> Optional[RecoveryResult]:
        with self._lock:
            if self._running:
                return None
            if self._stopping:
                self._executor = self._new_executor()
            self._running = True
            self._stopping = False
        self.ctx.queue.start()

        result = None
        if recover:
            result = self.recovery.recover()
            if result.action != "none":
                logger.info(
                    "Recovery for %s: %s (resumed=%s, requeued=%s)",
                    self.project_id, result.action, result.resumed, result.requeued,
                )
            active = self.active_task_ids()
            self.orphans.sweep(exclude_ids=active)
            self.orphans.prune_stale_worktrees(active)

        if timers:
            self._watchdog = RepeatingTimer(
                self.config.orchestrator.watchdog_interval_seconds,
                lambda: self.nudge("watchdog"),
                name=f"watchdog-{self.project_id}",
            ).start()
            self._auto_retry_timer = RepeatingTimer(
                self.config.backoff.auto_retry_interval_seconds,
                self.auto_retry.run_once,
                name=f"auto-retry-{self.project_id}",
            ).start()
            self.auto_retry.run_once()

        logger.info("Orchestrator for %s started (max_slots=%d)", self.project_id, self._max_slots)
        self.nudge("startup")
        return result

    def stop(self, wait: bool = False) -> None:
        """Stop dispatching. Running workers are left alive for the next start to adopt."""
        with self._lock:
            if not self._running:
                return
            self._running = False
            self._stopping = True
            slots = list(self._slots.values())
        for timer in (self._watchdog, self._auto_retry_timer):
            if timer is not None:
                timer.cancel()
        for slot in slots:
            slot.cancel_timers()
            stop_watching = getattr(slot.worker, "stop_watching", None)
            if stop_watching is not None:
                stop_watching()
        self._executor.shutdown(wait=wait)
        if wait:
            self.merge.wait_for_side_effects()
        self.ctx.queue.stop(timeout=None if wait else 5)
        logger.info("Orchestrator for %s stopped", self.project_id)

    def wait_idle(self, poll_interval: float = 0.5, timeout: Optional[float] = None) -> bool:
        """Block until no slot is active and no dispatch pass is running."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                busy = bool(self._slots) or self._drivers > 0 or self._dispatching
            if not busy:
                break
            if deadline is not None and time.monotonic() >= deadline:
                return False
            time.sleep(poll_interval)
        self.ctx.queue.wait_for_push(timeout)
        self.merge.wait_for_side_effects(timeout)
        return True

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def active_task_ids(self) -> List[str]:
        with self._lock:
            return list(self._slots)

    def get_slot(self, task_id: str) -> Optional[Slot]:
        with self._lock:
            return self._slots.get(task_id)

    def totals(self) -> Totals:
        with self._lock:
            return Totals(
                completed=self._completed, failed=self._failed, queue_depth=self.ctx.queue.depth,
            )

    def status(self) -> Dict[str, Any]:
        with self._lock:
            active = [
                {"taskId": s.task_id, "phase": s.phase, "attempt": s.attempt}
                for s in self._slots.values()
            ]
        totals = self.totals()
        return {
            "projectId": self.project_id,
            "running": self._running,
            "activeTasks": active,
            "completed": totals.completed,
            "failed": totals.failed,
            "queueDepth": totals.queue_depth,
            "pushPending": self.merge.push_pending,
        }

    def restore_totals(self, totals: Totals) -> None:
        with self._lock:
            self._completed = totals.completed
            self._failed = totals.failed

    def record_failed(self) -> None:
        with self._lock:
            self._failed += 1

    def persist_snapshot(self) -> None:
        """Rewrite the snapshot from live slots, or clear it when none are active."""
        with self._lock:
            records = [s.to_record() for s in self._slots.values() if s.phase not in TERMINAL_PHASES]
            totals = Totals(
                completed=self._completed, failed=self._failed, queue_depth=self.ctx.queue.depth,
            )
            try:
                if records:
                    self.ctx.snapshots.write(Snapshot(
                        project_id=self.project_id, active_tasks=records, totals=totals,
                    ))
                else:
                    self.ctx.snapshots.clear()
            except OSError:
                logger.exception("Failed to persist snapshot for %s", self.project_id)

    def transition(self, slot: Slot, phase: str) -> None:
        with self._lock:
            previous = slot.phase
            slot.phase = phase
        logger.info(
            "%s: %s -> %s", slot.task_id, previous, phase,
            extra={"project_id": self.project_id, "task_id": slot.task_id,
                   "phase": phase, "attempt": slot.attempt},
        )
        self.persist_snapshot()
        self.ctx.emit(BUILD_STATUS, taskId=slot.task_id, phase=phase, attempt=slot.attempt)

    def finish_slot(self, slot: Slot, success: bool) -> None:
        slot.cancel_timers()
        with self._lock:
            slot.phase = PHASE_COMPLETE if success else PHASE_FAILED
            self._slots.pop(slot.task_id, None)
            if success:
                self._completed += 1
            else:
                self._failed += 1
        self.persist_snapshot()
        slot.done.set()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def nudge(self, reason: str = "") -> None:
        """Fill free slots with ready tasks. No-op while every slot is busy."""
        with self._lock:
            if not self._running:
                return
            if self._dispatching:
                self._nudge_pending = True
                logger.debug("Nudge (%s) deferred: dispatch pass in progress", reason)
                return
            if len(self._slots) >= self._max_slots:
                logger.debug("Nudge (%s) ignored: all %d slot(s) busy", reason, self._max_slots)
                return
            self._dispatching = True
        logger.debug("Nudge for %s: %s", self.project_id, reason)
        while True:
            try:
                self._dispatch()
            except Exception:
                logger.exception("Dispatch pass for %s failed", self.project_id)
            with self._lock:
                # a nudge that arrived after the last selection gets another pass
                if not self._nudge_pending:
                    self._dispatching = False
                    return

    def run_once(self) -> None:
        """Explicit user action: dispatch now."""
        self.nudge("user action")

    def _dispatch(self) -> None:
        while True:
            with self._lock:
                self._nudge_pending = False
                if not self._running or len(self._slots) >= self._max_slots:
                    return
                exclude = list(self._slots)
            task = readiness.select_next(self.store, exclude_ids=exclude)
            if task is None:
                logger.debug("No ready tasks for %s", self.project_id)
                return
            slot = self._assign(task)
            if slot is None:
                return
            self._submit_driver(slot)

    def _assign(self, task: Task) -> Optional[Slot]:
        slot = Slot(task_id=task.id, task_title=task.title, branch_name=self.ctx.git.branch_name(task.id))
        with self._lock:
            self._slots[task.id] = slot
        # recorded before the tracker or git see the assignment
        self.persist_snapshot()
        assignee = self.config.orchestrator.agent_assignee
        try:
            self.store.update(task.id, status=STATUS_IN_PROGRESS, assignee=assignee)
            slot.attempt = self.store.get_cumulative_attempts(task.id) + 1
            slot.worktree_path = self.ctx.git.create_task_worktree(task.id)
        except Exception:
            logger.exception("Failed to assign %s", task.id)
            with self._lock:
                self._slots.pop(task.id, None)
            try:
                self.store.update(task.id, status=STATUS_OPEN, assignee="")
            except Exception:
                logger.exception("Failed to release %s after assignment error", task.id)
            self.persist_snapshot()
            return None

        self.persist_snapshot()
        logger.info(
            "Assigned %s (%s), attempt %d", task.id, task.title, slot.attempt,
            extra={"project_id": self.project_id, "task_id": task.id, "attempt": slot.attempt},
        )
        self.ctx.emit(TASK_UPDATED, taskId=task.id, status=STATUS_IN_PROGRESS, assignee=assignee)
        return slot

    def adopt_slot(self, record: ActiveTaskRecord) -> Slot:
        """Rebuild a slot around a worker that survived an orchestrator restart."""
        slot = Slot(
            task_id=record.task_id,
            phase=record.phase,
            attempt=record.attempt,
            worktree_path=record.worktree_path,
            branch_name=record.branch_name or self.ctx.git.branch_name(record.task_id),
            worker_pid=record.worker_pid,
        )
        if record.started_at:
            slot.started_at = record.started_at
        try:
            slot.task_title = self.store.get(record.task_id).title
        except TaskNotFoundError:
            logger.warning("Adopted worker belongs to unknown task %s", record.task_id)
        if record.phase == PHASE_REVIEW:
            try:
                slot.phase_result.coding_diff = self.ctx.git.capture_branch_diff(slot.branch_name)
            except Exception:
                logger.debug("No diff for adopted %s", record.task_id, exc_info=True)
        role = ROLE_REVIEWER if record.phase == PHASE_REVIEW else ROLE_CODER
        slot.worker = self.ctx.invoker.adopt(
            role, record.worker_pid, record.worktree_path, record.task_id,
            poll_interval=self.config.orchestrator.pid_poll_interval_seconds,
        )
        with self._lock:
            self._slots[record.task_id] = slot
        self.persist_snapshot()
        self._submit_driver(slot, record.phase)
        return slot

    def _submit_driver(self, slot: Slot, resume_phase: Optional[str] = None) -> None:
        with self._lock:
            self._drivers += 1
        self._executor.submit(self._drive_slot, slot, resume_phase)

    # ------------------------------------------------------------------
    # Slot driver
    # ------------------------------------------------------------------

    def _drive_slot(self, slot: Slot, resume_phase: Optional[str] = None) -> None:
        try:
            if resume_phase is not None:
                retry = self._guarded(slot, lambda: self._resume(slot, resume_phase))
            else:
                retry = True
            while retry:
                retry = self._guarded(slot, lambda: self._run_attempt(slot))
        except _Shutdown:
            logger.info("Leaving %s in %s for recovery on next start", slot.task_id, slot.phase)
        except Exception:
            logger.exception("Slot for %s could not recover; releasing it", slot.task_id)
            self._release(slot)
        finally:
            slot.cancel_timers()
            with self._lock:
                self._drivers -= 1

    def _guarded(self, slot: Slot, step: Callable[[], bool]) -> bool:
        """Run a phase; unexpected exceptions become a failed attempt."""
        try:
            return step()
        except _Shutdown:
            raise
        except Exception as e:
            if slot.done.is_set():
                logger.exception("Error after %s had already finished", slot.task_id)
                return False
            logger.exception("Unexpected error in %s phase for %s", slot.phase, slot.task_id)
            worker = slot.worker
            if worker is not None and not worker.exited.is_set():
                worker.kill()
            failure_type = FAILURE_AGENT_CRASH if isinstance(e, WorkerSpawnError) else FAILURE_CODING
            return self.failures.handle(slot, f"Unexpected error during {slot.phase}: {e}", failure_type)

    def _release(self, slot: Slot) -> None:
        if slot.done.is_set():
            return
        self.finish_slot(slot, success=False)
        try:
            self.store.update(slot.task_id, status=STATUS_OPEN, assignee="")
        except Exception:
            logger.exception("Failed to reopen %s", slot.task_id)
        self.ctx.emit(TASK_UPDATED, taskId=slot.task_id, status=STATUS_OPEN, assignee=None)
        self.nudge("slot released")

    def _resume(self, slot: Slot, phase: str) -> bool:
        self._wait_worker(slot)
        if phase == PHASE_REVIEW:
            return self._handle_review_done(slot)
        return self._handle_coding_done(slot)

    def _run_attempt(self, slot: Slot) -> bool:
        """One coding attempt and everything after it. Returns True to retry."""
        if not slot.worktree_path or not Path(slot.worktree_path).exists():
            slot.worktree_path = self.ctx.git.create_task_worktree(slot.task_id)
        task = self.store.get(slot.task_id)
        epic = readiness.find_epic(task, {t.id: t for t in self.store.list_all()})
        result_path = self.ctx.invoker.result_path_for(slot.worktree_path, task.id)
        prompt = build_coding_prompt(task, str(result_path), epic=epic, retry=slot.retry_context)
        self.transition(slot, PHASE_CODING)
        self._spawn(slot, ROLE_CODER, prompt)
        self._wait_worker(slot)
        return self._handle_coding_done(slot)

    def _spawn(self, slot: Slot, role: str, prompt: str) -> None:
        slot.timed_out = False
        slot.last_output_at = time.monotonic()
        handle = self.ctx.invoker.spawn(
            role, prompt, slot.worktree_path, slot.task_id,
            on_output=lambda chunk: self._on_output(slot, chunk),
        )
        slot.worker = handle
        slot.worker_pid = handle.pid
        self.persist_snapshot()
        self._start_inactivity_timer(slot)
        self.ctx.emit(
            AGENT_STARTED, taskId=slot.task_id, role=role, attempt=slot.attempt, pid=handle.pid,
        )

    def _on_output(self, slot: Slot, chunk: str) -> None:
        slot.append_output(chunk)
        self.ctx.emit(AGENT_OUTPUT, taskId=slot.task_id, chunk=chunk)

    def _wait_worker(self, slot: Slot) -> None:
        worker = slot.worker
        while not worker.wait(WORKER_WAIT_POLL_SECONDS):
            if self._stopping:
                raise _Shutdown()
        slot.cancel_timers()

    def _start_inactivity_timer(self, slot: Slot) -> None:
        slot.cancel_timers()
        slot.inactivity_timer = RepeatingTimer(
            self.config.orchestrator.inactivity_check_interval_seconds,
            lambda: self._check_inactivity(slot),
            name=f"inactivity-{slot.task_id}",
        ).start()

    def _check_inactivity(self, slot: Slot) -> None:
        worker = slot.worker
        if worker is None or worker.exited.is_set():
            return
        idle = time.monotonic() - slot.last_output_at
        if idle < self.config.orchestrator.inactivity_timeout_seconds:
            return
        logger.warning(
            "%s worker for %s silent for %.0fs; committing WIP and killing it",
            worker.role, slot.task_id, idle,
        )
        slot.timed_out = True
        slot.cancel_timers()
        try:
            self.ctx.git.commit_wip(slot.worktree_path, slot.task_id)
        except Exception:
            logger.warning("WIP commit before kill failed for %s", slot.task_id, exc_info=True)
        worker.kill()

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _handle_coding_done(self, slot: Slot) -> bool:
        slot.cancel_timers()
        worker = slot.worker
        if slot.timed_out:
            return self.failures.handle(slot, "Agent stopped responding", FAILURE_TIMEOUT)
        result = worker.read_result() if worker is not None else None
        if result is None:
            rc = worker.returncode if worker is not None else None
            if rc == 0:
                return self.failures.handle(
                    slot, "Coding agent exited without writing a result", FAILURE_NO_RESULT,
                )
            return self.failures.handle(
                slot, f"Coding agent exited (rc={rc}) without writing a result", FAILURE_AGENT_CRASH,
            )
        if result["status"] != "success":
            reason = str(result.get("summary") or f"Coding agent reported status '{result['status']}'")
            return self.failures.handle(slot, reason, FAILURE_CODING)

        slot.phase_result.coding_summary = str(result.get("summary") or "")
        return self._run_testing(slot)

    def _run_testing(self, slot: Slot) -> bool:
        self.transition(slot, PHASE_TESTING)
        outcome = self.ctx.validator.run_tests(slot.worktree_path)
        slot.phase_result.test_results = outcome.to_dict()
        slot.phase_result.test_output = outcome.output
        if not outcome.passed:
            reason = f"Tests failed: {outcome.summary}\n\n{outcome.output[-3000:]}"
            return self.failures.handle(
                slot, reason, FAILURE_TEST, test_results=slot.phase_result.test_results,
            )

        self.ctx.git.commit_wip(slot.worktree_path, slot.task_id)
        slot.phase_result.coding_diff = self.ctx.git.capture_branch_diff(slot.branch_name)
        if not self.config.orchestrator.review_enabled:
            return self._run_merge(slot)
        return self._run_review(slot)

    def _run_review(self, slot: Slot) -> bool:
        task = self.store.get(slot.task_id)
        result_path = self.ctx.invoker.result_path_for(slot.worktree_path, task.id)
        prompt = build_review_prompt(
            task, slot.phase_result.coding_diff, slot.phase_result.coding_summary, str(result_path),
        )
        self.transition(slot, PHASE_REVIEW)
        self._spawn(slot, ROLE_REVIEWER, prompt)
        self._wait_worker(slot)
        return self._handle_review_done(slot)

    def _handle_review_done(self, slot: Slot) -> bool:
        slot.cancel_timers()
        if slot.timed_out:
            return self.failures.handle(slot, "Review agent stopped responding", FAILURE_TIMEOUT)
        result = slot.worker.read_result() if slot.worker is not None else None
        verdict = result.get("status") if result else None
        if verdict == "approved":
            logger.info("Review approved %s", slot.task_id)
            return self._run_merge(slot)
        if verdict == "rejected":
            feedback = format_review_feedback(result)
            slot.phase_result.review_feedback = feedback
            summary = str(result.get("summary") or "no summary")
            return self.failures.handle(
                slot, f"Review rejected: {summary}", FAILURE_REVIEW, review_feedback=feedback,
            )
        return self.failures.handle(slot, "Review agent produced no valid result", FAILURE_REVIEW)

    def _run_merge(self, slot: Slot) -> bool:
        self.merge.merge_and_complete(slot)
        return False


class OrchestratorRegistry:
    """All project orchestrators of one process, keyed by project id."""

    def __init__(
        self,
        config: Config,
        events: EventBroadcaster,
        store_factory: Optional[Callable[[ProjectConfig], TaskStore]] = None,
        invoker_factory: Optional[Callable[[ProjectConfig], WorkerInvoker]] = None,
    ):
        self.config = config
        self.events = events
        self.store_factory = store_factory
        self.invoker_factory = invoker_factory
        self._orchestrators: Dict[str, ProjectOrchestrator] = {}
        self._lock = threading.Lock()

    def register(self, project: ProjectConfig) -> ProjectOrchestrator:
        with self._lock:
            if project.id in self._orchestrators:
                return self._orchestrators[project.id]
            ctx = build_context(
                self.config, project, self.events,
                store=self.store_factory(project) if self.store_factory else None,
                invoker=self.invoker_factory(project) if self.invoker_factory else None,
            )
            orchestrator = ProjectOrchestrator(ctx)
            self._orchestrators[project.id] = orchestrator
        logger.info("Registered project %s at %s", project.id, project.repo_path)
        return orchestrator

    def get(self, project_id: str) -> ProjectOrchestrator:
        with self._lock:
            return self._orchestrators[project_id]

    def project_ids(self) -> List[str]:
        with self._lock:
            return list(self._orchestrators)

    def start_all(self, recover: bool = True, timers: bool = True) -> None:
        for project_id in self.project_ids():
            self.get(project_id).start(recover=recover, timers=timers)

    def nudge_all(self, reason: str) -> None:
        for project_id in self.project_ids():
            self.get(project_id).nudge(reason)

    def stop_all(self, wait: bool = False) -> None:
        for project_id in self.project_ids():
            try:
                self.get(project_id).stop(wait=wait)
            except Exception:
                logger.exception("Failed to stop orchestrator for %s", project_id)
